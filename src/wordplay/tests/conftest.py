"""Test configuration."""
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Generator

import pytest
from dotenv import load_dotenv

# Set test environment before any imports
os.environ["ENV"] = "test"
os.environ.setdefault("DATABASE_URL", "sqlite://")

# Load test environment variables
test_env_path = Path(__file__).parent.parent.parent.parent / ".env.test"
load_dotenv(test_env_path)

# Import after environment setup
from sqlalchemy.orm import Session

from wordplay.models.base import create_session_factory
from wordplay.services.blob_storage import InMemoryBlobStorage
from wordplay.services.record_store import RecordStore


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create a fresh in-memory database session for each test."""
    session_factory = create_session_factory("sqlite://")
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def store(db: Session) -> RecordStore:
    """Create a record store on the test database."""
    return RecordStore(db)


@pytest.fixture
def storage() -> InMemoryBlobStorage:
    """Create an empty in-memory remote storage."""
    return InMemoryBlobStorage()


@pytest.fixture
def now() -> datetime:
    """A fixed point in time."""
    return datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
