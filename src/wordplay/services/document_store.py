"""Keyed JSON document storage on top of SQLAlchemy."""
import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from wordplay.models.models import Document

logger = logging.getLogger(__name__)


class DocumentStore:
    """Reads and writes one text document per logical key."""

    def __init__(self, db: Session):
        """Initialize the store with a database session."""
        self.db = db

    def get(self, key: str) -> Optional[str]:
        """Get the raw document stored under key, if any."""
        document = self.db.query(Document).filter(Document.key == key).first()
        return document.payload if document else None

    def put(self, key: str, payload: str, commit: bool = True) -> None:
        """Create or replace the document stored under key."""
        document = self.db.query(Document).filter(Document.key == key).first()
        if document:
            document.payload = payload
        else:
            self.db.add(Document(key=key, payload=payload))
        if commit:
            self.db.commit()

    def put_many(self, documents: Dict[str, str]) -> None:
        """Write several documents in a single transaction."""
        try:
            for key, payload in documents.items():
                self.put(key, payload, commit=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def delete(self, key: str, commit: bool = True) -> None:
        """Remove the document stored under key."""
        self.db.query(Document).filter(Document.key == key).delete()
        if commit:
            self.db.commit()
