"""Tests for database models."""
import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wordplay.models.models import Document
from wordplay.services.document_store import DocumentStore


def test_document_timestamps(db: Session) -> None:
    """Documents get creation and update timestamps."""
    document = Document(key="learning-records", payload="[]")
    db.add(document)
    db.commit()

    assert document.created_at is not None
    assert document.updated_at is not None
    assert repr(document) == "<Document learning-records (2 bytes)>"


def test_document_store_put_and_get(db: Session) -> None:
    documents = DocumentStore(db)

    documents.put("session-logs", "[]")
    documents.put("session-logs", '[{"id": "s1"}]')
    documents.put("auto-sync", "true")

    assert documents.get("session-logs") == '[{"id": "s1"}]'
    assert documents.get("missing") is None
    assert documents.get("auto-sync") == "true"


def test_document_store_delete(db: Session) -> None:
    documents = DocumentStore(db)
    documents.put("auto-sync", "true")

    documents.delete("auto-sync")
    documents.delete("never-written")

    assert documents.get("auto-sync") is None


def test_put_many_is_atomic(db: Session) -> None:
    """A failing batch leaves earlier documents as they were."""
    documents = DocumentStore(db)
    documents.put("learning-records", "[]")

    with pytest.raises(IntegrityError):
        documents.put_many({"learning-records": "[1]", "review-events": None})

    assert documents.get("learning-records") == "[]"
    assert documents.get("review-events") is None
