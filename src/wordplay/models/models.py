"""Database models for WordPlay."""
from sqlalchemy import Column, String, Text

from wordplay.models.base import Base, TimestampMixin


class Document(Base, TimestampMixin):
    """One JSON document per logical collection (records, events, metadata...)."""

    __tablename__ = "documents"

    key = Column(String, primary_key=True)
    payload = Column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<Document {self.key} ({len(self.payload or '')} bytes)>"
