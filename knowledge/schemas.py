"""SQLAlchemy schemas for persisted knowledge base documents."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from knowledge.timeutil import utc_now


class Base(DeclarativeBase):
    """Declarative base."""


class PersistedDocumentRecord(Base):
    """Serialized document keyed by store key."""

    __tablename__ = "persisted_documents"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    patient_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    payload: Mapped[str] = mapped_column(Text)
    size_bytes: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, index=True
    )
