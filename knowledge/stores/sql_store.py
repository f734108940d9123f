"""SQLite SQLAlchemy keyed text store with a byte quota."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine, func
from sqlalchemy.orm import Session, sessionmaker

from knowledge.errors import PersistenceFull
from knowledge.schemas import Base, PersistedDocumentRecord
from knowledge.timeutil import utc_now

logger = logging.getLogger("lckb.store")


class SQLStore:
    """Provides put/get/delete over SQLite, rejecting writes beyond ``max_bytes``."""

    def __init__(self, db_path: Path | str, max_bytes: int | None = None) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes
        self.engine = create_engine(f"sqlite+pysqlite:///{self.db_path}", future=True)
        self._session_factory = sessionmaker(bind=self.engine, future=True)
        self.create_all()

    def create_all(self) -> None:
        """Create all schema tables if missing."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager that commits on success and rolls back on error."""
        sess = self._session_factory()
        try:
            yield sess
            sess.commit()
        except Exception:
            sess.rollback()
            raise
        finally:
            sess.close()

    def put(self, key: str, payload: str, patient_id: str | None = None) -> int:
        """Insert or replace a payload; returns its size in bytes."""
        size = len(payload.encode("utf-8"))
        with self.session() as sess:
            existing = sess.get(PersistedDocumentRecord, key)
            if self.max_bytes is not None:
                used = sess.query(func.coalesce(func.sum(PersistedDocumentRecord.size_bytes), 0)).scalar() or 0
                if existing is not None:
                    used -= existing.size_bytes
                available = max(0, self.max_bytes - used)
                if size > available:
                    raise PersistenceFull(
                        f"Writing {key!r} needs {size} bytes but only {available} remain",
                        required_bytes=size,
                        available_bytes=available,
                    )
            if existing is None:
                sess.add(PersistedDocumentRecord(key=key, patient_id=patient_id, payload=payload, size_bytes=size))
            else:
                existing.payload = payload
                existing.size_bytes = size
                existing.patient_id = patient_id
                existing.updated_at = utc_now()
        return size

    def get(self, key: str) -> str | None:
        with self.session() as sess:
            record = sess.get(PersistedDocumentRecord, key)
            return None if record is None else record.payload

    def delete(self, key: str) -> bool:
        with self.session() as sess:
            record = sess.get(PersistedDocumentRecord, key)
            if record is None:
                return False
            sess.delete(record)
            return True

    def keys(self) -> list[str]:
        with self.session() as sess:
            return [row[0] for row in sess.query(PersistedDocumentRecord.key).order_by(PersistedDocumentRecord.key)]

    def used_bytes(self) -> int:
        with self.session() as sess:
            return int(sess.query(func.coalesce(func.sum(PersistedDocumentRecord.size_bytes), 0)).scalar() or 0)

    def oldest_keys(self, exclude_patient_id: str | None = None) -> list[str]:
        """Keys ordered least recently written first, skipping one patient's records."""
        with self.session() as sess:
            query = sess.query(PersistedDocumentRecord.key)
            if exclude_patient_id is not None:
                query = query.filter(
                    (PersistedDocumentRecord.patient_id != exclude_patient_id)
                    | (PersistedDocumentRecord.patient_id.is_(None))
                )
            query = query.order_by(PersistedDocumentRecord.updated_at, PersistedDocumentRecord.key)
            return [row[0] for row in query]
