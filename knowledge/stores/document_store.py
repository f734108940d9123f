"""Document-level persistence with eviction on quota pressure."""

from __future__ import annotations

import logging
from typing import Any

from knowledge.codec import deserialize, serialize
from knowledge.document import LongitudinalDocument
from knowledge.errors import DeserializationError, PersistenceFull
from knowledge.stores.sql_store import SQLStore

logger = logging.getLogger("lckb.store")

KEY_PREFIX = "lckb:"


def document_key(patient_id: str) -> str:
    return f"{KEY_PREFIX}{patient_id}"


class DocumentStore:
    """Saves and loads whole documents; failures are logged, never raised."""

    def __init__(self, sql_store: SQLStore) -> None:
        self.sql_store = sql_store

    def save(self, document: LongitudinalDocument) -> bool:
        payload = serialize(document)
        key = document_key(document.patient_id)
        try:
            self.sql_store.put(key, payload, patient_id=document.patient_id)
            return True
        except PersistenceFull as exc:
            logger.warning("Store full while saving %s: %s", key, exc)
            evicted = self._evict_for(document.patient_id, exc.required_bytes - exc.available_bytes)
            logger.warning("Evicted %d persisted documents to make room for %s", evicted, key)
        try:
            self.sql_store.put(key, payload, patient_id=document.patient_id)
            return True
        except PersistenceFull as exc:
            logger.error("Could not persist %s even after eviction: %s", key, exc)
            return False

    def _evict_for(self, patient_id: str, needed_bytes: int) -> int:
        """Delete other patients' oldest documents until ``needed_bytes`` are freed."""
        freed = 0
        evicted = 0
        for key in self.sql_store.oldest_keys(exclude_patient_id=patient_id):
            if freed >= needed_bytes:
                break
            payload = self.sql_store.get(key)
            if self.sql_store.delete(key):
                freed += len((payload or "").encode("utf-8"))
                evicted += 1
        return evicted

    def load(self, patient_id: str) -> LongitudinalDocument | None:
        key = document_key(patient_id)
        payload = self.sql_store.get(key)
        if payload is None:
            return None
        try:
            return deserialize(payload)
        except DeserializationError as exc:
            logger.warning("Discarding corrupt persisted document %s: %s", key, exc)
            self.sql_store.delete(key)
            return None

    def delete(self, patient_id: str) -> bool:
        return self.sql_store.delete(document_key(patient_id))

    def load_or_build(self, patient_id: str, builder: Any) -> LongitudinalDocument:
        """Rehydrate when possible, otherwise build (or fall back to an empty shell) and save."""
        document = self.load(patient_id)
        if document is not None:
            return document
        document = builder.build_or_empty(patient_id)
        self.save(document)
        return document
