"""Error taxonomy for the longitudinal knowledge base."""

from __future__ import annotations

# Dedup-guarded inserts return this instead of raising.
DUPLICATE_IGNORED = None


class KnowledgeBaseError(Exception):
    """Base class for knowledge base failures."""


class SourceUnavailable(KnowledgeBaseError):
    """Chart data could not be fetched for a patient or section."""

    def __init__(self, message: str, patient_id: str | None = None, section: str | None = None) -> None:
        super().__init__(message)
        self.patient_id = patient_id
        self.section = section


class PersistenceFull(KnowledgeBaseError):
    """Store write rejected because the byte quota would be exceeded."""

    def __init__(self, message: str, required_bytes: int = 0, available_bytes: int = 0) -> None:
        super().__init__(message)
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes


class DeserializationError(KnowledgeBaseError):
    """Persisted document is corrupt or has an incompatible format."""


class InvalidEvent(KnowledgeBaseError, ValueError):
    """Ingress payload does not have a recognizable event shape."""
