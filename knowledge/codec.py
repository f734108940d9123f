"""Textual persistence codec for longitudinal documents."""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from knowledge.document import SCHEMA_VERSION, LongitudinalDocument
from knowledge.errors import DeserializationError

FORMAT_NAME = "lckb"


def _major(version: str) -> str:
    return str(version).split(".", 1)[0]


def to_payload(document: LongitudinalDocument) -> dict[str, Any]:
    return {
        "format": FORMAT_NAME,
        "schemaVersion": SCHEMA_VERSION,
        "document": document.model_dump(mode="json"),
    }


def serialize(document: LongitudinalDocument) -> str:
    """JSON envelope preserving every tier and lifecycle field."""
    return json.dumps(to_payload(document), ensure_ascii=False, separators=(",", ":"))


def deserialize(text: str | bytes) -> LongitudinalDocument:
    """Rehydrate a document; any corruption surfaces as DeserializationError."""
    try:
        payload = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise DeserializationError(f"Persisted document is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict) or payload.get("format") != FORMAT_NAME:
        raise DeserializationError("Persisted payload is not an lckb document")
    version = str(payload.get("schemaVersion", ""))
    if _major(version) != _major(SCHEMA_VERSION):
        raise DeserializationError(f"Incompatible schema version {version!r} (expected {SCHEMA_VERSION})")
    try:
        return LongitudinalDocument.model_validate(payload.get("document"))
    except ValidationError as exc:
        raise DeserializationError(f"Persisted document failed validation: {exc.error_count()} errors") from exc
