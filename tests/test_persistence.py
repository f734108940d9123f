"""Codec round-trip and document store tests."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from knowledge.codec import deserialize, serialize
from knowledge.document import LongitudinalDocument
from knowledge.errors import DeserializationError, PersistenceFull
from knowledge.stores.document_store import DocumentStore, document_key
from knowledge.stores.sql_store import SQLStore
from knowledge.types.problem import Problem
from knowledge.updater import DocumentUpdater

NOW = datetime(2026, 3, 10, 14, 0, tzinfo=UTC)


def build_document(patient_id: str = "patient-1") -> LongitudinalDocument:
    document = LongitudinalDocument.create(patient_id, now=NOW)
    updater = DocumentUpdater(document, clock=lambda: NOW)
    document.add_problem(Problem(id="p1", name="Chronic kidney disease"))
    updater.add_vitals({"timestamp": NOW - timedelta(hours=2), "heart_rate": 135, "systolic": 150})
    updater.add_lab_results(
        {"collectedDate": NOW.isoformat(), "results": [{"name": "Potassium", "value": 6.8, "unit": "mEq/L"}]}
    )
    stale_id = updater.add_ai_observation("Renal function stable")
    updater.supersede_observation(stale_id, "Renal function declining")
    updater.add_ai_observation("GI bleed, anticoagulation contraindicated")
    assert updater.add_doctor_dictation("Start heparin for DVT prophylaxis") is not None
    first_conflict = document.session_context.conflicts[0]
    updater.resolve_conflict(first_conflict.id, "Prophylaxis with SCDs instead")
    updater.add_pending_decision("Dialysis timing")
    updater.add_active_condition("Hyperkalemia", trend="worsening")
    updater.add_background_fact("Prior nephrectomy 2010")
    updater.mark_reviewed("Potassium result")
    return document


def build_store(tmp_path: Path, max_bytes: int | None = None) -> DocumentStore:
    return DocumentStore(SQLStore(tmp_path / "lckb.db", max_bytes=max_bytes))


def test_round_trip_preserves_every_tier() -> None:
    document = build_document()
    restored = deserialize(serialize(document))
    assert restored == document

    session = restored.session_context
    assert {o.status for o in session.ai_observations} == {"active", "superseded"}
    assert session.conflicts[0].resolution == "Prophylaxis with SCDs instead"
    assert list(restored.problem_matrix["p1"].timeline) == list(document.problem_matrix["p1"].timeline)
    assert restored.longitudinal_data.labs["Potassium"].values[0].value == 6.8


def test_deserialize_rejects_corrupt_payloads() -> None:
    with pytest.raises(DeserializationError):
        deserialize("{not json")
    with pytest.raises(DeserializationError):
        deserialize(json.dumps({"format": "other", "schemaVersion": "1.0", "document": {}}))
    with pytest.raises(DeserializationError):
        deserialize(json.dumps({"format": "lckb", "schemaVersion": "2.0", "document": {}}))
    with pytest.raises(DeserializationError):
        deserialize(json.dumps({"format": "lckb", "schemaVersion": "1.0", "document": {"metadata": 3}}))


def test_store_save_load_delete(tmp_path: Path) -> None:
    store = build_store(tmp_path)
    document = build_document()
    assert store.save(document)
    assert store.load("patient-1") == document
    assert store.load("patient-2") is None
    assert store.delete("patient-1")
    assert store.load("patient-1") is None


def test_corrupt_persisted_document_is_discarded(tmp_path: Path) -> None:
    store = build_store(tmp_path)
    store.sql_store.put(document_key("patient-1"), "garbage", patient_id="patient-1")
    assert store.load("patient-1") is None
    assert store.sql_store.keys() == []


def test_quota_rejects_oversized_writes(tmp_path: Path) -> None:
    sql_store = SQLStore(tmp_path / "quota.db", max_bytes=10)
    sql_store.put("a", "12345")
    sql_store.put("a", "1234567890")
    with pytest.raises(PersistenceFull) as excinfo:
        sql_store.put("b", "x")
    assert excinfo.value.required_bytes == 1
    assert excinfo.value.available_bytes == 0


def test_full_store_evicts_other_patients(tmp_path: Path) -> None:
    first = serialize(build_document("patient-1"))
    store = build_store(tmp_path, max_bytes=len(first.encode("utf-8")) + 100)
    assert store.save(build_document("patient-1"))
    assert store.save(build_document("patient-2"))

    assert store.load("patient-1") is None
    assert store.load("patient-2") is not None


def test_save_fails_softly_when_document_cannot_fit(tmp_path: Path) -> None:
    store = build_store(tmp_path, max_bytes=50)
    assert not store.save(build_document())
    assert store.sql_store.keys() == []


def test_load_or_build_persists_fallback(tmp_path: Path) -> None:
    store = build_store(tmp_path)

    class EmptyBuilder:
        def build_or_empty(self, patient_id: str) -> LongitudinalDocument:
            return LongitudinalDocument.create(patient_id, now=NOW)

    document = store.load_or_build("patient-9", EmptyBuilder())
    assert document.patient_id == "patient-9"
    assert store.sql_store.keys() == [document_key("patient-9")]
