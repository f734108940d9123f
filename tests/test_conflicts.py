"""Conflict detection tests."""

from __future__ import annotations

from datetime import UTC, datetime

from knowledge.consolidation.conflict_detector import ConflictCandidate
from knowledge.document import LongitudinalDocument
from knowledge.types.session import ConflictItem
from knowledge.updater import DocumentUpdater

NOW = datetime(2026, 3, 10, 14, 0, tzinfo=UTC)


def build_updater() -> DocumentUpdater:
    document = LongitudinalDocument.create("patient-1", now=NOW)
    return DocumentUpdater(document, clock=lambda: NOW)


def test_anticoagulation_dictation_against_gi_bleed_observation() -> None:
    updater = build_updater()
    updater.add_ai_observation("GI bleed — anticoagulation contraindicated")
    updater.add_doctor_dictation("Plan to start anticoagulation for the new clot")

    session = updater.document.session_context
    critical = [c for c in session.conflicts if c.severity == "critical"]
    assert len(critical) == 1
    assert critical[0].item_a.text.startswith("Medication discussed: Plan to start anticoagulation")
    assert critical[0].item_b.text == "Contraindication: GI bleed — anticoagulation contraindicated"
    assert any(f.text.startswith("CONFLICT: Medication discussed") and f.severity == "critical" for f in session.safety_flags)


def test_same_unresolved_pair_is_logged_once() -> None:
    updater = build_updater()
    candidate = ConflictCandidate(
        item_a=ConflictItem(text="Patient on warfarin"),
        item_b=ConflictItem(text="Active bleeding noted"),
        severity="critical",
        rule="anticoagulant",
    )
    first = updater.conflicts.log(candidate)
    assert first is not None
    assert updater.conflicts.log(candidate) is None
    assert len(updater.document.session_context.conflicts) == 1
    assert len(updater.document.session_context.safety_flags) == 1

    assert updater.resolve_conflict(first.id, "Warfarin held")
    assert not updater.resolve_conflict(first.id, "again")
    assert not updater.resolve_conflict("conflict_missing", "n/a")
    assert updater.conflicts.log(candidate) is not None
    assert len(updater.document.session_context.unresolved_conflicts()) == 1


def test_lab_panel_invalidates_no_data_observation() -> None:
    updater = build_updater()
    observation_id = updater.add_ai_observation("No labs available yet")
    updater.add_lab_results(
        {"collectedDate": NOW.isoformat(), "results": [{"name": "Sodium", "value": 138, "unit": "mEq/L"}]}
    )

    session = updater.document.session_context
    assert session.get_observation(observation_id).status == "invalidated"
    assert not any(updater.rules.is_no_data(o.text) for o in session.active_observations())


def test_opposite_assessment_on_shared_topic() -> None:
    updater = build_updater()
    updater.add_ai_observation("Heart failure improving on diuretics")
    logged = updater.conflicts.check("Heart failure worsening, increase furosemide", source="doctorDictation")
    assert len(logged) == 1
    assert logged[0].severity == "warning"
    assert logged[0].item_a.text == "Heart failure improving on diuretics"


def test_word_boundaries_keep_uncontrolled_apart_from_controlled() -> None:
    updater = build_updater()
    updater.add_ai_observation("Diabetes uncontrolled")
    assert updater.conflicts.detect("Diabetes uncontrolled, A1c rising") == []
    assert len(updater.conflicts.detect("Diabetes controlled on insulin")) == 1


def test_unrelated_topics_do_not_contradict() -> None:
    updater = build_updater()
    updater.add_ai_observation("Pneumonia improving")
    assert updater.conflicts.detect("Gout worsening in left knee") == []


def test_nurse_message_runs_conflict_detection() -> None:
    updater = build_updater()
    updater.add_ai_observation("Active bleeding from GI source")
    logged = updater.sync_nurse_conversation(
        [
            {"role": "user", "content": "How is the patient?"},
            {"role": "assistant", "content": "Should I hang the heparin drip now?"},
        ]
    )
    assert len(logged) == 1
    assert logged[0].severity == "critical"
    assert [m.role for m in updater.document.session_context.nurse_conversation] == ["doctor", "nurse"]


def test_contraindication_phrase_needs_a_word_start() -> None:
    updater = build_updater()
    updater.add_doctor_dictation("Patient taking metoprolol at home, tolerating well")

    assert updater.conflicts.check("Consider ibuprofen for knee pain", source="doctorDictation") == []
    assert updater.document.session_context.safety_flags == []

    updater.add_ai_observation("AKI on admission, creatinine rising")
    logged = updater.conflicts.check("Consider ibuprofen for knee pain", source="doctorDictation")
    assert [record.severity for record in logged] == ["critical"]
    assert logged[0].item_b.text == "Contraindication: AKI on admission, creatinine rising"
