"""Structured observation and active-state tier tests."""

from __future__ import annotations

from datetime import UTC, datetime

from knowledge.document import LongitudinalDocument
from knowledge.limits import KnowledgeLimits
from knowledge.rules import normalize_text
from knowledge.updater import DocumentUpdater

NOW = datetime(2026, 3, 10, 14, 0, tzinfo=UTC)


def build_updater(limits: KnowledgeLimits | None = None) -> DocumentUpdater:
    document = LongitudinalDocument.create("patient-1", now=NOW)
    return DocumentUpdater(document, limits=limits, clock=lambda: NOW)


def tier_texts(updater: DocumentUpdater) -> dict[str, list[str]]:
    state = updater.document.session_context.active_clinical_state
    return {
        "decisions": [normalize_text(d.text) for d in state.pending_decisions],
        "conditions": [normalize_text(c.text) for c in state.active_conditions],
        "facts": [normalize_text(f.text) for f in state.background_facts],
    }


def test_observation_dedup_by_normalized_text() -> None:
    updater = build_updater()
    first = updater.add_ai_observation("Wound healing well")
    assert first is not None and first.startswith("obs_")
    assert updater.add_ai_observation("  wound   HEALING well ") is None
    assert len(updater.document.session_context.ai_observations) == 1


def test_supersede_links_replacement_and_bumps_version() -> None:
    updater = build_updater()
    old_id = updater.add_ai_observation("Edema 2+ bilateral lower extremities")
    new_id = updater.supersede_observation(old_id, "Edema 1+ after diuresis")

    session = updater.document.session_context
    old = session.get_observation(old_id)
    new = session.get_observation(new_id)
    assert old.status == "superseded"
    assert old.superseded_by == new_id
    assert new.version == 2
    assert [o.id for o in session.active_observations()] == [new_id]


def test_tiers_are_mutually_exclusive() -> None:
    updater = build_updater()
    updater.add_pending_decision("Consider IV diuresis")
    updater.add_background_fact("consider  IV diuresis")
    assert tier_texts(updater) == {"decisions": [], "conditions": [], "facts": ["consider iv diuresis"]}

    updater.add_active_condition("Consider IV diuresis", trend="new")
    assert tier_texts(updater) == {"decisions": [], "conditions": ["consider iv diuresis"], "facts": []}

    updater.add_pending_decision("Consider IV diuresis")
    assert tier_texts(updater) == {"decisions": ["consider iv diuresis"], "conditions": [], "facts": []}


def test_pending_decision_dedup_only_against_open_decisions() -> None:
    updater = build_updater()
    decision_id = updater.add_pending_decision("Start heparin drip?", raised_by="nurse")
    assert updater.add_pending_decision("start heparin drip?") is None

    assert updater.resolve_pending_decision(decision_id, "Deferred pending GI consult")
    state = updater.document.session_context.active_clinical_state
    assert state.pending_decisions[0].is_resolved
    assert state.open_decisions() == []
    assert updater.add_pending_decision("Start heparin drip?") is not None
    assert not updater.resolve_pending_decision("pd_missing", "n/a")


def test_active_condition_upsert_updates_trend() -> None:
    updater = build_updater()
    updater.add_active_condition("Acute kidney injury", trend="new")
    condition = updater.add_active_condition("acute kidney injury", trend="improving")
    conditions = updater.document.session_context.active_clinical_state.active_conditions
    assert len(conditions) == 1
    assert condition is conditions[0]
    assert conditions[0].trend == "improving"
    assert not updater.add_background_fact("  ")


def test_conversation_windows_keep_recent_messages() -> None:
    updater = build_updater(KnowledgeLimits(conversation_window=3))
    messages = [{"role": "user" if i % 2 else "assistant", "content": f"message {i}"} for i in range(5)]
    updater.sync_patient_conversation(messages)

    window = updater.document.session_context.patient_conversation
    assert [m.text for m in window] == ["message 2", "message 3", "message 4"]
    assert [m.role for m in window] == ["patient", "doctor", "patient"]


def test_narrative_helpers() -> None:
    updater = build_updater()
    updater.set_trajectory_assessment("Improving on current regimen")
    assert updater.add_open_question("Repeat BMP in AM?")
    assert not updater.add_open_question("Repeat BMP in AM?")
    assert updater.remove_open_question("Repeat BMP in AM?")

    narrative = updater.document.clinical_narrative
    assert narrative.trajectory_assessment == "Improving on current regimen"
    assert narrative.open_questions == []
