"""Reasoning write-back parsing and merge tests."""

from __future__ import annotations

import json
from datetime import UTC, datetime

from knowledge.document import LongitudinalDocument
from knowledge.limits import KnowledgeLimits
from knowledge.rules import normalize_text
from knowledge.updater import DocumentUpdater
from knowledge.writeback import MemoryWriter, parse_memory_updates, parse_narrative_update

NOW = datetime(2026, 3, 10, 14, 0, tzinfo=UTC)


def build_writer(limits: KnowledgeLimits | None = None) -> MemoryWriter:
    document = LongitudinalDocument.create("patient-1", now=NOW)
    return MemoryWriter(DocumentUpdater(document, limits=limits, clock=lambda: NOW))


def test_parse_memory_block_and_top_level_json() -> None:
    block = {
        "patientSummaryUpdate": "68M with HFrEF admitted for volume overload",
        "problemInsightUpdates": [{"problemId": 7, "insight": "Diuresing well"}],
        "interactionDigest": "Reviewed overnight events",
    }
    outer = {
        "trajectoryAssessment": "Improving",
        "memoryClassification": {"pendingDecisions": ["Transition to oral diuretic?"]},
        "conflictsDetected": [{"description": "Weight up despite diuresis", "severity": "URGENT"}],
    }
    response = f"Summary text.\n<memory_update>{json.dumps(block)}</memory_update>\n{json.dumps(outer)}"

    update = parse_memory_updates(response)
    assert update.patient_summary_update == block["patientSummaryUpdate"]
    assert update.problem_insight_updates[0].problem_id == "7"
    assert update.interaction_digest == "Reviewed overnight events"
    assert update.memory_classification.pending_decisions == ["Transition to oral diuretic?"]
    assert update.conflicts_detected[0].severity == "warning"

    narrative = parse_narrative_update(response)
    assert narrative.trajectory_assessment == "Improving"
    assert narrative.open_questions is None


def test_unparseable_responses_yield_empty_updates() -> None:
    assert parse_memory_updates("no structure here").is_empty()
    assert parse_memory_updates("<memory_update>{broken</memory_update>").is_empty()
    assert parse_memory_updates("").is_empty()
    assert parse_narrative_update("{not json}").trajectory_assessment is None


def test_write_back_merges_findings_and_replaces_questions() -> None:
    writer = build_writer(KnowledgeLimits(max_key_findings=3))
    narrative = writer.document.clinical_narrative
    narrative.key_findings = ["Creatinine rising"]
    narrative.open_questions = ["Old question"]

    writer.write_back(
        {
            "trajectoryAssessment": "Worsening renal function",
            "keyFindings": ["Creatinine rising", "Urine output low", {"text": "Edema improving"}],
            "openQuestions": ["Nephrology consult?"],
        }
    )
    assert narrative.trajectory_assessment == "Worsening renal function"
    assert sorted(narrative.key_findings) == ["Creatinine rising", "Edema improving", "Urine output low"]
    assert narrative.open_questions == ["Nephrology consult?"]

    writer.write_back({"keyFindings": ["Critical hyperkalemia"]})
    assert len(narrative.key_findings) == 3
    assert "Critical hyperkalemia" in narrative.key_findings
    assert narrative.trajectory_assessment == "Worsening renal function"
    assert narrative.open_questions == ["Nephrology consult?"]


def test_memory_updates_bump_summary_and_log_interactions() -> None:
    writer = build_writer(KnowledgeLimits(max_interaction_log=2))
    memory = writer.document.ai_memory

    writer.write_back_memory_updates(
        {"patientSummaryUpdate": "Stable overnight", "problemInsightUpdates": [{"problemId": "p1", "insight": "At goal"}]},
        "ask",
    )
    assert memory.patient_summary == "Stable overnight"
    assert memory.summary_version == 1
    assert memory.summary_updated_at == NOW
    assert memory.problem_insights == {"p1": "At goal"}

    writer.write_back_memory_updates(None, "chat", input_summary="x" * 150)
    writer.write_back_memory_updates({"interactionDigest": "Discussed discharge"}, "chat")
    assert memory.summary_version == 1
    assert [(e.type, e.summary) for e in memory.interaction_log] == [("chat", "x" * 100), ("chat", "Discussed discharge")]


def test_memory_classification_routes_into_tiers() -> None:
    writer = build_writer()
    updater = writer.updater
    stale_id = updater.add_ai_observation("Pain controlled on oral regimen")

    writer.write_back_memory_updates(
        {
            "memoryClassification": {
                "pendingDecisions": ["Start PCA pump?"],
                "activeConditions": ["Post-op ileus", {"text": "Hypokalemia", "trend": "IMPROVING"}],
                "backgroundFacts": [{"text": "Lives alone"}],
                "supersededObservations": ["pain controlled on oral  regimen"],
            }
        },
        "ask",
    )
    state = writer.document.session_context.active_clinical_state
    assert [d.text for d in state.open_decisions()] == ["Start PCA pump?"]
    assert [(c.text, c.trend) for c in state.active_conditions] == [("Post-op ileus", "stable"), ("Hypokalemia", "improving")]
    assert [normalize_text(f.text) for f in state.background_facts] == ["lives alone"]
    assert writer.document.session_context.get_observation(stale_id).status == "superseded"


def test_reported_conflicts_are_logged_once() -> None:
    writer = build_writer()
    update = {"conflictsDetected": [{"description": "Allergy to penicillin but ampicillin ordered", "severity": "critical"}]}
    writer.write_back_memory_updates(update, "ask")
    writer.write_back_memory_updates(update, "ask")

    conflicts = writer.document.session_context.conflicts
    assert len(conflicts) == 1
    assert conflicts[0].severity == "critical"
    assert conflicts[0].item_a.text == "Allergy to penicillin but ampicillin ordered"
