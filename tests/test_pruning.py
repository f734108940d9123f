"""Observation pruning and key finding scoring tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from knowledge.document import LongitudinalDocument
from knowledge.limits import KnowledgeLimits
from knowledge.rules import RuleSet
from knowledge.scoring import prune_key_findings
from knowledge.updater import DocumentUpdater

START = datetime(2026, 3, 10, 8, 0, tzinfo=UTC)


class StepClock:
    """Deterministic clock the tests move forward by hand."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def build_updater(limits: KnowledgeLimits | None = None) -> tuple[DocumentUpdater, StepClock]:
    clock = StepClock(START)
    document = LongitudinalDocument.create("patient-1", now=START)
    return DocumentUpdater(document, limits=limits, clock=clock), clock


def test_active_observations_never_exceed_cap() -> None:
    updater, clock = build_updater()
    session = updater.document.session_context
    for index in range(35):
        updater.add_ai_observation(f"Wound check number {index} unremarkable")
        clock.advance(minutes=1)
        assert len(session.active_observations()) <= 30
    assert len(session.active_observations()) == 30
    assert session.get_observation(session.ai_observations[0].id).status == "superseded"


def test_inactive_observations_are_removed_past_cap() -> None:
    updater, clock = build_updater(KnowledgeLimits(max_active_observations=2, max_inactive_observations=1))
    for index in range(5):
        updater.add_ai_observation(f"Skin check number {index}")
        clock.advance(minutes=1)
    observations = updater.document.session_context.ai_observations
    assert len([o for o in observations if o.is_active]) == 2
    assert len([o for o in observations if not o.is_active]) == 1
    assert [o.text for o in observations if o.is_active] == ["Skin check number 3", "Skin check number 4"]


def test_stale_observation_superseded_by_newer_same_topic() -> None:
    updater, clock = build_updater()
    old_id = updater.add_ai_observation("Heart failure stable on home regimen")
    clock.advance(hours=5)
    new_id = updater.add_ai_observation("Heart failure exacerbation on admission")

    old = updater.document.session_context.get_observation(old_id)
    assert old.status == "superseded"
    assert old.superseded_by == new_id


def test_no_vitals_observation_invalidated_once_vitals_exist() -> None:
    updater, _ = build_updater()
    observation_id = updater.add_ai_observation("No vitals recorded yet")
    updater.add_vitals({"timestamp": START, "heart_rate": 80})

    counts = updater.prune_observations()
    assert counts["invalidated"] == 1
    assert updater.document.session_context.get_observation(observation_id).status == "invalidated"
    assert updater.prune_observations() == {
        "invalidated": 0,
        "superseded_stale": 0,
        "superseded_cap": 0,
        "removed": 0,
    }


def test_key_findings_ranked_by_relevance() -> None:
    findings = ["Critical hyperkalemia"] + [f"Routine note {i}" for i in range(5)] + ["No data available for imaging"]
    kept = prune_key_findings(findings, 3, RuleSet())
    assert kept == ["Critical hyperkalemia", "Routine note 4", "Routine note 3"]
    assert prune_key_findings(findings[:2], 3, RuleSet()) == findings[:2]


def test_key_findings_cap_applies_on_insert() -> None:
    updater, _ = build_updater(KnowledgeLimits(max_key_findings=2))
    updater.add_nursing_note("Acute confusion overnight. Worsening edema.")
    updater.add_nursing_note("Unstable gait noted.")
    assert len(updater.document.clinical_narrative.key_findings) == 2
