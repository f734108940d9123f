"""Contradiction detection between newly arriving and recorded clinical facts."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from knowledge.rules import RuleSet
from knowledge.timeutil import utc_now
from knowledge.types.session import ConflictItem, ConflictRecord, Severity

logger = logging.getLogger("lckb.conflicts")


class ConflictCandidate(BaseModel):
    """Unlogged conflict produced by one rule family."""

    item_a: ConflictItem
    item_b: ConflictItem
    severity: Severity = "warning"
    rule: str
    invalidates: str | None = None


def conflict_flag_text(item_a: str, item_b: str) -> str:
    return f"CONFLICT: {item_a[:80]} vs {item_b[:80]}"


class ConflictDetector:
    """Run the no-data, contraindication and assessment rule families."""

    def __init__(
        self,
        document: Any,
        rules: RuleSet | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.document = document
        self.rules = rules or RuleSet()
        self.clock = clock

    @property
    def session(self):
        return self.document.session_context

    # ── detection ────────────────────────────────────────────────────

    def detect(self, text: str, source: str = "new") -> list[ConflictCandidate]:
        """All candidates from every rule family, in family order."""
        if not text or not text.strip():
            return []
        candidates: list[ConflictCandidate] = []
        candidates.extend(self._no_data_conflicts(text, source))
        candidates.extend(self._contraindication_conflicts(text, source))
        candidates.extend(self._assessment_contradictions(text, source))
        return candidates

    def _observation_item(self, observation) -> ConflictItem:
        return ConflictItem(text=observation.text, source="aiObservation", timestamp=observation.timestamp)

    def _no_data_conflicts(self, text: str, source: str) -> list[ConflictCandidate]:
        new_is_no_data = self.rules.is_no_data(text)
        new_has_data = self.rules.asserts_data(text)
        if not new_is_no_data and not new_has_data:
            return []
        now = self.clock()
        found = []
        for observation in self.session.active_observations():
            existing_is_no_data = self.rules.is_no_data(observation.text)
            existing_has_data = self.rules.asserts_data(observation.text)
            if not ((new_is_no_data and existing_has_data) or (new_has_data and existing_is_no_data)):
                continue
            found.append(
                ConflictCandidate(
                    item_a=self._observation_item(observation),
                    item_b=ConflictItem(text=text, source=source, timestamp=now),
                    severity="warning",
                    rule="no_data",
                    invalidates=observation.id if existing_is_no_data and new_has_data else None,
                )
            )
        return found

    def _clinical_sources(self) -> list[ConflictItem]:
        sources = [self._observation_item(o) for o in self.session.active_observations()]
        sources.extend(
            ConflictItem(text=d.text, source="doctorDictation", timestamp=d.timestamp)
            for d in self.session.doctor_dictation
        )
        for timeline in self.document.problem_matrix.values():
            problem = timeline.problem
            sources.append(
                ConflictItem(text=f"{problem.name} [{problem.status}] {problem.notes}".strip(), source="problemList")
            )
        sources.extend(
            ConflictItem(text=m.text, source="nurseConversation", timestamp=m.timestamp)
            for m in self.session.nurse_conversation
        )
        return sources

    def _contraindication_conflicts(self, text: str, source: str) -> list[ConflictCandidate]:
        found = []
        sources: list[ConflictItem] | None = None
        for rule in self.rules.contraindication_rules:
            if not any(self.rules.mentions_phrase(text, medication) for medication in rule.medications):
                continue
            if sources is None:
                sources = self._clinical_sources()
            for item in sources:
                if not any(self.rules.mentions_phrase(item.text, phrase) for phrase in rule.contraindications):
                    continue
                found.append(
                    ConflictCandidate(
                        item_a=ConflictItem(
                            text=f"Medication discussed: {text[:150]}", source=source, timestamp=self.clock()
                        ),
                        item_b=ConflictItem(
                            text=f"Contraindication: {item.text[:150]}", source=item.source, timestamp=item.timestamp
                        ),
                        severity=rule.severity,
                        rule=rule.name,
                    )
                )
                # One conflict per rule.
                break
        return found

    def _assessment_contradictions(self, text: str, source: str) -> list[ConflictCandidate]:
        found = []
        for observation in self.session.active_observations():
            for term_a, term_b in self.rules.opposite_terms:
                crossed = (
                    self.rules.mentions_keyword(text, term_a) and self.rules.mentions_keyword(observation.text, term_b)
                ) or (
                    self.rules.mentions_keyword(text, term_b) and self.rules.mentions_keyword(observation.text, term_a)
                )
                if not crossed or not self.rules.shares_clinical_topic(text, observation.text):
                    continue
                found.append(
                    ConflictCandidate(
                        item_a=self._observation_item(observation),
                        item_b=ConflictItem(text=text, source=source, timestamp=self.clock()),
                        severity="warning",
                        rule="assessment",
                    )
                )
                break
        return found

    # ── logging ──────────────────────────────────────────────────────

    def log(self, candidate: ConflictCandidate) -> ConflictRecord | None:
        """Record a candidate unless the same unresolved pair is already logged."""
        for existing in self.session.unresolved_conflicts():
            if existing.item_a.text == candidate.item_a.text and existing.item_b.text == candidate.item_b.text:
                return None
        record = ConflictRecord(
            id=f"conflict_{uuid.uuid4().hex[:12]}",
            item_a=candidate.item_a,
            item_b=candidate.item_b,
            severity=candidate.severity,
            detected_at=self.clock(),
        )
        self.session.conflicts.append(record)
        if record.severity == "critical":
            self.session.add_flag(
                conflict_flag_text(record.item_a.text, record.item_b.text), "critical", timestamp=self.clock()
            )
        logger.info(
            "Conflict detected (%s, %s): %s vs %s",
            record.severity,
            candidate.rule,
            record.item_a.text,
            record.item_b.text,
        )
        return record

    def check(self, text: str, source: str = "new") -> list[ConflictRecord]:
        """Detect, auto-invalidate disproven no-data observations, then log."""
        logged = []
        for candidate in self.detect(text, source):
            if candidate.invalidates:
                observation = self.session.get_observation(candidate.invalidates)
                if observation is not None and observation.is_active:
                    observation.status = "invalidated"
                    logger.info("Invalidated observation %s: %s", observation.id, observation.text)
            record = self.log(candidate)
            if record is not None:
                logged.append(record)
        return logged

    def resolve(self, conflict_id: str, resolution: str) -> bool:
        for record in self.session.conflicts:
            if record.id != conflict_id:
                continue
            if record.is_resolved:
                return False
            record.resolved_at = self.clock()
            record.resolution = resolution
            logger.info("Resolved conflict %s: %s", conflict_id, resolution)
            return True
        return False
