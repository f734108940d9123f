"""Retention policy for AI observations."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from knowledge.limits import KnowledgeLimits
from knowledge.rules import RuleSet
from knowledge.timeutil import utc_now
from knowledge.types.session import AIObservation

logger = logging.getLogger("lckb.pruning")


class ObservationPruner:
    """Invalidates disproven, supersedes stale, caps active and drops old inactive entries."""

    def __init__(
        self,
        document: Any,
        rules: RuleSet | None = None,
        limits: KnowledgeLimits | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.document = document
        self.rules = rules or RuleSet()
        self.limits = limits or KnowledgeLimits()
        self.clock = clock

    def run(self) -> dict[str, int]:
        """Apply every retention rule once; repeated runs are no-ops."""
        counts = {"invalidated": 0, "superseded_stale": 0, "superseded_cap": 0, "removed": 0}
        observations = self.document.session_context.ai_observations
        if not observations:
            return counts

        stale_cutoff = self.clock() - timedelta(hours=self.limits.stale_observation_hours)
        for observation in observations:
            if not observation.is_active:
                continue
            if self.rules.is_no_data(observation.text) and self._has_data_now(observation):
                observation.status = "invalidated"
                counts["invalidated"] += 1
                continue
            if observation.timestamp < stale_cutoff:
                newer = self._newest_on_same_topic(observation, observations)
                if newer is not None:
                    observation.status = "superseded"
                    observation.superseded_by = newer.id
                    counts["superseded_stale"] += 1

        active = sorted((o for o in observations if o.is_active), key=lambda o: o.timestamp)
        excess = len(active) - self.limits.max_active_observations
        for observation in active[: max(0, excess)]:
            observation.status = "superseded"
            counts["superseded_cap"] += 1

        inactive = sorted((o for o in observations if not o.is_active), key=lambda o: o.timestamp)
        excess = len(inactive) - self.limits.max_inactive_observations
        if excess > 0:
            doomed = {id(o) for o in inactive[:excess]}
            observations[:] = [o for o in observations if id(o) not in doomed]
            counts["removed"] = excess

        if any(counts.values()):
            logger.info("Pruned observations for patient %s: %s", self.document.patient_id, counts)
        return counts

    def _has_data_now(self, observation: AIObservation) -> bool:
        data = self.document.longitudinal_data
        text = observation.text
        for name, series in data.labs.items():
            if series.values and self.rules.mentions_keyword(text, name):
                return True
        if data.labs and any(s.values for s in data.labs.values()):
            if self.rules.mentions_keyword(text, "lab") or self.rules.mentions_keyword(text, "labs"):
                return True
        if data.vitals and ("vital" in text.lower()):
            return True
        if self.rules.is_general_no_data(text) and self.document.has_any_data():
            return True
        return False

    def _newest_on_same_topic(
        self, observation: AIObservation, observations: list[AIObservation]
    ) -> AIObservation | None:
        newest = None
        for other in observations:
            if other is observation or not other.is_active or other.timestamp <= observation.timestamp:
                continue
            if not self.rules.shares_clinical_topic(observation.text, other.text):
                continue
            if newest is None or other.timestamp > newest.timestamp:
                newest = other
        return newest
