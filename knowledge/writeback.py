"""Merge externally computed reasoning results into narrative and AI memory."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from knowledge.consolidation.conflict_detector import ConflictCandidate
from knowledge.rules import normalize_text
from knowledge.types import ConflictItem, ConflictRecord, InteractionLogEntry, MemoryUpdate, NarrativeUpdate
from knowledge.updater import DocumentUpdater

logger = logging.getLogger("lckb.writeback")

_MEMORY_BLOCK = re.compile(r"<memory_update>\s*(.*?)\s*</memory_update>", flags=re.DOTALL)
_JSON_OBJECT = re.compile(r"\{.*\}", flags=re.DOTALL)
_MEMORY_BLOCK_KEYS = ("patientSummaryUpdate", "problemInsightUpdates", "interactionDigest")
_TOP_LEVEL_KEYS = _MEMORY_BLOCK_KEYS[:2] + ("memoryClassification", "conflictsDetected")


def _load_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def parse_memory_updates(response_text: str) -> MemoryUpdate:
    """Pull memory updates from a ``<memory_update>`` block and/or a top-level JSON object."""
    merged: dict[str, Any] = {}
    text = response_text or ""

    block = _MEMORY_BLOCK.search(text)
    if block:
        payload = _load_object(block.group(1))
        if payload is None:
            logger.warning("Failed to parse memory_update block")
        else:
            merged.update({key: payload[key] for key in _MEMORY_BLOCK_KEYS if payload.get(key)})

    outer = _JSON_OBJECT.search(_MEMORY_BLOCK.sub("", text))
    if outer:
        payload = _load_object(outer.group(0))
        if payload is not None:
            merged.update({key: payload[key] for key in _TOP_LEVEL_KEYS if payload.get(key)})

    try:
        return MemoryUpdate.model_validate(merged)
    except ValidationError as exc:
        logger.warning("Discarding malformed memory update: %s", exc.errors()[0]["msg"])
        return MemoryUpdate()


def parse_narrative_update(response_text: str) -> NarrativeUpdate:
    """Top-level JSON narrative fields, or an empty update."""
    outer = _JSON_OBJECT.search(_MEMORY_BLOCK.sub("", response_text or ""))
    payload = _load_object(outer.group(0)) if outer else None
    if payload is None:
        return NarrativeUpdate()
    try:
        return NarrativeUpdate.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Discarding malformed narrative update: %s", exc.errors()[0]["msg"])
        return NarrativeUpdate()


class MemoryWriter:
    """Additive write-back into narrative, AI memory and session tiers."""

    def __init__(self, updater: DocumentUpdater) -> None:
        self.updater = updater

    @property
    def document(self):
        return self.updater.document

    def write_back(self, result: NarrativeUpdate | Mapping[str, Any]) -> None:
        """Replace trajectory, merge findings and replace open questions."""
        update = result if isinstance(result, NarrativeUpdate) else NarrativeUpdate.model_validate(dict(result))
        narrative = self.document.clinical_narrative
        if update.trajectory_assessment:
            narrative.trajectory_assessment = update.trajectory_assessment
        if update.key_findings:
            for finding in update.key_findings:
                if finding not in narrative.key_findings:
                    narrative.key_findings.append(finding)
            self.updater.prune_key_findings(self.updater.limits.max_key_findings)
        if update.open_questions is not None:
            narrative.open_questions = list(update.open_questions)
        self.document.touch(self.updater.clock())

    def write_back_memory_updates(
        self,
        update: MemoryUpdate | Mapping[str, Any] | None,
        interaction_type: str,
        input_summary: str = "",
    ) -> None:
        """Merge memory updates and append to the interaction log."""
        if update is None:
            update = MemoryUpdate()
        elif not isinstance(update, MemoryUpdate):
            update = MemoryUpdate.model_validate(dict(update))
        memory = self.document.ai_memory
        now = self.updater.clock()

        if update.patient_summary_update:
            memory.patient_summary = update.patient_summary_update
            memory.summary_version += 1
            memory.summary_updated_at = now

        for insight in update.problem_insight_updates:
            memory.problem_insights[insight.problem_id] = insight.insight

        summary = update.interaction_digest or (input_summary or "")[:100]
        memory.interaction_log.append(InteractionLogEntry(type=interaction_type, summary=summary, timestamp=now))
        del memory.interaction_log[: max(0, len(memory.interaction_log) - self.updater.limits.max_interaction_log)]

        if update.memory_classification is not None:
            self._apply_classification(update.memory_classification)

        for reported in update.conflicts_detected:
            self._log_reported_conflict(reported.description, reported.severity, interaction_type)

        self.document.touch(now)
        logger.info("Wrote back %s memory update (summary v%d)", interaction_type, memory.summary_version)

    def _apply_classification(self, classification) -> None:
        for text in classification.pending_decisions:
            self.updater.add_pending_decision(text, raised_by="ai")
        for condition in classification.active_conditions:
            self.updater.add_active_condition(condition.text, condition.trend)
        for text in classification.background_facts:
            self.updater.add_background_fact(text, source="ai")
        targets = {normalize_text(text) for text in classification.superseded_observations}
        for observation in self.document.session_context.active_observations():
            if normalize_text(observation.text) in targets:
                self.updater.supersede_observation(observation.id)

    def _log_reported_conflict(self, description: str, severity: str, interaction_type: str) -> ConflictRecord | None:
        now = self.updater.clock()
        candidate = ConflictCandidate(
            item_a=ConflictItem(text=description, source="ai", timestamp=now),
            item_b=ConflictItem(text=f"Reported during {interaction_type}", source=interaction_type, timestamp=now),
            severity=severity,
            rule="reported",
        )
        return self.updater.conflicts.log(candidate)
