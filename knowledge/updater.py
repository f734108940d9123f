"""Ingestion and mutation engine for a longitudinal document."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from knowledge.consolidation.conflict_detector import ConflictDetector
from knowledge.consolidation.pruning import ObservationPruner
from knowledge.document import LongitudinalDocument
from knowledge.errors import DUPLICATE_IGNORED, InvalidEvent
from knowledge.limits import KnowledgeLimits
from knowledge.rules import RuleSet, normalize_text
from knowledge.scoring import prune_key_findings
from knowledge.timeutil import utc_now
from knowledge.types.events import (
    VITAL_FIELDS,
    DictationEvent,
    LabPanelEvent,
    LabResult,
    MedicationChangeEvent,
    NoteEvent,
    VitalsEvent,
    parse_event,
)
from knowledge.types.problem import MedicationChange
from knowledge.types.session import (
    ActiveCondition,
    AIObservation,
    BackgroundFact,
    ConflictRecord,
    ConversationMessage,
    DictationEntry,
    PendingDecision,
    SafetyFlag,
)
from knowledge.types.trend import format_number, to_number
from knowledge.types.writeback import AIStateSync

logger = logging.getLogger("lckb.updater")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _coerce(model: type[ModelT], payload: Any) -> ModelT:
    if isinstance(payload, model):
        return payload
    if not isinstance(payload, Mapping):
        raise InvalidEvent(f"{model.__name__} payload must be a mapping, got {type(payload).__name__}")
    try:
        return model.model_validate(dict(payload))
    except ValidationError as exc:
        raise InvalidEvent(f"Invalid {model.__name__}: {exc.errors()[0]['msg']}") from exc


def _display_value(value: Any) -> str:
    number = to_number(value)
    return format_number(number) if number is not None else str(value)


class DocumentUpdater:
    """Applies one event at a time to a document, deriving flags, conflicts and pruning."""

    def __init__(
        self,
        document: LongitudinalDocument,
        rules: RuleSet | None = None,
        limits: KnowledgeLimits | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.document = document
        self.rules = rules or RuleSet()
        self.limits = limits or KnowledgeLimits()
        self.clock = clock
        self.conflicts = ConflictDetector(document, self.rules, clock)
        self.pruner = ObservationPruner(document, self.rules, self.limits, clock)

    @property
    def session(self):
        return self.document.session_context

    @property
    def narrative(self):
        return self.document.clinical_narrative

    def _touch(self) -> None:
        self.document.touch(self.clock())

    # ── event dispatch ───────────────────────────────────────────────

    def ingest(self, event: Mapping[str, Any] | BaseModel) -> Any:
        """Validate a tagged event and route it to its ingestion method."""
        parsed = parse_event(event)
        if isinstance(parsed, VitalsEvent):
            return self.add_vitals(parsed)
        if isinstance(parsed, LabPanelEvent):
            return self.add_lab_results(parsed)
        if isinstance(parsed, NoteEvent):
            return self.add_nursing_note(parsed)
        if isinstance(parsed, DictationEvent):
            return self.add_doctor_dictation(parsed.text, timestamp=parsed.timestamp)
        if isinstance(parsed, MedicationChangeEvent):
            return self.add_medication_change(parsed)
        raise InvalidEvent(f"Unsupported event kind {getattr(parsed, 'kind', None)!r}")

    # ── vitals ───────────────────────────────────────────────────────

    def add_vitals(self, reading: VitalsEvent | Mapping[str, Any]) -> bool:
        """Record a reading and raise threshold flags; False for duplicates or empty readings."""
        event = _coerce(VitalsEvent, reading)
        stored = self.document.record_vitals(event, now=self.clock(), rules=self.rules, limits=self.limits)
        if stored is None:
            logger.debug("Ignoring duplicate or empty vitals reading at %s", event.timestamp)
            return False
        self._check_vital_alerts(stored)
        self._touch()
        return True

    def _check_vital_alerts(self, reading: VitalsEvent) -> list[SafetyFlag]:
        context = {field: "?" for field in VITAL_FIELDS}
        context.update({field: format_number(value) for field, value in reading.measurements().items()})
        raised = []
        for threshold in self.rules.vital_thresholds:
            value = getattr(reading, threshold.field, None)
            if value is None:
                continue
            if threshold.high is not None and value > threshold.high:
                label = threshold.high_label
                critical = threshold.critical_high is not None and value > threshold.critical_high
            elif threshold.low is not None and value < threshold.low:
                label = threshold.low_label
                critical = threshold.critical_low is not None and value < threshold.critical_low
            else:
                continue
            severity = "critical" if critical else threshold.severity
            text = threshold.template.format(label=label, value=format_number(value), **context)
            flag = self.add_safety_flag(text, severity)
            if flag is not None:
                raised.append(flag)
        return raised

    # ── labs ─────────────────────────────────────────────────────────

    def add_lab_results(self, panel: LabPanelEvent | Mapping[str, Any]) -> int:
        """Apply every result of a panel; returns how many changed the document."""
        event = _coerce(LabPanelEvent, panel)
        if not event.results:
            return 0
        now = self.clock()
        applied = 0
        for result in event.results:
            if self.document.record_lab_result(result, event.collected, now=now, rules=self.rules, limits=self.limits):
                applied += 1
            self._check_lab_alerts(result)
            detection_text = f"Lab result: {result.name} = {_display_value(result.value)} {result.unit}".strip()
            self.conflicts.check(detection_text, source="lab")
        self._touch()
        logger.info("Applied lab panel %s: %d of %d results new", event.name or "unnamed", applied, len(event.results))
        return applied

    def _check_lab_alerts(self, result: LabResult) -> None:
        shown = _display_value(result.value)
        if result.flag in self.rules.critical_flags:
            self.add_safety_flag(f"CRITICAL LAB: {result.name} = {shown} {result.unit}".strip(), "critical")
        threshold = self.rules.lab_threshold(result.name)
        number = to_number(result.value)
        if threshold is None or number is None:
            return
        if threshold.low is not None and number < threshold.low:
            self.add_safety_flag(
                f"CRITICAL LOW {result.name}: {format_number(number)} {threshold.unit}".strip(), "critical"
            )
        if threshold.high is not None and number > threshold.high:
            self.add_safety_flag(
                f"CRITICAL HIGH {result.name}: {format_number(number)} {threshold.unit}".strip(), "critical"
            )

    # ── notes and dictation ──────────────────────────────────────────

    def add_nursing_note(self, note: NoteEvent | Mapping[str, Any] | str) -> bool:
        """Update nursing assessment, patient voice and concern findings."""
        if isinstance(note, str):
            note = NoteEvent(text=note)
        event = _coerce(NoteEvent, note)
        text = event.text.strip()
        if not text:
            return False
        self.conflicts.check(text, source="nursingNote")
        self.document.record_note(event, now=self.clock(), rules=self.rules, limits=self.limits)

        self.narrative.nursing_assessment = text
        statements = self.rules.patient_statements(text)
        if statements:
            self.narrative.patient_voice = " ".join(statements)
        for finding in self.rules.concern_sentences(text):
            self._add_key_finding(finding)
        self._touch()
        return True

    def add_doctor_dictation(self, text: str, timestamp: datetime | None = None) -> DictationEntry | None:
        """Append dictation; assessment language is mirrored into key findings."""
        text = (text or "").strip()
        if not text:
            return None
        self.conflicts.check(text, source="doctorDictation")
        entry = DictationEntry(timestamp=timestamp or self.clock(), text=text)
        dictation = self.session.doctor_dictation
        dictation.append(entry)
        del dictation[: max(0, len(dictation) - self.limits.max_dictation_entries)]
        if self.rules.has_assessment_language(text):
            self._add_key_finding(f"MD Assessment: {text[:200]}")
        self._touch()
        return entry

    def _add_key_finding(self, finding: str) -> bool:
        findings = self.narrative.key_findings
        if finding in findings:
            return False
        findings.append(finding)
        if len(findings) > self.limits.max_key_findings:
            self.prune_key_findings()
        return True

    # ── medications ──────────────────────────────────────────────────

    def add_medication_change(self, change: MedicationChangeEvent | Mapping[str, Any]) -> bool:
        event = _coerce(MedicationChangeEvent, change)
        entry = MedicationChange(
            change_type=event.change_type,
            timestamp=event.timestamp or self.clock(),
            name=event.name,
            dose=event.dose,
            reason=event.reason,
        )
        added = self.document.record_medication_change(entry)
        if added:
            self._touch()
        return added

    # ── safety flags and review state ────────────────────────────────

    def add_safety_flag(self, text: str, severity: str = "warning") -> SafetyFlag | None:
        flag = self.session.add_flag(text, severity, timestamp=self.clock())
        if flag is None:
            return DUPLICATE_IGNORED
        logger.info("Added safety flag (%s): %s", severity, text)
        self._touch()
        return flag

    def remove_safety_flag(self, text: str) -> bool:
        flags = self.session.safety_flags
        for index, flag in enumerate(flags):
            if flag.text == text:
                del flags[index]
                self._touch()
                return True
        return False

    def mark_reviewed(self, item: str) -> None:
        if item not in self.session.reviewed_items:
            self.session.reviewed_items.append(item)
        if item in self.session.pending_items:
            self.session.pending_items.remove(item)
        self._touch()

    def add_pending_item(self, item: str) -> bool:
        """Queue an item; re-opens it when it had been reviewed."""
        if item in self.session.reviewed_items:
            self.session.reviewed_items.remove(item)
        if item in self.session.pending_items:
            return False
        self.session.pending_items.append(item)
        self._touch()
        return True

    def remove_pending_item(self, item: str) -> bool:
        if item not in self.session.pending_items:
            return False
        self.session.pending_items.remove(item)
        self._touch()
        return True

    # ── structured observations ──────────────────────────────────────

    def add_ai_observation(self, text: str, category: str = "clinical", version: int = 1) -> str | None:
        """Insert an active observation and prune; None when an active twin exists."""
        text = (text or "").strip()
        if not text:
            return DUPLICATE_IGNORED
        wanted = normalize_text(text)
        if any(normalize_text(o.text) == wanted for o in self.session.active_observations()):
            return DUPLICATE_IGNORED

        self.conflicts.check(text, source="aiObservation")
        observation = AIObservation(
            id=f"obs_{uuid.uuid4().hex[:12]}",
            text=text,
            timestamp=self.clock(),
            category=category,
            version=version,
        )
        self.session.ai_observations.append(observation)
        self.prune_observations()
        self._touch()
        return observation.id

    def supersede_observation(
        self, old_id: str, new_text: str | None = None, category: str = "clinical"
    ) -> str | None:
        """Retire an observation, optionally linking a replacement."""
        old = self.session.get_observation(old_id)
        if old is not None:
            old.status = "superseded"
        new_id = None
        if new_text:
            version = old.version + 1 if old is not None else 1
            new_id = self.add_ai_observation(new_text, category, version=version)
            if old is not None and new_id:
                old.superseded_by = new_id
        self._touch()
        return new_id

    # ── active clinical state tiers ──────────────────────────────────

    def _evict_from_tiers(self, text: str, keep: str) -> None:
        wanted = normalize_text(text)
        state = self.session.active_clinical_state
        if keep != "decision":
            state.pending_decisions = [d for d in state.pending_decisions if normalize_text(d.text) != wanted]
        if keep != "condition":
            state.active_conditions = [c for c in state.active_conditions if normalize_text(c.text) != wanted]
        if keep != "fact":
            state.background_facts = [f for f in state.background_facts if normalize_text(f.text) != wanted]

    def add_pending_decision(
        self,
        text: str,
        context: str = "",
        raised_by: str = "ai",
        related_problem_ids: Iterable[str] = (),
    ) -> str | None:
        text = (text or "").strip()
        if not text:
            return DUPLICATE_IGNORED
        wanted = normalize_text(text)
        state = self.session.active_clinical_state
        if any(normalize_text(d.text) == wanted for d in state.open_decisions()):
            return DUPLICATE_IGNORED
        self._evict_from_tiers(text, keep="decision")
        decision = PendingDecision(
            id=f"pd_{uuid.uuid4().hex[:12]}",
            text=text,
            context=context,
            raised_by=raised_by,
            raised_at=self.clock(),
            related_problem_ids=list(related_problem_ids),
        )
        state.pending_decisions.append(decision)
        self._touch()
        return decision.id

    def resolve_pending_decision(self, decision_id: str, resolution: str) -> bool:
        for decision in self.session.active_clinical_state.pending_decisions:
            if decision.id == decision_id:
                decision.resolved_at = self.clock()
                decision.resolution = resolution
                self._touch()
                return True
        return False

    def add_active_condition(
        self, text: str, trend: str = "stable", related_problem_ids: Iterable[str] = ()
    ) -> ActiveCondition | None:
        """Upsert by normalized text; an existing entry gets the new trend."""
        text = (text or "").strip()
        if not text:
            return None
        wanted = normalize_text(text)
        now = self.clock()
        self._evict_from_tiers(text, keep="condition")
        conditions = self.session.active_clinical_state.active_conditions
        for condition in conditions:
            if normalize_text(condition.text) == wanted:
                condition.trend = trend
                condition.last_updated = now
                self._touch()
                return condition
        condition = ActiveCondition(
            text=text, trend=trend, since=now, last_updated=now, related_problem_ids=list(related_problem_ids)
        )
        conditions.append(condition)
        self._touch()
        return condition

    def add_background_fact(self, text: str, source: str = "chart", category: str = "clinical") -> bool:
        text = (text or "").strip()
        if not text:
            return False
        wanted = normalize_text(text)
        facts = self.session.active_clinical_state.background_facts
        self._evict_from_tiers(text, keep="fact")
        if any(normalize_text(f.text) == wanted for f in facts):
            return False
        facts.append(BackgroundFact(text=text, source=source, category=category, added_at=self.clock()))
        self._touch()
        return True

    # ── narrative ────────────────────────────────────────────────────

    def set_trajectory_assessment(self, assessment: str) -> None:
        self.narrative.trajectory_assessment = assessment
        self._touch()

    def add_open_question(self, question: str) -> bool:
        if question in self.narrative.open_questions:
            return False
        self.narrative.open_questions.append(question)
        self._touch()
        return True

    def remove_open_question(self, question: str) -> bool:
        if question not in self.narrative.open_questions:
            return False
        self.narrative.open_questions.remove(question)
        self._touch()
        return True

    # ── conversations ────────────────────────────────────────────────

    def _window(self, messages: Iterable[Any], other_role: str) -> list[ConversationMessage]:
        window = []
        for message in list(messages)[-self.limits.conversation_window :]:
            if isinstance(message, ConversationMessage):
                window.append(message)
                continue
            if not isinstance(message, Mapping):
                logger.warning("Skipping malformed conversation message %r", message)
                continue
            role = "doctor" if message.get("role") == "user" else other_role
            text = message.get("content", message.get("text", ""))
            window.append(ConversationMessage(role=role, text=str(text or "")))
        return window

    def sync_patient_conversation(self, messages: Iterable[Any]) -> None:
        window = self._window(messages, "patient")
        if not window:
            return
        self.session.patient_conversation = window
        self._touch()

    def sync_nurse_conversation(self, messages: Iterable[Any]) -> list[ConflictRecord]:
        """Keep the recent nurse window; the latest nurse turn runs conflict detection."""
        window = self._window(messages, "nurse")
        if not window:
            return []
        logged = []
        latest = window[-1]
        if latest.role != "doctor" and latest.text.strip():
            logged = self.conflicts.check(latest.text, source="nurseConversation")
        self.session.nurse_conversation = window
        self._touch()
        return logged

    def sync_from_ai_state(self, state: AIStateSync | Mapping[str, Any]) -> None:
        """Fold an assistant-side state snapshot in through the regular operations.

        Dictation is deduplicated by exact text, open items replace the
        pending set, observations go through conflict detection and pruning.
        """
        snapshot = _coerce(AIStateSync, state)
        now = self.clock()
        dictation = self.session.doctor_dictation
        known = {entry.text for entry in dictation}
        incoming = [(d.text, d.timestamp or now) for d in snapshot.dictation_history]
        if snapshot.dictation:
            incoming.append((snapshot.dictation, now))
        for text, timestamp in incoming:
            text = text.strip()
            if text and text not in known:
                dictation.append(DictationEntry(timestamp=timestamp, text=text))
                known.add(text)
        del dictation[: max(0, len(dictation) - self.limits.max_dictation_entries)]

        for flag in snapshot.flags:
            self.add_safety_flag(flag.text, flag.severity)
        for item in snapshot.reviewed:
            self.mark_reviewed(item)
        if snapshot.open_items is not None:
            self.session.pending_items = []
            for item in snapshot.open_items:
                self.add_pending_item(item)
        for text in snapshot.observations:
            self.add_ai_observation(text)
        self._touch()

    # ── conflicts and pruning ────────────────────────────────────────

    def resolve_conflict(self, conflict_id: str, resolution: str) -> bool:
        resolved = self.conflicts.resolve(conflict_id, resolution)
        if resolved:
            self._touch()
        return resolved

    def prune_observations(self) -> dict[str, int]:
        return self.pruner.run()

    def prune_key_findings(self, max_findings: int | None = None) -> int:
        """Relevance-ranked trim of key findings; returns how many were dropped."""
        limit = self.limits.max_key_findings if max_findings is None else max_findings
        findings = self.narrative.key_findings
        names = [t.problem.name for t in self.document.problem_matrix.values()]
        kept = prune_key_findings(findings, limit, self.rules, names)
        dropped = len(findings) - len(kept)
        self.narrative.key_findings = kept
        return dropped
