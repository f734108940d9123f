"""Longitudinal clinical document: the per-patient aggregate root."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from knowledge.limits import KnowledgeLimits
from knowledge.rules import RuleSet
from knowledge.timeutil import Timestamp, utc_now
from knowledge.types.events import LabResult, NoteEvent, VitalsReading
from knowledge.types.narrative import AIMemory, ClinicalNarrative
from knowledge.types.problem import (
    HISTORICAL,
    TIME_PERIODS,
    MedicationChange,
    Problem,
    ProblemTimeline,
    TimelineLab,
    TimelineNote,
    TimelineVitals,
    TimePeriod,
)
from knowledge.types.session import SessionContext
from knowledge.types.trend import TrendSeries, to_number

logger = logging.getLogger("lckb.document")

SCHEMA_VERSION = "1.0"


def _empty_periods() -> dict[str, list[VitalsReading]]:
    return {period.label: [] for period in TIME_PERIODS}


def extract_excerpt(content: str, keywords: list[str], max_length: int = 200) -> str:
    """Context around the first keyword hit, or the head of the text."""
    if not content:
        return ""
    for keyword in keywords:
        match = re.search(rf"(?<![a-z0-9]){re.escape(keyword)}(?![a-z0-9])", content, flags=re.IGNORECASE)
        if match is None:
            continue
        start = max(0, match.start() - 50)
        end = min(len(content), match.end() + 150)
        excerpt = content[start:end]
        if start > 0:
            excerpt = "..." + excerpt
        if end < len(content):
            excerpt += "..."
        return excerpt
    return content[:max_length] + ("..." if len(content) > max_length else "")


class PatientSnapshot(BaseModel):
    """Demographic header that always sits on top of the document."""

    demographics: dict[str, Any] | None = None
    allergies: list[dict[str, Any]] = Field(default_factory=list)
    code_status: str | None = None
    advance_directives: Any = None
    primary_provider: str | None = None
    insurance: Any = None
    emergency_contact: Any = None
    social_history: Any = None
    family_history: Any = None


class MedicationLists(BaseModel):
    current: list[dict[str, Any]] = Field(default_factory=list)
    historical: list[dict[str, Any]] = Field(default_factory=list)
    recent_changes: list[MedicationChange] = Field(default_factory=list)


class LongitudinalData(BaseModel):
    """Cross-cutting data streams not tied to a single problem."""

    vitals: list[VitalsReading] = Field(default_factory=list)
    vitals_by_period: dict[str, list[VitalsReading]] = Field(default_factory=_empty_periods)
    vital_trends: dict[str, TrendSeries] = Field(default_factory=dict)
    labs: dict[str, TrendSeries] = Field(default_factory=dict)
    medications: MedicationLists = Field(default_factory=MedicationLists)
    encounters: list[dict[str, Any]] = Field(default_factory=list)
    imaging: list[dict[str, Any]] = Field(default_factory=list)
    procedures: list[dict[str, Any]] = Field(default_factory=list)


class DocumentMetadata(BaseModel):
    patient_id: str
    generated_at: Timestamp | None = None
    last_updated: Timestamp | None = None
    last_loaded_timestamp: Timestamp | None = None
    current_encounter: str | None = None
    encounter_start: Timestamp | None = None
    schema_version: str = SCHEMA_VERSION


class LongitudinalDocument(BaseModel):
    """Everything learned about one patient, mutated in place during a session."""

    metadata: DocumentMetadata
    patient_snapshot: PatientSnapshot = Field(default_factory=PatientSnapshot)
    problem_matrix: dict[str, ProblemTimeline] = Field(default_factory=dict)
    longitudinal_data: LongitudinalData = Field(default_factory=LongitudinalData)
    clinical_narrative: ClinicalNarrative = Field(default_factory=ClinicalNarrative)
    session_context: SessionContext = Field(default_factory=SessionContext)
    ai_memory: AIMemory = Field(default_factory=AIMemory)

    # ── lifecycle ────────────────────────────────────────────────────

    @classmethod
    def create(cls, patient_id: str, now: datetime | None = None) -> LongitudinalDocument:
        """Empty but valid document shell for a patient."""
        stamp = now or utc_now()
        return cls(metadata=DocumentMetadata(patient_id=patient_id, generated_at=stamp, last_updated=stamp))

    @property
    def patient_id(self) -> str:
        return self.metadata.patient_id

    def reset_memory(self) -> None:
        """Wipe session context, AI memory and narrative; chart-derived data stays."""
        self.session_context = SessionContext()
        self.ai_memory = AIMemory()
        self.clinical_narrative = ClinicalNarrative()
        logger.info("Cleared memory for patient %s", self.patient_id)

    def touch(self, now: datetime | None = None) -> None:
        self.metadata.last_updated = now or utc_now()

    # ── time periods ─────────────────────────────────────────────────

    def period_bounds(self, period: TimePeriod, now: datetime | None = None) -> tuple[datetime | None, datetime]:
        """Start (None = unbounded) and end of a period window."""
        end = now or utc_now()
        if period.current:
            if self.metadata.encounter_start is not None:
                return self.metadata.encounter_start, end
            return end.replace(hour=0, minute=0, second=0, microsecond=0), end
        if period.hours is not None:
            return end - timedelta(hours=period.hours), end
        return None, end

    def period_for(self, timestamp: datetime, now: datetime | None = None) -> str:
        """Label of the first period whose window contains the timestamp."""
        now = now or utc_now()
        if timestamp > now:
            return TIME_PERIODS[0].label
        for period in TIME_PERIODS:
            start, end = self.period_bounds(period, now)
            if (start is None or timestamp >= start) and timestamp <= end:
                return period.label
        return HISTORICAL

    # ── problems ─────────────────────────────────────────────────────

    def add_problem(self, problem: Problem, rules: RuleSet | None = None) -> ProblemTimeline:
        """Register a problem row, deriving taxonomy fields it does not carry."""
        rules = rules or RuleSet()
        updates: dict[str, Any] = {}
        category = problem.category
        if category in ("", "other"):
            category = rules.categorize(problem.name)
            updates["category"] = category
        config = rules.problem_categories.get(category)
        if config is not None and not problem.related_vital_fields:
            updates["related_vital_fields"] = list(config.related_vitals)
        if config is not None and not problem.related_lab_names:
            updates["related_lab_names"] = list(config.related_labs)
        if updates:
            problem = problem.model_copy(update=updates)

        existing = self.problem_matrix.get(problem.id)
        if existing is not None:
            existing.problem = problem
            return existing
        timeline = ProblemTimeline.for_problem(problem)
        self.problem_matrix[problem.id] = timeline
        return timeline

    def get_problem(self, problem_id: str) -> ProblemTimeline | None:
        return self.problem_matrix.get(str(problem_id))

    def active_problems(self) -> list[ProblemTimeline]:
        return [t for t in self.problem_matrix.values() if t.problem.status == "active"]

    def problems_by_category(self, category: str) -> list[ProblemTimeline]:
        return [t for t in self.problem_matrix.values() if t.problem.category == category]

    # ── queries ──────────────────────────────────────────────────────

    def get_lab_trend(self, lab_name: str) -> TrendSeries | None:
        return self.longitudinal_data.labs.get(lab_name)

    def labs_for_problem(self, problem_id: str) -> list[TrendSeries]:
        timeline = self.get_problem(problem_id)
        if timeline is None:
            return []
        labs = self.longitudinal_data.labs
        return [labs[name] for name in timeline.problem.related_lab_names if name in labs]

    def vitals_for_period(self, label: str) -> list[VitalsReading]:
        return self.longitudinal_data.vitals_by_period.get(label, [])

    def has_any_data(self) -> bool:
        data = self.longitudinal_data
        return bool(data.vitals or data.labs or self.problem_matrix)

    # ── shared recording paths ───────────────────────────────────────

    def record_vitals(
        self,
        reading: VitalsReading,
        now: datetime | None = None,
        rules: RuleSet | None = None,
        limits: KnowledgeLimits | None = None,
    ) -> VitalsReading | None:
        """Store a reading everywhere it belongs; None when already present or empty.

        A reading without its own timestamp is stamped ``now`` and counts as a
        duplicate of any identical reading already in that period.
        """
        now = now or utc_now()
        rules = rules or RuleSet()
        limits = limits or KnowledgeLimits()
        untimed = reading.timestamp is None
        if untimed:
            reading = reading.model_copy(update={"timestamp": now})
        measurements = reading.measurements()
        if not measurements:
            return None
        data = self.longitudinal_data
        label = self.period_for(reading.timestamp, now)
        if untimed:
            if any(v.measurements() == measurements for v in data.vitals_by_period.get(label, [])):
                return None
        elif any(v.timestamp == reading.timestamp and v.measurements() == measurements for v in data.vitals):
            return None

        data.vitals.append(reading)
        data.vitals.sort(key=lambda v: v.timestamp, reverse=True)

        period_vitals = data.vitals_by_period.setdefault(label, [])
        period_vitals.append(reading)
        period_vitals.sort(key=lambda v: v.timestamp, reverse=True)
        del period_vitals[limits.max_vitals_per_period :]

        for field, value in measurements.items():
            series = data.vital_trends.setdefault(field, TrendSeries(name=field))
            series.add_value(reading.timestamp, value)

        for timeline in self.problem_matrix.values():
            subset = {f: measurements[f] for f in timeline.problem.related_vital_fields if f in measurements}
            if not subset:
                continue
            bucket = timeline.bucket(label)
            bucket.vitals.append(TimelineVitals(timestamp=reading.timestamp, values=subset))
            bucket.vitals.sort(key=lambda v: v.timestamp, reverse=True)
            del bucket.vitals[limits.max_vitals_per_period :]
            bucket.refresh_status(rules.critical_flags)
        return reading

    def record_lab_result(
        self,
        result: LabResult,
        collected: datetime | None = None,
        now: datetime | None = None,
        rules: RuleSet | None = None,
        limits: KnowledgeLimits | None = None,
    ) -> bool:
        """Upsert the analyte series and copy into related timelines; False when nothing new.

        Without a collection time the result is stamped ``now`` and an equal
        value already recorded in the same period counts as a duplicate.
        """
        now = now or utc_now()
        rules = rules or RuleSet()
        limits = limits or KnowledgeLimits()
        untimed = collected is None
        when = collected or now
        label = self.period_for(when, now)
        number = to_number(result.value)
        changed = False

        if number is not None:
            labs = self.longitudinal_data.labs
            series = labs.get(result.name)
            if series is None:
                series = TrendSeries(name=result.name, reference_range=result.reference_range)
                labs[result.name] = series
            seen = untimed and any(
                e.value == number and self.period_for(e.timestamp, now) == label for e in series.values
            )
            if not seen:
                changed = series.add_value(
                    when, result.value, result.unit, result.flag, critical_flags=rules.critical_flags
                )

        entry = TimelineLab(name=result.name, value=result.value, unit=result.unit, flag=result.flag, timestamp=when)
        lowered = result.name.lower()
        for timeline in self.problem_matrix.values():
            if not any(name.lower() in lowered for name in timeline.problem.related_lab_names):
                continue
            bucket = timeline.bucket(label)
            if any(
                lab.name == entry.name
                and lab.value == entry.value
                and (untimed or lab.timestamp == entry.timestamp)
                for lab in bucket.labs
            ):
                continue
            bucket.labs.append(entry.model_copy())
            bucket.labs.sort(key=lambda lab: lab.timestamp, reverse=True)
            del bucket.labs[limits.max_labs_per_period :]
            bucket.refresh_status(rules.critical_flags)
            changed = True
        return changed

    def record_note(
        self,
        note: NoteEvent,
        now: datetime | None = None,
        rules: RuleSet | None = None,
        limits: KnowledgeLimits | None = None,
    ) -> int:
        """Attach excerpts to every problem the note mentions; returns timelines touched.

        An untimed note is a duplicate when its excerpt is already in the bucket.
        """
        now = now or utc_now()
        rules = rules or RuleSet()
        limits = limits or KnowledgeLimits()
        untimed = note.timestamp is None
        when = note.timestamp or now
        label = self.period_for(when, now)
        touched = 0
        for timeline in self.problem_matrix.values():
            keywords = rules.category_keywords(timeline.problem.name)
            if not any(rules.mentions_keyword(note.text, kw) for kw in keywords):
                continue
            excerpt = extract_excerpt(note.text, keywords)
            bucket = timeline.bucket(label)
            if any(n.excerpt == excerpt and (untimed or n.timestamp == when) for n in bucket.notes):
                continue
            bucket.notes.append(
                TimelineNote(timestamp=when, note_type=note.note_type, author=note.author, excerpt=excerpt)
            )
            bucket.notes.sort(key=lambda n: n.timestamp, reverse=True)
            del bucket.notes[limits.max_notes_per_period :]
            bucket.refresh_status(rules.critical_flags)
            touched += 1
        return touched

    def record_medication_change(self, change: MedicationChange) -> bool:
        changes = self.longitudinal_data.medications.recent_changes
        if any(
            c.change_type == change.change_type
            and c.timestamp == change.timestamp
            and c.name == change.name
            and c.dose == change.dose
            for c in changes
        ):
            return False
        changes.append(change)
        changes.sort(key=lambda c: c.timestamp, reverse=True)
        return True
