"""Builds longitudinal documents from a chart source, fully or incrementally."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from knowledge.document import LongitudinalDocument
from knowledge.errors import InvalidEvent, SourceUnavailable
from knowledge.limits import KnowledgeLimits
from knowledge.rules import RuleSet
from knowledge.sources.base_source import ChartSource
from knowledge.timeutil import coerce_timestamp, ensure_aware, utc_now
from knowledge.types.events import LabPanelEvent, NoteEvent, VitalsEvent
from knowledge.types.problem import TIME_PERIODS, MedicationChange, Problem
from knowledge.updater import DocumentUpdater

logger = logging.getLogger("lckb.builder")

# Sections committed back into a caller's document after a rebuild or refresh.
CHART_FIELDS = ("metadata", "patient_snapshot", "problem_matrix", "longitudinal_data")


def _note_text(note: dict[str, Any]) -> str:
    return str(note.get("content") or note.get("text") or note.get("summary") or note.get("title") or "")


class DocumentBuilder:
    """Turns chart records into a document through the same recording paths the updater uses."""

    def __init__(
        self,
        source: ChartSource,
        rules: RuleSet | None = None,
        limits: KnowledgeLimits | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.source = source
        self.rules = rules or RuleSet()
        self.limits = limits or KnowledgeLimits()
        self.clock = clock

    def _safe_load(self, section: str, loader: Callable[[], Any], default: Any) -> Any:
        try:
            return loader()
        except SourceUnavailable as exc:
            logger.warning("Chart section %s unavailable: %s", section, exc)
            return default

    # ── full build ───────────────────────────────────────────────────

    def build_full(self, patient_id: str, current_encounter: str | None = None) -> LongitudinalDocument:
        """Read the whole chart once; raises SourceUnavailable when the patient cannot be reached."""
        document, _ = self._build(patient_id, current_encounter)
        return document

    def build_or_empty(self, patient_id: str, current_encounter: str | None = None) -> LongitudinalDocument:
        """Full build, or an empty-but-valid shell when the chart cannot be reached."""
        try:
            return self.build_full(patient_id, current_encounter)
        except SourceUnavailable as exc:
            logger.warning("Falling back to empty document for %s: %s", patient_id, exc)
            document = LongitudinalDocument.create(patient_id, now=self.clock())
            document.metadata.current_encounter = current_encounter
            return document

    def _build(self, patient_id: str, current_encounter: str | None) -> tuple[LongitudinalDocument, int]:
        now = self.clock()
        source = self.source
        source.ensure_patient(patient_id)

        demographics = self._safe_load("demographics", lambda: source.load_demographics(patient_id), None)
        allergies = self._safe_load("allergies", lambda: source.load_allergies(patient_id), [])
        problems = self._safe_load("problems", lambda: source.load_problems(patient_id), [])
        medications = self._safe_load(
            "medications", lambda: source.load_medications(patient_id), {"active": [], "historical": []}
        )
        vitals = self._safe_load("vitals", lambda: source.load_vitals(patient_id), [])
        panels = self._safe_load("labs", lambda: source.load_lab_panels(patient_id), [])
        notes_index = self._safe_load("notes", lambda: source.load_notes_index(patient_id), [])
        encounters = self._safe_load("encounters", lambda: source.load_encounters(patient_id), [])
        imaging = self._safe_load("imaging", lambda: source.load_imaging(patient_id), [])
        procedures = self._safe_load("procedures", lambda: source.load_procedures(patient_id), [])
        social = self._safe_load("social_history", lambda: source.load_social_history(patient_id), None)
        family = self._safe_load("family_history", lambda: source.load_family_history(patient_id), None)

        document = LongitudinalDocument.create(patient_id, now=now)
        document.metadata.current_encounter = current_encounter
        document.metadata.encounter_start = self._encounter_start(encounters, current_encounter)

        self._populate_snapshot(document, demographics, allergies, social, family)
        for raw in problems:
            try:
                document.add_problem(Problem.model_validate(raw), self.rules)
            except ValidationError as exc:
                logger.warning("Skipping malformed problem %r: %s", raw.get("name"), exc.errors()[0]["msg"])

        count = 0
        for raw in vitals:
            try:
                reading = VitalsEvent.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping malformed vitals record: %s", exc.errors()[0]["msg"])
                continue
            if document.record_vitals(reading, now=now, rules=self.rules, limits=self.limits) is not None:
                count += 1

        for raw in panels:
            try:
                panel = LabPanelEvent.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping malformed lab panel %r: %s", raw.get("id"), exc.errors()[0]["msg"])
                continue
            for result in panel.results:
                document.record_lab_result(result, panel.collected, now=now, rules=self.rules, limits=self.limits)
            count += 1
        for series in document.longitudinal_data.labs.values():
            series.compute_trend()
            series.compute_baseline(now)
        for series in document.longitudinal_data.vital_trends.values():
            series.compute_trend()

        for note in self._load_notes(patient_id, notes_index, now):
            document.record_note(note, now=now, rules=self.rules, limits=self.limits)
            count += 1

        self._populate_encounters(document, encounters, now)
        self._populate_medications(document, medications, now)
        document.longitudinal_data.imaging = list(imaging)
        document.longitudinal_data.procedures = list(procedures)

        for timeline in document.problem_matrix.values():
            for bucket in timeline.timeline.values():
                bucket.refresh_status(self.rules.critical_flags)

        document.metadata.last_loaded_timestamp = now
        document.metadata.last_updated = now
        document.ai_memory.last_full_ingestion = now
        logger.info(
            "Built document for %s: %d problems, %d lab trends, %d vitals",
            patient_id,
            len(document.problem_matrix),
            len(document.longitudinal_data.labs),
            len(document.longitudinal_data.vitals),
        )
        return document, count

    @staticmethod
    def _encounter_start(encounters: list[dict[str, Any]], current_encounter: str | None) -> datetime | None:
        if current_encounter is None:
            return None
        for encounter in encounters:
            if str(encounter.get("id")) == str(current_encounter):
                return coerce_timestamp(encounter.get("date"))
        logger.warning("Current encounter %s not found in chart", current_encounter)
        return None

    @staticmethod
    def _populate_snapshot(
        document: LongitudinalDocument,
        demographics: dict[str, Any] | None,
        allergies: list[dict[str, Any]],
        social: Any,
        family: Any,
    ) -> None:
        snapshot = document.patient_snapshot
        snapshot.demographics = demographics
        snapshot.allergies = list(allergies)
        snapshot.social_history = social
        snapshot.family_history = family
        if demographics:
            snapshot.code_status = demographics.get("codeStatus") or "Full Code"
            snapshot.advance_directives = demographics.get("advanceDirectives")
            snapshot.primary_provider = demographics.get("primaryCareProvider")
            snapshot.insurance = demographics.get("insurance")
            snapshot.emergency_contact = demographics.get("emergencyContact")

    def _load_notes(self, patient_id: str, notes_index: list[dict[str, Any]], now: datetime) -> list[NoteEvent]:
        """Full content for recent notes, index metadata for older ones."""
        cutoff = now - timedelta(days=self.limits.recent_notes_days)
        notes = []
        for ref in notes_index:
            note = dict(ref)
            when = coerce_timestamp(ref.get("date"))
            if when is not None and when >= cutoff and ref.get("id"):
                try:
                    note.update(self.source.load_note(patient_id, str(ref["id"])))
                except SourceUnavailable as exc:
                    logger.warning("Using index entry for note %s: %s", ref["id"], exc)
            text = _note_text(note)
            if not text:
                continue
            notes.append(
                NoteEvent(
                    text=text,
                    timestamp=note.get("date") or note.get("timestamp"),
                    author=note.get("author"),
                    note_type=note.get("type") or note.get("note_type"),
                )
            )
        return notes

    def _encounter_addresses(self, encounter: dict[str, Any], problem: Problem) -> bool:
        name = problem.name.lower()
        for diagnosis in encounter.get("diagnoses") or []:
            if not isinstance(diagnosis, dict):
                continue
            if name and name in str(diagnosis.get("name") or "").lower():
                return True
            if problem.icd10 and diagnosis.get("icd10") == problem.icd10:
                return True
        return False

    def _populate_encounters(self, document: LongitudinalDocument, encounters: list[dict[str, Any]], now: datetime) -> None:
        document.longitudinal_data.encounters = list(encounters)
        for encounter in encounters:
            when = coerce_timestamp(encounter.get("date"))
            if when is None:
                continue
            label = document.period_for(when, now)
            for timeline in document.problem_matrix.values():
                if self._encounter_addresses(encounter, timeline.problem):
                    timeline.bucket(label).encounters.append(encounter)

    def medication_related(self, medication: dict[str, Any], problem: Problem) -> bool:
        """Indication match, or a known drug for a condition named by the problem."""
        problem_name = problem.name.lower()
        indication = str(medication.get("indication") or "").lower()
        if problem_name and problem_name in indication:
            return True
        med_name = str(medication.get("name") or "").lower()
        for condition, drugs in self.rules.medication_problem_map.items():
            if condition in problem_name and any(drug in med_name for drug in drugs):
                return True
        return False

    def _populate_medications(
        self, document: LongitudinalDocument, medications: dict[str, list[dict[str, Any]]], now: datetime
    ) -> None:
        active = list(medications.get("active") or [])
        historical = list(medications.get("historical") or [])
        lists = document.longitudinal_data.medications
        lists.current = active
        lists.historical = historical

        cutoff = now - timedelta(days=self.limits.recent_medication_days)
        for med in active:
            started = coerce_timestamp(med.get("startDate"))
            if started is not None and started >= cutoff and med.get("name"):
                document.record_medication_change(
                    MedicationChange(
                        change_type="started", timestamp=started, name=med["name"],
                        dose=med.get("dose"), reason=med.get("indication"),
                    )
                )
        for med in historical:
            stopped = coerce_timestamp(med.get("endDate"))
            if stopped is not None and stopped >= cutoff and med.get("name"):
                document.record_medication_change(
                    MedicationChange(
                        change_type="stopped", timestamp=stopped, name=med["name"],
                        dose=med.get("dose"), reason=med.get("discontinuedReason") or med.get("reason"),
                    )
                )

        current_label = TIME_PERIODS[0].label
        for timeline in document.problem_matrix.values():
            problem = timeline.problem
            timeline.bucket(current_label).medications.current = [
                med for med in active if self.medication_related(med, problem)
            ]
            for med in historical:
                if not self.medication_related(med, problem):
                    continue
                started = coerce_timestamp(med.get("startDate"))
                if started is not None:
                    timeline.bucket(document.period_for(started, now)).medications.started.append(med)
                stopped = coerce_timestamp(med.get("endDate"))
                if stopped is not None:
                    entry = {**med, "reason": med.get("discontinuedReason") or med.get("reason")}
                    timeline.bucket(document.period_for(stopped, now)).medications.stopped.append(entry)

    # ── incremental refresh ──────────────────────────────────────────

    def update_since(self, document: LongitudinalDocument, since: datetime | None = None) -> int:
        """Apply chart records newer than ``since`` through the updater; returns records applied.

        Work happens on a deep copy that is committed only once every record
        has been applied, so a failure leaves ``document`` as it was.
        """
        since = since or document.metadata.last_loaded_timestamp
        if since is not None:
            since = ensure_aware(since)
        patient_id = document.patient_id
        if since is None:
            logger.warning("No load timestamp for %s, doing full rebuild", patient_id)
            rebuilt, count = self._build(patient_id, document.metadata.current_encounter)
            self._commit(document, rebuilt)
            document.ai_memory.last_full_ingestion = rebuilt.ai_memory.last_full_ingestion
            return count

        now = self.clock()
        self.source.ensure_patient(patient_id)
        vitals = self._safe_load("vitals", lambda: self.source.load_vitals(patient_id), [])
        panels = self._safe_load("labs", lambda: self.source.load_lab_panels(patient_id), [])
        notes_index = self._safe_load("notes", lambda: self.source.load_notes_index(patient_id), [])
        new_notes = [
            ref for ref in notes_index if (when := coerce_timestamp(ref.get("date"))) is not None and when > since
        ]
        notes = self._load_notes(patient_id, new_notes, now)

        working = document.model_copy(deep=True)
        updater = DocumentUpdater(working, self.rules, self.limits, self.clock)
        applied = 0
        for raw in vitals:
            when = coerce_timestamp(raw.get("date") or raw.get("timestamp"))
            if when is None or when <= since:
                continue
            try:
                if updater.add_vitals(raw):
                    applied += 1
            except InvalidEvent as exc:
                logger.warning("Skipping malformed vitals record: %s", exc)
        for raw in panels:
            when = coerce_timestamp(raw.get("collectedDate") or raw.get("date"))
            if when is None or when <= since:
                continue
            try:
                if updater.add_lab_results(raw):
                    applied += 1
            except InvalidEvent as exc:
                logger.warning("Skipping malformed lab panel: %s", exc)
        for note in notes:
            if "nurs" in (note.note_type or "").lower():
                added = updater.add_nursing_note(note)
            else:
                added = working.record_note(note, now=now, rules=self.rules, limits=self.limits) > 0
            if added:
                applied += 1
        for series in working.longitudinal_data.labs.values():
            series.compute_trend()
        for series in working.longitudinal_data.vital_trends.values():
            series.compute_trend()

        working.metadata.last_loaded_timestamp = now
        working.metadata.last_updated = now
        for field in LongitudinalDocument.model_fields:
            setattr(document, field, getattr(working, field))
        logger.info("Refreshed %s since %s: %d new records", patient_id, since.isoformat(), applied)
        return applied

    @staticmethod
    def _commit(document: LongitudinalDocument, rebuilt: LongitudinalDocument) -> None:
        """Replace chart-derived sections; session context, narrative and AI memory stay."""
        for field in CHART_FIELDS:
            setattr(document, field, getattr(rebuilt, field))
