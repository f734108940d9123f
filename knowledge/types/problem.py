"""Problem list and per-problem timeline models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from knowledge.timeutil import Timestamp


class TimePeriod(BaseModel):
    """Coarse time column of the problem matrix."""

    label: str
    hours: float | None = None
    current: bool = False
    priority: int = 0


TIME_PERIODS: list[TimePeriod] = [
    TimePeriod(label="Current Encounter", current=True, priority=1),
    TimePeriod(label="Past 24 Hours", hours=24, priority=2),
    TimePeriod(label="Past 7 Days", hours=24 * 7, priority=3),
    TimePeriod(label="Past 30 Days", hours=24 * 30, priority=4),
    TimePeriod(label="Past 90 Days", hours=24 * 90, priority=5),
    TimePeriod(label="Past Year", hours=24 * 365, priority=6),
    TimePeriod(label="Historical", priority=7),
]
HISTORICAL = "Historical"


class Problem(BaseModel):
    """Problem list entry with its related vital fields and lab names."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(validation_alias=AliasChoices("id", "problemId"))
    name: str
    status: Literal["active", "resolved"] = "active"
    priority: Literal["High", "Medium", "Low"] = "Medium"
    category: str = "other"
    related_vital_fields: list[str] = Field(default_factory=list, alias="relatedVitalFields")
    related_lab_names: list[str] = Field(default_factory=list, alias="relatedLabNames")
    onset_info: str | None = Field(default=None, alias="onsetDate")
    resolved_info: str | None = Field(default=None, alias="resolvedDate")
    icd10: str | None = None
    notes: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> str:
        return str(value)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str:
        return "resolved" if str(value or "").strip().lower() == "resolved" else "active"

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value: Any) -> str:
        text = str(value or "").strip().capitalize()
        return text if text in {"High", "Medium", "Low"} else "Medium"

    @field_validator("onset_info", "resolved_info", mode="before")
    @classmethod
    def _onset_text(cls, value: Any) -> str | None:
        return None if value in (None, "") else str(value)

    @field_validator("notes", mode="before")
    @classmethod
    def _notes_text(cls, value: Any) -> str:
        return "" if value is None else str(value)


class TimelineVitals(BaseModel):
    """Subset of a vitals reading relevant to one problem."""

    timestamp: Timestamp
    values: dict[str, float] = Field(default_factory=dict)


class TimelineLab(BaseModel):
    name: str
    value: float | str | None = None
    unit: str = ""
    flag: str | None = None
    timestamp: Timestamp


class TimelineNote(BaseModel):
    timestamp: Timestamp
    note_type: str | None = None
    author: str | None = None
    excerpt: str = ""


class PeriodStatus(BaseModel):
    trend: str | None = None
    control_level: str | None = None
    notes: str = ""


class PeriodMedications(BaseModel):
    started: list[dict[str, Any]] = Field(default_factory=list)
    stopped: list[dict[str, Any]] = Field(default_factory=list)
    adjusted: list[dict[str, Any]] = Field(default_factory=list)
    current: list[dict[str, Any]] = Field(default_factory=list)

    def has_changes(self) -> bool:
        return bool(self.started or self.stopped or self.adjusted)


class PeriodBucket(BaseModel):
    """Everything one problem accumulated during one time period."""

    vitals: list[TimelineVitals] = Field(default_factory=list)
    labs: list[TimelineLab] = Field(default_factory=list)
    notes: list[TimelineNote] = Field(default_factory=list)
    encounters: list[dict[str, Any]] = Field(default_factory=list)
    medications: PeriodMedications = Field(default_factory=PeriodMedications)
    status: PeriodStatus = Field(default_factory=PeriodStatus)

    def is_empty(self) -> bool:
        return not (
            self.vitals or self.labs or self.notes or self.encounters or self.medications.has_changes()
        )

    def refresh_status(self, critical_flags: tuple[str, ...] | list[str] = ("critical", "HH", "LL")) -> PeriodStatus:
        """Coarse heuristic status: critical labs beat encounters beat stable."""
        if self.is_empty():
            self.status = PeriodStatus(trend="no data")
        elif any(lab.flag in critical_flags for lab in self.labs):
            self.status = PeriodStatus(trend="concerning", control_level="poorly-controlled")
        elif self.encounters:
            self.status = PeriodStatus(trend="active")
        else:
            self.status = PeriodStatus(trend="stable", control_level="controlled")
        return self.status


class ProblemTimeline(BaseModel):
    """One row of the problem matrix: period label -> bucket, in period order."""

    problem: Problem
    timeline: dict[str, PeriodBucket] = Field(default_factory=dict)

    @classmethod
    def for_problem(cls, problem: Problem) -> ProblemTimeline:
        return cls(problem=problem, timeline={p.label: PeriodBucket() for p in TIME_PERIODS})

    def bucket(self, label: str) -> PeriodBucket:
        if label not in self.timeline:
            self.timeline[label] = PeriodBucket()
        return self.timeline[label]

    def has_any_data(self) -> bool:
        return any(not bucket.is_empty() for bucket in self.timeline.values())


class MedicationChange(BaseModel):
    """Entry of the medication change log."""

    change_type: Literal["started", "stopped", "adjusted"] = "adjusted"
    timestamp: Timestamp
    name: str
    dose: str | None = None
    reason: str | None = None

