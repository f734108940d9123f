"""Session context models: dictation, flags, observations, tiers and conflicts."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from knowledge.timeutil import Timestamp, utc_now

Severity = Literal["critical", "warning", "info"]
ObservationStatus = Literal["active", "superseded", "invalidated"]
ConditionTrend = Literal["improving", "worsening", "stable", "new"]


class SafetyFlag(BaseModel):
    """Deduplicated alert raised from vitals, labs or conflicts."""

    text: str
    severity: Severity = "warning"
    timestamp: Timestamp = Field(default_factory=utc_now)


class DictationEntry(BaseModel):
    timestamp: Timestamp = Field(default_factory=utc_now)
    text: str


class AIObservation(BaseModel):
    """Observation with lifecycle state rather than a plain log line."""

    id: str
    text: str
    timestamp: Timestamp = Field(default_factory=utc_now)
    status: ObservationStatus = "active"
    superseded_by: str | None = None
    category: str = "general"
    version: int = 1

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class PendingDecision(BaseModel):
    """Unresolved question waiting on a physician decision."""

    id: str
    text: str
    context: str = ""
    raised_by: str = "ai"
    raised_at: Timestamp = Field(default_factory=utc_now)
    resolved_at: Timestamp | None = None
    resolution: str | None = None
    related_problem_ids: list[str] = Field(default_factory=list)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


class ActiveCondition(BaseModel):
    text: str
    trend: ConditionTrend = "stable"
    since: Timestamp = Field(default_factory=utc_now)
    last_updated: Timestamp = Field(default_factory=utc_now)
    related_problem_ids: list[str] = Field(default_factory=list)


class BackgroundFact(BaseModel):
    text: str
    source: str = "chart"
    category: str = "clinical"
    added_at: Timestamp = Field(default_factory=utc_now)


class ActiveClinicalState(BaseModel):
    """Three exclusive tiers; a fact lives in exactly one of them."""

    pending_decisions: list[PendingDecision] = Field(default_factory=list)
    active_conditions: list[ActiveCondition] = Field(default_factory=list)
    background_facts: list[BackgroundFact] = Field(default_factory=list)

    def open_decisions(self) -> list[PendingDecision]:
        return [d for d in self.pending_decisions if not d.is_resolved]


class ConflictItem(BaseModel):
    text: str
    source: str = "new"
    timestamp: Timestamp | None = None


class ConflictRecord(BaseModel):
    """Logged contradiction between two independently recorded facts."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    item_a: ConflictItem = Field(alias="itemA")
    item_b: ConflictItem = Field(alias="itemB")
    severity: Severity = "warning"
    detected_at: Timestamp = Field(default_factory=utc_now)
    resolved_at: Timestamp | None = None
    resolution: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


class ConversationMessage(BaseModel):
    role: str
    text: str
    timestamp: Timestamp | None = None


class SessionContext(BaseModel):
    """Per-patient working state, wiped only by an explicit memory reset."""

    doctor_dictation: list[DictationEntry] = Field(default_factory=list)
    safety_flags: list[SafetyFlag] = Field(default_factory=list)
    reviewed_items: list[str] = Field(default_factory=list)
    pending_items: list[str] = Field(default_factory=list)
    ai_observations: list[AIObservation] = Field(default_factory=list)
    active_clinical_state: ActiveClinicalState = Field(default_factory=ActiveClinicalState)
    conflicts: list[ConflictRecord] = Field(default_factory=list)
    patient_conversation: list[ConversationMessage] = Field(default_factory=list)
    nurse_conversation: list[ConversationMessage] = Field(default_factory=list)

    def active_observations(self) -> list[AIObservation]:
        return [o for o in self.ai_observations if o.is_active]

    def get_observation(self, observation_id: str) -> AIObservation | None:
        for observation in self.ai_observations:
            if observation.id == observation_id:
                return observation
        return None

    def unresolved_conflicts(self) -> list[ConflictRecord]:
        return [c for c in self.conflicts if not c.is_resolved]

    def has_flag(self, text: str) -> bool:
        return any(flag.text == text for flag in self.safety_flags)

    def add_flag(
        self, text: str, severity: Severity = "warning", timestamp: datetime | None = None
    ) -> SafetyFlag | None:
        """Exact-text deduplicated insert; None when the flag already exists."""
        if not text or self.has_flag(text):
            return None
        flag = SafetyFlag(text=text, severity=severity, timestamp=timestamp or utc_now())
        self.safety_flags.append(flag)
        return flag
