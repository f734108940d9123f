"""Payloads produced by the external reasoning service and merged back in."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from knowledge.timeutil import LenientTimestamp


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _text_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    items = []
    for item in value:
        text = item.get("text") if isinstance(item, dict) else item
        if isinstance(text, str) and text.strip():
            items.append(text.strip())
    return items


class NarrativeUpdate(_Payload):
    """Refreshed trajectory, findings and questions."""

    trajectory_assessment: str | None = Field(default=None, alias="trajectoryAssessment")
    key_findings: list[str] | None = Field(default=None, alias="keyFindings")
    open_questions: list[str] | None = Field(default=None, alias="openQuestions")

    @field_validator("key_findings", "open_questions", mode="before")
    @classmethod
    def _texts(cls, value: Any) -> list[str] | None:
        return None if value is None else _text_list(value)


class ProblemInsightUpdate(_Payload):
    problem_id: str = Field(alias="problemId")
    insight: str

    @field_validator("problem_id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> str:
        return str(value)


class ActiveConditionUpdate(_Payload):
    text: str
    trend: Literal["improving", "worsening", "stable", "new"] = "stable"

    @field_validator("trend", mode="before")
    @classmethod
    def _known_trend(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text if text in {"improving", "worsening", "stable", "new"} else "stable"


class MemoryClassification(_Payload):
    """Tier routing for facts the reasoning service extracted."""

    pending_decisions: list[str] = Field(default_factory=list, alias="pendingDecisions")
    active_conditions: list[ActiveConditionUpdate] = Field(default_factory=list, alias="activeConditions")
    background_facts: list[str] = Field(default_factory=list, alias="backgroundFacts")
    superseded_observations: list[str] = Field(default_factory=list, alias="supersededObservations")

    @field_validator("pending_decisions", "background_facts", "superseded_observations", mode="before")
    @classmethod
    def _texts(cls, value: Any) -> list[str]:
        return _text_list(value)

    @field_validator("active_conditions", mode="before")
    @classmethod
    def _conditions(cls, value: Any) -> list[Any]:
        if not value:
            return []
        return [{"text": item} if isinstance(item, str) else item for item in value]


class DetectedConflict(_Payload):
    description: str
    severity: Literal["critical", "warning", "info"] = "warning"

    @field_validator("severity", mode="before")
    @classmethod
    def _known_severity(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text if text in {"critical", "warning", "info"} else "warning"


class MemoryUpdate(_Payload):
    """Memory section of a reasoning response; every part is optional."""

    patient_summary_update: str | None = Field(default=None, alias="patientSummaryUpdate")
    problem_insight_updates: list[ProblemInsightUpdate] = Field(
        default_factory=list, alias="problemInsightUpdates"
    )
    interaction_digest: str | None = Field(default=None, alias="interactionDigest")
    memory_classification: MemoryClassification | None = Field(default=None, alias="memoryClassification")
    conflicts_detected: list[DetectedConflict] = Field(default_factory=list, alias="conflictsDetected")

    @field_validator("problem_insight_updates", "conflicts_detected", mode="before")
    @classmethod
    def _list_or_empty(cls, value: Any) -> list[Any]:
        return value if isinstance(value, list) else []

    def is_empty(self) -> bool:
        return not (
            self.patient_summary_update
            or self.problem_insight_updates
            or self.interaction_digest
            or self.memory_classification
            or self.conflicts_detected
        )


class SyncedDictation(_Payload):
    text: str
    timestamp: LenientTimestamp = None


class SyncedFlag(_Payload):
    text: str
    severity: Literal["critical", "warning", "info"] = "warning"

    @field_validator("severity", mode="before")
    @classmethod
    def _known_severity(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text if text in {"critical", "warning", "info"} else "warning"


class AIStateSync(_Payload):
    """Bulk snapshot of assistant-side session state pushed back into the document."""

    dictation_history: list[SyncedDictation] = Field(default_factory=list, alias="dictationHistory")
    dictation: str | None = None
    flags: list[SyncedFlag] = Field(default_factory=list)
    reviewed: list[str] = Field(default_factory=list)
    open_items: list[str] | None = Field(default=None, alias="openItems")
    observations: list[str] = Field(default_factory=list)

    @field_validator("dictation_history", mode="before")
    @classmethod
    def _dictations(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        return [{"text": item} if isinstance(item, str) else item for item in value if item]

    @field_validator("flags", mode="before")
    @classmethod
    def _flags(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        return [{"text": item} if isinstance(item, str) else item for item in value if item]

    @field_validator("reviewed", "observations", mode="before")
    @classmethod
    def _texts(cls, value: Any) -> list[str]:
        return _text_list(value)

    @field_validator("open_items", mode="before")
    @classmethod
    def _open_items(cls, value: Any) -> list[str] | None:
        return None if value is None else _text_list(value)
