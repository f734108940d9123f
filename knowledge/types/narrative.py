"""Clinical narrative and durable AI memory models."""

from __future__ import annotations

from pydantic import BaseModel, Field

from knowledge.timeutil import Timestamp, utc_now


class ClinicalNarrative(BaseModel):
    """Free-text understanding of the patient's course."""

    trajectory_assessment: str = ""
    key_findings: list[str] = Field(default_factory=list)
    open_questions: list[str] = Field(default_factory=list)
    nursing_assessment: str = ""
    patient_voice: str = ""


class InteractionLogEntry(BaseModel):
    type: str
    summary: str
    timestamp: Timestamp = Field(default_factory=utc_now)


class AIMemory(BaseModel):
    """Cross-session understanding written back from the reasoning service."""

    patient_summary: str = ""
    summary_version: int = 0
    summary_updated_at: Timestamp | None = None
    problem_insights: dict[str, str] = Field(default_factory=dict)
    interaction_log: list[InteractionLogEntry] = Field(default_factory=list)
    last_full_ingestion: Timestamp | None = None
