"""Size bounds applied to the knowledge base."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class KnowledgeLimits(BaseModel):
    """Caps and retention windows, loaded from the ``limits`` config section."""

    max_active_observations: int = 30
    max_inactive_observations: int = 20
    stale_observation_hours: float = 4
    max_key_findings: int = 20
    max_dictation_entries: int = 50
    conversation_window: int = 20
    max_interaction_log: int = 50
    max_vitals_per_period: int = 20
    max_labs_per_period: int = 50
    max_notes_per_period: int = 10
    recent_notes_days: int = 90
    recent_medication_days: int = 90

    @classmethod
    def from_config(cls, config: dict[str, Any] | None = None) -> KnowledgeLimits:
        known = {key: value for key, value in (config or {}).items() if key in cls.model_fields}
        return cls(**known)
