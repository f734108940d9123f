"""Base chart data source interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class ChartSource(ABC):
    """Read-only access to one patient's chart records.

    Every loader raises ``SourceUnavailable`` when the patient or the
    requested section cannot be read.
    """

    @abstractmethod
    def ensure_patient(self, patient_id: str) -> None:
        """Raise SourceUnavailable when the patient cannot be reached at all."""

    @abstractmethod
    def load_demographics(self, patient_id: str) -> dict[str, Any]:
        """Return the demographics record."""

    @abstractmethod
    def load_allergies(self, patient_id: str) -> list[dict[str, Any]]:
        """Return allergy entries."""

    @abstractmethod
    def load_problems(self, patient_id: str) -> list[dict[str, Any]]:
        """Return active and resolved problems, each tagged with its status."""

    @abstractmethod
    def load_medications(self, patient_id: str) -> dict[str, list[dict[str, Any]]]:
        """Return ``{"active": [...], "historical": [...]}``."""

    @abstractmethod
    def load_vitals(self, patient_id: str) -> list[dict[str, Any]]:
        """Return raw vitals readings."""

    @abstractmethod
    def load_lab_panels(self, patient_id: str) -> list[dict[str, Any]]:
        """Return lab panels with their results."""

    @abstractmethod
    def load_notes_index(self, patient_id: str) -> list[dict[str, Any]]:
        """Return note metadata entries."""

    @abstractmethod
    def load_note(self, patient_id: str, note_id: str) -> dict[str, Any]:
        """Return one note with its full content."""

    @abstractmethod
    def load_encounters(self, patient_id: str) -> list[dict[str, Any]]:
        """Return encounter entries."""

    @abstractmethod
    def load_imaging(self, patient_id: str) -> list[dict[str, Any]]:
        """Return imaging studies."""

    @abstractmethod
    def load_procedures(self, patient_id: str) -> list[dict[str, Any]]:
        """Return procedures."""

    @abstractmethod
    def load_social_history(self, patient_id: str) -> Any:
        """Return the social history record."""

    @abstractmethod
    def load_family_history(self, patient_id: str) -> Any:
        """Return the family history record."""
