"""Chart data source backed by per-patient JSON files on disk."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from knowledge.errors import SourceUnavailable
from knowledge.sources.base_source import ChartSource

logger = logging.getLogger("lckb.source")


class JsonChartSource(ChartSource):
    """Reads ``<base_dir>/<patient_id>/...`` as laid out by the chart exporter."""

    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir)

    def _patient_dir(self, patient_id: str) -> Path:
        path = self.base_dir / patient_id
        if not path.is_dir():
            raise SourceUnavailable(f"No chart data for patient {patient_id!r}", patient_id=patient_id)
        return path

    def _read(self, patient_id: str, relative: str, section: str) -> Any:
        path = self._patient_dir(patient_id) / relative
        try:
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except FileNotFoundError as exc:
            raise SourceUnavailable(
                f"Missing {section} data at {path}", patient_id=patient_id, section=section
            ) from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise SourceUnavailable(
                f"Unreadable {section} data at {path}: {exc}", patient_id=patient_id, section=section
            ) from exc

    def _read_list(self, patient_id: str, relative: str, section: str, key: str) -> list[dict[str, Any]]:
        data = self._read(patient_id, relative, section)
        if isinstance(data, dict):
            data = data.get(key, [])
        if not isinstance(data, list):
            raise SourceUnavailable(f"Unexpected {section} layout", patient_id=patient_id, section=section)
        return [item for item in data if isinstance(item, dict)]

    def ensure_patient(self, patient_id: str) -> None:
        self._patient_dir(patient_id)

    def load_demographics(self, patient_id: str) -> dict[str, Any]:
        data = self._read(patient_id, "demographics.json", "demographics")
        if not isinstance(data, dict):
            raise SourceUnavailable("Unexpected demographics layout", patient_id=patient_id, section="demographics")
        return data

    def load_allergies(self, patient_id: str) -> list[dict[str, Any]]:
        return self._read_list(patient_id, "allergies.json", "allergies", "allergies")

    def load_problems(self, patient_id: str) -> list[dict[str, Any]]:
        active = self._read_list(patient_id, "problems/active.json", "problems", "problems")
        try:
            resolved = self._read_list(patient_id, "problems/resolved.json", "problems", "problems")
        except SourceUnavailable as exc:
            logger.warning("No resolved problems for %s: %s", patient_id, exc)
            resolved = []
        return [{**p, "status": "active"} for p in active] + [{**p, "status": "resolved"} for p in resolved]

    def load_medications(self, patient_id: str) -> dict[str, list[dict[str, Any]]]:
        active = self._read_list(patient_id, "medications/active.json", "medications", "medications")
        try:
            historical = self._read_list(patient_id, "medications/historical.json", "medications", "medications")
        except SourceUnavailable as exc:
            logger.warning("No historical medications for %s: %s", patient_id, exc)
            historical = []
        return {"active": active, "historical": historical}

    def load_vitals(self, patient_id: str) -> list[dict[str, Any]]:
        return self._read_list(patient_id, "vitals/index.json", "vitals", "vitals")

    def load_lab_panels(self, patient_id: str) -> list[dict[str, Any]]:
        """Every panel listed in the lab index; unreadable panels are skipped."""
        panels = []
        for entry in self._read_list(patient_id, "labs/index.json", "labs", "panels"):
            panel_id = entry.get("id")
            if not panel_id:
                continue
            try:
                panel = self._read(patient_id, f"labs/panels/{panel_id}.json", "labs")
            except SourceUnavailable as exc:
                logger.warning("Could not load lab panel %s: %s", panel_id, exc)
                continue
            if isinstance(panel, dict):
                panels.append(panel)
        return panels

    def load_notes_index(self, patient_id: str) -> list[dict[str, Any]]:
        return self._read_list(patient_id, "notes/index.json", "notes", "notes")

    def load_note(self, patient_id: str, note_id: str) -> dict[str, Any]:
        data = self._read(patient_id, f"notes/{note_id}.json", "notes")
        if not isinstance(data, dict):
            raise SourceUnavailable(f"Unexpected note layout for {note_id}", patient_id=patient_id, section="notes")
        return data

    def load_encounters(self, patient_id: str) -> list[dict[str, Any]]:
        return self._read_list(patient_id, "encounters/index.json", "encounters", "encounters")

    def load_imaging(self, patient_id: str) -> list[dict[str, Any]]:
        return self._read_list(patient_id, "imaging/index.json", "imaging", "studies")

    def load_procedures(self, patient_id: str) -> list[dict[str, Any]]:
        return self._read_list(patient_id, "procedures/index.json", "procedures", "procedures")

    def load_social_history(self, patient_id: str) -> Any:
        return self._read(patient_id, "social_history.json", "social_history")

    def load_family_history(self, patient_id: str) -> Any:
        return self._read(patient_id, "family_history.json", "family_history")
