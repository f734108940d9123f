"""Top-level application orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from core.policy_runtime import ensure_runtime_dirs, load_effective_config
from knowledge.builder import DocumentBuilder
from knowledge.document import LongitudinalDocument
from knowledge.limits import KnowledgeLimits
from knowledge.rules import RuleSet
from knowledge.sources.chart_source import JsonChartSource
from knowledge.stores.document_store import DocumentStore
from knowledge.stores.sql_store import SQLStore
from knowledge.updater import DocumentUpdater


@dataclass
class RuntimeBundle:
    """Holds initialized runtime components."""

    config: dict[str, Any]
    rules: RuleSet
    limits: KnowledgeLimits
    store: DocumentStore
    source: JsonChartSource
    builder: DocumentBuilder

    def load(self, patient_id: str) -> LongitudinalDocument:
        """Persisted document for a patient, building and saving one when absent."""
        return self.store.load_or_build(patient_id, self.builder)

    def updater(self, document: LongitudinalDocument) -> DocumentUpdater:
        return DocumentUpdater(document, self.rules, self.limits)


class Orchestrator:
    """Creates and wires runtime components for CLI use."""

    def __init__(self, root: Path | None = None) -> None:
        default_root = Path(__file__).resolve().parents[1]
        self.root = (root or default_root).resolve()

    def build(self) -> RuntimeBundle:
        config = load_effective_config(self.root)
        paths = ensure_runtime_dirs(self.root, config)

        rules = RuleSet.from_config(config.get("rules"))
        limits = KnowledgeLimits.from_config(config.get("limits"))
        max_bytes = config.get("store", {}).get("max_bytes")
        sql_store = SQLStore(paths["db_path"], max_bytes=int(max_bytes) if max_bytes is not None else None)
        source = JsonChartSource(paths["chart_data_dir"])

        return RuntimeBundle(
            config=config,
            rules=rules,
            limits=limits,
            store=DocumentStore(sql_store),
            source=source,
            builder=DocumentBuilder(source, rules, limits),
        )
