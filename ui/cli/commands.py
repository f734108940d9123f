"""Typer command handlers."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import typer

from core.orchestrator import Orchestrator, RuntimeBundle
from knowledge.document import LongitudinalDocument
from knowledge.errors import InvalidEvent
from knowledge.writeback import MemoryWriter, parse_memory_updates, parse_narrative_update

SECTIONS = (
    "metadata",
    "patient_snapshot",
    "problem_matrix",
    "longitudinal_data",
    "clinical_narrative",
    "session_context",
    "ai_memory",
)


def _runtime(root: Path | None = None) -> RuntimeBundle:
    bundle = Orchestrator(root=root).build()
    level = str(bundle.config.get("logging", {}).get("level", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(levelname)s %(name)s: %(message)s")
    return bundle


def _persist(bundle: RuntimeBundle, document: LongitudinalDocument) -> None:
    if not bundle.store.save(document):
        typer.echo("warning: document could not be persisted", err=True)


def build(patient_id: str, encounter: str | None = None) -> None:
    """Full build from chart data, replacing any persisted document."""
    bundle = _runtime()
    document = bundle.builder.build_or_empty(patient_id, encounter)
    _persist(bundle, document)
    data = document.longitudinal_data
    typer.echo(
        f"Built {patient_id}: {len(document.problem_matrix)} problems, "
        f"{len(data.labs)} lab trends, {len(data.vitals)} vitals"
    )


def refresh(patient_id: str) -> None:
    """Apply chart records newer than the last load."""
    bundle = _runtime()
    document = bundle.load(patient_id)
    applied = bundle.builder.update_since(document)
    _persist(bundle, document)
    typer.echo(f"Applied {applied} new records for {patient_id}")


def ingest(patient_id: str, event_file: Path) -> None:
    """Apply one event or a list of events read from a JSON file."""
    bundle = _runtime()
    payload = json.loads(event_file.read_text(encoding="utf-8"))
    events = payload if isinstance(payload, list) else [payload]
    document = bundle.load(patient_id)
    updater = bundle.updater(document)
    applied = 0
    for event in events:
        try:
            updater.ingest(event)
            applied += 1
        except InvalidEvent as exc:
            typer.echo(f"skipped event: {exc}", err=True)
    _persist(bundle, document)
    typer.echo(f"Ingested {applied} of {len(events)} events")


def dictate(patient_id: str, text: str) -> None:
    """Record doctor dictation."""
    bundle = _runtime()
    document = bundle.load(patient_id)
    before = len(document.session_context.conflicts)
    entry = bundle.updater(document).add_doctor_dictation(text)
    _persist(bundle, document)
    if entry is None:
        typer.echo("Nothing to record")
        return
    typer.echo(f"Recorded dictation at {entry.timestamp.isoformat()}")
    for conflict in document.session_context.conflicts[before:]:
        typer.echo(f"[{conflict.severity}] conflict {conflict.id}: {conflict.item_a.text} vs {conflict.item_b.text}")


def observe(patient_id: str, text: str, category: str) -> None:
    """Add an AI observation."""
    bundle = _runtime()
    document = bundle.load(patient_id)
    observation_id = bundle.updater(document).add_ai_observation(text, category=category)
    _persist(bundle, document)
    if observation_id is None:
        typer.echo("Duplicate observation ignored")
    else:
        typer.echo(f"Added observation {observation_id}")


def show(patient_id: str, section: str | None = None) -> None:
    """Print the document, or one section of it, as JSON."""
    if section is not None and section not in SECTIONS:
        raise typer.BadParameter(f"section must be one of: {', '.join(SECTIONS)}")
    bundle = _runtime()
    document = bundle.load(patient_id)
    payload = document.model_dump(mode="json")
    typer.echo(json.dumps(payload[section] if section else payload, indent=2))


def flags(patient_id: str) -> None:
    """List safety flags."""
    bundle = _runtime()
    document = bundle.load(patient_id)
    if not document.session_context.safety_flags:
        typer.echo("No safety flags")
    for flag in document.session_context.safety_flags:
        typer.echo(f"[{flag.severity}] {flag.text}")


def conflicts(patient_id: str, include_resolved: bool = False) -> None:
    """List logged conflicts."""
    bundle = _runtime()
    session = bundle.load(patient_id).session_context
    records = session.conflicts if include_resolved else session.unresolved_conflicts()
    if not records:
        typer.echo("No conflicts")
    for record in records:
        state = f"resolved: {record.resolution}" if record.is_resolved else "open"
        typer.echo(f"{record.id} [{record.severity}] {record.item_a.text} vs {record.item_b.text} ({state})")


def resolve_conflict(patient_id: str, conflict_id: str, resolution: str) -> None:
    """Mark a conflict resolved."""
    bundle = _runtime()
    document = bundle.load(patient_id)
    if not bundle.updater(document).resolve_conflict(conflict_id, resolution):
        typer.echo(f"No open conflict {conflict_id}", err=True)
        raise typer.Exit(code=1)
    _persist(bundle, document)
    typer.echo(f"Resolved {conflict_id}")


def writeback(patient_id: str, response_file: Path, interaction_type: str) -> None:
    """Merge a reasoning-service response into narrative and AI memory."""
    bundle = _runtime()
    text = response_file.read_text(encoding="utf-8")
    document = bundle.load(patient_id)
    writer = MemoryWriter(bundle.updater(document))
    narrative = parse_narrative_update(text)
    if narrative.model_dump(exclude_none=True):
        writer.write_back(narrative)
    writer.write_back_memory_updates(parse_memory_updates(text), interaction_type, input_summary=text)
    _persist(bundle, document)
    memory = document.ai_memory
    typer.echo(f"Wrote back {interaction_type}: summary v{memory.summary_version}, {len(memory.interaction_log)} log entries")


def clear(patient_id: str) -> None:
    """Wipe session context, narrative and AI memory; chart data stays."""
    bundle = _runtime()
    document = bundle.load(patient_id)
    document.reset_memory()
    _persist(bundle, document)
    typer.echo(f"Cleared memory for {patient_id}")


def config_show() -> None:
    """Show effective runtime config."""
    bundle = _runtime()
    typer.echo(json.dumps(bundle.config, indent=2, default=str))
