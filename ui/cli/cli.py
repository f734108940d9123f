"""CLI entrypoint for the longitudinal chart knowledge base."""

from __future__ import annotations

from pathlib import Path

import typer

from ui.cli import commands

app = typer.Typer(help="Longitudinal Clinical Knowledge Base")
config_app = typer.Typer(help="Configuration commands")

PATIENT = typer.Option(..., "--patient", "-p", help="Patient identifier")


@app.command("build")
def build_cmd(
    patient: str = PATIENT,
    encounter: str | None = typer.Option(None, help="Current encounter id"),
) -> None:
    """Build the document from chart data."""
    commands.build(patient_id=patient, encounter=encounter)


@app.command("refresh")
def refresh_cmd(patient: str = PATIENT) -> None:
    """Apply chart records newer than the last load."""
    commands.refresh(patient_id=patient)


@app.command("ingest")
def ingest_cmd(
    event_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON event or list of events"),
    patient: str = PATIENT,
) -> None:
    """Ingest tagged clinical events."""
    commands.ingest(patient_id=patient, event_file=event_file)


@app.command("dictate")
def dictate_cmd(
    text: str = typer.Argument(..., help="Dictation text"),
    patient: str = PATIENT,
) -> None:
    """Record doctor dictation."""
    commands.dictate(patient_id=patient, text=text)


@app.command("observe")
def observe_cmd(
    text: str = typer.Argument(..., help="Observation text"),
    patient: str = PATIENT,
    category: str = typer.Option("clinical", help="Observation category"),
) -> None:
    """Add an AI observation."""
    commands.observe(patient_id=patient, text=text, category=category)


@app.command("show")
def show_cmd(
    patient: str = PATIENT,
    section: str | None = typer.Option(None, "--section", help="Only show one document section"),
) -> None:
    """Show the document as JSON."""
    commands.show(patient_id=patient, section=section)


@app.command("flags")
def flags_cmd(patient: str = PATIENT) -> None:
    """List safety flags."""
    commands.flags(patient_id=patient)


@app.command("conflicts")
def conflicts_cmd(
    patient: str = PATIENT,
    include_resolved: bool = typer.Option(False, "--all", help="Include resolved conflicts"),
) -> None:
    """List conflicts."""
    commands.conflicts(patient_id=patient, include_resolved=include_resolved)


@app.command("resolve-conflict")
def resolve_conflict_cmd(
    conflict_id: str = typer.Argument(..., help="Conflict id"),
    resolution: str = typer.Argument(..., help="How the conflict was resolved"),
    patient: str = PATIENT,
) -> None:
    """Resolve a conflict."""
    commands.resolve_conflict(patient_id=patient, conflict_id=conflict_id, resolution=resolution)


@app.command("writeback")
def writeback_cmd(
    response_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Reasoning service response"),
    patient: str = PATIENT,
    interaction_type: str = typer.Option("chat", "--type", help="Interaction type for the log"),
) -> None:
    """Write back a reasoning result."""
    commands.writeback(patient_id=patient, response_file=response_file, interaction_type=interaction_type)


@app.command("clear")
def clear_cmd(patient: str = PATIENT) -> None:
    """Clear session context and AI memory."""
    commands.clear(patient_id=patient)


@config_app.command("show")
def config_show_cmd() -> None:
    """Show effective configuration."""
    commands.config_show()


app.add_typer(config_app, name="config")


def main() -> None:
    """Console script entrypoint."""
    app()


if __name__ == "__main__":
    main()
