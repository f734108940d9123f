"""CLI wiring tests against a throwaway project root."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from ui.cli import commands
from ui.cli.cli import app

runner = CliRunner()


@pytest.fixture
def project_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config = {"paths": {"db_path": "workspace/lckb.db", "chart_data_dir": "charts"}, "logging": {"level": "WARNING"}}
    (config_dir / "default.yaml").write_text(yaml.safe_dump(config), encoding="utf-8")
    (config_dir / "local.yaml").write_text(yaml.safe_dump({"limits": {"max_key_findings": 5}}), encoding="utf-8")

    chart = tmp_path / "charts" / "PAT001"
    (chart / "problems").mkdir(parents=True)
    (chart / "demographics.json").write_text(json.dumps({"name": "Test Patient"}), encoding="utf-8")
    (chart / "problems" / "active.json").write_text(
        json.dumps({"problems": [{"id": "PROB001", "name": "Upper GI bleed"}]}), encoding="utf-8"
    )

    real_runtime = commands._runtime
    monkeypatch.setattr(commands, "_runtime", lambda root=None: real_runtime(tmp_path))
    return tmp_path


def test_build_and_show_section(project_root: Path) -> None:
    result = runner.invoke(app, ["build", "--patient", "PAT001"])
    assert result.exit_code == 0, result.output
    assert "Built PAT001: 1 problems" in result.output

    result = runner.invoke(app, ["show", "-p", "PAT001", "--section", "patient_snapshot"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["code_status"] == "Full Code"

    result = runner.invoke(app, ["show", "-p", "PAT001", "--section", "bogus"])
    assert result.exit_code != 0


def test_dictation_conflict_round_trips_through_store(project_root: Path) -> None:
    assert runner.invoke(app, ["observe", "Active bleeding from GI source", "-p", "PAT001"]).exit_code == 0

    result = runner.invoke(app, ["dictate", "Start heparin drip", "-p", "PAT001"])
    assert result.exit_code == 0, result.output
    assert "[critical] conflict" in result.output

    result = runner.invoke(app, ["flags", "-p", "PAT001"])
    assert "[critical] CONFLICT:" in result.output

    listed = runner.invoke(app, ["conflicts", "-p", "PAT001"]).output.splitlines()
    conflict_id = next(line.split()[0] for line in listed if line.startswith("conflict_"))
    assert runner.invoke(app, ["resolve-conflict", conflict_id, "Using SCDs", "-p", "PAT001"]).exit_code == 0
    assert runner.invoke(app, ["resolve-conflict", conflict_id, "again", "-p", "PAT001"]).exit_code == 1
    assert "No conflicts" in runner.invoke(app, ["conflicts", "-p", "PAT001"]).output
    assert "Using SCDs" in runner.invoke(app, ["conflicts", "--all", "-p", "PAT001"]).output


def test_ingest_writeback_and_clear(project_root: Path) -> None:
    events = [
        {"kind": "vitals", "timestamp": "2026-03-10T08:00:00Z", "heart_rate": 160},
        {"kind": "unknown"},
    ]
    event_file = project_root / "events.json"
    event_file.write_text(json.dumps(events), encoding="utf-8")
    result = runner.invoke(app, ["ingest", str(event_file), "-p", "PAT001"])
    assert result.exit_code == 0, result.output
    assert "Ingested 1 of 2 events" in result.output

    response = project_root / "response.txt"
    response.write_text(
        '<memory_update>{"patientSummaryUpdate": "Tachycardic overnight"}</memory_update>'
        '{"openQuestions": ["Rate control?"]}',
        encoding="utf-8",
    )
    result = runner.invoke(app, ["writeback", str(response), "-p", "PAT001", "--type", "ask"])
    assert result.exit_code == 0, result.output
    assert "summary v1, 1 log entries" in result.output

    narrative = json.loads(runner.invoke(app, ["show", "-p", "PAT001", "--section", "clinical_narrative"]).output)
    assert narrative["open_questions"] == ["Rate control?"]

    assert runner.invoke(app, ["clear", "-p", "PAT001"]).exit_code == 0
    memory = json.loads(runner.invoke(app, ["show", "-p", "PAT001", "--section", "ai_memory"]).output)
    assert memory["patient_summary"] == ""
    vitals = json.loads(runner.invoke(app, ["show", "-p", "PAT001", "--section", "longitudinal_data"]).output)["vitals"]
    assert len(vitals) == 1


def test_config_show_merges_local_overrides(project_root: Path) -> None:
    result = runner.invoke(app, ["config", "show"])
    assert result.exit_code == 0, result.output
    config = json.loads(result.output)
    assert config["limits"] == {"max_key_findings": 5}
    assert config["paths"]["chart_data_dir"] == "charts"
