from __future__ import annotations

import json

from typer.testing import CliRunner

from plangate.cli import app


def _init(runner: CliRunner, tmp_path) -> str:
    config_path = tmp_path / "plangate.yaml"
    result = runner.invoke(app, ["init", "--config", str(config_path)])
    assert result.exit_code == 0, result.output
    return str(config_path)


def _write_plan(directory, plan) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "plan.json").write_text(json.dumps(plan), encoding="utf-8")


def test_init_writes_config_and_database(tmp_path) -> None:
    runner = CliRunner()
    config = _init(runner, tmp_path)

    assert (tmp_path / "plangate.yaml").exists()
    assert (tmp_path / "data" / "sessions.sqlite").exists()
    assert (tmp_path / "data" / "sessions").is_dir()

    again = runner.invoke(app, ["init", "--config", config])
    assert again.exit_code == 0
    assert "Using existing configuration" in again.output


def test_validate_reports_complete_and_incomplete_plans(tmp_path, plan_document) -> None:
    runner = CliRunner()
    session_dir = tmp_path / "session"
    _write_plan(session_dir, plan_document)
    config = str(tmp_path / "plangate.yaml")

    result = runner.invoke(app, ["validate", str(session_dir), "--config", config])
    assert result.exit_code == 0, result.output
    assert "Plan complete." in result.output

    plan_document["steps"][0]["title"] = "TBD"
    _write_plan(session_dir, plan_document)
    result = runner.invoke(app, ["validate", str(session_dir), "--json", "--config", config])
    assert result.exit_code == 1
    payload = json.loads(result.stdout)
    assert payload["complete"] is False
    assert payload["source"] == "consolidated"
    assert payload["validation"]["steps"]["errors"] == ["Step 1 (s1): title: contains placeholder text"]


def test_reprompt_prints_revision_instructions(tmp_path, plan_document) -> None:
    runner = CliRunner()
    session_dir = tmp_path / "session"
    del plan_document["steps"][1]["complexity"]
    _write_plan(session_dir, plan_document)

    result = runner.invoke(app, ["reprompt", str(session_dir), "--config", str(tmp_path / "plangate.yaml")])

    assert result.exit_code == 0
    assert "## Plan Validation Failed" in result.output
    assert "new-steps.json" in result.output


def test_hash_prints_plan_and_step_hashes(tmp_path, plan_document) -> None:
    runner = CliRunner()
    plan_path = tmp_path / "plan.json"
    plan_path.write_text(json.dumps(plan_document), encoding="utf-8")

    result = runner.invoke(app, ["hash", str(plan_path)])

    assert result.exit_code == 0
    lines = result.output.strip().splitlines()
    assert lines[0].startswith("plan ")
    assert len(lines[0].split()[1]) == 32
    assert [line.split()[0] for line in lines[1:]] == ["s1", "s2"]

    plan_path.write_text("[]", encoding="utf-8")
    assert runner.invoke(app, ["hash", str(plan_path)]).exit_code == 1


def test_revise_without_documents(tmp_path, plan_document) -> None:
    runner = CliRunner()
    _write_plan(tmp_path, plan_document)

    result = runner.invoke(app, ["revise", str(tmp_path)])

    assert result.exit_code == 0
    assert "No revision documents found." in result.output


def test_session_commands_drive_the_pipeline(tmp_path) -> None:
    runner = CliRunner()
    config = _init(runner, tmp_path)

    created = runner.invoke(app, ["session", "create", "p1", "f1", "--title", "First", "--config", config])
    assert created.exit_code == 0, created.output
    assert "p1/f1 [discovery] stage 1 v1" in created.output
    assert (tmp_path / "data" / "sessions" / "p1" / "f1").is_dir()

    queued = runner.invoke(app, ["session", "create", "p1", "f2", "--config", config])
    assert "p1/f2 [queued] stage 1 queue#1" in queued.output

    advanced = runner.invoke(app, ["session", "advance", "p1", "f1", "2", "--version", "1", "--config", config])
    assert advanced.exit_code == 0, advanced.output
    assert "p1/f1 [planning] stage 2 v2" in advanced.output

    stale = runner.invoke(app, ["session", "advance", "p1", "f1", "3", "--version", "1", "--config", config])
    assert stale.exit_code == 2
    assert "Conflict" in stale.output

    listing = runner.invoke(app, ["session", "list", "p1", "--config", config])
    assert listing.output.splitlines()[0].startswith("p1/f2")

    paused = runner.invoke(
        app, ["session", "backout", "p1", "f1", "--action", "pause", "--version", "2", "--config", config]
    )
    assert paused.exit_code == 0, paused.output
    assert "[paused]" in paused.output
    assert "Promoted:" in paused.output

    resumed = runner.invoke(app, ["session", "resume", "p1", "f1", "--version", "3", "--config", config])
    assert resumed.exit_code == 0, resumed.output
    assert "queued at position 1" in resumed.output

    missing = runner.invoke(app, ["session", "show", "p1", "nope", "--config", config])
    assert missing.exit_code == 1
    assert "Session not found: p1/nope" in missing.output
