"""CLI commands for validating plans and driving sessions."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Dict, Optional, TypeVar

import typer

from .config import (
    DEFAULT_CONFIG_NAME,
    ValidationSettings,
    configure_logging,
    copy_config_template,
    load_config,
    resolve_path,
    write_config,
)
from .errors import ConfigError, PlangateError, VersionConflictError
from .hashing import compute_plan_hash, compute_step_hash
from .plan.completion import PlanCompletionChecker
from .plan.loader import PlanLoader
from .plan.revisions import revise_stored_plan
from .plan.validator import PlanValidator
from .session.machine import SessionStageMachine, StageTransition
from .session.models import BackoutAction, BackoutReason, Session
from .session.store import SessionStore
from .storage import FileJsonStore
from .validation_loop import ValidationLoopController

APP_HELP = "Plan validation gate and session stage machine."

app = typer.Typer(help=APP_HELP)
session_app = typer.Typer(help="Create and move sessions through the stage pipeline.")
app.add_typer(session_app, name="session")

T = TypeVar("T")

CONFIG_OPTION = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    "-c",
    help="Path to the plangate configuration file.",
)


def _load_or_default(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        return copy_config_template()
    try:
        return load_config(config_path)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _run(coro: Awaitable[T]) -> T:
    """Run ``coro`` and convert plangate failures into CLI exits."""
    try:
        return asyncio.run(coro)
    except VersionConflictError as error:
        typer.echo(f"Conflict: {error}. Re-read the session and retry with its current version.")
        raise typer.Exit(code=2) from error
    except PlangateError as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error


def _checker(config: Dict[str, Any]) -> PlanCompletionChecker:
    settings = ValidationSettings.from_config(config)
    validator = PlanValidator(require_complexity=settings.require_complexity)
    return PlanCompletionChecker(validator=validator, loader=PlanLoader(FileJsonStore()))


def _machine(config: Dict[str, Any], config_path: Path) -> SessionStageMachine:
    settings = ValidationSettings.from_config(config)
    plan_store = FileJsonStore()
    validator = PlanValidator(require_complexity=settings.require_complexity)
    return SessionStageMachine(
        store=SessionStore(resolve_path(config, "db_path", config_path)),
        plan_store=plan_store,
        checker=PlanCompletionChecker(validator=validator, loader=PlanLoader(plan_store)),
        loop=ValidationLoopController(max_attempts=settings.max_attempts),
    )


def _render_session(session: Session) -> None:
    queue = f" queue#{session.queue_position}" if session.queue_position is not None else ""
    typer.echo(
        f"{session.key} [{session.status.value}] stage {session.current_stage}{queue} "
        f"v{session.data_version}"
    )
    if session.backout_reason:
        typer.echo(f"  backout: {session.backout_reason.value}")
    if session.plan_validation_attempts:
        typer.echo(f"  plan validation attempts: {session.plan_validation_attempts}")


def _render_transition(transition: StageTransition) -> None:
    _render_session(transition.session)
    if transition.gate is not None:
        typer.echo(f"Plan gate: {transition.gate.verdict.value}")
        if transition.gate.reprompt is not None and transition.gate.reprompt.detailed_context:
            typer.echo(transition.gate.reprompt.detailed_context)
    if transition.drift is not None:
        state = "changed" if transition.drift.changed else "unchanged"
        typer.echo(f"Plan {state} during review ({transition.drift.before_hash} -> {transition.drift.after_hash})")
    if transition.promoted_session is not None:
        typer.echo("Promoted:")
        _render_session(transition.promoted_session)


@app.command()
def init(config: str = CONFIG_OPTION) -> None:
    """Write a default configuration and create the session database."""
    config_path = Path(config)
    if config_path.exists():
        config_data = _load_or_default(config_path)
        typer.echo(f"Using existing configuration at {config_path}.")
    else:
        config_data = copy_config_template()
        write_config(config_path, config_data)
        typer.echo(f"Wrote default configuration to {config_path}.")

    resolve_path(config_data, "sessions", config_path).mkdir(parents=True, exist_ok=True)
    store = SessionStore(resolve_path(config_data, "db_path", config_path))
    _run(store.init())
    typer.echo(f"Session database ready at {store.db_path}.")


@app.command()
def validate(
    session_dir: Path = typer.Argument(..., help="Session directory holding plan.json or plan/."),
    as_json: bool = typer.Option(False, "--json", help="Print the validation result as JSON."),
    config: str = CONFIG_OPTION,
) -> None:
    """Validate the plan stored in SESSION_DIR; exits 1 when it is incomplete."""
    config_data = _load_or_default(Path(config))
    configure_logging(config_data)
    result = _run(_checker(config_data).check_plan_completeness(str(session_dir)))

    if as_json:
        payload = {
            "complete": result.complete,
            "source": result.source.value,
            "validation": result.validation_result.to_dict(),
        }
        typer.echo(json.dumps(payload, indent=2))
    else:
        for name, section in result.validation_result.sections():
            typer.echo(f"- {name}: {'ok' if section.valid else 'invalid'}")
            for error in section.errors:
                typer.echo(f"    ! {error}")
        typer.echo("Plan complete." if result.complete else result.missing_context)

    if not result.complete:
        raise typer.Exit(code=1)


@app.command()
def reprompt(
    session_dir: Path = typer.Argument(..., help="Session directory holding plan.json or plan/."),
    config: str = CONFIG_OPTION,
) -> None:
    """Print the re-prompt document for an incomplete plan."""
    config_data = _load_or_default(Path(config))
    checker = _checker(config_data)
    result = _run(checker.check_plan_completeness(str(session_dir)))
    context = checker.build_reprompt_context(result.validation_result)
    typer.echo(context.detailed_context or context.summary)


@app.command()
def revise(session_dir: Path = typer.Argument(..., help="Session directory holding the plan.")) -> None:
    """Apply new-*.json revision documents to the stored plan."""
    outcome = _run(revise_stored_plan(PlanLoader(FileJsonStore()), str(session_dir)))
    if outcome.errors:
        typer.echo("Revision documents rejected:")
        for error in outcome.errors:
            typer.echo(f"  - {error}")
        raise typer.Exit(code=1)
    typer.echo("Plan revised." if outcome.applied else "No revision documents found.")


@app.command("hash")
def hash_plan(plan_path: Path = typer.Argument(..., help="Path to a consolidated plan JSON file.")) -> None:
    """Print the plan hash and each step's content hash."""
    try:
        plan = json.loads(plan_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        typer.echo(f"Failed to read plan: {error}")
        raise typer.Exit(code=1) from error
    if not isinstance(plan, dict):
        typer.echo("Plan must be a JSON object.")
        raise typer.Exit(code=1)

    typer.echo(f"plan {compute_plan_hash(plan)}")
    for step in plan.get("steps") or []:
        if isinstance(step, dict):
            typer.echo(f"{step.get('id', '?')} {compute_step_hash(step)}")


@session_app.command("create")
def session_create(
    project_id: str = typer.Argument(...),
    feature_id: str = typer.Argument(...),
    title: str = typer.Option("", "--title", "-t", help="Human-readable session title."),
    session_dir: Optional[Path] = typer.Option(None, "--dir", help="Override the session directory."),
    config: str = CONFIG_OPTION,
) -> None:
    """Create a session; it is queued when the project already has an active one."""
    config_path = Path(config)
    config_data = _load_or_default(config_path)
    directory = session_dir or resolve_path(config_data, "sessions", config_path) / project_id / feature_id
    directory.mkdir(parents=True, exist_ok=True)
    machine = _machine(config_data, config_path)

    async def _create() -> Session:
        await machine.store.init()
        return await machine.create_session(project_id, feature_id, str(directory), title=title)

    _render_session(_run(_create()))


@session_app.command("show")
def session_show(
    project_id: str = typer.Argument(...),
    feature_id: str = typer.Argument(...),
    config: str = CONFIG_OPTION,
) -> None:
    config_path = Path(config)
    machine = _machine(_load_or_default(config_path), config_path)
    session = _run(machine.get_session(project_id, feature_id))
    _render_session(session)
    if session.plan_validation_context:
        typer.echo(session.plan_validation_context)


@session_app.command("list")
def session_list(project_id: str = typer.Argument(...), config: str = CONFIG_OPTION) -> None:
    config_path = Path(config)
    machine = _machine(_load_or_default(config_path), config_path)
    sessions = _run(machine.list_sessions(project_id))
    if not sessions:
        typer.echo(f"No sessions for project {project_id}.")
        return
    for session in sessions:
        _render_session(session)


@session_app.command("advance")
def session_advance(
    project_id: str = typer.Argument(...),
    feature_id: str = typer.Argument(...),
    stage: int = typer.Argument(..., min=1, max=5, help="Target stage (1-5)."),
    version: int = typer.Option(..., "--version", "-v", help="Last-seen data version of the session."),
    config: str = CONFIG_OPTION,
) -> None:
    """Move a session to STAGE; entering stage 3 runs the plan gate."""
    config_path = Path(config)
    config_data = _load_or_default(config_path)
    configure_logging(config_data)
    machine = _machine(config_data, config_path)
    _render_transition(_run(machine.transition_stage(project_id, feature_id, stage, version)))


@session_app.command("review-done")
def session_review_done(
    project_id: str = typer.Argument(...),
    feature_id: str = typer.Argument(...),
    version: int = typer.Option(..., "--version", "-v"),
    config: str = CONFIG_OPTION,
) -> None:
    """Finish PR review, returning to planning if the plan changed."""
    config_path = Path(config)
    machine = _machine(_load_or_default(config_path), config_path)
    _render_transition(_run(machine.complete_pr_review(project_id, feature_id, version)))


@session_app.command("complete")
def session_complete(
    project_id: str = typer.Argument(...),
    feature_id: str = typer.Argument(...),
    version: int = typer.Option(..., "--version", "-v"),
    config: str = CONFIG_OPTION,
) -> None:
    config_path = Path(config)
    machine = _machine(_load_or_default(config_path), config_path)
    _render_transition(_run(machine.complete_session(project_id, feature_id, version)))


@session_app.command("backout")
def session_backout(
    project_id: str = typer.Argument(...),
    feature_id: str = typer.Argument(...),
    action: BackoutAction = typer.Option(..., "--action", "-a", case_sensitive=False),
    reason: BackoutReason = typer.Option(BackoutReason.USER_REQUESTED, "--reason", "-r", case_sensitive=False),
    version: int = typer.Option(..., "--version", "-v"),
    config: str = CONFIG_OPTION,
) -> None:
    """Pause or abandon a session and promote the next queued one."""
    config_path = Path(config)
    machine = _machine(_load_or_default(config_path), config_path)
    outcome = _run(machine.backout(project_id, feature_id, action, version, reason=reason))
    _render_session(outcome.session)
    if outcome.promoted_session is not None:
        typer.echo("Promoted:")
        _render_session(outcome.promoted_session)


@session_app.command("resume")
def session_resume(
    project_id: str = typer.Argument(...),
    feature_id: str = typer.Argument(...),
    version: int = typer.Option(..., "--version", "-v"),
    config: str = CONFIG_OPTION,
) -> None:
    """Resume a paused session, or queue it at the front if the slot is taken."""
    config_path = Path(config)
    machine = _machine(_load_or_default(config_path), config_path)
    outcome = _run(machine.resume(project_id, feature_id, version))
    _render_session(outcome.session)
    if outcome.was_queued:
        typer.echo("Another session is active; queued at position 1.")


if __name__ == "__main__":
    app()
