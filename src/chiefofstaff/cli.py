from __future__ import annotations

import json
from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

from chiefofstaff.core.config import Settings

app = typer.Typer(add_completion=False)


def _load_env() -> Settings:
    load_dotenv()
    return Settings.from_env()


def _setup_logging(settings: Settings) -> None:
    """Configure centralized logging to both stdout and log files."""
    from chiefofstaff.core.logging_config import setup_logging

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default: COS_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default: COS_PORT)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """Run the daemon behind its HTTP control surface."""
    settings = _load_env()
    _setup_logging(settings)
    uvicorn.run(
        "chiefofstaff.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        factory=True,
    )


@app.command()
def version() -> None:
    from chiefofstaff import __version__

    typer.echo(__version__)


@app.command()
def tasks(as_json: bool = typer.Option(False, "--json", help="Print raw JSON")) -> None:
    """Show the user and system task queues."""
    from chiefofstaff.core.task_store import TaskStore

    settings = _load_env()
    store = TaskStore(settings.user_tasks_file, settings.system_tasks_file)
    queues = store.load_all()
    if as_json:
        typer.echo(json.dumps({scope: q.to_dict() for scope, q in queues.items()}, indent=2))
        return
    for scope, queue in queues.items():
        typer.echo(f"{scope} ({queue.file}){'' if queue.exists else ' [missing]'}")
        if not queue.tasks:
            typer.echo("  (no tasks)")
        for task in queue.tasks:
            flag = " [needs approval]" if task.approval_required else ""
            typer.echo(f"  {task.status:<12} {task.priority:<8} {task.id}  {task.description}{flag}")


@app.command("add-task")
def add_task(
    description: str = typer.Argument(..., help="What the agent should do"),
    priority: str = typer.Option("MEDIUM", help="CRITICAL, HIGH, MEDIUM or LOW"),
    app_id: Optional[str] = typer.Option(None, "--app", help="Target application id"),
    system: bool = typer.Option(False, "--system", help="Add to the system queue"),
    approval_required: bool = typer.Option(False, "--approval-required", help="System tasks only"),
) -> None:
    """Append a task to a queue file."""
    from chiefofstaff.core.task_store import SYSTEM, USER, TaskStore

    settings = _load_env()
    store = TaskStore(settings.user_tasks_file, settings.system_tasks_file)
    data = {"description": description, "priority": priority, "app": app_id, "approvalRequired": approval_required}
    try:
        task = store.add_task(data, scope=SYSTEM if system else USER)
    except ValueError as exc:
        typer.echo(f"Invalid task: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Added {task.id}")


@app.command("cleanup-zombies")
def cleanup_zombies() -> None:
    """Close agent records whose processes are gone."""
    from chiefofstaff.core.agents import AgentRegistry
    from chiefofstaff.core.events import EventBus
    from chiefofstaff.core.state import StateStore

    settings = _load_env()
    registry = AgentRegistry(StateStore(settings.state_file), settings.agents_dir, EventBus())
    result = registry.cleanup_zombies()
    typer.echo(f"Cleaned {result['count']} zombie agent(s)")
    for agent_id in result["cleaned"]:
        typer.echo(f"  {agent_id}")


@app.command()
def report(date: Optional[str] = typer.Option(None, help="YYYY-MM-DD (default: today, UTC)")) -> None:
    """Write and print the daily agent report."""
    from chiefofstaff.core.reports import generate_report
    from chiefofstaff.core.state import StateStore

    settings = _load_env()
    try:
        result = generate_report(StateStore(settings.state_file), settings.reports_dir, date)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    summary = result["summary"]
    typer.echo(f"{result['date']}: {summary['total']} agent(s), {summary['succeeded']} succeeded, {summary['failed']} failed")


if __name__ == "__main__":
    app()
