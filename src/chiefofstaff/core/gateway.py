from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from chiefofstaff import __version__
from chiefofstaff.core.config import Settings
from chiefofstaff.core.daemon import Daemon, build_daemon
from chiefofstaff.core.logging_config import setup_logging
from chiefofstaff.core.reports import generate_report, get_report, list_reports
from chiefofstaff.core.task_store import SCOPES, SYSTEM, USER

logger = logging.getLogger("chiefofstaff.gateway")


# ---- models ----

class PauseRequest(BaseModel):
    reason: Optional[str] = None


class TaskCreate(BaseModel):
    description: str
    priority: str = "MEDIUM"
    id: Optional[str] = None
    type: str = USER
    context: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    app: Optional[str] = None
    metadata: Dict[str, Any] = {}
    approvalRequired: bool = False


class TaskUpdate(BaseModel):
    description: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    context: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    app: Optional[str] = None
    metadata: Dict[str, Any] = {}


class ReorderRequest(BaseModel):
    taskIds: List[str]


class ReportRequest(BaseModel):
    date: Optional[str] = None


def _raise_for_error(result: dict) -> dict:
    """Turn a store ``{"error": ...}`` result into an HTTP error."""
    error = result.get("error")
    if error and result.get("success") is not True:
        status = 404 if "not found" in str(error).lower() else 400
        raise HTTPException(status_code=status, detail=error)
    return result


def _scope(value: str) -> str:
    # "cos" is accepted for the system queue
    scope = SYSTEM if value in ("cos", "internal") else value
    if scope not in SCOPES:
        raise HTTPException(status_code=400, detail=f"Unknown task type: {value}")
    return scope


def create_app(settings: Optional[Settings] = None, daemon: Optional[Daemon] = None) -> FastAPI:
    if settings is None:
        # Ensure .env is loaded before anything reads os.getenv
        load_dotenv(override=False)
        settings = Settings.from_env()
        setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)

    os.makedirs(settings.data_dir, exist_ok=True)
    os.makedirs(settings.cos_dir, exist_ok=True)

    if daemon is None:
        daemon = build_daemon(settings)
    registry = daemon.registry
    task_store = daemon.task_store

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        if settings.auto_start and daemon.state_store.read().config.always_on:
            result = daemon.start()
            logger.info("Daemon auto-start: %s", result)

        yield

        # Shutdown
        if daemon.running:
            daemon.stop()
        stop_all = getattr(daemon.runner, "stop_all", None)
        if callable(stop_all):
            stop_all()

    app = FastAPI(title="Chief of Staff", version=__version__, lifespan=lifespan)
    app.state.daemon = daemon

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/cos/status")
    def cos_status() -> dict:
        return daemon.status()

    @app.post("/cos/start")
    def cos_start() -> dict:
        return daemon.start()

    @app.post("/cos/stop")
    def cos_stop() -> dict:
        return daemon.stop()

    @app.post("/cos/pause")
    def cos_pause(req: Optional[PauseRequest] = None) -> dict:
        return daemon.pause(req.reason if req else None)

    @app.post("/cos/resume")
    def cos_resume() -> dict:
        return daemon.resume()

    # ---- tasks ----

    @app.get("/cos/tasks")
    def list_tasks() -> dict:
        queues = task_store.load_all()
        return {"user": queues[USER].to_dict(), "cos": queues[SYSTEM].to_dict()}

    @app.post("/cos/tasks")
    def add_task(req: TaskCreate) -> dict:
        data = req.model_dump(exclude_none=True)
        scope = _scope(data.pop("type", USER))
        try:
            task = task_store.add_task(data, scope=scope)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return task.to_dict()

    @app.post("/cos/tasks/reorder")
    def reorder_tasks(req: ReorderRequest) -> dict:
        return _raise_for_error(task_store.reorder_tasks(req.taskIds))

    @app.put("/cos/tasks/{task_id}")
    def update_task(task_id: str, req: TaskUpdate, type: str = USER) -> dict:
        updates = req.model_dump(exclude_unset=True)
        return _raise_for_error(task_store.update_task(task_id, updates, scope=_scope(type)))

    @app.delete("/cos/tasks/{task_id}")
    def delete_task(task_id: str, type: str = USER) -> dict:
        return _raise_for_error(task_store.delete_task(task_id, scope=_scope(type)))

    @app.post("/cos/tasks/{task_id}/approve")
    def approve_task(task_id: str) -> dict:
        return _raise_for_error(task_store.approve_task(task_id))

    # ---- agents ----

    @app.get("/cos/agents")
    def list_agents() -> list[dict]:
        return [a.to_dict() for a in registry.list_agents()]

    @app.delete("/cos/agents")
    def clear_completed_agents() -> dict:
        return registry.clear_completed()

    @app.post("/cos/agents/cleanup")
    def cleanup_agents() -> dict:
        return registry.cleanup_zombies()

    @app.get("/cos/agents/{agent_id}")
    def get_agent(agent_id: str) -> dict:
        agent = registry.get_agent(agent_id)
        if agent is None:
            raise HTTPException(status_code=404, detail="Agent not found")
        return agent

    @app.delete("/cos/agents/{agent_id}")
    def delete_agent(agent_id: str) -> dict:
        return _raise_for_error(registry.delete_agent(agent_id))

    @app.post("/cos/agents/{agent_id}/terminate")
    def terminate_agent(agent_id: str) -> dict:
        return _raise_for_error(registry.terminate(agent_id))

    @app.post("/cos/agents/{agent_id}/kill")
    def kill_agent(agent_id: str) -> dict:
        return _raise_for_error(registry.kill(agent_id))

    # ---- health / config ----

    @app.get("/cos/health")
    def cos_health() -> dict:
        return daemon.get_health_status()

    @app.post("/cos/health/check")
    def cos_health_check() -> dict:
        return daemon.run_health_check()

    @app.get("/cos/config")
    def get_config() -> dict:
        return daemon.get_config()

    @app.put("/cos/config")
    def update_config(updates: Dict[str, Any]) -> dict:
        return daemon.update_config(updates)

    # ---- activity ----

    @app.get("/cos/activity")
    def get_activity() -> dict:
        return {target_id: a.to_dict() for target_id, a in daemon.activity.all().items()}

    @app.post("/cos/activity/{target_id}/clear-cooldown")
    def clear_cooldown(target_id: str) -> dict:
        return daemon.activity.clear_cooldown(target_id).to_dict()

    # ---- reports ----

    @app.get("/cos/reports")
    def reports() -> list[str]:
        return list_reports(settings.reports_dir)

    @app.post("/cos/reports")
    def create_report(req: Optional[ReportRequest] = None) -> dict:
        try:
            return generate_report(daemon.state_store, settings.reports_dir, req.date if req else None)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/cos/reports/{date}")
    def report(date: str) -> dict:
        found = get_report(settings.reports_dir, date)
        if found is None:
            raise HTTPException(status_code=404, detail="Report not found")
        return found

    return app
