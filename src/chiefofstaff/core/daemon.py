"""Chief of Staff daemon: evaluation and health-check loops.

The daemon never runs work itself.  Each evaluation tick picks pending
tasks (user queue first, then auto-approved system tasks, then an idle
review when nothing else is ready) and publishes ``task:ready`` for the
agent runner.  A second, slower ticker samples process metrics.

Lifecycle::

    stopped → start() → running ⇄ pause()/resume() → stop() → stopped

Startup reconciliation runs before the first tick: zombie agents are
closed first, then ``in_progress`` tasks without a running agent are
put back to ``pending``.
"""
from __future__ import annotations

from datetime import datetime, timezone
import logging
import re
import threading
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from chiefofstaff.core import task_queue as tq
from chiefofstaff.core.activity import ActivityStore, Target, load_targets
from chiefofstaff.core.agents import AgentRegistry
from chiefofstaff.core.config import Settings
from chiefofstaff.core.events import EventBus, EventType, emit_log
from chiefofstaff.core.health import Pm2Probe, ProcessProbe, check_processes
from chiefofstaff.core.state import DaemonConfig, StateStore
from chiefofstaff.core.task_queue import Task
from chiefofstaff.core.task_store import SCOPES, SYSTEM, USER, TaskStore

logger = logging.getLogger("chiefofstaff.daemon")

# A dispatched task holds its slot until its agent registers or this expires
RESERVATION_GRACE_S = 300.0

TargetSource = Union[Callable[[], List[Target]], Iterable[Target], None]


class Ticker:
    """Runs *fn* every *interval_s* seconds on its own thread.

    ``trigger()`` wakes the loop for an immediate run; triggers that land
    while *fn* is running coalesce into one extra run.
    """

    def __init__(self, name: str, interval_s: float, fn: Callable[[], Any]) -> None:
        self.name = name
        self.interval_s = interval_s
        self.fn = fn
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(self.interval_s)
            if self._stop.is_set():
                break
            self._wake.clear()
            try:
                self.fn()
            except Exception:  # noqa: BLE001
                logger.exception("%s tick failed", self.name)

    def trigger(self) -> None:
        self._wake.set()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Daemon:
    def __init__(
        self,
        state_store: StateStore,
        task_store: TaskStore,
        registry: AgentRegistry,
        activity: ActivityStore,
        bus: EventBus,
        probe: Optional[ProcessProbe] = None,
        targets: TargetSource = None,
    ) -> None:
        self.state_store = state_store
        self.task_store = task_store
        self.registry = registry
        self.activity = activity
        self.bus = bus
        self.probe = probe
        self.runner: Any = None
        if callable(targets):
            self._targets: Callable[[], List[Target]] = targets
        else:
            fixed = list(targets or [])
            self._targets = lambda: list(fixed)

        self._lock = threading.RLock()
        self._eval_lock = threading.Lock()
        self._running = False
        self._eval_ticker: Optional[Ticker] = None
        self._health_ticker: Optional[Ticker] = None
        # task id → monotonic dispatch time
        self._dispatched: Dict[str, float] = {}

        bus.subscribe(EventType.AGENT_SPAWNED, self._release_reservation)
        bus.subscribe(EventType.AGENT_COMPLETED, self._on_agent_completed)
        bus.subscribe(EventType.AGENTS_CHANGED, self._on_agents_changed)
        bus.subscribe(EventType.TASKS_CHANGED, self._on_tasks_changed)

    # ── lifecycle ────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> dict:
        with self._lock:
            if self._running:
                return {"success": False, "error": "Already running"}
            self._running = True

        with self.state_store.transaction() as state:
            state.running = True
            config = state.config
        emit_log(self.bus, "info", "Chief of Staff starting")

        self._safely("zombie sweep", self.registry.cleanup_zombies)
        self._safely("stale target sweep", self.release_stale_targets)
        self._safely("orphan sweep", self.reset_orphaned_tasks)

        with self._lock:
            self._eval_ticker = Ticker("cos-evaluation", config.evaluation_interval_ms / 1000, self.evaluate)
            self._health_ticker = Ticker("cos-health", config.health_check_interval_ms / 1000, self.run_health_check)
            self._eval_ticker.start()
            self._health_ticker.start()
            health_ticker = self._health_ticker

        self._safely("initial evaluation", self.evaluate)
        # pm2 can be slow; the first health check runs on its own thread
        health_ticker.trigger()

        self.bus.publish(EventType.STATUS, {"running": True, "paused": self.is_paused()})
        emit_log(self.bus, "success", "Chief of Staff started")
        return {"success": True}

    def stop(self) -> dict:
        with self._lock:
            if not self._running:
                return {"success": False, "error": "Not running"}
            self._running = False
            tickers = [t for t in (self._eval_ticker, self._health_ticker) if t is not None]
            self._eval_ticker = None
            self._health_ticker = None
            self._dispatched.clear()
        for ticker in tickers:
            ticker.stop()
        with self.state_store.transaction() as state:
            state.running = False
        self.bus.publish(EventType.STATUS, {"running": False})
        emit_log(self.bus, "info", "Chief of Staff stopped")
        return {"success": True}

    def pause(self, reason: Optional[str] = None) -> dict:
        with self.state_store.transaction() as state:
            if state.paused:
                return {"success": False, "error": "Already paused"}
            state.paused = True
            state.paused_at = _now()
            state.pause_reason = reason
            paused_at = state.paused_at
        self.bus.publish(EventType.STATUS_PAUSED, {"pausedAt": _iso(paused_at), "reason": reason})
        emit_log(self.bus, "info", f"Chief of Staff paused{': ' + reason if reason else ''}")
        return {"success": True, "pausedAt": _iso(paused_at)}

    def resume(self) -> dict:
        with self.state_store.transaction() as state:
            if not state.paused:
                return {"success": False, "error": "Not paused"}
            state.paused = False
            state.paused_at = None
            state.pause_reason = None
        self.bus.publish(EventType.STATUS_RESUMED, {"resumedAt": _iso(_now())})
        emit_log(self.bus, "info", "Chief of Staff resumed")
        ticker = self._eval_ticker
        if ticker is not None:
            ticker.trigger()
        return {"success": True}

    def is_paused(self) -> bool:
        return self.state_store.read().paused

    def status(self) -> dict:
        state = self.state_store.read()
        active = []
        for agent in state.running_agents():
            d = agent.to_dict()
            d.pop("output", None)
            active.append(d)
        return {
            "running": self._running,
            "paused": state.paused,
            "pausedAt": _iso(state.paused_at),
            "pauseReason": state.pause_reason,
            "config": state.config.to_dict(),
            "stats": state.stats.to_dict(),
            "activeAgents": active,
        }

    # ── reconciliation ───────────────────────────────────────

    def reset_orphaned_tasks(self) -> dict:
        """Put ``in_progress`` tasks with no running agent back to ``pending``."""
        running_task_ids = {a.task_id for a in self.state_store.read().running_agents()}
        reset: List[str] = []
        for scope in SCOPES:
            for task in self.task_store.load(scope).tasks:
                if task.status != "in_progress" or task.id in running_task_ids:
                    continue
                result = self.task_store.set_status(task.id, "pending", scope)
                if "error" in result:
                    logger.warning("Could not reset orphaned task %s: %s", task.id, result["error"])
                    continue
                reset.append(task.id)
        if reset:
            emit_log(self.bus, "warn", f"Reset {len(reset)} orphaned task(s) to pending", tasks=reset)
        return {"reset": reset, "count": len(reset)}

    def release_stale_targets(self) -> dict:
        """Free targets still held by agents that are no longer running."""
        running_ids = [a.id for a in self.state_store.read().running_agents()]
        released = self.activity.release_inactive_agents(running_ids)
        if released:
            emit_log(self.bus, "warn", f"Released {len(released)} target(s) held by stale agents", targets=released)
        return {"released": released, "count": len(released)}

    # ── evaluation ───────────────────────────────────────────

    def _release_reservation(self, payload: Any) -> None:
        if isinstance(payload, dict) and payload.get("taskId"):
            with self._lock:
                self._dispatched.pop(payload["taskId"], None)

    def _on_agent_completed(self, payload: Any) -> None:
        self._release_reservation(payload)
        if isinstance(payload, dict) and payload.get("id"):
            self.activity.release_agent(payload["id"])

    def _on_agents_changed(self, payload: Any) -> None:
        if not isinstance(payload, dict) or payload.get("action") != "zombie-cleanup":
            return
        for agent_id in payload.get("cleaned") or ():
            self.activity.release_agent(agent_id)

    def _on_tasks_changed(self, payload: Any) -> None:
        if not isinstance(payload, dict) or payload.get("action") != "added":
            return
        ticker = self._eval_ticker
        if ticker is None:
            return
        if self.state_store.read().config.immediate_execution:
            ticker.trigger()

    def _reserved(self, running_task_ids: set) -> set:
        cutoff = time.monotonic() - RESERVATION_GRACE_S
        with self._lock:
            for task_id, ts in list(self._dispatched.items()):
                if ts < cutoff:
                    logger.warning("Dispatch of %s was never picked up; releasing its slot", task_id)
                    del self._dispatched[task_id]
            return {tid for tid in self._dispatched if tid not in running_task_ids}

    def evaluate(self) -> dict:
        """Run one evaluation tick. Ticks never overlap."""
        with self._eval_lock:
            return self._evaluate()

    def _evaluate(self) -> dict:
        state = self.state_store.read()
        if state.paused:
            logger.debug("Evaluation skipped: paused")
            return {"skipped": "paused", "dispatched": []}

        config = state.config
        running = state.running_agents()
        running_task_ids = {a.task_id for a in running}
        reserved = self._reserved(running_task_ids)
        available = config.max_concurrent_agents - len(running) - len(reserved)
        if available <= 0:
            message = f"At capacity ({len(running) + len(reserved)}/{config.max_concurrent_agents} agents)"
            logger.debug(message)
            self.bus.publish(EventType.EVALUATION, {"message": message, "atCapacity": True})
            self._record_evaluation()
            return {"atCapacity": True, "dispatched": []}

        skip_ids = reserved | running_task_ids
        claimed_targets: set = set()
        cooldown_ms = config.app_review_cooldown_ms
        candidates: List[tuple[str, Task]] = []

        def take(scope: str, tasks: Iterable[Task]) -> None:
            for task in tasks:
                if len(candidates) >= available:
                    return
                if task.id in skip_ids:
                    continue
                target = task.target
                if target:
                    if target in claimed_targets or self.activity.is_on_cooldown(target, cooldown_ms):
                        continue
                    claimed_targets.add(target)
                candidates.append((scope, task))

        take(USER, self.task_store.load(USER).pending)
        if len(candidates) < available:
            take(SYSTEM, tq.prioritize_critical(self.task_store.load(SYSTEM).auto_approved))

        idle = False
        if not candidates and config.idle_review_enabled:
            idle_task = self.generate_idle_review_task(config)
            if idle_task is not None:
                candidates.append((SYSTEM, idle_task))
                idle = True

        for scope, task in candidates:
            with self._lock:
                self._dispatched[task.id] = time.monotonic()
            if task.target:
                self.activity.mark_work_started(task.target)
            self.bus.publish(EventType.TASK_READY, {"scope": scope, "task": task.to_dict()})
            emit_log(self.bus, "info", f"Task ready: {task.id} ({task.priority}) {task.description[:80]}",
                     taskId=task.id, scope=scope)

        dispatched = [task.id for _, task in candidates]
        if dispatched:
            message = f"Dispatched {len(dispatched)} task(s)"
        else:
            message = "No tasks ready"
        self.bus.publish(EventType.EVALUATION, {
            "message": message,
            "dispatched": dispatched,
            "availableSlots": available,
            "idleReview": idle,
        })
        self._record_evaluation(idle_review=idle)
        return {"dispatched": dispatched, "availableSlots": available, "idleReview": idle}

    def _record_evaluation(self, idle_review: bool = False) -> None:
        with self.state_store.transaction() as state:
            state.stats.last_evaluation = _now()
            if idle_review:
                state.stats.last_idle_review = state.stats.last_evaluation

    def generate_idle_review_task(self, config: Optional[DaemonConfig] = None) -> Optional[Task]:
        """Add an improvement-sweep task for the least recently reviewed target."""
        config = config or self.state_store.read().config
        target = self.activity.next_for_review(self._targets(), config.app_review_cooldown_ms)
        if target is None:
            logger.debug("Idle review: no eligible target")
            return None
        categories = ", ".join(config.auto_fix_thresholds.allowed_categories)
        slug = re.sub(r"[^\w-]+", "-", target.id).strip("-") or "target"
        task = self.task_store.add_task({
            "id": f"idle-review-{slug}-{uuid.uuid4().hex[:6]}",
            "description": f"[Idle Review] Improvement sweep for {target.name or target.id}: {categories}",
            "priority": config.idle_review_priority,
            "metadata": {
                "app": target.id,
                "appName": target.name,
                "repoPath": target.repo_path,
                "reviewType": "idle",
                "autoGenerated": "true",
            },
        }, scope=SYSTEM)
        self.activity.mark_idle_review_started()
        emit_log(self.bus, "info", f"Idle review generated for {target.name or target.id}", taskId=task.id)
        return task

    # ── health ───────────────────────────────────────────────

    def run_health_check(self) -> dict:
        config = self.state_store.read().config
        processes = []
        if self.probe is not None:
            try:
                processes = self.probe.list_processes()
            except Exception:  # noqa: BLE001
                logger.error("Process probe failed", exc_info=True)
        metrics, issues = check_processes(processes, config)
        with self.state_store.transaction() as state:
            state.stats.last_health_check = _now()
            state.stats.health_issues = issues
            metrics["activeAgents"] = len(state.running_agents())
            checked_at = state.stats.last_health_check

        issue_dicts = [i.to_dict() for i in issues]
        self.bus.publish(EventType.HEALTH_CHECK, {
            "metrics": metrics,
            "issues": issue_dicts,
            "timestamp": _iso(checked_at),
        })
        errors = [i for i in issue_dicts if i["type"] == "error"]
        if errors:
            self.bus.publish(EventType.HEALTH_CRITICAL, {"issues": errors})
            emit_log(self.bus, "error", f"Health check found {len(errors)} critical issue(s)", issues=errors)
        elif issues:
            emit_log(self.bus, "warn", f"Health check found {len(issues)} warning(s)")
        return {"metrics": metrics, "issues": issue_dicts}

    def get_health_status(self) -> dict:
        stats = self.state_store.read().stats
        return {
            "lastCheck": _iso(stats.last_health_check),
            "issues": [i.to_dict() for i in stats.health_issues],
        }

    # ── config ───────────────────────────────────────────────

    def get_config(self) -> dict:
        return self.state_store.read().config.to_dict()

    def update_config(self, updates: dict) -> dict:
        with self.state_store.transaction() as state:
            state.config = state.config.merged(updates or {})
            config = state.config
        with self._lock:
            if self._eval_ticker is not None:
                self._eval_ticker.interval_s = config.evaluation_interval_ms / 1000
            if self._health_ticker is not None:
                self._health_ticker.interval_s = config.health_check_interval_ms / 1000
        self.bus.publish(EventType.CONFIG_CHANGED, config.to_dict())
        return config.to_dict()

    # ── helpers ──────────────────────────────────────────────

    def _safely(self, label: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except Exception as exc:  # noqa: BLE001
            logger.error("%s failed", label, exc_info=True)
            emit_log(self.bus, "error", f"{label} failed: {exc}")
            return None


def build_daemon(settings: Settings, runner: Any = None, probe: Optional[ProcessProbe] = None) -> Daemon:
    """Wire the default collaborators for *settings*."""
    from chiefofstaff.integrations.agent_runner import SubprocessRunner

    bus = EventBus()
    state_store = StateStore(settings.state_file)
    task_store = TaskStore(settings.user_tasks_file, settings.system_tasks_file, bus)
    registry = AgentRegistry(state_store, settings.agents_dir, bus)
    activity = ActivityStore(settings.activity_file)
    daemon = Daemon(
        state_store,
        task_store,
        registry,
        activity,
        bus,
        probe=probe if probe is not None else Pm2Probe(),
        targets=lambda: load_targets(settings.apps_file),
    )
    if runner is None:
        runner = SubprocessRunner(
            registry,
            task_store,
            activity,
            bus,
            command=settings.agent_command,
            timeout=settings.agent_timeout,
            workdir=settings.data_dir,
        )
    registry.attach_runner(runner)
    daemon.runner = runner
    return daemon
