"""Subprocess agent runner.

Consumes ``task:ready`` from the daemon, launches one OS process per
task, streams its output into the agent registry, and closes the agent
and the task when the process exits.  ``agent:terminate`` requests a
cooperative stop (SIGTERM, then a hard kill after a grace period).

The command is a template; ``{prompt}``, ``{task_id}`` and ``{agent_id}``
are substituted per token after shell-style splitting, so task text is
never interpreted by a shell.
"""
from __future__ import annotations

from datetime import datetime, timezone
import logging
import os
import shlex
import subprocess
import sys
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Protocol

from chiefofstaff.core.activity import ActivityStore
from chiefofstaff.core.agents import AgentRegistry
from chiefofstaff.core.events import EventBus, EventType, emit_log
from chiefofstaff.core.logging_config import append_to_file
from chiefofstaff.core.task_queue import Task
from chiefofstaff.core.task_store import USER, TaskStore

logger = logging.getLogger("chiefofstaff.agent_runner")

MAX_TASK_RETRIES = 3
TERMINATED_BY_USER = "Terminated by user"


class AgentRunner(Protocol):
    def spawn(self, task: Task, scope: str = USER) -> Optional[str]: ...

    def terminate(self, agent_id: str) -> bool: ...

    def kill(self, agent_id: str) -> bool: ...

    def active_agent_ids(self) -> List[str]: ...


def build_command(template: str, task: Task, agent_id: str) -> List[str]:
    values = {"{prompt}": task.description, "{task_id}": task.id, "{agent_id}": agent_id}
    cmd = []
    for token in shlex.split(template, posix=sys.platform != "win32"):
        for placeholder, value in values.items():
            token = token.replace(placeholder, value)
        cmd.append(token)
    return cmd


class AgentProcess:
    """One agent subprocess plus the thread pumping its output."""

    def __init__(
        self,
        agent_id: str,
        task: Task,
        scope: str,
        cmd: List[str],
        cwd: Optional[str],
        timeout: int,
        log_path: str,
        on_output: Callable[[str, str], None],
        on_exit: Callable[["AgentProcess", Optional[int], str], None],
    ) -> None:
        self.agent_id = agent_id
        self.task = task
        self.scope = scope
        self.cmd = cmd
        self.cwd = cwd
        self.timeout = timeout
        self.log_path = log_path
        self.on_output = on_output
        self.on_exit = on_exit
        self.terminated_by_user = False
        self.timed_out = False
        self._process: Optional[subprocess.Popen] = None
        self._thread: Optional[threading.Thread] = None
        self._output: List[str] = []

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def _log(self, line: str) -> None:
        append_to_file(self.log_path, line)

    def start(self) -> int:
        """Launch the process. Raises ``OSError`` when it cannot be started."""
        env = os.environ.copy()
        env.setdefault("TERM", "dumb")
        env["PYTHONIOENCODING"] = "utf-8"
        env["COS_AGENT_ID"] = self.agent_id
        env["COS_TASK_ID"] = self.task.id
        self._process = subprocess.Popen(
            self.cmd,
            cwd=self.cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            env=env,
            encoding="utf-8",
            errors="replace",
            creationflags=subprocess.CREATE_NEW_PROCESS_GROUP if sys.platform == "win32" else 0,
        )
        self._log(f"Process started (pid={self._process.pid}): {' '.join(self.cmd)[:200]}")
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"agent-{self.agent_id}")
        self._thread.start()
        return self._process.pid

    def _run(self) -> None:
        assert self._process is not None
        timer: Optional[threading.Timer] = None
        if self.timeout and self.timeout > 0:
            def _on_timeout() -> None:
                self.timed_out = True
                self.kill()

            timer = threading.Timer(self.timeout, _on_timeout)
            timer.daemon = True
            timer.start()
        exit_code: Optional[int] = None
        try:
            assert self._process.stdout is not None
            for line in self._process.stdout:
                line = line.rstrip("\n\r")
                if not line:
                    continue
                self._output.append(line)
                self._log(line)
                try:
                    self.on_output(self.agent_id, line)
                except Exception:  # noqa: BLE001
                    logger.exception("Output handler failed for agent %s", self.agent_id)
            exit_code = self._process.wait()
        except Exception as exc:  # noqa: BLE001
            logger.error("Agent %s stream error: %s", self.agent_id, exc, exc_info=True)
        finally:
            if timer:
                timer.cancel()
        self._log(f"Process exited (code={exit_code}, output_lines={len(self._output)})")
        self.on_exit(self, exit_code, "\n".join(self._output))

    def terminate(self, grace_s: float) -> None:
        """SIGTERM, then kill if the process outlives *grace_s*."""
        if not self.is_running:
            return
        assert self._process is not None
        try:
            if sys.platform == "win32":
                subprocess.run(["taskkill", "/T", "/PID", str(self._process.pid)], capture_output=True, timeout=15)
            else:
                self._process.terminate()
            self._process.wait(timeout=grace_s)
        except subprocess.TimeoutExpired:
            logger.warning("Agent %s ignored terminate, killing", self.agent_id)
            self.kill()
        except OSError as exc:
            logger.error("Error terminating agent %s: %s", self.agent_id, exc)

    def kill(self) -> bool:
        if not self.is_running:
            return False
        assert self._process is not None
        try:
            if sys.platform == "win32":
                subprocess.run(["taskkill", "/F", "/T", "/PID", str(self._process.pid)], capture_output=True, timeout=15)
            else:
                self._process.kill()
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("Error killing agent %s: %s", self.agent_id, exc)
            return False
        return True

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


class SubprocessRunner:
    """Runs each ready task as a local subprocess."""

    def __init__(
        self,
        registry: AgentRegistry,
        task_store: TaskStore,
        activity: ActivityStore,
        bus: EventBus,
        command: str,
        timeout: int = 7200,
        workdir: Optional[str] = None,
        terminate_grace_s: float = 10.0,
    ) -> None:
        self.registry = registry
        self.task_store = task_store
        self.activity = activity
        self.bus = bus
        self.command = command
        self.timeout = timeout
        self.workdir = workdir
        self.terminate_grace_s = terminate_grace_s
        self._procs: Dict[str, AgentProcess] = {}
        self._lock = threading.Lock()
        self._unsubscribe = [
            bus.subscribe(EventType.TASK_READY, self._on_task_ready),
            bus.subscribe(EventType.AGENT_TERMINATE, self._on_terminate),
        ]

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    # ── bus handlers ─────────────────────────────────────────

    def _on_task_ready(self, payload: Any) -> None:
        if not isinstance(payload, dict) or not isinstance(payload.get("task"), dict):
            return
        self.spawn(Task.from_dict(payload["task"]), payload.get("scope", USER))

    def _on_terminate(self, payload: Any) -> None:
        if isinstance(payload, dict) and payload.get("agentId"):
            self.terminate(payload["agentId"])

    # ── runner contract ──────────────────────────────────────

    def spawn(self, task: Task, scope: str = USER) -> Optional[str]:
        with self._lock:
            if any(p.task.id == task.id and p.is_running for p in self._procs.values()):
                logger.warning("Task %s already has a running agent", task.id)
                return None

        result = self.task_store.set_status(task.id, "in_progress", scope)
        if "error" in result:
            logger.warning("Not spawning for %s: %s", task.id, result["error"])
            return None

        agent_id = f"agent-{uuid.uuid4().hex[:8]}"
        metadata = {"scope": scope, "priority": task.priority, "description": task.description[:200]}
        if task.target:
            metadata["app"] = task.target
        self.registry.register(agent_id, task.id, metadata=metadata)
        if task.target:
            self.activity.mark_work_started(task.target, agent_id)

        cwd = task.metadata.get("repopath") or self.workdir
        if cwd and not os.path.isdir(cwd):
            cwd = None
        proc = AgentProcess(
            agent_id=agent_id,
            task=task,
            scope=scope,
            cmd=build_command(self.command, task, agent_id),
            cwd=cwd,
            timeout=self.timeout,
            log_path=os.path.join(self.registry.agents_dir, agent_id, "live.log"),
            on_output=self.registry.append_output,
            on_exit=self._on_exit,
        )
        with self._lock:
            self._procs[agent_id] = proc
        try:
            pid = proc.start()
        except OSError as exc:
            logger.error("Failed to launch agent %s for %s: %s", agent_id, task.id, exc)
            with self._lock:
                self._procs.pop(agent_id, None)
            self._finish(proc, success=False, error=f"Launch failed: {exc}", full_output="")
            return None
        self.registry.update(agent_id, pid=pid)
        emit_log(self.bus, "info", f"Agent {agent_id} started for {task.id} (pid={pid})",
                 agentId=agent_id, taskId=task.id)
        return agent_id

    def terminate(self, agent_id: str) -> bool:
        with self._lock:
            proc = self._procs.get(agent_id)
        if proc is None or not proc.is_running:
            return False
        proc.terminated_by_user = True
        threading.Thread(
            target=proc.terminate, args=(self.terminate_grace_s,),
            daemon=True, name=f"terminate-{agent_id}",
        ).start()
        return True

    def kill(self, agent_id: str) -> bool:
        with self._lock:
            proc = self._procs.get(agent_id)
        if proc is None:
            return False
        proc.terminated_by_user = True
        return proc.kill()

    def active_agent_ids(self) -> List[str]:
        with self._lock:
            return [agent_id for agent_id, p in self._procs.items() if p.is_running]

    def stop_all(self, timeout: float = 10.0) -> None:
        with self._lock:
            procs = [p for p in self._procs.values() if p.is_running]
        for proc in procs:
            proc.terminated_by_user = True
            proc.terminate(self.terminate_grace_s)
        for proc in procs:
            proc.join(timeout)

    # ── completion ───────────────────────────────────────────

    def _on_exit(self, proc: AgentProcess, exit_code: Optional[int], output: str) -> None:
        with self._lock:
            self._procs.pop(proc.agent_id, None)
        if proc.terminated_by_user:
            error: Optional[str] = TERMINATED_BY_USER
        elif proc.timed_out:
            error = f"Timed out after {proc.timeout}s"
        elif exit_code != 0:
            error = f"Exit code {exit_code}"
        else:
            error = None
        self._finish(proc, success=error is None, error=error, full_output=output)

    def _finish(self, proc: AgentProcess, success: bool, error: Optional[str], full_output: str) -> None:
        task = proc.task
        try:
            self.registry.complete(proc.agent_id, success=success, error=error, full_output=full_output)
            status, metadata = self._task_outcome(task, proc, success, error)
            self.task_store.set_status(task.id, status, proc.scope, metadata=metadata)
            if task.target:
                cooldown_ms = self.registry.state_store.read().config.app_review_cooldown_ms
                self.activity.start_cooldown(task.target, cooldown_ms)
                if task.metadata.get("reviewtype") == "idle":
                    self.activity.mark_review_completed(task.target)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to close agent %s", proc.agent_id)
            return
        level = "success" if success else "warn"
        emit_log(self.bus, level, f"Agent {proc.agent_id} finished {task.id}: {error or 'ok'}",
                 agentId=proc.agent_id, taskId=task.id, success=success)

    def _task_outcome(self, task: Task, proc: AgentProcess, success: bool,
                      error: Optional[str]) -> tuple[str, Dict[str, Any]]:
        now = datetime.now(timezone.utc).isoformat()
        if success:
            return "completed", {"completedAt": now}
        if proc.terminated_by_user:
            return "blocked", {"blockedReason": TERMINATED_BY_USER, "blockedAt": now}
        current = self.task_store.find_task(task.id)
        source = current[1] if current else task
        try:
            failures = int(source.metadata.get("failurecount", "0")) + 1
        except ValueError:
            failures = 1
        metadata = {"failureCount": str(failures), "lastFailureAt": now, "lastError": error or "unknown"}
        if failures >= MAX_TASK_RETRIES:
            metadata["blockedReason"] = f"Max retries exceeded ({failures}/{MAX_TASK_RETRIES})"
            metadata["blockedAt"] = now
            return "blocked", metadata
        return "pending", metadata
