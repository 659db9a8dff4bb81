"""Agent Registry: lifecycle records for spawned work processes.

Every mutation runs inside ``StateStore.transaction()``.  Runners call
``register`` → ``update(pid=...)`` → ``append_output`` … → ``complete``;
the daemon calls ``cleanup_zombies`` at startup.
"""
from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from chiefofstaff.core.events import EventBus, EventType, emit_log
from chiefofstaff.core.state import (
    MAX_LIVE_OUTPUT_LINES,
    Agent,
    AgentResult,
    OutputLine,
    StateStore,
)

if TYPE_CHECKING:
    from chiefofstaff.integrations.agent_runner import AgentRunner

logger = logging.getLogger("chiefofstaff.agents")

ORPHANED_ERROR = "orphaned (restart)"

# output persistence batching; live subscribers are never delayed
OUTPUT_FLUSH_LINES = 50
OUTPUT_FLUSH_INTERVAL_S = 1.0


def is_pid_alive(pid: Optional[int]) -> bool:
    """Best-effort OS liveness check. Any failure to tell counts as dead."""
    if not pid or pid <= 0:
        return False
    if sys.platform == "win32":
        try:
            out = subprocess.run(
                ["tasklist", "/FI", f"PID eq {pid}", "/NH"],
                capture_output=True, text=True, timeout=10,
            )
        except (OSError, subprocess.SubprocessError):
            return False
        return str(pid) in out.stdout
    try:
        os.kill(pid, 0)
    except PermissionError:
        # exists, owned by someone else
        return True
    except (ProcessLookupError, OSError):
        return False
    return True


class AgentRegistry:
    """Tracks every agent in the Daemon State snapshot."""

    def __init__(self, state_store: StateStore, agents_dir: str, bus: EventBus) -> None:
        self.state_store = state_store
        self.agents_dir = agents_dir
        self.bus = bus
        self.runner: Optional[AgentRunner] = None
        self._output_lock = threading.Lock()
        self._pending_output: Dict[str, List[OutputLine]] = {}
        self._last_flush: Dict[str, float] = {}

    def attach_runner(self, runner: AgentRunner) -> None:
        self.runner = runner

    def _agent_dir(self, agent_id: str) -> str:
        return os.path.join(self.agents_dir, agent_id)

    # ── lifecycle ────────────────────────────────────────────

    def register(self, agent_id: str, task_id: str, metadata: Optional[dict] = None,
                 pid: Optional[int] = None) -> Agent:
        agent = Agent(id=agent_id, task_id=task_id, metadata=dict(metadata or {}), pid=pid)
        with self.state_store.transaction() as state:
            state.agents[agent_id] = agent
            state.stats.agents_spawned += 1
        logger.info("Agent registered: %s (task=%s)", agent_id, task_id)
        self.bus.publish(EventType.AGENT_SPAWNED, agent.to_dict())
        return agent

    def update(self, agent_id: str, **changes: Any) -> Optional[Agent]:
        """Apply *changes* to a tracked agent. ``metadata`` is merged, not replaced."""
        with self.state_store.transaction() as state:
            agent = state.agents.get(agent_id)
            if agent is None:
                return None
            if "metadata" in changes:
                agent.metadata.update(changes.pop("metadata") or {})
            if "pid" in changes:
                agent.pid = changes.pop("pid")
            if "status" in changes:
                agent.status = changes.pop("status")
            if changes:
                agent.metadata.update(changes)
        self.bus.publish(EventType.AGENT_UPDATED, agent.to_dict())
        return agent

    def append_output(self, agent_id: str, line: str) -> None:
        """Record one output line.

        Live subscribers see every line at once.  Writes to the state file
        are batched: an agent's first line is persisted immediately, later
        ones when ``OUTPUT_FLUSH_LINES`` are pending or
        ``OUTPUT_FLUSH_INTERVAL_S`` has passed since the last write.
        Reads and ``complete`` flush whatever is still pending.
        """
        entry = OutputLine(timestamp=datetime.now(timezone.utc), line=line)
        self.bus.publish(EventType.AGENT_OUTPUT, {"agentId": agent_id, "line": line})
        now = time.monotonic()
        with self._output_lock:
            pending = self._pending_output.setdefault(agent_id, [])
            pending.append(entry)
            last = self._last_flush.get(agent_id)
            due = (
                last is None
                or len(pending) >= OUTPUT_FLUSH_LINES
                or now - last >= OUTPUT_FLUSH_INTERVAL_S
            )
        if due:
            self.flush_output(agent_id)

    def flush_output(self, agent_id: Optional[str] = None) -> int:
        """Persist buffered output for *agent_id*, or for every agent. Returns lines written."""
        with self._output_lock:
            ids = [agent_id] if agent_id is not None else list(self._pending_output)
            batches = {aid: self._pending_output.pop(aid) for aid in ids if self._pending_output.get(aid)}
            now = time.monotonic()
            for aid in ids:
                self._last_flush[aid] = now
            if not batches:
                return 0
            written = 0
            # held across the write so batches for one agent land in order
            with self.state_store.transaction() as state:
                for aid, lines in batches.items():
                    agent = state.agents.get(aid)
                    if agent is None:
                        continue
                    agent.output.extend(lines)
                    if len(agent.output) > MAX_LIVE_OUTPUT_LINES:
                        del agent.output[:-MAX_LIVE_OUTPUT_LINES]
                    written += len(lines)
        return written

    def _forget_output(self, agent_id: str) -> None:
        with self._output_lock:
            self._pending_output.pop(agent_id, None)
            self._last_flush.pop(agent_id, None)

    def complete(self, agent_id: str, success: bool, error: Optional[str] = None,
                 full_output: Optional[str] = None) -> Optional[Agent]:
        """Close an agent record. Calling it twice leaves the first result in place."""
        self.flush_output(agent_id)
        with self.state_store.transaction() as state:
            agent = state.agents.get(agent_id)
            if agent is None:
                return None
            if not agent.is_running:
                return agent
            agent.status = "completed"
            agent.completed_at = datetime.now(timezone.utc)
            agent.result = AgentResult(success=success, error=error)
            if success:
                state.stats.tasks_completed += 1
        self._forget_output(agent_id)
        self._write_agent_files(agent, full_output)
        logger.info("Agent completed: %s success=%s", agent_id, success)
        self.bus.publish(EventType.AGENT_COMPLETED, agent.to_dict())
        self.bus.publish(EventType.AGENT_UPDATED, agent.to_dict())
        return agent

    def _write_agent_files(self, agent: Agent, full_output: Optional[str]) -> None:
        agent_dir = self._agent_dir(agent.id)
        try:
            os.makedirs(agent_dir, exist_ok=True)
            meta = agent.to_dict()
            meta.pop("output", None)
            with open(os.path.join(agent_dir, "metadata.json"), "w", encoding="utf-8") as f:
                json.dump(meta, f, indent=2)
            text = full_output if full_output is not None else "\n".join(o.line for o in agent.output)
            with open(os.path.join(agent_dir, "output.txt"), "w", encoding="utf-8") as f:
                f.write(text)
        except OSError as exc:
            logger.error("Failed to write agent files for %s: %s", agent.id, exc)

    def terminate(self, agent_id: str) -> dict:
        """Ask the runner for a cooperative stop. The runner completes the agent."""
        agent = self.state_store.read().agents.get(agent_id)
        if agent is None:
            return {"success": False, "error": "Agent not found"}
        if not agent.is_running:
            return {"success": False, "error": "Agent is not running"}
        self.bus.publish(EventType.AGENT_TERMINATE, {"agentId": agent_id})
        return {"success": True, "agentId": agent_id}

    def kill(self, agent_id: str) -> dict:
        """Force-stop an agent and close its record if the runner did not."""
        agent = self.state_store.read().agents.get(agent_id)
        if agent is None:
            return {"success": False, "error": "Agent not found"}
        if not agent.is_running:
            return {"success": False, "error": "Agent is not running"}
        killed = False
        if self.runner is not None:
            try:
                killed = self.runner.kill(agent_id)
            except Exception:  # noqa: BLE001
                logger.exception("Runner failed to kill agent %s", agent_id)
        elif agent.pid and is_pid_alive(agent.pid):
            killed = _kill_pid(agent.pid)
        self.complete(agent_id, success=False, error="Killed")
        emit_log(self.bus, "warn", f"Force killed agent {agent_id}", agentId=agent_id)
        return {"success": True, "agentId": agent_id, "killed": killed}

    # ── recovery ─────────────────────────────────────────────

    def cleanup_zombies(self, active_ids: Optional[Iterable[str]] = None) -> dict:
        """Close every running agent whose process is gone.

        Agents with a recorded PID are checked against the OS; legacy
        records without one are checked against the runner's active set.
        """
        if active_ids is None and self.runner is not None:
            active_ids = self.runner.active_agent_ids()
        active = set(active_ids or ())
        self.flush_output()
        cleaned: List[str] = []
        now = datetime.now(timezone.utc)
        with self.state_store.transaction() as state:
            for agent in state.running_agents():
                alive = is_pid_alive(agent.pid) if agent.pid else agent.id in active
                if alive:
                    continue
                agent.status = "completed"
                agent.completed_at = now
                agent.result = AgentResult(success=False, error=ORPHANED_ERROR)
                cleaned.append(agent.id)
        if cleaned:
            logger.warning("Cleaned up %d zombie agent(s): %s", len(cleaned), ", ".join(cleaned))
            emit_log(self.bus, "warn", f"Cleaned up {len(cleaned)} zombie agent(s)", agents=cleaned)
            self.bus.publish(EventType.AGENTS_CHANGED, {"action": "zombie-cleanup", "cleaned": cleaned})
        return {"cleaned": cleaned, "count": len(cleaned)}

    # ── queries / housekeeping ───────────────────────────────

    def list_agents(self) -> List[Agent]:
        self.flush_output()
        agents = list(self.state_store.read().agents.values())
        agents.sort(key=lambda a: a.started_at, reverse=True)
        return agents

    def get_agent(self, agent_id: str) -> Optional[Dict[str, Any]]:
        self.flush_output(agent_id)
        agent = self.state_store.read().agents.get(agent_id)
        if agent is None:
            return None
        d = agent.to_dict()
        if not agent.is_running:
            output_path = os.path.join(self._agent_dir(agent_id), "output.txt")
            if os.path.exists(output_path):
                with open(output_path, "r", encoding="utf-8") as f:
                    d["fullOutput"] = f.read()
        return d

    def running_count(self) -> int:
        return len(self.state_store.read().running_agents())

    def delete_agent(self, agent_id: str) -> dict:
        with self.state_store.transaction() as state:
            agent = state.agents.get(agent_id)
            if agent is None:
                return {"success": False, "error": "Agent not found"}
            if agent.is_running:
                return {"success": False, "error": "Agent is still running"}
            del state.agents[agent_id]
        self._forget_output(agent_id)
        self.bus.publish(EventType.AGENTS_CHANGED, {"action": "deleted", "agentId": agent_id})
        return {"success": True, "agentId": agent_id}

    def clear_completed(self) -> dict:
        with self.state_store.transaction() as state:
            removed = [a.id for a in state.agents.values() if not a.is_running]
            for agent_id in removed:
                del state.agents[agent_id]
        for agent_id in removed:
            self._forget_output(agent_id)
        self.bus.publish(EventType.AGENTS_CHANGED, {"action": "cleared", "count": len(removed)})
        return {"cleared": len(removed)}


def _kill_pid(pid: int) -> bool:
    if sys.platform == "win32":
        try:
            subprocess.run(["taskkill", "/F", "/T", "/PID", str(pid)], capture_output=True, timeout=10)
        except (OSError, subprocess.SubprocessError):
            return False
        return True
    try:
        os.kill(pid, signal.SIGKILL)
    except OSError:
        return False
    return True
