"""Daemon State snapshot: records, on-disk format, and the state lock.

The snapshot is a single JSON document (camelCase keys) holding the
daemon flags, its tunables, counters, and every tracked agent.  All
mutations go through ``StateStore.transaction()``, which holds one
re-entrant lock across the whole load → mutate → save cycle.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import os
import re
import threading
import time
from typing import Any, Dict, Iterator, List, Optional

from chiefofstaff.core.task_queue import PRIORITY_VALUES

logger = logging.getLogger("chiefofstaff.state")

MAX_LIVE_OUTPUT_LINES = 1000

DEFAULT_ALLOWED_CATEGORIES = (
    "formatting",
    "dry-violations",
    "dead-code",
    "typo-fix",
    "import-cleanup",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        parsed = int(value)
        return parsed if parsed > 0 else default
    except (TypeError, ValueError):
        return default


# ── Config ───────────────────────────────────────────────────

@dataclass
class AutoFixThresholds:
    max_lines_changed: int = 50
    allowed_categories: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_CATEGORIES))

    def to_dict(self) -> dict:
        return {
            "maxLinesChanged": self.max_lines_changed,
            "allowedCategories": list(self.allowed_categories),
        }

    @classmethod
    def from_dict(cls, d: Any) -> AutoFixThresholds:
        source = d if isinstance(d, dict) else {}
        defaults = cls()
        categories = source.get("allowedCategories")
        return cls(
            max_lines_changed=_positive_int(source.get("maxLinesChanged"), defaults.max_lines_changed),
            allowed_categories=[str(c) for c in categories] if isinstance(categories, list) else defaults.allowed_categories,
        )


# camelCase on disk → attribute name
_INT_OPTIONS = {
    "evaluationIntervalMs": "evaluation_interval_ms",
    "healthCheckIntervalMs": "health_check_interval_ms",
    "maxConcurrentAgents": "max_concurrent_agents",
    "maxProcessMemoryMb": "max_process_memory_mb",
    "maxTotalProcesses": "max_total_processes",
    "appReviewCooldownMs": "app_review_cooldown_ms",
}
_BOOL_OPTIONS = {
    "idleReviewEnabled": "idle_review_enabled",
    "alwaysOn": "always_on",
    "immediateExecution": "immediate_execution",
}


@dataclass
class DaemonConfig:
    evaluation_interval_ms: int = 60000
    health_check_interval_ms: int = 900000
    max_concurrent_agents: int = 3
    max_process_memory_mb: int = 2048
    max_total_processes: int = 50
    app_review_cooldown_ms: int = 3600000
    idle_review_enabled: bool = True
    idle_review_priority: str = "LOW"
    always_on: bool = True
    immediate_execution: bool = True
    auto_fix_thresholds: AutoFixThresholds = field(default_factory=AutoFixThresholds)

    def to_dict(self) -> dict:
        d: Dict[str, Any] = {key: getattr(self, attr) for key, attr in _INT_OPTIONS.items()}
        d.update({key: getattr(self, attr) for key, attr in _BOOL_OPTIONS.items()})
        d["idleReviewPriority"] = self.idle_review_priority
        d["autoFixThresholds"] = self.auto_fix_thresholds.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: Any) -> DaemonConfig:
        """Build a config from a raw mapping, falling back to defaults per key."""
        source = _camel_keys(d if isinstance(d, dict) else {})
        cfg = cls()
        for key, attr in _INT_OPTIONS.items():
            setattr(cfg, attr, _positive_int(source.get(key), getattr(cfg, attr)))
        for key, attr in _BOOL_OPTIONS.items():
            if isinstance(source.get(key), bool):
                setattr(cfg, attr, source[key])
        priority = str(source.get("idleReviewPriority", cfg.idle_review_priority)).upper()
        if priority in PRIORITY_VALUES:
            cfg.idle_review_priority = priority
        cfg.auto_fix_thresholds = AutoFixThresholds.from_dict(source.get("autoFixThresholds"))
        return cfg

    def merged(self, updates: dict) -> DaemonConfig:
        """Return a new config with *updates* (camelCase or snake_case keys) applied."""
        base = self.to_dict()
        updates = _camel_keys(updates)
        thresholds = updates.get("autoFixThresholds")
        if isinstance(thresholds, dict):
            updates = dict(updates)
            updates["autoFixThresholds"] = {**base["autoFixThresholds"], **thresholds}
        base.update(updates)
        return DaemonConfig.from_dict(base)


_SNAKE_TO_CAMEL = {attr: key for key, attr in {**_INT_OPTIONS, **_BOOL_OPTIONS}.items()}
_SNAKE_TO_CAMEL["idle_review_priority"] = "idleReviewPriority"
_SNAKE_TO_CAMEL["auto_fix_thresholds"] = "autoFixThresholds"
_SNAKE_TO_CAMEL["max_lines_changed"] = "maxLinesChanged"
_SNAKE_TO_CAMEL["allowed_categories"] = "allowedCategories"


def _camel_keys(d: dict) -> dict:
    out: Dict[str, Any] = {}
    for key, value in d.items():
        if isinstance(value, dict):
            value = _camel_keys(value)
        out[_SNAKE_TO_CAMEL.get(key, key)] = value
    return out


# ── Agents ───────────────────────────────────────────────────

@dataclass
class OutputLine:
    timestamp: datetime
    line: str

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp.isoformat(), "line": self.line}

    @classmethod
    def from_dict(cls, d: dict) -> OutputLine:
        return cls(timestamp=_parse_dt(d.get("timestamp")) or _now(), line=str(d.get("line", "")))


@dataclass
class AgentResult:
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        d: Dict[str, Any] = {"success": self.success}
        if self.error:
            d["error"] = self.error
        return d

    @classmethod
    def from_dict(cls, d: Any) -> Optional[AgentResult]:
        if not isinstance(d, dict):
            return None
        return cls(success=bool(d.get("success", False)), error=d.get("error"))


@dataclass
class Agent:
    """One spawned work process tied to exactly one task."""
    id: str
    task_id: str
    status: str = "running"             # running | completed
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    pid: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    result: Optional[AgentResult] = None
    output: List[OutputLine] = field(default_factory=list)

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "status": self.status,
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "pid": self.pid,
            "metadata": self.metadata,
            "result": self.result.to_dict() if self.result else None,
            "output": [o.to_dict() for o in self.output],
        }

    @classmethod
    def from_dict(cls, d: dict) -> Agent:
        pid = d.get("pid")
        return cls(
            id=d["id"],
            task_id=d.get("taskId", ""),
            status=d.get("status", "running"),
            started_at=_parse_dt(d.get("startedAt")) or _now(),
            completed_at=_parse_dt(d.get("completedAt")),
            pid=pid if isinstance(pid, int) and not isinstance(pid, bool) and pid > 0 else None,
            metadata=d.get("metadata") if isinstance(d.get("metadata"), dict) else {},
            result=AgentResult.from_dict(d.get("result")),
            output=[OutputLine.from_dict(o) for o in d.get("output", []) if isinstance(o, dict)],
        )


# ── Stats / health ───────────────────────────────────────────

@dataclass
class HealthIssue:
    type: str           # warning | error
    category: str       # processes | memory | agents
    message: str

    def to_dict(self) -> dict:
        return {"type": self.type, "category": self.category, "message": self.message}

    @classmethod
    def from_dict(cls, d: dict) -> HealthIssue:
        return cls(type=d.get("type", "warning"), category=d.get("category", ""), message=d.get("message", ""))


@dataclass
class Stats:
    tasks_completed: int = 0
    agents_spawned: int = 0
    last_evaluation: Optional[datetime] = None
    last_health_check: Optional[datetime] = None
    last_idle_review: Optional[datetime] = None
    health_issues: List[HealthIssue] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "tasksCompleted": self.tasks_completed,
            "agentsSpawned": self.agents_spawned,
            "lastEvaluation": _iso(self.last_evaluation),
            "lastHealthCheck": _iso(self.last_health_check),
            "lastIdleReview": _iso(self.last_idle_review),
            "healthIssues": [i.to_dict() for i in self.health_issues],
        }

    @classmethod
    def from_dict(cls, d: Any) -> Stats:
        source = d if isinstance(d, dict) else {}
        return cls(
            tasks_completed=int(source.get("tasksCompleted", 0) or 0),
            agents_spawned=int(source.get("agentsSpawned", 0) or 0),
            last_evaluation=_parse_dt(source.get("lastEvaluation")),
            last_health_check=_parse_dt(source.get("lastHealthCheck")),
            last_idle_review=_parse_dt(source.get("lastIdleReview")),
            health_issues=[HealthIssue.from_dict(i) for i in source.get("healthIssues", []) if isinstance(i, dict)],
        )


@dataclass
class DaemonState:
    running: bool = False
    paused: bool = False
    paused_at: Optional[datetime] = None
    pause_reason: Optional[str] = None
    config: DaemonConfig = field(default_factory=DaemonConfig)
    stats: Stats = field(default_factory=Stats)
    agents: Dict[str, Agent] = field(default_factory=dict)

    def running_agents(self) -> List[Agent]:
        return [a for a in self.agents.values() if a.is_running]

    def to_dict(self) -> dict:
        return {
            "running": self.running,
            "paused": self.paused,
            "pausedAt": _iso(self.paused_at),
            "pauseReason": self.pause_reason,
            "config": self.config.to_dict(),
            "stats": self.stats.to_dict(),
            "agents": {agent_id: a.to_dict() for agent_id, a in self.agents.items()},
        }

    @classmethod
    def from_dict(cls, d: dict) -> DaemonState:
        agents_raw = d.get("agents") if isinstance(d.get("agents"), dict) else {}
        agents: Dict[str, Agent] = {}
        for agent_id, raw in agents_raw.items():
            if not isinstance(raw, dict):
                continue
            raw = {**raw, "id": raw.get("id", agent_id)}
            agents[agent_id] = Agent.from_dict(raw)
        return cls(
            running=bool(d.get("running", False)),
            paused=bool(d.get("paused", False)),
            paused_at=_parse_dt(d.get("pausedAt")),
            pause_reason=d.get("pauseReason"),
            config=DaemonConfig.from_dict(d.get("config")),
            stats=Stats.from_dict(d.get("stats")),
            agents=agents,
        )


_JSON_STRING = re.compile(r'"(?:[^"\\]|\\.)*"', re.DOTALL)


def looks_corrupted(text: str) -> bool:
    """Cheap structural sanity check run before JSON decoding.

    Catches empty files, truncated writes, and two documents written on
    top of each other.  String literals are blanked out first so agent
    output containing braces does not trip the check.
    """
    if not text or not text.strip():
        return True
    trimmed = text.strip()
    if not (trimmed.startswith("{") and trimmed.endswith("}")):
        return True
    structure = _JSON_STRING.sub('""', trimmed)
    if structure.endswith("}}") or "}{" in structure:
        return True
    return structure.count("{") != structure.count("}")


# ── Store ────────────────────────────────────────────────────

class StateStore:
    """File-backed Daemon State with a single serialized critical section."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.RLock()

    def _backup_corrupted(self, reason: str) -> None:
        backup_path = f"{self.path}.corrupted.{int(time.time() * 1000)}"
        try:
            os.replace(self.path, backup_path)
            logger.warning("Corrupted state file (%s), moved to %s; using defaults", reason, backup_path)
        except OSError as exc:
            logger.error("Corrupted state file (%s) could not be backed up: %s", reason, exc)

    def load(self) -> DaemonState:
        with self._lock:
            if not os.path.exists(self.path):
                return DaemonState()
            with open(self.path, "r", encoding="utf-8") as f:
                content = f.read()
            if looks_corrupted(content):
                self._backup_corrupted("structural check failed")
                return DaemonState()
            try:
                raw = json.loads(content)
                if not isinstance(raw, dict):
                    raise ValueError("state root is not an object")
                return DaemonState.from_dict(raw)
            except (ValueError, KeyError, TypeError) as exc:
                self._backup_corrupted(str(exc))
                return DaemonState()

    def save(self, state: DaemonState) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with self._lock:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)

    def read(self) -> DaemonState:
        """Load a snapshot for read-only use."""
        return self.load()

    @contextmanager
    def transaction(self) -> Iterator[DaemonState]:
        """Hold the state lock across load → mutate → save.

        The snapshot is only written back when the block exits normally.
        """
        with self._lock:
            state = self.load()
            yield state
            self.save(state)
