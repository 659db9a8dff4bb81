"""Process-metrics probe and threshold classification for the health loop."""
from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import subprocess
from typing import Iterable, List, Protocol, Tuple

from chiefofstaff.core.state import DaemonConfig, HealthIssue

logger = logging.getLogger("chiefofstaff.health")

ERRORED = "errored"


@dataclass
class ProcessInfo:
    name: str
    status: str
    memory_bytes: int = 0

    @property
    def memory_mb(self) -> float:
        return self.memory_bytes / (1024 * 1024)

    def to_dict(self) -> dict:
        return {"name": self.name, "status": self.status, "memoryMb": round(self.memory_mb)}


class ProcessProbe(Protocol):
    def list_processes(self) -> List[ProcessInfo]: ...


class Pm2Probe:
    """Reads process metrics from ``pm2 jlist``."""

    def __init__(self, command: str = "pm2", timeout: float = 30.0) -> None:
        self.command = command
        self.timeout = timeout

    def list_processes(self) -> List[ProcessInfo]:
        try:
            proc = subprocess.run(
                [self.command, "jlist"],
                capture_output=True, text=True, timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("pm2 probe failed: %s", exc)
            return []
        if proc.returncode != 0:
            logger.warning("pm2 jlist exited %s: %s", proc.returncode, proc.stderr.strip()[:200])
            return []
        return parse_pm2_jlist(proc.stdout)


def parse_pm2_jlist(text: str) -> List[ProcessInfo]:
    """Turn ``pm2 jlist`` JSON into ``ProcessInfo`` records. Bad input yields []."""
    try:
        raw = json.loads(text or "[]")
    except ValueError:
        logger.warning("pm2 jlist returned invalid JSON")
        return []
    if not isinstance(raw, list):
        return []
    processes: List[ProcessInfo] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        env = item.get("pm2_env") if isinstance(item.get("pm2_env"), dict) else {}
        monit = item.get("monit") if isinstance(item.get("monit"), dict) else {}
        processes.append(ProcessInfo(
            name=str(item.get("name", "")),
            status=str(env.get("status", "unknown")),
            memory_bytes=int(monit.get("memory", 0) or 0),
        ))
    return processes


def check_processes(processes: Iterable[ProcessInfo], config: DaemonConfig) -> Tuple[dict, List[HealthIssue]]:
    """Compare process metrics against the configured thresholds.

    Returns ``(metrics, issues)``.  Too many processes and high memory
    are warnings; any errored process is an error.
    """
    processes = list(processes)
    issues: List[HealthIssue] = []

    if len(processes) > config.max_total_processes:
        issues.append(HealthIssue(
            type="warning",
            category="processes",
            message=f"High process count: {len(processes)} (max: {config.max_total_processes})",
        ))

    errored = [p for p in processes if p.status == ERRORED]
    if errored:
        issues.append(HealthIssue(
            type="error",
            category="processes",
            message=f"{len(errored)} errored process(es): {', '.join(p.name for p in errored)}",
        ))

    high_memory = [p for p in processes if p.memory_mb > config.max_process_memory_mb]
    for proc in high_memory:
        issues.append(HealthIssue(
            type="warning",
            category="memory",
            message=f"{proc.name} using {round(proc.memory_mb)}MB (max: {config.max_process_memory_mb}MB)",
        ))

    metrics = {
        "processCount": len(processes),
        "erroredCount": len(errored),
        "highMemoryCount": len(high_memory),
        "processes": [p.to_dict() for p in processes],
    }
    return metrics, issues
