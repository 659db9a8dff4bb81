"""Daily summaries of completed agent work, stored as ``<date>.json``."""
from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
import re
from typing import List, Optional

from chiefofstaff.core.state import StateStore

logger = logging.getLogger("chiefofstaff.reports")

_REPORT_NAME = re.compile(r"^\d{4}-\d{2}-\d{2}\.json$")
_REPORT_DATE = re.compile(r"\d{4}-\d{2}-\d{2}")


def is_report_date(value: Optional[str]) -> bool:
    """True for a real calendar date written as ``YYYY-MM-DD``."""
    if not value or not _REPORT_DATE.fullmatch(value):
        return False
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return False
    return True


def _report_path(reports_dir: str, day: str) -> str:
    return os.path.join(reports_dir, f"{day}.json")


def generate_report(state_store: StateStore, reports_dir: str, date: Optional[str] = None) -> dict:
    """Summarize agents completed on *date* (UTC, ``YYYY-MM-DD``, default today)."""
    day = date or datetime.now(timezone.utc).date().isoformat()
    if not is_report_date(day):
        raise ValueError(f"Invalid report date: {day!r} (expected YYYY-MM-DD)")
    state = state_store.read()
    entries: List[dict] = []
    for agent in state.agents.values():
        if agent.is_running or agent.completed_at is None:
            continue
        if agent.completed_at.astimezone(timezone.utc).date().isoformat() != day:
            continue
        entries.append({
            "id": agent.id,
            "taskId": agent.task_id,
            "success": bool(agent.result and agent.result.success),
            "error": agent.result.error if agent.result else None,
            "durationMs": int((agent.completed_at - agent.started_at).total_seconds() * 1000),
            "completedAt": agent.completed_at.isoformat(),
        })
    entries.sort(key=lambda e: e["completedAt"])
    succeeded = sum(1 for e in entries if e["success"])
    report = {
        "date": day,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "summary": {
            "total": len(entries),
            "succeeded": succeeded,
            "failed": len(entries) - succeeded,
        },
        "agents": entries,
    }
    os.makedirs(reports_dir, exist_ok=True)
    path = _report_path(reports_dir, day)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2)
    os.replace(tmp_path, path)
    logger.info("Report generated for %s: %d agent(s)", day, len(entries))
    return report


def get_report(reports_dir: str, date: str) -> Optional[dict]:
    if not is_report_date(date):
        return None
    path = _report_path(reports_dir, date)
    if not os.path.exists(path):
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def list_reports(reports_dir: str) -> List[str]:
    """Report dates, newest first."""
    if not os.path.isdir(reports_dir):
        return []
    names = [n[:-5] for n in os.listdir(reports_dir) if _REPORT_NAME.match(n)]
    return sorted(names, reverse=True)
