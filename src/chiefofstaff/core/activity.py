"""Per-target activity tracking and cooldowns.

A target is anything a task can point at through its ``App`` metadata,
normally a managed application.  Work against a target starts its
cooldown window; while the window is open the daemon will neither
dispatch queued tasks for that target nor pick it for an idle review.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import json
import logging
import os
import threading
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger("chiefofstaff.activity")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class Target:
    id: str
    name: str = ""
    repo_path: str = ""

    @classmethod
    def from_dict(cls, d: dict) -> Target:
        return cls(
            id=str(d["id"]),
            name=str(d.get("name") or d["id"]),
            repo_path=str(d.get("repoPath") or d.get("repo_path") or ""),
        )


def load_targets(apps_file: str) -> List[Target]:
    """Read the managed targets list. A missing or unreadable file means no targets."""
    if not apps_file or not os.path.exists(apps_file):
        return []
    try:
        with open(apps_file, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, ValueError) as exc:
        logger.error("Failed to load targets from %s: %s", apps_file, exc)
        return []
    items = raw.get("apps", []) if isinstance(raw, dict) else raw
    return [Target.from_dict(item) for item in items if isinstance(item, dict) and item.get("id")]


@dataclass
class TargetActivity:
    last_reviewed_at: Optional[datetime] = None
    last_task_completed_at: Optional[datetime] = None
    active_agent_id: Optional[str] = None
    cooldown_until: Optional[datetime] = None
    review_count: int = 0
    issues_found: int = 0
    issues_fixed: int = 0

    def last_activity(self) -> Optional[datetime]:
        stamps = [s for s in (self.last_reviewed_at, self.last_task_completed_at) if s]
        return max(stamps) if stamps else None

    def on_cooldown(self, cooldown_ms: int, now: datetime) -> bool:
        if self.cooldown_until and self.cooldown_until > now:
            return True
        last = self.last_activity()
        if last and now - last < timedelta(milliseconds=cooldown_ms):
            return True
        return bool(self.active_agent_id)

    def to_dict(self) -> dict:
        return {
            "lastReviewedAt": self.last_reviewed_at.isoformat() if self.last_reviewed_at else None,
            "lastTaskCompletedAt": self.last_task_completed_at.isoformat() if self.last_task_completed_at else None,
            "activeAgentId": self.active_agent_id,
            "cooldownUntil": self.cooldown_until.isoformat() if self.cooldown_until else None,
            "stats": {
                "reviewCount": self.review_count,
                "issuesFound": self.issues_found,
                "issuesFixed": self.issues_fixed,
            },
        }

    @classmethod
    def from_dict(cls, d: dict) -> TargetActivity:
        stats = d.get("stats") if isinstance(d.get("stats"), dict) else {}
        return cls(
            last_reviewed_at=_parse_dt(d.get("lastReviewedAt")),
            last_task_completed_at=_parse_dt(d.get("lastTaskCompletedAt")),
            active_agent_id=d.get("activeAgentId"),
            cooldown_until=_parse_dt(d.get("cooldownUntil")),
            review_count=int(stats.get("reviewCount", 0) or 0),
            issues_found=int(stats.get("issuesFound", 0) or 0),
            issues_fixed=int(stats.get("issuesFixed", 0) or 0),
        )


@dataclass
class ActivitySnapshot:
    targets: Dict[str, TargetActivity] = field(default_factory=dict)
    last_idle_review_at: Optional[datetime] = None
    total_reviews: int = 0


class ActivityStore:
    """Cooldown clocks for every target, persisted as JSON."""

    def __init__(self, store_path: Optional[str] = None) -> None:
        self._store_path = store_path
        self._lock = threading.RLock()
        self._snapshot = ActivitySnapshot()
        if store_path:
            self._load()

    def _load(self) -> None:
        if not self._store_path or not os.path.exists(self._store_path):
            return
        try:
            with open(self._store_path, "r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, ValueError) as exc:
            logger.error("Failed to load target activity: %s", exc)
            return
        apps = raw.get("apps", {}) if isinstance(raw, dict) else {}
        glob = raw.get("global", {}) if isinstance(raw, dict) else {}
        self._snapshot = ActivitySnapshot(
            targets={k: TargetActivity.from_dict(v) for k, v in apps.items() if isinstance(v, dict)},
            last_idle_review_at=_parse_dt(glob.get("lastIdleReviewAt")),
            total_reviews=int(glob.get("totalReviews", 0) or 0),
        )

    def _save(self) -> None:
        if not self._store_path:
            return
        dir_path = os.path.dirname(self._store_path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        payload = {
            "apps": {k: v.to_dict() for k, v in self._snapshot.targets.items()},
            "global": {
                "lastIdleReviewAt": self._snapshot.last_idle_review_at.isoformat()
                if self._snapshot.last_idle_review_at else None,
                "totalReviews": self._snapshot.total_reviews,
            },
        }
        tmp_path = f"{self._store_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        os.replace(tmp_path, self._store_path)

    def _entry(self, target_id: str) -> TargetActivity:
        entry = self._snapshot.targets.get(target_id)
        if entry is None:
            entry = TargetActivity()
            self._snapshot.targets[target_id] = entry
        return entry

    def get(self, target_id: str) -> Optional[TargetActivity]:
        with self._lock:
            return self._snapshot.targets.get(target_id)

    def all(self) -> Dict[str, TargetActivity]:
        with self._lock:
            return dict(self._snapshot.targets)

    @property
    def last_idle_review_at(self) -> Optional[datetime]:
        return self._snapshot.last_idle_review_at

    @property
    def total_reviews(self) -> int:
        return self._snapshot.total_reviews

    def is_on_cooldown(self, target_id: str, cooldown_ms: int, now: Optional[datetime] = None) -> bool:
        with self._lock:
            entry = self._snapshot.targets.get(target_id)
            if entry is None:
                return False
            return entry.on_cooldown(cooldown_ms, now or _now())

    def next_for_review(self, targets: Iterable[Target], cooldown_ms: int) -> Optional[Target]:
        """Least-recently-reviewed target that is not on cooldown."""
        now = _now()
        epoch = datetime.fromtimestamp(0, tz=timezone.utc)
        eligible: List[tuple[datetime, int, Target]] = []
        with self._lock:
            for index, target in enumerate(targets):
                entry = self._snapshot.targets.get(target.id)
                if entry and entry.on_cooldown(cooldown_ms, now):
                    continue
                last_review = entry.last_reviewed_at if entry and entry.last_reviewed_at else epoch
                eligible.append((last_review, index, target))
        if not eligible:
            return None
        eligible.sort(key=lambda item: (item[0], item[1]))
        return eligible[0][2]

    def mark_work_started(self, target_id: str, agent_id: Optional[str] = None) -> TargetActivity:
        """Start the target's cooldown clock at the moment work is dispatched."""
        with self._lock:
            entry = self._entry(target_id)
            entry.last_reviewed_at = _now()
            if agent_id:
                entry.active_agent_id = agent_id
            self._save()
            return entry

    def start_cooldown(self, target_id: str, cooldown_ms: int) -> TargetActivity:
        """Called when an agent finishes work on a target."""
        with self._lock:
            entry = self._entry(target_id)
            now = _now()
            entry.cooldown_until = now + timedelta(milliseconds=cooldown_ms)
            entry.active_agent_id = None
            entry.last_task_completed_at = now
            self._save()
            return entry

    def mark_review_completed(self, target_id: str, issues_found: int = 0, issues_fixed: int = 0) -> TargetActivity:
        with self._lock:
            entry = self._entry(target_id)
            entry.active_agent_id = None
            entry.review_count += 1
            entry.issues_found += issues_found
            entry.issues_fixed += issues_fixed
            self._save()
            return entry

    def clear_cooldown(self, target_id: str) -> TargetActivity:
        """Manual override: make the target schedulable again."""
        with self._lock:
            entry = self._entry(target_id)
            entry.cooldown_until = None
            entry.last_reviewed_at = None
            entry.last_task_completed_at = None
            entry.active_agent_id = None
            self._save()
            return entry

    def release_agent(self, agent_id: str) -> List[str]:
        """Clear *agent_id* from every target it holds. Returns the target ids released."""
        released: List[str] = []
        with self._lock:
            for target_id, entry in self._snapshot.targets.items():
                if agent_id and entry.active_agent_id == agent_id:
                    entry.active_agent_id = None
                    released.append(target_id)
            if released:
                self._save()
        return released

    def release_inactive_agents(self, running_ids: Iterable[str]) -> List[str]:
        """Clear every active agent that is not in *running_ids*. Returns the target ids released."""
        running = set(running_ids)
        released: List[str] = []
        with self._lock:
            for target_id, entry in self._snapshot.targets.items():
                if entry.active_agent_id and entry.active_agent_id not in running:
                    logger.info("Releasing %s from stale agent %s", target_id, entry.active_agent_id)
                    entry.active_agent_id = None
                    released.append(target_id)
            if released:
                self._save()
        return released

    def mark_idle_review_started(self) -> None:
        with self._lock:
            self._snapshot.last_idle_review_at = _now()
            self._snapshot.total_reviews += 1
            self._save()

    def next_cooldown_expiry(self, targets: Iterable[Target], cooldown_ms: int) -> Optional[float]:
        """Seconds until the first currently-cooling target becomes eligible, or None."""
        now = _now()
        soonest: Optional[datetime] = None
        with self._lock:
            for target in targets:
                entry = self._snapshot.targets.get(target.id)
                if entry is None:
                    continue
                candidates = []
                if entry.cooldown_until and entry.cooldown_until > now:
                    candidates.append(entry.cooldown_until)
                last = entry.last_activity()
                if last and last + timedelta(milliseconds=cooldown_ms) > now:
                    candidates.append(last + timedelta(milliseconds=cooldown_ms))
                for expiry in candidates:
                    if soonest is None or expiry < soonest:
                        soonest = expiry
        return (soonest - now).total_seconds() if soonest else None
