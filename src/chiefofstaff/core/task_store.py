"""File-backed access to the user and system task queues.

Each queue is one text file in the task queue format.  Every edit is a
whole-file read → change → atomic replace under the store lock, and
every edit publishes ``tasks:changed``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
import threading
from typing import Any, Dict, Iterable, List, Optional

from chiefofstaff.core.events import EventBus, EventType
from chiefofstaff.core import task_queue as tq
from chiefofstaff.core.task_queue import Task

logger = logging.getLogger("chiefofstaff.task_store")

USER = "user"
SYSTEM = "system"
SCOPES = (USER, SYSTEM)

# Task fields an edit may carry straight into metadata
_METADATA_FIELDS = ("context", "model", "provider", "app")


@dataclass
class TaskQueue:
    scope: str
    file: str
    exists: bool
    tasks: List[Task] = field(default_factory=list)

    @property
    def grouped(self) -> Dict[str, List[Task]]:
        return tq.group_by_status(self.tasks)

    @property
    def pending(self) -> List[Task]:
        return self.grouped["pending"]

    @property
    def auto_approved(self) -> List[Task]:
        return tq.auto_approved_tasks(self.tasks) if self.scope == SYSTEM else []

    @property
    def awaiting_approval(self) -> List[Task]:
        return tq.awaiting_approval_tasks(self.tasks) if self.scope == SYSTEM else []

    def to_dict(self) -> dict:
        d: Dict[str, Any] = {
            "type": self.scope,
            "file": self.file,
            "exists": self.exists,
            "tasks": [t.to_dict() for t in self.tasks],
            "grouped": {status: [t.to_dict() for t in items] for status, items in self.grouped.items()},
        }
        if self.scope == SYSTEM:
            d["autoApproved"] = [t.to_dict() for t in self.auto_approved]
            d["awaitingApproval"] = [t.to_dict() for t in self.awaiting_approval]
        return d


class TaskStore:
    """Reads and edits the two task queue files."""

    def __init__(self, user_tasks_file: str, system_tasks_file: str, bus: Optional[EventBus] = None) -> None:
        self._paths = {USER: user_tasks_file, SYSTEM: system_tasks_file}
        self._bus = bus
        self._lock = threading.RLock()

    def path_for(self, scope: str) -> str:
        if scope not in SCOPES:
            raise ValueError(f"Unknown task scope: {scope}")
        return self._paths[scope]

    # ── reading / writing ────────────────────────────────────

    def load(self, scope: str = USER) -> TaskQueue:
        path = self.path_for(scope)
        with self._lock:
            if not os.path.exists(path):
                return TaskQueue(scope=scope, file=path, exists=False)
            with open(path, "r", encoding="utf-8") as f:
                content = f.read()
        return TaskQueue(scope=scope, file=path, exists=True, tasks=tq.parse_tasks(content))

    def load_all(self) -> Dict[str, TaskQueue]:
        return {scope: self.load(scope) for scope in SCOPES}

    def _write(self, scope: str, tasks: Iterable[Task]) -> None:
        path = self.path_for(scope)
        content = tq.serialize_tasks(tasks, include_approval_flags=scope == SYSTEM)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

    def _publish(self, payload: dict) -> None:
        if self._bus:
            self._bus.publish(EventType.TASKS_CHANGED, payload)

    # ── queries ──────────────────────────────────────────────

    def find_task(self, task_id: str) -> Optional[tuple[str, Task]]:
        """Locate *task_id* in either queue. Returns ``(scope, task)`` or None."""
        for scope in SCOPES:
            task = tq.find_task(self.load(scope).tasks, task_id)
            if task is not None:
                return scope, task
        return None

    # ── edits ────────────────────────────────────────────────

    def add_task(self, data: dict, scope: str = USER) -> Task:
        """Add a task from a request-style mapping.

        An ``id`` that already exists in the queue updates that task
        instead of adding a second one.
        """
        system = scope == SYSTEM
        metadata = dict(data.get("metadata") or {})
        for key in _METADATA_FIELDS:
            if data.get(key):
                metadata[key] = data[key]
        task = tq.new_task(
            description=str(data.get("description", "")),
            priority=data.get("priority") or "MEDIUM",
            task_id=data.get("id"),
            metadata=metadata,
            system=system,
            approval_required=bool(data.get("approvalRequired", data.get("approval_required", False))),
        )
        errors = tq.validate_task(task)
        if errors:
            raise ValueError("; ".join(errors))
        with self._lock:
            queue = self.load(scope)
            existed = tq.find_task(queue.tasks, task.id) is not None
            self._write(scope, tq.add_task(queue.tasks, task))
        action = "updated" if existed else "added"
        logger.info("Task %s: %s (%s)", action, task.id, scope)
        self._publish({"type": scope, "action": action, "task": task.to_dict()})
        return task

    def update_task(self, task_id: str, updates: dict, scope: str = USER) -> dict:
        """Apply *updates* to a task. Returns the task dict or ``{"error": ...}``."""
        changes: Dict[str, Any] = {}
        for key in ("description", "priority", "status"):
            if updates.get(key):
                changes[key] = updates[key]
        metadata: Dict[str, Any] = dict(updates.get("metadata") or {})
        for key in _METADATA_FIELDS:
            if key in updates:
                metadata[key] = updates[key] or None
        changes["metadata"] = metadata
        with self._lock:
            queue = self.load(scope)
            if not queue.exists:
                return {"error": "Task file not found"}
            if tq.find_task(queue.tasks, task_id) is None:
                return {"error": "Task not found"}
            try:
                tasks = tq.update_task(queue.tasks, task_id, **changes)
            except ValueError as exc:
                return {"error": str(exc)}
            self._write(scope, tasks)
        updated = tq.find_task(tasks, task_id)
        assert updated is not None
        self._publish({"type": scope, "action": "updated", "task": updated.to_dict()})
        return updated.to_dict()

    def set_status(self, task_id: str, status: str, scope: str = USER, metadata: Optional[dict] = None) -> dict:
        return self.update_task(task_id, {"status": status, "metadata": metadata or {}}, scope)

    def delete_task(self, task_id: str, scope: str = USER) -> dict:
        with self._lock:
            queue = self.load(scope)
            if not queue.exists:
                return {"error": "Task file not found"}
            if tq.find_task(queue.tasks, task_id) is None:
                return {"error": "Task not found"}
            self._write(scope, tq.remove_task(queue.tasks, task_id))
        self._publish({"type": scope, "action": "deleted", "taskId": task_id})
        return {"success": True, "taskId": task_id}

    def reorder_tasks(self, task_ids: List[str]) -> dict:
        """Reorder the user queue. Unlisted tasks keep their order at the end."""
        with self._lock:
            queue = self.load(USER)
            if not queue.exists:
                return {"error": "Task file not found"}
            tasks = tq.reorder_tasks(queue.tasks, task_ids)
            self._write(USER, tasks)
        self._publish({"type": USER, "action": "reordered"})
        return {"success": True, "order": [t.id for t in tasks]}

    def approve_task(self, task_id: str) -> dict:
        """Mark an approval-required system task as auto-approved."""
        with self._lock:
            queue = self.load(SYSTEM)
            if not queue.exists:
                return {"error": "System task file not found"}
            task = tq.find_task(queue.tasks, task_id)
            if task is None:
                return {"error": "Task not found"}
            if not task.approval_required:
                return {"error": "Task does not require approval"}
            tasks = tq.update_task(queue.tasks, task_id, approval_required=False, auto_approved=True)
            self._write(SYSTEM, tasks)
        approved = tq.find_task(tasks, task_id)
        assert approved is not None
        self._publish({"type": SYSTEM, "action": "approved", "task": approved.to_dict()})
        return approved.to_dict()
