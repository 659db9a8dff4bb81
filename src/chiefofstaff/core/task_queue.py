"""Task queue text format: parsing, serialization, and list helpers.

A queue file looks like::

    # Tasks

    ## Pending
    - [ ] #task-001 | HIGH | Fix login bug
      - App: portal
      - Context: "first line\\nsecond line"

    ## In Progress
    - [~] #sys-002 | MEDIUM | AUTO | Remove dead code

Task lines in the system queue carry an ``AUTO`` / ``APPROVAL`` flag
between the priority and the description.  Every helper that takes a
list of tasks returns a new list and leaves its input untouched, so
readers can hold on to a parsed queue while a writer prepares the next
version of the file.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import json
import re
from typing import Any, Dict, Iterable, List, Optional
import uuid

STATUS_MARKS = {
    " ": "pending",
    "~": "in_progress",
    "x": "completed",
    "!": "blocked",
}
MARK_FOR_STATUS = {status: mark for mark, status in STATUS_MARKS.items()}

PRIORITY_VALUES = {
    "CRITICAL": 4,
    "HIGH": 3,
    "MEDIUM": 2,
    "LOW": 1,
}

TASK_STATUSES = ("pending", "in_progress", "blocked", "completed")

# (status, section title) in file order
SECTIONS = (
    ("pending", "Pending"),
    ("in_progress", "In Progress"),
    ("blocked", "Blocked"),
    ("completed", "Completed"),
)

USER_PREFIX = "task-"
SYSTEM_PREFIX = "sys-"

AUTO_FIX_SIGNALS = ("fix critical error", "[auto-fix]", "fix error:")

_TASK_WITH_FLAG = re.compile(
    r"^-\s*\[([ x~!])\]\s*#([\w-]+)\s*\|\s*(CRITICAL|HIGH|MEDIUM|LOW)\s*\|\s*(AUTO|APPROVAL)\s*\|\s*(.+)$",
    re.IGNORECASE,
)
_TASK_PLAIN = re.compile(
    r"^-\s*\[([ x~!])\]\s*#([\w-]+)\s*\|\s*(CRITICAL|HIGH|MEDIUM|LOW)\s*\|\s*(.+)$",
    re.IGNORECASE,
)
_METADATA = re.compile(r"^\s+-\s*(\w+):\s*(.+)$")
_METADATA_PREFIX = re.compile(r"^\s+-\s*\w+:")


@dataclass
class Task:
    id: str
    status: str = "pending"
    priority: str = "MEDIUM"
    description: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)
    approval_required: bool = False
    auto_approved: bool = True
    section: Optional[str] = field(default=None, compare=False)

    @property
    def priority_value(self) -> int:
        return PRIORITY_VALUES.get(self.priority, 2)

    @property
    def is_system(self) -> bool:
        return self.id.startswith(SYSTEM_PREFIX)

    @property
    def target(self) -> Optional[str]:
        """The schedulable target (application id) this task works against."""
        return self.metadata.get("app") or self.metadata.get("target") or None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "priority": self.priority,
            "priorityValue": self.priority_value,
            "description": self.description,
            "metadata": dict(self.metadata),
            "approvalRequired": self.approval_required,
            "autoApproved": self.auto_approved,
            "section": self.section,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Task:
        return cls(
            id=d["id"],
            status=d.get("status", "pending"),
            priority=str(d.get("priority", "MEDIUM")).upper(),
            description=d.get("description", ""),
            metadata={str(k): str(v) for k, v in (d.get("metadata") or {}).items()},
            approval_required=bool(d.get("approvalRequired", False)),
            auto_approved=bool(d.get("autoApproved", True)),
            section=d.get("section"),
        )


# ── Metadata value escaping ──────────────────────────────────


# characters str.splitlines() treats as line boundaries
LINE_BREAKS = frozenset("\n\r\x0b\x0c\x1c\x1d\x1e\x85\u2028\u2029")


def _needs_quoting(text: str) -> bool:
    if not text or text != text.strip():
        return True
    for ch in text:
        if ch in '"\\' or ch in LINE_BREAKS:
            return True
        code = ord(ch)
        if code < 0x20 or 0x7F <= code <= 0x9F:
            return True
    return False


def escape_value(value: Any) -> str:
    """Encode a metadata value for single-line storage.

    Values that would not survive a plain ``Key: value`` line are written
    as JSON string literals: empty values, values with leading or
    trailing whitespace, and values containing a backslash, a double
    quote, a control character or a line separator.  Anything else is
    stored verbatim.
    """
    text = value if isinstance(value, str) else str(value)
    if _needs_quoting(text):
        return json.dumps(text, ensure_ascii=False)
    return text


def unescape_value(value: str) -> str:
    """Decode a stored metadata value.

    JSON string literals are decoded first.  Anything else, including a
    quoted value that fails to decode, goes through the legacy decoding
    where a literal ``\\n`` means a newline.
    """
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        try:
            decoded = json.loads(value)
        except ValueError:
            pass
        else:
            if isinstance(decoded, str):
                return decoded
    return value.replace("\\n", "\n")


# ── Parsing ──────────────────────────────────────────────────


class LineKind(Enum):
    TITLE = "title"
    SECTION = "section"
    BLANK = "blank"
    TASK = "task"
    METADATA = "metadata"
    OTHER = "other"


def classify_line(line: str) -> LineKind:
    if line.startswith("## "):
        return LineKind.SECTION
    if line.startswith("# "):
        return LineKind.TITLE
    if not line.strip():
        return LineKind.BLANK
    if line.startswith("- ["):
        return LineKind.TASK
    if _METADATA_PREFIX.match(line):
        return LineKind.METADATA
    return LineKind.OTHER


def _section_key(header: str) -> str:
    return re.sub(r"\s+", "_", header[3:].strip().lower())


def _normalize_id(raw_id: str, default_prefix: str = USER_PREFIX) -> str:
    if raw_id.startswith(USER_PREFIX) or raw_id.startswith(SYSTEM_PREFIX):
        return raw_id
    return f"{default_prefix}{raw_id}"


def parse_task_line(line: str) -> Optional[Task]:
    """Parse one task line, trying the flagged grammar before the plain one."""
    match = _TASK_WITH_FLAG.match(line)
    if match:
        mark, raw_id, priority, flag, description = match.groups()
        flag = flag.upper()
        approval_required = flag == "APPROVAL"
        auto_approved = flag == "AUTO"
    else:
        match = _TASK_PLAIN.match(line)
        if not match:
            return None
        mark, raw_id, priority, description = match.groups()
        approval_required = False
        auto_approved = True
    return Task(
        id=_normalize_id(raw_id),
        status=STATUS_MARKS.get(mark.lower(), "pending"),
        priority=priority.upper(),
        description=description.strip(),
        metadata={},
        approval_required=approval_required,
        auto_approved=auto_approved,
    )


def parse_metadata_line(line: str) -> Optional[tuple[str, str]]:
    match = _METADATA.match(line)
    if not match:
        return None
    return match.group(1).lower(), unescape_value(match.group(2).strip())


def parse_tasks(text: str) -> List[Task]:
    """Parse queue file content into task records, in file order."""
    tasks: List[Task] = []
    current: Optional[Task] = None
    section: Optional[str] = None

    # only "\n" separates lines; other separators may appear in quoted values
    for line in text.split("\n"):
        if line.endswith("\r"):
            line = line[:-1]
        kind = classify_line(line)
        if kind is LineKind.SECTION:
            section = _section_key(line)
            current = None
        elif kind is LineKind.TASK:
            current = parse_task_line(line)
            if current is not None:
                current.section = section
                tasks.append(current)
        elif kind is LineKind.METADATA and current is not None:
            parsed = parse_metadata_line(line)
            if parsed:
                key, value = parsed
                current.metadata[key] = value
    return tasks


# ── Serialization ────────────────────────────────────────────


def _capitalize(key: str) -> str:
    return key[:1].upper() + key[1:]


def format_task_line(task: Task, include_approval_flag: bool = False) -> str:
    mark = MARK_FOR_STATUS.get(task.status, " ")
    flag = ""
    if include_approval_flag:
        flag = " | APPROVAL" if task.approval_required else " | AUTO"
    return f"- [{mark}] #{task.id} | {task.priority}{flag} | {task.description}"


def serialize_tasks(tasks: Iterable[Task], include_approval_flags: bool = False) -> str:
    """Render tasks back into queue file text.

    Tasks are grouped into the fixed sections by ``status`` (their parsed
    ``section`` is ignored) and sorted by descending priority within each
    section, keeping the caller's order for equal priorities.
    """
    grouped = group_by_status(tasks)
    lines = ["# Tasks", ""]
    for status, title in SECTIONS:
        section_tasks = grouped[status]
        if not section_tasks:
            continue
        lines.append(f"## {title}")
        for task in sort_by_priority(section_tasks):
            lines.append(format_task_line(task, include_approval_flags))
            for key, value in task.metadata.items():
                lines.append(f"  - {_capitalize(key)}: {escape_value(value)}")
        lines.append("")
    return "\n".join(lines)


# ── Queries ──────────────────────────────────────────────────


def group_by_status(tasks: Iterable[Task]) -> Dict[str, List[Task]]:
    grouped: Dict[str, List[Task]] = {status: [] for status in TASK_STATUSES}
    for task in tasks:
        grouped.setdefault(task.status, []).append(task)
    return grouped


def sort_by_priority(tasks: Iterable[Task]) -> List[Task]:
    """Highest priority first; equal priorities keep their input order."""
    return sorted(tasks, key=lambda t: t.priority_value, reverse=True)


def auto_approved_tasks(tasks: Iterable[Task]) -> List[Task]:
    return [t for t in tasks if t.auto_approved and not t.approval_required and t.status == "pending"]


def awaiting_approval_tasks(tasks: Iterable[Task]) -> List[Task]:
    return [t for t in tasks if t.approval_required and t.status == "pending"]


def _flag_is_set(metadata: Dict[str, str], key: str) -> bool:
    for k, v in metadata.items():
        if k.lower() == key and str(v).strip().lower() == "true":
            return True
    return False


def is_critical_auto_fix(task: Task) -> bool:
    """Whether a system task should jump ahead of normal queue order."""
    if not task.is_system:
        return False
    if task.priority == "CRITICAL":
        return True
    if task.priority != "HIGH":
        return False
    desc = task.description.lower()
    return any(signal in desc for signal in AUTO_FIX_SIGNALS) or _flag_is_set(task.metadata, "autofix")


def prioritize_critical(tasks: Iterable[Task]) -> List[Task]:
    """Critical auto-fix tasks first, everything else in its original order."""
    items = list(tasks)
    return [t for t in items if is_critical_auto_fix(t)] + [t for t in items if not is_critical_auto_fix(t)]


def next_task(tasks: Iterable[Task]) -> Optional[Task]:
    pending = [t for t in tasks if t.status == "pending"]
    if not pending:
        return None
    for task in pending:
        if is_critical_auto_fix(task):
            return task
    return pending[0]


def find_task(tasks: Iterable[Task], task_id: str) -> Optional[Task]:
    for task in tasks:
        if task.id == task_id:
            return task
    return None


def validate_task(task: Task) -> List[str]:
    """Return a list of problems with *task* (empty = valid)."""
    errors: List[str] = []
    if not task.id or not re.fullmatch(r"[\w-]+", task.id):
        errors.append("Task must have a valid id")
    if not task.description or not task.description.strip():
        errors.append("Task must have a description")
    elif any(ch in LINE_BREAKS for ch in task.description):
        errors.append("Task description must be a single line")
    if task.status not in TASK_STATUSES:
        errors.append("Invalid task status")
    if task.priority not in PRIORITY_VALUES:
        errors.append("Invalid priority (must be CRITICAL, HIGH, MEDIUM, or LOW)")
    for key, value in task.metadata.items():
        if not re.fullmatch(r"\w+", key):
            errors.append(f"Invalid metadata key: {key!r}")
        elif not str(value).strip():
            errors.append(f"Metadata value for {key!r} must not be empty")
    return errors


# ── Immutable edits ──────────────────────────────────────────


def new_task(
    description: str,
    priority: str = "MEDIUM",
    task_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    system: bool = False,
    approval_required: bool = False,
) -> Task:
    """Build a normalized pending task for the user or system queue."""
    prefix = SYSTEM_PREFIX if system else USER_PREFIX
    raw_id = task_id or uuid.uuid4().hex[:12]
    priority = (priority or "MEDIUM").upper()
    if priority not in PRIORITY_VALUES:
        raise ValueError(f"Invalid priority: {priority}")
    return Task(
        id=_normalize_id(raw_id, prefix),
        status="pending",
        priority=priority,
        description=description.strip(),
        metadata={str(k).lower(): str(v) for k, v in (metadata or {}).items() if v is not None and v != ""},
        approval_required=system and approval_required,
        auto_approved=not (system and approval_required),
        section="pending",
    )


def add_task(tasks: Iterable[Task], task: Task) -> List[Task]:
    """Append *task*, or replace the existing task with the same id in place."""
    items = list(tasks)
    for index, existing in enumerate(items):
        if existing.id == task.id:
            items[index] = task
            return items
    items.append(task)
    return items


def update_task(tasks: Iterable[Task], task_id: str, **changes: Any) -> List[Task]:
    """Return a new list with *task_id* changed.

    ``metadata`` is merged into the existing metadata; a key mapped to
    ``None`` or ``""`` is removed.
    """
    status = changes.get("status")
    if status is not None and status not in TASK_STATUSES:
        raise ValueError(f"Invalid status: {status}")
    priority = changes.get("priority")
    if priority is not None:
        priority = str(priority).upper()
        if priority not in PRIORITY_VALUES:
            raise ValueError(f"Invalid priority: {priority}")
        changes["priority"] = priority
    description = changes.get("description")
    if description is not None:
        description = str(description).strip()
        if not description or any(ch in LINE_BREAKS for ch in description):
            raise ValueError("Task description must be a single line")
        changes["description"] = description

    metadata_changes = changes.pop("metadata", None) or {}
    fields = {k: v for k, v in changes.items() if v is not None}
    result: List[Task] = []
    for task in tasks:
        if task.id != task_id:
            result.append(task)
            continue
        metadata = dict(task.metadata)
        for key, value in metadata_changes.items():
            key = str(key).lower()
            if not re.fullmatch(r"\w+", key):
                raise ValueError(f"Invalid metadata key: {key!r}")
            if value is None or value == "":
                metadata.pop(key, None)
            else:
                metadata[key] = str(value)
        result.append(replace(task, metadata=metadata, **fields))
    return result


def update_task_status(
    tasks: Iterable[Task],
    task_id: str,
    status: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> List[Task]:
    return update_task(tasks, task_id, status=status, metadata=metadata or {})


def remove_task(tasks: Iterable[Task], task_id: str) -> List[Task]:
    return [t for t in tasks if t.id != task_id]


def reorder_tasks(tasks: Iterable[Task], task_ids: Iterable[str]) -> List[Task]:
    """Order tasks by *task_ids*; tasks not listed keep their relative order at the end."""
    remaining = {t.id: t for t in tasks}
    ordered: List[Task] = []
    for task_id in task_ids:
        task = remaining.pop(task_id, None)
        if task is not None:
            ordered.append(task)
    ordered.extend(remaining.values())
    return ordered
