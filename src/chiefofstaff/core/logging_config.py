"""Centralized logging configuration for chiefofstaff.

Sets up Python's logging system to write to both stdout and rotating
log files in the configured log directory, plus a dedicated JSONL
logger that mirrors every event published on the daemon's event bus.

Log directory structure::

    ~/.chiefofstaff/.logs/
    ├── chiefofstaff.log          # All Python logger output (rotating)
    └── events.log                # Every bus event (JSONL)

Full per-agent output is not kept here; it lives next to the agent's
metadata under ``<data_dir>/cos/agents/<agent_id>/``.
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import time
from pathlib import Path
from typing import Any, Optional

# Module-level log directory, set by setup_logging()
_log_dir: Optional[str] = None

event_logger = logging.getLogger("chiefofstaff._events")


def get_log_dir() -> str:
    """Return the configured log directory, falling back to default."""
    if _log_dir:
        return _log_dir
    default = str(Path(os.path.expanduser("~")) / ".chiefofstaff" / ".logs")
    return os.getenv("COS_LOG_DIR", default)


def clear_logs(log_dir: str) -> None:
    """Remove ``*.log`` and ``*.jsonl`` files from the log directory.

    Called before any handlers are attached so there are no open-file
    conflicts.
    """
    if not os.path.isdir(log_dir):
        return
    for pattern in ("*.log", "*.jsonl"):
        for path in glob.glob(os.path.join(log_dir, pattern)):
            try:
                os.remove(path)
            except OSError:
                pass


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Configure the logging system with both stdout and file handlers.

    This should be called once at application startup.
    """
    global _log_dir
    _log_dir = log_dir

    if clear_on_launch:
        clear_logs(log_dir)

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "chiefofstaff.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    _setup_jsonl_logger(event_logger, os.path.join(log_dir, "events.log"))

    logging.getLogger("chiefofstaff").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    # message is already JSON
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


def log_bus_event(event_type: str, payload: Any) -> None:
    """Mirror a published bus event to the events JSONL log."""
    record: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "event": event_type,
    }
    payload_str = json.dumps(payload, default=str)
    if len(payload_str) > 10000:
        record["payload_preview"] = payload_str[:10000] + "..."
    else:
        record["payload"] = payload
    try:
        event_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass


def append_to_file(path: str, line: str) -> None:
    """Append a timestamped line to a log file, flushing immediately."""
    try:
        ts = time.strftime("%Y-%m-%dT%H:%M:%S")
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{ts} {line}\n")
            f.flush()
    except Exception:  # noqa: BLE001
        pass
