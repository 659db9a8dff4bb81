from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    user_tasks_file: str
    system_tasks_file: str
    apps_file: str
    host: str
    port: int
    auto_start: bool
    agent_command: str
    agent_timeout: int
    clear_logs_on_launch: bool

    @property
    def cos_dir(self) -> str:
        return os.path.join(self.data_dir, "cos")

    @property
    def state_file(self) -> str:
        return os.path.join(self.cos_dir, "state.json")

    @property
    def agents_dir(self) -> str:
        return os.path.join(self.cos_dir, "agents")

    @property
    def reports_dir(self) -> str:
        return os.path.join(self.cos_dir, "reports")

    @property
    def activity_file(self) -> str:
        return os.path.join(self.cos_dir, "app-activity.json")

    @staticmethod
    def from_env() -> "Settings":
        default_root = str(Path(os.path.expanduser("~")) / ".chiefofstaff")
        data_dir = os.getenv("COS_DATA_DIR") or str(Path(default_root) / ".data")
        return Settings(
            log_level=os.getenv("COS_LOG_LEVEL", "info"),
            log_dir=os.getenv("COS_LOG_DIR") or str(Path(default_root) / ".logs"),
            data_dir=data_dir,
            user_tasks_file=os.getenv("COS_USER_TASKS_FILE") or os.path.join(data_dir, "TASKS.md"),
            system_tasks_file=os.getenv("COS_SYSTEM_TASKS_FILE") or os.path.join(data_dir, "COS-TASKS.md"),
            apps_file=os.getenv("COS_APPS_FILE") or os.path.join(data_dir, "apps.json"),
            host=os.getenv("COS_HOST", "127.0.0.1"),
            port=int(os.getenv("COS_PORT", "18795")),
            auto_start=_flag("COS_AUTO_START", "true"),
            agent_command=os.getenv("COS_AGENT_COMMAND", "claude --print {prompt}"),
            agent_timeout=int(os.getenv("COS_AGENT_TIMEOUT", "7200")),
            clear_logs_on_launch=_flag("COS_CLEAR_LOGS_ON_LAUNCH", "false"),
        )
