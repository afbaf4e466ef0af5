# Task board configuration
# Override paths and endpoints via taskboard.yaml or environment variables.

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_PATH = Path("taskboard.yaml")

# Columns created with every new project board, in display order.
DEFAULT_COLUMNS = ["Ideas", "To Do", "In Progress", "Review", "Done"]


@dataclass
class Config:
    """Runtime configuration for the task board engine and server."""

    # Storage
    db_path: str = "~/.local/share/taskboard/taskboard.db"
    busy_timeout: float = 10.0          # seconds a writer waits for the lock

    # Task hierarchy
    max_task_depth: int = 16            # longest parent chain accepted

    # Board layout for new projects
    default_columns: List[str] = field(default_factory=lambda: list(DEFAULT_COLUMNS))

    # Notifications (None = in-process subscribers only)
    notify_url: Optional[str] = None
    notify_timeout: float = 2.0

    # HTTP API
    api_secret: str = ""
    log_level: str = "INFO"

    def resolve(self):
        """Apply environment overrides and expand ~ in paths."""
        env_db = os.environ.get("TASKBOARD_DB")
        if env_db:
            self.db_path = env_db
        env_secret = os.environ.get("TASKBOARD_API_SECRET")
        if env_secret:
            self.api_secret = env_secret
        env_notify = os.environ.get("TASKBOARD_NOTIFY_URL")
        if env_notify:
            self.notify_url = env_notify

        self.db_path = str(Path(self.db_path).expanduser())

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path) if path else CONFIG_PATH
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
                if not isinstance(data, dict):
                    raise TypeError("top level must be a mapping")
                cfg = cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
            except (yaml.YAMLError, TypeError) as e:
                logger.warning(f"Ignoring unreadable config {cfg_path}: {e}")
                cfg = cls()
        else:
            cfg = cls()
        cfg.resolve()
        return cfg
