"""Canonical filesystem paths for fuel state and configuration."""

from __future__ import annotations

import os
from pathlib import Path

_env_dir = os.environ.get("FUEL_DIR")
FUEL_DIR = Path(_env_dir).expanduser() if _env_dir else Path.cwd() / ".fuel"

_env_db = os.environ.get("FUEL_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else FUEL_DIR / "agent.db"

CONFIG_PATH = FUEL_DIR / "config.toml"

# Per-task agent output: PROCESSES_DIR/<task_id>/{stdout,stderr}.log
PROCESSES_DIR = FUEL_DIR / "processes"
