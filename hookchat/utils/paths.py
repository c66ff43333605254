"""File path resolution using platformdirs.

Paths use platform-appropriate directories:
  macOS: ~/Library/Application Support/HookChat/
  Windows: %LOCALAPPDATA%/HookChat/
  Linux: ~/.local/share/hookchat/

HOOKCHAT_HOME overrides the data directory (useful for tests and portable
installs).
"""

import os
from pathlib import Path

import platformdirs

APP_NAME = "HookChat"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB, device id)."""
    override = os.environ.get("HOOKCHAT_HOME", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_log_dir() -> Path:
    """Return the directory for application logs."""
    override = os.environ.get("HOOKCHAT_HOME", "").strip()
    if override:
        return Path(override).expanduser() / "logs"
    return Path(platformdirs.user_log_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    return get_data_dir() / "hookchat.db"


def ensure_dirs_exist() -> None:
    """Create all required directories if they don't exist."""
    for d in [get_data_dir(), get_log_dir()]:
        d.mkdir(parents=True, exist_ok=True)
