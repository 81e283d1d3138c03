"""Production file path resolution using platformdirs.

In dev mode (not bundled), paths resolve relative to the project root.
In bundled mode, paths use platform-appropriate user directories.
"""

from pathlib import Path

import platformdirs

from src.utils.runtime import is_bundled

APP_NAME = "segment-engine"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB, config).

    In dev mode: project root.
    In bundled mode: platform user data dir.
    """
    if is_bundled():
        return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))
    return Path(__file__).resolve().parent.parent.parent


def get_config_dir() -> Path:
    """Return the directory searched for the user config file."""
    return Path(platformdirs.user_config_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    return get_data_dir() / "segments.db"


def ensure_dirs_exist() -> None:
    """Create all required directories if they don't exist."""
    get_data_dir().mkdir(parents=True, exist_ok=True)
