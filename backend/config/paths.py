"""
Where TradeFlow keeps its database and log files.

TRADEFLOW_APP_DATA_DIR wins; otherwise the platform's per-user data
directory is used. Unwritable locations fall back to ./.tradeflow-data and
finally to the system temp directory.
"""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path


APP_IDENTIFIER = "com.tradeflow.backend"


def _platform_data_home() -> Path:
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    if os.name == "nt":
        appdata = os.getenv("APPDATA", "").strip()
        return Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
    xdg = os.getenv("XDG_DATA_HOME", "").strip()
    return Path(xdg) if xdg else Path.home() / ".local" / "share"


def _is_writable(directory: Path) -> bool:
    try:
        directory.mkdir(parents=True, exist_ok=True)
        marker = directory / ".tradeflow_write_test"
        marker.write_text("ok", encoding="utf-8")
        marker.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def resolve_app_data_dir() -> Path:
    """First writable candidate among override, platform dir and fallbacks."""
    override = os.getenv("TRADEFLOW_APP_DATA_DIR", "").strip()
    primary = Path(override) if override else _platform_data_home() / APP_IDENTIFIER
    candidates = (
        primary.expanduser(),
        Path.cwd() / ".tradeflow-data",
    )
    for candidate in candidates:
        if _is_writable(candidate):
            return candidate.resolve()

    last_resort = Path(tempfile.gettempdir()) / "tradeflow-data"
    last_resort.mkdir(parents=True, exist_ok=True)
    return last_resort.resolve()


def default_database_url() -> str:
    # Absolute paths need the three-slash sqlite form.
    return f"sqlite:///{resolve_app_data_dir() / 'tradeflow.db'}"


def default_log_directory() -> str:
    return str(resolve_app_data_dir() / "logs")
