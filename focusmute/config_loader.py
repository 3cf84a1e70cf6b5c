"""
config_loader.py — Read %APPDATA%/FocusMute/config.json.

load_config() returns the raw dict ({} if absent or malformed, never raises).
load_settings() validates it into a Settings model, falling back to defaults
for the whole file if any value is invalid.

The FOCUSMUTE_CONFIG environment variable points at an alternative file.
"""
import json
import logging
import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError


def _config_dir() -> Path:
    """Return the per-user FocusMute directory (%APPDATA%/FocusMute)."""
    appdata = os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming"))
    return Path(appdata) / "FocusMute"


def _config_path() -> Path:
    override = os.environ.get("FOCUSMUTE_CONFIG")
    if override:
        return Path(override)
    return _config_dir() / "config.json"


class Settings(BaseModel):
    """Runtime settings. Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    # Seconds the main thread waits for session tracking to become ready.
    startup_timeout: float = Field(default=20.0, gt=0)
    # Seconds to wait for the worker on shutdown; None waits forever.
    join_timeout: float | None = Field(default=None, gt=0)
    # Nested hook callbacks tolerated before the process aborts.
    reentrancy_limit: int = Field(default=0, ge=0)
    # Unmute everything we muted when the service stops.
    restore_on_exit: bool = True


def load_config() -> dict:
    """
    Read config.json and return its contents as a dict.

    Returns {} if:
    - The file does not exist (first run, no config yet).
    - The file contains invalid JSON or is not a JSON object.

    Never raises. Logs a warning on parse error.
    """
    path = _config_path()
    if not path.exists():
        logging.debug("No config file found at %s - using defaults.", path)
        return {}
    try:
        cfg = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(cfg, dict):
            logging.warning("config.json does not contain a JSON object - ignoring.")
            return {}
        logging.debug("Loaded config from %s: %s", path, list(cfg.keys()))
        return cfg
    except Exception:
        logging.warning("Failed to load config from %s - using defaults.", path, exc_info=True)
        return {}


def load_settings() -> Settings:
    """Validated settings from config.json. Invalid files yield defaults."""
    raw = load_config()
    try:
        return Settings.model_validate(raw)
    except ValidationError as exc:
        logging.warning("Invalid config.json - using defaults.\n%s", exc)
        return Settings()
