"""Persistent user settings for runbook sessions."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_DIR = Path.home() / ".runbook-sessions"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class SettingsStore:
    """JSON-backed settings file; every setter writes through."""

    DEFAULTS: Dict[str, Any] = {
        "shell": None,
        "session_prefix": "runbook",
        "window_width": 200,
        "window_height": 50,
        "refresh_interval": 0.5,
        "log_level": "INFO",
        "log_path": None,
    }

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path else DEFAULT_SETTINGS_DIR / "settings.json"
        self._data: Dict[str, Any] = self._load()

    @property
    def shell(self) -> Optional[str]:
        value = self._data.get("shell")
        return str(value) if value else None

    @shell.setter
    def shell(self, value: Optional[str]) -> None:
        self._set("shell", value or None)

    @property
    def session_prefix(self) -> str:
        value = self._data.get("session_prefix")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return self.DEFAULTS["session_prefix"]

    @session_prefix.setter
    def session_prefix(self, value: str) -> None:
        self._set("session_prefix", value)

    @property
    def window_width(self) -> int:
        return self._positive_int("window_width")

    @window_width.setter
    def window_width(self, value: int) -> None:
        self._set("window_width", int(value))

    @property
    def window_height(self) -> int:
        return self._positive_int("window_height")

    @window_height.setter
    def window_height(self, value: int) -> None:
        self._set("window_height", int(value))

    @property
    def refresh_interval(self) -> float:
        value = self._data.get("refresh_interval")
        try:
            interval = float(value)
        except (TypeError, ValueError):
            return self.DEFAULTS["refresh_interval"]
        return interval if interval > 0 else self.DEFAULTS["refresh_interval"]

    @refresh_interval.setter
    def refresh_interval(self, value: float) -> None:
        self._set("refresh_interval", float(value))

    @property
    def log_level(self) -> str:
        value = str(self._data.get("log_level") or "").upper()
        return value if value in _LOG_LEVELS else self.DEFAULTS["log_level"]

    @log_level.setter
    def log_level(self, value: str) -> None:
        self._set("log_level", str(value).upper())

    @property
    def log_path(self) -> Path:
        value = self._data.get("log_path")
        if value:
            return Path(str(value)).expanduser()
        return self.path.parent / "runbook.log"

    @log_path.setter
    def log_path(self, value: Optional[Path]) -> None:
        self._set("log_path", str(value) if value else None)

    def _positive_int(self, key: str) -> int:
        try:
            value = int(self._data.get(key))
        except (TypeError, ValueError):
            return self.DEFAULTS[key]
        return value if value > 0 else self.DEFAULTS[key]

    def _set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._save()

    def _load(self) -> Dict[str, Any]:
        data = dict(self.DEFAULTS)
        if not self.path.exists():
            return data
        try:
            loaded = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("ignoring unreadable settings file %s: %s", self.path, exc)
            return data
        if isinstance(loaded, dict):
            data.update(loaded)
        return data

    def _save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self._data, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("could not write settings file %s: %s", self.path, exc)
