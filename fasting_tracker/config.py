"""
Settings for the fasting tracker.

Values live in a small JSON file next to the database so they survive
database import and reset.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from .paths import config_path

PRE_SWITCH_LEAD_TIME_KEY = "pre_switch_lead_time"
DEFAULT_LEAD_TIME = 30 * 60


class Settings:
    """Manage application settings"""

    def __init__(self, config_file: Path | None = None):
        self.config_file = Path(config_file) if config_file is not None else config_path()
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        self._config = self._load_config()

    def _load_config(self) -> dict[str, Any]:
        defaults = self._default_config()
        if not self.config_file.exists():
            return defaults
        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                loaded = json.load(f)
        except (OSError, json.JSONDecodeError):
            return defaults
        if not isinstance(loaded, dict):
            return defaults
        defaults.update(loaded)
        return defaults

    @staticmethod
    def _default_config() -> dict[str, Any]:
        return {
            PRE_SWITCH_LEAD_TIME_KEY: DEFAULT_LEAD_TIME,
            "log_level": "INFO",
            "log_file": None,
        }

    def save(self) -> None:
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(self._config, f, indent=2)

    def get(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set a value and save"""
        self._config[key] = value
        self.save()

    @property
    def lead_time(self) -> float:
        value = self.get(PRE_SWITCH_LEAD_TIME_KEY)
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            return float(DEFAULT_LEAD_TIME)
        if parsed < 0:
            return float(DEFAULT_LEAD_TIME)
        return parsed

    @lead_time.setter
    def lead_time(self, seconds: float) -> None:
        self.set(PRE_SWITCH_LEAD_TIME_KEY, max(float(seconds), 0.0))
