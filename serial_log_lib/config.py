"""Monitor configuration loaded once at startup.

Sources, lowest precedence first: built-in defaults, the JSON preference
file, environment variables. Bad preferences are logged and ignored so a
corrupt file never blocks startup.
"""

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from serial_log_lib import protocol

logger = logging.getLogger(__name__)

# Preference file keys (shared with the browser front end's local storage)
PREF_BAUD_RATE = "baudRate"
PREF_LINE_LIMIT = "maxLogLines"
PREF_FILTER = "filter"
PREF_LEVEL = "level"


@dataclass(frozen=True)
class MonitorConfig:
    """Configuration for a monitor session.

    Attributes:
        baud_rate: Baud rate used by the next connect.
        line_limit: Capacity of the log buffer.
        filter_text: Regex applied by the presentation filter.
        level: Coarse level selector: all, error, warning, info or debug.
        reconnect_interval_s: Fixed delay between reconnect attempts.
        prefs_path: JSON preference file, if preferences are persisted.
    """

    baud_rate: int = protocol.DEFAULT_BAUD_RATE
    line_limit: int = protocol.DEFAULT_LINE_LIMIT
    filter_text: str = ""
    level: str = "all"
    reconnect_interval_s: float = protocol.DEFAULT_RECONNECT_INTERVAL_S
    prefs_path: Optional[Path] = None

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.baud_rate <= 0:
            raise ValueError(f"baud_rate must be positive, got {self.baud_rate}")
        if self.line_limit < 1:
            raise ValueError(f"line_limit must be >= 1, got {self.line_limit}")
        if self.reconnect_interval_s <= 0:
            raise ValueError(
                f"reconnect_interval_s must be positive, got {self.reconnect_interval_s}"
            )
        if self.level not in protocol.LEVEL_SELECTORS:
            raise ValueError(
                f"level must be one of {protocol.LEVEL_SELECTORS}, got '{self.level}'"
            )

    def to_preferences(self) -> Dict[str, Any]:
        """Keys persisted between runs."""
        return {
            PREF_BAUD_RATE: self.baud_rate,
            PREF_LINE_LIMIT: self.line_limit,
            PREF_FILTER: self.filter_text,
            PREF_LEVEL: self.level,
        }


def _read_preferences(path: Path) -> Dict[str, Any]:
    """Read the JSON preference file, returning {} on any problem."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning(f"Error reading preferences {path}: {e}")
        return {}

    if not isinstance(data, dict):
        logger.warning(f"Ignoring preferences {path}: expected an object")
        return {}
    return data


def _apply(config: MonitorConfig, field_name: str, value: Any, source: str) -> MonitorConfig:
    """Return config with one field replaced, or unchanged if invalid."""
    try:
        if field_name in ("baud_rate", "line_limit"):
            value = int(value)
        elif field_name == "reconnect_interval_s":
            value = float(value)
        elif field_name == "level":
            value = str(value).lower()
        else:
            value = str(value)
        return replace(config, **{field_name: value})
    except (TypeError, ValueError) as e:
        logger.warning(f"Ignoring {source}={value!r}: {e}")
        return config


def load_config(env: Optional[Mapping[str, str]] = None) -> MonitorConfig:
    """Build the startup configuration.

    Args:
        env: Environment mapping. Defaults to os.environ.

    Returns:
        Validated MonitorConfig
    """
    if env is None:
        env = os.environ

    prefs_path = Path(env["PREFS_PATH"]) if env.get("PREFS_PATH") else None
    config = MonitorConfig(prefs_path=prefs_path)

    if prefs_path is not None:
        prefs = _read_preferences(prefs_path)
        for key, field_name in (
            (PREF_BAUD_RATE, "baud_rate"),
            (PREF_LINE_LIMIT, "line_limit"),
            (PREF_FILTER, "filter_text"),
            (PREF_LEVEL, "level"),
        ):
            if key in prefs:
                config = _apply(config, field_name, prefs[key], key)

    for var, field_name in (
        ("SERIAL_BAUD", "baud_rate"),
        ("LOG_LINE_LIMIT", "line_limit"),
        ("LOG_FILTER", "filter_text"),
        ("LOG_LEVEL_FILTER", "level"),
        ("RECONNECT_INTERVAL_S", "reconnect_interval_s"),
    ):
        if env.get(var) is not None:
            config = _apply(config, field_name, env[var], var)

    logger.debug(f"Loaded config: {config}")
    return config


def save_preferences(config: MonitorConfig, path: Optional[Path] = None) -> bool:
    """Persist baud rate, line limit, filter and level as JSON.

    Args:
        config: Configuration to persist
        path: Target file. Defaults to config.prefs_path.

    Returns:
        True if written, False if there was nowhere to write or it failed
    """
    path = path or config.prefs_path
    if path is None:
        return False

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(config.to_preferences(), f, indent=2)
    except OSError as e:
        logger.warning(f"Error writing preferences {path}: {e}")
        return False

    logger.debug(f"Saved preferences to {path}")
    return True
