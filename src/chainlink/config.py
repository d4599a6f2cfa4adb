from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import tomllib

from .errors import ValidationError

CONFIG_FILENAME = "config.toml"
LOG_LEVEL_ENV = "CHAINLINK_LOG_LEVEL"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigValidationError(ValidationError):
    pass


@dataclass(frozen=True)
class ChainlinkConfig:
    path: Path | None = None
    log_level: str = "WARNING"
    log_file: Path | None = None
    busy_timeout_ms: int = 5000
    progress_weighting: bool = True

    @property
    def log_level_number(self) -> int:
        return int(getattr(logging, self.log_level))


def _table(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigValidationError(f"[{name}] must be a table")
    return value


def _as_log_level(value: object, *, field: str) -> str:
    if not isinstance(value, str) or value.strip().upper() not in _LOG_LEVELS:
        expected = ", ".join(_LOG_LEVELS)
        raise ConfigValidationError(f"{field} must be one of: {expected}")
    return value.strip().upper()


def _as_non_negative_int(value: object, *, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigValidationError(f"{field} must be a non-negative integer")
    return value


def _as_bool(value: object, *, field: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigValidationError(f"{field} must be true or false")
    return value


def load_config(state_dir: Path) -> ChainlinkConfig:
    """Read ``<state_dir>/config.toml``; a missing file yields the defaults."""
    path = state_dir / CONFIG_FILENAME
    raw: dict[str, Any] = {}
    if path.exists():
        try:
            raw = tomllib.loads(path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            raise ConfigValidationError(f"invalid TOML in {path}: {exc}") from exc

    log = _table(raw, "log")
    store = _table(raw, "store")
    scheduler = _table(raw, "scheduler")

    log_level = "WARNING"
    if "level" in log:
        log_level = _as_log_level(log["level"], field="[log].level")
    env_level = os.environ.get(LOG_LEVEL_ENV, "").strip()
    if env_level:
        log_level = _as_log_level(env_level, field=LOG_LEVEL_ENV)

    log_file: Path | None = None
    if "file" in log:
        value = log["file"]
        if not isinstance(value, str) or not value.strip():
            raise ConfigValidationError("[log].file must be a non-empty string")
        log_file = Path(value.strip()).expanduser()
        if not log_file.is_absolute():
            log_file = state_dir / log_file

    busy_timeout_ms = 5000
    if "busy_timeout_ms" in store:
        busy_timeout_ms = _as_non_negative_int(
            store["busy_timeout_ms"], field="[store].busy_timeout_ms"
        )

    progress_weighting = True
    if "progress_weighting" in scheduler:
        progress_weighting = _as_bool(
            scheduler["progress_weighting"], field="[scheduler].progress_weighting"
        )

    return ChainlinkConfig(
        path=path if path.exists() else None,
        log_level=log_level,
        log_file=log_file,
        busy_timeout_ms=busy_timeout_ms,
        progress_weighting=progress_weighting,
    )
