"""Engine settings.

Environment variables:
- CONVERGECRAFT_STATE_DIR: State store directory (default: ~/.convergecraft/state)
- CONVERGECRAFT_POOL_SIZE: Concurrent operations per level (default: 4)
- CONVERGECRAFT_MAX_ATTEMPTS: Attempts per operation, first call included (default: 3)
- CONVERGECRAFT_BACKOFF_MIN / CONVERGECRAFT_BACKOFF_MAX: Retry wait bounds in seconds
- CONVERGECRAFT_OPERATION_TIMEOUT: Per-operation timeout in seconds (default: 300)
- CONVERGECRAFT_REFRESH: Probe providers before planning, "1" or "0" (default: 1)
"""
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml

from ..engine.errors import ParseError
from ..engine.schema import ExecuteOptions
from ..state_store.file_store import DEFAULT_STATE_DIR

logger = logging.getLogger(__name__)

_ENV_PREFIX = "CONVERGECRAFT_"


@dataclass
class EngineSettings:
    """Tunables for a convergence run."""
    state_dir: Path = field(default_factory=lambda: DEFAULT_STATE_DIR)
    pool_size: int = 4
    max_attempts: int = 3
    backoff_multiplier: float = 1.0
    backoff_min: float = 1.0
    backoff_max: float = 10.0
    operation_timeout: float = 300.0
    refresh: bool = True
    user: Optional[str] = None

    def __post_init__(self):
        self.state_dir = Path(self.state_dir).expanduser()
        if self.pool_size < 1:
            raise ValueError(f"pool_size must be at least 1, got {self.pool_size}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.operation_timeout <= 0:
            raise ValueError(f"operation_timeout must be positive, got {self.operation_timeout}")
        if self.backoff_min > self.backoff_max:
            raise ValueError("backoff_min must not exceed backoff_max")

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Load settings from environment variables."""
        return cls().with_overrides(_read_env())

    @classmethod
    def from_file(cls, path: Path) -> "EngineSettings":
        """Load the ``settings:`` section of a YAML file, then apply the environment."""
        if not Path(path).exists():
            logger.warning(f"Settings file not found: {path}")
            return cls.from_env()

        with open(path, encoding="utf-8") as f:
            document = yaml.safe_load(f) or {}

        section = document.get("settings", document) if isinstance(document, dict) else {}
        return cls.from_declaration(section)

    @classmethod
    def from_declaration(cls, section: Optional[dict[str, Any]] = None) -> "EngineSettings":
        """Defaults, then a declaration's ``settings:`` section, then the environment."""
        return cls().with_overrides(section or {}).with_overrides(_read_env())

    def with_overrides(self, overrides: dict[str, Any]) -> "EngineSettings":
        """Copy with values from a mapping, converted to the field types."""
        known = {f.name: f for f in fields(self)}
        changes: dict[str, Any] = {}

        for key, value in (overrides or {}).items():
            if key not in known:
                raise ParseError(f"Unknown setting: {key}")
            if value is None:
                continue
            changes[key] = _coerce(key, value, getattr(self, key))

        if not changes:
            return self
        try:
            return replace(self, **changes)
        except ValueError as e:
            raise ParseError(f"Invalid settings: {e}") from None

    def execute_options(self) -> ExecuteOptions:
        """Executor options derived from these settings."""
        return ExecuteOptions(
            pool_size=self.pool_size,
            max_attempts=self.max_attempts,
            backoff_multiplier=self.backoff_multiplier,
            backoff_min=self.backoff_min,
            backoff_max=self.backoff_max,
            operation_timeout=self.operation_timeout,
            user=self.user,
        )


def _read_env() -> dict[str, Any]:
    values = {}
    for name in ("state_dir", "pool_size", "max_attempts", "backoff_multiplier",
                 "backoff_min", "backoff_max", "operation_timeout", "refresh", "user"):
        raw = os.environ.get(_ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = raw
    return values


def _coerce(key: str, value: Any, current: Any) -> Any:
    try:
        if isinstance(current, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        if isinstance(current, Path):
            return Path(str(value))
    except (TypeError, ValueError):
        raise ParseError(f"Invalid value for setting {key}: {value!r}") from None
    return value
