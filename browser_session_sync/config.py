"""
Sync configuration.

Configuration can be provided directly, via environment variables, or
from the ``sync:`` section of a YAML settings file.

Environment Variables:
    SESSION_SYNC_API_URL: Remote session API root (default: http://localhost:3000/api)
    SESSION_SYNC_DATA_DIR: Directory for the local key-value store
    SESSION_SYNC_INTERVAL_S: Seconds between periodic sync cycles (default: 900)
    SESSION_SYNC_CYCLE_TIMEOUT_S: Upper bound on one sync cycle (default: 120)
    SESSION_SYNC_REQUEST_TIMEOUT_S: Per-request HTTP timeout (default: 30)
    SESSION_SYNC_MAX_ATTEMPTS: Attempts before a failing operation is dropped
    SESSION_SYNC_CHECK_HOST: Host resolved by the connectivity check
    SESSION_SYNC_BLACKLIST: Comma-separated domains that may not be saved
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import yaml

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from .sync.queue import RetryPolicy

DEFAULT_API_URL = "http://localhost:3000/api"
DEFAULT_DATA_DIR = Path.home() / ".browser-session-sync"

_ENV_PREFIX = "SESSION_SYNC_"
_ENV_NAMES = {
    "api_base_url": "API_URL",
    "data_dir": "DATA_DIR",
    "sync_interval_s": "INTERVAL_S",
    "cycle_timeout_s": "CYCLE_TIMEOUT_S",
    "request_timeout_s": "REQUEST_TIMEOUT_S",
    "max_attempts": "MAX_ATTEMPTS",
    "connectivity_check_host": "CHECK_HOST",
    "blacklist": "BLACKLIST",
}


@dataclass
class SyncConfig:
    """Configuration for the sync engine and its collaborators.

    Attributes:
        api_base_url: Remote session API root
        data_dir: Directory holding the local key-value store
        sync_interval_s: Period of the background sync loop
        cycle_timeout_s: Upper bound on one reconciliation cycle
        request_timeout_s: Total timeout per HTTP request
        max_attempts: Failed attempts before an operation is dropped
        initial_backoff_ms: First retry delay
        max_backoff_ms: Retry delay ceiling
        backoff_multiplier: Growth factor between retries
        connectivity_check_host: Host resolved by the connectivity check
        connectivity_timeout_s: Connectivity check timeout
        connectivity_poll_interval_s: Seconds between checks (0 disables polling)
        blacklist: Domains (exact or ``*.suffix``) sessions may not be saved for
    """

    api_base_url: str = DEFAULT_API_URL
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)

    # Sync behavior
    sync_interval_s: float = 900.0  # 15 minutes
    cycle_timeout_s: float = 120.0
    request_timeout_s: float = 30.0

    # Retry settings
    max_attempts: int = 5
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 60000
    backoff_multiplier: float = 2.0

    # Network detection
    connectivity_check_host: str | None = None
    connectivity_timeout_s: float = 5.0
    connectivity_poll_interval_s: float = 0.0

    blacklist: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir).expanduser()
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigurationError: If a setting is out of range
        """
        parsed = urlparse(self.api_base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError("api_base_url", f"not an http(s) URL: {self.api_base_url}")
        for name in ("sync_interval_s", "cycle_timeout_s", "request_timeout_s"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(name, "must be positive")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts", "must be at least 1")
        if self.backoff_multiplier < 1:
            raise ConfigurationError("backoff_multiplier", "must be at least 1")

    @property
    def check_host(self) -> str:
        """Host to resolve for connectivity (defaults to the API host)."""
        return self.connectivity_check_host or urlparse(self.api_base_url).hostname or "localhost"

    def retry_policy(self) -> RetryPolicy:
        from .sync.queue import RetryPolicy

        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_backoff_ms=self.initial_backoff_ms,
            max_backoff_ms=self.max_backoff_ms,
            backoff_multiplier=self.backoff_multiplier,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Create from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if isinstance(values.get("blacklist"), str):
            values["blacklist"] = _split_list(values["blacklist"])
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigurationError("sync", str(e)) from e

    @classmethod
    def from_environment(cls, base: SyncConfig | None = None) -> SyncConfig:
        """Create configuration from SESSION_SYNC_* environment variables.

        Args:
            base: Values used where no variable is set (default: built-in defaults)
        """
        config = base or cls()
        values: dict[str, Any] = {f.name: getattr(config, f.name) for f in fields(cls)}

        for name, suffix in _ENV_NAMES.items():
            raw = os.environ.get(_ENV_PREFIX + suffix)
            if raw is None:
                continue
            values[name] = _coerce(name, raw, values[name])

        return cls(**values)

    @classmethod
    def from_file(cls, path: Path | str) -> SyncConfig:
        """Load the ``sync:`` section of a YAML settings file.

        A missing file yields the defaults.

        Raises:
            ConfigurationError: If the file is not valid YAML
        """
        path = Path(path).expanduser()
        if not path.exists():
            return cls()

        try:
            with open(path, encoding="utf-8") as f:
                document = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(str(path), f"unreadable settings file: {e}") from e

        section = document.get("sync", {}) if isinstance(document, dict) else {}
        if not isinstance(section, dict):
            raise ConfigurationError("sync", "section must be a mapping")
        return cls.from_dict(section)


def _split_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.replace("\n", ",").split(",") if item.strip()]


def _coerce(name: str, raw: str, current: Any) -> Any:
    if name == "blacklist":
        return _split_list(raw)
    if name == "data_dir":
        return Path(raw)
    if isinstance(current, bool):
        return raw.lower() in ("1", "true", "yes")
    try:
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
    except ValueError as e:
        raise ConfigurationError(name, f"not a number: {raw}") from e
    return raw
