"""Configuration options for the stagedoor server.

Provides StagedoorOptions for configuring the store, timeouts, fan-out
and the gateway token. Supports environment variable overrides for
CI/CD and containerized deployments.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .store import DEFAULT_STORE_TIMEOUT
from .unread import DEFAULT_FANOUT_LIMIT

DEFAULT_DB_PATH = "stagedoor.db"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class StagedoorConfigError(Exception):
    """Raised when StagedoorOptions configuration is invalid."""

    pass


@dataclass
class StagedoorOptions:
    """Configuration options for the stagedoor server.

    Every field left at None is filled from its environment variable,
    then from the default. Explicit values always win.

    Environment Variables:
        STAGEDOOR_DB: SQLite database path (":memory:" for ephemeral)
        STAGEDOOR_STORE_TIMEOUT: Seconds before a store call is Unavailable
        STAGEDOOR_FANOUT_LIMIT: Concurrent per-conversation unread queries
        STAGEDOOR_GATEWAY_TOKEN: Bearer token the identity gateway must send
        STAGEDOOR_LOG_LEVEL: Logging level name

    Examples:
        # From environment / defaults
        options = StagedoorOptions()

        # In-memory for tests
        options = StagedoorOptions.for_in_memory()

        # Explicit
        options = StagedoorOptions(db_path="/var/lib/stagedoor/data.db", store_timeout=2.0)
    """

    db_path: str | Path | None = None
    """SQLite database path."""

    store_timeout: float | None = None
    """Per-call store timeout in seconds."""

    fanout_limit: int | None = None
    """Maximum concurrent unread-count queries per request."""

    gateway_token: str | None = None
    """Shared secret required from the identity gateway, if set."""

    log_level: str | None = None
    """Logging level for the server."""

    def __post_init__(self) -> None:
        """Apply environment variable overrides and validate."""
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self) -> None:
        if self.db_path is None:
            self.db_path = os.environ.get("STAGEDOOR_DB", DEFAULT_DB_PATH)

        if self.store_timeout is None:
            self.store_timeout = _env_number(
                "STAGEDOOR_STORE_TIMEOUT", float, DEFAULT_STORE_TIMEOUT
            )

        if self.fanout_limit is None:
            self.fanout_limit = _env_number("STAGEDOOR_FANOUT_LIMIT", int, DEFAULT_FANOUT_LIMIT)

        if not self.gateway_token:
            self.gateway_token = os.environ.get("STAGEDOOR_GATEWAY_TOKEN") or None

        if self.log_level is None:
            self.log_level = os.environ.get("STAGEDOOR_LOG_LEVEL", "INFO")

    def _validate(self) -> None:
        if self.store_timeout is None or self.store_timeout <= 0:
            raise StagedoorConfigError(
                f"store_timeout must be positive, got {self.store_timeout}"
            )

        if self.fanout_limit is None or self.fanout_limit < 1:
            raise StagedoorConfigError(f"fanout_limit must be at least 1, got {self.fanout_limit}")

        self.log_level = str(self.log_level).upper()
        if self.log_level not in LOG_LEVELS:
            raise StagedoorConfigError(
                f"log_level must be one of {', '.join(LOG_LEVELS)}, got {self.log_level}"
            )

    @property
    def log_level_value(self) -> int:
        """The log level as a logging module constant."""
        return logging.getLevelName(self.log_level)

    def is_in_memory(self) -> bool:
        """True if configured for an ephemeral in-memory database."""
        return str(self.db_path) == ":memory:"

    @classmethod
    def for_in_memory(cls, **kwargs: Any) -> "StagedoorOptions":
        """Create options for an in-memory store (testing)."""
        return cls(db_path=":memory:", **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging)."""
        return {
            "db_path": str(self.db_path),
            "store_timeout": self.store_timeout,
            "fanout_limit": self.fanout_limit,
            "log_level": self.log_level,
            "has_gateway_token": self.gateway_token is not None,
        }


def _env_number(name: str, cast: type, default: Any) -> Any:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise StagedoorConfigError(f"{name} must be a number, got {raw!r}") from e
