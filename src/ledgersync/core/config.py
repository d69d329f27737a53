from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Literal

CursorCommitMode = Literal["apply", "page"]

LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


class ConfigError(ValueError):
    """Raised when the environment holds an invalid setting."""


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Sync engine configuration loaded at process startup."""

    database_url: str = "sqlite:///ledgersync.db"
    batch_size: int = 50
    batch_delay_seconds: float = 0.1
    page_size: int = 500
    cursor_commit: CursorCommitMode = "apply"
    log_level: str = "INFO"
    encryption_key: str | None = None


def _int_env(
    name: str, default: int, *, minimum: int, maximum: int | None = None
) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum or (maximum is not None and value > maximum):
        if maximum is None:
            bounds = f">= {minimum}"
        else:
            bounds = f"between {minimum} and {maximum}"
        raise ConfigError(f"{name} must be {bounds}, got {value}")
    return value


def load_sync_config_from_env() -> SyncConfig:
    """Load sync config from env and validate it."""
    database_url = (
        os.environ.get("LEDGERSYNC_DATABASE_URL", "").strip()
        or "sqlite:///ledgersync.db"
    )

    batch_size = _int_env("LEDGERSYNC_BATCH_SIZE", 50, minimum=1)
    batch_delay_ms = _int_env("LEDGERSYNC_BATCH_DELAY_MS", 100, minimum=0)
    page_size = _int_env("LEDGERSYNC_PAGE_SIZE", 500, minimum=1, maximum=500)

    cursor_commit = os.environ.get("LEDGERSYNC_CURSOR_COMMIT", "apply").strip().lower()
    if cursor_commit not in {"apply", "page"}:
        raise ConfigError("LEDGERSYNC_CURSOR_COMMIT must be one of: apply, page")

    log_level = os.environ.get("LEDGERSYNC_LOG_LEVEL", "INFO").strip().upper()
    if log_level not in LOG_LEVELS:
        raise ConfigError(
            f"LEDGERSYNC_LOG_LEVEL must be one of: {', '.join(sorted(LOG_LEVELS))}"
        )

    encryption_key = os.environ.get("LEDGERSYNC_ENCRYPTION_KEY", "").strip() or None

    return SyncConfig(
        database_url=database_url,
        batch_size=batch_size,
        batch_delay_seconds=batch_delay_ms / 1000,
        page_size=page_size,
        cursor_commit=cursor_commit,  # type: ignore[arg-type]
        log_level=log_level,
        encryption_key=encryption_key,
    )
