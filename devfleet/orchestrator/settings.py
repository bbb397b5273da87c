"""Orchestrator configuration loaded from DEVFLEET_* environment variables."""

from __future__ import annotations

import tempfile

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DevfleetSettings(BaseSettings):
    """devfleet settings.

    All fields are read from environment variables with the ``DEVFLEET_``
    prefix.  For example, ``DEVFLEET_LOG_LEVEL=DEBUG`` maps to ``log_level``.

    Workspace ports and container names are **not** configured here -- they
    live in the allocation table file, which is reviewed like code.
    """

    model_config = SettingsConfigDict(
        env_prefix="DEVFLEET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"

    # -- Table -----------------------------------------------------------------
    table_path: str | None = None
    """Explicit allocation table file.  Defaults to ``devfleet.toml`` in the worktree."""

    # -- Fleet layout ----------------------------------------------------------
    base_dir: str | None = None
    """Directory holding all worktrees.  Defaults to the parent of the current one."""

    log_dir: str = Field(default_factory=tempfile.gettempdir)
    """Where ``launch-all`` writes per-worktree safe-start logs."""

    # -- Database readiness ----------------------------------------------------
    db_ready_timeout: float = 30.0
    db_ready_interval: float = 1.0

    # -- Port reclamation ------------------------------------------------------
    terminate_grace: float = 3.0
    """Seconds between SIGTERM and SIGKILL for a process holding an owned port."""

    reclaim_retries: int = 1
    """Extra attempts after the first failed reclamation of a port."""

    reclaim_retry_delay: float = 1.0
    port_poll_interval: float = 0.2

    settle_delay: float = 2.0
    """Pause after ports are freed, before the database check."""

    reclaim_tool_port: bool = False
    """Also reclaim the auxiliary tool port on ``start``."""


def get_settings() -> DevfleetSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``get_settings.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> DevfleetSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return DevfleetSettings()


# Apply lru_cache at runtime so the function is only called once.
from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
