from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class EngineSettings:
    # Connection health.
    heartbeat_stale_ms: int = 90_000
    connection_expiry_ms: int = 30 * 60 * 1000

    # Offline catch-up window.
    offline_cap_minutes: int = 1440

    # Per-player queue lock.
    lock_ttl_ms: int = 5_000

    # Pending notifications for players with no live connection.
    mailbox_maxlen: int = 200
    mailbox_ttl_s: int = 24 * 60 * 60

    # Redis client retry policy for transient failures.
    store_retries: int = 3
    store_backoff_base_s: float = 0.05
    store_backoff_cap_s: float = 1.0


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from e


def settings_from_env() -> EngineSettings:
    d = EngineSettings()
    return EngineSettings(
        heartbeat_stale_ms=_env_int("IDLE_ENGINE_HEARTBEAT_STALE_MS", d.heartbeat_stale_ms),
        connection_expiry_ms=_env_int("IDLE_ENGINE_CONNECTION_EXPIRY_MS", d.connection_expiry_ms),
        offline_cap_minutes=_env_int("IDLE_ENGINE_OFFLINE_CAP_MINUTES", d.offline_cap_minutes),
        lock_ttl_ms=_env_int("IDLE_ENGINE_LOCK_TTL_MS", d.lock_ttl_ms),
        mailbox_maxlen=_env_int("IDLE_ENGINE_MAILBOX_MAXLEN", d.mailbox_maxlen),
        mailbox_ttl_s=_env_int("IDLE_ENGINE_MAILBOX_TTL_S", d.mailbox_ttl_s),
        store_retries=_env_int("IDLE_ENGINE_STORE_RETRIES", d.store_retries),
        store_backoff_base_s=_env_float("IDLE_ENGINE_STORE_BACKOFF_BASE_S", d.store_backoff_base_s),
        store_backoff_cap_s=_env_float("IDLE_ENGINE_STORE_BACKOFF_CAP_S", d.store_backoff_cap_s),
    )
