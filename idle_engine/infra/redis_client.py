from __future__ import annotations

import os

import redis
from redis.backoff import ExponentialBackoff
from redis.retry import Retry

from idle_engine.config import EngineSettings, settings_from_env
from idle_engine.errors import TRANSIENT_STORE_ERRORS


def get_redis_url() -> str:
    return os.environ.get("REDIS_URL", "redis://localhost:6379/0")


def create_redis(settings: EngineSettings | None = None) -> redis.Redis:
    s = settings or settings_from_env()
    # Transient network errors are retried with bounded backoff; anything else fails fast.
    retry = Retry(ExponentialBackoff(cap=s.store_backoff_cap_s, base=s.store_backoff_base_s), s.store_retries)
    # decode_responses=True => strings in/out instead of bytes
    return redis.Redis.from_url(
        get_redis_url(),
        decode_responses=True,
        retry=retry,
        retry_on_error=list(TRANSIENT_STORE_ERRORS),
    )
