from __future__ import annotations

from collections.abc import Generator

import redis
from fastapi import Depends

from idle_engine.config import EngineSettings, settings_from_env
from idle_engine.infra.redis_client import create_redis
from idle_engine.scheduler import QueueScheduler
from idle_engine.sync import SyncProtocol
from idle_engine.websocket_hub import NotificationChannel, hub


def get_settings() -> EngineSettings:
    return settings_from_env()


def get_redis() -> Generator[redis.Redis, None, None]:
    client = create_redis()
    try:
        yield client
    finally:
        client.close()


def get_channel() -> NotificationChannel:
    return hub


def get_sync(
    r: redis.Redis = Depends(get_redis),
    channel: NotificationChannel = Depends(get_channel),
    settings: EngineSettings = Depends(get_settings),
) -> SyncProtocol:
    return SyncProtocol(r=r, channel=channel, settings=settings)


def get_scheduler(
    r: redis.Redis = Depends(get_redis),
    sync: SyncProtocol = Depends(get_sync),
    settings: EngineSettings = Depends(get_settings),
) -> QueueScheduler:
    return QueueScheduler(r=r, sync=sync, settings=settings)
