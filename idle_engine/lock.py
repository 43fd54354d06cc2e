from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from uuid import uuid4

import redis
from redis.exceptions import WatchError

from idle_engine.errors import QueueBusyError


def _lock_key(player_id: str) -> str:
    return f"idle:lock:queue:{player_id}"


@contextmanager
def queue_lock(*, r: redis.Redis, player_id: str, ttl_ms: int = 5_000) -> Iterator[str]:
    """Per-player queue lock.

    The TTL bounds how long a crashed holder can block the queue. Release only
    deletes the key if it still carries our token, so a lock that expired and was
    re-acquired by another worker is left alone.
    """

    key = _lock_key(player_id)
    token = uuid4().hex
    acquired = r.set(key, token, nx=True, px=ttl_ms)
    if not acquired:
        raise QueueBusyError(f"Task queue for player {player_id} is busy")
    try:
        yield token
    finally:
        _release(r=r, key=key, token=token)


def _release(*, r: redis.Redis, key: str, token: str) -> None:
    with r.pipeline() as pipe:
        try:
            pipe.watch(key)
            if pipe.get(key) == token:
                pipe.multi()
                pipe.delete(key)
                pipe.execute()
            else:
                pipe.unwatch()
        except WatchError:
            # Someone else touched the key between GET and DEL; it is no longer ours.
            pass
