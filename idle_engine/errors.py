"""Failure taxonomy for the task-queue engine.

Routes translate ``ValueError`` subclasses into HTTP errors; everything else is
either retried by the store client or logged and swallowed by the sync layer.
"""

from __future__ import annotations

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError


class TaskValidationFailure(ValueError):
    """The current task cannot be executed against the character's state."""


class QueueBusyError(ValueError):
    """Another worker holds the per-player queue lock."""


class NotificationDeliveryFailure(RuntimeError):
    """A payload could not be pushed to a live connection."""


# Network / throttling errors that the redis client retries with backoff.
TRANSIENT_STORE_ERRORS: tuple[type[Exception], ...] = (RedisConnectionError, RedisTimeoutError)
