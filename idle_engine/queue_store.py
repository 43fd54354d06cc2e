from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import redis

from idle_engine.api.models import Character, QueueConfig, TaskQueue, TaskReward


logger = logging.getLogger(__name__)

QUEUE_KEY_PREFIX = "idle:taskqueue:"  # + {player_id}
RUNNING_QUEUES_KEY = "idle:taskqueues:running"
CHARACTER_KEY_PREFIX = "idle:character:"  # + {user_id}

EXPERIENCE_PER_LEVEL = 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def _queue_key(player_id: str) -> str:
    return f"{QUEUE_KEY_PREFIX}{player_id}"


def _character_key(user_id: str) -> str:
    return f"{CHARACTER_KEY_PREFIX}{user_id}"


def stable_digest(data: Any) -> str:
    """SHA-256 over canonical JSON (sorted keys, no whitespace)."""

    raw = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def compute_queue_checksum(queue: TaskQueue) -> str:
    # Contents only: version/checksum/timestamps would make the digest self-referential.
    contents = queue.model_dump(
        mode="json",
        include={
            "player_id",
            "current_task",
            "queued_tasks",
            "is_running",
            "is_paused",
            "total_tasks_completed",
            "total_time_spent",
            "config",
        },
    )
    return stable_digest(contents)


def verify_queue_checksum(queue: TaskQueue) -> bool:
    return queue.checksum == compute_queue_checksum(queue)


# ---- task queues ----


def new_queue(*, player_id: str, now: int | None = None, config: QueueConfig | None = None) -> TaskQueue:
    ts = now if now is not None else now_ms()
    return TaskQueue(
        player_id=player_id,
        config=config or QueueConfig(),
        created_at=ts,
        last_updated=ts,
        last_synced=ts,
        last_processed=ts,
    )


def save_queue(*, r: redis.Redis, queue: TaskQueue, now: int | None = None) -> TaskQueue:
    """Persist a queue mutation.

    Every call bumps ``version`` and recomputes ``checksum``, and keeps the
    running-queue index in step with ``is_running`` in the same transaction.
    """

    queue.version += 1
    queue.last_updated = now if now is not None else now_ms()
    queue.checksum = compute_queue_checksum(queue)

    with r.pipeline(transaction=True) as pipe:
        pipe.set(_queue_key(queue.player_id), queue.model_dump_json())
        if queue.is_running:
            pipe.sadd(RUNNING_QUEUES_KEY, queue.player_id)
        else:
            pipe.srem(RUNNING_QUEUES_KEY, queue.player_id)
        pipe.execute()
    return queue


def get_queue(*, r: redis.Redis, player_id: str) -> TaskQueue | None:
    raw = r.get(_queue_key(player_id))
    if not raw:
        return None
    return TaskQueue.model_validate_json(raw)


def require_queue(*, r: redis.Redis, player_id: str) -> TaskQueue:
    queue = get_queue(r=r, player_id=player_id)
    if queue is None:
        raise ValueError("Task queue not found")
    return queue


def get_or_create_queue(*, r: redis.Redis, player_id: str, now: int | None = None) -> tuple[TaskQueue, bool]:
    queue = get_queue(r=r, player_id=player_id)
    if queue is not None:
        return queue, False
    return new_queue(player_id=player_id, now=now), True


def list_running_player_ids(*, r: redis.Redis) -> list[str]:
    # Stable order keeps cycle logs readable.
    return sorted(r.smembers(RUNNING_QUEUES_KEY))


# ---- characters ----


def put_character(*, r: redis.Redis, character: Character) -> None:
    r.set(_character_key(character.user_id), character.model_dump_json())


def get_character(*, r: redis.Redis, user_id: str) -> Character | None:
    raw = r.get(_character_key(user_id))
    if not raw:
        return None
    return Character.model_validate_json(raw)


def _add_at_path(doc: dict[str, Any], path: str, amount: int) -> None:
    parts = path.split(".")
    node = doc
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    leaf = parts[-1]
    node[leaf] = int(node.get(leaf) or 0) + amount


def apply_character_update(
    *,
    r: redis.Redis,
    user_id: str,
    increments: Mapping[str, int],
    sets: Mapping[str, Any] | None = None,
) -> Character | None:
    """Atomically add ``increments`` (dotted paths) to a character record.

    Runs as an optimistic WATCH/MULTI transaction that redis-py retries on
    contention, so concurrent relative updates from the scheduler and the offline
    calculator never lose each other's deltas. Level is re-derived from the new
    experience total but never lowered.

    Returns the updated character, or None when it does not exist.
    """

    key = _character_key(user_id)

    def _txn(pipe: redis.client.Pipeline) -> Character | None:
        raw = pipe.get(key)
        if not raw:
            pipe.multi()
            return None
        doc = json.loads(raw)
        for path, amount in increments.items():
            if amount:
                _add_at_path(doc, path, int(amount))
        for field, value in (sets or {}).items():
            doc[field] = value
        derived_level = int(doc.get("experience") or 0) // EXPERIENCE_PER_LEVEL + 1
        doc["level"] = max(int(doc.get("level") or 1), derived_level)

        updated = Character.model_validate(doc)
        pipe.multi()
        pipe.set(key, updated.model_dump_json())
        return updated

    return r.transaction(_txn, key, value_from_callable=True)


def reward_increments(rewards: list[TaskReward]) -> dict[str, int]:
    """Fold reward rolls into additive character paths."""

    out: dict[str, int] = {}
    for reward in rewards:
        if reward.type == "experience":
            path = "experience"
        elif reward.type == "currency":
            path = "currency"
        elif reward.item_id:
            path = f"inventory.{reward.item_id}"
        else:
            continue
        out[path] = out.get(path, 0) + reward.quantity
    return out


def apply_rewards_to_character(*, r: redis.Redis, user_id: str, rewards: list[TaskReward]) -> Character | None:
    increments = reward_increments(rewards)
    if not any(increments.values()):
        return get_character(r=r, user_id=user_id)
    updated = apply_character_update(r=r, user_id=user_id, increments=increments)
    if updated is None:
        logger.warning("Character not found for player %s; rewards not applied", user_id)
    else:
        logger.info(
            "Applied rewards to %s: %s exp, %s currency",
            user_id,
            increments.get("experience", 0),
            increments.get("currency", 0),
        )
    return updated


def utc_now() -> datetime:
    return datetime.now(tz=UTC)
