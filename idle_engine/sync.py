"""Connection registry, notification fan-out and client reconciliation.

Connection records live in Redis hashes so heartbeats can update a few fields
without a read-modify-write. Every public coroutine on ``SyncProtocol`` logs and
swallows its own failures: a broken socket or a bad client message must never
take down the caller (scheduler cycle, HTTP route or WebSocket loop).
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from typing import Any
from uuid import uuid4

import redis
from pydantic import ValidationError

from idle_engine.api.models import (
    Conflict,
    ConflictResolutionRequest,
    ConflictType,
    Connection,
    DeltaType,
    DeltaUpdate,
    HeartbeatRequest,
    Notification,
    NotificationType,
    SyncRequest,
    Task,
    TaskQueue,
)
from idle_engine.config import EngineSettings
from idle_engine.errors import NotificationDeliveryFailure, QueueBusyError
from idle_engine.lock import queue_lock
from idle_engine.mailbox import Mailbox, publish_to_mailbox
from idle_engine.queue_ops import (
    dequeue_task,
    enqueue_task,
    halt_queue,
    pause,
    queue_updated_data,
    replace_queued_task,
    resume,
    task_progress,
)
from idle_engine.queue_store import (
    compute_queue_checksum,
    get_character,
    get_or_create_queue,
    get_queue,
    now_ms,
    save_queue,
    stable_digest,
    verify_queue_checksum,
)
from idle_engine.websocket_hub import NotificationChannel


logger = logging.getLogger(__name__)

CONNECTIONS_KEY = "idle:connections"
SYNC_CATEGORIES = ("queue", "progress", "character", "connections")


def _connection_key(connection_id: str) -> str:
    return f"idle:connection:{connection_id}"


def _player_connections_key(player_id: str) -> str:
    return f"idle:connections:player:{player_id}"


# ---- conflict resolution strategies ----

ResolutionStrategy = Callable[[Any, Any], Any]


def server_wins(server_value: Any, client_value: Any) -> Any:
    return server_value


def client_wins(server_value: Any, client_value: Any) -> Any:
    return client_value


def _item_key(item: Any) -> Any:
    if isinstance(item, dict) and "id" in item:
        return item["id"]
    return json.dumps(item, sort_keys=True, default=str)


def merge(server_value: Any, client_value: Any) -> Any:
    """Combine both sides.

    Numbers take the max, lists are unioned (server order first, keyed by ``id``
    when entries are dicts), dicts merge recursively with client keys layered on
    top. Anything else falls back to the client value when present.
    """

    if client_value is None:
        return server_value
    if server_value is None:
        return client_value
    if isinstance(server_value, bool) or isinstance(client_value, bool):
        return client_value
    if isinstance(server_value, (int, float)) and isinstance(client_value, (int, float)):
        return max(server_value, client_value)
    if isinstance(server_value, list) and isinstance(client_value, list):
        seen = {_item_key(item) for item in server_value}
        return server_value + [item for item in client_value if _item_key(item) not in seen]
    if isinstance(server_value, dict) and isinstance(client_value, dict):
        out = dict(server_value)
        for k, v in client_value.items():
            out[k] = merge(out.get(k), v) if k in out else v
        return out
    return client_value


DEFAULT_STRATEGIES: dict[str, ResolutionStrategy] = {
    "server_wins": server_wins,
    "client_wins": client_wins,
    "merge": merge,
}

DEFAULT_RESOLUTIONS: dict[ConflictType, str] = {
    "queue_state_changed": "server_wins",
    "task_modified": "merge",
    "task_added": "merge",
    "task_removed": "server_wins",
}


def _as_task(value: Any) -> Task | None:
    if isinstance(value, Task):
        return value
    if isinstance(value, dict):
        candidate = value.get("task", value)
        try:
            return Task.model_validate(candidate)
        except ValidationError:
            return None
    return None


class SyncProtocol:
    def __init__(
        self,
        *,
        r: redis.Redis,
        channel: NotificationChannel,
        settings: EngineSettings | None = None,
        strategies: Mapping[str, ResolutionStrategy] | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.r = r
        self.channel = channel
        self.settings = settings or EngineSettings()
        self.strategies: dict[str, ResolutionStrategy] = {**DEFAULT_STRATEGIES, **(strategies or {})}
        self.clock = clock

    # ---- connection records ----

    def get_connection(self, connection_id: str) -> Connection | None:
        raw = self.r.hgetall(_connection_key(connection_id))
        if not raw:
            return None
        try:
            return Connection.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding malformed connection record %s", connection_id)
            return None

    def get_player_connections(self, player_id: str) -> list[Connection]:
        out: list[Connection] = []
        for cid in sorted(self.r.smembers(_player_connections_key(player_id))):
            conn = self.get_connection(cid)
            if conn is None:
                # Index entry outlived its record.
                self.r.srem(_player_connections_key(player_id), cid)
                self.r.srem(CONNECTIONS_KEY, cid)
                continue
            out.append(conn)
        return out

    async def store_connection(self, connection_id: str, player_id: str) -> Connection | None:
        try:
            now = self.clock()
            conn = Connection(
                connection_id=connection_id,
                player_id=player_id,
                connected_at=now,
                last_ping=now,
                last_heartbeat=now,
                queue_version=0,
                is_healthy=True,
            )
            queue = get_queue(r=self.r, player_id=player_id)
            if queue is not None:
                conn.queue_version = queue.version

            mapping = {k: str(int(v)) if isinstance(v, bool) else str(v) for k, v in conn.model_dump().items()}
            with self.r.pipeline(transaction=True) as pipe:
                pipe.hset(_connection_key(connection_id), mapping=mapping)
                pipe.sadd(CONNECTIONS_KEY, connection_id)
                pipe.sadd(_player_connections_key(player_id), connection_id)
                pipe.execute()
            logger.info("Connection %s stored for player %s", connection_id, player_id)
            return conn
        except Exception:
            logger.exception("Error storing connection %s", connection_id)
            return None

    async def remove_connection(self, connection_id: str) -> None:
        try:
            player_id = self.r.hget(_connection_key(connection_id), "player_id")
            with self.r.pipeline(transaction=True) as pipe:
                pipe.delete(_connection_key(connection_id))
                pipe.srem(CONNECTIONS_KEY, connection_id)
                if player_id:
                    pipe.srem(_player_connections_key(player_id), connection_id)
                pipe.execute()
            logger.info("Connection %s removed", connection_id)
        except Exception:
            logger.exception("Error removing connection %s", connection_id)

    def _touch(self, connection_id: str, **fields: Any) -> None:
        mapping = {k: str(int(v)) if isinstance(v, bool) else str(v) for k, v in fields.items()}
        self.r.hset(_connection_key(connection_id), mapping=mapping)

    async def handle_heartbeat(self, connection_id: str, heartbeat: HeartbeatRequest) -> None:
        try:
            conn = self.get_connection(connection_id)
            if conn is None:
                logger.warning("Heartbeat from unknown connection %s", connection_id)
                return

            now = self.clock()
            self._touch(
                connection_id,
                last_heartbeat=now,
                last_ping=now,
                queue_version=heartbeat.queue_version,
                is_healthy=True,
            )

            queue = get_queue(r=self.r, player_id=conn.player_id)
            server_version = queue.version if queue is not None else 0
            await self.send_to_connection(
                connection_id,
                self.make_notification(
                    type="heartbeat_response",
                    player_id=conn.player_id,
                    data={
                        "server_time": now,
                        "client_time": heartbeat.timestamp,
                        "server_version": server_version,
                        "client_version": heartbeat.queue_version,
                        "in_sync": server_version == heartbeat.queue_version,
                    },
                ),
            )
        except Exception:
            logger.exception("Error handling heartbeat from %s", connection_id)

    async def cleanup_stale_connections(self) -> dict[str, int]:
        """Mark quiet connections unhealthy and drop long-dead ones."""

        counts = {"checked": 0, "marked_unhealthy": 0, "removed": 0}
        try:
            now = self.clock()
            for cid in sorted(self.r.smembers(CONNECTIONS_KEY)):
                counts["checked"] += 1
                conn = self.get_connection(cid)
                if conn is None:
                    self.r.srem(CONNECTIONS_KEY, cid)
                    counts["removed"] += 1
                    continue

                quiet_for = now - max(conn.last_heartbeat, conn.last_ping)
                if quiet_for > self.settings.connection_expiry_ms:
                    await self.remove_connection(cid)
                    counts["removed"] += 1
                elif quiet_for > self.settings.heartbeat_stale_ms and conn.is_healthy:
                    self._touch(cid, is_healthy=False)
                    counts["marked_unhealthy"] += 1
            logger.info("Connection cleanup: %s", counts)
        except Exception:
            logger.exception("Error cleaning up stale connections")
        return counts

    # ---- outbound ----

    def make_notification(
        self,
        *,
        type: NotificationType,
        player_id: str,
        data: dict[str, Any] | None = None,
        task_id: str | None = None,
    ) -> Notification:
        return Notification(
            type=type,
            player_id=player_id,
            task_id=task_id,
            data=data or {},
            timestamp=self.clock(),
            message_id=uuid4().hex,
        )

    async def send_to_connection(self, connection_id: str, notification: Notification) -> bool:
        try:
            await self.channel.send(connection_id, notification.model_dump(mode="json"))
            return True
        except NotificationDeliveryFailure as e:
            logger.warning("Delivery to %s failed: %s", connection_id, e)
        except Exception:
            logger.exception("Error sending %s to %s", notification.type, connection_id)
        return False

    def _store_pending(self, notification: Notification) -> None:
        publish_to_mailbox(
            r=self.r,
            mailbox=Mailbox(notification.player_id),
            fields={
                "type": notification.type,
                "player_id": notification.player_id,
                "task_id": notification.task_id,
                "data": json.dumps(notification.data, default=str),
                "timestamp": notification.timestamp,
                "message_id": notification.message_id,
            },
            maxlen=self.settings.mailbox_maxlen,
            ttl_s=self.settings.mailbox_ttl_s,
        )

    async def send_to_player(
        self,
        player_id: str,
        notification: Notification,
        *,
        exclude: set[str] | frozenset[str] = frozenset(),
    ) -> int:
        """Fan out to every live connection of ``player_id``.

        Returns the number of connections that accepted the payload. With no
        connections at all the notification is parked in the player's mailbox.
        """

        try:
            targets = [c for c in self.get_player_connections(player_id) if c.connection_id not in exclude]
            if not targets:
                if not exclude:
                    self._store_pending(notification)
                    logger.debug("No connections for %s; stored %s", player_id, notification.type)
                return 0

            results = await asyncio.gather(
                *(self.send_to_connection(c.connection_id, notification) for c in targets),
                return_exceptions=True,
            )
            return sum(1 for res in results if res is True)
        except Exception:
            logger.exception("Error sending %s to player %s", notification.type, player_id)
            return 0

    def build_delta(
        self,
        *,
        type: DeltaType,
        player_id: str,
        version: int,
        data: dict[str, Any] | None = None,
        task_id: str | None = None,
    ) -> DeltaUpdate:
        body = data or {}
        return DeltaUpdate(
            type=type,
            player_id=player_id,
            task_id=task_id,
            data=body,
            timestamp=self.clock(),
            version=version,
            checksum=stable_digest(body),
        )

    async def send_delta_update(
        self,
        player_id: str,
        delta: DeltaUpdate,
        *,
        exclude: set[str] | frozenset[str] = frozenset(),
    ) -> int:
        notification = self.make_notification(
            type="delta_update",
            player_id=player_id,
            task_id=delta.task_id,
            data=delta.model_dump(mode="json"),
        )
        return await self.send_to_player(player_id, notification, exclude=exclude)

    # ---- inbound ----

    def _delta_errors(self, conn: Connection, delta: DeltaUpdate) -> list[str]:
        errors: list[str] = []
        if delta.player_id != conn.player_id:
            errors.append("player_id does not match the connection")
        if delta.timestamp <= 0:
            errors.append("timestamp must be positive")
        if delta.version < 0:
            errors.append("version must be non-negative")
        if delta.checksum != stable_digest(delta.data):
            errors.append("checksum does not match data")
        return errors

    def _apply_delta(self, queue: TaskQueue, delta: DeltaUpdate, now: int) -> None:
        match delta.type:
            case "task_added":
                task = _as_task(delta.data)
                if task is None:
                    raise ValueError("task_added delta carries no valid task")
                enqueue_task(queue, task, now=now)
            case "task_removed":
                task_id = delta.task_id or delta.data.get("task_id")
                if not task_id:
                    raise ValueError("task_removed delta carries no task_id")
                dequeue_task(queue, task_id)
            case "task_updated":
                task = _as_task(delta.data)
                if task is None:
                    raise ValueError("task_updated delta carries no valid task")
                replace_queued_task(queue, task)
            case "queue_state_changed":
                action = delta.data.get("action")
                if action == "pause":
                    pause(queue, reason=delta.data.get("reason"), now=now)
                elif action == "resume":
                    resume(queue, now=now)
                elif action == "stop":
                    halt_queue(queue)
                else:
                    raise ValueError(f"Unknown queue action: {action!r}")
            case _:
                raise ValueError(f"Delta type {delta.type} cannot be applied")

    async def _send_snapshot(
        self, connection_id: str, player_id: str, queue: TaskQueue | None, conflicts: list[Conflict]
    ) -> Notification:
        notification = self.make_notification(
            type="sync_response",
            player_id=player_id,
            data={
                "server_version": queue.version if queue is not None else 0,
                "timestamp": self.clock(),
                "full": True,
                "queue": queue.model_dump(mode="json") if queue is not None else None,
                "conflicts": [c.model_dump(mode="json") for c in conflicts],
            },
        )
        await self.send_to_connection(connection_id, notification)
        return notification

    async def handle_delta_update(self, connection_id: str, delta: DeltaUpdate) -> bool:
        """Validate, apply and relay a client-originated delta.

        Returns True when the delta changed server state (or was relayed as-is,
        for progress deltas). Stale versions are answered with a full snapshot.
        """

        try:
            conn = self.get_connection(connection_id)
            if conn is None:
                logger.warning("Delta from unknown connection %s", connection_id)
                return False

            errors = self._delta_errors(conn, delta)
            if errors:
                logger.warning("Rejected delta from %s: %s", connection_id, "; ".join(errors))
                return False

            if delta.type == "task_progress":
                # Progress is server-authoritative; pass it along without applying.
                await self.send_delta_update(conn.player_id, delta, exclude={connection_id})
                return True

            now = self.clock()
            stale: TaskQueue | None = None
            with queue_lock(r=self.r, player_id=conn.player_id, ttl_ms=self.settings.lock_ttl_ms):
                queue, created = get_or_create_queue(r=self.r, player_id=conn.player_id, now=now)
                if not created and delta.version != queue.version:
                    stale = queue
                else:
                    self._apply_delta(queue, delta, now)
                    save_queue(r=self.r, queue=queue, now=now)

            if stale is not None:
                conflict = Conflict(
                    conflict_id=uuid4().hex,
                    type="queue_state_changed",
                    server_value=stale.version,
                    client_value=delta.version,
                )
                logger.info(
                    "Stale delta from %s (client v%s, server v%s)", connection_id, delta.version, stale.version
                )
                await self._send_snapshot(connection_id, conn.player_id, stale, [conflict])
                return False

            self._touch(connection_id, queue_version=queue.version, last_ping=now)
            relayed = self.build_delta(
                type=delta.type,
                player_id=conn.player_id,
                version=queue.version,
                data=delta.data,
                task_id=delta.task_id,
            )
            await self.send_delta_update(conn.player_id, relayed, exclude={connection_id})
            await self.send_to_player(
                conn.player_id,
                self.make_notification(type="queue_updated", player_id=conn.player_id, data=queue_updated_data(queue)),
            )
            return True
        except QueueBusyError as e:
            logger.info("Delta from %s deferred: %s", connection_id, e)
            return False
        except ValueError as e:
            logger.warning("Delta from %s not applied: %s", connection_id, e)
            return False
        except Exception:
            logger.exception("Error handling delta from %s", connection_id)
            return False

    async def handle_sync_request(self, connection_id: str, request: SyncRequest) -> Notification | None:
        try:
            conn = self.get_connection(connection_id)
            if conn is None:
                logger.warning("Sync request from unknown connection %s", connection_id)
                return None

            now = self.clock()
            player_id = conn.player_id
            wanted = set(request.requested_data) & set(SYNC_CATEGORIES) or set(SYNC_CATEGORIES)
            queue = get_queue(r=self.r, player_id=player_id)

            data: dict[str, Any] = {
                "server_version": queue.version if queue is not None else 0,
                "timestamp": now,
                "full": wanted == set(SYNC_CATEGORIES),
            }
            if "queue" in wanted:
                data["queue"] = queue.model_dump(mode="json") if queue is not None else None
            if "progress" in wanted:
                current = None
                if queue is not None and queue.current_task is not None:
                    at = queue.paused_at if queue.is_paused and queue.paused_at is not None else now
                    current = task_progress(queue.current_task, at).model_dump(mode="json")
                data["progress"] = current
            if "character" in wanted:
                character = get_character(r=self.r, user_id=player_id)
                data["character"] = character.model_dump(mode="json") if character is not None else None
            if "connections" in wanted:
                data["connections"] = [c.model_dump(mode="json") for c in self.get_player_connections(player_id)]

            conflicts: list[Conflict] = []
            if queue is not None and request.queue_version != queue.version:
                conflicts.append(
                    Conflict(
                        conflict_id=uuid4().hex,
                        type="queue_state_changed",
                        server_value=queue.version,
                        client_value=request.queue_version,
                    )
                )
            if queue is not None and not verify_queue_checksum(queue):
                logger.warning("Checksum mismatch on stored queue for %s", player_id)
                conflicts.append(
                    Conflict(
                        conflict_id=uuid4().hex,
                        type="queue_state_changed",
                        server_value=compute_queue_checksum(queue),
                        client_value=queue.checksum,
                    )
                )
            data["conflicts"] = [c.model_dump(mode="json") for c in conflicts]

            self._touch(connection_id, last_ping=now)
            notification = self.make_notification(type="sync_response", player_id=player_id, data=data)
            await self.send_to_connection(connection_id, notification)
            return notification
        except Exception:
            logger.exception("Error handling sync request from %s", connection_id)
            return None

    async def detect_connection_conflicts(self, player_id: str) -> list[Conflict]:
        """One conflict when a player's connections report different queue versions."""

        try:
            versions = {c.queue_version for c in self.get_player_connections(player_id)}
            if len(versions) <= 1:
                return []
            return [
                Conflict(
                    conflict_id=uuid4().hex,
                    type="queue_state_changed",
                    server_value=max(versions),
                    client_value=min(versions),
                )
            ]
        except Exception:
            logger.exception("Error detecting conflicts for %s", player_id)
            return []

    def _persist_resolution(self, player_id: str, request: ConflictResolutionRequest, resolution: str, resolved: Any) -> TaskQueue | None:
        """Write a resolved task-level conflict back to the queue, if needed."""

        if resolution == "server_wins" or request.type == "queue_state_changed":
            return None

        now = self.clock()
        with queue_lock(r=self.r, player_id=player_id, ttl_ms=self.settings.lock_ttl_ms):
            queue, _ = get_or_create_queue(r=self.r, player_id=player_id, now=now)
            match request.type:
                case "task_modified":
                    task = _as_task(resolved)
                    if task is None:
                        raise ValueError("Resolved value is not a task")
                    replace_queued_task(queue, task)
                case "task_added":
                    task = _as_task(resolved)
                    if task is None:
                        raise ValueError("Resolved value is not a task")
                    known = {t.id for t in queue.queued_tasks}
                    if queue.current_task is not None:
                        known.add(queue.current_task.id)
                    if task.id in known:
                        return None
                    enqueue_task(queue, task, now=now)
                case "task_removed":
                    if resolution != "client_wins":
                        return None
                    task_id = resolved.get("id") if isinstance(resolved, dict) else resolved
                    if not isinstance(task_id, str):
                        raise ValueError("Resolved value does not name a task")
                    dequeue_task(queue, task_id)
            save_queue(r=self.r, queue=queue, now=now)
        return queue

    async def handle_conflict_resolution(self, connection_id: str, request: ConflictResolutionRequest) -> Conflict | None:
        try:
            conn = self.get_connection(connection_id)
            if conn is None:
                logger.warning("Conflict resolution from unknown connection %s", connection_id)
                return None

            resolution = request.resolution or DEFAULT_RESOLUTIONS[request.type]
            strategy = self.strategies.get(resolution)
            if strategy is None:
                logger.warning("Unknown resolution strategy %r from %s", resolution, connection_id)
                return None

            resolved = strategy(request.server_value, request.client_value)
            queue = self._persist_resolution(conn.player_id, request, resolution, resolved)
            if queue is None:
                queue = get_queue(r=self.r, player_id=conn.player_id)

            if request.type == "queue_state_changed" and isinstance(resolved, int) and not isinstance(resolved, bool):
                self._touch(connection_id, queue_version=resolved)

            conflict = Conflict(
                conflict_id=request.conflict_id,
                type=request.type,
                server_value=request.server_value,
                client_value=request.client_value,
                resolution=resolution,
            )
            await self.send_to_player(
                conn.player_id,
                self.make_notification(
                    type="conflict_resolution",
                    player_id=conn.player_id,
                    data={"conflict": conflict.model_dump(mode="json"), "resolved_value": resolved},
                ),
                exclude={connection_id},
            )
            if resolution != "client_wins":
                # The originator adopts the server view.
                await self._send_snapshot(connection_id, conn.player_id, queue, [conflict])
            return conflict
        except QueueBusyError as e:
            logger.info("Conflict resolution from %s deferred: %s", connection_id, e)
            return None
        except ValueError as e:
            logger.warning("Conflict resolution from %s not applied: %s", connection_id, e)
            return None
        except Exception:
            logger.exception("Error resolving conflict from %s", connection_id)
            return None
