from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import redis

from idle_engine.api.models import (
    AddTaskResponse,
    DeltaType,
    Notification,
    NotificationType,
    QueueStatusResponse,
    QueueSummary,
    Task,
    TaskProgress,
    TaskQueue,
)
from idle_engine.fsm import QueueFSM
from idle_engine.lock import queue_lock
from idle_engine.queue_store import get_or_create_queue, now_ms, require_queue, save_queue

if TYPE_CHECKING:
    from idle_engine.sync import SyncProtocol


logger = logging.getLogger(__name__)


# ---- read models ----


def task_progress(task: Task, now: int) -> TaskProgress:
    elapsed = now - task.start_time
    progress = min(max(elapsed / task.duration, 0.0), 1.0)
    return TaskProgress(
        task_id=task.id,
        progress=progress,
        time_remaining=max(task.duration - elapsed, 0),
        is_complete=progress >= 1,
    )


def queue_summary(queue: TaskQueue) -> QueueSummary:
    return QueueSummary(
        current_task=queue.current_task,
        queue_length=len(queue.queued_tasks),
        queued_tasks=queue.queued_tasks,
        is_running=queue.is_running,
        is_paused=queue.is_paused,
        total_completed=queue.total_tasks_completed,
        version=queue.version,
    )


def queue_status_response(queue: TaskQueue, *, now: int, message: str | None = None) -> QueueStatusResponse:
    current = None
    if queue.current_task is not None and queue.is_running:
        # While paused the clock is frozen at the pause instant.
        at = queue.paused_at if queue.is_paused and queue.paused_at is not None else now
        current = task_progress(queue.current_task, at)
    return QueueStatusResponse(queue=queue_summary(queue), current_progress=current, message=message)


# ---- pure mutations (callers hold the queue lock and persist) ----


def _start(task: Task, now: int) -> None:
    task.start_time = now
    task.progress = 0.0


def enqueue_task(queue: TaskQueue, task: Task, *, now: int) -> bool:
    """Add ``task`` to ``queue``; returns True when it started immediately."""

    if task.player_id != queue.player_id:
        raise ValueError("Task belongs to a different player")
    if task.completed:
        raise ValueError("Task is already completed")
    if task.duration > queue.config.max_task_duration:
        raise ValueError(f"Task duration exceeds {queue.config.max_task_duration} ms")

    known = {t.id for t in queue.queued_tasks}
    if queue.current_task is not None:
        known.add(queue.current_task.id)
    if task.id in known:
        raise ValueError(f"Task {task.id} is already queued")

    task.max_retries = min(task.max_retries, queue.config.max_retries)

    if queue.current_task is None and queue.config.auto_start:
        fsm = QueueFSM(queue)
        fsm.begin()
        _start(task, now)
        queue.current_task = task
        fsm.sync_status_to_model()
        return True

    if len(queue.queued_tasks) >= queue.config.max_queue_size:
        raise ValueError(f"Task queue is full (max {queue.config.max_queue_size})")
    queue.queued_tasks.append(task)
    return False


def promote_next(queue: TaskQueue, *, now: int) -> Task | None:
    """Replace the current task with the head of the queue, or go idle."""

    if queue.queued_tasks:
        nxt = queue.queued_tasks.pop(0)
        _start(nxt, now)
        queue.current_task = nxt
        return nxt

    fsm = QueueFSM(queue)
    queue.current_task = None
    fsm.drain()
    fsm.sync_status_to_model()
    return None


def dequeue_task(queue: TaskQueue, task_id: str) -> Task:
    if queue.current_task is not None and queue.current_task.id == task_id:
        raise ValueError("Cannot remove the running task; stop the queue instead")
    for idx, t in enumerate(queue.queued_tasks):
        if t.id == task_id:
            return queue.queued_tasks.pop(idx)
    raise ValueError("Task not found")


def replace_queued_task(queue: TaskQueue, task: Task) -> None:
    if task.player_id != queue.player_id:
        raise ValueError("Task belongs to a different player")
    for idx, t in enumerate(queue.queued_tasks):
        if t.id == task.id:
            queue.queued_tasks[idx] = task
            return
    raise ValueError("Task not found")


def halt_queue(queue: TaskQueue) -> None:
    fsm = QueueFSM(queue)
    queue.current_task = None
    queue.queued_tasks = []
    queue.pause_reason = None
    queue.paused_at = None
    if fsm.current_state != fsm.idle:
        fsm.halt()
    fsm.sync_status_to_model()


def pause(queue: TaskQueue, *, reason: str | None, now: int) -> None:
    fsm = QueueFSM(queue)
    if fsm.current_state != fsm.running:
        raise ValueError("Task queue is not running")
    fsm.pause()
    fsm.sync_status_to_model()
    queue.pause_reason = reason
    queue.paused_at = now


def resume(queue: TaskQueue, *, now: int) -> None:
    fsm = QueueFSM(queue)
    if fsm.current_state == fsm.idle and queue.queued_tasks:
        # Queues with auto_start off sit idle until resumed.
        fsm.begin()
        fsm.sync_status_to_model()
        nxt = queue.queued_tasks.pop(0)
        _start(nxt, now)
        queue.current_task = nxt
        return
    if fsm.current_state != fsm.paused:
        raise ValueError("Task queue is not paused")
    fsm.resume()
    fsm.sync_status_to_model()
    # Paused time must not count towards the running task.
    if queue.current_task is not None and queue.paused_at is not None:
        queue.current_task.start_time += max(now - queue.paused_at, 0)
    queue.pause_reason = None
    queue.paused_at = None


# ---- outbound events ----


@dataclass(slots=True)
class Outbox:
    """Notifications and deltas produced under the lock, sent after release."""

    player_id: str
    notifications: list[Notification] = field(default_factory=list)
    deltas: list[tuple[DeltaType, str | None, dict[str, Any]]] = field(default_factory=list)

    def notify(self, sync: "SyncProtocol", type: NotificationType, data: dict[str, Any], task_id: str | None = None) -> None:
        self.notifications.append(sync.make_notification(type=type, player_id=self.player_id, data=data, task_id=task_id))

    def delta(self, type: DeltaType, data: dict[str, Any], task_id: str | None = None) -> None:
        self.deltas.append((type, task_id, data))


def queue_updated_data(queue: TaskQueue) -> dict[str, Any]:
    return {
        "current_task": queue.current_task.model_dump(mode="json") if queue.current_task else None,
        "queue_length": len(queue.queued_tasks),
        "is_running": queue.is_running,
        "is_paused": queue.is_paused,
        "total_completed": queue.total_tasks_completed,
        "version": queue.version,
    }


def task_started_data(task: Task) -> dict[str, Any]:
    return {
        "task": {
            "id": task.id,
            "name": task.name,
            "type": task.type.value,
            "duration": task.duration,
            "estimated_completion": task.start_time + task.duration,
        }
    }


async def flush_outbox(*, sync: "SyncProtocol", queue: TaskQueue, outbox: Outbox) -> None:
    for notification in outbox.notifications:
        await sync.send_to_player(outbox.player_id, notification)
    if not queue.config.sync_enabled:
        return
    for type_, task_id, data in outbox.deltas:
        delta = sync.build_delta(type=type_, player_id=queue.player_id, version=queue.version, data=data, task_id=task_id)
        await sync.send_delta_update(queue.player_id, delta)


# ---- service operations ----


def get_queue_status(*, r: redis.Redis, player_id: str, now: int | None = None) -> QueueStatusResponse:
    queue = require_queue(r=r, player_id=player_id)
    return queue_status_response(queue, now=now if now is not None else now_ms())


async def add_task(
    *,
    r: redis.Redis,
    sync: "SyncProtocol",
    player_id: str,
    task: Task,
    now: int | None = None,
    lock_ttl_ms: int = 5_000,
) -> AddTaskResponse:
    ts = now if now is not None else now_ms()

    with queue_lock(r=r, player_id=player_id, ttl_ms=lock_ttl_ms):
        queue, _ = get_or_create_queue(r=r, player_id=player_id, now=ts)
        started = enqueue_task(queue, task, now=ts)
        save_queue(r=r, queue=queue, now=ts)

    logger.info("Task %s added for player %s (started=%s)", task.id, player_id, started)

    outbox = Outbox(player_id=player_id)
    if started:
        outbox.notify(sync, "task_started", task_started_data(task), task_id=task.id)
    outbox.notify(sync, "queue_updated", queue_updated_data(queue))
    outbox.delta("task_added", {"task": task.model_dump(mode="json"), "started": started}, task_id=task.id)
    await flush_outbox(sync=sync, queue=queue, outbox=outbox)

    message = "Task started" if started else "Task added to queue successfully"
    return AddTaskResponse(task_id=task.id, started=started, message=message)


async def remove_task(
    *,
    r: redis.Redis,
    sync: "SyncProtocol",
    player_id: str,
    task_id: str,
    now: int | None = None,
    lock_ttl_ms: int = 5_000,
) -> QueueStatusResponse:
    ts = now if now is not None else now_ms()

    with queue_lock(r=r, player_id=player_id, ttl_ms=lock_ttl_ms):
        queue = require_queue(r=r, player_id=player_id)
        dequeue_task(queue, task_id)
        save_queue(r=r, queue=queue, now=ts)

    outbox = Outbox(player_id=player_id)
    outbox.notify(sync, "queue_updated", queue_updated_data(queue))
    outbox.delta("task_removed", {"task_id": task_id}, task_id=task_id)
    await flush_outbox(sync=sync, queue=queue, outbox=outbox)
    return queue_status_response(queue, now=ts, message="Task removed")


async def stop_tasks(
    *,
    r: redis.Redis,
    sync: "SyncProtocol",
    player_id: str,
    now: int | None = None,
    lock_ttl_ms: int = 5_000,
) -> QueueStatusResponse:
    ts = now if now is not None else now_ms()

    with queue_lock(r=r, player_id=player_id, ttl_ms=lock_ttl_ms):
        queue = require_queue(r=r, player_id=player_id)
        halt_queue(queue)
        save_queue(r=r, queue=queue, now=ts)

    logger.info("All tasks stopped for player %s", player_id)

    outbox = Outbox(player_id=player_id)
    outbox.notify(sync, "queue_updated", queue_updated_data(queue))
    outbox.delta("queue_state_changed", {"action": "stop", **queue_updated_data(queue)})
    await flush_outbox(sync=sync, queue=queue, outbox=outbox)
    return queue_status_response(queue, now=ts, message="All tasks stopped successfully")


async def pause_queue(
    *,
    r: redis.Redis,
    sync: "SyncProtocol",
    player_id: str,
    reason: str | None = None,
    now: int | None = None,
    lock_ttl_ms: int = 5_000,
) -> QueueStatusResponse:
    ts = now if now is not None else now_ms()

    with queue_lock(r=r, player_id=player_id, ttl_ms=lock_ttl_ms):
        queue = require_queue(r=r, player_id=player_id)
        pause(queue, reason=reason, now=ts)
        save_queue(r=r, queue=queue, now=ts)

    outbox = Outbox(player_id=player_id)
    outbox.notify(sync, "queue_updated", queue_updated_data(queue))
    outbox.delta("queue_state_changed", {"action": "pause", "reason": reason, **queue_updated_data(queue)})
    await flush_outbox(sync=sync, queue=queue, outbox=outbox)
    return queue_status_response(queue, now=ts, message="Task queue paused")


async def resume_queue(
    *,
    r: redis.Redis,
    sync: "SyncProtocol",
    player_id: str,
    now: int | None = None,
    lock_ttl_ms: int = 5_000,
) -> QueueStatusResponse:
    ts = now if now is not None else now_ms()

    with queue_lock(r=r, player_id=player_id, ttl_ms=lock_ttl_ms):
        queue = require_queue(r=r, player_id=player_id)
        resume(queue, now=ts)
        save_queue(r=r, queue=queue, now=ts)

    outbox = Outbox(player_id=player_id)
    outbox.notify(sync, "queue_updated", queue_updated_data(queue))
    outbox.delta("queue_state_changed", {"action": "resume", **queue_updated_data(queue)})
    await flush_outbox(sync=sync, queue=queue, outbox=outbox)
    return queue_status_response(queue, now=ts, message="Task queue resumed")
