"""Periodic queue advancement.

A cycle visits every queue in the running index. Each queue is processed under
its own lock and its own try/except, so one bad queue never stops the cycle.
At most one task completes per queue per tick; a queue that promoted its next
task is picked up again on the following tick.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable

import redis

from idle_engine.api.models import Character, CycleReport, QueueStatusResponse, Task, TaskQueue, TaskReward
from idle_engine.config import EngineSettings
from idle_engine.errors import QueueBusyError, TaskValidationFailure
from idle_engine.lock import queue_lock
from idle_engine.queue_ops import (
    Outbox,
    flush_outbox,
    promote_next,
    queue_status_response,
    queue_updated_data,
    task_progress,
    task_started_data,
)
from idle_engine.queue_store import (
    apply_rewards_to_character,
    get_character,
    get_or_create_queue,
    get_queue,
    list_running_player_ids,
    now_ms,
    save_queue,
)
from idle_engine.rewards import RandomSource, calculate_rewards
from idle_engine.sync import SyncProtocol
from idle_engine.validation import validate


logger = logging.getLogger(__name__)


class QueueScheduler:
    def __init__(
        self,
        *,
        r: redis.Redis,
        sync: SyncProtocol,
        settings: EngineSettings | None = None,
        rng: RandomSource | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.r = r
        self.sync = sync
        self.settings = settings or EngineSettings()
        self.rng: RandomSource = rng if rng is not None else random.Random()
        self.clock = clock

    async def run_cycle(self) -> CycleReport:
        report = CycleReport()
        player_ids = list_running_player_ids(r=self.r)
        report.scanned = len(player_ids)

        for player_id in player_ids:
            try:
                outcome = await self.process_player(player_id)
            except QueueBusyError:
                logger.info("Queue for %s is locked; skipping this tick", player_id)
                report.skipped += 1
                continue
            except Exception:
                logger.exception("Error processing queue for player %s", player_id)
                report.failed += 1
                continue

            match outcome:
                case "completed":
                    report.completed += 1
                case "retried":
                    report.retried += 1
                case "dropped":
                    report.dropped += 1
                case "in_progress":
                    report.in_progress += 1
                case _:
                    report.skipped += 1

        logger.info("Scheduler cycle: %s", report.model_dump())
        return report

    async def process_player(self, player_id: str) -> str:
        with queue_lock(r=self.r, player_id=player_id, ttl_ms=self.settings.lock_ttl_ms):
            queue = get_queue(r=self.r, player_id=player_id)
            if queue is None:
                logger.warning("Running index names %s but no queue is stored", player_id)
                return "missing"
            outcome, outbox = self.advance(queue)

        await flush_outbox(sync=self.sync, queue=queue, outbox=outbox)
        return outcome

    async def sync_queue(self, player_id: str) -> QueueStatusResponse:
        """Create the queue on first contact, otherwise advance it one tick."""

        now = self.clock()
        with queue_lock(r=self.r, player_id=player_id, ttl_ms=self.settings.lock_ttl_ms):
            queue, created = get_or_create_queue(r=self.r, player_id=player_id, now=now)
            if created:
                save_queue(r=self.r, queue=queue, now=now)
                outbox = Outbox(player_id=player_id)
                logger.info("Created task queue for player %s", player_id)
            else:
                _, outbox = self.advance(queue, now=now)

        await flush_outbox(sync=self.sync, queue=queue, outbox=outbox)
        return queue_status_response(queue, now=now, message="Task queue synced successfully")

    # ---- one tick for one queue (caller holds the lock) ----

    def _execute(self, task: Task, character: Character | None, queue: TaskQueue) -> list[TaskReward]:
        if character is None:
            raise TaskValidationFailure(f"Character not found for player {queue.player_id}")
        if queue.config.validation_enabled and not validate(task, character):
            raise TaskValidationFailure(f"Task {task.id} failed validation")
        return calculate_rewards(task, character.stats, character.level, rng=self.rng)

    def advance(self, queue: TaskQueue, *, now: int | None = None) -> tuple[str, Outbox]:
        ts = now if now is not None else self.clock()
        outbox = Outbox(player_id=queue.player_id)

        if not queue.is_running or queue.current_task is None:
            return "idle", outbox
        if queue.is_paused:
            return "paused", outbox

        task = queue.current_task
        if ts - task.start_time < task.duration:
            progress = task_progress(task, ts)
            outbox.notify(
                self.sync,
                "task_progress",
                {
                    "progress": progress.progress,
                    "time_remaining": progress.time_remaining,
                    "is_complete": progress.is_complete,
                },
                task_id=task.id,
            )
            return "in_progress", outbox

        character = get_character(r=self.r, user_id=queue.player_id)
        try:
            rewards = self._execute(task, character, queue)
        except Exception as e:
            return self._fail(queue, task, reason=str(e), now=ts, outbox=outbox), outbox

        task.mark_completed(rewards)
        queue.total_tasks_completed += 1
        queue.total_time_spent += task.duration
        queue.last_processed = ts

        nxt = promote_next(queue, now=ts)
        save_queue(r=self.r, queue=queue, now=ts)
        apply_rewards_to_character(r=self.r, user_id=queue.player_id, rewards=rewards)
        logger.info("Task %s completed for player %s", task.id, queue.player_id)

        outbox.notify(
            self.sync,
            "task_completed",
            {
                "task": task.model_dump(mode="json"),
                "rewards": [rw.model_dump(mode="json") for rw in rewards],
                "next_task": nxt.model_dump(mode="json") if nxt else None,
            },
            task_id=task.id,
        )
        if nxt is not None:
            outbox.notify(self.sync, "task_started", task_started_data(nxt), task_id=nxt.id)
        outbox.notify(self.sync, "queue_updated", queue_updated_data(queue))
        outbox.delta("queue_state_changed", {"action": "task_completed", "task_id": task.id, **queue_updated_data(queue)})
        return "completed", outbox

    def _fail(self, queue: TaskQueue, task: Task, *, reason: str, now: int, outbox: Outbox) -> str:
        will_retry = queue.config.retry_enabled and task.retry_count < task.max_retries
        task.retry_count += 1
        queue.last_processed = now

        promoted: Task | None = None
        if will_retry:
            task.start_time = now
            task.progress = 0.0
            outcome = "retried"
            logger.warning(
                "Task %s failed for %s (attempt %s/%s), retrying: %s",
                task.id,
                queue.player_id,
                task.retry_count,
                task.max_retries,
                reason,
            )
        else:
            promoted = promote_next(queue, now=now)
            outcome = "dropped"
            logger.warning("Task %s dropped for %s after %s attempts: %s", task.id, queue.player_id, task.retry_count, reason)

        save_queue(r=self.r, queue=queue, now=now)

        outbox.notify(
            self.sync,
            "task_failed",
            {
                "reason": reason,
                "retry_count": task.retry_count,
                "max_retries": task.max_retries,
                "will_retry": will_retry,
            },
            task_id=task.id,
        )
        if promoted is not None:
            outbox.notify(self.sync, "task_started", task_started_data(promoted), task_id=promoted.id)
        outbox.notify(self.sync, "queue_updated", queue_updated_data(queue))
        outbox.delta("queue_state_changed", {"action": "task_failed", "task_id": task.id, **queue_updated_data(queue)})
        return outcome
