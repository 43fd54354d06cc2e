from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from idle_engine.fsm import QueueFSM, queue_status
from idle_engine.queue_ops import (
    dequeue_task,
    enqueue_task,
    halt_queue,
    pause,
    promote_next,
    resume,
    task_progress,
)
from idle_engine.queue_store import new_queue

from conftest import combat_task, crafting_task, harvesting_task


def test_fsm_starts_from_queue_status() -> None:
    queue = new_queue(player_id="p1")
    assert QueueFSM(queue).current_state.id == "idle"

    enqueue_task(queue, harvesting_task(), now=0)
    assert queue_status(queue) == "running"
    assert QueueFSM(queue).current_state.id == "running"


def test_fsm_rejects_resume_from_idle() -> None:
    fsm = QueueFSM(new_queue(player_id="p1"))
    with pytest.raises(TransitionNotAllowed):
        fsm.resume()


def test_first_task_starts_and_rest_queue_in_order() -> None:
    queue = new_queue(player_id="p1")

    assert enqueue_task(queue, harvesting_task("a"), now=100) is True
    assert enqueue_task(queue, crafting_task("b"), now=200) is False
    assert enqueue_task(queue, combat_task("c"), now=300) is False

    assert queue.current_task is not None and queue.current_task.id == "a"
    assert queue.current_task.start_time == 100
    assert [t.id for t in queue.queued_tasks] == ["b", "c"]

    nxt = promote_next(queue, now=1_000)
    assert nxt is not None and nxt.id == "b" and nxt.start_time == 1_000
    promote_next(queue, now=2_000)
    assert promote_next(queue, now=3_000) is None
    assert queue.is_running is False and queue.current_task is None


def test_enqueue_rejects_full_queue() -> None:
    queue = new_queue(player_id="p1")
    queue.config.max_queue_size = 2
    enqueue_task(queue, harvesting_task("running"), now=0)
    enqueue_task(queue, harvesting_task("q1"), now=0)
    enqueue_task(queue, harvesting_task("q2"), now=0)

    with pytest.raises(ValueError, match="full"):
        enqueue_task(queue, harvesting_task("q3"), now=0)
    assert len(queue.queued_tasks) == 2


def test_enqueue_rejects_overlong_task_and_foreign_player() -> None:
    queue = new_queue(player_id="p1")
    with pytest.raises(ValueError, match="duration"):
        enqueue_task(queue, harvesting_task(duration=queue.config.max_task_duration + 1), now=0)
    with pytest.raises(ValueError, match="different player"):
        enqueue_task(queue, harvesting_task(player_id="p2"), now=0)


def test_enqueue_rejects_duplicate_ids() -> None:
    queue = new_queue(player_id="p1")
    enqueue_task(queue, harvesting_task("a"), now=0)
    with pytest.raises(ValueError, match="already queued"):
        enqueue_task(queue, harvesting_task("a"), now=0)


def test_enqueue_caps_retries_at_queue_config() -> None:
    queue = new_queue(player_id="p1")
    queue.config.max_retries = 1
    task = harvesting_task(max_retries=5)
    enqueue_task(queue, task, now=0)
    assert task.max_retries == 1


def test_auto_start_off_keeps_queue_idle_until_resumed() -> None:
    queue = new_queue(player_id="p1")
    queue.config.auto_start = False

    assert enqueue_task(queue, harvesting_task("a"), now=0) is False
    assert queue.is_running is False
    assert [t.id for t in queue.queued_tasks] == ["a"]

    resume(queue, now=500)
    assert queue.current_task is not None and queue.current_task.start_time == 500
    assert queue.is_running is True


def test_pause_resume_shifts_start_time() -> None:
    queue = new_queue(player_id="p1")
    enqueue_task(queue, harvesting_task(duration=10_000), now=1_000)

    pause(queue, reason="afk", now=4_000)
    assert queue.is_paused and queue.is_running
    assert queue.pause_reason == "afk"

    resume(queue, now=9_000)
    assert not queue.is_paused
    assert queue.current_task is not None
    assert queue.current_task.start_time == 6_000
    assert task_progress(queue.current_task, 9_000).progress == pytest.approx(0.3)


def test_pause_requires_running_queue() -> None:
    with pytest.raises(ValueError, match="not running"):
        pause(new_queue(player_id="p1"), reason=None, now=0)


def test_halt_clears_everything() -> None:
    queue = new_queue(player_id="p1")
    enqueue_task(queue, harvesting_task("a"), now=0)
    enqueue_task(queue, harvesting_task("b"), now=0)
    pause(queue, reason=None, now=1)

    halt_queue(queue)

    assert queue.current_task is None
    assert queue.queued_tasks == []
    assert not queue.is_running and not queue.is_paused


def test_dequeue_only_removes_queued_tasks() -> None:
    queue = new_queue(player_id="p1")
    enqueue_task(queue, harvesting_task("a"), now=0)
    enqueue_task(queue, harvesting_task("b"), now=0)

    with pytest.raises(ValueError, match="running task"):
        dequeue_task(queue, "a")
    with pytest.raises(ValueError, match="not found"):
        dequeue_task(queue, "zzz")

    assert dequeue_task(queue, "b").id == "b"
    assert queue.queued_tasks == []


def test_task_progress_is_clamped() -> None:
    task = harvesting_task(duration=1_000, start_time=0)
    assert task_progress(task, -50).progress == 0
    assert task_progress(task, 500).time_remaining == 500
    done = task_progress(task, 5_000)
    assert done.progress == 1 and done.is_complete and done.time_remaining == 0
