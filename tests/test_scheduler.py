from __future__ import annotations

import pytest

from idle_engine.api.models import CraftingStation, Task, TaskPrerequisite
from idle_engine.lock import queue_lock
from idle_engine.queue_ops import enqueue_task, pause
from idle_engine.queue_store import (
    QUEUE_KEY_PREFIX,
    RUNNING_QUEUES_KEY,
    get_character,
    get_queue,
    new_queue,
    put_character,
    save_queue,
)
import idle_engine.scheduler as scheduler_mod
from idle_engine.scheduler import QueueScheduler
from idle_engine.sync import SyncProtocol

from conftest import FixedDraw, crafting_task, harvesting_task, make_character


def _scheduler(r, channel, clock, *draws: float) -> QueueScheduler:
    sync = SyncProtocol(r=r, channel=channel, clock=clock)
    return QueueScheduler(r=r, sync=sync, rng=FixedDraw(*(draws or (0.0, 0.99))), clock=clock)


def _seed_queue(r, clock, *tasks: Task, player_id: str = "p1", **config):
    queue = new_queue(player_id=player_id, now=clock.now)
    for key, value in config.items():
        setattr(queue.config, key, value)
    for task in tasks:
        enqueue_task(queue, task, now=clock.now)
    save_queue(r=r, queue=queue, now=clock.now)
    return queue


async def _connect(sync: SyncProtocol, player_id: str = "p1", connection_id: str = "c1") -> None:
    await sync.store_connection(connection_id, player_id)


@pytest.mark.asyncio
async def test_in_progress_task_reports_progress_without_persisting(r, channel, clock) -> None:
    put_character(r=r, character=make_character())
    queue = _seed_queue(r, clock, harvesting_task(duration=60_000))
    scheduler = _scheduler(r, channel, clock)
    await _connect(scheduler.sync)

    clock.advance(30_000)
    report = await scheduler.run_cycle()

    assert report.scanned == 1 and report.in_progress == 1
    stored = get_queue(r=r, player_id="p1")
    assert stored is not None and stored.version == queue.version
    progress = [p for p in channel.sent["c1"] if p["type"] == "task_progress"]
    assert progress[0]["data"]["progress"] == pytest.approx(0.5)
    assert progress[0]["data"]["time_remaining"] == 30_000


@pytest.mark.asyncio
async def test_completion_applies_rewards_and_promotes_next(r, channel, clock) -> None:
    put_character(r=r, character=make_character())
    _seed_queue(r, clock, harvesting_task("a", duration=1_000), harvesting_task("b", duration=1_000))
    scheduler = _scheduler(r, channel, clock)
    await _connect(scheduler.sync)

    clock.advance(1_000)
    report = await scheduler.run_cycle()

    assert report.completed == 1
    stored = get_queue(r=r, player_id="p1")
    assert stored is not None
    assert stored.total_tasks_completed == 1
    assert stored.total_time_spent == 1_000
    assert stored.current_task is not None and stored.current_task.id == "b"
    assert stored.current_task.start_time == clock.now
    assert stored.current_task.progress == 0

    character = get_character(r=r, user_id="p1")
    assert character is not None
    assert character.experience == 26
    assert character.inventory == {"copper_ore": 1}

    assert channel.types("c1") == ["task_completed", "task_started", "queue_updated", "delta_update"]
    completed = channel.sent["c1"][0]["data"]
    assert completed["task"]["completed"] is True
    assert completed["task"]["progress"] == 1.0
    assert completed["next_task"]["id"] == "b"


@pytest.mark.asyncio
async def test_one_completion_per_tick(r, channel, clock) -> None:
    put_character(r=r, character=make_character())
    _seed_queue(r, clock, harvesting_task("a", duration=1_000), harvesting_task("b", duration=1_000))
    scheduler = _scheduler(r, channel, clock)

    clock.advance(10_000)
    await scheduler.run_cycle()

    stored = get_queue(r=r, player_id="p1")
    assert stored is not None
    assert stored.total_tasks_completed == 1
    assert stored.current_task is not None and stored.current_task.id == "b"

    clock.advance(1_000)
    await scheduler.run_cycle()
    stored = get_queue(r=r, player_id="p1")
    assert stored is not None
    assert stored.total_tasks_completed == 2
    assert stored.is_running is False
    assert not r.sismember(RUNNING_QUEUES_KEY, "p1")


@pytest.mark.asyncio
async def test_validation_failure_retries_then_drops(r, channel, clock) -> None:
    put_character(r=r, character=make_character())
    broken = crafting_task("broken", duration=1_000, retry_count=2, max_retries=3)
    broken.activity_data.crafting_station = CraftingStation(
        station_id="forge",
        requirements=[TaskPrerequisite(type="level", requirement=10, description="Forge level 10", is_met=False)],
    )
    _seed_queue(r, clock, broken, harvesting_task("next", duration=1_000))
    scheduler = _scheduler(r, channel, clock)
    await _connect(scheduler.sync)

    clock.advance(1_000)
    report = await scheduler.run_cycle()

    assert report.retried == 1
    stored = get_queue(r=r, player_id="p1")
    assert stored is not None and stored.current_task is not None
    assert stored.current_task.id == "broken"
    assert stored.current_task.retry_count == 3
    assert stored.current_task.start_time == clock.now
    failed = [p for p in channel.sent["c1"] if p["type"] == "task_failed"][0]
    assert failed["data"]["will_retry"] is True

    clock.advance(1_000)
    report = await scheduler.run_cycle()

    assert report.dropped == 1
    stored = get_queue(r=r, player_id="p1")
    assert stored is not None and stored.current_task is not None
    assert stored.current_task.id == "next"
    assert stored.total_tasks_completed == 0
    character = get_character(r=r, user_id="p1")
    assert character is not None and character.experience == 0


@pytest.mark.asyncio
async def test_retry_disabled_drops_on_first_failure(r, channel, clock) -> None:
    put_character(r=r, character=make_character())
    _seed_queue(r, clock, harvesting_task("broken", duration=1_000, tools=[]), retry_enabled=False)
    scheduler = _scheduler(r, channel, clock)

    clock.advance(1_000)
    report = await scheduler.run_cycle()

    assert report.dropped == 1
    stored = get_queue(r=r, player_id="p1")
    assert stored is not None and stored.is_running is False


@pytest.mark.asyncio
async def test_validation_can_be_disabled(r, channel, clock) -> None:
    put_character(r=r, character=make_character())
    _seed_queue(r, clock, harvesting_task("broken", duration=1_000, tools=[]), validation_enabled=False)
    scheduler = _scheduler(r, channel, clock)

    clock.advance(1_000)
    report = await scheduler.run_cycle()

    assert report.completed == 1


@pytest.mark.asyncio
async def test_missing_character_counts_as_task_failure(r, channel, clock) -> None:
    _seed_queue(r, clock, harvesting_task(duration=1_000))
    scheduler = _scheduler(r, channel, clock)

    clock.advance(1_000)
    report = await scheduler.run_cycle()

    assert report.retried == 1
    stored = get_queue(r=r, player_id="p1")
    assert stored is not None and stored.current_task is not None
    assert stored.current_task.retry_count == 1


@pytest.mark.asyncio
async def test_paused_queue_is_skipped(r, channel, clock) -> None:
    put_character(r=r, character=make_character())
    queue = _seed_queue(r, clock, harvesting_task(duration=1_000))
    pause(queue, reason="afk", now=clock.now)
    save_queue(r=r, queue=queue, now=clock.now)
    scheduler = _scheduler(r, channel, clock)

    clock.advance(5_000)
    report = await scheduler.run_cycle()

    assert report.skipped == 1
    stored = get_queue(r=r, player_id="p1")
    assert stored is not None and stored.total_tasks_completed == 0


@pytest.mark.asyncio
async def test_locked_queue_is_skipped(r, channel, clock) -> None:
    put_character(r=r, character=make_character())
    _seed_queue(r, clock, harvesting_task(duration=1_000))
    scheduler = _scheduler(r, channel, clock)

    clock.advance(1_000)
    with queue_lock(r=r, player_id="p1"):
        report = await scheduler.run_cycle()

    assert report.skipped == 1
    assert report.completed == 0


@pytest.mark.asyncio
async def test_one_broken_queue_does_not_stop_the_cycle(r, channel, clock) -> None:
    put_character(r=r, character=make_character("p2"))
    _seed_queue(r, clock, harvesting_task(duration=1_000, player_id="p2"), player_id="p2")
    r.set(f"{QUEUE_KEY_PREFIX}p1", "{not json")
    r.sadd(RUNNING_QUEUES_KEY, "p1")
    scheduler = _scheduler(r, channel, clock)

    clock.advance(1_000)
    report = await scheduler.run_cycle()

    assert report.scanned == 2
    assert report.failed == 1
    assert report.completed == 1


@pytest.mark.asyncio
async def test_notifications_without_connections_go_to_mailbox(r, channel, clock) -> None:
    put_character(r=r, character=make_character())
    _seed_queue(r, clock, harvesting_task(duration=1_000))
    scheduler = _scheduler(r, channel, clock)

    clock.advance(1_000)
    await scheduler.run_cycle()

    entries = r.xrange("idle:notifications:p1")
    assert [fields["type"] for _, fields in entries][:2] == ["task_completed", "queue_updated"]
    assert r.ttl("idle:notifications:p1") > 0


@pytest.mark.asyncio
async def test_sync_queue_creates_then_advances(r, channel, clock) -> None:
    scheduler = _scheduler(r, channel, clock)

    created = await scheduler.sync_queue("p1")
    assert created.queue.version == 1
    assert created.queue.is_running is False

    again = await scheduler.sync_queue("p1")
    assert again.message == "Task queue synced successfully"
    assert again.queue.version == 1


@pytest.mark.asyncio
async def test_failed_queue_write_does_not_pay_rewards(r, channel, clock, monkeypatch) -> None:
    put_character(r=r, character=make_character())
    _seed_queue(r, clock, harvesting_task("a", duration=1_000))
    scheduler = _scheduler(r, channel, clock)

    def _boom(**_kwargs):
        raise ConnectionError("redis went away")

    monkeypatch.setattr(scheduler_mod, "save_queue", _boom)
    clock.advance(1_000)
    report = await scheduler.run_cycle()

    assert report.failed == 1
    character = get_character(r=r, user_id="p1")
    assert character is not None
    assert character.experience == 0
    assert character.inventory == {}
    stored = get_queue(r=r, player_id="p1")
    assert stored is not None and stored.total_tasks_completed == 0
