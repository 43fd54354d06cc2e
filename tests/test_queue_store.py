from __future__ import annotations

import pytest

from idle_engine.api.models import TaskQueue, TaskReward
from idle_engine.errors import QueueBusyError
from idle_engine.lock import queue_lock
from idle_engine.queue_store import (
    RUNNING_QUEUES_KEY,
    apply_character_update,
    apply_rewards_to_character,
    compute_queue_checksum,
    get_character,
    get_queue,
    list_running_player_ids,
    new_queue,
    put_character,
    reward_increments,
    save_queue,
    verify_queue_checksum,
)
from idle_engine.queue_ops import enqueue_task

from conftest import harvesting_task, make_character


def test_save_queue_bumps_version_and_checksum(r) -> None:
    queue = new_queue(player_id="p1", now=1_000)
    save_queue(r=r, queue=queue, now=1_000)
    first_checksum = queue.checksum
    assert queue.version == 1

    enqueue_task(queue, harvesting_task(), now=2_000)
    save_queue(r=r, queue=queue, now=2_000)

    stored = get_queue(r=r, player_id="p1")
    assert stored is not None
    assert stored.version == 2
    assert stored.checksum != first_checksum
    assert verify_queue_checksum(stored)


def test_checksum_ignores_bookkeeping_fields() -> None:
    queue = new_queue(player_id="p1", now=1_000)
    before = compute_queue_checksum(queue)
    queue.version = 99
    queue.last_updated = 5_000
    assert compute_queue_checksum(queue) == before


def test_tampered_queue_fails_checksum(r) -> None:
    queue = new_queue(player_id="p1")
    save_queue(r=r, queue=queue)
    queue.total_tasks_completed = 42
    assert not verify_queue_checksum(queue)


def test_running_index_follows_is_running(r) -> None:
    queue = new_queue(player_id="p1")
    enqueue_task(queue, harvesting_task(), now=0)
    save_queue(r=r, queue=queue)
    assert list_running_player_ids(r=r) == ["p1"]

    queue.current_task = None
    queue.is_running = False
    save_queue(r=r, queue=queue)
    assert not r.sismember(RUNNING_QUEUES_KEY, "p1")


def test_queue_invariants_are_enforced_on_load() -> None:
    with pytest.raises(ValueError):
        TaskQueue(player_id="p1", is_running=True)
    with pytest.raises(ValueError):
        TaskQueue(player_id="p1", current_task=harvesting_task())


def test_apply_character_update_adds_and_levels_up(r) -> None:
    put_character(r=r, character=make_character(experience=900))

    updated = apply_character_update(
        r=r,
        user_id="p1",
        increments={"experience": 250, "currency": 10, "stats.harvesting_skills.mining": 3, "inventory.copper_ore": 2},
    )

    assert updated is not None
    assert updated.experience == 1150
    assert updated.level == 2
    assert updated.currency == 10
    assert updated.stats.harvesting_skills["mining"] == 3
    assert updated.inventory == {"copper_ore": 2}


def test_apply_character_update_never_lowers_level(r) -> None:
    put_character(r=r, character=make_character(level=7, experience=0))
    updated = apply_character_update(r=r, user_id="p1", increments={"currency": 1})
    assert updated is not None and updated.level == 7


def test_apply_character_update_missing_character(r) -> None:
    assert apply_character_update(r=r, user_id="ghost", increments={"experience": 1}) is None


def test_reward_increments_fold_by_target() -> None:
    rewards = [
        TaskReward(type="experience", quantity=10),
        TaskReward(type="experience", quantity=5),
        TaskReward(type="currency", quantity=3),
        TaskReward(type="resource", item_id="copper_ore", quantity=2),
        TaskReward(type="item", item_id="copper_ore", quantity=1),
    ]
    assert reward_increments(rewards) == {"experience": 15, "currency": 3, "inventory.copper_ore": 3}


def test_rewards_accumulate_across_updates(r) -> None:
    put_character(r=r, character=make_character())
    apply_rewards_to_character(r=r, user_id="p1", rewards=[TaskReward(type="experience", quantity=30)])
    apply_rewards_to_character(r=r, user_id="p1", rewards=[TaskReward(type="experience", quantity=40)])

    character = get_character(r=r, user_id="p1")
    assert character is not None
    assert character.experience == 70


def test_queue_lock_is_exclusive_and_released(r) -> None:
    with queue_lock(r=r, player_id="p1"):
        with pytest.raises(QueueBusyError):
            with queue_lock(r=r, player_id="p1"):
                pass

    with queue_lock(r=r, player_id="p1") as token:
        assert token
