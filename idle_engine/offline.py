"""Offline catch-up.

Credits a returning player with minutes-based progress for the activity they
left running. The formulas here are intentionally independent of the live
reward engine in ``idle_engine.rewards``.
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from datetime import UTC, datetime

import redis

from idle_engine.api.models import Character, OfflineProgress, OfflineProgressReport, TaskType
from idle_engine.config import EngineSettings
from idle_engine.queue_store import apply_character_update, get_character, get_queue, utc_now
from idle_engine.rewards import RandomSource


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OfflineRates:
    experience: float
    currency: float
    skill: float
    default_skill: str
    skill_group: str
    item_chance_per_minute: float
    item_chance_cap: float
    item_pool: tuple[str, ...]


OFFLINE_RATES: dict[TaskType, OfflineRates] = {
    TaskType.crafting: OfflineRates(
        experience=1.2,
        currency=0.8,
        skill=0.5,
        default_skill="clockmaking",
        skill_group="crafting_skills",
        item_chance_per_minute=0.01,
        item_chance_cap=0.8,
        item_pool=("Clockwork Trinket",),
    ),
    TaskType.harvesting: OfflineRates(
        experience=1.0,
        currency=0.6,
        skill=0.6,
        default_skill="mining",
        skill_group="harvesting_skills",
        item_chance_per_minute=0.02,
        item_chance_cap=0.9,
        item_pool=("Steam Crystals", "Copper Gears", "Iron Pipes"),
    ),
    TaskType.combat: OfflineRates(
        experience=1.5,
        currency=1.0,
        skill=0.4,
        default_skill="melee",
        skill_group="combat_skills",
        item_chance_per_minute=0.015,
        item_chance_cap=0.7,
        item_pool=("Mechanical Sword", "Steam-Powered Shield", "Brass Knuckles"),
    ),
}


def progress_rate(level: int) -> float:
    return 1 + level * 0.1


def specialization_gains(activity: TaskType, character: Character, minutes: int) -> dict[str, int]:
    s = character.stats
    match activity:
        case TaskType.crafting:
            return {"dps_progress": math.floor(minutes * (s.intelligence / 100) * 0.3)}
        case TaskType.harvesting:
            return {"healer_progress": math.floor(minutes * (s.dexterity / 100) * 0.2)}
        case TaskType.combat:
            return {
                "tank_progress": math.floor(minutes * (s.strength + s.vitality) / 200 * 0.4),
                "dps_progress": math.floor(minutes * (s.strength + s.dexterity) / 200 * 0.3),
            }
    return {}


def roll_offline_progress(character: Character, minutes: int, *, rng: RandomSource) -> OfflineProgress:
    """Pure part of the calculation; ``character.current_activity`` must be set."""

    if character.current_activity is None:
        raise ValueError(f"Character {character.user_id} has no current activity")
    activity = character.current_activity.type
    rates = OFFLINE_RATES[activity]
    rate = progress_rate(character.level)

    skill = character.current_activity.sub_type or rates.default_skill
    progress = OfflineProgress(
        experience_gained=math.floor(minutes * rate * rates.experience),
        currency_gained=math.floor(minutes * rate * rates.currency),
        skills_gained={skill: math.floor(minutes * rate * rates.skill)},
        specialization_progress=specialization_gains(activity, character, minutes),
    )

    chance = min(rates.item_chance_cap, minutes * rates.item_chance_per_minute)
    if rng.random() < chance:
        idx = min(int(rng.random() * len(rates.item_pool)), len(rates.item_pool) - 1)
        progress.items_found.append(rates.item_pool[idx])

    progress.notifications = progress_messages(progress, minutes)
    return progress


def _format_duration(minutes: int) -> str:
    hours, mins = divmod(minutes, 60)
    if hours and mins:
        return f"{hours}h {mins}m"
    if hours:
        return f"{hours} hour{'s' if hours != 1 else ''}"
    return f"{mins} minute{'s' if mins != 1 else ''}"


def progress_messages(progress: OfflineProgress, minutes: int) -> list[str]:
    out = [f"While you were away for {_format_duration(minutes)}, your character kept working."]
    if progress.experience_gained:
        out.append(f"Gained {progress.experience_gained} experience.")
    if progress.currency_gained:
        out.append(f"Earned {progress.currency_gained} currency.")
    for skill, gain in progress.skills_gained.items():
        if gain:
            out.append(f"{skill.replace('_', ' ').title()} skill increased by {gain}.")
    for item in progress.items_found:
        out.append(f"Found {item}!")
    return out


def _offline_minutes(last_active_at: datetime, now: datetime) -> int:
    # Naive timestamps are stored as UTC.
    if last_active_at.tzinfo is None:
        last_active_at = last_active_at.replace(tzinfo=UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return math.floor((now - last_active_at).total_seconds() * 1000 / 60_000)


def calculate_offline_progress(
    *,
    r: redis.Redis,
    user_id: str,
    now: datetime | None = None,
    rng: RandomSource | None = None,
    settings: EngineSettings | None = None,
) -> OfflineProgressReport:
    settings = settings or EngineSettings()
    ts = now or utc_now()

    character = get_character(r=r, user_id=user_id)
    if character is None:
        raise ValueError("Character not found")

    queue = get_queue(r=r, player_id=user_id)
    if queue is not None and not queue.config.offline_processing_enabled:
        return OfflineProgressReport(message="Offline processing is disabled", offline_minutes=0)

    elapsed = _offline_minutes(character.last_active_at, ts)
    if elapsed < 1:
        return OfflineProgressReport(message="No offline progress to calculate", offline_minutes=0)
    minutes = min(elapsed, settings.offline_cap_minutes)

    if character.current_activity is None:
        apply_character_update(r=r, user_id=user_id, increments={}, sets={"last_active_at": ts.isoformat()})
        return OfflineProgressReport(message="No activity in progress", offline_minutes=minutes)

    progress = roll_offline_progress(character, minutes, rng=rng if rng is not None else random.Random())

    rates = OFFLINE_RATES[character.current_activity.type]
    increments: dict[str, int] = {
        "experience": progress.experience_gained,
        "currency": progress.currency_gained,
    }
    for skill, gain in progress.skills_gained.items():
        increments[f"stats.{rates.skill_group}.{skill}"] = gain
    for field, gain in progress.specialization_progress.items():
        increments[f"specialization.{field}"] = gain
    for item in progress.items_found:
        increments[f"inventory.{item}"] = increments.get(f"inventory.{item}", 0) + 1

    updated = apply_character_update(r=r, user_id=user_id, increments=increments, sets={"last_active_at": ts.isoformat()})
    if updated is None:
        raise ValueError("Character not found")

    logger.info(
        "Offline progress for %s over %s min: %s exp, %s currency, items=%s",
        user_id,
        minutes,
        progress.experience_gained,
        progress.currency_gained,
        progress.items_found,
    )
    return OfflineProgressReport(
        message="Offline progress calculated successfully",
        offline_minutes=minutes,
        progress=progress,
    )
