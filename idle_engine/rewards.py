"""Activity reward engine.

Two pure stages per activity variant:

1. ``execute_*`` derives an outcome (multipliers and probabilities, each clamped).
2. ``*_rewards`` rolls rewards from that outcome.

``execute_activity`` and ``calculate_rewards`` are the dispatch points. The
random source is injectable; any object with a ``random() -> float`` method
works, which is how tests force a particular draw.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Protocol

from idle_engine.api.models import (
    CharacterStats,
    CombatTaskData,
    CraftingTaskData,
    HarvestingTaskData,
    Task,
    TaskReward,
)


class RandomSource(Protocol):
    def random(self) -> float: ...


HARVESTING_BASE_EXPERIENCE = 25
CRAFTING_BASE_EXPERIENCE = 30
COMBAT_BASE_EXPERIENCE = 35
COMBAT_BASE_CURRENCY = 15

LEVEL_BONUS_PER_LEVEL = 0.05

SUCCESS_RATE_RANGE = (0.70, 0.95)
WIN_PROBABILITY_RANGE = (0.50, 0.90)
RARE_CHANCE_RANGE = (0.0, 0.30)

_CATEGORY_SKILLS: dict[str, str] = {
    "metallurgical": "mining",
    "mechanical": "mining",
    "botanical": "foraging",
    "alchemical": "foraging",
    "archaeological": "salvaging",
    "electrical": "crystal_extraction",
    "aeronautical": "crystal_extraction",
}


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(value, high))


def skill_for_category(category: str) -> str:
    return _CATEGORY_SKILLS.get(category, "mining")


def level_multiplier(player_level: int) -> float:
    return 1 + LEVEL_BONUS_PER_LEVEL * player_level


# ---- stage 1: execution outcomes ----


@dataclass(frozen=True, slots=True)
class HarvestingOutcome:
    efficiency: float
    base_yield: int
    rare_chance: float


@dataclass(frozen=True, slots=True)
class CraftingOutcome:
    success_rate: float
    quality_bonus: float
    material_efficiency: float
    experience_multiplier: float


@dataclass(frozen=True, slots=True)
class CombatOutcome:
    win_probability: float
    experience_multiplier: float
    loot_multiplier: float
    loot_chance: float
    damage_dealt: float


ActivityOutcome = HarvestingOutcome | CraftingOutcome | CombatOutcome


def execute_harvesting(data: HarvestingTaskData, stats: CharacterStats) -> HarvestingOutcome:
    tool_bonus = sum(b.value for tool in data.tools for b in tool.bonuses if b.type == "yield")
    skill = stats.harvesting_skills.get(skill_for_category(data.activity.category), 0)
    location_bonus = data.location.bonus_modifiers.get("yield", 0.0) if data.location else 0.0

    efficiency = 1 + tool_bonus * 0.01 + skill * 0.02 + location_bonus * 0.01
    table = data.activity.drop_table
    base_yield = max(1, len(table.guaranteed) + len(table.common) + len(table.uncommon))
    rare_chance = clamp(0.1 + skill * 0.001, *RARE_CHANCE_RANGE)
    return HarvestingOutcome(efficiency=efficiency, base_yield=base_yield, rare_chance=rare_chance)


def execute_crafting(data: CraftingTaskData) -> CraftingOutcome:
    skill_bonus = data.player_skill_level * 0.02
    station_bonus = 0.0
    if data.crafting_station is not None:
        station_bonus = sum(b.value for b in data.crafting_station.bonuses if b.type == "quality")

    success_rate = clamp(0.70 + skill_bonus + station_bonus * 0.01, *SUCCESS_RATE_RANGE)
    return CraftingOutcome(
        success_rate=success_rate,
        quality_bonus=skill_bonus + station_bonus * 0.01,
        material_efficiency=1 + skill_bonus * 0.5,
        experience_multiplier=data.recipe.required_level * 0.1,
    )


def _loot_multiplier(enemy_level: int) -> float:
    if enemy_level > 20:
        return 2.0
    if enemy_level > 10:
        return 1.5
    return 1.0


def execute_combat(data: CombatTaskData) -> CombatOutcome:
    level_advantage = max(0, data.player_level - data.enemy.level) * 0.1
    equipment_bonus = sum(e.stats.attack + e.stats.defense for e in data.equipment) * 0.01
    loot_multiplier = _loot_multiplier(data.enemy.level)

    return CombatOutcome(
        win_probability=clamp(0.5 + level_advantage + equipment_bonus, *WIN_PROBABILITY_RANGE),
        experience_multiplier=data.enemy.level * 0.15,
        loot_multiplier=loot_multiplier,
        loot_chance=clamp(0.3 * loot_multiplier, *RARE_CHANCE_RANGE),
        damage_dealt=data.player_stats.attack + equipment_bonus * 10,
    )


def execute_activity(task: Task, stats: CharacterStats) -> ActivityOutcome:
    match task.activity_data:
        case HarvestingTaskData() as data:
            return execute_harvesting(data, stats)
        case CraftingTaskData() as data:
            return execute_crafting(data)
        case CombatTaskData() as data:
            return execute_combat(data)
    raise ValueError(f"Unsupported task type: {task.type}")


# ---- stage 2: reward rolls ----


def harvesting_rewards(
    data: HarvestingTaskData, outcome: HarvestingOutcome, *, player_level: int, rng: RandomSource
) -> list[TaskReward]:
    table = data.activity.drop_table
    experience = math.floor(HARVESTING_BASE_EXPERIENCE * level_multiplier(player_level) * outcome.efficiency)
    rewards = [TaskReward(type="experience", quantity=experience)]

    primary = (table.guaranteed or table.common or [None])[0]
    quantity = math.floor(outcome.base_yield * outcome.efficiency * (1 + rng.random() * 0.5))
    rewards.append(
        TaskReward(
            type="resource",
            item_id=primary.item_id if primary else "generic_material",
            quantity=quantity,
            rarity="common",
        )
    )

    if rng.random() < outcome.rare_chance:
        rare = (table.rare or table.uncommon or [None])[0]
        rewards.append(
            TaskReward(
                type="resource",
                item_id=rare.item_id if rare else "steam_crystal",
                quantity=1,
                rarity="rare",
                is_rare=True,
            )
        )
    return rewards


def crafting_rewards(
    data: CraftingTaskData, outcome: CraftingOutcome, *, player_level: int, rng: RandomSource
) -> list[TaskReward]:
    experience = math.floor(
        CRAFTING_BASE_EXPERIENCE * level_multiplier(player_level) * outcome.experience_multiplier
    )
    rewards = [TaskReward(type="experience", quantity=experience)]

    if rng.random() < outcome.success_rate:
        quality = "uncommon" if outcome.quality_bonus > 0.5 else "common"
        for output in data.expected_outputs:
            rewards.append(
                TaskReward(type="item", item_id=output.item_id, quantity=output.quantity, rarity=quality)
            )
    return rewards


def combat_rewards(
    data: CombatTaskData, outcome: CombatOutcome, *, player_level: int, rng: RandomSource
) -> list[TaskReward]:
    multiplier = level_multiplier(player_level)
    experience = math.floor(COMBAT_BASE_EXPERIENCE * multiplier * outcome.experience_multiplier)
    rewards = [TaskReward(type="experience", quantity=experience)]

    if rng.random() < outcome.win_probability:
        currency = math.floor(COMBAT_BASE_CURRENCY * multiplier * outcome.loot_multiplier)
        rewards.append(TaskReward(type="currency", quantity=currency))

        if rng.random() < outcome.loot_chance:
            loot = data.enemy.loot_table[0] if data.enemy.loot_table else None
            rewards.append(
                TaskReward(
                    type="item",
                    item_id=loot.item_id if loot else "combat_trophy",
                    quantity=loot.quantity if loot else 1,
                    rarity=loot.rarity if loot else "common",
                )
            )
    return rewards


def calculate_rewards(
    task: Task,
    stats: CharacterStats,
    player_level: int,
    *,
    rng: RandomSource | None = None,
) -> list[TaskReward]:
    """Roll the rewards for one completion of ``task``."""

    source: RandomSource = rng if rng is not None else random.Random()
    match task.activity_data:
        case HarvestingTaskData() as data:
            return harvesting_rewards(data, execute_harvesting(data, stats), player_level=player_level, rng=source)
        case CraftingTaskData() as data:
            return crafting_rewards(data, execute_crafting(data), player_level=player_level, rng=source)
        case CombatTaskData() as data:
            return combat_rewards(data, execute_combat(data), player_level=player_level, rng=source)
    raise ValueError(f"Unsupported task type: {task.type}")
