"""Task precondition checks.

Each activity variant has one check function; ``validation_errors`` dispatches on
the task's payload. ``validate`` is the boolean entry point used by the
scheduler and never raises.
"""

from __future__ import annotations

import logging

from idle_engine.api.models import (
    Character,
    CombatTaskData,
    CraftingTaskData,
    HarvestingTaskData,
    Task,
)


logger = logging.getLogger(__name__)

# Players may fight enemies up to this many levels above them.
COMBAT_LEVEL_WINDOW = 5


def _harvesting_errors(task: Task, data: HarvestingTaskData) -> list[str]:
    errors: list[str] = []
    if not data.tools:
        errors.append(f"No tools available for harvesting task {task.id}")
    if data.location is not None:
        for req in data.location.requirements:
            if not req.is_met:
                errors.append(f"Location requirement not met for task {task.id}: {req.description}")
    return errors


def _crafting_errors(task: Task, data: CraftingTaskData) -> list[str]:
    # Material sufficiency is informational only.
    for material in data.materials:
        if material.quantity_available < material.quantity_required:
            logger.info(
                "Crafting task %s: material %s short (%s/%s), not enforced",
                task.id,
                material.name or material.material_id,
                material.quantity_available,
                material.quantity_required,
            )

    errors: list[str] = []
    if data.crafting_station is not None:
        for req in data.crafting_station.requirements:
            if not req.is_met:
                errors.append(f"Crafting station requirement not met for task {task.id}: {req.description}")
    return errors


def _combat_errors(task: Task, data: CombatTaskData, character: Character) -> list[str]:
    errors: list[str] = []
    if character.level < data.enemy.level - COMBAT_LEVEL_WINDOW:
        errors.append(
            f"Player level {character.level} too low for enemy level {data.enemy.level} in task {task.id}"
        )
    for item in data.equipment:
        if item.durability <= 0:
            errors.append(f"Equipment {item.name or item.equipment_id} is broken for task {task.id}")
    return errors


def validation_errors(task: Task, character: Character) -> list[str]:
    match task.activity_data:
        case HarvestingTaskData() as data:
            return _harvesting_errors(task, data)
        case CraftingTaskData() as data:
            return _crafting_errors(task, data)
        case CombatTaskData() as data:
            return _combat_errors(task, data, character)
    return [f"Unknown task type: {task.type}"]


def validate(task: Task, character: Character) -> bool:
    try:
        errors = validation_errors(task, character)
    except Exception:
        logger.exception("Error validating task %s", getattr(task, "id", "?"))
        return False

    for err in errors:
        logger.warning(err)
    return not errors
