from __future__ import annotations

import os
from collections.abc import Generator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import fakeredis
import pytest

from idle_engine.api.models import (
    Character,
    CharacterStats,
    CombatTaskData,
    CraftingOutput,
    CraftingRecipe,
    CraftingTaskData,
    DropEntry,
    DropTable,
    Enemy,
    EquippedTool,
    HarvestingActivity,
    HarvestingTaskData,
    PlayerCombatStats,
    Task,
    TaskType,
    ToolBonus,
)
from idle_engine.errors import NotificationDeliveryFailure


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    """Load repo .env for local runs; CI runs with a clean environment."""

    if os.environ.get("CI"):
        return

    env_path = Path(__file__).resolve().parents[1] / ".env"
    if env_path.exists():
        from dotenv import load_dotenv

        load_dotenv(dotenv_path=env_path, override=False)


class FixedDraw:
    """Deterministic random source: replays ``values`` in order, then repeats the last."""

    def __init__(self, *values: float) -> None:
        self.values = list(values) or [0.0]
        self.calls = 0

    def random(self) -> float:
        value = self.values[min(self.calls, len(self.values) - 1)]
        self.calls += 1
        return value


class FakeChannel:
    """Records payloads per connection; ids in ``failing`` raise on send."""

    def __init__(self) -> None:
        self.sent: dict[str, list[dict[str, Any]]] = {}
        self.failing: set[str] = set()

    async def send(self, connection_id: str, payload: dict[str, Any]) -> None:
        if connection_id in self.failing:
            raise NotificationDeliveryFailure(f"{connection_id} is gone")
        self.sent.setdefault(connection_id, []).append(payload)

    def types(self, connection_id: str) -> list[str]:
        return [p["type"] for p in self.sent.get(connection_id, [])]


class Clock:
    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture()
def r() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture()
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def client_and_redis():
    """FastAPI TestClient wired to a fresh fakeredis instance."""

    from fastapi.testclient import TestClient

    from idle_engine.api.deps import get_redis
    from idle_engine.main import app

    fake = fakeredis.FakeRedis(decode_responses=True)

    def _override() -> Generator[fakeredis.FakeRedis, None, None]:
        yield fake

    app.dependency_overrides[get_redis] = _override
    with TestClient(app) as c:
        yield c, fake
    app.dependency_overrides.clear()


# ---- factories ----


def make_character(
    user_id: str = "p1",
    *,
    level: int = 1,
    experience: int = 0,
    mining: int = 0,
    stats: CharacterStats | None = None,
    last_active_at: datetime | None = None,
    **kwargs: Any,
) -> Character:
    return Character(
        user_id=user_id,
        name=f"char-{user_id}",
        level=level,
        experience=experience,
        stats=stats or CharacterStats(harvesting_skills={"mining": mining} if mining else {}),
        last_active_at=last_active_at or datetime(2024, 1, 1, tzinfo=UTC),
        **kwargs,
    )


def harvesting_task(
    task_id: str = "t-harvest",
    *,
    player_id: str = "p1",
    duration: int = 60_000,
    tools: list[EquippedTool] | None = None,
    yield_bonus: float = 0.0,
    start_time: int = 0,
    **kwargs: Any,
) -> Task:
    if tools is None:
        tools = [EquippedTool(tool_id="pick", name="Brass Pick", bonuses=[ToolBonus(type="yield", value=yield_bonus)])]
    return Task(
        id=task_id,
        type=TaskType.harvesting,
        name="Mine copper",
        duration=duration,
        start_time=start_time,
        player_id=player_id,
        activity_data=HarvestingTaskData(
            activity=HarvestingActivity(
                activity_id="copper_vein",
                name="Copper Vein",
                category="metallurgical",
                drop_table=DropTable(
                    guaranteed=[DropEntry(item_id="copper_ore")],
                    common=[],
                    uncommon=[],
                    rare=[DropEntry(item_id="steam_crystal")],
                ),
            ),
            tools=tools,
        ),
        **kwargs,
    )


def crafting_task(
    task_id: str = "t-craft",
    *,
    player_id: str = "p1",
    duration: int = 60_000,
    skill_level: int = 1,
    required_level: int = 5,
    **kwargs: Any,
) -> Task:
    return Task(
        id=task_id,
        type=TaskType.crafting,
        name="Craft gear",
        duration=duration,
        start_time=0,
        player_id=player_id,
        activity_data=CraftingTaskData(
            recipe=CraftingRecipe(recipe_id="gear", name="Brass Gear", required_level=required_level),
            player_skill_level=skill_level,
            expected_outputs=[CraftingOutput(item_id="brass_gear", quantity=2)],
        ),
        **kwargs,
    )


def combat_task(
    task_id: str = "t-combat",
    *,
    player_id: str = "p1",
    duration: int = 60_000,
    enemy_level: int = 3,
    player_level: int = 1,
    **kwargs: Any,
) -> Task:
    return Task(
        id=task_id,
        type=TaskType.combat,
        name="Fight automaton",
        duration=duration,
        start_time=0,
        player_id=player_id,
        activity_data=CombatTaskData(
            enemy=Enemy(enemy_id="automaton", name="Rusty Automaton", level=enemy_level),
            player_level=player_level,
            player_stats=PlayerCombatStats(),
        ),
        **kwargs,
    )
