from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TaskType(StrEnum):
    harvesting = "harvesting"
    crafting = "crafting"
    combat = "combat"


# ---- shared building blocks ----


class TaskPrerequisite(BaseModel):
    type: Literal["level", "skill", "item", "activity", "stat", "equipment"] = "level"
    requirement: str | int = ""
    description: str = ""
    is_met: bool = True


class ResourceRequirement(BaseModel):
    resource_id: str
    resource_name: str = ""
    quantity_required: int = 0
    quantity_available: int = 0
    is_sufficient: bool = True


class TaskReward(BaseModel):
    """A single reward roll. Frozen: once produced it is only ever added to a character."""

    model_config = ConfigDict(frozen=True)

    type: Literal["experience", "currency", "resource", "item"]
    item_id: str | None = None
    quantity: int = Field(..., ge=0)
    rarity: str | None = None
    is_rare: bool = False


# ---- harvesting payload ----


class ToolBonus(BaseModel):
    type: Literal["speed", "yield", "quality", "efficiency"]
    value: float = 0.0
    description: str = ""


class EquippedTool(BaseModel):
    tool_id: str
    name: str = ""
    type: Literal["harvesting", "crafting", "combat"] = "harvesting"
    bonuses: list[ToolBonus] = Field(default_factory=list)
    durability: int = 100
    max_durability: int = 100


class DropEntry(BaseModel):
    item_id: str
    quantity: int = 1
    rarity: str = "common"


class DropTable(BaseModel):
    guaranteed: list[DropEntry] = Field(default_factory=list)
    common: list[DropEntry] = Field(default_factory=list)
    uncommon: list[DropEntry] = Field(default_factory=list)
    rare: list[DropEntry] = Field(default_factory=list)


class HarvestingActivity(BaseModel):
    activity_id: str
    name: str = ""
    # metallurgical / mechanical / botanical / alchemical / archaeological / electrical / aeronautical
    category: str = "metallurgical"
    drop_table: DropTable = Field(default_factory=DropTable)


class HarvestingLocation(BaseModel):
    location_id: str
    name: str = ""
    bonus_modifiers: dict[str, float] = Field(default_factory=dict)
    requirements: list[TaskPrerequisite] = Field(default_factory=list)


class HarvestingTaskData(BaseModel):
    kind: Literal["harvesting"] = "harvesting"
    activity: HarvestingActivity
    location: HarvestingLocation | None = None
    tools: list[EquippedTool] = Field(default_factory=list)


# ---- crafting payload ----


class CraftingBonus(BaseModel):
    type: Literal["speed", "quality", "material_efficiency", "experience"]
    value: float = 0.0


class CraftingStation(BaseModel):
    station_id: str
    name: str = ""
    type: Literal["basic", "advanced", "master"] = "basic"
    bonuses: list[CraftingBonus] = Field(default_factory=list)
    requirements: list[TaskPrerequisite] = Field(default_factory=list)


class CraftingMaterial(BaseModel):
    material_id: str
    name: str = ""
    quantity_required: int = 1
    quantity_available: int = 0


class CraftingOutput(BaseModel):
    item_id: str
    quantity: int = 1
    rarity: str | None = None


class CraftingRecipe(BaseModel):
    recipe_id: str
    name: str = ""
    required_level: int = 1


class CraftingTaskData(BaseModel):
    kind: Literal["crafting"] = "crafting"
    recipe: CraftingRecipe
    materials: list[CraftingMaterial] = Field(default_factory=list)
    crafting_station: CraftingStation | None = None
    player_skill_level: int = 1
    expected_outputs: list[CraftingOutput] = Field(default_factory=list)


# ---- combat payload ----


class EquipmentStats(BaseModel):
    attack: int = 0
    defense: int = 0
    health: int = 0
    speed: int = 0


class Equipment(BaseModel):
    equipment_id: str
    name: str = ""
    type: Literal["weapon", "armor", "accessory"] = "weapon"
    stats: EquipmentStats = Field(default_factory=EquipmentStats)
    durability: int = 100
    max_durability: int = 100


class LootEntry(BaseModel):
    item_id: str
    quantity: int = 1
    rarity: str = "common"


class Enemy(BaseModel):
    enemy_id: str
    name: str = ""
    level: int = 1
    loot_table: list[LootEntry] = Field(default_factory=list)


class PlayerCombatStats(BaseModel):
    attack: int = 10
    defense: int = 10
    health: int = 100
    speed: int = 10


class CombatTaskData(BaseModel):
    kind: Literal["combat"] = "combat"
    enemy: Enemy
    player_level: int = 1
    player_stats: PlayerCombatStats = Field(default_factory=PlayerCombatStats)
    equipment: list[Equipment] = Field(default_factory=list)


ActivityData = Annotated[
    HarvestingTaskData | CraftingTaskData | CombatTaskData,
    Field(discriminator="kind"),
]


class Task(BaseModel):
    id: str
    type: TaskType
    name: str = ""
    description: str = ""
    # Milliseconds.
    duration: int = Field(..., gt=0)
    start_time: int = 0
    player_id: str
    activity_data: ActivityData

    prerequisites: list[TaskPrerequisite] = Field(default_factory=list)
    resource_requirements: list[ResourceRequirement] = Field(default_factory=list)

    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    completed: bool = False
    rewards: list[TaskReward] = Field(default_factory=list)

    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)

    @model_validator(mode="after")
    def _check_consistency(self) -> "Task":
        if self.activity_data.kind != self.type.value:
            raise ValueError(f"activity_data kind '{self.activity_data.kind}' does not match task type '{self.type.value}'")
        if self.completed and self.progress != 1.0:
            raise ValueError("completed task must have progress == 1")
        return self

    def mark_completed(self, rewards: list[TaskReward]) -> None:
        self.progress = 1.0
        self.completed = True
        self.rewards = list(rewards)


class QueueConfig(BaseModel):
    max_queue_size: int = Field(default=50, ge=1)
    max_task_duration: int = 86_400_000
    auto_start: bool = True
    retry_enabled: bool = True
    max_retries: int = 3
    validation_enabled: bool = True
    sync_enabled: bool = True
    offline_processing_enabled: bool = True


class TaskQueue(BaseModel):
    player_id: str
    current_task: Task | None = None
    queued_tasks: list[Task] = Field(default_factory=list)

    is_running: bool = False
    is_paused: bool = False
    pause_reason: str | None = None
    paused_at: int | None = None

    total_tasks_completed: int = 0
    total_time_spent: int = 0

    config: QueueConfig = Field(default_factory=QueueConfig)

    # Bumped and recomputed on every persisted mutation.
    version: int = 0
    checksum: str = ""

    created_at: int = 0
    last_updated: int = 0
    last_synced: int = 0
    last_processed: int = 0

    @model_validator(mode="after")
    def _check_invariants(self) -> "TaskQueue":
        if (self.current_task is None) == self.is_running:
            raise ValueError("current_task must be set exactly when the queue is running")
        if self.is_paused and not self.is_running:
            raise ValueError("a paused queue must still hold its running task")
        if len(self.queued_tasks) > self.config.max_queue_size:
            raise ValueError("queued_tasks exceeds max_queue_size")
        return self


# ---- character (owned by collaborators; read + relative updates only) ----


class CharacterStats(BaseModel):
    strength: int = 10
    dexterity: int = 10
    intelligence: int = 10
    vitality: int = 10
    harvesting_skills: dict[str, int] = Field(default_factory=dict)
    crafting_skills: dict[str, int] = Field(default_factory=dict)
    combat_skills: dict[str, int] = Field(default_factory=dict)


class Specialization(BaseModel):
    tank_progress: int = 0
    healer_progress: int = 0
    dps_progress: int = 0
    primary_role: Literal["tank", "healer", "dps"] | None = None


class CurrentActivity(BaseModel):
    type: TaskType
    sub_type: str | None = None
    started_at: datetime


class Character(BaseModel):
    user_id: str
    name: str = ""
    level: int = 1
    experience: int = 0
    currency: int = 0
    stats: CharacterStats = Field(default_factory=CharacterStats)
    specialization: Specialization = Field(default_factory=Specialization)
    inventory: dict[str, int] = Field(default_factory=dict)
    current_activity: CurrentActivity | None = None
    last_active_at: datetime


# ---- real-time sync ----


class Connection(BaseModel):
    connection_id: str
    player_id: str
    connected_at: int
    last_ping: int
    last_heartbeat: int
    queue_version: int = 0
    is_healthy: bool = True


DeltaType = Literal["task_added", "task_removed", "task_updated", "queue_state_changed", "task_progress"]
ConflictType = Literal["task_modified", "task_added", "task_removed", "queue_state_changed"]
# Built-ins are server_wins, client_wins and merge; SyncProtocol accepts extra strategies.
ResolutionName = str

NotificationType = Literal[
    "task_started",
    "task_progress",
    "task_completed",
    "task_failed",
    "queue_updated",
    "sync_response",
    "delta_update",
    "heartbeat_response",
    "conflict_resolution",
]


class DeltaUpdate(BaseModel):
    type: DeltaType
    player_id: str
    task_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: int
    version: int
    checksum: str


class Conflict(BaseModel):
    conflict_id: str
    type: ConflictType
    server_value: Any = None
    client_value: Any = None
    resolution: ResolutionName | None = None


class Notification(BaseModel):
    type: NotificationType
    player_id: str
    task_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: int
    message_id: str


class HeartbeatRequest(BaseModel):
    timestamp: int = 0
    queue_version: int = 0


class SyncRequest(BaseModel):
    last_sync_timestamp: int = 0
    queue_version: int = 0
    # Any of: queue, progress, character, connections. Empty means everything.
    requested_data: list[str] = Field(default_factory=list)


class ConflictResolutionRequest(BaseModel):
    conflict_id: str
    type: ConflictType = "queue_state_changed"
    server_value: Any = None
    client_value: Any = None
    resolution: ResolutionName | None = None


# ---- HTTP request/response bodies ----


class AddTaskRequest(BaseModel):
    task: Task


class PauseRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=200)


class TaskProgress(BaseModel):
    task_id: str
    progress: float
    time_remaining: int
    is_complete: bool


class QueueSummary(BaseModel):
    current_task: Task | None
    queue_length: int
    queued_tasks: list[Task]
    is_running: bool
    is_paused: bool
    total_completed: int
    version: int


class QueueStatusResponse(BaseModel):
    queue: QueueSummary
    current_progress: TaskProgress | None = None
    message: str | None = None


class AddTaskResponse(BaseModel):
    task_id: str
    started: bool
    message: str


class OfflineProgress(BaseModel):
    experience_gained: int = 0
    currency_gained: int = 0
    skills_gained: dict[str, int] = Field(default_factory=dict)
    items_found: list[str] = Field(default_factory=list)
    specialization_progress: dict[str, int] = Field(default_factory=dict)
    notifications: list[str] = Field(default_factory=list)


class OfflineProgressReport(BaseModel):
    message: str
    offline_minutes: int
    progress: OfflineProgress | None = None


class CycleReport(BaseModel):
    scanned: int = 0
    completed: int = 0
    retried: int = 0
    dropped: int = 0
    in_progress: int = 0
    skipped: int = 0
    failed: int = 0
