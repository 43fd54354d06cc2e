from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
import redis

from idle_engine.api.deps import get_redis, get_scheduler, get_settings, get_sync
from idle_engine.api.models import (
    AddTaskRequest,
    AddTaskResponse,
    Conflict,
    ConflictResolutionRequest,
    CycleReport,
    DeltaUpdate,
    HeartbeatRequest,
    OfflineProgressReport,
    PauseRequest,
    QueueStatusResponse,
    SyncRequest,
)
from idle_engine.config import EngineSettings
from idle_engine.errors import QueueBusyError
from idle_engine.mailbox import Mailbox, read_mailbox
from idle_engine.offline import calculate_offline_progress
from idle_engine.queue_ops import add_task, get_queue_status, pause_queue, remove_task, resume_queue, stop_tasks
from idle_engine.scheduler import QueueScheduler
from idle_engine.sync import SyncProtocol
from idle_engine.websocket_hub import hub

router = APIRouter()
logger = logging.getLogger(__name__)


def _http_error(e: ValueError) -> HTTPException:
    if isinstance(e, QueueBusyError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if "not found" in str(e).lower():
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.websocket("/ws/player/{player_id}")
async def player_updates_ws(
    websocket: WebSocket,
    player_id: str,
    sync: SyncProtocol = Depends(get_sync),
) -> None:
    connection_id = uuid4().hex
    await hub.connect(connection_id, websocket)
    await sync.store_connection(connection_id, player_id)
    await websocket.send_json({"type": "connected", "connection_id": connection_id, "player_id": player_id})

    try:
        while True:
            message = await websocket.receive_json()
            await _dispatch_client_message(sync, connection_id, websocket, message)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(connection_id)
        await sync.remove_connection(connection_id)


async def _dispatch_client_message(
    sync: SyncProtocol, connection_id: str, websocket: WebSocket, message: Any
) -> None:
    if not isinstance(message, dict):
        await websocket.send_json({"type": "error", "detail": "message must be a JSON object"})
        return

    kind = message.get("type")
    payload = message.get("data") or {}
    try:
        match kind:
            case "heartbeat":
                await sync.handle_heartbeat(connection_id, HeartbeatRequest.model_validate(payload))
            case "sync_request":
                await sync.handle_sync_request(connection_id, SyncRequest.model_validate(payload))
            case "delta_update":
                applied = await sync.handle_delta_update(connection_id, DeltaUpdate.model_validate(payload))
                await websocket.send_json({"type": "delta_ack", "applied": applied})
            case "conflict_resolution":
                resolved = await sync.handle_conflict_resolution(
                    connection_id, ConflictResolutionRequest.model_validate(payload)
                )
                await websocket.send_json({"type": "resolution_ack", "resolved": resolved is not None})
            case _:
                await websocket.send_json({"type": "error", "detail": f"unknown message type: {kind!r}"})
    except ValidationError as e:
        logger.warning("Invalid %s message from %s: %s", kind, connection_id, e)
        await websocket.send_json({"type": "error", "detail": f"invalid {kind} payload"})


@router.get("/healthcheck")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/queue/{player_id}", response_model=QueueStatusResponse)
async def get_queue_route(player_id: str, r: redis.Redis = Depends(get_redis)) -> QueueStatusResponse:
    try:
        return get_queue_status(r=r, player_id=player_id)
    except ValueError as e:
        raise _http_error(e) from e


@router.post("/queue/{player_id}/sync", response_model=QueueStatusResponse)
async def sync_queue_route(
    player_id: str, scheduler: QueueScheduler = Depends(get_scheduler)
) -> QueueStatusResponse:
    try:
        return await scheduler.sync_queue(player_id)
    except ValueError as e:
        raise _http_error(e) from e


@router.post("/queue/{player_id}/tasks", response_model=AddTaskResponse, status_code=status.HTTP_201_CREATED)
async def add_task_route(
    player_id: str,
    payload: AddTaskRequest,
    r: redis.Redis = Depends(get_redis),
    sync: SyncProtocol = Depends(get_sync),
    settings: EngineSettings = Depends(get_settings),
) -> AddTaskResponse:
    try:
        return await add_task(r=r, sync=sync, player_id=player_id, task=payload.task, lock_ttl_ms=settings.lock_ttl_ms)
    except ValueError as e:
        raise _http_error(e) from e


@router.delete("/queue/{player_id}/tasks/{task_id}", response_model=QueueStatusResponse)
async def remove_task_route(
    player_id: str,
    task_id: str,
    r: redis.Redis = Depends(get_redis),
    sync: SyncProtocol = Depends(get_sync),
    settings: EngineSettings = Depends(get_settings),
) -> QueueStatusResponse:
    try:
        return await remove_task(r=r, sync=sync, player_id=player_id, task_id=task_id, lock_ttl_ms=settings.lock_ttl_ms)
    except ValueError as e:
        raise _http_error(e) from e


@router.post("/queue/{player_id}/stop", response_model=QueueStatusResponse)
async def stop_tasks_route(
    player_id: str,
    r: redis.Redis = Depends(get_redis),
    sync: SyncProtocol = Depends(get_sync),
    settings: EngineSettings = Depends(get_settings),
) -> QueueStatusResponse:
    try:
        return await stop_tasks(r=r, sync=sync, player_id=player_id, lock_ttl_ms=settings.lock_ttl_ms)
    except ValueError as e:
        raise _http_error(e) from e


@router.post("/queue/{player_id}/pause", response_model=QueueStatusResponse)
async def pause_queue_route(
    player_id: str,
    payload: PauseRequest | None = None,
    r: redis.Redis = Depends(get_redis),
    sync: SyncProtocol = Depends(get_sync),
    settings: EngineSettings = Depends(get_settings),
) -> QueueStatusResponse:
    reason = payload.reason if payload is not None else None
    try:
        return await pause_queue(r=r, sync=sync, player_id=player_id, reason=reason, lock_ttl_ms=settings.lock_ttl_ms)
    except ValueError as e:
        raise _http_error(e) from e


@router.post("/queue/{player_id}/resume", response_model=QueueStatusResponse)
async def resume_queue_route(
    player_id: str,
    r: redis.Redis = Depends(get_redis),
    sync: SyncProtocol = Depends(get_sync),
    settings: EngineSettings = Depends(get_settings),
) -> QueueStatusResponse:
    try:
        return await resume_queue(r=r, sync=sync, player_id=player_id, lock_ttl_ms=settings.lock_ttl_ms)
    except ValueError as e:
        raise _http_error(e) from e


@router.post("/scheduler/run_cycle", response_model=CycleReport)
async def run_cycle_route(scheduler: QueueScheduler = Depends(get_scheduler)) -> CycleReport:
    """Advance every running queue by one tick.

    Meant to be hit by an external timer (cron, k8s CronJob, etc.).
    """

    return await scheduler.run_cycle()


@router.post("/connections/cleanup")
async def cleanup_connections_route(sync: SyncProtocol = Depends(get_sync)) -> dict[str, int]:
    return await sync.cleanup_stale_connections()


@router.get("/players/{player_id}/conflicts", response_model=list[Conflict])
async def detect_conflicts_route(player_id: str, sync: SyncProtocol = Depends(get_sync)) -> list[Conflict]:
    return await sync.detect_connection_conflicts(player_id)


@router.get("/players/{player_id}/notifications")
async def get_pending_notifications_route(
    player_id: str,
    count: int = 20,
    r: redis.Redis = Depends(get_redis),
) -> dict[str, object]:
    """Notifications parked while the player had no live connection."""

    if count < 1 or count > 200:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="count must be between 1 and 200")

    mailbox = Mailbox(player_id)
    return {"player_id": player_id, "stream": mailbox.key, "messages": read_mailbox(r=r, mailbox=mailbox, count=count)}


@router.post("/characters/{user_id}/offline_progress", response_model=OfflineProgressReport)
async def offline_progress_route(
    user_id: str,
    r: redis.Redis = Depends(get_redis),
    settings: EngineSettings = Depends(get_settings),
) -> OfflineProgressReport:
    try:
        return calculate_offline_progress(r=r, user_id=user_id, settings=settings)
    except ValueError as e:
        raise _http_error(e) from e
