from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from fastapi import WebSocket

from idle_engine.errors import NotificationDeliveryFailure


logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    """Per-connection duplex send; fire-and-forget from the caller's view."""

    async def send(self, connection_id: str, payload: dict[str, Any]) -> None: ...


class ConnectionHub:
    """In-process WebSocket registry keyed by connection_id.

    Contract:
      - register a socket via `connect(connection_id, websocket)`.
      - push a JSON payload with `send(connection_id, payload)`; raises
        NotificationDeliveryFailure when the socket is unknown or the write fails.

    Connection metadata (player index, heartbeats) lives in Redis, see
    `idle_engine.sync`. If we later run multiple API replicas, delivery should
    move to Redis pub/sub.
    """

    def __init__(self) -> None:
        self._sockets: dict[str, WebSocket] = {}
        self._lock = asyncio.Lock()

    async def connect(self, connection_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._sockets[connection_id] = websocket

    async def disconnect(self, connection_id: str) -> None:
        async with self._lock:
            self._sockets.pop(connection_id, None)

    async def send(self, connection_id: str, payload: dict[str, Any]) -> None:
        async with self._lock:
            ws = self._sockets.get(connection_id)

        if ws is None:
            raise NotificationDeliveryFailure(f"Connection {connection_id} is not attached to this process")

        try:
            await ws.send_json(payload)
        except Exception as e:
            await self.disconnect(connection_id)
            raise NotificationDeliveryFailure(f"Send to connection {connection_id} failed: {e}") from e


hub = ConnectionHub()
