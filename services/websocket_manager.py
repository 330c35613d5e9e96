"""WebSocket connection manager for real-time updates."""

import asyncio
import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)

JOB_UPDATE = "job.update"
LIBRARY_UPDATE = "library.update"


class WebSocketManager:
    """
    Manages WebSocket connections and broadcasts.

    Features:
    - Connection tracking per channel
    - Broadcast to all subscribers
    - Fire-and-forget publishing from synchronous code
    """

    def __init__(self) -> None:
        """Initialize WebSocket manager."""
        self._connections: dict[str, set[WebSocket]] = {}
        self._pending: set[asyncio.Task[None]] = set()

    async def connect(self, websocket: WebSocket, channel: str) -> None:
        """
        Accept and register a WebSocket connection.

        Args:
            websocket: The WebSocket connection
            channel: Subscription name (e.g. "conversion")
        """
        await websocket.accept()
        self._connections.setdefault(channel, set()).add(websocket)

    def disconnect(self, websocket: WebSocket, channel: str) -> None:
        """Remove a WebSocket connection."""
        conns = self._connections.get(channel)
        if conns is not None:
            conns.discard(websocket)
            if not conns:
                del self._connections[channel]

    def is_connected(self, channel: str) -> bool:
        """Check if a channel has an active connection."""
        return len(self._connections.get(channel, ())) > 0

    async def send_personal_message(self, message: dict[str, Any], channel: str) -> bool:
        """
        Send a message to every connection of a channel.

        Returns:
            True if sent to at least one connection
        """
        websockets = list(self._connections.get(channel, set()))
        if not websockets:
            return False

        sent_any = False
        to_drop: list[WebSocket] = []
        for ws in websockets:
            try:
                await ws.send_json(message)
                sent_any = True
            except Exception:
                to_drop.append(ws)

        for ws in to_drop:
            self.disconnect(ws, channel)

        return sent_any

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Broadcast a message to all connected clients."""
        for channel in list(self._connections.keys()):
            await self.send_personal_message(message, channel)

    def _schedule(self, message: dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; dropping %s event", message.get("type"))
            return
        task = loop.create_task(self.broadcast(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def publish_job_status(self, kind: str, status: str, payload: dict[str, Any]) -> None:
        """
        Publish a job status change to all clients.

        Args:
            kind: Job family, e.g. "conversion"
            status: New status value
            payload: Job fields to include
        """
        self._schedule({"type": JOB_UPDATE, "job_type": kind, "status": status, **payload})

    def publish_library_changed(self, entity: dict[str, Any]) -> None:
        """Publish that a library item changed."""
        self._schedule({"type": LIBRARY_UPDATE, "audiobook": entity})

    async def drain(self) -> None:
        """Wait for scheduled broadcasts to be delivered."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
