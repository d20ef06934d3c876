"""
WebSocket support for real-time device events.

Device workers publish events without waiting on clients: events go through
one outbox, in order, and a sender task fans them out. A client that is slow
or gone is dropped instead of holding the others back.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections and their device subscriptions."""

    def __init__(self, send_timeout_seconds: float = 5.0, max_backlog: int = 1000):
        # websocket -> device ids it follows (None: every device)
        self.active_connections: Dict[WebSocket, Optional[Set[str]]] = {}
        self.send_timeout_seconds = send_timeout_seconds
        self.max_backlog = max_backlog
        self._lock = asyncio.Lock()
        self._outbox: Optional[asyncio.Queue] = None
        self._sender: Optional[asyncio.Task] = None

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            self.active_connections[websocket] = None
        logger.debug(f"WebSocket connected, total: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection."""
        async with self._lock:
            self.active_connections.pop(websocket, None)
        logger.debug(f"WebSocket disconnected, total: {len(self.active_connections)}")

    async def subscribe(self, websocket: WebSocket, devices: Optional[Iterable[str]]) -> None:
        """Limit a client to events of the given devices; None follows all."""
        async with self._lock:
            if websocket in self.active_connections:
                self.active_connections[websocket] = set(devices) if devices is not None else None

    def publish(self, message: Dict[str, Any], device_id: Optional[str] = None) -> None:
        """Queue an event for broadcast. Never waits on clients."""
        if not self.active_connections:
            return
        if self._sender is None or self._sender.done():
            self._outbox = asyncio.Queue(maxsize=self.max_backlog)
            self._sender = asyncio.create_task(self._send_loop())
        try:
            self._outbox.put_nowait((message, device_id))
        except asyncio.QueueFull:
            logger.warning(f"Event backlog full, dropping {message.get('type')} event")

    async def _send_loop(self) -> None:
        while True:
            message, device_id = await self._outbox.get()
            try:
                await self.broadcast(message, device_id)
            except Exception as e:
                logger.error(f"Broadcast failed: {e}")
            finally:
                self._outbox.task_done()

    async def flush(self) -> None:
        """Wait until every published event has been sent."""
        if self._outbox is not None and self._sender is not None and not self._sender.done():
            await self._outbox.join()

    async def close(self) -> None:
        """Stop the sender task."""
        if self._sender is not None:
            self._sender.cancel()
            try:
                await self._sender
            except asyncio.CancelledError:
                pass
        self._sender = None
        self._outbox = None

    async def broadcast(self, message: Dict[str, Any], device_id: Optional[str] = None) -> None:
        """Send a message to every client following ``device_id``."""
        async with self._lock:
            targets = [
                ws for ws, devices in self.active_connections.items()
                if device_id is None or devices is None or device_id in devices
            ]
        if not targets:
            return

        data = json.dumps(message, default=str)
        results = await asyncio.gather(
            *(asyncio.wait_for(ws.send_text(data), self.send_timeout_seconds) for ws in targets),
            return_exceptions=True,
        )

        dead: Set[WebSocket] = {ws for ws, result in zip(targets, results) if isinstance(result, BaseException)}
        if dead:
            async with self._lock:
                for ws in dead:
                    self.active_connections.pop(ws, None)
            logger.debug(f"Dropped {len(dead)} unresponsive WebSocket client(s)")

    async def send_personal(self, websocket: WebSocket, message: Dict[str, Any]) -> None:
        """Send a message to a specific client."""
        try:
            await websocket.send_text(json.dumps(message, default=str))
        except Exception as e:
            logger.error(f"Failed to send message: {e}")


# Event emitters used by device nodes

async def emit_output(manager: ConnectionManager, device_id: str, msg: Dict[str, Any]) -> None:
    """Emit a device output message."""
    manager.publish({"type": "output", "device": device_id, "msg": msg}, device_id)


async def emit_status(manager: ConnectionManager, device_id: str, status: Dict[str, Any]) -> None:
    """Emit a device status change."""
    manager.publish({"type": "status", "device": device_id, "status": status}, device_id)
