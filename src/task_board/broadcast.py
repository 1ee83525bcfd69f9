"""
Broadcast Dispatcher

Tracks live WebSocket connections and fans out ``syncUpdate`` events after a
mutation commits. The same payload, merged with the operation result, is
returned to the originating connection as its direct acknowledgement; the
``correlationId`` carried by both lets the originating client recognise its
own mutation in the fan-out and apply it only once.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

from .database import utc_now_str
from .models import SyncPayload, TaskView
from .protocol import SYNC_TYPES, SYNC_UPDATE, encode

logger = logging.getLogger(__name__)


class TextSocket(Protocol):
    """Anything that can push a text frame (FastAPI's WebSocket qualifies)."""

    async def send_text(self, data: str) -> None: ...


class BroadcastDispatcher:
    """
    WebSocket connection registry with parallel broadcasting.

    Handles connection registration, parallel fan-out to all clients and
    automatic cleanup of connections whose send fails. Uses asyncio.gather
    so one slow or dead client does not delay the others.
    """

    def __init__(self):
        self.active_connections: Dict[str, TextSocket] = {}
        self._connection_lock = asyncio.Lock()
        self.total_broadcasts = 0

    async def register(self, connection_id: str, websocket: TextSocket) -> None:
        async with self._connection_lock:
            self.active_connections[connection_id] = websocket
        logger.info(f"Connection {connection_id} registered. Total connections: {len(self.active_connections)}")

    async def unregister(self, connection_id: str) -> None:
        """Remove a connection; unknown ids are ignored."""
        async with self._connection_lock:
            removed = self.active_connections.pop(connection_id, None)
        if removed is not None:
            logger.info(f"Connection {connection_id} unregistered. Total connections: {len(self.active_connections)}")

    def connection_count(self) -> int:
        return len(self.active_connections)

    async def broadcast(self, message: str) -> int:
        """
        Send a text frame to every registered connection in parallel.

        Returns:
            Number of connections that received the frame
        """
        async with self._connection_lock:
            targets = list(self.active_connections.items())
        if not targets:
            logger.debug("No active connections for broadcast")
            return 0

        results = await asyncio.gather(
            *(self._send_safe(connection_id, websocket, message) for connection_id, websocket in targets),
            return_exceptions=True,
        )
        delivered = sum(1 for result in results if result is True)
        self.total_broadcasts += 1
        logger.info(f"Broadcast completed: {delivered}/{len(targets)} successful")
        return delivered

    async def send_to(self, connection_id: str, message: str) -> bool:
        """Send a text frame to one connection; False if it is gone."""
        async with self._connection_lock:
            websocket = self.active_connections.get(connection_id)
        if websocket is None:
            return False
        return await self._send_safe(connection_id, websocket, message)

    async def _send_safe(self, connection_id: str, websocket: TextSocket, message: str) -> bool:
        """Send one frame, unregistering the connection if the send fails."""
        try:
            await websocket.send_text(message)
            return True
        except Exception as e:
            # Any send failure means the transport is unusable
            logger.warning(f"Failed to send message to connection {connection_id}: {e}")
            await self.unregister(connection_id)
            return False

    def build_payload(
        self,
        kind: str,
        *,
        actor_login: str,
        correlation_id: str,
        task: Optional[TaskView] = None,
        task_id: Optional[int] = None,
        progress: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Build the syncUpdate payload without sending it."""
        if kind not in SYNC_TYPES:
            raise ValueError(f"Unknown sync type '{kind}'")
        return SyncPayload(
            type=kind,
            task_id=task_id if task_id is not None else (task.id if task else None),
            task=task,
            progress=progress,
            actor_login=actor_login,
            correlation_id=correlation_id,
            timestamp=utc_now_str(),
        ).to_wire()

    async def publish(self, kind: str, **fields) -> Dict[str, Any]:
        """
        Fan out one committed mutation to all connections.

        Args:
            kind: created | updated | progress | deleted
            actor_login: Login of the user who caused the mutation
            correlation_id: Id shared with the originator's direct ack
            task: Full task view where the mutation left one
            task_id: Task id (taken from ``task`` when omitted)
            progress: Progress percentage for completion events

        Returns:
            Wire payload, reused by the caller for the direct ack
        """
        payload = self.build_payload(kind, **fields)
        await self.broadcast(encode(SYNC_UPDATE, payload))
        return payload
