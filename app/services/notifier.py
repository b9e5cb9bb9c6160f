"""
Real-time notification emitter.

Keeps the live WebSocket connections of each user and pushes JSON events to
them. ``emit`` is fire-and-forget: it schedules the broadcast and returns, and
transport errors are logged, never raised. ``send_to_user`` is the awaited,
targeted variant used by delivery attempts that need to know whether anyone
actually received the message.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Set

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from app.core.time_utils import utcnow

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(self):
        self._connections: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._pending: Set[asyncio.Task] = set()

    async def connect(self, user_id, websocket: WebSocket) -> int:
        """Accept the socket and register it; returns the user's live connection count"""
        await websocket.accept()
        key = str(user_id)
        self._connections[key].add(websocket)
        logger.info(f"Socket connected for user {key} ({len(self._connections[key])} open)")
        return len(self._connections[key])

    def disconnect(self, user_id, websocket: WebSocket) -> int:
        key = str(user_id)
        sockets = self._connections.get(key)
        if not sockets:
            return 0
        sockets.discard(websocket)
        remaining = len(sockets)
        if not remaining:
            self._connections.pop(key, None)
        logger.info(f"Socket disconnected for user {key} ({remaining} open)")
        return remaining

    def is_connected(self, user_id) -> bool:
        return bool(self._connections.get(str(user_id)))

    def connection_count(self, user_id) -> int:
        return len(self._connections.get(str(user_id), ()))

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        """Broadcast ``event`` to every connected client without waiting"""
        message = self._message(event, payload)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, dropping event {event}")
            return
        task = loop.create_task(self._broadcast(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def send_to_user(self, user_id, event: str, payload: Dict[str, Any]) -> int:
        """Push ``event`` to one user's sockets; returns how many accepted it"""
        message = self._message(event, payload)
        delivered = 0
        for websocket in list(self._connections.get(str(user_id), ())):
            if await self._send(websocket, message):
                delivered += 1
            else:
                self.disconnect(user_id, websocket)
        return delivered

    async def drain(self) -> None:
        """Wait for in-flight broadcasts (shutdown and tests)"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _broadcast(self, message: Dict[str, Any]) -> None:
        for user_id, sockets in list(self._connections.items()):
            for websocket in list(sockets):
                if not await self._send(websocket, message):
                    self.disconnect(user_id, websocket)

    @staticmethod
    async def _send(websocket: WebSocket, message: Dict[str, Any]) -> bool:
        try:
            await websocket.send_json(message)
            return True
        except Exception as e:
            logger.warning(f"Dropping socket after send failure: {e}")
            return False

    @staticmethod
    def _message(event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {"event": event, "data": jsonable_encoder(payload), "timestamp": utcnow().isoformat()}
