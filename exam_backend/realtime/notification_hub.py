"""
exam_backend/realtime/notification_hub.py
Best-effort notification fan-out over websockets

Per-process registries:
- connections: user_id -> websocket (latest connection wins)
- subscriptions: user_id -> topic (latest subscribe wins, one topic per user)

Delivery is fire-and-forget and at most once: nothing is queued for
disconnected users and send failures are not retried or recorded.
"""
import asyncio
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def create_notification(notification_type: str, message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "type": notification_type,
        "message": message,
        "data": data or {},
        "timestamp": datetime.utcnow().isoformat(),
        "read": False,
    }


class NotificationHub:
    def __init__(self):
        self.connections: Dict[int, WebSocket] = {}
        self.subscriptions: Dict[int, str] = {}
        self._lock = asyncio.Lock()

    async def register(self, user_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            self.connections[user_id] = websocket
        logger.info(f"Notification client connected: user {user_id}")

    async def unregister(self, user_id: int, websocket: Optional[WebSocket] = None) -> None:
        """Drop the user's connection and subscription.

        When websocket is given, only drop it if it is still the registered one,
        so a stale socket closing does not evict a newer connection.
        """
        async with self._lock:
            current = self.connections.get(user_id)
            if websocket is not None and current is not websocket:
                return
            self.connections.pop(user_id, None)
            self.subscriptions.pop(user_id, None)
        logger.info(f"Notification client disconnected: user {user_id}")

    async def subscribe(self, user_id: int, topic: str) -> None:
        async with self._lock:
            if user_id in self.connections:
                self.subscriptions[user_id] = topic

    def is_connected(self, user_id: int) -> bool:
        return user_id in self.connections

    async def _send(self, user_id: int, websocket: WebSocket, message: str) -> bool:
        try:
            await websocket.send_text(message)
            return True
        except Exception as e:
            logger.debug(f"Dropped notification for user {user_id}: {type(e).__name__}")
            return False

    @staticmethod
    def _envelope(notification: Dict[str, Any]) -> str:
        return json.dumps({"type": "notification", "notification": notification}, default=str)

    async def notify_user(self, user_id: int, notification: Dict[str, Any]) -> bool:
        """Send to one user if connected. Returns whether a send was attempted and succeeded."""
        async with self._lock:
            websocket = self.connections.get(user_id)
        if websocket is None:
            return False
        return await self._send(user_id, websocket, self._envelope(notification))

    async def notify_subscribers(self, topic: str, notification: Dict[str, Any]) -> int:
        async with self._lock:
            targets = [
                (user_id, ws) for user_id, ws in self.connections.items()
                if self.subscriptions.get(user_id) == topic
            ]
        return await self._fan_out(targets, notification)

    async def notify_all(self, notification: Dict[str, Any]) -> int:
        async with self._lock:
            targets = list(self.connections.items())
        return await self._fan_out(targets, notification)

    async def _fan_out(self, targets: List, notification: Dict[str, Any]) -> int:
        message = self._envelope(notification)
        delivered = 0
        for user_id, websocket in targets:
            if await self._send(user_id, websocket, message):
                delivered += 1
        return delivered
