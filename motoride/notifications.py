"""Post-commit notification relay.

Services never talk to sockets directly. They append :class:`Event` objects to
an :class:`Outbox` once their transaction has committed, and the HTTP layer
flushes the outbox after the endpoint returned. Delivery failures are logged
and dropped; they never reach the caller.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Set, Union
import logging

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


# Event names
RIDE_CREATED = "ride:created"
RIDE_CANCELLED = "ride:cancelled"
RIDE_COMPLETED = "ride:completed"
REQUEST_CREATED = "request:created"
REQUEST_ACCEPTED = "request:accepted"
REQUEST_REJECTED = "request:rejected"
REQUEST_CANCELLED = "request:cancelled"


@dataclass(frozen=True)
class AllExcept:
    user_id: str


@dataclass(frozen=True)
class ToUser:
    user_id: str


Audience = Union[AllExcept, ToUser]


@dataclass
class Event:
    kind: str
    audience: Audience
    payload: Dict[str, Any]


@dataclass
class Outbox:
    events: List[Event] = field(default_factory=list)

    def add(self, kind: str, audience: Audience, payload: Dict[str, Any]):
        self.events.append(Event(kind, audience, payload))

    async def flush(self, relay: "NotificationRelay"):
        pending, self.events = self.events, []
        for ev in pending:
            await relay.notify(ev.kind, ev.audience, ev.payload)


class ConnectionManager:
    """Websocket connections grouped by user id."""

    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, user_id: str):
        await websocket.accept()
        self.active_connections.setdefault(user_id, set()).add(websocket)
        logger.info("ws_connected: user=%s", user_id)

    def disconnect(self, websocket: WebSocket, user_id: str):
        if user_id in self.active_connections:
            self.active_connections[user_id].discard(websocket)
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]
        logger.info("ws_disconnected: user=%s", user_id)

    async def send_personal(self, user_id: str, message: dict):
        """Send to every connection of one user, dropping dead sockets."""
        sockets = self.active_connections.get(user_id)
        if not sockets:
            return
        dead = set()
        for ws in list(sockets):
            try:
                await ws.send_json(message)
            except Exception as e:
                logger.warning("ws_send_failed: user=%s error=%s", user_id, e)
                dead.add(ws)
        for ws in dead:
            sockets.discard(ws)

    async def broadcast_except(self, user_id: str, message: dict):
        for uid in list(self.active_connections.keys()):
            if uid != user_id:
                await self.send_personal(uid, message)


class NotificationRelay:
    def __init__(self, manager: ConnectionManager):
        self.manager = manager

    async def notify(self, kind: str, audience: Audience, payload: Dict[str, Any]):
        try:
            message = {
                "event": kind,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "data": jsonable_encoder(payload),
            }
            if isinstance(audience, AllExcept):
                await self.manager.broadcast_except(audience.user_id, message)
            else:
                await self.manager.send_personal(audience.user_id, message)
            logger.info("event_emitted: kind=%s audience=%s", kind, audience)
        except Exception:
            logger.exception("event_emit_failed: kind=%s audience=%s", kind, audience)


manager = ConnectionManager()
relay = NotificationRelay(manager)
