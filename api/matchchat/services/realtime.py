import logging
import uuid
from collections import defaultdict
from typing import Any, Iterable

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from .delivery import OutboundEvent
from .presence import PresenceRegistry

logger = logging.getLogger(__name__)


class ConnectionHub:
    """Open sockets per user and per conversation room, for this process only.

    Emits are fire-and-forget: a socket that fails to accept a frame is logged
    and skipped, it never fails the caller.
    """

    def __init__(self, presence: PresenceRegistry) -> None:
        self.presence = presence
        self.active_connections: dict[int, dict[str, WebSocket]] = {}
        self.rooms: dict[int, set[str]] = defaultdict(set)
        self._owners: dict[str, int] = {}

    async def connect(self, user_id: int, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        user_id = int(user_id)
        self.active_connections.setdefault(user_id, {})[connection_id] = websocket
        self._owners[connection_id] = user_id
        self.presence.mark_online(user_id, connection_id)
        logger.info("[realtime] connected user_id=%s connection_id=%s", user_id, connection_id)
        return connection_id

    def disconnect(self, user_id: int, connection_id: str) -> None:
        user_id = int(user_id)
        conns = self.active_connections.get(user_id)
        if conns is not None:
            conns.pop(connection_id, None)
            if not conns:
                del self.active_connections[user_id]
        self._owners.pop(connection_id, None)
        for conversation_id in list(self.rooms):
            self.leave(conversation_id, connection_id)
        self.presence.mark_offline(user_id, connection_id)
        logger.info("[realtime] disconnected user_id=%s connection_id=%s", user_id, connection_id)

    def join(self, conversation_id: int, connection_id: str) -> None:
        self.rooms[int(conversation_id)].add(connection_id)

    def leave(self, conversation_id: int, connection_id: str) -> None:
        members = self.rooms.get(int(conversation_id))
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.rooms[int(conversation_id)]

    def close_room(self, conversation_id: int) -> None:
        self.rooms.pop(int(conversation_id), None)

    def room_members(self, conversation_id: int) -> set[str]:
        return set(self.rooms.get(int(conversation_id), ()))

    def _socket(self, connection_id: str) -> WebSocket | None:
        owner = self._owners.get(connection_id)
        if owner is None:
            return None
        return self.active_connections.get(owner, {}).get(connection_id)

    async def _send(self, connection_id: str, websocket: WebSocket, event: str, data: dict[str, Any]) -> bool:
        try:
            await websocket.send_json({"event": event, "data": jsonable_encoder(data)})
            return True
        except Exception as exc:
            logger.warning("[realtime] dropped %s for connection_id=%s: %s", event, connection_id, exc)
            return False

    async def send_to_connection(self, connection_id: str, event: str, data: dict[str, Any]) -> bool:
        websocket = self._socket(connection_id)
        if websocket is None:
            return False
        return await self._send(connection_id, websocket, event, data)

    async def emit_to_user(self, user_id: int, event: str, data: dict[str, Any]) -> int:
        sent = 0
        for connection_id, websocket in list(self.active_connections.get(int(user_id), {}).items()):
            if await self._send(connection_id, websocket, event, data):
                sent += 1
        return sent

    async def emit_to_room(
        self,
        conversation_id: int,
        event: str,
        data: dict[str, Any],
        exclude: str | None = None,
    ) -> int:
        sent = 0
        for connection_id in self.room_members(conversation_id):
            if connection_id == exclude:
                continue
            if await self.send_to_connection(connection_id, event, data):
                sent += 1
        return sent

    async def broadcast(self, event: str, data: dict[str, Any], exclude_user: int | None = None) -> int:
        sent = 0
        for user_id in list(self.active_connections):
            if exclude_user is not None and user_id == int(exclude_user):
                continue
            sent += await self.emit_to_user(user_id, event, data)
        return sent

    async def dispatch(self, events: Iterable[OutboundEvent]) -> None:
        for item in events:
            if item.broadcast:
                await self.broadcast(item.event, item.data)
            elif item.room is not None:
                await self.emit_to_room(item.room, item.event, item.data)
            elif item.user_id is not None:
                await self.emit_to_user(item.user_id, item.event, item.data)
            else:
                logger.warning("[realtime] event %s has no target, dropped", item.event)
