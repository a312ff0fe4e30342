import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from ..auth.deps import authenticate_websocket
from ..http_helpers import in_session, message_error
from ..repo import get_conversation, is_participant
from ..schemas import SocketMarkRead, SocketSendMessage
from ..services import delivery
from ..services.errors import AuthorizationError, ChatError, NotFoundError, ValidationError
from ..services.presence import PresenceRegistry
from ..services.realtime import ConnectionHub

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_membership(db, conversation_id: Any, user_id: int) -> int:
    try:
        conversation_id = int(conversation_id)
    except (TypeError, ValueError):
        raise ValidationError("conversation_id is required")
    conversation = get_conversation(db, conversation_id)
    if not conversation:
        raise NotFoundError("Conversation not found")
    if not is_participant(conversation, user_id):
        raise AuthorizationError("Access denied to this conversation")
    return conversation_id


class SocketSession:
    """Inbound frame handling for one authenticated socket."""

    def __init__(self, hub: ConnectionHub, presence: PresenceRegistry, user_id: int, connection_id: str):
        self.hub = hub
        self.presence = presence
        self.user_id = user_id
        self.connection_id = connection_id
        self.handlers = {
            "join_conversation": self.join_conversation,
            "leave_conversation": self.leave_conversation,
            "typing_start": self.typing_start,
            "typing_stop": self.typing_stop,
            "send_message": self.send_message,
            "message_read": self.message_read,
            "request_user_status": self.request_user_status,
        }

    async def reply(self, event: str, data: dict[str, Any]) -> None:
        await self.hub.send_to_connection(self.connection_id, event, data)

    async def handle(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            await self.reply("message_error", message_error(None, "invalid_frame", "Frame must be JSON"))
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("data", {}), dict):
            await self.reply("message_error", message_error(None, "invalid_frame", "Frame must be an object"))
            return

        event = frame.get("event")
        handler = self.handlers.get(event)
        if handler is None:
            await self.reply("message_error", message_error(event, "unknown_event", f"Unknown event: {event}"))
            return
        try:
            await handler(frame.get("data") or {})
        except ChatError as exc:
            await self.reply("message_error", message_error(event, exc.code, exc.message))
        except PydanticValidationError as exc:
            await self.reply("message_error", message_error(event, ValidationError.code, str(exc.errors()[0]["msg"])))
        except Exception:
            logger.exception("[realtime] %s failed for user_id=%s", event, self.user_id)
            await self.reply("message_error", message_error(event, "internal_error", "Something went wrong"))

    async def join_conversation(self, data: dict[str, Any]) -> None:
        conversation_id = await in_session(_require_membership, data.get("conversation_id"), self.user_id)
        self.hub.join(conversation_id, self.connection_id)
        await self.reply("joined_conversation", {"conversation_id": conversation_id})

    async def leave_conversation(self, data: dict[str, Any]) -> None:
        try:
            conversation_id = int(data.get("conversation_id"))
        except (TypeError, ValueError):
            raise ValidationError("conversation_id is required")
        self.hub.leave(conversation_id, self.connection_id)

    async def _typing(self, data: dict[str, Any], is_typing: bool) -> None:
        conversation_id = await in_session(_require_membership, data.get("conversation_id"), self.user_id)
        await self.hub.emit_to_room(
            conversation_id,
            "user_typing",
            {"conversation_id": conversation_id, "user_id": self.user_id, "is_typing": is_typing},
            exclude=self.connection_id,
        )

    async def typing_start(self, data: dict[str, Any]) -> None:
        await self._typing(data, True)

    async def typing_stop(self, data: dict[str, Any]) -> None:
        await self._typing(data, False)

    async def send_message(self, data: dict[str, Any]) -> None:
        payload = SocketSendMessage.model_validate(data)
        outcome = await in_session(
            delivery.send_message,
            self.presence,
            payload.conversation_id,
            self.user_id,
            payload.message_type,
            payload.content,
            voice_duration=payload.voice_duration,
            reply_to_message_id=payload.reply_to_message_id,
        )
        await self.hub.dispatch(outcome.events)

    async def message_read(self, data: dict[str, Any]) -> None:
        payload = SocketMarkRead.model_validate(data)
        outcome = await in_session(delivery.mark_read, payload.conversation_id, self.user_id, payload.message_ids)
        await self.hub.dispatch(outcome.events)

    async def request_user_status(self, data: dict[str, Any]) -> None:
        try:
            user_id = int(data.get("user_id"))
        except (TypeError, ValueError):
            raise ValidationError("user_id is required")
        await self.reply("user_status", {"user_id": user_id, "online": self.presence.is_online(user_id)})


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket) -> None:
    hub: ConnectionHub = websocket.app.state.hub
    presence: PresenceRegistry = websocket.app.state.presence

    user = await run_in_threadpool(authenticate_websocket, websocket.query_params.get("token"))
    if not user:
        await websocket.close(code=4401)
        return

    user_id = user["id"]
    connection_id = await hub.connect(user_id, websocket)
    await hub.broadcast("user_status", {"user_id": user_id, "online": True}, exclude_user=user_id)
    session = SocketSession(hub, presence, user_id, connection_id)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                await session.reply("message_error", message_error(None, "invalid_frame", "Frames must be JSON text"))
                continue
            await session.handle(raw)
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(user_id, connection_id)
        if not presence.is_online(user_id):
            await hub.broadcast("user_status", {"user_id": user_id, "online": False})
