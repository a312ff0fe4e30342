from typing import Any

from fastapi import APIRouter, Depends, Query

from ..auth.deps import get_current_user
from ..deps import get_hub, get_presence
from ..http_helpers import in_session
from ..schemas import MarkReadRequest, SendMessageRequest
from ..services import delivery
from ..services.presence import PresenceRegistry
from ..services.realtime import ConnectionHub

router = APIRouter()


@router.get("/conversations")
async def list_conversations(current_user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    conversations = await in_session(delivery.list_conversations, current_user["id"])
    return {"conversations": conversations}


@router.post("/conversations/{conversation_id}/messages", status_code=201)
async def send_message(
    conversation_id: int,
    payload: SendMessageRequest,
    current_user: dict[str, Any] = Depends(get_current_user),
    presence: PresenceRegistry = Depends(get_presence),
    hub: ConnectionHub = Depends(get_hub),
) -> dict[str, Any]:
    outcome = await in_session(
        delivery.send_message,
        presence,
        conversation_id,
        current_user["id"],
        payload.message_type,
        payload.content,
        voice_duration=payload.voice_duration,
        reply_to_message_id=payload.reply_to_message_id,
    )
    await hub.dispatch(outcome.events)
    return {"message": outcome.message}


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(
    conversation_id: int,
    before: int | None = Query(default=None),
    limit: int | None = Query(default=None),
    current_user: dict[str, Any] = Depends(get_current_user),
) -> dict[str, Any]:
    return await in_session(delivery.list_messages, conversation_id, current_user["id"], before_id=before, limit=limit)


@router.put("/conversations/{conversation_id}/read")
async def mark_read(
    conversation_id: int,
    payload: MarkReadRequest | None = None,
    current_user: dict[str, Any] = Depends(get_current_user),
    hub: ConnectionHub = Depends(get_hub),
) -> dict[str, Any]:
    message_ids = payload.message_ids if payload else None
    outcome = await in_session(delivery.mark_read, conversation_id, current_user["id"], message_ids)
    await hub.dispatch(outcome.events)
    return {"conversation_id": conversation_id, "message_ids": outcome.message_ids}


@router.delete("/messages/{message_id}")
async def unsend_message(
    message_id: int,
    current_user: dict[str, Any] = Depends(get_current_user),
    hub: ConnectionHub = Depends(get_hub),
) -> dict[str, Any]:
    outcome = await in_session(delivery.unsend_message, message_id, current_user["id"])
    await hub.dispatch(outcome.events)
    return {
        "message_id": outcome.message_id,
        "conversation_id": outcome.conversation_id,
        "deleted_at": outcome.deleted_at,
    }


async def _remove_conversation(action, conversation_id: int, user_id: int, hub: ConnectionHub) -> dict[str, Any]:
    outcome = await in_session(action, conversation_id, user_id)
    await hub.dispatch(outcome.events)
    hub.close_room(conversation_id)
    return {"success": True, "conversation_id": outcome.conversation_id}


@router.post("/conversations/{conversation_id}/block")
async def block_user(
    conversation_id: int,
    current_user: dict[str, Any] = Depends(get_current_user),
    hub: ConnectionHub = Depends(get_hub),
) -> dict[str, Any]:
    return await _remove_conversation(delivery.block_user, conversation_id, current_user["id"], hub)


@router.delete("/conversations/{conversation_id}/unmatch")
async def unmatch(
    conversation_id: int,
    current_user: dict[str, Any] = Depends(get_current_user),
    hub: ConnectionHub = Depends(get_hub),
) -> dict[str, Any]:
    return await _remove_conversation(delivery.unmatch_conversation, conversation_id, current_user["id"], hub)


@router.delete("/conversations/{conversation_id}")
async def hide_conversation(
    conversation_id: int,
    current_user: dict[str, Any] = Depends(get_current_user),
) -> dict[str, Any]:
    result = await in_session(delivery.hide_conversation, conversation_id, current_user["id"])
    return {"success": True, **result}
