from typing import Any

from fastapi import APIRouter, Depends

from .. import database
from ..auth.deps import get_current_user
from ..repo import is_participant
from ..services import match_timer
from ..services.errors import AuthorizationError

router = APIRouter()


@router.get("/matches/new")
def list_new_matches(current_user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    with database.SessionLocal() as db:
        matches = match_timer.list_new_matches(db, current_user["id"])
    return {"matches": matches}


@router.get("/conversations/{conversation_id}/match-state")
def get_match_state(conversation_id: int, current_user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    uid = current_user["id"]
    with database.SessionLocal() as db:
        state = match_timer.get_match_state(db, conversation_id)
        if not is_participant(state, uid):
            raise AuthorizationError("Access denied to this conversation")
    return {
        "conversation_id": state["id"],
        "match_created_at": state["match_created_at"],
        "match_expires_at": state["match_expires_at"],
        "match_expired": state["match_expired"],
        "first_message_at": state["first_message_at"],
        "first_message_sender_id": state["first_message_sender_id"],
        "reply_at": state["reply_at"],
        "visible_as_new_match": match_timer.is_new_match_for(state, uid),
    }
