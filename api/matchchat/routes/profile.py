from typing import Any

from fastapi import APIRouter, Depends

from .. import database
from ..auth.deps import get_current_user
from ..deps import get_hub
from ..http_helpers import in_session
from ..repo import get_conversation, participants
from ..schemas import ConsentRequest
from ..services import disclosure
from ..services.realtime import ConnectionHub

router = APIRouter()


@router.get("/conversations/{conversation_id}/level-status")
def get_level_status(conversation_id: int, current_user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    with database.SessionLocal() as db:
        return disclosure.level_status(db, conversation_id, current_user["id"])


def _apply_consent(db, conversation_id: int, user_id: int, level: int, accepted: bool):
    outcome = disclosure.set_consent(db, conversation_id, user_id, level, accepted)
    db.commit()
    return outcome, participants(get_conversation(db, conversation_id))


@router.post("/conversations/{conversation_id}/consent")
async def set_consent(
    conversation_id: int,
    payload: ConsentRequest,
    current_user: dict[str, Any] = Depends(get_current_user),
    hub: ConnectionHub = Depends(get_hub),
) -> dict[str, Any]:
    outcome, member_ids = await in_session(
        _apply_consent, conversation_id, current_user["id"], payload.level, payload.accepted
    )
    if outcome.unlocked:
        for uid in member_ids:
            await hub.emit_to_user(uid, "level_unlocked", {"conversation_id": conversation_id, "level": outcome.level})
    return {
        "conversation_id": conversation_id,
        "level": outcome.level,
        "consent_state": outcome.state.value,
        "unlocked": outcome.unlocked,
        "current_level": outcome.current_level,
    }


@router.get("/conversations/{conversation_id}/partner-profile")
def get_partner_profile(conversation_id: int, current_user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    with database.SessionLocal() as db:
        profile = disclosure.partner_profile(db, conversation_id, current_user["id"])
    return {"profile": profile}
