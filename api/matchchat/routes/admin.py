import logging
from typing import Any

from fastapi import APIRouter, Depends

from .. import database
from ..deps import require_admin
from ..schemas import CreateConversationRequest, ExpireMatchesRequest
from ..services import delivery, match_timer

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/conversations", status_code=201, dependencies=[Depends(require_admin)])
def create_conversation(payload: CreateConversationRequest) -> dict[str, Any]:
    with database.SessionLocal() as db:
        conversation = delivery.ensure_conversation(
            db, payload.user_a_id, payload.user_b_id, match_created_at=payload.match_created_at
        )
    return {"conversation": conversation}


@router.post("/admin/matches/expire", dependencies=[Depends(require_admin)])
def expire_matches(payload: ExpireMatchesRequest | None = None) -> dict[str, Any]:
    with database.SessionLocal() as db:
        if payload and payload.conversation_id is not None:
            changed = match_timer.expire_match(db, payload.conversation_id)
            ids = [payload.conversation_id] if changed else []
        else:
            ids = match_timer.sweep_expirations(db).conversation_ids
    logger.info("[admin] manual expiry, expired=%s", ids)
    return {"expired": len(ids), "conversation_ids": ids}
