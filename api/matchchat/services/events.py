from datetime import datetime
from typing import Any

from sqlalchemy import insert

from ..models import ConversationEvent
from ..repo import now_utc


def log_conversation_event(
    db,
    event_type: str,
    *,
    conversation_id: int | None = None,
    user_id: int | None = None,
    payload: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> None:
    db.execute(
        insert(ConversationEvent).values(
            conversation_id=conversation_id,
            user_id=user_id,
            event_type=event_type,
            payload=payload or {},
            created_at=now or now_utc(),
        )
    )
