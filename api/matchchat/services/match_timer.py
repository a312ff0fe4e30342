"""Match expiry clock and first-message/reply tracking.

A match shows up on the "new matches" surface until somebody replies or the
clock runs out. Expiry is a display flag only; chat access is never revoked.

Every transition that must happen at most once is a single conditional
UPDATE whose rowcount tells the caller whether it won.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_, select, update

from ..config import MATCH_EXPIRY_DAYS
from ..repo import (
    as_utc,
    conversation_row_to_dict,
    conversation_table,
    get_conversation,
    get_first_name,
    now_utc,
    other_participant,
)
from .errors import NotFoundError
from .events import log_conversation_event

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired: int
    conversation_ids: list[int] = field(default_factory=list)


def _conditional_update(db, *criteria, **values) -> bool:
    result = db.execute(
        update(conversation_table)
        .where(*criteria)
        .values(**values)
    )
    return (result.rowcount or 0) > 0


def expiry_for(match_created_at: datetime) -> datetime:
    return as_utc(match_created_at) + timedelta(days=MATCH_EXPIRY_DAYS)


def start(db, conversation_id: int, match_created_at: datetime) -> bool:
    created = as_utc(match_created_at)
    started = _conditional_update(
        db,
        conversation_table.c.id == conversation_id,
        conversation_table.c.match_expires_at.is_(None),
        match_created_at=created,
        match_expires_at=expiry_for(created),
        match_expired=False,
    )
    if not started:
        logger.debug("[match_timer] clock already running for conversation_id=%s", conversation_id)
    return started


def record_first_message(db, conversation_id: int, sender_id: int, now: datetime | None = None) -> bool:
    return _conditional_update(
        db,
        conversation_table.c.id == conversation_id,
        conversation_table.c.first_message_at.is_(None),
        first_message_at=now or now_utc(),
        first_message_sender_id=sender_id,
    )


def record_reply(db, conversation_id: int, sender_id: int, now: datetime | None = None) -> bool:
    return _conditional_update(
        db,
        conversation_table.c.id == conversation_id,
        conversation_table.c.reply_at.is_(None),
        conversation_table.c.first_message_at.is_not(None),
        conversation_table.c.first_message_sender_id != sender_id,
        reply_at=now or now_utc(),
    )


def is_new_match_for(state: dict[str, Any], user_id: int) -> bool:
    if state["match_expired"]:
        return False
    if state["reply_at"] is not None:
        return False
    if state["first_message_at"] is None:
        return True
    # The first sender already sees the match in the ordinary chat list.
    return state["first_message_sender_id"] != int(user_id)


def get_match_state(db, conversation_id: int) -> dict[str, Any]:
    state = get_conversation(db, conversation_id)
    if not state:
        raise NotFoundError("Conversation not found")
    return state


def visibility_for_user(db, conversation_id: int, user_id: int) -> bool:
    state = get_conversation(db, conversation_id)
    if not state:
        return False
    return is_new_match_for(state, user_id)


def list_new_matches(db, user_id: int) -> list[dict[str, Any]]:
    c = conversation_table.c
    rows = db.execute(
        select(conversation_table)
        .where(
            or_(c.participant_a_id == user_id, c.participant_b_id == user_id),
            c.match_expired.is_(False),
            c.reply_at.is_(None),
        )
        .order_by(c.match_created_at.desc(), c.id.desc())
    ).mappings().all()

    out: list[dict[str, Any]] = []
    for row in rows:
        state = conversation_row_to_dict(row)
        if not is_new_match_for(state, user_id):
            continue
        other_id = other_participant(state, user_id)
        out.append(
            {
                "conversation_id": state["id"],
                "other_user_id": other_id,
                "first_name": get_first_name(db, other_id),
                "matched_at": state["match_created_at"],
                "expires_at": state["match_expires_at"],
                "has_first_message": state["first_message_at"] is not None,
                "is_waiting_for_reply": state["first_message_sender_id"] == other_id,
            }
        )
    return out


def sweep_expirations(db, now: datetime | None = None) -> SweepResult:
    now = now or now_utc()
    try:
        rows = db.execute(
            update(conversation_table)
            .where(
                conversation_table.c.match_expired.is_(False),
                conversation_table.c.match_expires_at < now,
                conversation_table.c.reply_at.is_(None),
            )
            .values(match_expired=True)
            .returning(conversation_table.c.id)
        ).all()
        ids = sorted(int(r[0]) for r in rows)
        for conversation_id in ids:
            log_conversation_event(db, "match_expired", conversation_id=conversation_id, payload={"source": "sweep"}, now=now)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("[match_timer] expiry sweep failed, rolled back")
        raise

    if ids:
        logger.info("[match_timer] expired %s matches: %s", len(ids), ids)
    return SweepResult(expired=len(ids), conversation_ids=ids)


def expire_match(db, conversation_id: int, now: datetime | None = None) -> bool:
    if not get_conversation(db, conversation_id):
        raise NotFoundError("Conversation not found")
    changed = _conditional_update(
        db,
        conversation_table.c.id == conversation_id,
        conversation_table.c.match_expired.is_(False),
        match_expired=True,
    )
    if changed:
        log_conversation_event(db, "match_expired", conversation_id=conversation_id, payload={"source": "manual"}, now=now)
    db.commit()
    return changed
