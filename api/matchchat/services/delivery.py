"""Message delivery pipeline.

One implementation of send/read/unsend shared by the HTTP routes and the
WebSocket channel. Functions here do the database work and return the
outbound events; the transport adapters dispatch those events afterwards so
no network emit ever happens while a transaction is open.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, insert, not_, or_, select, update
from sqlalchemy.exc import DBAPIError, OperationalError

from ..config import MESSAGE_MAX_LENGTH, MESSAGES_PAGE_DEFAULT, MESSAGES_PAGE_MAX, UNSEND_WINDOW_HOURS
from ..models import ChatMessage
from ..repo import (
    as_utc,
    block_table,
    conversation_row_to_dict,
    conversation_table,
    find_conversation_by_pair,
    get_conversation,
    get_first_name,
    get_user_by_id,
    hidden_column,
    insert_for,
    is_blocked,
    is_participant,
    normalize_pair,
    now_utc,
    other_participant,
    participants,
)
from . import disclosure, match_timer
from .errors import AuthorizationError, NotFoundError, TransientStoreError, ValidationError
from .events import log_conversation_event
from .presence import PresenceRegistry
from .state_machine import DELIVERED, READ, SENT, statuses_advanced_by

logger = logging.getLogger(__name__)

message_table = ChatMessage.__table__

MESSAGE_TYPES = ("text", "voice")


@dataclass
class OutboundEvent:
    """A frame to emit once the database work is done.

    Exactly one target is set: a user's private channel, a conversation room,
    or every connected socket.
    """

    event: str
    data: dict[str, Any]
    user_id: int | None = None
    room: int | None = None
    broadcast: bool = False


@dataclass
class SendOutcome:
    message: dict[str, Any]
    delivered: bool
    first_message: bool
    replied: bool
    level: disclosure.LevelProgress
    events: list[OutboundEvent] = field(default_factory=list)


@dataclass
class ReadOutcome:
    conversation_id: int
    message_ids: list[int]
    read_by: int
    events: list[OutboundEvent] = field(default_factory=list)


@dataclass
class UnsendOutcome:
    message_id: int
    conversation_id: int
    deleted_at: datetime
    events: list[OutboundEvent] = field(default_factory=list)


@dataclass
class RemovalOutcome:
    conversation_id: int
    user_id: int
    other_user_id: int
    events: list[OutboundEvent] = field(default_factory=list)


def message_to_dict(row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "conversation_id": row["conversation_id"],
        "sender_id": row["sender_id"],
        "message_type": row["message_type"],
        "content": row["content"],
        "voice_duration": row["voice_duration"],
        "reply_to_message_id": row["reply_to_message_id"],
        "status": row["status"],
        "created_at": as_utc(row["created_at"]),
        "read_at": as_utc(row["read_at"]),
    }


def _get_message(db, message_id: int):
    return db.execute(select(message_table).where(message_table.c.id == message_id)).mappings().first()


def _conversation_for_member(db, conversation_id: int, user_id: int) -> dict[str, Any]:
    conversation = get_conversation(db, conversation_id)
    if not conversation:
        raise NotFoundError("Conversation not found")
    if not is_participant(conversation, user_id):
        raise AuthorizationError("Access denied to this conversation")
    return conversation


def validate_message_input(message_type: str, content: str | None, voice_duration: int | None = None) -> tuple[str, str]:
    kind = (message_type or "").strip().lower()
    if kind not in MESSAGE_TYPES:
        raise ValidationError("message_type must be 'text' or 'voice'")
    body = (content or "").strip()
    if not body:
        raise ValidationError("Message content required")
    if len(body) > MESSAGE_MAX_LENGTH:
        raise ValidationError("Message too long")
    if voice_duration is not None:
        if kind != "voice":
            raise ValidationError("voice_duration is only allowed on voice messages")
        if int(voice_duration) < 0:
            raise ValidationError("voice_duration must be non-negative")
    return kind, body


def _is_transient(exc: DBAPIError) -> bool:
    return isinstance(exc, OperationalError) or bool(getattr(exc, "connection_invalidated", False))


def _persist_message(db, values: dict[str, Any], now: datetime) -> int:
    attempts = 2
    for attempt in range(1, attempts + 1):
        try:
            result = db.execute(insert(message_table).values(**values))
            message_id = int(result.inserted_primary_key[0])
            db.execute(
                update(conversation_table)
                .where(conversation_table.c.id == values["conversation_id"])
                .values(updated_at=now)
            )
            db.commit()
            return message_id
        except DBAPIError as exc:
            db.rollback()
            if not _is_transient(exc):
                raise
            if attempt == attempts:
                logger.error(
                    "[delivery] store still failing after retry conversation_id=%s sender_id=%s",
                    values["conversation_id"],
                    values["sender_id"],
                )
                raise TransientStoreError("Message could not be stored, please retry") from exc
            logger.warning("[delivery] transient store fault, retrying once: %s", exc.__class__.__name__)
    raise TransientStoreError("Message could not be stored, please retry")


def _mark_delivered(db, message_id: int) -> bool:
    result = db.execute(
        update(message_table)
        .where(message_table.c.id == message_id, message_table.c.status.in_(statuses_advanced_by("deliver")))
        .values(status=DELIVERED)
    )
    db.commit()
    return (result.rowcount or 0) > 0


def send_message(
    db,
    presence: PresenceRegistry,
    conversation_id: int,
    sender_id: int,
    message_type: str,
    content: str,
    voice_duration: int | None = None,
    reply_to_message_id: int | None = None,
    now: datetime | None = None,
) -> SendOutcome:
    kind, body = validate_message_input(message_type, content, voice_duration)
    sender_id = int(sender_id)
    conversation = _conversation_for_member(db, conversation_id, sender_id)
    recipient_id = other_participant(conversation, sender_id)
    if is_blocked(db, sender_id, recipient_id):
        logger.info("[delivery] blocked send conversation_id=%s sender_id=%s", conversation_id, sender_id)
        raise AuthorizationError("Cannot send message")

    if reply_to_message_id is not None:
        parent = _get_message(db, reply_to_message_id)
        if not parent or parent["conversation_id"] != conversation_id:
            raise ValidationError("reply_to_message_id must reference a message in this conversation")

    now = now or now_utc()
    message_id = _persist_message(
        db,
        {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "message_type": kind,
            "content": body,
            "voice_duration": voice_duration,
            "reply_to_message_id": reply_to_message_id,
            "status": SENT,
            "created_at": now,
            "deleted_for_sender": False,
            "deleted_for_recipient": False,
        },
        now,
    )

    delivered = False
    if presence.is_online(recipient_id):
        delivered = _mark_delivered(db, message_id)

    first = match_timer.record_first_message(db, conversation_id, sender_id, now=now)
    replied = match_timer.record_reply(db, conversation_id, sender_id, now=now)
    if first or replied:
        log_conversation_event(
            db,
            "match_moved_to_chat",
            conversation_id=conversation_id,
            user_id=sender_id,
            payload={"reason": "first_message" if first else "reply"},
            now=now,
        )
    progress = disclosure.record_message(db, conversation_id, sender_id)
    db.commit()

    message = message_to_dict(_get_message(db, message_id))
    logger.info(
        "[delivery] message_id=%s conversation_id=%s sender_id=%s status=%s",
        message_id,
        conversation_id,
        sender_id,
        message["status"],
    )

    events = [
        OutboundEvent("message_sent", message, user_id=sender_id),
        OutboundEvent("new_message", message, user_id=recipient_id),
    ]
    if delivered:
        events.append(
            OutboundEvent(
                "message_delivered",
                {"conversation_id": conversation_id, "message_id": message_id, "status": DELIVERED},
                user_id=sender_id,
            )
        )
    if first:
        events.append(
            OutboundEvent(
                "match_moved_to_chat",
                {"conversation_id": conversation_id, "reason": "first_message", "moved_by": sender_id},
                user_id=sender_id,
            )
        )
    if replied:
        for uid in participants(conversation):
            events.append(
                OutboundEvent(
                    "match_moved_to_chat",
                    {"conversation_id": conversation_id, "reason": "reply", "moved_by": sender_id},
                    user_id=uid,
                )
            )
    if progress.leveled_up:
        for uid in participants(conversation):
            events.append(
                OutboundEvent(
                    "level_threshold_reached",
                    {
                        "conversation_id": conversation_id,
                        "level": progress.current_level,
                        "message_count": progress.total_message_count,
                    },
                    user_id=uid,
                )
            )

    return SendOutcome(
        message=message,
        delivered=delivered,
        first_message=first,
        replied=replied,
        level=progress,
        events=events,
    )


def mark_read(
    db,
    conversation_id: int,
    reader_id: int,
    message_ids: list[int] | None = None,
    now: datetime | None = None,
) -> ReadOutcome:
    reader_id = int(reader_id)
    conversation = _conversation_for_member(db, conversation_id, reader_id)
    if message_ids is not None and not message_ids:
        return ReadOutcome(conversation_id=conversation_id, message_ids=[], read_by=reader_id)

    now = now or now_utc()
    m = message_table.c
    stmt = (
        update(message_table)
        .where(
            m.conversation_id == conversation_id,
            m.sender_id != reader_id,
            m.status.in_(statuses_advanced_by("read")),
        )
        .values(status=READ, read_at=now)
        .returning(m.id)
    )
    if message_ids is not None:
        stmt = stmt.where(m.id.in_([int(mid) for mid in message_ids]))
    ids = sorted(int(r[0]) for r in db.execute(stmt).all())
    db.commit()

    outcome = ReadOutcome(conversation_id=conversation_id, message_ids=ids, read_by=reader_id)
    if ids:
        logger.debug("[delivery] conversation_id=%s read_by=%s ids=%s", conversation_id, reader_id, ids)
        outcome.events.append(
            OutboundEvent(
                "messages_read",
                {"conversation_id": conversation_id, "message_ids": ids, "read_by": reader_id},
                user_id=other_participant(conversation, reader_id),
            )
        )
    return outcome


def _visible_to(viewer_id: int):
    m = message_table.c
    hidden = or_(
        and_(m.sender_id == viewer_id, m.deleted_for_sender.is_(True)),
        and_(m.sender_id != viewer_id, m.deleted_for_recipient.is_(True)),
    )
    return not_(hidden)


def list_messages(
    db,
    conversation_id: int,
    viewer_id: int,
    before_id: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    viewer_id = int(viewer_id)
    _conversation_for_member(db, conversation_id, viewer_id)
    page = MESSAGES_PAGE_DEFAULT if limit is None else int(limit)
    page = max(1, min(MESSAGES_PAGE_MAX, page))

    m = message_table.c
    stmt = select(message_table).where(m.conversation_id == conversation_id, _visible_to(viewer_id))
    if before_id is not None:
        stmt = stmt.where(m.id < before_id)
    rows = db.execute(stmt.order_by(m.id.desc()).limit(page + 1)).mappings().all()

    has_more = len(rows) > page
    messages = [message_to_dict(r) for r in rows[:page]]
    messages.reverse()
    return {"messages": messages, "has_more": has_more}


def _last_visible_message(db, conversation_id: int, viewer_id: int) -> dict[str, Any] | None:
    m = message_table.c
    row = db.execute(
        select(message_table)
        .where(m.conversation_id == conversation_id, _visible_to(viewer_id))
        .order_by(m.id.desc())
        .limit(1)
    ).mappings().first()
    return message_to_dict(row) if row else None


def _unread_count(db, conversation_id: int, viewer_id: int) -> int:
    m = message_table.c
    return int(
        db.execute(
            select(func.count())
            .select_from(message_table)
            .where(
                m.conversation_id == conversation_id,
                m.sender_id != viewer_id,
                m.status != READ,
                m.deleted_for_recipient.is_(False),
            )
        ).scalar_one()
    )


def list_conversations(db, user_id: int) -> list[dict[str, Any]]:
    user_id = int(user_id)
    c = conversation_table.c
    rows = db.execute(
        select(conversation_table)
        .where(
            or_(
                and_(c.participant_a_id == user_id, c.hidden_by_a.is_(False)),
                and_(c.participant_b_id == user_id, c.hidden_by_b.is_(False)),
            )
        )
        .order_by(c.updated_at.desc(), c.id.desc())
    ).mappings().all()

    inbox: list[dict[str, Any]] = []
    for row in rows:
        conversation = conversation_row_to_dict(row)
        other_id = other_participant(conversation, user_id)
        inbox.append(
            {
                "conversation_id": conversation["id"],
                "other_user_id": other_id,
                "other_first_name": get_first_name(db, other_id),
                "updated_at": conversation["updated_at"],
                "match_expired": conversation["match_expired"],
                "is_new_match": match_timer.is_new_match_for(conversation, user_id),
                "last_message": _last_visible_message(db, conversation["id"], user_id),
                "unread_count": _unread_count(db, conversation["id"], user_id),
            }
        )
    return inbox


def unsend_message(db, message_id: int, user_id: int, now: datetime | None = None) -> UnsendOutcome:
    user_id = int(user_id)
    row = _get_message(db, message_id)
    if not row or row["deleted_at"] is not None:
        raise NotFoundError("Message not found")
    _conversation_for_member(db, row["conversation_id"], user_id)
    if row["sender_id"] != user_id:
        raise AuthorizationError("Only the sender can unsend a message")

    now = now or now_utc()
    if now - as_utc(row["created_at"]) > timedelta(hours=UNSEND_WINDOW_HOURS):
        raise ValidationError(f"Messages can only be unsent within {UNSEND_WINDOW_HOURS} hours")

    result = db.execute(
        update(message_table)
        .where(message_table.c.id == message_id, message_table.c.deleted_at.is_(None))
        .values(deleted_for_sender=True, deleted_for_recipient=True, deleted_at=now)
    )
    if not result.rowcount:
        db.rollback()
        raise NotFoundError("Message not found")
    log_conversation_event(
        db,
        "message_unsent",
        conversation_id=row["conversation_id"],
        user_id=user_id,
        payload={"message_id": message_id},
        now=now,
    )
    db.commit()
    logger.info("[delivery] message_id=%s unsent by user_id=%s", message_id, user_id)

    conversation_id = row["conversation_id"]
    return UnsendOutcome(
        message_id=message_id,
        conversation_id=conversation_id,
        deleted_at=now,
        events=[
            OutboundEvent(
                "message_deleted",
                {"conversation_id": conversation_id, "message_id": message_id, "deleted_by": user_id},
                room=conversation_id,
            )
        ],
    )


def ensure_conversation(
    db,
    user_a_id: int,
    user_b_id: int,
    match_created_at: datetime | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    a, b = normalize_pair(user_a_id, user_b_id)
    if a == b:
        raise ValidationError("A conversation needs two different users")
    for uid in (a, b):
        if not get_user_by_id(db, uid):
            raise NotFoundError(f"User {uid} not found")
    if is_blocked(db, a, b):
        raise AuthorizationError("Cannot create conversation with this user")

    now = now or now_utc()
    result = db.execute(
        insert_for(db, conversation_table)
        .values(
            participant_a_id=a,
            participant_b_id=b,
            created_at=now,
            updated_at=now,
            match_expired=False,
            hidden_by_a=False,
            hidden_by_b=False,
        )
        .on_conflict_do_nothing(index_elements=["participant_a_id", "participant_b_id"])
    )
    created = (result.rowcount or 0) > 0
    conversation = find_conversation_by_pair(db, a, b)
    if created:
        match_timer.start(db, conversation["id"], match_created_at or now)
        disclosure.initialize(db, conversation["id"], (a, b))
        logger.info("[delivery] conversation_id=%s created for users %s and %s", conversation["id"], a, b)
    elif conversation["hidden_by_a"] or conversation["hidden_by_b"]:
        # Reopened: the hidden flag clears, old messages stay hidden.
        db.execute(
            update(conversation_table)
            .where(conversation_table.c.id == conversation["id"])
            .values(hidden_by_a=False, hidden_by_b=False)
        )
    db.commit()

    conversation = get_conversation(db, conversation["id"])
    conversation["created"] = created
    return conversation


def _delete_conversation(db, conversation_id: int) -> None:
    # Children first; SQLite does not enforce ON DELETE CASCADE by default.
    for table in (disclosure.consent_table, disclosure.participant_table, disclosure.state_table, message_table):
        db.execute(delete(table).where(table.c.conversation_id == conversation_id))
    db.execute(delete(conversation_table).where(conversation_table.c.id == conversation_id))


def block_user(db, conversation_id: int, blocker_id: int, now: datetime | None = None) -> RemovalOutcome:
    """Block the other participant and drop the conversation for both.

    Only the blocker is notified; the blocked user just stops seeing the chat.
    """
    blocker_id = int(blocker_id)
    conversation = _conversation_for_member(db, conversation_id, blocker_id)
    blocked_id = other_participant(conversation, blocker_id)
    now = now or now_utc()

    db.execute(
        insert_for(db, block_table)
        .values(blocker_id=blocker_id, blocked_id=blocked_id, created_at=now)
        .on_conflict_do_nothing(index_elements=["blocker_id", "blocked_id"])
    )
    _delete_conversation(db, conversation_id)
    log_conversation_event(
        db,
        "user_blocked",
        conversation_id=conversation_id,
        user_id=blocker_id,
        payload={"blocked_user_id": blocked_id},
        now=now,
    )
    db.commit()
    logger.info("[delivery] user_id=%s blocked user_id=%s, conversation_id=%s removed", blocker_id, blocked_id, conversation_id)

    return RemovalOutcome(
        conversation_id=conversation_id,
        user_id=blocker_id,
        other_user_id=blocked_id,
        events=[
            OutboundEvent(
                "user_blocked",
                {"conversation_id": conversation_id, "blocked_user_id": blocked_id},
                user_id=blocker_id,
            )
        ],
    )


def unmatch_conversation(db, conversation_id: int, user_id: int, now: datetime | None = None) -> RemovalOutcome:
    user_id = int(user_id)
    conversation = _conversation_for_member(db, conversation_id, user_id)
    other_id = other_participant(conversation, user_id)

    _delete_conversation(db, conversation_id)
    log_conversation_event(
        db,
        "conversation_unmatched",
        conversation_id=conversation_id,
        user_id=user_id,
        payload={"other_user_id": other_id},
        now=now,
    )
    db.commit()
    logger.info("[delivery] user_id=%s unmatched user_id=%s, conversation_id=%s removed", user_id, other_id, conversation_id)

    data = {"conversation_id": conversation_id, "unmatched_by": user_id}
    return RemovalOutcome(
        conversation_id=conversation_id,
        user_id=user_id,
        other_user_id=other_id,
        events=[OutboundEvent("conversation_unmatched", data, user_id=uid) for uid in participants(conversation)],
    )


def hide_conversation(db, conversation_id: int, user_id: int) -> dict[str, Any]:
    """Delete a conversation for one side only.

    The caller's copy of every message is hidden and the conversation leaves
    their inbox. The partner keeps the full history.
    """
    user_id = int(user_id)
    conversation = _conversation_for_member(db, conversation_id, user_id)
    m = message_table.c

    db.execute(
        update(conversation_table)
        .where(conversation_table.c.id == conversation_id)
        .values(**{hidden_column(conversation, user_id): True})
    )
    sent = db.execute(
        update(message_table)
        .where(m.conversation_id == conversation_id, m.sender_id == user_id)
        .values(deleted_for_sender=True)
    ).rowcount
    received = db.execute(
        update(message_table)
        .where(m.conversation_id == conversation_id, m.sender_id != user_id)
        .values(deleted_for_recipient=True)
    ).rowcount
    db.commit()
    logger.info(
        "[delivery] user_id=%s hid conversation_id=%s sent=%s received=%s",
        user_id,
        conversation_id,
        sent,
        received,
    )
    return {"conversation_id": conversation_id, "hidden_messages": (sent or 0) + (received or 0)}
