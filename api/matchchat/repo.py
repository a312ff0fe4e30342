from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.dialects import postgresql, sqlite

from .models import Conversation, UserAccount, UserBlock

conversation_table = Conversation.__table__
user_table = UserAccount.__table__
block_table = UserBlock.__table__

_CONVERSATION_TIMESTAMPS = (
    "created_at",
    "updated_at",
    "match_created_at",
    "match_expires_at",
    "first_message_at",
    "reply_at",
)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_pair(user_a_id: int, user_b_id: int) -> tuple[int, int]:
    a, b = int(user_a_id), int(user_b_id)
    return (a, b) if a < b else (b, a)


def conversation_row_to_dict(row) -> dict[str, Any]:
    out = dict(row)
    for key in _CONVERSATION_TIMESTAMPS:
        out[key] = as_utc(out.get(key))
    out["match_expired"] = bool(out.get("match_expired"))
    out["hidden_by_a"] = bool(out.get("hidden_by_a"))
    out["hidden_by_b"] = bool(out.get("hidden_by_b"))
    return out


def get_conversation(db, conversation_id: int) -> dict[str, Any] | None:
    row = db.execute(
        select(conversation_table).where(conversation_table.c.id == conversation_id)
    ).mappings().first()
    return conversation_row_to_dict(row) if row else None


def find_conversation_by_pair(db, user_a_id: int, user_b_id: int) -> dict[str, Any] | None:
    a, b = normalize_pair(user_a_id, user_b_id)
    row = db.execute(
        select(conversation_table).where(
            conversation_table.c.participant_a_id == a,
            conversation_table.c.participant_b_id == b,
        )
    ).mappings().first()
    return conversation_row_to_dict(row) if row else None


def participants(conversation: dict[str, Any]) -> tuple[int, int]:
    return conversation["participant_a_id"], conversation["participant_b_id"]


def is_participant(conversation: dict[str, Any], user_id: int) -> bool:
    return int(user_id) in participants(conversation)


def other_participant(conversation: dict[str, Any], user_id: int) -> int:
    a, b = participants(conversation)
    return b if int(user_id) == a else a


def hidden_column(conversation: dict[str, Any], user_id: int) -> str:
    return "hidden_by_a" if int(user_id) == conversation["participant_a_id"] else "hidden_by_b"


def is_blocked(db, user_a_id: int, user_b_id: int) -> bool:
    """True when either user has blocked the other."""
    b = block_table.c
    row = db.execute(
        select(b.id).where(
            or_(
                and_(b.blocker_id == user_a_id, b.blocked_id == user_b_id),
                and_(b.blocker_id == user_b_id, b.blocked_id == user_a_id),
            )
        )
    ).first()
    return row is not None


def get_user_by_id(db, user_id: int) -> dict[str, Any] | None:
    row = db.execute(select(user_table).where(user_table.c.id == user_id)).mappings().first()
    if not row:
        return None
    return {
        "id": row["id"],
        "first_name": row["first_name"],
        "level2_questions_completed": bool(row["level2_questions_completed"]),
        "level3_questions_completed": bool(row["level3_questions_completed"]),
        "profile": dict(row["profile"] or {}),
    }


def get_first_name(db, user_id: int) -> str | None:
    return db.execute(select(user_table.c.first_name).where(user_table.c.id == user_id)).scalar_one_or_none()


def get_questions_completed(db, user_id: int, level: int) -> bool:
    column = user_table.c.level2_questions_completed if level == 2 else user_table.c.level3_questions_completed
    value = db.execute(select(column).where(user_table.c.id == user_id)).scalar_one_or_none()
    return bool(value)


def insert_for(db, table):
    """Dialect insert so callers can use ON CONFLICT on both PostgreSQL and SQLite."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"unsupported dialect: {dialect}")
