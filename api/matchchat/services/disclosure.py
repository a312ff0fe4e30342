"""Progressive, consent-gated profile disclosure.

Level 1 is always visible. Level 2 and level 3 become eligible once the
conversation reaches a total message threshold and both participants have
written at least once. A level is shown to either side only when both sides
have accepted it. What the UI should ask a user is recomputed on every call
from the questionnaire flags and the stored consent, never latched.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import select, update

from ..config import LEVEL2_MESSAGE_THRESHOLD, LEVEL3_MESSAGE_THRESHOLD
from ..models import DisclosureConsent, DisclosureParticipant, DisclosureState
from ..repo import (
    get_conversation,
    get_questions_completed,
    get_user_by_id,
    insert_for,
    now_utc,
    other_participant,
    participants,
)
from .errors import AuthorizationError, NotFoundError, ValidationError
from .events import log_conversation_event

logger = logging.getLogger(__name__)

state_table = DisclosureState.__table__
participant_table = DisclosureParticipant.__table__
consent_table = DisclosureConsent.__table__

GATED_LEVELS = (2, 3)


class ConsentState(str, Enum):
    NONE = "NONE"
    ACCEPTED = "ACCEPTED"
    DECLINED_TEMPORARY = "DECLINED_TEMPORARY"


class LevelAction(str, Enum):
    FILL_INFORMATION = "FILL_INFORMATION"
    ASK_CONSENT = "ASK_CONSENT"
    NO_ACTION = "NO_ACTION"


def threshold(level: int) -> int:
    if level == 2:
        return LEVEL2_MESSAGE_THRESHOLD
    if level == 3:
        return LEVEL3_MESSAGE_THRESHOLD
    return 0


@dataclass
class DisclosureSnapshot:
    conversation_id: int
    participant_ids: tuple[int, int]
    total_message_count: int = 0
    current_level: int = 1
    message_counts: dict[int, int] = field(default_factory=dict)
    consents: dict[tuple[int, int], ConsentState] = field(default_factory=dict)

    def consent(self, user_id: int, level: int) -> ConsentState:
        return self.consents.get((int(user_id), level), ConsentState.NONE)

    def both_active(self) -> bool:
        return all(self.message_counts.get(uid, 0) >= 1 for uid in self.participant_ids)

    def threshold_met(self, level: int) -> bool:
        return self.total_message_count >= threshold(level) and self.both_active()

    def accepted_by(self, user_ids, level: int) -> bool:
        return all(self.consent(uid, level) is ConsentState.ACCEPTED for uid in user_ids)


@dataclass
class LevelProgress:
    previous_level: int
    current_level: int
    total_message_count: int
    both_active: bool

    @property
    def leveled_up(self) -> bool:
        return self.current_level > self.previous_level


@dataclass
class ConsentOutcome:
    level: int
    state: ConsentState
    unlocked: bool
    current_level: int


def compute_visible_level(snapshot: DisclosureSnapshot, viewer_id: int, owner_id: int) -> int:
    pair = {int(viewer_id), int(owner_id)}
    level = 1
    if snapshot.threshold_met(2) and snapshot.accepted_by(pair, 2):
        level = 2
        if snapshot.threshold_met(3) and snapshot.accepted_by(pair, 3):
            level = 3
    return level


def compute_current_level(snapshot: DisclosureSnapshot) -> int:
    level = 1
    if snapshot.threshold_met(2):
        level = 2
        if snapshot.threshold_met(3) and snapshot.accepted_by(snapshot.participant_ids, 2):
            level = 3
    return max(snapshot.current_level, level)


def compute_action(questions_completed: bool, consent: ConsentState) -> LevelAction:
    if not questions_completed:
        return LevelAction.FILL_INFORMATION
    if consent is not ConsentState.ACCEPTED:
        return LevelAction.ASK_CONSENT
    return LevelAction.NO_ACTION


def _validate_level(level: int) -> int:
    try:
        value = int(level)
    except (TypeError, ValueError):
        raise ValidationError("level must be 2 or 3")
    if value not in GATED_LEVELS:
        raise ValidationError("level must be 2 or 3")
    return value


def _conversation_or_raise(db, conversation_id: int) -> dict[str, Any]:
    conversation = get_conversation(db, conversation_id)
    if not conversation:
        raise NotFoundError("Conversation not found")
    return conversation


def _require_participant(conversation: dict[str, Any], user_id: int) -> None:
    if int(user_id) not in participants(conversation):
        raise AuthorizationError("Access denied to this conversation")


def initialize(db, conversation_id: int, participant_ids) -> None:
    db.execute(
        insert_for(db, state_table)
        .values(conversation_id=conversation_id, total_message_count=0, current_level=1)
        .on_conflict_do_nothing(index_elements=["conversation_id"])
    )
    for user_id in participant_ids:
        db.execute(
            insert_for(db, participant_table)
            .values(conversation_id=conversation_id, user_id=int(user_id), message_count=0)
            .on_conflict_do_nothing(index_elements=["conversation_id", "user_id"])
        )


def load_snapshot(db, conversation_id: int) -> DisclosureSnapshot:
    conversation = _conversation_or_raise(db, conversation_id)
    snapshot = DisclosureSnapshot(conversation_id=conversation_id, participant_ids=participants(conversation))

    state = db.execute(
        select(state_table).where(state_table.c.conversation_id == conversation_id)
    ).mappings().first()
    if state:
        snapshot.total_message_count = state["total_message_count"]
        snapshot.current_level = state["current_level"]

    for row in db.execute(
        select(participant_table).where(participant_table.c.conversation_id == conversation_id)
    ).mappings():
        snapshot.message_counts[row["user_id"]] = row["message_count"]

    for row in db.execute(
        select(consent_table).where(consent_table.c.conversation_id == conversation_id)
    ).mappings():
        snapshot.consents[(row["user_id"], row["level"])] = ConsentState(row["state"])

    return snapshot


def _raise_current_level(db, snapshot: DisclosureSnapshot) -> int:
    target = compute_current_level(snapshot)
    if target <= snapshot.current_level:
        return snapshot.current_level
    result = db.execute(
        update(state_table)
        .where(state_table.c.conversation_id == snapshot.conversation_id, state_table.c.current_level < target)
        .values(current_level=target)
    )
    if not result.rowcount:
        # A concurrent writer already moved the level.
        return snapshot.current_level
    logger.info(
        "[disclosure] conversation_id=%s level %s -> %s (total=%s)",
        snapshot.conversation_id,
        snapshot.current_level,
        target,
        snapshot.total_message_count,
    )
    log_conversation_event(
        db,
        "level_threshold_reached",
        conversation_id=snapshot.conversation_id,
        payload={"from_level": snapshot.current_level, "to_level": target, "message_count": snapshot.total_message_count},
    )
    return target


def record_message(db, conversation_id: int, sender_id: int) -> LevelProgress:
    conversation = _conversation_or_raise(db, conversation_id)
    _require_participant(conversation, sender_id)
    initialize(db, conversation_id, participants(conversation))

    db.execute(
        update(state_table)
        .where(state_table.c.conversation_id == conversation_id)
        .values(total_message_count=state_table.c.total_message_count + 1)
    )
    db.execute(
        update(participant_table)
        .where(participant_table.c.conversation_id == conversation_id, participant_table.c.user_id == int(sender_id))
        .values(message_count=participant_table.c.message_count + 1)
    )

    snapshot = load_snapshot(db, conversation_id)
    previous = snapshot.current_level
    current = _raise_current_level(db, snapshot)
    if snapshot.total_message_count >= threshold(2) and not snapshot.both_active():
        logger.debug(
            "[disclosure] conversation_id=%s total=%s but only one side has written",
            conversation_id,
            snapshot.total_message_count,
        )
    return LevelProgress(
        previous_level=previous,
        current_level=current,
        total_message_count=snapshot.total_message_count,
        both_active=snapshot.both_active(),
    )


def visible_level(db, conversation_id: int, viewer_id: int, owner_id: int) -> int:
    return compute_visible_level(load_snapshot(db, conversation_id), viewer_id, owner_id)


def action_for(db, conversation_id: int, user_id: int, level: int) -> LevelAction:
    level = _validate_level(level)
    _require_participant(_conversation_or_raise(db, conversation_id), user_id)
    snapshot = load_snapshot(db, conversation_id)
    completed = get_questions_completed(db, user_id, level)
    return compute_action(completed, snapshot.consent(user_id, level))


def set_consent(db, conversation_id: int, user_id: int, level: int, accepted: bool, now: datetime | None = None) -> ConsentOutcome:
    level = _validate_level(level)
    conversation = _conversation_or_raise(db, conversation_id)
    _require_participant(conversation, user_id)
    initialize(db, conversation_id, participants(conversation))

    state = ConsentState.ACCEPTED if accepted else ConsentState.DECLINED_TEMPORARY
    now = now or now_utc()
    stmt = insert_for(db, consent_table).values(
        conversation_id=conversation_id,
        user_id=int(user_id),
        level=level,
        state=state.value,
        updated_at=now,
    )
    db.execute(
        stmt.on_conflict_do_update(
            index_elements=["conversation_id", "user_id", "level"],
            set_={"state": stmt.excluded.state, "updated_at": stmt.excluded.updated_at},
        )
    )
    log_conversation_event(
        db,
        "consent_set",
        conversation_id=conversation_id,
        user_id=int(user_id),
        payload={"level": level, "state": state.value},
        now=now,
    )

    snapshot = load_snapshot(db, conversation_id)
    current = _raise_current_level(db, snapshot)
    unlocked = accepted and snapshot.accepted_by(snapshot.participant_ids, level)
    logger.info("[disclosure] conversation_id=%s user_id=%s level=%s consent=%s", conversation_id, user_id, level, state.value)
    return ConsentOutcome(level=level, state=state, unlocked=unlocked, current_level=current)


def level_status(db, conversation_id: int, user_id: int) -> dict[str, Any]:
    conversation = _conversation_or_raise(db, conversation_id)
    _require_participant(conversation, user_id)
    partner_id = other_participant(conversation, user_id)
    snapshot = load_snapshot(db, conversation_id)

    levels: dict[str, Any] = {}
    for level in GATED_LEVELS:
        completed = get_questions_completed(db, user_id, level)
        consent = snapshot.consent(user_id, level)
        levels[str(level)] = {
            "threshold": threshold(level),
            "threshold_reached": snapshot.threshold_met(level),
            "action": compute_action(completed, consent).value,
            "user_completed": completed,
            "partner_completed": get_questions_completed(db, partner_id, level),
            "consent_state": consent.value,
            "partner_consent_state": snapshot.consent(partner_id, level).value,
        }

    return {
        "conversation_id": conversation_id,
        "message_count": snapshot.total_message_count,
        "user_message_count": snapshot.message_counts.get(int(user_id), 0),
        "partner_message_count": snapshot.message_counts.get(partner_id, 0),
        "both_active": snapshot.both_active(),
        "current_level": snapshot.current_level,
        "visible_level": compute_visible_level(snapshot, user_id, partner_id),
        "levels": levels,
    }


# Field allow-lists. A field listed at level L is visible at L and above.
ALWAYS_VISIBLE_FIELDS = frozenset({"id", "first_name", "last_name", "visibility_level"})

PROFILE_FIELDS = {
    1: frozenset(
        {
            "gender",
            "dob",
            "age",
            "current_location",
            "location",
            "from_location",
            "name",
            "interests",
            "intent",
            "relationship_status",
            "profile_pic_url",
        }
    ),
    2: frozenset({"pets", "drinking", "smoking", "height", "food_preference"}),
    3: frozenset(
        {
            "kids_preference",
            "face_photos",
            "favourite_travel_destination",
            "last_holiday_places",
            "favourite_places_to_go",
            "instagram",
            "linkedin",
            "religious_level",
            "religion",
            "relationship_values",
        }
    ),
}

INTENT_FIELDS = {
    1: frozenset({"bio", "watch_list", "tv_shows", "movies", "artists_bands", "lifestyle_image_urls", "profile_questions"}),
    2: frozenset(),
}

PROFILE_QUESTION_FIELDS = {
    1: frozenset({"job_title", "company_name"}),
    2: frozenset(
        {"education", "education_detail", "languages", "can_code", "coding_languages", "sleep_schedule", "date_bill"}
    ),
}


def _allowed(groups: dict[int, frozenset], level: int) -> frozenset:
    out: set[str] = set()
    for lvl, names in groups.items():
        if lvl <= level:
            out |= names
    return frozenset(out)


def _null_disallowed(payload: dict[str, Any], allowed: frozenset | None) -> dict[str, Any]:
    # None means unrestricted.
    if allowed is None:
        return payload
    return {key: (value if key in allowed else None) for key, value in payload.items()}


def filter_profile(profile: dict[str, Any], level: int) -> dict[str, Any]:
    level = max(1, min(3, int(level)))
    top_allowed = ALWAYS_VISIBLE_FIELDS | _allowed(PROFILE_FIELDS, level)
    filtered = _null_disallowed(copy.deepcopy(profile), top_allowed)

    intent = filtered.get("intent")
    if isinstance(intent, dict):
        # Everything inside intent is shared once level 3 is unlocked.
        intent = _null_disallowed(intent, None if level >= 3 else _allowed(INTENT_FIELDS, level))
        questions = intent.get("profile_questions")
        if isinstance(questions, dict):
            intent["profile_questions"] = _null_disallowed(
                questions, None if level >= 3 else _allowed(PROFILE_QUESTION_FIELDS, level)
            )
        filtered["intent"] = intent
    return filtered


def partner_profile(db, conversation_id: int, viewer_id: int) -> dict[str, Any]:
    conversation = _conversation_or_raise(db, conversation_id)
    _require_participant(conversation, viewer_id)
    owner_id = other_participant(conversation, viewer_id)
    owner = get_user_by_id(db, owner_id)
    if not owner:
        raise NotFoundError("Profile not found")

    level = visible_level(db, conversation_id, viewer_id, owner_id)
    profile = {**owner["profile"], "id": owner["id"], "first_name": owner["first_name"], "visibility_level": level}
    return filter_profile(profile, level)
