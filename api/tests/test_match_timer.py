from datetime import timedelta

import pytest

from matchchat.repo import get_conversation
from matchchat.services import match_timer
from matchchat.services.errors import NotFoundError
from conftest import T0


def test_expiry_is_seven_days_after_match(make_conversation):
    conversation = make_conversation()
    assert conversation["match_created_at"] == T0
    assert conversation["match_expires_at"] == T0 + timedelta(days=7)
    assert conversation["match_expired"] is False


def test_start_does_not_move_a_running_clock(db, make_conversation):
    conversation = make_conversation()
    assert match_timer.start(db, conversation["id"], T0 + timedelta(days=3)) is False
    db.commit()
    assert get_conversation(db, conversation["id"])["match_expires_at"] == T0 + timedelta(days=7)


def test_first_message_and_reply_recorded_at_most_once(db, make_conversation):
    cid = make_conversation()["id"]

    assert match_timer.record_reply(db, cid, 2, now=T0) is False
    assert match_timer.record_first_message(db, cid, 1, now=T0 + timedelta(minutes=1)) is True
    assert match_timer.record_first_message(db, cid, 2, now=T0 + timedelta(minutes=2)) is False
    # The first sender writing again is not a reply.
    assert match_timer.record_reply(db, cid, 1, now=T0 + timedelta(minutes=3)) is False
    assert match_timer.record_reply(db, cid, 2, now=T0 + timedelta(minutes=4)) is True
    assert match_timer.record_reply(db, cid, 2, now=T0 + timedelta(minutes=5)) is False
    db.commit()

    state = get_conversation(db, cid)
    assert state["first_message_sender_id"] == 1
    assert state["first_message_at"] == T0 + timedelta(minutes=1)
    assert state["reply_at"] == T0 + timedelta(minutes=4)


def test_visibility_follows_first_message_and_reply(db, make_conversation):
    cid = make_conversation()["id"]
    assert match_timer.visibility_for_user(db, cid, 1) is True
    assert match_timer.visibility_for_user(db, cid, 2) is True

    match_timer.record_first_message(db, cid, 1, now=T0)
    db.commit()
    assert match_timer.visibility_for_user(db, cid, 1) is False
    assert match_timer.visibility_for_user(db, cid, 2) is True

    match_timer.record_reply(db, cid, 2, now=T0)
    db.commit()
    assert match_timer.visibility_for_user(db, cid, 1) is False
    assert match_timer.visibility_for_user(db, cid, 2) is False


def test_visibility_unknown_conversation_is_false(db):
    assert match_timer.visibility_for_user(db, 999, 1) is False


def test_sweep_expires_unanswered_match_only_after_deadline(db, make_conversation):
    cid = make_conversation()["id"]
    match_timer.record_first_message(db, cid, 1, now=T0 + timedelta(hours=1))
    db.commit()

    early = match_timer.sweep_expirations(db, now=T0 + timedelta(days=7) - timedelta(seconds=1))
    assert early.expired == 0

    result = match_timer.sweep_expirations(db, now=T0 + timedelta(days=7, seconds=1))
    assert result.conversation_ids == [cid]
    assert match_timer.visibility_for_user(db, cid, 1) is False
    assert match_timer.visibility_for_user(db, cid, 2) is False


def test_sweep_skips_replied_matches(db, make_conversation):
    cid = make_conversation()["id"]
    match_timer.record_first_message(db, cid, 1, now=T0)
    match_timer.record_reply(db, cid, 2, now=T0 + timedelta(hours=2))
    db.commit()

    result = match_timer.sweep_expirations(db, now=T0 + timedelta(days=30))
    assert result.expired == 0
    assert get_conversation(db, cid)["match_expired"] is False


def test_repeated_sweeps_expire_each_match_once(db, make_conversation):
    first = make_conversation(1, 2)["id"]
    second = make_conversation(1, 3)["id"]
    later = T0 + timedelta(days=8)

    assert match_timer.sweep_expirations(db, now=later).conversation_ids == sorted([first, second])
    assert match_timer.sweep_expirations(db, now=later).expired == 0


def test_list_new_matches_reports_waiting_side(db, make_user, make_conversation):
    make_user(1, "Ana")
    make_user(2, "Ben")
    cid = make_conversation(1, 2)["id"]
    match_timer.record_first_message(db, cid, 1, now=T0)
    db.commit()

    assert match_timer.list_new_matches(db, 1) == []
    matches = match_timer.list_new_matches(db, 2)
    assert len(matches) == 1
    entry = matches[0]
    assert entry["conversation_id"] == cid
    assert entry["other_user_id"] == 1
    assert entry["first_name"] == "Ana"
    assert entry["has_first_message"] is True
    assert entry["is_waiting_for_reply"] is True
    assert entry["expires_at"] == T0 + timedelta(days=7)


def test_expire_match_is_manual_and_idempotent(db, make_conversation):
    cid = make_conversation()["id"]
    assert match_timer.expire_match(db, cid, now=T0) is True
    assert match_timer.expire_match(db, cid, now=T0) is False
    assert get_conversation(db, cid)["match_expired"] is True
    with pytest.raises(NotFoundError):
        match_timer.expire_match(db, 404)


def test_sweep_rolls_back_and_reraises(db, make_conversation, monkeypatch):
    cid = make_conversation()["id"]

    def boom(*args, **kwargs):
        raise RuntimeError("audit table unavailable")

    monkeypatch.setattr(match_timer, "log_conversation_event", boom)
    with pytest.raises(RuntimeError):
        match_timer.sweep_expirations(db, now=T0 + timedelta(days=8))
    assert get_conversation(db, cid)["match_expired"] is False
