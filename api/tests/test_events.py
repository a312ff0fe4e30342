from datetime import datetime, timezone

from matchchat.services.events import log_conversation_event


class FakeDB:
    def __init__(self):
        self.calls = []

    def execute(self, stmt):
        self.calls.append(stmt)


def test_log_conversation_event_inserts_expected_payload_shape():
    db = FakeDB()
    now = datetime(2026, 2, 9, tzinfo=timezone.utc)
    log_conversation_event(
        db,
        "match_moved_to_chat",
        conversation_id=7,
        user_id=3,
        payload={"reason": "reply"},
        now=now,
    )
    assert len(db.calls) == 1
    stmt = db.calls[0]
    assert stmt.table.name == "conversation_event"
    params = stmt.compile().params
    assert params["event_type"] == "match_moved_to_chat"
    assert params["conversation_id"] == 7
    assert params["user_id"] == 3
    assert params["payload"] == {"reason": "reply"}
    assert params["created_at"] == now


def test_log_conversation_event_defaults_empty_payload():
    db = FakeDB()
    log_conversation_event(db, "match_expired")
    params = db.calls[0].compile().params
    assert params["payload"] == {}
    assert params["conversation_id"] is None
