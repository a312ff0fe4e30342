import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketDisconnect

import matchchat.main as m
from matchchat import config
from matchchat.auth.deps import get_current_user
from matchchat.services.presence import PresenceRegistry
from matchchat.services.realtime import ConnectionHub

from conftest import issue_token

ADMIN = {"X-Admin-Token": "admin-secret"}


def auth(user_id):
    return {"Authorization": f"Bearer {issue_token(user_id)}"}


@pytest.fixture
def presence(monkeypatch):
    registry = PresenceRegistry()
    monkeypatch.setattr(m.app.state, "presence", registry)
    monkeypatch.setattr(m.app.state, "hub", ConnectionHub(registry))
    return registry


@pytest.fixture
def client(session_factory, make_user, presence, monkeypatch):
    monkeypatch.setattr(config, "JWT_SECRET", "test-secret")
    monkeypatch.setattr(config, "ADMIN_TOKEN", "admin-secret")
    monkeypatch.setattr(m, "wait_for_db", lambda *args, **kwargs: None)
    monkeypatch.setattr(m, "run_migrations", lambda *args, **kwargs: None)
    make_user(1, "Ana", level2=True)
    make_user(2, "Ben", level2=True, profile={"gender": "male", "pets": "dog", "instagram": "@ben"})
    make_user(3, "Cy")
    return TestClient(m.app)


@pytest.fixture
def conversation_id(client):
    res = client.post("/conversations", json={"user_a_id": 2, "user_b_id": 1}, headers=ADMIN)
    assert res.status_code == 201
    return res.json()["conversation"]["id"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requests_without_token_are_rejected(client):
    assert client.get("/conversations").status_code == 401
    res = client.get("/conversations", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401
    assert "trace_id" in res.json()["detail"]


def test_create_conversation_requires_admin_token(client):
    res = client.post("/conversations", json={"user_a_id": 1, "user_b_id": 2})
    assert res.status_code == 401

    first = client.post("/conversations", json={"user_a_id": 1, "user_b_id": 2}, headers=ADMIN).json()
    again = client.post("/conversations", json={"user_a_id": 2, "user_b_id": 1}, headers=ADMIN).json()
    assert first["conversation"]["created"] is True
    assert again["conversation"]["created"] is False
    assert again["conversation"]["id"] == first["conversation"]["id"]


def test_send_message_over_http(client, conversation_id, presence):
    res = client.post(f"/conversations/{conversation_id}/messages", json={"content": "hi"}, headers=auth(1))
    assert res.status_code == 201
    assert res.json()["message"]["status"] == "SENT"

    presence.mark_online(1, "conn-1")
    res = client.post(f"/conversations/{conversation_id}/messages", json={"content": "hey"}, headers=auth(2))
    assert res.json()["message"]["status"] == "DELIVERED"

    inbox = client.get("/conversations", headers=auth(1)).json()["conversations"]
    assert inbox[0]["unread_count"] == 1
    assert inbox[0]["last_message"]["content"] == "hey"


def test_chat_errors_map_to_status_codes(client, conversation_id):
    res = client.post(f"/conversations/{conversation_id}/messages", json={"content": "hi"}, headers=auth(3))
    assert res.status_code == 403
    assert res.json()["code"] == "forbidden"

    res = client.post(f"/conversations/{conversation_id}/messages", json={"content": " "}, headers=auth(1))
    assert res.status_code == 400
    assert res.json()["code"] == "validation_error"

    res = client.get("/conversations/999/messages", headers=auth(1))
    assert res.status_code == 404


def test_read_list_and_unsend(client, conversation_id):
    sent = client.post(f"/conversations/{conversation_id}/messages", json={"content": "one"}, headers=auth(1)).json()
    message_id = sent["message"]["id"]

    res = client.put(f"/conversations/{conversation_id}/read", headers=auth(2))
    assert res.json()["message_ids"] == [message_id]
    res = client.put(f"/conversations/{conversation_id}/read", json={"message_ids": [message_id]}, headers=auth(2))
    assert res.json()["message_ids"] == []

    messages = client.get(f"/conversations/{conversation_id}/messages?limit=10", headers=auth(2)).json()["messages"]
    assert [(mm["id"], mm["status"]) for mm in messages] == [(message_id, "READ")]

    assert client.delete(f"/messages/{message_id}", headers=auth(2)).status_code == 403
    assert client.delete(f"/messages/{message_id}", headers=auth(1)).status_code == 200
    assert client.get(f"/conversations/{conversation_id}/messages", headers=auth(2)).json()["messages"] == []


def test_new_matches_and_match_state(client, conversation_id):
    assert [x["conversation_id"] for x in client.get("/matches/new", headers=auth(1)).json()["matches"]] == [conversation_id]

    client.post(f"/conversations/{conversation_id}/messages", json={"content": "hi"}, headers=auth(1))
    assert client.get("/matches/new", headers=auth(1)).json()["matches"] == []
    assert len(client.get("/matches/new", headers=auth(2)).json()["matches"]) == 1

    state = client.get(f"/conversations/{conversation_id}/match-state", headers=auth(2)).json()
    assert state["first_message_sender_id"] == 1
    assert state["visible_as_new_match"] is True
    assert client.get(f"/conversations/{conversation_id}/match-state", headers=auth(3)).status_code == 403


def test_consent_flow_unlocks_partner_profile(client, conversation_id):
    for sender in (1, 2, 1, 2, 1):
        client.post(f"/conversations/{conversation_id}/messages", json={"content": "x"}, headers=auth(sender))

    status = client.get(f"/conversations/{conversation_id}/level-status", headers=auth(1)).json()
    assert status["current_level"] == 2
    assert status["levels"]["2"]["action"] == "ASK_CONSENT"

    before = client.get(f"/conversations/{conversation_id}/partner-profile", headers=auth(1)).json()["profile"]
    assert before["gender"] == "male"
    assert before["pets"] is None

    res = client.post(f"/conversations/{conversation_id}/consent", json={"level": 2, "accepted": True}, headers=auth(1))
    assert res.json()["unlocked"] is False
    res = client.post(f"/conversations/{conversation_id}/consent", json={"level": 2, "accepted": True}, headers=auth(2))
    assert res.json()["unlocked"] is True

    after = client.get(f"/conversations/{conversation_id}/partner-profile", headers=auth(1)).json()["profile"]
    assert after["visibility_level"] == 2
    assert after["pets"] == "dog"
    assert after["instagram"] is None

    res = client.post(f"/conversations/{conversation_id}/consent", json={"level": 4, "accepted": True}, headers=auth(1))
    assert res.status_code == 400


def test_admin_expire(client, conversation_id):
    assert client.post("/admin/matches/expire").status_code == 401
    assert client.post("/admin/matches/expire", headers=ADMIN).json()["expired"] == 0
    res = client.post("/admin/matches/expire", json={"conversation_id": conversation_id}, headers=ADMIN)
    assert res.json() == {"expired": 1, "conversation_ids": [conversation_id]}
    assert client.get("/matches/new", headers=auth(1)).json()["matches"] == []


def test_block_unmatch_and_hide_routes(client, conversation_id):
    client.post(f"/conversations/{conversation_id}/messages", json={"content": "hi"}, headers=auth(1))

    res = client.delete(f"/conversations/{conversation_id}", headers=auth(1))
    assert res.json() == {"success": True, "conversation_id": conversation_id, "hidden_messages": 1}
    assert client.get("/conversations", headers=auth(1)).json()["conversations"] == []
    assert len(client.get("/conversations", headers=auth(2)).json()["conversations"]) == 1

    assert client.delete(f"/conversations/{conversation_id}/unmatch", headers=auth(3)).status_code == 403
    res = client.delete(f"/conversations/{conversation_id}/unmatch", headers=auth(2))
    assert res.json() == {"success": True, "conversation_id": conversation_id}
    assert client.get(f"/conversations/{conversation_id}/messages", headers=auth(2)).status_code == 404

    other = client.post("/conversations", json={"user_a_id": 2, "user_b_id": 3}, headers=ADMIN).json()["conversation"]["id"]
    assert client.post(f"/conversations/{other}/block", headers=auth(3)).status_code == 200
    assert client.get("/conversations", headers=auth(2)).json()["conversations"] == []
    res = client.post("/conversations", json={"user_a_id": 2, "user_b_id": 3}, headers=ADMIN)
    assert res.status_code == 403


def test_presence_route_with_dependency_override(client, presence):
    m.app.dependency_overrides[get_current_user] = lambda: {"id": 1, "first_name": "Ana"}
    try:
        presence.mark_online(2, "conn-2")
        assert client.get("/presence/2").json() == {"user_id": 2, "online": True}
        assert client.get("/presence/3").json() == {"user_id": 3, "online": False}
    finally:
        m.app.dependency_overrides.clear()


def test_websocket_rejects_missing_or_bad_token(client):
    for path in ("/ws", "/ws?token=garbage"):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(path):
                pass
        assert exc.value.code == 4401


def test_websocket_session(client, conversation_id, presence):
    other = client.post("/conversations", json={"user_a_id": 2, "user_b_id": 3}, headers=ADMIN).json()
    token = issue_token(1)

    with client.websocket_connect(f"/ws?token={token}") as ws:
        assert presence.is_online(1)

        ws.send_json({"event": "join_conversation", "data": {"conversation_id": conversation_id}})
        assert ws.receive_json()["event"] == "joined_conversation"

        ws.send_json({"event": "send_message", "data": {"conversation_id": conversation_id, "content": "hello"}})
        ack = ws.receive_json()
        assert ack["event"] == "message_sent"
        assert ack["data"]["content"] == "hello"
        assert ack["data"]["status"] == "SENT"
        moved = ws.receive_json()
        assert moved["event"] == "match_moved_to_chat"
        assert moved["data"]["reason"] == "first_message"

        ws.send_json({"event": "request_user_status", "data": {"user_id": 2}})
        assert ws.receive_json() == {"event": "user_status", "data": {"user_id": 2, "online": False}}

        ws.send_json({"event": "join_conversation", "data": {"conversation_id": other["conversation"]["id"]}})
        error = ws.receive_json()
        assert error["event"] == "message_error"
        assert error["data"]["code"] == "forbidden"

        ws.send_json({"event": "send_message", "data": {"conversation_id": conversation_id, "content": ""}})
        assert ws.receive_json()["data"]["code"] == "validation_error"

        ws.send_text("not json")
        assert ws.receive_json()["data"]["code"] == "invalid_frame"

        ws.send_json({"event": "dance", "data": {}})
        assert ws.receive_json()["data"]["code"] == "unknown_event"



def test_websocket_binary_frame_keeps_socket_open(client, presence):
    with client.websocket_connect(f"/ws?token={issue_token(1)}") as ws:
        ws.send_bytes(b"\x00\x01")
        error = ws.receive_json()
        assert error["event"] == "message_error"
        assert error["data"]["code"] == "invalid_frame"

        ws.send_json({"event": "request_user_status", "data": {"user_id": 2}})
        assert ws.receive_json() == {"event": "user_status", "data": {"user_id": 2, "online": False}}
