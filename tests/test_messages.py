"""
Tests for the GET /conversations/{id}/messages endpoint.

Tests cover:
- Content resolved per viewer and conversation mode
- Pagination with limit and offset
- Unknown conversation and parameter validation
"""

import pytest

from smsbridge import storage
from smsbridge.models import Conversation, Message, User
from smsbridge.storage import SessionLocal
from smsbridge.visibility import compose_assisted


RAW = "Honestly this is the third time the build broke"
PROCESSED = "The build has broken again; can we add a check?"


def seed_conversation(mode: str, processed=PROCESSED, raw_visible_to=None) -> dict:
    with SessionLocal() as db:
        alice = User(display_name="Alice")
        bob = User(display_name="Bob")
        conv = Conversation(mode=mode)
        db.add_all([alice, bob, conv])
        db.flush()
        db.add(Message(
            conversation_id=conv.id,
            sender_id=alice.id,
            content_raw=RAW,
            content_processed=processed,
            raw_visible_to=raw_visible_to(alice.id) if raw_visible_to else None,
            created_at="2025-01-15T10:00:00.000000Z",
        ))
        db.commit()
        return {"conversation_id": conv.id, "alice": alice.id, "bob": bob.id}


def get_content(client, ids, viewer=None) -> str:
    params = {"viewer_id": viewer} if viewer else {}
    response = client.get(f"/conversations/{ids['conversation_id']}/messages", params=params)
    assert response.status_code == 200
    return response.json()["data"][0]["content"]


class TestMessageVisibility:

    def test_direct_mode_shows_raw(self, client):
        ids = seed_conversation("direct")
        assert get_content(client, ids, ids["bob"]) == RAW

    def test_assisted_mode_shows_both(self, client):
        ids = seed_conversation("assisted")
        assert get_content(client, ids, ids["bob"]) == compose_assisted(RAW, PROCESSED)

    def test_assisted_mode_unprocessed(self, client):
        ids = seed_conversation("assisted", processed=None)
        assert get_content(client, ids, ids["bob"]) == RAW

    def test_anonymous_mode_privileged_viewer(self, client):
        ids = seed_conversation("anonymous", raw_visible_to=lambda alice_id: [alice_id])
        assert get_content(client, ids, ids["alice"]) == RAW
        assert get_content(client, ids, ids["bob"]) == PROCESSED

    def test_anonymous_mode_without_viewer(self, client):
        ids = seed_conversation("anonymous")
        assert get_content(client, ids) == PROCESSED

    def test_anonymous_mode_unprocessed_falls_back(self, client):
        ids = seed_conversation("anonymous", processed=None)
        assert get_content(client, ids, ids["bob"]) == RAW

    def test_response_fields(self, client):
        ids = seed_conversation("direct")
        data = client.get(f"/conversations/{ids['conversation_id']}/messages").json()

        assert data["mode"] == "direct"
        assert data["total"] == 1
        msg = data["data"][0]
        assert msg["sender_id"] == ids["alice"]
        assert msg["is_from_agent"] is False
        assert msg["source"] == "app"
        assert msg["created_at"] == "2025-01-15T10:00:00.000000Z"


class TestMessagesPagination:

    @pytest.fixture
    def seeded(self, client):
        with SessionLocal() as db:
            user = User(display_name="Alice")
            conv = Conversation(mode="direct")
            db.add_all([user, conv])
            db.commit()
            for i in range(5):
                storage.create_message(db, conv.id, user.id, f"message {i}")
            return conv.id

    def test_chronological_order(self, client, seeded):
        data = client.get(f"/conversations/{seeded}/messages").json()
        assert [m["content"] for m in data["data"]] == [f"message {i}" for i in range(5)]

    def test_limit_and_offset(self, client, seeded):
        data = client.get(f"/conversations/{seeded}/messages", params={"limit": 2, "offset": 2}).json()
        assert [m["content"] for m in data["data"]] == ["message 2", "message 3"]
        assert data["total"] == 5
        assert data["limit"] == 2
        assert data["offset"] == 2

    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 101}, {"offset": -1}])
    def test_invalid_pagination(self, client, seeded, params):
        response = client.get(f"/conversations/{seeded}/messages", params=params)
        assert response.status_code == 422


class TestMessagesNotFound:

    def test_unknown_conversation(self, client):
        response = client.get("/conversations/nope/messages")
        assert response.status_code == 404
        assert response.json() == {"detail": "conversation not found"}

    def test_seeded_sms_conversation_exists(self, client):
        response = client.get(f"/conversations/{storage.settings.SMS_CONVERSATION_ID}/messages")
        assert response.status_code == 200
        assert response.json()["mode"] == "assisted"
        assert response.json()["data"] == []
