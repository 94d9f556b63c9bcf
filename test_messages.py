"""
Tests for the dashboard endpoints.

Tests cover:
- POST /send (dispatch) and its error mapping
- POST /status delivery callbacks and the status read endpoints
- POST /read, /mark-unread, /delete-chat
"""

import pytest
from fastapi.testclient import TestClient

from conftest import FakeTransport
from wa_inbox.main import create_app


@pytest.fixture
def conversation_id(client) -> str:
    """An existing conversation with one unread inbound message."""
    client.post("/webhook", data={"From": "whatsapp:+393331234567", "Body": "hi"})
    return client.get("/conversations").json()[0]["id"]


def send(client, to="3331234567", body="ok", conversation_id=None):
    payload = {"to": to, "body": body}
    if conversation_id:
        payload["conversationId"] = conversation_id
    return client.post("/send", json=payload)


class TestSend:
    """Outbound dispatch."""

    def test_send_reusing_conversation(self, client, transport, events, conversation_id):
        response = send(client, conversation_id=conversation_id)

        assert response.status_code == 200
        data = response.json()
        assert data["conversationId"] == conversation_id
        assert data["phone"] == "+393331234567"
        assert data["status"] == "queued"
        assert data["sid"].startswith("SM")

        assert transport.sent == [
            {"from": "whatsapp:+14155550100", "to": "whatsapp:+393331234567", "body": "ok"}
        ]

        messages = client.get("/conversation-messages", params={"id": conversation_id}).json()
        assert [m["direction"] for m in messages] == ["inbound", "outbound"]
        assert messages[1]["id"] == data["messageId"]
        assert messages[1]["sid"] == data["sid"]

        summary = client.get("/conversations").json()[0]
        assert summary["unreadCount"] == 1
        assert summary["lastMessageText"] == "ok"

        statuses = client.get("/message-status", params={"conversationId": conversation_id}).json()
        assert statuses[data["sid"]]["status"] == "queued"

        assert events.of_type("message")[-1]["message"]["direction"] == "outbound"

    def test_send_resolves_conversation_by_number(self, client, conversation_id):
        response = send(client, to="+39 333 123 4567")

        assert response.status_code == 200
        assert response.json()["conversationId"] == conversation_id

    def test_send_to_new_number_creates_conversation(self, client):
        response = send(client, to="whatsapp:+447700900123")

        assert response.status_code == 200
        conversations = client.get("/conversations").json()
        assert conversations[0]["phone"] == "+447700900123"
        assert conversations[0]["unreadCount"] == 0

    def test_invalid_recipient(self, client, transport):
        response = send(client, to="not a number")

        assert response.status_code == 400
        assert "error" in response.json()
        assert transport.sent == []

    def test_empty_body(self, client, transport):
        response = send(client, body="")

        assert response.status_code == 400
        assert transport.sent == []

    def test_transport_failure(self, client, transport, conversation_id):
        transport.fail = True

        response = send(client, conversation_id=conversation_id)

        assert response.status_code == 500
        assert response.json() == {"error": "Twilio API error"}
        messages = client.get("/conversation-messages", params={"id": conversation_id}).json()
        assert [m["direction"] for m in messages] == ["inbound"]
        assert client.get("/message-status", params={"conversationId": conversation_id}).json() == {}

    def test_transport_failure_creates_no_conversation(self, client, transport):
        transport.fail = True

        response = send(client, to="+447700900123")

        assert response.status_code == 500
        assert client.get("/conversations").json() == []


class TestStatusCallback:
    """Delivery status callbacks."""

    def test_delivered_updates_message(self, client, events, conversation_id):
        sent = send(client, conversation_id=conversation_id).json()

        response = client.post("/status", data={
            "MessageSid": sent["sid"],
            "MessageStatus": "delivered",
            "To": "whatsapp:+393331234567",
        })

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

        messages = client.get("/conversation-messages", params={"id": conversation_id}).json()
        assert messages[-1]["status"] == "delivered"

        by_sid = client.get("/message-status-by-sid", params={"sid": sent["sid"]}).json()
        assert by_sid["conversationId"] == conversation_id
        assert by_sid["messageId"] == sent["messageId"]
        assert by_sid["status"] == "delivered"

        status_events = events.of_type("status")
        assert len(status_events) == 1
        assert status_events[0]["sid"] == sent["sid"]
        assert status_events[0]["status"] == "delivered"

        assert len(client.get("/logs/status").json()) == 1

    def test_failed_with_error_code(self, client, conversation_id):
        sent = send(client, conversation_id=conversation_id).json()

        client.post("/status", data={
            "MessageSid": sent["sid"],
            "MessageStatus": "undelivered",
            "ErrorCode": "63016",
            "ErrorMessage": "Outside the allowed window",
        })

        payload = client.get("/message-status-by-sid", params={"sid": sent["sid"]}).json()["payload"]
        assert payload["status"] == "undelivered"
        assert payload["errorCode"] == "63016"

    def test_unknown_sid_is_acknowledged(self, client, events):
        response = client.post("/status", data={"MessageSid": "SMunknown", "MessageStatus": "sent"})

        assert response.status_code == 200
        assert events.of_type("status") == []
        assert len(client.get("/logs/status").json()) == 1

        by_sid = client.get("/message-status-by-sid", params={"sid": "SMunknown"}).json()
        assert by_sid == {"conversationId": None, "messageId": None, "status": None, "payload": None}

    def test_status_reads_require_parameters(self, client):
        assert client.get("/message-status").status_code == 400
        assert client.get("/message-status-by-sid").status_code == 400
        assert client.get("/conversation-messages").status_code == 400


class TestConversationCommands:
    """Read markers and deletion."""

    def test_mark_read(self, client, events, conversation_id):
        response = client.post("/read", json={"conversationId": conversation_id})

        assert response.status_code == 200
        assert client.get("/conversations").json()[0]["unreadCount"] == 0
        assert events.of_type("summary")[0]["summary"]["unreadCount"] == 0

    def test_mark_unread_with_count(self, client, conversation_id):
        client.post("/read", json={"conversationId": conversation_id})
        client.post("/mark-unread", json={"conversationId": conversation_id, "unreadCount": 5})

        assert client.get("/conversations").json()[0]["unreadCount"] == 5

    @pytest.mark.parametrize("count", [None, 0, -3, "abc"])
    def test_mark_unread_floor(self, client, conversation_id, count):
        client.post("/read", json={"conversationId": conversation_id})
        client.post("/mark-unread", json={"conversationId": conversation_id, "unreadCount": count})

        assert client.get("/conversations").json()[0]["unreadCount"] == 1

    @pytest.mark.parametrize("path", ["/read", "/mark-unread", "/delete-chat"])
    def test_missing_conversation_id(self, client, path):
        response = client.post(path, json={})

        assert response.status_code == 400

    def test_delete_chat(self, client, conversation_id):
        sent = send(client, conversation_id=conversation_id).json()

        response = client.post("/delete-chat", json={"conversationId": conversation_id})

        assert response.status_code == 200
        assert client.get("/conversations").json() == []
        assert client.get("/conversation-messages", params={"id": conversation_id}).json() == []
        assert client.get("/message-status", params={"conversationId": conversation_id}).json() == {}
        assert client.get("/message-status-by-sid", params={"sid": sent["sid"]}).json()["conversationId"] is None

        client.post("/webhook", data={"From": "whatsapp:+393331234567", "Body": "back"})
        new_id = client.get("/conversations").json()[0]["id"]
        assert new_id != conversation_id


def test_missing_sender_number(settings, store):
    """Dispatch without a configured sender is a configuration error."""
    transport = FakeTransport()
    app = create_app(settings=settings.model_copy(update={"TWILIO_NUMBER": ""}), store=store, transport=transport)
    with TestClient(app) as client:
        response = send(client)

    assert response.status_code == 500
    assert transport.sent == []
