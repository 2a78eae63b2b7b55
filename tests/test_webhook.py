"""
Tests for the GET/POST /webhook endpoints.

Tests cover:
- Subscription handshake
- Inbound text creates the party and an unread message
- Redelivery of the same message id (idempotency)
- Invalid/missing signature (401)
- Malformed bodies (422)
- Status callbacks, unsupported types and unmanaged numbers
"""

from conftest import OWNER_ID, text_message, webhook_body

from chatrelay.models import Message, Party
from chatrelay.read_state import unread_count
from chatrelay.storage import SessionLocal


def _rows(model):
    db = SessionLocal()
    try:
        return db.query(model).all()
    finally:
        db.close()


class TestWebhookVerification:
    """Test the subscription handshake."""

    def test_echoes_challenge(self, client):
        response = client.get(
            "/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"},
        )
        assert response.status_code == 200
        assert response.text == "12345"

    def test_wrong_token_forbidden(self, client):
        response = client.get(
            "/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "12345"},
        )
        assert response.status_code == 403

    def test_missing_params_forbidden(self, client):
        response = client.get("/webhook")
        assert response.status_code == 403


class TestWebhookValidSignature:
    """Test webhook with valid signatures."""

    def test_inbound_text_creates_party_and_unread_message(self, post_webhook):
        body = webhook_body(
            messages=[text_message("wamid.AAA", "15551234567", "Hi")],
            contacts=[{"wa_id": "15551234567", "profile": {"name": "Alice"}}],
        )

        response = post_webhook(body)

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

        parties = _rows(Party)
        assert [p.id for p in parties] == ["+15551234567"]
        assert parties[0].whatsapp_name == "Alice"

        messages = _rows(Message)
        assert len(messages) == 1
        assert messages[0].id == "wamid.AAA"
        assert messages[0].sender_id == "+15551234567"
        assert messages[0].receiver_id == OWNER_ID
        assert messages[0].content == "Hi"
        assert messages[0].is_read is False

        db = SessionLocal()
        try:
            assert unread_count(db, OWNER_ID, "+15551234567") == 1
        finally:
            db.close()

    def test_duplicate_delivery_idempotent(self, post_webhook):
        """Test that redelivered messages return 200 and are stored once."""
        body = webhook_body(messages=[text_message("wamid.AAA", "15551234567", "Hi")])

        response1 = post_webhook(body)
        assert response1.status_code == 200

        response2 = post_webhook(body)
        assert response2.status_code == 200
        assert response2.json() == {"status": "ok"}

        assert len(_rows(Message)) == 1

    def test_multiple_messages_in_one_delivery(self, post_webhook):
        body = webhook_body(messages=[
            text_message("wamid.1", "15551234567", "one", 1736935200),
            text_message("wamid.2", "15557654321", "two", 1736935260),
            text_message("wamid.3", "15551234567", "three", 1736935320),
        ])

        response = post_webhook(body)

        assert response.status_code == 200
        assert len(_rows(Message)) == 3
        assert sorted(p.id for p in _rows(Party)) == ["+15551234567", "+15557654321"]

    def test_status_callbacks_ignored(self, post_webhook):
        body = webhook_body(statuses=[{"id": "wamid.OUT", "status": "delivered", "recipient_id": "15551234567"}])

        response = post_webhook(body)

        assert response.status_code == 200
        assert _rows(Message) == []

    def test_unsupported_type_skipped(self, post_webhook):
        body = webhook_body(messages=[
            {"from": "15551234567", "id": "wamid.LOC", "timestamp": "1736935200", "type": "location",
             "location": {"latitude": 1.0, "longitude": 2.0}},
            text_message("wamid.TXT", "15551234567", "after the pin"),
        ])

        response = post_webhook(body)

        assert response.status_code == 200
        assert [m.id for m in _rows(Message)] == ["wamid.TXT"]

    def test_unmanaged_phone_number_skipped(self, post_webhook):
        body = webhook_body(
            messages=[text_message("wamid.OTHER", "15551234567", "Hi")],
            phone_number_id="999",
        )

        response = post_webhook(body)

        assert response.status_code == 200
        assert _rows(Message) == []

    def test_media_without_store_kept_without_url(self, post_webhook, client, owner_headers):
        body = webhook_body(messages=[{
            "from": "15551234567",
            "id": "wamid.IMG",
            "timestamp": "1736935200",
            "type": "image",
            "image": {"id": "MEDIA1", "mime_type": "image/jpeg", "caption": "look"},
        }])

        response = post_webhook(body)
        assert response.status_code == 200

        conversation = client.get("/conversations/+15551234567/messages", headers=owner_headers).json()
        message = conversation["messages"][0]
        assert message["message_type"] == "image"
        assert message["content"] == "look"
        assert message["payload"]["media_id"] == "MEDIA1"
        assert message["payload"]["url"] is None


class TestWebhookInvalidSignature:
    """Test webhook with invalid or missing signatures."""

    def test_wrong_secret(self, post_webhook):
        body = webhook_body(messages=[text_message("wamid.AAA", "15551234567", "Hi")])

        response = post_webhook(body, secret="wrong")

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}
        assert _rows(Message) == []

    def test_missing_signature(self, client):
        body = webhook_body(messages=[text_message("wamid.AAA", "15551234567", "Hi")])

        response = client.post("/webhook", content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 401

    def test_signature_without_prefix(self, client):
        body = webhook_body(messages=[text_message("wamid.AAA", "15551234567", "Hi")])

        response = client.post(
            "/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": "deadbeef"},
        )

        assert response.status_code == 401


class TestWebhookValidation:
    """Test malformed bodies with valid signatures."""

    def test_invalid_json(self, post_webhook):
        response = post_webhook("{not json")
        assert response.status_code == 422

    def test_wrong_shape(self, post_webhook):
        response = post_webhook('{"entry": "not-a-list"}')
        assert response.status_code == 422

    def test_bad_sender_skipped(self, post_webhook):
        body = webhook_body(messages=[text_message("wamid.BAD", "0123", "Hi")])

        response = post_webhook(body)

        assert response.status_code == 200
        assert _rows(Message) == []
