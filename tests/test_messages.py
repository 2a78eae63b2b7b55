"""
Tests for the message store and read state.

Tests cover:
- Exactly-once append (duplicate ids)
- Conversation ordering and is_sent_by_me per viewer
- limit/before windows
- Idempotent mark-read
- Payload/type validation
"""

from datetime import datetime, timedelta, timezone

import pytest

from chatrelay.errors import DuplicateMessage, InvalidRequest
from chatrelay.identity import resolve_phone_party
from chatrelay.messages import NewMessage, append_message, get_conversation, mark_read
from chatrelay.models import Message
from chatrelay.payloads import MediaRef
from chatrelay.read_state import unread_count


OWNER = "owner-account"
ALICE = "+15551234567"
BASE_TIME = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


def _inbound(db, message_id: str, minutes: int, content: str = "hello", sender: str = ALICE):
    return append_message(db, NewMessage(
        id=message_id,
        sender_id=sender,
        receiver_id=OWNER,
        content=content,
        created_at=BASE_TIME + timedelta(minutes=minutes),
    ))


def _outbound(db, message_id: str, minutes: int, content: str = "reply", receiver: str = ALICE):
    return append_message(db, NewMessage(
        id=message_id,
        sender_id=OWNER,
        receiver_id=receiver,
        content=content,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        is_read=True,
    ))


class TestAppendMessage:
    """Test storing messages."""

    def test_duplicate_id_rejected_once_stored(self, db):
        _inbound(db, "wamid.1", 0)
        db.commit()

        with pytest.raises(DuplicateMessage):
            _inbound(db, "wamid.1", 0)
        db.rollback()

        assert db.query(Message).count() == 1

    def test_creates_sender_party(self, db):
        _inbound(db, "wamid.1", 0)
        db.commit()

        party = resolve_phone_party(db, ALICE).party
        assert party.id == ALICE

    def test_sender_equals_receiver_rejected(self, db):
        with pytest.raises(InvalidRequest):
            append_message(db, NewMessage(sender_id=ALICE, receiver_id=ALICE, content="me"))

    def test_text_with_payload_rejected(self, db):
        with pytest.raises(InvalidRequest):
            append_message(db, NewMessage(
                sender_id=ALICE, receiver_id=OWNER, content="x", payload=MediaRef(media_id="m"),
            ))

    def test_media_without_payload_rejected(self, db):
        with pytest.raises(InvalidRequest):
            append_message(db, NewMessage(
                sender_id=ALICE, receiver_id=OWNER, content="[Image]", message_type="image",
            ))

    def test_unknown_type_rejected(self, db):
        with pytest.raises(InvalidRequest):
            append_message(db, NewMessage(
                sender_id=ALICE, receiver_id=OWNER, content="x", message_type="location",
            ))

    def test_generated_id_when_missing(self, db):
        message = append_message(db, NewMessage(sender_id=ALICE, receiver_id=OWNER, content="x"))
        db.commit()

        assert message.id.startswith("local.")


class TestGetConversation:
    """Test conversation reads."""

    def test_ordered_oldest_first(self, db):
        _inbound(db, "wamid.2", 2, "second")
        _outbound(db, "wamid.1", 1, "first")
        _inbound(db, "wamid.3", 3, "third")
        db.commit()

        conversation = get_conversation(db, OWNER, ALICE)

        assert [m.content for m in conversation] == ["first", "second", "third"]

    def test_same_timestamp_ordered_by_id(self, db):
        _inbound(db, "wamid.b", 0, "b")
        _inbound(db, "wamid.a", 0, "a")
        db.commit()

        conversation = get_conversation(db, OWNER, ALICE)

        assert [m.id for m in conversation] == ["wamid.a", "wamid.b"]

    def test_is_sent_by_me_depends_on_viewer(self, db):
        _outbound(db, "wamid.1", 0)
        _inbound(db, "wamid.2", 1)
        db.commit()

        owner_view = get_conversation(db, OWNER, ALICE)
        alice_view = get_conversation(db, ALICE, OWNER)

        assert [m.is_sent_by_me for m in owner_view] == [True, False]
        assert [m.is_sent_by_me for m in alice_view] == [False, True]

    def test_other_conversations_excluded(self, db):
        _inbound(db, "wamid.1", 0)
        _inbound(db, "wamid.2", 1, sender="+15557654321")
        db.commit()

        assert [m.id for m in get_conversation(db, OWNER, ALICE)] == ["wamid.1"]

    def test_limit_keeps_most_recent(self, db):
        for i in range(5):
            _inbound(db, f"wamid.{i}", i, f"m{i}")
        db.commit()

        conversation = get_conversation(db, OWNER, ALICE, limit=2)

        assert [m.content for m in conversation] == ["m3", "m4"]

    def test_before_excludes_later_messages(self, db):
        for i in range(3):
            _inbound(db, f"wamid.{i}", i, f"m{i}")
        db.commit()

        conversation = get_conversation(db, OWNER, ALICE, before=BASE_TIME + timedelta(minutes=2))

        assert [m.content for m in conversation] == ["m0", "m1"]

    def test_before_with_utc_offset(self, db):
        for i in range(3):
            _inbound(db, f"wamid.{i}", i, f"m{i}")
        db.commit()

        # 12:01:30+02:00 is 10:01:30 UTC
        before = datetime(2025, 1, 15, 12, 1, 30, tzinfo=timezone(timedelta(hours=2)))
        conversation = get_conversation(db, OWNER, ALICE, before=before)

        assert [m.content for m in conversation] == ["m0", "m1"]


class TestMarkRead:
    """Test read-state transitions."""

    def test_mark_read_idempotent(self, db):
        _inbound(db, "wamid.AAA", 0, "Hi")
        db.commit()
        assert unread_count(db, OWNER, ALICE) == 1

        assert mark_read(db, OWNER, ALICE) == 1
        db.commit()
        assert unread_count(db, OWNER, ALICE) == 0

        assert mark_read(db, OWNER, ALICE) == 0

    def test_only_received_messages_marked(self, db):
        _outbound(db, "wamid.out", 0)
        _inbound(db, "wamid.in1", 1)
        _inbound(db, "wamid.in2", 2)
        db.commit()

        assert mark_read(db, OWNER, ALICE) == 2

    def test_read_at_not_moved_by_second_call(self, db):
        _inbound(db, "wamid.1", 0)
        db.commit()
        mark_read(db, OWNER, ALICE, at=BASE_TIME + timedelta(hours=1))
        db.commit()

        mark_read(db, OWNER, ALICE, at=BASE_TIME + timedelta(hours=2))
        db.commit()

        message = db.get(Message, "wamid.1")
        db.refresh(message)
        assert message.is_read is True
        assert message.read_at.replace(tzinfo=None) == (BASE_TIME + timedelta(hours=1)).replace(tzinfo=None)

    def test_other_counterparty_untouched(self, db):
        _inbound(db, "wamid.1", 0)
        _inbound(db, "wamid.2", 0, sender="+15557654321")
        db.commit()

        mark_read(db, OWNER, ALICE)
        db.commit()

        assert unread_count(db, OWNER, "+15557654321") == 1
