"""
Message store: append-only messages and conversation reads.

A conversation between A and B is every message whose {sender, receiver} is
{A, B}, ordered by created_at then id. Whether a message was "sent by me" is
computed against the viewer at read time and never stored.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from chatrelay.errors import DuplicateMessage, InvalidRequest, NotFound
from chatrelay.identity import classify, create_party_if_absent, touch_last_active
from chatrelay.models import Message, utc_now
from chatrelay.payloads import MediaRef, TemplateRender, dump_payload, load_payload, validate_payload
from chatrelay.read_state import unread_criteria
from chatrelay.storage import dialect_insert
from chatrelay.utils import as_utc

logger = logging.getLogger(__name__)

Payload = Optional[Union[MediaRef, TemplateRender]]


@dataclass
class NewMessage:
    sender_id: str
    receiver_id: str
    content: str
    message_type: str = "text"
    payload: Payload = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    is_read: bool = False
    broadcast_group_id: Optional[str] = None


@dataclass
class ConversationMessage:
    id: str
    sender_id: str
    receiver_id: str
    content: str
    message_type: str
    payload: Payload
    created_at: datetime
    is_read: bool
    read_at: Optional[datetime]
    is_sent_by_me: bool
    broadcast_group_id: Optional[str] = None


def generate_message_id() -> str:
    """Id for messages the provider did not assign one to."""
    return f"local.{uuid.uuid4().hex}"


def pair_criteria(party_a: str, party_b: str):
    return or_(
        and_(Message.sender_id == party_a, Message.receiver_id == party_b),
        and_(Message.sender_id == party_b, Message.receiver_id == party_a),
    )


def append_message(db: Session, new: NewMessage) -> Message:
    """
    Store a message exactly once.

    The insert relies on the database's unique-id conflict detection, so a
    provider redelivering the same message id is rejected atomically even
    under concurrent webhook calls.

    Args:
        db: Database session (caller commits)
        new: The message to store

    Returns:
        The stored Message row.

    Raises:
        InvalidRequest: sender equals receiver, unknown type, or payload
            variant does not match the type
        DuplicateMessage: a message with this id already exists
    """
    if new.sender_id == new.receiver_id:
        raise InvalidRequest("sender and receiver must be different parties")
    payload = validate_payload(new.message_type, new.payload)

    message_id = new.id or generate_message_id()
    created_at = new.created_at or utc_now()

    stmt = (
        dialect_insert(db, Message)
        .values(
            id=message_id,
            sender_id=new.sender_id,
            receiver_id=new.receiver_id,
            content=new.content or "",
            message_type=new.message_type,
            media_data=dump_payload(payload),
            created_at=created_at,
            is_read=new.is_read,
            read_at=created_at if new.is_read else None,
            broadcast_group_id=new.broadcast_group_id,
        )
        .on_conflict_do_nothing(index_elements=["id"])
    )
    if db.execute(stmt).rowcount == 0:
        logger.info(f"Duplicate message detected: {message_id}")
        raise DuplicateMessage(message_id)

    # Freshness cache only: conversation order never depends on it
    if classify(new.sender_id).is_contact:
        create_party_if_absent(db, new.sender_id, new.sender_id, at=created_at)
        touch_last_active(db, new.sender_id, created_at)

    logger.debug(
        f"Stored {new.message_type} message {message_id} "
        f"({new.sender_id} -> {new.receiver_id})"
    )
    return db.get(Message, message_id)


def message_exists(db: Session, message_id: str) -> bool:
    return db.execute(
        select(Message.id).where(Message.id == message_id)
    ).first() is not None


def get_message(db: Session, message_id: str) -> Message:
    message = db.get(Message, message_id)
    if message is None:
        raise NotFound(f"message {message_id} not found")
    return message


def to_conversation_message(message: Message, viewer_id: str) -> ConversationMessage:
    return ConversationMessage(
        id=message.id,
        sender_id=message.sender_id,
        receiver_id=message.receiver_id,
        content=message.content,
        message_type=message.message_type,
        payload=load_payload(message.message_type, message.media_data),
        created_at=message.created_at,
        is_read=message.is_read,
        read_at=message.read_at,
        is_sent_by_me=message.sender_id == viewer_id,
        broadcast_group_id=message.broadcast_group_id,
    )


def get_conversation(
    db: Session,
    viewer_id: str,
    counterparty_id: str,
    limit: Optional[int] = None,
    before: Optional[datetime] = None,
) -> list[ConversationMessage]:
    """
    Messages between `viewer_id` and `counterparty_id`, oldest first.

    Args:
        db: Database session
        viewer_id: The party looking at the conversation
        counterparty_id: The other party
        limit: Only the most recent `limit` messages
        before: Only messages created strictly before this time

    Returns:
        List of ConversationMessage with is_sent_by_me relative to the viewer.
    """
    query = select(Message).where(pair_criteria(viewer_id, counterparty_id))
    if before is not None:
        query = query.where(Message.created_at < as_utc(before))

    if limit is not None:
        query = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit)
        rows = list(reversed(db.execute(query).scalars().all()))
    else:
        query = query.order_by(Message.created_at.asc(), Message.id.asc())
        rows = db.execute(query).scalars().all()

    logger.debug(f"Conversation {viewer_id} <-> {counterparty_id}: {len(rows)} messages")
    return [to_conversation_message(m, viewer_id) for m in rows]


def mark_read(
    db: Session,
    owner_id: str,
    counterparty_id: str,
    at: Optional[datetime] = None,
) -> int:
    """
    Mark everything `owner_id` received from `counterparty_id` as read.

    The update only touches rows matching the canonical unread predicate, so
    racing or repeated calls are harmless: a second call finds nothing left
    to update and returns 0 without moving any read_at.

    Returns:
        Number of messages that transitioned to read.
    """
    at = at or utc_now()
    result = db.execute(
        update(Message)
        .where(*unread_criteria(owner_id, counterparty_id))
        .values(is_read=True, read_at=at)
        .execution_options(synchronize_session=False)
    )
    logger.info(f"Marked {result.rowcount} messages read for {owner_id} <-> {counterparty_id}")
    return result.rowcount
