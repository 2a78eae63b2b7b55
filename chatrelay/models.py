"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py; for the typed
message payloads stored in `messages.media_data`, see payloads.py.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from chatrelay.storage import Base

MESSAGE_TYPES = ("text", "image", "document", "audio", "video", "sticker", "template")
MEDIA_TYPES = ("image", "document", "audio", "video", "sticker")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> str:
    return str(uuid.uuid4())


class Party(Base):
    """
    An external contact, identified by its canonical phone number.

    Table: parties
    Primary Key: id (phone in +<digits> form, unique by construction)

    The display name is derived from custom_name, whatsapp_name and name
    (see identity.display_name); it is never stored.
    """
    __tablename__ = "parties"

    id = Column(String(32), primary_key=True)
    name = Column(String(255), nullable=False)
    custom_name = Column(String(100), nullable=True)
    whatsapp_name = Column(String(255), nullable=True)
    last_active = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class Message(Base):
    """
    A message between two parties.

    Table: messages
    Primary Key: id (provider message id when available, ensures idempotency)

    Only is_read and read_at ever change, and only from unread to read.
    """
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("sender_id <> receiver_id", name="ck_messages_distinct_parties"),
        CheckConstraint(
            "message_type IN ('text', 'image', 'document', 'audio', 'video', 'sticker', 'template')",
            name="ck_messages_type",
        ),
        CheckConstraint(
            "NOT is_read OR read_at IS NOT NULL",
            name="ck_messages_read_at",
        ),
        Index("ix_messages_unread", "receiver_id", "sender_id", "is_read"),
        Index("ix_messages_pair_time", "sender_id", "receiver_id", "created_at"),
    )

    id = Column(String(128), primary_key=True)
    sender_id = Column(String(128), nullable=False, index=True)
    receiver_id = Column(String(128), nullable=False, index=True)
    content = Column(Text, nullable=False)
    message_type = Column(String(16), nullable=False, default="text")
    media_data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    broadcast_group_id = Column(String(36), nullable=True)


class ChatGroup(Base):
    """
    A named broadcast list owned by exactly one internal account.

    Table: chat_groups
    """
    __tablename__ = "chat_groups"

    id = Column(String(36), primary_key=True, default=new_uuid)
    owner_id = Column(String(128), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    members = relationship(
        "GroupMember",
        back_populates="group",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class GroupMember(Base):
    """
    Membership of a party in a group, unique per (group, party).

    Table: group_members
    """
    __tablename__ = "group_members"
    __table_args__ = (
        UniqueConstraint("group_id", "party_id", name="uq_group_members_group_party"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    group_id = Column(
        String(36),
        ForeignKey("chat_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    party_id = Column(String(32), ForeignKey("parties.id"), nullable=False, index=True)
    added_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    group = relationship("ChatGroup", back_populates="members")
