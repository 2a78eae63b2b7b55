"""
Conversation index.

The conversation list is a derived view recomputed on every read from the
message store and the read-state tracker; nothing here is persisted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from chatrelay.identity import display_name
from chatrelay.models import Message, Party
from chatrelay.read_state import conversation_sort_key, unread_totals

logger = logging.getLogger(__name__)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass
class ConversationSummary:
    party_id: str
    display_name: str
    custom_name: Optional[str]
    whatsapp_name: Optional[str]
    last_active: Optional[datetime]
    last_message: str
    last_message_type: Optional[str]
    last_message_sender: Optional[str]
    last_message_time: Optional[datetime]
    unread_count: int
    match_type: Optional[str] = None

    @property
    def sort_key(self) -> tuple:
        return conversation_sort_key(self.unread_count, self.last_message_time, self.last_active)


def _counterparty(owner_id: str):
    return case((Message.sender_id == owner_id, Message.receiver_id), else_=Message.sender_id)


def latest_messages_query(owner_id: str):
    """Most recent message of each conversation `owner_id` takes part in."""
    counterparty = _counterparty(owner_id)
    ranked = (
        select(
            Message.id,
            Message.content,
            Message.message_type,
            Message.sender_id,
            Message.created_at,
            counterparty.label("counterparty_id"),
            func.row_number()
            .over(
                partition_by=counterparty,
                order_by=(Message.created_at.desc(), Message.id.desc()),
            )
            .label("rn"),
        )
        .where(or_(Message.sender_id == owner_id, Message.receiver_id == owner_id))
        .subquery()
    )
    return select(ranked).where(ranked.c.rn == 1)


def _summaries(db: Session, owner_id: str, parties: list[Party]) -> list[ConversationSummary]:
    latest = {row.counterparty_id: row for row in db.execute(latest_messages_query(owner_id))}
    unread = unread_totals(db, owner_id)

    summaries = []
    for party in parties:
        last = latest.get(party.id)
        summaries.append(
            ConversationSummary(
                party_id=party.id,
                display_name=display_name(party.custom_name, party.whatsapp_name, party.name, party.id),
                custom_name=party.custom_name,
                whatsapp_name=party.whatsapp_name,
                last_active=party.last_active,
                last_message=last.content if last else "",
                last_message_type=last.message_type if last else None,
                last_message_sender=last.sender_id if last else None,
                last_message_time=last.created_at if last else None,
                unread_count=unread.get(party.id, 0),
            )
        )
    return summaries


def list_conversations(db: Session, owner_id: str) -> list[ConversationSummary]:
    """
    Every contact as seen by `owner_id`, annotated for a conversation list.

    Contacts with no messages are included with an empty preview and zero
    unread, ordered by their last activity.
    """
    parties = db.execute(select(Party).where(Party.id != owner_id)).scalars().all()
    summaries = sorted(_summaries(db, owner_id, parties), key=lambda s: s.sort_key)
    logger.info(f"Conversation list for {owner_id}: {len(summaries)} entries")
    return summaries


def search_conversations(db: Session, owner_id: str, term: str) -> list[ConversationSummary]:
    """
    Conversations whose contact name or message content matches `term`.

    Content matches rank before name-only matches; within each group the most
    recent conversation comes first.
    """
    term = (term or "").strip()
    if not term:
        return list_conversations(db, owner_id)
    pattern = f"%{_escape_like(term)}%"

    name_matches = set(
        db.execute(
            select(Party.id).where(
                or_(
                    Party.custom_name.ilike(pattern, escape="\\"),
                    Party.whatsapp_name.ilike(pattern, escape="\\"),
                    Party.name.ilike(pattern, escape="\\"),
                    Party.id.ilike(pattern, escape="\\"),
                )
            )
        ).scalars()
    )
    content_matches = set(
        db.execute(
            select(_counterparty(owner_id))
            .where(or_(Message.sender_id == owner_id, Message.receiver_id == owner_id))
            .where(Message.content.ilike(pattern, escape="\\"))
            .distinct()
        ).scalars()
    )

    matched_ids = (name_matches | content_matches) - {owner_id}
    if not matched_ids:
        return []
    parties = db.execute(select(Party).where(Party.id.in_(matched_ids))).scalars().all()

    summaries = _summaries(db, owner_id, parties)
    for summary in summaries:
        summary.match_type = "content" if summary.party_id in content_matches else "user"

    def rank(summary: ConversationSummary) -> tuple:
        time = summary.last_message_time
        return (
            0 if summary.match_type == "content" else 1,
            0 if time is not None else 1,
            summary.sort_key[2] if time is not None else 0.0,
        )

    summaries.sort(key=rank)
    logger.info(f"Search {term!r} for {owner_id}: {len(summaries)} matches")
    return summaries


def unread_conversations(db: Session, owner_id: str, limit: int = 10) -> list[ConversationSummary]:
    """Conversations with unread messages, most recent first."""
    unread_ids = set(unread_totals(db, owner_id))
    if not unread_ids:
        return []
    parties = db.execute(select(Party).where(Party.id.in_(unread_ids))).scalars().all()
    summaries = sorted(_summaries(db, owner_id, parties), key=lambda s: s.sort_key)
    return summaries[:limit]
