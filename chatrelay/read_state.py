"""
Read-state tracking.

`unread_criteria` is the one definition of "unread": every count, list,
group aggregate and mark-read update in the service is built from it, so a
conversation list and a conversation detail can never disagree.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import false, func, select
from sqlalchemy.orm import Session

from chatrelay.models import Message
from chatrelay.utils import as_utc

logger = logging.getLogger(__name__)


def unread_criteria(owner_id: str, counterparty_id: Optional[str] = None) -> list:
    """
    Filter clauses selecting messages `owner_id` has received and not read.

    Args:
        owner_id: The receiving party
        counterparty_id: Restrict to messages sent by this party

    Returns:
        List of SQLAlchemy boolean clauses to AND together.
    """
    criteria = [
        Message.receiver_id == owner_id,
        Message.is_read == false(),
    ]
    if counterparty_id is not None:
        criteria.append(Message.sender_id == counterparty_id)
    return criteria


def unread_count(db: Session, owner_id: str, counterparty_id: str) -> int:
    """Number of unread messages `owner_id` has from `counterparty_id`."""
    count = db.execute(
        select(func.count(Message.id)).where(*unread_criteria(owner_id, counterparty_id))
    ).scalar()
    return count or 0


def unread_totals_query(owner_id: str):
    """(sender_id, unread_count) rows for everyone who has unread messages for `owner_id`."""
    return (
        select(Message.sender_id, func.count(Message.id).label("unread_count"))
        .where(*unread_criteria(owner_id))
        .group_by(Message.sender_id)
    )


def unread_totals(db: Session, owner_id: str) -> dict[str, int]:
    """Unread counts per sender for `owner_id`; senders with nothing unread are absent."""
    rows = db.execute(unread_totals_query(owner_id)).all()
    totals = {row.sender_id: row.unread_count for row in rows}
    logger.debug(f"Unread totals for {owner_id}: {len(totals)} senders")
    return totals


def conversation_sort_key(
    unread: int,
    last_message_time: Optional[datetime],
    last_active: Optional[datetime],
) -> tuple:
    """
    Sort key for conversation lists (use with sorted(), ascending).

    Conversations with unread messages come first. Within each tier the most
    recent activity comes first: the last message time, or the party's
    last-activity when there are no messages yet. Entries with no time at
    all go last.
    """
    activity = last_message_time or last_active
    if activity is None:
        return (0 if unread > 0 else 1, 1, 0.0)
    return (0 if unread > 0 else 1, 0, -as_utc(activity).timestamp())

