"""
Broadcast groups and their unread aggregation.

A group belongs to exactly one account. Its unread total is the sum, over
members, of the owner's unread count from that member, computed with the
same predicate as every other unread count (read_state.unread_criteria).
The owner's account id is also its receiving identity, so no other lookup
is involved.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.orm import Session

from chatrelay.errors import Forbidden, InvalidRequest, NotFound
from chatrelay.identity import display_name, normalize_phone
from chatrelay.models import ChatGroup, GroupMember, Message, Party, new_uuid, utc_now
from chatrelay.read_state import unread_criteria, unread_totals
from chatrelay.storage import dialect_insert

logger = logging.getLogger(__name__)


@dataclass
class GroupSummary:
    id: str
    name: str
    description: Optional[str]
    member_count: int
    unread_count: int
    created_at: datetime
    updated_at: datetime


@dataclass
class GroupMemberDetail:
    member_id: str
    party_id: str
    display_name: str
    whatsapp_name: Optional[str]
    custom_name: Optional[str]
    added_at: datetime
    unread_count: int


def get_group(db: Session, group_id: str, caller_id: str) -> ChatGroup:
    """
    Load a group the caller owns.

    Raises:
        NotFound: no such group
        Forbidden: the caller does not own it
    """
    group = db.get(ChatGroup, group_id)
    if group is None:
        raise NotFound(f"group {group_id} not found")
    if group.owner_id != caller_id:
        logger.warning(f"Account {caller_id} denied access to group {group_id}")
        raise Forbidden("only the group owner can access this group")
    return group


def _clean_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise InvalidRequest("group name is required")
    return name


def _existing_party_ids(db: Session, raw_ids: Iterable[str]) -> list[str]:
    ids = list(dict.fromkeys(normalize_phone(raw) for raw in raw_ids))
    if not ids:
        return []
    found = set(db.execute(select(Party.id).where(Party.id.in_(ids))).scalars())
    missing = [i for i in ids if i not in found]
    if missing:
        raise NotFound(f"unknown parties: {', '.join(missing)}")
    return ids


def _insert_members(db: Session, group_id: str, party_ids: list[str]) -> int:
    added = 0
    for party_id in party_ids:
        stmt = (
            dialect_insert(db, GroupMember)
            .values(id=new_uuid(), group_id=group_id, party_id=party_id, added_at=utc_now())
            .on_conflict_do_nothing(index_elements=["group_id", "party_id"])
        )
        added += db.execute(stmt).rowcount
    return added


def create_group(
    db: Session,
    owner_id: str,
    name: str,
    description: Optional[str] = None,
    member_ids: Iterable[str] = (),
) -> ChatGroup:
    """Create a group owned by `owner_id`, optionally with initial members."""
    party_ids = _existing_party_ids(db, member_ids)
    now = utc_now()
    group = ChatGroup(
        owner_id=owner_id,
        name=_clean_name(name),
        description=(description or "").strip() or None,
        created_at=now,
        updated_at=now,
    )
    db.add(group)
    db.flush()
    _insert_members(db, group.id, party_ids)
    logger.info(f"Group {group.id} created by {owner_id} with {len(party_ids)} members")
    return group


def add_members(db: Session, group_id: str, caller_id: str, member_ids: Iterable[str]) -> int:
    """
    Add parties to a group; existing members are left as they are.

    Returns:
        Number of memberships actually created.
    """
    group = get_group(db, group_id, caller_id)
    party_ids = _existing_party_ids(db, member_ids)
    added = _insert_members(db, group.id, party_ids)
    group.updated_at = utc_now()
    db.flush()
    logger.info(f"Added {added} members to group {group_id}")
    return added


def remove_member(db: Session, group_id: str, caller_id: str, party_id: str) -> None:
    group = get_group(db, group_id, caller_id)
    result = db.execute(
        delete(GroupMember)
        .where(GroupMember.group_id == group.id, GroupMember.party_id == party_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFound(f"{party_id} is not a member of group {group_id}")
    group.updated_at = utc_now()
    db.flush()
    logger.info(f"Removed {party_id} from group {group_id}")


def rename_group(
    db: Session,
    group_id: str,
    caller_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> ChatGroup:
    group = get_group(db, group_id, caller_id)
    if name is not None:
        group.name = _clean_name(name)
    if description is not None:
        group.description = description.strip() or None
    group.updated_at = utc_now()
    db.flush()
    return group


def delete_group(db: Session, group_id: str, caller_id: str) -> None:
    """Delete a group; its memberships go with it."""
    group = get_group(db, group_id, caller_id)
    db.delete(group)
    db.flush()
    logger.info(f"Group {group_id} deleted by {caller_id}")


def _member_unread_query(owner_id: str):
    return (
        select(GroupMember.group_id, func.count(Message.id).label("unread_count"))
        .select_from(GroupMember)
        .join(Message, Message.sender_id == GroupMember.party_id)
        .where(*unread_criteria(owner_id))
        .group_by(GroupMember.group_id)
    )


def group_unread_total(db: Session, group_id: str) -> int:
    """Total unread messages the group's owner has from the group's members."""
    group = db.get(ChatGroup, group_id)
    if group is None:
        raise NotFound(f"group {group_id} not found")
    total = db.execute(
        select(func.count(Message.id))
        .select_from(GroupMember)
        .join(Message, Message.sender_id == GroupMember.party_id)
        .where(GroupMember.group_id == group_id, *unread_criteria(group.owner_id))
    ).scalar()
    return total or 0


def summarize_group(db: Session, group: ChatGroup) -> GroupSummary:
    member_count = db.execute(
        select(func.count(GroupMember.id)).where(GroupMember.group_id == group.id)
    ).scalar()
    return GroupSummary(
        id=group.id,
        name=group.name,
        description=group.description,
        member_count=member_count or 0,
        unread_count=group_unread_total(db, group.id),
        created_at=group.created_at,
        updated_at=group.updated_at,
    )


def list_groups_for_owner(db: Session, owner_id: str) -> list[GroupSummary]:
    """All groups `owner_id` owns, with member counts and unread totals, newest activity first."""
    groups = db.execute(
        select(ChatGroup)
        .where(ChatGroup.owner_id == owner_id)
        .order_by(ChatGroup.updated_at.desc(), ChatGroup.id)
    ).scalars().all()
    if not groups:
        return []
    group_ids = [g.id for g in groups]

    member_counts = dict(
        db.execute(
            select(GroupMember.group_id, func.count(GroupMember.id))
            .where(GroupMember.group_id.in_(group_ids))
            .group_by(GroupMember.group_id)
        ).all()
    )
    unread = dict(
        db.execute(
            _member_unread_query(owner_id).where(GroupMember.group_id.in_(group_ids))
        ).all()
    )

    return [
        GroupSummary(
            id=g.id,
            name=g.name,
            description=g.description,
            member_count=member_counts.get(g.id, 0),
            unread_count=unread.get(g.id, 0),
            created_at=g.created_at,
            updated_at=g.updated_at,
        )
        for g in groups
    ]


def list_group_members(db: Session, group_id: str, caller_id: str) -> list[GroupMemberDetail]:
    """
    Members of a group with their display names and unread counts.

    Ordered by custom name (empty counts as missing, missing last), then by
    provider or fallback name.
    """
    group = get_group(db, group_id, caller_id)
    custom = func.nullif(Party.custom_name, "")
    rows = db.execute(
        select(GroupMember, Party)
        .join(Party, Party.id == GroupMember.party_id)
        .where(GroupMember.group_id == group.id)
        .order_by(
            case((custom.is_(None), 1), else_=0),
            custom,
            func.coalesce(Party.whatsapp_name, Party.name),
            Party.id,
        )
    ).all()
    unread = unread_totals(db, group.owner_id)

    return [
        GroupMemberDetail(
            member_id=member.id,
            party_id=party.id,
            display_name=display_name(party.custom_name, party.whatsapp_name, party.name, party.id),
            whatsapp_name=party.whatsapp_name or party.name,
            custom_name=party.custom_name,
            added_at=member.added_at,
            unread_count=unread.get(party.id, 0),
        )
        for member, party in rows
    ]


def member_ids(db: Session, group_id: str) -> list[str]:
    return list(
        db.execute(
            select(GroupMember.party_id)
            .where(GroupMember.group_id == group_id)
            .order_by(GroupMember.added_at, GroupMember.party_id)
        ).scalars()
    )
