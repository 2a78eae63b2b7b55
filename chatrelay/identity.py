"""
Identity model.

A conversation has two endpoints that are not symmetric: an external contact
addressed by phone number, and an internal account addressed by an opaque id.
Both are represented as a PartyRef; only contacts are stored as Party rows,
accounts come from configuration (see credentials.py).
"""

import enum
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from chatrelay.errors import InvalidIdentifier, InvalidRequest, NotFound
from chatrelay.models import Party, utc_now
from chatrelay.storage import dialect_insert

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^\+[1-9]\d{9,14}$")
ACCOUNT_ID_PATTERN = re.compile(r"^\S{1,128}$")
CUSTOM_NAME_MAX_LENGTH = 100


class PartyKind(str, enum.Enum):
    CONTACT = "contact"
    ACCOUNT = "account"


@dataclass(frozen=True)
class PartyRef:
    kind: PartyKind
    id: str

    @property
    def is_contact(self) -> bool:
        return self.kind is PartyKind.CONTACT


@dataclass(frozen=True)
class PartyResolution:
    party: Party
    is_new: bool


def normalize_phone(raw: str) -> str:
    """
    Normalize a free-form phone string to +<country code><number>.

    Everything but digits and '+' is stripped; a missing leading '+' is
    added, since provider ids arrive in international form without it.

    Raises:
        InvalidIdentifier: if the result is not 10-15 digits with a non-zero
            country code.
    """
    if raw is None:
        raise InvalidIdentifier("phone number is required")
    cleaned = re.sub(r"[^\d+]", "", str(raw))
    if not cleaned.startswith("+"):
        cleaned = "+" + cleaned
    if not PHONE_PATTERN.match(cleaned):
        raise InvalidIdentifier(
            f"invalid phone number {raw!r}: must be in international format (e.g. +15551234567)"
        )
    return cleaned


def validate_account_id(raw: Optional[str]) -> str:
    if raw is None or not ACCOUNT_ID_PATTERN.match(raw):
        raise InvalidIdentifier(f"invalid account id {raw!r}")
    return raw


def is_phone_identifier(identifier: str) -> bool:
    return bool(PHONE_PATTERN.match(identifier or ""))


def classify(identifier: str) -> PartyRef:
    """Tell contacts from accounts by the shape of their identifier."""
    if is_phone_identifier(identifier):
        return PartyRef(PartyKind.CONTACT, identifier)
    return PartyRef(PartyKind.ACCOUNT, validate_account_id(identifier))


def account_party(account_id: str) -> PartyRef:
    return PartyRef(PartyKind.ACCOUNT, validate_account_id(account_id))


def resolve_owner_party(credentials) -> PartyRef:
    """
    Resolve the internal account that owns the messaging credentials.

    The mapping is configuration, resolved once per request and passed
    explicitly to whatever needs it.
    """
    return account_party(credentials.owner_account_id)


def display_name(
    custom_name: Optional[str],
    whatsapp_name: Optional[str],
    name: Optional[str],
    identifier: str,
) -> str:
    """Override name, then provider name, then fallback name, then the id."""
    for candidate in (custom_name, whatsapp_name, name):
        if candidate and candidate.strip():
            return candidate
    return identifier


def party_display_name(party: Party) -> str:
    return display_name(party.custom_name, party.whatsapp_name, party.name, party.id)


def create_party_if_absent(
    db: Session,
    identifier: str,
    name: str,
    whatsapp_name: Optional[str] = None,
    at: Optional[datetime] = None,
) -> bool:
    """
    Insert a contact row unless one already exists.

    Uses INSERT ... ON CONFLICT DO NOTHING so two requests racing on the same
    first contact both succeed and only one row exists.

    Returns:
        True if this call created the row.
    """
    at = at or utc_now()
    stmt = (
        dialect_insert(db, Party)
        .values(
            id=identifier,
            name=name,
            whatsapp_name=whatsapp_name,
            last_active=at,
            created_at=at,
        )
        .on_conflict_do_nothing(index_elements=["id"])
    )
    return db.execute(stmt).rowcount == 1


def touch_last_active(db: Session, identifier: str, at: datetime) -> None:
    """Move last_active forward to `at`; never backwards."""
    db.execute(
        update(Party)
        .where(Party.id == identifier)
        .where(or_(Party.last_active.is_(None), Party.last_active < at))
        .values(last_active=at)
        .execution_options(synchronize_session=False)
    )


def resolve_phone_party(
    db: Session,
    raw: str,
    display_name_hint: Optional[str] = None,
    provider_name: Optional[str] = None,
    at: Optional[datetime] = None,
) -> PartyResolution:
    """
    Resolve a phone-like string to its Party, creating it on first contact.

    Args:
        db: Database session (caller commits)
        raw: Free-form phone string
        display_name_hint: Fallback name for a newly created party
        provider_name: Name reported by the messaging provider, if any
        at: Activity time, defaults to now

    Returns:
        PartyResolution with the party and whether this call created it.
    """
    identifier = normalize_phone(raw)
    at = at or utc_now()
    fallback = display_name_hint or provider_name or identifier

    created = create_party_if_absent(db, identifier, fallback, provider_name, at)
    if not created:
        if provider_name:
            db.execute(
                update(Party)
                .where(Party.id == identifier)
                .values(whatsapp_name=provider_name)
                .execution_options(synchronize_session=False)
            )
        touch_last_active(db, identifier, at)

    party = db.execute(
        select(Party).where(Party.id == identifier).execution_options(populate_existing=True)
    ).scalar_one()
    logger.debug(f"Resolved party {identifier}: {'new' if created else 'existing'}")
    return PartyResolution(party=party, is_new=created)


def get_party(db: Session, identifier: str) -> Party:
    party = db.get(Party, identifier)
    if party is None:
        raise NotFound(f"party {identifier} not found")
    return party


def set_custom_name(db: Session, identifier: str, custom_name: Optional[str]) -> Party:
    """Set or clear the operator's override name for a contact."""
    if custom_name is not None:
        custom_name = custom_name.strip() or None
    if custom_name and len(custom_name) > CUSTOM_NAME_MAX_LENGTH:
        raise InvalidRequest(
            f"custom name must be {CUSTOM_NAME_MAX_LENGTH} characters or less"
        )
    party = get_party(db, identifier)
    party.custom_name = custom_name
    db.flush()
    return party
