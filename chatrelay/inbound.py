"""
Inbound message ingestion.

The provider delivers at least once, so every message id may arrive more
than once; redeliveries are absorbed as duplicates. Each message commits on
its own, so one malformed message never drops the rest of a delivery.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from sqlalchemy.orm import Session

from chatrelay.config import Settings
from chatrelay.credentials import Credentials, CredentialsProvider
from chatrelay.errors import DuplicateMessage, InvalidIdentifier, StorageFailure
from chatrelay.identity import normalize_phone, resolve_owner_party, resolve_phone_party
from chatrelay.media import MediaStore, mirror_media
from chatrelay.messages import NewMessage, append_message, message_exists
from chatrelay.models import MEDIA_TYPES, utc_now
from chatrelay.payloads import MediaRef, media_content
from chatrelay.schemas import WebhookContact, WebhookPayload
from chatrelay.utils import preview
from chatrelay.whatsapp import WhatsAppClient

logger = logging.getLogger(__name__)


@dataclass
class InboundMessage:
    id: str
    sender: str
    timestamp: datetime
    message_type: str
    content: str
    media: Optional[MediaRef] = None


@dataclass
class StoredInbound:
    message_id: str
    owner_id: str
    party_id: str
    message_type: str


@dataclass
class IngestResult:
    events: int = 0
    created: list[StoredInbound] = field(default_factory=list)
    duplicates: int = 0
    skipped: int = 0
    statuses: int = 0

    @property
    def result(self) -> str:
        if self.created:
            return "created"
        if self.duplicates:
            return "duplicate"
        if self.statuses and not self.skipped:
            return "status"
        return "skipped" if self.skipped else "empty"


def _timestamp(raw: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return utc_now()


def parse_message(message: dict) -> Optional[InboundMessage]:
    """
    Interpret one provider message.

    Returns:
        The message, or None for types this service does not store.
    """
    message_id = message.get("id")
    sender = message.get("from")
    message_type = message.get("type")
    if not message_id or not sender:
        logger.warning("Inbound message without id or sender")
        return None

    timestamp = _timestamp(message.get("timestamp"))

    if message_type == "text":
        body = (message.get("text") or {}).get("body") or ""
        return InboundMessage(message_id, sender, timestamp, "text", body)

    if message_type in MEDIA_TYPES:
        info = message.get(message_type) or {}
        media = MediaRef(
            mime_type=info.get("mime_type"),
            media_id=info.get("id"),
            caption=info.get("caption"),
            filename=info.get("filename"),
            voice=bool(info.get("voice", False)),
            sha256=info.get("sha256"),
        )
        return InboundMessage(
            message_id, sender, timestamp, message_type, media_content(message_type, media), media
        )

    logger.warning(f"Unsupported message type: {message_type} ({message_id})")
    return None


def _profile_name(contacts: list[WebhookContact], sender: str) -> Optional[str]:
    for contact in contacts:
        if contact.wa_id == sender and contact.profile and contact.profile.name:
            return contact.profile.name
    return None


class InboundProcessor:
    """Stores the messages of webhook deliveries."""

    def __init__(
        self,
        db: Session,
        credentials_provider: CredentialsProvider,
        settings: Settings,
        media_store: Optional[MediaStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.db = db
        self.credentials_provider = credentials_provider
        self.settings = settings
        self.media_store = media_store
        self.transport = transport

    async def process(self, payload: WebhookPayload) -> IngestResult:
        result = IngestResult()
        for entry in payload.entry:
            for change in entry.changes:
                value = change.value
                result.statuses += len(value.statuses)
                for status in value.statuses:
                    logger.debug(f"Status {status.get('status')} for message {status.get('id')}")
                if not value.messages:
                    continue

                phone_number_id = value.metadata.phone_number_id if value.metadata else None
                credentials = self.credentials_provider.for_inbound(phone_number_id)
                for raw in value.messages:
                    result.events += 1
                    if credentials is None:
                        result.skipped += 1
                        continue
                    await self._ingest(credentials, raw, value.contacts, result)

        logger.info(
            f"Webhook processed: {result.events} messages, {len(result.created)} created, "
            f"{result.duplicates} duplicates, {result.skipped} skipped, {result.statuses} statuses"
        )
        return result

    async def _mirror(self, credentials: Credentials, sender_id: str, media: MediaRef) -> None:
        if not credentials.access_token:
            logger.warning(f"Cannot fetch media {media.media_id}: WHATSAPP_TOKEN not configured")
            return
        client = WhatsAppClient(credentials, self.settings.MEDIA_FETCH_TIMEOUT_SECONDS, self.transport)
        try:
            media.url = await mirror_media(
                client, self.media_store, sender_id, media, self.settings.MEDIA_MAX_BYTES
            )
        except StorageFailure as e:
            # The message is still stored, just without a retrievable URL
            logger.warning(f"Media {media.media_id} not mirrored: {e.detail}")

    async def _ingest(
        self,
        credentials: Credentials,
        raw: dict,
        contacts: list[WebhookContact],
        result: IngestResult,
    ) -> None:
        message = parse_message(raw)
        if message is None:
            result.skipped += 1
            return

        if message_exists(self.db, message.id):
            logger.info(f"Duplicate message detected: {message.id}")
            result.duplicates += 1
            return

        try:
            sender_id = normalize_phone(message.sender)
        except InvalidIdentifier as e:
            logger.warning(f"Skipping message {message.id}: {e.detail}")
            result.skipped += 1
            return

        if message.media is not None:
            await self._mirror(credentials, sender_id, message.media)

        owner = resolve_owner_party(credentials)
        profile_name = _profile_name(contacts, message.sender)
        party = resolve_phone_party(
            self.db,
            sender_id,
            display_name_hint=profile_name,
            provider_name=profile_name,
            at=message.timestamp,
        ).party

        try:
            append_message(
                self.db,
                NewMessage(
                    id=message.id,
                    sender_id=party.id,
                    receiver_id=owner.id,
                    content=message.content,
                    message_type=message.message_type,
                    payload=message.media,
                    created_at=message.timestamp,
                ),
            )
        except DuplicateMessage:
            # Concurrent redelivery won the insert
            self.db.commit()
            result.duplicates += 1
            return

        self.db.commit()
        logger.info(
            f"Stored {message.message_type} message {message.id} from {party.id}: "
            f"{preview(message.content)}"
        )
        result.created.append(
            StoredInbound(
                message_id=message.id,
                owner_id=owner.id,
                party_id=party.id,
                message_type=message.message_type,
            )
        )
