"""
Outbound sending.

Order of operations for every send: validate, call the provider, and only
after the provider accepted the message write the party and the message in
one commit. A failed send leaves no local trace.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from chatrelay.credentials import Credentials
from chatrelay.errors import DuplicateMessage, InvalidRequest, StorageFailure, UpstreamSendFailure
from chatrelay.groups import get_group, member_ids
from chatrelay.identity import normalize_phone, resolve_owner_party, resolve_phone_party
from chatrelay.media import SENDABLE_MIME_TYPES, MediaStore, storage_key
from chatrelay.messages import NewMessage, append_message, generate_message_id, get_message
from chatrelay.metrics import record_outbound_send
from chatrelay.models import Message
from chatrelay.payloads import MediaRef, TemplateVariables, media_content
from chatrelay.templates import RenderedTemplate, TemplateDefinition, render_template
from chatrelay.utils import preview
from chatrelay.whatsapp import WhatsAppClient, media_payload, template_payload, text_payload

logger = logging.getLogger(__name__)


@dataclass
class BroadcastResult:
    total: int = 0
    success: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    message_ids: list[str] = field(default_factory=list)


class OutboundSender:
    """Sends messages through one account's credentials and records them."""

    def __init__(self, db: Session, credentials: Credentials, client: WhatsAppClient):
        self.db = db
        self.credentials = credentials
        self.client = client

    @property
    def owner_id(self) -> str:
        return resolve_owner_party(self.credentials).id

    async def _deliver(self, payload: dict, message_type: str) -> str:
        try:
            provider_id = await self.client.send(payload)
        except UpstreamSendFailure:
            record_outbound_send(message_type, "failed")
            raise
        record_outbound_send(message_type, "sent")
        return provider_id or generate_message_id()

    def _record(
        self,
        party_id: str,
        message_id: str,
        content: str,
        message_type: str,
        payload=None,
        broadcast_group_id: Optional[str] = None,
    ) -> Message:
        resolve_phone_party(self.db, party_id)
        try:
            message = append_message(
                self.db,
                NewMessage(
                    id=message_id,
                    sender_id=self.owner_id,
                    receiver_id=party_id,
                    content=content,
                    message_type=message_type,
                    payload=payload,
                    is_read=True,
                    broadcast_group_id=broadcast_group_id,
                ),
            )
        except DuplicateMessage:
            logger.warning(f"Provider reused message id {message_id}")
            message = get_message(self.db, message_id)
        self.db.commit()
        return message

    async def send_text(self, to: str, body: str) -> Message:
        party_id = normalize_phone(to)
        body = (body or "").strip()
        if not body:
            raise InvalidRequest("message text is required")

        logger.info(f"Sending text to {party_id}: {preview(body)}")
        message_id = await self._deliver(text_payload(party_id, body), "text")
        return self._record(party_id, message_id, body, "text")

    async def send_template(
        self,
        to: str,
        template_name: str,
        variables: TemplateVariables,
        definition: Optional[TemplateDefinition] = None,
    ) -> Message:
        party_id = normalize_phone(to)
        rendered = render_template(template_name, variables, definition)
        return await self._send_rendered(party_id, rendered)

    async def _send_rendered(
        self,
        party_id: str,
        rendered: RenderedTemplate,
        broadcast_group_id: Optional[str] = None,
    ) -> Message:
        payload = template_payload(
            party_id,
            rendered.payload.template_name,
            rendered.payload.language,
            rendered.components,
        )
        message_id = await self._deliver(payload, "template")
        return self._record(
            party_id,
            message_id,
            rendered.content,
            "template",
            rendered.payload,
            broadcast_group_id=broadcast_group_id,
        )

    async def send_media(
        self,
        to: str,
        content: bytes,
        mime_type: str,
        filename: str,
        caption: Optional[str] = None,
        media_store: Optional[MediaStore] = None,
        max_bytes: Optional[int] = None,
    ) -> Message:
        """
        Upload a file to the provider and send it.

        The file is also copied to the media store so the conversation can
        show it; if that copy fails the message is stored without a URL.
        """
        party_id = normalize_phone(to)
        mime_type = (mime_type or "").split(";")[0].strip().lower()
        message_type = SENDABLE_MIME_TYPES.get(mime_type)
        if message_type is None:
            raise InvalidRequest(f"Unsupported file type: {mime_type or 'unknown'}")
        if not content:
            raise InvalidRequest("file is empty")
        if max_bytes is not None and len(content) > max_bytes:
            raise InvalidRequest(f"file too large: {len(content)} bytes (max: {max_bytes})")

        caption = (caption or "").strip() or None
        try:
            media_id = await self.client.upload_media(content, mime_type, filename)
        except UpstreamSendFailure:
            record_outbound_send(message_type, "failed")
            raise
        message_id = await self._deliver(
            media_payload(party_id, message_type, media_id, caption, filename), message_type
        )

        media = MediaRef(
            mime_type=mime_type,
            media_id=media_id,
            caption=caption,
            filename=filename if message_type == "document" else None,
        )
        if media_store is not None:
            try:
                key = storage_key(party_id, media_id, mime_type)
                media.url = await run_in_threadpool(media_store.store, key, content, mime_type)
            except StorageFailure as e:
                logger.warning(f"Sent media {media_id} not stored: {e.detail}")

        return self._record(party_id, message_id, media_content(message_type, media), message_type, media)

    async def broadcast(
        self,
        group_id: str,
        message: Optional[str] = None,
        template_name: Optional[str] = None,
        variables: Optional[TemplateVariables] = None,
        definition: Optional[TemplateDefinition] = None,
    ) -> BroadcastResult:
        """
        Send one message to every member of a group, one member at a time.

        Members the provider rejects are reported in `errors` and get no
        message row; the others each get their own row tagged with the group.

        Raises:
            NotFound, Forbidden: unknown group or not the sender's
            InvalidRequest: empty group, or neither message nor template
        """
        group = get_group(self.db, group_id, self.owner_id)
        recipients = member_ids(self.db, group.id)
        if not recipients:
            raise InvalidRequest("Group has no members")

        rendered = None
        text = (message or "").strip()
        if template_name:
            rendered = render_template(template_name, variables or TemplateVariables(), definition)
        elif not text:
            raise InvalidRequest("Message or template name is required")

        result = BroadcastResult(total=len(recipients))
        for party_id in recipients:
            try:
                if rendered is not None:
                    sent = await self._send_rendered(party_id, rendered, broadcast_group_id=group.id)
                else:
                    message_id = await self._deliver(text_payload(party_id, text), "text")
                    sent = self._record(party_id, message_id, text, "text", broadcast_group_id=group.id)
            except UpstreamSendFailure as e:
                result.failed += 1
                result.errors.append(f"{party_id}: {e.detail}")
                continue
            result.success += 1
            result.message_ids.append(sent.id)

        logger.info(
            f"Broadcast to group {group.id}: {result.success} sent, {result.failed} failed "
            f"of {result.total}"
        )
        return result
