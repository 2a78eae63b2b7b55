"""
WhatsApp Cloud API client.

Every call has a bounded timeout. A send that times out or gets a non-2xx
answer raises UpstreamSendFailure and is never retried here; retrying is the
caller's decision.
"""

import logging
from typing import Optional

import httpx

from chatrelay.credentials import Credentials
from chatrelay.errors import StorageFailure, UpstreamSendFailure
from chatrelay.utils import preview

logger = logging.getLogger(__name__)


def recipient(party_id: str) -> str:
    """Provider recipient id: the phone number's digits."""
    return "".join(ch for ch in party_id if ch.isdigit())


def text_payload(to: str, body: str) -> dict:
    return {
        "messaging_product": "whatsapp",
        "to": recipient(to),
        "type": "text",
        "text": {"body": body},
    }


def template_payload(to: str, template_name: str, language: str, components: list[dict]) -> dict:
    template = {"name": template_name, "language": {"code": language or "en"}}
    if components:
        template["components"] = components
    return {
        "messaging_product": "whatsapp",
        "to": recipient(to),
        "type": "template",
        "template": template,
    }


def media_payload(
    to: str,
    media_type: str,
    media_id: str,
    caption: Optional[str] = None,
    filename: Optional[str] = None,
) -> dict:
    media = {"id": media_id}
    # The provider rejects captions on audio and stickers
    if caption and media_type in ("image", "video", "document"):
        media["caption"] = caption
    if filename and media_type == "document":
        media["filename"] = filename
    return {
        "messaging_product": "whatsapp",
        "to": recipient(to),
        "type": media_type,
        media_type: media,
    }


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return str(body)[:200]


class WhatsAppClient:
    """Graph API calls made on behalf of one set of credentials."""

    def __init__(
        self,
        credentials: Credentials,
        timeout: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.timeout = httpx.Timeout(timeout)
        self.transport = transport
        self.headers = {"Authorization": f"Bearer {credentials.access_token}"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport, follow_redirects=True)

    async def send(self, payload: dict) -> Optional[str]:
        """
        Deliver a message payload.

        Returns:
            The provider message id, or None if the provider did not report one.

        Raises:
            UpstreamSendFailure: non-2xx answer, timeout or transport error
        """
        to = payload.get("to")
        logger.info(f"Sending {payload.get('type')} message to {to}")
        try:
            async with self._client() as client:
                response = await client.post(
                    self.credentials.messages_url, json=payload, headers=self.headers
                )
        except httpx.TimeoutException:
            logger.error(f"WhatsApp send to {to} timed out")
            raise UpstreamSendFailure("WhatsApp API did not answer in time")
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp send to {to} failed: {e}")
            raise UpstreamSendFailure(f"WhatsApp API unreachable: {e}")

        if not response.is_success:
            detail = _error_detail(response)
            logger.error(f"WhatsApp API error {response.status_code} for {to}: {detail}")
            raise UpstreamSendFailure(
                f"WhatsApp API rejected the message: {detail}",
                upstream_status=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        messages = body.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        logger.info(f"WhatsApp accepted message to {to}: {message_id}")
        return message_id

    async def upload_media(self, content: bytes, mime_type: str, filename: str) -> str:
        """
        Upload bytes to the provider so they can be sent by media id.

        Raises:
            UpstreamSendFailure: the upload was refused or timed out
        """
        try:
            async with self._client() as client:
                response = await client.post(
                    self.credentials.media_upload_url,
                    data={"messaging_product": "whatsapp", "type": mime_type},
                    files={"file": (filename, content, mime_type)},
                    headers=self.headers,
                )
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp media upload failed: {e}")
            raise UpstreamSendFailure(f"WhatsApp media upload failed: {e}")
        if not response.is_success:
            detail = _error_detail(response)
            logger.error(f"WhatsApp media upload error {response.status_code}: {detail}")
            raise UpstreamSendFailure(
                f"WhatsApp media upload rejected: {detail}",
                upstream_status=response.status_code,
            )
        try:
            media_id = response.json().get("id")
        except ValueError:
            media_id = None
        if not media_id:
            raise UpstreamSendFailure("WhatsApp media upload returned no id")
        return str(media_id)

    async def download_media(self, media_id: str, max_bytes: int) -> tuple[bytes, str]:
        """
        Fetch a media object the provider holds.

        Returns:
            (content, mime_type)

        Raises:
            StorageFailure: the media could not be fetched
        """
        try:
            async with self._client() as client:
                info = await client.get(self.credentials.media_url(media_id), headers=self.headers)
                if not info.is_success:
                    raise StorageFailure(
                        f"media info for {media_id} unavailable: {preview(info.text, 100)}"
                    )
                data = info.json()
                url = data.get("url") if isinstance(data, dict) else None
                if not url:
                    raise StorageFailure(f"no download url for media {media_id}")

                async with client.stream("GET", url, headers=self.headers) as response:
                    if not response.is_success:
                        raise StorageFailure(
                            f"media {media_id} download failed with status {response.status_code}"
                        )
                    mime_type = response.headers.get("Content-Type", "").split(";")[0].strip()
                    content = bytearray()
                    async for chunk in response.aiter_bytes():
                        content.extend(chunk)
                        if len(content) > max_bytes:
                            raise StorageFailure(f"media {media_id} is larger than {max_bytes} bytes")
        except (httpx.HTTPError, ValueError) as e:
            raise StorageFailure(f"media {media_id} download failed: {e}")

        if not content:
            raise StorageFailure(f"media {media_id} is empty")
        logger.debug(f"Downloaded media {media_id}: {len(content)} bytes")
        return bytes(content), mime_type
