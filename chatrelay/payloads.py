"""
Typed message payloads.

A message's structured payload is a tagged union keyed by `kind`:

- text messages carry no payload
- image / video / audio / document / sticker carry a MediaRef
- template messages carry a TemplateRender (already rendered)

`validate_payload` enforces that the variant matches the message type, so
no loosely-shaped JSON ever reaches the `messages.media_data` column.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from chatrelay.errors import InvalidRequest
from chatrelay.models import MEDIA_TYPES, MESSAGE_TYPES


class MediaRef(BaseModel):
    """Reference to a media object held by the provider and/or our media store."""
    kind: Literal["media"] = "media"
    mime_type: Optional[str] = None
    media_id: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None
    voice: bool = False
    sha256: Optional[str] = None
    url: Optional[str] = None


class RenderedComponent(BaseModel):
    format: Optional[str] = None
    text: Optional[str] = None
    media_url: Optional[str] = None


class TemplateButton(BaseModel):
    type: str
    text: str
    url: Optional[str] = None
    phone_number: Optional[str] = None


class TemplateVariables(BaseModel):
    """Positional variables per template component, keyed by placeholder number."""
    header: dict[str, str] = Field(default_factory=dict)
    body: dict[str, str] = Field(default_factory=dict)
    footer: dict[str, str] = Field(default_factory=dict)


class TemplateRender(BaseModel):
    """A template message with every placeholder substituted."""
    kind: Literal["template"] = "template"
    template_name: str
    template_id: Optional[str] = None
    language: str = "en"
    variables: TemplateVariables = Field(default_factory=TemplateVariables)
    original_content: Optional[str] = None
    header: Optional[RenderedComponent] = None
    body: Optional[RenderedComponent] = None
    footer: Optional[RenderedComponent] = None
    buttons: list[TemplateButton] = Field(default_factory=list)


MessagePayload = Annotated[Union[MediaRef, TemplateRender], Field(discriminator="kind")]

_payload_adapter = TypeAdapter(MessagePayload)


def validate_payload(message_type: str, payload) -> Optional[Union[MediaRef, TemplateRender]]:
    """
    Check that `payload` is the variant `message_type` requires.

    Accepts either a model instance or its dict form (as read back from the
    JSON column) and returns the model, or None for text messages.
    """
    if message_type not in MESSAGE_TYPES:
        raise InvalidRequest(f"unknown message type: {message_type}")

    if payload is not None and not isinstance(payload, (MediaRef, TemplateRender)):
        payload = _payload_adapter.validate_python(payload)

    if message_type == "text":
        if payload is not None:
            raise InvalidRequest("text messages carry no payload")
        return None
    if message_type in MEDIA_TYPES:
        if not isinstance(payload, MediaRef):
            raise InvalidRequest(f"{message_type} messages require a media reference")
        return payload
    if not isinstance(payload, TemplateRender):
        raise InvalidRequest("template messages require a rendered template")
    return payload


def load_payload(message_type: str, raw: Optional[dict]) -> Optional[Union[MediaRef, TemplateRender]]:
    """Rebuild the payload model from a stored JSON value."""
    if raw is None:
        return None
    return validate_payload(message_type, raw)


def dump_payload(payload: Optional[Union[MediaRef, TemplateRender]]) -> Optional[dict]:
    if payload is None:
        return None
    return payload.model_dump(mode="json")


def media_content(message_type: str, media: MediaRef) -> str:
    """Display text stored for a media message."""
    if message_type == "image":
        return media.caption or "[Image]"
    if message_type == "video":
        return media.caption or "[Video]"
    if message_type == "document":
        return f"[Document: {media.filename or 'Unknown'}]"
    if message_type == "audio":
        return "[Voice Message]" if media.voice else "[Audio]"
    if message_type == "sticker":
        return "[Sticker]"
    raise InvalidRequest(f"{message_type} is not a media type")
