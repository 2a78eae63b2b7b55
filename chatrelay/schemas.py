"""
Pydantic schemas for request/response validation.

This module contains:
- Webhook models for the provider's inbound payload
- Request models for the operator API
- Response models for API responses
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from chatrelay.payloads import MessagePayload, TemplateVariables
from chatrelay.templates import TemplateDefinition


# =============================================================================
# Webhook Models
# =============================================================================

class WebhookProfile(BaseModel):
    name: Optional[str] = None


class WebhookContact(BaseModel):
    wa_id: str
    profile: Optional[WebhookProfile] = None


class WebhookMetadata(BaseModel):
    display_phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None


class WebhookValue(BaseModel):
    """
    The `value` of one webhook change.

    Messages stay loosely typed here: their shape depends on their `type`
    and is interpreted by inbound.parse_message.
    """
    messaging_product: Optional[str] = None
    metadata: Optional[WebhookMetadata] = None
    contacts: list[WebhookContact] = Field(default_factory=list)
    messages: list[dict[str, Any]] = Field(default_factory=list)
    statuses: list[dict[str, Any]] = Field(default_factory=list)


class WebhookChange(BaseModel):
    field: Optional[str] = None
    value: WebhookValue = Field(default_factory=WebhookValue)


class WebhookEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WebhookChange] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    """Body of POST /webhook as sent by the WhatsApp Cloud API."""
    object: Optional[str] = None
    entry: list[WebhookEntry] = Field(default_factory=list)


class WebhookResponse(BaseModel):
    status: str = "ok"


# =============================================================================
# Request Models
# =============================================================================

class SendTextRequest(BaseModel):
    to: str = Field(..., min_length=1, description="Recipient phone number")
    message: str = Field(..., min_length=1, max_length=4096, description="Message text")


class SendTemplateRequest(BaseModel):
    to: str = Field(..., min_length=1, description="Recipient phone number")
    template_name: str = Field(..., min_length=1)
    template_data: Optional[TemplateDefinition] = None
    variables: TemplateVariables = Field(default_factory=TemplateVariables)


class BroadcastRequest(BaseModel):
    """Either a plain message or a template; the template wins if both are given."""
    message: Optional[str] = Field(None, max_length=4096)
    template_name: Optional[str] = None
    template_data: Optional[TemplateDefinition] = None
    variables: TemplateVariables = Field(default_factory=TemplateVariables)

    @model_validator(mode="after")
    def require_content(self) -> "BroadcastRequest":
        if not (self.message and self.message.strip()) and not self.template_name:
            raise ValueError("Message or template name is required")
        return self


class CreateChatRequest(BaseModel):
    phone_number: str = Field(..., min_length=1)
    custom_name: Optional[str] = Field(None, max_length=100)


class UpdatePartyRequest(BaseModel):
    custom_name: Optional[str] = Field(None, max_length=100)


class CreateGroupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    member_ids: list[str] = Field(default_factory=list)


class UpdateGroupRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None


class AddMembersRequest(BaseModel):
    member_ids: list[str] = Field(..., min_length=1)


# =============================================================================
# Response Models
# =============================================================================

class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str
    reason: Optional[str] = None


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str
    code: Optional[str] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    sender_id: str
    receiver_id: str
    content: str
    message_type: str
    payload: Optional[MessagePayload] = None
    created_at: datetime
    is_read: bool
    read_at: Optional[datetime] = None
    is_sent_by_me: bool
    broadcast_group_id: Optional[str] = None


class ConversationResponse(BaseModel):
    party_id: str
    display_name: str
    unread_count: int
    messages: list[MessageResponse]


class ConversationSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    party_id: str
    display_name: str
    custom_name: Optional[str] = None
    whatsapp_name: Optional[str] = None
    last_active: Optional[datetime] = None
    last_message: str
    last_message_type: Optional[str] = None
    last_message_sender: Optional[str] = None
    last_message_time: Optional[datetime] = None
    unread_count: int
    match_type: Optional[str] = None


class ConversationsListResponse(BaseModel):
    data: list[ConversationSummaryResponse]
    total: int


class MarkReadResponse(BaseModel):
    marked: int


class UnreadCountResponse(BaseModel):
    party_id: str
    unread_count: int


class PartyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    display_name: str
    name: str
    custom_name: Optional[str] = None
    whatsapp_name: Optional[str] = None
    last_active: Optional[datetime] = None


class CreateChatResponse(BaseModel):
    party: PartyResponse
    is_new: bool


class SendResponse(BaseModel):
    message: MessageResponse


class GroupResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    member_count: int
    unread_count: int
    created_at: datetime
    updated_at: datetime


class GroupsListResponse(BaseModel):
    data: list[GroupResponse]
    total: int


class GroupMemberResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    member_id: str
    party_id: str
    display_name: str
    whatsapp_name: Optional[str] = None
    custom_name: Optional[str] = None
    added_at: datetime
    unread_count: int


class GroupDetailResponse(BaseModel):
    group: GroupResponse
    members: list[GroupMemberResponse]


class AddMembersResponse(BaseModel):
    added: int


class BroadcastResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    success: int
    failed: int
    errors: list[str]
    message_ids: list[str]


class ImportedContactResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    party_id: str
    name: str
    phone: str
    is_new: bool


class RejectedRowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    value: str
    reason: str


class ImportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    existing: int
    new: int
    users: list[ImportedContactResponse]
    invalid: list[RejectedRowResponse]
    added_to_group: int = 0
