import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Optional

import httpx
from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    WebSocket,
    status,
)
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.websockets import WebSocketDisconnect

from chatrelay import conversations, groups, identity, importer, messages, read_state, realtime
from chatrelay.config import get_settings, settings
from chatrelay.credentials import CredentialsProvider
from chatrelay.errors import ChatRelayError, InvalidIdentifier, InvalidRequest
from chatrelay.inbound import InboundProcessor
from chatrelay.logging_utils import RequestLoggingMiddleware, log_request_data, setup_logging
from chatrelay.media import MediaStore, get_media_store
from chatrelay.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from chatrelay.outbound import OutboundSender
from chatrelay.schemas import (
    AddMembersRequest,
    AddMembersResponse,
    BroadcastRequest,
    BroadcastResponse,
    ConversationResponse,
    ConversationSummaryResponse,
    ConversationsListResponse,
    CreateChatRequest,
    CreateChatResponse,
    CreateGroupRequest,
    ErrorResponse,
    GroupDetailResponse,
    GroupMemberResponse,
    GroupResponse,
    GroupsListResponse,
    HealthResponse,
    ImportResponse,
    MarkReadResponse,
    MessageResponse,
    PartyResponse,
    SendResponse,
    SendTemplateRequest,
    SendTextRequest,
    UnreadCountResponse,
    UpdateGroupRequest,
    UpdatePartyRequest,
    WebhookPayload,
    WebhookResponse,
)
from chatrelay.storage import check_db_health, get_db, init_db
from chatrelay.utils import verify_hmac_signature
from chatrelay.whatsapp import WhatsAppClient


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the schema on startup."""
    init_db()
    yield


app = FastAPI(
    title="Chat Relay API",
    description="WhatsApp Cloud API relay with conversations, read state and broadcast groups",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(ChatRelayError)
async def chatrelay_error_handler(request: Request, exc: ChatRelayError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(f"{exc.code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
    )


# =============================================================================
# Dependencies
# =============================================================================

async def get_caller_id(
    x_account_id: Annotated[Optional[str], Header(alias="X-Account-Id")] = None,
) -> str:
    """
    The authenticated account making the request.

    Set by the upstream auth gateway; requests without it never reach the
    domain layer.
    """
    if not x_account_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return identity.validate_account_id(x_account_id)


def get_credentials_provider() -> CredentialsProvider:
    return CredentialsProvider(get_settings())


def get_whatsapp_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Transport for provider calls; None means the network."""
    return None


def get_media_store_dependency() -> Optional[MediaStore]:
    return get_media_store(get_settings())


def get_sender(
    caller_id: str = Depends(get_caller_id),
    db: Session = Depends(get_db),
    provider: CredentialsProvider = Depends(get_credentials_provider),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_whatsapp_transport),
) -> OutboundSender:
    credentials = provider.for_account(caller_id)
    client = WhatsAppClient(credentials, get_settings().SEND_TIMEOUT_SECONDS, transport)
    return OutboundSender(db, credentials, client)


Caller = Annotated[str, Depends(get_caller_id)]


def _contact_id(raw: str) -> str:
    return identity.normalize_phone(raw)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. WEBHOOK_SECRET is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    current = get_settings()
    if not current.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WEBHOOK_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    mode: Annotated[Optional[str], Query(alias="hub.mode")] = None,
    token: Annotated[Optional[str], Query(alias="hub.verify_token")] = None,
    challenge: Annotated[Optional[str], Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    """Subscription handshake: echo the challenge iff the verify token matches."""
    if mode == "subscribe" and token and token == get_settings().VERIFY_TOKEN:
        logger.info("Webhook verified successfully")
        return PlainTextResponse(challenge or "")
    logger.warning("Webhook verification failed")
    return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)


@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
    }
)
async def webhook(
    request: Request,
    x_hub_signature: Annotated[Optional[str], Header(alias="X-Hub-Signature-256")] = None,
    db: Session = Depends(get_db),
    provider: CredentialsProvider = Depends(get_credentials_provider),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_whatsapp_transport),
    media_store: Optional[MediaStore] = Depends(get_media_store_dependency),
) -> WebhookResponse:
    """
    Ingest provider deliveries.

    - Validates the X-Hub-Signature-256 HMAC of the raw body
    - Stores every supported message exactly once; redeliveries return 200
    - Status callbacks are acknowledged and ignored
    """
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    if not verify_hmac_signature(raw_body, x_hub_signature, get_settings().WEBHOOK_SECRET):
        logger.error("Invalid or missing webhook signature")
        record_webhook_outcome("invalid_signature")
        log_request_data(request, result="invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

    try:
        payload = WebhookPayload.model_validate(json.loads(raw_body))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Invalid webhook body: {e}")
        record_webhook_outcome("validation_error")
        log_request_data(request, result="validation_error")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Invalid body: {e}")

    processor = InboundProcessor(db, provider, get_settings(), media_store, transport)
    result = await processor.process(payload)

    record_webhook_outcome("created", len(result.created))
    record_webhook_outcome("duplicate", result.duplicates)
    record_webhook_outcome("skipped", result.skipped)
    record_webhook_outcome("status", result.statuses)
    log_request_data(
        request,
        events=result.events,
        created=len(result.created),
        duplicates=result.duplicates,
        result=result.result,
    )

    for stored in result.created:
        await realtime.hub.publish(
            stored.owner_id,
            realtime.message_created(stored.message_id, stored.party_id, stored.message_type),
        )

    return WebhookResponse(status="ok")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.post("/chats", response_model=CreateChatResponse)
async def create_chat(
    body: CreateChatRequest,
    caller_id: Caller,
    db: Session = Depends(get_db),
) -> CreateChatResponse:
    """Start a conversation with a phone number, creating the contact if needed."""
    party_id = _contact_id(body.phone_number)
    if party_id == caller_id:
        raise InvalidRequest("Cannot create chat with yourself")

    resolution = identity.resolve_phone_party(db, party_id, display_name_hint=body.custom_name)
    party = resolution.party
    if body.custom_name is not None:
        party = identity.set_custom_name(db, party_id, body.custom_name)
    db.commit()
    logger.info(f"Chat with {party_id} opened by {caller_id} ({'new' if resolution.is_new else 'existing'})")

    return CreateChatResponse(party=_party_response(party), is_new=resolution.is_new)


@app.get("/conversations", response_model=ConversationsListResponse)
async def list_conversations(
    caller_id: Caller,
    q: Annotated[Optional[str], Query(description="Search names and message content")] = None,
    db: Session = Depends(get_db),
) -> ConversationsListResponse:
    if q and q.strip():
        summaries = conversations.search_conversations(db, caller_id, q)
    else:
        summaries = conversations.list_conversations(db, caller_id)
    data = [ConversationSummaryResponse.model_validate(s) for s in summaries]
    return ConversationsListResponse(data=data, total=len(data))


@app.get("/conversations/unread", response_model=ConversationsListResponse)
async def list_unread_conversations(
    caller_id: Caller,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    db: Session = Depends(get_db),
) -> ConversationsListResponse:
    summaries = conversations.unread_conversations(db, caller_id, limit=limit)
    data = [ConversationSummaryResponse.model_validate(s) for s in summaries]
    return ConversationsListResponse(data=data, total=len(data))


@app.get("/conversations/{party_id}/messages", response_model=ConversationResponse)
async def get_conversation(
    party_id: str,
    caller_id: Caller,
    limit: Annotated[Optional[int], Query(ge=1, le=500)] = None,
    before: Annotated[Optional[datetime], Query(description="Only messages created before this time")] = None,
    db: Session = Depends(get_db),
) -> ConversationResponse:
    party = identity.get_party(db, _contact_id(party_id))
    history = messages.get_conversation(db, caller_id, party.id, limit=limit, before=before)
    return ConversationResponse(
        party_id=party.id,
        display_name=identity.party_display_name(party),
        unread_count=read_state.unread_count(db, caller_id, party.id),
        messages=[MessageResponse.model_validate(m) for m in history],
    )


@app.get("/conversations/{party_id}/unread", response_model=UnreadCountResponse)
async def get_unread_count(
    party_id: str,
    caller_id: Caller,
    db: Session = Depends(get_db),
) -> UnreadCountResponse:
    party_id = _contact_id(party_id)
    return UnreadCountResponse(party_id=party_id, unread_count=read_state.unread_count(db, caller_id, party_id))


@app.post("/conversations/{party_id}/read", response_model=MarkReadResponse)
async def mark_conversation_read(
    party_id: str,
    caller_id: Caller,
    db: Session = Depends(get_db),
) -> MarkReadResponse:
    party_id = _contact_id(party_id)
    marked = messages.mark_read(db, caller_id, party_id)
    db.commit()
    if marked:
        await realtime.hub.publish(caller_id, realtime.messages_read(party_id, marked))
    return MarkReadResponse(marked=marked)


@app.patch("/parties/{party_id}", response_model=PartyResponse)
async def update_party(
    party_id: str,
    body: UpdatePartyRequest,
    caller_id: Caller,
    db: Session = Depends(get_db),
) -> PartyResponse:
    party = identity.set_custom_name(db, _contact_id(party_id), body.custom_name)
    db.commit()
    logger.info(f"Custom name of {party.id} set by {caller_id}")
    return _party_response(party)


def _party_response(party) -> PartyResponse:
    return PartyResponse(
        id=party.id,
        display_name=identity.party_display_name(party),
        name=party.name,
        custom_name=party.custom_name,
        whatsapp_name=party.whatsapp_name,
        last_active=party.last_active,
    )


# =============================================================================
# Send Routes
# =============================================================================

def _sent(message, caller_id: str) -> SendResponse:
    return SendResponse(
        message=MessageResponse.model_validate(messages.to_conversation_message(message, caller_id))
    )


async def _announce(caller_id: str, message) -> None:
    await realtime.hub.publish(
        caller_id,
        realtime.message_created(message.id, message.receiver_id, message.message_type),
    )


@app.post(
    "/messages/text",
    response_model=SendResponse,
    responses={502: {"model": ErrorResponse, "description": "Provider rejected the send"}},
)
async def send_text(
    body: SendTextRequest,
    caller_id: Caller,
    sender: OutboundSender = Depends(get_sender),
) -> SendResponse:
    message = await sender.send_text(body.to, body.message)
    await _announce(caller_id, message)
    return _sent(message, caller_id)


@app.post(
    "/messages/template",
    response_model=SendResponse,
    responses={502: {"model": ErrorResponse, "description": "Provider rejected the send"}},
)
async def send_template(
    body: SendTemplateRequest,
    caller_id: Caller,
    sender: OutboundSender = Depends(get_sender),
) -> SendResponse:
    message = await sender.send_template(body.to, body.template_name, body.variables, body.template_data)
    await _announce(caller_id, message)
    return _sent(message, caller_id)


@app.post(
    "/messages/media",
    response_model=SendResponse,
    responses={502: {"model": ErrorResponse, "description": "Provider rejected the send"}},
)
async def send_media(
    caller_id: Caller,
    to: Annotated[str, Form()],
    file: Annotated[UploadFile, File()],
    caption: Annotated[Optional[str], Form()] = None,
    sender: OutboundSender = Depends(get_sender),
    media_store: Optional[MediaStore] = Depends(get_media_store_dependency),
) -> SendResponse:
    content = await file.read()
    message = await sender.send_media(
        to,
        content,
        file.content_type or "",
        file.filename or "file",
        caption=caption,
        media_store=media_store,
        max_bytes=get_settings().MEDIA_MAX_BYTES,
    )
    await _announce(caller_id, message)
    return _sent(message, caller_id)


# =============================================================================
# Group Routes
# =============================================================================

def _group_response(db: Session, group) -> GroupResponse:
    return GroupResponse.model_validate(groups.summarize_group(db, group))


@app.get("/groups", response_model=GroupsListResponse)
async def list_groups(caller_id: Caller, db: Session = Depends(get_db)) -> GroupsListResponse:
    data = [GroupResponse.model_validate(g) for g in groups.list_groups_for_owner(db, caller_id)]
    return GroupsListResponse(data=data, total=len(data))


@app.post("/groups", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    body: CreateGroupRequest,
    caller_id: Caller,
    db: Session = Depends(get_db),
) -> GroupResponse:
    group = groups.create_group(db, caller_id, body.name, body.description, body.member_ids)
    db.commit()
    await realtime.hub.publish(caller_id, realtime.group_changed(group.id, "created"))
    return _group_response(db, group)


@app.post("/groups/import", response_model=ImportResponse)
async def import_contacts(
    caller_id: Caller,
    file: Annotated[UploadFile, File()],
    group_id: Annotated[Optional[str], Form()] = None,
    db: Session = Depends(get_db),
) -> ImportResponse:
    """
    Import contacts from a .csv or .xlsx file, optionally into a group.

    The batch is all-or-nothing: either every valid row is saved or none is.
    """
    sheet = importer.parse_contact_sheet(file.filename or "", await file.read())
    result = importer.import_contacts(db, sheet, caller_id, group_id=group_id or None)
    if result.total == 0:
        message = "No valid phone numbers found in file."
        if result.invalid:
            message += f" {len(result.invalid)} invalid number(s) were skipped."
        raise InvalidRequest(message)
    if group_id and result.added_to_group:
        await realtime.hub.publish(caller_id, realtime.group_changed(group_id, "members_added"))
    return ImportResponse.model_validate(result)


@app.get("/groups/{group_id}", response_model=GroupDetailResponse)
async def get_group(group_id: str, caller_id: Caller, db: Session = Depends(get_db)) -> GroupDetailResponse:
    group = groups.get_group(db, group_id, caller_id)
    members = groups.list_group_members(db, group.id, caller_id)
    return GroupDetailResponse(
        group=_group_response(db, group),
        members=[GroupMemberResponse.model_validate(m) for m in members],
    )


@app.patch("/groups/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: str,
    body: UpdateGroupRequest,
    caller_id: Caller,
    db: Session = Depends(get_db),
) -> GroupResponse:
    group = groups.rename_group(db, group_id, caller_id, body.name, body.description)
    db.commit()
    await realtime.hub.publish(caller_id, realtime.group_changed(group.id, "updated"))
    return _group_response(db, group)


@app.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(group_id: str, caller_id: Caller, db: Session = Depends(get_db)) -> Response:
    groups.delete_group(db, group_id, caller_id)
    db.commit()
    await realtime.hub.publish(caller_id, realtime.group_changed(group_id, "deleted"))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/groups/{group_id}/members", response_model=AddMembersResponse)
async def add_group_members(
    group_id: str,
    body: AddMembersRequest,
    caller_id: Caller,
    db: Session = Depends(get_db),
) -> AddMembersResponse:
    added = groups.add_members(db, group_id, caller_id, body.member_ids)
    db.commit()
    await realtime.hub.publish(caller_id, realtime.group_changed(group_id, "members_added"))
    return AddMembersResponse(added=added)


@app.delete("/groups/{group_id}/members/{party_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_group_member(
    group_id: str,
    party_id: str,
    caller_id: Caller,
    db: Session = Depends(get_db),
) -> Response:
    party_id = _contact_id(party_id)
    groups.remove_member(db, group_id, caller_id, party_id)
    db.commit()
    await realtime.hub.publish(caller_id, realtime.group_changed(group_id, "member_removed", party_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post(
    "/groups/{group_id}/broadcast",
    response_model=BroadcastResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Group has no members"},
        403: {"model": ErrorResponse, "description": "Not the group owner"},
    },
)
async def broadcast(
    group_id: str,
    body: BroadcastRequest,
    caller_id: Caller,
    sender: OutboundSender = Depends(get_sender),
) -> BroadcastResponse:
    result = await sender.broadcast(
        group_id,
        message=body.message,
        template_name=body.template_name,
        variables=body.variables,
        definition=body.template_data,
    )
    if result.success:
        await realtime.hub.publish(caller_id, realtime.group_changed(group_id, "broadcast"))
    return BroadcastResponse.model_validate(result)


# =============================================================================
# Push Channel
# =============================================================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, account_id: Optional[str] = None):
    """
    Invalidation hints for one account.

    Events: message.created, messages.read, group.changed. Clients re-query
    the affected view on each event.
    """
    try:
        account_id = identity.validate_account_id(account_id)
    except InvalidIdentifier:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await realtime.hub.connect(account_id, websocket)
    try:
        while True:
            # Clients only send keepalives
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        realtime.hub.disconnect(account_id, websocket)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - request_latency_seconds: Request latency histogram
    - webhook_events_total: Inbound webhook events by result
    - outbound_sends_total: Provider sends by message type and result
    """
    return Response(content=get_metrics(), media_type=get_metrics_content_type())
