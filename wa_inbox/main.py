import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError as SchemaValidationError

from wa_inbox.config import Settings, get_settings
from wa_inbox.delivery import StatusCallback
from wa_inbox.errors import ConfigurationError, InboxError, StoreError, TransportError, ValidationError
from wa_inbox.inbound import parse_inbound
from wa_inbox.live import LiveUpdateBus
from wa_inbox.logging_utils import RequestLoggingMiddleware, log_event_data, setup_logging
from wa_inbox.media import MediaProxy
from wa_inbox.metrics import (
    get_metrics,
    get_metrics_content_type,
    record_outbound,
    record_status_callback,
    record_webhook_outcome,
)
from wa_inbox.pipelines import Inbox
from wa_inbox.schemas import (
    ConversationRequest,
    ConversationSummary,
    ErrorResponse,
    HealthResponse,
    MarkUnreadRequest,
    MessageItem,
    SendRequest,
    SendResponse,
    StatusBySidResponse,
    StatusResponse,
)
from wa_inbox.storage import SQLDocumentStore, create_store
from wa_inbox.store import DocumentStore
from wa_inbox.transport import TwilioTransport
from wa_inbox.utils import public_url, verify_twilio_signature

logger = logging.getLogger(__name__)

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'

router = APIRouter()


# =============================================================================
# Dependencies & helpers
# =============================================================================

def get_inbox(request: Request) -> Inbox:
    return request.app.state.inbox


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


async def read_payload(request: Request) -> Dict[str, Any]:
    """Request body as a flat dict, from JSON or a url-encoded/multipart form."""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Invalid JSON body")
        return body if isinstance(body, dict) else {}
    form = await request.form()
    return {key: value for key, value in form.items()}


def parse_body(model, payload: Dict[str, Any]):
    try:
        return model.model_validate(payload)
    except SchemaValidationError:
        raise ValidationError(f"Invalid {model.__name__}")


def signature_is_valid(request: Request, payload: Dict[str, Any], settings: Settings) -> bool:
    if not settings.TWILIO_VALIDATE_SIGNATURE:
        return True
    url = public_url(str(request.url), settings.PUBLIC_BASE_URL)
    return verify_twilio_signature(
        url,
        payload,
        request.headers.get("X-Twilio-Signature", ""),
        settings.TWILIO_AUTH,
    )


# =============================================================================
# Exception handlers
# =============================================================================

ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    TransportError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ConfigurationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    StoreError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


async def inbox_exception_handler(request: Request, exc: InboxError) -> JSONResponse:
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    log_event_data(request, error=type(exc).__name__)
    if status_code >= 500:
        logger.error(f"{request.url.path} failed: {exc.message}", extra={"details": exc.details})
    else:
        logger.warning(f"{request.url.path} rejected: {exc.message}", extra={"details": exc.details})
    return JSONResponse(status_code=status_code, content={"error": exc.message})


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response, inbox: Inbox = Depends(get_inbox)) -> HealthResponse:
    """Readiness probe - 200 only if the document store is reachable."""
    if not await inbox.store.ping():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Document store not reachable")
    return HealthResponse(status="ready")


# =============================================================================
# Provider Routes
# =============================================================================

@router.post(
    "/webhook",
    responses={
        400: {"model": ErrorResponse, "description": "Missing sender or content"},
        403: {"model": ErrorResponse, "description": "Invalid Twilio signature"},
    },
)
async def webhook(
    request: Request,
    inbox: Inbox = Depends(get_inbox),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    """
    Ingest an inbound WhatsApp message from Twilio.

    Accepts Messaging API and Conversations API (onMessageAdded) webhooks,
    form-encoded or JSON. Replies with empty TwiML.
    """
    payload = await read_payload(request)

    if not signature_is_valid(request, payload, settings):
        record_webhook_outcome("invalid_signature")
        log_event_data(request, result="invalid_signature")
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"error": "invalid signature"})

    message = parse_inbound(payload)
    logger.debug(
        "Webhook received",
        extra={"sender": message.sender, "event_type": message.event_type, "media_count": len(message.media)},
    )

    try:
        result = await inbox.ingest.run(message)
    except ValidationError:
        record_webhook_outcome("validation_error")
        log_event_data(request, result="validation_error", sid=message.sid)
        raise
    except InboxError:
        record_webhook_outcome("error")
        log_event_data(request, result="error", sid=message.sid)
        raise

    record_webhook_outcome("accepted")
    log_event_data(
        request,
        result="accepted",
        conversation_id=result.conversation_id,
        message_id=result.message_id,
        sid=message.sid,
    )
    return Response(content=EMPTY_TWIML, media_type="application/xml")


@router.post("/status", response_model=StatusResponse)
async def status_callback(
    request: Request,
    inbox: Inbox = Depends(get_inbox),
    settings: Settings = Depends(get_app_settings),
) -> StatusResponse:
    """
    Twilio delivery status callback.

    Acknowledged with 200 whether or not the sid belongs to a known
    conversation, so Twilio never retries a correlation miss.
    """
    payload = await read_payload(request)

    if not signature_is_valid(request, payload, settings):
        log_event_data(request, result="invalid_signature")
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"error": "invalid signature"})

    callback = StatusCallback(
        sid=payload.get("MessageSid") or None,
        status=payload.get("MessageStatus") or None,
        to=payload.get("To") or None,
        error_code=payload.get("ErrorCode") or None,
        error_message=payload.get("ErrorMessage") or None,
    )
    logger.info("Twilio status callback", extra={"sid": callback.sid, "message_status": callback.status})

    outcome = await inbox.status_callback.run(callback)

    record_status_callback(outcome.matched)
    log_event_data(
        request,
        sid=callback.sid,
        message_status=callback.status,
        result="matched" if outcome.matched else "unmatched",
        conversation_id=outcome.conversation_id,
    )
    return StatusResponse(status="ok")


# =============================================================================
# Dashboard Routes
# =============================================================================

@router.post(
    "/send",
    response_model=SendResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid recipient or empty body"},
        500: {"model": ErrorResponse, "description": "Transport or store failure"},
    },
)
async def send(request: Request, inbox: Inbox = Depends(get_inbox)) -> SendResponse:
    """Send a WhatsApp message and record it in its conversation."""
    try:
        data = SendRequest.model_validate(await read_payload(request))
    except SchemaValidationError:
        record_outbound("validation_error")
        raise ValidationError("Invalid send request")

    try:
        result = await inbox.dispatch.run(data.to, data.body, data.conversationId)
    except ValidationError:
        record_outbound("validation_error")
        raise
    except TransportError:
        record_outbound("transport_error")
        raise
    except InboxError:
        record_outbound("error")
        raise

    record_outbound("sent")
    log_event_data(request, conversation_id=result.conversation_id, sid=result.sid)
    return SendResponse(**result.to_dict())


@router.get("/conversations", response_model=list[ConversationSummary])
async def list_conversations(
    inbox: Inbox = Depends(get_inbox),
    settings: Settings = Depends(get_app_settings),
):
    """Conversation summaries, most recent first."""
    return await inbox.conversations.list(settings.CONVERSATIONS_LIMIT)


@router.get("/conversation-messages", response_model=list[MessageItem])
async def conversation_messages(
    conversation_id: Optional[str] = Query(None, alias="id"),
    inbox: Inbox = Depends(get_inbox),
):
    """All messages of one conversation in chronological order."""
    if not conversation_id:
        raise ValidationError("Missing conversation id")
    return await inbox.conversations.messages(conversation_id)


@router.get("/message-status")
async def message_status(
    conversation_id: Optional[str] = Query(None, alias="conversationId"),
    inbox: Inbox = Depends(get_inbox),
    settings: Settings = Depends(get_app_settings),
) -> Dict[str, Any]:
    """Status records of a conversation keyed by sid."""
    if not conversation_id:
        raise ValidationError("Missing conversation id")
    return await inbox.delivery.query(conversation_id, settings.STATUS_QUERY_LIMIT)


@router.get("/message-status-by-sid", response_model=StatusBySidResponse)
async def message_status_by_sid(
    sid: Optional[str] = Query(None),
    inbox: Inbox = Depends(get_inbox),
) -> StatusBySidResponse:
    if not sid:
        raise ValidationError("Missing sid")
    return StatusBySidResponse(**await inbox.delivery.query_by_sid(sid))


@router.get("/logs/status")
async def status_log(
    inbox: Inbox = Depends(get_inbox),
    settings: Settings = Depends(get_app_settings),
) -> Dict[str, Any]:
    """Audit trail of every status callback, keyed in arrival order."""
    return await inbox.delivery.audit_log(settings.STATUS_LOG_LIMIT)


@router.post("/read", response_model=StatusResponse)
async def mark_read(request: Request, inbox: Inbox = Depends(get_inbox)) -> StatusResponse:
    data = parse_body(ConversationRequest, await read_payload(request))
    if not data.conversationId:
        raise ValidationError("Missing conversation id")
    await inbox.conversations.mark_read(data.conversationId)
    log_event_data(request, conversation_id=data.conversationId)
    return StatusResponse(status="ok")


@router.post("/mark-unread", response_model=StatusResponse)
async def mark_unread(request: Request, inbox: Inbox = Depends(get_inbox)) -> StatusResponse:
    data = parse_body(MarkUnreadRequest, await read_payload(request))
    if not data.conversationId:
        raise ValidationError("Missing conversation id")
    await inbox.conversations.mark_unread(data.conversationId, data.unreadCount)
    log_event_data(request, conversation_id=data.conversationId)
    return StatusResponse(status="ok")


@router.post("/delete-chat", response_model=StatusResponse)
async def delete_chat(request: Request, inbox: Inbox = Depends(get_inbox)) -> StatusResponse:
    data = parse_body(ConversationRequest, await read_payload(request))
    if not data.conversationId:
        raise ValidationError("Missing conversation id")
    await inbox.conversations.delete(data.conversationId)
    log_event_data(request, conversation_id=data.conversationId)
    return StatusResponse(status="ok")


@router.get("/events")
async def events(request: Request) -> StreamingResponse:
    """
    Live event stream (Server-Sent Events).

    Emits a retry directive, then one data line per message/status/summary
    event and periodic keep-alive comments.
    """
    bus: LiveUpdateBus = request.app.state.bus
    return StreamingResponse(
        bus.stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# =============================================================================
# Media Proxy Routes
# =============================================================================

@router.get("/media/messages/{message_sid}/{media_sid}")
async def message_media(message_sid: str, media_sid: str, request: Request) -> Response:
    proxy: MediaProxy = request.app.state.media
    try:
        return await proxy.open(proxy.message_media_url(message_sid, media_sid))
    except (TransportError, ConfigurationError) as e:
        logger.error(f"Media fetch failed for message {message_sid}: {e.message}")
        return Response(status_code=status.HTTP_502_BAD_GATEWAY)


@router.get("/media/conversations/{service_sid}/{media_sid}")
async def conversation_media(service_sid: str, media_sid: str, request: Request) -> Response:
    proxy: MediaProxy = request.app.state.media
    try:
        return await proxy.open(proxy.conversation_media_url(service_sid, media_sid))
    except (TransportError, ConfigurationError) as e:
        logger.error(f"Media fetch failed for service {service_sid}: {e.message}")
        return Response(status_code=status.HTTP_502_BAD_GATEWAY)


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Application
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    transport: Optional[TwilioTransport] = None,
    media: Optional[MediaProxy] = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators not passed in are created from settings at startup.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: open the document store, start the live bus, wire the pipelines
        - Shutdown: disconnect live subscribers, close clients and the store
        """
        doc_store = store or create_store(settings.DATABASE_URL)
        if isinstance(doc_store, SQLDocumentStore):
            await doc_store.init_db()

        bus = LiveUpdateBus(
            keepalive_seconds=settings.SSE_KEEPALIVE_SECONDS,
            queue_size=settings.SUBSCRIBER_QUEUE_SIZE,
            retry_ms=settings.SSE_RETRY_MS,
        )
        media_proxy = media or MediaProxy(settings.TWILIO_SID, settings.TWILIO_AUTH, settings.TWILIO_MEDIA_REGION)

        app.state.settings = settings
        app.state.bus = bus
        app.state.media = media_proxy
        app.state.inbox = Inbox(
            doc_store,
            bus,
            transport or TwilioTransport(settings.TWILIO_SID, settings.TWILIO_AUTH),
            sender_number=settings.TWILIO_NUMBER,
            default_country_code=settings.DEFAULT_COUNTRY_CODE,
            channel_prefix=settings.CHANNEL_PREFIX,
        )
        logger.info("Inbox started")
        yield

        bus.shutdown()
        await media_proxy.aclose()
        await doc_store.close()
        logger.info("Inbox stopped")

    app = FastAPI(
        title="WhatsApp Inbox API",
        description="Relays WhatsApp messages between Twilio and live dashboards",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(InboxError, inbox_exception_handler)
    app.include_router(router)
    return app


app = create_app()
