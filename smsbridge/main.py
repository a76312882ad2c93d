import json
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from smsbridge import storage
from smsbridge.completion import AnthropicCompletionClient, CompletionClient
from smsbridge.config import settings
from smsbridge.dispatcher import NotificationDispatcher
from smsbridge.gateway import ERROR_REPLY, InboundRequest, InboundSmsGateway
from smsbridge.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from smsbridge.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from smsbridge.schemas import (
    HealthResponse,
    MessagesListResponse,
    MessageView,
    NotifyResponse,
    NotifySkippedResponse,
    NotifyTrigger,
    RecipientOutcome,
)
from smsbridge.storage import init_db, check_db_health, get_db
from smsbridge.transport import SmsTransport, TwilioSmsTransport
from smsbridge.twiml import TWIML_MEDIA_TYPE, twiml_response
from smsbridge.visibility import resolve


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@lru_cache()
def get_transport() -> SmsTransport:
    """Shared Twilio client (connection pooling across requests)."""
    return TwilioSmsTransport(
        account_sid=settings.TWILIO_ACCOUNT_SID,
        auth_token=settings.TWILIO_AUTH_TOKEN,
        from_number=settings.TWILIO_PHONE_NUMBER,
        api_base=settings.TWILIO_API_BASE,
        timeout=settings.SMS_TIMEOUT_SECONDS,
    )


@lru_cache()
def get_completion_client() -> CompletionClient:
    return AnthropicCompletionClient(
        api_key=settings.ANTHROPIC_API_KEY,
        model=settings.ANTHROPIC_MODEL,
        api_url=settings.ANTHROPIC_API_URL,
        timeout=settings.AI_TIMEOUT_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database, create tables, seed agent and SMS conversation
    - Shutdown: Close outbound HTTP clients that were opened
    """
    init_db()
    yield
    if get_transport.cache_info().currsize:
        get_transport().close()
    if get_completion_client.cache_info().currsize:
        get_completion_client().close()


app = FastAPI(
    title="SMS Bridge",
    description="SMS bridge and visibility service for mediated conversations",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def signature_url(request: Request) -> str:
    """
    URL the provider signed. Behind a proxy the public base URL replaces
    the scheme and host the app sees.
    """
    if not settings.PUBLIC_BASE_URL:
        return str(request.url)
    url = settings.PUBLIC_BASE_URL.rstrip("/") + request.url.path
    if request.url.query:
        url += "?" + request.url.query
    return url


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
    1. TWILIO_AUTH_TOKEN is set (webhooks cannot be verified otherwise)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.TWILIO_AUTH_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="TWILIO_AUTH_TOKEN not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Inbound SMS Webhook Route
# =============================================================================

@app.post(
    "/sms/webhook",
    responses={
        200: {"content": {TWIML_MEDIA_TYPE: {}}, "description": "TwiML acknowledgement"},
        403: {"description": "Invalid signature"},
    },
)
async def sms_webhook(
    request: Request,
    x_twilio_signature: Annotated[str | None, Header(alias="X-Twilio-Signature")] = None,
    db: Session = Depends(get_db),
    transport: SmsTransport = Depends(get_transport),
    completion: CompletionClient = Depends(get_completion_client),
) -> Response:
    """
    Receive an inbound SMS from the provider.

    - Verifies X-Twilio-Signature before anything else (403 on failure)
    - Stores the message once per MessageSid
    - Replies as the agent when the message mentions it

    Every other outcome, errors included, is a 200 TwiML acknowledgement so
    the provider does not retry.
    """
    logger.info("SMS webhook request received")
    raw_body = await request.body()

    gateway = InboundSmsGateway(db, transport, completion, settings)
    inbound = InboundRequest(url=signature_url(request), body=raw_body, signature=x_twilio_signature)

    try:
        outcome = await run_in_threadpool(gateway.handle, inbound)
    except Exception:
        logger.exception("SMS webhook processing failed")
        db.rollback()
        record_webhook_outcome("error")
        log_webhook_data(request=request, result="error")
        return Response(content=twiml_response(ERROR_REPLY), media_type=TWIML_MEDIA_TYPE)

    record_webhook_outcome(outcome.result)
    log_webhook_data(
        request=request,
        result=outcome.result,
        message_sid=outcome.message_sid,
        mention=outcome.mention,
    )

    if outcome.status_code != status.HTTP_200_OK:
        return Response(status_code=outcome.status_code)
    return Response(content=outcome.body, media_type=TWIML_MEDIA_TYPE)


# =============================================================================
# Notify Dispatch Route
# =============================================================================

def _dispatch_for_record(db: Session, transport: SmsTransport, record) -> NotifyResponse | NotifySkippedResponse:
    message = storage.get_message(db, record.id)
    if message is None:
        logger.warning(f"Notify trigger for unknown message {record.id}")
        return NotifySkippedResponse(reason="message not found")

    participants = storage.get_participants(db, message.conversation_id)
    if not participants:
        return NotifySkippedResponse(reason="no recipients")

    dispatcher = NotificationDispatcher(db, transport, preview_chars=settings.NOTIFICATION_PREVIEW_CHARS)
    result = dispatcher.dispatch(message, participants)
    return NotifyResponse(
        success=True,
        results=[RecipientOutcome(**r.to_dict()) for r in result.results],
    )


@app.post("/notify")
async def notify(
    request: Request,
    db: Session = Depends(get_db),
    transport: SmsTransport = Depends(get_transport),
):
    """
    Notify conversation participants about a newly inserted message.

    Payloads other than an INSERT on messages are acknowledged and skipped.
    """
    raw_body = await request.body()
    try:
        trigger = NotifyTrigger.model_validate(json.loads(raw_body))
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
        logger.warning(f"Unusable notify payload: {e.__class__.__name__}")
        return NotifySkippedResponse(reason="invalid payload")

    if not trigger.is_message_insert():
        logger.debug(f"Skipping notify event type={trigger.type} table={trigger.table}")
        return NotifySkippedResponse()

    try:
        return await run_in_threadpool(_dispatch_for_record, db, transport, trigger.record)
    except Exception:
        logger.exception(f"Notify dispatch failed for message {trigger.record.id}")
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to dispatch notifications"
        )


# =============================================================================
# Conversation Messages Route
# =============================================================================

@app.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagesListResponse,
)
async def list_conversation_messages(
    conversation_id: str,
    viewer_id: Annotated[str | None, Query(description="Viewing user; omit for anonymous callers")] = None,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    List a conversation's messages as `viewer_id` is allowed to see them.

    Ordering: created_at ASC, id ASC. Each message's `content` is resolved
    from the conversation mode and the message's raw-visibility list.
    """
    conversation = storage.get_conversation(db, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="conversation not found")

    messages, total = storage.get_messages(db, conversation_id, limit=limit, offset=offset)

    data = [
        MessageView(
            id=msg.id,
            conversation_id=msg.conversation_id,
            sender_id=msg.sender_id,
            content=resolve(msg, viewer_id, conversation.mode),
            is_from_agent=msg.is_from_agent,
            source=msg.source,
            created_at=msg.created_at,
        )
        for msg in messages
    ]

    return MessagesListResponse(
        conversation_id=conversation_id,
        mode=conversation.mode,
        data=data,
        total=total,
        limit=limit,
        offset=offset,
    )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
