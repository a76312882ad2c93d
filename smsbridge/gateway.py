"""
Inbound SMS gateway.

An inbound webhook runs through a fixed sequence of steps:

    signature -> parse -> phone -> user -> persist -> mention -> [agent reply]

Each step either returns the value the next one needs or stops the pipeline
by raising PipelineHalt with the response to send. The pipeline is plain
synchronous code and is driven by the HTTP route in main.py.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import parse_qsl

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from smsbridge import storage
from smsbridge.completion import CompletionClient, CompletionError
from smsbridge.config import Settings
from smsbridge.dispatcher import NotificationDispatcher
from smsbridge.mentions import MentionDetector, MentionKind
from smsbridge.metrics import record_agent_reply
from smsbridge.transport import SmsTransport
from smsbridge.twiml import twiml_response
from smsbridge.utils import is_valid_phone_number, mask_phone, verify_twilio_signature

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Sorry, I hit a snag. Try again?"
INVALID_PHONE_REPLY = "Invalid phone number"
ERROR_REPLY = "Error processing message"

SYSTEM_PROMPT = """You are {name}, an AI participant in a group SMS chat. The people in the chat are collaborating on a shared project and may address you directly.

Your role:
- Be helpful, concise, and conversational (this is SMS, keep it short)
- Use the conversation history for context
- Be witty but professional
- Keep responses under 160 characters when possible (SMS limit)

Current conversation:"""

REPLY_INSTRUCTION = "Respond to the latest message. Keep it brief for SMS."


class InboundSms(BaseModel):
    """Form fields posted by the SMS provider."""
    from_number: str = Field(..., alias="From", min_length=1)
    to_number: Optional[str] = Field(None, alias="To")
    body: str = Field("", alias="Body")
    message_sid: str = Field(..., alias="MessageSid", min_length=1)

    model_config = {"populate_by_name": True}


@dataclass
class InboundRequest:
    url: str
    body: bytes
    signature: Optional[str]


@dataclass
class GatewayResponse:
    status_code: int
    body: str
    result: str
    message_sid: Optional[str] = None
    mention: Optional[str] = None


class PipelineHalt(Exception):
    """Stops the pipeline with a final response."""

    def __init__(self, response: GatewayResponse):
        super().__init__(response.result)
        self.response = response


def acknowledge(result: str, message: Optional[str] = None, **fields) -> GatewayResponse:
    return GatewayResponse(status_code=200, body=twiml_response(message), result=result, **fields)


def render_context(history: list, agent_label: str) -> str:
    """
    Render messages oldest first as "speaker: text" lines.

    Agent messages use the agent label, human senders their display name.
    """
    lines = []
    for message in history:
        if message.is_from_agent:
            speaker = agent_label
        else:
            speaker = message.sender.display_name if message.sender and message.sender.display_name else "Unknown"
        lines.append(f"{speaker}: {message.content_raw}")
    return "\n".join(lines)


class InboundSmsGateway:
    def __init__(
        self,
        db: Session,
        transport: SmsTransport,
        completion: CompletionClient,
        settings: Settings,
        detector: Optional[MentionDetector] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.transport = transport
        self.completion = completion
        self.settings = settings
        self.detector = detector or MentionDetector(settings.AGENT_NAME, settings.AGENT_ALIAS)
        self.dispatcher = dispatcher or NotificationDispatcher(
            db, transport, preview_chars=settings.NOTIFICATION_PREVIEW_CHARS
        )
        self.clock = clock

    def handle(self, request: InboundRequest) -> GatewayResponse:
        deadline = self.clock() + self.settings.WEBHOOK_DEADLINE_SECONDS
        try:
            self.check_signature(request)
            sms = self.parse(request.body)
            self.validate_phone(sms)
            user = self.resolve_user(sms)
            message = self.persist(sms, user)
            mention = self.detect_mention(message)
            if mention is None:
                return acknowledge("stored", message_sid=sms.message_sid)
            self.respond(sms, user, deadline)
            return acknowledge("replied", message_sid=sms.message_sid, mention=mention.value)
        except PipelineHalt as halt:
            return halt.response

    # -- steps -----------------------------------------------------------------

    def check_signature(self, request: InboundRequest) -> None:
        if not verify_twilio_signature(
            request.url, request.body, request.signature, self.settings.TWILIO_AUTH_TOKEN
        ):
            logger.error("Invalid webhook signature - rejecting request")
            raise PipelineHalt(GatewayResponse(status_code=403, body="", result="invalid_signature"))

    def parse(self, body: bytes) -> InboundSms:
        fields = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        try:
            return InboundSms.model_validate(fields)
        except ValidationError as e:
            logger.warning(f"Malformed webhook payload: {e.error_count()} error(s)")
            raise PipelineHalt(acknowledge("validation_error"))

    def validate_phone(self, sms: InboundSms) -> None:
        if not is_valid_phone_number(sms.from_number):
            logger.warning("Invalid phone number format")
            raise PipelineHalt(acknowledge("invalid_phone", INVALID_PHONE_REPLY, message_sid=sms.message_sid))

    def resolve_user(self, sms: InboundSms):
        user, created = storage.get_or_create_user_by_phone(self.db, sms.from_number)
        storage.ensure_participant(self.db, self.settings.SMS_CONVERSATION_ID, user.id)
        logger.info(f"SMS from {mask_phone(sms.from_number)} (user {user.id}, new={created})")
        return user

    def persist(self, sms: InboundSms, user):
        message, is_duplicate = storage.create_message(
            self.db,
            conversation_id=self.settings.SMS_CONVERSATION_ID,
            sender_id=user.id,
            content_raw=sms.body,
            is_from_agent=False,
            source="sms",
            provider_sid=sms.message_sid,
        )
        if is_duplicate:
            raise PipelineHalt(acknowledge("duplicate", message_sid=sms.message_sid))
        return message

    def detect_mention(self, message) -> Optional[MentionKind]:
        mention = self.detector.find_mention(message.content_raw)
        if mention is not None:
            logger.info(f"Agent mentioned ({mention.value}) in message {message.id}")
        return mention

    def respond(self, sms: InboundSms, user, deadline: float) -> None:
        """Generate the agent reply, store it and deliver it."""
        self._check_deadline(deadline, sms)

        history = storage.get_recent_messages(
            self.db, self.settings.SMS_CONVERSATION_ID, self.settings.AGENT_CONTEXT_MESSAGES
        )
        # The AI call may use at most what is left of the request deadline
        budget = min(self.settings.AI_TIMEOUT_SECONDS, max(0.0, deadline - self.clock()))
        reply = self.generate_reply(render_context(history, self.settings.AGENT_NAME), timeout=budget)

        self._check_deadline(deadline, sms)

        reply_message, _ = storage.create_message(
            self.db,
            conversation_id=self.settings.SMS_CONVERSATION_ID,
            sender_id=self.settings.AGENT_USER_ID,
            content_raw=reply,
            is_from_agent=True,
            source="sms",
        )

        sent = self.transport.send(sms.from_number, reply)
        if not sent.ok:
            logger.error(f"Agent reply to {mask_phone(sms.from_number)} failed: {sent.error}")

        agent_name = self.settings.AGENT_NAME
        participants = storage.get_participants(self.db, self.settings.SMS_CONVERSATION_ID)
        self.dispatcher.dispatch(
            reply_message,
            participants,
            exclude=[user.id],
            format_body=lambda sender_name, text, preview: f"{agent_name}: {text}",
        )

    def generate_reply(self, context: str, timeout: Optional[float] = None) -> str:
        try:
            reply = self.completion.complete(
                system=SYSTEM_PROMPT.format(name=self.settings.AGENT_NAME),
                messages=[{"role": "user", "content": f"{context}\n\n{REPLY_INSTRUCTION}"}],
                max_tokens=self.settings.AI_MAX_TOKENS,
                timeout=timeout,
            )
        except CompletionError as e:
            logger.warning(f"Completion failed, using fallback reply: {e}")
            record_agent_reply("fallback")
            return FALLBACK_REPLY
        except Exception:
            logger.exception("Completion client raised unexpectedly, using fallback reply")
            record_agent_reply("fallback")
            return FALLBACK_REPLY

        record_agent_reply("generated")
        return reply

    def _check_deadline(self, deadline: float, sms: InboundSms) -> None:
        if self.clock() >= deadline:
            logger.warning("Request deadline exceeded, abandoning agent reply")
            raise PipelineHalt(acknowledge("deadline_exceeded", message_sid=sms.message_sid))
