"""
Notification dispatcher: fan a message out to conversation participants by SMS.

Each recipient is handled on its own. A transport failure for one recipient
is reported in that recipient's result and does not stop the others.

The last-sent lookup and the log write are not atomic, so two concurrent
dispatches to the same user can both pass the rate limit. That window is
accepted instead of taking a lock.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from smsbridge import storage
from smsbridge.gate import GateDecision, evaluate
from smsbridge.metrics import record_notification_outcome
from smsbridge.transport import SmsTransport
from smsbridge.utils import format_iso, mask_phone, truncate_preview, utc_now

logger = logging.getLogger(__name__)

NOTIFICATION_CHANNEL = "sms"

# (sender_name, full_text, preview) -> SMS body
BodyFormatter = Callable[[str, str, str], str]


class DeliveryStatus(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(str, Enum):
    SENDER = "sender"
    AGENT = "agent"
    EXCLUDED = "excluded"
    MISSING = "missing"
    DISABLED = "disabled"
    NO_PHONE = "no_phone"
    RATE_LIMITED = "rate_limited"
    QUIET_HOURS = "quiet_hours"


class FailureReason(str, Enum):
    TRANSPORT = "transport"
    INTERNAL = "internal"


@dataclass
class RecipientResult:
    user_id: str
    status: DeliveryStatus
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {"user_id": self.user_id, "status": self.status.value, "reason": self.reason}


@dataclass
class DispatchResult:
    results: list[RecipientResult] = field(default_factory=list)

    def with_status(self, status: DeliveryStatus) -> list[RecipientResult]:
        return [r for r in self.results if r.status is status]

    @property
    def sent_user_ids(self) -> list[str]:
        return [r.user_id for r in self.with_status(DeliveryStatus.SENT)]

    def for_user(self, user_id: str) -> Optional[RecipientResult]:
        for result in self.results:
            if result.user_id == user_id:
                return result
        return None


def default_body(sender_name: str, text: str, preview: str) -> str:
    return f'Async: {sender_name} sent you a message:\n"{preview}"'


class NotificationDispatcher:
    def __init__(
        self,
        db: Session,
        transport: SmsTransport,
        preview_chars: int = 100,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.transport = transport
        self.preview_chars = preview_chars
        self.clock = clock

    def dispatch(
        self,
        message,
        participants: Iterable,
        exclude: Iterable[str] = (),
        format_body: BodyFormatter = default_body,
    ) -> DispatchResult:
        """
        Notify every eligible participant about `message`.

        Args:
            message: Message row being announced
            participants: User rows of the conversation
            exclude: Extra user ids to leave out
            format_body: Builds the SMS text for a recipient

        Returns:
            DispatchResult with one entry per participant
        """
        excluded = set(exclude)
        sender = storage.get_user(self.db, message.sender_id)
        sender_name = sender.display_name if sender and sender.display_name else "Someone"
        preview = truncate_preview(message.content_raw, self.preview_chars)
        body = format_body(sender_name, message.content_raw, preview)

        result = DispatchResult()
        for participant in participants:
            try:
                outcome = self._notify_one(participant, message, excluded, preview, body)
            except Exception:
                logger.exception(f"Notification to user {participant.id} failed unexpectedly")
                self.db.rollback()
                outcome = RecipientResult(participant.id, DeliveryStatus.FAILED, FailureReason.INTERNAL.value)
            record_notification_outcome(outcome.status.value, outcome.reason or "")
            result.results.append(outcome)

        logger.info(
            f"Dispatch for message {message.id}: "
            f"{len(result.with_status(DeliveryStatus.SENT))} sent, "
            f"{len(result.with_status(DeliveryStatus.SKIPPED))} skipped, "
            f"{len(result.with_status(DeliveryStatus.FAILED))} failed"
        )
        return result

    def _notify_one(self, user, message, excluded: set, preview: str, body: str) -> RecipientResult:
        if user.id == message.sender_id:
            return RecipientResult(user.id, DeliveryStatus.SKIPPED, SkipReason.SENDER.value)
        if user.is_agent:
            return RecipientResult(user.id, DeliveryStatus.SKIPPED, SkipReason.AGENT.value)
        if user.id in excluded:
            return RecipientResult(user.id, DeliveryStatus.SKIPPED, SkipReason.EXCLUDED.value)

        preference = storage.get_notification_preference(self.db, user.id)
        if preference is None:
            logger.info(f"Skipping user {user.id}: no notification preference")
            return RecipientResult(user.id, DeliveryStatus.SKIPPED, SkipReason.MISSING.value)
        if not preference.sms_enabled:
            logger.info(f"Skipping user {user.id}: SMS disabled")
            return RecipientResult(user.id, DeliveryStatus.SKIPPED, SkipReason.DISABLED.value)

        phone = preference.phone_number or user.phone_number
        if not phone:
            logger.info(f"Skipping user {user.id}: no phone number")
            return RecipientResult(user.id, DeliveryStatus.SKIPPED, SkipReason.NO_PHONE.value)

        now = self.clock()
        last_sent_at = storage.get_last_sent_at(self.db, user.id, NOTIFICATION_CHANNEL)
        decision = evaluate(user.id, preference, last_sent_at, now)
        if decision is not GateDecision.ALLOWED:
            logger.info(f"Skipping user {user.id}: {decision.value}")
            return RecipientResult(user.id, DeliveryStatus.SKIPPED, decision.value)

        sent = self.transport.send(phone, body)
        if not sent.ok:
            logger.warning(f"Notification to {mask_phone(phone)} failed: {sent.error}")
            return RecipientResult(user.id, DeliveryStatus.FAILED, FailureReason.TRANSPORT.value)

        # The SMS is out; a failed log write must not turn it into a failure
        try:
            storage.record_notification(
                self.db,
                user_id=user.id,
                message_preview=preview,
                phone_number=phone,
                channel=NOTIFICATION_CHANNEL,
                sent_at=format_iso(now),
            )
        except SQLAlchemyError:
            logger.exception(f"Sent to user {user.id} but the notification log write failed")
            self.db.rollback()
        return RecipientResult(user.id, DeliveryStatus.SENT)
