"""
Tests for the notification dispatcher.

Tests cover:
- Recipient filtering (sender, agent, missing/disabled preference, no phone)
- Log entries written only after a successful send
- Per-recipient failure isolation
- Rate limit and quiet hours read from the notification log
"""

from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError

from conftest import FakeTransport
from smsbridge import dispatcher as dispatcher_module
from smsbridge import storage
from smsbridge.config import settings
from smsbridge.dispatcher import DeliveryStatus, NotificationDispatcher
from smsbridge.models import NotificationLog, NotificationPreference, User
from smsbridge.utils import format_iso


NOW = datetime(2025, 1, 15, 14, 0, 0, tzinfo=timezone.utc)
CONVERSATION_ID = settings.SMS_CONVERSATION_ID


def add_user(db, name, phone=None, pref_phone=None, sms_enabled=True, with_pref=True, **pref_fields):
    user = User(display_name=name, phone_number=phone)
    db.add(user)
    db.flush()
    if with_pref:
        db.add(NotificationPreference(
            user_id=user.id,
            sms_enabled=sms_enabled,
            phone_number=pref_phone,
            **pref_fields,
        ))
    db.commit()
    storage.ensure_participant(db, CONVERSATION_ID, user.id)
    return user


@pytest.fixture
def people(db):
    sender = add_user(db, "Bill", phone="+14155550100", pref_phone="+14155550100")
    user_a = add_user(db, "Noah", phone="+14125550101", pref_phone="+14125550101")
    user_b = add_user(db, "Dana")  # preference but no phone anywhere
    return {
        "sender": sender,
        "agent": storage.get_user(db, settings.AGENT_USER_ID),
        "a": user_a,
        "b": user_b,
    }


@pytest.fixture
def message(db, people):
    msg, _ = storage.create_message(db, CONVERSATION_ID, people["sender"].id, "Pushed the fix, can you review?")
    return msg


def make_dispatcher(db, transport, now=NOW):
    return NotificationDispatcher(db, transport, preview_chars=100, clock=lambda: now)


class TestRecipientFiltering:

    def test_only_eligible_participant_notified(self, db, people, message):
        transport = FakeTransport()
        participants = [people["sender"], people["agent"], people["a"], people["b"]]

        result = make_dispatcher(db, transport).dispatch(message, participants)

        assert result.sent_user_ids == [people["a"].id]
        assert [to for to, _ in transport.sent] == ["+14125550101"]
        assert result.for_user(people["sender"].id).reason == "sender"
        assert result.for_user(people["agent"].id).reason == "agent"
        assert result.for_user(people["b"].id).reason == "no_phone"

    def test_missing_and_disabled_preferences_skipped(self, db, people, message):
        no_pref = add_user(db, "Eve", phone="+14125550102", with_pref=False)
        disabled = add_user(db, "Finn", phone="+14125550103", pref_phone="+14125550103", sms_enabled=False)

        result = make_dispatcher(db, FakeTransport()).dispatch(message, [no_pref, disabled])

        assert result.for_user(no_pref.id).status is DeliveryStatus.SKIPPED
        assert result.for_user(no_pref.id).reason == "missing"
        assert result.for_user(disabled.id).reason == "disabled"

    def test_user_phone_used_when_preference_has_none(self, db, people, message):
        carol = add_user(db, "Carol", phone="+14125550104")
        transport = FakeTransport()

        result = make_dispatcher(db, transport).dispatch(message, [carol])

        assert result.sent_user_ids == [carol.id]
        assert transport.sent[0][0] == "+14125550104"

    def test_extra_exclusions(self, db, people, message):
        result = make_dispatcher(db, FakeTransport()).dispatch(message, [people["a"]], exclude=[people["a"].id])
        assert result.for_user(people["a"].id).reason == "excluded"


class TestMessageBody:

    def test_default_body_names_sender(self, db, people, message):
        transport = FakeTransport()
        make_dispatcher(db, transport).dispatch(message, [people["a"]])

        body = transport.sent_to("+14125550101")[0]
        assert body == 'Async: Bill sent you a message:\n"Pushed the fix, can you review?"'

    def test_long_message_truncated(self, db, people):
        long_msg, _ = storage.create_message(db, CONVERSATION_ID, people["sender"].id, "x" * 150)
        transport = FakeTransport()
        make_dispatcher(db, transport).dispatch(long_msg, [people["a"]])

        body = transport.sent_to("+14125550101")[0]
        assert ("x" * 100 + "...") in body
        assert ("x" * 101) not in body

        entry = db.query(NotificationLog).one()
        assert entry.message_preview == "x" * 100 + "..."

    def test_custom_formatter(self, db, people, message):
        transport = FakeTransport()
        make_dispatcher(db, transport).dispatch(
            message, [people["a"]], format_body=lambda name, text, preview: f"STEF: {text}"
        )
        assert transport.sent_to("+14125550101") == ["STEF: Pushed the fix, can you review?"]


class TestNotificationLog:

    def test_log_written_after_success(self, db, people, message):
        make_dispatcher(db, FakeTransport()).dispatch(message, [people["a"]])

        entries = db.query(NotificationLog).all()
        assert len(entries) == 1
        assert entries[0].user_id == people["a"].id
        assert entries[0].channel == "sms"
        assert entries[0].phone_number == "+14125550101"
        assert storage.get_last_sent_at(db, people["a"].id) == NOW

    def test_no_log_on_transport_failure(self, db, people, message):
        transport = FakeTransport(fail_for={"+14125550101"})
        result = make_dispatcher(db, transport).dispatch(message, [people["a"]])

        assert result.for_user(people["a"].id).status is DeliveryStatus.FAILED
        assert db.query(NotificationLog).count() == 0

    def test_failure_does_not_stop_other_recipients(self, db, people, message):
        carol = add_user(db, "Carol", phone="+14125550104", pref_phone="+14125550104")
        transport = FakeTransport(fail_for={"+14125550101"})

        result = make_dispatcher(db, transport).dispatch(message, [people["a"], carol])

        assert result.for_user(people["a"].id).status is DeliveryStatus.FAILED
        assert result.for_user(carol.id).status is DeliveryStatus.SENT
        assert db.query(NotificationLog).count() == 1

    def test_transport_exception_reported_as_failure(self, db, people, message):
        class ExplodingTransport:
            def send(self, to, body):
                raise RuntimeError("socket closed")

        result = make_dispatcher(db, ExplodingTransport()).dispatch(message, [people["a"]])

        assert result.for_user(people["a"].id).status is DeliveryStatus.FAILED
        assert result.for_user(people["a"].id).reason == "internal"
        assert db.query(NotificationLog).count() == 0

    def test_log_write_failure_keeps_send_reported(self, db, people, message, monkeypatch):
        def broken_log(*args, **kwargs):
            raise OperationalError("INSERT INTO notification_log", {}, Exception("disk I/O error"))

        monkeypatch.setattr(dispatcher_module.storage, "record_notification", broken_log)
        transport = FakeTransport()

        result = make_dispatcher(db, transport).dispatch(message, [people["a"]])

        assert result.for_user(people["a"].id).status is DeliveryStatus.SENT
        assert len(transport.sent_to("+14125550101")) == 1


class TestFailureMetrics:

    @staticmethod
    def failed_count(reason):
        return REGISTRY.get_sample_value("notifications_total", {"status": "failed", "reason": reason}) or 0.0

    def test_provider_error_counted_under_fixed_reason(self, db, people, message):
        before = self.failed_count("transport")
        transport = FakeTransport(fail_for={"+14125550101"})

        result = make_dispatcher(db, transport).dispatch(message, [people["a"]])

        assert result.for_user(people["a"].id).reason == "transport"
        assert self.failed_count("transport") == before + 1
        assert REGISTRY.get_sample_value(
            "notifications_total", {"status": "failed", "reason": "provider status 500"}
        ) is None


class TestGateApplied:

    def test_recent_send_rate_limited(self, db, people, message):
        storage.record_notification(
            db, people["a"].id, "earlier", "+14125550101", sent_at=format_iso(NOW - timedelta(seconds=30))
        )
        transport = FakeTransport()

        result = make_dispatcher(db, transport).dispatch(message, [people["a"]])

        assert result.for_user(people["a"].id).reason == "rate_limited"
        assert transport.sent == []

    def test_send_after_interval_allowed(self, db, people, message):
        storage.record_notification(
            db, people["a"].id, "earlier", "+14125550101", sent_at=format_iso(NOW - timedelta(seconds=60))
        )
        result = make_dispatcher(db, FakeTransport()).dispatch(message, [people["a"]])
        assert result.for_user(people["a"].id).status is DeliveryStatus.SENT

    def test_quiet_hours_skip_without_log(self, db, people, message):
        night_owl = add_user(
            db, "Gus", phone="+14125550105", pref_phone="+14125550105",
            quiet_hours_start="22:00", quiet_hours_end="07:00",
        )
        late = NOW.replace(hour=23)

        result = make_dispatcher(db, FakeTransport(), now=late).dispatch(message, [night_owl])
        assert result.for_user(night_owl.id).reason == "quiet_hours"
        assert db.query(NotificationLog).count() == 0

        # Once the window ends the user is notified; quiet hours did not use up the rate limit
        morning = NOW.replace(hour=7)
        result = make_dispatcher(db, FakeTransport(), now=morning).dispatch(message, [night_owl])
        assert result.for_user(night_owl.id).status is DeliveryStatus.SENT
