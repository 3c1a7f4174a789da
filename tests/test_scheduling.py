"""Tests for the scheduling service."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from codeevents.exceptions import ReminderStorageError, ReminderValidationError
from codeevents.models.reminder import Reminder
from codeevents.services.email import NotificationDispatcher
from codeevents.services.scheduling import schedule_reminder, send_now, send_test
from codeevents.time_utils import to_utc
from tests.conftest import FakeTransport


def contest(start: datetime, name: str = "Round 1") -> dict:
    return {
        "name": name,
        "date": start.isoformat(),
        "url": "https://codeforces.com/contest/1",
        "platform": "Codeforces",
    }


class TestScheduleReminder:
    """Tests for schedule_reminder."""

    def test_future_contest_is_persisted(self, db_session, dispatcher, transport, now):
        """A reminder 20 minutes out with a 10 minute lead should be stored."""
        result = schedule_reminder(
            db_session,
            dispatcher,
            "a@x.com",
            contest(now + timedelta(minutes=20)),
            lead_time_minutes=10,
            now=now,
        )

        assert result.immediate is False
        assert result.fire_at == now + timedelta(minutes=10)

        reminder = db_session.get(Reminder, result.reminder_id)
        assert reminder.recipient == "a@x.com"
        assert reminder.delivered is False
        assert reminder.attempt_count == 0
        assert reminder.payload["name"] == "Round 1"
        assert to_utc(reminder.fire_at) == now + timedelta(minutes=10)
        assert to_utc(reminder.created_at) == now

        # Only the confirmation goes out at scheduling time
        assert len(transport.sent) == 1
        assert transport.sent[0]["subject"] == "Reminder scheduled: Round 1"

    def test_past_fire_time_dispatches_immediately(self, db_session, dispatcher, transport, now):
        """A contest 5 minutes out with a 10 minute lead should be sent now."""
        result = schedule_reminder(
            db_session,
            dispatcher,
            "a@x.com",
            contest(now + timedelta(minutes=5), name="Round 2"),
            lead_time_minutes=10,
            now=now,
        )

        assert result.immediate is True
        assert result.reminder_id is None
        assert result.dispatch_result.success is True
        assert db_session.query(Reminder).count() == 0
        assert len(transport.sent) == 1
        assert transport.sent[0]["subject"].startswith("Reminder: Round 2")

    def test_fire_time_equal_to_now_is_immediate(self, db_session, dispatcher, now):
        result = schedule_reminder(
            db_session, dispatcher, "a@x.com", contest(now + timedelta(minutes=10)),
            lead_time_minutes=10, now=now,
        )
        assert result.immediate is True
        assert db_session.query(Reminder).count() == 0

    def test_default_lead_time(self, db_session, dispatcher, now):
        """Should use the configured default lead time when none is given."""
        with patch("codeevents.services.scheduling.settings") as mock_settings:
            mock_settings.reminder_default_lead_minutes = 10
            result = schedule_reminder(
                db_session, dispatcher, "a@x.com", contest(now + timedelta(hours=1)), now=now
            )
        assert result.fire_at == now + timedelta(minutes=50)

    def test_confirmation_failure_is_swallowed(self, db_session, now):
        """Scheduling should succeed even when the confirmation email fails."""
        dispatcher = NotificationDispatcher(FakeTransport(error="SMTP auth failed"))

        result = schedule_reminder(
            db_session, dispatcher, "a@x.com", contest(now + timedelta(hours=1)),
            lead_time_minutes=10, now=now,
        )

        assert result.immediate is False
        assert db_session.query(Reminder).count() == 1

    def test_accepts_epoch_milliseconds(self, db_session, dispatcher, now):
        start = now + timedelta(hours=2)
        payload = {"name": "Weekly Contest", "date": int(start.timestamp() * 1000)}

        result = schedule_reminder(
            db_session, dispatcher, "a@x.com", payload, lead_time_minutes=30, now=now
        )

        assert result.fire_at == start - timedelta(minutes=30)

    def test_accepts_datetime_date_for_deferred_reminder(self, db_session, dispatcher, now):
        """A datetime contest date should be stored as an ISO string."""
        start = now + timedelta(hours=1)

        result = schedule_reminder(
            db_session, dispatcher, "a@x.com", {"name": "Round 1", "date": start},
            lead_time_minutes=10, now=now,
        )

        assert result.immediate is False
        reminder = db_session.get(Reminder, result.reminder_id)
        assert reminder.payload["date"] == start.isoformat()
        assert to_utc(reminder.fire_at) == start - timedelta(minutes=10)

    def test_out_of_range_lead_time_rejected(self, db_session, dispatcher, now):
        with pytest.raises(ReminderValidationError, match="out of range"):
            schedule_reminder(
                db_session, dispatcher, "a@x.com", contest(now + timedelta(hours=1)),
                lead_time_minutes=1e300, now=now,
            )

        assert db_session.query(Reminder).count() == 0

    def test_accepts_zulu_timestamps(self, db_session, dispatcher):
        now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        payload = {"name": "ABC 400", "date": "2026-03-01T13:00:00.000Z"}

        result = schedule_reminder(
            db_session, dispatcher, "a@x.com", payload, lead_time_minutes=10, now=now
        )

        assert result.fire_at == datetime(2026, 3, 1, 12, 50, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "recipient,payload,message",
        [
            ("", {"name": "x", "date": "2026-03-01T13:00:00Z"}, "Missing email"),
            ("   ", {"name": "x", "date": "2026-03-01T13:00:00Z"}, "Missing email"),
            ("a@x.com", None, "Missing contest information"),
            ("a@x.com", {"name": "x"}, "Missing contest.date"),
            ("a@x.com", {"name": "x", "date": "next tuesday"}, "Unparseable contest.date"),
        ],
    )
    def test_validation_errors(self, db_session, dispatcher, transport, recipient, payload, message):
        with pytest.raises(ReminderValidationError, match=message):
            schedule_reminder(db_session, dispatcher, recipient, payload)

        assert db_session.query(Reminder).count() == 0
        assert transport.sent == []

    def test_negative_lead_time_rejected(self, db_session, dispatcher, now):
        with pytest.raises(ReminderValidationError):
            schedule_reminder(
                db_session, dispatcher, "a@x.com", contest(now + timedelta(hours=1)),
                lead_time_minutes=-5, now=now,
            )

    def test_storage_failure_raises(self, db_session, dispatcher, transport, now):
        """A database failure should surface as ReminderStorageError."""
        with patch.object(
            db_session, "commit", side_effect=OperationalError("INSERT", {}, Exception("disk full"))
        ):
            with pytest.raises(ReminderStorageError):
                schedule_reminder(
                    db_session, dispatcher, "a@x.com", contest(now + timedelta(hours=1)),
                    lead_time_minutes=10, now=now,
                )

        assert transport.sent == []


class TestImmediateSend:
    """Tests for send_now and send_test."""

    def test_send_now(self, dispatcher, transport):
        result = send_now(dispatcher, "a@x.com", {"name": "Round 3", "date": "2026-03-01T13:00:00Z"})

        assert result.success is True
        assert transport.sent[0]["recipient"] == "a@x.com"
        assert "Round 3" in transport.sent[0]["text"]

    def test_send_now_requires_payload(self, dispatcher):
        with pytest.raises(ReminderValidationError):
            send_now(dispatcher, "a@x.com", {})

    def test_send_test(self, dispatcher, transport):
        result = send_test(dispatcher, "a@x.com")

        assert result.success is True
        assert transport.sent[0]["subject"] == "Sample Transmission - CodeEvents"

    def test_send_test_requires_recipient(self, dispatcher):
        with pytest.raises(ReminderValidationError):
            send_test(dispatcher, None)
