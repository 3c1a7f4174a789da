import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from codeevents.config import settings
from codeevents.exceptions import ReminderValidationError
from codeevents.models.reminder import Reminder
from codeevents.services.email import DispatchResult, NotificationDispatcher
from codeevents.services.rendering import parse_event_time
from codeevents.services.store import ReminderStore
from codeevents.time_utils import to_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ScheduleResult:
    immediate: bool
    fire_at: datetime
    reminder_id: Optional[int] = None
    dispatch_result: Optional[DispatchResult] = None


def validate_request(recipient: Optional[str], payload: Optional[Mapping[str, Any]]) -> datetime:
    """Check recipient and payload, returning the resolved event time."""
    if not recipient or not str(recipient).strip():
        raise ReminderValidationError("Missing email")
    if not isinstance(payload, Mapping) or not payload:
        raise ReminderValidationError("Missing contest information")
    if payload.get("date") is None:
        raise ReminderValidationError("Missing contest.date")

    event_time = parse_event_time(payload.get("date"))
    if event_time is None:
        raise ReminderValidationError(f"Unparseable contest.date: {payload.get('date')!r}")
    return event_time


def schedule_reminder(
    db: Session,
    dispatcher: NotificationDispatcher,
    recipient: str,
    payload: Mapping[str, Any],
    lead_time_minutes: Optional[float] = None,
    now: Optional[datetime] = None,
) -> ScheduleResult:
    """
    Schedule a reminder ``lead_time_minutes`` before the contest starts.

    When the fire time has already passed the reminder is dispatched right
    away and nothing is stored. Otherwise a pending Reminder is persisted and
    a best-effort confirmation is emailed to the recipient.

    Raises:
        ReminderValidationError: bad recipient, payload or lead time.
        ReminderStorageError: the reminder could not be persisted.
    """
    event_time = validate_request(recipient, payload)
    if lead_time_minutes is None:
        lead_time_minutes = settings.reminder_default_lead_minutes
    if lead_time_minutes < 0:
        raise ReminderValidationError("minutes_before must not be negative")

    recipient = str(recipient).strip()
    now = to_utc(now) if now else utc_now()
    try:
        fire_at = event_time - timedelta(minutes=lead_time_minutes)
    except OverflowError:
        raise ReminderValidationError(
            f"minutes_before {lead_time_minutes} is out of range for contest.date"
        )

    if fire_at <= now:
        logger.info(
            f"Reminder for {recipient} is already due (fire_at {fire_at.isoformat()}), sending immediately"
        )
        result = dispatcher.dispatch(recipient, payload)
        return ScheduleResult(immediate=True, fire_at=fire_at, dispatch_result=result)

    reminder = Reminder(
        recipient=recipient,
        payload={**payload, "date": event_time.isoformat()},
        fire_at=fire_at,
        delivered=False,
        attempt_count=0,
        created_at=now,
    )
    reminder_id = ReminderStore(db).create(reminder)
    logger.info(
        f"Scheduled reminder {reminder_id} for {recipient} at {fire_at.isoformat()}"
    )

    confirmation = dispatcher.send_confirmation(recipient, payload, fire_at)
    if not confirmation.success:
        logger.warning(
            f"Confirmation email for reminder {reminder_id} failed: {confirmation.error}"
        )

    return ScheduleResult(immediate=False, fire_at=fire_at, reminder_id=reminder_id)


def send_now(
    dispatcher: NotificationDispatcher,
    recipient: str,
    payload: Mapping[str, Any],
) -> DispatchResult:
    """Send a reminder immediately without touching the store."""
    if not recipient or not str(recipient).strip():
        raise ReminderValidationError("Missing email")
    if not isinstance(payload, Mapping) or not payload:
        raise ReminderValidationError("Missing contest information")
    return dispatcher.dispatch(str(recipient).strip(), payload)


def send_test(dispatcher: NotificationDispatcher, recipient: str) -> DispatchResult:
    if not recipient or not str(recipient).strip():
        raise ReminderValidationError("Missing email")
    return dispatcher.send_test(str(recipient).strip())
