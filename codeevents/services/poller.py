import logging
import os
import socket
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import pytz
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from codeevents.config import Settings, settings
from codeevents.db import SessionLocal
from codeevents.exceptions import PollerStateError
from codeevents.models.reminder import Reminder
from codeevents.services.email import NotificationDispatcher, get_dispatcher
from codeevents.services.store import ReminderStore
from codeevents.time_utils import to_utc, utc_now

logger = logging.getLogger(__name__)

JOB_ID = "reminder_poller"
STALE_REASON = "Auto-skipped: past due threshold (stale)"
MAX_ATTEMPTS_REASON = "Gave up after {attempts} failed attempts"


@dataclass(frozen=True)
class RetryPolicy:
    """What happens to a reminder after a failed dispatch.

    The defaults retry on every cycle forever. ``max_attempts`` abandons the
    reminder once that many attempts have failed, and ``backoff_seconds``
    delays the next attempt exponentially (capped at ``max_backoff_seconds``).
    """

    max_attempts: Optional[int] = None
    backoff_seconds: float = 0.0
    max_backoff_seconds: float = 3600.0

    def exhausted(self, attempt_count: int) -> bool:
        return self.max_attempts is not None and attempt_count >= self.max_attempts

    def next_attempt_at(self, attempt_count: int, now: datetime) -> Optional[datetime]:
        if self.backoff_seconds <= 0:
            return None
        delay = self.backoff_seconds * (2 ** max(attempt_count - 1, 0))
        return now + timedelta(seconds=min(delay, self.max_backoff_seconds))


@dataclass
class PollCycleResult:
    selected: int = 0
    delivered: int = 0
    failed: int = 0
    abandoned: int = 0
    skipped: int = 0
    errors: int = 0
    cycle_error: Optional[str] = None


def _default_instance_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class ReminderPoller:
    """Background worker that delivers due reminders.

    Each cycle selects up to ``batch_size`` due reminders (oldest ``fire_at``
    first), claims them one at a time and dispatches them sequentially. At
    most one cycle runs at a time; a cycle triggered while another is in
    flight is skipped.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        dispatcher: Optional[NotificationDispatcher] = None,
        *,
        interval_seconds: float = 30,
        batch_size: int = 50,
        retry_policy: Optional[RetryPolicy] = None,
        stale_after: Optional[timedelta] = None,
        claim_timeout: timedelta = timedelta(minutes=5),
        clear_error_on_success: bool = False,
        instance_id: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.session_factory = session_factory
        self.dispatcher = dispatcher or get_dispatcher()
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.stale_after = stale_after
        self.claim_timeout = claim_timeout
        self.clear_error_on_success = clear_error_on_success
        self.instance_id = instance_id or _default_instance_id()
        self._clock = clock
        self._scheduler: Optional[BackgroundScheduler] = None
        self._cycle_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> "ReminderPoller":
        """Start polling every ``interval_seconds``."""
        if self.running:
            raise PollerStateError("Reminder poller is already running")

        scheduler = BackgroundScheduler(timezone=pytz.UTC)
        scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds, timezone=pytz.UTC),
            id=JOB_ID,
            name="Reminder Poller",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            f"Reminder poller {self.instance_id} started. Checking every "
            f"{self.interval_seconds} seconds, batch size {self.batch_size}"
        )
        return self

    def stop(self, wait: bool = True) -> None:
        """Stop the background scheduler, optionally waiting for a running cycle."""
        if not self.running:
            return
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info(f"Reminder poller {self.instance_id} stopped")

    def run_once(self, now: Optional[datetime] = None) -> Optional[PollCycleResult]:
        """Run one poll cycle; returns None if another cycle is still running."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous reminder poll cycle still running, skipping this one")
            return None
        try:
            return self._run_cycle(to_utc(now) if now else self._clock())
        finally:
            self._cycle_lock.release()

    def _run_cycle(self, now: datetime) -> PollCycleResult:
        result = PollCycleResult()
        db = self.session_factory()

        try:
            store = ReminderStore(db)
            due = store.find_due(now, limit=self.batch_size, claim_timeout=self.claim_timeout)
            result.selected = len(due)
            if not due:
                return result

            logger.info(f"Found {len(due)} due reminders")
            for reminder in due:
                reminder_id = reminder.id
                try:
                    self._process_reminder(store, reminder, now, result)
                except Exception as e:
                    db.rollback()
                    result.errors += 1
                    logger.error(f"Error processing reminder {reminder_id}: {e}")
                    continue

            logger.info(
                f"Reminder poll cycle completed: {result.delivered} delivered, "
                f"{result.failed} failed, {result.abandoned} abandoned"
            )
        except Exception as e:
            db.rollback()
            result.cycle_error = str(e)
            logger.error(f"Error in reminder poll cycle: {e}")
        finally:
            db.close()

        return result

    def _process_reminder(
        self,
        store: ReminderStore,
        reminder: Reminder,
        now: datetime,
        result: PollCycleResult,
    ) -> None:
        reminder_id = reminder.id
        if not store.claim(
            reminder_id,
            self.instance_id,
            now,
            self.claim_timeout,
            expected_attempts=reminder.attempt_count or 0,
        ):
            logger.info(f"Reminder {reminder_id} was claimed by another poller, skipping")
            result.skipped += 1
            return

        if self._is_stale(reminder, now):
            logger.info(
                f"Skipping stale reminder {reminder_id} "
                f"(scheduled for {to_utc(reminder.fire_at).isoformat()})"
            )
            reminder.abandoned_at = now
            reminder.abandon_reason = STALE_REASON
            reminder.last_error = STALE_REASON
            self._release(reminder)
            store.save(reminder)
            result.abandoned += 1
            return

        outcome = self.dispatcher.dispatch(reminder.recipient, reminder.payload)
        reminder.attempt_count = (reminder.attempt_count or 0) + 1

        if outcome.success:
            reminder.delivered = True
            reminder.delivered_at = now
            reminder.next_attempt_at = None
            if self.clear_error_on_success:
                reminder.last_error = None
            result.delivered += 1
            logger.info(f"Reminder {reminder_id} sent to {reminder.recipient}")
        else:
            reminder.last_error = outcome.error or "Unknown dispatch error"
            result.failed += 1
            if self.retry_policy.exhausted(reminder.attempt_count):
                reminder.abandoned_at = now
                reminder.abandon_reason = MAX_ATTEMPTS_REASON.format(
                    attempts=reminder.attempt_count
                )
                result.abandoned += 1
                logger.error(
                    f"Reminder {reminder_id} abandoned after {reminder.attempt_count} attempts: "
                    f"{reminder.last_error}"
                )
            else:
                reminder.next_attempt_at = self.retry_policy.next_attempt_at(
                    reminder.attempt_count, now
                )
                logger.error(
                    f"Failed to send reminder {reminder_id} "
                    f"(attempt {reminder.attempt_count}): {reminder.last_error}"
                )

        self._release(reminder)
        store.save(reminder)

    def _is_stale(self, reminder: Reminder, now: datetime) -> bool:
        if self.stale_after is None or reminder.attempt_count:
            return False
        return to_utc(reminder.fire_at) < now - self.stale_after

    @staticmethod
    def _release(reminder: Reminder) -> None:
        reminder.claimed_by = None
        reminder.claimed_at = None


def build_poller(
    config: Settings = settings,
    session_factory: Callable[[], Session] = SessionLocal,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> ReminderPoller:
    stale_after = None
    if config.reminder_stale_after_minutes is not None:
        stale_after = timedelta(minutes=config.reminder_stale_after_minutes)

    return ReminderPoller(
        session_factory,
        dispatcher,
        interval_seconds=config.reminder_poll_interval_seconds,
        batch_size=config.reminder_batch_size,
        retry_policy=RetryPolicy(
            max_attempts=config.reminder_max_attempts,
            backoff_seconds=config.reminder_retry_backoff_seconds,
            max_backoff_seconds=config.reminder_max_backoff_seconds,
        ),
        stale_after=stale_after,
        claim_timeout=timedelta(seconds=config.reminder_claim_timeout_seconds),
        clear_error_on_success=config.reminder_clear_error_on_success,
    )


def start_poller(
    config: Settings = settings,
    session_factory: Callable[[], Session] = SessionLocal,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> ReminderPoller:
    """Build a poller from configuration and start it."""
    return build_poller(config, session_factory, dispatcher).start()
