import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from codeevents.exceptions import ReminderStorageError
from codeevents.models.reminder import Reminder

logger = logging.getLogger(__name__)


class ReminderStore:
    """Reminder persistence over a SQLAlchemy session.

    Database errors are wrapped in ReminderStorageError and the session is
    rolled back before they propagate.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(self, reminder: Reminder) -> int:
        try:
            self.db.add(reminder)
            self.db.commit()
            self.db.refresh(reminder)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise ReminderStorageError(f"Could not persist reminder: {e}") from e
        return reminder.id

    def get(self, reminder_id: int) -> Optional[Reminder]:
        return self.db.get(Reminder, reminder_id)

    def save(self, reminder: Reminder) -> None:
        try:
            self.db.add(reminder)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise ReminderStorageError(
                f"Could not save reminder {reminder.id}: {e}"
            ) from e

    def find_due(
        self,
        now: datetime,
        limit: int,
        claim_timeout: timedelta = timedelta(minutes=5),
    ) -> list[Reminder]:
        """Undelivered, live reminders whose fire time has passed, oldest first."""
        try:
            return (
                self.db.query(Reminder)
                .filter(
                    Reminder.delivered.is_(False),
                    Reminder.abandoned_at.is_(None),
                    Reminder.fire_at <= now,
                    or_(
                        Reminder.next_attempt_at.is_(None),
                        Reminder.next_attempt_at <= now,
                    ),
                    _claim_available(now, claim_timeout),
                )
                .order_by(Reminder.fire_at.asc(), Reminder.id.asc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise ReminderStorageError(f"Could not query due reminders: {e}") from e

    def claim(
        self,
        reminder_id: int,
        owner: str,
        now: datetime,
        claim_timeout: timedelta = timedelta(minutes=5),
        expected_attempts: Optional[int] = None,
    ) -> bool:
        """Atomically take ownership of a reminder.

        The UPDATE only matches while the reminder is still due, undelivered
        and unclaimed (or its claim expired), so two pollers never both win.
        With ``expected_attempts`` it also fails if another poller attempted
        the reminder since it was selected.
        """
        conditions = [
            Reminder.id == reminder_id,
            Reminder.delivered.is_(False),
            Reminder.abandoned_at.is_(None),
            Reminder.fire_at <= now,
            or_(
                Reminder.next_attempt_at.is_(None),
                Reminder.next_attempt_at <= now,
            ),
            _claim_available(now, claim_timeout),
        ]
        if expected_attempts is not None:
            conditions.append(Reminder.attempt_count == expected_attempts)

        try:
            result = self.db.execute(
                update(Reminder)
                .where(*conditions)
                .values(claimed_by=owner, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise ReminderStorageError(f"Could not claim reminder {reminder_id}: {e}") from e
        return result.rowcount == 1

    def list_reminders(
        self,
        recipient: Optional[str] = None,
        delivered: Optional[bool] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[Reminder], int]:
        query = self.db.query(Reminder)
        if recipient:
            query = query.filter(Reminder.recipient == recipient)
        if delivered is not None:
            query = query.filter(Reminder.delivered.is_(delivered))

        total_count = query.count()
        items = (
            query.order_by(Reminder.fire_at.desc(), Reminder.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return items, total_count

    def delete_pending(self) -> int:
        """Remove every undelivered reminder. Operator maintenance only."""
        try:
            result = self.db.execute(
                delete(Reminder)
                .where(Reminder.delivered.is_(False))
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise ReminderStorageError(f"Could not clear pending reminders: {e}") from e
        logger.info(f"Cleared {result.rowcount} pending reminders")
        return result.rowcount


def _claim_available(now: datetime, claim_timeout: timedelta):
    return or_(
        Reminder.claimed_at.is_(None),
        Reminder.claimed_at <= now - claim_timeout,
    )
