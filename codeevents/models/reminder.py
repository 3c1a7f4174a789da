from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text

from codeevents.db import Base
from codeevents.time_utils import utc_now


class Reminder(Base):
    __tablename__ = "reminders"
    __table_args__ = (Index("ix_reminders_due", "delivered", "fire_at"),)

    id = Column(Integer, primary_key=True, index=True)
    recipient = Column(String(320), nullable=False, index=True)
    payload = Column(JSON, nullable=False)  # contest name, date, url, platform
    fire_at = Column(DateTime(timezone=True), nullable=False)
    delivered = Column(Boolean, nullable=False, default=False)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    # Retry policy
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    abandoned_at = Column(DateTime(timezone=True), nullable=True)
    abandon_reason = Column(String(200), nullable=True)

    # Set while a poller instance owns the record
    claimed_by = Column(String(64), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def status(self) -> str:
        if self.delivered:
            return "delivered"
        if self.abandoned_at is not None:
            return "abandoned"
        return "pending"
