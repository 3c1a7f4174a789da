from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from codeevents.time_utils import to_utc

MAX_LEAD_MINUTES = 366 * 24 * 60


class ScheduleReminderRequest(BaseModel):
    email: Optional[EmailStr] = None
    contest: Optional[dict[str, Any]] = None
    minutes_before: Optional[float] = Field(default=None, ge=0, le=MAX_LEAD_MINUTES)


class SendReminderRequest(BaseModel):
    email: Optional[EmailStr] = None
    contest: Optional[dict[str, Any]] = None


class VerificationEmailRequest(BaseModel):
    email: Optional[EmailStr] = None


class DispatchResponse(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class ScheduleReminderResponse(BaseModel):
    message: str
    immediate: bool
    fire_at: datetime
    reminder_id: Optional[int] = None
    detail: Optional[DispatchResponse] = None


class ReminderResponse(BaseModel):
    id: int
    recipient: str
    payload: dict[str, Any]
    fire_at: datetime
    delivered: bool
    delivered_at: Optional[datetime] = None
    attempt_count: int
    last_error: Optional[str] = None
    created_at: datetime
    next_attempt_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    abandon_reason: Optional[str] = None
    status: str

    class Config:
        from_attributes = True

    @field_validator(
        "fire_at", "delivered_at", "created_at", "next_attempt_at", "abandoned_at"
    )
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        return to_utc(v)


class ReminderListResponse(BaseModel):
    items: list[ReminderResponse]
    total_count: int
    offset: int
    limit: int


class ClearPendingResponse(BaseModel):
    deleted: int
