from codeevents.schemas.reminder import (
    ClearPendingResponse,
    DispatchResponse,
    ReminderListResponse,
    ReminderResponse,
    ScheduleReminderRequest,
    ScheduleReminderResponse,
    SendReminderRequest,
    VerificationEmailRequest,
)

__all__ = [
    "ClearPendingResponse",
    "DispatchResponse",
    "ReminderListResponse",
    "ReminderResponse",
    "ScheduleReminderRequest",
    "ScheduleReminderResponse",
    "SendReminderRequest",
    "VerificationEmailRequest",
]
