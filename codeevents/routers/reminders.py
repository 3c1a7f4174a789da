from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from codeevents.db import get_db
from codeevents.exceptions import ReminderStorageError, ReminderValidationError
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
from codeevents.services.email import DispatchResult, NotificationDispatcher, get_dispatcher
from codeevents.services.scheduling import schedule_reminder, send_now, send_test
from codeevents.services.store import ReminderStore

router = APIRouter(prefix="/reminders", tags=["reminders"])


def _dispatch_response(result: DispatchResult) -> DispatchResponse:
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Email dispatch failed: {result.error}",
        )
    return DispatchResponse(success=True, message_id=result.message_id)


@router.post("/schedule", response_model=ScheduleReminderResponse)
def schedule(
    request: ScheduleReminderRequest,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Store a reminder to be sent ``minutes_before`` the contest starts."""
    try:
        result = schedule_reminder(
            db,
            dispatcher,
            recipient=request.email,
            payload=request.contest,
            lead_time_minutes=request.minutes_before,
        )
    except ReminderValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ReminderStorageError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not store reminder",
        )

    if result.immediate:
        return ScheduleReminderResponse(
            message="Sent immediately",
            immediate=True,
            fire_at=result.fire_at,
            detail=_dispatch_response(result.dispatch_result),
        )

    return ScheduleReminderResponse(
        message="Reminder scheduled",
        immediate=False,
        fire_at=result.fire_at,
        reminder_id=result.reminder_id,
    )


@router.post("/send", response_model=DispatchResponse)
def send(
    request: SendReminderRequest,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Send a contest reminder right away."""
    try:
        result = send_now(dispatcher, request.email, request.contest)
    except ReminderValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return _dispatch_response(result)


@router.post("/test", response_model=DispatchResponse)
def send_test_email(
    request: VerificationEmailRequest,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Send a fixed verification message to check the mail setup."""
    try:
        result = send_test(dispatcher, request.email)
    except ReminderValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return _dispatch_response(result)


@router.get("", response_model=ReminderListResponse)
async def list_reminders(
    limit: int = Query(default=50, ge=1, le=100, description="Page size (max 100)"),
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    email: Optional[str] = Query(default=None, description="Filter by recipient"),
    delivered: Optional[bool] = Query(default=None, description="Filter by delivery state"),
    db: Session = Depends(get_db),
):
    """List reminders, latest fire time first."""
    reminders, total_count = ReminderStore(db).list_reminders(
        recipient=email, delivered=delivered, offset=offset, limit=limit
    )

    return ReminderListResponse(
        items=[ReminderResponse.model_validate(r) for r in reminders],
        total_count=total_count,
        offset=offset,
        limit=limit,
    )


@router.delete("/pending", response_model=ClearPendingResponse)
async def clear_pending(db: Session = Depends(get_db)):
    """Delete every reminder that has not been delivered."""
    try:
        deleted = ReminderStore(db).delete_pending()
    except ReminderStorageError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not clear pending reminders",
        )
    return ClearPendingResponse(deleted=deleted)


@router.get("/{reminder_id}", response_model=ReminderResponse)
async def get_reminder(reminder_id: int, db: Session = Depends(get_db)):
    reminder = ReminderStore(db).get(reminder_id)
    if reminder is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Reminder not found",
        )
    return reminder
