"""Message rendering for contest reminders.

Everything here is a pure function of its arguments: the same payload always
renders to the same subject, text and HTML. Missing or malformed payload
fields fall back to placeholder text instead of raising.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from html import escape
from typing import Any, Mapping, Optional

DEFAULT_CONTEST_NAME = "Upcoming contest"
DEFAULT_PLATFORM = "Unknown platform"
DEFAULT_START = "TBA"


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    text: str
    html: str


def parse_event_time(value: Any) -> Optional[datetime]:
    """Resolve a contest ``date`` field into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (``Z`` suffix included) and numbers of
    epoch milliseconds. Returns None when the value cannot be resolved.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_event_time(value: Any) -> str:
    event_time = parse_event_time(value)
    if event_time is None:
        return DEFAULT_START
    return event_time.strftime("%Y-%m-%d %H:%M UTC")


def _field(payload: Optional[Mapping[str, Any]], key: str, default: str) -> str:
    if not isinstance(payload, Mapping):
        return default
    value = payload.get(key)
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def render_reminder(payload: Optional[Mapping[str, Any]]) -> RenderedMessage:
    name = _field(payload, "name", DEFAULT_CONTEST_NAME)
    platform = _field(payload, "platform", DEFAULT_PLATFORM)
    url = _field(payload, "url", "")
    starts_at = format_event_time(payload.get("date") if isinstance(payload, Mapping) else None)

    subject = f"Reminder: {name} on {starts_at}"

    text = f"Don't forget: {name} ({platform}) starts at {starts_at}"
    if url:
        text += f"\n\nLink: {url}"

    link_html = ""
    if url:
        link_html = f'<p><a href="{escape(url)}">Open contest</a></p>'

    html_body = f"""<html>
<body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h2 style="color: #333;">Contest Reminder</h2>
    <p>Don't forget: <strong>{escape(name)}</strong> ({escape(platform)}) starts at {escape(starts_at)}</p>
    {link_html}
    <p style="color: #666; font-size: 12px; margin-top: 30px;">
        This email was sent by CodeEvents, your contest tracker.
    </p>
</body>
</html>"""

    return RenderedMessage(subject=subject, text=text, html=html_body)


def render_confirmation(
    payload: Optional[Mapping[str, Any]], fire_at: datetime
) -> RenderedMessage:
    """Courtesy message sent right after a reminder is scheduled."""
    name = _field(payload, "name", DEFAULT_CONTEST_NAME)
    starts_at = format_event_time(payload.get("date") if isinstance(payload, Mapping) else None)
    fires_at = format_event_time(fire_at)

    subject = f"Reminder scheduled: {name}"
    text = (
        f"Your reminder for {name} (starting {starts_at}) is scheduled.\n\n"
        f"We will email you at {fires_at}."
    )
    html_body = f"""<html>
<body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h2 style="color: #333;">Reminder Scheduled</h2>
    <p>Your reminder for <strong>{escape(name)}</strong> (starting {escape(starts_at)}) is scheduled.</p>
    <p>We will email you at {escape(fires_at)}.</p>
</body>
</html>"""

    return RenderedMessage(subject=subject, text=text, html=html_body)


def render_test_message() -> RenderedMessage:
    subject = "Sample Transmission - CodeEvents"
    text = (
        "This is a sample alert message to verify your registry email.\n\n"
        "You will receive notifications before your contests start at this email address."
    )
    html_body = """<html>
<body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h2 style="color: #333;">Sample Transmission</h2>
    <p>This is a <strong>sample alert message</strong> to verify your registry email.</p>
    <p>You will receive notifications before your contests start at this email address.</p>
</body>
</html>"""

    return RenderedMessage(subject=subject, text=text, html=html_body)
