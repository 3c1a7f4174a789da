import logging
import smtplib
import ssl
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Mapping, Optional, Protocol

import resend

from codeevents.config import Settings, settings
from codeevents.services.rendering import (
    RenderedMessage,
    render_confirmation,
    render_reminder,
    render_test_message,
)

logger = logging.getLogger(__name__)

DRY_RUN_ID = "dry-run-id"


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class EmailTransport(Protocol):
    def send(self, recipient: str, subject: str, text: str, html: str) -> Optional[str]:
        """Send one message and return the provider message id; raise on failure."""


class SmtpTransport:
    """Outbound mail through an SMTP relay."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        from_address: str,
        use_ssl: bool = False,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address
        self.use_ssl = use_ssl
        self.timeout = timeout

    def send(self, recipient: str, subject: str, text: str, html: str) -> Optional[str]:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = recipient
        msg["Message-ID"] = make_msgid(domain="codeevents")
        msg.set_content(text)
        msg.add_alternative(html, subtype="html")

        context = ssl.create_default_context()
        logger.info(f"Dispatching email to {recipient} via {self.host}:{self.port}")
        if self.use_ssl:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=context)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with server:
            if not self.use_ssl:
                server.starttls(context=context)
            server.login(self.username, self.password)
            server.send_message(msg)
        return msg["Message-ID"]


class ResendTransport:
    """Outbound mail through the Resend API."""

    def __init__(self, api_key: str, from_address: str):
        resend.api_key = api_key
        self._client = resend
        self.from_address = from_address

    def send(self, recipient: str, subject: str, text: str, html: str) -> Optional[str]:
        params = {
            "from": self.from_address,
            "to": [recipient],
            "subject": subject,
            "text": text,
            "html": html,
        }
        response = self._client.Emails.send(params)
        return response.get("id") if isinstance(response, dict) else getattr(response, "id", None)


class LoggingTransport:
    """Stand-in used when no mail provider is configured; logs and succeeds."""

    def send(self, recipient: str, subject: str, text: str, html: str) -> Optional[str]:
        logger.info(f"[DRY RUN] Would send email to {recipient}: {subject}")
        logger.debug(f"[DRY RUN] Body:\n{text}")
        return DRY_RUN_ID


def build_transport(config: Settings = settings) -> EmailTransport:
    if config.smtp_configured:
        logger.info(f"SMTP email transport initialized ({config.smtp_host})")
        return SmtpTransport(
            host=config.smtp_host,
            port=config.smtp_port,
            username=config.smtp_user,
            password=config.smtp_password,
            from_address=config.sender_address,
            use_ssl=config.smtp_secure,
            timeout=config.dispatch_timeout_seconds,
        )
    if config.resend_api_key:
        logger.info("Resend email service initialized")
        return ResendTransport(config.resend_api_key, config.sender_address)

    logger.warning("No email transport configured, emails will be logged only")
    return LoggingTransport()


class NotificationDispatcher:
    """Renders reminder payloads and hands them to an email transport.

    Every send runs under ``timeout_seconds``. Failures are reported through
    DispatchResult and never raised or retried here; the poller owns retries.
    """

    def __init__(self, transport: EmailTransport, timeout_seconds: float = 30.0):
        self.transport = transport
        self.timeout_seconds = timeout_seconds

    def dispatch(self, recipient: str, payload: Optional[Mapping[str, Any]]) -> DispatchResult:
        return self.deliver(recipient, render_reminder(payload))

    def send_confirmation(
        self, recipient: str, payload: Optional[Mapping[str, Any]], fire_at: datetime
    ) -> DispatchResult:
        return self.deliver(recipient, render_confirmation(payload, fire_at))

    def send_test(self, recipient: str) -> DispatchResult:
        return self.deliver(recipient, render_test_message())

    def deliver(self, recipient: str, message: RenderedMessage) -> DispatchResult:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="email-dispatch")
        try:
            future = executor.submit(
                self.transport.send, recipient, message.subject, message.text, message.html
            )
            message_id = future.result(timeout=self.timeout_seconds)
        except FuturesTimeoutError:
            error_msg = f"Email dispatch timed out after {self.timeout_seconds} seconds"
            logger.error(f"Failed to send email to {recipient}: {error_msg}")
            return DispatchResult(success=False, error=error_msg)
        except Exception as e:
            error_msg = str(e) or e.__class__.__name__
            logger.error(f"Failed to send email to {recipient}: {error_msg}")
            return DispatchResult(success=False, error=error_msg)
        finally:
            # A hung transport keeps its thread; the caller is not blocked on it.
            executor.shutdown(wait=False)

        logger.info(f"Email sent to {recipient}, id: {message_id}")
        return DispatchResult(success=True, message_id=message_id)


# Singleton instance
notification_dispatcher = NotificationDispatcher(
    build_transport(settings), timeout_seconds=settings.dispatch_timeout_seconds
)


def get_dispatcher() -> NotificationDispatcher:
    return notification_dispatcher
