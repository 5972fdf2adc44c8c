"""Outbound notification delivery."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Protocol, runtime_checkable

from core import settings

from .errors import NotificationDeliveryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DeliveryReceipt:
    message_id: str


@runtime_checkable
class NotificationSender(Protocol):
    async def send(self, recipient: str, subject: str, body: str) -> DeliveryReceipt: ...


class SmtpNotificationSender:
    """Sends plain-text mail over SMTP, one connection per message."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        sender: str,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender
        self.timeout = timeout

    def _build_message(self, recipient: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient
        message["Subject"] = subject
        message["Message-ID"] = make_msgid()
        message.set_content(body)
        return message

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(message)

    async def send(self, recipient: str, subject: str, body: str) -> DeliveryReceipt:
        message = self._build_message(recipient, subject, body)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationDeliveryError(f"Failed to deliver message to {recipient}") from exc
        return DeliveryReceipt(message_id=str(message["Message-ID"]))


class LoggingNotificationSender:
    """Development sender that logs messages instead of delivering them."""

    async def send(self, recipient: str, subject: str, body: str) -> DeliveryReceipt:
        message_id = make_msgid()
        logger.info(
            "Notification not delivered (no SMTP host configured)",
            extra={"recipient": recipient, "subject": subject, "message_id": message_id},
        )
        return DeliveryReceipt(message_id=message_id)


_cached_sender: NotificationSender | None = None


def get_notification_sender() -> NotificationSender:
    """Singleton accessor for the configured notification sender."""
    global _cached_sender
    if _cached_sender is None:
        if settings.smtp_host:
            _cached_sender = SmtpNotificationSender(
                settings.smtp_host,
                settings.smtp_port,
                username=settings.smtp_username,
                password=settings.smtp_password,
                use_tls=settings.smtp_use_tls,
                sender=settings.mail_from,
            )
        else:
            _cached_sender = LoggingNotificationSender()
    return _cached_sender


def set_notification_sender(sender: NotificationSender | None) -> None:
    """Override the cached sender (primarily for tests)."""
    global _cached_sender
    _cached_sender = sender


def render_invite_message(
    *,
    sender_name: str,
    sender_email: str,
    invite_url: str,
) -> tuple[str, str]:
    product = settings.product_name
    lifetime_days = max(settings.invite_token_expire_minutes // (24 * 60), 1)
    subject = f"{sender_name} invited you to join {product}"
    body = (
        f"{sender_name} ({sender_email}) has invited you to join {product}.\n\n"
        f"Accept the invitation here:\n{invite_url}\n\n"
        f"This invitation will expire in {lifetime_days} days.\n"
        "If you don't want to join, simply ignore this email."
    )
    return subject, body


def render_password_reset_message(*, reset_url: str) -> tuple[str, str]:
    subject = "Reset your password"
    body = (
        "We received a request to reset your password. "
        "If this was you, open the link below to choose a new one.\n\n"
        f"{reset_url}\n\n"
        f"This link is valid for {settings.password_reset_expire_minutes} minutes. "
        "If you didn't request this, please ignore this email."
    )
    return subject, body


def render_direct_message(
    *,
    sender_name: str,
    sender_email: str,
    recipient_name: str,
    message: str,
) -> str:
    product = settings.product_name
    return (
        f"Hello {recipient_name},\n\n"
        f"{sender_name} <{sender_email}> sent you a message via {product}:\n\n"
        f"{message}\n\n"
        f"Please do not reply to this email. Respond inside {product} instead."
    )
