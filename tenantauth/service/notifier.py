from __future__ import annotations

from typing import List, NamedTuple

from tenantauth.logging import get_logger
from tenantauth.storage.models import MfaMethod

logger = get_logger(__name__)


def redact_destination(destination: str) -> str:
    """Redact an email address or phone number for logging."""
    if "@" in destination:
        local, domain = destination.split("@", 1)
        return f"{local[:2]}***@{domain}"
    if len(destination) > 4:
        return f"***{destination[-4:]}"
    return "redacted"


class LoggingNotifier:
    """Delivery stand-in: records the request without sending anything.

    Real SMS/email delivery belongs to the notification service; this core only
    emits the request.
    """

    def send_code(
        self, channel: MfaMethod, destination: str, code: str, *, purpose: str
    ) -> None:
        logger.info(
            "notification_dev_mode",
            channel=channel.value,
            to=redact_destination(destination),
            purpose=purpose,
        )

    def send_password_reset(self, email: str, link: str) -> None:
        logger.info(
            "notification_dev_mode",
            channel="email",
            to=redact_destination(email),
            purpose="password_reset",
        )


class SentMessage(NamedTuple):
    channel: str
    destination: str
    body: str
    purpose: str


class RecordingNotifier:
    """Keeps every request in memory so callers can inspect what would be sent."""

    def __init__(self) -> None:
        self.sent: List[SentMessage] = []

    def send_code(
        self, channel: MfaMethod, destination: str, code: str, *, purpose: str
    ) -> None:
        self.sent.append(SentMessage(channel.value, destination, code, purpose))

    def send_password_reset(self, email: str, link: str) -> None:
        self.sent.append(SentMessage("email", email, link, "password_reset"))

    def last(self, purpose: str) -> SentMessage:
        for message in reversed(self.sent):
            if message.purpose == purpose:
                return message
        raise LookupError(f"nothing sent for {purpose}")
