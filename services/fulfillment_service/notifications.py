"""
Senders for the notification and email side channels.

The relay only depends on the two protocols; the HTTP senders post to the
notification/email services when their URLs are configured, and the
logging senders stand in for them otherwise.
"""
from typing import Protocol

import httpx
import structlog

from shared.config.settings import (
    EMAIL_SERVICE_URL,
    INTERNAL_API_KEY,
    NOTIFICATION_SERVICE_URL,
    PROVIDER_TIMEOUT_SECONDS,
)

logger = structlog.get_logger(__name__)


class NotificationSender(Protocol):
    async def send(self, user_id: int | None, kind: str, payload: dict) -> None: ...


class EmailSender(Protocol):
    async def send_email(self, to: str | None, user_id: int | None, kind: str, payload: dict) -> None: ...


class HttpNotificationSender:

    def __init__(self, url: str, timeout: float = PROVIDER_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    async def send(self, user_id, kind, payload):
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.url,
                json={"user_id": user_id, "type": kind, "data": payload},
                headers={"X-Internal-API-Key": INTERNAL_API_KEY},
            )
            response.raise_for_status()


class HttpEmailSender:

    def __init__(self, url: str, timeout: float = PROVIDER_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    async def send_email(self, to, user_id, kind, payload):
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.url,
                json={"to": to, "user_id": user_id, "template": kind, "data": payload},
                headers={"X-Internal-API-Key": INTERNAL_API_KEY},
            )
            response.raise_for_status()


class LoggingNotificationSender:

    async def send(self, user_id, kind, payload):
        logger.info("notification_logged", user_id=user_id, kind=kind)


class LoggingEmailSender:

    async def send_email(self, to, user_id, kind, payload):
        logger.info("email_logged", user_id=user_id, kind=kind, has_recipient=bool(to))


def default_notification_sender() -> NotificationSender:
    if NOTIFICATION_SERVICE_URL:
        return HttpNotificationSender(NOTIFICATION_SERVICE_URL)
    return LoggingNotificationSender()


def default_email_sender() -> EmailSender:
    if EMAIL_SERVICE_URL:
        return HttpEmailSender(EMAIL_SERVICE_URL)
    return LoggingEmailSender()
