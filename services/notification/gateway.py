"""
services/notification/gateway.py
Notification delivery: Twilio SMS, Resend email, in-app rows.

SMS is retried with exponential backoff on transient failures only
(Twilio 5xx and network errors). Configuration errors such as a bad sender,
bad credentials or an empty balance come back as 4xx and fail immediately.
"""

import logging
import re
import uuid
from typing import Optional

import resend
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient

from config.settings import settings
from shared.exceptions import ValidationError
from shared.models.models import Notification, NotificationType

logger = logging.getLogger(__name__)


def truncate_sms(message: str, limit: int = 160) -> str:
    """Fit a message into a single SMS segment."""
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."


def format_phone_number(phone: str) -> Optional[str]:
    """Normalise a Nigerian number to E.164 (+234XXXXXXXXXX). None if invalid."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("0") and len(digits) == 11:
        return "+234" + digits[1:]
    if digits.startswith("234") and len(digits) == 13:
        return "+" + digits
    return None


def is_transient_sms_error(exc: BaseException) -> bool:
    if isinstance(exc, TwilioRestException):
        return exc.status is not None and exc.status >= 500
    # requests' connection/timeout errors are OSError subclasses
    return isinstance(exc, (OSError, TimeoutError))


class NotificationGateway:
    """Outbound email, SMS and in-app notifications."""

    def __init__(
        self,
        twilio_client: Optional[TwilioClient] = None,
        sms_retry_wait=None,
        max_retries: int = settings.SMS_MAX_RETRIES,
    ):
        self._twilio = twilio_client
        self._sms_retry_wait = sms_retry_wait or wait_exponential(
            multiplier=settings.SMS_RETRY_INITIAL_DELAY_SECONDS
        )
        self._max_retries = max_retries

    @classmethod
    def from_settings(cls) -> "NotificationGateway":
        twilio_client = None
        if settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN:
            twilio_client = TwilioClient(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        if settings.RESEND_API_KEY:
            resend.api_key = settings.RESEND_API_KEY
        return cls(twilio_client=twilio_client)

    # ── Email ────────────────────────────────────────────────

    async def send_email(self, to: str, subject: str, html: str) -> bool:
        """Send transactional email via Resend. Raises on provider errors."""
        if not settings.RESEND_API_KEY:
            logger.warning("Email not sent: RESEND_API_KEY is not configured")
            return False
        await run_in_threadpool(
            resend.Emails.send,
            {
                "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
                "to": [to],
                "subject": subject,
                "html": html,
            },
        )
        return True

    # ── SMS ──────────────────────────────────────────────────

    async def send_sms(self, to: str, message: str) -> str:
        """
        Send an SMS via Twilio, retrying transient failures.
        Returns the provider message SID. Raises on permanent failure.
        """
        if self._twilio is None:
            raise ValidationError("SMS service not configured")
        phone = format_phone_number(to)
        if phone is None:
            raise ValidationError(f"Invalid phone number format: {to}")
        if not message or not message.strip():
            raise ValidationError("Message cannot be empty")

        body = truncate_sms(message, settings.SMS_MAX_LENGTH)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=self._sms_retry_wait,
            retry=retry_if_exception(is_transient_sms_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                sent = await run_in_threadpool(
                    self._twilio.messages.create,
                    body=body,
                    from_=settings.TWILIO_FROM_NUMBER,
                    to=phone,
                )
        logger.info(f"SMS sent to {phone}: {sent.sid}")
        return sent.sid

    # ── In-app ───────────────────────────────────────────────

    async def create_in_app_notification(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        action_url: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        booking_id: Optional[uuid.UUID] = None,
    ) -> Notification:
        """
        Store an in-app notification. A repeated idempotency key returns the
        row created the first time instead of inserting a duplicate.
        """
        if idempotency_key:
            existing = await db.scalar(
                select(Notification).where(Notification.idempotency_key == idempotency_key)
            )
            if existing is not None:
                return existing

        notif = Notification(
            user_id=user_id,
            booking_id=booking_id,
            type=type,
            title=title,
            body=message,
            action_url=action_url,
            idempotency_key=idempotency_key,
        )
        try:
            async with db.begin_nested():
                db.add(notif)
        except IntegrityError:
            # Lost a race against the same logical event
            return await db.scalar(
                select(Notification).where(Notification.idempotency_key == idempotency_key)
            )
        await db.commit()
        return notif
