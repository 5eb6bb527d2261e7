"""
services/notification/dispatcher.py
Best-effort fan-out of booking events to in-app, SMS and email.

Called only after the state change it reports has been committed. Every
channel failure is logged and swallowed; nothing here can undo a booking,
escrow or dispute transition.
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy import inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.notification.gateway import NotificationGateway
from shared.models.models import Notification, NotificationType, User, UserRole

logger = logging.getLogger(__name__)


# ── Notification Templates ────────────────────────────────────

TEMPLATES = {
    "booking_created": {
        "type": NotificationType.INFO,
        "title": "New booking request 📅",
        "body": "{client_name} booked you for \"{title}\" ({amount}). Accept or reject from your dashboard.",
        "sms": "{brand}: New booking for {title}. Check your dashboard.",
    },
    "booking_accepted": {
        "type": NotificationType.SUCCESS,
        "title": "Booking accepted ✅",
        "body": "{worker_name} accepted your booking \"{title}\".",
        "sms": "{brand}: Booking confirmed! {worker_name} will handle {title}.",
    },
    "booking_rejected": {
        "type": NotificationType.WARNING,
        "title": "Booking rejected",
        "body": "{worker_name} rejected \"{title}\". Your payment of {amount} has been refunded.",
        "sms": "{brand}: Booking for {title} was rejected. Refund {amount} issued.",
    },
    "work_started": {
        "type": NotificationType.INFO,
        "title": "Work started",
        "body": "{worker_name} started work on \"{title}\".",
        "sms": None,
    },
    "work_completed": {
        "type": NotificationType.INFO,
        "title": "Work marked complete",
        "body": "{worker_name} marked \"{title}\" as complete. Please confirm to release payment.",
        "sms": "{brand}: {worker_name} completed {title}. Confirm on the app to release payment.",
    },
    "payment_released": {
        "type": NotificationType.SUCCESS,
        "title": "Payment released 💰",
        "body": "Payment for \"{title}\" is released. {earnings} has been sent to your payout account.",
        "sms": "{brand}: Payment sent {earnings}. Ref: {reference}",
    },
    "booking_cancelled": {
        "type": NotificationType.WARNING,
        "title": "Booking cancelled",
        "body": "The booking \"{title}\" was cancelled: {reason}.",
        "sms": "{brand}: Booking for {title} has been cancelled.",
    },
    "worker_selected": {
        "type": NotificationType.INFO,
        "title": "You were selected for a job! ⏰",
        "body": "You were selected for \"{job_title}\". Accept or decline within 1 hour.",
        "sms": "{brand}: You were selected for \"{job_title}\". Accept within 1 hour.",
    },
    "worker_accepted": {
        "type": NotificationType.SUCCESS,
        "title": "{worker_name} accepted your job! 🎉",
        "body": "Great news! {worker_name} accepted \"{job_title}\". The work will begin as scheduled.",
        "sms": "{brand}: {worker_name} accepted your job \"{job_title}\". Work begins as scheduled!",
    },
    "worker_declined": {
        "type": NotificationType.WARNING,
        "title": "{worker_name} declined your job",
        "body": (
            "Unfortunately, {worker_name} declined \"{job_title}\". "
            "Please select another worker from your applicants."
        ),
        "sms": "{brand}: {worker_name} declined \"{job_title}\". Please select another worker from your applicants.",
    },
    "worker_unpicked": {
        "type": NotificationType.WARNING,
        "title": "Client unpicked you from job",
        "body": (
            "The client decided to unpick you from \"{job_title}\". "
            "You can reapply if interested. Payment was refunded to client."
        ),
        "sms": "{brand}: Client unpicked you from \"{job_title}\". You may reapply if interested.",
    },
    "client_unpicked_worker": {
        "type": NotificationType.INFO,
        "title": "Worker unpicked successfully",
        "body": (
            "You unpicked {worker_name} from \"{job_title}\". Your job is now open for new "
            "applications. Funds have been refunded to your wallet."
        ),
        "sms": None,
    },
    "worker_cancelled_job": {
        "type": NotificationType.WARNING,
        "title": "Worker Cancelled Job",
        "body": (
            "{worker_name} has cancelled \"{job_title}\". Your payment of {amount} has been refunded. "
            "The job is now open for other workers to apply."
        ),
        "sms": "{brand}: {worker_name} cancelled your job \"{job_title}\". {amount} has been refunded.",
    },
    "worker_self_cancelled": {
        "type": NotificationType.INFO,
        "title": "Job Cancelled",
        "body": "You cancelled \"{job_title}\". The client has been refunded and the job is now available for others.",
        "sms": None,
    },
    "dispute_raised": {
        "type": NotificationType.WARNING,
        "title": "Dispute Raised ⚠️",
        "body": "Client has raised a dispute for booking. Please provide your response.",
        "sms": "{brand}: Dispute raised for booking #{booking_ref}. Respond on platform.",
    },
    "dispute_new_admin": {
        "type": NotificationType.WARNING,
        "title": "New Dispute 🚨",
        "body": "A new dispute has been raised for booking #{booking_ref}.",
        "sms": None,
    },
    "dispute_worker_responded": {
        "type": NotificationType.INFO,
        "title": "Worker Responded to Dispute",
        "body": "Worker has provided their response to dispute #{dispute_ref}.",
        "sms": "{brand}: Worker responded to dispute #{booking_ref}. Review required.",
    },
    "dispute_resolved": {
        "type": NotificationType.SUCCESS,
        "title": "Dispute Resolved",
        "body": "{resolution_message}",
        "sms": "{brand}: Dispute #{booking_ref} resolved. Check dashboard for details.",
    },
}


def render(event: str, **template_vars) -> dict:
    template = TEMPLATES[event]
    vars_ = {"brand": settings.SMS_BRAND, **template_vars}
    return {
        "type": template["type"],
        "title": template["title"].format(**vars_),
        "body": template["body"].format(**vars_),
        "sms": template["sms"].format(**vars_) if template["sms"] else None,
    }


class Notifier:
    """Delivers rendered templates through the notification gateway."""

    def __init__(self, gateway: NotificationGateway):
        self.gateway = gateway

    async def send(
        self,
        db: AsyncSession,
        user: Optional[User],
        event: str,
        *,
        idempotency_key: Optional[str] = None,
        action_url: Optional[str] = None,
        booking_id: Optional[uuid.UUID] = None,
        email: bool = False,
        **template_vars,
    ) -> Optional[Notification]:
        if user is None:
            return None
        message = render(event, **template_vars)
        if inspect(user).expired:
            # An earlier rollback in this request expired it
            await db.refresh(user)
        # Read before any rollback below can expire the instance
        user_id, phone, email_address = user.id, user.phone, user.email

        notif = None
        try:
            notif = await self.gateway.create_in_app_notification(
                db,
                user_id=user_id,
                title=message["title"],
                message=message["body"],
                type=message["type"],
                action_url=action_url,
                idempotency_key=idempotency_key,
                booking_id=booking_id,
            )
        except SQLAlchemyError as e:
            await db.rollback()
            logger.warning(f"In-app notification '{event}' for user {user_id} failed: {e}")
        except Exception as e:
            logger.warning(f"In-app notification '{event}' for user {user_id} failed: {e}")

        if message["sms"] and phone and not (notif is not None and notif.sent_sms):
            try:
                await self.gateway.send_sms(phone, message["sms"])
                await self._mark(db, notif, "sent_sms")
            except Exception as e:
                logger.warning(f"SMS '{event}' to user {user_id} failed: {e}")

        if email and email_address and not (notif is not None and notif.sent_email):
            try:
                html = f"<h2>{message['title']}</h2><p>{message['body']}</p>"
                if await self.gateway.send_email(email_address, message["title"], html):
                    await self._mark(db, notif, "sent_email")
            except Exception as e:
                logger.warning(f"Email '{event}' to user {user_id} failed: {e}")

        return notif

    async def send_to_admins(
        self,
        db: AsyncSession,
        event: str,
        *,
        key_prefix: str,
        action_url: Optional[str] = None,
        booking_id: Optional[uuid.UUID] = None,
        **template_vars,
    ) -> List[Notification]:
        """Notify every active admin; each admin gets its own idempotency key."""
        try:
            admins = (
                await db.scalars(
                    select(User).where(User.role == UserRole.ADMIN, User.is_active.is_(True))
                )
            ).all()
        except SQLAlchemyError as e:
            logger.warning(f"Admin lookup for '{event}' failed: {e}")
            return []

        sent = []
        for admin in admins:
            notif = await self.send(
                db,
                admin,
                event,
                idempotency_key=f"{key_prefix}_{admin.id}",
                action_url=action_url,
                booking_id=booking_id,
                **template_vars,
            )
            if notif is not None:
                sent.append(notif)
        return sent

    @staticmethod
    async def _mark(db: AsyncSession, notif: Optional[Notification], flag: str) -> None:
        if notif is None:
            return
        notif_id = notif.id
        setattr(notif, flag, True)
        try:
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.warning(f"Could not record {flag} on notification {notif_id}: {e}")
