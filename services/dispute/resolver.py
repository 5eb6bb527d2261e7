"""
services/dispute/resolver.py
Dispute resolver: one dispute per booking, raised by the client, answered by
the worker, settled by an admin.

    pending → worker_responded → under_review → resolved

Resolution and the resulting money movement commit together. If the payout or
refund fails, the dispute stays open and the admin can resolve again.
"""

import logging
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.lifecycle import TERMINAL, BookingLifecycleManager
from services.notification.dispatcher import Notifier
from shared.exceptions import Conflict, InvalidStateError, Unauthorized, ValidationError
from shared.models.models import (
    Booking,
    BookingStatus,
    Dispute,
    DisputeResolution,
    DisputeStatus,
    User,
    UserRole,
)
from shared.utils.store import compare_and_set, get_or_404, utcnow

logger = logging.getLogger(__name__)


DISPUTE_CATEGORIES = {"quality", "incomplete", "damage", "time", "communication", "other"}

OPEN_STATUSES = [DisputeStatus.PENDING, DisputeStatus.WORKER_RESPONDED, DisputeStatus.UNDER_REVIEW]

RESOLUTION_MESSAGES = {
    DisputeResolution.APPROVE_WORKER: "Admin approved the work. Payment released to worker.",
    DisputeResolution.REFUND_CLIENT: "Admin approved refund. Money returned to the client.",
    DisputeResolution.RESOLVE_THEMSELVES: (
        "Admin suggests you both resolve this yourselves. Please communicate directly."
    ),
}


def short_ref(entity_id: uuid.UUID) -> str:
    return entity_id.hex[:8].upper()


class DisputeResolver:

    def __init__(self, bookings: BookingLifecycleManager, notifier: Notifier):
        self.bookings = bookings
        self.notifier = notifier

    # ── Create ───────────────────────────────────────────────

    async def create_dispute(
        self,
        db: AsyncSession,
        client: User,
        booking_id: uuid.UUID,
        category: str,
        statement: str,
        evidence: Optional[list] = None,
    ) -> Dispute:
        booking = await get_or_404(db, Booking, booking_id, "Booking")
        if booking.client_id != client.id:
            raise Unauthorized("Only the client on this booking can raise a dispute")

        existing = await db.scalar(select(Dispute.id).where(Dispute.booking_id == booking.id))
        if existing is not None:
            raise Conflict("Dispute already exists for this booking")
        if category not in DISPUTE_CATEGORIES:
            raise ValidationError(f"Unknown dispute category: {category}")
        if not statement or not statement.strip():
            raise ValidationError("Please describe the issue")
        if booking.worker_id is None:
            raise InvalidStateError("Booking has no assigned worker to dispute with")

        await self.bookings.raise_dispute(db, booking, client.id)
        dispute = Dispute(
            booking_id=booking.id,
            client_id=booking.client_id,
            worker_id=booking.worker_id,
            category=category,
            client_statement=statement.strip(),
            evidence=evidence or None,
            amount=booking.budget_amount,
            status=DisputeStatus.PENDING,
        )
        db.add(dispute)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            raise Conflict("Dispute already exists for this booking")
        await db.commit()
        logger.info(f"Dispute {dispute.id} raised on booking {booking.id} ({category})")

        worker = await db.get(User, booking.worker_id)
        await self.notifier.send(
            db,
            worker,
            "dispute_raised",
            idempotency_key=f"dispute_worker_{dispute.id}",
            action_url=f"/worker/disputes/{dispute.id}",
            booking_id=booking.id,
            booking_ref=short_ref(booking.id),
        )
        await self.notifier.send_to_admins(
            db,
            "dispute_new_admin",
            key_prefix=f"dispute_admin_{dispute.id}",
            action_url=f"/admin/disputes/{dispute.id}",
            booking_id=booking.id,
            booking_ref=short_ref(booking.id),
        )
        return dispute

    # ── Worker response ──────────────────────────────────────

    async def add_worker_response(
        self, db: AsyncSession, dispute_id: uuid.UUID, worker: User, response: str
    ) -> Dispute:
        dispute = await get_or_404(db, Dispute, dispute_id, "Dispute")
        if dispute.worker_id != worker.id:
            raise Unauthorized("Unauthorized")
        if dispute.worker_response:
            raise Conflict("Worker response already submitted")
        if dispute.status == DisputeStatus.RESOLVED:
            raise InvalidStateError("Dispute is already resolved")
        if not response or not response.strip():
            raise ValidationError("Response cannot be empty")

        # An admin may already be reviewing; the response does not pull it back
        target = (
            DisputeStatus.WORKER_RESPONDED
            if dispute.status == DisputeStatus.PENDING
            else DisputeStatus(dispute.status)
        )
        updated = await compare_and_set(
            db,
            Dispute,
            dispute.id,
            expected=[DisputeStatus(dispute.status)],
            null_columns=("worker_response",),
            status=target,
            worker_response=response.strip(),
        )
        if not updated:
            raise Conflict("Worker response already submitted")
        await db.commit()

        await self.notifier.send_to_admins(
            db,
            "dispute_worker_responded",
            key_prefix=f"dispute_worker_response_{dispute.id}",
            action_url=f"/admin/disputes/{dispute.id}",
            booking_id=dispute.booking_id,
            dispute_ref=short_ref(dispute.id),
            booking_ref=short_ref(dispute.booking_id),
        )
        return dispute

    # ── Reads ────────────────────────────────────────────────

    async def open_for_review(self, db: AsyncSession, dispute: Dispute) -> Dispute:
        if dispute.status in (DisputeStatus.PENDING, DisputeStatus.WORKER_RESPONDED):
            moved = await compare_and_set(
                db,
                Dispute,
                dispute.id,
                expected=[DisputeStatus.PENDING, DisputeStatus.WORKER_RESPONDED],
                status=DisputeStatus.UNDER_REVIEW,
            )
            await db.commit()
            if not moved:
                await db.refresh(dispute)
        return dispute

    async def get_dispute(self, db: AsyncSession, dispute_id: uuid.UUID, user: User) -> Dispute:
        """Parties can read their dispute; an admin reading it takes it under review."""
        dispute = await get_or_404(db, Dispute, dispute_id, "Dispute")
        if user.role == UserRole.ADMIN:
            return await self.open_for_review(db, dispute)
        if user.id not in (dispute.client_id, dispute.worker_id):
            raise Unauthorized("You are not a party to this dispute")
        return dispute

    async def list_disputes(
        self,
        db: AsyncSession,
        status: Optional[DisputeStatus] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[Dispute], int]:
        query = select(Dispute)
        if status is not None:
            query = query.where(Dispute.status == status)
        total = await db.scalar(select(func.count()).select_from(query.subquery()))
        query = query.order_by(Dispute.created_at.desc()).offset((page - 1) * per_page).limit(per_page)
        return list((await db.scalars(query)).all()), total or 0

    # ── Resolve ──────────────────────────────────────────────

    async def resolve(
        self,
        db: AsyncSession,
        dispute_id: uuid.UUID,
        resolution: DisputeResolution,
        admin: User,
        admin_notes: Optional[str] = None,
    ) -> Dispute:
        resolution = DisputeResolution(resolution)
        dispute = await get_or_404(db, Dispute, dispute_id, "Dispute")
        booking = await get_or_404(db, Booking, dispute.booking_id, "Booking")
        superseded = False

        if dispute.status == DisputeStatus.RESOLVED:
            previous = DisputeResolution(dispute.resolution)
            if previous == resolution:
                if booking.status in TERMINAL or resolution == DisputeResolution.RESOLVE_THEMSELVES:
                    raise Conflict("Dispute is already resolved")
                logger.warning(f"Retrying {resolution.value} money step for dispute {dispute.id}")
            elif previous == DisputeResolution.RESOLVE_THEMSELVES and booking.status == BookingStatus.DISPUTED:
                # The parties could not settle it after all
                updated = await compare_and_set(
                    db,
                    Dispute,
                    dispute.id,
                    column="resolution",
                    expected=[previous],
                    resolution=resolution,
                    resolved_by_id=admin.id,
                    resolved_at=utcnow(),
                    admin_notes=admin_notes or dispute.admin_notes,
                )
                if not updated:
                    raise Conflict("Dispute was changed by another request")
                superseded = True
            else:
                raise Conflict(f"Dispute is already resolved as {previous.value}")
        else:
            updated = await compare_and_set(
                db,
                Dispute,
                dispute.id,
                expected=OPEN_STATUSES,
                status=DisputeStatus.RESOLVED,
                resolution=resolution,
                resolved_by_id=admin.id,
                resolved_at=utcnow(),
                admin_notes=admin_notes,
            )
            if not updated:
                raise Conflict("Dispute was resolved by another request")

        if resolution == DisputeResolution.APPROVE_WORKER:
            await self.bookings.complete_for_dispute(db, booking, admin.id)
        elif resolution == DisputeResolution.REFUND_CLIENT:
            await self.bookings.cancel_for_dispute(db, booking, admin.id)
        else:
            await db.commit()
        logger.info(f"Dispute {dispute.id} resolved: {resolution.value} by admin {admin.id}")

        suffix = f"_{resolution.value}" if superseded else ""
        client = await db.get(User, dispute.client_id)
        worker = await db.get(User, dispute.worker_id)
        for user, role, url in ((client, "client", "/client/bookings"), (worker, "worker", "/worker/bookings")):
            await self.notifier.send(
                db,
                user,
                "dispute_resolved",
                idempotency_key=f"dispute_resolved_{role}_{dispute.id}{suffix}",
                action_url=url,
                booking_id=dispute.booking_id,
                resolution_message=RESOLUTION_MESSAGES[resolution],
                booking_ref=short_ref(dispute.booking_id),
            )
        return dispute
