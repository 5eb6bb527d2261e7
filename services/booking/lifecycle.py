"""
services/booking/lifecycle.py
Booking lifecycle manager: the entry point for every booking state change.

States: pending → accepted → in_progress → worker_completed → completed
        with side branches → cancelled and → disputed → (worker_completed | cancelled)

Money-moving transitions write the booking change first without committing,
then call the escrow ledger, which commits both on gateway success. A gateway
failure rolls the booking change back with it, so booking and escrow never
disagree and the operation can simply be retried.
"""

import logging
import math
import uuid
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.escrow.ledger import EscrowLedger, format_naira, validate_booking_amount
from services.notification.dispatcher import Notifier
from shared.exceptions import (
    Conflict,
    InvalidStateError,
    PaymentError,
    TransferError,
    Unauthorized,
    ValidationError,
)
from shared.models.models import (
    ApplicationStatus,
    Booking,
    BookingAuditLog,
    BookingStatus,
    EscrowPayment,
    Job,
    JobApplication,
    JobStatus,
    User,
    UserRole,
)
from shared.middleware.auth import is_party
from shared.utils.store import compare_and_set, ensure_aware, get_or_404, utcnow

logger = logging.getLogger(__name__)


BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.ACCEPTED, BookingStatus.CANCELLED, BookingStatus.DISPUTED},
    BookingStatus.ACCEPTED: {BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED, BookingStatus.DISPUTED},
    BookingStatus.IN_PROGRESS: {BookingStatus.WORKER_COMPLETED, BookingStatus.DISPUTED},
    BookingStatus.WORKER_COMPLETED: {BookingStatus.COMPLETED, BookingStatus.DISPUTED},
    BookingStatus.DISPUTED: {BookingStatus.WORKER_COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

TERMINAL = {BookingStatus.COMPLETED, BookingStatus.CANCELLED}

RESPONSE_COLUMNS = ("accepted_at", "declined_at", "unpicked_at")


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return BookingStatus(target) in BOOKING_TRANSITIONS[BookingStatus(current)]


def booking_key(event: str, booking_id: uuid.UUID, user_id: uuid.UUID) -> str:
    return f"booking_{event}_{booking_id}_{user_id}"


def worker_cancel_window(assigned_at: Optional[datetime], now: datetime) -> Tuple[bool, int, int]:
    """(allowed, whole hours since assignment, hours left to wait rounded up)"""
    minimum = settings.WORKER_CANCEL_MIN_HOURS
    if assigned_at is None:
        return False, 0, minimum
    elapsed = (ensure_aware(now) - ensure_aware(assigned_at)).total_seconds() / 3600
    if elapsed >= minimum:
        return True, int(elapsed), 0
    return False, int(max(0, elapsed)), math.ceil(minimum - elapsed)


class BookingLifecycleManager:
    """Stateless; constructed once at startup and shared through the registry."""

    def __init__(self, escrow: EscrowLedger, notifier: Notifier):
        self.escrow = escrow
        self.notifier = notifier

    # ── Internals ────────────────────────────────────────────

    async def _transition(
        self,
        db: AsyncSession,
        booking: Booking,
        target: BookingStatus,
        *,
        actor_id: Optional[uuid.UUID],
        reason: Optional[str] = None,
        null_columns: Iterable[str] = (),
        **values,
    ) -> None:
        """
        Move a booking to `target` if the table allows it from the status we
        read. Writes the audit row; the caller commits.
        """
        current = BookingStatus(booking.status)
        if not can_transition(current, target):
            raise InvalidStateError(
                f"Cannot move booking from {current.value} to {target.value}"
            )
        updated = await compare_and_set(
            db,
            Booking,
            booking.id,
            expected=[current],
            null_columns=null_columns,
            status=target,
            **values,
        )
        if not updated:
            raise InvalidStateError("Booking was modified by another request; reload and retry")

        db.add(
            BookingAuditLog(
                booking_id=booking.id,
                from_status=current.value,
                to_status=target.value,
                changed_by_id=actor_id,
                reason=reason,
            )
        )
        logger.info(f"Booking {booking.id}: {current.value} → {target.value}")

    async def _money_step(self, db: AsyncSession, step):
        """Run a ledger call; undo the uncommitted booking change if it fails."""
        try:
            result = await step()
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        return result

    async def find_escrow(self, db: AsyncSession, booking_id: uuid.UUID) -> Optional[EscrowPayment]:
        return await db.scalar(select(EscrowPayment).where(EscrowPayment.booking_id == booking_id))

    async def _refund_if_held(self, db: AsyncSession, booking_id: uuid.UUID, reason: str):
        escrow = await self.find_escrow(db, booking_id)
        if escrow is None:
            return None
        escrow, _ = await self.escrow.refund(db, booking_id, reason)
        return escrow

    async def _users(self, db: AsyncSession, booking: Booking) -> Tuple[Optional[User], Optional[User]]:
        client = await db.get(User, booking.client_id)
        worker = await db.get(User, booking.worker_id) if booking.worker_id else None
        return client, worker

    async def reopen_job(
        self, db: AsyncSession, job_id: Optional[uuid.UUID], booking_id: uuid.UUID, **values
    ) -> bool:
        """Put an assigned job back on the board, only if it is still assigned through this booking."""
        if job_id is None:
            return False
        result = await db.execute(
            update(Job)
            .where(
                Job.id == job_id,
                Job.booking_id == booking_id,
                Job.status == JobStatus.ASSIGNED,
            )
            .values(
                status=JobStatus.OPEN,
                assigned_worker_id=None,
                assigned_at=None,
                booking_id=None,
                **values,
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        if result.scalar_one_or_none() is None:
            return False
        await db.get(Job, job_id, populate_existing=True)
        logger.info(f"Job {job_id} reopened")
        return True

    # ── Reads ────────────────────────────────────────────────

    async def get_booking(self, db: AsyncSession, booking_id: uuid.UUID, user: User) -> Booking:
        booking = await get_or_404(db, Booking, booking_id, "Booking")
        if not is_party(user, booking.client_id, booking.worker_id):
            raise Unauthorized("You are not a party to this booking")
        return booking

    async def list_bookings(
        self,
        db: AsyncSession,
        user: User,
        status: Optional[BookingStatus] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[Booking], int]:
        query = select(Booking)
        if user.role == UserRole.CLIENT:
            query = query.where(Booking.client_id == user.id)
        elif user.role == UserRole.WORKER:
            query = query.where(Booking.worker_id == user.id)
        if status is not None:
            query = query.where(Booking.status == status)

        total = await db.scalar(select(func.count()).select_from(query.subquery()))
        query = query.order_by(Booking.created_at.desc()).offset((page - 1) * per_page).limit(per_page)
        return list((await db.scalars(query)).all()), total or 0

    # ── Creation ─────────────────────────────────────────────

    async def create_booking(
        self,
        db: AsyncSession,
        client: User,
        worker_id: uuid.UUID,
        amount: int,
        title: str,
        scheduled_date: Optional[datetime] = None,
    ) -> Tuple[Booking, EscrowPayment]:
        """
        Direct booking of a worker. The booking starts pending and the client's
        payment is charged and held before anything is committed.
        """
        validate_booking_amount(amount)
        worker = await get_or_404(db, User, worker_id, "Worker")
        if worker.role != UserRole.WORKER or not worker.is_active:
            raise ValidationError("Selected user is not an active worker")
        if worker.id == client.id:
            raise ValidationError("You cannot book yourself")

        booking = Booking(
            client_id=client.id,
            worker_id=worker.id,
            title=title,
            budget_amount=amount,
            scheduled_date=scheduled_date,
            status=BookingStatus.PENDING,
        )
        db.add(booking)
        await db.flush()
        db.add(
            BookingAuditLog(
                booking_id=booking.id,
                from_status=None,
                to_status=BookingStatus.PENDING.value,
                changed_by_id=client.id,
                reason="Booking created",
            )
        )
        escrow = await self._money_step(db, lambda: self.escrow.hold(db, booking, client))

        await self.notifier.send(
            db,
            worker,
            "booking_created",
            idempotency_key=booking_key("created", booking.id, worker.id),
            action_url="/worker/bookings",
            booking_id=booking.id,
            client_name=client.name,
            title=booking.title,
            amount=format_naira(amount),
        )
        return booking, escrow

    async def open_selection_booking(
        self,
        db: AsyncSession,
        client: User,
        job: Job,
        application: JobApplication,
        now: datetime,
    ) -> Booking:
        """
        Booking created when a client selects an applicant. It starts accepted on
        the client side; the worker's acceptance is recorded separately.
        Flushed, not committed; the caller holds escrow and commits.
        """
        booking = Booking(
            client_id=client.id,
            worker_id=application.worker_id,
            job_id=job.id,
            job_application_id=application.id,
            title=job.title,
            budget_amount=job.budget_amount,
            status=BookingStatus.ACCEPTED,
            accepted_at=now,
        )
        db.add(booking)
        await db.flush()
        db.add(
            BookingAuditLog(
                booking_id=booking.id,
                from_status=None,
                to_status=BookingStatus.ACCEPTED.value,
                changed_by_id=client.id,
                reason="Worker selected for job",
                audit_metadata={"job_id": str(job.id), "application_id": str(application.id)},
            )
        )
        return booking

    async def hold_escrow(self, db: AsyncSession, booking: Booking, client: User) -> EscrowPayment:
        return await self._money_step(db, lambda: self.escrow.hold(db, booking, client))

    # ── Worker actions ───────────────────────────────────────

    async def _worker_booking(self, db: AsyncSession, booking_id: uuid.UUID, worker: User) -> Booking:
        booking = await get_or_404(db, Booking, booking_id, "Booking")
        if booking.worker_id != worker.id:
            raise Unauthorized("This booking is not assigned to you")
        return booking

    async def accept_booking(self, db: AsyncSession, booking_id: uuid.UUID, worker: User) -> Booking:
        booking = await self._worker_booking(db, booking_id, worker)
        if booking.status != BookingStatus.PENDING:
            raise InvalidStateError(f"Cannot accept a {BookingStatus(booking.status).value} booking")

        now = utcnow()
        await self._transition(
            db,
            booking,
            BookingStatus.ACCEPTED,
            actor_id=worker.id,
            reason="Worker accepted booking",
            accepted_at=now,
            worker_accepted_at=now,
        )
        await db.commit()

        client = await db.get(User, booking.client_id)
        await self.notifier.send(
            db,
            client,
            "booking_accepted",
            idempotency_key=booking_key("accepted", booking.id, booking.client_id),
            action_url="/client/bookings",
            booking_id=booking.id,
            worker_name=worker.name,
            title=booking.title,
        )
        return booking

    async def reject_booking(
        self, db: AsyncSession, booking_id: uuid.UUID, worker: User, reason: Optional[str] = None
    ) -> Booking:
        booking = await self._worker_booking(db, booking_id, worker)
        if booking.status != BookingStatus.PENDING:
            raise InvalidStateError(f"Cannot reject a {BookingStatus(booking.status).value} booking")

        reason = reason or "Worker rejected the booking"
        booking = await self._cancel(db, booking, actor_id=worker.id, cancelled_by="worker", reason=reason)

        client = await db.get(User, booking.client_id)
        await self.notifier.send(
            db,
            client,
            "booking_rejected",
            idempotency_key=booking_key("rejected", booking.id, booking.client_id),
            action_url="/client/bookings",
            booking_id=booking.id,
            email=True,
            worker_name=worker.name,
            title=booking.title,
            amount=format_naira(booking.budget_amount),
        )
        return booking

    async def start_work(self, db: AsyncSession, booking_id: uuid.UUID, worker: User) -> Booking:
        booking = await self._worker_booking(db, booking_id, worker)
        if booking.status != BookingStatus.ACCEPTED:
            raise InvalidStateError(f"Cannot start work on a {BookingStatus(booking.status).value} booking")
        if booking.worker_accepted_at is None:
            raise InvalidStateError("Accept the job before starting work")

        await self._transition(
            db,
            booking,
            BookingStatus.IN_PROGRESS,
            actor_id=worker.id,
            reason="Worker started work",
            started_at=utcnow(),
        )
        await db.commit()

        client = await db.get(User, booking.client_id)
        await self.notifier.send(
            db,
            client,
            "work_started",
            idempotency_key=booking_key("started", booking.id, booking.client_id),
            action_url="/client/bookings",
            booking_id=booking.id,
            worker_name=worker.name,
            title=booking.title,
        )
        return booking

    async def mark_worker_completed(self, db: AsyncSession, booking_id: uuid.UUID, worker: User) -> Booking:
        booking = await self._worker_booking(db, booking_id, worker)
        if booking.status != BookingStatus.IN_PROGRESS:
            raise InvalidStateError(
                f"Only in-progress bookings can be marked complete (booking is {BookingStatus(booking.status).value})"
            )

        await self._transition(
            db,
            booking,
            BookingStatus.WORKER_COMPLETED,
            actor_id=worker.id,
            reason="Worker marked work complete",
            worker_completed_at=utcnow(),
        )
        await db.commit()

        client = await db.get(User, booking.client_id)
        await self.notifier.send(
            db,
            client,
            "work_completed",
            idempotency_key=booking_key("worker_completed", booking.id, booking.client_id),
            action_url="/client/bookings",
            booking_id=booking.id,
            worker_name=worker.name,
            title=booking.title,
        )
        return booking

    # ── Completion ───────────────────────────────────────────

    async def confirm_completion(
        self, db: AsyncSession, booking_id: uuid.UUID, client: User
    ) -> Tuple[Booking, EscrowPayment]:
        booking = await get_or_404(db, Booking, booking_id, "Booking")
        if booking.client_id != client.id:
            raise Unauthorized("Only the client who made this booking can confirm it")
        if booking.status != BookingStatus.WORKER_COMPLETED:
            raise InvalidStateError(
                f"Booking must be awaiting confirmation (booking is {BookingStatus(booking.status).value})"
            )
        return await self._complete(db, booking, actor_id=client.id, reason="Client confirmed completion")

    async def complete_for_dispute(
        self, db: AsyncSession, booking: Booking, admin_id: uuid.UUID
    ) -> Tuple[Booking, EscrowPayment]:
        """Dispute settled for the worker: back to worker_completed, then the normal completion path."""
        if booking.status == BookingStatus.DISPUTED:
            await self._transition(
                db,
                booking,
                BookingStatus.WORKER_COMPLETED,
                actor_id=admin_id,
                reason="Dispute resolved for worker",
            )
        return await self._complete(db, booking, actor_id=admin_id, reason="Dispute resolved for worker")

    async def _complete(
        self, db: AsyncSession, booking: Booking, *, actor_id: uuid.UUID, reason: str
    ) -> Tuple[Booking, EscrowPayment]:
        await self._transition(
            db,
            booking,
            BookingStatus.COMPLETED,
            actor_id=actor_id,
            reason=reason,
            completed_at=utcnow(),
        )
        if booking.job_id:
            await compare_and_set(
                db, Job, booking.job_id, expected=[JobStatus.ASSIGNED], status=JobStatus.COMPLETED
            )

        booking_id = booking.id
        try:
            escrow, released_now = await self._money_step(
                db, lambda: self.escrow.release(db, booking_id, reason=f"Payment for {booking.title}")
            )
        except TransferError:
            logger.error(f"Booking {booking_id} completion rolled back: payout transfer failed")
            raise

        _, worker = await self._users(db, booking)
        await self.notifier.send(
            db,
            worker,
            "payment_released",
            idempotency_key=booking_key("payment_released", booking.id, booking.worker_id),
            action_url="/worker/wallet",
            booking_id=booking.id,
            email=True,
            title=booking.title,
            earnings=format_naira(escrow.worker_earnings),
            reference=escrow.transfer_reference or "",
        )
        return booking, escrow

    # ── Cancellation ─────────────────────────────────────────

    async def cancel_booking(
        self, db: AsyncSession, booking_id: uuid.UUID, client: User, reason: Optional[str] = None
    ) -> Booking:
        """
        Client cancellation. Allowed while pending, or while accepted on the
        client side only (a selected worker who has not yet accepted). Once the
        worker's acceptance is binding the booking can only end through
        completion or a dispute.
        """
        booking = await get_or_404(db, Booking, booking_id, "Booking")
        if booking.client_id != client.id:
            raise Unauthorized("Only the client who made this booking can cancel it")

        status = BookingStatus(booking.status)
        if status in TERMINAL:
            raise InvalidStateError(f"Booking is already {status.value}")
        if status == BookingStatus.IN_PROGRESS or (
            status == BookingStatus.ACCEPTED and booking.worker_accepted_at is not None
        ):
            raise InvalidStateError("Cannot cancel an accepted/in-progress booking")
        if status == BookingStatus.DISPUTED:
            raise InvalidStateError("This booking is under dispute and can only be closed by resolving it")
        if status != BookingStatus.PENDING and status != BookingStatus.ACCEPTED:
            raise InvalidStateError(f"Cannot cancel a {status.value} booking; raise a dispute instead")

        reason = reason or "Cancelled by client"
        if status == BookingStatus.ACCEPTED and booking.job_application_id:
            await self._release_selection(db, booking, now=utcnow())

        booking = await self._cancel(db, booking, actor_id=client.id, cancelled_by="client", reason=reason)

        _, worker = await self._users(db, booking)
        await self.notifier.send(
            db,
            worker,
            "booking_cancelled",
            idempotency_key=booking_key("cancelled", booking.id, booking.worker_id),
            action_url="/worker/bookings",
            booking_id=booking.id,
            title=booking.title,
            reason=reason,
        )
        return booking

    async def _release_selection(self, db: AsyncSession, booking: Booking, now: datetime) -> None:
        """
        Unpick the selected application behind a client-side-only booking and
        reopen its job. Left uncommitted so a failed refund undoes it too.
        """
        booking_id, application_id, job_id = booking.id, booking.job_application_id, booking.job_id
        unpicked = await compare_and_set(
            db,
            JobApplication,
            application_id,
            expected=[ApplicationStatus.SELECTED],
            null_columns=RESPONSE_COLUMNS,
            status=ApplicationStatus.UNPICKED,
            unpicked_at=now,
        )
        if not unpicked:
            application = await db.get(JobApplication, application_id)
            if application is not None and application.status == ApplicationStatus.ACCEPTED:
                await db.rollback()
                raise InvalidStateError("Cannot cancel an accepted/in-progress booking")
        await self.reopen_job(db, job_id, booking_id)

    async def cancel_selection_booking(
        self,
        db: AsyncSession,
        booking: Booking,
        *,
        actor_id: uuid.UUID,
        cancelled_by: str,
        reason: str,
    ) -> Booking:
        """Cancel the booking behind a declined or unpicked selection and refund the client."""
        return await self._cancel(
            db, booking, actor_id=actor_id, cancelled_by=cancelled_by, reason=reason
        )

    async def cancel_for_dispute(self, db: AsyncSession, booking: Booking, admin_id: uuid.UUID) -> Booking:
        """Dispute settled for the client: refund, and put a job-backed booking's job back on the board."""
        await self.reopen_job(db, booking.job_id, booking.id)
        return await self._cancel(
            db,
            booking,
            actor_id=admin_id,
            cancelled_by="admin",
            reason="Dispute resolved in favor of client",
            from_dispute=True,
        )

    async def cancel_as_worker(
        self,
        db: AsyncSession,
        job_id: uuid.UUID,
        worker: User,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Job, Booking]:
        """
        Worker backs out of an assigned job. Only allowed once
        WORKER_CANCEL_MIN_HOURS have passed since assignment and before work
        starts. The job reopens and the client is refunded in one commit.
        """
        now = now or utcnow()
        job = await get_or_404(db, Job, job_id, "Job")
        if job.assigned_worker_id != worker.id:
            raise Unauthorized("You are not assigned to this job")
        if job.status != JobStatus.ASSIGNED or job.booking_id is None:
            raise InvalidStateError(f"This job is already {JobStatus(job.status).value}")

        allowed, hours_elapsed, hours_remaining = worker_cancel_window(job.assigned_at, now)
        if not allowed:
            raise InvalidStateError(
                f"You must wait {hours_remaining} more hours before cancelling",
                details={"hours_elapsed": hours_elapsed, "hours_remaining": hours_remaining},
            )

        booking = await get_or_404(db, Booking, job.booking_id, "Booking")
        status = BookingStatus(booking.status)
        if status == BookingStatus.DISPUTED:
            raise InvalidStateError("This booking is under dispute and can only be closed by resolving it")
        if status != BookingStatus.ACCEPTED:
            raise InvalidStateError(f"Cannot cancel a {status.value} booking")

        reason = reason or f"Worker cancelled after {hours_elapsed} hours"
        reopened = await self.reopen_job(
            db, job.id, booking.id, worker_cancelled_at=now, worker_cancellation_reason=reason
        )
        if not reopened:
            await db.rollback()
            raise Conflict("Job changed while cancelling; reload and retry")
        booking = await self._cancel(
            db,
            booking,
            actor_id=worker.id,
            cancelled_by="worker",
            reason=reason,
            guard_acceptance=False,
        )
        logger.info(f"Worker {worker.id} cancelled job {job.id} after {hours_elapsed}h")

        client = await db.get(User, job.client_id)
        await self.notifier.send(
            db,
            client,
            "worker_cancelled_job",
            idempotency_key=f"worker_cancelled_{job.id}_{job.client_id}",
            action_url=f"/client/jobs/{job.id}",
            booking_id=booking.id,
            email=True,
            worker_name=worker.name,
            job_title=job.title,
            amount=format_naira(booking.budget_amount),
        )
        await self.notifier.send(
            db,
            worker,
            "worker_self_cancelled",
            idempotency_key=f"worker_self_cancelled_{job.id}_{worker.id}",
            action_url="/worker/jobs",
            booking_id=booking.id,
            job_title=job.title,
        )
        return job, booking

    async def _cancel(
        self,
        db: AsyncSession,
        booking: Booking,
        *,
        actor_id: uuid.UUID,
        cancelled_by: str,
        reason: str,
        from_dispute: bool = False,
        guard_acceptance: bool = True,
    ) -> Booking:
        status = BookingStatus(booking.status)
        if status == BookingStatus.DISPUTED and not from_dispute:
            raise InvalidStateError("This booking is under dispute and can only be closed by resolving it")
        # A worker who accepts concurrently must not lose a booking they just bound to
        null_columns = ("worker_accepted_at",) if status == BookingStatus.ACCEPTED and guard_acceptance else ()
        await self._transition(
            db,
            booking,
            BookingStatus.CANCELLED,
            actor_id=actor_id,
            reason=reason,
            null_columns=null_columns,
            cancelled_at=utcnow(),
            cancellation_reason=reason,
            cancelled_by=cancelled_by,
        )
        booking_id = booking.id
        try:
            await self._money_step(db, lambda: self._refund_if_held(db, booking_id, reason))
        except PaymentError:
            logger.error(f"Booking {booking_id} cancellation rolled back: refund failed")
            raise
        return booking

    # ── Disputes ─────────────────────────────────────────────

    async def raise_dispute(self, db: AsyncSession, booking: Booking, actor_id: uuid.UUID) -> None:
        """Freeze the booking for a new dispute. The caller creates the Dispute row and commits."""
        status = BookingStatus(booking.status)
        if status in TERMINAL:
            raise InvalidStateError(f"Cannot dispute a {status.value} booking")
        if status == BookingStatus.DISPUTED:
            raise Conflict("Booking is already under dispute")
        await self._transition(
            db,
            booking,
            BookingStatus.DISPUTED,
            actor_id=actor_id,
            reason="Client raised a dispute",
            disputed_at=utcnow(),
        )

