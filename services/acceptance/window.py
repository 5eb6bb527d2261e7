"""
services/acceptance/window.py
Acceptance window tracker.

After a client selects an applicant, the worker has ACCEPTANCE_WINDOW_MS to
accept or decline. Expiry is never scheduled: it is computed from
selected_at and the current time whenever someone reads or responds.

    selected → accepted | declined | unpicked
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.booking.lifecycle import RESPONSE_COLUMNS, BookingLifecycleManager
from services.escrow.ledger import format_naira, validate_booking_amount
from services.notification.dispatcher import Notifier
from shared.exceptions import (
    AlreadyResponded,
    Conflict,
    InvalidStateError,
    NotFound,
    PaymentError,
    Unauthorized,
    WindowExpired,
)
from shared.models.models import (
    ApplicationStatus,
    Booking,
    BookingStatus,
    Job,
    JobApplication,
    JobStatus,
    User,
)
from shared.middleware.auth import is_party
from shared.utils.store import compare_and_set, ensure_aware, get_or_404, utcnow

logger = logging.getLogger(__name__)


# ── Window arithmetic ─────────────────────────────────────────

def _elapsed_ms(selected_at: datetime, now: datetime) -> int:
    return int((ensure_aware(now) - ensure_aware(selected_at)).total_seconds() * 1000)


def can_respond(selected_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if selected_at is None:
        return False
    return _elapsed_ms(selected_at, now or utcnow()) < settings.ACCEPTANCE_WINDOW_MS


def time_remaining_ms(selected_at: Optional[datetime], now: Optional[datetime] = None) -> int:
    if selected_at is None:
        return 0
    return max(0, settings.ACCEPTANCE_WINDOW_MS - _elapsed_ms(selected_at, now or utcnow()))


def format_time_remaining(remaining_ms: int) -> str:
    """HH:MM:SS"""
    total_seconds = max(0, remaining_ms) // 1000
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def has_responded(application: JobApplication) -> bool:
    return any(getattr(application, column) is not None for column in RESPONSE_COLUMNS)


# ── Tracker ───────────────────────────────────────────────────

class AcceptanceWindowTracker:

    def __init__(self, bookings: BookingLifecycleManager, notifier: Notifier):
        self.bookings = bookings
        self.notifier = notifier

    async def _selection_booking(self, db: AsyncSession, application_id: uuid.UUID) -> Optional[Booking]:
        return await db.scalar(
            select(Booking)
            .where(Booking.job_application_id == application_id)
            .order_by(Booking.created_at.desc())
            .limit(1)
        )

    def _check_can_respond(self, application: JobApplication, now: datetime) -> None:
        if has_responded(application):
            raise AlreadyResponded("You have already responded to this job")
        if application.status != ApplicationStatus.SELECTED or application.selected_at is None:
            raise InvalidStateError("This application has not been selected")
        if not can_respond(application.selected_at, now):
            raise WindowExpired("The 1-hour acceptance window has expired")

    # ── Selection ────────────────────────────────────────────

    async def select_worker(
        self,
        db: AsyncSession,
        job_id: uuid.UUID,
        application_id: uuid.UUID,
        client: User,
        now: Optional[datetime] = None,
    ) -> Tuple[Booking, JobApplication]:
        """
        Client picks an applicant. Creates the booking, holds escrow for the job
        budget and starts the worker's acceptance window, all in one commit.
        """
        now = now or utcnow()
        job = await get_or_404(db, Job, job_id, "Job")
        if job.client_id != client.id:
            raise Unauthorized("You can only select workers for your own jobs")
        if job.status != JobStatus.OPEN:
            raise InvalidStateError("Job is not open for selection")

        application = await get_or_404(db, JobApplication, application_id, "Application")
        if application.job_id != job.id:
            raise NotFound("Application not found for this job")
        if application.status != ApplicationStatus.PENDING:
            raise Conflict(f"Application is already {ApplicationStatus(application.status).value}")
        validate_booking_amount(job.budget_amount)

        booking = await self.bookings.open_selection_booking(db, client, job, application, now)
        selected = await compare_and_set(
            db,
            JobApplication,
            application.id,
            expected=[ApplicationStatus.PENDING],
            status=ApplicationStatus.SELECTED,
            selected_at=now,
        )
        assigned = await compare_and_set(
            db,
            Job,
            job.id,
            expected=[JobStatus.OPEN],
            status=JobStatus.ASSIGNED,
            assigned_worker_id=application.worker_id,
            assigned_at=now,
            booking_id=booking.id,
        )
        if not (selected and assigned):
            await db.rollback()
            raise Conflict("Job or application changed while selecting; reload and retry")

        await self.bookings.hold_escrow(db, booking, client)
        logger.info(f"Worker {application.worker_id} selected for job {job.id} (booking {booking.id})")

        worker = await db.get(User, application.worker_id)
        await self.notifier.send(
            db,
            worker,
            "worker_selected",
            idempotency_key=f"worker_selected_{application.id}_{application.worker_id}",
            action_url="/worker/jobs",
            booking_id=booking.id,
            job_title=job.title,
            amount=format_naira(job.budget_amount),
        )
        return booking, application

    # ── Reads ────────────────────────────────────────────────

    async def get_status(
        self, db: AsyncSession, application_id: uuid.UUID, user: User, now: Optional[datetime] = None
    ) -> dict:
        now = now or utcnow()
        application = await get_or_404(db, JobApplication, application_id, "Application")
        if not is_party(user, application.worker_id, application.client_id):
            raise Unauthorized("You are not a party to this application")

        open_ = (
            application.status == ApplicationStatus.SELECTED
            and not has_responded(application)
            and can_respond(application.selected_at, now)
        )
        remaining = time_remaining_ms(application.selected_at, now) if open_ else 0
        return {
            "application_id": application.id,
            "status": ApplicationStatus(application.status).value,
            "selected_at": application.selected_at,
            "can_respond": open_,
            "time_remaining_ms": remaining,
            "time_remaining": format_time_remaining(remaining),
        }

    # ── Worker responses ─────────────────────────────────────

    async def accept(
        self,
        db: AsyncSession,
        application_id: uuid.UUID,
        worker: User,
        now: Optional[datetime] = None,
    ) -> JobApplication:
        now = now or utcnow()
        application = await get_or_404(db, JobApplication, application_id, "Application")
        if application.worker_id != worker.id:
            raise Unauthorized("This application does not belong to you")
        self._check_can_respond(application, now)

        accepted = await compare_and_set(
            db,
            JobApplication,
            application.id,
            expected=[ApplicationStatus.SELECTED],
            null_columns=RESPONSE_COLUMNS,
            status=ApplicationStatus.ACCEPTED,
            accepted_at=now,
        )
        if not accepted:
            raise AlreadyResponded("You have already responded to this job")

        booking = await self._selection_booking(db, application.id)
        bound = booking is not None and await compare_and_set(
            db,
            Booking,
            booking.id,
            expected=[BookingStatus.ACCEPTED],
            null_columns=("worker_accepted_at",),
            worker_accepted_at=now,
        )
        if not bound:
            await db.rollback()
            raise InvalidStateError("The booking for this job is no longer active")
        await db.commit()
        logger.info(f"Application {application.id} accepted by worker {worker.id}")

        job = await db.get(Job, application.job_id)
        client = await db.get(User, application.client_id)
        await self.notifier.send(
            db,
            client,
            "worker_accepted",
            idempotency_key=f"worker_accepted_{application.id}_{application.client_id}",
            action_url="/client/jobs",
            booking_id=booking.id,
            worker_name=worker.name,
            job_title=job.title if job else "your job",
        )
        return application

    async def decline(
        self,
        db: AsyncSession,
        application_id: uuid.UUID,
        worker: User,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[JobApplication, bool]:
        """
        Decline the selection. The job goes back on the board and the selection
        booking is cancelled with a refund. Returns (application, refunded); a
        failed refund does not undo the decline.
        """
        now = now or utcnow()
        application = await get_or_404(db, JobApplication, application_id, "Application")
        if application.worker_id != worker.id:
            raise Unauthorized("This application does not belong to you")
        booking = await self._selection_booking(db, application.id)
        _ensure_not_disputed(booking)
        self._check_can_respond(application, now)

        booking_id = booking.id if booking else None
        refunded = await self._close_selection(
            db,
            application,
            booking,
            {"status": ApplicationStatus.DECLINED, "declined_at": now, "decline_reason": reason},
            already_responded="You have already responded to this job",
            actor_id=worker.id,
            cancelled_by="worker",
            reason=reason or "Worker declined the job",
            reload=(worker,),
        )
        logger.info(f"Application {application.id} declined by worker {worker.id}")

        job = await db.get(Job, application.job_id)
        client = await db.get(User, application.client_id)
        await self.notifier.send(
            db,
            client,
            "worker_declined",
            idempotency_key=f"worker_declined_{application.id}_{application.client_id}",
            action_url="/client/jobs",
            booking_id=booking_id,
            worker_name=worker.name,
            job_title=job.title if job else "your job",
        )
        return application, refunded

    # ── Client unpick ────────────────────────────────────────

    async def unpick(
        self,
        db: AsyncSession,
        job_id: uuid.UUID,
        client: User,
        now: Optional[datetime] = None,
    ) -> Tuple[JobApplication, bool]:
        """Withdraw a selection the worker has not answered yet. Returns (application, refunded)."""
        now = now or utcnow()
        job = await get_or_404(db, Job, job_id, "Job")
        if job.client_id != client.id:
            raise Unauthorized("You can only unpick workers from your own jobs")
        if job.status != JobStatus.ASSIGNED or job.booking_id is None:
            raise InvalidStateError("No worker is currently selected for this job")

        booking = await get_or_404(db, Booking, job.booking_id, "Booking")
        _ensure_not_disputed(booking)
        application = await get_or_404(db, JobApplication, booking.job_application_id, "Application")
        if has_responded(application):
            raise AlreadyResponded("The worker has already responded to this selection")
        if not can_respond(application.selected_at, now):
            raise WindowExpired("The acceptance window has closed; the selection can no longer be unpicked")

        booking_id = booking.id
        refunded = await self._close_selection(
            db,
            application,
            booking,
            {"status": ApplicationStatus.UNPICKED, "unpicked_at": now},
            already_responded="The worker has already responded to this selection",
            actor_id=client.id,
            cancelled_by="client",
            reason="Client unpicked the worker",
            reload=(client,),
        )
        logger.info(f"Client {client.id} unpicked worker {application.worker_id} from job {job.id}")

        worker = await db.get(User, application.worker_id)
        await self.notifier.send(
            db,
            worker,
            "worker_unpicked",
            idempotency_key=f"worker_unpicked_{job.id}_{application.worker_id}",
            action_url="/worker/jobs",
            booking_id=booking_id,
            job_title=job.title,
        )
        await self.notifier.send(
            db,
            client,
            "client_unpicked_worker",
            idempotency_key=f"client_unpicked_worker_{job.id}_{client.id}",
            action_url="/client/jobs",
            booking_id=booking_id,
            worker_name=worker.name if worker else "the worker",
            job_title=job.title,
        )
        return application, refunded

    async def _close_selection(
        self,
        db: AsyncSession,
        application: JobApplication,
        booking: Optional[Booking],
        response: dict,
        *,
        already_responded: str,
        actor_id: uuid.UUID,
        cancelled_by: str,
        reason: str,
        reload: tuple = (),
    ) -> bool:
        """
        Record the response, reopen the job and cancel the selection booking
        with a refund, all in one commit. If only the refund fails, the response
        and the reopened job are committed on their own and the booking stays
        accepted with escrow held until the client cancels it.
        Returns whether the client was refunded.
        """
        application_id, job_id = application.id, application.job_id
        booking_id = booking.id if booking else None

        await self._record_response(db, application_id, job_id, booking_id, response, already_responded)
        if booking is None:
            await db.commit()
            return True
        try:
            await self.bookings.cancel_selection_booking(
                db, booking, actor_id=actor_id, cancelled_by=cancelled_by, reason=reason
            )
            return True
        except PaymentError as e:
            # Client can retry through POST /bookings/{id}/cancel
            logger.error(f"Selection booking {booking_id} not refunded: {e.message}")

        await self._record_response(db, application_id, job_id, booking_id, response, already_responded)
        await db.commit()
        # The rollback expired everything loaded in this session
        for instance in reload:
            await db.refresh(instance)
        return False

    async def _record_response(
        self,
        db: AsyncSession,
        application_id: uuid.UUID,
        job_id: uuid.UUID,
        booking_id: Optional[uuid.UUID],
        response: dict,
        already_responded: str,
    ) -> None:
        recorded = await compare_and_set(
            db,
            JobApplication,
            application_id,
            expected=[ApplicationStatus.SELECTED],
            null_columns=RESPONSE_COLUMNS,
            **response,
        )
        if not recorded:
            await db.rollback()
            raise AlreadyResponded(already_responded)
        if booking_id is None:
            return
        # Pins the booking at accepted, neither bound nor disputed, until this commit
        pinned = await compare_and_set(
            db,
            Booking,
            booking_id,
            expected=[BookingStatus.ACCEPTED],
            null_columns=("worker_accepted_at",),
            updated_at=utcnow(),
        )
        if not pinned:
            await db.rollback()
            raise InvalidStateError("The booking for this job is no longer awaiting the worker")
        await self.bookings.reopen_job(db, job_id, booking_id)

    # ── Withdrawal ───────────────────────────────────────────

    async def withdraw(
        self,
        db: AsyncSession,
        application_id: uuid.UUID,
        worker: User,
        now: Optional[datetime] = None,
    ) -> JobApplication:
        """Worker takes back an application the client has not acted on."""
        now = now or utcnow()
        application = await get_or_404(db, JobApplication, application_id, "Application")
        if application.worker_id != worker.id:
            raise Unauthorized("You can only withdraw your own applications")
        status = ApplicationStatus(application.status)
        if status != ApplicationStatus.PENDING:
            raise InvalidStateError(f"Cannot withdraw a {status.value} application")

        withdrawn = await compare_and_set(
            db,
            JobApplication,
            application.id,
            expected=[ApplicationStatus.PENDING],
            status=ApplicationStatus.WITHDRAWN,
            withdrawn_at=now,
        )
        if not withdrawn:
            raise Conflict("Application changed while withdrawing; reload and retry")
        await db.commit()
        logger.info(f"Application {application.id} withdrawn by worker {worker.id}")
        return application


def _ensure_not_disputed(booking: Optional[Booking]) -> None:
    if booking is not None and booking.status == BookingStatus.DISPUTED:
        raise InvalidStateError("This booking is under dispute and can only be closed by resolving it")
