"""
services/job/router.py
Job board: clients post jobs, workers apply, clients select or unpick, and an
assigned worker may back out once the waiting period has passed.
Selection and unpicking are delegated to the acceptance window tracker.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.escrow.ledger import format_naira, validate_booking_amount
from services.registry import ServiceRegistry, get_services
from shared.exceptions import Conflict, InvalidStateError
from shared.middleware.auth import require_client, require_worker
from shared.models.models import ApplicationStatus, Job, JobApplication, JobStatus, User
from shared.schemas.schemas import (
    ApplicationEnvelope,
    ApplicationResponse,
    ApplyRequest,
    BookingReasonRequest,
    BookingResponse,
    JobCreateRequest,
    JobEnvelope,
    JobResponse,
    SelectWorkerRequest,
)
from shared.utils.store import get_or_404

router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.post("", response_model=JobEnvelope, status_code=status.HTTP_201_CREATED)
async def create_job(
    data: JobCreateRequest,
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    validate_booking_amount(data.budget_amount)
    job = Job(
        client_id=current_user.id,
        title=data.title,
        description=data.description,
        budget_amount=data.budget_amount,
        status=JobStatus.OPEN,
    )
    db.add(job)
    await db.commit()
    return JobEnvelope(
        message=f"Job posted with a budget of {format_naira(job.budget_amount)}",
        job=JobResponse.model_validate(job),
    )


@router.post("/{job_id}/apply", response_model=ApplicationEnvelope, status_code=status.HTTP_201_CREATED)
async def apply_to_job(
    job_id: UUID,
    data: ApplyRequest,
    current_user: User = Depends(require_worker),
    db: AsyncSession = Depends(get_db),
):
    """Apply to an open job. A worker who was unpicked or withdrew may apply again."""
    job = await get_or_404(db, Job, job_id, "Job")
    if job.status != JobStatus.OPEN:
        raise InvalidStateError("Job is not accepting applications")

    application = await db.scalar(
        select(JobApplication).where(
            JobApplication.job_id == job.id,
            JobApplication.worker_id == current_user.id,
        )
    )
    if application is None:
        application = JobApplication(
            job_id=job.id,
            worker_id=current_user.id,
            client_id=job.client_id,
            status=ApplicationStatus.PENDING,
            message=data.message,
        )
        db.add(application)
    elif application.status in (ApplicationStatus.UNPICKED, ApplicationStatus.WITHDRAWN):
        application.status = ApplicationStatus.PENDING
        application.message = data.message
        application.selected_at = None
        application.unpicked_at = None
        application.withdrawn_at = None
    else:
        raise Conflict("You have already applied to this job")

    await db.commit()
    return ApplicationEnvelope(
        message="Application submitted",
        application=ApplicationResponse.model_validate(application),
    )


@router.post("/{job_id}/select", response_model=ApplicationEnvelope)
async def select_worker(
    job_id: UUID,
    data: SelectWorkerRequest,
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    """
    Select an applicant. Escrow is held for the job budget and the worker
    has one hour to accept or decline.
    """
    booking, application = await services.acceptance.select_worker(
        db, job_id, data.application_id, current_user
    )
    return ApplicationEnvelope(
        message="Worker selected. They have 1 hour to accept.",
        application=ApplicationResponse.model_validate(application),
        booking=BookingResponse.model_validate(booking),
    )


@router.post("/{job_id}/unpick", response_model=ApplicationEnvelope)
async def unpick_worker(
    job_id: UUID,
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    application, refunded = await services.acceptance.unpick(db, job_id, current_user)
    message = "Worker unpicked. Your job is open for new applications."
    if not refunded:
        message += " The refund could not be completed yet; cancel the booking to retry it."
    return ApplicationEnvelope(
        message=message,
        application=ApplicationResponse.model_validate(application),
        refund_pending=not refunded,
    )


@router.post("/{job_id}/worker-cancel", response_model=JobEnvelope)
async def worker_cancel_job(
    job_id: UUID,
    data: Optional[BookingReasonRequest] = None,
    current_user: User = Depends(require_worker),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    """
    Assigned worker cancels the job. Not allowed within the first
    WORKER_CANCEL_MIN_HOURS after assignment, nor once work has started.
    The client is refunded and the job reopens for applications.
    """
    job, booking = await services.bookings.cancel_as_worker(
        db, job_id, current_user, reason=data.reason if data else None
    )
    return JobEnvelope(
        message="Job cancelled. The client has been refunded and the job is open for applications.",
        job=JobResponse.model_validate(job),
        booking=BookingResponse.model_validate(booking),
    )
