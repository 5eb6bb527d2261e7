"""
services/acceptance/router.py
Worker responses to a selection, withdrawal of a pending application, and the
countdown read used by both sides.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.registry import ServiceRegistry, get_services
from shared.middleware.auth import get_current_user, require_worker
from shared.models.models import User
from shared.schemas.schemas import (
    AcceptanceStatusResponse,
    ApplicationEnvelope,
    ApplicationResponse,
    DeclineRequest,
)

router = APIRouter(prefix="/applications", tags=["Applications"])


@router.post("/{application_id}/accept", response_model=ApplicationEnvelope)
async def accept_selection(
    application_id: UUID,
    current_user: User = Depends(require_worker),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    application = await services.acceptance.accept(db, application_id, current_user)
    return ApplicationEnvelope(
        message="Job accepted successfully",
        application=ApplicationResponse.model_validate(application),
    )


@router.post("/{application_id}/decline", response_model=ApplicationEnvelope)
async def decline_selection(
    application_id: UUID,
    data: Optional[DeclineRequest] = None,
    current_user: User = Depends(require_worker),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    application, refunded = await services.acceptance.decline(
        db, application_id, current_user, reason=data.reason if data else None
    )
    return ApplicationEnvelope(
        message="Job declined. The client will select another worker.",
        application=ApplicationResponse.model_validate(application),
        refund_pending=not refunded,
    )


@router.get("/{application_id}/acceptance-status", response_model=AcceptanceStatusResponse)
async def acceptance_status(
    application_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    window = await services.acceptance.get_status(db, application_id, current_user)
    message = "Awaiting worker response" if window["can_respond"] else "Acceptance window closed"
    return AcceptanceStatusResponse(message=message, **window)


@router.post("/{application_id}/withdraw", response_model=ApplicationEnvelope)
async def withdraw_application(
    application_id: UUID,
    current_user: User = Depends(require_worker),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    application = await services.acceptance.withdraw(db, application_id, current_user)
    return ApplicationEnvelope(
        message="Application withdrawn successfully",
        application=ApplicationResponse.model_validate(application),
    )
