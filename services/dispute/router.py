"""
services/dispute/router.py
Dispute endpoints: client raises, worker responds, admin reviews and resolves.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.registry import ServiceRegistry, get_services
from shared.middleware.auth import get_current_user, require_admin, require_client, require_worker
from shared.models.models import DisputeStatus, User
from shared.schemas.schemas import (
    DisputeCreateRequest,
    DisputeEnvelope,
    DisputeListResponse,
    DisputeResolveRequest,
    DisputeResponse,
    DisputeResponseRequest,
)

router = APIRouter(prefix="/disputes", tags=["Disputes"])


@router.post("", response_model=DisputeEnvelope, status_code=status.HTTP_201_CREATED)
async def raise_dispute(
    data: DisputeCreateRequest,
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    dispute = await services.disputes.create_dispute(
        db,
        client=current_user,
        booking_id=data.booking_id,
        category=data.category,
        statement=data.statement,
        evidence=data.evidence,
    )
    return DisputeEnvelope(
        message="Dispute raised successfully. Worker and admin have been notified.",
        dispute=DisputeResponse.model_validate(dispute),
    )


@router.post("/{dispute_id}/response", response_model=DisputeEnvelope)
async def respond_to_dispute(
    dispute_id: UUID,
    data: DisputeResponseRequest,
    current_user: User = Depends(require_worker),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    dispute = await services.disputes.add_worker_response(db, dispute_id, current_user, data.response)
    return DisputeEnvelope(
        message="Response submitted successfully",
        dispute=DisputeResponse.model_validate(dispute),
    )


@router.post("/{dispute_id}/resolve", response_model=DisputeEnvelope)
async def resolve_dispute(
    dispute_id: UUID,
    data: DisputeResolveRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    """
    Settle a dispute. approve_worker releases escrow to the worker,
    refund_client refunds the client, resolve_themselves moves no money.
    """
    dispute = await services.disputes.resolve(
        db, dispute_id, data.resolution, current_user, admin_notes=data.admin_notes
    )
    return DisputeEnvelope(
        message="Dispute resolved successfully",
        dispute=DisputeResponse.model_validate(dispute),
    )


@router.get("", response_model=DisputeListResponse)
async def list_disputes(
    status: Optional[DisputeStatus] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    disputes, total = await services.disputes.list_disputes(
        db, status=status, page=page, per_page=per_page
    )
    return DisputeListResponse(
        message=f"{total} dispute(s)",
        disputes=[DisputeResponse.model_validate(d) for d in disputes],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/{dispute_id}", response_model=DisputeEnvelope)
async def get_dispute(
    dispute_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    dispute = await services.disputes.get_dispute(db, dispute_id, current_user)
    return DisputeEnvelope(message="Dispute retrieved", dispute=DisputeResponse.model_validate(dispute))
