"""
services/escrow/router.py
Read-only view of a booking's escrow record. All mutations go through the
booking and dispute flows.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.escrow.ledger import format_naira
from services.registry import ServiceRegistry, get_services
from shared.exceptions import Unauthorized
from shared.middleware.auth import get_current_user, is_party
from shared.models.models import EscrowStatus, User
from shared.schemas.schemas import EscrowEnvelope, EscrowResponse

router = APIRouter(prefix="/escrow", tags=["Escrow"])


@router.get("/{booking_id}", response_model=EscrowEnvelope)
async def get_escrow(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    escrow = await services.escrow.get_for_booking(db, booking_id)
    if not is_party(current_user, escrow.client_id, escrow.worker_id):
        raise Unauthorized("You are not a party to this booking")

    out = EscrowResponse.model_validate(escrow)
    out.amount_display = format_naira(escrow.amount)
    return EscrowEnvelope(message=f"Escrow is {EscrowStatus(escrow.status).value}", escrow=out)
