"""
services/booking/router.py
Booking endpoints. Routes only authenticate, parse and wrap; every state
change goes through BookingLifecycleManager.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.escrow.ledger import format_naira
from services.registry import ServiceRegistry, get_services
from shared.middleware.auth import get_current_user, require_client, require_worker
from shared.models.models import BookingStatus, User
from shared.schemas.schemas import (
    BookingCreateRequest,
    BookingEnvelope,
    BookingListResponse,
    BookingReasonRequest,
    BookingResponse,
    EscrowResponse,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def _escrow_out(escrow) -> Optional[EscrowResponse]:
    if escrow is None:
        return None
    out = EscrowResponse.model_validate(escrow)
    out.amount_display = format_naira(escrow.amount)
    return out


def _envelope(message: str, booking, escrow=None) -> BookingEnvelope:
    return BookingEnvelope(
        message=message,
        booking=BookingResponse.model_validate(booking),
        escrow=_escrow_out(escrow),
    )


# ── Create ────────────────────────────────────────────────────

@router.post("", response_model=BookingEnvelope, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    """
    Book a worker directly. The client's saved card is charged and the
    funds are held in escrow before the booking exists.
    """
    booking, escrow = await services.bookings.create_booking(
        db,
        client=current_user,
        worker_id=data.worker_id,
        amount=data.amount,
        title=data.title,
        scheduled_date=data.scheduled_date,
    )
    return _envelope("Booking created and payment held in escrow", booking, escrow)


# ── Reads ─────────────────────────────────────────────────────

@router.get("", response_model=BookingListResponse)
async def list_bookings(
    status: Optional[BookingStatus] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    bookings, total = await services.bookings.list_bookings(
        db, current_user, status=status, page=page, per_page=per_page
    )
    return BookingListResponse(
        message=f"{total} booking(s)",
        bookings=[BookingResponse.model_validate(b) for b in bookings],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/{booking_id}", response_model=BookingEnvelope)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    booking = await services.bookings.get_booking(db, booking_id, current_user)
    escrow = await services.bookings.find_escrow(db, booking.id)
    return _envelope("Booking retrieved", booking, escrow)


# ── Worker actions ────────────────────────────────────────────

@router.post("/{booking_id}/accept", response_model=BookingEnvelope)
async def accept_booking(
    booking_id: UUID,
    current_user: User = Depends(require_worker),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    booking = await services.bookings.accept_booking(db, booking_id, current_user)
    return _envelope("Booking accepted", booking)


@router.post("/{booking_id}/reject", response_model=BookingEnvelope)
async def reject_booking(
    booking_id: UUID,
    data: Optional[BookingReasonRequest] = None,
    current_user: User = Depends(require_worker),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    reason = data.reason if data else None
    booking = await services.bookings.reject_booking(db, booking_id, current_user, reason)
    return _envelope("Booking rejected. The client has been refunded.", booking)


@router.post("/{booking_id}/start", response_model=BookingEnvelope)
async def start_work(
    booking_id: UUID,
    current_user: User = Depends(require_worker),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    booking = await services.bookings.start_work(db, booking_id, current_user)
    return _envelope("Work started", booking)


@router.post("/{booking_id}/complete", response_model=BookingEnvelope)
async def mark_complete(
    booking_id: UUID,
    current_user: User = Depends(require_worker),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    booking = await services.bookings.mark_worker_completed(db, booking_id, current_user)
    return _envelope("Work marked complete. Waiting for client confirmation.", booking)


# ── Client actions ────────────────────────────────────────────

@router.post("/{booking_id}/confirm", response_model=BookingEnvelope)
async def confirm_completion(
    booking_id: UUID,
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    """Confirm the work and release escrowed earnings to the worker."""
    booking, escrow = await services.bookings.confirm_completion(db, booking_id, current_user)
    return _envelope(
        f"Booking completed. {format_naira(escrow.worker_earnings)} released to the worker.",
        booking,
        escrow,
    )


@router.post("/{booking_id}/cancel", response_model=BookingEnvelope)
async def cancel_booking(
    booking_id: UUID,
    data: Optional[BookingReasonRequest] = None,
    current_user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    services: ServiceRegistry = Depends(get_services),
):
    reason = data.reason if data else None
    booking = await services.bookings.cancel_booking(db, booking_id, current_user, reason)
    return _envelope("Booking cancelled and payment refunded", booking)
