"""
services/escrow/ledger.py
Escrow ledger: owns EscrowPayment records.

hold     charge the client and record funds as escrowed
release  transfer worker earnings out, then mark released
refund   return the full amount to the client, then mark refunded

Every mutation is checked against ESCROW_TRANSITIONS first and written as a
status-conditioned update. Calling release/refund on a record already in the
target state is a successful no-op, never a second transfer.
"""

import logging
import time
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.payment.gateway import PaystackGateway
from shared.exceptions import Conflict, InvalidTransitionError, NotFound, ValidationError
from shared.models.models import Booking, EscrowPayment, EscrowStatus, User
from shared.utils.store import compare_and_set, utcnow

logger = logging.getLogger(__name__)


ESCROW_TRANSITIONS = {
    EscrowStatus.PENDING: {EscrowStatus.ESCROWED, EscrowStatus.REFUNDED},
    EscrowStatus.ESCROWED: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.DISPUTED},
    EscrowStatus.DISPUTED: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED},
    EscrowStatus.RELEASED: set(),
    EscrowStatus.REFUNDED: set(),
}


def validate_escrow_transition(current: EscrowStatus, target: EscrowStatus) -> None:
    current, target = EscrowStatus(current), EscrowStatus(target)
    if target not in ESCROW_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)


# ── Money helpers ─────────────────────────────────────────────

def calculate_platform_fee(amount: int, rate: float = None) -> int:
    """Platform fee in kobo, rounded half-up to the nearest kobo."""
    rate = settings.PLATFORM_FEE_RATE if rate is None else rate
    fee = (Decimal(amount) * Decimal(str(rate))).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(fee)


def calculate_worker_earnings(amount: int, rate: float = None) -> int:
    return amount - calculate_platform_fee(amount, rate)


def validate_booking_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Amount must be a whole number of kobo")
    if amount < settings.MIN_BOOKING_AMOUNT:
        raise ValidationError(
            f"Amount must be at least {format_naira(settings.MIN_BOOKING_AMOUNT)}"
        )
    if amount > settings.MAX_BOOKING_AMOUNT:
        raise ValidationError(
            f"Amount cannot exceed {format_naira(settings.MAX_BOOKING_AMOUNT)}"
        )


def format_naira(amount_kobo: int) -> str:
    """Display kobo as naira, with decimals only when there are any."""
    naira, kobo = divmod(amount_kobo, 100)
    if kobo:
        return f"₦{naira:,}.{kobo:02d}"
    return f"₦{naira:,}"


def generate_reference(kind: str, booking_id: uuid.UUID) -> str:
    return f"{kind}_{booking_id.hex}_{int(time.time() * 1000)}"


# ── Ledger ────────────────────────────────────────────────────

class EscrowLedger:
    """Stateless service; one instance per process, injected via the registry."""

    def __init__(self, payment_gateway: PaystackGateway):
        self.payment_gateway = payment_gateway

    async def get_for_booking(self, db: AsyncSession, booking_id: uuid.UUID) -> EscrowPayment:
        escrow = await db.scalar(
            select(EscrowPayment).where(EscrowPayment.booking_id == booking_id)
        )
        if escrow is None:
            raise NotFound("Escrow payment not found for booking")
        return escrow

    async def hold(self, db: AsyncSession, booking: Booking, client: User) -> EscrowPayment:
        """
        Charge the client for the booking amount and record it as escrowed.
        PaymentError propagates and nothing is written. The caller commits.
        """
        amount = booking.budget_amount
        if amount <= 0:
            raise ValidationError("Amount must be greater than 0")

        existing = await db.scalar(
            select(EscrowPayment.id).where(EscrowPayment.booking_id == booking.id)
        )
        if existing is not None:
            raise Conflict("Escrow already exists for this booking")

        validate_escrow_transition(EscrowStatus.PENDING, EscrowStatus.ESCROWED)
        charge = await self.payment_gateway.charge(
            amount=amount,
            reference=generate_reference("escrow", booking.id),
            email=client.email,
            authorization_code=client.payment_authorization_code,
        )

        platform_fee = calculate_platform_fee(amount)
        escrow = EscrowPayment(
            booking_id=booking.id,
            client_id=booking.client_id,
            worker_id=booking.worker_id,
            amount=amount,
            platform_fee=platform_fee,
            worker_earnings=amount - platform_fee,
            status=EscrowStatus.ESCROWED,
            payment_reference=charge["reference"],
            escrowed_at=utcnow(),
        )
        db.add(escrow)
        await db.flush()
        logger.info(
            f"Escrow held for booking {booking.id}: {format_naira(amount)} "
            f"(fee {format_naira(platform_fee)}, ref {charge['reference']})"
        )
        return escrow

    async def release(
        self, db: AsyncSession, booking_id: uuid.UUID, reason: str = "Escrow release"
    ) -> Tuple[EscrowPayment, bool]:
        """
        Transfer worker earnings and mark the escrow released.
        Returns (escrow, released_now). Commits as soon as the transfer is confirmed.
        """
        escrow = await self.get_for_booking(db, booking_id)
        if escrow.status == EscrowStatus.RELEASED:
            logger.info(f"Escrow for booking {booking_id} already released; no-op")
            return escrow, False

        previous = EscrowStatus(escrow.status)
        validate_escrow_transition(previous, EscrowStatus.RELEASED)

        worker = await db.get(User, escrow.worker_id) if escrow.worker_id else None
        reference = generate_reference("release", booking_id)
        try:
            transfer = await self.payment_gateway.transfer(
                amount=escrow.worker_earnings,
                recipient=worker.payout_recipient_code if worker else None,
                reference=reference,
                reason=reason,
            )
        except Exception:
            logger.error(f"Transfer for booking {booking_id} failed; escrow stays {previous.value}")
            raise

        updated = await compare_and_set(
            db,
            EscrowPayment,
            escrow.id,
            expected=[previous],
            status=EscrowStatus.RELEASED,
            transfer_reference=transfer["transfer_ref"],
            released_at=utcnow(),
        )
        if not updated:
            logger.critical(
                f"Escrow {escrow.id} changed during transfer {transfer['transfer_ref']}; "
                "manual reconciliation required"
            )
            await db.rollback()
            raise Conflict("Escrow changed while the transfer was in flight")

        await db.commit()
        await db.refresh(escrow)
        logger.info(f"Escrow released for booking {booking_id}: {transfer['transfer_ref']}")
        return escrow, True

    async def refund(
        self, db: AsyncSession, booking_id: uuid.UUID, reason: str
    ) -> Tuple[EscrowPayment, bool]:
        """
        Return the full amount to the client and mark the escrow refunded.
        Returns (escrow, refunded_now). Commits once the gateway confirms.
        """
        escrow = await self.get_for_booking(db, booking_id)
        if escrow.status == EscrowStatus.REFUNDED:
            logger.info(f"Escrow for booking {booking_id} already refunded; no-op")
            return escrow, False

        previous = EscrowStatus(escrow.status)
        validate_escrow_transition(previous, EscrowStatus.REFUNDED)

        refund_ref = None
        if previous != EscrowStatus.PENDING:
            # Nothing was captured while pending
            try:
                result = await self.payment_gateway.refund(escrow.payment_reference, escrow.amount)
            except Exception:
                logger.error(f"Refund for booking {booking_id} failed; escrow stays {previous.value}")
                raise
            refund_ref = result["refund_ref"]

        updated = await compare_and_set(
            db,
            EscrowPayment,
            escrow.id,
            expected=[previous],
            status=EscrowStatus.REFUNDED,
            refund_reference=refund_ref,
            refund_reason=reason,
            refunded_at=utcnow(),
        )
        if not updated:
            logger.critical(
                f"Escrow {escrow.id} changed during refund {refund_ref}; manual reconciliation required"
            )
            await db.rollback()
            raise Conflict("Escrow changed while the refund was in flight")

        await db.commit()
        await db.refresh(escrow)
        logger.info(f"Escrow refunded for booking {booking_id}: {reason}")
        return escrow, True

