"""
shared/models/models.py
All SQLAlchemy ORM models for the escrow-backed booking marketplace.
UUID primary keys throughout; money is stored as integer kobo.
"""

import uuid
from datetime import datetime
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base
from shared.utils.store import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls: type) -> Enum:
    """Persist enum values (not member names) so the DB matches the API strings."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=30,
    )


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    CLIENT = "client"
    WORKER = "worker"
    ADMIN = "admin"


class JobStatus(str, PyEnum):
    OPEN = "open"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ApplicationStatus(str, PyEnum):
    PENDING = "pending"
    SELECTED = "selected"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    UNPICKED = "unpicked"
    WITHDRAWN = "withdrawn"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    WORKER_COMPLETED = "worker_completed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class EscrowStatus(str, PyEnum):
    PENDING = "pending"
    ESCROWED = "escrowed"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class DisputeStatus(str, PyEnum):
    PENDING = "pending"
    WORKER_RESPONDED = "worker_responded"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"


class DisputeResolution(str, PyEnum):
    APPROVE_WORKER = "approve_worker"
    REFUND_CLIENT = "refund_client"
    RESOLVE_THEMSELVES = "resolve_themselves"


class NotificationType(str, PyEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Marketplace account. A user is a client, a worker or an admin."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        _enum(UserRole), nullable=False, default=UserRole.CLIENT
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Paystack: reusable card authorization (clients) and transfer recipient (workers)
    payment_authorization_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payout_recipient_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    notifications: Mapped[List["Notification"]] = relationship(back_populates="user")

    __table_args__ = (Index("ix_users_role", "role"),)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class Job(TimestampMixin, Base):
    """A client's posted task. Workers apply; the client selects one application."""
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    budget_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        _enum(JobStatus), nullable=False, default=JobStatus.OPEN
    )
    assigned_worker_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    worker_cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    worker_cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    applications: Mapped[List["JobApplication"]] = relationship(back_populates="job")

    __table_args__ = (
        Index("ix_jobs_client_id", "client_id"),
        Index("ix_jobs_status", "status"),
    )


class JobApplication(TimestampMixin, Base):
    """
    A worker's candidacy for a job. Once selected, the worker has a fixed
    window to accept or decline. At most one of accepted_at / declined_at /
    unpicked_at is ever set.
    """
    __tablename__ = "job_applications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    worker_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    status: Mapped[ApplicationStatus] = mapped_column(
        _enum(ApplicationStatus), nullable=False, default=ApplicationStatus.PENDING
    )
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    selected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    declined_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    unpicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    decline_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    withdrawn_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    job: Mapped["Job"] = relationship(back_populates="applications")

    __table_args__ = (
        UniqueConstraint("job_id", "worker_id", name="uq_application_job_worker"),
        CheckConstraint(
            "(CASE WHEN accepted_at IS NULL THEN 0 ELSE 1 END"
            " + CASE WHEN declined_at IS NULL THEN 0 ELSE 1 END"
            " + CASE WHEN unpicked_at IS NULL THEN 0 ELSE 1 END) <= 1",
            name="ck_application_single_response",
        ),
        Index("ix_job_applications_job_status", "job_id", "status"),
    )


class Booking(TimestampMixin, Base):
    """
    A contracted unit of work between one client and one worker.
    Status transitions: pending → accepted → in_progress → worker_completed → completed,
    with side branches to cancelled and disputed (→ worker_completed | cancelled).
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    worker_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("jobs.id"), nullable=True)
    job_application_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("job_applications.id"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    budget_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    scheduled_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    # Timestamps
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    worker_accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    worker_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    disputed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    escrow_payment: Mapped[Optional["EscrowPayment"]] = relationship(
        back_populates="booking", uselist=False
    )
    audit_logs: Mapped[List["BookingAuditLog"]] = relationship(back_populates="booking")

    __table_args__ = (
        CheckConstraint("budget_amount > 0", name="ck_booking_amount_positive"),
        Index("ix_bookings_client_id", "client_id"),
        Index("ix_bookings_worker_id", "worker_id"),
        Index("ix_bookings_status", "status"),
    )


class BookingAuditLog(Base):
    """Immutable log of all booking status transitions."""
    __tablename__ = "booking_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    audit_metadata: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    booking: Mapped["Booking"] = relationship(back_populates="audit_logs")

    __table_args__ = (Index("ix_booking_audit_logs_booking_id", "booking_id"),)


class EscrowPayment(TimestampMixin, Base):
    """Custody record for one booking's funds. Mutated only by the escrow ledger."""
    __tablename__ = "escrow_payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    worker_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    # Amounts in kobo
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    worker_earnings: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[EscrowStatus] = mapped_column(
        _enum(EscrowStatus), nullable=False, default=EscrowStatus.PENDING
    )
    payment_reference: Mapped[str] = mapped_column(String(100), nullable=False)
    transfer_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    refund_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    escrowed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    booking: Mapped["Booking"] = relationship(back_populates="escrow_payment")

    __table_args__ = (
        CheckConstraint(
            "amount = platform_fee + worker_earnings", name="ck_escrow_amount_split"
        ),
        Index("ix_escrow_payments_status", "status"),
        Index("ix_escrow_payments_payment_reference", "payment_reference"),
    )


class Dispute(TimestampMixin, Base):
    """A disagreement over a booking's outcome. One per booking, never deleted."""
    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    worker_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    client_statement: Mapped[str] = mapped_column(Text, nullable=False)
    worker_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    evidence: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)  # snapshot at creation

    status: Mapped[DisputeStatus] = mapped_column(
        _enum(DisputeStatus), nullable=False, default=DisputeStatus.PENDING
    )
    resolution: Mapped[Optional[DisputeResolution]] = mapped_column(
        _enum(DisputeResolution), nullable=True
    )
    resolved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "(status = 'resolved' AND resolution IS NOT NULL)"
            " OR (status <> 'resolved' AND resolution IS NULL)",
            name="ck_dispute_resolution_iff_resolved",
        ),
        Index("ix_disputes_status", "status"),
    )


class Notification(TimestampMixin, Base):
    """In-app notification. SMS/email delivery flags are recorded alongside."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    type: Mapped[NotificationType] = mapped_column(_enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    action_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_sms: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_email: Mapped[bool] = mapped_column(Boolean, default=False)

    user: Mapped["User"] = relationship(back_populates="notifications")

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)
