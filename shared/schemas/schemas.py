"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
Every response carries the {"success": ..., "message": ...} envelope.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.models.models import DisputeResolution


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class MessageResponse(BaseSchema):
    message: str
    success: bool = True


# ── Escrow ────────────────────────────────────────────────────

class EscrowResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    amount: int
    platform_fee: int
    worker_earnings: int
    status: str
    payment_reference: str
    transfer_reference: Optional[str]
    refund_reference: Optional[str]
    escrowed_at: Optional[datetime]
    released_at: Optional[datetime]
    refunded_at: Optional[datetime]
    amount_display: Optional[str] = None


class EscrowEnvelope(MessageResponse):
    escrow: EscrowResponse


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    worker_id: uuid.UUID
    title: str = Field(..., min_length=3, max_length=255)
    amount: int = Field(..., description="Amount in kobo")
    scheduled_date: Optional[datetime] = None

    @field_validator("scheduled_date")
    @classmethod
    def validate_scheduled_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is None:
            return v
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        if v <= datetime.now(timezone.utc):
            raise ValueError("Scheduled date must be in the future")
        return v


class BookingResponse(BaseSchema):
    id: uuid.UUID
    client_id: uuid.UUID
    worker_id: Optional[uuid.UUID]
    job_id: Optional[uuid.UUID]
    job_application_id: Optional[uuid.UUID]
    title: str
    budget_amount: int
    scheduled_date: Optional[datetime]
    status: str
    cancellation_reason: Optional[str]
    cancelled_by: Optional[str]
    accepted_at: Optional[datetime]
    worker_accepted_at: Optional[datetime]
    started_at: Optional[datetime]
    worker_completed_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    disputed_at: Optional[datetime]
    created_at: datetime


class BookingEnvelope(MessageResponse):
    booking: BookingResponse
    escrow: Optional[EscrowResponse] = None


class BookingListResponse(MessageResponse):
    bookings: List[BookingResponse]
    total: int
    page: int
    per_page: int


class BookingReasonRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


# ── Jobs & Applications ───────────────────────────────────────

class JobCreateRequest(BaseSchema):
    title: str = Field(..., min_length=3, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    budget_amount: int = Field(..., gt=0, description="Amount in kobo")


class JobResponse(BaseSchema):
    id: uuid.UUID
    client_id: uuid.UUID
    title: str
    description: Optional[str]
    budget_amount: int
    status: str
    assigned_worker_id: Optional[uuid.UUID]
    assigned_at: Optional[datetime]
    booking_id: Optional[uuid.UUID]
    worker_cancelled_at: Optional[datetime] = None
    worker_cancellation_reason: Optional[str] = None
    created_at: datetime


class JobEnvelope(MessageResponse):
    job: JobResponse
    booking: Optional[BookingResponse] = None


class ApplyRequest(BaseSchema):
    message: Optional[str] = Field(None, max_length=2000)


class SelectWorkerRequest(BaseSchema):
    application_id: uuid.UUID


class ApplicationResponse(BaseSchema):
    id: uuid.UUID
    job_id: uuid.UUID
    worker_id: uuid.UUID
    client_id: uuid.UUID
    status: str
    message: Optional[str]
    selected_at: Optional[datetime]
    accepted_at: Optional[datetime]
    declined_at: Optional[datetime]
    unpicked_at: Optional[datetime]
    decline_reason: Optional[str]
    withdrawn_at: Optional[datetime] = None


class ApplicationEnvelope(MessageResponse):
    application: ApplicationResponse
    booking: Optional[BookingResponse] = None
    refund_pending: bool = False


class DeclineRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class AcceptanceStatusResponse(MessageResponse):
    application_id: uuid.UUID
    status: str
    selected_at: Optional[datetime]
    can_respond: bool
    time_remaining_ms: int
    time_remaining: str


# ── Disputes ──────────────────────────────────────────────────

class DisputeCreateRequest(BaseSchema):
    booking_id: uuid.UUID
    category: str = Field(..., max_length=50)
    statement: str = Field(..., min_length=10, max_length=5000)
    evidence: Optional[List[str]] = Field(None, max_length=10)


class DisputeResponseRequest(BaseSchema):
    response: str = Field(..., min_length=10, max_length=5000)


class DisputeResolveRequest(BaseSchema):
    resolution: DisputeResolution
    admin_notes: Optional[str] = Field(None, max_length=5000)


class DisputeResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    client_id: uuid.UUID
    worker_id: uuid.UUID
    category: str
    client_statement: str
    worker_response: Optional[str]
    admin_notes: Optional[str]
    evidence: Optional[List[str]]
    amount: int
    status: str
    resolution: Optional[str]
    resolved_by_id: Optional[uuid.UUID]
    resolved_at: Optional[datetime]
    created_at: datetime


class DisputeEnvelope(MessageResponse):
    dispute: DisputeResponse


class DisputeListResponse(MessageResponse):
    disputes: List[DisputeResponse]
    total: int
    page: int
    per_page: int


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    title: str
    body: str
    action_url: Optional[str]
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime
    booking_id: Optional[uuid.UUID]


class NotificationListResponse(MessageResponse):
    notifications: List[NotificationResponse]
    unread_count: int
