"""
tests/test_acceptance.py
Job selection and the worker's 1-hour acceptance window:
select → accept | decline | (client) unpick, with escrow held and refunded.
"""

import re
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.acceptance.window import can_respond, format_time_remaining, time_remaining_ms
from services.booking.lifecycle import worker_cancel_window
from shared.exceptions import WindowExpired
from shared.models.models import (
    ApplicationStatus,
    Booking,
    BookingStatus,
    EscrowPayment,
    EscrowStatus,
    Job,
    JobApplication,
    JobStatus,
    Notification,
    User,
)
from shared.utils.store import ensure_aware, utcnow
from tests.conftest import auth_headers

SELECTED_AT = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


async def _post_job(client: AsyncClient, client_user: User, budget: int = 300_000) -> str:
    response = await client.post(
        "/jobs",
        headers=auth_headers(client_user),
        json={"title": "Move a wardrobe upstairs", "budget_amount": budget},
    )
    assert response.status_code == 201, response.text
    return response.json()["job"]["id"]


async def _apply(client: AsyncClient, job_id: str, worker: User) -> str:
    response = await client.post(
        f"/jobs/{job_id}/apply", headers=auth_headers(worker), json={"message": "I can do it today"}
    )
    assert response.status_code == 201, response.text
    return response.json()["application"]["id"]


async def _selected(client: AsyncClient, client_user: User, worker: User) -> dict:
    """Post a job, apply as `worker` and select them. Returns ids."""
    job_id = await _post_job(client, client_user)
    application_id = await _apply(client, job_id, worker)
    response = await client.post(
        f"/jobs/{job_id}/select",
        headers=auth_headers(client_user),
        json={"application_id": application_id},
    )
    assert response.status_code == 200, response.text
    return {
        "job_id": job_id,
        "application_id": application_id,
        "booking_id": response.json()["booking"]["id"],
    }


async def _escrow(db: AsyncSession, booking_id: str) -> EscrowPayment:
    escrow = await db.scalar(select(EscrowPayment).where(EscrowPayment.booking_id == uuid.UUID(booking_id)))
    await db.refresh(escrow)
    return escrow


# ── Window arithmetic ──────────────────────────────────────────────────────────

def test_can_respond_inside_window():
    assert can_respond(SELECTED_AT, SELECTED_AT + timedelta(minutes=59)) is True


def test_cannot_respond_after_window():
    assert can_respond(SELECTED_AT, SELECTED_AT + timedelta(minutes=61)) is False
    assert can_respond(SELECTED_AT, SELECTED_AT + timedelta(hours=1)) is False
    assert can_respond(None, SELECTED_AT) is False


def test_naive_timestamps_are_treated_as_utc():
    naive = SELECTED_AT.replace(tzinfo=None)
    assert can_respond(naive, SELECTED_AT + timedelta(minutes=30)) is True


def test_time_remaining_formatting():
    assert time_remaining_ms(SELECTED_AT, SELECTED_AT + timedelta(minutes=15)) == 45 * 60 * 1000
    assert time_remaining_ms(SELECTED_AT, SELECTED_AT + timedelta(hours=2)) == 0
    assert format_time_remaining(45 * 60 * 1000) == "00:45:00"
    assert format_time_remaining(3_599_999) == "00:59:59"
    assert format_time_remaining(-5) == "00:00:00"


# ── Selection ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_select_worker_holds_escrow_and_assigns_job(
    client: AsyncClient, db_session: AsyncSession, payment_gateway, client_user: User, worker: User
):
    ids = await _selected(client, client_user, worker)

    job = await db_session.get(Job, uuid.UUID(ids["job_id"]))
    assert job.status == JobStatus.ASSIGNED
    assert job.assigned_worker_id == worker.id
    assert str(job.booking_id) == ids["booking_id"]

    application = await db_session.get(JobApplication, uuid.UUID(ids["application_id"]))
    assert application.status == ApplicationStatus.SELECTED
    assert application.selected_at is not None

    booking = await db_session.get(Booking, uuid.UUID(ids["booking_id"]))
    assert booking.status == BookingStatus.ACCEPTED
    assert booking.worker_accepted_at is None
    assert (await _escrow(db_session, ids["booking_id"])).status == EscrowStatus.ESCROWED
    assert payment_gateway.charges[0]["amount"] == 300_000

    notif = await db_session.scalar(
        select(Notification).where(
            Notification.idempotency_key == f"worker_selected_{application.id}_{worker.id}"
        )
    )
    assert notif is not None and notif.user_id == worker.id


@pytest.mark.asyncio
async def test_select_payment_failure_keeps_job_open(
    client: AsyncClient, db_session: AsyncSession, payment_gateway, client_user: User, worker: User
):
    client_headers = auth_headers(client_user)
    job_id = await _post_job(client, client_user)
    application_id = await _apply(client, job_id, worker)
    payment_gateway.fail_charge = True

    response = await client.post(
        f"/jobs/{job_id}/select", headers=client_headers, json={"application_id": application_id}
    )
    assert response.status_code == 402

    job = await db_session.get(Job, uuid.UUID(job_id), populate_existing=True)
    application = await db_session.get(JobApplication, uuid.UUID(application_id), populate_existing=True)
    assert job.status == JobStatus.OPEN
    assert job.booking_id is None
    assert application.status == ApplicationStatus.PENDING


@pytest.mark.asyncio
async def test_cannot_select_on_assigned_job(client: AsyncClient, client_user: User, worker: User, other_worker: User):
    client_headers = auth_headers(client_user)
    job_id = await _post_job(client, client_user)
    first = await _apply(client, job_id, worker)
    second = await _apply(client, job_id, other_worker)
    await client.post(f"/jobs/{job_id}/select", headers=client_headers, json={"application_id": first})

    response = await client.post(f"/jobs/{job_id}/select", headers=client_headers, json={"application_id": second})
    assert response.status_code == 409


# ── Accept ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_worker_accepts_within_window(
    client: AsyncClient, db_session: AsyncSession, client_user: User, worker: User
):
    worker_headers = auth_headers(worker)
    ids = await _selected(client, client_user, worker)

    status = await client.get(f"/applications/{ids['application_id']}/acceptance-status", headers=worker_headers)
    assert status.status_code == 200
    window = status.json()
    assert window["can_respond"] is True
    assert window["time_remaining_ms"] > 3_500_000
    assert re.fullmatch(r"\d{2}:\d{2}:\d{2}", window["time_remaining"])

    response = await client.post(f"/applications/{ids['application_id']}/accept", headers=worker_headers)
    assert response.status_code == 200, response.text
    assert response.json()["application"]["status"] == ApplicationStatus.ACCEPTED.value

    booking = await db_session.get(Booking, uuid.UUID(ids["booking_id"]))
    assert booking.worker_accepted_at is not None

    # Acceptance unlocks starting the work
    response = await client.post(f"/bookings/{ids['booking_id']}/start", headers=worker_headers)
    assert response.status_code == 200
    assert response.json()["booking"]["status"] == BookingStatus.IN_PROGRESS.value

    notif = await db_session.scalar(
        select(Notification).where(Notification.idempotency_key.like("worker_accepted_%"))
    )
    assert notif.user_id == client_user.id


@pytest.mark.asyncio
async def test_accept_twice_is_rejected(client: AsyncClient, client_user: User, worker: User):
    worker_headers = auth_headers(worker)
    ids = await _selected(client, client_user, worker)
    await client.post(f"/applications/{ids['application_id']}/accept", headers=worker_headers)

    response = await client.post(f"/applications/{ids['application_id']}/accept", headers=worker_headers)
    assert response.status_code == 409
    assert response.json()["error"] == "ALREADY_RESPONDED"


@pytest.mark.asyncio
async def test_accept_after_window_expired(
    client: AsyncClient, db_session: AsyncSession, client_user: User, worker: User
):
    worker_headers = auth_headers(worker)
    ids = await _selected(client, client_user, worker)
    application = await db_session.get(JobApplication, uuid.UUID(ids["application_id"]))
    application.selected_at = utcnow() - timedelta(minutes=61)
    await db_session.commit()

    response = await client.post(f"/applications/{ids['application_id']}/accept", headers=worker_headers)
    assert response.status_code == 410
    assert response.json()["error"] == "WINDOW_EXPIRED"


@pytest.mark.asyncio
async def test_accept_at_59_minutes_is_allowed(
    db_session: AsyncSession, client: AsyncClient, services, client_user: User, worker: User
):
    ids = await _selected(client, client_user, worker)
    application = await db_session.get(JobApplication, uuid.UUID(ids["application_id"]))
    selected_at = ensure_aware(application.selected_at)

    with pytest.raises(WindowExpired):
        await services.acceptance.accept(
            db_session, application.id, worker, now=selected_at + timedelta(minutes=61)
        )
    accepted = await services.acceptance.accept(
        db_session, application.id, worker, now=selected_at + timedelta(minutes=59)
    )
    assert accepted.status == ApplicationStatus.ACCEPTED


@pytest.mark.asyncio
async def test_other_worker_cannot_accept(client: AsyncClient, client_user: User, worker: User, other_worker: User):
    ids = await _selected(client, client_user, worker)

    response = await client.post(
        f"/applications/{ids['application_id']}/accept", headers=auth_headers(other_worker)
    )
    assert response.status_code == 403


# ── Decline ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_worker_declines_reopens_job_and_refunds(
    client: AsyncClient, db_session: AsyncSession, payment_gateway, client_user: User, worker: User
):
    ids = await _selected(client, client_user, worker)

    response = await client.post(
        f"/applications/{ids['application_id']}/decline",
        headers=auth_headers(worker),
        json={"reason": "Out of town"},
    )
    assert response.status_code == 200, response.text
    data = response.json()
    assert data["application"]["status"] == ApplicationStatus.DECLINED.value
    assert data["application"]["decline_reason"] == "Out of town"
    assert data["refund_pending"] is False

    job = await db_session.get(Job, uuid.UUID(ids["job_id"]))
    assert job.status == JobStatus.OPEN
    assert job.booking_id is None
    booking = await db_session.get(Booking, uuid.UUID(ids["booking_id"]))
    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancelled_by == "worker"
    assert (await _escrow(db_session, ids["booking_id"])).status == EscrowStatus.REFUNDED
    assert payment_gateway.refunds[0]["amount"] == 300_000


@pytest.mark.asyncio
async def test_decline_with_failed_refund_can_be_retried_by_client(
    client: AsyncClient, db_session: AsyncSession, payment_gateway, client_user: User, worker: User
):
    client_headers, worker_headers = auth_headers(client_user), auth_headers(worker)
    ids = await _selected(client, client_user, worker)
    payment_gateway.fail_refund = True

    response = await client.post(f"/applications/{ids['application_id']}/decline", headers=worker_headers)
    assert response.status_code == 200
    assert response.json()["refund_pending"] is True
    assert response.json()["application"]["status"] == ApplicationStatus.DECLINED.value

    booking = await db_session.get(Booking, uuid.UUID(ids["booking_id"]), populate_existing=True)
    assert booking.status == BookingStatus.ACCEPTED
    assert (await _escrow(db_session, ids["booking_id"])).status == EscrowStatus.ESCROWED

    payment_gateway.fail_refund = False
    response = await client.post(f"/bookings/{ids['booking_id']}/cancel", headers=client_headers)
    assert response.status_code == 200, response.text
    assert response.json()["booking"]["status"] == BookingStatus.CANCELLED.value
    assert (await _escrow(db_session, ids["booking_id"])).status == EscrowStatus.REFUNDED


# ── Unpick ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_client_unpicks_and_worker_reapplies(
    client: AsyncClient, db_session: AsyncSession, payment_gateway, client_user: User, worker: User
):
    ids = await _selected(client, client_user, worker)

    response = await client.post(f"/jobs/{ids['job_id']}/unpick", headers=auth_headers(client_user))
    assert response.status_code == 200, response.text
    assert response.json()["application"]["status"] == ApplicationStatus.UNPICKED.value
    assert response.json()["refund_pending"] is False
    assert len(payment_gateway.refunds) == 1

    booking = await db_session.get(Booking, uuid.UUID(ids["booking_id"]))
    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancelled_by == "client"

    keys = set(
        (await db_session.scalars(select(Notification.idempotency_key))).all()
    )
    assert f"worker_unpicked_{ids['job_id']}_{worker.id}" in keys
    assert f"client_unpicked_worker_{ids['job_id']}_{client_user.id}" in keys

    # Unpicked workers may apply again
    response = await client.post(f"/jobs/{ids['job_id']}/apply", headers=auth_headers(worker), json={})
    assert response.status_code == 201
    assert response.json()["application"]["id"] == ids["application_id"]
    assert response.json()["application"]["status"] == ApplicationStatus.PENDING.value


@pytest.mark.asyncio
async def test_cannot_unpick_after_worker_accepted(
    client: AsyncClient, payment_gateway, client_user: User, worker: User
):
    client_headers = auth_headers(client_user)
    ids = await _selected(client, client_user, worker)
    await client.post(f"/applications/{ids['application_id']}/accept", headers=auth_headers(worker))

    response = await client.post(f"/jobs/{ids['job_id']}/unpick", headers=client_headers)
    assert response.status_code == 409
    assert response.json()["error"] == "ALREADY_RESPONDED"
    assert payment_gateway.refunds == []


@pytest.mark.asyncio
async def test_cancel_selection_before_worker_responds(
    client: AsyncClient, db_session: AsyncSession, payment_gateway, client_user: User, worker: User
):
    """A client-side-only booking can be cancelled; the selection is withdrawn."""
    ids = await _selected(client, client_user, worker)

    response = await client.post(f"/bookings/{ids['booking_id']}/cancel", headers=auth_headers(client_user))
    assert response.status_code == 200, response.text

    application = await db_session.get(JobApplication, uuid.UUID(ids["application_id"]))
    assert application.status == ApplicationStatus.UNPICKED
    job = await db_session.get(Job, uuid.UUID(ids["job_id"]))
    assert job.status == JobStatus.OPEN
    assert len(payment_gateway.refunds) == 1


@pytest.mark.asyncio
async def test_cancel_selection_with_failed_refund_changes_nothing(
    client: AsyncClient, db_session: AsyncSession, payment_gateway, client_user: User, worker: User
):
    client_headers, worker_headers = auth_headers(client_user), auth_headers(worker)
    ids = await _selected(client, client_user, worker)
    payment_gateway.fail_refund = True

    response = await client.post(f"/bookings/{ids['booking_id']}/cancel", headers=client_headers)
    assert response.status_code == 402

    booking = await db_session.get(Booking, uuid.UUID(ids["booking_id"]), populate_existing=True)
    assert booking.status == BookingStatus.ACCEPTED
    application = await db_session.get(JobApplication, uuid.UUID(ids["application_id"]), populate_existing=True)
    assert application.status == ApplicationStatus.SELECTED
    assert application.unpicked_at is None
    job = await db_session.get(Job, uuid.UUID(ids["job_id"]), populate_existing=True)
    assert job.status == JobStatus.ASSIGNED
    assert str(job.booking_id) == ids["booking_id"]
    assert (await _escrow(db_session, ids["booking_id"])).status == EscrowStatus.ESCROWED

    # The selection is still live, so the worker can take the job
    payment_gateway.fail_refund = False
    response = await client.post(f"/applications/{ids['application_id']}/accept", headers=worker_headers)
    assert response.status_code == 200, response.text


@pytest.mark.asyncio
async def test_unpick_with_failed_refund_can_be_retried_by_client(
    client: AsyncClient, db_session: AsyncSession, payment_gateway, client_user: User, worker: User
):
    client_headers = auth_headers(client_user)
    ids = await _selected(client, client_user, worker)
    payment_gateway.fail_refund = True

    response = await client.post(f"/jobs/{ids['job_id']}/unpick", headers=client_headers)
    assert response.status_code == 200, response.text
    assert response.json()["refund_pending"] is True
    assert response.json()["application"]["status"] == ApplicationStatus.UNPICKED.value

    job = await db_session.get(Job, uuid.UUID(ids["job_id"]), populate_existing=True)
    assert job.status == JobStatus.OPEN
    booking = await db_session.get(Booking, uuid.UUID(ids["booking_id"]), populate_existing=True)
    assert booking.status == BookingStatus.ACCEPTED
    assert (await _escrow(db_session, ids["booking_id"])).status == EscrowStatus.ESCROWED

    payment_gateway.fail_refund = False
    response = await client.post(f"/bookings/{ids['booking_id']}/cancel", headers=client_headers)
    assert response.status_code == 200, response.text
    assert (await _escrow(db_session, ids["booking_id"])).status == EscrowStatus.REFUNDED


# ── Disputed selections ────────────────────────────────────────────────────────

async def _dispute_selection(client: AsyncClient, client_user: User, booking_id: str) -> str:
    response = await client.post(
        "/disputes",
        headers=auth_headers(client_user),
        json={
            "booking_id": booking_id,
            "category": "communication",
            "statement": "The worker stopped answering my calls.",
        },
    )
    assert response.status_code == 201, response.text
    return response.json()["dispute"]["id"]


@pytest.mark.asyncio
async def test_disputed_selection_only_closes_through_resolution(
    client: AsyncClient, db_session: AsyncSession, payment_gateway, client_user: User, worker: User, admin: User
):
    client_headers, worker_headers, admin_headers = auth_headers(client_user), auth_headers(worker), auth_headers(admin)
    ids = await _selected(client, client_user, worker)
    dispute_id = await _dispute_selection(client, client_user, ids["booking_id"])

    response = await client.post(f"/jobs/{ids['job_id']}/unpick", headers=client_headers)
    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_STATE"
    response = await client.post(f"/applications/{ids['application_id']}/decline", headers=worker_headers)
    assert response.status_code == 409
    response = await client.post(f"/bookings/{ids['booking_id']}/cancel", headers=client_headers)
    assert response.status_code == 409
    assert payment_gateway.refunds == []

    booking = await db_session.get(Booking, uuid.UUID(ids["booking_id"]), populate_existing=True)
    assert booking.status == BookingStatus.DISPUTED
    application = await db_session.get(JobApplication, uuid.UUID(ids["application_id"]), populate_existing=True)
    assert application.status == ApplicationStatus.SELECTED
    job = await db_session.get(Job, uuid.UUID(ids["job_id"]), populate_existing=True)
    assert job.status == JobStatus.ASSIGNED

    response = await client.post(
        f"/disputes/{dispute_id}/resolve", headers=admin_headers, json={"resolution": "approve_worker"}
    )
    assert response.status_code == 200, response.text
    booking = await db_session.get(Booking, uuid.UUID(ids["booking_id"]), populate_existing=True)
    assert booking.status == BookingStatus.COMPLETED
    assert len(payment_gateway.transfers) == 1


@pytest.mark.asyncio
async def test_refund_resolution_reopens_job(
    client: AsyncClient, db_session: AsyncSession, payment_gateway, client_user: User, worker: User, admin: User
):
    ids = await _selected(client, client_user, worker)
    response = await client.post(f"/applications/{ids['application_id']}/accept", headers=auth_headers(worker))
    assert response.status_code == 200
    dispute_id = await _dispute_selection(client, client_user, ids["booking_id"])

    response = await client.post(
        f"/disputes/{dispute_id}/resolve", headers=auth_headers(admin), json={"resolution": "refund_client"}
    )
    assert response.status_code == 200, response.text

    job = await db_session.get(Job, uuid.UUID(ids["job_id"]), populate_existing=True)
    assert job.status == JobStatus.OPEN
    assert job.booking_id is None
    assert job.assigned_worker_id is None
    booking = await db_session.get(Booking, uuid.UUID(ids["booking_id"]), populate_existing=True)
    assert booking.status == BookingStatus.CANCELLED
    assert payment_gateway.refunds[0]["amount"] == 300_000


# ── Worker cancellation ────────────────────────────────────────────────────────

def test_worker_cancel_window():
    assigned = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    assert worker_cancel_window(assigned, assigned + timedelta(hours=1)) == (False, 1, 23)
    assert worker_cancel_window(assigned, assigned + timedelta(hours=23, minutes=30)) == (False, 23, 1)
    assert worker_cancel_window(assigned, assigned + timedelta(hours=24)) == (True, 24, 0)
    assert worker_cancel_window(None, assigned) == (False, 0, 24)


async def _accepted_job(client: AsyncClient, client_user: User, worker: User) -> dict:
    ids = await _selected(client, client_user, worker)
    response = await client.post(f"/applications/{ids['application_id']}/accept", headers=auth_headers(worker))
    assert response.status_code == 200, response.text
    return ids


async def _assigned_hours_ago(db: AsyncSession, job_id: str, hours: int) -> None:
    job = await db.get(Job, uuid.UUID(job_id), populate_existing=True)
    job.assigned_at = utcnow() - timedelta(hours=hours)
    await db.commit()


@pytest.mark.asyncio
async def test_worker_cannot_cancel_within_24_hours(
    client: AsyncClient, payment_gateway, client_user: User, worker: User
):
    ids = await _accepted_job(client, client_user, worker)

    response = await client.post(f"/jobs/{ids['job_id']}/worker-cancel", headers=auth_headers(worker))
    assert response.status_code == 409
    body = response.json()
    assert body["message"] == "You must wait 24 more hours before cancelling"
    assert body["details"]["hours_remaining"] == 24
    assert payment_gateway.refunds == []


@pytest.mark.asyncio
async def test_worker_cancels_after_24_hours(
    client: AsyncClient, db_session: AsyncSession, payment_gateway, client_user: User, worker: User
):
    worker_headers = auth_headers(worker)
    ids = await _accepted_job(client, client_user, worker)
    await _assigned_hours_ago(db_session, ids["job_id"], 25)

    response = await client.post(
        f"/jobs/{ids['job_id']}/worker-cancel", headers=worker_headers, json={"reason": "Family emergency"}
    )
    assert response.status_code == 200, response.text
    data = response.json()
    assert data["job"]["status"] == JobStatus.OPEN.value
    assert data["job"]["worker_cancellation_reason"] == "Family emergency"
    assert data["job"]["worker_cancelled_at"] is not None
    assert data["booking"]["status"] == BookingStatus.CANCELLED.value
    assert data["booking"]["cancelled_by"] == "worker"
    assert payment_gateway.refunds[0]["amount"] == 300_000
    assert (await _escrow(db_session, ids["booking_id"])).status == EscrowStatus.REFUNDED

    keys = set((await db_session.scalars(select(Notification.idempotency_key))).all())
    assert f"worker_cancelled_{ids['job_id']}_{client_user.id}" in keys
    assert f"worker_self_cancelled_{ids['job_id']}_{worker.id}" in keys


@pytest.mark.asyncio
async def test_worker_cancel_refund_failure_keeps_job_assigned(
    client: AsyncClient, db_session: AsyncSession, payment_gateway, client_user: User, worker: User
):
    worker_headers = auth_headers(worker)
    ids = await _accepted_job(client, client_user, worker)
    await _assigned_hours_ago(db_session, ids["job_id"], 30)
    payment_gateway.fail_refund = True

    response = await client.post(f"/jobs/{ids['job_id']}/worker-cancel", headers=worker_headers)
    assert response.status_code == 402

    job = await db_session.get(Job, uuid.UUID(ids["job_id"]), populate_existing=True)
    assert job.status == JobStatus.ASSIGNED
    assert job.worker_cancelled_at is None
    booking = await db_session.get(Booking, uuid.UUID(ids["booking_id"]), populate_existing=True)
    assert booking.status == BookingStatus.ACCEPTED


@pytest.mark.asyncio
async def test_only_assigned_worker_can_cancel(
    client: AsyncClient, db_session: AsyncSession, client_user: User, worker: User, other_worker: User
):
    other_headers = auth_headers(other_worker)
    ids = await _accepted_job(client, client_user, worker)
    await _assigned_hours_ago(db_session, ids["job_id"], 25)

    response = await client.post(f"/jobs/{ids['job_id']}/worker-cancel", headers=other_headers)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_worker_cannot_cancel_started_job(
    client: AsyncClient, db_session: AsyncSession, payment_gateway, client_user: User, worker: User
):
    worker_headers = auth_headers(worker)
    ids = await _accepted_job(client, client_user, worker)
    response = await client.post(f"/bookings/{ids['booking_id']}/start", headers=worker_headers)
    assert response.status_code == 200, response.text
    await _assigned_hours_ago(db_session, ids["job_id"], 25)

    response = await client.post(f"/jobs/{ids['job_id']}/worker-cancel", headers=worker_headers)
    assert response.status_code == 409
    assert response.json()["message"] == "Cannot cancel a in_progress booking"
    assert payment_gateway.refunds == []


# ── Withdrawal ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_worker_withdraws_pending_application(client: AsyncClient, client_user: User, worker: User):
    client_headers, worker_headers = auth_headers(client_user), auth_headers(worker)
    job_id = await _post_job(client, client_user)
    application_id = await _apply(client, job_id, worker)

    response = await client.post(f"/applications/{application_id}/withdraw", headers=worker_headers)
    assert response.status_code == 200, response.text
    assert response.json()["application"]["status"] == ApplicationStatus.WITHDRAWN.value
    assert response.json()["application"]["withdrawn_at"] is not None

    response = await client.post(f"/applications/{application_id}/withdraw", headers=worker_headers)
    assert response.status_code == 409
    assert response.json()["message"] == "Cannot withdraw a withdrawn application"

    response = await client.post(
        f"/jobs/{job_id}/select", headers=client_headers, json={"application_id": application_id}
    )
    assert response.status_code == 409

    # Withdrawn workers may apply again
    response = await client.post(f"/jobs/{job_id}/apply", headers=worker_headers, json={})
    assert response.status_code == 201
    assert response.json()["application"]["status"] == ApplicationStatus.PENDING.value
    assert response.json()["application"]["withdrawn_at"] is None


@pytest.mark.asyncio
async def test_cannot_withdraw_others_or_selected_application(
    client: AsyncClient, client_user: User, worker: User, other_worker: User
):
    worker_headers, other_headers = auth_headers(worker), auth_headers(other_worker)
    ids = await _selected(client, client_user, worker)

    response = await client.post(f"/applications/{ids['application_id']}/withdraw", headers=other_headers)
    assert response.status_code == 403
    response = await client.post(f"/applications/{ids['application_id']}/withdraw", headers=worker_headers)
    assert response.status_code == 409
    assert response.json()["message"] == "Cannot withdraw a selected application"
