"""
services/registry.py
Process-wide service objects, built once in the app lifespan and read by
routers through `get_services`.
"""

from dataclasses import dataclass

from fastapi import Request

from services.acceptance.window import AcceptanceWindowTracker
from services.booking.lifecycle import BookingLifecycleManager
from services.dispute.resolver import DisputeResolver
from services.escrow.ledger import EscrowLedger
from services.notification.dispatcher import Notifier
from services.notification.gateway import NotificationGateway
from services.payment.gateway import PaystackGateway


@dataclass
class ServiceRegistry:
    payment_gateway: PaystackGateway
    notification_gateway: NotificationGateway
    notifier: Notifier
    escrow: EscrowLedger
    bookings: BookingLifecycleManager
    acceptance: AcceptanceWindowTracker
    disputes: DisputeResolver


def build_services(payment_gateway, notification_gateway) -> ServiceRegistry:
    notifier = Notifier(notification_gateway)
    escrow = EscrowLedger(payment_gateway)
    bookings = BookingLifecycleManager(escrow, notifier)
    return ServiceRegistry(
        payment_gateway=payment_gateway,
        notification_gateway=notification_gateway,
        notifier=notifier,
        escrow=escrow,
        bookings=bookings,
        acceptance=AcceptanceWindowTracker(bookings, notifier),
        disputes=DisputeResolver(bookings, notifier),
    )


def get_services(request: Request) -> ServiceRegistry:
    return request.app.state.services
