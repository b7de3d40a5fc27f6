"""Notification sink.

Notifications are written to the outbox in the same transaction as the
state change they describe; `workers.outbox_publisher` ships them to the
broker later, so a broker outage never fails a reconciliation.
"""
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from checkout.models import NotificationOutbox, Payment

logger = logging.getLogger("checkout.notifications")

RESERVATION_CONFIRMED = "reservation.confirmed"
RESERVATION_CANCELLED = "reservation.cancelled"
RESERVATION_REFUNDED  = "reservation.refunded"


def enqueue(session: AsyncSession, event_type: str, reservation, payment: Payment, **extra) -> NotificationOutbox:
    payload = {
        "event": event_type,
        "reservation_kind": reservation.kind.value,
        "reservation_id": str(reservation.id),
        "user_id": str(reservation.user_id),
        "vendor_id": str(reservation.vendor_id) if reservation.vendor_id else None,
        "payment_id": str(payment.id),
        "provider_order_id": payment.provider_order_id,
        "amount": payment.amount,
        "currency": payment.currency,
        **extra,
    }
    outbox_rec = NotificationOutbox(
        aggregate_id=reservation.id,
        event_type=event_type,
        payload=payload,
    )
    session.add(outbox_rec)
    logger.info("Queued %s for %s %s", event_type, reservation.kind.value, reservation.id)
    return outbox_rec
