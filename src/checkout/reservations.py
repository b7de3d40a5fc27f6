"""State changes on reservations shared by the orchestrator and the reconciler."""
import logging
import secrets
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from checkout import ledger, notifications
from checkout.errors import HoldReleasedError
from checkout.models import (
    RESERVATION_MODELS, Payment, ReservationItem, ReservationKind, ReservationStatus, Ticket,
)

logger = logging.getLogger("checkout.reservations")


async def get_reservation(session: AsyncSession, kind: ReservationKind | str, reservation_id: UUID):
    model = RESERVATION_MODELS[ReservationKind(kind)]
    return await session.get(model, reservation_id, populate_existing=True)


async def transition(
    session: AsyncSession,
    kind: ReservationKind | str,
    reservation_id: UUID,
    from_status: ReservationStatus,
    to_status: ReservationStatus,
) -> bool:
    """Move a reservation between statuses; False if it was not in `from_status`."""
    model = RESERVATION_MODELS[ReservationKind(kind)]
    result = await session.execute(
        update(model)
        .where(model.id == reservation_id, model.status == from_status.value)
        .values(status=to_status.value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def issue_tickets(session: AsyncSession, order_id: UUID) -> list[Ticket]:
    items = (
        await session.execute(
            select(ReservationItem).where(
                ReservationItem.reservation_kind == ReservationKind.TICKET_ORDER.value,
                ReservationItem.reservation_id == order_id,
            )
        )
    ).scalars().all()
    tickets = [
        Ticket(order_id=order_id, ticket_tier_id=item.resource_id, qr_hash=secrets.token_hex(16))
        for item in items
        for _ in range(item.quantity)
    ]
    session.add_all(tickets)
    logger.info("Issued %d ticket(s) for order %s", len(tickets), order_id)
    return tickets


async def void_tickets(session: AsyncSession, order_id: UUID) -> int:
    result = await session.execute(
        update(Ticket)
        .where(Ticket.order_id == order_id, Ticket.is_void.is_(False))
        .values(is_void=True)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info("Voided %d ticket(s) for order %s", result.rowcount, order_id)
    return result.rowcount


async def apply_confirmation(session: AsyncSession, reservation, payment: Payment) -> None:
    """Side effects of a reservation becoming confirmed."""
    if not await ledger.mark_captured(session, reservation.id):
        raise HoldReleasedError(f"Inventory for {reservation.kind.value} {reservation.id} is no longer held")
    extra = {}
    if reservation.kind == ReservationKind.TICKET_ORDER:
        tickets = await issue_tickets(session, reservation.id)
        extra["ticket_count"] = len(tickets)
    notifications.enqueue(session, notifications.RESERVATION_CONFIRMED, reservation, payment, **extra)


async def confirm(session: AsyncSession, payment: Payment):
    """Confirm the reservation paid for by `payment`. Returns it, or None if
    it was not pending."""
    kind, reservation_id = payment.reservation_kind, payment.reservation_id
    if not await transition(session, kind, reservation_id, ReservationStatus.PENDING, ReservationStatus.CONFIRMED):
        logger.warning("%s %s is not pending; not confirming", kind, reservation_id)
        return None
    reservation = await get_reservation(session, kind, reservation_id)
    await apply_confirmation(session, reservation, payment)
    return reservation


async def cancel(
    session: AsyncSession,
    payment: Payment,
    from_status: ReservationStatus,
    event_type: str,
    reason: str | None = None,
):
    """Cancel the reservation paid for by `payment` and give its inventory back."""
    kind, reservation_id = payment.reservation_kind, payment.reservation_id
    if not await transition(session, kind, reservation_id, from_status, ReservationStatus.CANCELLED):
        logger.warning("%s %s is not %s; not cancelling", kind, reservation_id, from_status.value)
        return None
    await ledger.release_reservation(session, reservation_id)
    reservation = await get_reservation(session, kind, reservation_id)
    extra = {}
    if reservation.kind == ReservationKind.TICKET_ORDER:
        extra["tickets_voided"] = await void_tickets(session, reservation_id)
    notifications.enqueue(session, event_type, reservation, payment, reason=reason, **extra)
    return reservation
