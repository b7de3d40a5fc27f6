"""Catalog lookups: resource existence, eligibility and pricing.

Amounts are always computed here from stored prices, never taken from the
client.
"""
import datetime as dt
from dataclasses import dataclass, field
from typing import NamedTuple
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.config import Settings
from checkout.errors import NotFoundError, ValidationError
from checkout.models import (
    ClubEvent, Lead, LeadUnlock, ReservationKind, ReservationStatus, ResourceKind,
    Restaurant, RestaurantTimeSlot, TicketTier,
)

CLOSED_LEAD_STATUSES = ("closed", "lost")


class PurchaseLine(NamedTuple):
    resource_id: UUID
    quantity: int


@dataclass
class ResolvedLine:
    resource_kind: ResourceKind
    resource_id: UUID
    quantity: int
    amount: int
    capacity: int
    service_date: dt.date | None = None


@dataclass
class ResolvedPurchase:
    kind: ReservationKind
    vendor_id: UUID | None
    lines: list[ResolvedLine]
    # Vertical-specific columns of the reservation row.
    attributes: dict = field(default_factory=dict)
    # Restaurant, event or lead name shown at checkout.
    resource_name: str | None = None

    @property
    def amount(self) -> int:
        return sum(line.amount for line in self.lines)


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


class Catalog:
    def __init__(self, settings: Settings):
        self.booking_fee = settings.BOOKING_FEE
        self.lead_unlock_fee = settings.LEAD_UNLOCK_FEE
        self.lead_max_unlocks = settings.LEAD_MAX_UNLOCKS
        self.tz = ZoneInfo(settings.MARKETPLACE_TIMEZONE)

    async def resolve(
        self,
        session: AsyncSession,
        kind: ReservationKind,
        lines: list[PurchaseLine],
        requestor_id: UUID,
        service_date: dt.date | None = None,
        now: dt.datetime | None = None,
    ) -> ResolvedPurchase:
        if not lines:
            raise ValidationError("At least one item is required")
        for line in lines:
            if line.quantity <= 0:
                raise ValidationError("quantity must be > 0")
        now = _as_utc(now or dt.datetime.now(dt.timezone.utc))

        if kind == ReservationKind.BOOKING:
            return await self._resolve_booking(session, lines, service_date, now)
        if kind == ReservationKind.TICKET_ORDER:
            return await self._resolve_tickets(session, lines, now)
        if kind == ReservationKind.LEAD_UNLOCK:
            return await self._resolve_lead(session, lines, requestor_id)
        raise ValidationError(f"Unsupported reservation kind {kind!r}")

    async def _resolve_booking(self, session, lines, service_date, now) -> ResolvedPurchase:
        if len(lines) != 1:
            raise ValidationError("A booking is for exactly one time slot")
        if service_date is None:
            raise ValidationError("date is required for a booking")
        line = lines[0]

        slot = await session.get(RestaurantTimeSlot, line.resource_id)
        if not slot:
            raise NotFoundError(f"Time slot {line.resource_id} not found")
        restaurant = await session.get(Restaurant, slot.restaurant_id)
        if not restaurant or not restaurant.is_published:
            raise NotFoundError(f"Time slot {line.resource_id} not found")

        starts_at = dt.datetime.combine(service_date, dt.time.fromisoformat(slot.start_time), tzinfo=self.tz)
        if starts_at <= now:
            raise ValidationError("Cannot book a time slot that has already started")
        # date.weekday() is Monday=0; slots use Sunday=0.
        if (service_date.weekday() + 1) % 7 != slot.day_of_week:
            raise ValidationError("The time slot is not offered on that date")

        return ResolvedPurchase(
            kind=ReservationKind.BOOKING,
            vendor_id=restaurant.vendor_id,
            lines=[
                ResolvedLine(
                    resource_kind=ResourceKind.TIME_SLOT,
                    resource_id=slot.id,
                    quantity=line.quantity,
                    amount=self.booking_fee,
                    capacity=slot.capacity,
                    service_date=service_date,
                )
            ],
            attributes={
                "restaurant_id": restaurant.id,
                "slot_id": slot.id,
                "booking_date": service_date,
                "guest_count": line.quantity,
            },
            resource_name=restaurant.name,
        )

    async def _resolve_tickets(self, session, lines, now) -> ResolvedPurchase:
        merged: dict[UUID, int] = {}
        for line in lines:
            merged[line.resource_id] = merged.get(line.resource_id, 0) + line.quantity

        result = await session.execute(select(TicketTier).where(TicketTier.id.in_(list(merged))))
        tiers = {tier.id: tier for tier in result.scalars().all()}
        missing = [str(tier_id) for tier_id in merged if tier_id not in tiers]
        if missing:
            raise NotFoundError(f"Ticket tier(s) not found: {', '.join(missing)}")

        event_ids = {tier.event_id for tier in tiers.values()}
        if len(event_ids) != 1:
            raise ValidationError("All tickets in one order must be for the same event")
        event = await session.get(ClubEvent, event_ids.pop())
        if not event or not event.is_published:
            raise NotFoundError("Event not found")
        if _as_utc(event.event_date) <= now:
            raise ValidationError("Event has already started")

        return ResolvedPurchase(
            kind=ReservationKind.TICKET_ORDER,
            vendor_id=event.vendor_id,
            lines=[
                ResolvedLine(
                    resource_kind=ResourceKind.TICKET_TIER,
                    resource_id=tier_id,
                    quantity=qty,
                    amount=tiers[tier_id].price * qty,
                    capacity=tiers[tier_id].capacity,
                )
                for tier_id, qty in merged.items()
            ],
            attributes={"event_id": event.id},
            resource_name=event.name,
        )

    async def _resolve_lead(self, session, lines, requestor_id) -> ResolvedPurchase:
        if len(lines) != 1 or lines[0].quantity != 1:
            raise ValidationError("A lead is unlocked one at a time")
        line = lines[0]

        lead = await session.get(Lead, line.resource_id)
        if not lead:
            raise NotFoundError(f"Lead {line.resource_id} not found")
        if lead.status in CLOSED_LEAD_STATUSES:
            raise ValidationError("Lead is no longer open")

        existing = await session.execute(
            select(LeadUnlock.id).where(
                LeadUnlock.lead_id == lead.id,
                LeadUnlock.user_id == requestor_id,
                LeadUnlock.status.in_(
                    [ReservationStatus.PENDING.value, ReservationStatus.CONFIRMED.value]
                ),
            )
        )
        if existing.first() is not None:
            raise ValidationError("Lead is already unlocked or awaiting payment")

        return ResolvedPurchase(
            kind=ReservationKind.LEAD_UNLOCK,
            vendor_id=lead.vendor_id,
            lines=[
                ResolvedLine(
                    resource_kind=ResourceKind.LEAD,
                    resource_id=lead.id,
                    quantity=1,
                    amount=self.lead_unlock_fee,
                    capacity=lead.max_unlocks or self.lead_max_unlocks,
                )
            ],
            attributes={"lead_id": lead.id},
            resource_name=lead.customer_name,
        )
