"""Inventory ledger.

Capacity is consumed with a single conditional UPDATE per unit, so the
storage engine decides which of several concurrent reservations wins. The
functions here never commit: callers own the transaction.
"""
import logging
from datetime import date
from typing import Iterable, NamedTuple
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.errors import CapacityExceeded, ValidationError
from checkout.models import InventoryHold, InventoryHoldLine, InventoryUnit, ResourceKind

logger = logging.getLogger("checkout.ledger")

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

class HoldLine(NamedTuple):
    inventory_unit_id: UUID
    quantity: int


def unit_key(resource_kind: ResourceKind, resource_id: UUID, service_date: date | None = None) -> str:
    key = f"{resource_kind.value}:{resource_id}"
    if service_date is not None:
        key += f":{service_date.isoformat()}"
    return key


async def ensure_unit(
    session: AsyncSession,
    resource_kind: ResourceKind,
    resource_id: UUID,
    capacity: int,
    service_date: date | None = None,
) -> UUID:
    """Return the unit id for a resource, creating the unit on first use.

    An existing unit takes the catalog's current capacity. Capacity never
    drops below what is already committed: a cut below that just stops
    further sales.
    """
    key = unit_key(resource_kind, resource_id, service_date)
    insert = _UPSERT_INSERTS[session.bind.dialect.name]
    stmt = insert(InventoryUnit).values(
        unit_key=key,
        resource_kind=resource_kind.value,
        resource_id=resource_id,
        service_date=service_date,
        capacity=capacity,
        committed=0,
    )
    units = InventoryUnit.__table__.c
    await session.execute(
        stmt.on_conflict_do_update(
            index_elements=["unit_key"],
            set_={
                "capacity": case(
                    (stmt.excluded.capacity < units.committed, units.committed),
                    else_=stmt.excluded.capacity,
                ),
            },
        )
    )
    result = await session.execute(select(InventoryUnit.id).where(InventoryUnit.unit_key == key))
    return result.scalar_one()


async def check_and_reserve(
    session: AsyncSession,
    reservation_id: UUID,
    user_id: UUID,
    lines: Iterable[HoldLine],
) -> InventoryHold:
    merged: dict[UUID, int] = {}
    for line in lines:
        if line.quantity <= 0:
            raise ValidationError("quantity must be > 0")
        merged[line.inventory_unit_id] = merged.get(line.inventory_unit_id, 0) + line.quantity
    if not merged:
        raise ValidationError("nothing to reserve")

    hold = InventoryHold(id=reservation_id, user_id=user_id)
    session.add(hold)

    # Stable order keeps multi-unit reservations from deadlocking each other.
    for unit_id in sorted(merged):
        qty = merged[unit_id]
        result = await session.execute(
            update(InventoryUnit)
            .where(
                InventoryUnit.id == unit_id,
                InventoryUnit.committed + qty <= InventoryUnit.capacity,
            )
            .values(committed=InventoryUnit.committed + qty)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info("Unit %s cannot take %d more unit(s)", unit_id, qty)
            raise CapacityExceeded(unit_id, qty)
        session.add(InventoryHoldLine(hold_id=reservation_id, inventory_unit_id=unit_id, quantity=qty))

    await session.flush()
    logger.info("Reserved %s for reservation %s", dict(merged), reservation_id)
    return hold


async def release_reservation(session: AsyncSession, reservation_id: UUID) -> bool:
    """Give the reservation's units back. Only the first call has an effect."""
    result = await session.execute(
        update(InventoryHold)
        .where(InventoryHold.id == reservation_id, InventoryHold.released_at.is_(None))
        .values(released_at=func.now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info("Hold %s already released or unknown", reservation_id)
        return False

    lines = (
        await session.execute(
            select(InventoryHoldLine).where(InventoryHoldLine.hold_id == reservation_id)
        )
    ).scalars().all()
    for line in sorted(lines, key=lambda l: l.inventory_unit_id):
        await session.execute(
            update(InventoryUnit)
            .where(InventoryUnit.id == line.inventory_unit_id)
            .values(committed=InventoryUnit.committed - line.quantity)
            .execution_options(synchronize_session=False)
        )
    logger.info("Released hold %s (%d line(s))", reservation_id, len(lines))
    return True


async def mark_captured(session: AsyncSession, reservation_id: UUID) -> bool:
    """Pin the hold to a paid reservation. False unless the hold exists and
    is neither released nor captured yet."""
    result = await session.execute(
        update(InventoryHold)
        .where(
            InventoryHold.id == reservation_id,
            InventoryHold.captured_at.is_(None),
            InventoryHold.released_at.is_(None),
        )
        .values(captured_at=func.now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def is_held(session: AsyncSession, reservation_id: UUID) -> bool:
    """True while the reservation still owns its inventory."""
    result = await session.execute(
        select(InventoryHold.id).where(
            InventoryHold.id == reservation_id, InventoryHold.released_at.is_(None)
        )
    )
    return result.first() is not None
