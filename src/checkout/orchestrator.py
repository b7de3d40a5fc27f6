"""Reservation orchestrator.

A purchase runs in three steps, each in its own transaction:

1. resolve the resources and price them from the catalog (read only);
2. reserve inventory and commit, so the hold is durable before any money
   moves;
3. create the payment intent, then insert the reservation and its line
   items together with the payment.

If step 3 fails the hold from step 2 is released before the error goes
back to the caller.
"""
import datetime as dt
import logging
from typing import NamedTuple
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from checkout import ledger, reservations
from checkout.audit import AuditWriter
from checkout.catalog import Catalog, PurchaseLine, ResolvedPurchase
from checkout.errors import AuthenticationRequired
from checkout.ledger import HoldLine
from checkout.models import RESERVATION_MODELS, ReservationItem, ReservationKind, ReservationStatus
from checkout.payments import PaymentIntentManager, PurchaseContext

logger = logging.getLogger("checkout.orchestrator")


class RequestContext(NamedTuple):
    requestor_id: UUID | None
    is_authenticated: bool


class PurchaseResult(NamedTuple):
    provider_order_id: str
    amount: int
    currency: str
    checkout_key: str
    reservation_id: UUID
    reservation_kind: ReservationKind
    checkout_mode: str
    reservation_status: str
    resource_name: str | None = None


class ReservationOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        catalog: Catalog,
        intents: PaymentIntentManager,
        audit: AuditWriter,
        currency: str,
    ):
        self._session_factory = session_factory
        self._catalog = catalog
        self._intents = intents
        self._audit = audit
        self._currency = currency

    async def purchase(
        self,
        ctx: RequestContext,
        kind: ReservationKind,
        lines: list[PurchaseLine],
        service_date: dt.date | None = None,
    ) -> PurchaseResult:
        if not ctx.is_authenticated or ctx.requestor_id is None:
            raise AuthenticationRequired("Unauthorized")
        kind = ReservationKind(kind)

        async with self._session_factory() as session:
            resolved = await self._catalog.resolve(
                session, kind, lines, ctx.requestor_id, service_date=service_date
            )

        reservation_id = uuid4()
        unit_ids = await self._reserve_inventory(ctx.requestor_id, reservation_id, resolved)

        try:
            result = await self._create_reservation(ctx, reservation_id, resolved, unit_ids)
        except Exception:
            await self._release_inventory(reservation_id)
            raise

        await self._audit.log(
            "transaction",
            kind.value,
            reservation_id,
            actor_id=ctx.requestor_id,
            payload={
                "provider_order_id": result.provider_order_id,
                "amount": result.amount,
                "checkout_mode": result.checkout_mode,
            },
        )
        return result

    async def _reserve_inventory(self, user_id: UUID, reservation_id: UUID, resolved: ResolvedPurchase) -> list[UUID]:
        async with self._session_factory() as session:
            async with session.begin():
                unit_ids = [
                    await ledger.ensure_unit(
                        session, line.resource_kind, line.resource_id, line.capacity, line.service_date
                    )
                    for line in resolved.lines
                ]
                await ledger.check_and_reserve(
                    session,
                    reservation_id,
                    user_id,
                    [HoldLine(unit_id, line.quantity) for unit_id, line in zip(unit_ids, resolved.lines)],
                )
        return unit_ids

    async def _create_reservation(
        self,
        ctx: RequestContext,
        reservation_id: UUID,
        resolved: ResolvedPurchase,
        unit_ids: list[UUID],
    ) -> PurchaseResult:
        async with self._session_factory() as session:
            async with session.begin():
                intent = await self._intents.create_intent(
                    session,
                    resolved.amount,
                    self._currency,
                    PurchaseContext(ctx.requestor_id, resolved.kind, reservation_id),
                )
                status = ReservationStatus.CONFIRMED if intent.captured else ReservationStatus.PENDING

                model = RESERVATION_MODELS[resolved.kind]
                reservation = model(
                    id=reservation_id,
                    user_id=ctx.requestor_id,
                    vendor_id=resolved.vendor_id,
                    payment_id=intent.payment.id,
                    status=status.value,
                    amount=resolved.amount,
                    **resolved.attributes,
                )
                session.add(reservation)
                session.add_all([
                    ReservationItem(
                        reservation_kind=resolved.kind.value,
                        reservation_id=reservation_id,
                        inventory_unit_id=unit_id,
                        resource_id=line.resource_id,
                        quantity=line.quantity,
                        amount=line.amount,
                    )
                    for unit_id, line in zip(unit_ids, resolved.lines)
                ])
                await session.flush()

                if intent.captured:
                    await reservations.apply_confirmation(session, reservation, intent.payment)

        logger.info(
            "%s %s created (%s) with order %s",
            resolved.kind.value, reservation_id, status.value, intent.provider_order_id,
        )
        return PurchaseResult(
            provider_order_id=intent.provider_order_id,
            amount=resolved.amount,
            currency=self._currency,
            checkout_key=intent.checkout_key,
            reservation_id=reservation_id,
            reservation_kind=resolved.kind,
            checkout_mode=intent.checkout_mode,
            reservation_status=status.value,
            resource_name=resolved.resource_name,
        )

    async def _release_inventory(self, reservation_id: UUID) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await ledger.release_reservation(session, reservation_id)
            logger.info("Released inventory for failed purchase %s", reservation_id)
        except SQLAlchemyError:
            # The original error is re-raised by the caller; the hold stays for the sweeper.
            logger.exception("Could not release inventory for failed purchase %s", reservation_id)
