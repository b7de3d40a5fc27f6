import datetime as dt
import json
import os
import uuid

# checkout.db builds its engine at import time; tests use their own per-test engine.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["RAZORPAY_KEY_ID"] = ""
os.environ["RAZORPAY_KEY_SECRET"] = ""

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from checkout.audit import AuditWriter
from checkout.catalog import Catalog
from checkout.config import Settings
from checkout.db import Base
from checkout.gateway import RazorpayGateway, sign_webhook_body
from checkout.models import (
    RESERVATION_MODELS, ClubEvent, InventoryHold, InventoryUnit, Lead, NotificationOutbox,
    Payment, Restaurant, RestaurantTimeSlot, TicketTier, WebhookEvent,
)
from checkout.orchestrator import RequestContext, ReservationOrchestrator
from checkout.payments import PaymentIntentManager
from checkout.reconciler import WebhookReconciler

WEBHOOK_SECRET = "whsec_test"
KEY_ID = "rzp_test_key"


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def test_settings():
    return Settings()


class FakeRazorpay:
    """Stands in for the Razorpay Orders API behind an httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.orders: list[dict] = []
        self.fail_with: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"error": {"description": "gateway down"}})
        body = json.loads(request.content)
        order = {
            "id": f"order_{uuid.uuid4().hex[:14]}",
            "entity": "order",
            "amount": body["amount"],
            "currency": body["currency"],
            "receipt": body["receipt"],
            "status": "created",
        }
        self.orders.append(order)
        return httpx.Response(200, json=order)

    def gateway(self) -> RazorpayGateway:
        return RazorpayGateway(KEY_ID, "key_secret", transport=httpx.MockTransport(self.handler))


@pytest.fixture
def razorpay():
    return FakeRazorpay()


@pytest.fixture
def audit(session_factory):
    return AuditWriter(session_factory)


@pytest.fixture
def orchestrator(session_factory, razorpay, audit, test_settings):
    return ReservationOrchestrator(
        session_factory, Catalog(test_settings), PaymentIntentManager(razorpay.gateway()), audit, "INR",
    )


@pytest.fixture
def manual_orchestrator(session_factory, audit, test_settings):
    return ReservationOrchestrator(
        session_factory, Catalog(test_settings), PaymentIntentManager(None), audit, "INR",
    )


@pytest.fixture
def reconciler(session_factory, audit):
    return WebhookReconciler(session_factory, WEBHOOK_SECRET, audit)


@pytest.fixture
def user():
    return RequestContext(requestor_id=uuid.uuid4(), is_authenticated=True)


class Seeder:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def _add(self, *objs):
        async with self._session_factory() as session:
            session.add_all(objs)
            await session.commit()

    async def event(self, tiers=((50000, 5),), published=True, starts_in=dt.timedelta(days=7)):
        """Returns the event and one TicketTier per (price, capacity) pair."""
        event = ClubEvent(
            id=uuid.uuid4(),
            vendor_id=uuid.uuid4(),
            name="Friday Night",
            event_date=dt.datetime.now(dt.timezone.utc) + starts_in,
            is_published=published,
        )
        tier_rows = [
            TicketTier(id=uuid.uuid4(), event_id=event.id, name=f"Tier {i}", price=price, capacity=capacity)
            for i, (price, capacity) in enumerate(tiers)
        ]
        await self._add(event, *tier_rows)
        return event, tier_rows

    async def slot(self, on: dt.date, capacity=10, published=True, start_time="19:00"):
        restaurant = Restaurant(id=uuid.uuid4(), vendor_id=uuid.uuid4(), name="Spice Route", is_published=published)
        slot = RestaurantTimeSlot(
            id=uuid.uuid4(),
            restaurant_id=restaurant.id,
            day_of_week=(on.weekday() + 1) % 7,
            start_time=start_time,
            end_time="23:30",
            capacity=capacity,
        )
        await self._add(restaurant, slot)
        return restaurant, slot

    async def change(self, model, row_id, **values):
        async with self._session_factory() as session:
            row = await session.get(model, row_id)
            for name, value in values.items():
                setattr(row, name, value)
            await session.commit()

    async def lead(self, status="new", max_unlocks=None):
        lead = Lead(id=uuid.uuid4(), vendor_id=None, customer_name="Asha", status=status, max_unlocks=max_unlocks)
        await self._add(lead)
        return lead


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


class Store:
    """Read helpers for asserting on committed state."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def committed(self, resource_id) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.coalesce(func.sum(InventoryUnit.committed), 0))
                .where(InventoryUnit.resource_id == resource_id)
            )
            return result.scalar_one()

    async def payment(self, **criteria) -> Payment | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Payment).filter_by(**criteria))
            return result.scalar_one_or_none()

    async def reservation(self, kind, reservation_id):
        async with self._session_factory() as session:
            return await session.get(RESERVATION_MODELS[kind], reservation_id)

    async def hold(self, reservation_id) -> InventoryHold | None:
        async with self._session_factory() as session:
            return await session.get(InventoryHold, reservation_id)

    async def all(self, model, **criteria) -> list:
        async with self._session_factory() as session:
            result = await session.execute(select(model).filter_by(**criteria))
            return list(result.scalars().all())

    async def outbox(self, event_type=None) -> list[NotificationOutbox]:
        if event_type is None:
            return await self.all(NotificationOutbox)
        return await self.all(NotificationOutbox, event_type=event_type)

    async def webhook_event(self, event_id) -> WebhookEvent | None:
        async with self._session_factory() as session:
            result = await session.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
            return result.scalar_one_or_none()

    async def assert_confirmation_equivalence(self):
        """Every reservation is confirmed exactly when its payment is captured."""
        for model in RESERVATION_MODELS.values():
            for reservation in await self.all(model):
                payment = await self.payment(id=reservation.payment_id)
                assert (reservation.status == "confirmed") == (payment.status == "captured"), (
                    reservation.id, reservation.status, payment.status,
                )


@pytest.fixture
def store(session_factory):
    return Store(session_factory)


class Webhooks:
    """Builds signed Razorpay webhook deliveries."""

    def __init__(self, secret: str):
        self.secret = secret

    def deliver(self, event: str, entities: dict, event_id: str | None = None):
        event_id = event_id or f"evt_{uuid.uuid4().hex[:14]}"
        body = json.dumps({
            "entity": "event",
            "event": event,
            "id": event_id,
            "payload": {name: {"entity": entity} for name, entity in entities.items()},
        }).encode()
        return body, sign_webhook_body(body, self.secret), event_id

    def payment_captured(self, order_id: str, payment_id: str = "pay_captured1", event_id=None):
        return self.deliver(
            "payment.captured",
            {"payment": {"id": payment_id, "order_id": order_id, "status": "captured"}},
            event_id,
        )

    def payment_failed(self, order_id: str, reason: str = "Card declined", event_id=None):
        return self.deliver(
            "payment.failed",
            {"payment": {"id": "pay_failed1", "order_id": order_id, "status": "failed", "error_description": reason}},
            event_id,
        )

    def refund_processed(
        self, order_id: str, amount: int, payment_id: str = "pay_captured1", amount_refunded=None, event_id=None,
    ):
        """`amount` is this refund; `amount_refunded` the running total Razorpay
        reports on the payment, left out when None."""
        payment = {"id": payment_id, "order_id": order_id, "status": "captured"}
        if amount_refunded is not None:
            payment["amount_refunded"] = amount_refunded
        return self.deliver(
            "refund.processed",
            {
                "refund": {"id": f"rfnd_{uuid.uuid4().hex[:10]}", "payment_id": payment_id, "amount": amount, "status": "processed"},
                "payment": payment,
            },
            event_id,
        )


@pytest.fixture
def webhooks():
    return Webhooks(WEBHOOK_SECRET)
