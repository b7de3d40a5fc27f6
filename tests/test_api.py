import datetime as dt
import uuid

import httpx
import pytest

from checkout.auth import get_request_context, resolve_user
from checkout.errors import AuthenticationRequired, UserServiceUnavailable
from checkout.main import app, get_orchestrator, get_reconciler
from checkout.models import ReservationKind
from checkout.orchestrator import RequestContext


@pytest.fixture
async def client(orchestrator, reconciler):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def signed_in(user):
    app.dependency_overrides[get_request_context] = lambda: user
    return user


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_purchase_tickets(client, signed_in, seed, store):
    _, (tier,) = await seed.event(tiers=[(50000, 5)])

    resp = await client.post("/tickets/purchase", json={"resourceId": str(tier.id), "quantity": 2})

    assert resp.status_code == 201
    data = resp.json()
    assert data["amount"] == 100000
    assert data["currency"] == "INR"
    assert data["checkoutKey"] == "rzp_test_key"
    assert data["checkoutMode"] == "gateway"
    assert data["reservationStatus"] == "pending"
    assert data["orderId"].startswith("order_")
    assert data["eventName"] == "Friday Night"
    assert data["restaurantName"] is None
    assert data["leadName"] is None
    order = await store.reservation(ReservationKind.TICKET_ORDER, uuid.UUID(data["internalReservationId"]))
    assert order.user_id == signed_in.requestor_id


async def test_purchase_tickets_with_items(client, signed_in, seed, store):
    _, (vip, floor) = await seed.event(tiers=[(150000, 2), (50000, 10)])

    resp = await client.post("/tickets/purchase", json={"items": [
        {"resourceId": str(vip.id), "quantity": 1},
        {"resourceId": str(floor.id), "quantity": 3},
    ]})

    assert resp.status_code == 201
    assert resp.json()["amount"] == 300000
    assert await store.committed(floor.id) == 3


async def test_sold_out_is_409(client, signed_in, seed):
    _, (tier,) = await seed.event(tiers=[(50000, 1)])

    resp = await client.post("/tickets/purchase", json={"resourceId": str(tier.id), "quantity": 2})

    assert resp.status_code == 409
    assert resp.json()["error"] == "capacity_exceeded"


async def test_unknown_tier_is_404(client, signed_in):
    resp = await client.post("/tickets/purchase", json={"resourceId": str(uuid.uuid4()), "quantity": 1})
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


@pytest.mark.parametrize("body", [
    {"resourceId": "not-a-uuid", "quantity": 1},
    {"quantity": 1},
    {"resourceId": "00000000-0000-0000-0000-000000000001", "quantity": 0},
    {"items": []},
])
async def test_bad_request_is_400(client, signed_in, body):
    resp = await client.post("/tickets/purchase", json=body)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"


async def test_gateway_failure_is_500(client, signed_in, seed, razorpay, store):
    _, (tier,) = await seed.event(tiers=[(50000, 5)])
    razorpay.fail_with = 500

    resp = await client.post("/tickets/purchase", json={"resourceId": str(tier.id), "quantity": 1})

    assert resp.status_code == 500
    assert resp.json()["error"] == "payment_gateway_error"
    assert await store.committed(tier.id) == 0


async def test_missing_token_is_401(client, seed):
    _, (tier,) = await seed.event()

    resp = await client.post("/tickets/purchase", json={"resourceId": str(tier.id), "quantity": 1})

    assert resp.status_code == 401
    assert resp.json() == {"error": "unauthenticated", "detail": "Missing bearer token"}


async def test_book_table(client, signed_in, seed, test_settings):
    day = dt.date.today() + dt.timedelta(days=3)
    _, slot = await seed.slot(on=day, capacity=4)

    resp = await client.post("/bookings", json={"resourceId": str(slot.id), "quantity": 4, "date": day.isoformat()})
    assert resp.status_code == 201
    assert resp.json()["amount"] == test_settings.BOOKING_FEE
    assert resp.json()["restaurantName"] == "Spice Route"

    resp = await client.post("/bookings", json={"resourceId": str(slot.id), "quantity": 1, "date": day.isoformat()})
    assert resp.status_code == 409


async def test_unlock_lead(client, signed_in, seed, test_settings):
    lead = await seed.lead()

    resp = await client.post("/leads/unlock", json={"resourceId": str(lead.id)})
    assert resp.status_code == 201
    assert resp.json()["amount"] == test_settings.LEAD_UNLOCK_FEE
    assert resp.json()["leadName"] == "Asha"

    resp = await client.post("/leads/unlock", json={"resourceId": str(lead.id)})
    assert resp.status_code == 400


async def test_webhook_round_trip(client, signed_in, seed, webhooks, store):
    _, (tier,) = await seed.event(tiers=[(50000, 5)])
    purchase = (await client.post("/tickets/purchase", json={"resourceId": str(tier.id), "quantity": 1})).json()
    body, signature, event_id = webhooks.payment_captured(purchase["orderId"])
    headers = {"X-Razorpay-Signature": signature, "X-Razorpay-Event-Id": event_id}

    first = await client.post("/webhooks/razorpay", content=body, headers=headers)
    second = await client.post("/webhooks/razorpay", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json() == {"status": "ok"}
    assert second.json() == {"status": "already processed"}
    order = await store.reservation(ReservationKind.TICKET_ORDER, uuid.UUID(purchase["internalReservationId"]))
    assert order.status == "confirmed"


async def test_webhook_ignored_event(client, webhooks):
    body, signature, event_id = webhooks.deliver("order.paid", {"order": {"id": "order_x"}})

    resp = await client.post(
        "/webhooks/razorpay", content=body,
        headers={"X-Razorpay-Signature": signature, "X-Razorpay-Event-Id": event_id},
    )

    assert resp.status_code == 200
    assert resp.json() == {"status": "ignored"}


async def test_webhook_bad_signature_is_400(client, webhooks):
    body, _, event_id = webhooks.payment_captured("order_x")

    resp = await client.post(
        "/webhooks/razorpay", content=body,
        headers={"X-Razorpay-Signature": "0" * 64, "X-Razorpay-Event-Id": event_id},
    )

    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_signature"


def user_service(status_code, json=None, exc=None):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/users/me"
        assert request.headers["Authorization"] == "Bearer tok"
        if exc is not None:
            raise exc(request)
        return httpx.Response(status_code, json=json)
    return httpx.MockTransport(handler)


async def test_resolve_user():
    user_id = uuid.uuid4()
    ctx = await resolve_user("tok", "http://users", user_service(200, {"id": str(user_id), "email": "a@b.c"}))
    assert ctx == RequestContext(requestor_id=user_id, is_authenticated=True)


async def test_resolve_user_rejected_token():
    with pytest.raises(AuthenticationRequired):
        await resolve_user("tok", "http://users", user_service(401, {"detail": "bad token"}))


async def test_resolve_user_service_down():
    with pytest.raises(UserServiceUnavailable):
        await resolve_user(
            "tok", "http://users",
            user_service(None, exc=lambda request: httpx.ConnectError("refused", request=request)),
        )
