import asyncio
import logging
from functools import lru_cache
from typing import Optional

from fastapi import FastAPI, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import uvicorn

from checkout import schemas, workers
from checkout.audit import AuditWriter
from checkout.auth import get_request_context
from checkout.catalog import Catalog, PurchaseLine
from checkout.config import settings
from checkout.db import engine, Base, get_session_factory
from checkout.errors import CheckoutError
from checkout.messaging import init_rabbit, close_rabbit
from checkout.models import ReservationKind
from checkout.orchestrator import PurchaseResult, ReservationOrchestrator, RequestContext
from checkout.payments import build_intent_manager
from checkout.reconciler import WebhookOutcome, WebhookReconciler

logger = logging.getLogger("checkout.main")
app = FastAPI(title="Checkout Service")

WEBHOOK_STATUS = {
    WebhookOutcome.APPLIED: "ok",
    WebhookOutcome.IGNORED: "ignored",
    WebhookOutcome.DUPLICATE: "already processed",
}

@app.on_event("startup")
async def startup_event():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await init_rabbit()

    app.state.outbox_task = asyncio.create_task(workers.outbox_publisher())

@app.on_event("shutdown")
async def shutdown_event():
    app.state.outbox_task.cancel()
    await close_rabbit()


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.detail})

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    detail = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'][1:]) or 'body'}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": "invalid_request", "detail": detail})


@lru_cache
def get_orchestrator() -> ReservationOrchestrator:
    session_factory = get_session_factory()
    return ReservationOrchestrator(
        session_factory,
        Catalog(settings),
        build_intent_manager(settings),
        AuditWriter(session_factory),
        settings.CURRENCY,
    )

@lru_cache
def get_reconciler() -> WebhookReconciler:
    session_factory = get_session_factory()
    return WebhookReconciler(
        session_factory,
        settings.RAZORPAY_WEBHOOK_SECRET,
        AuditWriter(session_factory),
    )


RESOURCE_NAME_FIELDS = {
    ReservationKind.BOOKING: "restaurant_name",
    ReservationKind.TICKET_ORDER: "event_name",
    ReservationKind.LEAD_UNLOCK: "lead_name",
}

def _purchase_response(result: PurchaseResult) -> schemas.PurchaseResponse:
    return schemas.PurchaseResponse(
        order_id=result.provider_order_id,
        amount=result.amount,
        currency=result.currency,
        checkout_key=result.checkout_key,
        internal_reservation_id=result.reservation_id,
        checkout_mode=result.checkout_mode,
        reservation_status=result.reservation_status,
        **{RESOURCE_NAME_FIELDS[result.reservation_kind]: result.resource_name},
    )

@app.post("/bookings", response_model=schemas.PurchaseResponse, status_code=201)
async def create_booking(
    req: schemas.BookingRequest,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.purchase(
        ctx,
        ReservationKind.BOOKING,
        [PurchaseLine(req.resource_id, req.quantity)],
        service_date=req.date,
    )
    return _purchase_response(result)

@app.post("/tickets/purchase", response_model=schemas.PurchaseResponse, status_code=201)
async def purchase_tickets(
    req: schemas.TicketPurchaseRequest,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.purchase(
        ctx,
        ReservationKind.TICKET_ORDER,
        [PurchaseLine(line.resource_id, line.quantity) for line in req.lines()],
    )
    return _purchase_response(result)

@app.post("/leads/unlock", response_model=schemas.PurchaseResponse, status_code=201)
async def unlock_lead(
    req: schemas.LeadUnlockRequest,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.purchase(
        ctx,
        ReservationKind.LEAD_UNLOCK,
        [PurchaseLine(req.resource_id, req.quantity)],
    )
    return _purchase_response(result)


@app.post("/webhooks/razorpay", response_model=schemas.WebhookAck)
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    x_razorpay_event_id: Optional[str] = Header(None),
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    body = await request.body()
    result = await reconciler.handle(body, x_razorpay_signature, x_razorpay_event_id)
    return schemas.WebhookAck(status=WEBHOOK_STATUS[result.outcome])


@app.get("/health")
async def health():
    return {"status": "ok"}

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run("checkout.main:app", host="0.0.0.0", port=8000)
