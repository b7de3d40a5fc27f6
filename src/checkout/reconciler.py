"""Webhook reconciler.

RECEIVED -> AUTHENTICATED -> DEDUPED -> DISPATCHED -> APPLIED | IGNORED

The event id is recorded in its own transaction before any business effect
runs, and the unique index on it is what turns concurrent or repeated
deliveries into duplicates. The business effect and the `processed` flag
are committed together.
"""
import enum
import json
import logging
from typing import NamedTuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout import ledger, notifications, reservations
from checkout.audit import AuditWriter
from checkout.errors import ReconciliationError, SignatureInvalidError, ValidationError
from checkout.gateway import verify_webhook_signature
from checkout.models import Payment, PaymentStatus, ReservationStatus, WebhookEvent

logger = logging.getLogger("checkout.reconciler")

PAYMENT_CAPTURED = "payment.captured"
PAYMENT_FAILED   = "payment.failed"
REFUND_PROCESSED = "refund.processed"


class WebhookOutcome(str, enum.Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


class ReconcileResult(NamedTuple):
    event_id: str
    event_type: str | None
    outcome: WebhookOutcome


def _entity(payload: dict, name: str) -> dict | None:
    entity = ((payload.get("payload") or {}).get(name) or {}).get("entity")
    return entity if isinstance(entity, dict) else None


class _Skip(Exception):
    """Internal: stop dispatching without changing state."""


class WebhookReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        webhook_secret: str,
        audit: AuditWriter,
        provider: str = "razorpay",
    ):
        self._session_factory = session_factory
        self._secret = webhook_secret
        self._audit = audit
        self._provider = provider
        self._handlers = {
            PAYMENT_CAPTURED: self._on_payment_captured,
            PAYMENT_FAILED: self._on_payment_failed,
            REFUND_PROCESSED: self._on_refund_processed,
        }

    async def handle(self, body: bytes, signature: str | None, event_id: str | None = None) -> ReconcileResult:
        if not verify_webhook_signature(body, signature or "", self._secret):
            logger.warning("Rejected webhook: missing or invalid signature")
            raise SignatureInvalidError("Invalid signature")

        try:
            payload = json.loads(body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        event_id = event_id or payload.get("id")
        if not event_id:
            raise ValidationError("Webhook event id is missing")
        event_type = payload.get("event")

        try:
            if await self._is_recorded(event_id) or not await self._record(event_id, event_type, payload):
                logger.info("Duplicate delivery of event %s (%s)", event_id, event_type)
                return ReconcileResult(event_id, event_type, WebhookOutcome.DUPLICATE)
        except SQLAlchemyError as e:
            logger.exception("Could not record webhook event %s", event_id)
            raise ReconciliationError(f"Could not record event {event_id}") from e

        try:
            outcome = await self._dispatch(event_id, event_type, payload)
        except Exception as e:
            logger.exception("Processing webhook event %s (%s) failed", event_id, event_type)
            raise ReconciliationError(f"Processing event {event_id} failed") from e

        logger.info("Webhook event %s (%s): %s", event_id, event_type, outcome.value)
        if outcome == WebhookOutcome.APPLIED:
            await self._audit.log("transaction", "webhook_event", event_id, payload={"event": event_type})
        return ReconcileResult(event_id, event_type, outcome)

    async def _is_recorded(self, event_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(select(WebhookEvent.id).where(WebhookEvent.event_id == event_id))
            return result.first() is not None

    async def _record(self, event_id: str, event_type: str | None, payload: dict) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(WebhookEvent(
                        provider=self._provider,
                        event_id=event_id,
                        event_type=event_type,
                        payload=payload,
                    ))
        except IntegrityError:
            # A concurrent delivery of the same event got there first.
            return False
        return True

    async def _dispatch(self, event_id: str, event_type: str | None, payload: dict) -> WebhookOutcome:
        async with self._session_factory() as session:
            async with session.begin():
                handler = self._handlers.get(event_type)
                if handler is None:
                    logger.info("Unhandled event type %s (event %s)", event_type, event_id)
                    outcome = WebhookOutcome.IGNORED
                else:
                    try:
                        await handler(session, payload)
                        outcome = WebhookOutcome.APPLIED
                    except _Skip as skip:
                        logger.warning("Event %s (%s) ignored: %s", event_id, event_type, skip)
                        outcome = WebhookOutcome.IGNORED

                await session.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.event_id == event_id)
                    .values(processed=True)
                    .execution_options(synchronize_session=False)
                )
        return outcome

    async def _locked_payment(self, session: AsyncSession, *criteria) -> Payment:
        result = await session.execute(
            select(Payment).where(*criteria).with_for_update().execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise _Skip("no matching payment")
        return payment

    async def _move_payment(
        self,
        session: AsyncSession,
        payment: Payment,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        **values,
    ) -> None:
        result = await session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == from_status.value)
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise _Skip(f"payment {payment.id} is {payment.status}, not {from_status.value}")
        await session.refresh(payment)

    async def _on_payment_captured(self, session: AsyncSession, payload: dict) -> None:
        entity = _entity(payload, "payment")
        if not entity or not entity.get("order_id"):
            raise _Skip("payload has no payment entity")
        payment = await self._locked_payment(session, Payment.provider_order_id == entity["order_id"])
        if payment.status != PaymentStatus.PENDING.value:
            raise _Skip(f"payment {payment.id} is already {payment.status}")

        reservation = await reservations.get_reservation(session, payment.reservation_kind, payment.reservation_id)
        if reservation is None or reservation.status != ReservationStatus.PENDING.value:
            # Money was taken for a reservation that no longer exists as pending;
            # leave the payment pending so it surfaces for a manual refund.
            logger.error(
                "Captured payment %s for %s %s which is not pending; needs a manual refund",
                payment.id, payment.reservation_kind, payment.reservation_id,
            )
            raise _Skip("reservation is not pending")
        if not await ledger.is_held(session, payment.reservation_id):
            # The sweeper gave the inventory back and it may already be resold.
            logger.error(
                "Captured payment %s for %s %s whose inventory was released; needs a manual refund",
                payment.id, payment.reservation_kind, payment.reservation_id,
            )
            raise _Skip("inventory hold was released")

        await self._move_payment(
            session, payment, PaymentStatus.PENDING, PaymentStatus.CAPTURED,
            provider_payment_id=entity.get("id"),
        )
        if await reservations.confirm(session, payment) is None:
            raise RuntimeError(f"{payment.reservation_kind} {payment.reservation_id} changed while capturing")

    async def _on_payment_failed(self, session: AsyncSession, payload: dict) -> None:
        entity = _entity(payload, "payment")
        if not entity or not entity.get("order_id"):
            raise _Skip("payload has no payment entity")
        payment = await self._locked_payment(session, Payment.provider_order_id == entity["order_id"])
        reason = entity.get("error_description")
        await self._move_payment(
            session, payment, PaymentStatus.PENDING, PaymentStatus.FAILED,
            provider_payment_id=entity.get("id"),
            failure_reason=reason,
        )
        await reservations.cancel(
            session, payment, ReservationStatus.PENDING, notifications.RESERVATION_CANCELLED, reason=reason,
        )

    async def _on_refund_processed(self, session: AsyncSession, payload: dict) -> None:
        payment_entity = _entity(payload, "payment") or {}
        refund_entity = _entity(payload, "refund") or {}
        if payment_entity.get("order_id"):
            criteria = Payment.provider_order_id == payment_entity["order_id"]
        elif refund_entity.get("payment_id"):
            criteria = Payment.provider_payment_id == refund_entity["payment_id"]
        else:
            raise _Skip("payload has no payment reference")
        payment = await self._locked_payment(session, criteria)
        if payment.status != PaymentStatus.CAPTURED.value:
            raise _Skip(f"payment {payment.id} is {payment.status}, not captured")

        # Razorpay reports the running total on the payment entity; fall back
        # to adding this refund to what was recorded before.
        refunded = payment_entity.get("amount_refunded")
        if refunded is None and refund_entity.get("amount") is not None:
            refunded = payment.amount_refunded + int(refund_entity["amount"])
        if refunded is None:
            raise _Skip("payload has no refund amount")
        refunded = int(refunded)

        if refunded < payment.amount:
            result = await session.execute(
                update(Payment)
                .where(
                    Payment.id == payment.id,
                    Payment.status == PaymentStatus.CAPTURED.value,
                    Payment.amount_refunded < refunded,
                )
                .values(amount_refunded=refunded)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise _Skip(f"payment {payment.id} already has {payment.amount_refunded} refunded")
            logger.info(
                "Partial refund on payment %s: %d of %d; reservation kept",
                payment.id, refunded, payment.amount,
            )
            return

        await self._move_payment(
            session, payment, PaymentStatus.CAPTURED, PaymentStatus.REFUNDED, amount_refunded=payment.amount,
        )
        await reservations.cancel(
            session, payment, ReservationStatus.CONFIRMED, notifications.RESERVATION_REFUNDED,
            reason="refunded",
        )
