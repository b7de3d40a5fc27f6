"""Payment intent manager: external gateway order plus the local Payment row."""
import logging
from typing import NamedTuple
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from checkout.config import Settings
from checkout.errors import PaymentGatewayError, ValidationError
from checkout.gateway import RazorpayGateway
from checkout.models import Payment, PaymentStatus, ReservationKind

logger = logging.getLogger("checkout.payments")

CHECKOUT_MODE_GATEWAY = "gateway"
CHECKOUT_MODE_MANUAL = "manual"


class PurchaseContext(NamedTuple):
    user_id: UUID
    reservation_kind: ReservationKind
    reservation_id: UUID


class PaymentIntent(NamedTuple):
    payment: Payment
    provider_order_id: str
    checkout_key: str
    checkout_mode: str

    @property
    def captured(self) -> bool:
        return self.payment.status == PaymentStatus.CAPTURED.value


class PaymentIntentManager:
    """Creates payment intents.

    Without a gateway the manager runs in manual mode: it makes up a local
    order id and records the payment as already captured.
    """

    def __init__(self, gateway: RazorpayGateway | None):
        self.gateway = gateway

    async def create_intent(
        self,
        session: AsyncSession,
        amount: int,
        currency: str,
        context: PurchaseContext,
    ) -> PaymentIntent:
        if amount <= 0:
            raise ValidationError("Invalid order amount")

        if self.gateway is None:
            provider = "manual"
            provider_order_id = f"manual_{context.reservation_kind.value}_{uuid4().hex}"
            status = PaymentStatus.CAPTURED
            checkout_key = ""
            checkout_mode = CHECKOUT_MODE_MANUAL
        else:
            # The gateway call happens before anything is added to the session,
            # so a failure here leaves no local payment behind.
            order = await self.gateway.create_order(
                amount=amount,
                currency=currency,
                receipt=context.reservation_id.hex,
                notes={
                    "reservation_kind": context.reservation_kind.value,
                    "reservation_id": str(context.reservation_id),
                    "user_id": str(context.user_id),
                },
            )
            if order.amount != amount:
                raise PaymentGatewayError(
                    f"Gateway order {order.id} amount {order.amount} does not match {amount}"
                )
            provider = "razorpay"
            provider_order_id = order.id
            status = PaymentStatus.PENDING
            checkout_key = self.gateway.key_id
            checkout_mode = CHECKOUT_MODE_GATEWAY

        payment = Payment(
            amount=amount,
            currency=currency,
            provider=provider,
            provider_order_id=provider_order_id,
            status=status.value,
            user_id=context.user_id,
            reservation_kind=context.reservation_kind.value,
            reservation_id=context.reservation_id,
        )
        session.add(payment)
        await session.flush()
        logger.info(
            "Payment %s (%s, %s) for %s %s: %d %s",
            payment.id, provider_order_id, status.value,
            context.reservation_kind.value, context.reservation_id, amount, currency,
        )
        return PaymentIntent(payment, provider_order_id, checkout_key, checkout_mode)


def build_intent_manager(settings: Settings) -> PaymentIntentManager:
    if not settings.gateway_configured:
        logger.warning("Razorpay is not configured; payments run in manual mode")
        return PaymentIntentManager(gateway=None)
    return PaymentIntentManager(
        RazorpayGateway(
            settings.RAZORPAY_KEY_ID,
            settings.RAZORPAY_KEY_SECRET,
            base_url=settings.RAZORPAY_API_URL,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )
    )
