import hashlib
import hmac
import logging
from typing import NamedTuple

import httpx

from checkout.errors import PaymentGatewayError

logger = logging.getLogger("checkout.gateway")


class GatewayOrder(NamedTuple):
    id: str
    amount: int
    currency: str


class RazorpayGateway:
    """Thin client for the Razorpay Orders API."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.key_id = key_id
        self._auth = (key_id, key_secret)
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport

    async def create_order(self, amount: int, currency: str, receipt: str, notes: dict) -> GatewayOrder:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                auth=self._auth,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                resp = await client.post(
                    "/v1/orders",
                    json={"amount": amount, "currency": currency, "receipt": receipt, "notes": notes},
                )
        except httpx.HTTPError as e:
            logger.error("Razorpay order request failed: %s", e)
            raise PaymentGatewayError(f"Payment gateway is unavailable: {e}")

        if resp.status_code >= 400:
            logger.error("Razorpay rejected order %s: %s %s", receipt, resp.status_code, resp.text)
            raise PaymentGatewayError(f"Payment gateway rejected the order ({resp.status_code})")

        data = resp.json()
        logger.info("Razorpay order %s created for receipt %s", data["id"], receipt)
        return GatewayOrder(id=data["id"], amount=int(data["amount"]), currency=data["currency"])


def sign_webhook_body(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: str, secret: str) -> bool:
    """Razorpay signs the raw request body with HMAC-SHA256 (hex)."""
    if not signature or not secret:
        return False
    return hmac.compare_digest(sign_webhook_body(body, secret), signature)
