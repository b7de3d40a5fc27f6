"""Error taxonomy shared by the ledger, the payment intent manager, the
orchestrator and the webhook reconciler.

Every error carries the HTTP status it maps to and a short machine-readable
code; route handlers turn them into responses.
"""
from uuid import UUID


class CheckoutError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class ValidationError(CheckoutError):
    status_code = 400
    code = "invalid_request"


class AuthenticationRequired(CheckoutError):
    status_code = 401
    code = "unauthenticated"


class NotFoundError(CheckoutError):
    status_code = 404
    code = "not_found"


class CapacityExceeded(CheckoutError):
    """Expected contention outcome: the unit cannot take the requested quantity."""

    status_code = 409
    code = "capacity_exceeded"

    def __init__(self, unit_id: UUID, requested: int):
        super().__init__(f"Not enough capacity left for {requested} unit(s)")
        self.unit_id = unit_id
        self.requested = requested


class PaymentGatewayError(CheckoutError):
    status_code = 500
    code = "payment_gateway_error"


class SignatureInvalidError(CheckoutError):
    status_code = 400
    code = "invalid_signature"


class ReconciliationError(CheckoutError):
    status_code = 500
    code = "reconciliation_failed"


class UserServiceUnavailable(CheckoutError):
    status_code = 503
    code = "user_service_unavailable"


class HoldReleasedError(CheckoutError):
    """The reservation's inventory was given back before it could be confirmed."""

    status_code = 409
    code = "hold_released"
