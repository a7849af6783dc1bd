"""Error taxonomy shared by services and routes.

Services raise these close to where a precondition fails; ``main.py``
renders them as ``{"status", "code", "message"}`` responses.
"""


class ServiceError(Exception):
    """Base exception for all domain errors."""

    status_code = 500
    code = "service_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"status": self.status_code, "code": self.code, "message": self.message}


class ValidationError(ServiceError):
    """Missing or malformed input."""

    status_code = 400
    code = "validation_error"


class AuthorizationError(ServiceError):
    """Caller acts on a resource they do not own."""

    status_code = 403
    code = "forbidden"


class NotFoundError(ServiceError):
    """A referenced entity does not exist."""

    status_code = 404
    code = "not_found"


class ConflictError(ServiceError):
    """The current state of an entity does not allow the operation."""

    status_code = 409
    code = "conflict"


class UpstreamGatewayError(ServiceError):
    """The payment provider failed or timed out. Safe to retry."""

    status_code = 502
    code = "gateway_error"
    retryable = True


class PersistenceError(ServiceError):
    """The store rejected a write."""

    status_code = 500
    code = "persistence_error"


class InsufficientStockError(ConflictError):
    code = "insufficient_stock"

    def __init__(self, product_id: int, product_name: str | None = None, requested: int | None = None, available: int | None = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        label = product_name or f"#{product_id}"
        super().__init__(f"Insufficient stock for product: {label}")


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move order from '{current}' to '{target}'")


class DeliveryPointNotFoundError(NotFoundError):
    code = "delivery_point_not_found"

    def __init__(self, zone_id: int):
        self.zone_id = zone_id
        super().__init__("Delivery point not found or inactive")


class DiscountNotFoundError(NotFoundError):
    code = "discount_not_found"

    def __init__(self, code: str):
        super().__init__(f"Invalid discount code: {code}")


class DiscountInactiveError(ValidationError):
    code = "discount_inactive"


class DiscountExpiredError(ValidationError):
    code = "discount_expired"


class DiscountBelowMinimumError(ValidationError):
    code = "discount_below_minimum"

    def __init__(self, min_purchase):
        self.min_purchase = min_purchase
        super().__init__(f"Minimum purchase amount of {min_purchase} required for this discount")


class DiscountExhaustedError(ConflictError):
    code = "discount_exhausted"

    def __init__(self, code: str):
        super().__init__(f"Discount code {code} has reached its usage limit")
