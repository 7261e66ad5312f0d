from __future__ import annotations
from typing import Any, Optional


class AppError(Exception):
    status_code = 500
    message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, data: Optional[dict[str, Any]] = None):
        self.message = message or self.message
        self.data = data
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    message = "Invalid request"


class AuthenticationError(AppError):
    status_code = 401
    message = "Authentication required"


class AuthorizationError(AppError):
    status_code = 403
    message = "You do not have permission to do that"


class NotFound(AppError):
    status_code = 404
    message = "Not found"


class ProductNotFound(NotFound):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("Product not found", {"product_id": product_id})


class OrderNotFound(NotFound):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order not found", {"order_id": order_id})


class Conflict(AppError):
    status_code = 409
    message = "Conflict"


class InsufficientStock(Conflict):
    def __init__(self, product_id: str, available: int, requested: int, name: Optional[str] = None):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        label = name or product_id
        super().__init__(
            f"Insufficient stock for {label}",
            {"product_id": product_id, "available": available, "requested": requested},
        )


class InvalidTransition(Conflict):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move from {current} to {target}",
            {"current": current, "target": target},
        )


class PaymentVerificationFailed(AppError):
    status_code = 400
    message = "Payment could not be verified"


class PaymentGatewayError(AppError):
    status_code = 500
    message = "Payment provider error"


class RateLimited(AppError):
    status_code = 429
    message = "Too many requests, please try again later"
