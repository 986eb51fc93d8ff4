"""Exceptions raised by the storefront services.

Each class maps to one HTTP status in ``ERROR_STATUS_CODES``; ``main.py``
renders them through a single exception handler.
"""

from typing import Any, Dict, Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self.message = message
        self.extra = extra or {}
        super().__init__(message)


# Validation


class InvalidInputError(StorefrontError):
    """Raised when a request field is missing or malformed."""

    def __init__(self, field: str, reason: str):
        self.field = field
        super().__init__(f"Invalid {field}: {reason}", {"errors": {field: reason}})


class InvalidIdError(StorefrontError):
    """Raised when an identifier is not a valid ObjectId."""

    def __init__(self, kind: str, value: str):
        self.kind = kind
        self.value = value
        super().__init__(f"Invalid {kind} id format")


class InvalidOrderItemError(StorefrontError):
    """Raised when an explicit order item references an unusable product."""

    def __init__(self, product_id: str, reason: str):
        self.product_id = product_id
        super().__init__(f"Invalid order item {product_id}: {reason}", {"product_id": product_id})


# Not found


class ProductNotFoundError(StorefrontError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("Product not found")


class CartItemNotFoundError(StorefrontError):
    def __init__(self, cart_item_key: str):
        self.cart_item_key = cart_item_key
        super().__init__("Item not found in cart")


class OrderNotFoundError(StorefrontError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order not found")


class CategoryNotFoundError(StorefrontError):
    def __init__(self, category_id: str):
        self.category_id = category_id
        super().__init__("Category not found")


class AddressNotFoundError(StorefrontError):
    def __init__(self, address_id: str):
        self.address_id = address_id
        super().__init__("Address not found")


# Stock


class OutOfStockError(StorefrontError):
    """Raised when a requested quantity exceeds available inventory."""

    def __init__(self, product_id: str, available: int, message: Optional[str] = None):
        self.product_id = product_id
        self.available = available
        super().__init__(
            message or f"Only {available} items available in stock",
            {"available_quantity": available},
        )


class ProductUnavailableError(OutOfStockError):
    """Raised when a product is inactive or not for sale at all."""

    def __init__(self, product_id: str):
        super().__init__(product_id, 0, "Product not found or unavailable")


class InsufficientStockError(OutOfStockError):
    """Raised when the guarded decrement at order time finds too little stock."""

    def __init__(self, product_id: str, available: int, requested: int):
        self.requested = requested
        super().__init__(
            product_id,
            available,
            f"Insufficient stock for product {product_id}: requested {requested}, available {available}",
        )


# Auth


class NotAuthenticatedError(StorefrontError):
    def __init__(self, reason: str = "Not authenticated"):
        super().__init__(reason)


class ForbiddenError(StorefrontError):
    def __init__(self, reason: str = "Not authorized"):
        super().__init__(reason)


class RateLimitExceededError(StorefrontError):
    def __init__(self, retry_after: int, message: str = "Too many requests, please try again later."):
        self.retry_after = retry_after
        super().__init__(message, {"retry_after": retry_after})


# Conflicts


class EmptyCartError(StorefrontError):
    def __init__(self):
        super().__init__("Cart is empty")


class OrderNotDeletableError(StorefrontError):
    def __init__(self, status: str):
        self.status = status
        super().__init__("Only pending orders can be deleted")


class InvalidStatusTransitionError(StorefrontError):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change order status from {current} to {requested}")


# Infrastructure


class DatabaseNotConfiguredError(StorefrontError):
    def __init__(self):
        super().__init__("Database not configured")


class OrderTransactionError(StorefrontError):
    """Raised when the order transaction aborts for a non-business reason.

    The cause is logged, not returned to the client.
    """

    def __init__(self):
        super().__init__("Failed to create order, please try again")


ERROR_STATUS_CODES = {
    InvalidInputError: 400,
    InvalidIdError: 400,
    InvalidOrderItemError: 400,
    ProductNotFoundError: 404,
    ProductUnavailableError: 404,
    CartItemNotFoundError: 404,
    OrderNotFoundError: 404,
    CategoryNotFoundError: 404,
    AddressNotFoundError: 404,
    OutOfStockError: 400,
    InsufficientStockError: 400,
    NotAuthenticatedError: 401,
    ForbiddenError: 403,
    RateLimitExceededError: 429,
    EmptyCartError: 400,
    OrderNotDeletableError: 400,
    InvalidStatusTransitionError: 400,
    DatabaseNotConfiguredError: 500,
    OrderTransactionError: 500,
}
