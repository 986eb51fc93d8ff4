import logging
from typing import Optional

from exceptions import OutOfStockError, ProductUnavailableError
from settings import LOW_STOCK_THRESHOLD

logger = logging.getLogger(__name__)

IN_STOCK = "in stock"
LOW_STOCK = "low stock"
OUT_OF_STOCK = "out of stock"
DRAFT = "draft"

PRODUCT_STATUSES = (IN_STOCK, LOW_STOCK, OUT_OF_STOCK, DRAFT)
UNSELLABLE_STATUSES = (DRAFT, OUT_OF_STOCK)


def derive_product_status(quantity: int, active: bool) -> str:
    """Status of a product as a function of its stock and active flag.

    Called wherever ``quantity`` or ``active`` is written.
    """
    if not active:
        return DRAFT
    if quantity <= 0:
        return OUT_OF_STOCK
    if quantity <= LOW_STOCK_THRESHOLD:
        return LOW_STOCK
    return IN_STOCK


def resolve_unit_price(product: dict) -> float:
    price = float(product.get("price", 0))
    discount: Optional[float] = product.get("discount_price")
    if discount is not None and float(discount) < price:
        return float(discount)
    return price


def check_stock(product: dict, requested: int, currently_held: int = 0) -> float:
    """Validate that ``requested`` more units may be reserved for a cart line.

    ``currently_held`` is what the same cart line already holds, so merges are
    checked against the new total. Returns the unit price to charge.
    """
    product_id = str(product.get("_id") or product.get("id"))
    quantity = int(product.get("quantity", 0))
    active = bool(product.get("active", False))

    if not active:
        raise ProductUnavailableError(product_id)
    if derive_product_status(quantity, active) in UNSELLABLE_STATUSES:
        logger.info("Rejected reservation of %s: product %s is out of stock", requested, product_id)
        raise OutOfStockError(product_id, max(quantity, 0))

    total = requested + currently_held
    if total > quantity:
        logger.info(
            "Rejected reservation of %s (holding %s) for product %s with %s in stock",
            requested, currently_held, product_id, quantity,
        )
        if currently_held:
            raise OutOfStockError(
                product_id,
                quantity,
                f"Cannot add {requested} items. Total would exceed available stock ({quantity})",
            )
        raise OutOfStockError(product_id, quantity)

    return resolve_unit_price(product)
