"""Order creation and lifecycle.

``create_order`` turns a cart (or an explicit item list) into an order in a
single transaction: snapshot the lines, price them, number the order, insert
it, take the stock off each product with a guarded decrement and clear the
cart. Any failure aborts the whole transaction.
"""

import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from cart_keys import item_variants, normalize_variants
from exceptions import (
    EmptyCartError,
    ForbiddenError,
    InsufficientStockError,
    InvalidIdError,
    InvalidOrderItemError,
    InvalidStatusTransitionError,
    OrderNotDeletableError,
    OrderNotFoundError,
    OrderTransactionError,
    StorefrontError,
)
from inventory import derive_product_status, resolve_unit_price
from repository import is_valid_id, utcnow
from schemas import Order, OrderItem
from settings import SHIPPING_PRICE, TAX_RATE

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"
REFUNDED = "refunded"
FAILED = "failed"

ORDER_STATUSES = (PENDING, PROCESSING, SHIPPED, DELIVERED, CANCELLED, REFUNDED, FAILED)
TERMINAL_STATUSES = frozenset({DELIVERED, CANCELLED, REFUNDED, FAILED})
ABANDON_STATUSES = frozenset({CANCELLED, REFUNDED, FAILED})
NEXT_STATUS = {PENDING: PROCESSING, PROCESSING: SHIPPED, SHIPPED: DELIVERED}


def can_transition(current: str, new: str) -> bool:
    if current == new:
        return True
    if current in TERMINAL_STATUSES:
        return False
    return NEXT_STATUS.get(current) == new or new in ABANDON_STATUSES


def format_order_number(when: datetime, sequence: int) -> str:
    return f"ORD-{when:%y%m%d}-{sequence:05d}"


def generate_order_number(repo, session=None, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    sequence = repo.next_sequence(f"order:{now:%y%m%d}", session=session)
    return format_order_number(now, sequence)


def compute_pricing(line_items: List[dict], shipping_price: Optional[float] = None,
                    tax_price: Optional[float] = None) -> Dict[str, float]:
    items_price = round(sum(float(line["total_price"]) for line in line_items), 2)
    if shipping_price is None:
        shipping_price = SHIPPING_PRICE
    if tax_price is None:
        tax_price = round(items_price * TAX_RATE, 2)
    return {
        "items_price": items_price,
        "shipping_price": float(shipping_price),
        "tax_price": float(tax_price),
        "total_price": round(items_price + shipping_price + tax_price, 2),
    }


def _line_item(product: dict, quantity: int, price: float, total_price: Optional[float] = None,
               color: Optional[str] = None, size: Optional[str] = None) -> dict:
    if total_price is None:
        total_price = round(quantity * price, 2)
    return OrderItem(
        product_id=product["id"],
        name=product.get("name") or "",
        quantity=quantity,
        price=price,
        total_price=total_price,
        color=color,
        size=size,
        image=product.get("image"),
    ).model_dump()


def _orderable_product(products: Dict[str, dict], product_id: str) -> dict:
    product = products.get(product_id)
    if product is None:
        raise InvalidOrderItemError(product_id, "product not found")
    if not product.get("active", False):
        raise InvalidOrderItemError(product_id, "product is not available")
    return product


def snapshot_cart_items(cart: dict, products: Dict[str, dict]) -> List[dict]:
    """Copy cart lines into order lines at the price captured in the cart."""
    lines = []
    for item in cart.get("items") or []:
        product = _orderable_product(products, str(item["product_id"]))
        lines.append(_line_item(
            product,
            int(item["quantity"]),
            float(item["price"]),
            item.get("total_price"),
            **item_variants(item),
        ))
    return lines


def snapshot_explicit_items(items: Iterable[dict], products: Dict[str, dict]) -> List[dict]:
    """Build order lines from caller-supplied items, priced from the live product."""
    lines = []
    for item in items:
        product = _orderable_product(products, str(item["product_id"]))
        variants = normalize_variants(item.get("color"), item.get("size"))
        lines.append(_line_item(product, int(item["quantity"]), resolve_unit_price(product), **variants))
    return lines


def reserve_stock(repo, product_id: str, quantity: int, session=None) -> dict:
    """Decrement stock and bump ``sold`` unless it would go negative."""
    updated = repo.decrement_stock(product_id, quantity, session=session)
    if updated is None:
        current = repo.get_product(product_id, session=session)
        if current is None:
            raise InvalidOrderItemError(product_id, "product not found")
        raise InsufficientStockError(product_id, int(current.get("quantity", 0)), quantity)
    status = derive_product_status(int(updated["quantity"]), bool(updated.get("active", False)))
    if status != updated.get("status"):
        repo.set_product_status(product_id, status, session=session)
        updated["status"] = status
    return updated


def create_order(repo, user_id: str, items: Optional[List[dict]] = None,
                 shipping: Optional[dict] = None, payment: Optional[dict] = None,
                 shipping_price: Optional[float] = None, tax_price: Optional[float] = None,
                 notes: Optional[str] = None, keep_cart: bool = False) -> dict:
    for item in items or []:
        if not is_valid_id(str(item.get("product_id"))):
            raise InvalidIdError("product", str(item.get("product_id")))

    attempted: List[tuple] = []

    def txn(session):
        if items:
            products = repo.get_products([str(i["product_id"]) for i in items], session=session)
            line_items = snapshot_explicit_items(items, products)
        else:
            cart = repo.get_cart(user_id, session=session)
            if not cart or not cart.get("items"):
                raise EmptyCartError()
            products = repo.get_products([str(i["product_id"]) for i in cart["items"]], session=session)
            line_items = snapshot_cart_items(cart, products)
        attempted[:] = [(line["product_id"], line["quantity"]) for line in line_items]

        now = utcnow()
        doc = Order(
            user_id=user_id,
            order_number=generate_order_number(repo, session=session, now=now),
            items=line_items,
            shipping=shipping,
            payment=payment,
            notes=notes,
            created_at=now,
            updated_at=now,
            **compute_pricing(line_items, shipping_price, tax_price),
        ).model_dump()
        order = repo.insert_order(doc, session=session)

        for line in line_items:
            reserve_stock(repo, line["product_id"], line["quantity"], session=session)

        if not keep_cart:
            repo.clear_cart(user_id, session=session)
        return order

    try:
        order = repo.run_in_transaction(txn)
    except InsufficientStockError as exc:
        logger.warning(
            "Order for user %s rolled back, stock ran out for %s: %s",
            user_id, exc.product_id, attempted or "<no items resolved>",
        )
        raise
    except StorefrontError:
        raise
    except Exception as exc:
        logger.exception("Order transaction failed for user %s with items %s", user_id, attempted or "<no items resolved>")
        raise OrderTransactionError() from exc

    logger.info("Created order %s for user %s", order["order_number"], user_id)
    return order


# Reads and lifecycle


def order_view(order: dict, users: Dict[str, dict]) -> dict:
    """Order joined with a summary of the user who placed it."""
    user = users.get(str(order.get("user_id")))
    summary = {"id": user["id"], "name": user.get("name"), "email": user.get("email")} if user else None
    return dict(order, user=summary)


def _fetch_order(repo, order_id: str) -> dict:
    if not is_valid_id(order_id):
        raise InvalidIdError("order", order_id)
    order = repo.get_order(order_id)
    if order is None:
        raise OrderNotFoundError(order_id)
    return order


def list_orders(repo, user_id: str, admin: bool = False, page: int = 1, limit: int = 10,
                status: Optional[str] = None, is_paid: Optional[bool] = None,
                is_delivered: Optional[bool] = None) -> dict:
    filters: Dict[str, Any] = {}
    if not admin:
        filters["user_id"] = user_id
    if status:
        filters["status"] = status
    if is_paid is not None:
        filters["is_paid"] = is_paid
    if is_delivered is not None:
        filters["is_delivered"] = is_delivered

    total = repo.count_orders(filters)
    orders = repo.find_orders(filters, skip=(page - 1) * limit, limit=limit)
    users = repo.get_users(o["user_id"] for o in orders)
    return {
        "orders": [order_view(o, users) for o in orders],
        "pagination": {
            "current_page": page,
            "total_pages": math.ceil(total / limit) if limit else 0,
            "total_orders": total,
        },
    }


def get_order(repo, order_id: str, user_id: str, admin: bool = False) -> dict:
    order = _fetch_order(repo, order_id)
    if not admin and order.get("user_id") != user_id:
        raise ForbiddenError("Not authorized to view this order")
    return order_view(order, repo.get_users([order["user_id"]]))


def update_order(repo, order_id: str, changes: Dict[str, Any]) -> dict:
    order = _fetch_order(repo, order_id)
    now = utcnow()
    fields: Dict[str, Any] = {}

    status = changes.get("status")
    if status and status != order.get("status"):
        if not can_transition(order.get("status", PENDING), status):
            raise InvalidStatusTransitionError(order.get("status", PENDING), status)
        fields["status"] = status
        if status == DELIVERED:
            fields["is_delivered"] = True
            fields["delivered_at"] = now
        elif status == CANCELLED:
            fields["cancelled_at"] = now

    payment = dict(order.get("payment") or {})
    if changes.get("is_paid") is not None:
        fields["is_paid"] = bool(changes["is_paid"])
        if changes["is_paid"] and not order.get("paid_at"):
            fields["paid_at"] = now
            if payment:
                payment["status"] = "paid"
    if changes.get("payment_status") and payment:
        payment["status"] = changes["payment_status"]
    if payment != (order.get("payment") or {}):
        fields["payment"] = payment

    for key in ("tracking_number", "notes"):
        if changes.get(key) is not None:
            fields[key] = changes[key]

    if not fields:
        return order_view(order, repo.get_users([order["user_id"]]))

    fields["updated_at"] = now
    # A status change only lands if nobody moved the order since it was read.
    expected = order.get("status", PENDING) if "status" in fields else None
    updated = repo.update_order(order_id, fields, expected_status=expected)
    if updated is None:
        current = _fetch_order(repo, order_id)
        logger.warning(
            "Order %s changed to %s while updating to %s",
            order.get("order_number"), current.get("status"), status,
        )
        raise InvalidStatusTransitionError(current.get("status", PENDING), status)
    logger.info("Updated order %s: %s", order.get("order_number"), sorted(fields))
    return order_view(updated, repo.get_users([updated["user_id"]]))


def delete_order(repo, order_id: str) -> None:
    order = _fetch_order(repo, order_id)
    if order.get("status") != PENDING:
        raise OrderNotDeletableError(order.get("status"))
    if not repo.delete_order(order_id, expected_status=PENDING):
        current = _fetch_order(repo, order_id)
        raise OrderNotDeletableError(current.get("status"))
    logger.info("Deleted order %s", order.get("order_number"))
