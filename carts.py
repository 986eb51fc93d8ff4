"""Cart mutations.

Every change to a cart goes through this module. Mutations read the product
and the cart inside one transaction, run the stock check, and write the cart
back in the same transaction, so two requests racing on the same cart line
cannot both pass the check against stale quantities.
"""

import logging
from typing import Dict, List, Optional

from cart_keys import generate_cart_item_key, item_key, item_variants, normalize_variants
from exceptions import CartItemNotFoundError, InvalidIdError, ProductNotFoundError
from inventory import check_stock, resolve_unit_price
from repository import is_valid_id
from schemas import CartItem

logger = logging.getLogger(__name__)

PRODUCT_SUMMARY_FIELDS = ("id", "name", "slug", "price", "discount_price", "image", "status", "quantity")


def empty_cart(user_id: str) -> dict:
    return {"user_id": user_id, "items": [], "total_items": 0, "total_price": 0}


def recompute_totals(cart: dict) -> dict:
    """Refresh the denormalized totals; call before every cart write."""
    items = cart.get("items") or []
    cart["total_items"] = sum(int(item["quantity"]) for item in items)
    cart["total_price"] = round(sum(float(item["total_price"]) for item in items), 2)
    return cart


def find_item_index(items: List[dict], cart_item_key: str) -> int:
    # item_key() derives keys for legacy items, so this also matches on product+variant.
    for index, item in enumerate(items):
        if item_key(item) == cart_item_key:
            return index
    return -1


def make_cart_item(product_id: str, quantity: int, price: float,
                   color: Optional[str] = None, size: Optional[str] = None) -> dict:
    variants = normalize_variants(color=color, size=size)
    return CartItem(
        cart_item_key=generate_cart_item_key(product_id, **variants),
        product_id=product_id,
        quantity=quantity,
        price=price,
        total_price=round(price * quantity, 2),
        **variants,
    ).model_dump()


def _validate_product_id(product_id: str) -> None:
    if not is_valid_id(product_id):
        raise InvalidIdError("product", product_id)


def get_or_create_cart(repo, user_id: str, session=None) -> dict:
    cart = repo.get_cart(user_id, session=session)
    if cart is None:
        cart = repo.save_cart(empty_cart(user_id), session=session)
    return cart


def add_item(repo, user_id: str, product_id: str, quantity: int,
             color: Optional[str] = None, size: Optional[str] = None) -> dict:
    """Add ``quantity`` units of a product variant, merging with an existing line."""
    _validate_product_id(product_id)
    variants = normalize_variants(color=color, size=size)
    key = generate_cart_item_key(product_id, **variants)

    def txn(session):
        product = repo.get_product(product_id, session=session)
        if product is None:
            raise ProductNotFoundError(product_id)
        cart = repo.get_cart(user_id, session=session) or empty_cart(user_id)
        items = list(cart.get("items") or [])
        index = find_item_index(items, key)
        held = int(items[index]["quantity"]) if index >= 0 else 0

        price = check_stock(product, quantity, held)

        if index >= 0:
            items[index] = make_cart_item(product_id, held + quantity, price, **variants)
        else:
            items.append(make_cart_item(product_id, quantity, price, **variants))
        cart["items"] = items
        recompute_totals(cart)
        return repo.save_cart(cart, session=session)

    cart = repo.run_in_transaction(txn)
    logger.debug("Cart of user %s: added %s x %s", user_id, quantity, key)
    return cart


def set_item_quantity(repo, user_id: str, product_id: str, quantity: int,
                      color: Optional[str] = None, size: Optional[str] = None) -> dict:
    """Replace the quantity of an existing cart line."""
    _validate_product_id(product_id)
    variants = normalize_variants(color=color, size=size)
    key = generate_cart_item_key(product_id, **variants)

    def txn(session):
        product = repo.get_product(product_id, session=session)
        if product is None:
            raise ProductNotFoundError(product_id)
        cart = repo.get_cart(user_id, session=session)
        if cart is None:
            raise CartItemNotFoundError(key)
        items = list(cart.get("items") or [])
        index = find_item_index(items, key)
        if index < 0:
            raise CartItemNotFoundError(key)

        price = check_stock(product, quantity)

        items[index] = make_cart_item(product_id, quantity, price, **variants)
        cart["items"] = items
        recompute_totals(cart)
        return repo.save_cart(cart, session=session)

    return repo.run_in_transaction(txn)


def remove_item(repo, user_id: str, product_id: str,
                color: Optional[str] = None, size: Optional[str] = None) -> dict:
    _validate_product_id(product_id)
    key = generate_cart_item_key(product_id, color=color, size=size)

    def txn(session):
        cart = repo.get_cart(user_id, session=session)
        if cart is None:
            raise CartItemNotFoundError(key)
        items = cart.get("items") or []
        remaining = [item for item in items if item_key(item) != key]
        if len(remaining) == len(items):
            raise CartItemNotFoundError(key)
        cart["items"] = remaining
        recompute_totals(cart)
        return repo.save_cart(cart, session=session)

    return repo.run_in_transaction(txn)


def clear_cart(repo, user_id: str, session=None) -> dict:
    return repo.clear_cart(user_id, session=session)


def _heal(cart: dict, products: Dict[str, dict]) -> bool:
    """Drop lines for missing or inactive products and backfill missing keys.

    Returns True when the cart was changed and needs saving.
    """
    items = cart.get("items") or []
    valid = []
    for item in items:
        product = products.get(str(item.get("product_id")))
        if product is None or not product.get("active", False):
            continue
        if not item.get("cart_item_key"):
            item = dict(item, cart_item_key=item_key(item), **item_variants(item))
        valid.append(item)

    changed = len(valid) != len(items) or any(
        new is not old for new, old in zip(valid, items)
    )
    if changed:
        dropped = len(items) - len(valid)
        logger.warning(
            "Repaired cart of user %s: dropped %s unavailable item(s), kept %s",
            cart["user_id"], dropped, len(valid),
        )
        cart["items"] = valid
        recompute_totals(cart)
    return changed


def load_cart(repo, user_id: str) -> dict:
    """Fetch (or lazily create) a cart, repair it, and return its enriched view."""

    def txn(session):
        cart = get_or_create_cart(repo, user_id, session=session)
        products = repo.get_products(
            [str(item.get("product_id")) for item in cart.get("items") or []], session=session
        )
        if _heal(cart, products):
            cart = repo.save_cart(cart, session=session)
        return cart, products

    cart, products = repo.run_in_transaction(txn)
    return build_cart_view(cart, products)


def cart_view(repo, cart: dict) -> dict:
    products = repo.get_products([str(item.get("product_id")) for item in cart.get("items") or []])
    return build_cart_view(cart, products)


def build_cart_view(cart: dict, products: Dict[str, dict]) -> dict:
    """Join cart lines with live product data.

    Each line gains ``product`` (a summary), ``current_price``, ``in_stock``
    and ``available_quantity``. Lines whose product disappeared keep
    ``product=None`` and report no stock.
    """
    items = []
    for item in cart.get("items") or []:
        product = products.get(str(item.get("product_id")))
        if product is None:
            items.append(dict(item, product=None, current_price=item.get("price"),
                              in_stock=False, available_quantity=0))
            continue
        available = int(product.get("quantity", 0))
        items.append(dict(
            item,
            product={k: product.get(k) for k in PRODUCT_SUMMARY_FIELDS},
            current_price=resolve_unit_price(product),
            in_stock=available >= int(item["quantity"]),
            available_quantity=available,
        ))

    return {
        "id": cart.get("id"),
        "user_id": cart["user_id"],
        "items": items,
        "total_items": cart.get("total_items", 0),
        "total_price": cart.get("total_price", 0),
        "summary": {
            "subtotal": round(sum(float(i["total_price"]) for i in items), 2),
            "total_items": sum(int(i["quantity"]) for i in items),
        },
        "updated_at": cart.get("updated_at"),
    }
