"""Cart item keys.

A cart item key identifies "this product with these options" so that adding
the same combination twice merges into one line. Variant fields are emitted
in a fixed order (color, then size), each labeled, joined with ``|``::

    64b0c0ffee...                      no variants
    64b0c0ffee...|color:red|size:M     both variants
"""

from typing import Dict, Optional, Tuple

KEY_SEPARATOR = "|"
FIELD_SEPARATOR = ":"
VARIANT_FIELDS = ("color", "size")


def normalize_variant(value: Optional[str]) -> Optional[str]:
    """Trim a variant value; empty strings become None."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def normalize_variants(color: Optional[str] = None, size: Optional[str] = None) -> Dict[str, Optional[str]]:
    return {"color": normalize_variant(color), "size": normalize_variant(size)}


def generate_cart_item_key(product_id: str, color: Optional[str] = None, size: Optional[str] = None) -> str:
    variants = normalize_variants(color=color, size=size)
    parts = [f"{name}{FIELD_SEPARATOR}{variants[name]}" for name in VARIANT_FIELDS if variants[name]]
    if not parts:
        return str(product_id)
    return KEY_SEPARATOR.join([str(product_id)] + parts)


def parse_cart_item_key(cart_item_key: str) -> Tuple[str, Dict[str, Optional[str]]]:
    """Split a key back into ``(product_id, {"color": ..., "size": ...})``.

    Only the first ``:`` of each part separates label from value, so values
    containing a colon (``size:10:12``) survive the round trip.
    """
    product_id, *parts = cart_item_key.split(KEY_SEPARATOR)
    variants: Dict[str, Optional[str]] = {name: None for name in VARIANT_FIELDS}
    for part in parts:
        name, _, value = part.partition(FIELD_SEPARATOR)
        if name in variants:
            variants[name] = value or None
    return product_id, variants


def item_variants(item: dict) -> Dict[str, Optional[str]]:
    """Variants stored on a cart item, reading the legacy flat fields as fallback."""
    variants = item.get("variants") or {}
    return normalize_variants(
        color=variants.get("color") or item.get("color"),
        size=variants.get("size") or item.get("size"),
    )


def item_key(item: dict) -> str:
    """Key of a stored cart item, derived from its variants if it has none."""
    if item.get("cart_item_key"):
        return item["cart_item_key"]
    variants = item_variants(item)
    return generate_cart_item_key(str(item["product_id"]), **variants)
