"""Saved addresses.

A user's first address becomes the default, and at most one address per user
is the default at any time. Checkout can copy a saved address into the
order's shipping snapshot.
"""

import logging
from typing import Any, Dict, List

from exceptions import AddressNotFoundError, ForbiddenError, InvalidIdError
from repository import is_valid_id, utcnow
from schemas import Address, ShippingAddress

logger = logging.getLogger(__name__)


def list_addresses(repo, user_id: str) -> List[dict]:
    return repo.list_addresses(user_id)


def _owned_address(repo, user_id: str, address_id: str, session=None) -> dict:
    if not is_valid_id(address_id):
        raise InvalidIdError("address", address_id)
    address = repo.get_address(address_id, session=session)
    if address is None:
        raise AddressNotFoundError(address_id)
    if address.get("user_id") != user_id:
        raise ForbiddenError("Not authorized to use this address")
    return address


def get_address(repo, user_id: str, address_id: str) -> dict:
    return _owned_address(repo, user_id, address_id)


def create_address(repo, user_id: str, data: Dict[str, Any]) -> dict:
    def txn(session):
        address = Address(user_id=user_id, **data)
        if not repo.list_addresses(user_id, session=session):
            address.is_default = True
        created = repo.insert_address(address.model_dump(), session=session)
        if created["is_default"]:
            repo.unset_default_addresses(user_id, created["id"], session=session)
        return created

    return repo.run_in_transaction(txn)


def update_address(repo, user_id: str, address_id: str, changes: Dict[str, Any]) -> dict:
    def txn(session):
        _owned_address(repo, user_id, address_id, session=session)
        fields = dict(changes, updated_at=utcnow())
        fields.pop("user_id", None)
        updated = repo.update_address(address_id, fields, session=session)
        if updated.get("is_default"):
            repo.unset_default_addresses(user_id, address_id, session=session)
        return updated

    return repo.run_in_transaction(txn)


def delete_address(repo, user_id: str, address_id: str) -> None:
    def txn(session):
        address = _owned_address(repo, user_id, address_id, session=session)
        repo.delete_address(address_id, session=session)
        if address.get("is_default"):
            remaining = repo.list_addresses(user_id, session=session)
            if remaining:
                repo.update_address(remaining[0]["id"], {"is_default": True}, session=session)
                logger.info("Address %s is now the default for user %s", remaining[0]["id"], user_id)

    repo.run_in_transaction(txn)


def shipping_from_address(repo, user_id: str, address_id: str) -> dict:
    """Shipping snapshot for an order, copied from one of the user's saved addresses."""
    address = _owned_address(repo, user_id, address_id)
    street = address["address_line1"]
    if address.get("address_line2"):
        street = f"{street}, {address['address_line2']}"
    return ShippingAddress(
        full_name=address["full_name"],
        address=street,
        city=address["city"],
        state=address["state"],
        postal_code=address["postal_code"],
        country=address["country"],
        phone=address["phone"],
    ).model_dump()
