"""Collection access for the storefront.

``MongoRepository`` is the only place that builds Mongo queries. Documents
leave it serialized: ``_id`` becomes a string ``id``. Every method takes an
optional ``session`` so callers can run it inside ``run_in_transaction``.
"""

import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from bson import ObjectId
from pymongo import DESCENDING, MongoClient, ReturnDocument
from pymongo.client_session import ClientSession
from pymongo.database import Database

T = TypeVar("T")


def is_valid_id(value: Any) -> bool:
    return isinstance(value, str) and ObjectId.is_valid(value)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Slugs are unique only among documents that have one; a stored null would
# collide in the unique index, so an empty slug is never written.


def _drop_empty_slug(doc: dict) -> dict:
    if "slug" in doc and not doc["slug"]:
        doc = {k: v for k, v in doc.items() if k != "slug"}
    return doc


def _set_or_unset_slug(fields: dict) -> dict:
    if "slug" in fields and not fields["slug"]:
        update: Dict[str, Any] = {"$unset": {"slug": ""}}
        remaining = _drop_empty_slug(fields)
        if remaining:
            update["$set"] = remaining
        return update
    return {"$set": fields}


class MongoRepository:
    def __init__(self, client: MongoClient, database: Database):
        self.client = client
        self.db = database

    def run_in_transaction(self, fn: Callable[[Optional[ClientSession]], T]) -> T:
        """Run ``fn(session)`` in a multi-document transaction.

        The driver retries ``fn`` on transient errors (write conflicts) and
        aborts on any other exception, which is re-raised.
        """
        with self.client.start_session() as session:
            return session.with_transaction(fn)

    # Products

    def get_product(self, product_id: str, session: Optional[ClientSession] = None) -> Optional[dict]:
        return serialize_doc(self.db["product"].find_one({"_id": ObjectId(product_id)}, session=session))

    def get_products(self, product_ids: Iterable[str],
                     session: Optional[ClientSession] = None) -> Dict[str, dict]:
        oids = [ObjectId(p) for p in set(product_ids) if is_valid_id(p)]
        if not oids:
            return {}
        cursor = self.db["product"].find({"_id": {"$in": oids}}, session=session)
        return {str(p["_id"]): serialize_doc(p) for p in cursor}

    def list_products(self, filters: Dict[str, Any], search: Optional[str] = None,
                      skip: int = 0, limit: int = 20) -> Tuple[List[dict], int]:
        query = dict(filters)
        if search:
            query["name"] = {"$regex": re.escape(search), "$options": "i"}
        collection = self.db["product"]
        total = collection.count_documents(query)
        cursor = collection.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
        return [serialize_doc(d) for d in cursor], total

    def insert_product(self, doc: dict) -> dict:
        doc = _drop_empty_slug(doc)
        result = self.db["product"].insert_one(doc)
        return self.get_product(str(result.inserted_id))

    def update_product(self, product_id: str, fields: dict) -> Optional[dict]:
        doc = self.db["product"].find_one_and_update(
            {"_id": ObjectId(product_id)},
            _set_or_unset_slug(fields),
            return_document=ReturnDocument.AFTER,
        )
        return serialize_doc(doc)

    def delete_product(self, product_id: str) -> bool:
        return self.db["product"].delete_one({"_id": ObjectId(product_id)}).deleted_count > 0

    def decrement_stock(self, product_id: str, quantity: int,
                        session: Optional[ClientSession] = None) -> Optional[dict]:
        """Take ``quantity`` units off a product only if that many are left.

        Returns the updated product, or None when stock was insufficient or
        the product does not exist.
        """
        doc = self.db["product"].find_one_and_update(
            {"_id": ObjectId(product_id), "quantity": {"$gte": quantity}},
            {"$inc": {"quantity": -quantity, "sold": quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return serialize_doc(doc)

    def set_product_status(self, product_id: str, status: str,
                           session: Optional[ClientSession] = None) -> None:
        self.db["product"].update_one({"_id": ObjectId(product_id)}, {"$set": {"status": status}}, session=session)

    # Carts

    def get_cart(self, user_id: str, session: Optional[ClientSession] = None) -> Optional[dict]:
        return serialize_doc(self.db["cart"].find_one({"user_id": user_id}, session=session))

    def save_cart(self, cart: dict, session: Optional[ClientSession] = None) -> dict:
        now = utcnow()
        doc = self.db["cart"].find_one_and_update(
            {"user_id": cart["user_id"]},
            {
                "$set": {
                    "items": cart.get("items", []),
                    "total_items": cart.get("total_items", 0),
                    "total_price": cart.get("total_price", 0),
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return serialize_doc(doc)

    def clear_cart(self, user_id: str, session: Optional[ClientSession] = None) -> dict:
        return self.save_cart({"user_id": user_id, "items": [], "total_items": 0, "total_price": 0}, session=session)

    # Orders

    def next_sequence(self, name: str, session: Optional[ClientSession] = None) -> int:
        doc = self.db["counters"].find_one_and_update(
            {"_id": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return int(doc["seq"])

    def insert_order(self, doc: dict, session: Optional[ClientSession] = None) -> dict:
        result = self.db["order"].insert_one(doc, session=session)
        return serialize_doc(self.db["order"].find_one({"_id": result.inserted_id}, session=session))

    def get_order(self, order_id: str) -> Optional[dict]:
        return serialize_doc(self.db["order"].find_one({"_id": ObjectId(order_id)}))

    def find_orders(self, filters: Dict[str, Any], skip: int = 0, limit: int = 10) -> List[dict]:
        cursor = self.db["order"].find(filters).sort("created_at", DESCENDING).skip(skip).limit(limit)
        return [serialize_doc(d) for d in cursor]

    def count_orders(self, filters: Dict[str, Any]) -> int:
        return self.db["order"].count_documents(filters)

    def update_order(self, order_id: str, fields: dict,
                     expected_status: Optional[str] = None) -> Optional[dict]:
        """Apply ``fields``; with ``expected_status`` only if the order is still in it."""
        query: Dict[str, Any] = {"_id": ObjectId(order_id)}
        if expected_status is not None:
            query["status"] = expected_status
        doc = self.db["order"].find_one_and_update(
            query,
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return serialize_doc(doc)

    def delete_order(self, order_id: str, expected_status: Optional[str] = None) -> bool:
        query: Dict[str, Any] = {"_id": ObjectId(order_id)}
        if expected_status is not None:
            query["status"] = expected_status
        return self.db["order"].delete_one(query).deleted_count > 0

    # Categories

    def list_categories(self, active_only: bool = False) -> List[dict]:
        query = {"active": True} if active_only else {}
        return [serialize_doc(d) for d in self.db["category"].find(query).sort("name", 1)]

    def get_category(self, category_id: str) -> Optional[dict]:
        return serialize_doc(self.db["category"].find_one({"_id": ObjectId(category_id)}))

    def get_category_by_slug(self, slug: str) -> Optional[dict]:
        return serialize_doc(self.db["category"].find_one({"slug": slug}))

    def find_category_conflict(self, name: str, slug: str, exclude_id: Optional[str] = None) -> Optional[dict]:
        query: Dict[str, Any] = {"$or": [{"name": name}, {"slug": slug}]}
        if exclude_id:
            query["_id"] = {"$ne": ObjectId(exclude_id)}
        return serialize_doc(self.db["category"].find_one(query))

    def insert_category(self, doc: dict) -> dict:
        result = self.db["category"].insert_one(doc)
        return self.get_category(str(result.inserted_id))

    def update_category(self, category_id: str, fields: dict) -> Optional[dict]:
        doc = self.db["category"].find_one_and_update(
            {"_id": ObjectId(category_id)},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return serialize_doc(doc)

    def delete_category(self, category_id: str) -> bool:
        return self.db["category"].delete_one({"_id": ObjectId(category_id)}).deleted_count > 0

    def count_products_in_category(self, category_id: str) -> int:
        return self.db["product"].count_documents({"category": category_id})

    # Addresses

    def list_addresses(self, user_id: str, session: Optional[ClientSession] = None) -> List[dict]:
        cursor = self.db["address"].find({"user_id": user_id}, session=session).sort("created_at", 1)
        return [serialize_doc(d) for d in cursor]

    def get_address(self, address_id: str, session: Optional[ClientSession] = None) -> Optional[dict]:
        return serialize_doc(self.db["address"].find_one({"_id": ObjectId(address_id)}, session=session))

    def insert_address(self, doc: dict, session: Optional[ClientSession] = None) -> dict:
        result = self.db["address"].insert_one(doc, session=session)
        return self.get_address(str(result.inserted_id), session=session)

    def update_address(self, address_id: str, fields: dict,
                       session: Optional[ClientSession] = None) -> Optional[dict]:
        doc = self.db["address"].find_one_and_update(
            {"_id": ObjectId(address_id)},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return serialize_doc(doc)

    def unset_default_addresses(self, user_id: str, keep_id: str,
                                session: Optional[ClientSession] = None) -> None:
        self.db["address"].update_many(
            {"user_id": user_id, "_id": {"$ne": ObjectId(keep_id)}},
            {"$set": {"is_default": False}},
            session=session,
        )

    def delete_address(self, address_id: str, session: Optional[ClientSession] = None) -> bool:
        return self.db["address"].delete_one({"_id": ObjectId(address_id)}, session=session).deleted_count > 0

    # Users

    def get_user(self, user_id: str) -> Optional[dict]:
        if not is_valid_id(user_id):
            return None
        return serialize_doc(self.db["user"].find_one({"_id": ObjectId(user_id)}))

    def get_user_by_email(self, email: str) -> Optional[dict]:
        return serialize_doc(self.db["user"].find_one({"email": email}))

    def insert_user(self, doc: dict) -> dict:
        result = self.db["user"].insert_one(doc)
        return self.get_user(str(result.inserted_id))

    def get_users(self, user_ids: Iterable[str]) -> Dict[str, dict]:
        oids = [ObjectId(u) for u in set(user_ids) if is_valid_id(u)]
        if not oids:
            return {}
        users = self.db["user"].find({"_id": {"$in": oids}}, {"name": 1, "email": 1})
        return {str(u["_id"]): serialize_doc(u) for u in users}
