"""Tests for MongoRepository query construction, run against mongomock."""

from datetime import datetime
from unittest import mock

import mongomock
import pytest

from conftest import new_id
from database import ensure_indexes
from orders import generate_order_number
from repository import MongoRepository


@pytest.fixture
def mongo_client():
    return mongomock.MongoClient()


@pytest.fixture
def mongo_db(mongo_client):
    return mongo_client["storefront_test"]


@pytest.fixture
def mongo_repo(mongo_client, mongo_db):
    return MongoRepository(mongo_client, mongo_db)


def _product(**overrides):
    doc = {"name": "Linen Shirt", "price": 20.0, "quantity": 3, "sold": 0, "active": True, "status": "low stock"}
    doc.update(overrides)
    return doc


class TestDecrementStock:
    def test_takes_stock_and_counts_sold(self, mongo_repo):
        product = mongo_repo.insert_product(_product())
        updated = mongo_repo.decrement_stock(product["id"], 2)
        assert updated["quantity"] == 1
        assert updated["sold"] == 2

    def test_refuses_when_too_little_left(self, mongo_repo, mongo_db):
        product = mongo_repo.insert_product(_product(quantity=1))
        assert mongo_repo.decrement_stock(product["id"], 2) is None
        stored = mongo_db["product"].find_one({"name": "Linen Shirt"})
        assert stored["quantity"] == 1
        assert stored["sold"] == 0

    def test_exact_remaining_stock(self, mongo_repo):
        product = mongo_repo.insert_product(_product(quantity=2))
        assert mongo_repo.decrement_stock(product["id"], 2)["quantity"] == 0
        assert mongo_repo.decrement_stock(product["id"], 1) is None

    def test_missing_product(self, mongo_repo):
        assert mongo_repo.decrement_stock(new_id(), 1) is None


class TestProductSlug:
    def test_empty_slug_is_not_stored(self, mongo_repo, mongo_db):
        mongo_repo.insert_product(_product(name="A", slug=None))
        mongo_repo.insert_product(_product(name="B", slug=None))
        for doc in mongo_db["product"].find():
            assert "slug" not in doc

    def test_clearing_slug_unsets_field(self, mongo_repo, mongo_db):
        product = mongo_repo.insert_product(_product(slug="linen-shirt"))
        updated = mongo_repo.update_product(product["id"], {"slug": None})
        assert "slug" not in updated
        assert "slug" not in mongo_db["product"].find_one()

    def test_slug_index_only_covers_string_slugs(self):
        database = mock.MagicMock()
        ensure_indexes(database)
        slug_calls = [c for c in database.__getitem__.return_value.create_index.call_args_list
                      if c.args == ("slug",)]
        assert slug_calls
        for call in slug_calls:
            assert call.kwargs["unique"] is True
            assert call.kwargs["partialFilterExpression"] == {"slug": {"$type": "string"}}
            assert "sparse" not in call.kwargs


class TestCarts:
    def test_clear_creates_missing_cart(self, mongo_repo, mongo_db):
        cart = mongo_repo.clear_cart("user-1")
        assert cart["items"] == []
        assert cart["total_items"] == 0
        assert mongo_db["cart"].count_documents({"user_id": "user-1"}) == 1

    def test_save_keeps_one_document_and_creation_time(self, mongo_repo, mongo_db):
        first = mongo_repo.save_cart({"user_id": "user-1", "items": [], "total_items": 0, "total_price": 0})
        second = mongo_repo.save_cart({
            "user_id": "user-1",
            "items": [{"cart_item_key": "p1", "product_id": "p1", "quantity": 1, "price": 5.0, "total_price": 5.0}],
            "total_items": 1,
            "total_price": 5.0,
        })
        assert second["id"] == first["id"]
        assert second["created_at"] == first["created_at"]
        assert second["total_items"] == 1
        assert mongo_db["cart"].count_documents({}) == 1


class TestOrderSequence:
    def test_sequence_is_per_day(self, mongo_repo):
        day_one = datetime(2026, 1, 1)
        day_two = datetime(2026, 1, 2)
        assert generate_order_number(mongo_repo, now=day_one) == "ORD-260101-00001"
        assert generate_order_number(mongo_repo, now=day_one) == "ORD-260101-00002"
        assert generate_order_number(mongo_repo, now=day_two) == "ORD-260102-00001"


class TestGuardedOrderWrites:
    @pytest.fixture
    def order_id(self, mongo_repo):
        order = mongo_repo.insert_order({"order_number": "ORD-260101-00001", "user_id": "u1", "status": "pending"})
        return order["id"]

    def test_update_with_matching_status(self, mongo_repo, order_id):
        updated = mongo_repo.update_order(order_id, {"status": "processing"}, expected_status="pending")
        assert updated["status"] == "processing"

    def test_update_with_stale_status(self, mongo_repo, order_id):
        mongo_repo.update_order(order_id, {"status": "cancelled"})
        assert mongo_repo.update_order(order_id, {"status": "processing"}, expected_status="pending") is None
        assert mongo_repo.get_order(order_id)["status"] == "cancelled"

    def test_delete_only_in_expected_status(self, mongo_repo, order_id):
        mongo_repo.update_order(order_id, {"status": "processing"})
        assert mongo_repo.delete_order(order_id, expected_status="pending") is False
        assert mongo_repo.get_order(order_id) is not None
        assert mongo_repo.delete_order(order_id, expected_status="processing") is True


class TestLookups:
    def test_get_products_skips_bad_ids(self, mongo_repo):
        product = mongo_repo.insert_product(_product())
        found = mongo_repo.get_products([product["id"], "not-an-id", new_id()])
        assert list(found) == [product["id"]]

    def test_unset_default_addresses(self, mongo_repo):
        first = mongo_repo.insert_address({"user_id": "u1", "is_default": True, "created_at": datetime(2026, 1, 1)})
        second = mongo_repo.insert_address({"user_id": "u1", "is_default": True, "created_at": datetime(2026, 1, 2)})
        other = mongo_repo.insert_address({"user_id": "u2", "is_default": True, "created_at": datetime(2026, 1, 3)})
        mongo_repo.unset_default_addresses("u1", second["id"])
        assert mongo_repo.get_address(first["id"])["is_default"] is False
        assert mongo_repo.get_address(second["id"])["is_default"] is True
        assert mongo_repo.get_address(other["id"])["is_default"] is True
