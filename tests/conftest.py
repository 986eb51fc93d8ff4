"""Pytest fixtures for storefront tests."""

import copy
from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient


def new_id() -> str:
    return str(ObjectId())


def _matches(doc: dict, filters: dict) -> bool:
    return all(doc.get(k) == v for k, v in filters.items())


class InMemoryRepository:
    """Dict-backed stand-in for MongoRepository.

    ``run_in_transaction`` snapshots every collection and restores the
    snapshot if the callback raises, which is what a Mongo transaction abort
    looks like from the services' point of view. Reads hand out copies.
    """

    def __init__(self):
        self.products = {}
        self.carts = {}
        self.orders = {}
        self.users = {}
        self.counters = {}
        self.categories = {}
        self.addresses = {}
        self.transactions = 0
        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def run_in_transaction(self, fn):
        snapshot = copy.deepcopy((self.products, self.carts, self.orders, self.users, self.counters,
                                  self.categories, self.addresses))
        self.transactions += 1
        try:
            return fn(None)
        except Exception:
            (self.products, self.carts, self.orders, self.users, self.counters,
             self.categories, self.addresses) = snapshot
            raise

    # Products

    def get_product(self, product_id, session=None):
        return copy.deepcopy(self.products.get(product_id))

    def get_products(self, product_ids, session=None):
        return {pid: copy.deepcopy(self.products[pid]) for pid in set(product_ids) if pid in self.products}

    def list_products(self, filters, search=None, skip=0, limit=20):
        found = [p for p in self.products.values() if _matches(p, filters)]
        if search:
            found = [p for p in found if search.lower() in p.get("name", "").lower()]
        found.sort(key=lambda p: p.get("created_at"), reverse=True)
        return copy.deepcopy(found[skip:skip + limit]), len(found)

    def insert_product(self, doc):
        product_id = new_id()
        self.products[product_id] = dict(copy.deepcopy(doc), id=product_id, created_at=self._tick())
        return self.get_product(product_id)

    def update_product(self, product_id, fields):
        if product_id not in self.products:
            return None
        self.products[product_id].update(copy.deepcopy(fields))
        return self.get_product(product_id)

    def delete_product(self, product_id):
        return self.products.pop(product_id, None) is not None

    def decrement_stock(self, product_id, quantity, session=None):
        product = self.products.get(product_id)
        if product is None or product.get("quantity", 0) < quantity:
            return None
        product["quantity"] -= quantity
        product["sold"] = product.get("sold", 0) + quantity
        return self.get_product(product_id)

    def set_product_status(self, product_id, status, session=None):
        self.products[product_id]["status"] = status

    # Carts

    def get_cart(self, user_id, session=None):
        return copy.deepcopy(self.carts.get(user_id))

    def save_cart(self, cart, session=None):
        existing = self.carts.get(cart["user_id"])
        now = self._tick()
        self.carts[cart["user_id"]] = {
            "id": existing["id"] if existing else new_id(),
            "user_id": cart["user_id"],
            "items": copy.deepcopy(cart.get("items", [])),
            "total_items": cart.get("total_items", 0),
            "total_price": cart.get("total_price", 0),
            "created_at": existing["created_at"] if existing else now,
            "updated_at": now,
        }
        return self.get_cart(cart["user_id"])

    def clear_cart(self, user_id, session=None):
        return self.save_cart({"user_id": user_id, "items": [], "total_items": 0, "total_price": 0})

    # Orders

    def next_sequence(self, name, session=None):
        self.counters[name] = self.counters.get(name, 0) + 1
        return self.counters[name]

    def insert_order(self, doc, session=None):
        if any(o["order_number"] == doc["order_number"] for o in self.orders.values()):
            raise ValueError("duplicate order number")
        order_id = new_id()
        self.orders[order_id] = dict(copy.deepcopy(doc), id=order_id, created_at=self._tick())
        return self.get_order(order_id)

    def get_order(self, order_id):
        return copy.deepcopy(self.orders.get(order_id))

    def find_orders(self, filters, skip=0, limit=10):
        found = sorted(
            (o for o in self.orders.values() if _matches(o, filters)),
            key=lambda o: o["created_at"],
            reverse=True,
        )
        return copy.deepcopy(found[skip:skip + limit])

    def count_orders(self, filters):
        return sum(1 for o in self.orders.values() if _matches(o, filters))

    def _order_matches(self, order_id, expected_status):
        order = self.orders.get(order_id)
        if order is None:
            return False
        return expected_status is None or order.get("status") == expected_status

    def update_order(self, order_id, fields, expected_status=None):
        if not self._order_matches(order_id, expected_status):
            return None
        self.orders[order_id].update(copy.deepcopy(fields))
        return self.get_order(order_id)

    def delete_order(self, order_id, expected_status=None):
        if not self._order_matches(order_id, expected_status):
            return False
        del self.orders[order_id]
        return True

    # Categories

    def list_categories(self, active_only=False):
        found = [c for c in self.categories.values() if c.get("active") or not active_only]
        return copy.deepcopy(sorted(found, key=lambda c: c["name"]))

    def get_category(self, category_id):
        return copy.deepcopy(self.categories.get(category_id))

    def get_category_by_slug(self, slug):
        for category in self.categories.values():
            if category.get("slug") == slug:
                return copy.deepcopy(category)
        return None

    def find_category_conflict(self, name, slug, exclude_id=None):
        for category_id, category in self.categories.items():
            if category_id != exclude_id and (category["name"] == name or category.get("slug") == slug):
                return copy.deepcopy(category)
        return None

    def insert_category(self, doc):
        category_id = new_id()
        self.categories[category_id] = dict(copy.deepcopy(doc), id=category_id)
        return self.get_category(category_id)

    def update_category(self, category_id, fields):
        if category_id not in self.categories:
            return None
        self.categories[category_id].update(copy.deepcopy(fields))
        return self.get_category(category_id)

    def delete_category(self, category_id):
        return self.categories.pop(category_id, None) is not None

    def count_products_in_category(self, category_id):
        return sum(1 for p in self.products.values() if p.get("category") == category_id)

    # Addresses

    def list_addresses(self, user_id, session=None):
        found = [a for a in self.addresses.values() if a["user_id"] == user_id]
        return copy.deepcopy(sorted(found, key=lambda a: a["created_at"]))

    def get_address(self, address_id, session=None):
        return copy.deepcopy(self.addresses.get(address_id))

    def insert_address(self, doc, session=None):
        address_id = new_id()
        self.addresses[address_id] = dict(copy.deepcopy(doc), id=address_id, created_at=self._tick())
        return self.get_address(address_id)

    def update_address(self, address_id, fields, session=None):
        if address_id not in self.addresses:
            return None
        self.addresses[address_id].update(copy.deepcopy(fields))
        return self.get_address(address_id)

    def unset_default_addresses(self, user_id, keep_id, session=None):
        for address_id, address in self.addresses.items():
            if address["user_id"] == user_id and address_id != keep_id:
                address["is_default"] = False

    def delete_address(self, address_id, session=None):
        return self.addresses.pop(address_id, None) is not None

    # Users

    def get_user(self, user_id):
        return copy.deepcopy(self.users.get(user_id))

    def get_user_by_email(self, email):
        for user in self.users.values():
            if user["email"] == email:
                return copy.deepcopy(user)
        return None

    def insert_user(self, doc):
        user_id = new_id()
        self.users[user_id] = dict(copy.deepcopy(doc), id=user_id)
        return self.get_user(user_id)

    def get_users(self, user_ids):
        return {uid: copy.deepcopy(self.users[uid]) for uid in set(user_ids) if uid in self.users}


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def make_product(repo):
    """Insert a product; keyword arguments override the defaults."""

    def _make(**overrides):
        from inventory import derive_product_status

        doc = {
            "name": "Linen Shirt",
            "slug": None,
            "description": "",
            "price": 20.0,
            "discount_price": None,
            "quantity": 5,
            "sold": 0,
            "active": True,
            "category": None,
            "image": "https://img.example/shirt.jpg",
            "images": [],
            "color": ["red", "blue"],
            "size": ["S", "M", "L"],
            "featured": False,
        }
        doc.update(overrides)
        doc["status"] = derive_product_status(doc["quantity"], doc["active"])
        return repo.insert_product(doc)

    return _make


@pytest.fixture
def customer(repo):
    return repo.insert_user({"name": "Casey Buyer", "email": "casey@example.com", "role": "customer"})


@pytest.fixture
def other_customer(repo):
    return repo.insert_user({"name": "Robin Other", "email": "robin@example.com", "role": "customer"})


@pytest.fixture
def admin(repo):
    return repo.insert_user({"name": "Alex Admin", "email": "alex@example.com", "role": "admin"})


class AuthState:
    """Holds the user the overridden ``get_current_user`` returns."""

    def __init__(self, user):
        self.user = user

    def login(self, user):
        self.user = user


@pytest.fixture
def auth(customer):
    return AuthState(customer)


@pytest.fixture
def app(repo, auth):
    from main import app as fastapi_app
    from database import get_repository
    from rate_limit import FixedWindowRateLimiter
    from security import get_current_user

    def current_user():
        if auth.user is None:
            from exceptions import NotAuthenticatedError

            raise NotAuthenticatedError("Not authorized, no token")
        return auth.user

    fastapi_app.dependency_overrides[get_repository] = lambda: repo
    fastapi_app.dependency_overrides[get_current_user] = current_user
    fastapi_app.state.login_limiter = FixedWindowRateLimiter(5, 900)
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def api_client(app):
    return TestClient(app)
