"""Tests for categories and the product category reference."""

import pytest


@pytest.fixture
def as_admin(auth, admin):
    auth.login(admin)
    return admin


class TestCategories:
    def test_create_derives_slug(self, api_client, as_admin):
        response = api_client.post("/api/categories", json={"name": "Summer Dresses!"})
        assert response.status_code == 201
        assert response.json()["slug"] == "summer-dresses"

    def test_lookup_by_id_or_slug(self, api_client, as_admin):
        created = api_client.post("/api/categories", json={"name": "Shoes"}).json()
        assert api_client.get(f"/api/categories/{created['id']}").json()["name"] == "Shoes"
        assert api_client.get("/api/categories/shoes").json()["id"] == created["id"]
        assert api_client.get("/api/categories/boots").status_code == 404

    def test_duplicate_name(self, api_client, as_admin):
        api_client.post("/api/categories", json={"name": "Shoes"})
        response = api_client.post("/api/categories", json={"name": "Shoes"})
        assert response.status_code == 400
        assert response.json()["errors"] == {"name": "Category already exists"}

    def test_rename_updates_slug(self, api_client, as_admin):
        created = api_client.post("/api/categories", json={"name": "Shoes"}).json()
        updated = api_client.put(f"/api/categories/{created['id']}", json={"name": "Sneakers"}).json()
        assert updated["slug"] == "sneakers"

    def test_active_filter(self, api_client, as_admin):
        api_client.post("/api/categories", json={"name": "Shoes"})
        api_client.post("/api/categories", json={"name": "Archive", "active": False})
        names = [c["name"] for c in api_client.get("/api/categories", params={"active": "true"}).json()]
        assert names == ["Shoes"]
        assert len(api_client.get("/api/categories").json()) == 2

    def test_customers_cannot_create(self, api_client):
        assert api_client.post("/api/categories", json={"name": "Shoes"}).status_code == 403


class TestProductCategory:
    def test_product_must_reference_existing_category(self, api_client, as_admin, repo):
        payload = {"name": "Runner", "price": 50.0, "quantity": 10, "category": "64b7f0c2a1b2c3d4e5f60718"}
        response = api_client.post("/api/products", json=payload)
        assert response.status_code == 400
        assert response.json()["errors"] == {"category": "Category not found"}
        assert repo.products == {}

    def test_product_in_category(self, api_client, as_admin):
        category = api_client.post("/api/categories", json={"name": "Shoes"}).json()
        payload = {"name": "Runner", "price": 50.0, "quantity": 10, "category": category["id"]}
        product = api_client.post("/api/products", json=payload).json()
        assert product["category"] == category["id"]

        listed = api_client.get("/api/products", params={"category": category["id"]}).json()
        assert [p["id"] for p in listed["items"]] == [product["id"]]

    def test_update_to_unknown_category(self, api_client, as_admin, make_product):
        product = make_product()
        response = api_client.put(f"/api/products/{product['id']}", json={"category": "bogus"})
        assert response.status_code == 400

    def test_category_in_use_cannot_be_deleted(self, api_client, as_admin, make_product):
        category = api_client.post("/api/categories", json={"name": "Shoes"}).json()
        make_product(category=category["id"])
        response = api_client.delete(f"/api/categories/{category['id']}")
        assert response.status_code == 400
        assert api_client.get(f"/api/categories/{category['id']}").status_code == 200
