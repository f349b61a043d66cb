from fastapi.testclient import TestClient

import main
from conftest import product_payload


def test_create_product(client, admin_headers):
    res = client.post("/api/products", json=product_payload(), headers=admin_headers)
    assert res.status_code == 201
    body = res.json()
    assert body["id"] == 1
    assert body["sku"] == "WD-001"
    assert body["in_stock"] is True


def test_create_product_requires_admin(client, user_headers):
    assert client.post("/api/products", json=product_payload()).status_code == 401
    assert client.post("/api/products", json=product_payload(), headers=user_headers).status_code == 403


def test_create_product_duplicate_sku(client, admin_headers, product, storage):
    res = client.post("/api/products", json=product_payload(name="Copy"), headers=admin_headers)
    assert res.status_code == 400
    assert "sku" in res.json()["errors"]
    assert len(storage.products) == 1


def test_create_product_validation(client, admin_headers):
    res = client.post(
        "/api/products",
        json=product_payload(category="kids", image_urls=[], price=-1),
        headers=admin_headers,
    )
    assert res.status_code == 400
    assert {"category", "image_urls", "price"} <= set(res.json()["errors"])


def test_create_product_discount_must_be_lower(client, admin_headers):
    res = client.post("/api/products", json=product_payload(discount_price=120), headers=admin_headers)
    assert res.status_code == 400
    assert "discount_price" in res.json()["errors"]


def test_get_product(client, product):
    res = client.get(f"/api/products/{product['id']}")
    assert res.status_code == 200
    assert res.json()["name"] == "Wooden Dress"


def test_get_product_missing(client):
    assert client.get("/api/products/404").status_code == 404


def test_get_product_bad_id(client):
    res = client.get("/api/products/abc")
    assert res.status_code == 400
    assert "product_id" in res.json()["errors"]


def test_list_products_filters_and_paginates(client, admin_headers):
    for i in range(5):
        client.post(
            "/api/products",
            json=product_payload(sku=f"M-{i}", name=f"Shirt {i}", category="men", featured=i % 2 == 0),
            headers=admin_headers,
        )
    client.post("/api/products", json=product_payload(sku="W-1", tags=["summer"]), headers=admin_headers)

    body = client.get("/api/products", params={"category": "men"}).json()
    assert body["total"] == 5
    assert len(body["items"]) == 5

    body = client.get("/api/products", params={"featured": "true"}).json()
    assert [p["sku"] for p in body["items"]] == ["M-0", "M-2", "M-4"]

    body = client.get("/api/products", params={"search": "SUMMER"}).json()
    assert [p["sku"] for p in body["items"]] == ["W-1"]

    first = client.get("/api/products", params={"category": "men", "limit": 2}).json()
    second = client.get("/api/products", params={"category": "men", "limit": 2, "offset": 2}).json()
    third = client.get("/api/products", params={"category": "men", "limit": 2, "offset": 4}).json()
    skus = [p["sku"] for page in (first, second, third) for p in page["items"]]
    assert skus == [f"M-{i}" for i in range(5)]
    assert third["total"] == 5


def test_list_products_rejects_bad_pagination(client):
    assert client.get("/api/products", params={"limit": 0}).status_code == 400
    assert client.get("/api/products", params={"offset": -1}).status_code == 400


def test_update_product(client, admin_headers, product):
    res = client.put(f"/api/products/{product['id']}", json={"price": 150}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["price"] == 150
    assert res.json()["name"] == product["name"]


def test_update_product_missing(client, admin_headers):
    res = client.put("/api/products/99", json={"price": 10}, headers=admin_headers)
    assert res.status_code == 404


def test_update_product_checks_merged_discount(client, admin_headers, product):
    res = client.put(f"/api/products/{product['id']}", json={"discount_price": 80}, headers=admin_headers)
    assert res.status_code == 200
    res = client.put(f"/api/products/{product['id']}", json={"price": 70}, headers=admin_headers)
    assert res.status_code == 400
    assert client.get(f"/api/products/{product['id']}").json()["price"] == 100


def test_update_product_sku_conflict(client, admin_headers, product):
    client.post("/api/products", json=product_payload(sku="OTHER"), headers=admin_headers)
    res = client.put(f"/api/products/{product['id']}", json={"sku": "OTHER"}, headers=admin_headers)
    assert res.status_code == 400
    res = client.put(f"/api/products/{product['id']}", json={"sku": "WD-001"}, headers=admin_headers)
    assert res.status_code == 200


def test_update_product_rejects_invalid_merge(client, admin_headers, product):
    res = client.put(f"/api/products/{product['id']}", json={"image_urls": []}, headers=admin_headers)
    assert res.status_code == 400


def test_delete_product(client, admin_headers, product):
    res = client.delete(f"/api/products/{product['id']}", headers=admin_headers)
    assert res.status_code == 204
    assert client.get(f"/api/products/{product['id']}").status_code == 404
    assert client.delete(f"/api/products/{product['id']}", headers=admin_headers).status_code == 404


def test_delete_product_requires_admin(client, user_headers, product):
    assert client.delete(f"/api/products/{product['id']}", headers=user_headers).status_code == 403


def test_unexpected_errors_are_generic(client, storage, monkeypatch):
    def boom(**kwargs):
        raise RuntimeError("secret internals")

    monkeypatch.setattr(storage, "list_products", boom)
    with TestClient(main.app, raise_server_exceptions=False) as c:
        res = c.get("/api/products")
    assert res.status_code == 500
    assert res.json() == {"detail": "Internal server error"}
