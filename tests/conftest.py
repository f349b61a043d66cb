import pytest
from fastapi.testclient import TestClient

import main
from database import MemStorage, seed_store

ADMIN_CREDENTIALS = {"email": main.ADMIN_EMAIL, "password": main.ADMIN_PASSWORD}

SHIPPING = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address": "12 Analytical Row",
    "city": "London",
    "zip_code": "N1 9GU",
    "country": "UK",
}

PAYMENT = {
    "card_name": "Ada Lovelace",
    "card_number": "4242 4242 4242 4242",
    "expiry_month": "12",
    "expiry_year": "2030",
    "cvv": "123",
}


def product_payload(**overrides):
    data = {
        "name": "Wooden Dress",
        "description": "A dress carved from the finest linen",
        "price": 100.0,
        "category": "women",
        "image_urls": ["https://example.com/dress.jpg"],
        "sizes": ["S", "M"],
        "colors": ["Black"],
        "featured": False,
        "sku": "WD-001",
        "tags": ["dress"],
    }
    data.update(overrides)
    return data


@pytest.fixture
def storage():
    store = MemStorage()
    seed_store(store, main.ADMIN_USERNAME, main.ADMIN_EMAIL, main.admin_password_hash(), with_catalog=False)
    return store


@pytest.fixture
def client(storage):
    main.app.state.storage = storage
    with TestClient(main.app) as c:
        yield c


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, username="alice", email="alice@example.com", password="secret1"):
    res = client.post("/api/auth/register", json={"username": username, "email": email, "password": password})
    assert res.status_code == 201, res.text
    return res.json()


@pytest.fixture
def admin_headers(client):
    res = client.post("/api/auth/login", json=ADMIN_CREDENTIALS)
    assert res.status_code == 200, res.text
    return auth_header(res.json()["token"])


@pytest.fixture
def user_headers(client):
    return auth_header(register(client)["token"])


@pytest.fixture
def other_headers(client):
    return auth_header(register(client, username="bob", email="bob@example.com")["token"])


@pytest.fixture
def product(client, admin_headers):
    res = client.post("/api/products", json=product_payload(), headers=admin_headers)
    assert res.status_code == 201, res.text
    return res.json()
