import os

os.environ.pop("DATABASE_URL", None)
os.environ["FULFILLMENT_WORKER_ENABLED"] = "false"
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["BCRYPT_ROUNDS"] = "4"

import mongomock
import pytest
from fastapi.testclient import TestClient

import database

ADMIN_CREDENTIALS = {"email": "admin@softshop.com", "password": "admin123"}


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["softshop_test"]
    monkeypatch.setattr(database, "db", mock_db)
    return mock_db


@pytest.fixture
def client(db):
    from main import app

    with TestClient(app) as c:
        yield c


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, email, role="user", name=None, password="secret123"):
    res = client.post(
        "/api/auth/register",
        json={"email": email, "password": password, "name": name or email.split("@")[0], "role": role},
    )
    assert res.status_code == 200, res.text
    body = res.json()
    return auth_headers(body["token"]), body["user"]["id"]


def create_product(client, vendor_headers, **overrides):
    payload = {"name": "Widget", "description": "A widget", "price": 10.0, "category": "Gadgets", "stock": 5}
    payload.update(overrides)
    res = client.post("/api/vendor/products", json=payload, headers=vendor_headers)
    assert res.status_code == 200, res.text
    return res.json()["id"]


@pytest.fixture
def admin_headers(client):
    res = client.post("/api/auth/login", json=ADMIN_CREDENTIALS)
    assert res.status_code == 200, res.text
    return auth_headers(res.json()["token"])


@pytest.fixture
def customer(client):
    return register(client, "buyer@example.com")


@pytest.fixture
def vendor(client):
    return register(client, "vendor1@example.com", role="vendor", name="Vendor One")


@pytest.fixture
def second_vendor(client):
    return register(client, "vendor2@example.com", role="vendor", name="Vendor Two")
