import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import database
import settings

ADMIN_EMAIL = "admin@capriccio.com.ar"
ADMIN_PASSWORD = "Admin@123"


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def db(monkeypatch):
    monkeypatch.setattr(settings, "SUBSCRIPTION_POLL_SECONDS", 0)
    monkeypatch.setattr(settings, "ADMIN_EMAIL", None)
    monkeypatch.setattr(database, "_subscriptions", {})
    mock_db = mongomock.MongoClient()["capriccio_test"]
    monkeypatch.setattr(database, "db", mock_db)
    return mock_db


@pytest.fixture
def make_product(db):
    def _make(name="Muzzarella Pizza", price=150.7, stock=5, category="Pizzas", **extra):
        data = {"name": name, "price": price, "stock": stock, "category": category,
                "description": extra.pop("description", None), "image": extra.pop("image", None), **extra}
        return database.create_document("product", data)
    return _make


@pytest.fixture
def client(db):
    from main import app
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def user_token(client):
    return client.post("/api/auth/anonymous").json()["token"]


@pytest.fixture
def admin_token(client):
    auth.create_account(ADMIN_EMAIL, ADMIN_PASSWORD, role="admin")
    response = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert response.status_code == 200, response.text
    return response.json()["token"]
