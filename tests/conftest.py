import json

import pytest
from fastapi.testclient import TestClient

import database
import main

CATEGORIES = [
    {"id": 1, "name": "Game Coins", "description": "", "image": None, "order": 2},
    {"id": 2, "name": "Subscriptions", "description": "", "image": None, "order": 1},
]

PRODUCTS = [
    {"id": 1, "name": "Gold Pack", "description": "Coins for strategy games", "price": 40,
     "image": None, "category_id": 1, "stock": 2, "created_at": "2024-05-01T10:00:00+00:00"},
    {"id": 2, "name": "Music Premium", "description": "Ad-free streaming", "price": 30,
     "image": None, "category_id": 2, "stock": 5, "created_at": "2024-05-02T10:00:00+00:00"},
    {"id": 3, "name": "Sold Out Card", "description": "Gift card", "price": 10,
     "image": None, "category_id": 2, "stock": 0, "created_at": "2024-05-03T10:00:00+00:00"},
]


@pytest.fixture
def store(tmp_path, monkeypatch):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "products.json").write_text(json.dumps(PRODUCTS))
    (data_dir / "categories.json").write_text(json.dumps(CATEGORIES))
    monkeypatch.setattr(database, "DATA_DIR", data_dir)
    monkeypatch.setattr(database, "CACHE_DIR", tmp_path / "cache")
    return tmp_path


@pytest.fixture
def client(store):
    with TestClient(main.app) as c:
        yield c


def register(client, email="alice@example.com", username="alice", password="secret1", **extra):
    data = {
        "email": email,
        "username": username,
        "password": password,
        "confirm_password": extra.pop("confirm_password", password),
        "full_name": extra.pop("full_name", "Alice Doe"),
        "address": extra.pop("address", "1 Main St"),
    }
    return client.post("/auth/register", data=data)


def login(client, email, password):
    res = client.post("/auth/login", data={"email": email, "password": password})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


@pytest.fixture
def admin_headers(client):
    return login(client, main.ADMIN_EMAIL, main.ADMIN_PASSWORD)


@pytest.fixture
def user(client):
    res = register(client)
    assert res.status_code == 201, res.text
    return res.json()


@pytest.fixture
def user_headers(client, user):
    return login(client, "alice@example.com", "secret1")


def fund(client, admin_headers, user_id, amount):
    res = client.post(f"/admin/users/{user_id}/balance", data={"amount": amount}, headers=admin_headers)
    assert res.status_code == 200, res.text
    return res.json()
