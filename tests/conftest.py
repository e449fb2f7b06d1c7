import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from auth import create_token, hash_password
from main import app

PASSWORD = "secret123"
PASSWORD_HASH = hash_password(PASSWORD)


@pytest.fixture(autouse=True)
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["ecommerce_test"]
    monkeypatch.setattr(database, "db", mock_db)
    database.ensure_indexes(mock_db)
    return mock_db


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="user", **fields):
        counter["n"] += 1
        doc = {
            "fname": "Test",
            "lname": f"User{counter['n']}",
            "email": f"{role}{counter['n']}@example.com",
            "password": PASSWORD_HASH,
            "role": role,
            "active": True,
            "wishlist": [],
            "addresses": [],
            "created_at": database.now(),
            "updated_at": database.now(),
        }
        doc.update(fields)
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        return doc

    return _make


def bearer(user):
    return {"Authorization": f"Bearer {create_token(user['_id'])}"}


@pytest.fixture
def user_headers(make_user):
    return bearer(make_user("user"))


@pytest.fixture
def manager_headers(make_user):
    return bearer(make_user("manager"))


@pytest.fixture
def admin_headers(make_user):
    return bearer(make_user("admin"))


@pytest.fixture
def category(db):
    doc = {"name": "Electronics", "slug": "electronics", "created_at": database.now(), "updated_at": database.now()}
    doc["_id"] = db["category"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def make_product(db, category):
    def _make(title="Phone", price=10.0, quantity=10, **fields):
        doc = {
            "title": title,
            "slug": title.lower(),
            "description": "A product description that is long enough",
            "quantity": quantity,
            "sold": 0,
            "price": price,
            "colors": [],
            "images": [],
            "category": category["_id"],
            "subcategories": [],
            "ratings_quantity": 0,
            "created_at": database.now(),
            "updated_at": database.now(),
        }
        doc.update(fields)
        doc["_id"] = db["product"].insert_one(doc).inserted_id
        return doc

    return _make


@pytest.fixture
def headers_for():
    return bearer
