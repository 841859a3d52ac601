import os

os.environ.setdefault("PIN_HASH_ROUNDS", "4")
os.environ.setdefault("APP_ENV", "test")

from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from database import utcnow
from security import hash_pin, issue_session_token


@pytest.fixture(autouse=True)
def db(monkeypatch):
    mongo_client = mongomock.MongoClient()
    mongo = mongo_client["restaurant_test"]
    monkeypatch.setattr(database, "_db", mongo)
    monkeypatch.setattr(database, "_user_db", mongo)
    database.ensure_indexes()
    yield mongo
    mongo_client.drop_database("restaurant_test")


@pytest.fixture
def client(db):
    from main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="RIDER", phone=None, name="Asha", pin="123456", plain_pin=None, **extra):
        counter["n"] += 1
        doc = {
            "name": name,
            "phone": phone or f"98765432{counter['n']:02d}",
            "email": f"user{counter['n']}@restaurant.local",
            "role": role,
            "failed_login_attempts": 0,
            "locked_until": None,
            "created_at": utcnow(),
            **extra,
        }
        if plain_pin is not None:
            doc["pin"] = plain_pin
        elif pin is not None and "pin_hash" not in extra:
            doc["pin_hash"] = hash_pin(pin)
        return str(db.users.insert_one(doc).inserted_id)
    return _make


@pytest.fixture
def make_item(db):
    def _make(name="Pizza", price=500.0, available=True, category_slug="mains"):
        return str(db.menu_item.insert_one({
            "name": name,
            "price": price,
            "available": available,
            "category_slug": category_slug,
        }).inserted_id)
    return _make


@pytest.fixture
def make_session(db):
    def _make(user_id, phone="9000000001", table_name="T4", status="active", guest_name="Ravi"):
        now = utcnow()
        return str(db.guest_sessions.insert_one({
            "user_id": user_id,
            "guest_name": guest_name,
            "guest_phone": phone,
            "table_name": table_name,
            "num_guests": 2,
            "status": status,
            "bill_requested": False,
            "total_amount": 0.0,
            "started_at": now,
            "created_at": now,
        }).inserted_id)
    return _make


@pytest.fixture
def make_order(db):
    def _make(user_id, items, session_id=None, age_seconds=0, discount=0.0, billed=False, table_name="T4"):
        """`items` is a list of (menu_item_id, quantity, price) tuples."""
        created_at = utcnow() - timedelta(seconds=age_seconds)
        lines = [{"menu_item_id": i, "quantity": q, "price": p} for i, q, p in items]
        total = round(sum(q * p for _, q, p in items) - discount, 2)
        return str(db.orders.insert_one({
            "user_id": user_id,
            "session_id": session_id,
            "table_name": table_name,
            "items": lines,
            "total": total,
            "discount_amount": discount,
            "billed": billed,
            "status": "pending",
            "created_at": created_at,
            "updated_at": created_at,
        }).inserted_id)
    return _make


@pytest.fixture
def auth_headers():
    def _headers(user_id):
        token, _ = issue_session_token(user_id)
        return {"Authorization": f"Bearer {token}"}
    return _headers
