import os

os.environ["APP_ENV"] = "test"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("DATABASE_URL", None)

from datetime import datetime, timezone

import fakeredis
import mongomock
import pytest
from fastapi.testclient import TestClient

from cache import Cache
from config import Settings
from database import ensure_indexes
from dependencies import Services, get_services
from main import app


@pytest.fixture
def settings():
    return Settings(environment="test", bcrypt_rounds=4, product_chunk=3, bulk_max_workers=1)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["shop_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def cache(redis_client):
    return Cache(redis_client)


@pytest.fixture
def services(db, cache, settings):
    services = Services(db, cache, settings)
    yield services
    services.carts.scheduler.shutdown(run_pending=False)


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(client, db):
    counter = {"n": 0}

    def _make(email=None, password="password123", role="user"):
        counter["n"] += 1
        email = email or f"user{counter['n']}@x.com"
        resp = client.post("/api/auth/register", json={
            "email": email,
            "password": password,
            "first_name": "Test",
            "last_name": "User",
        })
        assert resp.status_code == 201, resp.text
        data = resp.json()["data"]
        if role != "user":
            db["user"].update_one({"email": email}, {"$set": {"role": role}})
        return {
            "id": data["user"]["id"],
            "email": email,
            "password": password,
            "access_token": data["access_token"],
            "refresh_token": data["refresh_token"],
            "headers": {"Authorization": f"Bearer {data['access_token']}"},
        }

    return _make


@pytest.fixture
def make_product(db):
    counter = {"n": 0}

    def _make(owner_id="000000000000000000000000", **fields):
        counter["n"] += 1
        stamp = datetime.now(timezone.utc)
        doc = {
            "name": f"Product {counter['n']}",
            "slug": f"product-{counter['n']}",
            "description": "A product",
            "price": 10.0,
            "stock": 10,
            "images": ["/img.jpg"],
            "category": "general",
            "owner_id": owner_id,
            "is_active": True,
            "created_at": stamp,
            "updated_at": stamp,
        }
        doc.update(fields)
        result = db["product"].insert_one(doc)
        return str(result.inserted_id)

    return _make
