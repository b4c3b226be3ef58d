from datetime import timedelta

import pytest

from config import Settings
from errors import AuthError
from security import _encode, create_access_token, create_refresh_token, decode_token

SIGNUP = {"email": "Jane@Example.com", "password": "password123", "first_name": "Jane", "last_name": "Doe"}


class TestTokens:
    settings = Settings(environment="test", jwt_secret="a" * 32, jwt_refresh_secret="b" * 32)

    def test_access_token_round_trip(self):
        token = create_access_token("u1", self.settings)
        assert decode_token(token, "access", self.settings) == "u1"

    def test_refresh_token_is_not_an_access_token(self):
        token = create_refresh_token("u1", self.settings)
        assert decode_token(token, "refresh", self.settings) == "u1"
        with pytest.raises(AuthError):
            decode_token(token, "access", self.settings)

    def test_expired_token_is_rejected(self):
        token = _encode("u1", "access", self.settings.jwt_secret, timedelta(seconds=-5), "HS256")
        with pytest.raises(AuthError):
            decode_token(token, "access", self.settings)

    def test_tokens_are_unique_per_issue(self):
        assert create_access_token("u1", self.settings) != create_access_token("u1", self.settings)


def test_register_returns_envelope_with_user_and_tokens(client, db):
    resp = client.post("/api/auth/register", json=SIGNUP)

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["statusCode"] == 201
    assert body["message"] == "Registration successful"
    user = body["data"]["user"]
    assert user["email"] == "jane@example.com"
    assert user["role"] == "user"
    assert user["mfa_enabled"] is False
    assert "password_hash" not in user
    assert body["data"]["access_token"] and body["data"]["refresh_token"]
    assert db["user"].find_one({"email": "jane@example.com"})["password_hash"] != "password123"


def test_duplicate_email_is_a_conflict(client):
    client.post("/api/auth/register", json=SIGNUP)
    resp = client.post("/api/auth/register", json={**SIGNUP, "email": "jane@example.com"})

    assert resp.status_code == 409
    assert resp.json()["success"] is False


def test_short_password_fails_validation(client):
    resp = client.post("/api/auth/register", json={**SIGNUP, "password": "short"})

    assert resp.status_code == 400
    assert resp.json()["message"] == "Validation failed"


def test_login_with_bad_credentials(client, make_user):
    user = make_user()

    wrong = client.post("/api/auth/login", json={"email": user["email"], "password": "wrong-password"})
    unknown = client.post("/api/auth/login", json={"email": "ghost@x.com", "password": "password123"})

    assert wrong.status_code == 401
    assert wrong.json()["message"] == "Invalid credentials"
    assert unknown.status_code == 401


def test_login_is_case_insensitive_on_email(client, make_user):
    make_user(email="mixed@x.com")

    resp = client.post("/api/auth/login", json={"email": "MIXED@x.com", "password": "password123"})

    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["email"] == "mixed@x.com"


def test_refresh_rotates_and_old_token_stops_working(client, make_user):
    user = make_user()

    first = client.post("/api/auth/refresh-token", json={"refresh_token": user["refresh_token"]})
    assert first.status_code == 200
    rotated = first.json()["data"]

    replay = client.post("/api/auth/refresh-token", json={"refresh_token": user["refresh_token"]})
    assert replay.status_code == 401

    second = client.post("/api/auth/refresh-token", json={"refresh_token": rotated["refresh_token"]})
    assert second.status_code == 200


def test_access_token_cannot_refresh(client, make_user):
    user = make_user()

    resp = client.post("/api/auth/refresh-token", json={"refresh_token": user["access_token"]})

    assert resp.status_code == 401


def test_logout_blacklists_access_token_and_drops_refresh(client, redis_client, make_user):
    user = make_user()

    resp = client.post("/api/auth/logout", headers=user["headers"])
    assert resp.status_code == 200

    after = client.get("/api/cart", headers=user["headers"])
    assert after.status_code == 401
    assert after.json()["message"] == "Token is no longer valid"
    assert 0 < redis_client.ttl("bl_" + user["access_token"]) <= 3600

    refresh = client.post("/api/auth/refresh-token", json={"refresh_token": user["refresh_token"]})
    assert refresh.status_code == 401


def test_missing_or_garbage_token_is_unauthorized(client):
    missing = client.get("/api/cart")
    garbage = client.get("/api/cart", headers={"Authorization": "Bearer not.a.jwt"})

    for resp in (missing, garbage):
        assert resp.status_code == 401
        assert resp.json()["message"] == "Not authorized to access this route"
        assert resp.json()["success"] is False


def test_deactivated_user_is_locked_out(client, db, make_user):
    user = make_user()
    db["user"].update_one({"email": user["email"]}, {"$set": {"is_active": False}})

    login = client.post("/api/auth/login", json={"email": user["email"], "password": user["password"]})
    assert login.status_code == 401
    assert login.json()["message"] == "Account is deactivated"

    existing = client.get("/api/cart", headers=user["headers"])
    assert existing.status_code == 401
    assert existing.json()["message"] == "User account is deactivated"


def test_deleted_user_token_is_rejected(client, db, make_user):
    user = make_user()
    db["user"].delete_one({"email": user["email"]})

    resp = client.get("/api/cart", headers=user["headers"])

    assert resp.status_code == 401
    assert resp.json()["message"] == "User no longer exists"


def test_sixth_login_in_window_is_rate_limited(client, make_user):
    user = make_user()
    payload = {"email": user["email"], "password": user["password"]}

    for _ in range(5):
        assert client.post("/api/auth/login", json=payload).status_code == 200
    blocked = client.post("/api/auth/login", json=payload)

    assert blocked.status_code == 429
    assert blocked.json()["message"] == "Too many attempts from this IP, please try again after 15 minutes"


def test_admin_only_routes_refuse_users(client, make_user):
    user = make_user()

    resp = client.post("/api/products/bulk", json=[], headers=user["headers"])

    assert resp.status_code == 403
    assert resp.json()["message"] == "Not authorized to access this route"


def test_root_and_health(client):
    assert client.get("/").json()["success"] is True
    assert client.get("/health").json()["data"] == {"ok": True}
