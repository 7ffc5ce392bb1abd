import logging

import pytest

from config import Settings
from main import create_app
from security import SCOPE_ACCESS, TokenIssuer

EMAIL = "jane@example.com"


def test_health_routes(client):
    assert client.get("/").json() == {"message": "E-Commerce Express backend running"}
    body = client.get("/test").json()
    assert body["backend"] == "ok"
    assert body["db"] == "ok"


def test_register_returns_token_and_public_profile(client, mailer, db):
    response = client.post(
        "/api/v1/user/register-self",
        json={"name": "Jane Doe", "email": "Jane@Example.COM", "password": "LongPass123"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "User registered successfully"
    assert body["token"]
    assert body["user"]["email"] == EMAIL
    assert body["user"]["role"] == "customer"
    for hidden in ("passwordHash", "otpCode", "otpExpiresAt", "tokenVersion"):
        assert hidden not in body["user"]

    assert db["user"].find_one({"email": EMAIL})["password_hash"] != "LongPass123"
    assert [m["to"] for m in mailer.sent] == [EMAIL]
    assert mailer.sent[0]["subject"] == "Welcome to E-Commerce Express"


def test_register_rejects_duplicate_email(client, user):
    response = client.post(
        "/api/v1/user/register-self",
        json={"name": "Jane Again", "email": EMAIL, "password": "LongPass123"},
    )
    assert response.status_code == 400
    assert response.json() == {"message": "User already exists"}


def test_register_enforces_password_policy(client, db):
    response = client.post(
        "/api/v1/user/register-self",
        json={"name": "Jane Doe", "email": EMAIL, "password": "weak"},
    )
    assert response.status_code == 400
    assert all(e["field"] == "password" for e in response.json()["errors"])
    assert db["user"].count_documents({}) == 0


def test_register_survives_mail_outage(client, mailer):
    mailer.fail = True
    response = client.post(
        "/api/v1/user/register-self",
        json={"name": "Jane Doe", "email": EMAIL, "password": "LongPass123"},
    )
    assert response.status_code == 201


@pytest.mark.parametrize(
    "email, password, status, message",
    [
        ("ghost@example.com", "LongPass123", 404, "User not found"),
        (EMAIL, "WrongPass123", 401, "Invalid credentials"),
    ],
)
def test_login_failures(client, user, email, password, status, message):
    response = client.post("/api/v1/user/login", json={"email": email, "password": password})
    assert response.status_code == status
    assert response.json() == {"message": message}


def test_login_and_profile(client, user):
    response = client.post("/api/v1/user/login", json={"email": EMAIL, "password": "LongPass123"})
    assert response.status_code == 200
    token = response.json()["token"]

    me = client.get("/api/v1/user/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["data"]["email"] == EMAIL
    assert me.json()["data"]["id"] == user["user"]["id"]


def test_refresh_token_issues_access_token(client, auth_headers, settings):
    response = client.get("/api/v1/user/refresh-token", headers=auth_headers)
    assert response.status_code == 200
    claims = client.app.state.tokens.verify(response.json()["token"])
    assert claims.scope == SCOPE_ACCESS
    assert claims.email == EMAIL


def test_tokens_signed_with_another_secret_are_rejected(client, user, settings):
    other = settings.model_copy(update={"JWT_SECRET": "another-secret-0123456789abcdef0123456789"})
    forged = TokenIssuer(other).issue(user["user"]["id"], {"email": EMAIL, "scope": SCOPE_ACCESS, "ver": 0})
    response = client.get("/api/v1/user/me", headers={"Authorization": f"Bearer {forged}"})
    assert response.status_code == 401


def test_products_listing_hides_inactive(client, products):
    names = {p["name"] for p in client.get("/api/v1/products").json()}
    assert names == {"Classic Tee", "Ceramic Mug", "Zip Hoodie"}

    apparel = client.get("/api/v1/products", params={"category": "Apparel", "q": "tee"}).json()
    assert [p["name"] for p in apparel] == ["Classic Tee"]


def test_get_product(client, products):
    response = client.get(f"/api/v1/products/{products['hoodie']}")
    assert response.status_code == 200
    assert response.json()["variants"][1]["discountPrice"] == 39.0

    assert client.get(f"/api/v1/products/{products['poster']}").status_code == 404
    assert client.get("/api/v1/products/not-an-id").status_code == 404


def test_startup_creates_unique_indexes(client, db):
    assert db["user"].index_information()["email_1"]["unique"] is True
    assert db["cart"].index_information()["user_id_1"]["unique"] is True


def test_default_jwt_secret_is_flagged_outside_development(db, mailer, caplog, monkeypatch):
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    caplog.set_level(logging.WARNING, logger="main")

    create_app(Settings(_env_file=None, BCRYPT_ROUNDS=4), db=db, mailer=mailer)
    assert any("JWT_SECRET" in r.getMessage() for r in caplog.records)


def test_strong_jwt_secret_is_not_flagged(settings, db, mailer, caplog):
    caplog.set_level(logging.WARNING, logger="main")
    create_app(settings, db=db, mailer=mailer)
    assert not any("JWT_SECRET" in r.getMessage() for r in caplog.records)


def test_soft_deleted_user_cannot_sign_in(client, user, auth_headers, db):
    db["user"].update_one({"email": EMAIL}, {"$set": {"deleted": True}})
    assert client.get("/api/v1/user/me", headers=auth_headers).status_code == 401
    response = client.post("/api/v1/user/login", json={"email": EMAIL, "password": "LongPass123"})
    assert response.status_code == 404
