from datetime import datetime, timedelta, timezone

import jwt
import pytest

from auth import Identity
from errors import IdentityNotFound, InvalidCredential


def _token(sub, secret, minutes=5):
    now = datetime.now(timezone.utc)
    payload = {"sub": str(sub), "iat": now, "exp": now + timedelta(minutes=minutes)}
    return jwt.encode(payload, secret, algorithm="HS256")


def test_register_and_me(client, headers):
    response = client.post(
        "/auth/register",
        json={"email": "new@example.com", "password": "secret123", "first_name": "Ada"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["user"]["role"] == "customer"
    assert "password_hash" not in body["user"]

    me = client.get("/me", headers=headers(body["token"]))
    assert me.status_code == 200
    assert me.json()["email"] == "new@example.com"
    assert me.json()["first_name"] == "Ada"


def test_register_duplicate_email(client, customer):
    response = client.post("/auth/register", json={"email": "customer@example.com", "password": "secret123"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Email already registered"


def test_login(client, customer):
    ok = client.post("/auth/login", json={"email": "customer@example.com", "password": "secret123"})
    assert ok.status_code == 200
    assert ok.json()["token"]

    bad = client.post("/auth/login", json={"email": "customer@example.com", "password": "wrong-one"})
    assert bad.status_code == 401


def test_password_is_hashed(store, customer):
    user = store.find_user_by_email("customer@example.com")
    assert user.password_hash != "secret123"


def test_missing_token(client):
    response = client.get("/me")
    assert response.status_code == 401
    assert response.json()["code"] == "invalid_credential"


@pytest.mark.parametrize("token", ["garbage", _token(1, "some-other-secret-0123456789abcdef")])
def test_rejected_tokens(client, headers, customer, token):
    response = client.get("/me", headers=headers(token))
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid token"


def test_expired_token(client, headers, settings, customer):
    user, _ = customer
    response = client.get("/me", headers=headers(_token(user.id, settings.jwt_secret, minutes=-5)))
    assert response.status_code == 401
    assert response.json()["detail"] == "Token expired"


def test_unknown_user(app, settings):
    with pytest.raises(IdentityNotFound):
        app.state.authenticator.authenticate(_token(4242, settings.jwt_secret))


def test_non_numeric_subject(app, settings):
    with pytest.raises(InvalidCredential):
        app.state.authenticator.authenticate(_token("abc", settings.jwt_secret))


def test_role_is_resolved_per_request(client, headers, customer, admin):
    user, token = customer
    _, admin_token = admin

    assert client.get("/users", headers=headers(token)).status_code == 403

    promoted = client.put(f"/users/{user.id}", json={"role": "admin"}, headers=headers(admin_token))
    assert promoted.status_code == 200

    # same token, new role
    assert client.get("/users", headers=headers(token)).status_code == 200
    assert client.post("/orders", json={"items": [{"variant_id": 1, "quantity": 1}]},
                       headers=headers(token)).status_code == 403


def test_deactivated_user_is_rejected(client, headers, customer, admin):
    user, token = customer
    _, admin_token = admin

    client.put(f"/users/{user.id}", json={"is_active": False}, headers=headers(admin_token))

    response = client.get("/me", headers=headers(token))
    assert response.status_code == 401
    assert response.json()["code"] == "identity_not_found"


def test_customer_cannot_manage_catalog(client, headers, customer):
    _, token = customer
    response = client.post("/products", json={"name": "X", "base_price": 1}, headers=headers(token))
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


def test_identity_permissions():
    assert Identity(1, "a@example.com", "customer").can("orders:create")
    assert not Identity(1, "a@example.com", "customer").can("orders:update")
    assert Identity(1, "a@example.com", "admin").can("orders:update")
    assert not Identity(1, "a@example.com", "unknown").can("cart:use")
