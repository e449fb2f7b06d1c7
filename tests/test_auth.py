from datetime import timedelta

import jwt

import config
from conftest import PASSWORD
from database import now

SIGNUP = {
    "fname": "Mona",
    "lname": "Adel",
    "email": "Mona@Example.com",
    "password": "pass1234",
    "password_confirm": "pass1234",
}


def test_signup_returns_user_and_token(client, db):
    res = client.post("/api/v1/auth/signup", json=SIGNUP)
    assert res.status_code == 201
    body = res.json()
    assert body["data"]["email"] == "mona@example.com"
    assert body["data"]["role"] == "user"
    assert "password" not in body["data"]

    claims = jwt.decode(body["token"], config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    assert claims["user_id"] == body["data"]["id"]
    assert db["user"].find_one({"email": "mona@example.com"})["password"] != "pass1234"


def test_signup_rejects_mismatch_and_duplicates(client):
    res = client.post("/api/v1/auth/signup", json={**SIGNUP, "password_confirm": "other"})
    assert res.status_code == 400
    assert "password_confirm" in res.json()["errors"]

    assert client.post("/api/v1/auth/signup", json=SIGNUP).status_code == 201
    res = client.post("/api/v1/auth/signup", json=SIGNUP)
    assert res.status_code == 409


def test_login(client, make_user):
    user = make_user("user")
    res = client.post("/api/v1/auth/login", json={"email": user["email"], "password": PASSWORD})
    assert res.status_code == 200
    assert res.json()["token"]

    res = client.post("/api/v1/auth/login", json={"email": user["email"], "password": "wrong-one"})
    assert res.status_code == 401
    assert res.json()["message"] == "Incorrect email or password"


def test_token_is_checked(client, make_user, headers_for):
    assert client.get("/api/v1/users/me").status_code == 401
    res = client.get("/api/v1/users/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401

    user = make_user("user")
    expired = jwt.encode(
        {"user_id": str(user["_id"]), "iat": 0, "exp": 1}, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM
    )
    res = client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {expired}"})
    assert res.status_code == 401
    assert "expired" in res.json()["message"]


def test_token_issued_before_password_change_is_rejected(client, make_user, headers_for, db):
    user = make_user("user")
    headers = headers_for(user)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"password_changed_at": now() + timedelta(minutes=1)}})
    res = client.get("/api/v1/users/me", headers=headers)
    assert res.status_code == 401


def test_deactivated_user_cannot_use_token(client, make_user, headers_for):
    user = make_user("user")
    headers = headers_for(user)
    assert client.delete("/api/v1/users/me", headers=headers).status_code == 204
    assert client.get("/api/v1/users/me", headers=headers).status_code == 401
    res = client.post("/api/v1/auth/login", json={"email": user["email"], "password": PASSWORD})
    assert res.status_code == 401


def test_me_profile_and_password(client, make_user, headers_for):
    user = make_user("manager")
    headers = headers_for(user)

    res = client.get("/api/v1/users/me", headers=headers)
    assert res.status_code == 200
    assert res.json()["data"]["email"] == user["email"]
    assert "password" not in res.json()["data"]

    res = client.put("/api/v1/users/me", json={"fname": "Sara"}, headers=headers)
    assert res.json()["data"]["fname"] == "Sara"
    assert res.json()["data"]["slug"] == f"sara-{user['lname'].lower()}"

    res = client.put("/api/v1/users/me/password", json={"password": "brand-new"}, headers=headers)
    assert res.status_code == 200
    token = res.json()["token"]
    res = client.post("/api/v1/auth/login", json={"email": user["email"], "password": "brand-new"})
    assert res.status_code == 200
    assert client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {token}"}).status_code == 200


def test_user_admin_is_admin_only(client, make_user, manager_headers, admin_headers):
    make_user("user")
    assert client.get("/api/v1/users", headers=manager_headers).status_code == 403

    res = client.get("/api/v1/users", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["results"] >= 2
    assert all("password" not in u for u in res.json()["data"])

    body = {"fname": "New", "lname": "Staff", "email": "staff@example.com", "password": "secret99", "role": "manager"}
    res = client.post("/api/v1/users", json=body, headers=admin_headers)
    assert res.status_code == 201
    assert res.json()["data"]["role"] == "manager"
    assert res.json()["data"]["active"] is True

    res = client.post("/api/v1/users", json=body, headers=admin_headers)
    assert res.status_code == 409

    res = client.post("/api/v1/auth/login", json={"email": "staff@example.com", "password": "secret99"})
    assert res.status_code == 200


def test_admin_changes_user_password(client, make_user, admin_headers):
    user = make_user("user")
    res = client.put(
        f"/api/v1/users/change-password/{user['_id']}", json={"password": "reset-pass"}, headers=admin_headers
    )
    assert res.status_code == 200
    res = client.post("/api/v1/auth/login", json={"email": user["email"], "password": "reset-pass"})
    assert res.status_code == 200


def test_protected_routes_reject_anonymous_callers(client, make_user, category):
    target = make_user("user")
    res = client.post(
        "/api/v1/users",
        json={"fname": "Eve", "lname": "X", "email": "eve@example.com", "password": "secret99", "role": "admin"},
    )
    assert res.status_code == 401
    assert client.delete(f"/api/v1/users/{target['_id']}").status_code == 401
    assert client.post("/api/v1/categories", json={"name": "Books"}).status_code == 401
    assert client.put(f"/api/v1/categories/{category['_id']}", json={"name": "Other"}).status_code == 401
    assert client.get("/api/v1/coupons").status_code == 401
    assert client.put(f"/api/v1/orders/{target['_id']}/pay").status_code == 401


def test_capability_lookup_uses_route_template(client, user_headers):
    # /users/me must resolve to its own template, not to /users/{id} (admin only)
    assert client.get("/api/v1/users/me", headers=user_headers).status_code == 200
    assert client.get("/api/v1/users/me", headers=user_headers).json()["data"]["role"] == "user"
