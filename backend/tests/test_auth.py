"""
Tests for authentication endpoints (/api/auth).

Tests cover:
- Registration (default role, duplicate email, Admin self-registration)
- Login (success, wrong password, unknown email)
- Current user lookup with header and query-string tokens
- Password change
- Expired and malformed tokens
"""

import logging
from datetime import timedelta

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from auth.security import create_access_token, verify_password
from tests.conftest import create_auth_token

logger = logging.getLogger(__name__)


# ============== Registration Tests ==============


def test_register_creates_developer_and_returns_token(client: TestClient, test_db: Session):
    """Test that registration defaults to the Developer role and signs the user in."""
    response = client.post("/api/auth/register", json={
        "name": "Dana Dev",
        "email": "dana@bugbase.com",
        "password": "secret1"
    })

    assert response.status_code == 201, f"Expected 201, got {response.status_code}: {response.json()}"
    data = response.json()
    assert data["user"]["email"] == "dana@bugbase.com"
    assert data["user"]["role"] == "Developer"
    assert data["token_type"] == "bearer"
    assert data["token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
    assert me.status_code == 200
    assert me.json()["id"] == data["user"]["id"]
    logger.info("✓ Registration returns a working token")


def test_register_duplicate_email(client: TestClient, regular_user: models.User):
    """Test that registering an existing email fails (400)."""
    response = client.post("/api/auth/register", json={
        "name": "Copy Cat",
        "email": regular_user.email,
        "password": "secret1"
    })

    assert response.status_code == 400, f"Expected 400, got {response.status_code}: {response.json()}"
    assert response.json()["detail"] == "Email already registered"
    logger.info("✓ Duplicate email rejected")


def test_register_with_qa_role(client: TestClient):
    response = client.post("/api/auth/register", json={
        "name": "Tess Tester",
        "email": "tess@bugbase.com",
        "password": "secret1",
        "role": "QA"
    })

    assert response.status_code == 201
    assert response.json()["user"]["role"] == "QA"


def test_register_cannot_self_assign_admin(client: TestClient, test_db: Session):
    """Test that the Admin role cannot be self-assigned (403)."""
    response = client.post("/api/auth/register", json={
        "name": "Sneaky",
        "email": "sneaky@bugbase.com",
        "password": "secret1",
        "role": "Admin"
    })

    assert response.status_code == 403, f"Expected 403, got {response.status_code}: {response.json()}"
    assert test_db.query(models.User).filter(models.User.email == "sneaky@bugbase.com").first() is None
    logger.info("✓ Admin self-registration refused")


def test_register_validation(client: TestClient):
    """Test that short names, short passwords and bad emails are rejected (422)."""
    for payload in (
        {"name": "A", "email": "a@bugbase.com", "password": "secret1"},
        {"name": "Alice", "email": "not-an-email", "password": "secret1"},
        {"name": "Alice", "email": "alice@bugbase.com", "password": "123"},
    ):
        response = client.post("/api/auth/register", json=payload)
        assert response.status_code == 422, f"Expected 422 for {payload}, got {response.status_code}"


# ============== Login Tests ==============


def test_login_success(client: TestClient, regular_user: models.User):
    response = client.post("/api/auth/login", json={"email": "user@bugbase.com", "password": "user123"})

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    data = response.json()
    assert data["user"]["id"] == regular_user.id
    assert data["token"]
    logger.info("✓ Login succeeded")


def test_login_wrong_password(client: TestClient, regular_user: models.User):
    response = client.post("/api/auth/login", json={"email": "user@bugbase.com", "password": "nope123"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password"


def test_login_unknown_email(client: TestClient):
    response = client.post("/api/auth/login", json={"email": "ghost@bugbase.com", "password": "nope123"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password"


# ============== Token Tests ==============


def test_me_without_token(client: TestClient):
    response = client.get("/api/auth/me")

    assert response.status_code == 401, f"Expected 401, got {response.status_code}: {response.json()}"
    assert response.headers.get("www-authenticate") == "Bearer"


def test_me_with_query_token(client: TestClient, regular_user: models.User):
    """Test that the token may be passed as a query parameter."""
    token = create_auth_token(regular_user)
    response = client.get(f"/api/auth/me?token={token}")

    assert response.status_code == 200
    assert response.json()["email"] == regular_user.email
    logger.info("✓ Query string token accepted")


def test_expired_token_rejected(client: TestClient, regular_user: models.User):
    token = create_auth_token(regular_user, expires_delta=timedelta(seconds=-10))
    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or expired token"


def test_token_for_deleted_user_rejected(client: TestClient):
    token = create_access_token({"sub": "9999", "email": "gone@bugbase.com", "role": "Developer"})
    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["detail"] == "User not found"


def test_garbage_token_rejected(client: TestClient):
    response = client.get("/api/auth/me", headers={"Authorization": "Bearer not.a.token"})

    assert response.status_code == 401


# ============== Password Change Tests ==============


def test_change_password(client: TestClient, test_db: Session, regular_user: models.User, user_auth_headers: dict):
    response = client.post("/api/auth/change-password", json={
        "current_password": "user123",
        "new_password": "better456"
    }, headers=user_auth_headers)

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    test_db.refresh(regular_user)
    assert verify_password("better456", regular_user.password_hash)

    login = client.post("/api/auth/login", json={"email": "user@bugbase.com", "password": "better456"})
    assert login.status_code == 200
    logger.info("✓ Password changed")


def test_change_password_wrong_current(client: TestClient, user_auth_headers: dict):
    response = client.post("/api/auth/change-password", json={
        "current_password": "wrong",
        "new_password": "better456"
    }, headers=user_auth_headers)

    assert response.status_code == 401
    assert response.json()["detail"] == "Current password is incorrect"
