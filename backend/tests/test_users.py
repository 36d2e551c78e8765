"""
Tests for user administration endpoints (/api/users).
"""

import logging

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from auth.security import verify_password
from tests.conftest import add_member, headers_for, make_user

logger = logging.getLogger(__name__)


# ============== Authorization Tests ==============


def test_list_users_requires_admin(client: TestClient, user_auth_headers: dict):
    response = client.get("/api/users", headers=user_auth_headers)

    assert response.status_code == 403, f"Expected 403, got {response.status_code}: {response.json()}"
    assert "Admin" in response.json()["detail"]
    logger.info("✓ Non-admin cannot list users")


def test_list_users_without_authentication(client: TestClient):
    response = client.get("/api/users")
    assert response.status_code == 401


# ============== Listing Tests ==============


def test_list_users_with_search_and_pagination(
    client: TestClient,
    admin_user: models.User,
    regular_user: models.User,
    another_user: models.User,
    auth_headers: dict
):
    response = client.get("/api/users", headers=auth_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["pagination"]["total"] == 3
    assert {u["email"] for u in data["users"]} == {admin_user.email, regular_user.email, another_user.email}

    response = client.get("/api/users?search=another", headers=auth_headers)
    data = response.json()
    assert [u["id"] for u in data["users"]] == [another_user.id]

    response = client.get("/api/users?limit=2&page=2", headers=auth_headers)
    data = response.json()
    assert len(data["users"]) == 1
    assert data["pagination"] == {
        "page": 2, "limit": 2, "total": 3, "total_pages": 2, "has_next": False, "has_prev": True
    }
    logger.info("✓ Users listed with search and pagination")


# ============== Update Tests ==============


def test_update_user_role_and_password(
    client: TestClient,
    test_db: Session,
    regular_user: models.User,
    auth_headers: dict
):
    response = client.put(
        f"/api/users/{regular_user.id}",
        json={"role": "QA", "password": "fresh123"},
        headers=auth_headers
    )

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    assert response.json()["role"] == "QA"

    test_db.refresh(regular_user)
    assert regular_user.role == "QA"
    assert verify_password("fresh123", regular_user.password_hash)
    logger.info("✓ User role and password updated")


def test_update_unknown_user(client: TestClient, auth_headers: dict):
    response = client.put("/api/users/9999", json={"name": "Nobody"}, headers=auth_headers)
    assert response.status_code == 404


def test_update_user_invalid_role(client: TestClient, regular_user: models.User, auth_headers: dict):
    response = client.put(f"/api/users/{regular_user.id}", json={"role": "Overlord"}, headers=auth_headers)
    assert response.status_code == 422


# ============== Delete Tests ==============


def test_admin_cannot_delete_self(client: TestClient, admin_user: models.User, auth_headers: dict):
    response = client.delete(f"/api/users/{admin_user.id}", headers=auth_headers)

    assert response.status_code == 400, f"Expected 400, got {response.status_code}: {response.json()}"
    logger.info("✓ Self deletion refused")


def test_delete_user_keeps_authored_content(
    client: TestClient,
    test_db: Session,
    project: models.Project,
    issue: models.Issue,
    regular_user: models.User,
    auth_headers: dict
):
    """Deleting a user removes memberships but keeps issues and comments with a null author."""
    test_db.add(models.Comment(issue_id=issue.id, user_id=regular_user.id, body="Still broken"))
    test_db.add(models.IssueAssignee(issue_id=issue.id, user_id=regular_user.id))
    test_db.commit()
    user_id = regular_user.id

    response = client.delete(f"/api/users/{user_id}", headers=auth_headers)
    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"

    test_db.expire_all()
    assert test_db.query(models.User).filter(models.User.id == user_id).first() is None
    assert test_db.query(models.ProjectMember).filter(models.ProjectMember.user_id == user_id).count() == 0
    assert test_db.query(models.IssueAssignee).filter(models.IssueAssignee.user_id == user_id).count() == 0

    remaining_issue = test_db.query(models.Issue).filter(models.Issue.id == issue.id).first()
    assert remaining_issue is not None
    assert remaining_issue.reporter_id is None
    comment = test_db.query(models.Comment).filter(models.Comment.issue_id == issue.id).first()
    assert comment.body == "Still broken"
    assert comment.user_id is None
    logger.info("✓ User deleted with authored content preserved")


def test_delete_last_verifier_returns_issue_to_review(
    client: TestClient,
    test_db: Session,
    project: models.Project,
    issue: models.Issue,
    another_user: models.User,
    admin_user: models.User,
    auth_headers: dict
):
    add_member(test_db, project, another_user)
    response = client.post(f"/api/issues/{issue.id}/verify", headers=headers_for(another_user))
    assert response.json()["status"] == "Verified"

    response = client.delete(f"/api/users/{another_user.id}", headers=auth_headers)
    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"

    response = client.get(f"/api/issues/{issue.id}", headers=auth_headers)
    data = response.json()
    assert data["status"] == "In Review"
    assert data["verification_count"] == 0
    assert data["is_verified"] is False

    test_db.expire_all()
    entry = test_db.query(models.ActivityLog)\
        .filter(models.ActivityLog.issue_id == issue.id)\
        .order_by(models.ActivityLog.id.desc())\
        .first()
    assert entry.action == "changed status"
    assert (entry.old_value, entry.new_value) == ("Verified", "In Review")
    assert entry.user_id == admin_user.id
    logger.info("✓ Deleting the last verifier sends the issue back to review")


def test_delete_one_of_two_verifiers_keeps_verified(
    client: TestClient,
    test_db: Session,
    project: models.Project,
    issue: models.Issue,
    regular_user: models.User,
    another_user: models.User,
    auth_headers: dict
):
    add_member(test_db, project, another_user)
    client.post(f"/api/issues/{issue.id}/verify", headers=headers_for(regular_user))
    client.post(f"/api/issues/{issue.id}/verify", headers=headers_for(another_user))

    response = client.delete(f"/api/users/{another_user.id}", headers=auth_headers)
    assert response.status_code == 200

    data = client.get(f"/api/issues/{issue.id}", headers=auth_headers).json()
    assert data["status"] == "Verified"
    assert data["verification_count"] == 1


def test_user_search_treats_wildcards_literally(
    client: TestClient,
    test_db: Session,
    admin_user: models.User,
    regular_user: models.User,
    auth_headers: dict
):
    pct = make_user(test_db, "100% Tester", "pct@bugbase.com", "pct1234", "QA")

    response = client.get("/api/users", params={"search": "_"}, headers=auth_headers)
    assert response.json()["users"] == []

    response = client.get("/api/users", params={"search": "%"}, headers=auth_headers)
    assert [u["id"] for u in response.json()["users"]] == [pct.id]
