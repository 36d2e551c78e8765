"""
Tests for the admin settings area: the global activity log and email templates.
"""

import logging
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from main import render_template, DEFAULT_EMAIL_TEMPLATES
from time_utils import utc_now

logger = logging.getLogger(__name__)


# ============== Activity Log Tests ==============


@pytest.fixture
def activity_rows(test_db: Session, issue: models.Issue, regular_user: models.User):
    now = utc_now()
    rows = [
        models.ActivityLog(issue_id=issue.id, user_id=regular_user.id, action="created issue",
                           created_at=now - timedelta(days=3)),
        models.ActivityLog(issue_id=issue.id, user_id=regular_user.id, action="changed status",
                           old_value="Open", new_value="In Progress", created_at=now - timedelta(days=1)),
        models.ActivityLog(issue_id=issue.id, user_id=regular_user.id, action="added a comment",
                           created_at=now - timedelta(hours=1)),
    ]
    test_db.add_all(rows)
    test_db.commit()
    return rows


def test_activity_logs_require_admin(client: TestClient, user_auth_headers: dict):
    response = client.get("/api/settings/activity-logs", headers=user_auth_headers)
    assert response.status_code == 403


def test_activity_logs_newest_first_with_context(client: TestClient, activity_rows, auth_headers: dict):
    response = client.get("/api/settings/activity-logs", headers=auth_headers)

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    data = response.json()
    assert [log["action"] for log in data["logs"]] == ["added a comment", "changed status", "created issue"]
    assert data["logs"][0]["user"]["name"] == "Regular User"
    assert data["logs"][0]["issue"]["project"]["key"] == "WEB"
    assert data["pagination"]["total"] == 3
    logger.info("✓ Activity logs listed")


def test_activity_logs_filters(client: TestClient, activity_rows, auth_headers: dict):
    response = client.get("/api/settings/activity-logs?search=status", headers=auth_headers)
    assert [log["action"] for log in response.json()["logs"]] == ["changed status"]

    response = client.get("/api/settings/activity-logs", params={"action": "created issue"}, headers=auth_headers)
    assert [log["action"] for log in response.json()["logs"]] == ["created issue"]

    since = (utc_now() - timedelta(days=2)).isoformat()
    response = client.get("/api/settings/activity-logs", params={"date_from": since}, headers=auth_headers)
    assert [log["action"] for log in response.json()["logs"]] == ["added a comment", "changed status"]

    until = (utc_now() - timedelta(hours=12)).isoformat()
    response = client.get(
        "/api/settings/activity-logs",
        params={"date_from": since, "date_to": until},
        headers=auth_headers
    )
    assert [log["action"] for log in response.json()["logs"]] == ["changed status"]


# ============== Email Template Tests ==============


def test_create_and_list_templates(client: TestClient, auth_headers: dict):
    response = client.post("/api/settings/email-templates", json={
        "event": "issue_closed",
        "subject": "{{issue_title}} closed",
        "body": "Closed by {{actor_name}}"
    }, headers=auth_headers)

    assert response.status_code == 201, f"Expected 201, got {response.status_code}: {response.json()}"
    assert response.json()["enabled"] is True

    response = client.get("/api/settings/email-templates", headers=auth_headers)
    assert [t["event"] for t in response.json()] == ["issue_closed"]


def test_duplicate_template_conflicts(client: TestClient, auth_headers: dict):
    payload = {"event": "issue_closed", "subject": "s", "body": "b"}
    client.post("/api/settings/email-templates", json=payload, headers=auth_headers)

    response = client.post("/api/settings/email-templates", json=payload, headers=auth_headers)
    assert response.status_code == 409


def test_update_template(client: TestClient, test_db: Session, auth_headers: dict):
    test_db.add(models.EmailTemplate(event="comment_added", subject="Old", body="Old body"))
    test_db.commit()

    response = client.put("/api/settings/email-templates", json={
        "event": "comment_added",
        "subject": "New comment on {{issue_title}}",
        "body": "{{comment_body}}",
        "enabled": False
    }, headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["subject"] == "New comment on {{issue_title}}"
    assert response.json()["enabled"] is False


def test_update_unknown_template(client: TestClient, auth_headers: dict):
    response = client.put(
        "/api/settings/email-templates",
        json={"event": "nope", "subject": "s", "body": "b"},
        headers=auth_headers
    )
    assert response.status_code == 404


def test_preview_template(client: TestClient, test_db: Session, auth_headers: dict):
    test_db.add(models.EmailTemplate(
        event="issue_assigned",
        subject="[{{project_key}}] {{ issue_title }}",
        body="Hi {{user_name}}, see {{issue_url}}"
    ))
    test_db.commit()

    response = client.post("/api/settings/email-templates/preview", json={
        "event": "issue_assigned",
        "context": {"project_key": "WEB", "issue_title": "Broken cart", "user_name": "Dana"}
    }, headers=auth_headers)

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    assert response.json() == {
        "event": "issue_assigned",
        "subject": "[WEB] Broken cart",
        "body": "Hi Dana, see {{issue_url}}",
    }
    logger.info("✓ Template preview rendered")


def test_templates_require_admin(client: TestClient, user_auth_headers: dict):
    response = client.get("/api/settings/email-templates", headers=user_auth_headers)
    assert response.status_code == 403


def test_render_template_leaves_unknown_placeholders():
    assert render_template("{{a}} and {{b}}", {"a": 1}) == "1 and {{b}}"


def test_default_templates_cover_issue_events():
    events = {t["event"] for t in DEFAULT_EMAIL_TEMPLATES}
    assert events == {"issue_created", "issue_assigned", "status_changed", "comment_added", "issue_verified"}
