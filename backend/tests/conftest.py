"""
Shared pytest fixtures for the BugBase API.

Every test gets its own in-memory SQLite schema, wired into the app through a
`get_db` override, plus one user per global role and a small seeded project.
"""

import os
import sys
import logging
from datetime import timedelta
from typing import Generator, Dict

# The app's own engine must never touch a file database during tests
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Tests import the flat backend modules directly
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db
from main import app
import models
from auth.security import hash_password, create_access_token

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """Fresh schema per test, dropped afterwards."""
    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """TestClient whose requests share the test_db session."""
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def make_user(test_db: Session, name: str, email: str, password: str, role: str) -> models.User:
    user = models.User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        role=role,
    )
    test_db.add(user)
    test_db.commit()
    test_db.refresh(user)
    logger.info(f"Created {role} user with ID: {user.id}")
    return user


def add_member(test_db: Session, project: models.Project, user: models.User, role: str = "member") -> models.ProjectMember:
    """Add a user to a project directly in the database."""
    member = models.ProjectMember(project_id=project.id, user_id=user.id, role=role)
    test_db.add(member)
    test_db.commit()
    test_db.refresh(member)
    return member


@pytest.fixture(scope="function")
def admin_user(test_db: Session) -> models.User:
    """Global Admin; sees every project."""
    return make_user(test_db, "Admin User", "admin@bugbase.com", "admin123", "Admin")


@pytest.fixture(scope="function")
def regular_user(test_db: Session) -> models.User:
    return make_user(test_db, "Regular User", "user@bugbase.com", "user123", "Developer")


@pytest.fixture(scope="function")
def another_user(test_db: Session) -> models.User:
    """A Developer who belongs to no project unless a test adds them."""
    return make_user(test_db, "Another User", "another@bugbase.com", "another123", "Developer")


@pytest.fixture(scope="function")
def qa_user(test_db: Session) -> models.User:
    return make_user(test_db, "Quinn QA", "qa@bugbase.com", "qa1234", "QA")


@pytest.fixture(scope="function")
def viewer_user(test_db: Session) -> models.User:
    return make_user(test_db, "Vera Viewer", "viewer@bugbase.com", "viewer123", "Viewer")


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """Sign a token for `user`; pass a negative `expires_delta` to get an expired one."""
    claims = {"sub": str(user.id), "email": user.email, "role": user.role}
    return create_access_token(claims, expires_delta)


def headers_for(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


@pytest.fixture(scope="function")
def auth_token(admin_user: models.User) -> str:
    return create_auth_token(admin_user)


@pytest.fixture(scope="function")
def auth_headers(auth_token: str) -> Dict[str, str]:
    """Admin bearer header."""
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture(scope="function")
def user_auth_headers(regular_user: models.User) -> Dict[str, str]:
    return headers_for(regular_user)


@pytest.fixture(scope="function")
def another_user_auth_headers(another_user: models.User) -> Dict[str, str]:
    return headers_for(another_user)


@pytest.fixture(scope="function")
def project(test_db: Session, admin_user: models.User, regular_user: models.User) -> models.Project:
    """
    Create a project with admin as project admin and regular_user as member.
    """
    logger.debug("Creating test project")
    project = models.Project(
        name="Web Store",
        key="WEB",
        description="Customer facing storefront",
        created_by=admin_user.id
    )
    test_db.add(project)
    test_db.commit()
    test_db.refresh(project)

    add_member(test_db, project, admin_user, "admin")
    add_member(test_db, project, regular_user, "member")

    logger.info(f"Created test project with ID: {project.id}")
    return project


@pytest.fixture(scope="function")
def other_project(test_db: Session, admin_user: models.User) -> models.Project:
    """
    Create a second project that regular_user does not belong to.
    """
    project = models.Project(name="Mobile App", key="MOB", created_by=admin_user.id)
    test_db.add(project)
    test_db.commit()
    test_db.refresh(project)

    add_member(test_db, project, admin_user, "admin")
    return project


@pytest.fixture(scope="function")
def issue(test_db: Session, project: models.Project, regular_user: models.User) -> models.Issue:
    """
    Create an open bug in the test project reported by regular_user.
    """
    logger.debug("Creating test issue")
    issue = models.Issue(
        project_id=project.id,
        title="Checkout button does nothing",
        type="Bug",
        description="Clicking checkout has no effect",
        steps_to_reproduce="1. Add item\n2. Click checkout",
        expected_result="Payment page opens",
        actual_result="Nothing happens",
        status="Open",
        priority="High",
        reporter_id=regular_user.id
    )
    test_db.add(issue)
    test_db.commit()
    test_db.refresh(issue)

    logger.info(f"Created test issue with ID: {issue.id}")
    return issue


@pytest.fixture(scope="function")
def milestone(test_db: Session, project: models.Project, admin_user: models.User) -> models.Milestone:
    """
    Create a milestone with three checklist items.
    """
    milestone = models.Milestone(
        project_id=project.id,
        title="Beta release",
        description="Everything needed for the beta",
        status="Not Started",
        created_by=admin_user.id
    )
    milestone.checklist_items = [
        models.ChecklistItem(content=content, order=position)
        for position, content in enumerate(["Freeze features", "Run regression", "Ship build"])
    ]
    test_db.add(milestone)
    test_db.commit()
    test_db.refresh(milestone)

    logger.info(f"Created test milestone with ID: {milestone.id}")
    return milestone
