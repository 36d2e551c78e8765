"""
Project-scoped access rules.

A global Admin can see and manage every project. Everyone else needs a
ProjectMember row; any membership grants read/write access to the project's
issues, and the project "admin" membership role is needed to manage the
project itself (settings, members, milestones).

Lookups that fail because the caller is not a member return 404 so that
project and issue ids are not confirmed to outsiders.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session
from fastapi import HTTPException, status

from models import User, Project, ProjectMember, Issue, UserRole

logger = logging.getLogger(__name__)

# Any membership grants read access; only project admins manage the project
ROLE_HIERARCHY = {"member": 0, "qa": 0, "admin": 1}


def is_global_admin(user: User) -> bool:
    return user.role == UserRole.admin.value


def get_membership(user: User, project_id: int, db: Session) -> Optional[ProjectMember]:
    return (
        db.query(ProjectMember)
        .filter(ProjectMember.project_id == project_id, ProjectMember.user_id == user.id)
        .first()
    )


def check_project_permission(
    user: User, project_id: int, required_role: str, db: Session
) -> bool:
    """
    Whether the user holds at least `required_role` ('member' or 'admin') in the project.

    Global Admins always pass. Otherwise the user's membership role is compared
    against ROLE_HIERARCHY.
    """
    if is_global_admin(user):
        return True

    membership = get_membership(user, project_id, db)
    if membership is None:
        return False

    allowed = ROLE_HIERARCHY.get(membership.role, 0) >= ROLE_HIERARCHY.get(required_role, 0)
    if not allowed:
        logger.info(
            f"User {user.id} is '{membership.role}' in project {project_id}; '{required_role}' required"
        )
    return allowed


def has_project_access(user: User, project_id: int, db: Session) -> bool:
    return check_project_permission(user, project_id, "member", db)


def require_project_permission(
    user: User, project_id: int, required_role: str, db: Session
) -> Project:
    """
    Load a project the user may act on with `required_role`.

    Raises:
        HTTPException: 404 if the project does not exist or the user is not a member
        HTTPException: 403 if the user is a member with too low a role
    """
    project = db.query(Project).filter(Project.id == project_id).first()
    if project is None or not has_project_access(user, project_id, db):
        logger.info(f"Project {project_id} missing or hidden from user {user.id}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")

    if required_role != "member" and not check_project_permission(user, project_id, required_role, db):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Insufficient permissions. Required project role: {required_role}",
        )

    return project


def require_issue_access(user: User, issue_id: int, db: Session) -> Issue:
    """Load an issue the user can see through its project, or raise 404."""
    issue = db.query(Issue).filter(Issue.id == issue_id).first()
    if issue is None or not has_project_access(user, issue.project_id, db):
        logger.info(f"Issue {issue_id} missing or hidden from user {user.id}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Issue not found")
    return issue


def get_user_projects(user: User, db: Session) -> List[int]:
    """
    IDs of every project visible to the user.

    Example:
        >>> project_ids = get_user_projects(user, db)
        >>> db.query(Issue).filter(Issue.project_id.in_(project_ids))
    """
    if is_global_admin(user):
        return [row.id for row in db.query(Project.id).all()]

    rows = db.query(ProjectMember.project_id).filter(ProjectMember.user_id == user.id).all()
    return [row.project_id for row in rows]
