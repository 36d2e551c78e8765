from fastapi import FastAPI, HTTPException, Depends, Query, UploadFile, File, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from sqlalchemy.orm import Session, joinedload, selectinload
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy import or_
from typing import List, Optional
from datetime import datetime
import enum
import logging
import math
import os
import re
from pathlib import Path

from database import get_db, engine, Base
import models
import schemas
import integrations
import pdf_export
from status_rules import milestone_status_for, status_after_verification_change
from time_utils import utc_now, as_utc, start_of_today
from auth.routes import router as auth_router
from auth.dependencies import get_current_user, get_current_admin, get_current_contributor
from auth.permissions import (
    is_global_admin,
    require_project_permission,
    require_issue_access,
    get_user_projects,
)

# Configure logging
logging.basicConfig(level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(
    title="BugBase API",
    description="Bug and feature tracking with projects, issues, verifications and milestones",
    version="1.0.0"
)

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register authentication router
app.include_router(auth_router)


# ============== Startup: Schema, Admin User, Email Templates ==============

DEFAULT_ADMIN_PASSWORD = "admin123"

DEFAULT_EMAIL_TEMPLATES = [
    {
        "event": "issue_created",
        "subject": "[{{project_key}}] New issue: {{issue_title}}",
        "body": "{{reporter_name}} reported a new {{issue_type}} in {{project_name}}.\n\n{{issue_title}}",
    },
    {
        "event": "issue_assigned",
        "subject": "[{{project_key}}] You were assigned: {{issue_title}}",
        "body": "Hi {{user_name}},\n\nYou have been assigned to \"{{issue_title}}\" in {{project_name}}.",
    },
    {
        "event": "status_changed",
        "subject": "[{{project_key}}] {{issue_title}} is now {{new_status}}",
        "body": "{{actor_name}} moved \"{{issue_title}}\" from {{old_status}} to {{new_status}}.",
    },
    {
        "event": "comment_added",
        "subject": "[{{project_key}}] New comment on {{issue_title}}",
        "body": "{{actor_name}} commented:\n\n{{comment_body}}",
    },
    {
        "event": "issue_verified",
        "subject": "[{{project_key}}] {{issue_title}} was verified",
        "body": "{{actor_name}} verified \"{{issue_title}}\".",
    },
]


@app.on_event("startup")
def on_startup():
    """
    Create tables and seed the bootstrap admin and default email templates.

    Uses ADMIN_EMAIL / ADMIN_PASSWORD env vars, defaulting to
    admin@bugbase.com / admin123 for local development.
    """
    from database import SessionLocal
    from auth.security import hash_password, is_production_like

    Base.metadata.create_all(bind=engine)

    admin_email = os.getenv("ADMIN_EMAIL", "admin@bugbase.com")
    admin_password = os.getenv("ADMIN_PASSWORD", DEFAULT_ADMIN_PASSWORD)

    if is_production_like() and (not admin_password.strip() or admin_password == DEFAULT_ADMIN_PASSWORD):
        logger.error(
            "=" * 80 + "\n"
            "❌ STARTUP FAILED: Secure ADMIN_PASSWORD is required in production/staging!\n"
            "❌ Example: ADMIN_PASSWORD=$(openssl rand -base64 32)\n" +
            "=" * 80
        )
        import sys
        sys.exit(1)

    db = SessionLocal()
    try:
        admin = db.query(models.User).filter(models.User.email == admin_email).first()
        if admin:
            logger.info(f"Admin user already exists (email: {admin_email})")
        else:
            admin = models.User(
                name="Admin",
                email=admin_email,
                role=models.UserRole.admin.value,
                password_hash=hash_password(admin_password),
            )
            db.add(admin)
            db.commit()
            if admin_password == DEFAULT_ADMIN_PASSWORD:
                logger.warning(
                    "=" * 80 + "\n"
                    f"⚠️  SECURITY WARNING: Admin user created with DEFAULT password ({admin_email} / admin123)\n"
                    "⚠️  This is OK for local development but DANGEROUS for production!\n"
                    "⚠️  Set ADMIN_PASSWORD environment variable to use a custom password.\n" +
                    "=" * 80
                )
            else:
                logger.info(f"✅ Admin user created: {admin_email}")

        existing_events = {row.event for row in db.query(models.EmailTemplate.event).all()}
        missing = [t for t in DEFAULT_EMAIL_TEMPLATES if t["event"] not in existing_events]
        for template in missing:
            db.add(models.EmailTemplate(**template))
        if missing:
            db.commit()
            logger.info(f"✅ Seeded {len(missing)} default email templates")

    except SQLAlchemyError as e:
        logger.error(f"Failed to seed startup data: {e}")
        db.rollback()
        # Don't fail startup - let the app run even if seeding fails
    finally:
        db.close()


@app.on_event("shutdown")
async def on_shutdown():
    await integrations.close_client()


# ============== Image Upload Configuration ==============

# Image host limit
MAX_IMAGE_SIZE = 32 * 1024 * 1024  # 32MB
ALLOWED_IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp"}
ALLOWED_IMAGE_MIME_TYPES = {"image/png", "image/jpeg", "image/gif", "image/webp", "image/bmp"}


def validate_image_upload(file: UploadFile) -> None:
    """Validate image extension and MIME type."""
    file_ext = Path(file.filename or "").suffix.lower()
    if file_ext not in ALLOWED_IMAGE_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail=f"File type not allowed. Allowed extensions: {', '.join(sorted(ALLOWED_IMAGE_EXTENSIONS))}"
        )

    # Many clients send octet-stream for binary files, so the extension decides
    if file.content_type not in ALLOWED_IMAGE_MIME_TYPES and file.content_type != "application/octet-stream":
        raise HTTPException(
            status_code=400,
            detail=f"MIME type not allowed: {file.content_type}"
        )


async def read_upload_file(file: UploadFile) -> bytes:
    """
    Read an upload in 1MB chunks, aborting as soon as the size limit is exceeded.
    """
    CHUNK_SIZE = 1024 * 1024
    chunks = []
    total_size = 0

    while True:
        chunk = await file.read(CHUNK_SIZE)
        if not chunk:
            break

        total_size += len(chunk)
        if total_size > MAX_IMAGE_SIZE:
            raise HTTPException(
                status_code=413,  # Payload Too Large
                detail=f"File too large. Maximum size: {MAX_IMAGE_SIZE / (1024*1024):.0f}MB"
            )
        chunks.append(chunk)

    if total_size == 0:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    return b"".join(chunks)


def validate_external_url(url: str) -> str:
    """
    Validate an attachment URL. Only http and https are accepted.
    """
    if not url or not url.strip():
        raise HTTPException(status_code=400, detail="URL cannot be empty")

    url = url.strip()
    if not url.lower().startswith(("http://", "https://")):
        raise HTTPException(
            status_code=400,
            detail="Invalid URL protocol. Allowed protocols: http://, https://"
        )
    return url


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Helper Functions ==============

def like_pattern(search: str) -> str:
    """Substring pattern for ilike(..., escape="\\") with LIKE wildcards taken literally."""
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def build_pagination(page: int, limit: int, total: int) -> schemas.Pagination:
    total_pages = math.ceil(total / limit) if total else 0
    return schemas.Pagination(
        page=page,
        limit=limit,
        total=total,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_prev=page > 1,
    )


def plain_values(data: dict) -> dict:
    """Unwrap enum members from a model_dump() so they store as plain strings."""
    return {key: value.value if isinstance(value, enum.Enum) else value for key, value in data.items()}


def activity_value(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return str(value)


def create_activity(
    db: Session,
    issue_id: Optional[int],
    user_id: Optional[int],
    action: str,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    commit: bool = True
) -> models.ActivityLog:
    """
    Append an entry to the activity log.

    Args:
        db: Database session
        issue_id: ID of the issue the action concerns
        user_id: ID of the user who performed the action
        action: Human readable action, e.g. "changed status"
        old_value: Previous value (optional)
        new_value: New value (optional)
        commit: Whether to commit immediately (set False to write with the change itself)

    Returns:
        Created ActivityLog instance
    """
    logger.debug(f"Activity: issue_id={issue_id}, user_id={user_id}, action={action}")

    entry = models.ActivityLog(
        issue_id=issue_id,
        user_id=user_id,
        action=action,
        old_value=old_value,
        new_value=new_value,
    )
    db.add(entry)
    db.flush()

    if commit:
        db.commit()
        db.refresh(entry)

    return entry


def resolve_project_users(db: Session, project_id: int, user_ids, label: str) -> List[models.User]:
    """Load users by id, requiring every one of them to be a member of the project."""
    wanted = set(user_ids)
    if not wanted:
        return []

    users = (
        db.query(models.User)
        .join(models.ProjectMember, models.ProjectMember.user_id == models.User.id)
        .filter(models.ProjectMember.project_id == project_id, models.User.id.in_(wanted))
        .all()
    )
    if len(users) != len(wanted):
        missing = sorted(wanted - {u.id for u in users})
        logger.info(f"Rejected {label}: users {missing} are not members of project {project_id}")
        raise HTTPException(
            status_code=400,
            detail=f"All {label} must be members of the project (invalid user IDs: {missing})"
        )
    return sorted(users, key=lambda u: u.name)


def sync_issue_users(db: Session, issue: models.Issue, link_model, user_ids: List[int], label: str):
    """
    Replace the set of users linked to an issue through `link_model`.

    Returns:
        (added_users, removed_users)
    """
    links = db.query(link_model).filter(link_model.issue_id == issue.id).all()
    current_ids = {link.user_id for link in links}
    target_ids = set(user_ids)

    added_users = resolve_project_users(db, issue.project_id, target_ids - current_ids, label)
    removed_ids = current_ids - target_ids
    removed_users = (
        db.query(models.User).filter(models.User.id.in_(removed_ids)).order_by(models.User.name).all()
        if removed_ids else []
    )

    for link in links:
        if link.user_id in removed_ids:
            db.delete(link)
    for user in added_users:
        db.add(link_model(issue_id=issue.id, user_id=user.id))

    return added_users, removed_users


def describe_assignee_change(added: List[models.User], removed: List[models.User]) -> str:
    if added and removed:
        return "updated assignees"
    if added:
        return "assigned " + ", ".join(u.name for u in added)
    return "unassigned " + ", ".join(u.name for u in removed)


def load_issue_detail(db: Session, issue_id: int) -> models.Issue:
    issue = db.query(models.Issue)\
        .options(
            joinedload(models.Issue.project),
            joinedload(models.Issue.reporter),
            selectinload(models.Issue.assignees).joinedload(models.IssueAssignee.user),
            selectinload(models.Issue.verifiers).joinedload(models.IssueVerifier.user),
            selectinload(models.Issue.verifications).joinedload(models.IssueVerification.user),
            selectinload(models.Issue.comments).joinedload(models.Comment.author),
            selectinload(models.Issue.comments).selectinload(models.Comment.attachments),
            selectinload(models.Issue.attachments).joinedload(models.Attachment.uploader),
            selectinload(models.Issue.activities).joinedload(models.ActivityLog.user),
        )\
        .filter(models.Issue.id == issue_id)\
        .first()

    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")
    return issue


def build_issue_query(
    db: Session,
    current_user: models.User,
    project_id: Optional[int] = None,
    assigned_to_me: bool = False,
    search: Optional[str] = None,
    issue_type: Optional[models.IssueType] = None,
    issue_status: Optional[models.IssueStatus] = None,
    priority: Optional[models.IssuePriority] = None,
):
    """Issues visible to the user, narrowed by the list filters."""
    project_ids = get_user_projects(current_user, db)
    query = db.query(models.Issue).filter(models.Issue.project_id.in_(project_ids))

    if project_id is not None:
        query = query.filter(models.Issue.project_id == project_id)
    if assigned_to_me:
        query = query.filter(
            models.Issue.assignees.any(models.IssueAssignee.user_id == current_user.id)
        )
    if search:
        pattern = like_pattern(search)
        query = query.filter(or_(
            models.Issue.title.ilike(pattern, escape="\\"),
            models.Issue.description.ilike(pattern, escape="\\"),
        ))
    if issue_type:
        query = query.filter(models.Issue.type == issue_type.value)
    if issue_status:
        query = query.filter(models.Issue.status == issue_status.value)
    if priority:
        query = query.filter(models.Issue.priority == priority.value)

    return query, project_ids


def get_project_milestone(db: Session, project_id: int, milestone_id: int) -> models.Milestone:
    milestone = db.query(models.Milestone)\
        .filter(models.Milestone.id == milestone_id, models.Milestone.project_id == project_id)\
        .first()
    if not milestone:
        raise HTTPException(status_code=404, detail="Milestone not found")
    return milestone


def milestone_query(db: Session):
    return db.query(models.Milestone).options(
        joinedload(models.Milestone.creator),
        selectinload(models.Milestone.checklist_items)
        .joinedload(models.ChecklistItem.completion)
        .joinedload(models.ChecklistCompletion.user),
        selectinload(models.Milestone.notes).joinedload(models.MilestoneNote.author),
    )


def refresh_milestone_status(milestone: models.Milestone) -> str:
    """Re-derive and store the milestone status from its checklist."""
    new_status = milestone_status_for(milestone.checklist_items)
    if milestone.status != new_status:
        logger.info(f"Milestone {milestone.id} status: {milestone.status} -> {new_status}")
        milestone.status = new_status
    milestone.updated_at = utc_now()
    return new_status


def pdf_response(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ============== Users ==============

@app.get("/api/users", response_model=schemas.UserList)
def list_users(
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """List users (admin only)."""
    logger.debug(f"Admin {current_user.id} listing users: search={search}, page={page}")

    query = db.query(models.User)
    if search:
        pattern = like_pattern(search)
        query = query.filter(or_(
            models.User.name.ilike(pattern, escape="\\"),
            models.User.email.ilike(pattern, escape="\\")
        ))

    total = query.count()
    users = query.order_by(models.User.created_at.desc(), models.User.id.desc())\
        .offset((page - 1) * limit)\
        .limit(limit)\
        .all()

    return {"users": users, "pagination": build_pagination(page, limit, total)}


@app.put("/api/users/{user_id}", response_model=schemas.User)
def update_user(
    user_id: int,
    user_update: schemas.UserUpdate,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Update a user's name, role or password (admin only)."""
    from auth.security import hash_password

    logger.debug(f"Admin {current_user.id} updating user {user_id}")

    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    update_data = plain_values(user_update.model_dump(exclude_unset=True, exclude_none=True))
    password = update_data.pop("password", None)

    for key, value in update_data.items():
        setattr(user, key, value)
    if password:
        user.password_hash = hash_password(password)

    db.commit()
    db.refresh(user)

    logger.info(f"User {user_id} updated by admin {current_user.id}: fields={list(update_data) + (['password'] if password else [])}")
    return user


@app.delete("/api/users/{user_id}")
def delete_user(
    user_id: int,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Delete a user (admin only). Admins cannot delete themselves."""
    logger.debug(f"Admin {current_user.id} deleting user {user_id}")

    if user_id == current_user.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")

    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    verified_issue_ids = [
        row.issue_id for row in db.query(models.IssueVerification.issue_id)
        .filter(models.IssueVerification.user_id == user_id)
        .all()
    ]

    db.delete(user)
    db.flush()

    # The user's verifications went with them; re-derive the affected statuses
    for issue in db.query(models.Issue).filter(models.Issue.id.in_(verified_issue_ids)).all():
        count = db.query(models.IssueVerification)\
            .filter(models.IssueVerification.issue_id == issue.id)\
            .count()
        new_status = status_after_verification_change(issue.status, count) if count == 0 else None
        if new_status:
            create_activity(
                db, issue.id, current_user.id, "changed status",
                old_value=issue.status, new_value=new_status, commit=False
            )
            logger.info(f"Issue {issue.id} moved to {new_status} after verifier {user_id} was deleted")
            issue.status = new_status
            issue.updated_at = utc_now()

    db.commit()

    logger.critical(f"User {user_id} deleted by admin {current_user.id}")
    return {"message": "User deleted"}


# ============== Projects ==============

@app.get("/api/projects", response_model=schemas.ProjectList)
def list_projects(
    search: Optional[str] = Query(None),
    archived: bool = Query(False, description="Include archived projects"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List projects accessible to the current user."""
    logger.debug(f"User {current_user.id} listing projects: search={search}, archived={archived}")

    project_ids = get_user_projects(current_user, db)
    query = db.query(models.Project).filter(models.Project.id.in_(project_ids))

    if not archived:
        query = query.filter(models.Project.archived.is_(False))
    if search:
        pattern = like_pattern(search)
        query = query.filter(or_(
            models.Project.name.ilike(pattern, escape="\\"),
            models.Project.key.ilike(pattern, escape="\\")
        ))

    total = query.count()
    projects = query\
        .options(
            joinedload(models.Project.creator),
            selectinload(models.Project.members).joinedload(models.ProjectMember.user),
            selectinload(models.Project.issues),
        )\
        .order_by(models.Project.created_at.desc(), models.Project.id.desc())\
        .offset((page - 1) * limit)\
        .limit(limit)\
        .all()

    logger.info(f"User {current_user.id} retrieved {len(projects)} of {total} projects")
    return {"projects": projects, "pagination": build_pagination(page, limit, total)}


@app.post("/api/projects", response_model=schemas.ProjectSummary, status_code=status.HTTP_201_CREATED)
def create_project(
    project: schemas.ProjectCreate,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Create a new project and add the creator as project admin."""
    logger.debug(f"User {current_user.id} creating project: {project.name} ({project.key})")

    existing = db.query(models.Project).filter(models.Project.key == project.key).first()
    if existing:
        raise HTTPException(status_code=400, detail=f"Project key '{project.key}' already exists")

    db_project = models.Project(**project.model_dump(), created_by=current_user.id)
    db.add(db_project)
    db.flush()

    db.add(models.ProjectMember(
        project_id=db_project.id,
        user_id=current_user.id,
        role=models.ProjectRole.admin.value
    ))
    db.commit()
    db.refresh(db_project)

    logger.info(f"Project created: {db_project.name} (ID: {db_project.id}) by user {current_user.id}")
    return db_project


@app.get("/api/projects/{project_id}", response_model=schemas.ProjectDetail)
def get_project(
    project_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get a project with its members and issues (requires membership)."""
    logger.debug(f"User {current_user.id} requesting project {project_id}")

    require_project_permission(current_user, project_id, "member", db)

    project = db.query(models.Project)\
        .options(
            joinedload(models.Project.creator),
            selectinload(models.Project.members).joinedload(models.ProjectMember.user),
            selectinload(models.Project.issues).joinedload(models.Issue.reporter),
            selectinload(models.Project.issues)
            .selectinload(models.Issue.assignees)
            .joinedload(models.IssueAssignee.user),
        )\
        .filter(models.Project.id == project_id)\
        .first()

    return project


@app.put("/api/projects/{project_id}", response_model=schemas.ProjectSummary)
def update_project(
    project_id: int,
    project_update: schemas.ProjectUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Update a project (requires project admin)."""
    logger.debug(f"User {current_user.id} updating project {project_id}")

    project = require_project_permission(current_user, project_id, "admin", db)

    update_data = project_update.model_dump(exclude_unset=True)
    for field in ("name", "archived"):
        if field in update_data and update_data[field] is None:
            raise HTTPException(status_code=400, detail=f"{field} cannot be null")

    for key, value in update_data.items():
        setattr(project, key, value)

    db.commit()
    db.refresh(project)

    logger.info(f"Project {project_id} updated: fields={list(update_data)}")
    return project


@app.delete("/api/projects/{project_id}")
def delete_project(
    project_id: int,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Delete a project with its issues, members and milestones (admin only)."""
    logger.debug(f"Admin {current_user.id} deleting project {project_id}")

    project = db.query(models.Project).filter(models.Project.id == project_id).first()
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")

    db.delete(project)
    db.commit()

    logger.critical(f"Project {project_id} deleted by admin {current_user.id}")
    return {"message": "Project deleted"}


# ============== Project Members ==============

@app.get("/api/projects/{project_id}/members", response_model=List[schemas.ProjectMemberResponse])
def list_project_members(
    project_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List all members of a project (requires membership)."""
    require_project_permission(current_user, project_id, "member", db)

    return db.query(models.ProjectMember)\
        .options(joinedload(models.ProjectMember.user))\
        .filter(models.ProjectMember.project_id == project_id)\
        .order_by(models.ProjectMember.created_at, models.ProjectMember.id)\
        .all()


@app.post(
    "/api/projects/{project_id}/members",
    response_model=schemas.ProjectMemberResponse,
    status_code=status.HTTP_201_CREATED
)
def add_project_member(
    project_id: int,
    member_data: schemas.ProjectMemberCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Add a member to a project (requires project admin)."""
    logger.debug(f"User {current_user.id} adding member {member_data.user_id} to project {project_id}")

    require_project_permission(current_user, project_id, "admin", db)

    user_to_add = db.query(models.User).filter(models.User.id == member_data.user_id).first()
    if not user_to_add:
        raise HTTPException(status_code=404, detail="User not found")

    existing = db.query(models.ProjectMember).filter(
        models.ProjectMember.project_id == project_id,
        models.ProjectMember.user_id == member_data.user_id
    ).first()
    if existing:
        raise HTTPException(status_code=400, detail="User is already a member of this project")

    membership = models.ProjectMember(
        project_id=project_id,
        user_id=member_data.user_id,
        role=member_data.role.value
    )
    db.add(membership)
    db.commit()
    db.refresh(membership)

    logger.info(f"User {member_data.user_id} added to project {project_id} with role {membership.role}")
    return membership


@app.delete("/api/projects/{project_id}/members/{user_id}")
def remove_project_member(
    project_id: int,
    user_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Remove a member from a project (requires project admin)."""
    logger.debug(f"User {current_user.id} removing member {user_id} from project {project_id}")

    require_project_permission(current_user, project_id, "admin", db)

    membership = db.query(models.ProjectMember).filter(
        models.ProjectMember.project_id == project_id,
        models.ProjectMember.user_id == user_id
    ).first()
    if not membership:
        raise HTTPException(status_code=404, detail="Membership not found")

    if membership.role == models.ProjectRole.admin.value:
        admin_count = db.query(models.ProjectMember).filter(
            models.ProjectMember.project_id == project_id,
            models.ProjectMember.role == models.ProjectRole.admin.value
        ).count()
        if admin_count <= 1:
            raise HTTPException(status_code=400, detail="Cannot remove the last admin from the project")

    db.delete(membership)
    db.commit()

    logger.info(f"User {user_id} removed from project {project_id}")
    return {"message": "Member removed from project"}


# ============== Issues ==============

@app.get("/api/issues", response_model=schemas.IssueList)
def list_issues(
    project_id: Optional[int] = Query(None),
    assigned_to_me: bool = Query(False),
    search: Optional[str] = Query(None),
    issue_type: Optional[models.IssueType] = Query(None, alias="type"),
    issue_status: Optional[models.IssueStatus] = Query(None, alias="status"),
    priority: Optional[models.IssuePriority] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List issues across the user's projects, most recently updated first."""
    logger.debug(
        f"User {current_user.id} listing issues: project={project_id}, mine={assigned_to_me}, "
        f"search={search}, type={issue_type}, status={issue_status}, priority={priority}"
    )

    query, _ = build_issue_query(
        db, current_user, project_id, assigned_to_me, search, issue_type, issue_status, priority
    )

    total = query.count()
    issues = query\
        .options(
            joinedload(models.Issue.project),
            joinedload(models.Issue.reporter),
            selectinload(models.Issue.assignees).joinedload(models.IssueAssignee.user),
        )\
        .order_by(models.Issue.updated_at.desc(), models.Issue.id.desc())\
        .offset((page - 1) * limit)\
        .limit(limit)\
        .all()

    logger.info(f"User {current_user.id} retrieved {len(issues)} of {total} issues")
    return {"issues": issues, "pagination": build_pagination(page, limit, total)}


@app.get("/api/issues/export")
def export_issues(
    project_id: Optional[int] = Query(None),
    assigned_to_me: bool = Query(False),
    search: Optional[str] = Query(None),
    issue_type: Optional[models.IssueType] = Query(None, alias="type"),
    issue_status: Optional[models.IssueStatus] = Query(None, alias="status"),
    priority: Optional[models.IssuePriority] = Query(None),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Export the filtered issue list as a PDF table."""
    logger.debug(f"User {current_user.id} exporting issues")

    query, project_ids = build_issue_query(
        db, current_user, project_id, assigned_to_me, search, issue_type, issue_status, priority
    )
    if not project_ids:
        raise HTTPException(status_code=404, detail="No accessible projects")

    issues = query\
        .options(selectinload(models.Issue.assignees))\
        .order_by(models.Issue.updated_at.desc(), models.Issue.id.desc())\
        .all()

    content = pdf_export.render_issue_list_pdf(issues)
    filename = f"issues_export_{utc_now().strftime('%Y%m%d%H%M%S')}.pdf"

    logger.info(f"User {current_user.id} exported {len(issues)} issues")
    return pdf_response(content, filename)


@app.post("/api/issues", response_model=schemas.Issue, status_code=status.HTTP_201_CREATED)
def create_issue(
    issue: schemas.IssueCreate,
    current_user: models.User = Depends(get_current_contributor),
    db: Session = Depends(get_db)
):
    """Create an issue in a project the user belongs to."""
    logger.debug(f"User {current_user.id} creating issue in project {issue.project_id}: {issue.title}")

    require_project_permission(current_user, issue.project_id, "member", db)

    assignees = resolve_project_users(db, issue.project_id, issue.assignee_ids, "assignees")
    verifiers = resolve_project_users(db, issue.project_id, issue.verifier_ids, "verifiers")

    issue_data = plain_values(issue.model_dump(exclude={"assignee_ids", "verifier_ids"}))
    db_issue = models.Issue(
        **issue_data,
        status=models.IssueStatus.open.value,
        reporter_id=current_user.id  # Always the authenticated user
    )
    db.add(db_issue)
    db.flush()

    for user in assignees:
        db.add(models.IssueAssignee(issue_id=db_issue.id, user_id=user.id))
    for user in verifiers:
        db.add(models.IssueVerifier(issue_id=db_issue.id, user_id=user.id))

    create_activity(db, db_issue.id, current_user.id, "created issue", commit=False)
    db.commit()

    logger.info(f"Issue created: {db_issue.title} (ID: {db_issue.id}) by user {current_user.id}")
    return load_issue_detail(db, db_issue.id)


@app.get("/api/issues/{issue_id}", response_model=schemas.Issue)
def get_issue(
    issue_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get an issue with people, verifications, comments, attachments and activity."""
    logger.debug(f"User {current_user.id} requesting issue {issue_id}")

    require_issue_access(current_user, issue_id, db)
    return load_issue_detail(db, issue_id)


ISSUE_FIELD_LABELS = {
    "title": "title",
    "type": "type",
    "status": "status",
    "priority": "priority",
    "start_date": "start date",
    "due_date": "due date",
    "description": "description",
    "steps_to_reproduce": "steps to reproduce",
    "expected_result": "expected result",
    "actual_result": "actual result",
}

# Long text changes are logged without their values
TEXT_FIELDS = {"description", "steps_to_reproduce", "expected_result", "actual_result"}

REQUIRED_ISSUE_FIELDS = {"title", "type", "status", "priority"}


@app.put("/api/issues/{issue_id}", response_model=schemas.Issue)
def update_issue(
    issue_id: int,
    issue_update: schemas.IssueUpdate,
    current_user: models.User = Depends(get_current_contributor),
    db: Session = Depends(get_db)
):
    """Update issue fields, logging one activity entry per changed field."""
    logger.info(f"User {current_user.id} updating issue {issue_id}")

    issue = require_issue_access(current_user, issue_id, db)

    update_data = plain_values(issue_update.model_dump(exclude_unset=True))
    for field in REQUIRED_ISSUE_FIELDS:
        if field in update_data and update_data[field] is None:
            raise HTTPException(status_code=400, detail=f"{field} cannot be null")

    old_values = {key: activity_value(getattr(issue, key)) for key in update_data}

    for key, value in update_data.items():
        setattr(issue, key, value)

    changed = 0
    for field_name, new_value in update_data.items():
        old_str = old_values[field_name]
        new_str = activity_value(new_value)
        if old_str == new_str:
            continue

        changed += 1
        label = ISSUE_FIELD_LABELS[field_name]
        if field_name in TEXT_FIELDS:
            create_activity(db, issue_id, current_user.id, f"updated {label}", commit=False)
        else:
            create_activity(
                db, issue_id, current_user.id, f"changed {label}",
                old_value=old_str, new_value=new_str, commit=False
            )
        logger.debug(f"Issue {issue_id} field '{field_name}': {old_str} -> {new_str}")

    if changed:
        issue.updated_at = utc_now()

    db.commit()

    logger.info(f"Issue {issue_id} updated successfully ({changed} field(s) changed)")
    return load_issue_detail(db, issue_id)


@app.delete("/api/issues/{issue_id}")
def delete_issue(
    issue_id: int,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Delete an issue (admin only)."""
    issue = db.query(models.Issue).filter(models.Issue.id == issue_id).first()
    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")

    db.delete(issue)
    db.commit()

    logger.critical(f"Issue {issue_id} deleted by admin {current_user.id}")
    return {"message": "Issue deleted"}


@app.post("/api/issues/{issue_id}/assignees", response_model=schemas.AssigneesResponse)
def update_issue_assignees(
    issue_id: int,
    payload: schemas.UserIdList,
    current_user: models.User = Depends(get_current_contributor),
    db: Session = Depends(get_db)
):
    """Replace the assignees of an issue."""
    logger.debug(f"User {current_user.id} setting assignees of issue {issue_id} to {payload.user_ids}")

    issue = require_issue_access(current_user, issue_id, db)
    added, removed = sync_issue_users(db, issue, models.IssueAssignee, payload.user_ids, "assignees")

    if added or removed:
        create_activity(
            db, issue_id, current_user.id, describe_assignee_change(added, removed),
            old_value=", ".join(u.name for u in removed) or None,
            new_value=", ".join(u.name for u in added) or None,
            commit=False
        )
        issue.updated_at = utc_now()

    db.commit()

    issue = load_issue_detail(db, issue_id)
    logger.info(f"Issue {issue_id} assignees: +{len(added)} -{len(removed)}")
    return {"assignees": issue.assignee_users}


@app.post("/api/issues/{issue_id}/verifiers", response_model=schemas.VerifiersResponse)
def update_issue_verifiers(
    issue_id: int,
    payload: schemas.UserIdList,
    current_user: models.User = Depends(get_current_contributor),
    db: Session = Depends(get_db)
):
    """Replace the designated verifiers of an issue."""
    logger.debug(f"User {current_user.id} setting verifiers of issue {issue_id} to {payload.user_ids}")

    issue = require_issue_access(current_user, issue_id, db)
    added, removed = sync_issue_users(db, issue, models.IssueVerifier, payload.user_ids, "verifiers")

    if added or removed:
        create_activity(
            db, issue_id, current_user.id, "updated verifiers",
            old_value=", ".join(u.name for u in removed) or None,
            new_value=", ".join(u.name for u in added) or None,
            commit=False
        )
        issue.updated_at = utc_now()

    db.commit()

    issue = load_issue_detail(db, issue_id)
    return {"verifiers": issue.verifier_users}


@app.post("/api/issues/{issue_id}/verify", response_model=schemas.VerifyResponse)
def toggle_verification(
    issue_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Toggle the current user's verification of an issue.

    Any verification moves the issue to Verified; withdrawing the last one
    sends a Verified issue back to In Review.
    """
    logger.debug(f"User {current_user.id} toggling verification of issue {issue_id}")

    issue = require_issue_access(current_user, issue_id, db)

    existing = db.query(models.IssueVerification).filter(
        models.IssueVerification.issue_id == issue_id,
        models.IssueVerification.user_id == current_user.id
    ).first()

    if existing:
        db.delete(existing)
        action = "removed verification"
    else:
        db.add(models.IssueVerification(issue_id=issue_id, user_id=current_user.id))
        action = "verified this issue"
    db.flush()

    count = db.query(models.IssueVerification)\
        .filter(models.IssueVerification.issue_id == issue_id)\
        .count()

    create_activity(db, issue_id, current_user.id, action, commit=False)

    new_status = status_after_verification_change(issue.status, count)
    if new_status:
        create_activity(
            db, issue_id, current_user.id, "changed status",
            old_value=issue.status, new_value=new_status, commit=False
        )
        issue.status = new_status

    issue.updated_at = utc_now()
    db.commit()
    db.refresh(issue)

    logger.info(f"Issue {issue_id}: {action} by user {current_user.id} ({count} verification(s), status {issue.status})")
    return {
        "is_verified": count > 0,
        "verified_by_me": existing is None,
        "verification_count": count,
        "status": issue.status,
    }


@app.get("/api/issues/{issue_id}/members", response_model=schemas.IssueMembersResponse)
def list_issue_members(
    issue_id: int,
    search: Optional[str] = Query(None),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List users, flagging those who are members of the issue's project."""
    issue = require_issue_access(current_user, issue_id, db)

    member_ids = {
        row.user_id for row in db.query(models.ProjectMember.user_id)
        .filter(models.ProjectMember.project_id == issue.project_id)
        .all()
    }

    query = db.query(models.User)
    if search:
        pattern = like_pattern(search)
        query = query.filter(or_(
            models.User.name.ilike(pattern, escape="\\"),
            models.User.email.ilike(pattern, escape="\\")
        ))
    users = query.order_by(models.User.name).all()

    members = [
        schemas.IssueMember(
            id=user.id, name=user.name, email=user.email, role=user.role,
            is_member=user.id in member_ids
        )
        for user in users
    ]
    return {"members": members}


@app.get("/api/issues/{issue_id}/activity", response_model=schemas.ActivityList)
def get_issue_activity(
    issue_id: int,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get the activity history of an issue, newest first."""
    require_issue_access(current_user, issue_id, db)

    query = db.query(models.ActivityLog)\
        .options(joinedload(models.ActivityLog.user))\
        .filter(models.ActivityLog.issue_id == issue_id)

    total = query.count()
    activities = query.order_by(models.ActivityLog.created_at.desc(), models.ActivityLog.id.desc())\
        .limit(limit)\
        .offset(offset)\
        .all()

    return schemas.ActivityList(activities=activities, total_count=total)


@app.get("/api/issues/{issue_id}/export")
def export_issue(
    issue_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Export a single issue as a PDF document."""
    require_issue_access(current_user, issue_id, db)
    issue = load_issue_detail(db, issue_id)

    content = pdf_export.render_issue_pdf(issue)
    logger.info(f"User {current_user.id} exported issue {issue_id}")
    return pdf_response(content, f"issue_{issue_id}_export.pdf")


# ============== Comments ==============

@app.get("/api/issues/{issue_id}/comments", response_model=List[schemas.Comment])
def list_comments(
    issue_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List comments of an issue, oldest first."""
    require_issue_access(current_user, issue_id, db)

    return db.query(models.Comment)\
        .options(joinedload(models.Comment.author), selectinload(models.Comment.attachments))\
        .filter(models.Comment.issue_id == issue_id)\
        .order_by(models.Comment.created_at, models.Comment.id)\
        .all()


@app.post("/api/issues/{issue_id}/comments", response_model=schemas.Comment, status_code=status.HTTP_201_CREATED)
def create_comment(
    issue_id: int,
    comment: schemas.CommentCreate,
    current_user: models.User = Depends(get_current_contributor),
    db: Session = Depends(get_db)
):
    """Comment on an issue."""
    logger.debug(f"User {current_user.id} commenting on issue {issue_id}")

    issue = require_issue_access(current_user, issue_id, db)

    db_comment = models.Comment(issue_id=issue_id, user_id=current_user.id, body=comment.body)
    db.add(db_comment)
    create_activity(db, issue_id, current_user.id, "added a comment", commit=False)
    issue.updated_at = utc_now()
    db.commit()
    db.refresh(db_comment)

    return db_comment


def get_own_comment(db: Session, comment_id: int, current_user: models.User) -> models.Comment:
    comment = db.query(models.Comment).filter(models.Comment.id == comment_id).first()
    if not comment:
        raise HTTPException(status_code=404, detail="Comment not found")

    require_issue_access(current_user, comment.issue_id, db)

    # Users can only change their own comments (unless admin)
    if comment.user_id != current_user.id and not is_global_admin(current_user):
        raise HTTPException(status_code=403, detail="Can only modify your own comments")
    return comment


@app.put("/api/comments/{comment_id}", response_model=schemas.Comment)
def update_comment(
    comment_id: int,
    comment_update: schemas.CommentUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Edit a comment (author or admin)."""
    comment = get_own_comment(db, comment_id, current_user)
    comment.body = comment_update.body
    db.commit()
    db.refresh(comment)
    return comment


@app.delete("/api/comments/{comment_id}")
def delete_comment(
    comment_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete a comment and its attachments (author or admin)."""
    comment = get_own_comment(db, comment_id, current_user)
    db.delete(comment)
    db.commit()
    return {"message": "Comment deleted"}


# ============== Attachments ==============

@app.post("/api/upload", response_model=schemas.UploadResponse)
async def upload_image(
    image: UploadFile = File(...),
    current_user: models.User = Depends(get_current_user),
):
    """Upload an image to the image host and return its URLs."""
    logger.debug(f"User {current_user.id} uploading image {image.filename}")

    validate_image_upload(image)
    content = await read_upload_file(image)

    try:
        result = await integrations.upload_image(
            content, image.filename, image.content_type or "application/octet-stream"
        )
    except integrations.IntegrationNotConfigured as e:
        raise HTTPException(status_code=503, detail=str(e))
    except integrations.IntegrationError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return result


@app.get("/api/issues/{issue_id}/attachments", response_model=List[schemas.Attachment])
def list_attachments(
    issue_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List attachments of an issue, including those added with comments."""
    require_issue_access(current_user, issue_id, db)

    return db.query(models.Attachment)\
        .options(joinedload(models.Attachment.uploader))\
        .filter(models.Attachment.issue_id == issue_id)\
        .order_by(models.Attachment.created_at, models.Attachment.id)\
        .all()


@app.post("/api/issues/{issue_id}/attachments", response_model=schemas.Attachment, status_code=status.HTTP_201_CREATED)
def add_attachment(
    issue_id: int,
    attachment: schemas.AttachmentCreate,
    current_user: models.User = Depends(get_current_contributor),
    db: Session = Depends(get_db)
):
    """Record an uploaded image against an issue or one of its comments."""
    issue = require_issue_access(current_user, issue_id, db)
    url = validate_external_url(attachment.url)

    if attachment.comment_id is not None:
        comment = db.query(models.Comment).filter(models.Comment.id == attachment.comment_id).first()
        if not comment or comment.issue_id != issue_id:
            raise HTTPException(status_code=400, detail="Comment does not belong to this issue")

    db_attachment = models.Attachment(
        issue_id=issue_id,
        comment_id=attachment.comment_id,
        url=url,
        delete_hash=attachment.delete_hash,
        uploaded_by=current_user.id
    )
    db.add(db_attachment)
    create_activity(db, issue_id, current_user.id, "added an attachment", new_value=url, commit=False)
    issue.updated_at = utc_now()
    db.commit()
    db.refresh(db_attachment)

    logger.info(f"Attachment {db_attachment.id} added to issue {issue_id} by user {current_user.id}")
    return db_attachment


@app.delete("/api/issues/{issue_id}/attachments/{attachment_id}")
def delete_attachment(
    issue_id: int,
    attachment_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Remove an attachment (uploader or admin)."""
    require_issue_access(current_user, issue_id, db)

    attachment = db.query(models.Attachment).filter(
        models.Attachment.id == attachment_id,
        models.Attachment.issue_id == issue_id
    ).first()
    if not attachment:
        raise HTTPException(status_code=404, detail="Attachment not found")

    if attachment.uploaded_by != current_user.id and not is_global_admin(current_user):
        raise HTTPException(status_code=403, detail="Can only remove your own attachments")

    create_activity(db, issue_id, current_user.id, "removed an attachment", old_value=attachment.url, commit=False)
    db.delete(attachment)
    db.commit()

    return {"message": "Attachment deleted"}


# ============== Milestones ==============

@app.get("/api/projects/{project_id}/milestones", response_model=schemas.MilestoneList)
def list_milestones(
    project_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List milestones of a project, newest first."""
    require_project_permission(current_user, project_id, "member", db)

    total = db.query(models.Milestone).filter(models.Milestone.project_id == project_id).count()
    milestones = milestone_query(db)\
        .filter(models.Milestone.project_id == project_id)\
        .order_by(models.Milestone.created_at.desc(), models.Milestone.id.desc())\
        .offset((page - 1) * limit)\
        .limit(limit)\
        .all()

    return {"milestones": milestones, "pagination": build_pagination(page, limit, total)}


@app.post(
    "/api/projects/{project_id}/milestones",
    response_model=schemas.Milestone,
    status_code=status.HTTP_201_CREATED
)
def create_milestone(
    project_id: int,
    milestone: schemas.MilestoneCreate,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Create a milestone with its checklist (admin only)."""
    logger.debug(f"Admin {current_user.id} creating milestone in project {project_id}: {milestone.title}")

    require_project_permission(current_user, project_id, "member", db)

    try:
        db_milestone = models.Milestone(
            project_id=project_id,
            title=milestone.title,
            description=milestone.description,
            status=models.MilestoneStatus.not_started.value,
            created_by=current_user.id,
        )
        db_milestone.checklist_items = [
            models.ChecklistItem(content=content, order=position)
            for position, content in enumerate(milestone.checklist_items)
        ]
        db.add(db_milestone)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create milestone in project {project_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to create milestone")

    logger.info(f"Milestone {db_milestone.id} created with {len(milestone.checklist_items)} items")
    return milestone_query(db).filter(models.Milestone.id == db_milestone.id).first()


@app.get("/api/projects/{project_id}/milestones/{milestone_id}", response_model=schemas.Milestone)
def get_milestone(
    project_id: int,
    milestone_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get a milestone with its checklist and notes."""
    require_project_permission(current_user, project_id, "member", db)
    get_project_milestone(db, project_id, milestone_id)
    return milestone_query(db).filter(models.Milestone.id == milestone_id).first()


@app.patch("/api/projects/{project_id}/milestones/{milestone_id}", response_model=schemas.Milestone)
def update_milestone(
    project_id: int,
    milestone_id: int,
    milestone_update: schemas.MilestoneUpdate,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """
    Update a milestone (admin only).

    When checklist_items is given it becomes the full checklist: entries with
    an id update that item, entries without one are inserted, and items left
    out are deleted along with their completions. Status is re-derived.
    """
    logger.debug(f"Admin {current_user.id} updating milestone {milestone_id}")

    require_project_permission(current_user, project_id, "member", db)
    milestone = get_project_milestone(db, project_id, milestone_id)

    update_data = milestone_update.model_dump(exclude_unset=True)
    if "title" in update_data and update_data["title"] is None:
        raise HTTPException(status_code=400, detail="title cannot be null")
    if "checklist_items" in update_data and update_data["checklist_items"] is None:
        raise HTTPException(status_code=400, detail="checklist_items cannot be null")

    existing = {item.id: item for item in milestone.checklist_items}
    entries = milestone_update.checklist_items or []
    given_ids = [entry.id for entry in entries if entry.id is not None]

    if len(given_ids) != len(set(given_ids)):
        raise HTTPException(status_code=400, detail="Duplicate checklist item IDs")
    unknown = [item_id for item_id in given_ids if item_id not in existing]
    if unknown:
        raise HTTPException(
            status_code=400,
            detail=f"Checklist items {unknown} do not belong to this milestone"
        )

    try:
        if "title" in update_data:
            milestone.title = milestone_update.title
        if "description" in update_data:
            milestone.description = milestone_update.description

        if milestone_update.checklist_items is not None:
            keep_ids = set(given_ids)
            for item_id, item in existing.items():
                if item_id not in keep_ids:
                    milestone.checklist_items.remove(item)

            for position, entry in enumerate(entries):
                if entry.id is not None:
                    item = existing[entry.id]
                    item.content = entry.content
                    item.order = position
                else:
                    milestone.checklist_items.append(
                        models.ChecklistItem(content=entry.content, order=position)
                    )

        refresh_milestone_status(milestone)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update milestone {milestone_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update milestone")

    return milestone_query(db).filter(models.Milestone.id == milestone_id).first()


@app.delete("/api/projects/{project_id}/milestones/{milestone_id}")
def delete_milestone(
    project_id: int,
    milestone_id: int,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Delete a milestone (admin only)."""
    milestone = get_project_milestone(db, project_id, milestone_id)
    db.delete(milestone)
    db.commit()

    logger.info(f"Milestone {milestone_id} deleted by admin {current_user.id}")
    return {"message": "Milestone deleted"}


def get_checklist_item(milestone: models.Milestone, item_id: int) -> models.ChecklistItem:
    for item in milestone.checklist_items:
        if item.id == item_id:
            return item
    raise HTTPException(status_code=404, detail="Checklist item not found")


@app.post(
    "/api/projects/{project_id}/milestones/{milestone_id}/checklist/{item_id}/complete",
    response_model=schemas.CompleteItemResponse
)
def complete_checklist_item(
    project_id: int,
    milestone_id: int,
    item_id: int,
    payload: Optional[schemas.CompleteItemRequest] = None,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Mark a checklist item completed by the current user."""
    logger.debug(f"User {current_user.id} completing checklist item {item_id} of milestone {milestone_id}")

    require_project_permission(current_user, project_id, "member", db)
    milestone = get_project_milestone(db, project_id, milestone_id)
    item = get_checklist_item(milestone, item_id)

    if item.completion is not None:
        raise HTTPException(status_code=400, detail="Checklist item is already completed")

    notes = payload.notes if payload else None
    completion = models.ChecklistCompletion(user_id=current_user.id, notes=notes)
    try:
        item.completion = completion
        milestone_status = refresh_milestone_status(milestone)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="Checklist item is already completed")

    db.refresh(completion)
    logger.info(f"Checklist item {item_id} completed by user {current_user.id}; milestone {milestone_id} is {milestone_status}")
    return {"completion": completion, "milestone_status": milestone_status}


@app.delete(
    "/api/projects/{project_id}/milestones/{milestone_id}/checklist/{item_id}/complete",
    response_model=schemas.UncompleteItemResponse
)
def uncomplete_checklist_item(
    project_id: int,
    milestone_id: int,
    item_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Withdraw the completion of a checklist item."""
    logger.debug(f"User {current_user.id} uncompleting checklist item {item_id} of milestone {milestone_id}")

    require_project_permission(current_user, project_id, "member", db)
    milestone = get_project_milestone(db, project_id, milestone_id)
    item = get_checklist_item(milestone, item_id)

    if item.completion is None:
        raise HTTPException(status_code=400, detail="Checklist item is not completed")

    item.completion = None
    milestone_status = refresh_milestone_status(milestone)
    db.commit()

    logger.info(f"Checklist item {item_id} reopened by user {current_user.id}; milestone {milestone_id} is {milestone_status}")
    return {"milestone_status": milestone_status}


@app.get(
    "/api/projects/{project_id}/milestones/{milestone_id}/notes",
    response_model=List[schemas.MilestoneNote]
)
def list_milestone_notes(
    project_id: int,
    milestone_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List notes of a milestone, newest first."""
    require_project_permission(current_user, project_id, "member", db)
    get_project_milestone(db, project_id, milestone_id)

    return db.query(models.MilestoneNote)\
        .options(joinedload(models.MilestoneNote.author))\
        .filter(models.MilestoneNote.milestone_id == milestone_id)\
        .order_by(models.MilestoneNote.created_at.desc(), models.MilestoneNote.id.desc())\
        .all()


@app.post(
    "/api/projects/{project_id}/milestones/{milestone_id}/notes",
    response_model=schemas.MilestoneNote,
    status_code=status.HTTP_201_CREATED
)
def add_milestone_note(
    project_id: int,
    milestone_id: int,
    note: schemas.MilestoneNoteCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Add a note to a milestone."""
    require_project_permission(current_user, project_id, "member", db)
    get_project_milestone(db, project_id, milestone_id)

    db_note = models.MilestoneNote(milestone_id=milestone_id, user_id=current_user.id, content=note.content)
    db.add(db_note)
    db.commit()
    db.refresh(db_note)
    return db_note


# ============== Settings: Activity Logs ==============

@app.get("/api/settings/activity-logs", response_model=schemas.ActivityLogList)
def list_activity_logs(
    search: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Browse the activity log across all projects (admin only)."""
    logger.debug(f"Admin {current_user.id} browsing activity logs: search={search}, action={action}")

    query = db.query(models.ActivityLog)
    if search:
        query = query.filter(models.ActivityLog.action.ilike(like_pattern(search), escape="\\"))
    if action:
        query = query.filter(models.ActivityLog.action == action)
    if date_from:
        query = query.filter(models.ActivityLog.created_at >= as_utc(date_from))
    if date_to:
        query = query.filter(models.ActivityLog.created_at <= as_utc(date_to))

    total = query.count()
    logs = query\
        .options(
            joinedload(models.ActivityLog.user),
            joinedload(models.ActivityLog.issue).joinedload(models.Issue.project),
        )\
        .order_by(models.ActivityLog.created_at.desc(), models.ActivityLog.id.desc())\
        .offset((page - 1) * limit)\
        .limit(limit)\
        .all()

    return {"logs": logs, "pagination": build_pagination(page, limit, total)}


# ============== Settings: Email Templates ==============

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render_template(text: str, context: dict) -> str:
    """Substitute {{name}} placeholders, leaving unknown ones untouched."""
    def replace(match):
        key = match.group(1)
        if key in context and context[key] is not None:
            return str(context[key])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(replace, text)


@app.get("/api/settings/email-templates", response_model=List[schemas.EmailTemplate])
def list_email_templates(
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """List email templates (admin only)."""
    return db.query(models.EmailTemplate).order_by(models.EmailTemplate.event).all()


@app.post(
    "/api/settings/email-templates",
    response_model=schemas.EmailTemplate,
    status_code=status.HTTP_201_CREATED
)
def create_email_template(
    template: schemas.EmailTemplateUpsert,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Create an email template for an event (admin only)."""
    existing = db.query(models.EmailTemplate).filter(models.EmailTemplate.event == template.event).first()
    if existing:
        raise HTTPException(status_code=409, detail=f"Template for event '{template.event}' already exists")

    db_template = models.EmailTemplate(**template.model_dump())
    db.add(db_template)
    db.commit()
    db.refresh(db_template)

    logger.info(f"Email template '{template.event}' created by admin {current_user.id}")
    return db_template


@app.put("/api/settings/email-templates", response_model=schemas.EmailTemplate)
def update_email_template(
    template: schemas.EmailTemplateUpsert,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Update the email template of an event (admin only)."""
    db_template = db.query(models.EmailTemplate).filter(models.EmailTemplate.event == template.event).first()
    if not db_template:
        raise HTTPException(status_code=404, detail="Template not found")

    db_template.subject = template.subject
    db_template.body = template.body
    db_template.enabled = template.enabled
    db.commit()
    db.refresh(db_template)

    logger.info(f"Email template '{template.event}' updated by admin {current_user.id}")
    return db_template


@app.post("/api/settings/email-templates/preview", response_model=schemas.EmailTemplatePreview)
def preview_email_template(
    request: schemas.EmailTemplatePreviewRequest,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Render an email template against sample context values (admin only)."""
    db_template = db.query(models.EmailTemplate).filter(models.EmailTemplate.event == request.event).first()
    if not db_template:
        raise HTTPException(status_code=404, detail="Template not found")

    return {
        "event": db_template.event,
        "subject": render_template(db_template.subject, request.context),
        "body": render_template(db_template.body, request.context),
    }


# ============== Dashboard ==============

@app.get("/api/dashboard", response_model=schemas.Dashboard)
def get_dashboard(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Counts, recent issues and recent activity across the user's projects."""
    logger.debug(f"Building dashboard for user {current_user.id}")

    project_ids = get_user_projects(current_user, db)
    issues = db.query(models.Issue).filter(models.Issue.project_id.in_(project_ids))

    closed = models.IssueStatus.closed.value
    resolved_statuses = [models.IssueStatus.verified.value, closed]

    stats = {
        "open_bugs": issues.filter(
            models.Issue.type == models.IssueType.bug.value, models.Issue.status != closed
        ).count(),
        "open_features": issues.filter(
            models.Issue.type == models.IssueType.feature.value, models.Issue.status != closed
        ).count(),
        "in_progress": issues.filter(models.Issue.status == models.IssueStatus.in_progress.value).count(),
        "resolved_today": issues.filter(
            models.Issue.status.in_(resolved_statuses),
            models.Issue.updated_at >= start_of_today()
        ).count(),
        "overdue": issues.filter(
            models.Issue.status.notin_(resolved_statuses),
            models.Issue.due_date.isnot(None),
            models.Issue.due_date < utc_now()
        ).count(),
    }

    recent = issues\
        .options(joinedload(models.Issue.project))\
        .filter(models.Issue.status != closed)\
        .order_by(models.Issue.updated_at.desc(), models.Issue.id.desc())\
        .limit(10)\
        .all()
    recent_issues = [
        {
            "id": issue.id,
            "title": issue.title,
            "type": issue.type,
            "status": issue.status,
            "priority": issue.priority,
            "project_id": issue.project_id,
            "project_name": issue.project.name if issue.project else None,
            "updated_at": issue.updated_at,
        }
        for issue in recent
    ]

    activities = db.query(models.ActivityLog)\
        .join(models.Issue, models.Issue.id == models.ActivityLog.issue_id)\
        .options(joinedload(models.ActivityLog.user), joinedload(models.ActivityLog.issue))\
        .filter(models.Issue.project_id.in_(project_ids))\
        .order_by(models.ActivityLog.created_at.desc(), models.ActivityLog.id.desc())\
        .limit(20)\
        .all()
    recent_activities = [
        {
            "id": entry.id,
            "action": entry.action,
            "issue_id": entry.issue_id,
            "issue_title": entry.issue.title if entry.issue else None,
            "user_name": entry.user.name if entry.user else None,
            "created_at": entry.created_at,
        }
        for entry in activities
    ]

    return {"stats": stats, "recent_issues": recent_issues, "recent_activities": recent_activities}


# ============== AI Refinement ==============

@app.post("/api/ai/refine", response_model=schemas.RefineResponse)
async def refine_content(
    request: schemas.RefineRequest,
    current_user: models.User = Depends(get_current_user),
):
    """Refine a piece of text, or suggest one from context, with the configured LLM."""
    logger.debug(f"User {current_user.id} requesting AI {request.mode} for field '{request.field}'")

    content = request.content or ""
    if request.mode != "suggest" and not content.strip():
        raise HTTPException(status_code=400, detail="Content is required")

    try:
        refined = await integrations.refine_text(content, request.field, request.mode, request.context)
    except integrations.IntegrationNotConfigured as e:
        raise HTTPException(status_code=503, detail=str(e))
    except integrations.IntegrationError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return {"refined_content": refined}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    logger.info(f"🚀 Starting BugBase API on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
