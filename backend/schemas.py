from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional, List, Dict, Any, Literal

from models import UserRole, ProjectRole, IssueType, IssueStatus, IssuePriority
from time_utils import as_utc


# Shared schemas
class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


# User schemas
class UserBrief(BaseModel):
    id: int
    name: str
    email: str
    role: str

    class Config:
        from_attributes = True


class User(UserBrief):
    created_at: datetime


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    role: Optional[UserRole] = None
    password: Optional[str] = Field(None, min_length=6, max_length=100)


class UserList(BaseModel):
    users: List[User] = []
    pagination: Pagination


# Project schemas
class ProjectBrief(BaseModel):
    id: int
    name: str
    key: str

    class Config:
        from_attributes = True


class ProjectBase(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def dates_to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class ProjectCreate(ProjectBase):
    key: str = Field(..., min_length=2, max_length=10, pattern=r"^[A-Z0-9]+$")


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    description: Optional[str] = None
    archived: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def dates_to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class ProjectMemberCreate(BaseModel):
    user_id: int
    role: ProjectRole = ProjectRole.member


class ProjectMemberResponse(BaseModel):
    id: int
    project_id: int
    user_id: int
    role: str
    created_at: datetime
    user: UserBrief

    class Config:
        from_attributes = True


class Project(ProjectBase):
    id: int
    key: str
    created_by: Optional[int] = None
    creator: Optional[UserBrief] = None
    archived: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ProjectSummary(Project):
    issue_count: int = 0
    open_issue_count: int = 0
    members: List[ProjectMemberResponse] = []


class ProjectList(BaseModel):
    projects: List[ProjectSummary] = []
    pagination: Pagination


# Attachment schemas
class AttachmentCreate(BaseModel):
    url: str = Field(..., min_length=1)
    delete_hash: Optional[str] = None
    comment_id: Optional[int] = None


class Attachment(BaseModel):
    id: int
    issue_id: int
    comment_id: Optional[int] = None
    url: str
    delete_hash: Optional[str] = None
    uploaded_by: Optional[int] = None
    uploader: Optional[UserBrief] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UploadResponse(BaseModel):
    url: str
    delete_hash: Optional[str] = None
    thumbnail: Optional[str] = None


# Comment schemas
class CommentCreate(BaseModel):
    body: str = Field(..., min_length=1)

    @field_validator("body")
    @classmethod
    def body_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Comment cannot be empty")
        return value


class CommentUpdate(CommentCreate):
    pass


class Comment(BaseModel):
    id: int
    issue_id: int
    user_id: Optional[int] = None
    body: str
    author: Optional[UserBrief] = None
    attachments: List[Attachment] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# Activity schemas
class ActivityIssue(BaseModel):
    id: int
    title: str
    project: Optional[ProjectBrief] = None

    class Config:
        from_attributes = True


class Activity(BaseModel):
    id: int
    issue_id: Optional[int] = None
    user_id: Optional[int] = None
    action: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user: Optional[UserBrief] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ActivityList(BaseModel):
    activities: List[Activity] = []
    total_count: int


class ActivityLogEntry(Activity):
    issue: Optional[ActivityIssue] = None


class ActivityLogList(BaseModel):
    logs: List[ActivityLogEntry] = []
    pagination: Pagination


# Issue schemas
class IssueBase(BaseModel):
    title: str = Field(..., min_length=2, max_length=255)
    type: IssueType = IssueType.bug
    description: Optional[str] = None
    steps_to_reproduce: Optional[str] = None
    expected_result: Optional[str] = None
    actual_result: Optional[str] = None
    priority: IssuePriority = IssuePriority.medium
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None

    # SQLite drops the offset on write, so store the UTC instant
    @field_validator("start_date", "due_date")
    @classmethod
    def dates_to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class IssueCreate(IssueBase):
    project_id: int
    assignee_ids: List[int] = []
    verifier_ids: List[int] = []


class IssueUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=2, max_length=255)
    type: Optional[IssueType] = None
    description: Optional[str] = None
    steps_to_reproduce: Optional[str] = None
    expected_result: Optional[str] = None
    actual_result: Optional[str] = None
    status: Optional[IssueStatus] = None
    priority: Optional[IssuePriority] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None

    @field_validator("start_date", "due_date")
    @classmethod
    def dates_to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class IssueSummary(BaseModel):
    id: int
    project_id: int
    title: str
    type: str
    status: str
    priority: str
    reporter_id: Optional[int] = None
    reporter: Optional[UserBrief] = None
    project: Optional[ProjectBrief] = None
    assignees: List[UserBrief] = Field([], validation_alias="assignee_users")
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    is_overdue: bool = False
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
        populate_by_name = True


class Verification(BaseModel):
    id: int
    user_id: int
    user: Optional[UserBrief] = None
    verified_at: datetime

    class Config:
        from_attributes = True


class Issue(IssueSummary):
    description: Optional[str] = None
    steps_to_reproduce: Optional[str] = None
    expected_result: Optional[str] = None
    actual_result: Optional[str] = None
    verifiers: List[UserBrief] = Field([], validation_alias="verifier_users")
    verifications: List[Verification] = []
    is_verified: bool = False
    verification_count: int = 0
    comments: List[Comment] = []
    attachments: List[Attachment] = []
    activities: List[Activity] = []


class IssueList(BaseModel):
    issues: List[IssueSummary] = []
    pagination: Pagination


class ProjectDetail(ProjectSummary):
    issues: List[IssueSummary] = []


class UserIdList(BaseModel):
    user_ids: List[int] = []


class AssigneesResponse(BaseModel):
    assignees: List[UserBrief] = []


class VerifiersResponse(BaseModel):
    verifiers: List[UserBrief] = []


class VerifyResponse(BaseModel):
    is_verified: bool
    verified_by_me: bool
    verification_count: int
    status: str


class IssueMember(UserBrief):
    is_member: bool


class IssueMembersResponse(BaseModel):
    members: List[IssueMember] = []


# Milestone schemas
class MilestoneCreate(BaseModel):
    title: str = Field(..., min_length=2, max_length=255)
    description: Optional[str] = None
    checklist_items: List[str] = Field(..., min_length=1)

    @field_validator("checklist_items")
    @classmethod
    def items_not_blank(cls, items: List[str]) -> List[str]:
        cleaned = [item.strip() for item in items]
        if any(not item for item in cleaned):
            raise ValueError("Checklist items cannot be empty")
        return cleaned


class ChecklistItemInput(BaseModel):
    id: Optional[int] = None
    content: str = Field(..., min_length=1)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Checklist item cannot be empty")
        return value.strip()


class MilestoneUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=2, max_length=255)
    description: Optional[str] = None
    checklist_items: Optional[List[ChecklistItemInput]] = Field(None, min_length=1)


class ChecklistCompletion(BaseModel):
    id: int
    checklist_item_id: int
    user_id: Optional[int] = None
    user: Optional[UserBrief] = None
    notes: Optional[str] = None
    completed_at: datetime

    class Config:
        from_attributes = True


class ChecklistItem(BaseModel):
    id: int
    milestone_id: int
    content: str
    order: int
    completion: Optional[ChecklistCompletion] = None
    created_at: datetime

    class Config:
        from_attributes = True


class MilestoneNoteCreate(BaseModel):
    content: str = Field(..., min_length=1)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Note cannot be empty")
        return value


class MilestoneNote(BaseModel):
    id: int
    milestone_id: int
    user_id: Optional[int] = None
    author: Optional[UserBrief] = None
    content: str
    created_at: datetime

    class Config:
        from_attributes = True


class Milestone(BaseModel):
    id: int
    project_id: int
    title: str
    description: Optional[str] = None
    status: str
    created_by: Optional[int] = None
    creator: Optional[UserBrief] = None
    checklist_items: List[ChecklistItem] = []
    notes: List[MilestoneNote] = []
    total_count: int = 0
    completed_count: int = 0
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class MilestoneList(BaseModel):
    milestones: List[Milestone] = []
    pagination: Pagination


class CompleteItemRequest(BaseModel):
    notes: Optional[str] = None


class CompleteItemResponse(BaseModel):
    completion: ChecklistCompletion
    milestone_status: str


class UncompleteItemResponse(BaseModel):
    milestone_status: str


# Email template schemas
class EmailTemplateUpsert(BaseModel):
    event: str = Field(..., min_length=1, max_length=100)
    subject: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    enabled: bool = True


class EmailTemplate(EmailTemplateUpsert):
    id: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class EmailTemplatePreviewRequest(BaseModel):
    event: str
    context: Dict[str, Any] = {}


class EmailTemplatePreview(BaseModel):
    event: str
    subject: str
    body: str


# Dashboard schemas
class DashboardStats(BaseModel):
    open_bugs: int
    open_features: int
    in_progress: int
    resolved_today: int
    overdue: int


class DashboardIssue(BaseModel):
    id: int
    title: str
    type: str
    status: str
    priority: str
    project_id: int
    project_name: Optional[str] = None
    updated_at: datetime


class DashboardActivity(BaseModel):
    id: int
    action: str
    issue_id: Optional[int] = None
    issue_title: Optional[str] = None
    user_name: Optional[str] = None
    created_at: datetime


class Dashboard(BaseModel):
    stats: DashboardStats
    recent_issues: List[DashboardIssue] = []
    recent_activities: List[DashboardActivity] = []


# AI refinement schemas
class RefineRequest(BaseModel):
    content: Optional[str] = ""
    field: str = "default"
    mode: Literal["refine", "suggest"] = "refine"
    context: Optional[Dict[str, Any]] = None


class RefineResponse(BaseModel):
    refined_content: str
