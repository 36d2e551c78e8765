from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime, Boolean, UniqueConstraint
from sqlalchemy.orm import relationship
import enum
from database import Base
from time_utils import utc_now, is_overdue


class UserRole(str, enum.Enum):
    admin = "Admin"
    developer = "Developer"
    qa = "QA"
    viewer = "Viewer"


class ProjectRole(str, enum.Enum):
    admin = "admin"
    member = "member"
    qa = "qa"


class IssueType(str, enum.Enum):
    bug = "Bug"
    feature = "Feature"


class IssueStatus(str, enum.Enum):
    open = "Open"
    in_progress = "In Progress"
    in_review = "In Review"
    verified = "Verified"
    closed = "Closed"


class IssuePriority(str, enum.Enum):
    low = "Low"
    medium = "Medium"
    high = "High"
    critical = "Critical"


class MilestoneStatus(str, enum.Enum):
    not_started = "Not Started"
    in_progress = "In Progress"
    completed = "Completed"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=UserRole.developer.value)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    # Rows owned by the user go with it
    memberships = relationship("ProjectMember", back_populates="user", cascade="all, delete-orphan")
    assignments = relationship("IssueAssignee", back_populates="user", cascade="all, delete-orphan")
    verifier_roles = relationship("IssueVerifier", back_populates="user", cascade="all, delete-orphan")
    verifications = relationship("IssueVerification", back_populates="user", cascade="all, delete-orphan")

    # Authored rows outlive the user with a null author
    created_projects = relationship("Project", back_populates="creator")
    reported_issues = relationship("Issue", back_populates="reporter")
    comments = relationship("Comment", back_populates="author")
    uploads = relationship("Attachment", back_populates="uploader")
    activities = relationship("ActivityLog", back_populates="user")
    created_milestones = relationship("Milestone", back_populates="creator")
    checklist_completions = relationship("ChecklistCompletion", back_populates="user")
    milestone_notes = relationship("MilestoneNote", back_populates="author")


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    key = Column(String(10), unique=True, nullable=False, index=True)
    description = Column(Text)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    # Relationships
    creator = relationship("User", back_populates="created_projects")
    members = relationship("ProjectMember", back_populates="project", cascade="all, delete-orphan")
    issues = relationship(
        "Issue",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="Issue.updated_at.desc()",
    )
    milestones = relationship("Milestone", back_populates="project", cascade="all, delete-orphan")

    @property
    def issue_count(self) -> int:
        return len(self.issues)

    @property
    def open_issue_count(self) -> int:
        return sum(1 for issue in self.issues if issue.status != IssueStatus.closed.value)


class ProjectMember(Base):
    __tablename__ = "project_members"
    __table_args__ = (UniqueConstraint("project_id", "user_id", name="uq_project_member"),)

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role = Column(String(20), nullable=False, default=ProjectRole.member.value)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    project = relationship("Project", back_populates="members")
    user = relationship("User", back_populates="memberships")


class Issue(Base):
    __tablename__ = "issues"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(255), nullable=False)
    type = Column(String(20), nullable=False, default=IssueType.bug.value)
    description = Column(Text)
    steps_to_reproduce = Column(Text)
    expected_result = Column(Text)
    actual_result = Column(Text)
    status = Column(String(20), nullable=False, default=IssueStatus.open.value)
    priority = Column(String(20), nullable=False, default=IssuePriority.medium.value)
    reporter_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    start_date = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    # Relationships
    project = relationship("Project", back_populates="issues")
    reporter = relationship("User", back_populates="reported_issues")
    assignees = relationship("IssueAssignee", back_populates="issue", cascade="all, delete-orphan")
    verifiers = relationship("IssueVerifier", back_populates="issue", cascade="all, delete-orphan")
    verifications = relationship(
        "IssueVerification",
        back_populates="issue",
        cascade="all, delete-orphan",
        order_by="IssueVerification.verified_at",
    )
    comments = relationship(
        "Comment",
        back_populates="issue",
        cascade="all, delete-orphan",
        order_by="Comment.created_at",
    )
    attachments = relationship(
        "Attachment",
        back_populates="issue",
        cascade="all, delete-orphan",
        order_by="Attachment.created_at",
    )
    activities = relationship(
        "ActivityLog",
        back_populates="issue",
        cascade="all, delete-orphan",
        order_by="ActivityLog.created_at.desc()",
    )

    @property
    def assignee_users(self) -> list:
        return [link.user for link in self.assignees]

    @property
    def verifier_users(self) -> list:
        return [link.user for link in self.verifiers]

    @property
    def verification_count(self) -> int:
        return len(self.verifications)

    @property
    def is_verified(self) -> bool:
        return len(self.verifications) > 0

    @property
    def is_overdue(self) -> bool:
        return is_overdue(self.due_date, self.status)


class IssueAssignee(Base):
    __tablename__ = "issue_assignees"

    issue_id = Column(Integer, ForeignKey("issues.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)

    issue = relationship("Issue", back_populates="assignees")
    user = relationship("User", back_populates="assignments")


class IssueVerifier(Base):
    __tablename__ = "issue_verifiers"

    issue_id = Column(Integer, ForeignKey("issues.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)

    issue = relationship("Issue", back_populates="verifiers")
    user = relationship("User", back_populates="verifier_roles")


class IssueVerification(Base):
    __tablename__ = "issue_verifications"
    __table_args__ = (UniqueConstraint("issue_id", "user_id", name="uq_issue_verification"),)

    id = Column(Integer, primary_key=True, index=True)
    issue_id = Column(Integer, ForeignKey("issues.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    verified_at = Column(DateTime(timezone=True), default=utc_now)

    issue = relationship("Issue", back_populates="verifications")
    user = relationship("User", back_populates="verifications")


class Comment(Base):
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True, index=True)
    issue_id = Column(Integer, ForeignKey("issues.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    body = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    issue = relationship("Issue", back_populates="comments")
    author = relationship("User", back_populates="comments")
    attachments = relationship("Attachment", back_populates="comment", cascade="all, delete-orphan")


class Attachment(Base):
    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True, index=True)
    issue_id = Column(Integer, ForeignKey("issues.id", ondelete="CASCADE"), nullable=False)
    comment_id = Column(Integer, ForeignKey("comments.id", ondelete="CASCADE"), nullable=True)
    url = Column(Text, nullable=False)
    delete_hash = Column(Text)  # Image host deletion handle
    uploaded_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    created_at = Column(DateTime(timezone=True), default=utc_now)

    issue = relationship("Issue", back_populates="attachments")
    comment = relationship("Comment", back_populates="attachments")
    uploader = relationship("User", back_populates="uploads")


class ActivityLog(Base):
    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True, index=True)
    issue_id = Column(Integer, ForeignKey("issues.id", ondelete="CASCADE"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    action = Column(Text, nullable=False)
    old_value = Column(Text)
    new_value = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)

    issue = relationship("Issue", back_populates="activities")
    user = relationship("User", back_populates="activities")


class Milestone(Base):
    __tablename__ = "milestones"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(String(20), nullable=False, default=MilestoneStatus.not_started.value)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    project = relationship("Project", back_populates="milestones")
    creator = relationship("User", back_populates="created_milestones")
    checklist_items = relationship(
        "ChecklistItem",
        back_populates="milestone",
        cascade="all, delete-orphan",
        order_by="ChecklistItem.order",
    )
    notes = relationship(
        "MilestoneNote",
        back_populates="milestone",
        cascade="all, delete-orphan",
        order_by="MilestoneNote.created_at.desc()",
    )

    @property
    def total_count(self) -> int:
        return len(self.checklist_items)

    @property
    def completed_count(self) -> int:
        return sum(1 for item in self.checklist_items if item.completion is not None)


class ChecklistItem(Base):
    __tablename__ = "milestone_checklist_items"

    id = Column(Integer, primary_key=True, index=True)
    milestone_id = Column(Integer, ForeignKey("milestones.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text, nullable=False)
    order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    milestone = relationship("Milestone", back_populates="checklist_items")
    # At most one completion per item
    completion = relationship(
        "ChecklistCompletion",
        back_populates="item",
        uselist=False,
        cascade="all, delete-orphan",
    )


class ChecklistCompletion(Base):
    __tablename__ = "milestone_checklist_completions"

    id = Column(Integer, primary_key=True, index=True)
    checklist_item_id = Column(
        Integer,
        ForeignKey("milestone_checklist_items.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    notes = Column(Text)
    completed_at = Column(DateTime(timezone=True), default=utc_now)

    item = relationship("ChecklistItem", back_populates="completion")
    user = relationship("User", back_populates="checklist_completions")


class MilestoneNote(Base):
    __tablename__ = "milestone_notes"

    id = Column(Integer, primary_key=True, index=True)
    milestone_id = Column(Integer, ForeignKey("milestones.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    milestone = relationship("Milestone", back_populates="notes")
    author = relationship("User", back_populates="milestone_notes")


class EmailTemplate(Base):
    __tablename__ = "email_templates"

    id = Column(Integer, primary_key=True, index=True)
    event = Column(String(100), unique=True, nullable=False)
    subject = Column(Text, nullable=False)
    body = Column(Text, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
