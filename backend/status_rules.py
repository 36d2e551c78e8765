"""
Derived status rules.

Milestone status is never set directly: it is folded from the completion
state of the milestone's checklist items. Issue status follows the
presence of verification records.
"""

from typing import Iterable, Optional

from models import IssueStatus, MilestoneStatus


def derive_milestone_status(total_items: int, completed_items: int) -> str:
    """
    Fold checklist completion counts into a milestone status.

    Returns:
        "Not Started" when nothing is completed, "Completed" when every
        item is completed, "In Progress" otherwise
    """
    if completed_items <= 0 or total_items <= 0:
        return MilestoneStatus.not_started.value
    if completed_items >= total_items:
        return MilestoneStatus.completed.value
    return MilestoneStatus.in_progress.value


def milestone_status_for(items: Iterable) -> str:
    """Derive status from checklist item objects exposing a `completion` attribute."""
    items = list(items)
    completed = sum(1 for item in items if item.completion is not None)
    return derive_milestone_status(len(items), completed)


def status_after_verification_change(current_status: str, verification_count: int) -> Optional[str]:
    """
    Return the status an issue should move to after its verifications changed,
    or None when it stays where it is.
    """
    if verification_count > 0:
        if current_status != IssueStatus.verified.value:
            return IssueStatus.verified.value
        return None

    # Last verification withdrawn
    if current_status == IssueStatus.verified.value:
        return IssueStatus.in_review.value
    return None
