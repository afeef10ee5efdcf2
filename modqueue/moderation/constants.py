"""Status and action vocabularies shared by every moderation component."""

from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    """
    Task state machine:

        pending ──checkout──▶ checkedOut ──check-in(resolved)──▶ completed
           ▲                      │
           └──release / check-in(unresolved) / lease expiry──┘
    """
    PENDING = "pending"
    CHECKED_OUT = "checkedOut"
    COMPLETED = "completed"


ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.CHECKED_OUT},
    TaskStatus.CHECKED_OUT: {TaskStatus.PENDING, TaskStatus.COMPLETED},
    TaskStatus.COMPLETED: set(),
}


class ActivityAction(str, Enum):
    CHECKOUT = "checkout"
    CHECKOUT_NEXT_IMPORTANT = "checkout_next_important"
    CHECKIN_RESOLVED = "checkin_resolved"
    CHECKIN_UNRESOLVED = "checkin_unresolved"
    RELEASE = "release"
    MARK_WORK_LATER = "mark_work_later"
    AUTO_RELEASED = "auto_released"
    AUTO_RELEASED_SCHEDULED = "auto_released_scheduled"


class ReportGroupStatus(str, Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    RESOLVED = "resolved"


class ReportStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    RESOLVED_NO_ACTION = "resolved_no_action"
    RESOLVED_ACTION_TAKEN = "resolved_action_taken"
    # Grouping failed; picked up again by reaggregate_failed_reports().
    AGGREGATION_FAILED = "aggregation_failed"


def can_transition(from_status: str, to_status: str) -> bool:
    return TaskStatus(to_status) in ALLOWED_TRANSITIONS[TaskStatus(from_status)]
