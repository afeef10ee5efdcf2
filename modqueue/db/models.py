"""
modqueue Models — SQLAlchemy tables backing the moderation queue.

Tables:
1. content_reports   — Raw reports as submitted by users
2. report_groups     — Deduplicated aggregate per group key
3. moderation_tasks  — One reviewable task per report group (leasable)
4. activity_log      — Append-only audit trail of leasing transitions

Tasks point at their group through ``original_path`` ("report_groups/<key>")
rather than a foreign key; a group may disappear underneath a task.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)

from modqueue.db.base import Base, TimestampMixin, as_utc, utcnow

REPORT_GROUPS_COLLECTION = "report_groups"

# UPDATE values that drop a lease
CLEARED_CHECKOUT = {
    "checkout_user_id": None,
    "checkout_user_display_name": None,
    "checkout_user_photo_url": None,
    "checked_out_at": None,
    "expires_at": None,
    "work_later_until": None,
}


def _ts(value) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# 1. Content reports
# ---------------------------------------------------------------------------

class ContentReport(Base):
    __tablename__ = "content_reports"

    id = Column(String(64), primary_key=True)
    reporter_user_id = Column(String(128), nullable=False, index=True)
    reporter_username = Column(String(200), nullable=True)
    reported_item_type = Column(String(50), nullable=False)
    reported_item_id = Column(String(128), nullable=False)
    parent_item_id = Column(String(128), nullable=True)
    reported_user_id = Column(String(128), nullable=True)
    reported_username = Column(String(200), nullable=True)
    reason = Column(String(100), nullable=False)
    comment = Column(Text, nullable=False, default="")
    status = Column(String(30), nullable=False, default="pending_review")
    group_key = Column(String(300), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_reports_reporter_item", "reporter_user_id", "reported_item_type", "reported_item_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.id,
            "reporter_user_id": self.reporter_user_id,
            "reporter_username": self.reporter_username,
            "reported_item_type": self.reported_item_type,
            "reported_item_id": self.reported_item_id,
            "parent_item_id": self.parent_item_id,
            "reported_user_id": self.reported_user_id,
            "reported_username": self.reported_username,
            "reason": self.reason,
            "comment": self.comment,
            "status": self.status,
            "group_key": self.group_key,
            "created_at": _ts(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<ContentReport(id='{self.id}', item='{self.reported_item_type}:{self.reported_item_id}')>"


# ---------------------------------------------------------------------------
# 2. Report groups
# ---------------------------------------------------------------------------

class ReportGroup(Base):
    __tablename__ = "report_groups"

    group_key = Column(String(300), primary_key=True)
    reported_item_id = Column(String(128), nullable=False)
    reported_item_type = Column(String(50), nullable=False)
    reported_user_id = Column(String(128), nullable=True)
    reported_username = Column(String(200), nullable=True)
    total_reports = Column(Integer, nullable=False, default=1)
    highest_reason_score = Column(Float, nullable=False, default=0)
    last_report_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    status = Column(String(30), nullable=False, default="pending")

    __table_args__ = (
        CheckConstraint("total_reports >= 1", name="ck_report_groups_total_reports"),
    )

    @property
    def path(self) -> str:
        return f"{REPORT_GROUPS_COLLECTION}/{self.group_key}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_key": self.group_key,
            "reported_item_id": self.reported_item_id,
            "reported_item_type": self.reported_item_type,
            "reported_user_id": self.reported_user_id,
            "reported_username": self.reported_username,
            "total_reports": self.total_reports,
            "highest_reason_score": self.highest_reason_score,
            "last_report_at": _ts(self.last_report_at),
            "status": self.status,
        }

    def __repr__(self) -> str:
        return f"<ReportGroup(key='{self.group_key}', total={self.total_reports})>"


# ---------------------------------------------------------------------------
# 3. Moderation tasks
# ---------------------------------------------------------------------------

class ModerationTask(Base, TimestampMixin):
    __tablename__ = "moderation_tasks"

    id = Column(String(400), primary_key=True)
    task_type = Column(String(50), nullable=False)
    task_id = Column(String(300), nullable=False)
    original_path = Column(String(400), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    priority = Column(Float, nullable=False, default=0)
    summary = Column(String(500), nullable=False, default="")
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Lease ("checkout details"); all NULL unless status == checkedOut
    checkout_user_id = Column(String(128), nullable=True, index=True)
    checkout_user_display_name = Column(String(200), nullable=True)
    checkout_user_photo_url = Column(String(1000), nullable=True)
    checked_out_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    work_later_until = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'checkedOut', 'completed')",
            name="ck_moderation_tasks_status",
        ),
        Index("idx_tasks_queue_order", "status", "priority", "created_at"),
        Index("idx_tasks_type_status", "task_type", "status"),
        Index("idx_tasks_expiry", "status", "expires_at"),
    )

    @property
    def checkout_details(self) -> Optional[Dict[str, Any]]:
        if self.checkout_user_id is None:
            return None
        return {
            "user_id": self.checkout_user_id,
            "user_display_name": self.checkout_user_display_name,
            "user_photo_url": self.checkout_user_photo_url,
            "checked_out_at": as_utc(self.checked_out_at),
            "expires_at": as_utc(self.expires_at),
            "work_later_until": as_utc(self.work_later_until),
        }

    def to_dict(self) -> Dict[str, Any]:
        details = self.checkout_details
        if details is not None:
            details = {k: (_ts(v) if k in ("checked_out_at", "expires_at", "work_later_until") else v)
                       for k, v in details.items()}
        return {
            "id": self.id,
            "task_type": self.task_type,
            "task_id": self.task_id,
            "original_path": self.original_path,
            "status": self.status,
            "checkout_details": details,
            "priority": self.priority,
            "summary": self.summary,
            "created_at": _ts(self.created_at),
            "last_updated_at": _ts(self.last_updated_at),
            "completed_at": _ts(self.completed_at),
        }

    def __repr__(self) -> str:
        return f"<ModerationTask(id='{self.id}', status='{self.status}', priority={self.priority})>"


# ---------------------------------------------------------------------------
# 4. Activity log
# ---------------------------------------------------------------------------

class ActivityLogEntry(Base):
    __tablename__ = "activity_log"

    id = Column(String(64), primary_key=True)
    admin_user_id = Column(String(128), nullable=False, index=True)
    admin_display_name = Column(String(200), nullable=False)
    action = Column(String(50), nullable=False)
    task_type = Column(String(50), nullable=False)
    task_id = Column(String(300), nullable=False, index=True)
    priority = Column(Float, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    resolution = Column(Text, nullable=True)
    time_spent_minutes = Column(Integer, nullable=True)
    extend_minutes = Column(Integer, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "admin_user_id": self.admin_user_id,
            "admin_display_name": self.admin_display_name,
            "action": self.action,
            "task_type": self.task_type,
            "task_id": self.task_id,
            "priority": self.priority,
            "timestamp": _ts(self.timestamp),
            "resolution": self.resolution,
            "time_spent_minutes": self.time_spent_minutes,
            "extend_minutes": self.extend_minutes,
        }

    def __repr__(self) -> str:
        return f"<ActivityLogEntry(action='{self.action}', task_id='{self.task_id}')>"
