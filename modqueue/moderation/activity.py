"""Activity log — append-only audit trail of leasing transitions."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from modqueue.db.base import utcnow
from modqueue.db.models import ActivityLogEntry
from modqueue.db.session import transaction_scope


class ActivityLog:
    """
    Entries are written through ``append`` on the caller's open session, so an
    entry commits or rolls back together with the transition it records.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    def append(
        self,
        session: Session,
        *,
        admin_user_id: str,
        admin_display_name: str,
        action: str,
        task_type: str,
        task_id: str,
        priority: Optional[float] = None,
        resolution: Optional[str] = None,
        time_spent_minutes: Optional[int] = None,
        extend_minutes: Optional[int] = None,
        timestamp: Optional[datetime] = None,
    ) -> ActivityLogEntry:
        entry = ActivityLogEntry(
            id=uuid.uuid4().hex,
            admin_user_id=admin_user_id,
            admin_display_name=admin_display_name,
            action=getattr(action, "value", action),
            task_type=task_type,
            task_id=task_id,
            priority=priority,
            resolution=resolution,
            time_spent_minutes=time_spent_minutes,
            extend_minutes=extend_minutes,
            timestamp=timestamp or self._clock(),
        )
        session.add(entry)
        return entry

    def list_entries(
        self,
        task_id: Optional[str] = None,
        admin_user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Newest first."""
        stmt = select(ActivityLogEntry)
        if task_id:
            stmt = stmt.where(ActivityLogEntry.task_id == task_id)
        if admin_user_id:
            stmt = stmt.where(ActivityLogEntry.admin_user_id == admin_user_id)
        if action:
            stmt = stmt.where(ActivityLogEntry.action == getattr(action, "value", action))
        stmt = stmt.order_by(ActivityLogEntry.timestamp.desc(), ActivityLogEntry.id.desc()).limit(limit)

        with transaction_scope(self._session_factory) as session:
            return [entry.to_dict() for entry in session.scalars(stmt)]
