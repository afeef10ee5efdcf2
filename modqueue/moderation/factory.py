"""
Task materialisation — one ModerationTask per ReportGroup.

Task ids are deterministic ("{task_type}-{group_key}") so materialising the
same group twice refreshes the existing task instead of creating another.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from modqueue.db.base import utcnow
from modqueue.db.models import REPORT_GROUPS_COLLECTION, ModerationTask, ReportGroup
from modqueue.db.session import transaction_scope
from modqueue.engine.config import QueueSettings
from modqueue.engine.errors import TransactionConflictError
from modqueue.engine.logging import log, log_task_materialized
from modqueue.engine.retry import run_with_retry
from modqueue.moderation.constants import TaskStatus
from modqueue.moderation.scoring import score_from_reason_score

logger = logging.getLogger("modqueue.moderation.factory")

GroupInput = Union[ReportGroup, Mapping[str, Any], None]


def task_doc_id(task_type: str, group_key: str) -> str:
    return f"{task_type}-{group_key}"


def build_summary(total_reports: int, reported_username: Optional[str], item_type: Optional[str]) -> str:
    """E.g. "1 report for post", "3 reports for user alice"."""
    noun = "report" if total_reports == 1 else "reports"
    target = f"user {reported_username}" if reported_username else f"{item_type}"
    return f"{total_reports} {noun} for {target}"


class TaskFactory:
    """Creates or refreshes the queued task for a report group."""

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: QueueSettings,
        task_type: Optional[str] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self.task_type = task_type or settings.report_task_type
        settings.queue_config(self.task_type)  # unknown task types fail at construction
        self._clock = clock
        self._sleep = sleep

    def compute_priority(self, group: Mapping[str, Any]) -> float:
        scoring = self._settings.scoring
        highest = group.get("highest_reason_score")
        if highest is None:
            highest = scoring.default_reason_score
        total = group.get("total_reports") or 1
        return score_from_reason_score(scoring, highest, group.get("reported_item_type"), total)

    def materialize(self, group: GroupInput, group_id: Optional[str] = None) -> Optional[ModerationTask]:
        """
        Upsert the task for ``group``.

        New tasks start pending with no lease. Existing tasks get a fresh
        priority, summary and last_updated_at; their status, lease and
        created_at (queue position within a priority tier) are untouched.

        Returns:
            The committed task, or None for a missing group.
        """
        if not group:
            return None
        data = group.to_dict() if isinstance(group, ReportGroup) else dict(group)
        group_id = group_id or data.get("group_key")
        if not group_id:
            return None

        priority = self.compute_priority(data)
        total = data.get("total_reports") or 1
        summary = build_summary(total, data.get("reported_username"), data.get("reported_item_type"))

        task, created = run_with_retry(
            lambda: self._upsert(group_id, priority, summary),
            attempts=self._settings.leasing.max_attempts,
            base_delay=self._settings.leasing.base_backoff_ms / 1000.0,
            max_delay=self._settings.leasing.max_backoff_ms / 1000.0,
            sleep=self._sleep,
            name="materialize_task",
        )

        verb = "Created" if created else "Refreshed"
        logger.info(f"{verb} task {task.id} for report group {group_id} with priority {priority}")
        log(log_task_materialized(self.task_type, task.id, group_id, priority, created))
        return task

    def _upsert(self, group_id: str, priority: float, summary: str):
        now = self._clock()
        doc_id = task_doc_id(self.task_type, group_id)

        with transaction_scope(self._session_factory) as session:
            task = session.get(ModerationTask, doc_id, with_for_update=True)
            if task is not None:
                task.priority = priority
                task.summary = summary
                task.last_updated_at = now
                return task, False

            task = ModerationTask(
                id=doc_id,
                task_type=self.task_type,
                task_id=group_id,
                original_path=f"{REPORT_GROUPS_COLLECTION}/{group_id}",
                status=TaskStatus.PENDING.value,
                priority=priority,
                summary=summary,
                created_at=now,
                last_updated_at=now,
            )
            session.add(task)
            try:
                session.flush()
            except IntegrityError as e:
                raise TransactionConflictError(
                    f"Task {doc_id} was created concurrently", task_id=doc_id,
                ) from e
            return task, True
