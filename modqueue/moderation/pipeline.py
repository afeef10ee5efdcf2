"""
Report pipeline — intake of raw reports and the trigger chain behind it.

    submit_report ─▶ content_reports row
                      └─ report.created ─▶ ReportAggregator.aggregate
                                            └─ report_group.written ─▶ TaskFactory.materialize

Each stage commits on its own. A failing downstream stage is logged by the
trigger registry; the report itself stays stored. A report whose grouping
failed is marked ``aggregation_failed`` so the re-aggregation job retries it.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from modqueue.db.base import utcnow
from modqueue.db.models import ContentReport, ModerationTask, ReportGroup
from modqueue.db.session import transaction_scope
from modqueue.engine.collaborators import group_by_item
from modqueue.engine.config import QueueSettings
from modqueue.engine.errors import ValidationError
from modqueue.moderation.aggregator import GroupingStrategy, ReportAggregator
from modqueue.moderation.constants import ReportStatus
from modqueue.moderation.factory import TaskFactory
from modqueue.process.triggers import REPORT_CREATED, REPORT_GROUP_WRITTEN, EventTriggerRegistry

logger = logging.getLogger("modqueue.moderation.pipeline")


class ModerationPipeline:
    """
    Wires aggregator and task factory to the report events.

    Args:
        session_factory: Store session factory.
        settings: Queue settings (scoring, report queue, intake limits).
        grouping_strategy: ``report -> group_key``; one group per item by default.
        triggers: Event registry to wire into; a private one by default.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: QueueSettings,
        grouping_strategy: GroupingStrategy = group_by_item,
        *,
        triggers: Optional[EventTriggerRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._clock = clock
        self.aggregator = ReportAggregator(
            session_factory, settings.scoring, grouping_strategy,
            retry=settings.leasing, clock=clock, sleep=sleep,
        )
        self.factory = TaskFactory(session_factory, settings, clock=clock, sleep=sleep)
        self.triggers = triggers or EventTriggerRegistry()
        self.triggers.register(REPORT_CREATED, "modqueue.aggregate_report", self._on_report_created)
        self.triggers.register(REPORT_GROUP_WRITTEN, "modqueue.materialize_task", self.factory.materialize)

    def _on_report_created(self, report: Dict[str, Any], report_id: Optional[str] = None) -> Optional[ReportGroup]:
        try:
            group = self.aggregator.aggregate(report, report_id)
        except Exception:
            if report_id:
                self._set_report_status(report_id, ReportStatus.AGGREGATION_FAILED)
            raise
        if group is not None:
            self.triggers.fire(REPORT_GROUP_WRITTEN, {"group": group, "group_id": group.group_key})
        return group

    def _set_report_status(self, report_id: str, status: ReportStatus) -> None:
        try:
            with transaction_scope(self._session_factory) as session:
                session.execute(
                    update(ContentReport).where(ContentReport.id == report_id).values(status=status.value)
                )
        except SQLAlchemyError as e:
            logger.error(f"Could not mark report {report_id} as {status.value}: {e}")

    def reaggregate_failed_reports(self, limit: int = 100) -> Dict[str, int]:
        """
        Retry grouping for reports whose aggregation failed, oldest first.

        A report that groups cleanly goes back to ``pending_review``; one that
        fails again keeps its ``aggregation_failed`` mark for the next run.

        Returns:
            ``{"regrouped": n, "failed": m}``
        """
        stmt = (
            select(ContentReport)
            .where(ContentReport.status == ReportStatus.AGGREGATION_FAILED.value)
            .order_by(ContentReport.created_at.asc(), ContentReport.id.asc())
            .limit(limit)
        )
        with transaction_scope(self._session_factory) as session:
            reports = [r.to_dict() for r in session.scalars(stmt)]

        regrouped = failed = 0
        for report in reports:
            report_id = report["report_id"]
            report["status"] = ReportStatus.PENDING_REVIEW.value
            try:
                self._on_report_created(report, report_id)
            except Exception as e:
                logger.warning(f"Report {report_id} still cannot be grouped: {e}")
                failed += 1
                continue
            self._set_report_status(report_id, ReportStatus.PENDING_REVIEW)
            regrouped += 1

        if reports:
            logger.info(f"Re-aggregated {regrouped} report(s), {failed} still failing")
        return {"regrouped": regrouped, "failed": failed}

    def submit_report(
        self,
        reporter_user_id: str,
        reported_item_type: str,
        reported_item_id: str,
        reason: str,
        comment: str = "",
        *,
        reporter_username: Optional[str] = None,
        parent_item_id: Optional[str] = None,
        reported_user_id: Optional[str] = None,
        reported_username: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Store a raw report and fire ``report.created``.

        Raises:
            ValidationError: Missing fields, an unknown reason (when reasons
                are configured) or an over-long comment.
        """
        comment = (comment or "").strip()
        self._validate_report(reporter_user_id, reported_item_type, reported_item_id, reason, comment)

        data = {
            "reporter_user_id": reporter_user_id,
            "reporter_username": reporter_username,
            "reported_item_type": reported_item_type,
            "reported_item_id": reported_item_id,
            "parent_item_id": parent_item_id,
            "reported_user_id": reported_user_id,
            "reported_username": reported_username,
            "reason": reason,
            "comment": comment,
        }
        report = ContentReport(
            id=uuid.uuid4().hex,
            status=ReportStatus.PENDING_REVIEW.value,
            group_key=self.aggregator.group_key_for(data) or None,
            created_at=self._clock(),
            **data,
        )
        with transaction_scope(self._session_factory) as session:
            session.add(report)
        stored = report.to_dict()

        logger.info(f"Report {report.id} submitted for {reported_item_type} {reported_item_id}")
        self.triggers.fire(REPORT_CREATED, {"report": stored, "report_id": report.id})
        return stored

    def _validate_report(
        self,
        reporter_user_id: str,
        reported_item_type: str,
        reported_item_id: str,
        reason: str,
        comment: str,
    ) -> None:
        if not reporter_user_id:
            raise ValidationError("A reporter is required.", field="reporter_user_id")
        if not reported_item_type or not reported_item_id:
            raise ValidationError("The reported item is required.", field="reported_item_id")
        if not reason:
            raise ValidationError("A reason is required.", field="reason")

        allowed = self._settings.report_reasons
        if allowed and reason not in allowed:
            raise ValidationError(f"Unknown report reason '{reason}'.", field="reason", reason=reason)

        max_length = self._settings.max_report_comment_length
        if len(comment) > max_length:
            raise ValidationError(
                f"Comment must be at most {max_length} characters.",
                field="comment", length=len(comment),
            )

    def has_existing_report(self, reporter_user_id: str, reported_item_type: str, reported_item_id: str) -> bool:
        """Whether this reporter has already reported this item."""
        stmt = select(ContentReport.id).where(
            ContentReport.reporter_user_id == reporter_user_id,
            ContentReport.reported_item_type == reported_item_type,
            ContentReport.reported_item_id == reported_item_id,
        ).limit(1)
        with transaction_scope(self._session_factory) as session:
            return session.execute(stmt).first() is not None

    def reports_for_group(self, group_key: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Raw reports filed into a group, newest first."""
        if limit < 1:
            raise ValidationError("limit must be at least 1.", field="limit", limit=limit)
        stmt = (
            select(ContentReport)
            .where(ContentReport.group_key == group_key)
            .order_by(ContentReport.created_at.desc(), ContentReport.id.desc())
            .limit(limit)
        )
        with transaction_scope(self._session_factory) as session:
            return [r.to_dict() for r in session.scalars(stmt)]

    def task_for_group(self, group_key: str) -> Optional[Dict[str, Any]]:
        """The queued task materialised for a group, if any."""
        with transaction_scope(self._session_factory) as session:
            task = session.get(ModerationTask, f"{self.factory.task_type}-{group_key}")
            return task.to_dict() if task is not None else None
