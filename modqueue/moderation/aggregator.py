"""
Report aggregation — fold each new raw report into its report group.

One transaction per report against the group row:
- first report for a key creates the group (total_reports=1)
- later reports increment total_reports with a native SQL increment, raise
  highest_reason_score with an SQL max-merge, and backfill the reported
  user's identity only where it is still missing

A concurrent first-report race surfaces as an IntegrityError on insert; the
attempt is retried and the loser takes the update path.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Tuple

from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from modqueue.db.base import utcnow
from modqueue.db.models import ReportGroup
from modqueue.db.session import transaction_scope
from modqueue.engine.config import LeasingConfig, ScoringConfig
from modqueue.engine.errors import TransactionConflictError
from modqueue.engine.logging import log, log_report_grouped
from modqueue.engine.retry import run_with_retry
from modqueue.moderation.constants import ReportGroupStatus
from modqueue.moderation.scoring import reason_score

logger = logging.getLogger("modqueue.moderation.aggregator")

GroupingStrategy = Callable[[Mapping[str, Any]], str]


class ReportAggregator:
    """
    Deduplicates raw reports into ReportGroup rows.

    The only writer of a group's total_reports / highest_reason_score.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        scoring: ScoringConfig,
        grouping_strategy: GroupingStrategy,
        *,
        retry: Optional[LeasingConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self._scoring = scoring
        self._grouping_strategy = grouping_strategy
        self._retry = retry or LeasingConfig()
        self._clock = clock
        self._sleep = sleep

    def group_key_for(self, report: Optional[Mapping[str, Any]]) -> str:
        if not report:
            return ""
        return self._grouping_strategy(report) or ""

    def aggregate(
        self,
        report: Optional[Mapping[str, Any]],
        report_id: Optional[str] = None,
    ) -> Optional[ReportGroup]:
        """
        Fold one report into its group.

        Returns:
            The group as committed, or None when the report is absent or the
            grouping strategy yields no key (dropped, not an error).
        """
        if not report:
            logger.error("No data in report creation event")
            return None

        group_key = self.group_key_for(report)
        if not group_key:
            logger.error(f"Could not determine group key for report {report_id}")
            return None

        score = reason_score(self._scoring, report.get("reason"))

        group, created = run_with_retry(
            lambda: self._apply(group_key, report, score),
            attempts=self._retry.max_attempts,
            base_delay=self._retry.base_backoff_ms / 1000.0,
            max_delay=self._retry.max_backoff_ms / 1000.0,
            sleep=self._sleep,
            name="aggregate_report",
        )

        logger.info(f"Updated report group {group_key} for report {report_id}")
        log(log_report_grouped(
            group_key=group_key,
            report_id=report_id,
            created=created,
            total_reports=group.total_reports,
            highest_reason_score=group.highest_reason_score,
        ))
        return group

    def _apply(
        self,
        group_key: str,
        report: Mapping[str, Any],
        score: float,
    ) -> Tuple[ReportGroup, bool]:
        now = self._clock()
        reported_user_id = report.get("reported_user_id") or None
        reported_username = report.get("reported_username") or None

        with transaction_scope(self._session_factory) as session:
            group = session.get(ReportGroup, group_key, with_for_update=True)

            if group is None:
                group = ReportGroup(
                    group_key=group_key,
                    reported_item_id=report.get("reported_item_id"),
                    reported_item_type=report.get("reported_item_type"),
                    reported_user_id=reported_user_id,
                    reported_username=reported_username,
                    total_reports=1,
                    highest_reason_score=score,
                    last_report_at=now,
                    status=ReportGroupStatus.PENDING.value,
                )
                session.add(group)
                try:
                    session.flush()
                except IntegrityError as e:
                    raise TransactionConflictError(
                        f"Report group {group_key} was created concurrently",
                        group_key=group_key,
                    ) from e
                return group, True

            values = {
                "total_reports": ReportGroup.total_reports + 1,
                "highest_reason_score": case(
                    (ReportGroup.highest_reason_score < score, score),
                    else_=ReportGroup.highest_reason_score,
                ),
                "last_report_at": now,
            }
            if reported_user_id:
                values["reported_user_id"] = func.coalesce(ReportGroup.reported_user_id, reported_user_id)
            if reported_username:
                values["reported_username"] = func.coalesce(ReportGroup.reported_username, reported_username)

            session.execute(
                update(ReportGroup)
                .where(ReportGroup.group_key == group_key)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.refresh(group)
            return group, False
