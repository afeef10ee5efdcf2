"""
Priority recalculation — re-derive stored priorities after a scoring change.

Runs out-of-band next to live leasing traffic. Pending tasks are walked in
id order, one page per batch; each batch is read, rescored against the
current scoring config and written back in its own transaction. A failure
partway through leaves earlier batches committed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import bindparam, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from modqueue.db.base import utcnow
from modqueue.db.models import REPORT_GROUPS_COLLECTION, ModerationTask, ReportGroup
from modqueue.db.session import transaction_scope
from modqueue.engine.config import ScoringConfig
from modqueue.moderation.constants import TaskStatus
from modqueue.moderation.scoring import score_from_reason_score

logger = logging.getLogger("modqueue.moderation.recalculator")

MAX_BATCH_SIZE = 500

_task_table = ModerationTask.__table__

# One parameter set per task. The status guard skips tasks that were checked
# out since the batch was read; those match no row and are not counted.
_UPDATE_PRIORITY = (
    update(_task_table)
    .where(
        _task_table.c.id == bindparam("b_id"),
        _task_table.c.status == TaskStatus.PENDING.value,
    )
    .values(priority=bindparam("b_priority"), last_updated_at=bindparam("b_updated_at"))
)


def _group_key_from_path(original_path: str) -> Optional[str]:
    collection, _, key = (original_path or "").partition("/")
    if collection != REPORT_GROUPS_COLLECTION or not key:
        return None
    return key


class PriorityRecalculator:
    def __init__(
        self,
        session_factory: sessionmaker,
        scoring: ScoringConfig,
        *,
        batch_size: int = MAX_BATCH_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {batch_size}")
        self._session_factory = session_factory
        self._scoring = scoring
        self._batch_size = batch_size
        self._clock = clock

    def recalculate_all(self, scoring: Optional[ScoringConfig] = None) -> Dict[str, int]:
        """
        Rescore every pending task from its source report group.

        Only rows actually rewritten count as updated; a task leased between
        the read and the write is left alone. A task whose group is gone
        counts as an error and is skipped. A batch whose commit fails counts
        all of its tasks as errors; later batches still run.

        Returns:
            ``{"updated": n, "errors": m}``
        """
        scoring = scoring or self._scoring
        updated = 0
        errors = 0
        last_id = ""
        batches = 0

        while True:
            rows, missing, seen, last_id = self._read_batch(scoring, last_id)
            if not seen:
                break
            batches += 1
            errors += missing

            if rows:
                try:
                    with transaction_scope(self._session_factory) as session:
                        applied = sum(session.execute(_UPDATE_PRIORITY, row).rowcount for row in rows)
                    updated += applied
                    if applied < len(rows):
                        logger.debug(f"Recalculation batch {batches}: {len(rows) - applied} task(s) checked out since read, skipped")
                except SQLAlchemyError as e:
                    logger.error(f"Recalculation batch {batches} failed ({len(rows)} tasks): {e}")
                    errors += len(rows)

            if seen < self._batch_size:
                break

        logger.info(f"Priority recalculation finished: {updated} updated, {errors} errors in {batches} batch(es)")
        return {"updated": updated, "errors": errors}

    def _read_batch(self, scoring: ScoringConfig, after_id: str):
        now = self._clock()
        rows: List[Dict[str, object]] = []
        missing = 0

        with transaction_scope(self._session_factory) as session:
            tasks = session.execute(
                select(ModerationTask.id, ModerationTask.original_path)
                .where(
                    ModerationTask.status == TaskStatus.PENDING.value,
                    ModerationTask.id > after_id,
                )
                .order_by(ModerationTask.id.asc())
                .limit(self._batch_size)
            ).all()
            if not tasks:
                return rows, 0, 0, after_id

            keys = {_group_key_from_path(t.original_path) for t in tasks} - {None}
            groups = {
                g.group_key: g
                for g in session.scalars(select(ReportGroup).where(ReportGroup.group_key.in_(keys)))
            } if keys else {}

            for task in tasks:
                group = groups.get(_group_key_from_path(task.original_path))
                if group is None:
                    logger.warning(f"Source group missing for task {task.id} ({task.original_path})")
                    missing += 1
                    continue
                rows.append({
                    "b_id": task.id,
                    "b_priority": score_from_reason_score(
                        scoring,
                        group.highest_reason_score,
                        group.reported_item_type,
                        group.total_reports,
                    ),
                    "b_updated_at": now,
                })

        return rows, missing, len(tasks), tasks[-1].id
