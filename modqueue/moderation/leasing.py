"""
Task leasing — exclusive, time-bounded checkout of moderation tasks.

State machine (see constants.TaskStatus):

    pending ──▶ checkedOut ──▶ completed
       ▲            │
       └────────────┘   release, unresolved check-in, lease expiry

Every operation is one store transaction wrapped in a bounded retry loop.
Claims are compare-and-set updates (``WHERE id = :id AND status = :expected``),
so when two workers select the same row only one UPDATE matches; the other
attempt raises TransactionConflictError, is retried, and re-reads the queue.
On PostgreSQL the candidate SELECT also uses FOR UPDATE SKIP LOCKED so
concurrent workers usually pick different rows in the first place.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from modqueue.db.base import as_utc, utcnow
from modqueue.db.models import CLEARED_CHECKOUT, REPORT_GROUPS_COLLECTION, ModerationTask, ReportGroup
from modqueue.db.session import transaction_scope
from modqueue.engine.collaborators import (
    AdminAuthorizer,
    ProfileLookup,
    UserProfile,
    resolve_profile,
)
from modqueue.engine.config import QueueSettings
from modqueue.engine.errors import (
    InvalidTransitionError,
    NotFoundError,
    NotOwnedError,
    QueueEmptyError,
    TaskLeasedError,
    TransactionConflictError,
    ValidationError,
)
from modqueue.engine.logging import log, log_lease_event
from modqueue.engine.retry import run_with_retry
from modqueue.moderation.activity import ActivityLog
from modqueue.moderation.constants import ActivityAction, TaskStatus, can_transition

logger = logging.getLogger("modqueue.moderation.leasing")

PENDING = TaskStatus.PENDING.value
CHECKED_OUT = TaskStatus.CHECKED_OUT.value
COMPLETED = TaskStatus.COMPLETED.value


def _queue_order(stmt):
    # Highest priority first; FIFO within a priority tier; id keeps it total.
    return stmt.order_by(
        ModerationTask.priority.desc(),
        ModerationTask.created_at.asc(),
        ModerationTask.id.asc(),
    )


class TaskQueue:
    """
    Leasing API used by reviewer-facing request handlers.

    Args:
        session_factory: Store session factory.
        settings: Queue settings (task queues, retry budget, allow-list).
        authorizer: Admin check for checkouts. Defaults to the settings allow-list.
        profile_lookup: ``user_id -> profile``; display names fall back to "Admin".
        activity_log: Audit writer; defaults to one on the same store.
        clock: Current-time source (aware UTC).
        sleep: Backoff sleeper for the retry loop.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: QueueSettings,
        *,
        authorizer: Optional[AdminAuthorizer] = None,
        profile_lookup: Optional[ProfileLookup] = None,
        activity_log: Optional[ActivityLog] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._authorizer = authorizer or AdminAuthorizer(admin_user_ids=settings.admin_user_ids)
        self._profile_lookup = profile_lookup
        self._activity = activity_log or ActivityLog(session_factory, clock=clock)
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def checkout_next(self, worker_id: str, auth_token: Any = None) -> Dict[str, Any]:
        """
        Lease the single most important pending task across all queues.

        Raises:
            AuthorizationError: Caller is not an admin.
            QueueEmptyError: Nothing is pending.
            TransactionConflictError: Retry budget exhausted under contention.
        """
        self._require_worker(worker_id)
        self._authorizer.verify(worker_id, auth_token, operation="checkout_next")
        profile = resolve_profile(self._profile_lookup, worker_id)

        started = time.monotonic()
        result = self._run(lambda: self._checkout_next_once(worker_id, profile), "checkout_next")
        task = result["task"]
        log(log_lease_event(
            ActivityAction.CHECKOUT_NEXT_IMPORTANT.value, worker_id, task["task_type"], task["id"],
            priority=task["priority"], duration_ms=(time.monotonic() - started) * 1000,
        ))
        return result

    def _checkout_next_once(self, worker_id: str, profile: UserProfile) -> Dict[str, Any]:
        now = self._clock()
        with transaction_scope(self._session_factory) as session:
            # Tasks whose type has no queue config are skipped; they cannot be leased.
            stmt = _queue_order(
                select(ModerationTask).where(
                    ModerationTask.status == PENDING,
                    ModerationTask.task_type.in_(list(self._settings.task_queues)),
                )
            ).limit(1).with_for_update(skip_locked=True)
            task = session.scalars(stmt).first()
            if task is None:
                raise QueueEmptyError("No pending tasks available! All caught up!")

            queue_cfg = self._settings.queue_config(task.task_type)
            expires_at = now + timedelta(minutes=queue_cfg.default_checkout_minutes)

            self._claim(session, task, worker_id, profile, now, expires_at)
            self._activity.append(
                session,
                admin_user_id=worker_id,
                admin_display_name=profile.display_name,
                action=ActivityAction.CHECKOUT_NEXT_IMPORTANT,
                task_type=task.task_type,
                task_id=task.task_id,
                priority=task.priority,
                timestamp=now,
            )
            return self._checkout_payload(session, task)

    def checkout(
        self,
        task_type: str,
        worker_id: str,
        auth_token: Any = None,
        specific_task_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Lease a task from one queue: a specific task, else the most important
        pending one, else the one whose lease expired earliest.

        Raises:
            AuthorizationError, ValidationError (unknown task type),
            NotFoundError, InvalidTransitionError (completed task),
            TaskLeasedError (live lease), QueueEmptyError.
        """
        self._require_worker(worker_id)
        self._authorizer.verify(worker_id, auth_token, operation="checkout")
        if task_type not in self._settings.task_queues:
            raise ValidationError(
                "Invalid task type specified.", field="task_type", task_type=task_type,
            )
        profile = resolve_profile(self._profile_lookup, worker_id)

        result = self._run(
            lambda: self._checkout_once(task_type, worker_id, profile, specific_task_id),
            "checkout",
        )
        task = result["task"]
        log(log_lease_event(
            ActivityAction.CHECKOUT.value, worker_id, task["task_type"], task["id"], priority=task["priority"],
        ))
        return result

    def _checkout_once(
        self,
        task_type: str,
        worker_id: str,
        profile: UserProfile,
        specific_task_id: Optional[str],
    ) -> Dict[str, Any]:
        now = self._clock()
        queue_cfg = self._settings.queue_config(task_type)
        expires_at = now + timedelta(minutes=queue_cfg.default_checkout_minutes)

        with transaction_scope(self._session_factory) as session:
            if specific_task_id:
                task = session.get(ModerationTask, specific_task_id, with_for_update=True)
                if task is None:
                    raise NotFoundError(
                        "The requested task could not be found.",
                        record_type="task", record_id=specific_task_id, task_id=specific_task_id,
                    )
                if task.task_type != task_type:
                    raise ValidationError(
                        f"Task {specific_task_id} does not belong to the '{task_type}' queue.",
                        field="task_type", task_id=specific_task_id, task_type=task_type,
                    )
                if task.status != CHECKED_OUT and not can_transition(task.status, CHECKED_OUT):
                    raise InvalidTransitionError(
                        "This task has already been completed.",
                        task_id=specific_task_id, from_status=task.status, to_status=CHECKED_OUT,
                    )
                if task.status == CHECKED_OUT and as_utc(task.expires_at) > now:
                    holder = task.checkout_user_display_name or "another admin"
                    raise TaskLeasedError(
                        f"This task is already checked out by {holder}.",
                        task_id=specific_task_id, holder_display_name=holder,
                    )
            else:
                task = session.scalars(
                    _queue_order(
                        select(ModerationTask).where(
                            ModerationTask.task_type == task_type,
                            ModerationTask.status == PENDING,
                        )
                    ).limit(1).with_for_update(skip_locked=True)
                ).first()
                if task is None:
                    task = session.scalars(
                        select(ModerationTask)
                        .where(
                            ModerationTask.task_type == task_type,
                            ModerationTask.status == CHECKED_OUT,
                            ModerationTask.expires_at < now,
                        )
                        .order_by(ModerationTask.expires_at.asc(), ModerationTask.id.asc())
                        .limit(1)
                        .with_for_update(skip_locked=True)
                    ).first()
                if task is None:
                    raise QueueEmptyError("No available tasks in this queue.", task_type=task_type)

            previous = task.checkout_details
            self._claim(session, task, worker_id, profile, now, expires_at)

            if previous is not None:
                self._activity.append(
                    session,
                    admin_user_id=previous["user_id"],
                    admin_display_name=previous["user_display_name"] or "Admin",
                    action=ActivityAction.AUTO_RELEASED,
                    task_type=task.task_type,
                    task_id=task.task_id,
                    timestamp=now,
                )
            self._activity.append(
                session,
                admin_user_id=worker_id,
                admin_display_name=profile.display_name,
                action=ActivityAction.CHECKOUT,
                task_type=task.task_type,
                task_id=task.task_id,
                timestamp=now,
            )
            return self._checkout_payload(session, task)

    def _claim(
        self,
        session: Session,
        task: ModerationTask,
        worker_id: str,
        profile: UserProfile,
        now: datetime,
        expires_at: datetime,
    ) -> None:
        """Compare-and-set the task into checkedOut; losing the race is a conflict."""
        stmt = update(ModerationTask).where(
            ModerationTask.id == task.id,
            ModerationTask.status == task.status,
        )
        if task.status == CHECKED_OUT:
            # Reclaiming an expired lease: it must still be the same, still-expired lease
            stmt = stmt.where(
                ModerationTask.checkout_user_id == task.checkout_user_id,
                ModerationTask.expires_at < now,
            )

        result = session.execute(
            stmt.values(
                status=CHECKED_OUT,
                checkout_user_id=worker_id,
                checkout_user_display_name=profile.display_name,
                checkout_user_photo_url=profile.photo_url,
                checked_out_at=now,
                expires_at=expires_at,
                work_later_until=None,
            ).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise TransactionConflictError(
                f"Task {task.id} was claimed by another worker", task_id=task.id, user_id=worker_id,
            )
        session.refresh(task)

    def _checkout_payload(self, session: Session, task: ModerationTask) -> Dict[str, Any]:
        data = task.to_dict()
        details = data["checkout_details"]
        data["checked_out_at"] = details["checked_out_at"]
        data["expires_at"] = details["expires_at"]
        data["item_data"] = self._load_item_data(session, task.original_path)
        return {"success": True, "task": data}

    @staticmethod
    def _load_item_data(session: Session, original_path: str) -> Optional[Dict[str, Any]]:
        """Read through ``original_path`` to the reported group."""
        collection, _, key = original_path.partition("/")
        if collection != REPORT_GROUPS_COLLECTION or not key:
            logger.warning(f"Unsupported original path: {original_path}")
            return None
        group = session.get(ReportGroup, key)
        return group.to_dict() if group is not None else None

    # ------------------------------------------------------------------
    # Check-in / release / work later
    # ------------------------------------------------------------------

    def check_in(
        self,
        task_id: str,
        worker_id: str,
        resolved: bool,
        resolution: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Finish working a leased task: completed when resolved, otherwise back
        to pending for someone else. Priority and created_at are untouched.

        Raises:
            NotFoundError: No such task.
            NotOwnedError: Caller does not hold the lease.
        """
        self._require_worker(worker_id)
        profile = resolve_profile(self._profile_lookup, worker_id)
        result = self._run(
            lambda: self._check_in_once(task_id, worker_id, profile, resolved, resolution),
            "check_in",
        )
        log(log_lease_event(
            result["action"], worker_id, result["task_type"], task_id,
            time_spent_minutes=result["time_spent_minutes"],
        ))
        return result

    def _check_in_once(
        self,
        task_id: str,
        worker_id: str,
        profile: UserProfile,
        resolved: bool,
        resolution: Optional[str],
    ) -> Dict[str, Any]:
        now = self._clock()
        with transaction_scope(self._session_factory) as session:
            task = self._load_owned(session, task_id, worker_id)
            checked_out_at = as_utc(task.checked_out_at) or now
            time_spent_minutes = math.floor((now - checked_out_at).total_seconds() / 60 + 0.5)

            new_status = COMPLETED if resolved else PENDING
            self._transition(session, task, worker_id, new_status, completed_at=now if resolved else None)

            action = ActivityAction.CHECKIN_RESOLVED if resolved else ActivityAction.CHECKIN_UNRESOLVED
            self._activity.append(
                session,
                admin_user_id=worker_id,
                admin_display_name=profile.display_name,
                action=action,
                task_type=task.task_type,
                task_id=task.task_id,
                resolution=resolution,
                time_spent_minutes=time_spent_minutes,
                timestamp=now,
            )
            return {
                "success": True,
                "task_id": task.id,
                "task_type": task.task_type,
                "status": new_status,
                "action": action.value,
                "time_spent_minutes": time_spent_minutes,
            }

    def release(self, task_id: str, worker_id: str) -> Dict[str, Any]:
        """Hand a leased task back to the pending pool without resolving it."""
        self._require_worker(worker_id)
        profile = resolve_profile(self._profile_lookup, worker_id)
        result = self._run(lambda: self._release_once(task_id, worker_id, profile), "release")
        log(log_lease_event(ActivityAction.RELEASE.value, worker_id, result["task_type"], task_id))
        return result

    def _release_once(self, task_id: str, worker_id: str, profile: UserProfile) -> Dict[str, Any]:
        now = self._clock()
        with transaction_scope(self._session_factory) as session:
            task = self._load_owned(session, task_id, worker_id)
            self._transition(session, task, worker_id, PENDING)
            self._activity.append(
                session,
                admin_user_id=worker_id,
                admin_display_name=profile.display_name,
                action=ActivityAction.RELEASE,
                task_type=task.task_type,
                task_id=task.task_id,
                timestamp=now,
            )
            return {"success": True, "task_id": task.id, "task_type": task.task_type, "status": PENDING}

    def mark_work_later(
        self,
        task_id: str,
        worker_id: str,
        minutes: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Keep a leased task for later: extends the lease to now + minutes
        (queue default when omitted, capped by max_work_later_minutes).
        The task stays checkedOut.
        """
        self._require_worker(worker_id)
        profile = resolve_profile(self._profile_lookup, worker_id)
        result = self._run(
            lambda: self._work_later_once(task_id, worker_id, profile, minutes), "mark_work_later",
        )
        log(log_lease_event(ActivityAction.MARK_WORK_LATER.value, worker_id, result["task_type"], task_id))
        return result

    def _work_later_once(
        self,
        task_id: str,
        worker_id: str,
        profile: UserProfile,
        minutes: Optional[int],
    ) -> Dict[str, Any]:
        now = self._clock()
        with transaction_scope(self._session_factory) as session:
            task = self._load_owned(session, task_id, worker_id)
            queue_cfg = self._settings.queue_config(task.task_type)
            minutes = queue_cfg.work_later_minutes if minutes is None else minutes
            if minutes <= 0 or minutes > queue_cfg.max_work_later_minutes:
                raise ValidationError(
                    f"Work-later must be between 1 and {queue_cfg.max_work_later_minutes} minutes.",
                    field="minutes", task_id=task_id, minutes=minutes,
                )
            until = now + timedelta(minutes=minutes)

            result = session.execute(
                update(ModerationTask)
                .where(
                    ModerationTask.id == task.id,
                    ModerationTask.status == CHECKED_OUT,
                    ModerationTask.checkout_user_id == worker_id,
                )
                .values(work_later_until=until, expires_at=until)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise TransactionConflictError(f"Task {task.id} changed concurrently", task_id=task.id)

            self._activity.append(
                session,
                admin_user_id=worker_id,
                admin_display_name=profile.display_name,
                action=ActivityAction.MARK_WORK_LATER,
                task_type=task.task_type,
                task_id=task.task_id,
                extend_minutes=minutes,
                timestamp=now,
            )
            return {
                "success": True,
                "task_id": task.id,
                "task_type": task.task_type,
                "work_later_until": until.isoformat(),
            }

    def _load_owned(self, session: Session, task_id: str, worker_id: str) -> ModerationTask:
        task = session.get(ModerationTask, task_id, with_for_update=True)
        if task is None:
            raise NotFoundError(
                "The task could not be found. It may have been deleted.",
                record_type="task", record_id=task_id, task_id=task_id,
            )
        if task.status != CHECKED_OUT or task.checkout_user_id != worker_id:
            raise NotOwnedError(
                "You do not have this task checked out.",
                task_id=task_id, user_id=worker_id, holder_id=task.checkout_user_id,
            )
        return task

    @staticmethod
    def _transition(
        session: Session,
        task: ModerationTask,
        worker_id: str,
        new_status: str,
        **extra: Any,
    ) -> None:
        """Move a task out of checkedOut, dropping the lease (CAS on the holder)."""
        result = session.execute(
            update(ModerationTask)
            .where(
                ModerationTask.id == task.id,
                ModerationTask.status == CHECKED_OUT,
                ModerationTask.checkout_user_id == worker_id,
            )
            .values(
                status=new_status,
                **CLEARED_CHECKOUT,
                **extra,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise TransactionConflictError(f"Task {task.id} changed concurrently", task_id=task.id)

    # ------------------------------------------------------------------
    # Lease expiry sweep
    # ------------------------------------------------------------------

    def release_expired_leases(self, limit: Optional[int] = None) -> int:
        """
        Return every checkedOut task whose lease has expired to pending.

        Each batch is its own transaction; each task is released with a
        compare-and-set on (holder, expires_at), so a check-in or work-later
        that lands first wins and the task is skipped.

        Returns:
            Number of tasks released.
        """
        batch_size = self._settings.sweep.batch_size
        released = 0
        while limit is None or released < limit:
            size = batch_size if limit is None else min(batch_size, limit - released)
            count, seen = self._run(lambda: self._release_expired_batch(size), "release_expired_leases")
            released += count
            if seen < size:
                break
        if released:
            logger.info(f"Released {released} expired lease(s)")
        return released

    def _release_expired_batch(self, size: int):
        now = self._clock()
        released = 0
        with transaction_scope(self._session_factory) as session:
            tasks = session.scalars(
                select(ModerationTask)
                .where(ModerationTask.status == CHECKED_OUT, ModerationTask.expires_at < now)
                .order_by(ModerationTask.expires_at.asc(), ModerationTask.id.asc())
                .limit(size)
                .with_for_update(skip_locked=True)
            ).all()

            for task in tasks:
                previous = task.checkout_details
                result = session.execute(
                    update(ModerationTask)
                    .where(
                        ModerationTask.id == task.id,
                        ModerationTask.status == CHECKED_OUT,
                        ModerationTask.checkout_user_id == previous["user_id"],
                        ModerationTask.expires_at < now,
                    )
                    .values(status=PENDING, **CLEARED_CHECKOUT)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                self._activity.append(
                    session,
                    admin_user_id=previous["user_id"],
                    admin_display_name=previous["user_display_name"] or "Admin",
                    action=ActivityAction.AUTO_RELEASED_SCHEDULED,
                    task_type=task.task_type,
                    task_id=task.task_id,
                    timestamp=now,
                )
                released += 1
            return released, len(tasks)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Dict[str, Any]:
        with transaction_scope(self._session_factory) as session:
            task = session.get(ModerationTask, task_id)
            if task is None:
                raise NotFoundError("Task not found.", record_type="task", record_id=task_id, task_id=task_id)
            return task.to_dict()

    def list_pending(self, task_type: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Pending tasks in queue order (priority, then age), any task type."""
        stmt = select(ModerationTask).where(ModerationTask.status == PENDING)
        if task_type:
            stmt = stmt.where(ModerationTask.task_type == task_type)
        with transaction_scope(self._session_factory) as session:
            return [t.to_dict() for t in session.scalars(_queue_order(stmt).limit(limit))]

    def list_checked_out(self, worker_id: Optional[str] = None) -> List[Dict[str, Any]]:
        stmt = select(ModerationTask).where(ModerationTask.status == CHECKED_OUT)
        if worker_id:
            stmt = stmt.where(ModerationTask.checkout_user_id == worker_id)
        stmt = stmt.order_by(ModerationTask.expires_at.asc(), ModerationTask.id.asc())
        with transaction_scope(self._session_factory) as session:
            return [t.to_dict() for t in session.scalars(stmt)]

    def queue_stats(self) -> Dict[str, Dict[str, int]]:
        """Task counts per task type and status."""
        stmt = (
            select(ModerationTask.task_type, ModerationTask.status, func.count())
            .group_by(ModerationTask.task_type, ModerationTask.status)
        )
        stats: Dict[str, Dict[str, int]] = {}
        with transaction_scope(self._session_factory) as session:
            for task_type, status, count in session.execute(stmt):
                stats.setdefault(task_type, {s.value: 0 for s in TaskStatus})[status] = count
        return stats

    # ------------------------------------------------------------------

    def _run(self, operation: Callable[[], Any], name: str) -> Any:
        leasing = self._settings.leasing
        return run_with_retry(
            operation,
            attempts=leasing.max_attempts,
            base_delay=leasing.base_backoff_ms / 1000.0,
            max_delay=leasing.max_backoff_ms / 1000.0,
            sleep=self._sleep,
            name=name,
        )

    @staticmethod
    def _require_worker(worker_id: str) -> None:
        if not worker_id:
            raise ValidationError("A worker id is required.", field="worker_id")
