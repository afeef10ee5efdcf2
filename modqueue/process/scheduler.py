"""
modqueue Scheduler — maintenance jobs and Celery Beat integration.

Jobs:
    modqueue.release_expired_leases  — return expired leases to the pending pool
    modqueue.recalculate_priorities  — rescore pending tasks after a scoring change
    modqueue.reaggregate_reports     — retry grouping for reports whose aggregation failed
    modqueue.cleanup_logs            — log retention (delete / gzip old JSONL files)

The job functions are plain callables (used by the CLI and tests); the
Celery tasks that wrap them are bound lazily to the app from get_celery_app().
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from celery import Celery

from modqueue.engine.config import QueueSettings, get_settings
from modqueue.engine.logging import LogRetentionManager, log, log_job_run, log_system_event

logger = logging.getLogger("modqueue.process.scheduler")

JOB_RELEASE_EXPIRED = "modqueue.release_expired_leases"
JOB_RECALCULATE = "modqueue.recalculate_priorities"
JOB_REAGGREGATE = "modqueue.reaggregate_reports"
JOB_CLEANUP_LOGS = "modqueue.cleanup_logs"


# ---------------------------------------------------------------------------
# Celery app (configured at startup from settings)
# ---------------------------------------------------------------------------

_celery_app: Optional[Celery] = None


def get_celery_app(settings: Optional[QueueSettings] = None) -> Celery:
    """Get or create the Celery app singleton."""
    global _celery_app
    if _celery_app is None:
        _celery_app = _create_celery_app(settings or get_settings())
    return _celery_app


def _create_celery_app(settings: QueueSettings) -> Celery:
    app = Celery("modqueue", broker=settings.celery.broker, backend=settings.celery.result_backend)
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_default_queue=settings.celery.queue,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
    )
    return app


def check_broker(broker_url: str, timeout: int = 5) -> bool:
    """Ping the Redis broker the job workers consume from."""
    if not broker_url.startswith(("redis://", "rediss://")):
        logger.debug(f"Broker health check skipped for non-Redis broker: {broker_url}")
        return False
    try:
        import redis
        client = redis.from_url(broker_url, socket_timeout=timeout)
        return bool(client.ping())
    except Exception as e:
        logger.debug(f"Broker health check failed: {e}")
        return False


def reset_celery_app() -> None:
    """Drop the app singleton and its bound tasks (tests, reconfiguration)."""
    global _celery_app, _job_tasks
    _celery_app = None
    _job_tasks = None


# ---------------------------------------------------------------------------
# Schedule trigger registry (Celery Beat)
# ---------------------------------------------------------------------------

class ScheduleTriggerRegistry:
    """
    Maps cron expressions → job names for Celery Beat scheduling.

    Populated from settings by register_default_schedules().
    """

    def __init__(self) -> None:
        self._schedules: List[Dict[str, Any]] = []

    def register(
        self,
        job_name: str,
        cron_expression: str,
        timezone_str: str = "UTC",
        enabled: bool = True,
    ) -> None:
        """Register a cron-based job trigger."""
        self._schedules.append({
            "job": job_name,
            "cron": cron_expression,
            "timezone": timezone_str,
            "enabled": enabled,
        })
        logger.debug(f"Registered schedule trigger: {cron_expression} ({timezone_str}) → {job_name}")

    def unregister(self, job_name: str) -> None:
        self._schedules = [s for s in self._schedules if s["job"] != job_name]

    def get_schedules(self) -> List[Dict[str, Any]]:
        return list(self._schedules)

    def get_enabled_schedules(self) -> List[Dict[str, Any]]:
        return [s for s in self._schedules if s.get("enabled", True)]

    def clear(self) -> None:
        self._schedules.clear()

    @property
    def count(self) -> int:
        return len(self._schedules)


def register_default_schedules(
    settings: QueueSettings,
    registry: Optional[ScheduleTriggerRegistry] = None,
) -> ScheduleTriggerRegistry:
    """Lease sweep, report re-aggregation and log cleanup on their configured crons.

    Re-aggregation shares the sweep cron. Recalculation runs on demand.
    """
    registry = registry or ScheduleTriggerRegistry()
    registry.register(JOB_RELEASE_EXPIRED, settings.sweep.cron, enabled=settings.sweep.enabled)
    registry.register(JOB_REAGGREGATE, settings.sweep.cron, enabled=settings.sweep.enabled)
    registry.register(JOB_CLEANUP_LOGS, settings.logging.cleanup_schedule)
    return registry


def configure_celery_beat(registry: ScheduleTriggerRegistry, queue: str = "moderation_jobs") -> Dict[str, Any]:
    """
    Generate Celery Beat schedule config from registered schedule triggers.

    Returns:
        Dict suitable for celery_app.conf.beat_schedule.
    """
    from celery.schedules import crontab

    beat_schedule: Dict[str, Any] = {}
    for sched in registry.get_enabled_schedules():
        job_name = sched["job"]
        cron_expr = sched["cron"]

        # "minute hour day_of_month month_of_year day_of_week"
        parts = cron_expr.strip().split()
        if len(parts) != 5:
            logger.warning(f"Invalid cron expression for {job_name}: {cron_expr}")
            continue

        beat_schedule[f"job-{job_name.replace('.', '-')}"] = {
            "task": job_name,
            "schedule": crontab(
                minute=parts[0],
                hour=parts[1],
                day_of_month=parts[2],
                month_of_year=parts[3],
                day_of_week=parts[4],
            ),
            "options": {"queue": queue},
        }
        logger.debug(f"Celery Beat schedule: {job_name} = {cron_expr} ({sched.get('timezone', 'UTC')})")

    return beat_schedule


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

def _session_factory_for(settings: QueueSettings):
    from modqueue.db.session import get_session_factory, init_from_settings

    try:
        return get_session_factory()
    except RuntimeError:
        return init_from_settings(settings)


def _run_job(job_name: str, fn: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    """Run a job body, recording duration and outcome to the jobs log."""
    start = time.monotonic()
    try:
        result = fn()
    except Exception as e:
        duration_ms = (time.monotonic() - start) * 1000
        log(log_job_run(job_name, duration_ms, success=False, error=str(e)))
        logger.error(f"Job {job_name} failed after {duration_ms:.0f}ms: {e}")
        raise

    duration_ms = (time.monotonic() - start) * 1000
    log(log_job_run(job_name, duration_ms, success=True, result=result))
    logger.info(f"Job {job_name} completed in {duration_ms:.0f}ms: {result}")
    return result


def release_expired_leases_job(
    settings: Optional[QueueSettings] = None,
    session_factory=None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    from modqueue.moderation.leasing import TaskQueue

    settings = settings or get_settings()
    queue = TaskQueue(session_factory or _session_factory_for(settings), settings)
    return _run_job(JOB_RELEASE_EXPIRED, lambda: {"released": queue.release_expired_leases(limit=limit)})


def recalculate_priorities_job(
    settings: Optional[QueueSettings] = None,
    session_factory=None,
) -> Dict[str, Any]:
    from modqueue.moderation.recalculator import PriorityRecalculator

    settings = settings or get_settings()
    recalculator = PriorityRecalculator(
        session_factory or _session_factory_for(settings),
        settings.scoring,
        batch_size=settings.recalculation.batch_size,
    )
    return _run_job(JOB_RECALCULATE, recalculator.recalculate_all)


def reaggregate_reports_job(
    settings: Optional[QueueSettings] = None,
    session_factory=None,
    limit: int = 100,
) -> Dict[str, Any]:
    from modqueue.moderation.pipeline import ModerationPipeline

    settings = settings or get_settings()
    pipeline = ModerationPipeline(session_factory or _session_factory_for(settings), settings)
    return _run_job(JOB_REAGGREGATE, lambda: pipeline.reaggregate_failed_reports(limit=limit))


def cleanup_logs_job(settings: Optional[QueueSettings] = None, today=None) -> Dict[str, Any]:
    settings = settings or get_settings()
    cfg = settings.logging
    manager = LogRetentionManager(
        log_dir=cfg.directory,
        retention_days={
            "execution": cfg.retention.execution_days,
            "performance": cfg.retention.performance_days,
            "security": cfg.retention.security_days,
        },
        compress_after_days=cfg.rotation.compress_after_days,
    )
    return _run_job(JOB_CLEANUP_LOGS, lambda: manager.cleanup(today=today))


# ---------------------------------------------------------------------------
# Celery tasks (lazy-bound to the app)
# ---------------------------------------------------------------------------

_job_tasks: Optional[Dict[str, Any]] = None


def get_job_tasks() -> Dict[str, Any]:
    """Get or create the Celery tasks wrapping each job, keyed by job name."""
    global _job_tasks
    if _job_tasks is None:
        celery_app = get_celery_app()

        @celery_app.task(name=JOB_RELEASE_EXPIRED)
        def release_expired_leases_task() -> Dict[str, Any]:
            try:
                return release_expired_leases_job()
            except Exception as e:
                return {"error": str(e)}

        @celery_app.task(name=JOB_RECALCULATE)
        def recalculate_priorities_task() -> Dict[str, Any]:
            try:
                return recalculate_priorities_job()
            except Exception as e:
                return {"error": str(e)}

        @celery_app.task(name=JOB_REAGGREGATE)
        def reaggregate_reports_task() -> Dict[str, Any]:
            try:
                return reaggregate_reports_job()
            except Exception as e:
                return {"error": str(e)}

        @celery_app.task(name=JOB_CLEANUP_LOGS)
        def cleanup_logs_task() -> Dict[str, Any]:
            try:
                return cleanup_logs_job()
            except Exception as e:
                return {"error": str(e)}

        _job_tasks = {
            JOB_RELEASE_EXPIRED: release_expired_leases_task,
            JOB_RECALCULATE: recalculate_priorities_task,
            JOB_REAGGREGATE: reaggregate_reports_task,
            JOB_CLEANUP_LOGS: cleanup_logs_task,
        }
    return _job_tasks


def init_scheduler(settings: Optional[QueueSettings] = None) -> Celery:
    """Create the Celery app, bind the job tasks, and apply the Beat schedule."""
    settings = settings or get_settings()
    app = get_celery_app(settings)
    get_job_tasks()

    beat_schedule = configure_celery_beat(register_default_schedules(settings), queue=settings.celery.queue)
    app.conf.beat_schedule = beat_schedule
    logger.info(f"Applied {len(beat_schedule)} Celery Beat schedules")
    log(log_system_event("scheduler_initialized", details={"schedules": sorted(beat_schedule)}))
    return app
