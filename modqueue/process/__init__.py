"""modqueue Process — event triggers, maintenance jobs and Celery Beat."""

from modqueue.process.scheduler import (  # noqa: F401
    ScheduleTriggerRegistry,
    cleanup_logs_job,
    configure_celery_beat,
    get_celery_app,
    init_scheduler,
    recalculate_priorities_job,
    register_default_schedules,
    release_expired_leases_job,
)
from modqueue.process.triggers import (  # noqa: F401
    REPORT_CREATED,
    REPORT_GROUP_WRITTEN,
    EventTriggerRegistry,
)

__all__ = [
    "EventTriggerRegistry",
    "REPORT_CREATED",
    "REPORT_GROUP_WRITTEN",
    "ScheduleTriggerRegistry",
    "cleanup_logs_job",
    "configure_celery_beat",
    "get_celery_app",
    "init_scheduler",
    "recalculate_priorities_job",
    "register_default_schedules",
    "release_expired_leases_job",
]
