"""Unit tests for modqueue.process.scheduler — schedules, Celery Beat config, maintenance jobs."""

from datetime import date, datetime, timedelta, timezone

import pytest
from celery.schedules import crontab

from modqueue.db.models import ModerationTask
from modqueue.db.session import transaction_scope
from modqueue.engine.config import LoggingConfig, QueueSettings, SweepConfig
from modqueue.process import scheduler as sched_mod
from modqueue.process.scheduler import (
    JOB_CLEANUP_LOGS,
    JOB_REAGGREGATE,
    JOB_RECALCULATE,
    JOB_RELEASE_EXPIRED,
    ScheduleTriggerRegistry,
    check_broker,
    cleanup_logs_job,
    configure_celery_beat,
    reaggregate_reports_job,
    recalculate_priorities_job,
    register_default_schedules,
    release_expired_leases_job,
)


@pytest.fixture(autouse=True)
def _reset_celery():
    sched_mod.reset_celery_app()
    yield
    sched_mod.reset_celery_app()


class TestScheduleTriggerRegistry:
    def setup_method(self):
        self.reg = ScheduleTriggerRegistry()

    def test_register_schedule(self):
        self.reg.register(JOB_CLEANUP_LOGS, "0 2 * * *")
        schedules = self.reg.get_schedules()
        assert len(schedules) == 1
        assert schedules[0]["job"] == JOB_CLEANUP_LOGS
        assert schedules[0]["cron"] == "0 2 * * *"
        assert schedules[0]["timezone"] == "UTC"
        assert schedules[0]["enabled"] is True

    def test_register_with_timezone(self):
        self.reg.register("job", "0 0 * * *", timezone_str="US/Eastern")
        assert self.reg.get_schedules()[0]["timezone"] == "US/Eastern"

    def test_enabled_filter(self):
        self.reg.register("job_a", "0 * * * *")
        self.reg.register("job_b", "0 * * * *", enabled=False)
        assert [s["job"] for s in self.reg.get_enabled_schedules()] == ["job_a"]

    def test_unregister(self):
        self.reg.register("job_a", "0 * * * *")
        self.reg.register("job_b", "0 * * * *")
        self.reg.unregister("job_a")
        assert [s["job"] for s in self.reg.get_schedules()] == ["job_b"]

    def test_clear_and_count(self):
        self.reg.register("job_a", "0 * * * *")
        self.reg.register("job_b", "0 * * * *")
        assert self.reg.count == 2
        self.reg.clear()
        assert self.reg.count == 0


class TestDefaultSchedules:
    def test_sweep_reaggregate_and_cleanup_registered(self):
        registry = register_default_schedules(QueueSettings())
        by_job = {s["job"]: s for s in registry.get_schedules()}
        assert set(by_job) == {JOB_RELEASE_EXPIRED, JOB_REAGGREGATE, JOB_CLEANUP_LOGS}
        assert by_job[JOB_RELEASE_EXPIRED]["cron"] == "*/5 * * * *"
        assert by_job[JOB_REAGGREGATE]["cron"] == "*/5 * * * *"
        assert by_job[JOB_CLEANUP_LOGS]["cron"] == "0 2 * * *"

    def test_recalculation_not_scheduled(self):
        registry = register_default_schedules(QueueSettings())
        assert JOB_RECALCULATE not in {s["job"] for s in registry.get_schedules()}

    def test_disabled_sweep(self):
        settings = QueueSettings(sweep=SweepConfig(enabled=False))
        registry = register_default_schedules(settings)
        assert [s["job"] for s in registry.get_enabled_schedules()] == [JOB_CLEANUP_LOGS]


class TestCeleryBeat:
    def test_beat_entries(self):
        beat = configure_celery_beat(register_default_schedules(QueueSettings()), queue="mq")
        assert set(beat) == {
            "job-modqueue-release_expired_leases",
            "job-modqueue-reaggregate_reports",
            "job-modqueue-cleanup_logs",
        }

        entry = beat["job-modqueue-release_expired_leases"]
        assert entry["task"] == JOB_RELEASE_EXPIRED
        assert entry["options"] == {"queue": "mq"}
        assert isinstance(entry["schedule"], crontab)

    def test_invalid_cron_skipped(self):
        reg = ScheduleTriggerRegistry()
        reg.register("bad", "every five minutes")
        reg.register("good", "0 * * * *")
        beat = configure_celery_beat(reg)
        assert list(beat) == ["job-good"]

    def test_init_scheduler_applies_schedule(self):
        app = sched_mod.init_scheduler(QueueSettings())
        assert set(app.conf.beat_schedule) == {
            "job-modqueue-release_expired_leases",
            "job-modqueue-reaggregate_reports",
            "job-modqueue-cleanup_logs",
        }
        assert app.conf.task_default_queue == "moderation_jobs"

    def test_job_tasks_registered_by_name(self):
        sched_mod.get_celery_app(QueueSettings())
        tasks = sched_mod.get_job_tasks()
        assert set(tasks) == {JOB_RELEASE_EXPIRED, JOB_RECALCULATE, JOB_REAGGREGATE, JOB_CLEANUP_LOGS}
        assert tasks[JOB_RELEASE_EXPIRED].name == JOB_RELEASE_EXPIRED


class TestCheckBroker:
    def test_non_redis_broker(self):
        assert check_broker("amqp://guest@localhost//") is False

    def test_ping_failure(self, monkeypatch):
        import redis

        class DeadClient:
            def ping(self):
                raise redis.ConnectionError("refused")

        monkeypatch.setattr(redis, "from_url", lambda url, socket_timeout: DeadClient())
        assert check_broker("redis://localhost:6379/0") is False

    def test_ping_success(self, monkeypatch):
        import redis

        class LiveClient:
            def ping(self):
                return True

        monkeypatch.setattr(redis, "from_url", lambda url, socket_timeout: LiveClient())
        assert check_broker("redis://localhost:6379/0") is True


class TestJobs:
    def test_release_expired_leases_job(self, settings, session_factory, add_task):
        add_task("post_1")
        with transaction_scope(session_factory) as session:
            task = session.get(ModerationTask, "userReport-post_1")
            task.status = "checkedOut"
            task.checkout_user_id = "admin-1"
            task.checkout_user_display_name = "Ada"
            task.checked_out_at = task.created_at
            task.expires_at = task.created_at + timedelta(minutes=60)

        result = release_expired_leases_job(settings, session_factory)
        assert result == {"released": 1}
        with transaction_scope(session_factory) as session:
            task = session.get(ModerationTask, "userReport-post_1")
            assert task.status == "pending"
            assert task.checkout_details is None

    def test_recalculate_priorities_job(self, settings, session_factory, add_task):
        add_task("post_1", priority=0, total_reports=2, highest_reason_score=10)
        assert recalculate_priorities_job(settings, session_factory) == {"updated": 1, "errors": 0}
        with transaction_scope(session_factory) as session:
            assert session.get(ModerationTask, "userReport-post_1").priority == pytest.approx(14.0)

    def test_reaggregate_reports_job(self, settings, session_factory):
        from modqueue.db.models import ContentReport

        with transaction_scope(session_factory) as session:
            session.add(ContentReport(
                id="r1",
                reporter_user_id="reporter-1",
                reported_item_type="post",
                reported_item_id="p1",
                reason="spam",
                status="aggregation_failed",
                group_key="post_p1",
                created_at=datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc),
            ))

        assert reaggregate_reports_job(settings, session_factory) == {"regrouped": 1, "failed": 0}
        with transaction_scope(session_factory) as session:
            assert session.get(ContentReport, "r1").status == "pending_review"
            assert session.get(ModerationTask, "userReport-post_p1") is not None

    def test_failing_job_reraises(self, settings, session_factory, monkeypatch):
        from modqueue.moderation.recalculator import PriorityRecalculator

        def broken(self, scoring=None):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(PriorityRecalculator, "recalculate_all", broken)
        with pytest.raises(RuntimeError, match="store unavailable"):
            recalculate_priorities_job(settings, session_factory)

    def test_cleanup_logs_job(self, tmp_path):
        log_dir = tmp_path / "logs"
        stale = log_dir / "jobs" / "execution" / "2025-01-01.jsonl"
        stale.parent.mkdir(parents=True)
        stale.write_text("{}\n")

        settings = QueueSettings(logging=LoggingConfig(directory=str(log_dir)))
        result = cleanup_logs_job(settings, today=date(2026, 3, 10))
        assert result == {"deleted": 1, "compressed": 0}
        assert not stale.exists()
