"""
modqueue Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v

Every store-backed test gets its own SQLite file under tmp_path; nothing
touches a real Postgres or Redis.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from modqueue.engine.config import LeasingConfig, QueueSettings


# ---------------------------------------------------------------------------
# Global state isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_globals():
    """Reset module-level singletons between tests."""
    import modqueue.engine.config as cfg_mod
    from modqueue.engine.logging import shutdown_logging

    cfg_mod._settings = None
    yield
    cfg_mod._settings = None
    shutdown_logging()


# ---------------------------------------------------------------------------
# Clock / sleep
# ---------------------------------------------------------------------------

class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def sleeps():
    """A sleep stand-in that records requested delays instead of sleeping."""
    calls = []
    return calls


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append


# ---------------------------------------------------------------------------
# Settings / store
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    return QueueSettings(
        admin_user_ids=["admin-1", "admin-2", "admin-3", "admin-4"],
        leasing=LeasingConfig(max_attempts=25, base_backoff_ms=1, max_backoff_ms=20),
    )


@pytest.fixture
def session_factory(tmp_path):
    from modqueue.db.session import close_all_sessions, init_queue_db

    factory = init_queue_db(f"sqlite:///{tmp_path / 'queue.db'}", create_tables=True)
    yield factory
    close_all_sessions()


@pytest.fixture
def add_group(session_factory):
    """Insert a report group row directly."""
    from modqueue.db.models import ReportGroup
    from modqueue.db.session import transaction_scope

    def _add(
        group_key: str,
        *,
        item_type: str = "post",
        total_reports: int = 1,
        highest_reason_score: float = 10,
        reported_username: Optional[str] = None,
    ) -> str:
        with transaction_scope(session_factory) as session:
            session.add(ReportGroup(
                group_key=group_key,
                reported_item_id=group_key.split("_", 1)[-1],
                reported_item_type=item_type,
                reported_username=reported_username,
                total_reports=total_reports,
                highest_reason_score=highest_reason_score,
                last_report_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
                status="pending",
            ))
        return group_key

    return _add


@pytest.fixture
def add_task(session_factory, add_group):
    """Insert a pending task (and, by default, its source group) directly."""
    from modqueue.db.models import ModerationTask
    from modqueue.db.session import transaction_scope

    def _add(
        group_key: str,
        *,
        priority: float = 10,
        created_at: Optional[datetime] = None,
        task_type: str = "userReport",
        with_group: bool = True,
        **group_fields,
    ) -> str:
        if with_group:
            add_group(group_key, **group_fields)
        created_at = created_at or datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
        task_id = f"{task_type}-{group_key}"
        with transaction_scope(session_factory) as session:
            session.add(ModerationTask(
                id=task_id,
                task_type=task_type,
                task_id=group_key,
                original_path=f"report_groups/{group_key}",
                status="pending",
                priority=priority,
                summary="1 report for post",
                created_at=created_at,
                last_updated_at=created_at,
            ))
        return task_id

    return _add


@pytest.fixture
def task_queue(session_factory, settings, clock, fake_sleep):
    from modqueue.moderation.leasing import TaskQueue

    return TaskQueue(session_factory, settings, clock=clock, sleep=fake_sleep)


@pytest.fixture
def profiles():
    """Profile lookup backed by a dict; unknown users resolve to None."""
    return {
        "admin-1": {"displayName": "Ada", "profilePictureUrlFull": "https://img/ada.png"},
        "admin-2": {"display_name": "Grace"},
    }


@pytest.fixture
def config_file(tmp_path):
    """Write a modqueue.yaml under tmp_path pointing at a SQLite store."""
    def _write(extra: str = "") -> str:
        path = tmp_path / "modqueue.yaml"
        path.write_text(
            "platform:\n"
            "  name: TestQueue\n"
            "  version: '2.0.0'\n"
            "  environment: dev\n"
            "database:\n"
            f"  url: sqlite:///{tmp_path / 'cli.db'}\n"
            "logging:\n"
            f"  directory: {tmp_path / 'logs'}\n"
            "admin_user_ids: [admin-1]\n"
            + extra,
            encoding="utf-8",
        )
        return str(path)

    return _write
