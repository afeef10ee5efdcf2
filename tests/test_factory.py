"""Tests for modqueue.moderation.factory — task materialisation."""

import pytest

from modqueue.db.models import ModerationTask
from modqueue.db.session import transaction_scope
from modqueue.engine.errors import ConfigError
from modqueue.moderation.factory import TaskFactory, build_summary, task_doc_id


def group_data(key="profile_u1", **overrides):
    data = {
        "group_key": key,
        "reported_item_type": "profile",
        "reported_item_id": "u1",
        "reported_username": None,
        "total_reports": 3,
        "highest_reason_score": 10,
    }
    data.update(overrides)
    return data


@pytest.fixture
def factory(session_factory, settings, clock, fake_sleep):
    return TaskFactory(session_factory, settings, clock=clock, sleep=fake_sleep)


def load_task(session_factory, task_id):
    with transaction_scope(session_factory) as session:
        return session.get(ModerationTask, task_id)


class TestHelpers:
    def test_task_doc_id(self):
        assert task_doc_id("userReport", "post_1") == "userReport-post_1"

    @pytest.mark.parametrize("total,username,item_type,expected", [
        (1, None, "post", "1 report for post"),
        (2, None, "comment", "2 reports for comment"),
        (3, "alice", "profile", "3 reports for user alice"),
        (1, "bob", "post", "1 report for user bob"),
    ])
    def test_build_summary(self, total, username, item_type, expected):
        assert build_summary(total, username, item_type) == expected


class TestTaskFactory:
    def test_unknown_task_type_fails_at_construction(self, session_factory, settings):
        with pytest.raises(ConfigError):
            TaskFactory(session_factory, settings, task_type="appeal")

    def test_defaults_to_report_task_type(self, factory):
        assert factory.task_type == "userReport"

    def test_compute_priority_from_stored_score(self, factory):
        assert factory.compute_priority(group_data()) == 19

    def test_materialize_creates_pending_task(self, factory, session_factory, clock):
        task = factory.materialize(group_data(reported_username="alice"))
        assert task.id == "userReport-profile_u1"

        stored = load_task(session_factory, "userReport-profile_u1")
        assert stored.status == "pending"
        assert stored.checkout_details is None
        assert stored.priority == 19
        assert stored.summary == "3 reports for user alice"
        assert stored.task_type == "userReport"
        assert stored.task_id == "profile_u1"
        assert stored.original_path == "report_groups/profile_u1"
        d = stored.to_dict()
        assert d["created_at"] == clock().isoformat()
        assert d["last_updated_at"] == clock().isoformat()

    def test_materialize_is_idempotent_on_id(self, factory, session_factory):
        factory.materialize(group_data(total_reports=1))
        factory.materialize(group_data(total_reports=4))
        with transaction_scope(session_factory) as session:
            assert session.query(ModerationTask).count() == 1
        assert load_task(session_factory, "userReport-profile_u1").priority == 21

    def test_refresh_keeps_created_at_and_lease(self, factory, task_queue, session_factory, clock):
        factory.materialize(group_data(total_reports=1))
        created = load_task(session_factory, "userReport-profile_u1").to_dict()["created_at"]
        task_queue.checkout_next("admin-1")

        later = clock.advance(minutes=3)
        factory.materialize(group_data(total_reports=2))

        stored = load_task(session_factory, "userReport-profile_u1")
        assert stored.to_dict()["created_at"] == created
        assert stored.to_dict()["last_updated_at"] == later.isoformat()
        assert stored.status == "checkedOut"
        assert stored.checkout_user_id == "admin-1"
        assert stored.summary == "2 reports for profile"

    def test_materialize_from_group_row(self, factory, add_group, session_factory):
        from modqueue.db.models import ReportGroup

        add_group("post_9", item_type="post", total_reports=2, highest_reason_score=50)
        with transaction_scope(session_factory) as session:
            group = session.get(ReportGroup, "post_9")
        task = factory.materialize(group)
        assert task.priority == pytest.approx(62.0)

    def test_missing_group_is_noop(self, factory, session_factory):
        assert factory.materialize(None) is None
        assert factory.materialize({}) is None
        with transaction_scope(session_factory) as session:
            assert session.query(ModerationTask).count() == 0

    def test_missing_score_uses_default_reason_score(self, factory):
        task = factory.materialize(group_data(highest_reason_score=None, total_reports=1, reported_item_type="post"))
        assert task.priority == pytest.approx(1.2)
