"""Tests for modqueue.moderation.aggregator — folding reports into groups."""

import threading

import pytest

from modqueue.db.models import ReportGroup
from modqueue.db.session import transaction_scope
from modqueue.engine.collaborators import group_by_item, group_by_user
from modqueue.engine.config import LeasingConfig, ScoringConfig
from modqueue.moderation.aggregator import ReportAggregator


def report(item_id="p1", reason="spam", item_type="post", **extra):
    data = {
        "reporter_user_id": "reporter-1",
        "reported_item_type": item_type,
        "reported_item_id": item_id,
        "reason": reason,
    }
    data.update(extra)
    return data


@pytest.fixture
def aggregator(session_factory, clock, fake_sleep):
    return ReportAggregator(
        session_factory, ScoringConfig(), group_by_item,
        retry=LeasingConfig(max_attempts=25, base_backoff_ms=1, max_backoff_ms=20),
        clock=clock, sleep=fake_sleep,
    )


def load_group(session_factory, key):
    with transaction_scope(session_factory) as session:
        return session.get(ReportGroup, key)


class TestAggregate:
    def test_first_report_creates_group(self, aggregator, session_factory, clock):
        group = aggregator.aggregate(report(reason="violence", reported_user_id="u9"), "r1")
        assert group.group_key == "post_p1"
        assert group.total_reports == 1
        assert group.highest_reason_score == 50
        assert group.reported_user_id == "u9"
        assert group.status == "pending"

        stored = load_group(session_factory, "post_p1")
        assert stored.total_reports == 1
        assert stored.to_dict()["last_report_at"] == clock().isoformat()

    def test_later_reports_increment_and_max_merge(self, aggregator, session_factory):
        aggregator.aggregate(report(reason="violence"), "r1")
        aggregator.aggregate(report(reason="spam"), "r2")
        group = aggregator.aggregate(report(reason="harassment"), "r3")

        assert group.total_reports == 3
        assert group.highest_reason_score == 50

    def test_higher_reason_raises_score(self, aggregator):
        aggregator.aggregate(report(reason="spam"), "r1")
        group = aggregator.aggregate(report(reason="child_safety"), "r2")
        assert group.highest_reason_score == 100

    def test_unknown_reason_scores_default(self, aggregator):
        group = aggregator.aggregate(report(reason="weird"), "r1")
        assert group.highest_reason_score == 1

    def test_identity_backfilled_not_overwritten(self, aggregator, session_factory):
        aggregator.aggregate(report(), "r1")
        aggregator.aggregate(report(reported_user_id="u1", reported_username="alice"), "r2")
        group = aggregator.aggregate(report(reported_user_id="u2", reported_username="mallory"), "r3")

        assert group.reported_user_id == "u1"
        assert group.reported_username == "alice"

    def test_last_report_at_moves_forward(self, aggregator, clock):
        aggregator.aggregate(report(), "r1")
        later = clock.advance(minutes=5)
        group = aggregator.aggregate(report(), "r2")
        assert group.to_dict()["last_report_at"] == later.isoformat()

    def test_missing_report_is_dropped(self, aggregator):
        assert aggregator.aggregate(None) is None
        assert aggregator.aggregate({}) is None

    def test_empty_group_key_is_dropped(self, aggregator, session_factory):
        assert aggregator.aggregate({"reason": "spam"}, "r1") is None
        with transaction_scope(session_factory) as session:
            assert session.query(ReportGroup).count() == 0

    def test_grouping_strategy_by_user(self, session_factory, clock, fake_sleep):
        agg = ReportAggregator(session_factory, ScoringConfig(), group_by_user, clock=clock, sleep=fake_sleep)
        agg.aggregate(report(item_id="p1", reported_user_id="u1"), "r1")
        group = agg.aggregate(report(item_id="p2", reported_user_id="u1"), "r2")
        assert group.group_key == "user_u1"
        assert group.total_reports == 2


class TestConcurrentAggregation:
    def test_concurrent_reports_all_counted(self, aggregator, session_factory):
        reasons = ["spam", "harassment", "violence", "other", "spam", "hate_speech"]
        barrier = threading.Barrier(len(reasons))
        errors = []

        def worker(i, reason):
            barrier.wait()
            try:
                aggregator.aggregate(report(reason=reason), f"r{i}")
            except Exception as e:  # collected and asserted below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i, r)) for i, r in enumerate(reasons)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        group = load_group(session_factory, "post_p1")
        assert group.total_reports == len(reasons)
        assert group.highest_reason_score == 50
