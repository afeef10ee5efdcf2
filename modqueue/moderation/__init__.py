"""modqueue Moderation — scoring, aggregation, task materialisation and leasing."""

from modqueue.moderation.activity import ActivityLog  # noqa: F401
from modqueue.moderation.aggregator import ReportAggregator  # noqa: F401
from modqueue.moderation.constants import ActivityAction, TaskStatus  # noqa: F401
from modqueue.moderation.factory import TaskFactory  # noqa: F401
from modqueue.moderation.leasing import TaskQueue  # noqa: F401
from modqueue.moderation.pipeline import ModerationPipeline  # noqa: F401
from modqueue.moderation.recalculator import PriorityRecalculator  # noqa: F401
from modqueue.moderation.scoring import (  # noqa: F401
    calculate_priority_score,
    highest_scoring_reason,
    priority_label,
)

__all__ = [
    "ActivityLog",
    "ActivityAction",
    "ModerationPipeline",
    "PriorityRecalculator",
    "ReportAggregator",
    "TaskFactory",
    "TaskQueue",
    "TaskStatus",
    "calculate_priority_score",
    "highest_scoring_reason",
    "priority_label",
]
