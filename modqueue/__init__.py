"""
modqueue — Moderation task queue.

Turns raw abuse/content reports into deduplicated report groups, materialises
one reviewable task per group, and leases tasks to exactly one reviewer at a
time in priority order.

Entry points:

    from modqueue import ModerationPipeline, TaskQueue, PriorityRecalculator
"""

__version__ = "1.0.0"
__all__ = [
    "engine", "db", "moderation", "process",
    "ModerationPipeline", "PriorityRecalculator", "ReportAggregator",
    "TaskFactory", "TaskQueue",
]


def __getattr__(name: str):
    # Lazy re-exports so ``import modqueue`` stays cheap (no SQLAlchemy import).
    if name in ("ModerationPipeline", "PriorityRecalculator", "ReportAggregator",
                "TaskFactory", "TaskQueue"):
        from modqueue import moderation
        return getattr(moderation, name)
    raise AttributeError(f"module 'modqueue' has no attribute {name!r}")
