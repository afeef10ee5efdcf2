"""
Priority scoring — pure functions, no I/O.

    priority = reason_score × item_type_multiplier + (report_count − 1) × additional_report_bonus

Unknown reasons and item types fall back to the configured defaults.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from modqueue.engine.config import DEFAULT_PRIORITY_THRESHOLDS, PriorityThreshold, ScoringConfig


def reason_score(config: ScoringConfig, reason: Optional[str]) -> float:
    return config.reason_scores.get(reason, config.default_reason_score)


def item_type_multiplier(config: ScoringConfig, item_type: Optional[str]) -> float:
    return config.item_type_multipliers.get(item_type, config.default_item_type_multiplier)


def report_bonus(config: ScoringConfig, report_count: int) -> float:
    return max(0, report_count - 1) * config.additional_report_bonus


def calculate_priority_score(
    config: ScoringConfig,
    reason: Optional[str],
    item_type: Optional[str],
    report_count: int,
) -> float:
    """
    Score a report group from its (worst) reason.

    Args:
        config: Scoring weights.
        reason: The report reason, or the highest-scoring reason of a group.
        item_type: The reported item type.
        report_count: Total reports in the group.

    Returns:
        Numeric priority (higher = reviewed sooner).
    """
    return score_from_reason_score(config, reason_score(config, reason), item_type, report_count)


def score_from_reason_score(
    config: ScoringConfig,
    highest_reason_score: float,
    item_type: Optional[str],
    report_count: int,
) -> float:
    """Same formula, starting from a reason score already stored on a group."""
    return highest_reason_score * item_type_multiplier(config, item_type) + report_bonus(config, report_count)


def highest_scoring_reason(config: ScoringConfig, reasons: Sequence[str]) -> str:
    """Return the reason with the highest score; ties go to the first occurrence."""
    if not reasons:
        return ""
    highest = reasons[0]
    highest_score = reason_score(config, highest)
    for reason in reasons[1:]:
        score = reason_score(config, reason)
        if score > highest_score:
            highest, highest_score = reason, score
    return highest


def priority_label(
    priority: float,
    thresholds: Optional[Iterable[PriorityThreshold]] = None,
) -> str:
    """Badge label for a priority: first threshold (highest first) with min_score <= priority."""
    ordered = sorted(thresholds or DEFAULT_PRIORITY_THRESHOLDS, key=lambda t: t.min_score, reverse=True)
    for threshold in ordered:
        if priority >= threshold.min_score:
            return threshold.label
    return ordered[-1].label if ordered else ""
