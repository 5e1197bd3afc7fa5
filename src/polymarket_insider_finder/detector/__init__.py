"""Badge detection layer - rule-based behavioral flags on wallet trades."""

from polymarket_insider_finder.detector.evaluator import BadgeEvaluator
from polymarket_insider_finder.detector.models import (
    BadgeAssignment,
    BadgeContext,
    BadgeThresholds,
    BadgeType,
)
from polymarket_insider_finder.detector.rules import (
    BadgeRule,
    BigBetRule,
    FirstMoverRule,
    HighWinRateRule,
    LateWinnerRule,
    LongShotRule,
    PreMoveRule,
    build_default_rules,
)

__all__ = [
    "BadgeAssignment",
    "BadgeContext",
    "BadgeEvaluator",
    "BadgeRule",
    "BadgeThresholds",
    "BadgeType",
    "BigBetRule",
    "FirstMoverRule",
    "HighWinRateRule",
    "LateWinnerRule",
    "LongShotRule",
    "PreMoveRule",
    "build_default_rules",
]
