"""Badge evaluator - runs the configured rules over trades."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from decimal import Decimal

from polymarket_insider_finder.detector.models import (
    BadgeAssignment,
    BadgeContext,
    BadgeThresholds,
)
from polymarket_insider_finder.detector.rules import BadgeRule, build_default_rules
from polymarket_insider_finder.errors import NotFoundError
from polymarket_insider_finder.ingestor.models import TradeEvent
from polymarket_insider_finder.market.tracker import MarketResolution, MarketStateTracker
from polymarket_insider_finder.profiler.aggregator import WalletRollup

logger = logging.getLogger(__name__)


class BadgeEvaluator:
    """Applies badge rules in two passes.

    ``evaluate_trade`` runs the rules that only need market history and the
    wallet rollup. ``evaluate_resolution`` runs the outcome-dependent rules
    once the trade's market has resolved. A trade arriving after its market
    already resolved goes through both passes. ``evaluate_later_observations``
    re-runs the look-ahead rules for stored trades once newer prices arrive.

    Example:
        ```python
        evaluator = BadgeEvaluator(thresholds=BadgeThresholds())
        badges = evaluator.evaluate_trade(trade, market=tracker, wallet=rollup)
        ```
    """

    def __init__(
        self,
        rules: Sequence[BadgeRule] | None = None,
        *,
        thresholds: BadgeThresholds | None = None,
    ) -> None:
        self.thresholds = thresholds or BadgeThresholds()
        self._rules = list(rules) if rules is not None else build_default_rules(self.thresholds)

    @property
    def rules(self) -> list[BadgeRule]:
        return list(self._rules)

    def evaluate_trade(
        self,
        trade: TradeEvent,
        *,
        market: MarketStateTracker,
        wallet: WalletRollup,
    ) -> list[BadgeAssignment]:
        ctx = BadgeContext(trade=trade, market=market, wallet=wallet)
        return self._run([r for r in self._rules if not r.requires_resolution], ctx)

    def evaluate_resolution(
        self,
        trade: TradeEvent,
        *,
        market: MarketStateTracker,
        wallet: WalletRollup,
        resolution: MarketResolution,
        baseline_win_rate: Decimal | None = None,
    ) -> list[BadgeAssignment]:
        ctx = BadgeContext(
            trade=trade,
            market=market,
            wallet=wallet,
            won=trade.outcome == resolution.winning_outcome,
            resolution=resolution,
            baseline_win_rate=baseline_win_rate,
        )
        return self._run([r for r in self._rules if r.requires_resolution], ctx)

    def evaluate_later_observations(
        self,
        trade: TradeEvent,
        *,
        market: MarketStateTracker,
        wallet: WalletRollup,
    ) -> list[BadgeAssignment]:
        """Re-run the look-ahead rules for a stored trade after new observations arrived."""
        ctx = BadgeContext(trade=trade, market=market, wallet=wallet)
        rules = [r for r in self._rules if r.reads_later_observations and not r.requires_resolution]
        return self._run(rules, ctx)

    def _run(self, rules: Sequence[BadgeRule], ctx: BadgeContext) -> list[BadgeAssignment]:
        badges: list[BadgeAssignment] = []
        for rule in rules:
            try:
                badge = rule.evaluate(ctx)
            except NotFoundError as e:
                # Missing market history means the rule has nothing to judge.
                logger.debug(
                    "Skipping %s for trade %s: %s",
                    rule.badge_type.value,
                    ctx.trade.trade_id,
                    e,
                )
                continue
            if badge is not None:
                logger.info(
                    "Badge %s for wallet %s on trade %s: %s",
                    badge.badge_type.value,
                    badge.wallet_address[:10] + "...",
                    badge.trade_id,
                    badge.reason,
                )
                badges.append(badge)
        return badges
