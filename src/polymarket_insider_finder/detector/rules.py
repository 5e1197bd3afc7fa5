"""Badge rules.

Each rule is a stateless evaluator of one trade against the market state and
the wallet rollup. Rules that need the market's outcome declare
``requires_resolution`` and run only on the resolution pass; the rest run
when the trade is first processed. Rules that look ahead of the trade
declare ``reads_later_observations`` and are run again whenever later price
observations for the market arrive.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar

from polymarket_insider_finder.detector.models import (
    BadgeAssignment,
    BadgeContext,
    BadgeThresholds,
    BadgeType,
)


def _pct(value: Decimal | float) -> int:
    return int(round(float(value) * 100))


def _usd(value: Decimal) -> str:
    return f"${value:,.0f}"


class BadgeRule(ABC):
    """Uniform shape for all badge rules."""

    badge_type: ClassVar[BadgeType]
    requires_resolution: ClassVar[bool] = False
    reads_later_observations: ClassVar[bool] = False

    def __init__(self, thresholds: BadgeThresholds | None = None) -> None:
        self._cfg = thresholds or BadgeThresholds()

    @abstractmethod
    def evaluate(self, ctx: BadgeContext) -> BadgeAssignment | None:
        raise NotImplementedError

    def _assign(
        self,
        ctx: BadgeContext,
        *,
        reason: str,
        earned_at: datetime,
        **metadata: Any,
    ) -> BadgeAssignment:
        return BadgeAssignment(
            wallet_address=ctx.trade.wallet_address,
            badge_type=self.badge_type,
            trade_id=ctx.trade.trade_id,
            reason=reason,
            earned_at=earned_at,
            metadata=metadata,
        )


class HighWinRateRule(BadgeRule):
    """Win rate well above the category baseline over enough resolved trades."""

    badge_type = BadgeType.HIGH_WIN_RATE
    requires_resolution = True

    def evaluate(self, ctx: BadgeContext) -> BadgeAssignment | None:
        wallet = ctx.wallet
        if wallet.resolved_trades < self._cfg.high_win_rate_min_resolved:
            return None
        win_rate = Decimal(wallet.won_trades) / Decimal(wallet.resolved_trades)
        baseline = ctx.baseline_win_rate
        if baseline is None:
            baseline = self._cfg.default_baseline_win_rate
        if win_rate < baseline + self._cfg.high_win_rate_margin:
            return None
        category = ctx.trade.market_category or "uncategorized"
        return self._assign(
            ctx,
            reason=(
                f"Won {_pct(win_rate)}% of {wallet.resolved_trades} resolved positions "
                f"vs {_pct(baseline)}% baseline in {category}"
            ),
            earned_at=ctx.resolution.resolved_at if ctx.resolution else ctx.trade.timestamp,
            win_rate=float(win_rate),
            resolved_trades=wallet.resolved_trades,
            baseline_win_rate=float(baseline),
            category=category,
        )


class BigBetRule(BadgeRule):
    """Trade far larger than the market's median trade size so far."""

    badge_type = BadgeType.BIG_BET

    def evaluate(self, ctx: BadgeContext) -> BadgeAssignment | None:
        trade = ctx.trade
        median = ctx.market.median_trade_size(
            trade.market_id,
            as_of=trade.timestamp,
            exclude_trade_id=trade.trade_id,
        )
        if median is None or median <= 0:
            return None
        multiple = trade.usd_value / median
        if multiple < self._cfg.big_bet_multiple:
            return None
        return self._assign(
            ctx,
            reason=(
                f"{_usd(trade.usd_value)} bet was {multiple:.1f}x the market's "
                f"median trade of {_usd(median)}"
            ),
            earned_at=trade.timestamp,
            usd_value=str(trade.usd_value),
            median_trade_size=str(median),
            multiple=float(round(multiple, 3)),
        )


class LongShotRule(BadgeRule):
    """Bought at a low implied probability and turned out right."""

    badge_type = BadgeType.LONG_SHOT
    requires_resolution = True

    def evaluate(self, ctx: BadgeContext) -> BadgeAssignment | None:
        trade = ctx.trade
        if ctx.won is not True or trade.price > self._cfg.long_shot_max_price:
            return None
        return self._assign(
            ctx,
            reason=f"Bought {trade.outcome!r} at {_pct(trade.price)}% probability and was correct",
            earned_at=ctx.resolution.resolved_at if ctx.resolution else trade.timestamp,
            entry_price=str(trade.price),
        )


class PreMoveRule(BadgeRule):
    """Price moved sharply in the trade's favor shortly after it."""

    badge_type = BadgeType.PRE_MOVE
    reads_later_observations = True

    def evaluate(self, ctx: BadgeContext) -> BadgeAssignment | None:
        trade = ctx.trade
        direction = 1 if trade.is_buy else -1
        window = ctx.market.price_window(
            trade.market_id,
            trade.outcome,
            trade.timestamp,
            trade.timestamp + self._cfg.pre_move_window,
        )
        for ts, price in window:
            if ts <= trade.timestamp:
                continue
            delta = (price - trade.price) * direction
            if delta >= self._cfg.pre_move_min_delta:
                minutes = int((ts - trade.timestamp).total_seconds() // 60)
                signed = price - trade.price
                return self._assign(
                    ctx,
                    reason=(
                        f"{trade.outcome!r} moved {'+' if signed > 0 else ''}{_pct(signed)} pts "
                        f"within {minutes} min of this {trade.side.lower()}"
                    ),
                    earned_at=ts,
                    price_at_trade=str(trade.price),
                    price_after=str(price),
                    minutes_after=minutes,
                )
        return None


class LateWinnerRule(BadgeRule):
    """Winning trade placed shortly before the market resolved."""

    badge_type = BadgeType.LATE_WINNER
    requires_resolution = True

    def evaluate(self, ctx: BadgeContext) -> BadgeAssignment | None:
        if ctx.won is not True or ctx.resolution is None:
            return None
        lead = ctx.resolution.resolved_at - ctx.trade.timestamp
        if lead.total_seconds() < 0 or lead > self._cfg.late_winner_window:
            return None
        minutes = int(lead.total_seconds() // 60)
        return self._assign(
            ctx,
            reason=f"Won bet placed {minutes} min before resolution",
            earned_at=ctx.resolution.resolved_at,
            minutes_to_resolution=minutes,
        )


class FirstMoverRule(BadgeRule):
    """Among the market's first trades, before its volume grew many times over."""

    badge_type = BadgeType.FIRST_MOVER
    requires_resolution = True

    def evaluate(self, ctx: BadgeContext) -> BadgeAssignment | None:
        if ctx.resolution is None:
            return None
        trade = ctx.trade
        rank = ctx.market.trade_rank(trade.market_id, trade.trade_id)
        if rank is None or rank > self._cfg.first_mover_rank:
            return None
        volume_then = ctx.market.volume_at(trade.market_id, trade.timestamp)
        volume_final = ctx.market.volume_at(trade.market_id, ctx.resolution.resolved_at)
        if volume_then <= 0:
            return None
        growth = volume_final / volume_then
        if growth <= self._cfg.first_mover_volume_multiple:
            return None
        return self._assign(
            ctx,
            reason=(
                f"Was trader #{rank} on this market; volume grew {growth:.0f}x "
                f"from {_usd(volume_then)} to {_usd(volume_final)} by resolution"
            ),
            earned_at=ctx.resolution.resolved_at,
            trade_rank=rank,
            volume_at_trade=str(volume_then),
            volume_at_resolution=str(volume_final),
        )


def build_default_rules(thresholds: BadgeThresholds | None = None) -> list[BadgeRule]:
    cfg = thresholds or BadgeThresholds()
    return [
        HighWinRateRule(cfg),
        BigBetRule(cfg),
        LongShotRule(cfg),
        PreMoveRule(cfg),
        LateWinnerRule(cfg),
        FirstMoverRule(cfg),
    ]
