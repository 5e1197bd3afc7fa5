"""Time-indexed market state: price/volume history, trade ledger, and resolution.

Each market keeps a timestamp-sorted observation sequence. Observations come
from two sources: external snapshots (per-outcome prices plus cumulative
volume) and trade prints (the traded outcome's price at execution time).
Inserts use binary search, so backfilled observations land in the right
position instead of being appended.

The tracker is not locked. Callers shard work by market id so each market's
history has a single writer.
"""

from __future__ import annotations

import bisect
import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Literal

import numpy as np

from polymarket_insider_finder.errors import ConsistencyError, NotFoundError
from polymarket_insider_finder.ingestor.models import TradeEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketObservation:
    """A point sample of a market's state."""

    market_id: str
    timestamp: datetime
    prices: Mapping[str, Decimal]
    volume: Decimal | None = None
    source: Literal["snapshot", "trade"] = "snapshot"

    def price_for(self, outcome: str) -> Decimal | None:
        return self.prices.get(outcome)


@dataclass(frozen=True)
class MarketResolution:
    """The single, immutable resolution of a market."""

    market_id: str
    resolved_at: datetime
    winning_outcome: str


@dataclass(frozen=True)
class TradePrint:
    """Ledger entry for a trade observed on a market."""

    trade_id: str
    timestamp: datetime
    outcome: str
    price: Decimal
    usd_value: Decimal

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.timestamp, self.trade_id)


@dataclass
class _MarketHistory:
    observations: list[MarketObservation] = field(default_factory=list)
    observation_times: list[datetime] = field(default_factory=list)
    trades: list[TradePrint] = field(default_factory=list)
    trade_keys: list[tuple[datetime, str]] = field(default_factory=list)
    trade_ids: set[str] = field(default_factory=set)
    resolution: MarketResolution | None = None


class PriceWindow:
    """Observations for one outcome within ``[start, end]``.

    Iteration is lazy and restartable: every ``iter()`` re-locates the window
    bounds with binary search, so the sequence always reflects the current
    history and can be consumed any number of times.
    """

    def __init__(
        self,
        history: _MarketHistory,
        *,
        outcome: str,
        start: datetime,
        end: datetime,
    ) -> None:
        self._history = history
        self.outcome = outcome
        self.start = start
        self.end = end

    def __iter__(self) -> Iterator[tuple[datetime, Decimal]]:
        times = self._history.observation_times
        lo = bisect.bisect_left(times, self.start)
        hi = bisect.bisect_right(times, self.end)
        for obs in self._history.observations[lo:hi]:
            price = obs.price_for(self.outcome)
            if price is not None:
                yield obs.timestamp, price

    def max_delta(self, reference: Decimal, *, direction: int) -> Decimal | None:
        """Largest move away from ``reference`` in ``direction`` (+1 up, -1 down).

        Returns None when the window holds no observation for the outcome.
        """
        best: Decimal | None = None
        for _ts, price in self:
            delta = (price - reference) * direction
            if best is None or delta > best:
                best = delta
        return best


class MarketStateTracker:
    """Per-market time-ordered history with point-in-time and window queries."""

    def __init__(self) -> None:
        self._markets: dict[str, _MarketHistory] = {}

    def _history(self, market_id: str) -> _MarketHistory:
        history = self._markets.get(market_id)
        if history is None:
            history = _MarketHistory()
            self._markets[market_id] = history
        return history

    def _require(self, market_id: str) -> _MarketHistory:
        history = self._markets.get(market_id)
        if history is None:
            raise NotFoundError(f"No state recorded for market {market_id}")
        return history

    def has_market(self, market_id: str) -> bool:
        return market_id in self._markets

    @property
    def market_ids(self) -> list[str]:
        return list(self._markets)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_observation(
        self,
        market_id: str,
        timestamp: datetime,
        prices_by_outcome: Mapping[str, Decimal],
        volume: Decimal | None = None,
        *,
        source: Literal["snapshot", "trade"] = "snapshot",
    ) -> MarketObservation:
        """Insert an observation at its time-sorted position.

        Observations sharing a timestamp keep their arrival order.
        """
        if timestamp.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        history = self._history(market_id)
        obs = MarketObservation(
            market_id=market_id,
            timestamp=timestamp,
            prices=dict(prices_by_outcome),
            volume=volume,
            source=source,
        )
        idx = bisect.bisect_right(history.observation_times, timestamp)
        if idx < len(history.observations):
            logger.debug("Out-of-order observation for %s at %s (slot %d)", market_id, timestamp, idx)
        history.observation_times.insert(idx, timestamp)
        history.observations.insert(idx, obs)
        return obs

    def record_trade(self, trade: TradeEvent) -> bool:
        """Add a trade to the market ledger and its price to the observation history.

        Returns:
            False if the trade id was already recorded (no-op), True otherwise.
        """
        history = self._history(trade.market_id)
        if trade.trade_id in history.trade_ids:
            return False
        entry = TradePrint(
            trade_id=trade.trade_id,
            timestamp=trade.timestamp,
            outcome=trade.outcome,
            price=trade.price,
            usd_value=trade.usd_value,
        )
        idx = bisect.bisect_left(history.trade_keys, entry.sort_key)
        history.trade_keys.insert(idx, entry.sort_key)
        history.trades.insert(idx, entry)
        history.trade_ids.add(trade.trade_id)
        self.record_observation(
            trade.market_id,
            trade.timestamp,
            {trade.outcome: trade.price},
            source="trade",
        )
        return True

    def record_resolution(
        self,
        market_id: str,
        resolved_at: datetime,
        winning_outcome: str,
    ) -> bool:
        """Record a market's resolution.

        Returns:
            True if newly recorded, False if an identical resolution already exists.

        Raises:
            ConsistencyError: If the market already resolved differently.
        """
        history = self._history(market_id)
        existing = history.resolution
        if existing is not None:
            if existing.resolved_at == resolved_at and existing.winning_outcome == winning_outcome:
                return False
            raise ConsistencyError(
                f"Market {market_id} already resolved to {existing.winning_outcome!r} "
                f"at {existing.resolved_at.isoformat()}; rejecting {winning_outcome!r} "
                f"at {resolved_at.isoformat()}"
            )
        history.resolution = MarketResolution(
            market_id=market_id,
            resolved_at=resolved_at,
            winning_outcome=winning_outcome,
        )
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_resolution(self, market_id: str) -> MarketResolution | None:
        history = self._markets.get(market_id)
        return history.resolution if history else None

    def price_near(self, market_id: str, outcome: str, timestamp: datetime) -> MarketObservation:
        """Return the last observation carrying ``outcome`` at or before ``timestamp``.

        Raises:
            NotFoundError: If no such observation exists.
        """
        history = self._require(market_id)
        idx = bisect.bisect_right(history.observation_times, timestamp)
        for obs in reversed(history.observations[:idx]):
            if outcome in obs.prices:
                return obs
        raise NotFoundError(f"No {outcome!r} price for market {market_id} at or before {timestamp.isoformat()}")

    def price_window(
        self,
        market_id: str,
        outcome: str,
        start: datetime,
        end: datetime,
    ) -> PriceWindow:
        """Return the observations for ``outcome`` within ``[start, end]``."""
        if end < start:
            raise ValueError("window end precedes start")
        history = self._markets.get(market_id) or _MarketHistory()
        return PriceWindow(history, outcome=outcome, start=start, end=end)

    def volume_at(self, market_id: str, timestamp: datetime) -> Decimal:
        """Cumulative market volume as of ``timestamp``.

        Uses the latest snapshot volume at or before ``timestamp``; before the
        first snapshot, falls back to the notional traded on the ledger.
        """
        history = self._require(market_id)
        idx = bisect.bisect_right(history.observation_times, timestamp)
        for obs in reversed(history.observations[:idx]):
            if obs.volume is not None:
                return obs.volume
        total = Decimal(0)
        for entry in history.trades:
            if entry.timestamp > timestamp:
                break
            total += entry.usd_value
        return total

    def median_trade_size(
        self,
        market_id: str,
        *,
        as_of: datetime,
        exclude_trade_id: str | None = None,
    ) -> Decimal | None:
        """Median notional of trades on the market at or before ``as_of``.

        Returns None when no qualifying trades exist.
        """
        history = self._require(market_id)
        sizes = [
            float(entry.usd_value)
            for entry in history.trades
            if entry.timestamp <= as_of and entry.trade_id != exclude_trade_id
        ]
        if not sizes:
            return None
        return Decimal(str(float(np.median(np.asarray(sizes, dtype=float)))))

    def trade_rank(self, market_id: str, trade_id: str) -> int | None:
        """1-based position of a trade on its market (timestamp, then id)."""
        history = self._markets.get(market_id)
        if history is None or trade_id not in history.trade_ids:
            return None
        for rank, entry in enumerate(history.trades, start=1):
            if entry.trade_id == trade_id:
                return rank
        return None

    def trade_count(self, market_id: str) -> int:
        history = self._markets.get(market_id)
        return len(history.trades) if history else 0
