"""Per-wallet rollup statistics, folded idempotently from trades and resolutions.

Every rollup remembers which trade ids (and which resolutions) it already
contains, so replaying a trade or a resolution is a no-op. Rollups are
rebuilt from stored history the first time a wallet is touched in a run,
which makes resumed and full-recompute runs produce identical results.

Rollups are mutated only by the shard that owns the wallet address.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from polymarket_insider_finder.errors import ConsistencyError
from polymarket_insider_finder.ingestor.models import TradeEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_TRACKED_TRADES = 50


@dataclass(frozen=True)
class WalletRollup:
    """Read-only view of a wallet's aggregate statistics."""

    wallet_address: str
    first_trade_at: datetime
    last_trade_at: datetime
    total_trades: int
    total_volume: Decimal
    resolved_trades: int
    won_trades: int
    is_tracked: bool

    @property
    def win_rate(self) -> float | None:
        """``won / resolved``; None (not zero) while nothing has resolved."""
        if self.resolved_trades == 0:
            return None
        return self.won_trades / self.resolved_trades


@dataclass
class _WalletState:
    wallet_address: str
    first_trade_at: datetime | None = None
    last_trade_at: datetime | None = None
    total_volume: Decimal = field(default_factory=lambda: Decimal(0))
    trade_ids: set[str] = field(default_factory=set)
    outcomes: dict[str, bool] = field(default_factory=dict)  # trade_id -> won

    @property
    def won_trades(self) -> int:
        return sum(1 for won in self.outcomes.values() if won)


class WalletAggregator:
    """Owns every wallet rollup; all other components read snapshots only."""

    def __init__(self, *, max_tracked_trades: int = DEFAULT_MAX_TRACKED_TRADES) -> None:
        self._max_tracked_trades = max_tracked_trades
        self._wallets: dict[str, _WalletState] = {}

    def is_loaded(self, wallet_address: str) -> bool:
        return wallet_address.lower() in self._wallets

    def hydrate(
        self,
        wallet_address: str,
        history: Iterable[tuple[TradeEvent, bool | None]],
    ) -> WalletRollup | None:
        """Rebuild a wallet's rollup from its stored trades and outcomes."""
        address = wallet_address.lower()
        self._wallets[address] = _WalletState(wallet_address=address)
        for trade, won in history:
            self.apply_trade(trade)
            if won is not None:
                self.apply_resolution(trade, won)
        return self.rollup(address)

    def apply_trade(self, trade: TradeEvent) -> bool:
        """Fold a trade into its wallet's rollup.

        Returns:
            False if the trade was already folded in, True otherwise.
        """
        state = self._wallets.get(trade.wallet_address)
        if state is None:
            state = _WalletState(wallet_address=trade.wallet_address)
            self._wallets[trade.wallet_address] = state
        if trade.trade_id in state.trade_ids:
            return False

        state.trade_ids.add(trade.trade_id)
        state.total_volume += trade.usd_value
        # Backfill can deliver older trades after newer ones.
        if state.first_trade_at is None or trade.timestamp < state.first_trade_at:
            state.first_trade_at = trade.timestamp
        if state.last_trade_at is None or trade.timestamp > state.last_trade_at:
            state.last_trade_at = trade.timestamp
        return True

    def apply_resolution(self, trade: TradeEvent, won: bool) -> bool:
        """Record the outcome of a previously applied trade.

        Returns:
            False if this resolution was already recorded, True otherwise.

        Raises:
            ConsistencyError: If the trade already resolved with the opposite outcome.
        """
        state = self._wallets.get(trade.wallet_address)
        if state is None or trade.trade_id not in state.trade_ids:
            self.apply_trade(trade)
            state = self._wallets[trade.wallet_address]

        previous = state.outcomes.get(trade.trade_id)
        if previous is not None:
            if previous != won:
                raise ConsistencyError(
                    f"Trade {trade.trade_id} already resolved as won={previous}; refusing won={won}"
                )
            return False
        state.outcomes[trade.trade_id] = won
        return True

    def rollup(self, wallet_address: str) -> WalletRollup | None:
        state = self._wallets.get(wallet_address.lower())
        if state is None or state.first_trade_at is None or state.last_trade_at is None:
            return None
        total_trades = len(state.trade_ids)
        return WalletRollup(
            wallet_address=state.wallet_address,
            first_trade_at=state.first_trade_at,
            last_trade_at=state.last_trade_at,
            total_trades=total_trades,
            total_volume=state.total_volume,
            resolved_trades=len(state.outcomes),
            won_trades=state.won_trades,
            is_tracked=total_trades <= self._max_tracked_trades,
        )

    def discard(self, wallet_address: str) -> None:
        """Drop a wallet's in-memory state so the next touch rebuilds it from storage."""
        self._wallets.pop(wallet_address.lower(), None)

    def is_resolved(self, wallet_address: str, trade_id: str) -> bool:
        state = self._wallets.get(wallet_address.lower())
        return state is not None and trade_id in state.outcomes
