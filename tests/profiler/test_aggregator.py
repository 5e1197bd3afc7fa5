"""Tests for wallet rollup aggregation."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from polymarket_insider_finder.errors import ConsistencyError
from polymarket_insider_finder.ingestor.models import TradeEvent
from polymarket_insider_finder.profiler.aggregator import WalletAggregator

T0 = datetime(2026, 3, 1, 12, tzinfo=UTC)
WALLET = "0xaa"


def make_trade(trade_id: str, *, minutes: int = 0, usd: str = "100", wallet: str = WALLET) -> TradeEvent:
    return TradeEvent(
        trade_id=trade_id,
        wallet_address=wallet,
        market_id="m-1",
        market_question="Q?",
        outcome="Yes",
        side="BUY",
        price=Decimal("0.5"),
        usd_value=Decimal(usd),
        timestamp=T0 + timedelta(minutes=minutes),
    )


class TestWalletAggregator:
    def test_apply_trade_builds_rollup(self) -> None:
        agg = WalletAggregator()
        agg.apply_trade(make_trade("t-1", minutes=10, usd="100"))
        agg.apply_trade(make_trade("t-2", minutes=0, usd="250"))

        rollup = agg.rollup(WALLET)
        assert rollup is not None
        assert rollup.total_trades == 2
        assert rollup.total_volume == Decimal("350")
        assert rollup.first_trade_at == T0
        assert rollup.last_trade_at == T0 + timedelta(minutes=10)
        assert rollup.win_rate is None
        assert rollup.is_tracked

    def test_replayed_trade_is_noop(self) -> None:
        agg = WalletAggregator()
        trade = make_trade("t-1")
        assert agg.apply_trade(trade) is True
        assert agg.apply_trade(trade) is False

        rollup = agg.rollup(WALLET)
        assert rollup is not None
        assert rollup.total_trades == 1
        assert rollup.total_volume == Decimal("100")

    def test_resolutions_drive_win_rate(self) -> None:
        agg = WalletAggregator()
        trades = [make_trade(f"t-{i}", minutes=i) for i in range(4)]
        for trade in trades:
            agg.apply_trade(trade)
        agg.apply_resolution(trades[0], True)
        agg.apply_resolution(trades[1], True)
        agg.apply_resolution(trades[2], False)

        rollup = agg.rollup(WALLET)
        assert rollup is not None
        assert rollup.resolved_trades == 3
        assert rollup.won_trades == 2
        assert rollup.win_rate == pytest.approx(2 / 3)

    def test_repeated_resolution_is_noop(self) -> None:
        agg = WalletAggregator()
        trade = make_trade("t-1")
        agg.apply_trade(trade)
        assert agg.apply_resolution(trade, True) is True
        assert agg.apply_resolution(trade, True) is False

    def test_conflicting_resolution_rejected(self) -> None:
        agg = WalletAggregator()
        trade = make_trade("t-1")
        agg.apply_trade(trade)
        agg.apply_resolution(trade, True)
        with pytest.raises(ConsistencyError):
            agg.apply_resolution(trade, False)
        assert agg.is_resolved(WALLET, "t-1")

    def test_untracked_above_trade_limit(self) -> None:
        agg = WalletAggregator(max_tracked_trades=2)
        for i in range(3):
            agg.apply_trade(make_trade(f"t-{i}", minutes=i))

        rollup = agg.rollup(WALLET)
        assert rollup is not None
        assert rollup.total_trades == 3
        assert rollup.is_tracked is False

    def test_hydrate_rebuilds_from_history(self) -> None:
        agg = WalletAggregator()
        agg.apply_trade(make_trade("stale"))

        rollup = agg.hydrate(
            WALLET,
            [(make_trade("t-1"), True), (make_trade("t-2", minutes=5), None)],
        )
        assert rollup is not None
        assert rollup.total_trades == 2
        assert rollup.resolved_trades == 1
        assert rollup.won_trades == 1
        assert agg.is_loaded(WALLET)

    def test_discard_forgets_wallet(self) -> None:
        agg = WalletAggregator()
        agg.apply_trade(make_trade("t-1"))
        agg.discard(WALLET.upper())

        assert not agg.is_loaded(WALLET)
        assert agg.rollup(WALLET) is None
