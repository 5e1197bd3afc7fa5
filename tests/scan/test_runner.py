"""Tests for the batch scan runner."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from polymarket_insider_finder.config import Settings
from polymarket_insider_finder.errors import TransientStorageError
from polymarket_insider_finder.ingestor.models import MarketObservationEvent, ResolutionEvent, TradeEvent
from polymarket_insider_finder.profiler.aggregator import WalletAggregator
from polymarket_insider_finder.scan.checkpoints import CheckpointStore
from polymarket_insider_finder.scan.runner import ScanConfig, ScanRunner, shard_for
from polymarket_insider_finder.storage.database import DatabaseManager
from polymarket_insider_finder.storage.repos import (
    BadgeRepository,
    ScanRunRepository,
    TradeProcessingErrorRepository,
)
from polymarket_insider_finder.storage.store import InsiderWalletStore

T0 = datetime(2026, 3, 1, 12, tzinfo=UTC)
WALLET = "0x00000000000000000000000000000000000000aa"


def make_trade(
    trade_id: str,
    wallet: str,
    *,
    minutes: int,
    usd: str = "100",
    price: str = "0.5",
    outcome: str = "No",
    market_id: str = "m-1",
    category: str = "politics",
) -> TradeEvent:
    return TradeEvent(
        trade_id=trade_id,
        wallet_address=wallet,
        market_id=market_id,
        market_question="Will it happen?",
        outcome=outcome,
        side="BUY",
        price=Decimal(price),
        usd_value=Decimal(usd),
        timestamp=T0 + timedelta(minutes=minutes),
        market_category=category,
    )


def base_trades() -> list[TradeEvent]:
    """Three ordinary trades (median $200) followed by a $1,200 long shot on 'Yes'."""
    return [
        make_trade("t-1", "0xa1", minutes=0, usd="100"),
        make_trade("t-2", "0xa2", minutes=1, usd="200"),
        make_trade("t-3", "0xa3", minutes=2, usd="300"),
        make_trade("t-w", WALLET, minutes=10, usd="1200", price="0.08", outcome="Yes"),
    ]


RESOLUTION = ResolutionEvent(market_id="m-1", resolved_at=T0 + timedelta(hours=1), winning_outcome="Yes")


def runner_for(store: InsiderWalletStore, checkpoints: CheckpointStore | None = None, **config: object) -> ScanRunner:
    cfg = ScanConfig(shard_count=4, concurrency=1, **config)  # type: ignore[arg-type]
    return ScanRunner(store, config=cfg, checkpoints=checkpoints)


async def badge_types(db: DatabaseManager, wallet: str) -> list[str]:
    return [badge_type for badge_type, _trade_id in await badge_pairs(db, wallet)]


async def badge_pairs(db: DatabaseManager, wallet: str) -> list[tuple[str, str]]:
    async with db.get_async_session() as session:
        return sorted((b.badge_type, b.trade_id) for b in await BadgeRepository(session).list_by_wallet(wallet))


def resolve(market_id: str, winner: str = "Yes") -> ResolutionEvent:
    return ResolutionEvent(market_id=market_id, resolved_at=T0 + timedelta(days=1), winning_outcome=winner)


def win_streak_trades() -> list[TradeEvent]:
    """Six trades on six markets; only the second one (t-1) backs the loser."""
    outcomes = ["Yes", "No", "Yes", "Yes", "Yes", "Yes"]
    return [
        make_trade(f"t-{i}", WALLET, minutes=i, outcome=outcome, market_id=f"d-{i}")
        for i, outcome in enumerate(outcomes)
    ]


class TestScanRunner:
    @pytest.mark.asyncio
    async def test_trade_pass_awards_big_bet(self, store: InsiderWalletStore, db: DatabaseManager) -> None:
        summary = await runner_for(store).run(base_trades())

        assert summary.trades_processed == 4
        assert summary.wallets_created == 4
        assert summary.badges_awarded == 1
        assert await badge_types(db, WALLET) == ["BIG_BET"]
        wallet = await store.get_wallet(WALLET)
        assert wallet is not None
        assert wallet.total_trades == 1
        assert wallet.win_rate is None

    @pytest.mark.asyncio
    async def test_later_resolution_resolves_stored_trades(
        self, store: InsiderWalletStore, db: DatabaseManager
    ) -> None:
        await runner_for(store).run(base_trades())

        summary = await runner_for(store).run([], [RESOLUTION])

        assert summary.resolutions_applied == 1
        assert summary.wallets_updated == 4
        assert summary.badges_awarded == 2
        assert await badge_types(db, WALLET) == ["BIG_BET", "LATE_WINNER", "LONG_SHOT"]
        wallet = await store.get_wallet(WALLET)
        assert wallet is not None
        assert (wallet.resolved_trades, wallet.won_trades) == (1, 1)
        assert wallet.win_rate == Decimal("1")
        [trade] = await store.load_wallet_history(WALLET)
        assert trade.won is True
        assert trade.pnl == Decimal("13800")  # 15,000 shares * 0.92
        loser = await store.get_wallet("0xa1")
        assert loser is not None
        assert loser.win_rate == Decimal("0")

    @pytest.mark.asyncio
    async def test_same_batch_resolution(self, store: InsiderWalletStore, db: DatabaseManager) -> None:
        summary = await runner_for(store).run(base_trades(), [RESOLUTION])

        assert summary.resolutions_applied == 1
        assert summary.badges_awarded == 3
        assert await badge_types(db, WALLET) == ["BIG_BET", "LATE_WINNER", "LONG_SHOT"]

    @pytest.mark.asyncio
    async def test_replaying_a_batch_is_idempotent(self, store: InsiderWalletStore, db: DatabaseManager) -> None:
        await runner_for(store).run(base_trades(), [RESOLUTION])
        before = await store.get_wallet(WALLET)

        summary = await runner_for(store).run(base_trades(), [RESOLUTION])

        assert summary.badges_awarded == 0
        assert summary.resolutions_applied == 0
        assert summary.wallets_created == 0
        after = await store.get_wallet(WALLET)
        assert before is not None and after is not None
        assert (after.total_trades, after.total_volume, after.resolved_trades, after.won_trades) == (
            before.total_trades,
            before.total_volume,
            before.resolved_trades,
            before.won_trades,
        )
        assert len(await badge_types(db, WALLET)) == 3

    @pytest.mark.asyncio
    async def test_trade_arriving_after_resolution(self, store: InsiderWalletStore, db: DatabaseManager) -> None:
        await runner_for(store).run([], [RESOLUTION])

        summary = await runner_for(store).run([base_trades()[-1]])

        assert summary.trades_processed == 1
        assert await badge_types(db, WALLET) == ["LATE_WINNER", "LONG_SHOT"]
        [trade] = await store.load_wallet_history(WALLET)
        assert trade.won is True
        assert trade.market_rank == 1

    @pytest.mark.asyncio
    async def test_pre_move_from_observations(self, store: InsiderWalletStore, db: DatabaseManager) -> None:
        trade = make_trade("t-pm", WALLET, minutes=0, price="0.30", outcome="Yes")
        observations = [
            MarketObservationEvent(market_id="m-1", timestamp=T0 + timedelta(minutes=20), prices={"Yes": Decimal("0.55")}),
            MarketObservationEvent(market_id="m-1", timestamp=T0 + timedelta(minutes=20), prices={"Yes": Decimal("0.99")}),
        ]

        summary = await runner_for(store).run([trade], observations=observations)

        assert summary.badges_awarded == 1
        assert await badge_types(db, WALLET) == ["PRE_MOVE"]
        history = await store.load_market_history("m-1")
        assert [o.prices["Yes"] for o in history.observations] == [Decimal("0.55")]

    @pytest.mark.asyncio
    async def test_scan_run_recorded(self, store: InsiderWalletStore, db: DatabaseManager) -> None:
        await runner_for(store).run(base_trades())

        async with db.get_async_session() as session:
            latest = await ScanRunRepository(session).latest()
        assert latest is not None
        assert latest.trades_processed == 4
        assert latest.badges_awarded == 1


class TestPriceMoveAcrossRuns:
    @pytest.mark.asyncio
    async def test_move_arriving_in_next_run_awards_pre_move(
        self, store: InsiderWalletStore, db: DatabaseManager
    ) -> None:
        early = make_trade("t-pm", WALLET, minutes=0, price="0.30", outcome="Yes")
        follower = make_trade("t-next", "0xb1", minutes=40, price="0.62", outcome="Yes")
        move = MarketObservationEvent(market_id="m-1", timestamp=T0 + timedelta(minutes=30), prices={"Yes": Decimal("0.60")})
        first = await runner_for(store).run([early])
        assert first.badges_awarded == 0

        second = await runner_for(store).run([follower], observations=[move])

        assert second.badges_awarded == 1
        assert await badge_pairs(db, WALLET) == [("PRE_MOVE", "t-pm")]
        assert await badge_types(db, "0xb1") == []

        recompute = await runner_for(store).run([early, follower], observations=[move], full_recompute=True)

        assert recompute.badges_awarded == 0
        assert await badge_pairs(db, WALLET) == [("PRE_MOVE", "t-pm")]

    @pytest.mark.asyncio
    async def test_later_trade_print_counts_as_price_evidence(
        self, store: InsiderWalletStore, db: DatabaseManager
    ) -> None:
        await runner_for(store).run([make_trade("t-pm", WALLET, minutes=0, price="0.30", outcome="Yes")])

        summary = await runner_for(store).run([make_trade("t-next", "0xb1", minutes=45, price="0.50", outcome="Yes")])

        assert summary.badges_awarded == 1
        assert await badge_types(db, WALLET) == ["PRE_MOVE"]

    @pytest.mark.asyncio
    async def test_move_after_window_is_ignored(self, store: InsiderWalletStore, db: DatabaseManager) -> None:
        await runner_for(store).run([make_trade("t-pm", WALLET, minutes=0, price="0.30", outcome="Yes")])
        late = MarketObservationEvent(market_id="m-1", timestamp=T0 + timedelta(minutes=90), prices={"Yes": Decimal("0.90")})

        summary = await runner_for(store).run([], observations=[late])

        assert summary.badges_awarded == 0
        assert await badge_types(db, WALLET) == []

    @pytest.mark.asyncio
    async def test_replayed_move_awards_nothing_new(self, store: InsiderWalletStore, db: DatabaseManager) -> None:
        await runner_for(store).run([make_trade("t-pm", WALLET, minutes=0, price="0.30", outcome="Yes")])
        move = MarketObservationEvent(market_id="m-1", timestamp=T0 + timedelta(minutes=30), prices={"Yes": Decimal("0.60")})
        await runner_for(store).run([], observations=[move])
        wallet_before = await store.get_wallet(WALLET)

        summary = await runner_for(store).run([], observations=[move])

        assert summary.badges_awarded == 0
        assert summary.wallets_updated == 0
        assert await badge_types(db, WALLET) == ["PRE_MOVE"]
        wallet_after = await store.get_wallet(WALLET)
        assert wallet_before is not None and wallet_after is not None
        assert wallet_after.total_trades == wallet_before.total_trades == 1


class TestResolutionBadges:
    @pytest.mark.asyncio
    async def test_high_win_rate_on_crossing_trade(self, store: InsiderWalletStore, db: DatabaseManager) -> None:
        await runner_for(store).run(win_streak_trades())

        summary = await runner_for(store).run([], [resolve(f"d-{i}") for i in range(6)])

        assert summary.resolutions_applied == 6
        assert summary.badges_awarded == 1
        # 4 of 5 resolved (80%) clears the 50% default baseline plus the 15 pt margin.
        assert await badge_pairs(db, WALLET) == [("HIGH_WIN_RATE", "t-4")]
        wallet = await store.get_wallet(WALLET)
        assert wallet is not None
        assert (wallet.resolved_trades, wallet.won_trades) == (6, 5)

    @pytest.mark.asyncio
    async def test_later_resolution_batch_adds_no_second_high_win_rate(
        self, store: InsiderWalletStore, db: DatabaseManager
    ) -> None:
        extra = make_trade("t-6", WALLET, minutes=6, outcome="Yes", market_id="d-6", category="sports")
        await runner_for(store).run([*win_streak_trades(), extra])
        await runner_for(store).run([], [resolve(f"d-{i}") for i in range(6)])

        summary = await runner_for(store).run([], [resolve("d-6")])

        assert summary.resolutions_applied == 1
        assert summary.badges_awarded == 0
        assert await badge_pairs(db, WALLET) == [("HIGH_WIN_RATE", "t-4")]
        wallet = await store.get_wallet(WALLET)
        assert wallet is not None
        assert (wallet.resolved_trades, wallet.won_trades) == (7, 6)

    @pytest.mark.asyncio
    async def test_first_mover_decided_when_market_resolves(
        self, store: InsiderWalletStore, db: DatabaseManager
    ) -> None:
        opening = [
            make_trade("f-1", "0xb1", minutes=0, usd="150", outcome="Yes", market_id="f-m"),
            make_trade("f-2", "0xb2", minutes=1, usd="150", outcome="No", market_id="f-m"),
            make_trade("f-3", WALLET, minutes=2, usd="200", outcome="Yes", market_id="f-m"),
        ]
        await runner_for(store).run(opening)
        assert await badge_types(db, WALLET) == []

        grown = MarketObservationEvent(
            market_id="f-m",
            timestamp=T0 + timedelta(hours=23),
            prices={"Yes": Decimal("0.5")},
            volume=Decimal("30000"),
        )
        summary = await runner_for(store).run([], [resolve("f-m")], [grown])

        assert summary.resolutions_applied == 1
        # $500 traded by the third print, $30,000 at resolution: 60x.
        assert await badge_pairs(db, WALLET) == [("FIRST_MOVER", "f-3")]


class TestRejections:
    @pytest.mark.asyncio
    async def test_stored_trade_replayed_with_different_fields(
        self, store: InsiderWalletStore, db: DatabaseManager
    ) -> None:
        await runner_for(store).run(base_trades())
        altered = make_trade("t-w", WALLET, minutes=10, usd="1200", price="0.09", outcome="Yes")

        summary = await runner_for(store).run([altered])

        assert summary.trades_errored == 1
        assert summary.trades_processed == 0
        [stored] = await store.load_wallet_history(WALLET)
        assert stored.price == Decimal("0.08")
        async with db.get_async_session() as session:
            errors = await TradeProcessingErrorRepository(session).list_by_trade("t-w")
        assert [(e.stage, e.error_type) for e in errors] == [("ingest", "ConsistencyError")]

    @pytest.mark.asyncio
    async def test_in_batch_duplicates(self, store: InsiderWalletStore) -> None:
        first = make_trade("t-1", "0xa1", minutes=0, usd="100")
        summary = await runner_for(store).run(
            [first, first, make_trade("t-1", "0xa1", minutes=0, usd="999")]
        )

        assert summary.trades_processed == 1
        assert summary.trades_skipped == 1
        assert summary.trades_errored == 1
        wallet = await store.get_wallet("0xa1")
        assert wallet is not None
        assert wallet.total_volume == Decimal("100")

    @pytest.mark.asyncio
    async def test_in_batch_conflict_keeps_first_arrival(
        self, store: InsiderWalletStore, db: DatabaseManager
    ) -> None:
        original = make_trade("t-1", "0xa1", minutes=5, usd="100")
        earlier_replay = make_trade("t-1", "0xa1", minutes=0, usd="999")

        summary = await runner_for(store).run([original, earlier_replay])

        assert summary.trades_processed == 1
        assert summary.trades_errored == 1
        [stored] = await store.load_wallet_history("0xa1")
        assert (stored.usd_value, stored.ts) == (Decimal("100"), T0 + timedelta(minutes=5))
        async with db.get_async_session() as session:
            errors = await TradeProcessingErrorRepository(session).list_by_trade("t-1")
        assert [(e.stage, e.error_type) for e in errors] == [("ingest", "ConsistencyError")]

    @pytest.mark.asyncio
    async def test_missing_rollup_reported_as_evaluation_error(
        self, store: InsiderWalletStore, db: DatabaseManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(WalletAggregator, "rollup", lambda self, wallet_address: None)

        summary = await runner_for(store).run(base_trades())

        assert summary.trades_processed == 0
        assert summary.trades_errored == 4
        assert summary.badges_awarded == 0
        async with db.get_async_session() as session:
            errors = await TradeProcessingErrorRepository(session).list_by_trade("t-w")
        assert [(e.stage, e.error_type) for e in errors] == [("evaluate", "ConsistencyError")]

    @pytest.mark.asyncio
    async def test_conflicting_resolution_rejected(self, store: InsiderWalletStore) -> None:
        await runner_for(store).run([], [RESOLUTION])
        other = ResolutionEvent(market_id="m-1", resolved_at=RESOLUTION.resolved_at, winning_outcome="No")

        summary = await runner_for(store).run([], [other])

        assert summary.resolutions_rejected == 1
        assert summary.resolutions_applied == 0
        history = await store.load_market_history("m-1")
        assert history.resolution is not None
        assert history.resolution.winning_outcome == "Yes"

    @pytest.mark.asyncio
    async def test_small_trades_skipped(self, store: InsiderWalletStore) -> None:
        summary = await runner_for(store, min_trade_usd=Decimal("150")).run(base_trades())

        assert summary.trades_skipped == 1
        assert summary.trades_processed == 3
        assert await store.get_wallet("0xa1") is None

    @pytest.mark.asyncio
    async def test_commit_failure_is_reported_not_checkpointed(
        self, store: InsiderWalletStore, db: DatabaseManager, fake_redis, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(store, "commit_wallet", AsyncMock(side_effect=TransientStorageError("db down")))
        checkpoints = CheckpointStore(fake_redis)

        summary = await runner_for(store, checkpoints).run(base_trades())

        assert summary.trades_errored == 4
        assert summary.trades_processed == 0
        assert fake_redis.data == {}
        async with db.get_async_session() as session:
            errors = await TradeProcessingErrorRepository(session).list_by_trade("t-w")
        assert [e.stage for e in errors] == ["commit"]


class TestCheckpointedRuns:
    @pytest.mark.asyncio
    async def test_resume_skips_checkpointed_trades(self, store: InsiderWalletStore, fake_redis) -> None:
        checkpoints = CheckpointStore(fake_redis)
        first = await runner_for(store, checkpoints).run(base_trades())
        assert first.trades_processed == 4
        assert fake_redis.data

        second = await runner_for(store, checkpoints).run(base_trades())

        assert second.trades_skipped == 4
        assert second.trades_processed == 0
        assert second.wallets_updated == 0

    @pytest.mark.asyncio
    async def test_backfilled_trade_behind_cursor_is_processed(self, store: InsiderWalletStore, fake_redis) -> None:
        checkpoints = CheckpointStore(fake_redis)
        await runner_for(store, checkpoints).run(base_trades())
        backfill = make_trade("t-old", WALLET, minutes=-30, usd="50", outcome="Yes")

        summary = await runner_for(store, checkpoints).run(base_trades() + [backfill])

        assert summary.trades_skipped == 4
        assert summary.trades_processed == 1
        wallet = await store.get_wallet(WALLET)
        assert wallet is not None
        assert wallet.total_trades == 2
        assert wallet.first_trade_at == T0 - timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_full_recompute_ignores_checkpoints(self, store: InsiderWalletStore, fake_redis) -> None:
        checkpoints = CheckpointStore(fake_redis)
        await runner_for(store, checkpoints).run(base_trades())

        summary = await runner_for(store, checkpoints).run(base_trades(), full_recompute=True)

        assert summary.full_recompute is True
        assert summary.trades_processed == 4
        assert summary.trades_skipped == 0
        assert summary.badges_awarded == 0
        wallet = await store.get_wallet(WALLET)
        assert wallet is not None
        assert wallet.total_trades == 1


class TestDryRun:
    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, store: InsiderWalletStore, db: DatabaseManager, fake_redis) -> None:
        checkpoints = CheckpointStore(fake_redis)
        summary = await runner_for(store, checkpoints, dry_run=True).run(base_trades(), [RESOLUTION])

        assert summary.dry_run is True
        assert summary.trades_processed == 4
        assert summary.wallets_created == 4
        assert summary.badges_awarded == 3
        assert summary.resolutions_applied == 1
        assert await store.get_wallet(WALLET) is None
        assert (await store.load_market_history("m-1")).resolution is None
        assert fake_redis.data == {}
        async with db.get_async_session() as session:
            assert await ScanRunRepository(session).latest() is None


class TestScanConfig:
    def test_from_settings(self) -> None:
        settings = Settings(DRY_RUN=True)
        config = ScanConfig.from_settings(settings)
        assert config.dry_run is True
        assert config.shard_count == settings.scan.shard_count
        assert config.max_tracked_trades == settings.tracking.max_total_trades

    def test_shard_for_is_stable_and_case_insensitive(self) -> None:
        assert shard_for("0xABC", 16) == shard_for("0xabc", 16)
        assert 0 <= shard_for("0xabc", 16) < 16
