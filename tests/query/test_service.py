"""Tests for wallet listing and detail queries."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from polymarket_insider_finder.config import QuerySettings
from polymarket_insider_finder.detector.models import BadgeAssignment, BadgeType
from polymarket_insider_finder.errors import ValidationError
from polymarket_insider_finder.ingestor.models import TradeEvent
from polymarket_insider_finder.profiler.aggregator import WalletAggregator
from polymarket_insider_finder.query.service import WalletQuery, WalletQueryService
from polymarket_insider_finder.storage.database import DatabaseManager
from polymarket_insider_finder.storage.store import InsiderWalletStore, TradeResolution, WalletCommit

NOW = datetime(2026, 3, 10, 12, tzinfo=UTC)
WALLET_A = "0x000000000000000000000000000000000000000a"
WALLET_B = "0x000000000000000000000000000000000000000b"
WALLET_C = "0x000000000000000000000000000000000000000c"
WALLET_OLD = "0x00000000000000000000000000000000000000d0"
WALLET_WHALE = "0x00000000000000000000000000000000000000e0"


def make_trade(
    trade_id: str,
    wallet: str,
    *,
    days_ago: float,
    usd: str,
    price: str = "0.25",
    market_id: str = "m-1",
    category: str | None = "politics",
) -> TradeEvent:
    return TradeEvent(
        trade_id=trade_id,
        wallet_address=wallet,
        market_id=market_id,
        market_question=f"Question {market_id}?",
        outcome="Yes",
        side="BUY",
        price=Decimal(price),
        usd_value=Decimal(usd),
        timestamp=NOW - timedelta(days=days_ago),
        market_category=category,
    )


async def seed_wallet(
    store: InsiderWalletStore,
    trades: list[TradeEvent],
    *,
    outcomes: dict[str, bool] | None = None,
    badges: list[BadgeType] | None = None,
    max_tracked_trades: int = 50,
) -> None:
    agg = WalletAggregator(max_tracked_trades=max_tracked_trades)
    for trade in trades:
        agg.apply_trade(trade)
    resolutions = []
    for trade in trades:
        if outcomes and trade.trade_id in outcomes:
            agg.apply_resolution(trade, outcomes[trade.trade_id])
            resolutions.append(
                TradeResolution(trade=trade, won=outcomes[trade.trade_id], resolved_at=NOW - timedelta(hours=1))
            )
    rollup = agg.rollup(trades[0].wallet_address)
    assert rollup is not None
    assignments = [
        BadgeAssignment(
            wallet_address=rollup.wallet_address,
            badge_type=badge_type,
            trade_id=trades[0].trade_id,
            reason=f"{badge_type.value} reason",
            earned_at=trades[0].timestamp,
            metadata={"source": "test"},
        )
        for badge_type in badges or []
    ]
    await store.commit_wallet(
        WalletCommit(rollup=rollup, new_trades=trades, resolutions=resolutions, badges=assignments)
    )


@pytest.fixture
async def seeded(store: InsiderWalletStore) -> InsiderWalletStore:
    await seed_wallet(
        store,
        [
            make_trade("a-1", WALLET_A, days_ago=2, usd="1000", market_id="m-1"),
            make_trade("a-2", WALLET_A, days_ago=1, usd="500", market_id="m-2"),
        ],
        outcomes={"a-1": True},
        badges=[BadgeType.BIG_BET],
    )
    await seed_wallet(
        store,
        [make_trade("b-1", WALLET_B, days_ago=3, usd="200", category="sports", market_id="m-3")],
        outcomes={"b-1": False},
        badges=[BadgeType.LONG_SHOT],
    )
    await seed_wallet(store, [make_trade("c-1", WALLET_C, days_ago=5, usd="50")])
    await seed_wallet(
        store,
        [make_trade("d-1", WALLET_OLD, days_ago=40, usd="5000")],
        badges=[BadgeType.BIG_BET],
    )
    await seed_wallet(
        store,
        [make_trade(f"e-{i}", WALLET_WHALE, days_ago=1, usd="100") for i in range(3)],
        badges=[BadgeType.BIG_BET],
        max_tracked_trades=2,
    )
    return store


@pytest.fixture
def service(db: DatabaseManager) -> WalletQueryService:
    return WalletQueryService(db, clock=lambda: NOW)


def addresses(response: dict) -> list[str]:
    return [w["address"] for w in response["data"]]


class TestWalletQueryParsing:
    def test_defaults(self) -> None:
        query = WalletQuery.from_params({})
        assert query.timeframe_days == 30
        assert query.limit == 25
        assert query.page == 1
        assert query.sort == "firstTradeAt"
        assert query.order == "desc"

    def test_clamps_and_drops(self) -> None:
        query = WalletQuery.from_params(
            {
                "timeframe": "-3",
                "badges": "big_bet, LONG_SHOT ,nonsense,BIG_BET",
                "categories": "Politics,,politics",
                "page": "0",
                "limit": "500",
                "sort": "bogus",
                "order": "ASC",
            }
        )
        assert query.timeframe_days == 30
        assert query.badges == (BadgeType.BIG_BET, BadgeType.LONG_SHOT)
        assert query.categories == ("politics",)
        assert query.page == 1
        assert query.limit == 50
        assert query.sort == "firstTradeAt"
        assert query.order == "asc"

    def test_invalid_size_range(self) -> None:
        with pytest.raises(ValidationError):
            WalletQuery.from_params({"minSize": "500", "maxSize": "100"})

    def test_unparseable_values_fall_back(self) -> None:
        query = WalletQuery.from_params({"limit": "ten", "minSize": "lots", "maxSize": "-5"})
        assert query.limit == 25
        assert query.min_size is None
        assert query.max_size is None


class TestListWallets:
    @pytest.mark.asyncio
    async def test_no_wallet_in_timeframe_returns_empty(
        self, store: InsiderWalletStore, service: WalletQueryService
    ) -> None:
        await seed_wallet(store, [make_trade("d-1", WALLET_OLD, days_ago=20, usd="5000")], badges=[BadgeType.BIG_BET])

        response = await service.query_wallets({"badges": "BIG_BET,LONG_SHOT", "timeframe": "7"})

        assert response["success"] is True
        assert response["data"] == []
        assert response["meta"]["total"] == 0
        assert response["meta"]["totalPages"] == 0
        assert response["meta"]["filters"]["badges"] == ["BIG_BET", "LONG_SHOT"]

    @pytest.mark.asyncio
    async def test_default_listing_excludes_old_and_untracked(self, seeded, service: WalletQueryService) -> None:
        response = await service.query_wallets({})

        assert response["success"] is True
        assert addresses(response) == [WALLET_A, WALLET_B, WALLET_C]
        assert response["meta"]["total"] == 3
        assert response["meta"]["filters"] == {
            "timeframe": 30,
            "badges": [],
            "categories": [],
            "minSize": None,
            "maxSize": None,
        }

    @pytest.mark.asyncio
    async def test_summary_shape(self, seeded, service: WalletQueryService) -> None:
        response = await service.query_wallets({"limit": "1"})
        [summary] = response["data"]

        assert summary["address"] == WALLET_A
        assert summary["totalTrades"] == 2
        assert summary["totalVolume"] == 1500.0
        assert summary["winRate"] == 1.0
        assert summary["badges"] == [
            {"type": "BIG_BET", "reason": "BIG_BET reason", "earnedAt": (NOW - timedelta(days=2)).isoformat()}
        ]
        assert [t["id"] for t in summary["recentTrades"]] == ["a-2", "a-1"]
        assert summary["recentTrades"][1]["won"] is True

    @pytest.mark.asyncio
    async def test_recent_trades_are_capped(self, store: InsiderWalletStore, db: DatabaseManager) -> None:
        await seed_wallet(store, [make_trade(f"t-{i}", WALLET_A, days_ago=i + 1, usd="10") for i in range(4)])
        service = WalletQueryService(db, settings=QuerySettings(QUERY_RECENT_TRADES=2), clock=lambda: NOW)

        response = await service.query_wallets({})

        assert [t["id"] for t in response["data"][0]["recentTrades"]] == ["t-0", "t-1"]

    @pytest.mark.asyncio
    async def test_badge_filter_matches_any(self, seeded, service: WalletQueryService) -> None:
        response = await service.query_wallets({"badges": "big_bet,LONG_SHOT,unknown"})
        assert addresses(response) == [WALLET_A, WALLET_B]

        response = await service.query_wallets({"badges": "LONG_SHOT"})
        assert addresses(response) == [WALLET_B]

    @pytest.mark.asyncio
    async def test_category_filter(self, seeded, service: WalletQueryService) -> None:
        response = await service.query_wallets({"categories": "Sports,underwater-basketweaving"})
        assert addresses(response) == [WALLET_B]
        assert response["meta"]["filters"]["categories"] == ["sports"]

    @pytest.mark.asyncio
    async def test_unknown_categories_only_leaves_filter_off(self, seeded, service: WalletQueryService) -> None:
        response = await service.query_wallets({"categories": "underwater-basketweaving"})
        assert addresses(response) == [WALLET_A, WALLET_B, WALLET_C]
        assert response["meta"]["filters"]["categories"] == []

    @pytest.mark.asyncio
    async def test_size_range(self, seeded, service: WalletQueryService) -> None:
        response = await service.query_wallets({"minSize": "100", "maxSize": "1000"})
        assert addresses(response) == [WALLET_B]
        assert response["meta"]["filters"]["minSize"] == 100.0

    @pytest.mark.asyncio
    async def test_invalid_size_range_fails_softly(self, seeded, service: WalletQueryService) -> None:
        response = await service.query_wallets({"minSize": "500", "maxSize": "100"})

        assert response["success"] is False
        assert response["data"] == []
        assert response["meta"]["total"] == 0
        assert "minSize" in response["error"]

    @pytest.mark.asyncio
    async def test_sort_by_win_rate_puts_unresolved_last(self, seeded, service: WalletQueryService) -> None:
        desc = await service.query_wallets({"sort": "winRate", "order": "desc"})
        asc = await service.query_wallets({"sort": "winRate", "order": "asc"})

        assert addresses(desc) == [WALLET_A, WALLET_B, WALLET_C]
        assert addresses(asc) == [WALLET_B, WALLET_A, WALLET_C]

    @pytest.mark.asyncio
    async def test_sort_by_volume(self, seeded, service: WalletQueryService) -> None:
        response = await service.query_wallets({"sort": "totalVolume", "order": "asc"})
        assert addresses(response) == [WALLET_C, WALLET_B, WALLET_A]

    @pytest.mark.asyncio
    async def test_ties_break_on_address(self, store: InsiderWalletStore, service: WalletQueryService) -> None:
        await seed_wallet(store, [make_trade("y-1", WALLET_B, days_ago=1, usd="10")])
        await seed_wallet(store, [make_trade("x-1", WALLET_A, days_ago=1, usd="10")])

        response = await service.query_wallets({"sort": "totalTrades"})
        assert addresses(response) == [WALLET_A, WALLET_B]

    @pytest.mark.asyncio
    async def test_pagination(self, seeded, service: WalletQueryService) -> None:
        page2 = await service.query_wallets({"limit": "2", "page": "2"})
        assert addresses(page2) == [WALLET_C]
        assert page2["meta"]["total"] == 3
        assert page2["meta"]["totalPages"] == 2
        assert page2["meta"]["page"] == 2

        beyond = await service.query_wallets({"limit": "2", "page": "9"})
        assert beyond["success"] is True
        assert beyond["data"] == []
        assert beyond["meta"]["total"] == 3


class TestWalletDetail:
    @pytest.mark.asyncio
    async def test_detail_by_address(self, seeded, service: WalletQueryService) -> None:
        detail = await service.wallet_detail_response(WALLET_A.upper().replace("0X", "0x"))

        assert detail["success"] is True
        assert detail["wallet"]["address"] == WALLET_A
        assert detail["wallet"]["isTracked"] is True
        assert [t["id"] for t in detail["trades"]] == ["a-2", "a-1"]
        assert detail["trades"][1]["badges"] == [{"type": "BIG_BET", "reason": "BIG_BET reason"}]
        assert detail["trades"][1]["pnl"] == 3000.0
        assert detail["badges"][0]["metadata"] == {"source": "test"}
        assert [p["marketId"] for p in detail["resolvedPositions"]] == ["m-1"]
        assert [p["marketId"] for p in detail["activePositions"]] == ["m-2"]
        assert detail["resolvedPositions"][0]["won"] is True
        assert detail["stats"] == {
            "totalPnl": 3000.0,
            "avgTradeSize": 750.0,
            "largestTrade": 1000.0,
            "uniqueMarkets": 2,
            "categoryCounts": {"politics": 2},
        }
        assert detail["links"]["polymarket"].endswith(WALLET_A)
        assert detail["links"]["polygonscan"].endswith(WALLET_A)

    @pytest.mark.asyncio
    async def test_detail_by_id(self, seeded, service: WalletQueryService) -> None:
        wallet = await seeded.get_wallet(WALLET_B)
        assert wallet is not None

        detail = await service.wallet_detail_response(str(wallet.id))

        assert detail["success"] is True
        assert detail["wallet"]["address"] == WALLET_B
        assert detail["wallet"]["winRate"] == 0.0

    @pytest.mark.asyncio
    async def test_untracked_wallet_still_has_detail(self, seeded, service: WalletQueryService) -> None:
        detail = await service.wallet_detail_response(WALLET_WHALE)
        assert detail["success"] is True
        assert detail["wallet"]["isTracked"] is False

    @pytest.mark.asyncio
    async def test_unknown_wallet(self, seeded, service: WalletQueryService) -> None:
        detail = await service.wallet_detail_response("0xnobody")

        assert detail["success"] is False
        assert detail["wallet"] is None
        assert detail["trades"] == []
        assert detail["stats"]["uniqueMarkets"] == 0
        assert detail["error"] == "Wallet not found"
