"""Tests for inbound event models."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from polymarket_insider_finder.errors import ValidationError
from polymarket_insider_finder.ingestor.models import (
    MarketObservationEvent,
    ResolutionEvent,
    TradeEvent,
    parse_timestamp,
)


def trade_payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": "t-1",
        "walletAddress": "0xABCDEF0000000000000000000000000000000001",
        "marketId": "m-1",
        "marketQuestion": "Will it rain tomorrow?",
        "marketSlug": "will-it-rain",
        "marketCategory": " Weather ",
        "outcomeName": "Yes",
        "side": "buy",
        "price": "0.25",
        "usdValue": "500",
        "timestamp": "2026-03-01T12:00:00Z",
    }
    payload.update(overrides)
    return payload


class TestParseTimestamp:
    def test_iso_with_z_suffix(self) -> None:
        assert parse_timestamp("2026-03-01T12:00:00Z") == datetime(2026, 3, 1, 12, tzinfo=UTC)

    def test_naive_iso_is_utc(self) -> None:
        assert parse_timestamp("2026-03-01T12:00:00") == datetime(2026, 3, 1, 12, tzinfo=UTC)

    def test_epoch_seconds_and_millis(self) -> None:
        expected = datetime(2026, 3, 1, 12, tzinfo=UTC)
        seconds = int(expected.timestamp())
        assert parse_timestamp(seconds) == expected
        assert parse_timestamp(seconds * 1000) == expected
        assert parse_timestamp(str(seconds)) == expected

    def test_garbage_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_timestamp("yesterday")
        with pytest.raises(ValidationError):
            parse_timestamp(None)

    @pytest.mark.parametrize("value", [10**20, "100000000000000000000", float("nan"), -1e20])
    def test_out_of_range_epoch_rejected(self, value: object) -> None:
        with pytest.raises(ValidationError, match="out of range"):
            parse_timestamp(value)


class TestTradeEvent:
    """Tests for TradeEvent."""

    def test_from_dict_camel_case(self) -> None:
        trade = TradeEvent.from_dict(trade_payload())

        assert trade.trade_id == "t-1"
        assert trade.wallet_address == "0xabcdef0000000000000000000000000000000001"
        assert trade.market_category == "weather"
        assert trade.side == "BUY"
        assert trade.price == Decimal("0.25")
        assert trade.usd_value == Decimal("500")
        assert trade.timestamp == datetime(2026, 3, 1, 12, tzinfo=UTC)
        assert trade.is_buy

    def test_from_dict_snake_case(self) -> None:
        trade = TradeEvent.from_dict(
            {
                "trade_id": "t-2",
                "wallet_address": "0xaa",
                "market_id": "m-2",
                "outcome": "No",
                "side": "SELL",
                "price": 0.6,
                "usd_value": 12,
                "ts": "2026-03-01T00:00:00+00:00",
            }
        )
        assert trade.trade_id == "t-2"
        assert trade.side == "SELL"
        assert trade.market_question == ""
        assert trade.market_category is None

    def test_shares_derived_from_notional(self) -> None:
        trade = TradeEvent.from_dict(trade_payload())
        assert trade.shares == Decimal("2000")

    def test_shares_reported(self) -> None:
        trade = TradeEvent.from_dict(trade_payload(size="1500"))
        assert trade.shares == Decimal("1500")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"price": "1.5"},
            {"price": "-0.1"},
            {"price": "abc"},
            {"usdValue": "-1"},
            {"side": "HOLD"},
            {"id": ""},
            {"walletAddress": None},
            {"timestamp": "not-a-time"},
        ],
    )
    def test_invalid_payloads_rejected(self, overrides: dict[str, object]) -> None:
        with pytest.raises(ValidationError):
            TradeEvent.from_dict(trade_payload(**overrides))

    def test_frozen(self) -> None:
        trade = TradeEvent.from_dict(trade_payload())
        with pytest.raises(AttributeError):
            trade.price = Decimal("0.5")  # type: ignore[misc]

    def test_sort_key_breaks_ties_by_trade_id(self) -> None:
        a = TradeEvent.from_dict(trade_payload(id="b"))
        b = TradeEvent.from_dict(trade_payload(id="a"))
        assert sorted([a, b], key=lambda t: t.sort_key)[0].trade_id == "a"


class TestResolutionEvent:
    def test_from_dict(self) -> None:
        res = ResolutionEvent.from_dict(
            {"marketId": "m-1", "resolvedAt": "2026-03-02T00:00:00Z", "winningOutcomeName": "Yes"}
        )
        assert res.market_id == "m-1"
        assert res.winning_outcome == "Yes"
        assert res.resolved_at == datetime(2026, 3, 2, tzinfo=UTC)

    def test_missing_winner_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ResolutionEvent.from_dict({"marketId": "m-1", "resolvedAt": "2026-03-02T00:00:00Z"})


class TestMarketObservationEvent:
    def test_from_dict(self) -> None:
        obs = MarketObservationEvent.from_dict(
            {
                "marketId": "m-1",
                "timestamp": "2026-03-01T12:30:00Z",
                "prices": {"Yes": "0.4", "No": 0.6},
                "volume": "10000",
            }
        )
        assert obs.prices == {"Yes": Decimal("0.4"), "No": Decimal("0.6")}
        assert obs.volume == Decimal("10000")

    def test_volume_optional(self) -> None:
        obs = MarketObservationEvent.from_dict(
            {"marketId": "m-1", "timestamp": "2026-03-01T12:30:00Z", "prices": {"Yes": "0.4"}}
        )
        assert obs.volume is None

    def test_price_out_of_range_rejected(self) -> None:
        with pytest.raises(ValidationError):
            MarketObservationEvent.from_dict(
                {"marketId": "m-1", "timestamp": "2026-03-01T12:30:00Z", "prices": {"Yes": "1.2"}}
            )

    def test_prices_must_be_mapping(self) -> None:
        with pytest.raises(ValidationError):
            MarketObservationEvent.from_dict(
                {"marketId": "m-1", "timestamp": "2026-03-01T12:30:00Z", "prices": ["0.4"]}
            )
