"""Data models for inbound market-data events.

The market-data collector delivers three kinds of events: executed trades,
market resolutions, and point-in-time market observations. Payloads use the
collector's camelCase keys; snake_case keys are accepted as well.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Literal

from polymarket_insider_finder.errors import ValidationError

_ZERO = Decimal("0")
_ONE = Decimal("1")


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _required_str(data: dict[str, Any], *keys: str) -> str:
    value = _first(data, *keys)
    if value is None:
        raise ValidationError(f"Missing required field {keys[0]!r}")
    return str(value)


def _optional_str(data: dict[str, Any], *keys: str) -> str | None:
    value = _first(data, *keys)
    return str(value) if value is not None else None


def parse_decimal(value: Any, *, field_name: str) -> Decimal:
    """Parse a decimal from a number or numeric string."""
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be numeric")
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field_name} must be numeric, got {value!r}") from e
    if not parsed.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    return parsed


def parse_timestamp(value: Any, *, field_name: str = "timestamp") -> datetime:
    """Parse an ISO-8601 string or epoch seconds/milliseconds into an aware UTC datetime."""
    if isinstance(value, datetime):
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        ts_f = float(value)
        if ts_f > 1e12:
            ts_f /= 1000.0
        try:
            return datetime.fromtimestamp(ts_f, tz=UTC)
        except (OverflowError, OSError, ValueError) as e:
            raise ValidationError(f"{field_name} is out of range: {value!r}") from e
    if isinstance(value, str):
        raw = value.strip()
        if raw.isdigit():
            return parse_timestamp(int(raw), field_name=field_name)
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"{field_name} is not a valid timestamp: {value!r}") from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    raise ValidationError(f"{field_name} is required")


@dataclass(frozen=True)
class TradeEvent:
    """A single executed trade by one wallet on one outcome of one market.

    Trades are immutable facts keyed by ``trade_id``; the only field that
    changes later (``won``) lives on the stored trade record, not here.
    """

    trade_id: str
    wallet_address: str
    market_id: str
    market_question: str
    outcome: str
    side: Literal["BUY", "SELL"]
    price: Decimal  # implied probability, 0-1
    usd_value: Decimal
    timestamp: datetime
    market_slug: str | None = None
    market_category: str | None = None
    size: Decimal | None = None  # shares; derived from usd_value / price when absent
    transaction_hash: str | None = None

    def __post_init__(self) -> None:
        if not self.trade_id:
            raise ValidationError("trade_id is required")
        if not self.wallet_address:
            raise ValidationError("wallet_address is required")
        if not self.market_id:
            raise ValidationError("market_id is required")
        if self.side not in ("BUY", "SELL"):
            raise ValidationError(f"side must be BUY or SELL, got {self.side!r}")
        if not (_ZERO <= self.price <= _ONE):
            raise ValidationError(f"price must be within [0, 1], got {self.price}")
        if self.usd_value < 0:
            raise ValidationError(f"usd_value must be >= 0, got {self.usd_value}")
        if self.timestamp.tzinfo is None:
            raise ValidationError("timestamp must be timezone-aware")
        # Addresses are case-insensitive hex; keep one canonical form.
        object.__setattr__(self, "wallet_address", self.wallet_address.lower())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TradeEvent:
        """Create a TradeEvent from an inbound trade payload.

        Raises:
            ValidationError: If a required field is missing or out of range.
        """
        side_raw = _required_str(data, "side").upper()
        size_raw = _first(data, "size", "shares")
        category = _optional_str(data, "marketCategory", "market_category")
        return cls(
            trade_id=_required_str(data, "id", "trade_id", "tradeId"),
            wallet_address=_required_str(data, "walletAddress", "wallet_address", "proxyWallet"),
            market_id=_required_str(data, "marketId", "market_id", "conditionId"),
            market_question=str(_first(data, "marketQuestion", "market_question") or ""),
            market_slug=_optional_str(data, "marketSlug", "market_slug"),
            market_category=category.strip().lower() if category else None,
            outcome=_required_str(data, "outcomeName", "outcome_name", "outcome"),
            side=side_raw,  # type: ignore[arg-type]
            price=parse_decimal(_first(data, "price"), field_name="price"),
            usd_value=parse_decimal(_first(data, "usdValue", "usd_value"), field_name="usdValue"),
            timestamp=parse_timestamp(_first(data, "timestamp", "ts")),
            size=parse_decimal(size_raw, field_name="size") if size_raw is not None else None,
            transaction_hash=_optional_str(data, "transactionHash", "transaction_hash"),
        )

    @property
    def is_buy(self) -> bool:
        """Return True if this is a buy trade."""
        return self.side == "BUY"

    @property
    def shares(self) -> Decimal:
        """Number of outcome shares, derived from notional when not reported."""
        if self.size is not None:
            return self.size
        if self.price > 0:
            return self.usd_value / self.price
        return _ZERO

    @property
    def sort_key(self) -> tuple[datetime, str]:
        """Deterministic processing order: timestamp, then trade id."""
        return (self.timestamp, self.trade_id)


@dataclass(frozen=True)
class ResolutionEvent:
    """Fixes the winning outcome of a market. A market resolves exactly once."""

    market_id: str
    resolved_at: datetime
    winning_outcome: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResolutionEvent:
        return cls(
            market_id=_required_str(data, "marketId", "market_id", "conditionId"),
            resolved_at=parse_timestamp(_first(data, "resolvedAt", "resolved_at"), field_name="resolvedAt"),
            winning_outcome=_required_str(
                data, "winningOutcomeName", "winning_outcome_name", "winningOutcome", "winner"
            ),
        )


@dataclass(frozen=True)
class MarketObservationEvent:
    """A point sample of a market's per-outcome prices and cumulative volume."""

    market_id: str
    timestamp: datetime
    prices: dict[str, Decimal]
    volume: Decimal | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MarketObservationEvent:
        raw_prices = _first(data, "prices", "pricesByOutcome", "prices_by_outcome") or {}
        if not isinstance(raw_prices, dict):
            raise ValidationError("prices must be an object keyed by outcome name")
        prices: dict[str, Decimal] = {}
        for outcome, raw in raw_prices.items():
            price = parse_decimal(raw, field_name=f"prices[{outcome}]")
            if not (_ZERO <= price <= _ONE):
                raise ValidationError(f"price for {outcome!r} must be within [0, 1], got {price}")
            prices[str(outcome)] = price
        volume_raw = _first(data, "volume")
        volume = parse_decimal(volume_raw, field_name="volume") if volume_raw is not None else None
        if volume is not None and volume < 0:
            raise ValidationError(f"volume must be >= 0, got {volume}")
        return cls(
            market_id=_required_str(data, "marketId", "market_id", "conditionId"),
            timestamp=parse_timestamp(_first(data, "timestamp", "ts")),
            prices=prices,
            volume=volume,
        )
