"""Repository pattern implementations for data access.

This module provides data access abstractions for insider trades, wallet
rollups, badges, stored market history, and scan bookkeeping.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from polymarket_insider_finder.detector.models import BadgeAssignment, BadgeType
from polymarket_insider_finder.errors import ConsistencyError
from polymarket_insider_finder.ingestor.models import (
    MarketObservationEvent,
    ResolutionEvent,
    TradeEvent,
)
from polymarket_insider_finder.profiler.aggregator import WalletRollup
from polymarket_insider_finder.storage.models import (
    InsiderBadgeModel,
    InsiderTradeModel,
    InsiderWalletModel,
    MarketObservationModel,
    MarketResolutionModel,
    ScanRunModel,
    TradeProcessingErrorModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_IN_CHUNK = 500
_AMOUNT_TOLERANCE = Decimal("0.000001")
_WIN_RATE_QUANTUM = Decimal("0.000001")


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def _as_utc_opt(value: datetime | None) -> datetime | None:
    return _as_utc(value) if value is not None else None


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _chunks(values: Sequence[str], size: int = _IN_CHUNK) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def compute_pnl(trade: TradeEvent, won: bool) -> Decimal:
    """Realized PnL of a resolved position: shares pay 1 if won, 0 otherwise."""
    shares = trade.shares
    if won:
        return shares * (Decimal(1) - trade.price)
    return -(shares * trade.price)


@dataclass
class InsiderTradeDTO:
    """Data transfer object for stored trades."""

    trade_id: str
    wallet_address: str
    market_id: str
    market_question: str
    market_slug: str | None
    market_category: str | None
    outcome: str
    side: str
    price: Decimal
    size: Decimal
    usd_value: Decimal
    ts: datetime
    transaction_hash: str | None = None
    won: bool | None = None
    resolved_at: datetime | None = None
    pnl: Decimal | None = None
    market_rank: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: InsiderTradeModel) -> InsiderTradeDTO:
        return cls(
            trade_id=model.trade_id,
            wallet_address=model.wallet_address,
            market_id=model.market_id,
            market_question=model.market_question,
            market_slug=model.market_slug,
            market_category=model.market_category,
            outcome=model.outcome,
            side=model.side,
            price=model.price,
            size=model.size,
            usd_value=model.usd_value,
            ts=_as_utc(model.ts),
            transaction_hash=model.transaction_hash,
            won=model.won,
            resolved_at=_as_utc_opt(model.resolved_at),
            pnl=model.pnl,
            market_rank=model.market_rank,
            created_at=_as_utc_opt(model.created_at),
        )

    def to_event(self) -> TradeEvent:
        return TradeEvent(
            trade_id=self.trade_id,
            wallet_address=self.wallet_address,
            market_id=self.market_id,
            market_question=self.market_question,
            outcome=self.outcome,
            side=self.side,  # type: ignore[arg-type]
            price=Decimal(self.price),
            usd_value=Decimal(self.usd_value),
            timestamp=self.ts,
            market_slug=self.market_slug,
            market_category=self.market_category,
            size=Decimal(self.size),
            transaction_hash=self.transaction_hash,
        )

    def conflicting_fields(self, trade: TradeEvent) -> list[str]:
        """Immutable fields on which ``trade`` disagrees with this stored trade."""
        diffs: list[str] = []
        if self.wallet_address != trade.wallet_address:
            diffs.append("wallet_address")
        if self.market_id != trade.market_id:
            diffs.append("market_id")
        if self.outcome != trade.outcome:
            diffs.append("outcome")
        if self.side != trade.side:
            diffs.append("side")
        if abs(Decimal(self.price) - trade.price) > _AMOUNT_TOLERANCE:
            diffs.append("price")
        if abs(Decimal(self.usd_value) - trade.usd_value) > _AMOUNT_TOLERANCE:
            diffs.append("usd_value")
        if self.ts != trade.timestamp:
            diffs.append("timestamp")
        return diffs


class TradeRepository:
    """Repository for stored trades."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_trade_id(self, trade_id: str) -> InsiderTradeDTO | None:
        result = await self.session.execute(
            select(InsiderTradeModel).where(InsiderTradeModel.trade_id == trade_id)
        )
        model = result.scalar_one_or_none()
        return InsiderTradeDTO.from_model(model) if model else None

    async def get_many(self, trade_ids: Sequence[str]) -> dict[str, InsiderTradeDTO]:
        found: dict[str, InsiderTradeDTO] = {}
        for chunk in _chunks(list(dict.fromkeys(trade_ids))):
            result = await self.session.execute(
                select(InsiderTradeModel).where(InsiderTradeModel.trade_id.in_(chunk))
            )
            for model in result.scalars():
                found[model.trade_id] = InsiderTradeDTO.from_model(model)
        return found

    async def insert_new(self, trades: Sequence[TradeEvent]) -> int:
        """Insert trades not yet stored; existing trade ids are left untouched.

        Returns:
            Number of rows inserted.
        """
        if not trades:
            return 0
        now = datetime.now(UTC)
        rows = [
            {
                "trade_id": t.trade_id,
                "wallet_address": t.wallet_address,
                "market_id": t.market_id,
                "market_question": t.market_question,
                "market_slug": t.market_slug,
                "market_category": t.market_category,
                "outcome": t.outcome,
                "side": t.side,
                "price": t.price,
                "size": t.shares,
                "usd_value": t.usd_value,
                "ts": t.timestamp,
                "transaction_hash": t.transaction_hash,
                "created_at": now,
            }
            for t in trades
        ]
        stmt = _insert_for(self.session, InsiderTradeModel).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["trade_id"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return max(result.rowcount or 0, 0)

    async def mark_resolved(
        self,
        trade_id: str,
        *,
        won: bool,
        resolved_at: datetime,
        pnl: Decimal,
        market_rank: int | None,
    ) -> bool:
        """Fill a trade's resolution fields (``won`` moves only from null).

        Returns:
            True if the trade was updated, False if it already carried this outcome.

        Raises:
            ConsistencyError: If the trade is unknown or already resolved the other way.
        """
        result = await self.session.execute(
            select(InsiderTradeModel).where(InsiderTradeModel.trade_id == trade_id)
        )
        model = result.scalar_one_or_none()
        if model is None:
            raise ConsistencyError(f"Cannot resolve unknown trade {trade_id}")
        if model.won is not None:
            if model.won != won:
                raise ConsistencyError(
                    f"Trade {trade_id} already resolved as won={model.won}; refusing won={won}"
                )
            return False
        model.won = won
        model.resolved_at = resolved_at
        model.pnl = pnl
        model.market_rank = market_rank
        await self.session.flush()
        return True

    async def list_by_wallet(self, wallet_address: str) -> list[InsiderTradeDTO]:
        result = await self.session.execute(
            select(InsiderTradeModel)
            .where(InsiderTradeModel.wallet_address == wallet_address.lower())
            .order_by(InsiderTradeModel.ts.asc(), InsiderTradeModel.trade_id.asc())
        )
        return [InsiderTradeDTO.from_model(m) for m in result.scalars()]

    async def list_by_market(self, market_id: str, *, unresolved_only: bool = False) -> list[InsiderTradeDTO]:
        stmt = select(InsiderTradeModel).where(InsiderTradeModel.market_id == market_id)
        if unresolved_only:
            stmt = stmt.where(InsiderTradeModel.won.is_(None))
        stmt = stmt.order_by(InsiderTradeModel.ts.asc(), InsiderTradeModel.trade_id.asc())
        result = await self.session.execute(stmt)
        return [InsiderTradeDTO.from_model(m) for m in result.scalars()]

    async def category_win_rates(self) -> dict[str | None, Decimal]:
        """Historical win rate per category across tracked wallets' resolved trades."""
        won_count = sa.func.sum(sa.case((InsiderTradeModel.won.is_(True), 1), else_=0))
        stmt = (
            select(
                InsiderTradeModel.market_category,
                sa.func.count(InsiderTradeModel.trade_id),
                won_count,
            )
            .join(InsiderWalletModel, InsiderWalletModel.address == InsiderTradeModel.wallet_address)
            .where(InsiderWalletModel.is_tracked.is_(True))
            .where(InsiderTradeModel.won.is_not(None))
            .group_by(InsiderTradeModel.market_category)
        )
        result = await self.session.execute(stmt)
        rates: dict[str | None, Decimal] = {}
        for category, resolved, won in result.all():
            if resolved:
                rates[category] = Decimal(int(won or 0)) / Decimal(int(resolved))
        return rates

    async def distinct_categories(self) -> set[str]:
        result = await self.session.execute(
            select(InsiderTradeModel.market_category)
            .where(InsiderTradeModel.market_category.is_not(None))
            .distinct()
        )
        return {row[0] for row in result.all()}


@dataclass
class InsiderWalletDTO:
    """Data transfer object for wallet rollups."""

    id: int
    address: str
    first_trade_at: datetime
    last_trade_at: datetime
    total_trades: int
    total_volume: Decimal
    resolved_trades: int
    won_trades: int
    win_rate: Decimal | None
    is_tracked: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: InsiderWalletModel) -> InsiderWalletDTO:
        return cls(
            id=model.id,
            address=model.address,
            first_trade_at=_as_utc(model.first_trade_at),
            last_trade_at=_as_utc(model.last_trade_at),
            total_trades=model.total_trades,
            total_volume=model.total_volume,
            resolved_trades=model.resolved_trades,
            won_trades=model.won_trades,
            win_rate=model.win_rate,
            is_tracked=model.is_tracked,
            created_at=_as_utc_opt(model.created_at),
            updated_at=_as_utc_opt(model.updated_at),
        )


class WalletRepository:
    """Repository for wallet rollups."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_address(self, address: str) -> InsiderWalletDTO | None:
        result = await self.session.execute(
            select(InsiderWalletModel).where(InsiderWalletModel.address == address.lower())
        )
        model = result.scalar_one_or_none()
        return InsiderWalletDTO.from_model(model) if model else None

    async def get_by_id(self, wallet_id: int) -> InsiderWalletDTO | None:
        result = await self.session.execute(
            select(InsiderWalletModel).where(InsiderWalletModel.id == wallet_id)
        )
        model = result.scalar_one_or_none()
        return InsiderWalletDTO.from_model(model) if model else None

    async def upsert_rollup(self, rollup: WalletRollup) -> tuple[InsiderWalletDTO, bool]:
        """Persist a rollup, creating the wallet row on first sighting.

        Returns:
            The stored wallet and whether it was newly created.
        """
        result = await self.session.execute(
            select(InsiderWalletModel).where(InsiderWalletModel.address == rollup.wallet_address)
        )
        model = result.scalar_one_or_none()
        created = model is None
        if model is None:
            model = InsiderWalletModel(address=rollup.wallet_address)
            self.session.add(model)

        win_rate = rollup.win_rate
        model.first_trade_at = rollup.first_trade_at
        model.last_trade_at = rollup.last_trade_at
        model.total_trades = rollup.total_trades
        model.total_volume = rollup.total_volume
        model.resolved_trades = rollup.resolved_trades
        model.won_trades = rollup.won_trades
        model.win_rate = (
            (Decimal(rollup.won_trades) / Decimal(rollup.resolved_trades)).quantize(_WIN_RATE_QUANTUM)
            if win_rate is not None
            else None
        )
        model.is_tracked = rollup.is_tracked
        model.updated_at = datetime.now(UTC)
        await self.session.flush()
        return InsiderWalletDTO.from_model(model), created


@dataclass
class InsiderBadgeDTO:
    """Data transfer object for stored badges."""

    id: int
    wallet_address: str
    badge_type: str
    trade_id: str
    reason: str
    earned_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: InsiderBadgeModel) -> InsiderBadgeDTO:
        return cls(
            id=model.id,
            wallet_address=model.wallet_address,
            badge_type=model.badge_type,
            trade_id=model.trade_id,
            reason=model.reason,
            earned_at=_as_utc(model.earned_at),
            metadata=json.loads(model.metadata_json or "{}"),
            created_at=_as_utc_opt(model.created_at),
        )


class BadgeRepository:
    """Repository for badges (insert-only)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_new(self, badges: Sequence[BadgeAssignment]) -> list[BadgeAssignment]:
        """Insert badges whose trigger is not stored yet.

        Wallet-scoped badge types are kept to one per wallet.

        Returns:
            The badges actually inserted.
        """
        if not badges:
            return []
        wallets = sorted({b.wallet_address for b in badges})
        result = await self.session.execute(
            select(
                InsiderBadgeModel.wallet_address,
                InsiderBadgeModel.badge_type,
                InsiderBadgeModel.trade_id,
            ).where(InsiderBadgeModel.wallet_address.in_(wallets))
        )
        seen: set[tuple[str, str, str]] = set()
        scoped: set[tuple[str, str]] = set()
        for wallet, badge_type, trade_id in result.all():
            seen.add((wallet, badge_type, trade_id))
            parsed = BadgeType.parse(badge_type)
            if parsed is not None and parsed.is_wallet_scoped:
                scoped.add((wallet, badge_type))

        fresh: list[BadgeAssignment] = []
        for badge in badges:
            key = (badge.wallet_address, badge.badge_type.value, badge.trade_id)
            if key in seen:
                continue
            if badge.badge_type.is_wallet_scoped:
                if (badge.wallet_address, badge.badge_type.value) in scoped:
                    continue
                scoped.add((badge.wallet_address, badge.badge_type.value))
            seen.add(key)
            fresh.append(badge)

        if fresh:
            now = datetime.now(UTC)
            rows = [
                {
                    "wallet_address": b.wallet_address,
                    "badge_type": b.badge_type.value,
                    "trade_id": b.trade_id,
                    "reason": b.reason,
                    "earned_at": b.earned_at,
                    "metadata_json": json.dumps(b.metadata, sort_keys=True, default=str),
                    "created_at": now,
                }
                for b in fresh
            ]
            stmt = _insert_for(self.session, InsiderBadgeModel).values(rows)
            stmt = stmt.on_conflict_do_nothing(index_elements=["wallet_address", "badge_type", "trade_id"])
            await self.session.execute(stmt)
            await self.session.flush()
        return fresh

    async def list_by_wallet(self, wallet_address: str) -> list[InsiderBadgeDTO]:
        result = await self.session.execute(
            select(InsiderBadgeModel)
            .where(InsiderBadgeModel.wallet_address == wallet_address.lower())
            .order_by(InsiderBadgeModel.earned_at.desc(), InsiderBadgeModel.id.desc())
        )
        return [InsiderBadgeDTO.from_model(m) for m in result.scalars()]


@dataclass
class MarketObservationDTO:
    market_id: str
    ts: datetime
    prices: dict[str, Decimal]
    volume: Decimal | None = None

    @classmethod
    def from_model(cls, model: MarketObservationModel) -> MarketObservationDTO:
        raw = json.loads(model.prices_json)
        return cls(
            market_id=model.market_id,
            ts=_as_utc(model.ts),
            prices={outcome: Decimal(str(price)) for outcome, price in raw.items()},
            volume=model.volume,
        )


class MarketObservationRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, observations: Sequence[MarketObservationEvent]) -> int:
        """Insert snapshots; a snapshot already stored for the same instant is kept."""
        if not observations:
            return 0
        now = datetime.now(UTC)
        rows = [
            {
                "market_id": o.market_id,
                "ts": o.timestamp,
                "prices_json": json.dumps({k: str(v) for k, v in o.prices.items()}, sort_keys=True),
                "volume": o.volume,
                "created_at": now,
            }
            for o in observations
        ]
        stmt = _insert_for(self.session, MarketObservationModel).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["market_id", "ts"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return max(result.rowcount or 0, 0)

    async def list_by_market(self, market_id: str) -> list[MarketObservationDTO]:
        result = await self.session.execute(
            select(MarketObservationModel)
            .where(MarketObservationModel.market_id == market_id)
            .order_by(MarketObservationModel.ts.asc(), MarketObservationModel.id.asc())
        )
        return [MarketObservationDTO.from_model(m) for m in result.scalars()]


@dataclass
class MarketResolutionDTO:
    market_id: str
    resolved_at: datetime
    winning_outcome: str

    @classmethod
    def from_model(cls, model: MarketResolutionModel) -> MarketResolutionDTO:
        return cls(
            market_id=model.market_id,
            resolved_at=_as_utc(model.resolved_at),
            winning_outcome=model.winning_outcome,
        )


class MarketResolutionRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, market_id: str) -> MarketResolutionDTO | None:
        result = await self.session.execute(
            select(MarketResolutionModel).where(MarketResolutionModel.market_id == market_id)
        )
        model = result.scalar_one_or_none()
        return MarketResolutionDTO.from_model(model) if model else None

    async def insert(self, event: ResolutionEvent) -> bool:
        """Store a resolution.

        Returns:
            True if stored, False if the identical resolution already exists.

        Raises:
            ConsistencyError: If the market already resolved differently.
        """
        existing = await self.get(event.market_id)
        if existing is not None:
            if existing.resolved_at == event.resolved_at and existing.winning_outcome == event.winning_outcome:
                return False
            raise ConsistencyError(
                f"Market {event.market_id} already stored as resolved to {existing.winning_outcome!r}"
            )
        self.session.add(
            MarketResolutionModel(
                market_id=event.market_id,
                resolved_at=event.resolved_at,
                winning_outcome=event.winning_outcome,
            )
        )
        await self.session.flush()
        return True


@dataclass
class ScanRunDTO:
    started_at: datetime
    finished_at: datetime
    full_recompute: bool
    trades_processed: int
    trades_skipped: int
    trades_errored: int
    wallets_created: int
    wallets_updated: int
    badges_awarded: int
    resolutions_applied: int
    resolutions_rejected: int
    id: int | None = None

    @classmethod
    def from_model(cls, model: ScanRunModel) -> ScanRunDTO:
        return cls(
            id=model.id,
            started_at=_as_utc(model.started_at),
            finished_at=_as_utc(model.finished_at),
            full_recompute=model.full_recompute,
            trades_processed=model.trades_processed,
            trades_skipped=model.trades_skipped,
            trades_errored=model.trades_errored,
            wallets_created=model.wallets_created,
            wallets_updated=model.wallets_updated,
            badges_awarded=model.badges_awarded,
            resolutions_applied=model.resolutions_applied,
            resolutions_rejected=model.resolutions_rejected,
        )


class ScanRunRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: ScanRunDTO) -> int:
        model = ScanRunModel(
            started_at=dto.started_at,
            finished_at=dto.finished_at,
            full_recompute=dto.full_recompute,
            trades_processed=dto.trades_processed,
            trades_skipped=dto.trades_skipped,
            trades_errored=dto.trades_errored,
            wallets_created=dto.wallets_created,
            wallets_updated=dto.wallets_updated,
            badges_awarded=dto.badges_awarded,
            resolutions_applied=dto.resolutions_applied,
            resolutions_rejected=dto.resolutions_rejected,
        )
        self.session.add(model)
        await self.session.flush()
        return model.id

    async def latest(self) -> ScanRunDTO | None:
        result = await self.session.execute(
            select(ScanRunModel).order_by(ScanRunModel.started_at.desc(), ScanRunModel.id.desc()).limit(1)
        )
        model = result.scalar_one_or_none()
        return ScanRunDTO.from_model(model) if model else None


@dataclass
class TradeProcessingErrorDTO:
    trade_id: str
    stage: str
    error_type: str
    message: str
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TradeProcessingErrorModel) -> TradeProcessingErrorDTO:
        return cls(
            trade_id=model.trade_id,
            stage=model.stage,
            error_type=model.error_type,
            message=model.message,
            created_at=_as_utc_opt(model.created_at),
        )


class TradeProcessingErrorRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, errors: Sequence[TradeProcessingErrorDTO]) -> None:
        if not errors:
            return
        rows = [
            {
                "trade_id": e.trade_id,
                "stage": e.stage,
                "error_type": e.error_type,
                "message": e.message,
                "created_at": e.created_at or datetime.now(UTC),
            }
            for e in errors
        ]
        await self.session.execute(sa.insert(TradeProcessingErrorModel), rows)
        await self.session.flush()

    async def list_by_trade(self, trade_id: str) -> list[TradeProcessingErrorDTO]:
        result = await self.session.execute(
            select(TradeProcessingErrorModel)
            .where(TradeProcessingErrorModel.trade_id == trade_id)
            .order_by(TradeProcessingErrorModel.id.asc())
        )
        return [TradeProcessingErrorDTO.from_model(m) for m in result.scalars()]
