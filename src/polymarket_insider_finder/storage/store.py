"""Insider wallet store - the transactional durable-write boundary.

Every write goes through one session per call: a wallet's trades, rollup,
resolution updates and new badges commit together or not at all. Writes are
idempotent, so transient database failures are retried with exponential
backoff before surfacing as ``TransientStorageError``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError

from polymarket_insider_finder.detector.models import BadgeAssignment
from polymarket_insider_finder.errors import TransientStorageError
from polymarket_insider_finder.ingestor.models import (
    MarketObservationEvent,
    ResolutionEvent,
    TradeEvent,
)
from polymarket_insider_finder.profiler.aggregator import WalletRollup
from polymarket_insider_finder.storage.repos import (
    BadgeRepository,
    InsiderTradeDTO,
    InsiderWalletDTO,
    MarketObservationDTO,
    MarketObservationRepository,
    MarketResolutionDTO,
    MarketResolutionRepository,
    ScanRunDTO,
    ScanRunRepository,
    TradeProcessingErrorDTO,
    TradeProcessingErrorRepository,
    TradeRepository,
    WalletRepository,
    compute_pnl,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from polymarket_insider_finder.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 0.5


@dataclass(frozen=True)
class TradeResolution:
    """Resolution fields to fill on a stored trade."""

    trade: TradeEvent
    won: bool
    resolved_at: datetime
    market_rank: int | None = None

    @property
    def pnl(self) -> Decimal:
        return compute_pnl(self.trade, self.won)


@dataclass
class WalletCommit:
    """Everything one wallet contributes to a transaction."""

    rollup: WalletRollup
    new_trades: list[TradeEvent] = field(default_factory=list)
    resolutions: list[TradeResolution] = field(default_factory=list)
    badges: list[BadgeAssignment] = field(default_factory=list)


@dataclass(frozen=True)
class WalletCommitResult:
    wallet: InsiderWalletDTO
    created: bool
    trades_inserted: int
    trades_resolved: int
    badges_inserted: list[BadgeAssignment]


@dataclass(frozen=True)
class StoredMarketHistory:
    """Everything stored about one market, used to rebuild tracker state."""

    observations: list[MarketObservationDTO]
    trades: list[InsiderTradeDTO]
    resolution: MarketResolutionDTO | None


class InsiderWalletStore:
    """Durable, queryable store of wallets, trades, badges and market history."""

    def __init__(
        self,
        db: DatabaseManager,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self._db = db
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

    @property
    def db(self) -> DatabaseManager:
        return self._db

    async def _with_retry(self, op_name: str, func: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run ``func`` in its own transaction, retrying transient failures.

        Raises:
            TransientStorageError: If every attempt failed transiently.
        """
        last_error: Exception | None = None
        delay = self._retry_delay
        for attempt in range(self._max_retries):
            try:
                async with self._db.get_async_session() as session:
                    return await func(session)
            except DBAPIError as e:
                if not (isinstance(e, OperationalError) or e.connection_invalidated):
                    raise
                last_error = e
                logger.warning(
                    "Store %s failed (attempt %d/%d): %s",
                    op_name,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff
        raise TransientStorageError(
            f"Store {op_name} failed after {self._max_retries} attempts: {last_error}"
        ) from last_error

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def commit_wallet(self, commit: WalletCommit) -> WalletCommitResult:
        """Persist a wallet's new trades, resolution updates, rollup and new badges atomically."""

        async def _op(session: AsyncSession) -> WalletCommitResult:
            trades = TradeRepository(session)
            inserted = await trades.insert_new(commit.new_trades)
            resolved = 0
            for res in commit.resolutions:
                updated = await trades.mark_resolved(
                    res.trade.trade_id,
                    won=res.won,
                    resolved_at=res.resolved_at,
                    pnl=res.pnl,
                    market_rank=res.market_rank,
                )
                if updated:
                    resolved += 1
            wallet, created = await WalletRepository(session).upsert_rollup(commit.rollup)
            badges = await BadgeRepository(session).insert_new(commit.badges)
            return WalletCommitResult(
                wallet=wallet,
                created=created,
                trades_inserted=inserted,
                trades_resolved=resolved,
                badges_inserted=badges,
            )

        result = await self._with_retry(f"commit_wallet({commit.rollup.wallet_address})", _op)
        logger.debug(
            "Committed wallet %s: %d trades, %d resolved, %d badges",
            commit.rollup.wallet_address,
            result.trades_inserted,
            result.trades_resolved,
            len(result.badges_inserted),
        )
        return result

    async def save_observations(self, observations: Sequence[MarketObservationEvent]) -> int:
        if not observations:
            return 0

        async def _op(session: AsyncSession) -> int:
            return await MarketObservationRepository(session).insert_many(observations)

        return await self._with_retry("save_observations", _op)

    async def save_resolution(self, event: ResolutionEvent) -> bool:
        """Store a market resolution.

        Raises:
            ConsistencyError: If the market is already stored with a different resolution.
        """

        async def _op(session: AsyncSession) -> bool:
            return await MarketResolutionRepository(session).insert(event)

        return await self._with_retry(f"save_resolution({event.market_id})", _op)

    async def record_errors(self, errors: Sequence[TradeProcessingErrorDTO]) -> None:
        if not errors:
            return

        async def _op(session: AsyncSession) -> None:
            await TradeProcessingErrorRepository(session).insert_many(errors)

        await self._with_retry("record_errors", _op)

    async def record_run(self, run: ScanRunDTO) -> int:
        async def _op(session: AsyncSession) -> int:
            return await ScanRunRepository(session).insert(run)

        return await self._with_retry("record_run", _op)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load_trades(self, trade_ids: Sequence[str]) -> dict[str, InsiderTradeDTO]:
        if not trade_ids:
            return {}

        async def _op(session: AsyncSession) -> dict[str, InsiderTradeDTO]:
            return await TradeRepository(session).get_many(trade_ids)

        return await self._with_retry("load_trades", _op)

    async def load_market_history(self, market_id: str) -> StoredMarketHistory:
        async def _op(session: AsyncSession) -> StoredMarketHistory:
            return StoredMarketHistory(
                observations=await MarketObservationRepository(session).list_by_market(market_id),
                trades=await TradeRepository(session).list_by_market(market_id),
                resolution=await MarketResolutionRepository(session).get(market_id),
            )

        return await self._with_retry(f"load_market_history({market_id})", _op)

    async def load_wallet_history(self, wallet_address: str) -> list[InsiderTradeDTO]:
        async def _op(session: AsyncSession) -> list[InsiderTradeDTO]:
            return await TradeRepository(session).list_by_wallet(wallet_address)

        return await self._with_retry(f"load_wallet_history({wallet_address})", _op)

    async def unresolved_trades(self, market_id: str) -> list[InsiderTradeDTO]:
        async def _op(session: AsyncSession) -> list[InsiderTradeDTO]:
            return await TradeRepository(session).list_by_market(market_id, unresolved_only=True)

        return await self._with_retry(f"unresolved_trades({market_id})", _op)

    async def category_baselines(self) -> dict[str | None, Decimal]:
        async def _op(session: AsyncSession) -> dict[str | None, Decimal]:
            return await TradeRepository(session).category_win_rates()

        return await self._with_retry("category_baselines", _op)

    async def get_wallet(self, address: str) -> InsiderWalletDTO | None:
        async def _op(session: AsyncSession) -> InsiderWalletDTO | None:
            return await WalletRepository(session).get_by_address(address)

        return await self._with_retry("get_wallet", _op)
