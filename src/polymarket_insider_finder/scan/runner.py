"""Batch scan runner.

This module turns a batch of trades, market observations and resolutions
into stored wallet rollups and badges. A run has four phases:

1. Markets: rebuild touched markets from storage, then record new
   observations, trades and resolutions (sharded by market id).
2. Wallets: fold each new trade into its wallet's rollup, evaluate badges,
   and commit the wallet (sharded by wallet address).
3. Resolutions: resolve stored trades on newly resolved markets and run the
   outcome-dependent rules on them.
4. Observations: re-run the look-ahead rules (PRE_MOVE) for stored trades
   whose window received new prices in this batch.

Market updates always precede wallet updates. Each shard is processed by a
single task, so a market's history and a wallet's rollup have one writer.
"""

from __future__ import annotations

import asyncio
import logging
import zlib
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from polymarket_insider_finder.detector.evaluator import BadgeEvaluator
from polymarket_insider_finder.detector.models import BadgeAssignment, BadgeThresholds
from polymarket_insider_finder.errors import (
    ConsistencyError,
    InsiderFinderError,
    TransientStorageError,
)
from polymarket_insider_finder.ingestor.models import (
    MarketObservationEvent,
    ResolutionEvent,
    TradeEvent,
)
from polymarket_insider_finder.market.tracker import MarketResolution, MarketStateTracker
from polymarket_insider_finder.profiler.aggregator import WalletAggregator, WalletRollup
from polymarket_insider_finder.scan.checkpoints import CheckpointStore, ShardCursor
from polymarket_insider_finder.scan.progress import ProgressLine
from polymarket_insider_finder.storage.repos import (
    InsiderTradeDTO,
    ScanRunDTO,
    TradeProcessingErrorDTO,
)
from polymarket_insider_finder.storage.store import (
    InsiderWalletStore,
    TradeResolution,
    WalletCommit,
)

if TYPE_CHECKING:
    from polymarket_insider_finder.config import Settings

logger = logging.getLogger(__name__)


def shard_for(key: str, shard_count: int) -> int:
    """Stable shard index for a wallet address or market id."""
    return zlib.crc32(key.lower().encode("utf-8")) % shard_count


@dataclass(frozen=True)
class ScanConfig:
    shard_count: int = 16
    concurrency: int = 4
    max_tracked_trades: int = 50
    min_trade_usd: Decimal = Decimal("0")
    dry_run: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> ScanConfig:
        return cls(
            shard_count=settings.scan.shard_count,
            concurrency=settings.scan.concurrency,
            max_tracked_trades=settings.tracking.max_total_trades,
            min_trade_usd=settings.tracking.min_trade_usd,
            dry_run=settings.dry_run,
        )


@dataclass
class ScanSummary:
    """Counters reported (and persisted) at the end of a run."""

    started_at: datetime
    finished_at: datetime | None = None
    full_recompute: bool = False
    dry_run: bool = False
    trades_processed: int = 0
    trades_skipped: int = 0
    trades_errored: int = 0
    wallets_created: int = 0
    wallets_updated: int = 0
    badges_awarded: int = 0
    resolutions_applied: int = 0
    resolutions_rejected: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "full_recompute": self.full_recompute,
            "dry_run": self.dry_run,
            "trades_processed": self.trades_processed,
            "trades_skipped": self.trades_skipped,
            "trades_errored": self.trades_errored,
            "wallets_created": self.wallets_created,
            "wallets_updated": self.wallets_updated,
            "badges_awarded": self.badges_awarded,
            "resolutions_applied": self.resolutions_applied,
            "resolutions_rejected": self.resolutions_rejected,
        }

    def to_run_dto(self) -> ScanRunDTO:
        return ScanRunDTO(
            started_at=self.started_at,
            finished_at=self.finished_at or self.started_at,
            full_recompute=self.full_recompute,
            trades_processed=self.trades_processed,
            trades_skipped=self.trades_skipped,
            trades_errored=self.trades_errored,
            wallets_created=self.wallets_created,
            wallets_updated=self.wallets_updated,
            badges_awarded=self.badges_awarded,
            resolutions_applied=self.resolutions_applied,
            resolutions_rejected=self.resolutions_rejected,
        )


@dataclass
class _RunState:
    summary: ScanSummary
    tracker: MarketStateTracker
    aggregator: WalletAggregator
    stored: dict[str, InsiderTradeDTO] = field(default_factory=dict)
    baselines: dict[str | None, Decimal] = field(default_factory=dict)
    failed_markets: set[str] = field(default_factory=set)
    handled_trade_ids: set[str] = field(default_factory=set)
    revisits: list[InsiderTradeDTO] = field(default_factory=list)
    errors: list[TradeProcessingErrorDTO] = field(default_factory=list)

    def fail(self, trade_id: str, stage: str, error: Exception) -> None:
        self.summary.trades_errored += 1
        self.errors.append(
            TradeProcessingErrorDTO(
                trade_id=trade_id,
                stage=stage,
                error_type=type(error).__name__,
                message=str(error),
            )
        )


class ScanRunner:
    """Runs batch scans against an :class:`InsiderWalletStore`.

    Example:
        ```python
        runner = ScanRunner(store, evaluator=BadgeEvaluator(), config=ScanConfig())
        summary = await runner.run(trades, resolutions, observations)
        ```
    """

    def __init__(
        self,
        store: InsiderWalletStore,
        *,
        evaluator: BadgeEvaluator | None = None,
        config: ScanConfig | None = None,
        checkpoints: CheckpointStore | None = None,
        progress: ProgressLine | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._evaluator = evaluator or BadgeEvaluator(thresholds=BadgeThresholds())
        self._config = config or ScanConfig()
        self._checkpoints = checkpoints
        self._progress = progress or ProgressLine(enabled=False)
        self._clock = clock or (lambda: datetime.now(UTC))

    async def run(
        self,
        trades: Iterable[TradeEvent],
        resolutions: Iterable[ResolutionEvent] = (),
        observations: Iterable[MarketObservationEvent] = (),
        *,
        full_recompute: bool = False,
    ) -> ScanSummary:
        cfg = self._config
        state = _RunState(
            summary=ScanSummary(
                started_at=self._clock(),
                full_recompute=full_recompute,
                dry_run=cfg.dry_run,
            ),
            tracker=MarketStateTracker(),
            aggregator=WalletAggregator(max_tracked_trades=cfg.max_tracked_trades),
        )
        resolution_events = list(resolutions)
        observation_events = list(observations)

        batch = self._dedupe(trades, state)
        state.stored = await self._store.load_trades([t.trade_id for t in batch])
        pending = await self._filter_applied(batch, state, full_recompute=full_recompute)
        logger.info(
            "Scan starting: %d trades (%d pending), %d observations, %d resolutions",
            len(batch),
            len(pending),
            len(observation_events),
            len(resolution_events),
        )

        await self._market_phase(pending, observation_events, resolution_events, state)
        state.baselines = await self._store.category_baselines()
        await self._wallet_phase(pending, state)
        await self._resolution_phase(resolution_events, state)
        await self._observation_phase(state)

        state.summary.finished_at = self._clock()
        if not cfg.dry_run:
            try:
                await self._store.record_errors(state.errors)
                await self._store.record_run(state.summary.to_run_dto())
            except TransientStorageError as e:
                logger.error("Failed to record scan bookkeeping: %s", e)
        self._progress.close(
            final_line=(
                f"scan done: processed={state.summary.trades_processed:,} "
                f"skipped={state.summary.trades_skipped:,} errored={state.summary.trades_errored:,} "
                f"badges={state.summary.badges_awarded:,}"
            )
        )
        logger.info("Scan finished: %s", state.summary.to_dict())
        return state.summary

    # ------------------------------------------------------------------
    # Input preparation
    # ------------------------------------------------------------------

    def _dedupe(self, trades: Iterable[TradeEvent], state: _RunState) -> list[TradeEvent]:
        """Drop below-threshold trades and in-batch replays; reject in-batch conflicts.

        The first-arrived record of a trade id is kept. The result is in
        ``(timestamp, trade_id)`` order.
        """
        seen: dict[str, TradeEvent] = {}
        for trade in trades:
            if trade.usd_value < self._config.min_trade_usd:
                state.summary.trades_skipped += 1
                continue
            previous = seen.get(trade.trade_id)
            if previous is None:
                seen[trade.trade_id] = trade
                continue
            if previous == trade:
                state.summary.trades_skipped += 1
                continue
            error = ConsistencyError(f"Trade {trade.trade_id} replayed with different fields in one batch")
            logger.warning("Rejecting trade %s: %s", trade.trade_id, error)
            state.fail(trade.trade_id, "ingest", error)
        return sorted(seen.values(), key=lambda t: t.sort_key)

    async def _filter_applied(
        self,
        batch: Sequence[TradeEvent],
        state: _RunState,
        *,
        full_recompute: bool,
    ) -> list[TradeEvent]:
        """Reject trades contradicting stored facts and skip ones already checkpointed."""
        cursors: dict[int, ShardCursor] = {}
        if self._checkpoints is not None and not full_recompute:
            cursors = await self._checkpoints.get_all(self._config.shard_count)

        pending: list[TradeEvent] = []
        for trade in batch:
            stored = state.stored.get(trade.trade_id)
            if stored is not None:
                diffs = stored.conflicting_fields(trade)
                if diffs:
                    error = ConsistencyError(
                        f"Trade {trade.trade_id} replayed with different {', '.join(diffs)}; keeping stored trade"
                    )
                    logger.warning("Rejecting trade %s: %s", trade.trade_id, error)
                    state.fail(trade.trade_id, "ingest", error)
                    continue
                cursor = cursors.get(shard_for(trade.wallet_address, self._config.shard_count))
                if cursor is not None and cursor.covers(trade.sort_key):
                    state.summary.trades_skipped += 1
                    continue
            pending.append(trade)
        return pending

    # ------------------------------------------------------------------
    # Phase 1: markets
    # ------------------------------------------------------------------

    async def _market_phase(
        self,
        trades: Sequence[TradeEvent],
        observations: Sequence[MarketObservationEvent],
        resolutions: Sequence[ResolutionEvent],
        state: _RunState,
    ) -> None:
        trades_by_market: dict[str, list[TradeEvent]] = defaultdict(list)
        for trade in trades:
            trades_by_market[trade.market_id].append(trade)
        obs_by_market: dict[str, list[MarketObservationEvent]] = defaultdict(list)
        for obs in sorted(observations, key=lambda o: o.timestamp):
            obs_by_market[obs.market_id].append(obs)
        res_by_market: dict[str, list[ResolutionEvent]] = defaultdict(list)
        for res in resolutions:
            res_by_market[res.market_id].append(res)

        market_ids = sorted(set(trades_by_market) | set(obs_by_market) | set(res_by_market))
        shards: dict[int, list[str]] = defaultdict(list)
        for market_id in market_ids:
            shards[shard_for(market_id, self._config.shard_count)].append(market_id)

        self._progress.phase("markets", len(market_ids))

        async def _run_shard(shard_markets: list[str]) -> None:
            for market_id in shard_markets:
                try:
                    await self._process_market(
                        market_id,
                        trades_by_market.get(market_id, []),
                        obs_by_market.get(market_id, []),
                        res_by_market.get(market_id, []),
                        state,
                    )
                except TransientStorageError as e:
                    logger.error("Market %s could not be loaded or saved: %s", market_id, e)
                    state.failed_markets.add(market_id)
                self._progress.advance()

        await self._gather_shards([_run_shard(markets) for _shard, markets in sorted(shards.items())])

    async def _process_market(
        self,
        market_id: str,
        trades: Sequence[TradeEvent],
        observations: Sequence[MarketObservationEvent],
        resolutions: Sequence[ResolutionEvent],
        state: _RunState,
    ) -> None:
        tracker = state.tracker
        history = await self._store.load_market_history(market_id)
        for stored_obs in history.observations:
            tracker.record_observation(market_id, stored_obs.ts, stored_obs.prices, stored_obs.volume)
        for stored_trade in history.trades:
            tracker.record_trade(stored_trade.to_event())
        if history.resolution is not None:
            tracker.record_resolution(
                market_id,
                history.resolution.resolved_at,
                history.resolution.winning_outcome,
            )

        known_times = {o.ts for o in history.observations}
        new_observations: list[MarketObservationEvent] = []
        for obs in observations:
            if obs.timestamp in known_times:
                continue
            known_times.add(obs.timestamp)
            tracker.record_observation(market_id, obs.timestamp, obs.prices, obs.volume)
            new_observations.append(obs)
        if new_observations and not self._config.dry_run:
            await self._store.save_observations(new_observations)

        new_times = [obs.timestamp for obs in new_observations]
        for trade in trades:
            if tracker.record_trade(trade):
                new_times.append(trade.timestamp)
        if new_times:
            self._collect_revisits(history.trades, {t.trade_id for t in trades}, new_times, state)

        for res in resolutions:
            try:
                is_new = tracker.record_resolution(market_id, res.resolved_at, res.winning_outcome)
            except ConsistencyError as e:
                logger.warning("Rejecting resolution for market %s: %s", market_id, e)
                state.summary.resolutions_rejected += 1
                continue
            if not is_new:
                continue
            if not self._config.dry_run:
                await self._store.save_resolution(res)
            state.summary.resolutions_applied += 1
            logger.info("Market %s resolved to %r", market_id, res.winning_outcome)

    def _collect_revisits(
        self,
        stored_trades: Sequence[InsiderTradeDTO],
        batch_ids: set[str],
        new_times: Sequence[datetime],
        state: _RunState,
    ) -> None:
        """Queue stored trades whose look-ahead window contains a new price."""
        window = self._evaluator.thresholds.pre_move_window
        for dto in stored_trades:
            if dto.trade_id in batch_ids:
                continue
            if any(dto.ts < ts <= dto.ts + window for ts in new_times):
                state.revisits.append(dto)

    # ------------------------------------------------------------------
    # Phase 2: wallets
    # ------------------------------------------------------------------

    async def _wallet_phase(self, trades: Sequence[TradeEvent], state: _RunState) -> None:
        by_wallet: dict[str, list[TradeEvent]] = defaultdict(list)
        for trade in trades:
            by_wallet[trade.wallet_address].append(trade)
        shards: dict[int, list[str]] = defaultdict(list)
        for address in sorted(by_wallet):
            shards[shard_for(address, self._config.shard_count)].append(address)

        self._progress.phase("wallets", len(trades))

        async def _run_shard(shard: int, addresses: list[str]) -> None:
            committed = True
            for address in addresses:
                wallet_trades = by_wallet[address]
                committed = await self._process_wallet(address, wallet_trades, state) and committed
                self._progress.advance(len(wallet_trades), errored=state.summary.trades_errored)
            if committed and self._checkpoints is not None and not self._config.dry_run:
                last = max((t for a in addresses for t in by_wallet[a]), key=lambda t: t.sort_key)
                await self._checkpoints.advance(shard, ShardCursor(last.timestamp, last.trade_id))

        await self._gather_shards(
            [_run_shard(shard, addresses) for shard, addresses in sorted(shards.items())]
        )

    async def _ensure_wallet_loaded(self, address: str, state: _RunState) -> bool:
        """Rebuild the wallet's rollup from storage on first touch.

        Returns:
            True if the wallet already existed in storage.
        """
        if state.aggregator.is_loaded(address):
            return state.aggregator.rollup(address) is not None
        history = await self._store.load_wallet_history(address)
        state.aggregator.hydrate(address, ((dto.to_event(), dto.won) for dto in history))
        return bool(history)

    @staticmethod
    def _require_rollup(trade: TradeEvent, state: _RunState) -> WalletRollup:
        rollup = state.aggregator.rollup(trade.wallet_address)
        if rollup is None:
            raise ConsistencyError(
                f"Wallet {trade.wallet_address} has no rollup while evaluating trade {trade.trade_id}"
            )
        return rollup

    def _resolve_trade(
        self,
        trade: TradeEvent,
        resolution: MarketResolution,
        state: _RunState,
    ) -> tuple[TradeResolution, list[BadgeAssignment]]:
        won = trade.outcome == resolution.winning_outcome
        state.aggregator.apply_resolution(trade, won)
        rollup = self._require_rollup(trade, state)
        badges = self._evaluator.evaluate_resolution(
            trade,
            market=state.tracker,
            wallet=rollup,
            resolution=resolution,
            baseline_win_rate=state.baselines.get(trade.market_category),
        )
        update = TradeResolution(
            trade=trade,
            won=won,
            resolved_at=resolution.resolved_at,
            market_rank=state.tracker.trade_rank(trade.market_id, trade.trade_id),
        )
        return update, badges

    async def _process_wallet(
        self,
        address: str,
        trades: Sequence[TradeEvent],
        state: _RunState,
    ) -> bool:
        """Apply a wallet's trades and commit it. Returns False if the commit failed."""
        try:
            existed = await self._ensure_wallet_loaded(address, state)
        except TransientStorageError as e:
            logger.error("Wallet %s could not be loaded: %s", address, e)
            for trade in trades:
                state.fail(trade.trade_id, "load_wallet", e)
            return False

        applied: list[TradeEvent] = []
        resolved: list[TradeResolution] = []
        badges: list[BadgeAssignment] = []
        evaluation_failures = 0
        for trade in trades:
            if trade.market_id in state.failed_markets:
                state.fail(trade.trade_id, "market", TransientStorageError(f"market {trade.market_id} unavailable"))
                continue
            state.aggregator.apply_trade(trade)
            applied.append(trade)
            try:
                rollup = self._require_rollup(trade, state)
                badges.extend(self._evaluator.evaluate_trade(trade, market=state.tracker, wallet=rollup))
                resolution = state.tracker.get_resolution(trade.market_id)
                if resolution is not None:
                    update, resolution_badges = self._resolve_trade(trade, resolution, state)
                    resolved.append(update)
                    badges.extend(resolution_badges)
            except InsiderFinderError as e:
                logger.warning("Badge evaluation failed for trade %s: %s", trade.trade_id, e)
                state.fail(trade.trade_id, "evaluate", e)
                evaluation_failures += 1

        if not applied:
            return True
        committed = await self._commit(address, existed, applied, resolved, badges, state)
        if committed:
            # Trades whose evaluation failed are stored but reported as errored.
            state.summary.trades_processed += len(applied) - evaluation_failures
            state.handled_trade_ids.update(t.trade_id for t in applied)
        else:
            for trade in applied:
                state.fail(trade.trade_id, "commit", TransientStorageError("wallet commit failed"))
        return committed

    async def _commit(
        self,
        address: str,
        existed: bool,
        new_trades: list[TradeEvent],
        resolved: list[TradeResolution],
        badges: list[BadgeAssignment],
        state: _RunState,
    ) -> bool:
        rollup = state.aggregator.rollup(address)
        if rollup is None:
            return True
        summary = state.summary
        if self._config.dry_run:
            unique = {b.key: b for b in badges}
            summary.badges_awarded += len(unique)
            if existed:
                summary.wallets_updated += 1
            else:
                summary.wallets_created += 1
            return True

        commit = WalletCommit(rollup=rollup, new_trades=new_trades, resolutions=resolved, badges=badges)
        try:
            result = await self._store.commit_wallet(commit)
        except (TransientStorageError, ConsistencyError) as e:
            logger.error("Commit failed for wallet %s: %s", address, e)
            # In-memory state is now ahead of storage; rebuild on next touch.
            state.aggregator.discard(address)
            return False
        summary.badges_awarded += len(result.badges_inserted)
        if result.created:
            summary.wallets_created += 1
        else:
            summary.wallets_updated += 1
        return True

    # ------------------------------------------------------------------
    # Phase 3: resolutions
    # ------------------------------------------------------------------

    async def _resolution_phase(self, resolutions: Sequence[ResolutionEvent], state: _RunState) -> None:
        market_ids = sorted(
            {
                r.market_id
                for r in resolutions
                if r.market_id not in state.failed_markets and state.tracker.get_resolution(r.market_id)
            }
        )
        by_wallet: dict[str, list[InsiderTradeDTO]] = defaultdict(list)
        for market_id in market_ids:
            try:
                unresolved = await self._store.unresolved_trades(market_id)
            except TransientStorageError as e:
                logger.error("Unresolved trades for market %s could not be loaded: %s", market_id, e)
                continue
            for dto in unresolved:
                if dto.trade_id not in state.handled_trade_ids:
                    by_wallet[dto.wallet_address].append(dto)
        if not by_wallet:
            return

        shards: dict[int, list[str]] = defaultdict(list)
        for address in sorted(by_wallet):
            shards[shard_for(address, self._config.shard_count)].append(address)
        self._progress.phase("resolutions", sum(len(v) for v in by_wallet.values()))

        async def _run_shard(addresses: list[str]) -> None:
            for address in addresses:
                dtos = sorted(by_wallet[address], key=lambda d: (d.ts, d.trade_id))
                await self._resolve_wallet(address, dtos, state)
                self._progress.advance(len(dtos), errored=state.summary.trades_errored)

        await self._gather_shards([_run_shard(addresses) for _shard, addresses in sorted(shards.items())])

    async def _resolve_wallet(self, address: str, dtos: Sequence[InsiderTradeDTO], state: _RunState) -> None:
        try:
            existed = await self._ensure_wallet_loaded(address, state)
        except TransientStorageError as e:
            logger.error("Wallet %s could not be loaded: %s", address, e)
            return

        resolved: list[TradeResolution] = []
        badges: list[BadgeAssignment] = []
        for dto in dtos:
            resolution = state.tracker.get_resolution(dto.market_id)
            if resolution is None:
                continue
            trade = dto.to_event()
            try:
                update, trade_badges = self._resolve_trade(trade, resolution, state)
            except InsiderFinderError as e:
                logger.warning("Resolution failed for trade %s: %s", trade.trade_id, e)
                state.fail(trade.trade_id, "resolve", e)
                continue
            resolved.append(update)
            badges.extend(trade_badges)
        if resolved and not await self._commit(address, existed, [], resolved, badges, state):
            for update in resolved:
                state.fail(update.trade.trade_id, "commit", TransientStorageError("wallet commit failed"))

    # ------------------------------------------------------------------
    # Phase 4: later observations
    # ------------------------------------------------------------------

    async def _observation_phase(self, state: _RunState) -> None:
        by_wallet: dict[str, list[InsiderTradeDTO]] = defaultdict(list)
        for dto in state.revisits:
            if dto.market_id not in state.failed_markets:
                by_wallet[dto.wallet_address].append(dto)
        if not by_wallet:
            return

        shards: dict[int, list[str]] = defaultdict(list)
        for address in sorted(by_wallet):
            shards[shard_for(address, self._config.shard_count)].append(address)
        self._progress.phase("observations", sum(len(v) for v in by_wallet.values()))

        async def _run_shard(addresses: list[str]) -> None:
            for address in addresses:
                dtos = sorted(by_wallet[address], key=lambda d: (d.ts, d.trade_id))
                await self._revisit_wallet(address, dtos, state)
                self._progress.advance(len(dtos), errored=state.summary.trades_errored)

        await self._gather_shards([_run_shard(addresses) for _shard, addresses in sorted(shards.items())])

    async def _revisit_wallet(self, address: str, dtos: Sequence[InsiderTradeDTO], state: _RunState) -> None:
        try:
            existed = await self._ensure_wallet_loaded(address, state)
        except TransientStorageError as e:
            logger.error("Wallet %s could not be loaded: %s", address, e)
            return

        badges: list[BadgeAssignment] = []
        for dto in dtos:
            trade = dto.to_event()
            try:
                rollup = self._require_rollup(trade, state)
                badges.extend(
                    self._evaluator.evaluate_later_observations(trade, market=state.tracker, wallet=rollup)
                )
            except InsiderFinderError as e:
                logger.warning("Badge re-evaluation failed for trade %s: %s", trade.trade_id, e)
                state.fail(trade.trade_id, "evaluate", e)
        if badges and not await self._commit(address, existed, [], [], badges, state):
            for trade_id in sorted({b.trade_id for b in badges}):
                state.fail(trade_id, "commit", TransientStorageError("wallet commit failed"))

    async def _gather_shards(self, shard_jobs: Sequence[Awaitable[None]]) -> None:
        semaphore = asyncio.Semaphore(self._config.concurrency)

        async def _bounded(job: Awaitable[None]) -> None:
            async with semaphore:
                await job

        await asyncio.gather(*(_bounded(job) for job in shard_jobs))
