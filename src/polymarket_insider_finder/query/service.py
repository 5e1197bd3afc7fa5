"""Query/ranking service over the insider wallet store.

Answers the dashboard's filtered, sorted and paginated wallet listing and
the per-wallet detail view. Malformed parameters are clamped or dropped
where that is safe; anything else becomes a ``success: False`` response
with an empty, zeroed payload.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Literal

import sqlalchemy as sa
from sqlalchemy import select
from sqlalchemy.orm import aliased

from polymarket_insider_finder.detector.models import BadgeType
from polymarket_insider_finder.errors import NotFoundError, ValidationError
from polymarket_insider_finder.storage.models import (
    InsiderBadgeModel,
    InsiderTradeModel,
    InsiderWalletModel,
)
from polymarket_insider_finder.storage.repos import (
    BadgeRepository,
    InsiderBadgeDTO,
    InsiderTradeDTO,
    InsiderWalletDTO,
    TradeRepository,
    WalletRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from polymarket_insider_finder.config import QuerySettings
    from polymarket_insider_finder.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

SortField = Literal["firstTradeAt", "totalVolume", "totalTrades", "winRate"]

_SORT_COLUMNS: dict[str, Any] = {
    "firstTradeAt": InsiderWalletModel.first_trade_at,
    "totalVolume": InsiderWalletModel.total_volume,
    "totalTrades": InsiderWalletModel.total_trades,
    "winRate": InsiderWalletModel.win_rate,
}

DEFAULT_TIMEFRAME_DAYS = 30
DEFAULT_LIMIT = 25
MAX_LIMIT = 50
RECENT_TRADES = 5

POLYMARKET_PROFILE_URL = "https://polymarket.com/profile/{address}"
POLYGONSCAN_ADDRESS_URL = "https://polygonscan.com/address/{address}"


def _split_tokens(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        tokens = [str(t) for t in raw]
    else:
        tokens = str(raw).split(",")
    return [t.strip() for t in tokens if t and t.strip()]


def _parse_int(raw: Any, default: int) -> int:
    if raw is None or raw == "":
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        return default


def _parse_amount(raw: Any) -> Decimal | None:
    if raw is None or raw == "":
        return None
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite() or value < 0:
        return None
    return value


def _num(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class WalletQuery:
    """Normalized listing request."""

    timeframe_days: int = DEFAULT_TIMEFRAME_DAYS
    badges: tuple[BadgeType, ...] = ()
    categories: tuple[str, ...] = ()
    min_size: Decimal | None = None
    max_size: Decimal | None = None
    page: int = 1
    limit: int = DEFAULT_LIMIT
    sort: SortField = "firstTradeAt"
    order: Literal["asc", "desc"] = "desc"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    @classmethod
    def from_params(
        cls,
        params: Mapping[str, Any],
        *,
        default_timeframe_days: int = DEFAULT_TIMEFRAME_DAYS,
        default_limit: int = DEFAULT_LIMIT,
        max_limit: int = MAX_LIMIT,
    ) -> WalletQuery:
        """Build a query from raw request parameters.

        Unknown badge tokens, unknown sort fields and out-of-range paging
        values are dropped or clamped.

        Raises:
            ValidationError: If ``minSize`` exceeds ``maxSize``.
        """
        timeframe = _parse_int(params.get("timeframe"), default_timeframe_days)
        if timeframe < 1:
            timeframe = default_timeframe_days

        badges: list[BadgeType] = []
        for token in _split_tokens(params.get("badges")):
            badge = BadgeType.parse(token)
            if badge is not None and badge not in badges:
                badges.append(badge)

        categories: list[str] = []
        for token in _split_tokens(params.get("categories")):
            category = token.lower()
            if category not in categories:
                categories.append(category)

        min_size = _parse_amount(params.get("minSize"))
        max_size = _parse_amount(params.get("maxSize"))
        if min_size is not None and max_size is not None and min_size > max_size:
            raise ValidationError(f"minSize ({min_size}) must not exceed maxSize ({max_size})")

        page = max(1, _parse_int(params.get("page"), 1))
        limit = min(max_limit, max(1, _parse_int(params.get("limit"), default_limit)))

        sort = str(params.get("sort") or "firstTradeAt")
        if sort not in _SORT_COLUMNS:
            sort = "firstTradeAt"
        order: Literal["asc", "desc"] = "asc" if str(params.get("order") or "").lower() == "asc" else "desc"

        return cls(
            timeframe_days=timeframe,
            badges=tuple(badges),
            categories=tuple(categories),
            min_size=min_size,
            max_size=max_size,
            page=page,
            limit=limit,
            sort=sort,  # type: ignore[arg-type]
            order=order,
        )


def _filters_block(query: WalletQuery | None, categories: list[str] | None = None) -> dict[str, Any]:
    if query is None:
        return {
            "timeframe": DEFAULT_TIMEFRAME_DAYS,
            "badges": [],
            "categories": [],
            "minSize": None,
            "maxSize": None,
        }
    return {
        "timeframe": query.timeframe_days,
        "badges": [b.value for b in query.badges],
        "categories": categories if categories is not None else list(query.categories),
        "minSize": _num(query.min_size),
        "maxSize": _num(query.max_size),
    }


def empty_list_response(error: str, *, default_limit: int = DEFAULT_LIMIT) -> dict[str, Any]:
    return {
        "success": False,
        "data": [],
        "meta": {
            "total": 0,
            "page": 1,
            "limit": default_limit,
            "totalPages": 0,
            "filters": _filters_block(None),
        },
        "error": error,
    }


def empty_detail_response(error: str) -> dict[str, Any]:
    return {
        "success": False,
        "wallet": None,
        "badges": [],
        "trades": [],
        "activePositions": [],
        "resolvedPositions": [],
        "stats": {
            "totalPnl": 0,
            "avgTradeSize": 0,
            "largestTrade": 0,
            "uniqueMarkets": 0,
            "categoryCounts": {},
        },
        "links": {"polymarket": "", "polygonscan": ""},
        "error": error,
    }


class WalletQueryService:
    """Read-only queries over stored wallets, badges and trades."""

    def __init__(
        self,
        db: DatabaseManager,
        *,
        settings: QuerySettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._default_timeframe = settings.default_timeframe_days if settings else DEFAULT_TIMEFRAME_DAYS
        self._default_limit = settings.default_limit if settings else DEFAULT_LIMIT
        self._max_limit = settings.max_limit if settings else MAX_LIMIT
        self._recent_trades = settings.recent_trades if settings else RECENT_TRADES
        self._clock = clock or (lambda: datetime.now(UTC))

    def parse_query(self, params: Mapping[str, Any]) -> WalletQuery:
        return WalletQuery.from_params(
            params,
            default_timeframe_days=self._default_timeframe,
            default_limit=self._default_limit,
            max_limit=self._max_limit,
        )

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def query_wallets(self, params: Mapping[str, Any]) -> dict[str, Any]:
        """Listing endpoint: never raises, failures become ``success: False``."""
        try:
            return await self.list_wallets(self.parse_query(params))
        except Exception as e:
            logger.exception("Wallet query failed: %s", e)
            return empty_list_response(str(e) or type(e).__name__, default_limit=self._default_limit)

    async def list_wallets(self, query: WalletQuery) -> dict[str, Any]:
        async with self._db.get_async_session() as session:
            categories = await self._known_categories(session, query.categories)
            conditions = self._conditions(query, categories)

            total = int(
                await session.scalar(
                    select(sa.func.count()).select_from(InsiderWalletModel).where(*conditions)
                )
                or 0
            )
            wallets: list[InsiderWalletDTO] = []
            if total and query.offset < total:
                result = await session.execute(
                    select(InsiderWalletModel)
                    .where(*conditions)
                    .order_by(*self._ordering(query))
                    .offset(query.offset)
                    .limit(query.limit)
                )
                wallets = [InsiderWalletDTO.from_model(m) for m in result.scalars()]

            addresses = [w.address for w in wallets]
            badges = await self._badges_for(session, addresses)
            recent = await self._recent_trades_for(session, addresses)

        return {
            "success": True,
            "data": [self._summary(w, badges.get(w.address, []), recent.get(w.address, [])) for w in wallets],
            "meta": {
                "total": total,
                "page": query.page,
                "limit": query.limit,
                "totalPages": math.ceil(total / query.limit),
                "filters": _filters_block(query, categories),
            },
        }

    async def _known_categories(self, session: AsyncSession, requested: tuple[str, ...]) -> list[str]:
        if not requested:
            return []
        known = await TradeRepository(session).distinct_categories()
        kept = [c for c in requested if c in known]
        dropped = [c for c in requested if c not in known]
        if dropped:
            logger.debug("Dropping unknown categories from filter: %s", dropped)
        return kept

    def _conditions(self, query: WalletQuery, categories: list[str]) -> list[Any]:
        cutoff = self._clock() - timedelta(days=query.timeframe_days)
        conditions: list[Any] = [
            InsiderWalletModel.is_tracked.is_(True),
            InsiderWalletModel.first_trade_at >= cutoff,
        ]
        if query.badges:
            conditions.append(
                sa.exists().where(
                    InsiderBadgeModel.wallet_address == InsiderWalletModel.address,
                    InsiderBadgeModel.badge_type.in_([b.value for b in query.badges]),
                )
            )
        if categories:
            conditions.append(
                sa.exists().where(
                    InsiderTradeModel.wallet_address == InsiderWalletModel.address,
                    InsiderTradeModel.market_category.in_(categories),
                )
            )
        if query.min_size is not None:
            conditions.append(InsiderWalletModel.total_volume >= query.min_size)
        if query.max_size is not None:
            conditions.append(InsiderWalletModel.total_volume <= query.max_size)
        return conditions

    @staticmethod
    def _ordering(query: WalletQuery) -> list[Any]:
        column = _SORT_COLUMNS[query.sort]
        ordering: list[Any] = []
        if query.sort == "winRate":
            # Wallets without resolved trades sort last in either direction.
            ordering.append(sa.case((InsiderWalletModel.win_rate.is_(None), 1), else_=0).asc())
        ordering.append(column.asc() if query.order == "asc" else column.desc())
        ordering.append(InsiderWalletModel.address.asc())
        return ordering

    async def _badges_for(self, session: AsyncSession, addresses: list[str]) -> dict[str, list[InsiderBadgeDTO]]:
        grouped: dict[str, list[InsiderBadgeDTO]] = defaultdict(list)
        if not addresses:
            return grouped
        result = await session.execute(
            select(InsiderBadgeModel)
            .where(InsiderBadgeModel.wallet_address.in_(addresses))
            .order_by(InsiderBadgeModel.earned_at.desc(), InsiderBadgeModel.id.desc())
        )
        for model in result.scalars():
            grouped[model.wallet_address].append(InsiderBadgeDTO.from_model(model))
        return grouped

    async def _recent_trades_for(
        self, session: AsyncSession, addresses: list[str]
    ) -> dict[str, list[InsiderTradeDTO]]:
        grouped: dict[str, list[InsiderTradeDTO]] = defaultdict(list)
        if not addresses or self._recent_trades <= 0:
            return grouped
        row_number = (
            sa.func.row_number()
            .over(
                partition_by=InsiderTradeModel.wallet_address,
                order_by=(InsiderTradeModel.ts.desc(), InsiderTradeModel.trade_id.desc()),
            )
            .label("rn")
        )
        ranked = (
            select(InsiderTradeModel, row_number)
            .where(InsiderTradeModel.wallet_address.in_(addresses))
            .subquery()
        )
        trade = aliased(InsiderTradeModel, ranked)
        result = await session.execute(
            select(trade)
            .where(ranked.c.rn <= self._recent_trades)
            .order_by(ranked.c.wallet_address, ranked.c.ts.desc(), ranked.c.trade_id.desc())
        )
        for model in result.scalars():
            grouped[model.wallet_address].append(InsiderTradeDTO.from_model(model))
        return grouped

    @staticmethod
    def _summary(
        wallet: InsiderWalletDTO,
        badges: list[InsiderBadgeDTO],
        recent: list[InsiderTradeDTO],
    ) -> dict[str, Any]:
        return {
            "id": wallet.id,
            "address": wallet.address,
            "firstTradeAt": _iso(wallet.first_trade_at),
            "lastTradeAt": _iso(wallet.last_trade_at),
            "totalTrades": wallet.total_trades,
            "totalVolume": float(wallet.total_volume),
            "winRate": _num(wallet.win_rate),
            "resolvedTrades": wallet.resolved_trades,
            "wonTrades": wallet.won_trades,
            "badges": [
                {"type": b.badge_type, "reason": b.reason, "earnedAt": _iso(b.earned_at)} for b in badges
            ],
            "recentTrades": [
                {
                    "id": t.trade_id,
                    "marketQuestion": t.market_question,
                    "marketSlug": t.market_slug,
                    "marketCategory": t.market_category,
                    "outcomeName": t.outcome,
                    "side": t.side,
                    "price": float(t.price),
                    "usdValue": float(t.usd_value),
                    "timestamp": _iso(t.ts),
                    "won": t.won,
                }
                for t in recent
            ],
        }

    # ------------------------------------------------------------------
    # Wallet detail
    # ------------------------------------------------------------------

    async def wallet_detail_response(self, address_or_id: str) -> dict[str, Any]:
        """Detail endpoint: never raises, failures become ``success: False``."""
        try:
            return await self.get_wallet_detail(address_or_id)
        except NotFoundError as e:
            logger.info("Wallet detail not found: %s", address_or_id)
            return empty_detail_response(str(e))
        except Exception as e:
            logger.exception("Wallet detail failed for %s: %s", address_or_id, e)
            return empty_detail_response(str(e) or type(e).__name__)

    async def get_wallet_detail(self, address_or_id: str) -> dict[str, Any]:
        """Full detail for one wallet, looked up by address or numeric id.

        Raises:
            NotFoundError: If no such wallet exists.
        """
        key = address_or_id.strip()
        async with self._db.get_async_session() as session:
            wallets = WalletRepository(session)
            wallet = await wallets.get_by_address(key)
            if wallet is None and key.isdigit():
                wallet = await wallets.get_by_id(int(key))
            if wallet is None:
                raise NotFoundError("Wallet not found")
            badges = await BadgeRepository(session).list_by_wallet(wallet.address)
            trades = await TradeRepository(session).list_by_wallet(wallet.address)

        badges_by_trade: dict[str, list[InsiderBadgeDTO]] = defaultdict(list)
        for badge in badges:
            badges_by_trade[badge.trade_id].append(badge)

        positions = self._positions(trades)
        newest_first = sorted(trades, key=lambda t: (t.ts, t.trade_id), reverse=True)
        return {
            "success": True,
            "wallet": {
                "id": wallet.id,
                "address": wallet.address,
                "firstTradeAt": _iso(wallet.first_trade_at),
                "lastTradeAt": _iso(wallet.last_trade_at),
                "totalTrades": wallet.total_trades,
                "totalVolume": float(wallet.total_volume),
                "winRate": _num(wallet.win_rate),
                "resolvedTrades": wallet.resolved_trades,
                "wonTrades": wallet.won_trades,
                "isTracked": wallet.is_tracked,
                "createdAt": _iso(wallet.created_at),
                "updatedAt": _iso(wallet.updated_at),
            },
            "badges": [
                {
                    "id": b.id,
                    "type": b.badge_type,
                    "tradeId": b.trade_id,
                    "reason": b.reason,
                    "metadata": b.metadata or None,
                    "earnedAt": _iso(b.earned_at),
                }
                for b in badges
            ],
            "trades": [
                {
                    "id": t.trade_id,
                    "marketId": t.market_id,
                    "marketQuestion": t.market_question,
                    "marketSlug": t.market_slug,
                    "marketCategory": t.market_category,
                    "outcomeName": t.outcome,
                    "side": t.side,
                    "size": float(t.size),
                    "price": float(t.price),
                    "usdValue": float(t.usd_value),
                    "timestamp": _iso(t.ts),
                    "transactionHash": t.transaction_hash,
                    "resolved": t.won is not None,
                    "resolvedAt": _iso(t.resolved_at),
                    "won": t.won,
                    "pnl": _num(t.pnl),
                    "marketRank": t.market_rank,
                    "badges": [{"type": b.badge_type, "reason": b.reason} for b in badges_by_trade.get(t.trade_id, [])],
                }
                for t in newest_first
            ],
            "activePositions": [p for p in positions if not p["resolved"]],
            "resolvedPositions": [p for p in positions if p["resolved"]],
            "stats": self._stats(trades),
            "links": {
                "polymarket": POLYMARKET_PROFILE_URL.format(address=wallet.address),
                "polygonscan": POLYGONSCAN_ADDRESS_URL.format(address=wallet.address),
            },
        }

    @staticmethod
    def _positions(trades: list[InsiderTradeDTO]) -> list[dict[str, Any]]:
        """Group trades by market and outcome into position summaries."""
        grouped: dict[tuple[str, str], list[InsiderTradeDTO]] = {}
        for trade in trades:
            grouped.setdefault((trade.market_id, trade.outcome), []).append(trade)

        positions: list[dict[str, Any]] = []
        for (market_id, outcome), items in grouped.items():
            first = items[0]
            total_size = sum((Decimal(t.size) for t in items), Decimal(0))
            total_value = sum((Decimal(t.usd_value) for t in items), Decimal(0))
            resolved = [t for t in items if t.won is not None]
            pnl = sum((Decimal(t.pnl) for t in resolved if t.pnl is not None), Decimal(0)) if resolved else None
            positions.append(
                {
                    "marketId": market_id,
                    "marketQuestion": first.market_question,
                    "marketSlug": first.market_slug,
                    "marketCategory": first.market_category,
                    "outcomeName": outcome,
                    "totalSize": float(total_size),
                    "avgPrice": float(total_value / total_size) if total_size > 0 else float(first.price),
                    "totalValue": float(total_value),
                    "resolved": bool(resolved),
                    "won": resolved[-1].won if resolved else None,
                    "pnl": _num(pnl),
                }
            )
        return positions

    @staticmethod
    def _stats(trades: list[InsiderTradeDTO]) -> dict[str, Any]:
        if not trades:
            return {"totalPnl": 0, "avgTradeSize": 0, "largestTrade": 0, "uniqueMarkets": 0, "categoryCounts": {}}
        values = [Decimal(t.usd_value) for t in trades]
        category_counts: dict[str, int] = defaultdict(int)
        for trade in trades:
            category_counts[trade.market_category or "unknown"] += 1
        return {
            "totalPnl": float(sum((Decimal(t.pnl) for t in trades if t.pnl is not None), Decimal(0))),
            "avgTradeSize": float(sum(values, Decimal(0)) / len(values)),
            "largestTrade": float(max(values)),
            "uniqueMarkets": len({t.market_id for t in trades}),
            "categoryCounts": dict(category_counts),
        }
