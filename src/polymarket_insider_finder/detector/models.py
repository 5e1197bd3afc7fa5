"""Data models for the badge detector module."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from polymarket_insider_finder.config import BadgeSettings
    from polymarket_insider_finder.ingestor.models import TradeEvent
    from polymarket_insider_finder.market.tracker import MarketResolution, MarketStateTracker
    from polymarket_insider_finder.profiler.aggregator import WalletRollup


class BadgeType(str, Enum):
    """Behavioral flags a wallet can earn."""

    HIGH_WIN_RATE = "HIGH_WIN_RATE"
    BIG_BET = "BIG_BET"
    LONG_SHOT = "LONG_SHOT"
    PRE_MOVE = "PRE_MOVE"
    LATE_WINNER = "LATE_WINNER"
    FIRST_MOVER = "FIRST_MOVER"

    @property
    def is_wallet_scoped(self) -> bool:
        """True for badges describing the wallet as a whole (earned at most once)."""
        return self is BadgeType.HIGH_WIN_RATE

    @classmethod
    def parse(cls, raw: str) -> BadgeType | None:
        """Parse a badge token case-insensitively; unknown tokens yield None."""
        try:
            return cls(raw.strip().upper())
        except ValueError:
            return None


@dataclass(frozen=True)
class BadgeAssignment:
    """A badge earned by a wallet, tied to the trade that triggered it.

    Attributes:
        wallet_address: The wallet earning the badge.
        badge_type: Which rule fired.
        trade_id: The triggering trade.
        reason: Human-readable explanation of the specific trigger.
        earned_at: When the evidence for the badge became complete.
        metadata: Rule inputs backing the reason (audit trail).
    """

    wallet_address: str
    badge_type: BadgeType
    trade_id: str
    reason: str
    earned_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, BadgeType, str]:
        """Uniqueness key of a stored badge."""
        return (self.wallet_address, self.badge_type, self.trade_id)

    def to_dict(self) -> dict[str, object]:
        return {
            "wallet_address": self.wallet_address,
            "type": self.badge_type.value,
            "trade_id": self.trade_id,
            "reason": self.reason,
            "earned_at": self.earned_at.isoformat(),
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class BadgeThresholds:
    """Tunable thresholds for every badge rule."""

    high_win_rate_min_resolved: int = 5
    high_win_rate_margin: Decimal = Decimal("0.15")
    default_baseline_win_rate: Decimal = Decimal("0.50")
    big_bet_multiple: Decimal = Decimal("5")
    long_shot_max_price: Decimal = Decimal("0.10")
    pre_move_window: timedelta = timedelta(minutes=60)
    pre_move_min_delta: Decimal = Decimal("0.15")
    late_winner_window: timedelta = timedelta(hours=2)
    first_mover_rank: int = 10
    first_mover_volume_multiple: Decimal = Decimal("50")

    @classmethod
    def from_settings(cls, settings: BadgeSettings) -> BadgeThresholds:
        return cls(
            high_win_rate_min_resolved=settings.high_win_rate_min_resolved,
            high_win_rate_margin=Decimal(str(settings.high_win_rate_margin)),
            default_baseline_win_rate=Decimal(str(settings.default_baseline_win_rate)),
            big_bet_multiple=Decimal(str(settings.big_bet_multiple)),
            long_shot_max_price=settings.long_shot_max_price,
            pre_move_window=timedelta(minutes=settings.pre_move_window_minutes),
            pre_move_min_delta=settings.pre_move_min_delta,
            late_winner_window=timedelta(hours=settings.late_winner_window_hours),
            first_mover_rank=settings.first_mover_rank,
            first_mover_volume_multiple=Decimal(str(settings.first_mover_volume_multiple)),
        )


@dataclass(frozen=True)
class BadgeContext:
    """Everything a rule may read when judging one trade.

    ``wallet`` reflects the rollup up to and including ``trade``. ``won`` and
    ``resolution`` are only set on the resolution pass.
    """

    trade: TradeEvent
    market: MarketStateTracker
    wallet: WalletRollup
    won: bool | None = None
    resolution: MarketResolution | None = None
    baseline_win_rate: Decimal | None = None
