"""SQLAlchemy models for persistent storage.

This module defines the schema for insider trades, wallet rollups, badges,
the market history used to rebuild tracker state, and scan bookkeeping.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class InsiderTradeModel(Base):
    """Trades attributed to a wallet (immutable apart from resolution fields)."""

    __tablename__ = "insider_trades"

    trade_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    market_id: Mapped[str] = mapped_column(String(128), nullable=False)
    market_question: Mapped[str] = mapped_column(Text, nullable=False)
    market_slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    market_category: Mapped[str | None] = mapped_column(String(80), nullable=True)
    outcome: Mapped[str] = mapped_column(String(120), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)
    size: Mapped[Decimal] = mapped_column(Numeric(24, 6), nullable=False)
    usd_value: Mapped[Decimal] = mapped_column(Numeric(24, 6), nullable=False)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    transaction_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    # Filled once, when the market resolves.
    won: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pnl: Mapped[Decimal | None] = mapped_column(Numeric(24, 6), nullable=True)
    market_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_insider_trades_wallet_ts", "wallet_address", "ts"),
        Index("idx_insider_trades_market_ts", "market_id", "ts"),
        Index("idx_insider_trades_category", "market_category"),
    )


class InsiderWalletModel(Base):
    """Per-wallet rollup (one row per address, never deleted)."""

    __tablename__ = "insider_wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    first_trade_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_trade_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_trades: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_volume: Mapped[Decimal] = mapped_column(Numeric(24, 6), nullable=False, default=Decimal(0))
    resolved_trades: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    won_trades: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Stored (rather than derived in SQL) so the query layer can sort on it.
    win_rate: Mapped[Decimal | None] = mapped_column(Numeric(8, 6), nullable=True)
    is_tracked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_insider_wallets_first_trade", "first_trade_at"),
        Index("idx_insider_wallets_tracked", "is_tracked"),
    )


class InsiderBadgeModel(Base):
    """Earned badges (append-only)."""

    __tablename__ = "insider_badges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    badge_type: Mapped[str] = mapped_column(String(20), nullable=False)
    trade_id: Mapped[str] = mapped_column(String(128), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    earned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("wallet_address", "badge_type", "trade_id", name="uq_insider_badges_trigger"),
        Index("idx_insider_badges_wallet", "wallet_address", "earned_at"),
        Index("idx_insider_badges_type", "badge_type"),
    )


class MarketObservationModel(Base):
    """External market snapshots (per-outcome prices and cumulative volume)."""

    __tablename__ = "market_observations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[str] = mapped_column(String(128), nullable=False)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    prices_json: Mapped[str] = mapped_column(Text, nullable=False)
    volume: Mapped[Decimal | None] = mapped_column(Numeric(24, 6), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("market_id", "ts", name="uq_market_observations_market_ts"),
    )


class MarketResolutionModel(Base):
    """Market resolutions (set once per market)."""

    __tablename__ = "market_resolutions"

    market_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    resolved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    winning_outcome: Mapped[str] = mapped_column(String(120), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class ScanRunModel(Base):
    """Summary of one batch scan."""

    __tablename__ = "scan_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    full_recompute: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    trades_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trades_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trades_errored: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wallets_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wallets_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    badges_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolutions_applied: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolutions_rejected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_scan_runs_started_at", "started_at"),)


class TradeProcessingErrorModel(Base):
    """Per-trade processing errors (strict, non-silent failures)."""

    __tablename__ = "trade_processing_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trade_id: Mapped[str] = mapped_column(String(128), nullable=False)
    stage: Mapped[str] = mapped_column(String(40), nullable=False)
    error_type: Mapped[str] = mapped_column(String(80), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_trade_processing_errors_trade", "trade_id"),)
