"""Insider wallet schema: trades, wallets, badges, market history, scan bookkeeping.

Revision ID: 001_insider_wallets
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_insider_wallets"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "insider_trades",
        sa.Column("trade_id", sa.String(128), nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("market_id", sa.String(128), nullable=False),
        sa.Column("market_question", sa.Text(), nullable=False),
        sa.Column("market_slug", sa.String(255), nullable=True),
        sa.Column("market_category", sa.String(80), nullable=True),
        sa.Column("outcome", sa.String(120), nullable=False),
        sa.Column("side", sa.String(4), nullable=False),
        sa.Column("price", sa.Numeric(10, 6), nullable=False),
        sa.Column("size", sa.Numeric(24, 6), nullable=False),
        sa.Column("usd_value", sa.Numeric(24, 6), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("transaction_hash", sa.String(66), nullable=True),
        sa.Column("won", sa.Boolean(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pnl", sa.Numeric(24, 6), nullable=True),
        sa.Column("market_rank", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("trade_id"),
    )
    op.create_index("idx_insider_trades_wallet_ts", "insider_trades", ["wallet_address", "ts"])
    op.create_index("idx_insider_trades_market_ts", "insider_trades", ["market_id", "ts"])
    op.create_index("idx_insider_trades_category", "insider_trades", ["market_category"])

    op.create_table(
        "insider_wallets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("first_trade_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_trade_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_trades", sa.Integer(), nullable=False),
        sa.Column("total_volume", sa.Numeric(24, 6), nullable=False),
        sa.Column("resolved_trades", sa.Integer(), nullable=False),
        sa.Column("won_trades", sa.Integer(), nullable=False),
        sa.Column("win_rate", sa.Numeric(8, 6), nullable=True),
        sa.Column("is_tracked", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("address"),
    )
    op.create_index("idx_insider_wallets_first_trade", "insider_wallets", ["first_trade_at"])
    op.create_index("idx_insider_wallets_tracked", "insider_wallets", ["is_tracked"])

    op.create_table(
        "insider_badges",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("badge_type", sa.String(20), nullable=False),
        sa.Column("trade_id", sa.String(128), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("earned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wallet_address", "badge_type", "trade_id", name="uq_insider_badges_trigger"),
    )
    op.create_index("idx_insider_badges_wallet", "insider_badges", ["wallet_address", "earned_at"])
    op.create_index("idx_insider_badges_type", "insider_badges", ["badge_type"])

    op.create_table(
        "market_observations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("market_id", sa.String(128), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("prices_json", sa.Text(), nullable=False),
        sa.Column("volume", sa.Numeric(24, 6), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("market_id", "ts", name="uq_market_observations_market_ts"),
    )

    op.create_table(
        "market_resolutions",
        sa.Column("market_id", sa.String(128), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("winning_outcome", sa.String(120), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("market_id"),
    )

    op.create_table(
        "scan_runs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("full_recompute", sa.Boolean(), nullable=False),
        sa.Column("trades_processed", sa.Integer(), nullable=False),
        sa.Column("trades_skipped", sa.Integer(), nullable=False),
        sa.Column("trades_errored", sa.Integer(), nullable=False),
        sa.Column("wallets_created", sa.Integer(), nullable=False),
        sa.Column("wallets_updated", sa.Integer(), nullable=False),
        sa.Column("badges_awarded", sa.Integer(), nullable=False),
        sa.Column("resolutions_applied", sa.Integer(), nullable=False),
        sa.Column("resolutions_rejected", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_scan_runs_started_at", "scan_runs", ["started_at"])

    op.create_table(
        "trade_processing_errors",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("trade_id", sa.String(128), nullable=False),
        sa.Column("stage", sa.String(40), nullable=False),
        sa.Column("error_type", sa.String(80), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_trade_processing_errors_trade", "trade_processing_errors", ["trade_id"])


def downgrade() -> None:
    op.drop_index("idx_trade_processing_errors_trade", table_name="trade_processing_errors")
    op.drop_table("trade_processing_errors")
    op.drop_index("idx_scan_runs_started_at", table_name="scan_runs")
    op.drop_table("scan_runs")
    op.drop_table("market_resolutions")
    op.drop_table("market_observations")
    op.drop_index("idx_insider_badges_type", table_name="insider_badges")
    op.drop_index("idx_insider_badges_wallet", table_name="insider_badges")
    op.drop_table("insider_badges")
    op.drop_index("idx_insider_wallets_tracked", table_name="insider_wallets")
    op.drop_index("idx_insider_wallets_first_trade", table_name="insider_wallets")
    op.drop_table("insider_wallets")
    op.drop_index("idx_insider_trades_category", table_name="insider_trades")
    op.drop_index("idx_insider_trades_market_ts", table_name="insider_trades")
    op.drop_index("idx_insider_trades_wallet_ts", table_name="insider_trades")
    op.drop_table("insider_trades")
