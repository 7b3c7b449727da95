"""Initial schema: markets, traders, trades, market snapshots, indexer state.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "markets",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("question", sa.Text(), nullable=False, server_default=""),
        sa.Column("resolution_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("oracle_address", sa.String(42), nullable=True),
        sa.Column("creator_address", sa.String(42), nullable=True),
        sa.Column("yes_token_address", sa.String(42), nullable=True),
        sa.Column("no_token_address", sa.String(42), nullable=True),
        sa.Column("yes_price", sa.Numeric(38, 18), nullable=False, server_default="0.5"),
        sa.Column("no_price", sa.Numeric(38, 18), nullable=False, server_default="0.5"),
        sa.Column("yes_shares", sa.Numeric(38, 18), nullable=False, server_default="0"),
        sa.Column("no_shares", sa.Numeric(38, 18), nullable=False, server_default="0"),
        sa.Column("total_collateral", sa.Numeric(38, 6), nullable=False, server_default="0"),
        sa.Column("liquidity_parameter", sa.Numeric(38, 18), nullable=False, server_default="0"),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("yes_wins", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(16), nullable=False, server_default="ACTIVE"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("velocity_1m", sa.Numeric(20, 10), nullable=False, server_default="0"),
        sa.Column("velocity_5m", sa.Numeric(20, 10), nullable=False, server_default="0"),
        sa.Column("velocity_15m", sa.Numeric(20, 10), nullable=False, server_default="0"),
        sa.Column("acceleration", sa.Numeric(20, 10), nullable=False, server_default="0"),
        sa.Column("stress_score", sa.Numeric(10, 8), nullable=False, server_default="0"),
        sa.Column("fragility", sa.Numeric(10, 8), nullable=False, server_default="1"),
        sa.Column("heat_score", sa.Numeric(6, 2), nullable=False, server_default="0"),
        sa.Column("volume_24h", sa.Numeric(38, 6), nullable=False, server_default="0"),
        sa.Column("trades_24h", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("fee_velocity_24h", sa.Numeric(38, 12), nullable=False, server_default="0"),
        sa.Column("analytics_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("address"),
    )
    op.create_index("idx_markets_status", "markets", ["status"])
    op.create_index("idx_markets_heat_score", "markets", ["heat_score"])

    op.create_table(
        "traders",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wallet_address"),
    )

    op.create_table(
        "trades",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("market_id", sa.String(36), nullable=False),
        sa.Column("trader_id", sa.Integer(), nullable=False),
        sa.Column("trade_type", sa.String(8), nullable=False),
        sa.Column("outcome", sa.String(3), nullable=False),
        sa.Column("shares", sa.Numeric(38, 18), nullable=False),
        sa.Column("amount", sa.Numeric(38, 6), nullable=False),
        sa.Column("price_at_trade", sa.Numeric(38, 18), nullable=True),
        sa.Column("trading_fee", sa.Numeric(38, 12), nullable=False, server_default="0"),
        sa.Column("creator_fee", sa.Numeric(38, 12), nullable=False, server_default="0"),
        sa.Column("protocol_fee", sa.Numeric(38, 12), nullable=False, server_default="0"),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", "outcome", name="uq_trades_tx_hash_outcome"),
    )
    op.create_index("idx_trades_market_ts", "trades", ["market_id", "ts"])
    op.create_index("idx_trades_trader_ts", "trades", ["trader_id", "ts"])

    op.create_table(
        "market_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("market_id", sa.String(36), nullable=False),
        sa.Column("snapshot_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("yes_price", sa.Numeric(38, 18), nullable=False),
        sa.Column("no_price", sa.Numeric(38, 18), nullable=False),
        sa.Column("yes_shares", sa.Numeric(38, 18), nullable=False),
        sa.Column("no_shares", sa.Numeric(38, 18), nullable=False),
        sa.Column("total_collateral", sa.Numeric(38, 6), nullable=False),
        sa.Column("liquidity_parameter", sa.Numeric(38, 18), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_market_snapshots_market_time", "market_snapshots", ["market_id", "snapshot_time"])
    op.create_index("idx_market_snapshots_time", "market_snapshots", ["snapshot_time"])

    op.create_table(
        "indexer_state",
        sa.Column("chain_id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("last_indexed_block", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_indexed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_syncing", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sync_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("consecutive_errors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("chain_id"),
    )


def downgrade() -> None:
    op.drop_table("indexer_state")
    op.drop_index("idx_market_snapshots_time", table_name="market_snapshots")
    op.drop_index("idx_market_snapshots_market_time", table_name="market_snapshots")
    op.drop_table("market_snapshots")
    op.drop_index("idx_trades_trader_ts", table_name="trades")
    op.drop_index("idx_trades_market_ts", table_name="trades")
    op.drop_table("trades")
    op.drop_table("traders")
    op.drop_index("idx_markets_heat_score", table_name="markets")
    op.drop_index("idx_markets_status", table_name="markets")
    op.drop_table("markets")
