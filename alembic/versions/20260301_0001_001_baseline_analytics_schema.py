"""Initial baseline for the analytics engine.

Revision ID: 001_baseline
Revises:
Create Date: 2026-03-01

Creates price history and holdings (owned by the ingest and CRUD layers,
read here), one cache table per artifact kind, provider failure records,
regime model versions, risk snapshots and job state.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_baseline"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


CACHE_TABLES = (
    "risk_cache",
    "portfolio_risk_cache",
    "correlation_cache",
    "volatility_forecast_cache",
    "regime_forecast_cache",
    "narrative_cache",
    "news_cache",
    "sentiment_cache",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def _create_cache_table(name: str) -> None:
    op.create_table(
        name,
        sa.Column("subject", sa.String(64), nullable=False),
        sa.Column("params", sa.String(255), nullable=False, server_default=""),
        sa.Column("status", sa.String(20), nullable=False, server_default="stale"),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(50), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_token", sa.String(64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("subject", "params", name=f"pk_{name}"),
        sa.CheckConstraint(
            "status IN ('fresh', 'stale', 'calculating', 'error')",
            name=f"ck_{name}_status",
        ),
        sa.CheckConstraint(
            "expires_at IS NULL OR generated_at IS NULL OR expires_at >= generated_at",
            name=f"ck_{name}_expiry_order",
        ),
    )
    op.create_index(f"idx_{name}_status", name, ["status"])
    op.create_index(f"idx_{name}_expires", name, ["expires_at"])


def upgrade() -> None:
    """Create all tables."""
    # ==========================================================================
    # MARKET DATA & HOLDINGS
    # ==========================================================================

    op.create_table(
        "price_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("symbol", sa.String(20), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("close", sa.Numeric(16, 6), nullable=False),
        sa.Column("volume", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("symbol", "date", name="uq_price_history"),
    )
    op.create_index("idx_price_history_symbol_date", "price_history", ["symbol", "date"])

    op.create_table(
        "portfolios",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("base_currency", sa.String(10), server_default="USD"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index(
        "idx_portfolios_active",
        "portfolios",
        ["is_active"],
        postgresql_where=sa.text("is_active = TRUE"),
    )

    op.create_table(
        "portfolio_holdings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "portfolio_id",
            sa.Integer(),
            sa.ForeignKey(
                "portfolios.id",
                ondelete="CASCADE",
                name="fk_portfolio_holdings_portfolio_id_portfolios",
            ),
            nullable=False,
        ),
        sa.Column("symbol", sa.String(20), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=False),
        sa.Column("avg_cost", sa.Numeric(18, 4), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("portfolio_id", "symbol", name="uq_portfolio_holdings_symbol"),
    )
    op.create_index("idx_portfolio_holdings_portfolio", "portfolio_holdings", ["portfolio_id"])

    # ==========================================================================
    # CACHED ARTIFACTS
    # ==========================================================================

    for name in CACHE_TABLES:
        _create_cache_table(name)

    # ==========================================================================
    # PROVIDER FAILURES
    # ==========================================================================

    op.create_table(
        "ticker_fetch_failures",
        sa.Column("ticker", sa.String(20), primary_key=True),
        sa.Column("failure_type", sa.String(20), nullable=False),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("retry_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "failure_type IN ('not_found', 'rate_limited', 'api_error')",
            name="ck_ticker_fetch_failures_failure_type",
        ),
        sa.CheckConstraint(
            "retry_after > last_attempt_at",
            name="ck_ticker_fetch_failures_retry_after_order",
        ),
    )
    op.create_index(
        "idx_ticker_fetch_failures_retry_after", "ticker_fetch_failures", ["retry_after"]
    )

    # ==========================================================================
    # MODELS & SNAPSHOTS
    # ==========================================================================

    op.create_table(
        "hmm_models",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("market", sa.String(20), nullable=False),
        sa.Column("version", sa.String(40), nullable=False),
        sa.Column("trained_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("training_start", sa.Date(), nullable=False),
        sa.Column("training_end", sa.Date(), nullable=False),
        sa.Column("state_names", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("transition_matrix", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("emission_matrix", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("initial_distribution", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("discretization", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("accuracy", sa.Float(), nullable=False),
        sa.Column("validation_log_likelihood", sa.Float(), nullable=True),
        sa.Column("iterations", sa.Integer(), nullable=False),
        sa.Column("converged", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("market", "version", name="uq_hmm_models_market_version"),
    )
    op.create_index("idx_hmm_models_market_trained", "hmm_models", ["market", "trained_at"])

    op.create_table(
        "risk_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("subject_type", sa.String(20), nullable=False),
        sa.Column("subject", sa.String(64), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("volatility", sa.Float(), nullable=False),
        sa.Column("max_drawdown", sa.Float(), nullable=False),
        sa.Column("beta", sa.Float(), nullable=True),
        sa.Column("sharpe_ratio", sa.Float(), nullable=True),
        sa.Column("var_95", sa.Float(), nullable=False),
        sa.Column("var_99", sa.Float(), nullable=False),
        sa.Column("es_95", sa.Float(), nullable=False),
        sa.Column("es_99", sa.Float(), nullable=False),
        sa.Column("risk_score", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "subject_type", "subject", "snapshot_date", name="uq_risk_snapshots_subject_date"
        ),
        sa.CheckConstraint(
            "subject_type IN ('portfolio', 'position')", name="ck_risk_snapshots_subject_type"
        ),
    )
    # Snapshots are immutable once written
    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_risk_snapshot_update() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'risk_snapshots rows are immutable';
        END;
        $$ LANGUAGE plpgsql
        """
    )
    op.execute(
        """
        CREATE TRIGGER risk_snapshots_immutable
        BEFORE UPDATE ON risk_snapshots
        FOR EACH ROW EXECUTE FUNCTION reject_risk_snapshot_update()
        """
    )

    # ==========================================================================
    # JOBS
    # ==========================================================================

    op.create_table(
        "job_config",
        sa.Column("job_name", sa.String(100), primary_key=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("schedule", sa.String(100), nullable=False),
        sa.Column("max_duration_minutes", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("last_run", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_run", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "max_duration_minutes > 0", name="ck_job_config_max_duration_positive"
        ),
    )

    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_name", sa.String(100), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("items_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "status IN ('running', 'success', 'failed', 'cancelled', 'skipped')",
            name="ck_job_runs_status",
        ),
    )
    op.create_index("idx_job_runs_name_started", "job_runs", ["job_name", "started_at"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("job_runs")
    op.drop_table("job_config")
    op.execute("DROP TRIGGER IF EXISTS risk_snapshots_immutable ON risk_snapshots")
    op.execute("DROP FUNCTION IF EXISTS reject_risk_snapshot_update()")
    op.drop_table("risk_snapshots")
    op.drop_table("hmm_models")
    op.drop_table("ticker_fetch_failures")
    for name in reversed(CACHE_TABLES):
        op.drop_table(name)
    op.drop_table("portfolio_holdings")
    op.drop_table("portfolios")
    op.drop_table("price_history")
