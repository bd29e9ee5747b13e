"""create monetization agent tables

Revision ID: 0001_monetization_tables
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_monetization_tables"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    # ---- agent_runs ----
    op.create_table(
        "agent_runs",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("run_type", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="running"),
        sa.Column("parent_run_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("items_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("opportunities_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors_encountered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("log_summary", sa.Text(), nullable=True),
        sa.Column("error_details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(["parent_run_id"], ["agent_runs.id"]),
    )
    op.create_index("ix_agent_runs_type_started", "agent_runs", ["run_type", "started_at"])

    # ---- monetization_opportunities ----
    op.create_table(
        "monetization_opportunities",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("opportunity_type", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("estimated_revenue_impact", sa.Float(), nullable=True),
        sa.Column("page_url", sa.Text(), nullable=True),
        sa.Column("subject_id", sa.Text(), nullable=True),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        _created_at(),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_by", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("implemented_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("priority BETWEEN 0 AND 10", name="ck_opportunities_priority"),
        sa.CheckConstraint("confidence BETWEEN 0 AND 1", name="ck_opportunities_confidence"),
    )
    op.create_index(
        "ix_opportunities_status_priority",
        "monetization_opportunities",
        ["status", "priority"],
    )
    op.create_index(
        "ix_opportunities_page_type",
        "monetization_opportunities",
        ["page_url", "opportunity_type"],
    )

    # ---- monetization_actions ----
    op.create_table(
        "monetization_actions",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("opportunity_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("action_type", sa.Text(), nullable=False),
        sa.Column(
            "action_data",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("execution_result", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(
            ["opportunity_id"], ["monetization_opportunities.id"], ondelete="CASCADE"
        ),
    )
    op.create_index("ix_actions_opportunity", "monetization_actions", ["opportunity_id"])

    # ---- revenue_forecasts ----
    op.create_table(
        "revenue_forecasts",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("forecast_month", sa.Date(), nullable=False, unique=True),
        sa.Column("forecasted_total_revenue", sa.Numeric(12, 2), nullable=False),
        sa.Column("forecasted_ad_revenue", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column(
            "forecasted_affiliate_revenue", sa.Numeric(12, 2), nullable=False, server_default="0"
        ),
        sa.Column("confidence_level", sa.Float(), nullable=False),
        sa.Column("month_over_month_growth", sa.Float(), nullable=False, server_default="0"),
        sa.Column("growth_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("model_version", sa.Text(), nullable=False),
        sa.Column(
            "input_snapshot",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column("actual_total_revenue", sa.Numeric(12, 2), nullable=True),
        sa.Column("actual_ad_revenue", sa.Numeric(12, 2), nullable=True),
        sa.Column("actual_affiliate_revenue", sa.Numeric(12, 2), nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False),
    )

    # ---- monetization_metrics ----
    op.create_table(
        "monetization_metrics",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("metric_date", sa.Date(), nullable=False),
        sa.Column("page_url", sa.Text(), nullable=False),
        sa.Column("page_type", sa.Text(), nullable=False, server_default="other"),
        sa.Column("pageviews", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("unique_visitors", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("bounce_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_time_on_page", sa.Float(), nullable=False, server_default="0"),
        sa.Column("traffic_google", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("traffic_pinterest", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("traffic_direct", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("traffic_social", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("traffic_other", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("affiliate_clicks", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("ad_revenue", sa.Numeric(12, 4), nullable=False, server_default="0"),
        sa.Column("affiliate_revenue", sa.Numeric(12, 4), nullable=False, server_default="0"),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "metric_date", "page_url", name="uq_monetization_metrics_date_page"
        ),
    )
    op.create_index("ix_monetization_metrics_page", "monetization_metrics", ["page_url"])

    # ---- content_items ----
    op.create_table(
        "content_items",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("author", sa.Text(), nullable=True),
        sa.Column("source", sa.Text(), nullable=True),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("is_free", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )


def downgrade() -> None:
    op.drop_table("content_items")
    op.drop_index("ix_monetization_metrics_page", table_name="monetization_metrics")
    op.drop_table("monetization_metrics")
    op.drop_table("revenue_forecasts")
    op.drop_index("ix_actions_opportunity", table_name="monetization_actions")
    op.drop_table("monetization_actions")
    op.drop_index("ix_opportunities_page_type", table_name="monetization_opportunities")
    op.drop_index("ix_opportunities_status_priority", table_name="monetization_opportunities")
    op.drop_table("monetization_opportunities")
    op.drop_index("ix_agent_runs_type_started", table_name="agent_runs")
    op.drop_table("agent_runs")
