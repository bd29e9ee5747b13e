"""add impact measurements

Revision ID: 0002_impact_measurements
Revises: 0001_monetization_tables
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_impact_measurements"
down_revision = "0001_monetization_tables"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "impact_measurements",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("action_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("measurement_type", sa.Text(), nullable=False),
        sa.Column("measurement_window", sa.Integer(), nullable=False),
        sa.Column("baseline_window", sa.Integer(), nullable=False),
        sa.Column("baseline_start", sa.Date(), nullable=False),
        sa.Column("baseline_end", sa.Date(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("baseline_value", sa.Float(), nullable=False, server_default="0"),
        sa.Column("baseline_revenue", sa.Float(), nullable=False, server_default="0"),
        sa.Column("measured_value", sa.Float(), nullable=True),
        sa.Column("measured_revenue", sa.Float(), nullable=True),
        sa.Column("absolute_impact", sa.Float(), nullable=True),
        sa.Column("percent_impact", sa.Float(), nullable=True),
        sa.Column("revenue_impact", sa.Float(), nullable=True),
        sa.Column("estimated_impact", sa.Float(), nullable=False, server_default="0"),
        sa.Column("prediction_error", sa.Float(), nullable=True),
        sa.Column("prediction_accuracy", sa.Float(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["action_id"], ["monetization_actions.id"]),
        sa.UniqueConstraint("action_id", name="uq_impact_measurements_action"),
    )
    op.create_index(
        "ix_impact_measurements_status_end",
        "impact_measurements",
        ["status", "end_date"],
    )


def downgrade() -> None:
    op.drop_index("ix_impact_measurements_status_end", table_name="impact_measurements")
    op.drop_table("impact_measurements")
