"""Create cost_records and alerts_sent.

Revision ID: 001_cloudpulse_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "001_cloudpulse_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create both engine-owned tables with their keys and indexes."""

    # cost_records
    op.create_table(
        "cost_records",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("cloud_account_id", sa.String(64), nullable=False),
        sa.Column("project_id", sa.String(64), nullable=False),
        sa.Column("service_name", sa.String(255), nullable=False),
        sa.Column("amount", sa.Numeric(20, 10), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("period_start", sa.Date, nullable=False),
        sa.Column("period_end", sa.Date, nullable=False),
        sa.Column(
            "granularity",
            sa.Enum("DAILY", name="cost_granularity"),
            nullable=False,
            server_default="DAILY",
        ),
        sa.UniqueConstraint(
            "cloud_account_id",
            "service_name",
            "period_start",
            "period_end",
            name="uq_cost_records_account_service_period",
        ),
    )
    op.create_index("ix_cost_records_project_period", "cost_records", ["project_id", "period_start"])
    op.create_index("ix_cost_records_account_period", "cost_records", ["cloud_account_id", "period_start"])

    # alerts_sent
    op.create_table(
        "alerts_sent",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("project_id", sa.String(64), nullable=False),
        sa.Column("alert_rule_id", sa.String(64), nullable=False),
        sa.Column("channel", sa.Enum("EMAIL", "SLACK", name="alert_channel"), nullable=False),
        sa.Column("alert_type", sa.String(32), nullable=False),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("payload", JSONB, nullable=False, server_default="{}"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_alerts_sent_rule_sent_at", "alerts_sent", ["alert_rule_id", "sent_at"])
    op.create_index("ix_alerts_sent_user_project", "alerts_sent", ["user_id", "project_id", "sent_at"])


def downgrade() -> None:
    """Drop both tables and their enum types."""
    op.drop_table("alerts_sent")
    op.drop_table("cost_records")
    op.execute("DROP TYPE IF EXISTS alert_channel")
    op.execute("DROP TYPE IF EXISTS cost_granularity")
