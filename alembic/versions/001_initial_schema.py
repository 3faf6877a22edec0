"""Initial schema: parks, energy_settlements, energy_settlement_items.

Revision ID: 001
Revises:
Create Date: 2026-09-28
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "parks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("short_name", sa.String(50), nullable=True),
        sa.Column("default_distribution_mode", sa.String(16), nullable=True),
        sa.Column("default_tolerance_percentage", sa.Numeric(7, 4), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "energy_settlements",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "park_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("parks.id"),
            nullable=False,
            index=True,
        ),
        sa.Column("year", sa.Integer, nullable=False),
        sa.Column("month", sa.Integer, nullable=True),
        sa.Column("total_production_kwh", sa.Numeric(16, 3), nullable=True),
        sa.Column("net_operator_revenue_eur", sa.Numeric(14, 2), nullable=False),
        sa.Column("net_operator_reference", sa.String(100), nullable=True),
        sa.Column(
            "distribution_mode",
            sa.Enum("PROPORTIONAL", "SMOOTHED", "TOLERATED", name="distribution_mode"),
            nullable=False,
        ),
        sa.Column("smoothing_factor", sa.Numeric(5, 4), nullable=True),
        sa.Column("tolerance_percentage", sa.Numeric(7, 4), nullable=True),
        sa.Column(
            "status",
            sa.Enum("DRAFT", "CALCULATED", "INVOICED", "CLOSED", name="settlement_status"),
            nullable=False,
            server_default="DRAFT",
        ),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("park_id", "year", "month", name="uq_energy_settlement_period"),
    )

    # NULL months never collide under the unique constraint above
    op.create_index(
        "uq_energy_settlement_annual",
        "energy_settlements",
        ["park_id", "year"],
        unique=True,
        postgresql_where=sa.text("month IS NULL"),
    )

    op.create_table(
        "energy_settlement_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "settlement_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("energy_settlements.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("recipient_entity_id", sa.String(64), nullable=False),
        sa.Column("turbine_id", sa.String(64), nullable=True),
        sa.Column("production_share_kwh", sa.Numeric(16, 3), nullable=False),
        sa.Column("production_share_pct", sa.Numeric(9, 4), nullable=False),
        sa.Column("revenue_share_eur", sa.Numeric(14, 2), nullable=False),
        sa.Column("distribution_key", sa.String(64), nullable=False),
        sa.Column("invoice_ref", sa.String(64), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    op.create_index(
        "ix_energy_settlements_period",
        "energy_settlements",
        ["year", "month"],
    )


def downgrade() -> None:
    op.drop_index("ix_energy_settlements_period", table_name="energy_settlements")
    op.drop_table("energy_settlement_items")
    op.drop_index("uq_energy_settlement_annual", table_name="energy_settlements")
    op.drop_table("energy_settlements")
    op.drop_table("parks")
    op.execute("DROP TYPE IF EXISTS settlement_status")
    op.execute("DROP TYPE IF EXISTS distribution_mode")
