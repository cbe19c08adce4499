"""initial schema

Revision ID: 202610011200
Revises:
Create Date: 2026-10-01 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610011200"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "bills",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("merchant", sa.String(length=200)),
        sa.Column("account", sa.String(length=100)),
        sa.Column("notes", sa.Text()),
        sa.Column(
            "is_family_bill", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("synced_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_bills_user_date", "bills", ["user_id", "date"])
    op.create_index("ix_bills_user_synced", "bills", ["user_id", "synced_at"])

    op.create_table(
        "period_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "period",
            sa.Enum("weekly", "monthly", "yearly", name="budgetperiod"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer()),
        sa.Column(
            "filter_mode",
            sa.Enum("all", "include", "exclude", name="filtermode"),
            nullable=False,
            server_default="all",
        ),
        sa.Column("categories_json", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "period", name="uq_period_budget_user_period"),
    )

    op.create_table(
        "data_versions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "sync_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("operation", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("details_json", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_sync_logs_user_created", "sync_logs", ["user_id", "created_at"]
    )


def downgrade():
    op.drop_index("ix_sync_logs_user_created", table_name="sync_logs")
    op.drop_table("sync_logs")
    op.drop_table("data_versions")
    op.drop_table("period_budgets")
    op.drop_index("ix_bills_user_synced", table_name="bills")
    op.drop_index("ix_bills_user_date", table_name="bills")
    op.drop_table("bills")
