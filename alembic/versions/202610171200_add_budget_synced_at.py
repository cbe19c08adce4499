"""add_budget_synced_at

Revision ID: 202610171200
Revises: 202610011200
Create Date: 2026-10-17 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610171200"
down_revision = "202610011200"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("period_budgets") as batch_op:
        batch_op.add_column(
            sa.Column(
                "synced_at",
                sa.DateTime(),
                nullable=False,
                server_default=sa.func.current_timestamp(),
            )
        )
        batch_op.create_index(
            "ix_period_budgets_user_synced", ["user_id", "synced_at"]
        )


def downgrade() -> None:
    with op.batch_alter_table("period_budgets") as batch_op:
        batch_op.drop_index("ix_period_budgets_user_synced")
        batch_op.drop_column("synced_at")
