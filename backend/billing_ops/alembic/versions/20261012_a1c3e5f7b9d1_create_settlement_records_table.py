"""create settlement_records table

Revision ID: a1c3e5f7b9d1
Revises:
Create Date: 2026-10-12 10:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "a1c3e5f7b9d1"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "settlement_records",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("source_id", sa.String(length=255), nullable=False),
        sa.Column("source_type", sa.String(length=20), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("customer_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(length=255), nullable=True),
        sa.Column("total_applied_cents", sa.BigInteger(), nullable=False),
        sa.Column("credit_added_cents", sa.BigInteger(), nullable=False),
        sa.Column("credit_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("summary_recorded", sa.Boolean(), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("(CURRENT_TIMESTAMP)"),
            nullable=True,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_settlement_records_source_id", "settlement_records", ["source_id"], unique=True
    )
    op.create_index("ix_settlement_records_customer_id", "settlement_records", ["customer_id"])
    op.create_index(
        "ix_settlement_records_account_customer",
        "settlement_records",
        ["account_id", "customer_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_settlement_records_account_customer", table_name="settlement_records")
    op.drop_index("ix_settlement_records_customer_id", table_name="settlement_records")
    op.drop_index("ix_settlement_records_source_id", table_name="settlement_records")
    op.drop_table("settlement_records")
