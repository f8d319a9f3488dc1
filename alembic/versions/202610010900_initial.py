"""initial budgets, categories, transactions and recurring rules

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "budgets",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("income", "expense", name="categorytype"),
            nullable=False,
        ),
        sa.Column("color_hex", sa.String(9), nullable=True),
        sa.Column("icon_name", sa.String(50), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("type", "name", name="uq_category_type_name"),
    )

    op.create_table(
        "recurring_rules",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "budget_id", sa.String(36), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("description", sa.String(200), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("is_income", sa.Boolean(), nullable=False),
        sa.Column("frequency", sa.String(16), nullable=False),
        sa.Column("next_run_date", sa.Date(), nullable=False),
        sa.Column(
            "category_id", sa.String(36), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("amount != 0", name="ck_rule_amount_nonzero"),
    )
    op.create_index(
        "ix_recurring_rules_budget_active",
        "recurring_rules",
        ["budget_id", "is_active"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "budget_id", sa.String(36), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(200), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("is_income", sa.Boolean(), nullable=False),
        sa.Column(
            "category_id", sa.String(36), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column(
            "is_recurring_instance",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("recurring_rule_id", sa.String(36), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "budget_id", "recurring_rule_id", "date", name="uq_txn_rule_occurrence"
        ),
        sa.CheckConstraint("amount != 0", name="ck_transactions_amount_nonzero"),
        sa.CheckConstraint(
            "(is_income AND amount > 0) OR (NOT is_income AND amount < 0)",
            name="ck_transactions_amount_sign",
        ),
    )
    op.create_index("ix_transactions_budget_date", "transactions", ["budget_id", "date"])
    op.create_index("ix_transactions_rule", "transactions", ["recurring_rule_id"])


def downgrade() -> None:
    op.drop_index("ix_transactions_rule", table_name="transactions")
    op.drop_index("ix_transactions_budget_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_recurring_rules_budget_active", table_name="recurring_rules")
    op.drop_table("recurring_rules")
    op.drop_table("categories")
    op.drop_table("budgets")
