"""initial ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPE = sa.Enum("income", "expense", name="transactiontype")
FREQUENCY = sa.Enum("daily", "weekly", "monthly", "yearly", name="frequency")


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer()),
        sa.Column("name", sa.String(length=30), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("icon", sa.String(length=16), nullable=False),
        sa.Column("color", sa.String(length=7), nullable=False),
        sa.Column("description", sa.String(length=100)),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "parent_category_id", sa.Integer(), sa.ForeignKey("categories.id")
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id", "type", "name", name="uq_category_user_type_name"
        ),
    )
    op.create_index("ix_categories_user_type", "categories", ["user_id", "type"])
    op.create_index(
        "ix_categories_default_type", "categories", ["is_default", "type"]
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "name", name="uq_tag_user_name"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("merchant", sa.String(length=100)),
        sa.Column("notes", sa.Text()),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column(
            "payment_method",
            sa.Enum(
                "cash",
                "card",
                "wechat",
                "alipay",
                "bank_transfer",
                "other",
                name="paymentmethod",
            ),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("active", "deleted", "archived", name="transactionstatus"),
            nullable=False,
        ),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("recurring_frequency", FREQUENCY),
        sa.Column("recurring_end_date", sa.Date()),
        sa.Column("recurring_next_occurrence", sa.Date()),
        sa.Column(
            "origin_transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "origin_transaction_id",
            "transaction_date",
            name="uq_txn_origin_occurrence",
        ),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_user_date", "transactions", ["user_id", "transaction_date"]
    )
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category_id", "transaction_date"],
    )
    op.create_index(
        "ix_transactions_user_type_date",
        "transactions",
        ["user_id", "type", "transaction_date"],
    )
    op.create_index("ix_transactions_user_status", "transactions", ["user_id", "status"])
    op.create_index(
        "ix_transactions_user_amount", "transactions", ["user_id", "amount_cents"]
    )

    op.create_table(
        "transaction_tags",
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("period", FREQUENCY, nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("active", "paused", "completed", "cancelled", name="budgetstatus"),
            nullable=False,
        ),
        sa.Column(
            "notifications_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
        sa.Column(
            "notification_threshold", sa.Float(), nullable=False, server_default="80"
        ),
        sa.Column("notification_last_sent_at", sa.DateTime()),
        sa.Column(
            "rollover_enabled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "rollover_max_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "carried_over_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "actual_spent_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("remaining_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("utilization_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_recomputed_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint("end_date > start_date", name="ck_budget_window"),
        sa.CheckConstraint(
            "notification_threshold >= 0 AND notification_threshold <= 100",
            name="ck_budget_threshold_range",
        ),
        sa.CheckConstraint(
            "utilization_rate >= 0 AND utilization_rate <= 100",
            name="ck_budget_utilization_range",
        ),
    )
    op.create_index("ix_budget_user_category", "budgets", ["user_id", "category_id"])
    op.create_index("ix_budget_user_status", "budgets", ["user_id", "status"])
    op.create_index(
        "ix_budget_user_window", "budgets", ["user_id", "start_date", "end_date"]
    )

    op.create_table(
        "user_statistics",
        sa.Column("user_id", sa.Integer(), primary_key=True),
        sa.Column(
            "total_income_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "total_expense_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "transaction_count", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )


def downgrade():
    op.drop_table("user_statistics")
    op.drop_index("ix_budget_user_window", table_name="budgets")
    op.drop_index("ix_budget_user_status", table_name="budgets")
    op.drop_index("ix_budget_user_category", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("transaction_tags")
    op.drop_index("ix_transactions_user_amount", table_name="transactions")
    op.drop_index("ix_transactions_user_status", table_name="transactions")
    op.drop_index("ix_transactions_user_type_date", table_name="transactions")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("tags")
    op.drop_index("ix_categories_default_type", table_name="categories")
    op.drop_index("ix_categories_user_type", table_name="categories")
    op.drop_table("categories")
