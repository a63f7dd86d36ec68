"""initial household schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None

TRANSACTION_TYPE = sa.Enum(
    "expense", "income", "settlement", "reimbursement", name="transactiontype"
)
SPLIT_TYPE = sa.Enum("splitEqually", "user1_only", "user2_only", name="splittype")
PENDING_STATUS = sa.Enum(
    "pending", "approved", "rejected", "edited", name="pendingstatus"
)
BUDGET_TYPE = sa.Enum("absolute", "split", name="budgettype")
ACCOUNT_TYPE = sa.Enum(
    "checking", "savings", "credit_card", "investment", name="accounttype"
)
SYNC_FREQUENCY = sa.Enum("manual", "daily", name="syncfrequency")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _budget_amounts():
    return [
        sa.Column("budget_type", BUDGET_TYPE, nullable=False),
        sa.Column("absolute_amount_cents", sa.Integer()),
        sa.Column("user1_amount_cents", sa.Integer()),
        sa.Column("user2_amount_cents", sa.Integer()),
    ]


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("image_url", sa.String(length=500)),
        *_timestamps(),
    )

    op.create_table(
        "sectors",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        *_timestamps(),
    )

    op.create_table(
        "sector_categories",
        sa.Column(
            "sector_id",
            sa.Integer(),
            sa.ForeignKey("sectors.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("transaction_type", TRANSACTION_TYPE, nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column("paid_by_user_name", sa.String(length=100)),
        sa.Column("paid_to_user_name", sa.String(length=100)),
        sa.Column("split_type", SPLIT_TYPE),
        sa.Column(
            "reimburses_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "excluded_from_monthly_budget",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "excluded_from_yearly_budget",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index(
        "ix_transactions_category_date", "transactions", ["category_id", "date"]
    )
    op.create_index(
        "ix_transactions_reimburses", "transactions", ["reimburses_transaction_id"]
    )

    op.create_table(
        "connected_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_name", sa.String(length=120), nullable=False),
        sa.Column("institution_name", sa.String(length=120)),
        sa.Column("institution_id", sa.String(length=64)),
        sa.Column("account_last_four", sa.String(length=4)),
        sa.Column("account_type", ACCOUNT_TYPE, nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("external_item_id", sa.String(length=120)),
        sa.Column("external_account_id", sa.String(length=120), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sync_frequency", SYNC_FREQUENCY, nullable=False),
        sa.Column("last_synced_at", sa.DateTime()),
        *_timestamps(),
    )

    op.create_table(
        "pending_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "connected_account_id",
            sa.Integer(),
            sa.ForeignKey("connected_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_transaction_id", sa.String(length=120), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("transaction_type", TRANSACTION_TYPE, nullable=False),
        sa.Column("status", PENDING_STATUS, nullable=False),
        sa.Column("approved_at", sa.DateTime()),
        sa.Column("rejected_at", sa.DateTime()),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column("paid_by_user_name", sa.String(length=100)),
        sa.Column("paid_to_user_name", sa.String(length=100)),
        sa.Column("split_type", SPLIT_TYPE),
        sa.Column(
            "reimburses_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("raw_data", sa.JSON()),
        *_timestamps(),
        sa.UniqueConstraint(
            "external_transaction_id", name="uq_pending_external_transaction"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_pending_amount_positive"),
    )
    op.create_index(
        "ix_pending_status_date", "pending_transactions", ["status", "date"]
    )

    op.create_table(
        "category_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        *_budget_amounts(),
        *_timestamps(),
        sa.UniqueConstraint(
            "category_id", "year", "month", name="uq_category_budget_period"
        ),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_category_budget_month"),
    )
    op.create_index(
        "ix_category_budget_period", "category_budgets", ["year", "month"]
    )

    op.create_table(
        "sector_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "sector_id",
            sa.Integer(),
            sa.ForeignKey("sectors.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column(
            "auto_rollup", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_budget_amounts(),
        *_timestamps(),
        sa.UniqueConstraint("sector_id", "year", "month", name="uq_sector_budget_period"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_sector_budget_month"),
    )
    op.create_index("ix_sector_budget_period", "sector_budgets", ["year", "month"])

    op.create_table(
        "yearly_category_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        *_budget_amounts(),
        *_timestamps(),
        sa.UniqueConstraint("category_id", "year", name="uq_yearly_category_budget"),
    )

    op.create_table(
        "yearly_sector_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "sector_id",
            sa.Integer(),
            sa.ForeignKey("sectors.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column(
            "auto_rollup", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_budget_amounts(),
        *_timestamps(),
        sa.UniqueConstraint("sector_id", "year", name="uq_yearly_sector_budget"),
    )


def downgrade():
    op.drop_table("yearly_sector_budgets")
    op.drop_table("yearly_category_budgets")
    op.drop_index("ix_sector_budget_period", table_name="sector_budgets")
    op.drop_table("sector_budgets")
    op.drop_index("ix_category_budget_period", table_name="category_budgets")
    op.drop_table("category_budgets")
    op.drop_index("ix_pending_status_date", table_name="pending_transactions")
    op.drop_table("pending_transactions")
    op.drop_table("connected_accounts")
    op.drop_index("ix_transactions_reimburses", table_name="transactions")
    op.drop_index("ix_transactions_category_date", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("sector_categories")
    op.drop_table("sectors")
    op.drop_table("categories")
    for enum_type in (
        SYNC_FREQUENCY,
        ACCOUNT_TYPE,
        BUDGET_TYPE,
        PENDING_STATUS,
        SPLIT_TYPE,
        TRANSACTION_TYPE,
    ):
        enum_type.drop(op.get_bind(), checkfirst=True)
