"""initial envelope schema

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


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "budget_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column("user_ref", sa.String(length=64)),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("owner", "partner", "child", "pet", name="membertype"),
            nullable=False,
        ),
        *_timestamps(),
    )
    op.create_index("ix_budget_members_budget", "budget_members", ["budget_id"])

    op.create_table(
        "groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "code",
            sa.Enum(
                "essential",
                "lifestyle",
                "pleasures",
                "investments",
                "goals",
                name="groupcode",
            ),
            nullable=False,
            unique=True,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("member_id", sa.Integer(), sa.ForeignKey("budget_members.id")),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "behavior",
            sa.Enum("refill_up", "set_aside", name="categorybehavior"),
            nullable=False,
            server_default="refill_up",
        ),
        sa.Column("planned_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("planned_cents >= 0", name="ck_category_planned_positive"),
    )
    op.create_index("ix_categories_budget", "categories", ["budget_id"])

    op.create_table(
        "financial_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("budget_members.id")),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "checking",
                "savings",
                "credit_card",
                "cash",
                "investment",
                "benefit",
                name="accounttype",
            ),
            nullable=False,
        ),
        sa.Column(
            "opening_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "cleared_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("credit_limit_cents", sa.Integer()),
        sa.Column("closing_day", sa.Integer()),
        sa.Column("due_day", sa.Integer()),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint(
            "closing_day IS NULL OR (closing_day BETWEEN 1 AND 31)",
            name="ck_account_closing_day",
        ),
        sa.CheckConstraint(
            "due_day IS NULL OR (due_day BETWEEN 1 AND 31)", name="ck_account_due_day"
        ),
    )
    op.create_index("ix_financial_accounts_budget", "financial_accounts", ["budget_id"])

    op.create_table(
        "recurring_bills",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("financial_accounts.id")),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "frequency",
            sa.Enum("weekly", "monthly", "yearly", name="billfrequency"),
            nullable=False,
            server_default="monthly",
        ),
        sa.Column("due_day", sa.Integer()),
        sa.Column("due_month", sa.Integer()),
        sa.Column("is_auto_debit", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_variable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_bill_amount_positive"),
        sa.CheckConstraint(
            "due_month IS NULL OR (due_month BETWEEN 1 AND 12)",
            name="ck_bill_due_month",
        ),
    )
    op.create_index("ix_recurring_bills_budget", "recurring_bills", ["budget_id"])
    op.create_index("ix_recurring_bills_category", "recurring_bills", ["category_id"])

    op.create_table(
        "income_sources",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column("member_id", sa.Integer(), sa.ForeignKey("budget_members.id")),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("financial_accounts.id")),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "frequency",
            sa.Enum("monthly", "biweekly", "weekly", name="incomefrequency"),
            nullable=False,
            server_default="monthly",
        ),
        sa.Column("day_of_month", sa.Integer()),
        sa.Column(
            "is_auto_confirm", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_income_amount_positive"),
    )
    op.create_index("ix_income_sources_budget", "income_sources", ["budget_id"])

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("financial_accounts.id")),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("target_cents", sa.Integer(), nullable=False),
        sa.Column("current_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("target_date", sa.Date(), nullable=False),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("target_cents > 0", name="ck_goal_target_positive"),
    )
    op.create_index("ix_goals_budget", "goals", ["budget_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("financial_accounts.id"),
            nullable=False,
        ),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("financial_accounts.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("member_id", sa.Integer(), sa.ForeignKey("budget_members.id")),
        sa.Column("income_source_id", sa.Integer(), sa.ForeignKey("income_sources.id")),
        sa.Column("recurring_bill_id", sa.Integer(), sa.ForeignKey("recurring_bills.id")),
        sa.Column("goal_id", sa.Integer(), sa.ForeignKey("goals.id")),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("pending", "cleared", "reconciled", name="transactionstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200)),
        sa.Column("notes", sa.Text()),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "is_installment", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("installment_number", sa.Integer()),
        sa.Column("total_installments", sa.Integer()),
        sa.Column(
            "parent_transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")
        ),
        sa.Column(
            "source",
            sa.Enum(
                "web",
                "recurring",
                "scheduled",
                "goal",
                "manual",
                name="transactionsource",
            ),
            nullable=False,
            server_default="web",
        ),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "type != 'transfer' OR to_account_id IS NOT NULL",
            name="ck_transactions_transfer_destination",
        ),
    )
    op.create_index("ix_transactions_budget_date", "transactions", ["budget_id", "date"])
    op.create_index("ix_transactions_account", "transactions", ["account_id"])
    op.create_index("ix_transactions_parent", "transactions", ["parent_transaction_id"])
    op.create_index(
        "ix_transactions_bill_date", "transactions", ["recurring_bill_id", "date"]
    )
    op.create_index(
        "ix_transactions_income_date", "transactions", ["income_source_id", "date"]
    )

    op.create_table(
        "goal_contributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("goal_id", sa.Integer(), sa.ForeignKey("goals.id"), nullable=False),
        sa.Column(
            "from_account_id", sa.Integer(), sa.ForeignKey("financial_accounts.id")
        ),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("goal_id", "year", "month", name="uq_goal_contribution_month"),
        sa.CheckConstraint("amount_cents > 0", name="ck_goal_contribution_positive"),
    )

    op.create_table(
        "monthly_allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("allocated_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "carried_over_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "budget_id",
            "category_id",
            "year",
            "month",
            name="uq_allocation_budget_category_month",
        ),
        sa.CheckConstraint(
            "allocated_cents >= 0", name="ck_allocation_allocated_positive"
        ),
        sa.CheckConstraint(
            "carried_over_cents >= 0", name="ck_allocation_carried_over_positive"
        ),
    )
    op.create_index(
        "ix_allocations_budget_month",
        "monthly_allocations",
        ["budget_id", "year", "month"],
    )

    op.create_table(
        "monthly_income_allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column(
            "income_source_id",
            sa.Integer(),
            sa.ForeignKey("income_sources.id"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("planned_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(
            "budget_id",
            "income_source_id",
            "year",
            "month",
            name="uq_income_allocation_budget_source_month",
        ),
        sa.CheckConstraint("planned_cents >= 0", name="ck_income_allocation_positive"),
    )

    op.create_table(
        "monthly_budget_status",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("planning", "active", "closed", name="monthstatus"),
            nullable=False,
            server_default="planning",
        ),
        sa.Column("started_at", sa.DateTime()),
        sa.Column("closed_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint("budget_id", "year", "month", name="uq_month_status"),
    )


def downgrade():
    op.drop_table("monthly_budget_status")
    op.drop_table("monthly_income_allocations")
    op.drop_index("ix_allocations_budget_month", table_name="monthly_allocations")
    op.drop_table("monthly_allocations")
    op.drop_table("goal_contributions")
    op.drop_index("ix_transactions_income_date", table_name="transactions")
    op.drop_index("ix_transactions_bill_date", table_name="transactions")
    op.drop_index("ix_transactions_parent", table_name="transactions")
    op.drop_index("ix_transactions_account", table_name="transactions")
    op.drop_index("ix_transactions_budget_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_goals_budget", table_name="goals")
    op.drop_table("goals")
    op.drop_index("ix_income_sources_budget", table_name="income_sources")
    op.drop_table("income_sources")
    op.drop_index("ix_recurring_bills_category", table_name="recurring_bills")
    op.drop_index("ix_recurring_bills_budget", table_name="recurring_bills")
    op.drop_table("recurring_bills")
    op.drop_index("ix_financial_accounts_budget", table_name="financial_accounts")
    op.drop_table("financial_accounts")
    op.drop_index("ix_categories_budget", table_name="categories")
    op.drop_table("categories")
    op.drop_table("groups")
    op.drop_index("ix_budget_members_budget", table_name="budget_members")
    op.drop_table("budget_members")
    op.drop_table("budgets")
