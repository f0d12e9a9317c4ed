from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class TransactionStatus(str, Enum):
    pending = "pending"
    cleared = "cleared"
    reconciled = "reconciled"

    @property
    def is_confirmed(self) -> bool:
        return self in (TransactionStatus.cleared, TransactionStatus.reconciled)


CONFIRMED_STATUSES = (TransactionStatus.cleared, TransactionStatus.reconciled)


class TransactionSource(str, Enum):
    web = "web"
    recurring = "recurring"
    scheduled = "scheduled"
    goal = "goal"
    manual = "manual"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit_card = "credit_card"
    cash = "cash"
    investment = "investment"
    benefit = "benefit"


class CategoryBehavior(str, Enum):
    refill_up = "refill_up"
    set_aside = "set_aside"


class GroupCode(str, Enum):
    essential = "essential"
    lifestyle = "lifestyle"
    pleasures = "pleasures"
    investments = "investments"
    goals = "goals"


class MemberType(str, Enum):
    owner = "owner"
    partner = "partner"
    child = "child"
    pet = "pet"


class BillFrequency(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class IncomeFrequency(str, Enum):
    monthly = "monthly"
    biweekly = "biweekly"
    weekly = "weekly"


class MonthStatus(str, Enum):
    planning = "planning"
    active = "active"
    closed = "closed"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")

    members: Mapped[list["Member"]] = relationship("Member", back_populates="budget")
    accounts: Mapped[list["FinancialAccount"]] = relationship(
        "FinancialAccount", back_populates="budget"
    )


class Member(Base, TimestampMixin):
    __tablename__ = "budget_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    user_ref: Mapped[Optional[str]] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[MemberType] = mapped_column(
        SAEnum(MemberType), nullable=False, default=MemberType.owner
    )

    budget: Mapped["Budget"] = relationship("Budget", back_populates="members")

    __table_args__ = (Index("ix_budget_members_budget", "budget_id"),)


class Group(Base, TimestampMixin):
    __tablename__ = "groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[GroupCode] = mapped_column(SAEnum(GroupCode), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    categories: Mapped[list["Category"]] = relationship(
        "Category", back_populates="group"
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id"), nullable=False)
    member_id: Mapped[Optional[int]] = mapped_column(ForeignKey("budget_members.id"))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    behavior: Mapped[CategoryBehavior] = mapped_column(
        SAEnum(CategoryBehavior), nullable=False, default=CategoryBehavior.refill_up
    )
    planned_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    group: Mapped["Group"] = relationship("Group", back_populates="categories")
    recurring_bills: Mapped[list["RecurringBill"]] = relationship(
        "RecurringBill", back_populates="category"
    )

    __table_args__ = (
        CheckConstraint("planned_cents >= 0", name="ck_category_planned_positive"),
        Index("ix_categories_budget", "budget_id"),
    )


class FinancialAccount(Base, TimestampMixin):
    __tablename__ = "financial_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    owner_id: Mapped[Optional[int]] = mapped_column(ForeignKey("budget_members.id"))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    opening_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cleared_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    credit_limit_cents: Mapped[Optional[int]] = mapped_column(Integer)
    closing_day: Mapped[Optional[int]] = mapped_column(Integer)
    due_day: Mapped[Optional[int]] = mapped_column(Integer)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="accounts")

    @property
    def is_credit_card(self) -> bool:
        return self.type == AccountType.credit_card

    __table_args__ = (
        CheckConstraint(
            "closing_day IS NULL OR (closing_day BETWEEN 1 AND 31)",
            name="ck_account_closing_day",
        ),
        CheckConstraint(
            "due_day IS NULL OR (due_day BETWEEN 1 AND 31)", name="ck_account_due_day"
        ),
        Index("ix_financial_accounts_budget", "budget_id"),
    )


class RecurringBill(Base, TimestampMixin):
    __tablename__ = "recurring_bills"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("categories.id"), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("financial_accounts.id")
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    frequency: Mapped[BillFrequency] = mapped_column(
        SAEnum(BillFrequency), nullable=False, default=BillFrequency.monthly
    )
    # weekly: day of week (0=Sunday); monthly/yearly: day of month
    due_day: Mapped[Optional[int]] = mapped_column(Integer)
    due_month: Mapped[Optional[int]] = mapped_column(Integer)
    is_auto_debit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_variable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="recurring_bills"
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_bill_amount_positive"),
        CheckConstraint(
            "due_month IS NULL OR (due_month BETWEEN 1 AND 12)",
            name="ck_bill_due_month",
        ),
        Index("ix_recurring_bills_budget", "budget_id"),
        Index("ix_recurring_bills_category", "category_id"),
    )


class IncomeSource(Base, TimestampMixin):
    __tablename__ = "income_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    member_id: Mapped[Optional[int]] = mapped_column(ForeignKey("budget_members.id"))
    account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("financial_accounts.id")
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    frequency: Mapped[IncomeFrequency] = mapped_column(
        SAEnum(IncomeFrequency), nullable=False, default=IncomeFrequency.monthly
    )
    # weekly: day of week (0=Sunday); otherwise day of month
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    is_auto_confirm: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    member: Mapped[Optional["Member"]] = relationship("Member")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_income_amount_positive"),
        Index("ix_income_sources_budget", "budget_id"),
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("financial_accounts.id")
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    target_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    contributions: Mapped[list["GoalContribution"]] = relationship(
        "GoalContribution", back_populates="goal"
    )

    __table_args__ = (
        CheckConstraint("target_cents > 0", name="ck_goal_target_positive"),
        Index("ix_goals_budget", "budget_id"),
    )


class GoalContribution(Base, TimestampMixin):
    __tablename__ = "goal_contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    goal_id: Mapped[int] = mapped_column(ForeignKey("goals.id"), nullable=False)
    from_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("financial_accounts.id")
    )
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    goal: Mapped["Goal"] = relationship("Goal", back_populates="contributions")

    __table_args__ = (
        UniqueConstraint("goal_id", "year", "month", name="uq_goal_contribution_month"),
        CheckConstraint("amount_cents > 0", name="ck_goal_contribution_positive"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("financial_accounts.id"), nullable=False
    )
    to_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("financial_accounts.id")
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    member_id: Mapped[Optional[int]] = mapped_column(ForeignKey("budget_members.id"))
    income_source_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("income_sources.id")
    )
    recurring_bill_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_bills.id")
    )
    goal_id: Mapped[Optional[int]] = mapped_column(ForeignKey("goals.id"))
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), nullable=False, default=TransactionStatus.pending
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(200))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    is_installment: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    installment_number: Mapped[Optional[int]] = mapped_column(Integer)
    total_installments: Mapped[Optional[int]] = mapped_column(Integer)
    parent_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )
    source: Mapped[TransactionSource] = mapped_column(
        SAEnum(TransactionSource), nullable=False, default=TransactionSource.web
    )

    account: Mapped["FinancialAccount"] = relationship(
        "FinancialAccount", foreign_keys=[account_id]
    )
    to_account: Mapped[Optional["FinancialAccount"]] = relationship(
        "FinancialAccount", foreign_keys=[to_account_id]
    )
    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "type != 'transfer' OR to_account_id IS NOT NULL",
            name="ck_transactions_transfer_destination",
        ),
        Index("ix_transactions_budget_date", "budget_id", "date"),
        Index("ix_transactions_account", "account_id"),
        Index("ix_transactions_parent", "parent_transaction_id"),
        Index("ix_transactions_bill_date", "recurring_bill_id", "date"),
        Index("ix_transactions_income_date", "income_source_id", "date"),
    )


class MonthlyAllocation(Base, TimestampMixin):
    __tablename__ = "monthly_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("categories.id"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    allocated_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    carried_over_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "budget_id",
            "category_id",
            "year",
            "month",
            name="uq_allocation_budget_category_month",
        ),
        CheckConstraint("allocated_cents >= 0", name="ck_allocation_allocated_positive"),
        CheckConstraint(
            "carried_over_cents >= 0", name="ck_allocation_carried_over_positive"
        ),
        Index("ix_allocations_budget_month", "budget_id", "year", "month"),
    )


class MonthlyIncomeAllocation(Base, TimestampMixin):
    __tablename__ = "monthly_income_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    income_source_id: Mapped[int] = mapped_column(
        ForeignKey("income_sources.id"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    planned_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "budget_id",
            "income_source_id",
            "year",
            "month",
            name="uq_income_allocation_budget_source_month",
        ),
        CheckConstraint("planned_cents >= 0", name="ck_income_allocation_positive"),
    )


class MonthlyBudgetStatus(Base, TimestampMixin):
    __tablename__ = "monthly_budget_status"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[MonthStatus] = mapped_column(
        SAEnum(MonthStatus), nullable=False, default=MonthStatus.planning
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint("budget_id", "year", "month", name="uq_month_status"),
    )
