import datetime as dt
from datetime import date
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import (
    AccountType,
    BillFrequency,
    CategoryBehavior,
    GroupCode,
    IncomeFrequency,
    MemberType,
    MonthStatus,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)

Year = Annotated[int, Field(ge=2020, le=2100)]
Month = Annotated[int, Field(ge=1, le=12)]


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    currency_code: str = Field(default="BRL", min_length=3, max_length=3)


class MemberIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: MemberType = MemberType.owner
    user_ref: Optional[str] = Field(default=None, max_length=64)


class CategoryIn(BaseModel):
    group_code: GroupCode
    name: str = Field(..., min_length=1, max_length=100)
    behavior: CategoryBehavior = CategoryBehavior.refill_up
    planned_cents: int = Field(default=0, ge=0)
    member_id: Optional[int] = None
    display_order: int = 0


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    balance_cents: int = 0
    owner_id: Optional[int] = None
    credit_limit_cents: Optional[int] = Field(default=None, ge=0)
    closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)


class RecurringBillIn(BaseModel):
    category_id: int
    account_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., ge=0)
    frequency: BillFrequency = BillFrequency.monthly
    due_day: Optional[int] = Field(default=None, ge=0, le=31)
    due_month: Optional[int] = Field(default=None, ge=1, le=12)
    is_auto_debit: bool = False
    is_variable: bool = False

    @model_validator(mode="after")
    def _check_schedule(self) -> "RecurringBillIn":
        if self.frequency == BillFrequency.weekly:
            if self.due_day is not None and self.due_day > 6:
                raise ValueError("Weekly bills take a day of week between 0 and 6")
        elif self.due_day == 0:
            raise ValueError("Day of month must be between 1 and 31")
        if self.frequency == BillFrequency.yearly and self.due_month is None:
            raise ValueError("Yearly bills require a due month")
        return self


class IncomeSourceIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., ge=0)
    frequency: IncomeFrequency = IncomeFrequency.monthly
    day_of_month: Optional[int] = Field(default=None, ge=0, le=31)
    member_id: Optional[int] = None
    account_id: Optional[int] = None
    is_auto_confirm: bool = False

    @model_validator(mode="after")
    def _check_schedule(self) -> "IncomeSourceIn":
        if self.frequency == IncomeFrequency.weekly:
            if self.day_of_month is not None and self.day_of_month > 6:
                raise ValueError("Weekly income takes a day of week between 0 and 6")
        elif self.day_of_month == 0:
            raise ValueError("Day of month must be between 1 and 31")
        return self


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    target_cents: int = Field(..., gt=0)
    current_cents: int = Field(default=0, ge=0)
    target_date: date
    account_id: Optional[int] = None


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    budget_id: int
    account_id: int
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    date: dt.date
    status: TransactionStatus = TransactionStatus.pending
    to_account_id: Optional[int] = None
    category_id: Optional[int] = None
    member_id: Optional[int] = None
    income_source_id: Optional[int] = None
    recurring_bill_id: Optional[int] = None
    goal_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=2000)
    is_installment: bool = False
    total_installments: Optional[int] = Field(default=None, ge=2, le=72)
    source: TransactionSource = TransactionSource.web

    @model_validator(mode="after")
    def _check_shape(self) -> "TransactionIn":
        if self.type == TransactionType.transfer:
            if self.to_account_id is None:
                raise ValueError("Transfers require a destination account")
            if self.to_account_id == self.account_id:
                raise ValueError("Transfer source and destination must differ")
        elif self.to_account_id is not None:
            raise ValueError("Only transfers take a destination account")
        if self.is_installment:
            if self.total_installments is None:
                raise ValueError("Installment purchases require total_installments")
            if self.type == TransactionType.transfer:
                raise ValueError("Transfers cannot be split into installments")
        elif self.total_installments is not None:
            raise ValueError("total_installments requires is_installment")
        return self


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, gt=0)
    status: Optional[TransactionStatus] = None
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=2000)
    category_id: Optional[int] = None
    apply_to_series: bool = False


class AllocationIn(BaseModel):
    budget_id: int
    category_id: int
    year: Year
    month: Month
    allocated_cents: int = Field(..., ge=0)


class AllocationCopyIn(BaseModel):
    budget_id: int
    from_year: Year
    from_month: Month
    to_year: Year
    to_month: Month
    overwrite: bool = False


class IncomeAllocationIn(BaseModel):
    budget_id: int
    income_source_id: int
    year: Year
    month: Month
    planned_cents: int = Field(..., ge=0)


class MonthIn(BaseModel):
    budget_id: int
    year: Year
    month: Month


class ConfirmScheduledIn(BaseModel):
    budget_id: int
    source_type: Literal["recurring_bill", "income_source"]
    source_id: int
    date: dt.date
    amount_cents: Optional[int] = Field(default=None, gt=0)
    account_id: Optional[int] = None


class AutoClearIn(BaseModel):
    budget_id: int
    today: Optional[date] = None


class GoalContributionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    year: Year
    month: Month
    from_account_id: int


class _ScheduledItemBase(BaseModel):
    id: str
    name: str
    amount_cents: int
    due_date: date
    due_day: int
    is_paid: bool = False
    paid_transaction_id: Optional[int] = None
    pending_transaction_id: Optional[int] = None
    account_id: Optional[int] = None


class ScheduledBill(_ScheduledItemBase):
    source_type: Literal["recurring_bill"] = "recurring_bill"
    type: Literal["expense"] = "expense"
    recurring_bill_id: int
    category_id: int
    frequency: BillFrequency
    is_auto_debit: bool
    is_variable: bool


class ScheduledIncome(_ScheduledItemBase):
    source_type: Literal["income_source"] = "income_source"
    type: Literal["income"] = "income"
    income_source_id: int
    member_id: Optional[int] = None
    frequency: IncomeFrequency
    is_auto_confirm: bool


class ScheduledGoal(_ScheduledItemBase):
    source_type: Literal["goal"] = "goal"
    type: Literal["goal"] = "goal"
    goal_id: int
    target_cents: int
    current_cents: int
    remaining_cents: int
    months_remaining: int


ScheduledItem = Annotated[
    Union[ScheduledBill, ScheduledIncome, ScheduledGoal],
    Field(discriminator="source_type"),
]


class ScheduleTotals(BaseModel):
    expenses_cents: int = 0
    income_cents: int = 0
    goals_cents: int = 0
    paid_expenses_cents: int = 0
    paid_income_cents: int = 0
    paid_goals_cents: int = 0

    def add(self, item: "ScheduledBill | ScheduledIncome | ScheduledGoal") -> None:
        if item.source_type == "recurring_bill":
            self.expenses_cents += item.amount_cents
            if item.is_paid:
                self.paid_expenses_cents += item.amount_cents
        elif item.source_type == "income_source":
            self.income_cents += item.amount_cents
            if item.is_paid:
                self.paid_income_cents += item.amount_cents
        else:
            self.goals_cents += item.amount_cents
            if item.is_paid:
                self.paid_goals_cents += item.amount_cents


class MonthScheduleState(BaseModel):
    year: int
    month: int
    status: MonthStatus
    has_allocations: bool


class ScheduleProjection(BaseModel):
    start: date
    end: date
    items: list[ScheduledItem] = Field(default_factory=list)
    totals: ScheduleTotals = Field(default_factory=ScheduleTotals)
    month_totals: ScheduleTotals = Field(default_factory=ScheduleTotals)
    months: list[MonthScheduleState] = Field(default_factory=list)
