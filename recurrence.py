import logging
from datetime import date, datetime, time, timedelta
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import (
    CONFIRMED_STATUSES,
    BillFrequency,
    Goal,
    GoalContribution,
    IncomeFrequency,
    IncomeSource,
    MonthlyAllocation,
    MonthlyBudgetStatus,
    MonthStatus,
    RecurringBill,
    Transaction,
)
from periods import (
    Period,
    clamp_day,
    days_in_month,
    local_today,
    month_end,
    month_start,
    months_between,
)
from schemas import (
    MonthScheduleState,
    ScheduledBill,
    ScheduledGoal,
    ScheduledIncome,
    ScheduleProjection,
)

logger = logging.getLogger(__name__)

AnyScheduledItem = Union[ScheduledBill, ScheduledIncome, ScheduledGoal]

_SOURCE_ORDER = {"recurring_bill": 0, "income_source": 1, "goal": 2}


def sunday_based_weekday(d: date) -> int:
    """0=Sunday .. 6=Saturday."""
    return (d.weekday() + 1) % 7


def weekday_dates(year: int, month: int, day_of_week: int) -> list[date]:
    first = month_start(year, month)
    offset = (day_of_week - sunday_based_weekday(first)) % 7
    current = first + timedelta(days=offset)
    dates: list[date] = []
    while current.month == month:
        dates.append(current)
        current += timedelta(days=7)
    return dates


def bill_occurrences(bill: RecurringBill, year: int, month: int) -> list[date]:
    if bill.frequency == BillFrequency.weekly:
        if bill.due_day is None:
            return []
        return weekday_dates(year, month, bill.due_day)
    if bill.frequency == BillFrequency.yearly and bill.due_month != month:
        return []
    return [clamp_day(year, month, bill.due_day or 1)]


def income_occurrences(source: IncomeSource, year: int, month: int) -> list[date]:
    if source.day_of_month is None:
        return []
    if source.frequency == IncomeFrequency.weekly:
        return weekday_dates(year, month, source.day_of_month)
    if source.frequency == IncomeFrequency.biweekly:
        first = clamp_day(year, month, source.day_of_month)
        second = clamp_day(year, month, source.day_of_month + 14)
        return [first] if first == second else [first, second]
    return [clamp_day(year, month, source.day_of_month)]


def is_multi_occurrence(frequency: Union[BillFrequency, IncomeFrequency]) -> bool:
    return frequency.value in ("weekly", "biweekly")


def synthetic_id(
    prefix: str, source_id: int, year: int, month: int, day: Optional[int] = None
) -> str:
    base = f"{prefix}-{source_id}-{year:04d}-{month:02d}"
    if day is not None:
        return f"{base}-{day:02d}"
    return base


def goal_monthly_target(goal: Goal, today: date) -> tuple[int, int, int]:
    """Return (remaining, months_remaining, monthly_target) for a goal."""
    remaining = goal.target_cents - goal.current_cents
    months_remaining = max(1, months_between(today, goal.target_date))
    if remaining <= 0:
        return remaining, months_remaining, 0
    return remaining, months_remaining, -(-remaining // months_remaining)


class ScheduleProjector:
    def __init__(self, session: Session, budget_id: int) -> None:
        self.session = session
        self.budget_id = budget_id

    def project(
        self, start: date, end: date, today: Optional[date] = None
    ) -> ScheduleProjection:
        today = today or local_today()
        projection = ScheduleProjection(start=start, end=end)
        period = Period("schedule", start, end)
        for year, month in period.months():
            self._refresh_carry_over(year, month)
            status = self._month_status(year, month)
            projection.months.append(
                MonthScheduleState(
                    year=year,
                    month=month,
                    status=status,
                    has_allocations=self._has_allocations(year, month),
                )
            )
            if status != MonthStatus.active:
                continue
            for item in self.month_items(year, month, today):
                projection.month_totals.add(item)
                if start <= item.due_date <= end:
                    projection.items.append(item)
                    projection.totals.add(item)

        projection.items.sort(key=_sort_key)
        return projection

    def month_items(
        self, year: int, month: int, today: Optional[date] = None
    ) -> list[AnyScheduledItem]:
        """Every obligation of the month, flagged against the ledger.

        Ignores the month's lifecycle status; callers decide whether the month
        is allowed to carry obligations.
        """
        today = today or local_today()
        cutoff: Optional[datetime] = None
        last_day = month_end(year, month)
        if last_day < today:
            # past month: skip entities created after it ended
            cutoff = datetime.combine(last_day + timedelta(days=1), time.min)
        items: list[AnyScheduledItem] = []
        items.extend(self._bill_items(year, month, cutoff))
        items.extend(self._income_items(year, month, cutoff))
        items.extend(self._goal_items(year, month, today, cutoff))
        items.sort(key=_sort_key)
        return items

    def _refresh_carry_over(self, year: int, month: int) -> None:
        from services import AllocationService

        try:
            AllocationService(self.session, self.budget_id).ensure_month_allocations(
                year, month
            )
        except SQLAlchemyError as exc:
            logger.warning(
                f"Carry-over refresh skipped: budget_id={self.budget_id} "
                f"year={year} month={month} error={exc}"
            )

    def _month_status(self, year: int, month: int) -> MonthStatus:
        status = self.session.scalar(
            select(MonthlyBudgetStatus.status).where(
                MonthlyBudgetStatus.budget_id == self.budget_id,
                MonthlyBudgetStatus.year == year,
                MonthlyBudgetStatus.month == month,
            )
        )
        return status or MonthStatus.planning

    def _has_allocations(self, year: int, month: int) -> bool:
        count = self.session.execute(
            select(func.count(MonthlyAllocation.id)).where(
                MonthlyAllocation.budget_id == self.budget_id,
                MonthlyAllocation.year == year,
                MonthlyAllocation.month == month,
            )
        ).scalar_one()
        return (count or 0) > 0

    def _linked_transactions(
        self, link_column, source_ids: list[int], year: int, month: int
    ) -> dict[int, list[Transaction]]:
        if not source_ids:
            return {}
        rows = self.session.scalars(
            select(Transaction)
            .where(
                Transaction.budget_id == self.budget_id,
                link_column.in_(source_ids),
                Transaction.date.between(month_start(year, month), month_end(year, month)),
            )
            .order_by(Transaction.date, Transaction.id)
        ).all()
        linked: dict[int, list[Transaction]] = {}
        for txn in rows:
            linked.setdefault(getattr(txn, link_column.key), []).append(txn)
        return linked

    def _bill_items(
        self, year: int, month: int, cutoff: Optional[datetime]
    ) -> list[ScheduledBill]:
        stmt = select(RecurringBill).where(
            RecurringBill.budget_id == self.budget_id,
            RecurringBill.is_active.is_(True),
        )
        if cutoff is not None:
            stmt = stmt.where(RecurringBill.created_at < cutoff)
        bills = self.session.scalars(stmt.order_by(RecurringBill.id)).all()
        linked = self._linked_transactions(
            Transaction.recurring_bill_id, [b.id for b in bills], year, month
        )

        items: list[ScheduledBill] = []
        for bill in bills:
            multi = is_multi_occurrence(bill.frequency)
            for due in bill_occurrences(bill, year, month):
                item = ScheduledBill(
                    id=synthetic_id("bill", bill.id, year, month, due.day if multi else None),
                    name=bill.name,
                    amount_cents=bill.amount_cents,
                    due_date=due,
                    due_day=due.day,
                    account_id=bill.account_id,
                    recurring_bill_id=bill.id,
                    category_id=bill.category_id,
                    frequency=bill.frequency,
                    is_auto_debit=bill.is_auto_debit,
                    is_variable=bill.is_variable,
                )
                _mark_from_ledger(item, linked.get(bill.id, []), due if multi else None)
                items.append(item)
        return items

    def _income_items(
        self, year: int, month: int, cutoff: Optional[datetime]
    ) -> list[ScheduledIncome]:
        stmt = select(IncomeSource).where(
            IncomeSource.budget_id == self.budget_id,
            IncomeSource.is_active.is_(True),
            IncomeSource.day_of_month.is_not(None),
        )
        if cutoff is not None:
            stmt = stmt.where(IncomeSource.created_at < cutoff)
        sources = self.session.scalars(stmt.order_by(IncomeSource.id)).all()
        linked = self._linked_transactions(
            Transaction.income_source_id, [s.id for s in sources], year, month
        )

        items: list[ScheduledIncome] = []
        for source in sources:
            multi = is_multi_occurrence(source.frequency)
            for due in income_occurrences(source, year, month):
                item = ScheduledIncome(
                    id=synthetic_id(
                        "income", source.id, year, month, due.day if multi else None
                    ),
                    name=source.name,
                    amount_cents=source.amount_cents,
                    due_date=due,
                    due_day=due.day,
                    account_id=source.account_id,
                    income_source_id=source.id,
                    member_id=source.member_id,
                    frequency=source.frequency,
                    is_auto_confirm=source.is_auto_confirm,
                )
                _mark_from_ledger(item, linked.get(source.id, []), due if multi else None)
                items.append(item)
        return items

    def _goal_items(
        self, year: int, month: int, today: date, cutoff: Optional[datetime]
    ) -> list[ScheduledGoal]:
        stmt = select(Goal).where(
            Goal.budget_id == self.budget_id,
            Goal.is_archived.is_(False),
            Goal.is_completed.is_(False),
        )
        if cutoff is not None:
            stmt = stmt.where(Goal.created_at < cutoff)
        goals = self.session.scalars(stmt.order_by(Goal.id)).all()
        if not goals:
            return []

        contributions = {
            c.goal_id: c
            for c in self.session.scalars(
                select(GoalContribution).where(
                    GoalContribution.goal_id.in_([g.id for g in goals]),
                    GoalContribution.year == year,
                    GoalContribution.month == month,
                )
            )
        }

        due = date(year, month, days_in_month(year, month))
        items: list[ScheduledGoal] = []
        for goal in goals:
            remaining, months_remaining, monthly_target = goal_monthly_target(goal, today)
            if remaining <= 0:
                continue
            contribution = contributions.get(goal.id)
            items.append(
                ScheduledGoal(
                    id=synthetic_id("goal", goal.id, year, month),
                    name=goal.name,
                    amount_cents=monthly_target,
                    due_date=due,
                    due_day=due.day,
                    account_id=goal.account_id,
                    is_paid=contribution is not None,
                    paid_transaction_id=contribution.transaction_id if contribution else None,
                    goal_id=goal.id,
                    target_cents=goal.target_cents,
                    current_cents=goal.current_cents,
                    remaining_cents=remaining,
                    months_remaining=months_remaining,
                )
            )
        return items


def _mark_from_ledger(
    item: Union[ScheduledBill, ScheduledIncome],
    transactions: list[Transaction],
    on_date: Optional[date],
) -> None:
    for txn in transactions:
        if on_date is not None and txn.date != on_date:
            continue
        if txn.status in CONFIRMED_STATUSES:
            if item.paid_transaction_id is None:
                item.paid_transaction_id = txn.id
                item.is_paid = True
        elif item.pending_transaction_id is None:
            item.pending_transaction_id = txn.id


def _sort_key(item: AnyScheduledItem) -> tuple[date, int, int]:
    if isinstance(item, ScheduledBill):
        source_id = item.recurring_bill_id
    elif isinstance(item, ScheduledIncome):
        source_id = item.income_source_id
    else:
        source_id = item.goal_id
    return item.due_date, _SOURCE_ORDER[item.source_type], source_id
