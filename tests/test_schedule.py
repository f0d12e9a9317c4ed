from datetime import date, datetime

from models import (
    AccountType,
    BillFrequency,
    GroupCode,
    IncomeFrequency,
    MonthlyBudgetStatus,
    MonthStatus,
    TransactionStatus,
    TransactionType,
)
from recurrence import (
    ScheduleProjector,
    goal_monthly_target,
    income_occurrences,
    sunday_based_weekday,
    weekday_dates,
)
from schemas import (
    AccountIn,
    CategoryIn,
    GoalIn,
    IncomeSourceIn,
    RecurringBillIn,
    TransactionIn,
)
from services import LedgerService

MARCH = (date(2025, 3, 1), date(2025, 3, 31))


def _activate(session, budget_id: int, year: int, month: int) -> None:
    session.add(
        MonthlyBudgetStatus(
            budget_id=budget_id, year=year, month=month, status=MonthStatus.active
        )
    )
    session.commit()


def _household(catalog):
    account = catalog.add_account(AccountIn(name="Checking", type=AccountType.checking))
    housing = catalog.add_category(CategoryIn(group_code=GroupCode.essential, name="Housing"))
    rent = catalog.add_bill(
        RecurringBillIn(
            category_id=housing.id,
            account_id=account.id,
            name="Rent",
            amount_cents=120_000,
            due_day=5,
        )
    )
    salary = catalog.add_income_source(
        IncomeSourceIn(
            name="Salary",
            amount_cents=250_000,
            frequency=IncomeFrequency.biweekly,
            day_of_month=5,
            account_id=account.id,
        )
    )
    return account, rent, salary


def test_weekday_helpers_use_sunday_zero() -> None:
    assert sunday_based_weekday(date(2025, 3, 2)) == 0
    assert sunday_based_weekday(date(2025, 3, 8)) == 6
    assert [d.day for d in weekday_dates(2025, 3, 1)] == [3, 10, 17, 24, 31]


def test_biweekly_income_clamps_second_payment() -> None:
    class Source:
        frequency = IncomeFrequency.biweekly
        day_of_month = 20

    assert income_occurrences(Source, 2025, 2) == [date(2025, 2, 20), date(2025, 2, 28)]
    Source.day_of_month = 28
    assert income_occurrences(Source, 2025, 2) == [date(2025, 2, 28)]


def test_goal_monthly_target_rounds_up_in_whole_cents() -> None:
    class Goal:
        target_cents = 90_001
        current_cents = 0
        target_date = date(2025, 12, 31)

    assert goal_monthly_target(Goal, date(2025, 3, 15)) == (90_001, 9, 10_001)
    Goal.target_cents = 9 * 10**16 + 9
    assert goal_monthly_target(Goal, date(2025, 3, 15))[2] == 10**16 + 1


def test_planning_month_has_no_items(session, budget, catalog) -> None:
    _household(catalog)

    projection = ScheduleProjector(session, budget.id).project(*MARCH, today=date(2025, 3, 10))

    assert projection.items == []
    assert [(m.year, m.month, m.status) for m in projection.months] == [
        (2025, 3, MonthStatus.planning)
    ]
    assert projection.months[0].has_allocations is False


def test_active_month_items_are_stable_and_ordered(session, budget, catalog) -> None:
    _, rent, salary = _household(catalog)
    goal = catalog.add_goal(
        GoalIn(name="Trip", target_cents=100_000, target_date=date(2025, 12, 31))
    )
    _activate(session, budget.id, 2025, 3)
    projector = ScheduleProjector(session, budget.id)

    first = projector.project(*MARCH, today=date(2025, 3, 15))
    second = projector.project(*MARCH, today=date(2025, 3, 15))

    assert [item.id for item in first.items] == [
        f"bill-{rent.id}-2025-03",
        f"income-{salary.id}-2025-03-05",
        f"income-{salary.id}-2025-03-19",
        f"goal-{goal.id}-2025-03",
    ]
    assert first.model_dump() == second.model_dump()
    goal_item = first.items[-1]
    assert goal_item.due_date == date(2025, 3, 31)
    assert goal_item.months_remaining == 9
    assert goal_item.amount_cents == 11_112
    assert first.totals.expenses_cents == 120_000
    assert first.totals.income_cents == 500_000
    assert first.totals.goals_cents == 11_112


def test_paid_requires_confirmed_transaction(session, budget, catalog) -> None:
    account, rent, salary = _household(catalog)
    _activate(session, budget.id, 2025, 3)
    ledger = LedgerService(session, budget.id)
    pending = ledger.create_transaction(
        TransactionIn(
            budget_id=budget.id,
            account_id=account.id,
            type=TransactionType.expense,
            amount_cents=120_000,
            date=date(2025, 3, 5),
            recurring_bill_id=rent.id,
        )
    )
    paid = ledger.create_transaction(
        TransactionIn(
            budget_id=budget.id,
            account_id=account.id,
            type=TransactionType.income,
            amount_cents=250_000,
            date=date(2025, 3, 19),
            status=TransactionStatus.cleared,
            income_source_id=salary.id,
        )
    )

    projection = ScheduleProjector(session, budget.id).project(*MARCH, today=date(2025, 3, 20))
    items = {item.id: item for item in projection.items}

    rent_item = items[f"bill-{rent.id}-2025-03"]
    assert rent_item.is_paid is False
    assert rent_item.pending_transaction_id == pending.id
    assert items[f"income-{salary.id}-2025-03-05"].is_paid is False
    late = items[f"income-{salary.id}-2025-03-19"]
    assert late.is_paid is True
    assert late.paid_transaction_id == paid.id
    assert projection.totals.paid_income_cents == 250_000
    assert projection.totals.paid_expenses_cents == 0


def test_entities_created_after_a_past_month_are_excluded(session, budget, catalog) -> None:
    _, rent, salary = _household(catalog)
    salary.created_at = datetime(2025, 1, 2, 8, 0)
    rent.created_at = datetime(2025, 5, 1, 9, 30)
    session.commit()
    _activate(session, budget.id, 2025, 3)
    projector = ScheduleProjector(session, budget.id)

    past = projector.month_items(2025, 3, today=date(2025, 6, 10))
    current = projector.month_items(2025, 3, today=date(2025, 3, 10))

    assert f"bill-{rent.id}-2025-03" not in {item.id for item in past}
    assert f"income-{salary.id}-2025-03-05" in {item.id for item in past}
    assert f"bill-{rent.id}-2025-03" in {item.id for item in current}


def test_range_filters_items_but_not_month_totals(session, budget, catalog) -> None:
    _household(catalog)
    _activate(session, budget.id, 2025, 3)

    projection = ScheduleProjector(session, budget.id).project(
        date(2025, 3, 10), date(2025, 3, 20), today=date(2025, 3, 10)
    )

    assert [item.due_date for item in projection.items] == [date(2025, 3, 19)]
    assert projection.totals.income_cents == 250_000
    assert projection.month_totals.income_cents == 500_000
    assert projection.month_totals.expenses_cents == 120_000


def test_weekly_bill_occurrences_are_matched_by_date(session, budget, catalog) -> None:
    account = catalog.add_account(AccountIn(name="Checking", type=AccountType.checking))
    cleaning = catalog.add_category(CategoryIn(group_code=GroupCode.essential, name="Cleaning"))
    bill = catalog.add_bill(
        RecurringBillIn(
            category_id=cleaning.id,
            account_id=account.id,
            name="Cleaner",
            amount_cents=5_000,
            frequency=BillFrequency.weekly,
            due_day=1,
        )
    )
    _activate(session, budget.id, 2025, 3)
    LedgerService(session, budget.id).create_transaction(
        TransactionIn(
            budget_id=budget.id,
            account_id=account.id,
            type=TransactionType.expense,
            amount_cents=5_000,
            date=date(2025, 3, 10),
            status=TransactionStatus.cleared,
            recurring_bill_id=bill.id,
        )
    )

    items = ScheduleProjector(session, budget.id).month_items(2025, 3, today=date(2025, 3, 12))

    assert [item.id for item in items] == [
        f"bill-{bill.id}-2025-03-{day:02d}" for day in (3, 10, 17, 24, 31)
    ]
    assert [item.is_paid for item in items] == [False, True, False, False, False]


def test_yearly_bill_only_in_due_month(session, budget, catalog) -> None:
    insurance = catalog.add_category(CategoryIn(group_code=GroupCode.essential, name="Insurance"))
    catalog.add_bill(
        RecurringBillIn(
            category_id=insurance.id,
            name="Car insurance",
            amount_cents=90_000,
            frequency=BillFrequency.yearly,
            due_day=31,
            due_month=2,
        )
    )
    projector = ScheduleProjector(session, budget.id)

    february = projector.month_items(2025, 2, today=date(2025, 1, 1))
    march = projector.month_items(2025, 3, today=date(2025, 1, 1))

    assert [item.due_date for item in february] == [date(2025, 2, 28)]
    assert march == []
