from datetime import date

import pytest
from sqlalchemy import select

from errors import ConflictError, ValidationError
from models import (
    AccountType,
    GroupCode,
    IncomeFrequency,
    MonthStatus,
    Transaction,
    TransactionSource,
    TransactionStatus,
)
from recurrence import ScheduleProjector
from schemas import (
    AccountIn,
    CategoryIn,
    GoalIn,
    IncomeSourceIn,
    RecurringBillIn,
)
from services import MonthService


def _obligations(catalog):
    card = catalog.add_account(AccountIn(name="Card", type=AccountType.credit_card))
    checking = catalog.add_account(AccountIn(name="Checking", type=AccountType.checking))
    housing = catalog.add_category(CategoryIn(group_code=GroupCode.essential, name="Housing"))
    rent = catalog.add_bill(
        RecurringBillIn(
            category_id=housing.id,
            account_id=checking.id,
            name="Rent",
            amount_cents=120_000,
            due_day=5,
        )
    )
    internet = catalog.add_bill(
        RecurringBillIn(category_id=housing.id, name="Internet", amount_cents=10_000, due_day=12)
    )
    catalog.add_bill(
        RecurringBillIn(
            category_id=housing.id,
            name="Power",
            amount_cents=0,
            due_day=20,
            is_variable=True,
        )
    )
    catalog.add_income_source(
        IncomeSourceIn(
            name="Salary",
            amount_cents=250_000,
            frequency=IncomeFrequency.biweekly,
            day_of_month=5,
            account_id=checking.id,
        )
    )
    catalog.add_goal(GoalIn(name="Trip", target_cents=100_000, target_date=date(2025, 12, 31)))
    return card, checking, rent, internet


def test_start_month_materializes_pending_obligations(session, budget, catalog, read_balances) -> None:
    card, checking, rent, internet = _obligations(catalog)
    months = MonthService(session, budget.id)

    created = months.start_month(2025, 3, today=date(2025, 3, 1))

    assert created == 4
    assert months.month_status(2025, 3)["status"] == "active"
    rows = session.scalars(select(Transaction).order_by(Transaction.date, Transaction.id)).all()
    assert {row.status for row in rows} == {TransactionStatus.pending}
    assert {row.source for row in rows} == {TransactionSource.recurring}
    assert {row.goal_id for row in rows} == {None}
    by_bill = {row.recurring_bill_id: row for row in rows if row.recurring_bill_id}
    assert by_bill[rent.id].account_id == checking.id
    # bills without an account land on the first non-card account
    assert by_bill[internet.id].account_id == checking.id
    assert read_balances(checking.id) == (370_000, 0)
    assert read_balances(card.id) == (0, 0)


def test_second_start_creates_nothing(session, budget, catalog) -> None:
    _obligations(catalog)
    months = MonthService(session, budget.id)
    months.start_month(2025, 3, today=date(2025, 3, 1))

    assert months.start_month(2025, 3, today=date(2025, 3, 2)) == 0

    items = ScheduleProjector(session, budget.id).month_items(2025, 3, today=date(2025, 3, 2))
    materialized = [
        item for item in items if item.source_type != "goal" and item.amount_cents > 0
    ]
    assert len(materialized) == 4
    assert all(item.pending_transaction_id for item in materialized)
    assert len(session.scalars(select(Transaction.id)).all()) == 4


def test_start_month_without_accounts_rolls_back(session, budget, catalog) -> None:
    housing = catalog.add_category(CategoryIn(group_code=GroupCode.essential, name="Housing"))
    catalog.add_bill(
        RecurringBillIn(category_id=housing.id, name="Rent", amount_cents=120_000, due_day=5)
    )
    months = MonthService(session, budget.id)

    with pytest.raises(ValidationError):
        months.start_month(2025, 3, today=date(2025, 3, 1))

    assert months.month_status(2025, 3)["status"] == "planning"
    assert months.status_row(2025, 3) is None


def test_closed_month_cannot_restart(session, budget, catalog) -> None:
    _obligations(catalog)
    months = MonthService(session, budget.id)
    months.start_month(2025, 3, today=date(2025, 3, 1))

    closed = months.close_month(2025, 3)

    assert closed.status == MonthStatus.closed
    assert closed.closed_at is not None
    with pytest.raises(ConflictError):
        months.start_month(2025, 3, today=date(2025, 3, 2))
    with pytest.raises(ConflictError):
        months.close_month(2025, 3)


def test_only_active_months_close(session, budget) -> None:
    with pytest.raises(ConflictError):
        MonthService(session, budget.id).close_month(2025, 4)


def test_empty_month_starts_with_no_transactions(session, budget) -> None:
    months = MonthService(session, budget.id)

    assert months.start_month(2025, 4, today=date(2025, 4, 1)) == 0
    assert months.month_status(2025, 4)["status"] == "active"
