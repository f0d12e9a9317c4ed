from datetime import date

import pytest
from sqlalchemy import select

from errors import NotFoundError, ValidationError
from models import AccountType, Transaction, TransactionStatus, TransactionType
from schemas import AccountIn, GoalContributionIn, GoalIn, TransactionUpdate
from services import GoalService, LedgerService, goal_metrics


def test_goal_metrics_round_and_cap() -> None:
    class Goal:
        target_cents = 300
        current_cents = 100
        target_date = date(2025, 6, 30)

    metrics = goal_metrics(Goal, today=date(2025, 3, 10))
    assert metrics == {
        "progress": 33,
        "months_remaining": 3,
        "monthly_target_cents": 67,
        "remaining_cents": 200,
    }

    Goal.current_cents = 450
    Goal.target_date = date(2024, 12, 31)
    metrics = goal_metrics(Goal, today=date(2025, 3, 10))
    assert metrics["progress"] == 100
    assert metrics["months_remaining"] == 0
    assert metrics["monthly_target_cents"] == -150


def test_first_contribution_posts_cleared_transfer(session, budget, catalog, read_balances) -> None:
    checking = catalog.add_account(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=100_000)
    )
    savings = catalog.add_account(AccountIn(name="Savings", type=AccountType.savings))
    goal = catalog.add_goal(
        GoalIn(
            name="Trip",
            target_cents=50_000,
            target_date=date(2025, 12, 31),
            account_id=savings.id,
        )
    )
    service = GoalService(session, budget.id)

    result = service.contribute(
        goal.id,
        GoalContributionIn(amount_cents=30_000, year=2025, month=3, from_account_id=checking.id),
        today=date(2025, 3, 10),
    )

    assert result["goal"]["current_cents"] == 30_000
    assert result["just_completed"] is False
    txn = session.get(Transaction, result["contribution"]["transaction_id"])
    assert txn.type == TransactionType.transfer
    assert txn.date == date(2025, 3, 10)
    assert read_balances(checking.id) == (70_000, 70_000)
    assert read_balances(savings.id) == (30_000, 30_000)


def test_repeat_contribution_replaces_month_amount(session, budget, catalog, read_balances) -> None:
    checking = catalog.add_account(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=100_000)
    )
    savings = catalog.add_account(AccountIn(name="Savings", type=AccountType.savings))
    goal = catalog.add_goal(
        GoalIn(
            name="Trip",
            target_cents=50_000,
            target_date=date(2025, 12, 31),
            account_id=savings.id,
        )
    )
    service = GoalService(session, budget.id)
    request = dict(year=2025, month=3, from_account_id=checking.id)
    first = service.contribute(
        goal.id, GoalContributionIn(amount_cents=30_000, **request), today=date(2025, 3, 10)
    )

    second = service.contribute(
        goal.id, GoalContributionIn(amount_cents=50_000, **request), today=date(2025, 3, 20)
    )

    assert second["contribution"]["id"] == first["contribution"]["id"]
    assert second["contribution"]["transaction_id"] == first["contribution"]["transaction_id"]
    assert second["goal"]["current_cents"] == 50_000
    assert second["goal"]["is_completed"] is True
    assert second["just_completed"] is True
    assert len(session.scalars(select(Transaction.id)).all()) == 1
    assert read_balances(checking.id) == (50_000, 50_000)
    assert read_balances(savings.id) == (50_000, 50_000)
    assert [c.amount_cents for c in service.contributions(goal.id, 2025)] == [50_000]

    again = service.contribute(
        goal.id,
        GoalContributionIn(amount_cents=10_000, year=2025, month=4, from_account_id=checking.id),
        today=date(2025, 3, 20),
    )
    assert again["just_completed"] is False
    assert again["goal"]["current_cents"] == 60_000


def test_goal_without_account_records_expense(session, budget, catalog, read_balances) -> None:
    checking = catalog.add_account(AccountIn(name="Checking", type=AccountType.checking))
    goal = catalog.add_goal(
        GoalIn(name="Emergency fund", target_cents=500_000, target_date=date(2026, 6, 30))
    )

    result = GoalService(session, budget.id).contribute(
        goal.id,
        GoalContributionIn(amount_cents=20_000, year=2025, month=2, from_account_id=checking.id),
        today=date(2025, 3, 10),
    )

    txn = session.get(Transaction, result["contribution"]["transaction_id"])
    assert txn.type == TransactionType.expense
    assert txn.goal_id == goal.id
    # past months are dated at month end
    assert txn.date == date(2025, 2, 28)
    assert read_balances(checking.id) == (-20_000, -20_000)


def test_deleting_contribution_transaction_unlinks_it(session, budget, catalog) -> None:
    checking = catalog.add_account(AccountIn(name="Checking", type=AccountType.checking))
    goal = catalog.add_goal(
        GoalIn(name="Emergency fund", target_cents=500_000, target_date=date(2026, 6, 30))
    )
    service = GoalService(session, budget.id)
    result = service.contribute(
        goal.id,
        GoalContributionIn(amount_cents=20_000, year=2025, month=3, from_account_id=checking.id),
        today=date(2025, 3, 10),
    )

    LedgerService(session, budget.id).delete_transaction(
        result["contribution"]["transaction_id"]
    )

    session.expire_all()
    [contribution] = service.contributions(goal.id)
    assert contribution.transaction_id is None


def test_contribute_from_unknown_account(session, budget, catalog) -> None:
    goal = catalog.add_goal(
        GoalIn(name="Trip", target_cents=50_000, target_date=date(2025, 12, 31))
    )

    with pytest.raises(NotFoundError):
        GoalService(session, budget.id).contribute(
            goal.id,
            GoalContributionIn(amount_cents=1_000, year=2025, month=3, from_account_id=999),
        )


def test_goal_ledger_rows_reject_amount_edits(session, budget, catalog, read_balances) -> None:
    checking = catalog.add_account(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=100_000)
    )
    goal = catalog.add_goal(
        GoalIn(name="Emergency fund", target_cents=500_000, target_date=date(2026, 6, 30))
    )
    service = GoalService(session, budget.id)
    result = service.contribute(
        goal.id,
        GoalContributionIn(amount_cents=20_000, year=2025, month=3, from_account_id=checking.id),
        today=date(2025, 3, 10),
    )
    txn_id = result["contribution"]["transaction_id"]
    ledger = LedgerService(session, budget.id)

    with pytest.raises(ValidationError):
        ledger.update_transaction(txn_id, TransactionUpdate(amount_cents=5_000))

    assert read_balances(checking.id) == (80_000, 80_000)
    assert service.get(goal.id).current_cents == 20_000
    [contribution] = service.contributions(goal.id)
    assert contribution.amount_cents == 20_000

    updated = ledger.update_transaction(
        txn_id,
        TransactionUpdate(amount_cents=20_000, status=TransactionStatus.reconciled),
    )
    assert updated.status == TransactionStatus.reconciled
