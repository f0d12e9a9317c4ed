from datetime import date

import pytest

from billing import (
    billing_cycle_dates,
    billing_month_for,
    installment_dates,
    split_installments,
)
from errors import ValidationError
from models import AccountType, TransactionType
from schemas import AccountIn, TransactionIn
from services import AccountService, LedgerService


@pytest.mark.parametrize(
    "closing_day, year, month, expected",
    [
        (20, 2025, 1, (date(2024, 12, 21), date(2025, 1, 20))),
        (31, 2025, 2, (date(2025, 2, 1), date(2025, 2, 28))),
        (30, 2025, 3, (date(2025, 3, 1), date(2025, 3, 30))),
        (28, 2025, 3, (date(2025, 3, 1), date(2025, 3, 28))),
    ],
)
def test_billing_cycle_dates(closing_day, year, month, expected) -> None:
    assert billing_cycle_dates(closing_day, year, month) == expected


def test_purchases_after_closing_bill_next_month() -> None:
    assert billing_month_for(date(2025, 3, 10), 10) == (2025, 3)
    assert billing_month_for(date(2025, 3, 11), 10) == (2025, 4)
    assert billing_month_for(date(2025, 12, 25), 20) == (2026, 1)
    assert billing_month_for(date(2025, 2, 28), 31) == (2025, 2)


def test_installment_dates_clamp_to_short_months() -> None:
    assert installment_dates(date(2025, 1, 31), 3) == [
        date(2025, 1, 31),
        date(2025, 2, 28),
        date(2025, 3, 31),
    ]
    assert installment_dates(date(2025, 11, 25), 3, closing_day=31) == [
        date(2025, 11, 30),
        date(2025, 12, 31),
        date(2026, 1, 31),
    ]


def test_split_rounds_half_up() -> None:
    assert split_installments(1_000, 3) == 333
    assert split_installments(1_001, 2) == 501
    assert split_installments(400, 4) == 100


def test_statement_totals_the_cycle(session, budget, catalog) -> None:
    card = catalog.add_account(
        AccountIn(
            name="Card",
            type=AccountType.credit_card,
            closing_day=10,
            due_day=17,
            credit_limit_cents=500_000,
        )
    )
    ledger = LedgerService(session, budget.id)
    for amount, when in ((1_000, date(2025, 2, 11)), (2_500, date(2025, 3, 10)), (700, date(2025, 3, 11))):
        ledger.create_transaction(
            TransactionIn(
                budget_id=budget.id,
                account_id=card.id,
                type=TransactionType.expense,
                amount_cents=amount,
                date=when,
            )
        )

    statement = AccountService(session, budget.id).statement(card.id, 2025, 3)

    assert statement["cycle_start"] == "2025-02-11"
    assert statement["cycle_end"] == "2025-03-10"
    assert statement["due_date"] == "2025-03-17"
    assert statement["total_cents"] == 3_500
    assert statement["transaction_count"] == 2
    assert statement["balance_cents"] == -4_200
    assert statement["available_credit_cents"] == 495_800


def test_statement_needs_a_card(session, budget, catalog) -> None:
    checking = catalog.add_account(AccountIn(name="Checking", type=AccountType.checking))

    with pytest.raises(ValidationError):
        AccountService(session, budget.id).statement(checking.id, 2025, 3)
