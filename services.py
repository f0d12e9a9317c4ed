import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Iterable, Optional, Union

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing import (
    billing_cycle_dates,
    installment_dates,
    split_installments,
)
from database import atomic
from errors import ConflictError, ConsistencyError, NotFoundError, ValidationError
from models import (
    CONFIRMED_STATUSES,
    AccountType,
    Budget,
    Category,
    CategoryBehavior,
    FinancialAccount,
    Goal,
    GoalContribution,
    Group,
    GroupCode,
    IncomeSource,
    Member,
    MonthlyAllocation,
    MonthlyBudgetStatus,
    MonthlyIncomeAllocation,
    MonthStatus,
    RecurringBill,
    Transaction,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)
from periods import (
    add_months,
    clamp_day,
    local_today,
    month_end,
    month_start,
    months_between,
    previous_month,
)
from recurrence import (
    ScheduleProjector,
    bill_occurrences,
    income_occurrences,
)
from schemas import (
    AccountIn,
    AllocationCopyIn,
    AllocationIn,
    BudgetIn,
    CategoryIn,
    ConfirmScheduledIn,
    GoalContributionIn,
    GoalIn,
    IncomeAllocationIn,
    IncomeSourceIn,
    MemberIn,
    RecurringBillIn,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)

DEFAULT_GROUPS: list[tuple[GroupCode, str, int]] = [
    (GroupCode.essential, "Essential", 1),
    (GroupCode.lifestyle, "Lifestyle", 2),
    (GroupCode.pleasures, "Pleasures", 3),
    (GroupCode.investments, "Investments", 4),
    (GroupCode.goals, "Goals", 5),
]

BudgetScoped = Union[Category, FinancialAccount, Goal, IncomeSource, Member, RecurringBill]


def owning_budget_id(
    session: Session, model, entity_id: int, allowed: Iterable[int], label: str
) -> int:
    """Budget of an entity, provided the caller may see it."""
    budget_id = session.scalar(select(model.budget_id).where(model.id == entity_id))
    if budget_id is None or budget_id not in set(allowed):
        raise NotFoundError(f"{label} not found")
    return budget_id


def balance_effects(txn: Transaction, on_credit_card: bool) -> dict[int, int]:
    """Signed effect of one ledger row on every account it touches."""
    amount = txn.amount_cents
    if txn.type == TransactionType.transfer:
        return {txn.account_id: -amount, txn.to_account_id: amount}
    signed = amount if txn.type == TransactionType.income else -amount
    if txn.is_installment and txn.parent_transaction_id is not None and not on_credit_card:
        # off-card children never touch the balance
        return {}
    return {txn.account_id: signed}


def _diff(after: dict[int, int], before: dict[int, int]) -> dict[int, int]:
    return {
        key: after.get(key, 0) - before.get(key, 0) for key in set(after) | set(before)
    }


def _negate(effects: dict[int, int]) -> dict[int, int]:
    return {key: -value for key, value in effects.items()}


class LedgerService:
    def __init__(self, session: Session, budget_id: int) -> None:
        self.session = session
        self.budget_id = budget_id

    def get(self, transaction_id: int, *, lock: bool = False) -> Transaction:
        stmt = select(Transaction).where(
            Transaction.id == transaction_id, Transaction.budget_id == self.budget_id
        )
        if lock:
            stmt = stmt.with_for_update()
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def account(self, account_id: int) -> FinancialAccount:
        account = self.session.get(FinancialAccount, account_id)
        if not account or account.budget_id != self.budget_id:
            raise NotFoundError("Account not found")
        return account

    def _check_link(self, model, entity_id: Optional[int], label: str):
        if entity_id is None:
            return None
        entity = self.session.get(model, entity_id)
        if not entity or entity.budget_id != self.budget_id:
            raise NotFoundError(f"{label} not found")
        return entity

    def create_transaction(self, data: TransactionIn) -> Transaction:
        with atomic(self.session):
            txn = self._create(data)
        return txn

    def update_transaction(
        self, transaction_id: int, data: TransactionUpdate
    ) -> Transaction:
        with atomic(self.session):
            if data.amount_cents is not None:
                current = self.get(transaction_id)
                if (
                    current.goal_id is not None
                    and current.amount_cents != data.amount_cents
                ):
                    raise ValidationError("Change goal contributions through the goal")
            txn = self._update(transaction_id, data)
        return txn

    def delete_transaction(self, transaction_id: int) -> int:
        with atomic(self.session):
            removed = self._delete(transaction_id)
        return removed

    def _create(self, data: TransactionIn) -> Transaction:
        if data.budget_id != self.budget_id:
            raise ValidationError("Transaction belongs to a different budget")
        account = self.account(data.account_id)
        if account.is_archived:
            raise ValidationError("Account is archived")
        if data.to_account_id is not None:
            self.account(data.to_account_id)
        self._check_link(Category, data.category_id, "Category")
        self._check_link(Member, data.member_id, "Member")
        self._check_link(IncomeSource, data.income_source_id, "Income source")
        self._check_link(RecurringBill, data.recurring_bill_id, "Recurring bill")
        self._check_link(Goal, data.goal_id, "Goal")

        rows = self._build_rows(data, account)
        balance, cleared = self._effects(rows)
        self._shift(balance, cleared)
        logger.info(
            f"Transaction created: budget_id={self.budget_id} id={rows[0].id} "
            f"type={data.type.value} amount_cents={data.amount_cents} "
            f"rows={len(rows)} status={data.status.value}"
        )
        return rows[0]

    def _build_rows(
        self, data: TransactionIn, account: FinancialAccount
    ) -> list[Transaction]:
        common = dict(
            budget_id=self.budget_id,
            account_id=data.account_id,
            to_account_id=data.to_account_id,
            category_id=data.category_id,
            member_id=data.member_id,
            income_source_id=data.income_source_id,
            recurring_bill_id=data.recurring_bill_id,
            goal_id=data.goal_id,
            type=data.type,
            description=data.description,
            notes=data.notes,
            source=data.source,
        )
        if not data.is_installment:
            txn = Transaction(
                **common,
                amount_cents=data.amount_cents,
                date=data.date,
                status=data.status,
            )
            self.session.add(txn)
            self.session.flush()
            return [txn]

        total = data.total_installments
        per_row = split_installments(data.amount_cents, total)
        if per_row <= 0:
            raise ValidationError("Amount is too small to split into installments")
        closing_day = account.closing_day if account.is_credit_card else None
        rows: list[Transaction] = []
        for number, when in enumerate(
            installment_dates(data.date, total, closing_day), start=1
        ):
            txn = Transaction(
                **common,
                amount_cents=per_row,
                date=when,
                status=data.status if number == 1 else TransactionStatus.pending,
                is_installment=True,
                installment_number=number,
                total_installments=total,
                parent_transaction_id=rows[0].id if rows else None,
            )
            self.session.add(txn)
            self.session.flush()
            rows.append(txn)
        return rows

    def _update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id, lock=True)
        if data.apply_to_series and txn.is_installment:
            series = self._series(txn.parent_transaction_id or txn.id)
        else:
            series = [txn]
        if data.category_id is not None:
            self._check_link(Category, data.category_id, "Category")

        self._lock_accounts(series)
        before_balance, before_cleared = self._effects(series)
        for row in series:
            if data.amount_cents is not None:
                row.amount_cents = data.amount_cents
            if data.description is not None:
                row.description = data.description
            if data.notes is not None:
                row.notes = data.notes
            if data.category_id is not None:
                row.category_id = data.category_id
        if data.date is not None:
            txn.date = data.date
        if data.status is not None:
            txn.status = data.status
        self.session.flush()

        after_balance, after_cleared = self._effects(series)
        self._shift(
            _diff(after_balance, before_balance), _diff(after_cleared, before_cleared)
        )
        logger.info(
            f"Transaction updated: budget_id={self.budget_id} id={txn.id} "
            f"rows={len(series)} status={txn.status.value}"
        )
        return txn

    def _delete(self, transaction_id: int) -> int:
        txn = self.get(transaction_id, lock=True)
        if txn.is_installment and txn.parent_transaction_id is None:
            rows = self._series(txn.id)
        else:
            rows = [txn]

        self._lock_accounts(rows)
        balance, cleared = self._effects(rows)
        self._shift(_negate(balance), _negate(cleared))

        ids = [row.id for row in rows]
        child_ids = [row.id for row in rows if row.parent_transaction_id is not None]
        root_ids = [row.id for row in rows if row.parent_transaction_id is None]
        self.session.execute(
            update(GoalContribution)
            .where(GoalContribution.transaction_id.in_(ids))
            .values(transaction_id=None)
        )
        if child_ids:
            self.session.execute(delete(Transaction).where(Transaction.id.in_(child_ids)))
        if root_ids:
            self.session.execute(delete(Transaction).where(Transaction.id.in_(root_ids)))
        logger.info(
            f"Transaction deleted: budget_id={self.budget_id} id={transaction_id} "
            f"rows={len(ids)}"
        )
        return len(ids)

    def _series(self, parent_id: int) -> list[Transaction]:
        return list(
            self.session.scalars(
                select(Transaction)
                .where(
                    Transaction.budget_id == self.budget_id,
                    or_(
                        Transaction.id == parent_id,
                        Transaction.parent_transaction_id == parent_id,
                    ),
                )
                .order_by(Transaction.installment_number, Transaction.id)
                .with_for_update()
            ).all()
        )

    def _lock_accounts(self, rows: Iterable[Transaction]) -> None:
        ids: set[int] = set()
        for row in rows:
            ids.add(row.account_id)
            if row.to_account_id is not None:
                ids.add(row.to_account_id)
        locked = self.session.scalars(
            select(FinancialAccount.id)
            .where(
                FinancialAccount.id.in_(ids),
                FinancialAccount.budget_id == self.budget_id,
            )
            .with_for_update()
        ).all()
        missing = ids - set(locked)
        if missing:
            raise ConsistencyError(f"Accounts missing from budget: {sorted(missing)}")

    def _effects(
        self, rows: Iterable[Transaction]
    ) -> tuple[dict[int, int], dict[int, int]]:
        rows = list(rows)
        account_ids = {row.account_id for row in rows}
        card_ids = set(
            self.session.scalars(
                select(FinancialAccount.id).where(
                    FinancialAccount.id.in_(account_ids),
                    FinancialAccount.type == AccountType.credit_card,
                )
            ).all()
        )
        balance: dict[int, int] = defaultdict(int)
        cleared: dict[int, int] = defaultdict(int)
        for row in rows:
            effects = balance_effects(row, row.account_id in card_ids)
            for account_id, amount in effects.items():
                balance[account_id] += amount
                if row.status in CONFIRMED_STATUSES:
                    cleared[account_id] += amount
        return dict(balance), dict(cleared)

    def _shift(self, balance: dict[int, int], cleared: dict[int, int]) -> None:
        for account_id in sorted(set(balance) | set(cleared)):
            balance_delta = balance.get(account_id, 0)
            cleared_delta = cleared.get(account_id, 0)
            if not balance_delta and not cleared_delta:
                continue
            result = self.session.execute(
                update(FinancialAccount)
                .where(
                    FinancialAccount.id == account_id,
                    FinancialAccount.budget_id == self.budget_id,
                )
                .values(
                    balance_cents=FinancialAccount.balance_cents + balance_delta,
                    cleared_balance_cents=FinancialAccount.cleared_balance_cents
                    + cleared_delta,
                )
                .execution_options(synchronize_session="fetch")
            )
            if result.rowcount != 1:
                raise ConsistencyError(f"Account {account_id} could not be updated")

    def confirm_scheduled(self, data: ConfirmScheduledIn) -> tuple[Transaction, bool]:
        """Clear the ledger row behind a scheduled item, creating it if needed.

        Returns the transaction and whether it was newly created.
        """
        with atomic(self.session):
            if data.source_type == "recurring_bill":
                entity = self._check_link(RecurringBill, data.source_id, "Recurring bill")
                link = Transaction.recurring_bill_id
            else:
                entity = self._check_link(IncomeSource, data.source_id, "Income source")
                link = Transaction.income_source_id
            if data.account_id is not None:
                self.account(data.account_id)

            existing = self.session.scalars(
                select(Transaction)
                .where(
                    Transaction.budget_id == self.budget_id,
                    link == data.source_id,
                    Transaction.date == data.date,
                )
                .order_by(Transaction.id)
                .with_for_update()
            ).all()
            for txn in existing:
                if txn.status in CONFIRMED_STATUSES:
                    return txn, False

            if existing:
                txn = existing[0]
                self._lock_accounts([txn])
                before_balance, before_cleared = self._effects([txn])
                txn.status = TransactionStatus.cleared
                if data.amount_cents is not None:
                    txn.amount_cents = data.amount_cents
                if data.account_id is not None:
                    txn.account_id = data.account_id
                self.session.flush()
                self._lock_accounts([txn])
                after_balance, after_cleared = self._effects([txn])
                self._shift(
                    _diff(after_balance, before_balance),
                    _diff(after_cleared, before_cleared),
                )
                logger.info(
                    f"Scheduled item confirmed: budget_id={self.budget_id} "
                    f"id={txn.id} amount_cents={txn.amount_cents}"
                )
                return txn, False

            account_id = data.account_id or entity.account_id
            amount_cents = data.amount_cents or entity.amount_cents
            if account_id is None:
                raise ValidationError("An account is required to confirm this item")
            if amount_cents <= 0:
                raise ValidationError("An amount is required to confirm this item")
            if data.source_type == "recurring_bill":
                entry = TransactionIn(
                    budget_id=self.budget_id,
                    account_id=account_id,
                    type=TransactionType.expense,
                    amount_cents=amount_cents,
                    date=data.date,
                    status=TransactionStatus.cleared,
                    category_id=entity.category_id,
                    recurring_bill_id=entity.id,
                    description=entity.name,
                    source=TransactionSource.scheduled,
                )
            else:
                entry = TransactionIn(
                    budget_id=self.budget_id,
                    account_id=account_id,
                    type=TransactionType.income,
                    amount_cents=amount_cents,
                    date=data.date,
                    status=TransactionStatus.cleared,
                    member_id=entity.member_id,
                    income_source_id=entity.id,
                    description=entity.name,
                    source=TransactionSource.scheduled,
                )
            txn = self._create(entry)
        return txn, True

    def auto_clear_due(self, today: Optional[date] = None) -> int:
        """Clear pending auto-debit bills and auto-confirm income dated up to today."""
        today = today or local_today()
        with atomic(self.session):
            rows = self.session.scalars(
                select(Transaction)
                .outerjoin(RecurringBill, Transaction.recurring_bill_id == RecurringBill.id)
                .outerjoin(IncomeSource, Transaction.income_source_id == IncomeSource.id)
                .where(
                    Transaction.budget_id == self.budget_id,
                    Transaction.status == TransactionStatus.pending,
                    Transaction.date <= today,
                    or_(
                        RecurringBill.is_auto_debit.is_(True),
                        IncomeSource.is_auto_confirm.is_(True),
                    ),
                )
                .order_by(Transaction.date, Transaction.id)
                .with_for_update(of=Transaction)
            ).all()
            if not rows:
                return 0
            self._lock_accounts(rows)
            before_balance, before_cleared = self._effects(rows)
            for row in rows:
                row.status = TransactionStatus.cleared
            self.session.flush()
            after_balance, after_cleared = self._effects(rows)
            self._shift(
                _diff(after_balance, before_balance),
                _diff(after_cleared, before_cleared),
            )
        logger.info(
            f"Auto-cleared transactions: budget_id={self.budget_id} "
            f"count={len(rows)} today={today.isoformat()}"
        )
        return len(rows)

    def expected_balances(self, account_id: int) -> tuple[int, int]:
        """Recompute (balance, cleared) for an account from its ledger rows."""
        account = self.account(account_id)
        rows = self.session.scalars(
            select(Transaction).where(
                Transaction.budget_id == self.budget_id,
                or_(
                    Transaction.account_id == account_id,
                    Transaction.to_account_id == account_id,
                ),
            )
        ).all()
        balance, cleared = self._effects(rows)
        return (
            account.opening_balance_cents + balance.get(account_id, 0),
            account.opening_balance_cents + cleared.get(account_id, 0),
        )


class AllocationService:
    def __init__(self, session: Session, budget_id: int) -> None:
        self.session = session
        self.budget_id = budget_id

    def _rows(self, year: int, month: int) -> list[MonthlyAllocation]:
        return list(
            self.session.scalars(
                select(MonthlyAllocation).where(
                    MonthlyAllocation.budget_id == self.budget_id,
                    MonthlyAllocation.year == year,
                    MonthlyAllocation.month == month,
                )
            ).all()
        )

    def _spent_by_category(
        self, year: int, month: int, statuses: Optional[tuple] = None
    ) -> dict[int, int]:
        stmt = (
            select(Transaction.category_id, func.sum(Transaction.amount_cents))
            .where(
                Transaction.budget_id == self.budget_id,
                Transaction.type == TransactionType.expense,
                Transaction.category_id.is_not(None),
                Transaction.date.between(month_start(year, month), month_end(year, month)),
            )
            .group_by(Transaction.category_id)
        )
        if statuses is not None:
            stmt = stmt.where(Transaction.status.in_(statuses))
        return {
            category_id: int(total or 0)
            for category_id, total in self.session.execute(stmt).all()
        }

    def ensure_month_allocations(self, year: int, month: int) -> int:
        """Bring carried-over amounts for the month in line with last month.

        Safe to call on every read. Returns the number of rows written.
        """
        prev_year, prev_month = previous_month(year, month)
        with atomic(self.session):
            prev_rows = self._rows(prev_year, prev_month)
            if not prev_rows:
                return 0
            confirmed = self._spent_by_category(
                prev_year, prev_month, CONFIRMED_STATUSES
            )
            current = {row.category_id: row for row in self._rows(year, month)}

            written = 0
            for prev in prev_rows:
                available = (
                    prev.allocated_cents
                    + prev.carried_over_cents
                    - confirmed.get(prev.category_id, 0)
                )
                carry = max(0, available)
                existing = current.get(prev.category_id)
                if existing is not None:
                    if existing.carried_over_cents != carry:
                        existing.carried_over_cents = carry
                        written += 1
                elif carry > 0:
                    self._insert_carry(prev.category_id, year, month, carry)
                    written += 1
        if written:
            logger.info(
                f"Carry-over refreshed: budget_id={self.budget_id} "
                f"year={year} month={month} rows={written}"
            )
        return written

    def _insert_carry(self, category_id: int, year: int, month: int, carry: int) -> None:
        try:
            with self.session.begin_nested():
                self.session.add(
                    MonthlyAllocation(
                        budget_id=self.budget_id,
                        category_id=category_id,
                        year=year,
                        month=month,
                        allocated_cents=0,
                        carried_over_cents=carry,
                    )
                )
        except IntegrityError:
            row = self._find(category_id, year, month)
            if row is None:
                raise
            row.carried_over_cents = carry

    def _find(
        self, category_id: int, year: int, month: int
    ) -> Optional[MonthlyAllocation]:
        return self.session.scalar(
            select(MonthlyAllocation).where(
                MonthlyAllocation.budget_id == self.budget_id,
                MonthlyAllocation.category_id == category_id,
                MonthlyAllocation.year == year,
                MonthlyAllocation.month == month,
            )
        )

    def _category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.budget_id != self.budget_id:
            raise NotFoundError("Category not found")
        return category

    def _set_allocated(
        self, category_id: int, year: int, month: int, allocated_cents: int
    ) -> MonthlyAllocation:
        row = self._find(category_id, year, month)
        if row is not None:
            row.allocated_cents = allocated_cents
            return row
        try:
            with self.session.begin_nested():
                row = MonthlyAllocation(
                    budget_id=self.budget_id,
                    category_id=category_id,
                    year=year,
                    month=month,
                    allocated_cents=allocated_cents,
                    carried_over_cents=0,
                )
                self.session.add(row)
        except IntegrityError:
            row = self._find(category_id, year, month)
            if row is None:
                raise
            row.allocated_cents = allocated_cents
        return row

    def upsert_allocation(self, data: AllocationIn) -> MonthlyAllocation:
        with atomic(self.session):
            self._category(data.category_id)
            row = self._set_allocated(
                data.category_id, data.year, data.month, data.allocated_cents
            )
        logger.info(
            f"Allocation set: budget_id={self.budget_id} category_id={data.category_id} "
            f"year={data.year} month={data.month} allocated_cents={data.allocated_cents}"
        )
        return row

    def copy_allocations(self, data: AllocationCopyIn) -> int:
        if (data.from_year, data.from_month) == (data.to_year, data.to_month):
            raise ValidationError("Source and target months must differ")
        with atomic(self.session):
            target_rows = self._rows(data.to_year, data.to_month)
            if target_rows and not data.overwrite:
                raise ConflictError(
                    f"Target month already has {len(target_rows)} allocations"
                )
            source_rows = self._rows(data.from_year, data.from_month)
            if source_rows:
                amounts = {row.category_id: row.allocated_cents for row in source_rows}
            else:
                categories = self.session.scalars(
                    select(Category).where(
                        Category.budget_id == self.budget_id,
                        Category.is_archived.is_(False),
                        Category.planned_cents > 0,
                    )
                ).all()
                amounts = {c.id: c.planned_cents for c in categories}
            for category_id, allocated in amounts.items():
                self._set_allocated(category_id, data.to_year, data.to_month, allocated)
        logger.info(
            f"Allocations copied: budget_id={self.budget_id} "
            f"from={data.from_year}-{data.from_month:02d} "
            f"to={data.to_year}-{data.to_month:02d} rows={len(amounts)}"
        )
        return len(amounts)

    def upsert_income_allocation(
        self, data: IncomeAllocationIn
    ) -> MonthlyIncomeAllocation:
        with atomic(self.session):
            source = self.session.get(IncomeSource, data.income_source_id)
            if not source or source.budget_id != self.budget_id:
                raise NotFoundError("Income source not found")
            stmt = select(MonthlyIncomeAllocation).where(
                MonthlyIncomeAllocation.budget_id == self.budget_id,
                MonthlyIncomeAllocation.income_source_id == data.income_source_id,
                MonthlyIncomeAllocation.year == data.year,
                MonthlyIncomeAllocation.month == data.month,
            )
            row = self.session.scalar(stmt)
            if row is None:
                try:
                    with self.session.begin_nested():
                        row = MonthlyIncomeAllocation(
                            budget_id=self.budget_id,
                            income_source_id=data.income_source_id,
                            year=data.year,
                            month=data.month,
                            planned_cents=data.planned_cents,
                        )
                        self.session.add(row)
                except IntegrityError:
                    row = self.session.scalar(stmt)
                    if row is None:
                        raise
            row.planned_cents = data.planned_cents
        return row

    def allocation_view(self, year: int, month: int) -> dict[str, object]:
        self.ensure_month_allocations(year, month)

        categories = self.session.execute(
            select(Category, Group)
            .join(Group, Category.group_id == Group.id)
            .where(
                Category.budget_id == self.budget_id,
                Category.is_archived.is_(False),
            )
            .order_by(Group.display_order, Category.display_order, Category.id)
        ).all()
        allocations = {row.category_id: row for row in self._rows(year, month)}
        spent = self._spent_by_category(year, month)

        bill_totals: dict[int, int] = {}
        bills = self.session.scalars(
            select(RecurringBill).where(
                RecurringBill.budget_id == self.budget_id,
                RecurringBill.is_active.is_(True),
            )
        ).all()
        for bill in bills:
            occurrences = len(bill_occurrences(bill, year, month))
            bill_totals[bill.category_id] = (
                bill_totals.get(bill.category_id, 0) + bill.amount_cents * occurrences
            )

        groups: list[dict[str, object]] = []
        by_group: dict[int, dict[str, object]] = {}
        totals = {
            "allocated_cents": 0,
            "carried_over_cents": 0,
            "spent_cents": 0,
            "available_cents": 0,
        }
        for category, group in categories:
            row = allocations.get(category.id)
            if category.id in bill_totals:
                allocated = bill_totals[category.id]
            elif row is not None and row.allocated_cents:
                allocated = row.allocated_cents
            else:
                # rows written only by carry-over keep the planned default
                allocated = category.planned_cents
            carried = row.carried_over_cents if row is not None else 0
            category_spent = spent.get(category.id, 0)
            entry = {
                "id": category.id,
                "name": category.name,
                "behavior": category.behavior.value,
                "member_id": category.member_id,
                "is_bill_linked": category.id in bill_totals,
                "allocated_cents": allocated,
                "carried_over_cents": carried,
                "rollover_visible": category.behavior == CategoryBehavior.set_aside,
                "spent_cents": category_spent,
                "available_cents": allocated + carried - category_spent,
            }
            bucket = by_group.get(group.id)
            if bucket is None:
                bucket = {
                    "id": group.id,
                    "code": group.code.value,
                    "name": group.name,
                    "categories": [],
                    "allocated_cents": 0,
                    "carried_over_cents": 0,
                    "spent_cents": 0,
                    "available_cents": 0,
                }
                by_group[group.id] = bucket
                groups.append(bucket)
            bucket["categories"].append(entry)
            for key in totals:
                bucket[key] += entry[key]
                totals[key] += entry[key]

        status_row = MonthService(self.session, self.budget_id).status_row(year, month)
        prev_year, prev_month = previous_month(year, month)
        return {
            "year": year,
            "month": month,
            "status": (status_row.status if status_row else MonthStatus.planning).value,
            "started_at": (
                status_row.started_at.isoformat()
                if status_row and status_row.started_at
                else None
            ),
            "has_previous_month_data": bool(self._rows(prev_year, prev_month)),
            "groups": groups,
            "totals": totals,
            "income": self._income_summary(year, month),
        }

    def _income_summary(self, year: int, month: int) -> dict[str, object]:
        sources = self.session.scalars(
            select(IncomeSource)
            .where(
                IncomeSource.budget_id == self.budget_id,
                IncomeSource.is_active.is_(True),
            )
            .order_by(IncomeSource.display_order, IncomeSource.id)
        ).all()
        overrides = {
            row.income_source_id: row.planned_cents
            for row in self.session.scalars(
                select(MonthlyIncomeAllocation).where(
                    MonthlyIncomeAllocation.budget_id == self.budget_id,
                    MonthlyIncomeAllocation.year == year,
                    MonthlyIncomeAllocation.month == month,
                )
            )
        }
        received = {
            source_id: int(total or 0)
            for source_id, total in self.session.execute(
                select(Transaction.income_source_id, func.sum(Transaction.amount_cents))
                .where(
                    Transaction.budget_id == self.budget_id,
                    Transaction.type == TransactionType.income,
                    Transaction.income_source_id.is_not(None),
                    Transaction.date.between(
                        month_start(year, month), month_end(year, month)
                    ),
                )
                .group_by(Transaction.income_source_id)
            ).all()
        }

        members: list[dict[str, object]] = []
        by_member: dict[Optional[int], dict[str, object]] = {}
        planned_total = 0
        received_total = 0
        for source in sources:
            if source.id in overrides:
                planned = overrides[source.id]
            else:
                planned = source.amount_cents * max(
                    1, len(income_occurrences(source, year, month))
                )
            source_received = received.get(source.id, 0)
            bucket = by_member.get(source.member_id)
            if bucket is None:
                bucket = {
                    "member_id": source.member_id,
                    "member_name": source.member.name if source.member else None,
                    "planned_cents": 0,
                    "received_cents": 0,
                    "sources": [],
                }
                by_member[source.member_id] = bucket
                members.append(bucket)
            bucket["sources"].append(
                {
                    "id": source.id,
                    "name": source.name,
                    "planned_cents": planned,
                    "received_cents": source_received,
                }
            )
            bucket["planned_cents"] += planned
            bucket["received_cents"] += source_received
            planned_total += planned
            received_total += source_received
        return {
            "planned_cents": planned_total,
            "received_cents": received_total,
            "members": members,
        }


class MonthService:
    def __init__(self, session: Session, budget_id: int) -> None:
        self.session = session
        self.budget_id = budget_id

    def status_row(
        self, year: int, month: int, *, lock: bool = False
    ) -> Optional[MonthlyBudgetStatus]:
        stmt = select(MonthlyBudgetStatus).where(
            MonthlyBudgetStatus.budget_id == self.budget_id,
            MonthlyBudgetStatus.year == year,
            MonthlyBudgetStatus.month == month,
        )
        if lock:
            stmt = stmt.with_for_update()
        return self.session.scalar(stmt)

    def month_status(self, year: int, month: int) -> dict[str, object]:
        row = self.status_row(year, month)
        has_allocations = (
            self.session.execute(
                select(func.count(MonthlyAllocation.id)).where(
                    MonthlyAllocation.budget_id == self.budget_id,
                    MonthlyAllocation.year == year,
                    MonthlyAllocation.month == month,
                )
            ).scalar_one()
            or 0
        ) > 0
        return {
            "year": year,
            "month": month,
            "status": (row.status if row else MonthStatus.planning).value,
            "started_at": row.started_at.isoformat() if row and row.started_at else None,
            "closed_at": row.closed_at.isoformat() if row and row.closed_at else None,
            "has_allocations": has_allocations,
        }

    def _activate(self, year: int, month: int) -> MonthlyBudgetStatus:
        row = self.status_row(year, month, lock=True)
        if row is None:
            try:
                with self.session.begin_nested():
                    row = MonthlyBudgetStatus(
                        budget_id=self.budget_id,
                        year=year,
                        month=month,
                        status=MonthStatus.active,
                        started_at=datetime.utcnow(),
                    )
                    self.session.add(row)
                return row
            except IntegrityError:
                row = self.status_row(year, month, lock=True)
                if row is None:
                    raise
        if row.status == MonthStatus.closed:
            raise ConflictError("Month is closed")
        if row.status == MonthStatus.planning:
            row.status = MonthStatus.active
            row.started_at = datetime.utcnow()
        return row

    def start_month(
        self, year: int, month: int, today: Optional[date] = None
    ) -> int:
        """Activate the month and materialize its bill and income obligations.

        Returns how many pending transactions were created.
        """
        with atomic(self.session):
            self._activate(year, month)
            items = ScheduleProjector(self.session, self.budget_id).month_items(
                year, month, today
            )
            ledger = LedgerService(self.session, self.budget_id)
            fallback_account = None
            created = 0
            for item in items:
                if item.source_type == "goal":
                    continue
                if item.paid_transaction_id or item.pending_transaction_id:
                    continue
                if item.amount_cents <= 0:
                    continue
                account_id = item.account_id
                if account_id is None:
                    if fallback_account is None:
                        fallback_account = self._default_account()
                    account_id = fallback_account.id
                if item.source_type == "recurring_bill":
                    data = TransactionIn(
                        budget_id=self.budget_id,
                        account_id=account_id,
                        type=TransactionType.expense,
                        amount_cents=item.amount_cents,
                        date=item.due_date,
                        category_id=item.category_id,
                        recurring_bill_id=item.recurring_bill_id,
                        description=item.name,
                        source=TransactionSource.recurring,
                    )
                else:
                    data = TransactionIn(
                        budget_id=self.budget_id,
                        account_id=account_id,
                        type=TransactionType.income,
                        amount_cents=item.amount_cents,
                        date=item.due_date,
                        member_id=item.member_id,
                        income_source_id=item.income_source_id,
                        description=item.name,
                        source=TransactionSource.recurring,
                    )
                ledger._create(data)
                created += 1
        logger.info(
            f"Month started: budget_id={self.budget_id} year={year} month={month} "
            f"created={created}"
        )
        return created

    def _default_account(self) -> FinancialAccount:
        account = self.session.scalar(
            select(FinancialAccount)
            .where(
                FinancialAccount.budget_id == self.budget_id,
                FinancialAccount.is_archived.is_(False),
            )
            .order_by(
                (FinancialAccount.type == AccountType.credit_card),
                FinancialAccount.display_order,
                FinancialAccount.id,
            )
            .limit(1)
        )
        if account is None:
            raise ValidationError("Add an account before starting the month")
        return account

    def close_month(self, year: int, month: int) -> MonthlyBudgetStatus:
        with atomic(self.session):
            row = self.status_row(year, month, lock=True)
            if row is None or row.status != MonthStatus.active:
                raise ConflictError("Only an active month can be closed")
            row.status = MonthStatus.closed
            row.closed_at = datetime.utcnow()
        logger.info(
            f"Month closed: budget_id={self.budget_id} year={year} month={month}"
        )
        return row


def goal_metrics(goal: Goal, today: Optional[date] = None) -> dict[str, int]:
    today = today or local_today()
    target = goal.target_cents
    current = goal.current_cents
    progress = min(max((current * 200 + target) // (2 * target), 0), 100)
    months_remaining = max(0, months_between(today, goal.target_date))
    remaining = target - current
    if months_remaining > 0:
        monthly_target = -(-remaining // months_remaining)
    else:
        monthly_target = remaining
    return {
        "progress": progress,
        "months_remaining": months_remaining,
        "monthly_target_cents": monthly_target,
        "remaining_cents": remaining,
    }


class GoalService:
    def __init__(self, session: Session, budget_id: int) -> None:
        self.session = session
        self.budget_id = budget_id

    def get(self, goal_id: int, *, lock: bool = False) -> Goal:
        stmt = select(Goal).where(Goal.id == goal_id, Goal.budget_id == self.budget_id)
        if lock:
            stmt = stmt.with_for_update()
        goal = self.session.scalar(stmt)
        if not goal:
            raise NotFoundError("Goal not found")
        return goal

    def contributions(
        self, goal_id: int, year: Optional[int] = None
    ) -> list[GoalContribution]:
        self.get(goal_id)
        stmt = select(GoalContribution).where(GoalContribution.goal_id == goal_id)
        if year is not None:
            stmt = stmt.where(GoalContribution.year == year)
        return list(
            self.session.scalars(
                stmt.order_by(GoalContribution.year, GoalContribution.month)
            ).all()
        )

    def contribute(
        self,
        goal_id: int,
        data: GoalContributionIn,
        today: Optional[date] = None,
    ) -> dict[str, object]:
        today = today or local_today()
        ledger = LedgerService(self.session, self.budget_id)
        with atomic(self.session):
            goal = self.get(goal_id, lock=True)
            if goal.is_archived:
                raise ValidationError("Goal is archived")
            ledger.account(data.from_account_id)

            contribution = self.session.scalar(
                select(GoalContribution).where(
                    GoalContribution.goal_id == goal.id,
                    GoalContribution.year == data.year,
                    GoalContribution.month == data.month,
                )
            )
            if contribution is None:
                txn = ledger._create(self._ledger_entry(goal, data, today))
                contribution = GoalContribution(
                    goal_id=goal.id,
                    from_account_id=data.from_account_id,
                    transaction_id=txn.id,
                    year=data.year,
                    month=data.month,
                    amount_cents=data.amount_cents,
                )
                self.session.add(contribution)
                difference = data.amount_cents
            else:
                difference = data.amount_cents - contribution.amount_cents
                contribution.amount_cents = data.amount_cents
                if contribution.transaction_id is not None:
                    ledger._update(
                        contribution.transaction_id,
                        TransactionUpdate(amount_cents=data.amount_cents),
                    )

            was_completed = goal.is_completed
            goal.current_cents = goal.current_cents + difference
            just_completed = goal.current_cents >= goal.target_cents and not was_completed
            if just_completed:
                goal.is_completed = True
                goal.completed_at = datetime.utcnow()
            self.session.flush()

        logger.info(
            f"Goal contribution: budget_id={self.budget_id} goal_id={goal.id} "
            f"year={data.year} month={data.month} amount_cents={data.amount_cents} "
            f"difference_cents={difference}"
        )
        return {
            "contribution": {
                "id": contribution.id,
                "goal_id": goal.id,
                "year": contribution.year,
                "month": contribution.month,
                "amount_cents": contribution.amount_cents,
                "transaction_id": contribution.transaction_id,
            },
            "goal": {
                "id": goal.id,
                "name": goal.name,
                "target_cents": goal.target_cents,
                "current_cents": goal.current_cents,
                "is_completed": goal.is_completed,
                **goal_metrics(goal, today),
            },
            "just_completed": just_completed,
        }

    def _ledger_entry(
        self, goal: Goal, data: GoalContributionIn, today: date
    ) -> TransactionIn:
        if (today.year, today.month) == (data.year, data.month):
            when = today
        else:
            when = month_end(data.year, data.month)
        transfer = goal.account_id is not None and goal.account_id != data.from_account_id
        return TransactionIn(
            budget_id=self.budget_id,
            account_id=data.from_account_id,
            to_account_id=goal.account_id if transfer else None,
            type=TransactionType.transfer if transfer else TransactionType.expense,
            amount_cents=data.amount_cents,
            date=when,
            status=TransactionStatus.cleared,
            goal_id=goal.id,
            description=f"Goal: {goal.name}",
            source=TransactionSource.goal,
        )


class AccountService:
    def __init__(self, session: Session, budget_id: int) -> None:
        self.session = session
        self.budget_id = budget_id

    def statement(self, account_id: int, year: int, month: int) -> dict[str, object]:
        account = LedgerService(self.session, self.budget_id).account(account_id)
        if not account.is_credit_card or not account.closing_day:
            raise ValidationError("Statements need a credit card with a closing day")
        start, end = billing_cycle_dates(account.closing_day, year, month)
        total, count = self.session.execute(
            select(
                func.coalesce(func.sum(Transaction.amount_cents), 0),
                func.count(Transaction.id),
            ).where(
                Transaction.account_id == account.id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(start, end),
            )
        ).one()

        due_date = None
        if account.due_day:
            if account.due_day > account.closing_day:
                due_date = clamp_day(year, month, account.due_day)
            else:
                due_year, due_month = add_months(year, month, 1)
                due_date = clamp_day(due_year, due_month, account.due_day)

        balance = self.session.scalar(
            select(FinancialAccount.balance_cents).where(FinancialAccount.id == account.id)
        )
        available = None
        if account.credit_limit_cents is not None:
            available = account.credit_limit_cents + balance
        return {
            "account_id": account.id,
            "year": year,
            "month": month,
            "cycle_start": start.isoformat(),
            "cycle_end": end.isoformat(),
            "due_date": due_date.isoformat() if due_date else None,
            "total_cents": int(total or 0),
            "transaction_count": int(count or 0),
            "balance_cents": balance,
            "credit_limit_cents": account.credit_limit_cents,
            "available_credit_cents": available,
        }


def seed_default_groups(session: Session) -> list[Group]:
    existing = {g.code: g for g in session.scalars(select(Group)).all()}
    for code, name, order in DEFAULT_GROUPS:
        if code not in existing:
            group = Group(code=code, name=name, display_order=order)
            session.add(group)
            existing[code] = group
    session.flush()
    return sorted(existing.values(), key=lambda g: g.display_order)


def create_budget(
    session: Session, data: BudgetIn, owner_name: Optional[str] = None
) -> Budget:
    budget = Budget(name=data.name, currency_code=data.currency_code.upper())
    session.add(budget)
    session.flush()
    if owner_name:
        session.add(Member(budget_id=budget.id, name=owner_name))
    seed_default_groups(session)
    session.commit()
    session.refresh(budget)
    return budget


class CatalogService:
    def __init__(self, session: Session, budget_id: int) -> None:
        self.session = session
        self.budget_id = budget_id

    def _owned(self, model, entity_id: Optional[int], label: str):
        if entity_id is None:
            return None
        entity = self.session.get(model, entity_id)
        if not entity or entity.budget_id != self.budget_id:
            raise NotFoundError(f"{label} not found")
        return entity

    def _save(self, entity: BudgetScoped) -> BudgetScoped:
        self.session.add(entity)
        self.session.commit()
        self.session.refresh(entity)
        return entity

    def add_member(self, data: MemberIn) -> Member:
        return self._save(
            Member(
                budget_id=self.budget_id,
                name=data.name,
                type=data.type,
                user_ref=data.user_ref,
            )
        )

    def add_category(self, data: CategoryIn) -> Category:
        self._owned(Member, data.member_id, "Member")
        groups = {g.code: g for g in seed_default_groups(self.session)}
        return self._save(
            Category(
                budget_id=self.budget_id,
                group_id=groups[data.group_code].id,
                member_id=data.member_id,
                name=data.name.strip(),
                behavior=data.behavior,
                planned_cents=data.planned_cents,
                display_order=data.display_order,
            )
        )

    def add_account(self, data: AccountIn) -> FinancialAccount:
        self._owned(Member, data.owner_id, "Member")
        if data.type != AccountType.credit_card and (
            data.closing_day is not None or data.credit_limit_cents is not None
        ):
            raise ValidationError("Only credit cards take a closing day or limit")
        return self._save(
            FinancialAccount(
                budget_id=self.budget_id,
                owner_id=data.owner_id,
                name=data.name.strip(),
                type=data.type,
                opening_balance_cents=data.balance_cents,
                balance_cents=data.balance_cents,
                cleared_balance_cents=data.balance_cents,
                credit_limit_cents=data.credit_limit_cents,
                closing_day=data.closing_day,
                due_day=data.due_day,
            )
        )

    def add_bill(self, data: RecurringBillIn) -> RecurringBill:
        self._owned(Category, data.category_id, "Category")
        self._owned(FinancialAccount, data.account_id, "Account")
        return self._save(
            RecurringBill(
                budget_id=self.budget_id,
                category_id=data.category_id,
                account_id=data.account_id,
                name=data.name.strip(),
                amount_cents=data.amount_cents,
                frequency=data.frequency,
                due_day=data.due_day,
                due_month=data.due_month,
                is_auto_debit=data.is_auto_debit,
                is_variable=data.is_variable,
            )
        )

    def add_income_source(self, data: IncomeSourceIn) -> IncomeSource:
        self._owned(Member, data.member_id, "Member")
        self._owned(FinancialAccount, data.account_id, "Account")
        return self._save(
            IncomeSource(
                budget_id=self.budget_id,
                member_id=data.member_id,
                account_id=data.account_id,
                name=data.name.strip(),
                amount_cents=data.amount_cents,
                frequency=data.frequency,
                day_of_month=data.day_of_month,
                is_auto_confirm=data.is_auto_confirm,
            )
        )

    def add_goal(self, data: GoalIn) -> Goal:
        self._owned(FinancialAccount, data.account_id, "Account")
        return self._save(
            Goal(
                budget_id=self.budget_id,
                account_id=data.account_id,
                name=data.name.strip(),
                target_cents=data.target_cents,
                current_cents=data.current_cents,
                target_date=data.target_date,
                is_completed=data.current_cents >= data.target_cents,
            )
        )
