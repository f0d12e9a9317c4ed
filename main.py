import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from sqlalchemy.orm import Session

from auth import Principal, verify_token
from config import get_settings
from database import SessionLocal
from errors import BudgetError
from models import (
    FinancialAccount,
    Goal,
    GoalContribution,
    MonthlyAllocation,
    MonthlyIncomeAllocation,
    Transaction,
)
from periods import resolve_period
from recurrence import ScheduleProjector
from schemas import (
    AccountIn,
    AllocationCopyIn,
    AllocationIn,
    AutoClearIn,
    CategoryIn,
    ConfirmScheduledIn,
    GoalContributionIn,
    GoalIn,
    IncomeAllocationIn,
    IncomeSourceIn,
    MemberIn,
    MonthIn,
    RecurringBillIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    AccountService,
    AllocationService,
    CatalogService,
    GoalService,
    LedgerService,
    MonthService,
    owning_budget_id,
)

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Envelope Budget")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_principal(authorization: Optional[str] = Header(default=None)) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=401,
            detail={"kind": "unauthorized", "message": "Missing bearer token"},
        )
    try:
        return verify_token(authorization[7:].strip())
    except BudgetError as exc:
        raise HTTPException(
            status_code=401, detail={"kind": "unauthorized", "message": exc.message}
        ) from exc


def _http_error(exc: BudgetError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


def _require(principal: Principal, budget_id: int) -> None:
    try:
        principal.require(budget_id)
    except BudgetError as exc:
        raise _http_error(exc) from exc


def _owner(db: Session, principal: Principal, model, entity_id: int, label: str) -> int:
    try:
        return owning_budget_id(db, model, entity_id, principal.budget_ids, label)
    except BudgetError as exc:
        raise _http_error(exc) from exc


def _transaction_dict(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "budget_id": txn.budget_id,
        "account_id": txn.account_id,
        "to_account_id": txn.to_account_id,
        "category_id": txn.category_id,
        "income_source_id": txn.income_source_id,
        "recurring_bill_id": txn.recurring_bill_id,
        "goal_id": txn.goal_id,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "status": txn.status.value,
        "amount_cents": txn.amount_cents,
        "description": txn.description,
        "is_installment": txn.is_installment,
        "installment_number": txn.installment_number,
        "total_installments": txn.total_installments,
        "parent_transaction_id": txn.parent_transaction_id,
        "source": txn.source.value,
    }


def _allocation_dict(row: MonthlyAllocation) -> dict[str, object]:
    return {
        "id": row.id,
        "category_id": row.category_id,
        "year": row.year,
        "month": row.month,
        "allocated_cents": row.allocated_cents,
        "carried_over_cents": row.carried_over_cents,
    }


def _created(entity) -> dict[str, object]:
    return {"id": entity.id, "name": entity.name}


@app.get("/api/health")
def api_health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/api/allocations")
def api_allocations(
    budget_id: int,
    year: int = Query(..., ge=2020, le=2100),
    month: int = Query(..., ge=1, le=12),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, budget_id)
    try:
        return AllocationService(db, budget_id).allocation_view(year, month)
    except BudgetError as exc:
        raise _http_error(exc) from exc


@app.post("/api/allocations")
def api_upsert_allocation(
    payload: AllocationIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, payload.budget_id)
    try:
        row = AllocationService(db, payload.budget_id).upsert_allocation(payload)
    except BudgetError as exc:
        raise _http_error(exc) from exc
    return _allocation_dict(row)


@app.post("/api/allocations/copy")
def api_copy_allocations(
    payload: AllocationCopyIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, payload.budget_id)
    try:
        copied = AllocationService(db, payload.budget_id).copy_allocations(payload)
    except BudgetError as exc:
        raise _http_error(exc) from exc
    return {"copied": copied}


@app.post("/api/income-allocations")
def api_upsert_income_allocation(
    payload: IncomeAllocationIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, payload.budget_id)
    try:
        row: MonthlyIncomeAllocation = AllocationService(
            db, payload.budget_id
        ).upsert_income_allocation(payload)
    except BudgetError as exc:
        raise _http_error(exc) from exc
    return {
        "id": row.id,
        "income_source_id": row.income_source_id,
        "year": row.year,
        "month": row.month,
        "planned_cents": row.planned_cents,
    }


@app.get("/api/transactions/scheduled")
def api_scheduled_transactions(
    budget_id: int,
    start: Optional[str] = None,
    end: Optional[str] = None,
    year: Optional[int] = Query(default=None, ge=2020, le=2100),
    month: Optional[int] = Query(default=None, ge=1, le=12),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, budget_id)
    try:
        period = resolve_period(year, month, start, end)
        projection = ScheduleProjector(db, budget_id).project(period.start, period.end)
    except BudgetError as exc:
        raise _http_error(exc) from exc
    return projection.model_dump(mode="json")


@app.post("/api/transactions")
def api_create_transaction(
    payload: TransactionIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, payload.budget_id)
    try:
        txn = LedgerService(db, payload.budget_id).create_transaction(payload)
    except BudgetError as exc:
        raise _http_error(exc) from exc
    return _transaction_dict(txn)


@app.patch("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    budget_id = _owner(db, principal, Transaction, transaction_id, "Transaction")
    try:
        txn = LedgerService(db, budget_id).update_transaction(transaction_id, payload)
    except BudgetError as exc:
        raise _http_error(exc) from exc
    return _transaction_dict(txn)


@app.delete("/api/transactions/{transaction_id}")
def api_delete_transaction(
    transaction_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    budget_id = _owner(db, principal, Transaction, transaction_id, "Transaction")
    try:
        removed = LedgerService(db, budget_id).delete_transaction(transaction_id)
    except BudgetError as exc:
        raise _http_error(exc) from exc
    return {"deleted": removed}


@app.post("/api/transactions/confirm-scheduled")
def api_confirm_scheduled(
    payload: ConfirmScheduledIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, payload.budget_id)
    try:
        txn, created = LedgerService(db, payload.budget_id).confirm_scheduled(payload)
    except BudgetError as exc:
        raise _http_error(exc) from exc
    return {"created": created, "transaction": _transaction_dict(txn)}


@app.post("/api/transactions/auto-clear")
def api_auto_clear(
    payload: AutoClearIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, payload.budget_id)
    try:
        cleared = LedgerService(db, payload.budget_id).auto_clear_due(payload.today)
    except BudgetError as exc:
        raise _http_error(exc) from exc
    return {"cleared": cleared}


@app.get("/api/budget/start-month")
def api_month_status(
    budget_id: int,
    year: int = Query(..., ge=2020, le=2100),
    month: int = Query(..., ge=1, le=12),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, budget_id)
    return MonthService(db, budget_id).month_status(year, month)


@app.post("/api/budget/start-month")
def api_start_month(
    payload: MonthIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, payload.budget_id)
    service = MonthService(db, payload.budget_id)
    try:
        created = service.start_month(payload.year, payload.month)
    except BudgetError as exc:
        raise _http_error(exc) from exc
    return {"created": created, **service.month_status(payload.year, payload.month)}


@app.post("/api/budget/close-month")
def api_close_month(
    payload: MonthIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, payload.budget_id)
    service = MonthService(db, payload.budget_id)
    try:
        service.close_month(payload.year, payload.month)
    except BudgetError as exc:
        raise _http_error(exc) from exc
    return service.month_status(payload.year, payload.month)


@app.post("/api/goals/{goal_id}/contribute")
def api_goal_contribute(
    goal_id: int,
    payload: GoalContributionIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    budget_id = _owner(db, principal, Goal, goal_id, "Goal")
    try:
        return GoalService(db, budget_id).contribute(goal_id, payload)
    except BudgetError as exc:
        raise _http_error(exc) from exc


@app.get("/api/goals/{goal_id}/contributions")
def api_goal_contributions(
    goal_id: int,
    year: Optional[int] = Query(default=None, ge=2020, le=2100),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    budget_id = _owner(db, principal, Goal, goal_id, "Goal")
    rows: list[GoalContribution] = GoalService(db, budget_id).contributions(goal_id, year)
    return {
        "contributions": [
            {
                "id": row.id,
                "year": row.year,
                "month": row.month,
                "amount_cents": row.amount_cents,
                "transaction_id": row.transaction_id,
            }
            for row in rows
        ]
    }


@app.get("/api/accounts/{account_id}/statement")
def api_account_statement(
    account_id: int,
    year: int = Query(..., ge=2020, le=2100),
    month: int = Query(..., ge=1, le=12),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    budget_id = _owner(db, principal, FinancialAccount, account_id, "Account")
    try:
        return AccountService(db, budget_id).statement(account_id, year, month)
    except BudgetError as exc:
        raise _http_error(exc) from exc


@app.get("/api/accounts/{account_id}/audit")
def api_account_audit(
    account_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    budget_id = _owner(db, principal, FinancialAccount, account_id, "Account")
    ledger = LedgerService(db, budget_id)
    account = ledger.account(account_id)
    expected_balance, expected_cleared = ledger.expected_balances(account_id)
    if (expected_balance, expected_cleared) != (
        account.balance_cents,
        account.cleared_balance_cents,
    ):
        logger.warning(
            f"Balance drift: account_id={account_id} "
            f"balance_cents={account.balance_cents} expected={expected_balance} "
            f"cleared_cents={account.cleared_balance_cents} "
            f"expected_cleared={expected_cleared}"
        )
    return {
        "account_id": account_id,
        "balance_cents": account.balance_cents,
        "cleared_balance_cents": account.cleared_balance_cents,
        "expected_balance_cents": expected_balance,
        "expected_cleared_balance_cents": expected_cleared,
        "in_sync": (expected_balance, expected_cleared)
        == (account.balance_cents, account.cleared_balance_cents),
    }


@app.post("/api/budgets/{budget_id}/members")
def api_add_member(
    budget_id: int,
    payload: MemberIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, budget_id)
    return _created(CatalogService(db, budget_id).add_member(payload))


@app.post("/api/budgets/{budget_id}/categories")
def api_add_category(
    budget_id: int,
    payload: CategoryIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, budget_id)
    try:
        return _created(CatalogService(db, budget_id).add_category(payload))
    except BudgetError as exc:
        raise _http_error(exc) from exc


@app.post("/api/budgets/{budget_id}/accounts")
def api_add_account(
    budget_id: int,
    payload: AccountIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, budget_id)
    try:
        return _created(CatalogService(db, budget_id).add_account(payload))
    except BudgetError as exc:
        raise _http_error(exc) from exc


@app.post("/api/budgets/{budget_id}/recurring-bills")
def api_add_bill(
    budget_id: int,
    payload: RecurringBillIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, budget_id)
    try:
        return _created(CatalogService(db, budget_id).add_bill(payload))
    except BudgetError as exc:
        raise _http_error(exc) from exc


@app.post("/api/budgets/{budget_id}/income-sources")
def api_add_income_source(
    budget_id: int,
    payload: IncomeSourceIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, budget_id)
    try:
        return _created(CatalogService(db, budget_id).add_income_source(payload))
    except BudgetError as exc:
        raise _http_error(exc) from exc


@app.post("/api/budgets/{budget_id}/goals")
def api_add_goal(
    budget_id: int,
    payload: GoalIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _require(principal, budget_id)
    try:
        return _created(CatalogService(db, budget_id).add_goal(payload))
    except BudgetError as exc:
        raise _http_error(exc) from exc
