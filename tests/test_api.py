import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth import issue_token
from database import Base, configure_sqlite
from main import app, get_db
from periods import local_today
from schemas import BudgetIn
from services import create_budget


@pytest.fixture
def api():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(engine)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    with SessionLocal() as db:
        mine = create_budget(db, BudgetIn(name="Household"), owner_name="Ana").id
        theirs = create_budget(db, BudgetIn(name="Neighbours")).id

    app.dependency_overrides[get_db] = override_get_db
    client = TestClient(app)
    client.headers["Authorization"] = f"Bearer {issue_token('ana', [mine])}"
    yield client, mine, theirs
    app.dependency_overrides.clear()


def _account(client, budget_id, **fields):
    payload = {"name": "Checking", "type": "checking", **fields}
    response = client.post(f"/api/budgets/{budget_id}/accounts", json=payload)
    assert response.status_code == 200, response.text
    return response.json()["id"]


def _audit(client, account_id):
    response = client.get(f"/api/accounts/{account_id}/audit")
    assert response.status_code == 200, response.text
    return response.json()


def test_health_needs_no_token(api) -> None:
    client, _, _ = api

    response = client.get("/api/health", headers={"Authorization": ""})

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_missing_or_bad_token_is_unauthorized(api) -> None:
    client, mine, _ = api
    params = {"budget_id": mine, "year": 2025, "month": 3}

    missing = client.get("/api/allocations", params=params, headers={"Authorization": ""})
    forged = client.get(
        "/api/allocations", params=params, headers={"Authorization": "Bearer nope"}
    )

    assert missing.status_code == 401
    assert forged.status_code == 401
    assert forged.json()["detail"]["kind"] == "unauthorized"


def test_other_budgets_are_forbidden(api) -> None:
    client, _, theirs = api

    response = client.get(
        "/api/allocations", params={"budget_id": theirs, "year": 2025, "month": 3}
    )

    assert response.status_code == 403
    assert response.json()["detail"]["kind"] == "forbidden"


def test_transaction_lifecycle_keeps_balances_in_sync(api) -> None:
    client, mine, _ = api
    account_id = _account(client, mine, balance_cents=10_000)
    category = client.post(
        f"/api/budgets/{mine}/categories",
        json={"group_code": "essential", "name": "Groceries"},
    ).json()

    created = client.post(
        "/api/transactions",
        json={
            "budget_id": mine,
            "account_id": account_id,
            "category_id": category["id"],
            "type": "expense",
            "amount_cents": 2_500,
            "date": "2025-03-04",
        },
    )
    assert created.status_code == 200, created.text
    txn_id = created.json()["id"]
    assert created.json()["status"] == "pending"
    audit = _audit(client, account_id)
    assert (audit["balance_cents"], audit["cleared_balance_cents"]) == (7_500, 10_000)
    assert audit["in_sync"] is True

    patched = client.patch(f"/api/transactions/{txn_id}", json={"status": "cleared"})
    assert patched.status_code == 200
    assert _audit(client, account_id)["cleared_balance_cents"] == 7_500

    deleted = client.delete(f"/api/transactions/{txn_id}")
    assert deleted.json() == {"deleted": 1}
    audit = _audit(client, account_id)
    assert (audit["balance_cents"], audit["cleared_balance_cents"]) == (10_000, 10_000)

    view = client.get(
        "/api/allocations", params={"budget_id": mine, "year": 2025, "month": 3}
    ).json()
    assert [g["code"] for g in view["groups"]] == ["essential"]


def test_invalid_transaction_shape_is_rejected(api) -> None:
    client, mine, _ = api
    account_id = _account(client, mine)

    response = client.post(
        "/api/transactions",
        json={
            "budget_id": mine,
            "account_id": account_id,
            "type": "transfer",
            "amount_cents": 100,
            "date": "2025-03-04",
        },
    )

    assert response.status_code == 422


def test_unknown_transaction_is_not_found(api) -> None:
    client, _, _ = api

    response = client.patch("/api/transactions/4242", json={"status": "cleared"})

    assert response.status_code == 404
    assert response.json()["detail"]["kind"] == "not_found"


def test_start_month_then_schedule(api) -> None:
    client, mine, _ = api
    today = local_today()
    account_id = _account(client, mine)
    category = client.post(
        f"/api/budgets/{mine}/categories",
        json={"group_code": "essential", "name": "Housing"},
    ).json()
    bill = client.post(
        f"/api/budgets/{mine}/recurring-bills",
        json={
            "category_id": category["id"],
            "account_id": account_id,
            "name": "Rent",
            "amount_cents": 120_000,
            "due_day": 28,
        },
    ).json()
    month = {"budget_id": mine, "year": today.year, "month": today.month}

    before = client.get(
        "/api/transactions/scheduled",
        params={"budget_id": mine, "year": today.year, "month": today.month},
    ).json()
    assert before["items"] == []
    assert before["months"][0]["status"] == "planning"

    started = client.post("/api/budget/start-month", json=month)
    assert started.status_code == 200, started.text
    assert started.json()["created"] == 1
    assert started.json()["status"] == "active"
    assert client.post("/api/budget/start-month", json=month).json()["created"] == 0

    after = client.get(
        "/api/transactions/scheduled",
        params={"budget_id": mine, "year": today.year, "month": today.month},
    ).json()
    [item] = after["items"]
    assert item["id"] == f"bill-{bill['id']}-{today.year:04d}-{today.month:02d}"
    assert item["pending_transaction_id"] is not None
    assert item["is_paid"] is False

    closed = client.post("/api/budget/close-month", json=month)
    assert closed.json()["status"] == "closed"
    again = client.post("/api/budget/start-month", json=month)
    assert again.status_code == 409
    assert again.json()["detail"]["kind"] == "conflict"


def test_goal_contribution_endpoints(api) -> None:
    client, mine, _ = api
    checking = _account(client, mine, balance_cents=50_000)
    goal = client.post(
        f"/api/budgets/{mine}/goals",
        json={"name": "Trip", "target_cents": 20_000, "target_date": "2030-12-31"},
    ).json()

    response = client.post(
        f"/api/goals/{goal['id']}/contribute",
        json={"amount_cents": 20_000, "year": 2025, "month": 3, "from_account_id": checking},
    )

    assert response.status_code == 200, response.text
    assert response.json()["just_completed"] is True
    history = client.get(f"/api/goals/{goal['id']}/contributions").json()
    assert [c["amount_cents"] for c in history["contributions"]] == [20_000]
    assert _audit(client, checking)["balance_cents"] == 30_000
