import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base, configure_sqlite
from models import FinancialAccount
from schemas import BudgetIn
from services import CatalogService, create_budget


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    configure_sqlite(engine)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


@pytest.fixture
def session():
    session = make_session()
    yield session
    session.close()


@pytest.fixture
def budget(session):
    return create_budget(session, BudgetIn(name="Household"), owner_name="Ana")


@pytest.fixture
def catalog(session, budget):
    return CatalogService(session, budget.id)


@pytest.fixture
def read_balances(session):
    def _read(account_id: int) -> tuple[int, int]:
        balance, cleared = session.execute(
            select(
                FinancialAccount.balance_cents, FinancialAccount.cleared_balance_cents
            ).where(FinancialAccount.id == account_id)
        ).one()
        return balance, cleared

    return _read
