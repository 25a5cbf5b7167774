import pytest
from sqlalchemy.orm import Session

from auth import AuthSession, IdentityProvider
from config import Settings
from database import create_schema, make_engine as make_database_engine
from services import BudgetLedger
from stores import FlatStore, MemoryKeyValueEngine, RelationalStore


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite:///:memory:",
        backend="relational",
        flat_store_path="budget_store.json",
        storage_namespace="lb_budget_data",
        session_secret="test-secret",
        session_ttl_hours=24,
        log_level="DEBUG",
    )
    values.update(overrides)
    return Settings(**values)


def make_engine():
    engine = make_database_engine("sqlite:///:memory:")
    create_schema(engine)
    return engine


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture(params=["flat", "relational"])
def store(request):
    if request.param == "flat":
        yield FlatStore(MemoryKeyValueEngine())
        return
    engine = make_engine()
    with Session(engine) as session:
        yield RelationalStore(session)
    engine.dispose()


@pytest.fixture
def provider(store, settings) -> IdentityProvider:
    return IdentityProvider(store, settings)


@pytest.fixture
def auth(provider) -> AuthSession:
    session = AuthSession(provider)
    result = session.sign_up("ada@example.com", "analytical", "Ada Lovelace")
    assert result.ok
    return session


@pytest.fixture
def primary(auth):
    return auth.profiles()[0]


@pytest.fixture
def ledger_for(store, auth):
    def open_ledger(profile_id, month=3, year=2025) -> BudgetLedger:
        ledger = BudgetLedger(store, auth, profile_id, month, year)
        ledger.refresh()
        return ledger

    return open_ledger


@pytest.fixture
def ledger(ledger_for, primary) -> BudgetLedger:
    return ledger_for(primary.id)
