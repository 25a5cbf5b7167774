from datetime import date
from decimal import Decimal

import pytest
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from auth import AuthSession, IdentityProvider
from database import Base
from errors import NotFoundError, StoreError
from models import SpendCategory, TransactionType
from periods import resolve_period
from schemas import TransactionRecord
from stores import (
    RECORD_TYPES,
    FlatStore,
    JsonFileKeyValueEngine,
    MemoryKeyValueEngine,
    RecordCategory,
    RelationalStore,
    build_store,
)
from conftest import make_engine, make_settings


def _record(period, amount: str = "12.50") -> TransactionRecord:
    return TransactionRecord(
        user_id=period.user_id,
        profile_id=period.profile_id,
        budget_period_id=period.id,
        budget_month=period.budget_month,
        budget_year=period.budget_year,
        type=TransactionType.expense,
        category=SpendCategory.need,
        amount=Decimal(amount),
        transaction_date=date(2025, 3, 2),
    )


def test_save_replaces_the_whole_category(store, auth, primary) -> None:
    period = resolve_period(store, auth.user_id, primary.id, 3, 2025)
    first, second = _record(period), _record(period, "8")

    store.save(period, RecordCategory.transactions, [first, second])
    store.save(period, RecordCategory.transactions, [second])

    assert [r.id for r in store.load(period, RecordCategory.transactions)] == [second.id]


def test_remove_clears_the_category(store, auth, primary) -> None:
    period = resolve_period(store, auth.user_id, primary.id, 3, 2025)
    store.insert(period, RecordCategory.transactions, _record(period))

    store.remove(period, RecordCategory.transactions)

    assert store.load(period, RecordCategory.transactions) == []


def test_record_helpers(store, auth, primary) -> None:
    period = resolve_period(store, auth.user_id, primary.id, 3, 2025)
    record = store.insert(period, RecordCategory.transactions, _record(period))

    store.update(
        period,
        RecordCategory.transactions,
        record.model_copy(update={"notes": "weekly shop"}),
    )
    [loaded] = store.load(period, RecordCategory.transactions)
    assert loaded.notes == "weekly shop"

    assert store.delete(period, RecordCategory.transactions, record.id) is True
    assert store.delete(period, RecordCategory.transactions, record.id) is False
    with pytest.raises(NotFoundError):
        store.update(period, RecordCategory.transactions, record)


def test_periods_are_scoped_to_their_month(store, auth, primary) -> None:
    march = resolve_period(store, auth.user_id, primary.id, 3, 2025)
    april = resolve_period(store, auth.user_id, primary.id, 4, 2025)
    store.insert(march, RecordCategory.transactions, _record(march))

    assert store.load(april, RecordCategory.transactions) == []


def test_flat_store_key_layout(settings) -> None:
    engine = MemoryKeyValueEngine()
    store = FlatStore(engine, "lb_budget_data")
    auth = AuthSession(IdentityProvider(store, settings))
    auth.sign_up("kv@example.com", "hunter22")
    [primary] = auth.profiles()
    period = resolve_period(store, auth.user_id, primary.id, 3, 2025)

    store.insert(period, RecordCategory.transactions, _record(period))

    key = f"lb_budget_data_{auth.user_id}_transactions_Primary_3_2025"
    assert store.key(auth.user_id, "transactions", "Primary", 3, 2025) == key
    assert key in engine.keys()
    assert f"lb_budget_data_{auth.user_id}_profiles" in engine.keys()

    store.clear_user_data(auth.user_id)
    assert store.user_keys(auth.user_id) == []


def test_flat_store_wraps_corrupt_payloads(settings) -> None:
    engine = MemoryKeyValueEngine()
    store = FlatStore(engine)
    auth = AuthSession(IdentityProvider(store, settings))
    auth.sign_up("kv@example.com", "hunter22")
    [primary] = auth.profiles()
    period = resolve_period(store, auth.user_id, primary.id, 3, 2025)
    engine.set(
        store.key(auth.user_id, "transactions", "Primary", 3, 2025), "{not json"
    )

    with pytest.raises(StoreError) as exc:
        store.load(period, RecordCategory.transactions)
    assert exc.value.operation == "load:transactions"


def test_relational_store_wraps_database_errors(settings) -> None:
    engine = make_engine()
    with Session(engine) as session:
        store = RelationalStore(session)
        auth = AuthSession(IdentityProvider(store, settings))
        auth.sign_up("sql@example.com", "hunter22")
        [primary] = auth.profiles()
        period = resolve_period(store, auth.user_id, primary.id, 3, 2025)
        Base.metadata.tables["transactions"].drop(session.connection())

        with pytest.raises(StoreError) as exc:
            store.load(period, RecordCategory.transactions)
        assert exc.value.operation == "load:transactions"


def test_relational_store_wraps_undecodable_rows(settings, monkeypatch) -> None:
    class NarrowRecord(BaseModel):
        model_config = ConfigDict(from_attributes=True)

        receipt_number: str

    engine = make_engine()
    with Session(engine) as session:
        store = RelationalStore(session)
        auth = AuthSession(IdentityProvider(store, settings))
        auth.sign_up("sql@example.com", "hunter22")
        [primary] = auth.profiles()
        period = resolve_period(store, auth.user_id, primary.id, 3, 2025)
        store.insert(period, RecordCategory.transactions, _record(period))
        monkeypatch.setitem(RECORD_TYPES, RecordCategory.transactions, NarrowRecord)

        with pytest.raises(StoreError) as exc:
            store.load(period, RecordCategory.transactions)
        assert exc.value.operation == "load:transactions"


def test_json_file_engine_persists_between_instances(tmp_path) -> None:
    path = tmp_path / "nested" / "store.json"
    JsonFileKeyValueEngine(path).set("greeting", "hello")

    engine = JsonFileKeyValueEngine(path)
    assert engine.get("greeting") == "hello"
    engine.delete("greeting")
    assert engine.keys() == []


def test_build_store_picks_backend(tmp_path) -> None:
    flat = build_store(
        make_settings(backend="flat", flat_store_path=str(tmp_path / "kv.json"))
    )
    assert isinstance(flat, FlatStore)

    engine = make_engine()
    with Session(engine) as session:
        assert isinstance(build_store(make_settings(), session), RelationalStore)

    with pytest.raises(ValueError):
        build_store(make_settings())
    with pytest.raises(ValueError):
        build_store(make_settings(backend="cloud"))
