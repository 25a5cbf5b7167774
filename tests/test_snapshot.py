from datetime import date
from decimal import Decimal

import pytest

from errors import NotFoundError
from models import SpendCategory, TransactionType
from schemas import (
    AllocationIn,
    BudgetConfigIn,
    FundIn,
    InvestmentCategoryIn,
    PortfolioIn,
    TransactionIn,
)
from services import BudgetLedger, SnapshotService
from stores import RecordCategory


def _expense(day: int, amount: str = "10") -> TransactionIn:
    return TransactionIn(
        type=TransactionType.expense,
        category=SpendCategory.need,
        amount=Decimal(amount),
        transaction_date=date(2025, 3, day),
        description=f"Groceries {day}",
    )


def test_new_period_snapshot_is_empty(ledger, primary) -> None:
    snapshot = ledger.snapshot

    assert snapshot.profile.id == primary.id
    assert (snapshot.period.budget_month, snapshot.period.budget_year) == (3, 2025)
    assert snapshot.config is None
    assert snapshot.portfolios == []
    assert snapshot.transactions == []
    assert [m.module_name for m in snapshot.modules] == [
        "need",
        "want",
        "savings",
        "investments",
    ]


def test_snapshot_for_unknown_profile_raises(store, auth) -> None:
    with pytest.raises(NotFoundError):
        SnapshotService(store).load(auth.user_id, "missing-profile", 3, 2025)


def test_snapshot_joins_allocations_to_modules(ledger) -> None:
    need = ledger.snapshot.modules[0]
    ledger.save_budget_config(
        BudgetConfigIn(
            monthly_salary=Decimal("3000"),
            allocations=[AllocationIn(module_id=need.id, percentage=Decimal("50"))],
        )
    )

    allocation = ledger.snapshot.config.allocations[0]
    assert allocation.module is not None
    assert allocation.module.module_name == "need"
    assert allocation.allocated_amount == Decimal("1500.00")


def test_snapshot_nests_portfolio_categories_and_funds(ledger) -> None:
    portfolio = ledger.save_investment_portfolio(
        PortfolioIn(portfolio_name="Long term", allocated_amount=Decimal("1000"))
    )
    equity = ledger.add_investment_category(
        portfolio.id,
        InvestmentCategoryIn(category_name="Equity", allocation_value=Decimal("60")),
    )
    ledger.add_investment_category(
        portfolio.id,
        InvestmentCategoryIn(category_name="Debt", allocation_value=Decimal("40")),
    )
    ledger.add_investment_fund(
        equity.id, FundIn(fund_name="Index Fund", allocated_amount=Decimal("600"))
    )

    [nested] = ledger.snapshot.portfolios
    assert nested.id == portfolio.id
    assert [c.category_name for c in nested.categories] == ["Equity", "Debt"]
    assert [f.fund_name for f in nested.categories[0].funds] == ["Index Fund"]
    assert nested.categories[1].funds == []


def test_snapshot_skips_inactive_categories(store, ledger) -> None:
    portfolio = ledger.save_investment_portfolio(PortfolioIn(portfolio_name="Gold"))
    category = ledger.add_investment_category(
        portfolio.id, InvestmentCategoryIn(category_name="Bullion")
    )
    store.update(
        ledger.snapshot.period,
        RecordCategory.categories,
        category.model_copy(update={"is_active": False}),
    )

    snapshot = ledger.refresh()
    assert snapshot.portfolios[0].categories == []


def test_snapshot_skips_inactive_portfolios(ledger) -> None:
    ledger.save_investment_portfolio(
        PortfolioIn(portfolio_name="Parked", is_active=False)
    )

    assert ledger.snapshot.portfolios == []


def test_snapshot_orders_transactions_newest_first(ledger) -> None:
    for day in (1, 10, 5):
        ledger.add_transaction(_expense(day))

    dates = [t.transaction_date.day for t in ledger.snapshot.transactions]
    assert dates == [10, 5, 1]


def test_snapshot_breaks_date_ties_by_creation(ledger) -> None:
    first = ledger.add_transaction(_expense(4, "11"))
    second = ledger.add_transaction(_expense(4, "12"))

    ids = [t.id for t in ledger.snapshot.transactions]
    assert ids == [second.id, first.id]


def test_refresh_without_profile_yields_no_snapshot(store, auth) -> None:
    ledger = BudgetLedger(store, auth, None, 3, 2025)
    assert ledger.refresh() is None
    assert ledger.snapshot is None
