from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from pydantic import BaseModel

from auth import AuthSession
from errors import NotFoundError, ValidationError
from models import (
    AllocationType,
    InheritableComponent,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from periods import resolve_period, validate_budget_month
from schemas import (
    AllocationRecord,
    BudgetConfigIn,
    BudgetSnapshot,
    ConfigRecord,
    FundIn,
    FundRecord,
    InheritanceRecord,
    InvestmentCategoryIn,
    InvestmentCategoryRecord,
    ModuleIn,
    ModuleRecord,
    PeriodRecord,
    PortfolioIn,
    PortfolioPatch,
    PortfolioRecord,
    TransactionIn,
    TransactionPatch,
    TransactionRecord,
    new_id,
    quantize,
)
from stores import BudgetStore, RecordCategory

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
REFUND_STATUSES = (TransactionStatus.refunded, TransactionStatus.partial_refund)


# optional columns a patch may clear by sending null
TRANSACTION_NULLABLE = frozenset(
    {
        "description",
        "notes",
        "transaction_time",
        "payment_type",
        "spent_for",
        "tag",
        "portfolio_id",
        "investment_category_id",
        "fund_id",
        "investment_type",
    }
)


def _share(total: Decimal, percentage: Decimal) -> Decimal:
    return quantize(total * percentage / Decimal(100))


def _patch_changes(patch: BaseModel, nullable: frozenset = frozenset()) -> dict:
    changes = patch.model_dump(exclude_unset=True)
    return {k: v for k, v in changes.items() if v is not None or k in nullable}


class SnapshotService:
    def __init__(self, store: BudgetStore) -> None:
        self.store = store

    def load(
        self, user_id: str, profile_id: str, month: int, year: int
    ) -> BudgetSnapshot:
        profile = self.store.get_profile(user_id, profile_id)
        if profile is None:
            raise NotFoundError(f"Profile {profile_id} not found")
        validate_budget_month(month, year)
        period = resolve_period(self.store, user_id, profile_id, month, year)
        modules = [m for m in self.store.list_modules(user_id) if m.is_active]
        config = self.store.load_config_tree(period)
        portfolios = self.store.load_portfolio_tree(period)

        loaded = self.store.load(period, RecordCategory.transactions)
        visible = [(idx, t) for idx, t in enumerate(loaded) if not t.is_deleted]
        visible.sort(
            key=lambda pair: (pair[1].transaction_date, pair[1].created_at, pair[0]),
            reverse=True,
        )
        transactions = [t for _, t in visible]

        logger.info(
            f"snapshot_loaded: period={period.id} config={config is not None} "
            f"portfolios={len(portfolios)} transactions={len(transactions)}"
        )
        return BudgetSnapshot(
            profile=profile,
            period=period,
            config=config,
            modules=modules,
            portfolios=portfolios,
            transactions=transactions,
        )


class InheritanceService:
    """Copies configuration from one period into another.

    An audit record is written before anything is copied and is never rolled
    back, so a failure midway leaves the audit entry and whatever subtrees were
    already copied in the target period.
    """

    def __init__(self, store: BudgetStore) -> None:
        self.store = store

    def inherit(
        self,
        user_id: str,
        profile_id: str,
        source_period_id: str,
        target_period_id: str,
        components: Iterable[str],
    ) -> InheritanceRecord:
        try:
            requested = list(
                dict.fromkeys(InheritableComponent(c) for c in components)
            )
        except ValueError as exc:
            raise ValidationError("components", f"Unknown component: {exc}") from exc
        if not requested:
            raise ValidationError("components", "At least one component is required")

        source = self.store.get_period(user_id, source_period_id)
        if source is None:
            raise NotFoundError(f"Budget period {source_period_id} not found")
        target = self.store.get_period(user_id, target_period_id)
        if target is None or target.profile_id != profile_id:
            raise NotFoundError(f"Budget period {target_period_id} not found")

        audit = InheritanceRecord(
            user_id=user_id,
            profile_id=profile_id,
            source_budget_period_id=source.id,
            target_budget_period_id=target.id,
            inherited_components=requested,
        )
        self.store.insert(target, RecordCategory.inheritances, audit)
        logger.info(
            f"inheritance_started: source={source.id} target={target.id} "
            f"components={','.join(c.value for c in requested)}"
        )

        if InheritableComponent.budget_config in requested:
            self._copy_config(source, target)
        if InheritableComponent.investment_portfolios in requested:
            self._copy_portfolios(source, target)
        return audit

    def _copy_config(self, source: PeriodRecord, target: PeriodRecord) -> None:
        configs = self.store.load(source, RecordCategory.config)
        if not configs:
            logger.debug(f"inheritance_skip: source={source.id} component=budget_config")
            return
        original = configs[0]
        existing = self.store.load(target, RecordCategory.config)
        config = ConfigRecord(
            id=existing[0].id if existing else new_id(),
            user_id=target.user_id,
            profile_id=target.profile_id,
            budget_period_id=target.id,
            monthly_salary=original.monthly_salary,
            budget_percentage=original.budget_percentage,
            total_budget_amount=original.total_budget_amount,
            created_at=existing[0].created_at if existing else utcnow(),
        )
        self.store.save(target, RecordCategory.config, [config])
        allocations = [
            AllocationRecord(
                budget_config_id=config.id,
                budget_module_id=allocation.budget_module_id,
                allocation_percentage=allocation.allocation_percentage,
                allocated_amount=allocation.allocated_amount,
            )
            for allocation in self.store.load(source, RecordCategory.allocations)
        ]
        self.store.save(target, RecordCategory.allocations, allocations)

    def _copy_portfolios(self, source: PeriodRecord, target: PeriodRecord) -> None:
        portfolios = self.store.load(source, RecordCategory.portfolios)
        categories = self.store.load(source, RecordCategory.categories)
        funds = self.store.load(source, RecordCategory.funds)
        for portfolio in portfolios:
            now = utcnow()
            copied = portfolio.model_copy(
                update={
                    "id": new_id(),
                    "user_id": target.user_id,
                    "profile_id": target.profile_id,
                    "budget_period_id": target.id,
                    "invested_amount": ZERO,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            self.store.insert(target, RecordCategory.portfolios, copied)
            for category in categories:
                if category.portfolio_id != portfolio.id:
                    continue
                copied_category = category.model_copy(
                    update={
                        "id": new_id(),
                        "portfolio_id": copied.id,
                        "invested_amount": ZERO,
                        "created_at": now,
                        "updated_at": now,
                    }
                )
                self.store.insert(target, RecordCategory.categories, copied_category)
                for fund in funds:
                    if fund.category_id != category.id:
                        continue
                    self.store.insert(
                        target,
                        RecordCategory.funds,
                        fund.model_copy(
                            update={
                                "id": new_id(),
                                "category_id": copied_category.id,
                                "invested_amount": ZERO,
                                "created_at": now,
                                "updated_at": now,
                            }
                        ),
                    )

    def list_inheritances(
        self, user_id: str, profile_id: str
    ) -> list[InheritanceRecord]:
        records: list[InheritanceRecord] = []
        for period in self.store.list_periods(user_id, profile_id):
            records.extend(self.store.load(period, RecordCategory.inheritances))
        return sorted(records, key=lambda r: r.created_at)


class BudgetLedger:
    """Mutations for one (user, profile, month, year) scope.

    Every mutation re-reads the full snapshot afterwards. Without a signed-in
    user, a profile, or a loaded snapshot, mutations do nothing and return
    ``None``.
    """

    def __init__(
        self,
        store: BudgetStore,
        auth: AuthSession,
        profile_id: Optional[str],
        month: int,
        year: int,
    ) -> None:
        self.store = store
        self.auth = auth
        self.profile_id = profile_id
        self.month = month
        self.year = year
        self.snapshot: Optional[BudgetSnapshot] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.auth.user_id

    def refresh(self) -> Optional[BudgetSnapshot]:
        if not self.user_id or not self.profile_id:
            self.snapshot = None
            return None
        self.snapshot = SnapshotService(self.store).load(
            self.user_id, self.profile_id, self.month, self.year
        )
        return self.snapshot

    def _context(self, operation: str) -> Optional[PeriodRecord]:
        snapshot = self.snapshot
        if (
            not self.user_id
            or not self.profile_id
            or snapshot is None
            or snapshot.period.user_id != self.user_id
        ):
            logger.debug(f"ledger_noop: operation={operation} reason=no_context")
            return None
        return snapshot.period

    # budget config

    def save_budget_config(self, data: BudgetConfigIn) -> Optional[ConfigRecord]:
        period = self._context("save_budget_config")
        if period is None:
            return None
        modules = {m.id: m for m in self.store.list_modules(period.user_id)}
        seen: set[str] = set()
        for allocation in data.allocations:
            if allocation.module_id not in modules:
                raise NotFoundError(f"Budget module {allocation.module_id} not found")
            if allocation.module_id in seen:
                raise ValidationError(
                    "allocations",
                    f"Budget module {allocation.module_id} is allocated more than once",
                )
            seen.add(allocation.module_id)
        if sum((a.percentage for a in data.allocations), Decimal(0)) > 100:
            raise ValidationError(
                "allocations", "Allocation percentages must not exceed 100"
            )

        total = _share(data.monthly_salary, data.budget_percentage)
        existing = self.store.load(period, RecordCategory.config)
        if existing:
            config = existing[0].model_copy(
                update={
                    "monthly_salary": data.monthly_salary,
                    "budget_percentage": data.budget_percentage,
                    "total_budget_amount": total,
                    "updated_at": utcnow(),
                }
            )
        else:
            config = ConfigRecord(
                user_id=period.user_id,
                profile_id=period.profile_id,
                budget_period_id=period.id,
                monthly_salary=data.monthly_salary,
                budget_percentage=data.budget_percentage,
                total_budget_amount=total,
            )
        self.store.save(period, RecordCategory.config, [config])
        self.store.save(
            period,
            RecordCategory.allocations,
            [
                AllocationRecord(
                    budget_config_id=config.id,
                    budget_module_id=allocation.module_id,
                    allocation_percentage=allocation.percentage,
                    allocated_amount=_share(total, allocation.percentage),
                )
                for allocation in data.allocations
            ],
        )
        logger.info(
            f"budget_config_saved: period={period.id} total={total} "
            f"allocations={len(data.allocations)}"
        )
        self.refresh()
        return config

    def delete_budget_config(self) -> Optional[bool]:
        period = self._context("delete_budget_config")
        if period is None:
            return None
        existed = bool(self.store.load(period, RecordCategory.config))
        self.store.remove(period, RecordCategory.allocations)
        self.store.remove(period, RecordCategory.config)
        self.refresh()
        return existed

    # investment portfolios

    def _config_total(self, period: PeriodRecord) -> Decimal:
        configs = self.store.load(period, RecordCategory.config)
        return configs[0].total_budget_amount if configs else ZERO

    def _find(self, period: PeriodRecord, category: RecordCategory, record_id: str, label: str):
        for record in self.store.load(period, category):
            if record.id == record_id:
                return record
        raise NotFoundError(f"{label} {record_id} not found")

    def save_investment_portfolio(self, data: PortfolioIn) -> Optional[PortfolioRecord]:
        period = self._context("save_investment_portfolio")
        if period is None:
            return None
        allocated = data.allocated_amount
        if allocated is None:
            if data.allocation_type == AllocationType.amount:
                allocated = data.allocation_value
            else:
                allocated = _share(self._config_total(period), data.allocation_value)
        portfolio = PortfolioRecord(
            user_id=period.user_id,
            profile_id=period.profile_id,
            budget_period_id=period.id,
            portfolio_name=data.portfolio_name,
            allocation_type=data.allocation_type,
            allocation_value=data.allocation_value,
            allocated_amount=allocated,
            invested_amount=data.invested_amount,
            allow_direct_investment=data.allow_direct_investment,
            is_active=data.is_active,
        )
        self.store.insert(period, RecordCategory.portfolios, portfolio)
        logger.info(f"portfolio_created: period={period.id} id={portfolio.id}")
        self.refresh()
        return portfolio

    def update_investment_portfolio(
        self, portfolio_id: str, data: PortfolioPatch
    ) -> Optional[PortfolioRecord]:
        period = self._context("update_investment_portfolio")
        if period is None:
            return None
        current = self._find(period, RecordCategory.portfolios, portfolio_id, "Portfolio")
        changes = _patch_changes(data)
        portfolio = PortfolioRecord.model_validate(
            {**current.model_dump(), **changes, "updated_at": utcnow()}
        )
        self.store.update(period, RecordCategory.portfolios, portfolio)
        self.refresh()
        return portfolio

    def delete_investment_portfolio(self, portfolio_id: str) -> Optional[bool]:
        period = self._context("delete_investment_portfolio")
        if period is None:
            return None
        self._find(period, RecordCategory.portfolios, portfolio_id, "Portfolio")
        categories = self.store.load(period, RecordCategory.categories)
        doomed = {c.id for c in categories if c.portfolio_id == portfolio_id}
        funds = self.store.load(period, RecordCategory.funds)
        doomed_funds = {f.id for f in funds if f.category_id in doomed}
        self._unlink_transactions(period, {portfolio_id}, doomed, doomed_funds)
        if doomed:
            self.store.save(
                period,
                RecordCategory.funds,
                [f for f in funds if f.id not in doomed_funds],
            )
            self.store.save(
                period,
                RecordCategory.categories,
                [c for c in categories if c.id not in doomed],
            )
        self.store.delete(period, RecordCategory.portfolios, portfolio_id)
        logger.info(f"portfolio_deleted: period={period.id} id={portfolio_id}")
        self.refresh()
        return True

    def delete_all_investment_portfolios(self) -> Optional[bool]:
        period = self._context("delete_all_investment_portfolios")
        if period is None:
            return None
        self._unlink_transactions(
            period,
            {p.id for p in self.store.load(period, RecordCategory.portfolios)},
            {c.id for c in self.store.load(period, RecordCategory.categories)},
            {f.id for f in self.store.load(period, RecordCategory.funds)},
        )
        self.store.remove(period, RecordCategory.funds)
        self.store.remove(period, RecordCategory.categories)
        self.store.remove(period, RecordCategory.portfolios)
        self.refresh()
        return True

    def _unlink_transactions(
        self,
        period: PeriodRecord,
        portfolio_ids: set,
        category_ids: set,
        fund_ids: set,
    ) -> None:
        """Null the investment links pointing at rows about to be deleted.

        Mirrors the ``ON DELETE SET NULL`` foreign keys of the relational
        schema so both backends hold the same transactions afterwards.
        Soft-deleted transactions are unlinked too.
        """
        for txn in self.store.load(period, RecordCategory.transactions):
            cleared = {}
            if txn.portfolio_id in portfolio_ids:
                cleared["portfolio_id"] = None
            if txn.investment_category_id in category_ids:
                cleared["investment_category_id"] = None
            if txn.fund_id in fund_ids:
                cleared["fund_id"] = None
            if cleared:
                self.store.update(
                    period, RecordCategory.transactions, txn.model_copy(update=cleared)
                )

    def add_investment_category(
        self, portfolio_id: str, data: InvestmentCategoryIn
    ) -> Optional[InvestmentCategoryRecord]:
        period = self._context("add_investment_category")
        if period is None:
            return None
        portfolio = self._find(
            period, RecordCategory.portfolios, portfolio_id, "Portfolio"
        )
        allocated = data.allocated_amount
        if allocated is None:
            if data.allocation_type == AllocationType.amount:
                allocated = data.allocation_value
            else:
                allocated = _share(portfolio.allocated_amount, data.allocation_value)
        category = InvestmentCategoryRecord(
            portfolio_id=portfolio.id,
            category_name=data.category_name,
            allocation_type=data.allocation_type,
            allocation_value=data.allocation_value,
            allocated_amount=allocated,
            invested_amount=data.invested_amount,
        )
        self.store.insert(period, RecordCategory.categories, category)
        self.refresh()
        return category

    def add_investment_fund(self, category_id: str, data: FundIn) -> Optional[FundRecord]:
        period = self._context("add_investment_fund")
        if period is None:
            return None
        self._find(period, RecordCategory.categories, category_id, "Investment category")
        fund = FundRecord(
            category_id=category_id,
            fund_name=data.fund_name,
            allocated_amount=data.allocated_amount,
            invested_amount=data.invested_amount,
        )
        self.store.insert(period, RecordCategory.funds, fund)
        self.refresh()
        return fund

    # transactions

    def _check_links(
        self,
        period: PeriodRecord,
        portfolio_id: Optional[str],
        category_id: Optional[str],
        fund_id: Optional[str],
    ) -> None:
        if portfolio_id:
            self._find(period, RecordCategory.portfolios, portfolio_id, "Portfolio")
        if category_id:
            self._find(period, RecordCategory.categories, category_id, "Investment category")
        if fund_id:
            self._find(period, RecordCategory.funds, fund_id, "Fund")

    def _active_transaction(
        self, period: PeriodRecord, transaction_id: str
    ) -> TransactionRecord:
        for txn in self.store.load(period, RecordCategory.transactions):
            if txn.id == transaction_id and not txn.is_deleted:
                return txn
        raise NotFoundError(f"Transaction {transaction_id} not found")

    def add_transaction(self, data: TransactionIn) -> Optional[TransactionRecord]:
        validate_budget_month(self.month, self.year)
        period = self._context("add_transaction")
        if period is None:
            return None
        if data.status in REFUND_STATUSES:
            raise ValidationError(
                "status", "Refund statuses are only set by refunding a transaction"
            )
        self._check_links(
            period, data.portfolio_id, data.investment_category_id, data.fund_id
        )
        if data.original_transaction_id:
            self._active_transaction(period, data.original_transaction_id)

        fields = data.model_dump(exclude={"transaction_date", "status"})
        txn = TransactionRecord(
            user_id=period.user_id,
            profile_id=period.profile_id,
            budget_period_id=period.id,
            budget_month=self.month,
            budget_year=self.year,
            transaction_date=data.transaction_date or date.today(),
            status=data.status or TransactionStatus.active,
            **fields,
        )
        self.store.insert(period, RecordCategory.transactions, txn)
        logger.info(
            f"transaction_created: period={period.id} id={txn.id} "
            f"type={txn.type.value} amount={txn.amount}"
        )
        self.refresh()
        return txn

    def update_transaction(
        self, transaction_id: str, data: TransactionPatch
    ) -> Optional[TransactionRecord]:
        period = self._context("update_transaction")
        if period is None:
            return None
        current = self._active_transaction(period, transaction_id)
        changes = _patch_changes(data, TRANSACTION_NULLABLE)
        status = changes.get("status")
        if status is not None and status != current.status:
            if current.status != TransactionStatus.active:
                raise ValidationError(
                    "status", f"A {current.status.value} transaction cannot change status"
                )
            if status in REFUND_STATUSES:
                raise ValidationError(
                    "status", "Refund statuses are only set by refunding a transaction"
                )
        self._check_links(
            period,
            changes.get("portfolio_id"),
            changes.get("investment_category_id"),
            changes.get("fund_id"),
        )
        txn = TransactionRecord.model_validate(
            {**current.model_dump(), **changes, "updated_at": utcnow()}
        )
        self.store.update(period, RecordCategory.transactions, txn)
        self.refresh()
        return txn

    def delete_transaction(self, transaction_id: str) -> Optional[bool]:
        period = self._context("delete_transaction")
        if period is None:
            return None
        txn = self._find(period, RecordCategory.transactions, transaction_id, "Transaction")
        if txn.is_deleted:
            logger.debug(f"transaction_already_deleted: id={transaction_id}")
            return False
        now = utcnow()
        self.store.update(
            period,
            RecordCategory.transactions,
            txn.model_copy(update={"is_deleted": True, "deleted_at": now, "updated_at": now}),
        )
        logger.info(f"transaction_deleted: period={period.id} id={transaction_id}")
        self.refresh()
        return True

    def delete_all_transactions(self) -> Optional[bool]:
        period = self._context("delete_all_transactions")
        if period is None:
            return None
        self.store.remove(period, RecordCategory.transactions)
        logger.info(f"transactions_cleared: period={period.id}")
        self.refresh()
        return True

    def refund_transaction(
        self, original_id: str, amount, reason: str
    ) -> Optional[TransactionRecord]:
        period = self._context("refund_transaction")
        if period is None:
            return None
        original = self._active_transaction(period, original_id)
        amount = quantize(Decimal(str(amount)))
        if amount <= 0:
            raise ValidationError("amount", "Refund amount must be positive")
        if amount > original.amount:
            raise ValidationError(
                "amount", "Refund amount cannot exceed the original amount"
            )
        if original.status != TransactionStatus.active:
            raise ValidationError(
                "status", f"A {original.status.value} transaction cannot be refunded"
            )

        refund = TransactionRecord(
            user_id=period.user_id,
            profile_id=period.profile_id,
            budget_period_id=period.id,
            budget_month=self.month,
            budget_year=self.year,
            type=TransactionType.refund,
            category=original.category,
            amount=amount,
            description=f"Refund: {reason}",
            transaction_date=date.today(),
            refund_for=original.id,
            original_transaction_id=original.id,
        )
        self.store.insert(period, RecordCategory.transactions, refund)
        status = (
            TransactionStatus.refunded
            if amount == original.amount
            else TransactionStatus.partial_refund
        )
        self.store.update(
            period,
            RecordCategory.transactions,
            original.model_copy(update={"status": status, "updated_at": utcnow()}),
        )
        logger.info(
            f"transaction_refunded: original={original.id} refund={refund.id} status={status.value}"
        )
        self.refresh()
        return refund

    # budget modules

    def create_budget_module(self, data: ModuleIn) -> Optional[ModuleRecord]:
        period = self._context("create_budget_module")
        if period is None:
            return None
        modules = self.store.list_modules(period.user_id)
        if any(m.module_name == data.module_name for m in modules):
            raise ValidationError(
                "module_name", f"Budget module '{data.module_name}' already exists"
            )
        module = self.store.save_module(
            ModuleRecord(
                user_id=period.user_id,
                module_name=data.module_name,
                display_name=data.display_name,
                include_in_budget=data.include_in_budget,
                is_system_module=False,
                sort_order=max((m.sort_order for m in modules), default=0) + 1,
            )
        )
        self.refresh()
        return module

    def deactivate_budget_module(self, module_id: str) -> Optional[ModuleRecord]:
        period = self._context("deactivate_budget_module")
        if period is None:
            return None
        module = next(
            (m for m in self.store.list_modules(period.user_id) if m.id == module_id),
            None,
        )
        if module is None:
            raise NotFoundError(f"Budget module {module_id} not found")
        if module.is_system_module:
            raise ValidationError("module_id", "System modules cannot be deactivated")
        module = self.store.save_module(
            module.model_copy(update={"is_active": False, "updated_at": utcnow()})
        )
        self.refresh()
        return module

    # inheritance

    def inherit_configuration(
        self, source_period_id: str, components: Iterable[str]
    ) -> Optional[InheritanceRecord]:
        period = self._context("inherit_configuration")
        if period is None:
            return None
        audit = InheritanceService(self.store).inherit(
            period.user_id, period.profile_id, source_period_id, period.id, components
        )
        self.refresh()
        return audit
