"""Storage adapters for budget records.

Two interchangeable backends sit behind :class:`BudgetStore`:

* :class:`FlatStore` keeps one serialized record list per
  ``(namespace, user, category, profile, month, year)`` key in a key-value
  engine and joins nested structures in memory.
* :class:`RelationalStore` maps the same records onto normalized SQLAlchemy
  tables and lets the database do the nested selection.

Business logic only ever talks to :class:`BudgetStore`; the concrete class is
picked once by :func:`build_store`.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional, Sequence

from pydantic import BaseModel, TypeAdapter
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from config import Settings
from errors import NotFoundError, StoreError, ValidationError
from models import (
    BudgetAllocation,
    BudgetConfig,
    BudgetModule,
    BudgetPeriod,
    ConfigurationInheritance,
    InvestmentCategory,
    InvestmentFund,
    InvestmentPortfolio,
    Transaction,
    User,
    UserProfile,
)
from schemas import (
    AllocationRecord,
    AllocationView,
    ConfigRecord,
    ConfigView,
    FundRecord,
    InheritanceRecord,
    InvestmentCategoryRecord,
    InvestmentCategoryView,
    ModuleRecord,
    PeriodRecord,
    PortfolioRecord,
    PortfolioView,
    ProfileRecord,
    Record,
    TransactionRecord,
    UserRecord,
)

logger = logging.getLogger(__name__)


class RecordCategory(str, Enum):
    config = "config"
    allocations = "allocations"
    portfolios = "portfolios"
    categories = "categories"
    funds = "funds"
    transactions = "transactions"
    inheritances = "inheritances"


RECORD_TYPES: dict[RecordCategory, type[Record]] = {
    RecordCategory.config: ConfigRecord,
    RecordCategory.allocations: AllocationRecord,
    RecordCategory.portfolios: PortfolioRecord,
    RecordCategory.categories: InvestmentCategoryRecord,
    RecordCategory.funds: FundRecord,
    RecordCategory.transactions: TransactionRecord,
    RecordCategory.inheritances: InheritanceRecord,
}


def nest_config(
    config: ConfigRecord,
    allocations: Sequence[AllocationRecord],
    modules: Sequence[ModuleRecord],
) -> ConfigView:
    by_id = {module.id: module for module in modules}
    return ConfigView(
        **config.model_dump(),
        allocations=[
            AllocationView(
                **allocation.model_dump(), module=by_id.get(allocation.budget_module_id)
            )
            for allocation in allocations
            if allocation.budget_config_id == config.id
        ],
    )


def nest_portfolios(
    portfolios: Sequence[PortfolioRecord],
    categories: Sequence[InvestmentCategoryRecord],
    funds: Sequence[FundRecord],
) -> list[PortfolioView]:
    nested: list[PortfolioView] = []
    for portfolio in portfolios:
        if not portfolio.is_active:
            continue
        portfolio_categories = [
            InvestmentCategoryView(
                **category.model_dump(),
                funds=[
                    fund
                    for fund in funds
                    if fund.category_id == category.id and fund.is_active
                ],
            )
            for category in categories
            if category.portfolio_id == portfolio.id and category.is_active
        ]
        nested.append(
            PortfolioView(**portfolio.model_dump(), categories=portfolio_categories)
        )
    return nested


class BudgetStore(ABC):
    """Record access shared by every backend.

    Category level calls work on the whole record list of one period. The
    record level helpers (``insert``/``update``/``delete``) default to
    load-modify-save and may be overridden with cheaper row operations.
    """

    # account-wide

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserRecord]: ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[UserRecord]: ...

    @abstractmethod
    def create_user(self, user: UserRecord, password_hash: str) -> UserRecord: ...

    @abstractmethod
    def get_password_hash(self, email: str) -> Optional[str]: ...

    @abstractmethod
    def list_profiles(self, user_id: str) -> list[ProfileRecord]: ...

    @abstractmethod
    def save_profile(self, profile: ProfileRecord) -> ProfileRecord: ...

    @abstractmethod
    def list_modules(self, user_id: str) -> list[ModuleRecord]: ...

    @abstractmethod
    def save_module(self, module: ModuleRecord) -> ModuleRecord: ...

    def get_profile(self, user_id: str, profile_id: str) -> Optional[ProfileRecord]:
        for profile in self.list_profiles(user_id):
            if profile.id == profile_id:
                return profile
        return None

    # periods

    @abstractmethod
    def find_period(
        self, user_id: str, profile_id: str, month: int, year: int
    ) -> Optional[PeriodRecord]: ...

    @abstractmethod
    def insert_period(self, period: PeriodRecord) -> PeriodRecord:
        """Store ``period`` unless its (user, profile, month, year) slot is taken.

        Returns whichever record occupies the slot afterwards.
        """

    @abstractmethod
    def list_periods(self, user_id: str, profile_id: str) -> list[PeriodRecord]: ...

    def get_period(self, user_id: str, period_id: str) -> Optional[PeriodRecord]:
        for profile in self.list_profiles(user_id):
            for period in self.list_periods(user_id, profile.id):
                if period.id == period_id:
                    return period
        return None

    # per-period categories

    @abstractmethod
    def load(self, period: PeriodRecord, category: RecordCategory) -> list: ...

    @abstractmethod
    def save(
        self, period: PeriodRecord, category: RecordCategory, records: Sequence[Record]
    ) -> None: ...

    @abstractmethod
    def remove(self, period: PeriodRecord, category: RecordCategory) -> None: ...

    def insert(self, period: PeriodRecord, category: RecordCategory, record: Record):
        records = self.load(period, category)
        records.append(record)
        self.save(period, category, records)
        return record

    def update(self, period: PeriodRecord, category: RecordCategory, record: Record):
        records = self.load(period, category)
        for idx, existing in enumerate(records):
            if existing.id == record.id:
                records[idx] = record
                self.save(period, category, records)
                return record
        raise NotFoundError(f"{category.value} record {record.id} not found")

    def delete(
        self, period: PeriodRecord, category: RecordCategory, record_id: str
    ) -> bool:
        records = self.load(period, category)
        kept = [record for record in records if record.id != record_id]
        if len(kept) == len(records):
            return False
        self.save(period, category, kept)
        return True

    # joined reads

    def load_config_tree(self, period: PeriodRecord) -> Optional[ConfigView]:
        configs = self.load(period, RecordCategory.config)
        if not configs:
            return None
        return nest_config(
            configs[0],
            self.load(period, RecordCategory.allocations),
            self.list_modules(period.user_id),
        )

    def load_portfolio_tree(self, period: PeriodRecord) -> list[PortfolioView]:
        return nest_portfolios(
            self.load(period, RecordCategory.portfolios),
            self.load(period, RecordCategory.categories),
            self.load(period, RecordCategory.funds),
        )


# ---------------------------------------------------------------------------
# Flat key-value backend
# ---------------------------------------------------------------------------


class KeyValueEngine(ABC):
    """String-to-string storage, the browser-local store's equivalent."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def keys(self) -> list[str]: ...


class MemoryKeyValueEngine(KeyValueEngine):
    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileKeyValueEngine(KeyValueEngine):
    """Whole-file JSON object; every write rewrites the file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not contain a JSON object")
        return data

    def _write(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)

    def keys(self) -> list[str]:
        return list(self._read())


class _Credential(BaseModel):
    email: str
    password_hash: str


@contextmanager
def _flat_operation(operation: str) -> Iterator[None]:
    try:
        yield
    except (NotFoundError, ValidationError, StoreError):
        raise
    except (OSError, ValueError) as exc:
        logger.exception("store_failure: backend=flat operation=%s", operation)
        raise StoreError(operation, str(exc)) from exc


class FlatStore(BudgetStore):
    def __init__(
        self, engine: KeyValueEngine, namespace: str = "lb_budget_data"
    ) -> None:
        self.engine = engine
        self.namespace = namespace
        self._adapters: dict[type, TypeAdapter] = {}

    def key(
        self, user_id: str, category: str, profile_name: str, month: int, year: int
    ) -> str:
        return f"{self.namespace}_{user_id}_{category}_{profile_name}_{month}_{year}"

    def _adapter(self, record_type: type) -> TypeAdapter:
        if record_type not in self._adapters:
            self._adapters[record_type] = TypeAdapter(list[record_type])
        return self._adapters[record_type]

    def _read_list(self, key: str, record_type: type) -> list:
        raw = self.engine.get(key)
        if raw is None:
            return []
        return self._adapter(record_type).validate_json(raw)

    def _write_list(self, key: str, record_type: type, records: Sequence) -> None:
        payload = self._adapter(record_type).dump_json(list(records))
        self.engine.set(key, payload.decode("utf-8"))

    def _profile_name(self, period: PeriodRecord) -> str:
        profile = self.get_profile(period.user_id, period.profile_id)
        if profile is None:
            raise NotFoundError(f"Profile {period.profile_id} not found")
        return profile.profile_name

    def _period_key(self, period: PeriodRecord, category: str) -> str:
        return self.key(
            period.user_id,
            category,
            self._profile_name(period),
            period.budget_month,
            period.budget_year,
        )

    # account-wide

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with _flat_operation("get_user"):
            users = self._read_list(f"{self.namespace}_users", UserRecord)
        return next((u for u in users if u.id == user_id), None)

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with _flat_operation("get_user_by_email"):
            users = self._read_list(f"{self.namespace}_users", UserRecord)
        return next((u for u in users if u.email == email), None)

    def create_user(self, user: UserRecord, password_hash: str) -> UserRecord:
        with _flat_operation("create_user"):
            users_key = f"{self.namespace}_users"
            credentials_key = f"{self.namespace}_credentials"
            users = self._read_list(users_key, UserRecord)
            if any(u.email == user.email for u in users):
                raise StoreError("create_user", f"email {user.email} already stored")
            credentials = self._read_list(credentials_key, _Credential)
            credentials.append(_Credential(email=user.email, password_hash=password_hash))
            self._write_list(users_key, UserRecord, [*users, user])
            self._write_list(credentials_key, _Credential, credentials)
        return user

    def get_password_hash(self, email: str) -> Optional[str]:
        with _flat_operation("get_password_hash"):
            credentials = self._read_list(
                f"{self.namespace}_credentials", _Credential
            )
        match = next((c for c in credentials if c.email == email), None)
        return match.password_hash if match else None

    def list_profiles(self, user_id: str) -> list[ProfileRecord]:
        with _flat_operation("list_profiles"):
            return self._read_list(
                f"{self.namespace}_{user_id}_profiles", ProfileRecord
            )

    def save_profile(self, profile: ProfileRecord) -> ProfileRecord:
        with _flat_operation("save_profile"):
            key = f"{self.namespace}_{profile.user_id}_profiles"
            profiles = self._read_list(key, ProfileRecord)
            if any(
                p.profile_name == profile.profile_name and p.id != profile.id
                for p in profiles
            ):
                raise StoreError(
                    "save_profile", f"profile name {profile.profile_name} taken"
                )
            index = next((i for i, p in enumerate(profiles) if p.id == profile.id), None)
            if index is None:
                profiles.append(profile)
            else:
                profiles[index] = profile
            self._write_list(key, ProfileRecord, profiles)
        return profile

    def list_modules(self, user_id: str) -> list[ModuleRecord]:
        with _flat_operation("list_modules"):
            modules = self._read_list(
                f"{self.namespace}_{user_id}_modules", ModuleRecord
            )
        return sorted(modules, key=lambda m: m.sort_order)

    def save_module(self, module: ModuleRecord) -> ModuleRecord:
        with _flat_operation("save_module"):
            key = f"{self.namespace}_{module.user_id}_modules"
            modules = self._read_list(key, ModuleRecord)
            index = next((i for i, m in enumerate(modules) if m.id == module.id), None)
            if index is None:
                modules.append(module)
            else:
                modules[index] = module
            self._write_list(key, ModuleRecord, modules)
        return module

    # periods: each period occupies its own slot keyed by the unique tuple

    def find_period(
        self, user_id: str, profile_id: str, month: int, year: int
    ) -> Optional[PeriodRecord]:
        profile = self.get_profile(user_id, profile_id)
        if profile is None:
            return None
        with _flat_operation("find_period"):
            slot = self._read_list(
                self.key(user_id, "period", profile.profile_name, month, year),
                PeriodRecord,
            )
        return slot[0] if slot else None

    def insert_period(self, period: PeriodRecord) -> PeriodRecord:
        with _flat_operation("insert_period"):
            key = self._period_key(period, "period")
            slot = self._read_list(key, PeriodRecord)
            if slot:
                return slot[0]
            self._write_list(key, PeriodRecord, [period])
        return period

    def list_periods(self, user_id: str, profile_id: str) -> list[PeriodRecord]:
        prefix = f"{self.namespace}_{user_id}_period_"
        periods: list[PeriodRecord] = []
        with _flat_operation("list_periods"):
            for key in self.engine.keys():
                if key.startswith(prefix):
                    periods.extend(
                        p
                        for p in self._read_list(key, PeriodRecord)
                        if p.profile_id == profile_id
                    )
        return sorted(periods, key=lambda p: (p.budget_year, p.budget_month))

    # per-period categories

    def load(self, period: PeriodRecord, category: RecordCategory) -> list:
        with _flat_operation(f"load:{category.value}"):
            return self._read_list(
                self._period_key(period, category.value), RECORD_TYPES[category]
            )

    def save(
        self, period: PeriodRecord, category: RecordCategory, records: Sequence[Record]
    ) -> None:
        with _flat_operation(f"save:{category.value}"):
            self._write_list(
                self._period_key(period, category.value),
                RECORD_TYPES[category],
                records,
            )

    def remove(self, period: PeriodRecord, category: RecordCategory) -> None:
        with _flat_operation(f"remove:{category.value}"):
            self.engine.delete(self._period_key(period, category.value))

    def user_keys(self, user_id: str) -> list[str]:
        prefix = f"{self.namespace}_{user_id}_"
        with _flat_operation("user_keys"):
            return [key for key in self.engine.keys() if key.startswith(prefix)]

    def clear_user_data(self, user_id: str) -> None:
        keys = self.user_keys(user_id)
        with _flat_operation("clear_user_data"):
            for key in keys:
                self.engine.delete(key)


# ---------------------------------------------------------------------------
# Relational backend
# ---------------------------------------------------------------------------


ORM_TYPES = {
    RecordCategory.config: BudgetConfig,
    RecordCategory.allocations: BudgetAllocation,
    RecordCategory.portfolios: InvestmentPortfolio,
    RecordCategory.categories: InvestmentCategory,
    RecordCategory.funds: InvestmentFund,
    RecordCategory.transactions: Transaction,
    RecordCategory.inheritances: ConfigurationInheritance,
}


def _row_values(record: BaseModel) -> dict[str, object]:
    values = record.model_dump()
    if isinstance(record, InheritanceRecord):
        values["inherited_components"] = [
            component.value for component in record.inherited_components
        ]
    return values


class RelationalStore(BudgetStore):
    def __init__(self, session: Session) -> None:
        self.session = session

    @contextmanager
    def _operation(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (NotFoundError, ValidationError, StoreError):
            raise
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("store_failure: backend=relational operation=%s", operation)
            raise StoreError(operation, str(exc)) from exc
        except ValueError as exc:
            # row could not be decoded into its record type
            logger.exception("store_failure: backend=relational operation=%s", operation)
            raise StoreError(operation, str(exc)) from exc

    def _period_query(self, period: PeriodRecord, category: RecordCategory):
        if category == RecordCategory.config:
            return select(BudgetConfig).where(
                BudgetConfig.budget_period_id == period.id
            )
        if category == RecordCategory.allocations:
            return (
                select(BudgetAllocation)
                .join(BudgetConfig, BudgetAllocation.budget_config_id == BudgetConfig.id)
                .where(BudgetConfig.budget_period_id == period.id)
                .order_by(BudgetAllocation.created_at)
            )
        if category == RecordCategory.portfolios:
            return (
                select(InvestmentPortfolio)
                .where(InvestmentPortfolio.budget_period_id == period.id)
                .order_by(InvestmentPortfolio.created_at)
            )
        if category == RecordCategory.categories:
            return (
                select(InvestmentCategory)
                .join(InvestmentCategory.portfolio)
                .where(InvestmentPortfolio.budget_period_id == period.id)
                .order_by(InvestmentCategory.created_at)
            )
        if category == RecordCategory.funds:
            return (
                select(InvestmentFund)
                .join(InvestmentFund.category)
                .join(InvestmentCategory.portfolio)
                .where(InvestmentPortfolio.budget_period_id == period.id)
                .order_by(InvestmentFund.created_at)
            )
        if category == RecordCategory.transactions:
            return (
                select(Transaction)
                .where(Transaction.budget_period_id == period.id)
                .order_by(
                    Transaction.transaction_date.desc(), Transaction.created_at.desc()
                )
            )
        return (
            select(ConfigurationInheritance)
            .where(ConfigurationInheritance.target_budget_period_id == period.id)
            .order_by(ConfigurationInheritance.created_at)
        )

    # account-wide

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._operation("get_user"):
            row = self.session.get(User, user_id)
        return UserRecord.model_validate(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._operation("get_user_by_email"):
            row = self.session.scalar(select(User).where(User.email == email))
        return UserRecord.model_validate(row) if row else None

    def create_user(self, user: UserRecord, password_hash: str) -> UserRecord:
        with self._operation("create_user"):
            self.session.add(User(**user.model_dump(), password_hash=password_hash))
            self.session.commit()
        return user

    def get_password_hash(self, email: str) -> Optional[str]:
        with self._operation("get_password_hash"):
            return self.session.scalar(
                select(User.password_hash).where(User.email == email)
            )

    def list_profiles(self, user_id: str) -> list[ProfileRecord]:
        with self._operation("list_profiles"):
            rows = self.session.scalars(
                select(UserProfile)
                .where(UserProfile.user_id == user_id)
                .order_by(UserProfile.created_at)
            ).all()
        return [ProfileRecord.model_validate(row) for row in rows]

    def get_profile(self, user_id: str, profile_id: str) -> Optional[ProfileRecord]:
        with self._operation("get_profile"):
            row = self.session.scalar(
                select(UserProfile).where(
                    UserProfile.id == profile_id, UserProfile.user_id == user_id
                )
            )
        return ProfileRecord.model_validate(row) if row else None

    def save_profile(self, profile: ProfileRecord) -> ProfileRecord:
        with self._operation("save_profile"):
            self.session.merge(UserProfile(**profile.model_dump()))
            self.session.commit()
        return profile

    def list_modules(self, user_id: str) -> list[ModuleRecord]:
        with self._operation("list_modules"):
            rows = self.session.scalars(
                select(BudgetModule)
                .where(BudgetModule.user_id == user_id)
                .order_by(BudgetModule.sort_order, BudgetModule.created_at)
            ).all()
        return [ModuleRecord.model_validate(row) for row in rows]

    def save_module(self, module: ModuleRecord) -> ModuleRecord:
        with self._operation("save_module"):
            self.session.merge(BudgetModule(**module.model_dump()))
            self.session.commit()
        return module

    # periods

    def find_period(
        self, user_id: str, profile_id: str, month: int, year: int
    ) -> Optional[PeriodRecord]:
        with self._operation("find_period"):
            row = self.session.scalar(
                select(BudgetPeriod).where(
                    BudgetPeriod.user_id == user_id,
                    BudgetPeriod.profile_id == profile_id,
                    BudgetPeriod.budget_month == month,
                    BudgetPeriod.budget_year == year,
                )
            )
        return PeriodRecord.model_validate(row) if row else None

    def insert_period(self, period: PeriodRecord) -> PeriodRecord:
        try:
            self.session.add(BudgetPeriod(**period.model_dump()))
            self.session.commit()
            return period
        except IntegrityError as exc:
            # another writer took the (user, profile, month, year) slot first
            self.session.rollback()
            existing = self.find_period(
                period.user_id,
                period.profile_id,
                period.budget_month,
                period.budget_year,
            )
            if existing is None:
                logger.exception("store_failure: backend=relational operation=insert_period")
                raise StoreError("insert_period", str(exc)) from exc
            return existing
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("store_failure: backend=relational operation=insert_period")
            raise StoreError("insert_period", str(exc)) from exc

    def list_periods(self, user_id: str, profile_id: str) -> list[PeriodRecord]:
        with self._operation("list_periods"):
            rows = self.session.scalars(
                select(BudgetPeriod)
                .where(
                    BudgetPeriod.user_id == user_id,
                    BudgetPeriod.profile_id == profile_id,
                )
                .order_by(BudgetPeriod.budget_year, BudgetPeriod.budget_month)
            ).all()
        return [PeriodRecord.model_validate(row) for row in rows]

    def get_period(self, user_id: str, period_id: str) -> Optional[PeriodRecord]:
        with self._operation("get_period"):
            row = self.session.scalar(
                select(BudgetPeriod).where(
                    BudgetPeriod.id == period_id, BudgetPeriod.user_id == user_id
                )
            )
        return PeriodRecord.model_validate(row) if row else None

    # per-period categories

    def load(self, period: PeriodRecord, category: RecordCategory) -> list:
        record_type = RECORD_TYPES[category]
        with self._operation(f"load:{category.value}"):
            rows = self.session.scalars(self._period_query(period, category)).all()
            return [record_type.model_validate(row) for row in rows]

    def save(
        self, period: PeriodRecord, category: RecordCategory, records: Sequence[Record]
    ) -> None:
        model = ORM_TYPES[category]
        keep = {record.id for record in records}
        with self._operation(f"save:{category.value}"):
            rows = self.session.scalars(self._period_query(period, category)).all()
            stale = [row.id for row in rows if row.id not in keep]
            if stale:
                self.session.execute(delete(model).where(model.id.in_(stale)))
            for record in records:
                self.session.merge(model(**_row_values(record)))
            self.session.commit()

    def remove(self, period: PeriodRecord, category: RecordCategory) -> None:
        model = ORM_TYPES[category]
        with self._operation(f"remove:{category.value}"):
            rows = self.session.scalars(self._period_query(period, category)).all()
            if rows:
                self.session.execute(
                    delete(model).where(model.id.in_([row.id for row in rows]))
                )
            self.session.commit()

    def insert(self, period: PeriodRecord, category: RecordCategory, record: Record):
        model = ORM_TYPES[category]
        with self._operation(f"insert:{category.value}"):
            self.session.add(model(**_row_values(record)))
            self.session.commit()
        return record

    def update(self, period: PeriodRecord, category: RecordCategory, record: Record):
        model = ORM_TYPES[category]
        with self._operation(f"update:{category.value}"):
            row = self.session.get(model, record.id)
            if row is None:
                raise NotFoundError(f"{category.value} record {record.id} not found")
            for field, value in _row_values(record).items():
                setattr(row, field, value)
            self.session.commit()
        return record

    def delete(
        self, period: PeriodRecord, category: RecordCategory, record_id: str
    ) -> bool:
        model = ORM_TYPES[category]
        with self._operation(f"delete:{category.value}"):
            result = self.session.execute(delete(model).where(model.id == record_id))
            self.session.commit()
        return result.rowcount > 0

    # joined reads run as nested selects on the database side

    def load_config_tree(self, period: PeriodRecord) -> Optional[ConfigView]:
        stmt = (
            select(BudgetConfig)
            .options(
                selectinload(BudgetConfig.allocations).selectinload(
                    BudgetAllocation.module
                )
            )
            .where(BudgetConfig.budget_period_id == period.id)
            .execution_options(populate_existing=True)
        )
        with self._operation("load_config_tree"):
            row = self.session.scalar(stmt)
            return ConfigView.model_validate(row) if row else None

    def load_portfolio_tree(self, period: PeriodRecord) -> list[PortfolioView]:
        stmt = (
            select(InvestmentPortfolio)
            .options(
                selectinload(
                    InvestmentPortfolio.categories.and_(
                        InvestmentCategory.is_active.is_(True)
                    )
                ).selectinload(
                    InvestmentCategory.funds.and_(InvestmentFund.is_active.is_(True))
                )
            )
            .where(
                InvestmentPortfolio.budget_period_id == period.id,
                InvestmentPortfolio.is_active.is_(True),
            )
            .order_by(InvestmentPortfolio.created_at)
            .execution_options(populate_existing=True)
        )
        with self._operation("load_portfolio_tree"):
            rows = self.session.scalars(stmt).all()
            return [PortfolioView.model_validate(row) for row in rows]


def build_store(settings: Settings, session: Optional[Session] = None) -> BudgetStore:
    if settings.backend == "relational":
        if session is None:
            raise ValueError("The relational backend needs a database session")
        return RelationalStore(session)
    if settings.backend == "flat":
        return FlatStore(
            JsonFileKeyValueEngine(Path(settings.flat_store_path)),
            settings.storage_namespace,
        )
    raise ValueError(f"Unknown storage backend: {settings.backend}")
