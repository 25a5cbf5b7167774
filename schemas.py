from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Optional
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from models import (
    AllocationType,
    InheritableComponent,
    PaymentType,
    SpendCategory,
    TransactionStatus,
    TransactionType,
    utcnow,
)

CENT = Decimal("0.01")


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def new_id() -> str:
    return str(uuid4())


Money = Annotated[Decimal, AfterValidator(quantize)]
Percent = Annotated[Decimal, Field(ge=0, le=100), AfterValidator(quantize)]


# Records: one per persisted entity. Every defaultable field is listed with
# its default so a partial or misspelt payload fails instead of being stored.


class Record(BaseModel):
    model_config = ConfigDict(extra="forbid", from_attributes=True)


class UserRecord(Record):
    id: str = Field(default_factory=new_id)
    email: str
    full_name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ProfileRecord(Record):
    id: str = Field(default_factory=new_id)
    user_id: str
    profile_name: str
    display_name: Optional[str] = None
    is_primary: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PeriodRecord(Record):
    id: str = Field(default_factory=new_id)
    user_id: str
    profile_id: str
    budget_month: int
    budget_year: int
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ModuleRecord(Record):
    id: str = Field(default_factory=new_id)
    user_id: str
    module_name: str
    display_name: str
    include_in_budget: bool = True
    is_system_module: bool = False
    is_active: bool = True
    sort_order: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ConfigRecord(Record):
    id: str = Field(default_factory=new_id)
    user_id: str
    profile_id: str
    budget_period_id: str
    monthly_salary: Money = Decimal("0")
    budget_percentage: Percent = Decimal("100")
    total_budget_amount: Money = Decimal("0")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AllocationRecord(Record):
    id: str = Field(default_factory=new_id)
    budget_config_id: str
    budget_module_id: str
    allocation_percentage: Percent = Decimal("0")
    allocated_amount: Money = Decimal("0")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PortfolioRecord(Record):
    id: str = Field(default_factory=new_id)
    user_id: str
    profile_id: str
    budget_period_id: str
    portfolio_name: str
    allocation_type: AllocationType = AllocationType.percentage
    allocation_value: Money = Decimal("0")
    allocated_amount: Money = Decimal("0")
    invested_amount: Money = Decimal("0")
    allow_direct_investment: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class InvestmentCategoryRecord(Record):
    id: str = Field(default_factory=new_id)
    portfolio_id: str
    category_name: str
    allocation_type: AllocationType = AllocationType.percentage
    allocation_value: Money = Decimal("0")
    allocated_amount: Money = Decimal("0")
    invested_amount: Money = Decimal("0")
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class FundRecord(Record):
    id: str = Field(default_factory=new_id)
    category_id: str
    fund_name: str
    allocated_amount: Money = Decimal("0")
    invested_amount: Money = Decimal("0")
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TransactionRecord(Record):
    id: str = Field(default_factory=new_id)
    user_id: str
    profile_id: str
    budget_period_id: str
    budget_month: int
    budget_year: int
    type: TransactionType
    category: SpendCategory
    amount: Money
    description: Optional[str] = None
    notes: Optional[str] = None
    transaction_date: date = Field(default_factory=date.today)
    transaction_time: Optional[str] = None
    payment_type: Optional[PaymentType] = None
    spent_for: Optional[str] = None
    tag: Optional[str] = None
    portfolio_id: Optional[str] = None
    investment_category_id: Optional[str] = None
    fund_id: Optional[str] = None
    investment_type: Optional[str] = None
    refund_for: Optional[str] = None
    original_transaction_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.active
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class InheritanceRecord(Record):
    id: str = Field(default_factory=new_id)
    user_id: str
    profile_id: str
    source_budget_period_id: str
    target_budget_period_id: str
    inherited_components: list[InheritableComponent]
    created_at: datetime = Field(default_factory=utcnow)


# Snapshot read model


class AllocationView(AllocationRecord):
    module: Optional[ModuleRecord] = None


class ConfigView(ConfigRecord):
    allocations: list[AllocationView] = Field(default_factory=list)


class InvestmentCategoryView(InvestmentCategoryRecord):
    funds: list[FundRecord] = Field(default_factory=list)


class PortfolioView(PortfolioRecord):
    categories: list[InvestmentCategoryView] = Field(default_factory=list)


class BudgetSnapshot(BaseModel):
    profile: ProfileRecord
    period: PeriodRecord
    config: Optional[ConfigView] = None
    modules: list[ModuleRecord] = Field(default_factory=list)
    portfolios: list[PortfolioView] = Field(default_factory=list)
    transactions: list[TransactionRecord] = Field(default_factory=list)


# Inputs


class CredentialsIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=6, max_length=128)
    full_name: Optional[str] = Field(default=None, max_length=200)


class ProfileIn(BaseModel):
    profile_name: str = Field(..., min_length=1, max_length=100)
    display_name: Optional[str] = Field(default=None, max_length=200)
    is_primary: bool = False


class ModuleIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    module_name: str = Field(..., min_length=1, max_length=100)
    display_name: str = Field(..., min_length=1, max_length=200)
    include_in_budget: bool = True


class AllocationIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    module_id: str
    percentage: Percent


class BudgetConfigIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    monthly_salary: Money = Field(..., ge=0)
    budget_percentage: Percent = Decimal("100")
    allocations: list[AllocationIn] = Field(default_factory=list)


class PortfolioIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    portfolio_name: str = Field(..., min_length=1, max_length=200)
    allocation_type: AllocationType = AllocationType.percentage
    allocation_value: Money = Field(default=Decimal("0"), ge=0)
    allocated_amount: Optional[Money] = Field(default=None, ge=0)
    invested_amount: Money = Field(default=Decimal("0"), ge=0)
    allow_direct_investment: bool = False
    is_active: bool = True


class PortfolioPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    portfolio_name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    allocation_type: Optional[AllocationType] = None
    allocation_value: Optional[Money] = Field(default=None, ge=0)
    allocated_amount: Optional[Money] = Field(default=None, ge=0)
    invested_amount: Optional[Money] = Field(default=None, ge=0)
    allow_direct_investment: Optional[bool] = None
    is_active: Optional[bool] = None


class InvestmentCategoryIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category_name: str = Field(..., min_length=1, max_length=200)
    allocation_type: AllocationType = AllocationType.percentage
    allocation_value: Money = Field(default=Decimal("0"), ge=0)
    allocated_amount: Optional[Money] = Field(default=None, ge=0)
    invested_amount: Money = Field(default=Decimal("0"), ge=0)


class FundIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    fund_name: str = Field(..., min_length=1, max_length=200)
    allocated_amount: Money = Field(default=Decimal("0"), ge=0)
    invested_amount: Money = Field(default=Decimal("0"), ge=0)


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: TransactionType
    category: SpendCategory
    amount: Money = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = None
    transaction_date: Optional[date] = None
    transaction_time: Optional[str] = Field(
        default=None, pattern=r"^\d{2}:\d{2}(:\d{2})?$"
    )
    payment_type: Optional[PaymentType] = None
    spent_for: Optional[str] = Field(default=None, max_length=200)
    tag: Optional[str] = Field(default=None, max_length=100)
    portfolio_id: Optional[str] = None
    investment_category_id: Optional[str] = None
    fund_id: Optional[str] = None
    investment_type: Optional[str] = Field(default=None, max_length=100)
    original_transaction_id: Optional[str] = None
    status: Optional[TransactionStatus] = None


class TransactionPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Optional[TransactionType] = None
    category: Optional[SpendCategory] = None
    amount: Optional[Money] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = None
    transaction_date: Optional[date] = None
    transaction_time: Optional[str] = Field(
        default=None, pattern=r"^\d{2}:\d{2}(:\d{2})?$"
    )
    payment_type: Optional[PaymentType] = None
    spent_for: Optional[str] = Field(default=None, max_length=200)
    tag: Optional[str] = Field(default=None, max_length=100)
    portfolio_id: Optional[str] = None
    investment_category_id: Optional[str] = None
    fund_id: Optional[str] = None
    investment_type: Optional[str] = Field(default=None, max_length=100)
    status: Optional[TransactionStatus] = None


class RefundIn(BaseModel):
    amount: Money = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=180)


class InheritanceIn(BaseModel):
    source_period_id: str
    components: list[InheritableComponent] = Field(..., min_length=1)
