from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"
    refund = "refund"
    investment = "investment"
    savings = "savings"
    transfer = "transfer"


class SpendCategory(str, Enum):
    need = "need"
    want = "want"
    savings = "savings"
    investments = "investments"
    unplanned = "unplanned"


class PaymentType(str, Enum):
    cash = "cash"
    card = "card"
    upi = "upi"
    netbanking = "netbanking"
    cheque = "cheque"
    other = "other"


class TransactionStatus(str, Enum):
    active = "active"
    cancelled = "cancelled"
    refunded = "refunded"
    partial_refund = "partial_refund"


class AllocationType(str, Enum):
    percentage = "percentage"
    amount = "amount"


class InheritableComponent(str, Enum):
    budget_config = "budget_config"
    investment_portfolios = "investment_portfolios"


MONEY = Numeric(14, 2)
PERCENT = Numeric(6, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(200))
    password_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    profiles: Mapped[list["UserProfile"]] = relationship(
        "UserProfile", back_populates="user"
    )


class UserProfile(Base, TimestampMixin):
    __tablename__ = "user_profiles"
    __table_args__ = (
        UniqueConstraint("user_id", "profile_name", name="uq_profile_user_name"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    profile_name: Mapped[str] = mapped_column(String(100), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(200))
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="profiles")


class BudgetPeriod(Base, TimestampMixin):
    __tablename__ = "budget_periods"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "profile_id",
            "budget_month",
            "budget_year",
            name="uq_period_user_profile_month",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    profile_id: Mapped[str] = mapped_column(
        ForeignKey("user_profiles.id"), nullable=False
    )
    budget_month: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_year: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class BudgetModule(Base, TimestampMixin):
    __tablename__ = "budget_modules"
    __table_args__ = (
        UniqueConstraint("user_id", "module_name", name="uq_module_user_name"),
        Index("ix_budget_modules_user_order", "user_id", "sort_order"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    module_name: Mapped[str] = mapped_column(String(100), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    include_in_budget: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    is_system_module: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class BudgetConfig(Base, TimestampMixin):
    __tablename__ = "budget_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    profile_id: Mapped[str] = mapped_column(String(36), nullable=False)
    budget_period_id: Mapped[str] = mapped_column(
        ForeignKey("budget_periods.id"), nullable=False, unique=True
    )
    monthly_salary: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    budget_percentage: Mapped[Decimal] = mapped_column(PERCENT, nullable=False)
    total_budget_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    allocations: Mapped[list["BudgetAllocation"]] = relationship(
        "BudgetAllocation",
        back_populates="config",
        cascade="all, delete-orphan",
        order_by="BudgetAllocation.created_at",
    )

    __table_args__ = (
        CheckConstraint(
            "budget_percentage >= 0 AND budget_percentage <= 100",
            name="ck_budget_config_percentage_range",
        ),
    )


class BudgetAllocation(Base, TimestampMixin):
    __tablename__ = "budget_allocations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    budget_config_id: Mapped[str] = mapped_column(
        ForeignKey("budget_configs.id", ondelete="CASCADE"), nullable=False
    )
    budget_module_id: Mapped[str] = mapped_column(
        ForeignKey("budget_modules.id"), nullable=False
    )
    allocation_percentage: Mapped[Decimal] = mapped_column(PERCENT, nullable=False)
    allocated_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    config: Mapped["BudgetConfig"] = relationship(
        "BudgetConfig", back_populates="allocations"
    )
    module: Mapped["BudgetModule"] = relationship("BudgetModule")


class InvestmentPortfolio(Base, TimestampMixin):
    __tablename__ = "investment_portfolios"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    profile_id: Mapped[str] = mapped_column(String(36), nullable=False)
    budget_period_id: Mapped[str] = mapped_column(
        ForeignKey("budget_periods.id"), nullable=False
    )
    portfolio_name: Mapped[str] = mapped_column(String(200), nullable=False)
    allocation_type: Mapped[AllocationType] = mapped_column(
        SAEnum(AllocationType), nullable=False
    )
    allocation_value: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    allocated_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    invested_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    allow_direct_investment: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    categories: Mapped[list["InvestmentCategory"]] = relationship(
        "InvestmentCategory",
        back_populates="portfolio",
        cascade="all, delete-orphan",
        order_by="InvestmentCategory.created_at",
    )

    __table_args__ = (
        Index("ix_portfolios_period", "budget_period_id"),
    )


class InvestmentCategory(Base, TimestampMixin):
    __tablename__ = "investment_categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    portfolio_id: Mapped[str] = mapped_column(
        ForeignKey("investment_portfolios.id", ondelete="CASCADE"), nullable=False
    )
    category_name: Mapped[str] = mapped_column(String(200), nullable=False)
    allocation_type: Mapped[AllocationType] = mapped_column(
        SAEnum(AllocationType), nullable=False
    )
    allocation_value: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    allocated_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    invested_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    portfolio: Mapped["InvestmentPortfolio"] = relationship(
        "InvestmentPortfolio", back_populates="categories"
    )
    funds: Mapped[list["InvestmentFund"]] = relationship(
        "InvestmentFund",
        back_populates="category",
        cascade="all, delete-orphan",
        order_by="InvestmentFund.created_at",
    )


class InvestmentFund(Base, TimestampMixin):
    __tablename__ = "investment_funds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    category_id: Mapped[str] = mapped_column(
        ForeignKey("investment_categories.id", ondelete="CASCADE"), nullable=False
    )
    fund_name: Mapped[str] = mapped_column(String(200), nullable=False)
    allocated_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    invested_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped["InvestmentCategory"] = relationship(
        "InvestmentCategory", back_populates="funds"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    profile_id: Mapped[str] = mapped_column(String(36), nullable=False)
    budget_period_id: Mapped[str] = mapped_column(
        ForeignKey("budget_periods.id"), nullable=False
    )
    budget_month: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_year: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category: Mapped[SpendCategory] = mapped_column(
        SAEnum(SpendCategory), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(200))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    transaction_time: Mapped[Optional[str]] = mapped_column(String(8))
    payment_type: Mapped[Optional[PaymentType]] = mapped_column(SAEnum(PaymentType))
    spent_for: Mapped[Optional[str]] = mapped_column(String(200))
    tag: Mapped[Optional[str]] = mapped_column(String(100))
    portfolio_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("investment_portfolios.id", ondelete="SET NULL")
    )
    investment_category_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("investment_categories.id", ondelete="SET NULL")
    )
    fund_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("investment_funds.id", ondelete="SET NULL")
    )
    investment_type: Mapped[Optional[str]] = mapped_column(String(100))
    refund_for: Mapped[Optional[str]] = mapped_column(String(36))
    original_transaction_id: Mapped[Optional[str]] = mapped_column(String(36))
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), default=TransactionStatus.active, nullable=False
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_transactions_period_date", "budget_period_id", "transaction_date"),
        Index("ix_transactions_refund_for", "refund_for"),
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )


class ConfigurationInheritance(Base):
    __tablename__ = "configuration_inheritances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    profile_id: Mapped[str] = mapped_column(String(36), nullable=False)
    source_budget_period_id: Mapped[str] = mapped_column(String(36), nullable=False)
    target_budget_period_id: Mapped[str] = mapped_column(
        ForeignKey("budget_periods.id"), nullable=False
    )
    inherited_components: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
