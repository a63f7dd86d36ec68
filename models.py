from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"
    settlement = "settlement"
    reimbursement = "reimbursement"


class SplitType(str, Enum):
    split_equally = "splitEqually"
    user1_only = "user1_only"
    user2_only = "user2_only"


SPLIT_TYPE_ENUM = SAEnum(
    SplitType,
    name="splittype",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class PendingStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    edited = "edited"


OPEN_STATUSES = (PendingStatus.pending, PendingStatus.edited)
PROCESSED_STATUSES = (PendingStatus.approved, PendingStatus.rejected)


class BudgetType(str, Enum):
    absolute = "absolute"
    split = "split"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit_card = "credit_card"
    investment = "investment"


class SyncFrequency(str, Enum):
    manual = "manual"
    daily = "daily"


SHARED_PAYER = "Shared"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


sector_categories = Table(
    "sector_categories",
    Base.metadata,
    Column(
        "sector_id",
        Integer,
        ForeignKey("sectors.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "category_id",
        Integer,
        ForeignKey("categories.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    image_url: Mapped[Optional[str]] = mapped_column(String(500))

    sectors: Mapped[list["Sector"]] = relationship(
        "Sector", secondary=sector_categories, back_populates="categories"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )


class Sector(Base, TimestampMixin):
    __tablename__ = "sectors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    categories: Mapped[list["Category"]] = relationship(
        "Category", secondary=sector_categories, back_populates="sectors"
    )

    @property
    def category_ids(self) -> frozenset[int]:
        return frozenset(c.id for c in self.categories)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    paid_by_user_name: Mapped[Optional[str]] = mapped_column(String(100))
    paid_to_user_name: Mapped[Optional[str]] = mapped_column(String(100))
    split_type: Mapped[Optional[SplitType]] = mapped_column(SPLIT_TYPE_ENUM)
    reimburses_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    excluded_from_monthly_budget: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    excluded_from_yearly_budget: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_category_date", "category_id", "date"),
        Index("ix_transactions_reimburses", "reimburses_transaction_id"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class ConnectedAccount(Base, TimestampMixin):
    __tablename__ = "connected_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_name: Mapped[str] = mapped_column(String(120), nullable=False)
    institution_name: Mapped[Optional[str]] = mapped_column(String(120))
    institution_id: Mapped[Optional[str]] = mapped_column(String(64))
    account_last_four: Mapped[Optional[str]] = mapped_column(String(4))
    account_type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.checking
    )
    provider: Mapped[str] = mapped_column(String(40), nullable=False, default="plaid")
    external_item_id: Mapped[Optional[str]] = mapped_column(String(120))
    external_account_id: Mapped[str] = mapped_column(String(120), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sync_frequency: Mapped[SyncFrequency] = mapped_column(
        SAEnum(SyncFrequency), nullable=False, default=SyncFrequency.manual
    )
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    pending_transactions: Mapped[list["PendingTransaction"]] = relationship(
        "PendingTransaction", back_populates="connected_account"
    )


class PendingTransaction(Base, TimestampMixin):
    __tablename__ = "pending_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    connected_account_id: Mapped[int] = mapped_column(
        ForeignKey("connected_accounts.id", ondelete="CASCADE"), nullable=False
    )
    external_transaction_id: Mapped[str] = mapped_column(String(120), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    status: Mapped[PendingStatus] = mapped_column(
        SAEnum(PendingStatus), nullable=False, default=PendingStatus.pending
    )
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )

    # Filled in by a human before approval.
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    paid_by_user_name: Mapped[Optional[str]] = mapped_column(String(100))
    paid_to_user_name: Mapped[Optional[str]] = mapped_column(String(100))
    split_type: Mapped[Optional[SplitType]] = mapped_column(SPLIT_TYPE_ENUM)
    reimburses_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )

    raw_data: Mapped[Optional[dict]] = mapped_column(JSON)

    connected_account: Mapped["ConnectedAccount"] = relationship(
        "ConnectedAccount", back_populates="pending_transactions"
    )
    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "external_transaction_id", name="uq_pending_external_transaction"
        ),
        Index("ix_pending_status_date", "status", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_pending_amount_positive"),
    )


class BudgetAmountMixin:
    budget_type: Mapped[BudgetType] = mapped_column(
        SAEnum(BudgetType), nullable=False, default=BudgetType.absolute
    )
    absolute_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    user1_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    user2_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)


class CategoryBudget(Base, TimestampMixin, BudgetAmountMixin):
    __tablename__ = "category_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "category_id", "year", "month", name="uq_category_budget_period"
        ),
        Index("ix_category_budget_period", "year", "month"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_category_budget_month"),
    )


class SectorBudget(Base, TimestampMixin, BudgetAmountMixin):
    __tablename__ = "sector_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sector_id: Mapped[int] = mapped_column(
        ForeignKey("sectors.id", ondelete="CASCADE"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    auto_rollup: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    sector: Mapped["Sector"] = relationship("Sector")

    __table_args__ = (
        UniqueConstraint("sector_id", "year", "month", name="uq_sector_budget_period"),
        Index("ix_sector_budget_period", "year", "month"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_sector_budget_month"),
    )


class YearlyCategoryBudget(Base, TimestampMixin, BudgetAmountMixin):
    __tablename__ = "yearly_category_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint("category_id", "year", name="uq_yearly_category_budget"),
    )


class YearlySectorBudget(Base, TimestampMixin, BudgetAmountMixin):
    __tablename__ = "yearly_sector_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sector_id: Mapped[int] = mapped_column(
        ForeignKey("sectors.id", ondelete="CASCADE"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    auto_rollup: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    sector: Mapped["Sector"] = relationship("Sector")

    __table_args__ = (
        UniqueConstraint("sector_id", "year", name="uq_yearly_sector_budget"),
    )
