import datetime as dt
from typing import Annotated, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

from models import AccountType, BudgetType, SplitType, SyncFrequency, TransactionType

MIN_SYNC_DAYS = 1
MAX_SYNC_DAYS = 90
DEFAULT_SYNC_DAYS = 7


class _TransactionBase(BaseModel):
    date: dt.date
    description: str = Field(..., max_length=200)
    amount_cents: int = Field(..., gt=0)

    @field_validator("description")
    @classmethod
    def _description_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Description is required")
        return value


class ExpenseIn(_TransactionBase):
    transaction_type: Literal["expense"]
    category_id: int
    split_type: SplitType
    paid_by_user_name: str = Field(..., min_length=1, max_length=100)
    excluded_from_monthly_budget: bool = False
    excluded_from_yearly_budget: bool = False


class IncomeIn(_TransactionBase):
    transaction_type: Literal["income"]
    paid_to_user_name: str = Field(..., min_length=1, max_length=100)


class SettlementIn(_TransactionBase):
    transaction_type: Literal["settlement"]
    paid_by_user_name: str = Field(..., min_length=1, max_length=100)
    paid_to_user_name: str = Field(..., min_length=1, max_length=100)

    @model_validator(mode="after")
    def _distinct_parties(self) -> "SettlementIn":
        if self.paid_by_user_name == self.paid_to_user_name:
            raise ValueError("Settlement payer and receiver must be different users")
        return self


class ReimbursementIn(_TransactionBase):
    transaction_type: Literal["reimbursement"]
    paid_to_user_name: str = Field(..., min_length=1, max_length=100)
    reimburses_transaction_id: Optional[int] = None


TransactionIn = Annotated[
    Union[ExpenseIn, IncomeIn, SettlementIn, ReimbursementIn],
    Field(discriminator="transaction_type"),
]
TRANSACTION_IN_ADAPTER: TypeAdapter = TypeAdapter(TransactionIn)


class PendingOverridesIn(BaseModel):
    """Fields a human may set on an import before (or while) approving it."""

    model_config = ConfigDict(extra="forbid")

    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, max_length=200)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    transaction_type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    paid_by_user_name: Optional[str] = Field(default=None, max_length=100)
    paid_to_user_name: Optional[str] = Field(default=None, max_length=100)
    split_type: Optional[SplitType] = None
    reimburses_transaction_id: Optional[int] = None
    excluded_from_monthly_budget: Optional[bool] = None
    excluded_from_yearly_budget: Optional[bool] = None


class SyncRequest(BaseModel):
    days_back: int = DEFAULT_SYNC_DAYS

    @field_validator("days_back", mode="before")
    @classmethod
    def _clamp_days_back(cls, value: object) -> int:
        try:
            days = int(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            days = DEFAULT_SYNC_DAYS
        if days == 0:
            days = DEFAULT_SYNC_DAYS
        return min(max(days, MIN_SYNC_DAYS), MAX_SYNC_DAYS)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    image_url: Optional[str] = Field(default=None, max_length=500)


class SectorIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    category_ids: list[int] = Field(default_factory=list)


class BudgetAmountIn(BaseModel):
    budget_type: BudgetType = BudgetType.absolute
    absolute_amount_cents: Optional[int] = Field(default=None, ge=0)
    user1_amount_cents: Optional[int] = Field(default=None, ge=0)
    user2_amount_cents: Optional[int] = Field(default=None, ge=0)

    def _require_amounts(self) -> None:
        if self.budget_type == BudgetType.absolute:
            if self.absolute_amount_cents is None:
                raise ValueError("Absolute budgets require an amount")
        elif self.user1_amount_cents is None or self.user2_amount_cents is None:
            raise ValueError("Split budgets require an amount for each user")

    @model_validator(mode="after")
    def _amounts_match_type(self) -> "BudgetAmountIn":
        self._require_amounts()
        return self

    @property
    def amount_cents(self) -> int:
        if self.budget_type == BudgetType.split:
            return (self.user1_amount_cents or 0) + (self.user2_amount_cents or 0)
        return self.absolute_amount_cents or 0


class SectorBudgetAmountIn(BudgetAmountIn):
    auto_rollup: bool = False

    # Replaces the base validator of the same name.
    @model_validator(mode="after")
    def _amounts_match_type(self) -> "SectorBudgetAmountIn":
        if not self.auto_rollup:
            self._require_amounts()
        return self


class CategoryBudgetIn(BudgetAmountIn):
    category_id: int
    year: int = Field(..., ge=1970, le=3000)
    month: Optional[int] = Field(default=None, ge=1, le=12)


class SectorBudgetIn(SectorBudgetAmountIn):
    sector_id: int
    year: int = Field(..., ge=1970, le=3000)
    month: Optional[int] = Field(default=None, ge=1, le=12)


class ConnectedAccountIn(BaseModel):
    account_name: str = Field(..., min_length=1, max_length=120)
    institution_name: Optional[str] = Field(default=None, max_length=120)
    institution_id: Optional[str] = Field(default=None, max_length=64)
    account_last_four: Optional[str] = Field(default=None, max_length=4)
    account_type: AccountType = AccountType.checking
    external_item_id: Optional[str] = None
    external_account_id: str = Field(..., min_length=1)
    access_token: str = Field(..., min_length=1)
    sync_frequency: SyncFrequency = SyncFrequency.manual


class LinkedAccountIn(BaseModel):
    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    mask: Optional[str] = Field(default=None, max_length=4)
    type: Optional[str] = None
    subtype: Optional[str] = None


class TokenExchangeIn(BaseModel):
    public_token: str = Field(..., min_length=1)
    institution_id: str = Field(..., min_length=1)
    institution_name: str = Field(..., min_length=1)
    accounts: list[LinkedAccountIn] = Field(..., min_length=1)


class LinkTokenIn(BaseModel):
    user_ref: str = Field(default="household", min_length=1, max_length=64)
