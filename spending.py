"""Spend aggregation over a snapshot of confirmed transactions.

Everything here is a pure function of its inputs: callers pass in whatever
transactions they loaded (ORM rows or any object with the same attributes)
and get back totals. Nothing is cached, so results are always as fresh as
the snapshot.

An expense contributes ``max(0, share - reimbursed)`` where ``reimbursed``
is the sum of every reimbursement pointing at it, whatever the
reimbursement's own date. The full reimbursed amount is taken off each
user's share, so an equally split expense of 100 with 40 reimbursed yields
60 in total but 10 for each user.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from enum import Enum
from typing import Callable, Iterable, Optional

from models import BudgetType, SplitType, TransactionType
from periods import (
    Period,
    month_period,
    previous_months_period,
    year_to_month_period,
)


class SpendMode(str, Enum):
    monthly = "monthly"
    yearly = "yearly"
    previous_months = "previous_months"


class BudgetStatus(str, Enum):
    none = "none"
    ok = "ok"
    warning = "warning"
    over = "over"


@dataclass(frozen=True)
class SpendTotals:
    total_cents: Decimal
    user1_cents: Decimal
    user2_cents: Decimal

    def as_dict(self) -> dict[str, float]:
        return {
            "total": float(self.total_cents / 100),
            "user1": float(self.user1_cents / 100),
            "user2": float(self.user2_cents / 100),
        }


Weight = Callable[[object], Decimal]

ZERO = Decimal(0)


def _coerce_type(value) -> Optional[TransactionType]:
    try:
        return TransactionType(value)
    except ValueError:
        return None


def _coerce_split(value) -> Optional[SplitType]:
    if value is None:
        return None
    try:
        return SplitType(value)
    except ValueError:
        return None


def full_weight(txn) -> Decimal:
    return Decimal(txn.amount_cents)


def _user_weight(sole_owner: SplitType) -> Weight:
    def weight(txn) -> Decimal:
        split = _coerce_split(txn.split_type)
        if split == sole_owner:
            return Decimal(txn.amount_cents)
        if split == SplitType.split_equally:
            return Decimal(txn.amount_cents) / 2
        return ZERO

    return weight


user1_weight = _user_weight(SplitType.user1_only)
user2_weight = _user_weight(SplitType.user2_only)


def reimbursed_totals(transactions: Iterable) -> dict[int, int]:
    totals: dict[int, int] = {}
    for txn in transactions:
        if _coerce_type(txn.transaction_type) != TransactionType.reimbursement:
            continue
        target = txn.reimburses_transaction_id
        if target is None:
            continue
        totals[target] = totals.get(target, 0) + txn.amount_cents
    return totals


def period_for(mode: SpendMode, year: int, month: int) -> Period:
    if mode == SpendMode.monthly:
        return month_period(year, month)
    if mode == SpendMode.yearly:
        return year_to_month_period(year, month)
    return previous_months_period(year, month)


def exclusion_flag_for(mode: SpendMode) -> str:
    if mode == SpendMode.monthly:
        return "excluded_from_monthly_budget"
    return "excluded_from_yearly_budget"


def net_spend(
    transactions: Iterable,
    category_ids: Iterable[int],
    period: Period,
    exclusion_flag: str,
    weight: Weight = full_weight,
    *,
    reimbursed: Optional[dict[int, int]] = None,
) -> Decimal:
    transactions = list(transactions)
    scope = set(category_ids)
    if reimbursed is None:
        reimbursed = reimbursed_totals(transactions)

    total = ZERO
    for txn in transactions:
        if _coerce_type(txn.transaction_type) != TransactionType.expense:
            continue
        if txn.category_id not in scope:
            continue
        if getattr(txn, exclusion_flag, False):
            continue
        if not period.contains(txn.date):
            continue
        share = weight(txn) - reimbursed.get(txn.id, 0)
        total += max(ZERO, share)
    return total


def scope_spend(
    transactions: Iterable,
    category_ids: Iterable[int],
    year: int,
    month: int,
    mode: SpendMode = SpendMode.monthly,
) -> SpendTotals:
    transactions = list(transactions)
    scope = frozenset(category_ids)
    period = period_for(mode, year, month)
    flag = exclusion_flag_for(mode)
    reimbursed = reimbursed_totals(transactions)
    return SpendTotals(
        total_cents=net_spend(
            transactions, scope, period, flag, full_weight, reimbursed=reimbursed
        ),
        user1_cents=net_spend(
            transactions, scope, period, flag, user1_weight, reimbursed=reimbursed
        ),
        user2_cents=net_spend(
            transactions, scope, period, flag, user2_weight, reimbursed=reimbursed
        ),
    )


def category_spend(
    transactions: Iterable,
    category_id: int,
    year: int,
    month: int,
    mode: SpendMode = SpendMode.monthly,
) -> SpendTotals:
    return scope_spend(transactions, [category_id], year, month, mode)


def sector_spend(
    transactions: Iterable,
    category_ids: Iterable[int],
    year: int,
    month: int,
    mode: SpendMode = SpendMode.monthly,
) -> SpendTotals:
    return scope_spend(transactions, category_ids, year, month, mode)


def budget_amount_cents(budget) -> int:
    if budget is None:
        return 0
    if budget.budget_type == BudgetType.split:
        return (budget.user1_amount_cents or 0) + (budget.user2_amount_cents or 0)
    return budget.absolute_amount_cents or 0


def _round_half_up(value: Decimal) -> Decimal:
    return (value * 100 + Decimal("0.5")).to_integral_value(rounding=ROUND_FLOOR) / 100


def remaining_percentage(budget_cents, spent_cents) -> Optional[Decimal]:
    if budget_cents <= 0:
        return None
    budget = Decimal(budget_cents)
    return _round_half_up((budget - Decimal(spent_cents)) / budget * 100)


def remaining_amount(budget_cents, spent_cents) -> Optional[Decimal]:
    if budget_cents <= 0:
        return None
    return Decimal(budget_cents) - Decimal(spent_cents)


def budget_status(budget_cents, spent_cents, warning_threshold: int) -> BudgetStatus:
    if budget_cents <= 0:
        return BudgetStatus.none
    used = Decimal(spent_cents) / Decimal(budget_cents) * 100
    if used > 100:
        return BudgetStatus.over
    if used >= warning_threshold:
        return BudgetStatus.warning
    return BudgetStatus.ok
