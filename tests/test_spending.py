from datetime import date, datetime
from decimal import Decimal
from types import SimpleNamespace

from spending import (
    BudgetStatus,
    SpendMode,
    budget_amount_cents,
    budget_status,
    category_spend,
    remaining_amount,
    remaining_percentage,
    sector_spend,
)


def expense(
    txn_id,
    amount_cents,
    on,
    category_id=1,
    split_type="splitEqually",
    monthly_excluded=False,
    yearly_excluded=False,
):
    return SimpleNamespace(
        id=txn_id,
        transaction_type="expense",
        amount_cents=amount_cents,
        date=on,
        category_id=category_id,
        split_type=split_type,
        reimburses_transaction_id=None,
        excluded_from_monthly_budget=monthly_excluded,
        excluded_from_yearly_budget=yearly_excluded,
    )


def reimbursement(txn_id, amount_cents, on, target_id):
    return SimpleNamespace(
        id=txn_id,
        transaction_type="reimbursement",
        amount_cents=amount_cents,
        date=on,
        category_id=None,
        split_type=None,
        reimburses_transaction_id=target_id,
        excluded_from_monthly_budget=False,
        excluded_from_yearly_budget=False,
    )


def test_reimbursement_nets_against_each_share() -> None:
    txns = [
        expense(1, 10_000, date(2025, 3, 10)),
        reimbursement(2, 4_000, date(2025, 3, 12), target_id=1),
    ]

    totals = category_spend(txns, 1, 2025, 3)

    assert totals.total_cents == Decimal(6_000)
    assert totals.user1_cents == Decimal(1_000)
    assert totals.user2_cents == Decimal(1_000)


def test_several_reimbursements_are_summed_before_netting() -> None:
    txns = [
        expense(1, 10_000, date(2025, 3, 10)),
        reimbursement(2, 2_500, date(2025, 3, 12), target_id=1),
        reimbursement(3, 1_500, date(2025, 3, 20), target_id=1),
    ]

    totals = category_spend(txns, 1, 2025, 3)

    assert totals.total_cents == Decimal(6_000)
    assert totals.user1_cents == Decimal(1_000)
    assert totals.user2_cents == Decimal(1_000)


def test_over_reimbursed_expense_contributes_zero() -> None:
    txns = [
        expense(1, 5_000, date(2025, 3, 10), split_type="user1_only"),
        reimbursement(2, 3_000, date(2025, 3, 11), target_id=1),
        reimbursement(3, 3_000, date(2025, 4, 2), target_id=1),
    ]

    totals = category_spend(txns, 1, 2025, 3)

    assert totals.total_cents == 0
    assert totals.user1_cents == 0
    assert totals.user2_cents == 0


def test_reimbursement_date_does_not_matter() -> None:
    txns = [
        expense(1, 8_000, date(2025, 1, 31)),
        reimbursement(2, 2_000, date(2025, 2, 15), target_id=1),
    ]

    assert category_spend(txns, 1, 2025, 1).total_cents == Decimal(6_000)
    assert category_spend(txns, 1, 2025, 2).total_cents == 0


def test_month_window_is_inclusive_of_last_day() -> None:
    txns = [
        expense(1, 1_000, date(2025, 1, 31)),
        expense(2, 2_000, datetime(2025, 1, 31, 23, 59)),
        expense(3, 4_000, date(2025, 2, 1)),
        expense(4, 8_000, date(2024, 12, 31)),
    ]

    assert category_spend(txns, 1, 2025, 1).total_cents == Decimal(3_000)


def test_leap_february_window() -> None:
    txns = [expense(1, 1_000, date(2024, 2, 29))]

    assert category_spend(txns, 1, 2024, 2).total_cents == Decimal(1_000)


def test_exclusion_flags_follow_mode() -> None:
    txns = [
        expense(1, 1_000, date(2025, 5, 3), monthly_excluded=True),
        expense(2, 2_000, date(2025, 5, 4), yearly_excluded=True),
    ]

    assert category_spend(txns, 1, 2025, 5, SpendMode.monthly).total_cents == Decimal(2_000)
    assert category_spend(txns, 1, 2025, 5, SpendMode.yearly).total_cents == Decimal(1_000)


def test_yearly_mode_runs_january_through_selected_month() -> None:
    txns = [
        expense(1, 1_000, date(2025, 1, 1)),
        expense(2, 2_000, date(2025, 6, 30)),
        expense(3, 4_000, date(2025, 7, 1)),
        expense(4, 8_000, date(2024, 12, 31)),
    ]

    assert category_spend(txns, 1, 2025, 6, SpendMode.yearly).total_cents == Decimal(3_000)


def test_previous_months_is_empty_in_january() -> None:
    txns = [
        expense(1, 1_000, date(2025, 1, 5)),
        expense(2, 2_000, date(2024, 12, 5)),
    ]

    totals = category_spend(txns, 1, 2025, 1, SpendMode.previous_months)

    assert totals.total_cents == 0


def test_previous_months_stops_before_selected_month() -> None:
    txns = [
        expense(1, 1_000, date(2025, 1, 5)),
        expense(2, 2_000, date(2025, 2, 28)),
        expense(3, 4_000, date(2025, 3, 1)),
    ]

    totals = category_spend(txns, 1, 2025, 3, SpendMode.previous_months)

    assert totals.total_cents == Decimal(3_000)


def test_sector_spend_sums_member_categories_only() -> None:
    txns = [
        expense(1, 1_000, date(2025, 5, 3), category_id=1),
        expense(2, 2_000, date(2025, 5, 3), category_id=2),
        expense(3, 4_000, date(2025, 5, 3), category_id=3),
    ]

    totals = sector_spend(txns, frozenset({1, 2}), 2025, 5)

    assert totals.total_cents == Decimal(3_000)


def test_split_shares() -> None:
    txns = [
        expense(1, 1_001, date(2025, 5, 3), split_type="splitEqually"),
        expense(2, 2_000, date(2025, 5, 3), split_type="user2_only"),
    ]

    totals = category_spend(txns, 1, 2025, 5)

    assert totals.user1_cents == Decimal("500.5")
    assert totals.user2_cents == Decimal("2500.5")


def test_non_expense_transactions_are_ignored() -> None:
    income = expense(1, 9_000, date(2025, 5, 3))
    income.transaction_type = "income"

    assert category_spend([income], 1, 2025, 5).total_cents == 0


def test_remaining_percentage_rounds_to_two_places() -> None:
    assert remaining_percentage(30_000, 10_000) == Decimal("66.67")
    assert remaining_percentage(10_000, 15_000) == Decimal("-50")
    assert remaining_percentage(0, 1_000) is None
    assert remaining_amount(0, 1_000) is None
    assert remaining_amount(10_000, 2_500) == Decimal(7_500)


def test_budget_status_thresholds() -> None:
    assert budget_status(0, 100, 75) == BudgetStatus.none
    assert budget_status(10_000, 7_400, 75) == BudgetStatus.ok
    assert budget_status(10_000, 7_500, 75) == BudgetStatus.warning
    assert budget_status(10_000, 10_000, 75) == BudgetStatus.warning
    assert budget_status(10_000, 10_001, 75) == BudgetStatus.over


def test_budget_amount_for_split_budget() -> None:
    split = SimpleNamespace(
        budget_type="split",
        absolute_amount_cents=None,
        user1_amount_cents=20_000,
        user2_amount_cents=15_000,
    )
    absolute = SimpleNamespace(
        budget_type="absolute",
        absolute_amount_cents=50_000,
        user1_amount_cents=None,
        user2_amount_cents=None,
    )

    assert budget_amount_cents(split) == 35_000
    assert budget_amount_cents(absolute) == 50_000
    assert budget_amount_cents(None) == 0
