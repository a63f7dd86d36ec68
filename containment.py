"""Sector ceilings for category budgets.

A sector with a manual budget (``auto_rollup`` off) caps the sum of its
categories' budgets for the same period. Auto-rollup sectors have no fixed
amount and therefore no ceiling.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping

from errors import ContainmentError


@dataclass(frozen=True)
class SectorCeiling:
    sector_id: int
    sector_name: str
    limit_cents: int
    auto_rollup: bool
    category_ids: frozenset[int]


def format_money(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def check_category_budget(
    category_id: int,
    proposed_cents: int,
    ceilings: Iterable[SectorCeiling],
    sibling_budgets: Mapping[int, int],
) -> None:
    """Raise ContainmentError if the proposed amount breaks any sector ceiling.

    ``sibling_budgets`` maps category id to its current budget for the same
    period; the entry for ``category_id`` itself is ignored so that edits
    replace rather than add to the old amount.
    """
    for ceiling in ceilings:
        if ceiling.auto_rollup or category_id not in ceiling.category_ids:
            continue
        sibling_total = sum(
            amount
            for cid, amount in sibling_budgets.items()
            if cid in ceiling.category_ids and cid != category_id
        )
        if sibling_total + proposed_cents > ceiling.limit_cents:
            raise ContainmentError(
                ceiling.sector_name,
                ceiling.limit_cents,
                f'Adding this budget would exceed the sector budget limit for '
                f'"{ceiling.sector_name}" ({format_money(ceiling.limit_cents)}). '
                "Reduce the budget amount or increase the sector budget.",
            )


def check_sector_budget(
    sector_name: str, proposed_cents: int, category_total_cents: int
) -> None:
    if proposed_cents < category_total_cents:
        raise ContainmentError(
            sector_name,
            proposed_cents,
            f"Sector budget amount ({format_money(proposed_cents)}) cannot be less "
            f"than the sum of category budgets ({format_money(category_total_cents)}). "
            "Increase the amount or enable auto-rollup.",
        )
