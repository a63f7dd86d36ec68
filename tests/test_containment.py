import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from containment import SectorCeiling, check_category_budget, check_sector_budget
from database import Base
from errors import ContainmentError, ValidationError
from models import BudgetType, Category, CategoryBudget, Sector, SectorBudget
from schemas import (
    BudgetAmountIn,
    CategoryBudgetIn,
    SectorBudgetAmountIn,
    SectorBudgetIn,
    SectorIn,
)
from services import BudgetService, SectorService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed_household(session):
    groceries = Category(name="Groceries")
    dining = Category(name="Dining")
    rent = Category(name="Rent")
    session.add_all([groceries, dining, rent])
    session.flush()
    food = Sector(name="Food", categories=[groceries, dining])
    session.add(food)
    session.commit()
    return groceries, dining, rent, food


def test_category_budget_rejected_when_sector_would_overflow() -> None:
    ceiling = SectorCeiling(
        sector_id=1,
        sector_name="Food",
        limit_cents=50_000,
        auto_rollup=False,
        category_ids=frozenset({1, 2}),
    )

    with pytest.raises(ContainmentError) as excinfo:
        check_category_budget(2, 25_000, [ceiling], {1: 30_000})

    message = str(excinfo.value)
    assert 'sector budget limit for "Food" ($500.00)' in message
    assert excinfo.value.sector_name == "Food"

    check_category_budget(2, 20_000, [ceiling], {1: 30_000})


def test_category_edit_replaces_its_own_amount() -> None:
    ceiling = SectorCeiling(1, "Food", 50_000, False, frozenset({1, 2}))

    check_category_budget(1, 50_000, [ceiling], {1: 30_000})


def test_auto_rollup_and_unrelated_sectors_are_skipped() -> None:
    rollup = SectorCeiling(1, "Food", 0, True, frozenset({1}))
    other = SectorCeiling(2, "Home", 100, False, frozenset({3}))

    check_category_budget(1, 1_000_000, [rollup, other], {})


def test_sector_amount_cannot_drop_below_category_total() -> None:
    with pytest.raises(ContainmentError):
        check_sector_budget("Food", 40_000, 45_000)
    check_sector_budget("Food", 45_000, 45_000)


def test_budget_service_enforces_sector_ceiling() -> None:
    session = make_session()
    groceries, dining, rent, food = seed_household(session)
    budgets = BudgetService(session)

    budgets.create_sector_budget(
        SectorBudgetIn(sector_id=food.id, year=2025, month=3, absolute_amount_cents=50_000)
    )
    budgets.create_category_budget(
        CategoryBudgetIn(
            category_id=groceries.id, year=2025, month=3, absolute_amount_cents=30_000
        )
    )

    with pytest.raises(ContainmentError):
        budgets.create_category_budget(
            CategoryBudgetIn(
                category_id=dining.id, year=2025, month=3, absolute_amount_cents=25_000
            )
        )

    dining_budget = budgets.create_category_budget(
        CategoryBudgetIn(
            category_id=dining.id,
            year=2025,
            month=3,
            budget_type=BudgetType.split,
            user1_amount_cents=10_000,
            user2_amount_cents=10_000,
        )
    )
    assert dining_budget.id is not None

    # Rent is outside the sector; no ceiling applies.
    budgets.create_category_budget(
        CategoryBudgetIn(
            category_id=rent.id, year=2025, month=3, absolute_amount_cents=900_000
        )
    )

    # A different month has no sector budget yet.
    budgets.create_category_budget(
        CategoryBudgetIn(
            category_id=dining.id, year=2025, month=4, absolute_amount_cents=90_000
        )
    )

    assert budgets.containment_violations(2025, 3) == []


def test_update_checks_ceiling_without_double_counting() -> None:
    session = make_session()
    groceries, dining, _, food = seed_household(session)
    budgets = BudgetService(session)
    budgets.create_sector_budget(
        SectorBudgetIn(sector_id=food.id, year=2025, month=3, absolute_amount_cents=50_000)
    )
    row = budgets.create_category_budget(
        CategoryBudgetIn(
            category_id=groceries.id, year=2025, month=3, absolute_amount_cents=30_000
        )
    )

    updated = budgets.update_category_budget(
        row.id, BudgetAmountIn(absolute_amount_cents=50_000)
    )
    assert updated.absolute_amount_cents == 50_000

    with pytest.raises(ContainmentError):
        budgets.update_category_budget(row.id, BudgetAmountIn(absolute_amount_cents=50_001))


def test_auto_rollup_sector_is_exempt_and_tracks_category_total() -> None:
    session = make_session()
    groceries, dining, _, food = seed_household(session)
    budgets = BudgetService(session)
    budgets.create_category_budget(
        CategoryBudgetIn(
            category_id=groceries.id, year=2025, month=3, absolute_amount_cents=30_000
        )
    )
    sector_row = budgets.create_sector_budget(
        SectorBudgetIn(sector_id=food.id, year=2025, month=3, auto_rollup=True)
    )
    assert sector_row.absolute_amount_cents == 30_000

    budgets.create_category_budget(
        CategoryBudgetIn(
            category_id=dining.id, year=2025, month=3, absolute_amount_cents=70_000
        )
    )

    summary = budgets.monthly_summary(2025, 3)
    food_entry = next(s for s in summary["sectors"] if s["sector_id"] == food.id)
    assert food_entry["budget_cents"] == 100_000
    assert food_entry["category_budgets_total_cents"] == 100_000


def test_manual_sector_budget_cannot_undercut_categories() -> None:
    session = make_session()
    groceries, dining, _, food = seed_household(session)
    budgets = BudgetService(session)
    budgets.create_category_budget(
        CategoryBudgetIn(
            category_id=groceries.id, year=2025, month=3, absolute_amount_cents=30_000
        )
    )
    budgets.create_category_budget(
        CategoryBudgetIn(
            category_id=dining.id, year=2025, month=3, absolute_amount_cents=15_000
        )
    )

    with pytest.raises(ContainmentError):
        budgets.create_sector_budget(
            SectorBudgetIn(
                sector_id=food.id, year=2025, month=3, absolute_amount_cents=40_000
            )
        )

    row = budgets.create_sector_budget(
        SectorBudgetIn(sector_id=food.id, year=2025, month=3, auto_rollup=True)
    )
    with pytest.raises(ContainmentError):
        budgets.update_sector_budget(
            row.id, SectorBudgetAmountIn(absolute_amount_cents=44_999)
        )


def test_duplicate_budget_for_period_rejected() -> None:
    session = make_session()
    groceries, _, _, _ = seed_household(session)
    budgets = BudgetService(session)
    data = CategoryBudgetIn(
        category_id=groceries.id, year=2025, month=3, absolute_amount_cents=1_000
    )
    budgets.create_category_budget(data)

    with pytest.raises(ValidationError):
        budgets.create_category_budget(data)


def test_yearly_budgets_have_their_own_ceiling() -> None:
    session = make_session()
    groceries, dining, _, food = seed_household(session)
    budgets = BudgetService(session)
    budgets.create_sector_budget(
        SectorBudgetIn(sector_id=food.id, year=2025, absolute_amount_cents=600_000)
    )
    budgets.create_category_budget(
        CategoryBudgetIn(category_id=groceries.id, year=2025, absolute_amount_cents=400_000)
    )
    # Monthly rows are unaffected by the yearly sector amount.
    budgets.create_category_budget(
        CategoryBudgetIn(
            category_id=dining.id, year=2025, month=1, absolute_amount_cents=900_000
        )
    )

    with pytest.raises(ContainmentError):
        budgets.create_category_budget(
            CategoryBudgetIn(
                category_id=dining.id, year=2025, absolute_amount_cents=200_001
            )
        )


def test_sql_violation_check_agrees_with_stored_rows() -> None:
    session = make_session()
    groceries, dining, rent, food = seed_household(session)
    # Rows written directly, bypassing the service-level check.
    session.add_all(
        [
            SectorBudget(
                sector_id=food.id,
                year=2025,
                month=3,
                budget_type=BudgetType.absolute,
                absolute_amount_cents=50_000,
            ),
            CategoryBudget(
                category_id=groceries.id,
                year=2025,
                month=3,
                budget_type=BudgetType.absolute,
                absolute_amount_cents=30_000,
            ),
            CategoryBudget(
                category_id=dining.id,
                year=2025,
                month=3,
                budget_type=BudgetType.split,
                user1_amount_cents=15_000,
                user2_amount_cents=10_000,
            ),
            CategoryBudget(
                category_id=rent.id,
                year=2025,
                month=3,
                budget_type=BudgetType.absolute,
                absolute_amount_cents=100_000,
            ),
        ]
    )
    session.commit()

    violations = BudgetService(session).containment_violations(2025, 3)

    assert violations == [(food.id, 50_000, 55_000)]
    assert BudgetService(session).containment_violations(2025, 4) == []


def test_membership_change_cannot_push_manual_sector_over_limit() -> None:
    session = make_session()
    groceries, dining, rent, food = seed_household(session)
    budgets = BudgetService(session)
    budgets.create_sector_budget(
        SectorBudgetIn(sector_id=food.id, year=2025, month=3, absolute_amount_cents=50_000)
    )
    budgets.create_category_budget(
        CategoryBudgetIn(
            category_id=groceries.id, year=2025, month=3, absolute_amount_cents=30_000
        )
    )
    budgets.create_category_budget(
        CategoryBudgetIn(category_id=rent.id, year=2025, month=3, absolute_amount_cents=40_000)
    )

    with pytest.raises(ContainmentError):
        SectorService(session).update(
            food.id, SectorIn(name="Food", category_ids=[groceries.id, dining.id, rent.id])
        )

    assert budgets.containment_violations(2025, 3) == []
    assert {c.id for c in session.get(Sector, food.id).categories} == {
        groceries.id,
        dining.id,
    }


def test_membership_change_checks_yearly_sector_budgets() -> None:
    session = make_session()
    groceries, _, rent, food = seed_household(session)
    budgets = BudgetService(session)
    budgets.create_sector_budget(
        SectorBudgetIn(sector_id=food.id, year=2025, absolute_amount_cents=100_000)
    )
    budgets.create_category_budget(
        CategoryBudgetIn(category_id=rent.id, year=2025, absolute_amount_cents=150_000)
    )

    with pytest.raises(ContainmentError):
        SectorService(session).update(
            food.id, SectorIn(name="Food", category_ids=[groceries.id, rent.id])
        )


def test_membership_change_refreshes_auto_rollup_amount() -> None:
    session = make_session()
    groceries, _, rent, food = seed_household(session)
    budgets = BudgetService(session)
    budgets.create_category_budget(
        CategoryBudgetIn(
            category_id=groceries.id, year=2025, month=3, absolute_amount_cents=30_000
        )
    )
    budgets.create_category_budget(
        CategoryBudgetIn(category_id=rent.id, year=2025, month=3, absolute_amount_cents=40_000)
    )
    row = budgets.create_sector_budget(
        SectorBudgetIn(sector_id=food.id, year=2025, month=3, auto_rollup=True)
    )
    assert row.absolute_amount_cents == 30_000

    SectorService(session).update(
        food.id, SectorIn(name="Food & Home", category_ids=[groceries.id, rent.id])
    )

    assert session.get(SectorBudget, row.id).absolute_amount_cents == 70_000
    assert session.get(Sector, food.id).name == "Food & Home"


def test_budget_amounts_require_a_value_unless_rolled_up() -> None:
    with pytest.raises(PydanticValidationError):
        BudgetAmountIn()
    with pytest.raises(PydanticValidationError):
        SectorBudgetAmountIn()
    with pytest.raises(PydanticValidationError):
        BudgetAmountIn(budget_type=BudgetType.split, user1_amount_cents=100)

    assert SectorBudgetAmountIn(auto_rollup=True).amount_cents == 0
