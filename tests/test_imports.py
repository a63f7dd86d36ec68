from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from bank_feed import FeedPage, FeedTransaction
from database import Base
from errors import DuplicateImportError, UpstreamFeedError, ValidationError
from models import (
    Category,
    ConnectedAccount,
    PendingStatus,
    PendingTransaction,
    SplitType,
    Transaction,
    TransactionType,
)
from schemas import IncomeIn, PendingOverridesIn
from services import ImportLedger, ImportService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def feed_txn(external_id, amount, on=date(2025, 3, 10), pending=False, name="Shop"):
    return FeedTransaction(
        external_id=external_id,
        date=on,
        amount=Decimal(amount),
        name=name,
        merchant_name=None,
        pending=pending,
        raw={"transaction_id": external_id},
    )


class FakeFeed:
    """Serves fixed pages; optionally fails after serving some of them."""

    def __init__(self, pages, fail_after=None):
        self.pages = pages
        self.fail_after = fail_after
        self.calls = []

    def iter_pages(self, access_token, account_id, start, end, *, max_records=None):
        self.calls.append((access_token, account_id, start, end))
        for index, page in enumerate(self.pages):
            if self.fail_after is not None and index >= self.fail_after:
                raise UpstreamFeedError("feed unavailable")
            yield page


def add_account(session, **overrides):
    values = dict(
        account_name="Joint Checking",
        external_account_id="acc-1",
        access_token="token-1",
        is_active=True,
    )
    values.update(overrides)
    account = ConnectedAccount(**values)
    session.add(account)
    session.commit()
    return account


def add_pending(session, account, external_id="ext-1", amount_cents=4_200):
    pending = PendingTransaction(
        connected_account_id=account.id,
        external_transaction_id=external_id,
        date=date(2025, 3, 10),
        description="Corner Shop",
        amount_cents=amount_cents,
        transaction_type=TransactionType.expense,
        status=PendingStatus.pending,
    )
    session.add(pending)
    session.commit()
    return pending


def count(session, model):
    return session.scalar(select(func.count()).select_from(model))


def test_sync_is_idempotent_per_external_id() -> None:
    session = make_session()
    account = add_account(session)
    page = FeedPage([feed_txn("a", "-12.50"), feed_txn("b", "100")], False, None)
    importer = ImportService(session, FakeFeed([page]), today=date(2025, 3, 20))

    first = importer.sync(account.id, 7)
    second = importer.sync(account.id, 7)

    assert (first.synced, first.skipped, first.total_fetched) == (2, 0, 2)
    assert (second.synced, second.skipped, second.total_fetched) == (0, 2, 2)
    assert count(session, PendingTransaction) == 2

    rows = {p.external_transaction_id: p for p in session.scalars(select(PendingTransaction))}
    assert rows["a"].transaction_type == TransactionType.expense
    assert rows["a"].amount_cents == 1_250
    assert rows["b"].transaction_type == TransactionType.income
    assert rows["b"].amount_cents == 10_000
    assert rows["a"].raw_data == {"transaction_id": "a"}
    assert account.last_synced_at is not None


def test_sync_skips_feed_pending_items_silently() -> None:
    session = make_session()
    account = add_account(session)
    page = FeedPage(
        [feed_txn("a", "-5"), feed_txn("b", "-7", pending=True)], False, None
    )

    result = ImportService(session, FakeFeed([page]), today=date(2025, 3, 20)).sync(
        account.id, 7
    )

    assert result.synced == 1
    assert result.skipped == 0
    assert result.total_fetched == 2
    assert count(session, PendingTransaction) == 1


def test_sync_clamps_lookback_window() -> None:
    session = make_session()
    account = add_account(session)
    feed = FakeFeed([FeedPage([], False, None)])
    importer = ImportService(session, feed, today=date(2025, 6, 30))

    importer.sync(account.id, 500)
    importer.sync(account.id, 0)
    importer.sync(account.id, "abc")
    importer.sync(account.id, -3)

    windows = [(end - start).days for _, _, start, end in feed.calls]
    assert windows == [90, 7, 7, 1]


def test_feed_failure_keeps_rows_from_earlier_pages() -> None:
    session = make_session()
    account = add_account(session)
    pages = [
        FeedPage([feed_txn("a", "-1"), feed_txn("b", "-2")], True, "cursor-1"),
        FeedPage([feed_txn("c", "-3")], False, None),
    ]
    importer = ImportService(
        session, FakeFeed(pages, fail_after=1), today=date(2025, 3, 20)
    )

    with pytest.raises(UpstreamFeedError):
        importer.sync(account.id, 7)

    assert count(session, PendingTransaction) == 2


def test_sync_rejects_inactive_account() -> None:
    session = make_session()
    account = add_account(session, is_active=False)

    with pytest.raises(ValidationError):
        ImportService(session, FakeFeed([]), today=date(2025, 3, 20)).sync(account.id)


def test_ledger_refuses_second_insert() -> None:
    session = make_session()
    account = add_account(session)
    ledger = ImportLedger(session)
    values = dict(
        connected_account_id=account.id,
        external_transaction_id="dup",
        date=date(2025, 3, 1),
        description="Coffee",
        amount_cents=350,
        transaction_type=TransactionType.expense,
        status=PendingStatus.pending,
    )

    assert not ledger.is_duplicate("dup")
    ledger.record(values)
    session.commit()
    assert ledger.is_duplicate("dup")

    with pytest.raises(DuplicateImportError):
        ledger.record(values)


def test_approve_creates_transaction_and_links_it() -> None:
    session = make_session()
    account = add_account(session)
    groceries = Category(name="Groceries")
    session.add(groceries)
    session.commit()
    pending = add_pending(session, account)
    importer = ImportService(session, FakeFeed([]))

    txn = importer.approve(
        pending.id,
        PendingOverridesIn(
            category_id=groceries.id,
            paid_by_user_name="User 1",
            split_type=SplitType.split_equally,
        ),
    )

    session.refresh(pending)
    assert pending.status == PendingStatus.approved
    assert pending.approved_at is not None
    assert pending.transaction_id == txn.id
    assert txn.amount_cents == 4_200
    assert txn.description == "Corner Shop"
    assert txn.category_id == groceries.id
    assert importer.list_pending() == []
    assert [p.id for p in importer.list_processed()] == [pending.id]


def test_approve_with_incomplete_data_changes_nothing() -> None:
    session = make_session()
    account = add_account(session)
    pending = add_pending(session, account)
    importer = ImportService(session, FakeFeed([]))

    with pytest.raises(ValidationError):
        importer.approve(pending.id)

    session.refresh(pending)
    assert pending.status == PendingStatus.pending
    assert pending.transaction_id is None
    assert count(session, Transaction) == 0


def test_approve_with_unknown_category_rolls_back() -> None:
    session = make_session()
    account = add_account(session)
    pending = add_pending(session, account)
    importer = ImportService(session, FakeFeed([]))

    with pytest.raises(ValidationError):
        importer.approve(
            pending.id,
            PendingOverridesIn(
                category_id=999,
                paid_by_user_name="User 1",
                split_type=SplitType.user1_only,
            ),
        )

    session.refresh(pending)
    assert pending.status == PendingStatus.pending
    assert count(session, Transaction) == 0


def test_edit_keeps_row_open_for_approval() -> None:
    session = make_session()
    account = add_account(session)
    groceries = Category(name="Groceries")
    session.add(groceries)
    session.commit()
    pending = add_pending(session, account)
    importer = ImportService(session, FakeFeed([]))

    edited = importer.edit(
        pending.id,
        PendingOverridesIn(
            description="Weekly shop",
            category_id=groceries.id,
            paid_by_user_name="Shared",
            split_type=SplitType.split_equally,
        ),
    )
    assert edited.status == PendingStatus.edited
    assert [p.id for p in importer.list_pending()] == [pending.id]

    txn = importer.approve(pending.id)
    assert txn.description == "Weekly shop"
    assert txn.paid_by_user_name == "Shared"


def test_restore_unlinks_but_keeps_transaction() -> None:
    session = make_session()
    account = add_account(session)
    groceries = Category(name="Groceries")
    session.add(groceries)
    session.commit()
    pending = add_pending(session, account)
    importer = ImportService(session, FakeFeed([]))
    txn = importer.approve(
        pending.id,
        PendingOverridesIn(
            category_id=groceries.id,
            paid_by_user_name="User 2",
            split_type=SplitType.user2_only,
        ),
    )

    restored = importer.restore(pending.id)

    assert restored.status == PendingStatus.pending
    assert restored.transaction_id is None
    assert restored.approved_at is None
    assert restored.rejected_at is None
    assert session.get(Transaction, txn.id) is not None


def test_reject_then_restore_round_trip() -> None:
    session = make_session()
    account = add_account(session)
    pending = add_pending(session, account)
    importer = ImportService(session, FakeFeed([]))

    rejected = importer.reject(pending.id)
    assert rejected.status == PendingStatus.rejected
    assert rejected.rejected_at is not None

    with pytest.raises(ValidationError):
        importer.reject(pending.id)
    with pytest.raises(ValidationError):
        importer.approve(pending.id)

    restored = importer.restore(pending.id)
    assert restored.status == PendingStatus.pending
    assert restored.rejected_at is None

    with pytest.raises(ValidationError):
        importer.restore(pending.id)


def test_delete_all_processed_leaves_open_rows() -> None:
    session = make_session()
    account = add_account(session)
    open_row = add_pending(session, account, "open")
    edited_row = add_pending(session, account, "edited")
    rejected_row = add_pending(session, account, "rejected")
    importer = ImportService(session, FakeFeed([]))
    importer.edit(edited_row.id, PendingOverridesIn(description="Renamed"))
    importer.reject(rejected_row.id)

    removed = importer.delete_all_processed()

    assert removed == 1
    remaining = {p.id for p in session.scalars(select(PendingTransaction))}
    assert remaining == {open_row.id, edited_row.id}


def test_deleted_pending_row_can_be_imported_again() -> None:
    session = make_session()
    account = add_account(session)
    page = FeedPage([feed_txn("a", "-9")], False, None)
    importer = ImportService(session, FakeFeed([page]), today=date(2025, 3, 20))
    importer.sync(account.id, 7)
    row = session.scalar(select(PendingTransaction))

    importer.delete(row.id)
    again = importer.sync(account.id, 7)

    assert again.synced == 1


def test_reimbursement_must_target_an_expense() -> None:
    session = make_session()
    account = add_account(session)
    pending = add_pending(session, account)
    income_id = TransactionService(session).create(
        IncomeIn(
            transaction_type="income",
            date=date(2025, 3, 1),
            description="Salary",
            amount_cents=100_000,
            paid_to_user_name="User 1",
        )
    ).id
    importer = ImportService(session, FakeFeed([]))

    with pytest.raises(ValidationError):
        importer.approve(
            pending.id,
            PendingOverridesIn(
                transaction_type=TransactionType.reimbursement,
                paid_to_user_name="User 1",
                reimburses_transaction_id=income_id,
            ),
        )
    assert count(session, Transaction) == 1
