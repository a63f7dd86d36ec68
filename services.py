from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import case, delete, func, select, union, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from bank_feed import BankFeedClient, FeedTransaction
from config import get_settings
from containment import SectorCeiling, check_category_budget, check_sector_budget
from errors import (
    ContainmentError,
    DuplicateImportError,
    NotFoundError,
    UpstreamFeedError,
    ValidationError,
)
from models import (
    OPEN_STATUSES,
    PROCESSED_STATUSES,
    SHARED_PAYER,
    AccountType,
    BudgetType,
    Category,
    CategoryBudget,
    ConnectedAccount,
    PendingStatus,
    PendingTransaction,
    Sector,
    SectorBudget,
    SyncFrequency,
    Transaction,
    TransactionType,
    YearlyCategoryBudget,
    YearlySectorBudget,
    sector_categories,
)
from periods import Period, local_today, shift_month
from schemas import (
    TRANSACTION_IN_ADAPTER,
    BudgetAmountIn,
    CategoryBudgetIn,
    CategoryIn,
    ConnectedAccountIn,
    PendingOverridesIn,
    SectorBudgetIn,
    SectorBudgetAmountIn,
    SectorIn,
    SyncRequest,
    TokenExchangeIn,
    TransactionIn,
)
from spending import (
    SpendMode,
    SpendTotals,
    budget_amount_cents,
    budget_status,
    period_for,
    remaining_amount,
    remaining_percentage,
    scope_spend,
)

logger = logging.getLogger(__name__)

INITIAL_SYNC_DAYS = 30


def _utcnow() -> datetime:
    return datetime.utcnow()


def _enum_value(value):
    return value.value if isinstance(value, Enum) else value


def _describe_validation_error(exc: PydanticValidationError) -> str:
    variants = {t.value for t in TransactionType}
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in variants)
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "Invalid transaction"


def feed_amount_to_cents(amount: Decimal) -> int:
    return int((abs(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        return self.session.scalars(select(Category).order_by(Category.name)).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _ensure_unique(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Category.id).where(func.lower(Category.name) == name.lower())
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ValidationError("Category already exists")

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        self._ensure_unique(name)
        category = Category(name=name, image_url=data.image_url)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        name = data.name.strip()
        self._ensure_unique(name, exclude_id=category_id)
        category.name = name
        category.image_url = data.image_url
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        in_use = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.category_id == category_id
            )
        )
        if in_use:
            raise ValidationError("Category has transactions; reassign them first")
        self.session.delete(category)
        self.session.commit()


class SectorService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Sector]:
        stmt = (
            select(Sector)
            .options(selectinload(Sector.categories))
            .order_by(Sector.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, sector_id: int) -> Sector:
        sector = self.session.get(Sector, sector_id)
        if not sector:
            raise NotFoundError("Sector not found")
        return sector

    def _categories(self, category_ids: list[int]) -> list[Category]:
        unique_ids = sorted(set(category_ids))
        if not unique_ids:
            return []
        categories = self.session.scalars(
            select(Category).where(Category.id.in_(unique_ids))
        ).all()
        if len(categories) != len(unique_ids):
            raise NotFoundError("Category not found")
        return list(categories)

    def create(self, data: SectorIn) -> Sector:
        name = data.name.strip()
        if self.session.scalar(select(Sector.id).where(Sector.name == name)):
            raise ValidationError("Sector already exists")
        sector = Sector(name=name, categories=self._categories(data.category_ids))
        self.session.add(sector)
        self.session.commit()
        self.session.refresh(sector)
        return sector

    def _member_total(self, category_ids: set[int], row) -> int:
        if not category_ids:
            return 0
        if isinstance(row, SectorBudget):
            model = CategoryBudget
            clauses = [model.year == row.year, model.month == row.month]
        else:
            model = YearlyCategoryBudget
            clauses = [model.year == row.year]
        budgets = self.session.scalars(
            select(model).where(model.category_id.in_(category_ids), *clauses)
        ).all()
        return sum(budget_amount_cents(budget) for budget in budgets)

    def _apply_membership(self, sector: Sector, categories: list[Category]) -> None:
        """Check every stored sector budget against the new member set.

        Manual budgets must still cover their categories; auto-rollup budgets
        take the new total.
        """
        category_ids = {category.id for category in categories}
        for model in (SectorBudget, YearlySectorBudget):
            rows = self.session.scalars(
                select(model).where(model.sector_id == sector.id)
            ).all()
            for row in rows:
                total = self._member_total(category_ids, row)
                if row.auto_rollup:
                    row.absolute_amount_cents = total
                else:
                    check_sector_budget(sector.name, budget_amount_cents(row), total)
        sector.categories = categories

    def update(self, sector_id: int, data: SectorIn) -> Sector:
        sector = self.get(sector_id)
        name = data.name.strip()
        clash = self.session.scalar(
            select(Sector.id).where(Sector.name == name, Sector.id != sector_id)
        )
        if clash:
            raise ValidationError("Sector already exists")
        categories = self._categories(data.category_ids)
        try:
            self._apply_membership(sector, categories)
        except ContainmentError:
            self.session.rollback()
            raise
        sector.name = name
        self.session.commit()
        self.session.refresh(sector)
        return sector

    def delete(self, sector_id: int) -> None:
        sector = self.get(sector_id)
        self.session.delete(sector)
        self.session.commit()


class TransactionService:
    _TYPED_FIELDS = (
        "category_id",
        "paid_by_user_name",
        "paid_to_user_name",
        "split_type",
        "reimburses_transaction_id",
    )

    def __init__(self, session: Session) -> None:
        self.session = session

    def _check_counterparts(
        self, data: TransactionIn, *, transaction_id: Optional[int] = None
    ) -> None:
        users = set(get_settings().user_names)
        txn_type = TransactionType(data.transaction_type)

        payer = getattr(data, "paid_by_user_name", None)
        if payer is not None:
            allowed = users | {SHARED_PAYER} if txn_type == TransactionType.expense else users
            if payer not in allowed:
                raise ValidationError(f"Unknown payer: {payer}")
        receiver = getattr(data, "paid_to_user_name", None)
        if receiver is not None and receiver not in users:
            raise ValidationError(f"Unknown receiver: {receiver}")

        if txn_type == TransactionType.expense:
            if not self.session.get(Category, data.category_id):
                raise ValidationError("Category not found")

        target_id = getattr(data, "reimburses_transaction_id", None)
        if target_id is not None:
            if target_id == transaction_id:
                raise ValidationError("A reimbursement cannot reimburse itself")
            target = self.session.get(Transaction, target_id)
            if not target or target.transaction_type != TransactionType.expense:
                raise ValidationError("Reimbursed transaction must be an existing expense")

    def _apply(self, txn: Transaction, data: TransactionIn) -> None:
        txn.date = data.date
        txn.description = data.description
        txn.amount_cents = data.amount_cents
        txn.transaction_type = TransactionType(data.transaction_type)
        for name in self._TYPED_FIELDS:
            setattr(txn, name, getattr(data, name, None))
        txn.excluded_from_monthly_budget = getattr(
            data, "excluded_from_monthly_budget", False
        )
        txn.excluded_from_yearly_budget = getattr(
            data, "excluded_from_yearly_budget", False
        )

    def create(self, data: TransactionIn, *, commit: bool = True) -> Transaction:
        self._check_counterparts(data)
        txn = Transaction()
        self._apply(txn, data)
        self.session.add(txn)
        self.session.flush()
        if commit:
            self.session.commit()
            self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.id == transaction_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def _reimbursement_count(self, expense_id: int) -> int:
        return int(
            self.session.scalar(
                select(func.count(Transaction.id)).where(
                    Transaction.transaction_type == TransactionType.reimbursement,
                    Transaction.reimburses_transaction_id == expense_id,
                )
            )
            or 0
        )

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        self._check_counterparts(data, transaction_id=transaction_id)
        if (
            txn.transaction_type == TransactionType.expense
            and TransactionType(data.transaction_type) != TransactionType.expense
            and self._reimbursement_count(txn.id)
        ):
            raise ValidationError(
                "Cannot change the type of a reimbursed expense; unlink its reimbursements first"
            )
        self._apply(txn, data)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        # Detach rather than cascade: imports and reimbursements outlive the row.
        self.session.execute(
            update(PendingTransaction)
            .where(PendingTransaction.transaction_id == txn.id)
            .values(transaction_id=None)
        )
        self.session.execute(
            update(Transaction)
            .where(Transaction.reimburses_transaction_id == txn.id)
            .values(reimburses_transaction_id=None)
        )
        self.session.delete(txn)
        self.session.commit()

    def list(
        self,
        period: Period,
        *,
        transaction_type: Optional[TransactionType] = None,
        category_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.date.between(period.start, period.end))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if transaction_type:
            stmt = stmt.where(Transaction.transaction_type == transaction_type)
        if category_id:
            stmt = stmt.where(Transaction.category_id == category_id)
        return self.session.scalars(stmt).all()

    def budget_snapshot(self, period: Period) -> list[Transaction]:
        """Expenses dated in ``period`` plus every reimbursement pointing at them."""
        expense_ids = select(Transaction.id).where(
            Transaction.transaction_type == TransactionType.expense,
            Transaction.date.between(period.start, period.end),
        )
        stmt = select(Transaction).where(
            (Transaction.id.in_(expense_ids))
            | (
                (Transaction.transaction_type == TransactionType.reimbursement)
                & Transaction.reimburses_transaction_id.in_(expense_ids)
            )
        )
        return self.session.scalars(stmt).all()


class ImportLedger:
    """Remembers which feed transactions have already become pending rows.

    ``record`` is a single insert-if-absent statement against the unique
    ``external_transaction_id`` column, so two imports racing on the same
    feed item cannot both insert it.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def is_duplicate(self, external_id: str) -> bool:
        stmt = select(PendingTransaction.id).where(
            PendingTransaction.external_transaction_id == external_id
        )
        return self.session.scalar(stmt) is not None

    def _insert_if_absent(self, values: dict) -> bool:
        dialect = self.session.get_bind().dialect.name
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        elif dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        else:
            try:
                with self.session.begin_nested():
                    self.session.add(PendingTransaction(**values))
            except IntegrityError:
                return False
            return True

        stmt = (
            dialect_insert(PendingTransaction.__table__)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["external_transaction_id"])
        )
        return self.session.connection().execute(stmt).rowcount == 1

    def record(self, values: dict) -> PendingTransaction:
        external_id = values["external_transaction_id"]
        if not self._insert_if_absent(values):
            raise DuplicateImportError(external_id)
        return self.session.scalar(
            select(PendingTransaction).where(
                PendingTransaction.external_transaction_id == external_id
            )
        )


@dataclass
class SyncResult:
    synced: int = 0
    skipped: int = 0
    total_fetched: int = 0
    errors: list[str] = field(default_factory=list)


class ImportService:
    _CANDIDATE_FIELDS = (
        "date",
        "description",
        "amount_cents",
        "transaction_type",
        "category_id",
        "paid_by_user_name",
        "paid_to_user_name",
        "split_type",
        "reimburses_transaction_id",
    )

    def __init__(
        self,
        session: Session,
        feed: Optional[BankFeedClient] = None,
        *,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self._feed = feed
        self.today = today or local_today()

    @property
    def feed(self) -> BankFeedClient:
        if self._feed is None:
            self._feed = BankFeedClient()
        return self._feed

    def _listing(self, statuses) -> list[PendingTransaction]:
        stmt = (
            select(PendingTransaction)
            .options(
                joinedload(PendingTransaction.connected_account),
                joinedload(PendingTransaction.category),
            )
            .where(PendingTransaction.status.in_(statuses))
            .order_by(
                PendingTransaction.date.desc(),
                PendingTransaction.created_at.desc(),
                PendingTransaction.id.desc(),
            )
        )
        return self.session.scalars(stmt).all()

    def list_pending(self) -> list[PendingTransaction]:
        return self._listing(OPEN_STATUSES)

    def list_processed(self) -> list[PendingTransaction]:
        return self._listing(PROCESSED_STATUSES)

    def get(self, pending_id: int) -> PendingTransaction:
        pending = self.session.get(PendingTransaction, pending_id)
        if not pending:
            raise NotFoundError("Pending transaction not found")
        return pending

    def _candidate(
        self, pending: PendingTransaction, overrides: Optional[PendingOverridesIn]
    ) -> dict[str, object]:
        given = overrides.model_dump(exclude_none=True) if overrides else {}
        candidate: dict[str, object] = {}
        for name in self._CANDIDATE_FIELDS:
            value = given.get(name)
            candidate[name] = _enum_value(value if value is not None else getattr(pending, name))
        for flag in ("excluded_from_monthly_budget", "excluded_from_yearly_budget"):
            if flag in given:
                candidate[flag] = given[flag]
        return candidate

    def edit(self, pending_id: int, overrides: PendingOverridesIn) -> PendingTransaction:
        pending = self.get(pending_id)
        if pending.status not in OPEN_STATUSES:
            raise ValidationError("Only pending imports can be edited")
        for name, value in overrides.model_dump(exclude_none=True).items():
            if name in self._CANDIDATE_FIELDS:
                setattr(pending, name, value)
        pending.status = PendingStatus.edited
        self.session.commit()
        self.session.refresh(pending)
        return pending

    def approve(
        self, pending_id: int, overrides: Optional[PendingOverridesIn] = None
    ) -> Transaction:
        pending = self.get(pending_id)
        if pending.status not in OPEN_STATUSES:
            raise ValidationError("Only pending imports can be approved")
        try:
            data = TRANSACTION_IN_ADAPTER.validate_python(self._candidate(pending, overrides))
        except PydanticValidationError as exc:
            raise ValidationError(_describe_validation_error(exc)) from exc

        try:
            txn = TransactionService(self.session).create(data, commit=False)
            pending.status = PendingStatus.approved
            pending.approved_at = _utcnow()
            pending.rejected_at = None
            pending.transaction_id = txn.id
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(txn)
        logger.info(f"import_approved: pending_id={pending_id} transaction_id={txn.id}")
        return txn

    def reject(self, pending_id: int) -> PendingTransaction:
        pending = self.get(pending_id)
        if pending.status not in OPEN_STATUSES:
            raise ValidationError("Only pending imports can be rejected")
        pending.status = PendingStatus.rejected
        pending.rejected_at = _utcnow()
        self.session.commit()
        self.session.refresh(pending)
        logger.info(f"import_rejected: pending_id={pending_id}")
        return pending

    def restore(self, pending_id: int) -> PendingTransaction:
        """Put a processed import back in the queue.

        The transaction created by an earlier approval is only unlinked; it
        stays in the ledger with any edits made since.
        """
        pending = self.get(pending_id)
        if pending.status not in PROCESSED_STATUSES:
            raise ValidationError("Only approved or rejected imports can be restored")
        detached = pending.transaction_id
        pending.status = PendingStatus.pending
        pending.approved_at = None
        pending.rejected_at = None
        pending.transaction_id = None
        self.session.commit()
        self.session.refresh(pending)
        logger.info(
            f"import_restored: pending_id={pending_id} detached_transaction_id={detached}"
        )
        return pending

    def delete(self, pending_id: int) -> None:
        pending = self.get(pending_id)
        self.session.delete(pending)
        self.session.commit()

    def delete_all_processed(self) -> int:
        result = self.session.execute(
            delete(PendingTransaction).where(
                PendingTransaction.status.in_(PROCESSED_STATUSES)
            )
        )
        self.session.commit()
        logger.info(f"import_processed_purged: count={result.rowcount}")
        return int(result.rowcount or 0)

    @staticmethod
    def _feed_values(account: ConnectedAccount, item: FeedTransaction) -> dict:
        return {
            "connected_account_id": account.id,
            "external_transaction_id": item.external_id,
            "date": item.date,
            "description": item.description[:200],
            "amount_cents": feed_amount_to_cents(item.amount),
            "transaction_type": (
                TransactionType.expense if item.amount < 0 else TransactionType.income
            ),
            "status": PendingStatus.pending,
            "raw_data": item.raw,
        }

    def sync(self, account_id: int, days_back: object = None) -> SyncResult:
        days = SyncRequest(days_back=days_back).days_back
        account = self.session.get(ConnectedAccount, account_id)
        if not account:
            raise NotFoundError("Connected account not found")
        if not account.is_active:
            raise ValidationError("Account is not active")

        end = self.today
        start = end - timedelta(days=days)
        access_token = account.access_token
        external_account_id = account.external_account_id
        ledger = ImportLedger(self.session)
        result = SyncResult()
        logger.info(
            f"sync_start: account_id={account_id} start={start} end={end} days={days}"
        )

        try:
            for page in self.feed.iter_pages(
                access_token, external_account_id, start, end
            ):
                result.total_fetched += len(page.transactions)
                for item in page.transactions:
                    if item.pending:
                        continue
                    try:
                        ledger.record(self._feed_values(account, item))
                        self.session.commit()
                    except DuplicateImportError:
                        result.skipped += 1
                        continue
                    except SQLAlchemyError as exc:
                        self.session.rollback()
                        logger.error(
                            f"sync_insert_failed: account_id={account_id} "
                            f"external_id={item.external_id} error={exc}"
                        )
                        result.errors.append(
                            f"Failed to insert transaction {item.external_id}: {exc}"
                        )
                        continue
                    result.synced += 1
        except UpstreamFeedError:
            logger.error(
                f"sync_aborted: account_id={account_id} synced={result.synced} "
                f"skipped={result.skipped}"
            )
            raise

        account.last_synced_at = _utcnow()
        self.session.commit()
        logger.info(
            f"sync_done: account_id={account_id} synced={result.synced} "
            f"skipped={result.skipped} fetched={result.total_fetched}"
        )
        return result


class ConnectedAccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, *, active_only: bool = False) -> list[ConnectedAccount]:
        stmt = select(ConnectedAccount).order_by(ConnectedAccount.account_name)
        if active_only:
            stmt = stmt.where(ConnectedAccount.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def due_for_sync(self) -> list[ConnectedAccount]:
        stmt = select(ConnectedAccount).where(
            ConnectedAccount.is_active.is_(True),
            ConnectedAccount.sync_frequency == SyncFrequency.daily,
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> ConnectedAccount:
        account = self.session.get(ConnectedAccount, account_id)
        if not account:
            raise NotFoundError("Connected account not found")
        return account

    def create(self, data: ConnectedAccountIn, *, commit: bool = True) -> ConnectedAccount:
        account = ConnectedAccount(**data.model_dump(), is_active=True)
        self.session.add(account)
        self.session.flush()
        if commit:
            self.session.commit()
            self.session.refresh(account)
        return account

    def set_active(self, account_id: int, active: bool) -> ConnectedAccount:
        account = self.get(account_id)
        account.is_active = active
        self.session.commit()
        self.session.refresh(account)
        return account

    def set_sync_frequency(
        self, account_id: int, frequency: SyncFrequency
    ) -> ConnectedAccount:
        account = self.get(account_id)
        account.sync_frequency = frequency
        self.session.commit()
        self.session.refresh(account)
        return account

    @staticmethod
    def _account_type(kind: Optional[str], subtype: Optional[str]) -> AccountType:
        if kind == "depository":
            return AccountType.savings if subtype == "savings" else AccountType.checking
        if kind == "credit":
            return AccountType.credit_card
        if kind == "investment":
            return AccountType.investment
        return AccountType.checking

    def link(
        self, data: TokenExchangeIn, feed: Optional[BankFeedClient] = None
    ) -> list[ConnectedAccount]:
        """Exchange a link token and store one account per linked bank account.

        Each new account gets an initial sync; a failed initial sync is
        logged and leaves the account connected.
        """
        feed = feed or BankFeedClient()
        access_token, item_id = feed.exchange_public_token(data.public_token)
        accounts = []
        for linked in data.accounts:
            accounts.append(
                self.create(
                    ConnectedAccountIn(
                        account_name=linked.name
                        or f"{data.institution_name} {linked.mask or ''}".strip(),
                        institution_name=data.institution_name,
                        institution_id=data.institution_id,
                        account_last_four=linked.mask,
                        account_type=self._account_type(linked.type, linked.subtype),
                        external_item_id=item_id,
                        external_account_id=linked.id,
                        access_token=access_token,
                    ),
                    commit=False,
                )
            )
        self.session.commit()

        importer = ImportService(self.session, feed)
        for account in accounts:
            try:
                importer.sync(account.id, INITIAL_SYNC_DAYS)
            except (UpstreamFeedError, ValidationError) as exc:
                logger.warning(f"initial_sync_failed: account_id={account.id} error={exc}")
        return accounts


def _budget_amount_expr(model):
    return case(
        (
            model.budget_type == BudgetType.split,
            func.coalesce(model.user1_amount_cents, 0)
            + func.coalesce(model.user2_amount_cents, 0),
        ),
        else_=func.coalesce(model.absolute_amount_cents, 0),
    )


class BudgetService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.warning_threshold = get_settings().budget_warning_threshold

    @staticmethod
    def _category_model(month: Optional[int]):
        return CategoryBudget if month is not None else YearlyCategoryBudget

    @staticmethod
    def _sector_model(month: Optional[int]):
        return SectorBudget if month is not None else YearlySectorBudget

    @staticmethod
    def _in_period(model, year: int, month: Optional[int]):
        clauses = [model.year == year]
        if month is not None:
            clauses.append(model.month == month)
        return clauses

    @staticmethod
    def _apply_amounts(row, amounts: BudgetAmountIn) -> None:
        row.budget_type = amounts.budget_type
        if amounts.budget_type == BudgetType.absolute:
            row.absolute_amount_cents = amounts.absolute_amount_cents or 0
            row.user1_amount_cents = None
            row.user2_amount_cents = None
        else:
            row.absolute_amount_cents = None
            row.user1_amount_cents = amounts.user1_amount_cents or 0
            row.user2_amount_cents = amounts.user2_amount_cents or 0

    def category_budgets_for(self, year: int, month: Optional[int]) -> dict[int, object]:
        model = self._category_model(month)
        rows = self.session.scalars(
            select(model).where(*self._in_period(model, year, month))
        ).all()
        return {row.category_id: row for row in rows}

    def sector_budgets_for(self, year: int, month: Optional[int]) -> dict[int, object]:
        model = self._sector_model(month)
        rows = self.session.scalars(
            select(model)
            .options(joinedload(model.sector).selectinload(Sector.categories))
            .where(*self._in_period(model, year, month))
        ).all()
        return {row.sector_id: row for row in rows}

    def sector_category_total(
        self, sector: Sector, year: int, month: Optional[int]
    ) -> int:
        budgets = self.category_budgets_for(year, month)
        return sum(
            budget_amount_cents(budgets[cid])
            for cid in sector.category_ids
            if cid in budgets
        )

    def effective_sector_amount(
        self, row, year: int, month: Optional[int]
    ) -> int:
        if row.auto_rollup:
            return self.sector_category_total(row.sector, year, month)
        return budget_amount_cents(row)

    def _ceilings(self, year: int, month: Optional[int]) -> list[SectorCeiling]:
        return [
            SectorCeiling(
                sector_id=row.sector_id,
                sector_name=row.sector.name,
                limit_cents=budget_amount_cents(row),
                auto_rollup=row.auto_rollup,
                category_ids=row.sector.category_ids,
            )
            for row in self.sector_budgets_for(year, month).values()
        ]

    def _check_containment(
        self, category_id: int, year: int, month: Optional[int], amount_cents: int
    ) -> None:
        siblings = {
            cid: budget_amount_cents(row)
            for cid, row in self.category_budgets_for(year, month).items()
        }
        check_category_budget(
            category_id, amount_cents, self._ceilings(year, month), siblings
        )

    def create_category_budget(self, data: CategoryBudgetIn):
        if not self.session.get(Category, data.category_id):
            raise NotFoundError("Category not found")
        model = self._category_model(data.month)
        existing = self.session.scalar(
            select(model.id).where(
                model.category_id == data.category_id,
                *self._in_period(model, data.year, data.month),
            )
        )
        if existing:
            raise ValidationError("A budget already exists for this category and period")
        self._check_containment(data.category_id, data.year, data.month, data.amount_cents)

        row = model(category_id=data.category_id, year=data.year)
        if data.month is not None:
            row.month = data.month
        self._apply_amounts(row, data)
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row

    def update_category_budget(
        self, budget_id: int, amounts: BudgetAmountIn, *, yearly: bool = False
    ):
        model = YearlyCategoryBudget if yearly else CategoryBudget
        row = self.session.get(model, budget_id)
        if not row:
            raise NotFoundError("Budget not found")
        month = None if yearly else row.month
        self._check_containment(row.category_id, row.year, month, amounts.amount_cents)
        self._apply_amounts(row, amounts)
        self.session.commit()
        self.session.refresh(row)
        return row

    def delete_category_budget(self, budget_id: int, *, yearly: bool = False) -> None:
        model = YearlyCategoryBudget if yearly else CategoryBudget
        row = self.session.get(model, budget_id)
        if not row:
            raise NotFoundError("Budget not found")
        self.session.delete(row)
        self.session.commit()

    def _write_sector_amounts(self, row, sector: Sector, amounts: SectorBudgetAmountIn, year, month):
        category_total = self.sector_category_total(sector, year, month)
        if amounts.auto_rollup:
            row.auto_rollup = True
            row.budget_type = BudgetType.absolute
            row.absolute_amount_cents = category_total
            row.user1_amount_cents = None
            row.user2_amount_cents = None
            return
        check_sector_budget(sector.name, amounts.amount_cents, category_total)
        row.auto_rollup = False
        self._apply_amounts(row, amounts)

    def create_sector_budget(self, data: SectorBudgetIn):
        sector = self.session.get(Sector, data.sector_id)
        if not sector:
            raise NotFoundError("Sector not found")
        model = self._sector_model(data.month)
        existing = self.session.scalar(
            select(model.id).where(
                model.sector_id == data.sector_id,
                *self._in_period(model, data.year, data.month),
            )
        )
        if existing:
            raise ValidationError("A budget already exists for this sector and period")

        row = model(sector_id=data.sector_id, year=data.year)
        if data.month is not None:
            row.month = data.month
        self._write_sector_amounts(row, sector, data, data.year, data.month)
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row

    def update_sector_budget(
        self, budget_id: int, amounts: SectorBudgetAmountIn, *, yearly: bool = False
    ):
        model = YearlySectorBudget if yearly else SectorBudget
        row = self.session.get(model, budget_id)
        if not row:
            raise NotFoundError("Budget not found")
        month = None if yearly else row.month
        self._write_sector_amounts(row, row.sector, amounts, row.year, month)
        self.session.commit()
        self.session.refresh(row)
        return row

    def delete_sector_budget(self, budget_id: int, *, yearly: bool = False) -> None:
        model = YearlySectorBudget if yearly else SectorBudget
        row = self.session.get(model, budget_id)
        if not row:
            raise NotFoundError("Budget not found")
        self.session.delete(row)
        self.session.commit()

    def containment_violations(self, year: int, month: int) -> list[tuple[int, int, int]]:
        """Manual sectors whose stored category budgets exceed the sector amount.

        Evaluated in SQL over stored rows; returns (sector_id, limit, total).
        """
        category_totals = (
            select(
                sector_categories.c.sector_id,
                func.sum(_budget_amount_expr(CategoryBudget)).label("total"),
            )
            .join(
                CategoryBudget,
                CategoryBudget.category_id == sector_categories.c.category_id,
            )
            .where(CategoryBudget.year == year, CategoryBudget.month == month)
            .group_by(sector_categories.c.sector_id)
            .subquery()
        )
        limit = _budget_amount_expr(SectorBudget)
        stmt = (
            select(SectorBudget.sector_id, limit, category_totals.c.total)
            .join(category_totals, category_totals.c.sector_id == SectorBudget.sector_id)
            .where(
                SectorBudget.year == year,
                SectorBudget.month == month,
                SectorBudget.auto_rollup.is_(False),
                category_totals.c.total > limit,
            )
            .order_by(SectorBudget.sector_id)
        )
        return [(int(r[0]), int(r[1]), int(r[2])) for r in self.session.execute(stmt)]

    def spend(
        self,
        category_ids,
        year: int,
        month: int,
        mode: SpendMode = SpendMode.monthly,
    ) -> SpendTotals:
        snapshot = TransactionService(self.session).budget_snapshot(
            period_for(mode, year, month)
        )
        return scope_spend(snapshot, category_ids, year, month, mode)

    def spend_for_category(
        self, category_id: int, year: int, month: int, mode: SpendMode = SpendMode.monthly
    ) -> SpendTotals:
        CategoryService(self.session).get(category_id)
        return self.spend([category_id], year, month, mode)

    def spend_for_sector(
        self, sector_id: int, year: int, month: int, mode: SpendMode = SpendMode.monthly
    ) -> SpendTotals:
        sector = SectorService(self.session).get(sector_id)
        return self.spend(sector.category_ids, year, month, mode)

    def _progress(self, budget_cents: int, totals: SpendTotals) -> dict[str, object]:
        spent = totals.total_cents
        return {
            "budget_cents": budget_cents,
            "spent_cents": spent,
            "user1_spent_cents": totals.user1_cents,
            "user2_spent_cents": totals.user2_cents,
            "remaining_cents": remaining_amount(budget_cents, spent),
            "remaining_percentage": remaining_percentage(budget_cents, spent),
            "status": budget_status(budget_cents, spent, self.warning_threshold).value,
        }

    def _summary(
        self, year: int, month: int, budget_month: Optional[int], mode: SpendMode
    ) -> dict[str, list[dict[str, object]]]:
        snapshot = TransactionService(self.session).budget_snapshot(
            period_for(mode, year, month)
        )
        category_budgets = self.category_budgets_for(year, budget_month)
        sector_budgets = self.sector_budgets_for(year, budget_month)

        categories = []
        for category in CategoryService(self.session).list_all():
            row = category_budgets.get(category.id)
            totals = scope_spend(snapshot, [category.id], year, month, mode)
            entry = {
                "category_id": category.id,
                "category_name": category.name,
                "budget_id": row.id if row else None,
                "budget_type": row.budget_type.value if row else None,
            }
            entry.update(self._progress(budget_amount_cents(row), totals))
            categories.append(entry)

        sectors = []
        for sector in SectorService(self.session).list_all():
            row = sector_budgets.get(sector.id)
            category_total = sum(
                budget_amount_cents(category_budgets[cid])
                for cid in sector.category_ids
                if cid in category_budgets
            )
            if row is None:
                budget_cents = 0
            elif row.auto_rollup:
                budget_cents = category_total
            else:
                budget_cents = budget_amount_cents(row)
            totals = scope_spend(snapshot, sector.category_ids, year, month, mode)
            entry = {
                "sector_id": sector.id,
                "sector_name": sector.name,
                "category_ids": sorted(sector.category_ids),
                "budget_id": row.id if row else None,
                "budget_type": row.budget_type.value if row else None,
                "auto_rollup": bool(row.auto_rollup) if row else False,
                "category_budgets_total_cents": category_total,
            }
            entry.update(self._progress(budget_cents, totals))
            sectors.append(entry)
        return {"categories": categories, "sectors": sectors}

    def monthly_summary(self, year: int, month: int) -> dict[str, object]:
        summary = self._summary(year, month, month, SpendMode.monthly)
        return {"year": year, "month": month, **summary}

    def yearly_summary(self, year: int, month: int) -> dict[str, object]:
        summary = self._summary(year, month, None, SpendMode.yearly)
        snapshot = TransactionService(self.session).budget_snapshot(
            period_for(SpendMode.previous_months, year, month)
        )
        for entry in summary["categories"]:
            entry["previous_months_spent_cents"] = scope_spend(
                snapshot, [entry["category_id"]], year, month, SpendMode.previous_months
            ).total_cents
        for entry in summary["sectors"]:
            entry["previous_months_spent_cents"] = scope_spend(
                snapshot, entry["category_ids"], year, month, SpendMode.previous_months
            ).total_cents
        return {"year": year, "month": month, **summary}


class PeriodService:
    """Tracks the selected budget month and seeds the real current month.

    ``today`` is injectable so callers and tests decide what "current" is.
    """

    def __init__(self, session: Session, *, today: Optional[date] = None) -> None:
        self.session = session
        self.today = today or local_today()
        self.selected: tuple[int, int] = (self.today.year, self.today.month)
        self.available: list[tuple[int, int]] = []

    @property
    def current(self) -> tuple[int, int]:
        return (self.today.year, self.today.month)

    def month_has_budget_data(self, year: int, month: int) -> bool:
        for model in (CategoryBudget, SectorBudget):
            found = self.session.scalar(
                select(model.id).where(model.year == year, model.month == month).limit(1)
            )
            if found is not None:
                return True
        return False

    def available_months(self) -> list[tuple[int, int]]:
        stmt = union(
            select(CategoryBudget.year, CategoryBudget.month),
            select(SectorBudget.year, SectorBudget.month),
        )
        rows = self.session.execute(stmt).all()
        return sorted({(int(y), int(m)) for y, m in rows}, reverse=True)

    def refresh_available_months(self) -> list[tuple[int, int]]:
        self.available = self.available_months()
        return self.available

    def carry_forward(self, year: int, month: int) -> int:
        """Copy the latest earlier month's budgets into (year, month).

        Rows are copied by value. Returns the number of rows written; zero
        when the month already has data or nothing earlier exists.
        """
        if self.month_has_budget_data(year, month):
            return 0
        earlier = [p for p in self.available_months() if p < (year, month)]
        if not earlier:
            return 0
        src_year, src_month = earlier[0]

        copied = 0
        for row in self.session.scalars(
            select(CategoryBudget).where(
                CategoryBudget.year == src_year, CategoryBudget.month == src_month
            )
        ).all():
            self.session.add(
                CategoryBudget(
                    category_id=row.category_id,
                    year=year,
                    month=month,
                    budget_type=row.budget_type,
                    absolute_amount_cents=row.absolute_amount_cents,
                    user1_amount_cents=row.user1_amount_cents,
                    user2_amount_cents=row.user2_amount_cents,
                )
            )
            copied += 1
        for row in self.session.scalars(
            select(SectorBudget).where(
                SectorBudget.year == src_year, SectorBudget.month == src_month
            )
        ).all():
            self.session.add(
                SectorBudget(
                    sector_id=row.sector_id,
                    year=year,
                    month=month,
                    budget_type=row.budget_type,
                    absolute_amount_cents=row.absolute_amount_cents,
                    user1_amount_cents=row.user1_amount_cents,
                    user2_amount_cents=row.user2_amount_cents,
                    auto_rollup=row.auto_rollup,
                )
            )
            copied += 1
        self.session.commit()
        logger.info(
            f"carry_forward: from={src_year:04d}-{src_month:02d} "
            f"to={year:04d}-{month:02d} rows={copied}"
        )
        return copied

    def carry_forward_into(self, year: int, month: int) -> int:
        """Manual carry-forward, only into a month after the latest one with data."""
        available = self.available_months()
        if available and (year, month) <= available[0]:
            latest_year, latest_month = available[0]
            raise ValidationError(
                f"Budgets can only be carried forward into months after "
                f"{latest_year:04d}-{latest_month:02d}"
            )
        try:
            copied = self.carry_forward(year, month)
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception(f"carry_forward_failed: to={year:04d}-{month:02d}")
            raise
        self.refresh_available_months()
        return copied

    def ensure_current_period(self) -> bool:
        year, month = self.current
        if self.month_has_budget_data(year, month):
            return False
        try:
            copied = self.carry_forward(year, month)
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception(f"carry_forward_failed: to={year:04d}-{month:02d}")
            return False
        self.refresh_available_months()
        return copied > 0

    def select_month(self, year: int, month: int) -> tuple[int, int]:
        self.selected = (year, month)
        if self.selected == self.current:
            self.ensure_current_period()
        return self.selected

    def month_options(self, count: int = 24) -> list[dict[str, object]]:
        months = {shift_month(self.today.year, self.today.month, -i) for i in range(count)}
        with_data = set(self.available or self.available_months())
        months.update(with_data)
        return [
            {
                "year": y,
                "month": m,
                "month_name": date(y, m, 1).strftime("%B %Y"),
                "has_data": (y, m) in with_data,
            }
            for y, m in sorted(months, reverse=True)
        ]
