import logging
from typing import Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bank_feed import BankFeedClient
from config import get_settings
from database import get_db
from errors import ContainmentError, NotFoundError, UpstreamFeedError, ValidationError
from models import (
    ConnectedAccount,
    PendingTransaction,
    SyncFrequency,
    Transaction,
    TransactionType,
)
from periods import Period, local_today, parse_year_month, resolve_period
from scheduler import SchedulerManager
from schemas import (
    BudgetAmountIn,
    CategoryBudgetIn,
    CategoryIn,
    ConnectedAccountIn,
    LinkTokenIn,
    PendingOverridesIn,
    SectorBudgetIn,
    SectorBudgetAmountIn,
    SectorIn,
    SyncRequest,
    TokenExchangeIn,
    TRANSACTION_IN_ADAPTER,
    TransactionIn,
)
from services import (
    BudgetService,
    CategoryService,
    ConnectedAccountService,
    ImportService,
    PeriodService,
    SectorService,
    TransactionService,
)
from spending import SpendMode

logger = logging.getLogger(__name__)

app = FastAPI(title="Household Budget")


def _load_app_version() -> str:
    try:
        import tomllib
    except ImportError:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"


APP_VERSION = _load_app_version()

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def get_feed() -> BankFeedClient:
    return BankFeedClient()


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ContainmentError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, UpstreamFeedError):
        logger.warning(f"feed_request_failed: error={exc}")
        return HTTPException(
            status_code=502, detail=f"{exc}. The bank feed may be down; try again later."
        )
    return HTTPException(status_code=400, detail=str(exc))


def period_from_request(request: Request) -> Period:
    try:
        return resolve_period(
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def month_from_request(request: Request) -> tuple[int, int]:
    value = request.query_params.get("month")
    if not value:
        today = local_today()
        return today.year, today.month
    try:
        return parse_year_month(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid month, expected YYYY-MM") from exc


def transaction_from_body(payload: dict) -> TransactionIn:
    try:
        return TRANSACTION_IN_ADAPTER.validate_python(payload)
    except PydanticValidationError as exc:
        detail = exc.errors(include_url=False, include_context=False)
        raise HTTPException(status_code=422, detail=detail) from exc


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _value(enum_value) -> Optional[str]:
    return enum_value.value if enum_value is not None else None


def transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "description": txn.description,
        "amount_cents": txn.amount_cents,
        "transaction_type": txn.transaction_type.value,
        "category_id": txn.category_id,
        "paid_by_user_name": txn.paid_by_user_name,
        "paid_to_user_name": txn.paid_to_user_name,
        "split_type": _value(txn.split_type),
        "reimburses_transaction_id": txn.reimburses_transaction_id,
        "excluded_from_monthly_budget": txn.excluded_from_monthly_budget,
        "excluded_from_yearly_budget": txn.excluded_from_yearly_budget,
    }


def pending_out(pending: PendingTransaction) -> dict:
    return {
        "id": pending.id,
        "connected_account_id": pending.connected_account_id,
        "external_transaction_id": pending.external_transaction_id,
        "date": pending.date.isoformat(),
        "description": pending.description,
        "amount_cents": pending.amount_cents,
        "transaction_type": pending.transaction_type.value,
        "status": pending.status.value,
        "category_id": pending.category_id,
        "paid_by_user_name": pending.paid_by_user_name,
        "paid_to_user_name": pending.paid_to_user_name,
        "split_type": _value(pending.split_type),
        "reimburses_transaction_id": pending.reimburses_transaction_id,
        "approved_at": _iso(pending.approved_at),
        "rejected_at": _iso(pending.rejected_at),
        "transaction_id": pending.transaction_id,
    }


def account_out(account: ConnectedAccount) -> dict:
    return {
        "id": account.id,
        "account_name": account.account_name,
        "institution_name": account.institution_name,
        "account_last_four": account.account_last_four,
        "account_type": account.account_type.value,
        "provider": account.provider,
        "is_active": account.is_active,
        "sync_frequency": account.sync_frequency.value,
        "last_synced_at": _iso(account.last_synced_at),
    }


def budget_out(row) -> dict:
    out = {
        "id": row.id,
        "year": row.year,
        "month": getattr(row, "month", None),
        "budget_type": row.budget_type.value,
        "absolute_amount_cents": row.absolute_amount_cents,
        "user1_amount_cents": row.user1_amount_cents,
        "user2_amount_cents": row.user2_amount_cents,
    }
    if hasattr(row, "sector_id"):
        out["sector_id"] = row.sector_id
        out["auto_rollup"] = row.auto_rollup
    else:
        out["category_id"] = row.category_id
    return out


@app.get("/api/health")
def api_health():
    return {"status": "ok", "version": APP_VERSION}


# Transactions


@app.get("/api/transactions")
def api_transactions(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    type_param = request.query_params.get("type")
    category_param = request.query_params.get("category")
    try:
        txn_type = TransactionType(type_param) if type_param else None
        category_id = int(category_param) if category_param else None
        page = max(int(request.query_params.get("page", "1")), 1)
        limit = min(max(int(request.query_params.get("limit", "50")), 1), 100)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    offset = (page - 1) * limit
    items = TransactionService(db).list(
        period,
        transaction_type=txn_type,
        category_id=category_id,
        limit=limit + 1,
        offset=offset,
    )
    has_more = len(items) > limit
    return {
        "items": [transaction_out(txn) for txn in items[:limit]],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions", status_code=201)
def api_create_transaction(payload: dict = Body(...), db: Session = Depends(get_db)):
    data = transaction_from_body(payload)
    try:
        txn = TransactionService(db).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_out(txn)


@app.get("/api/transactions/{transaction_id}")
def api_get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        return transaction_out(TransactionService(db).get(transaction_id))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int, payload: dict = Body(...), db: Session = Depends(get_db)
):
    data = transaction_from_body(payload)
    try:
        txn = TransactionService(db).update(transaction_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_out(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


# Categories and sectors


@app.get("/api/categories")
def api_categories(db: Session = Depends(get_db)):
    return [
        {"id": c.id, "name": c.name, "image_url": c.image_url}
        for c in CategoryService(db).list_all()
    ]


@app.post("/api/categories", status_code=201)
def api_create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"id": category.id, "name": category.name, "image_url": category.image_url}


@app.put("/api/categories/{category_id}")
def api_update_category(
    category_id: int, data: CategoryIn, db: Session = Depends(get_db)
):
    try:
        category = CategoryService(db).update(category_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"id": category.id, "name": category.name, "image_url": category.image_url}


@app.delete("/api/categories/{category_id}", status_code=204)
def api_delete_category(category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


def sector_out(sector) -> dict:
    return {"id": sector.id, "name": sector.name, "category_ids": sorted(sector.category_ids)}


@app.get("/api/sectors")
def api_sectors(db: Session = Depends(get_db)):
    return [sector_out(s) for s in SectorService(db).list_all()]


@app.post("/api/sectors", status_code=201)
def api_create_sector(data: SectorIn, db: Session = Depends(get_db)):
    try:
        return sector_out(SectorService(db).create(data))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/sectors/{sector_id}")
def api_update_sector(sector_id: int, data: SectorIn, db: Session = Depends(get_db)):
    try:
        return sector_out(SectorService(db).update(sector_id, data))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/sectors/{sector_id}", status_code=204)
def api_delete_sector(sector_id: int, db: Session = Depends(get_db)):
    try:
        SectorService(db).delete(sector_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


# Budgets


@app.get("/api/budgets/monthly")
def api_monthly_budgets(request: Request, db: Session = Depends(get_db)):
    year, month = month_from_request(request)
    return BudgetService(db).monthly_summary(year, month)


@app.get("/api/budgets/yearly")
def api_yearly_budgets(request: Request, db: Session = Depends(get_db)):
    year, month = month_from_request(request)
    return BudgetService(db).yearly_summary(year, month)


@app.get("/api/budgets/violations")
def api_budget_violations(request: Request, db: Session = Depends(get_db)):
    year, month = month_from_request(request)
    return [
        {"sector_id": sector_id, "limit_cents": limit, "category_total_cents": total}
        for sector_id, limit, total in BudgetService(db).containment_violations(year, month)
    ]


@app.post("/api/budgets/categories", status_code=201)
def api_create_category_budget(data: CategoryBudgetIn, db: Session = Depends(get_db)):
    try:
        return budget_out(BudgetService(db).create_category_budget(data))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/budgets/categories/{budget_id}")
def api_update_category_budget(
    budget_id: int,
    amounts: BudgetAmountIn,
    yearly: bool = False,
    db: Session = Depends(get_db),
):
    try:
        row = BudgetService(db).update_category_budget(budget_id, amounts, yearly=yearly)
    except ValueError as exc:
        raise http_error(exc) from exc
    return budget_out(row)


@app.delete("/api/budgets/categories/{budget_id}", status_code=204)
def api_delete_category_budget(
    budget_id: int, yearly: bool = False, db: Session = Depends(get_db)
):
    try:
        BudgetService(db).delete_category_budget(budget_id, yearly=yearly)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/budgets/sectors", status_code=201)
def api_create_sector_budget(data: SectorBudgetIn, db: Session = Depends(get_db)):
    try:
        return budget_out(BudgetService(db).create_sector_budget(data))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/budgets/sectors/{budget_id}")
def api_update_sector_budget(
    budget_id: int,
    amounts: SectorBudgetAmountIn,
    yearly: bool = False,
    db: Session = Depends(get_db),
):
    try:
        row = BudgetService(db).update_sector_budget(budget_id, amounts, yearly=yearly)
    except ValueError as exc:
        raise http_error(exc) from exc
    return budget_out(row)


@app.delete("/api/budgets/sectors/{budget_id}", status_code=204)
def api_delete_sector_budget(
    budget_id: int, yearly: bool = False, db: Session = Depends(get_db)
):
    try:
        BudgetService(db).delete_sector_budget(budget_id, yearly=yearly)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/spend")
def api_spend(request: Request, db: Session = Depends(get_db)):
    year, month = month_from_request(request)
    category_param = request.query_params.get("category_id")
    sector_param = request.query_params.get("sector_id")
    try:
        mode = SpendMode(request.query_params.get("mode", SpendMode.monthly.value))
        service = BudgetService(db)
        if sector_param:
            totals = service.spend_for_sector(int(sector_param), year, month, mode)
        elif category_param:
            totals = service.spend_for_category(int(category_param), year, month, mode)
        else:
            raise ValidationError("category_id or sector_id is required")
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"year": year, "month": month, "mode": mode.value, **totals.as_dict()}


# Budget periods


@app.get("/api/periods")
def api_periods(db: Session = Depends(get_db)):
    service = PeriodService(db)
    service.refresh_available_months()
    year, month = service.current
    return {
        "current": f"{year:04d}-{month:02d}",
        "options": service.month_options(),
    }


@app.post("/api/periods/select")
def api_select_period(request: Request, db: Session = Depends(get_db)):
    year, month = month_from_request(request)
    service = PeriodService(db)
    selected = service.select_month(year, month)
    return {
        "selected": f"{selected[0]:04d}-{selected[1]:02d}",
        "has_data": service.month_has_budget_data(*selected),
        "options": service.month_options(),
    }


@app.post("/api/periods/carry-forward")
def api_carry_forward(request: Request, db: Session = Depends(get_db)):
    year, month = month_from_request(request)
    try:
        copied = PeriodService(db).carry_forward_into(year, month)
    except ValueError as exc:
        raise http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=503, detail="Could not save the carried-forward budgets"
        ) from exc
    return {"month": f"{year:04d}-{month:02d}", "copied": copied}


# Connected accounts


@app.get("/api/accounts")
def api_accounts(db: Session = Depends(get_db)):
    return [account_out(a) for a in ConnectedAccountService(db).list_all()]


@app.post("/api/accounts", status_code=201)
def api_create_account(data: ConnectedAccountIn, db: Session = Depends(get_db)):
    return account_out(ConnectedAccountService(db).create(data))


@app.post("/api/accounts/link-token")
def api_link_token(
    payload: Optional[LinkTokenIn] = None,
    feed: BankFeedClient = Depends(get_feed),
):
    user_ref = payload.user_ref if payload else "household"
    try:
        link_token = feed.create_link_token(user_ref)
    except UpstreamFeedError as exc:
        raise http_error(exc) from exc
    return {"link_token": link_token, "feed_env": get_settings().feed_env}


@app.post("/api/accounts/exchange", status_code=201)
def api_exchange_token(
    data: TokenExchangeIn,
    db: Session = Depends(get_db),
    feed: BankFeedClient = Depends(get_feed),
):
    try:
        accounts = ConnectedAccountService(db).link(data, feed)
    except (ValueError, UpstreamFeedError) as exc:
        raise http_error(exc) from exc
    return {"success": True, "accounts": [account_out(a) for a in accounts]}


@app.post("/api/accounts/{account_id}/deactivate")
def api_deactivate_account(account_id: int, db: Session = Depends(get_db)):
    try:
        return account_out(ConnectedAccountService(db).set_active(account_id, False))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/accounts/{account_id}/sync-frequency/{frequency}")
def api_set_sync_frequency(
    account_id: int, frequency: SyncFrequency, db: Session = Depends(get_db)
):
    try:
        account = ConnectedAccountService(db).set_sync_frequency(account_id, frequency)
    except ValueError as exc:
        raise http_error(exc) from exc
    return account_out(account)


@app.post("/api/accounts/{account_id}/sync")
def api_sync_account(
    account_id: int,
    payload: Optional[SyncRequest] = None,
    db: Session = Depends(get_db),
    feed: BankFeedClient = Depends(get_feed),
):
    days_back = payload.days_back if payload else None
    try:
        result = ImportService(db, feed).sync(account_id, days_back)
    except (ValueError, UpstreamFeedError) as exc:
        raise http_error(exc) from exc
    return {
        "success": True,
        "synced": result.synced,
        "skipped": result.skipped,
        "total_fetched": result.total_fetched,
        "errors": result.errors or None,
    }


# Pending imports


@app.get("/api/pending")
def api_pending(db: Session = Depends(get_db)):
    return [pending_out(p) for p in ImportService(db).list_pending()]


@app.get("/api/pending/processed")
def api_pending_processed(db: Session = Depends(get_db)):
    return [pending_out(p) for p in ImportService(db).list_processed()]


@app.delete("/api/pending/processed")
def api_delete_processed(db: Session = Depends(get_db)):
    return {"deleted": ImportService(db).delete_all_processed()}


@app.patch("/api/pending/{pending_id}")
def api_edit_pending(
    pending_id: int, overrides: PendingOverridesIn, db: Session = Depends(get_db)
):
    try:
        return pending_out(ImportService(db).edit(pending_id, overrides))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/pending/{pending_id}/approve", status_code=201)
def api_approve_pending(
    pending_id: int,
    overrides: Optional[PendingOverridesIn] = None,
    db: Session = Depends(get_db),
):
    try:
        txn = ImportService(db).approve(pending_id, overrides)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_out(txn)


@app.post("/api/pending/{pending_id}/reject")
def api_reject_pending(pending_id: int, db: Session = Depends(get_db)):
    try:
        return pending_out(ImportService(db).reject(pending_id))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/pending/{pending_id}/restore")
def api_restore_pending(pending_id: int, db: Session = Depends(get_db)):
    try:
        return pending_out(ImportService(db).restore(pending_id))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/pending/{pending_id}", status_code=204)
def api_delete_pending(pending_id: int, db: Session = Depends(get_db)):
    try:
        ImportService(db).delete(pending_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
