import logging
from datetime import date
from typing import Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    Header,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from database import SessionLocal
from errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    StoreUnavailable,
    TypeMismatchError,
    ValidationError,
)
from models import BudgetStatus, PaymentMethod, TransactionStatus, TransactionType
from periods import Period, local_today, resolve_period
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetOut,
    BudgetPatch,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    PageRequest,
    SortField,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
)
from services import (
    BudgetService,
    CSVService,
    CategoryService,
    StatisticsService,
    TransactionFilters,
    TransactionService,
    get_current_user_id,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")

ERROR_STATUS: list[tuple[type[LedgerError], int]] = [
    (NotFoundError, 404),
    (ConflictError, 409),
    (TypeMismatchError, 400),
    (ValidationError, 400),
    (StoreUnavailable, 503),
]


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    for error_cls, status_code in ERROR_STATUS:
        if isinstance(exc, error_cls):
            return JSONResponse(
                status_code=status_code,
                content={"detail": str(exc), "error": type(exc).__name__},
            )
    logger.error(f"unhandled_ledger_error: path={request.url.path} error={exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal error"})


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    return x_user_id or get_current_user_id()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    db = SessionLocal()
    try:
        CategoryService(db).bootstrap_defaults()
    finally:
        db.close()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    try:
        txn_type = TransactionType(params["type"]) if params.get("type") else None
        status = TransactionStatus(params.get("status") or "active")
        payment_method = (
            PaymentMethod(params["payment_method"])
            if params.get("payment_method")
            else None
        )
        category_id = int(params["category"]) if params.get("category") else None
        start = date.fromisoformat(params["start"]) if params.get("start") else None
        end = date.fromisoformat(params["end"]) if params.get("end") else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionFilters(
        type=txn_type,
        category_id=category_id,
        start=start,
        end=end,
        payment_method=payment_method,
        status=status,
        tag=params.get("tag") or None,
        query=params.get("q") or None,
    )


# Categories


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(
    type: Optional[TransactionType] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return CategoryService(db, user_id).list_all(type, include_inactive=include_inactive)


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return CategoryService(db, user_id).create(payload)


@app.patch("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return CategoryService(db, user_id).update(category_id, payload)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    CategoryService(db, user_id).delete(category_id)


# Transactions


@app.get("/api/transactions")
def list_transactions(
    request: Request,
    page: int = 1,
    page_size: int = 50,
    sort_by: SortField = "transaction_date",
    sort_dir: str = "desc",
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    filters = filters_from_request(request)
    try:
        page_request = PageRequest(
            page=page, page_size=page_size, sort_by=sort_by, sort_dir=sort_dir
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    result = TransactionService(db, user_id).query(filters, page_request)
    return {
        "items": [TransactionOut.model_validate(txn) for txn in result.items],
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
        "pages": result.pages,
    }


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return TransactionService(db, user_id).create(payload)


@app.get("/api/transactions/export.csv")
def export_transactions_endpoint(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    period = period_from_request(request)
    filters = filters_from_request(request)
    filters.start = filters.start or period.start
    filters.end = filters.end or period.end
    service = TransactionService(db, user_id)
    items = []
    page_number = 1
    while True:
        result = service.query(filters, PageRequest(page=page_number, page_size=200))
        items.extend(result.items)
        if page_number >= result.pages:
            break
        page_number += 1
    csv_text = CSVService(db, user_id).export(items)
    filename = f"transactions_{filters.start}_{filters.end}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


async def _read_csv_upload(file: UploadFile) -> str:
    try:
        return (await file.read()).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV file must be UTF-8 encoded") from exc


@app.post("/api/transactions/import/preview")
async def import_preview(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    content = await _read_csv_upload(file)
    entries, errors = CSVService(db, user_id).preview(content)
    return {"rows": [entry.model_dump(mode="json") for entry in entries], "errors": errors}


@app.post("/api/transactions/import/commit")
async def import_commit(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    content = await _read_csv_upload(file)
    count = CSVService(db, user_id).commit(content)
    return {"imported": count}


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return TransactionService(db, user_id).get(transaction_id, include_inactive=True)


@app.patch("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionPatch,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return TransactionService(db, user_id).update(transaction_id, payload)


@app.delete("/api/transactions/{transaction_id}", response_model=TransactionOut)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return TransactionService(db, user_id).soft_delete(transaction_id)


@app.post("/api/transactions/{transaction_id}/restore", response_model=TransactionOut)
def restore_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return TransactionService(db, user_id).restore(transaction_id)


@app.post("/api/transactions/{transaction_id}/archive", response_model=TransactionOut)
def archive_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return TransactionService(db, user_id).archive(transaction_id)


# Budgets


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(
    status: Optional[BudgetStatus] = None,
    category_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return BudgetService(db, user_id).list_all(status=status, category_id=category_id)


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(
    payload: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return BudgetService(db, user_id).create(payload)


@app.get("/api/budgets/summary")
def budget_summary(
    as_of: Optional[date] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return BudgetService(db, user_id).summary(as_of)


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return BudgetService(db, user_id).get(budget_id)


@app.patch("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    payload: BudgetPatch,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return BudgetService(db, user_id).update(budget_id, payload)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    BudgetService(db, user_id).delete(budget_id)


@app.post("/api/budgets/{budget_id}/renew", response_model=BudgetOut, status_code=201)
def renew_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return BudgetService(db, user_id).renew(budget_id)


# Statistics


@app.get("/api/stats/user")
def user_stats(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    stats = StatisticsService(db, user_id).get_user_stats()
    if stats is None:
        return {
            "user_id": user_id,
            "total_income_cents": 0,
            "total_expense_cents": 0,
            "net_cents": 0,
            "transaction_count": 0,
        }
    return {
        "user_id": stats.user_id,
        "total_income_cents": stats.total_income_cents,
        "total_expense_cents": stats.total_expense_cents,
        "net_cents": stats.net_cents,
        "transaction_count": stats.transaction_count,
    }


@app.get("/api/stats/monthly-trend")
def monthly_trend(
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    today = local_today()
    year = year or today.year
    end = today if year == today.year else date(year, 12, 31)
    return StatisticsService(db, user_id).monthly_trend(date(year, 1, 1), end)


@app.get("/api/stats/category-ranking")
def category_ranking(
    request: Request,
    top: int = Query(10, ge=1),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    period = period_from_request(request)
    return StatisticsService(db, user_id).category_ranking(period, top=top)


@app.get("/api/stats/spending-habits")
def spending_habits(
    months: int = 6,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    service = StatisticsService(db, user_id)
    return {
        "payment_methods": service.payment_method_breakdown(months),
        "time_of_day": service.time_of_day_pattern(months),
    }


@app.get("/api/stats/monthly-report/{year}/{month}")
def monthly_report(
    year: int,
    month: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12")
    return StatisticsService(db, user_id).monthly_report(year, month)


@app.get("/api/stats/overview")
def overview(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    period = period_from_request(request)
    return StatisticsService(db, user_id).overview(period)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
