import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from models import TransactionType
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetOut,
    CategoryIn,
    CategoryOut,
    DailyBalanceOut,
    DepositIn,
    DepositOut,
    MonthlySummary,
    PrimaryGoalIn,
    SavingsGoalIn,
    SavingsGoalOut,
    SavingsGoalProgress,
    SavingsGoalUpdateIn,
    SavingsOverview,
    TodaySummary,
    TransactionIn,
    TransactionOut,
    TransactionPage,
    TransactionQuery,
    TransactionUpdateIn,
)
from services import (
    BudgetService,
    CategoryService,
    DailyBalanceService,
    SavingsGoalService,
    SummaryService,
    TransactionService,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Household Ledger")

_STATUS_BY_ERROR: dict[type, int] = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    StorageError: 500,
}


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status = next(
        (code for cls, code in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 500
    )
    if status >= 500:
        logger.error(f"request_failed: path={request.url.path} error={exc}")
        return JSONResponse(status_code=status, content={"error": "Internal error"})
    content: dict[str, object] = {"error": str(exc)}
    field = getattr(exc, "field", None)
    if field:
        content["field"] = field
    return JSONResponse(status_code=status, content=content)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(user_id: Optional[int] = Query(default=None, ge=1)) -> int:
    return user_id if user_id is not None else settings.default_user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/api/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.exception("health_check_failed")
        raise HTTPException(status_code=503, detail="Database unavailable") from exc
    return {"status": "ok"}


# Transactions


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).create(data)


@app.get("/api/transactions", response_model=TransactionPage)
def list_transactions(
    year: Optional[int] = None,
    month: Optional[int] = None,
    type: Optional[TransactionType] = None,
    category_ids: list[int] = Query(default=[]),
    search: Optional[str] = None,
    min_amount: Optional[int] = None,
    max_amount: Optional[int] = None,
    sort: str = "recent",
    cursor: Optional[int] = None,
    limit: int = 20,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        query = TransactionQuery(
            year=year,
            month=month,
            type=type,
            category_ids=category_ids,
            search=search,
            min_amount=min_amount,
            max_amount=max_amount,
            sort=sort,
            cursor=cursor,
            limit=limit,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionService(db, user_id).list(query)


@app.get("/api/transactions/recent", response_model=list[TransactionOut])
def recent_transactions(
    limit: int = Query(default=5, ge=1, le=50),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).recent(limit)


@app.get("/api/transactions/today", response_model=TodaySummary)
def today_transactions(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return TransactionService(db, user_id).today_summary()


@app.get("/api/transactions/oldest-date")
def oldest_transaction_date(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    oldest = TransactionService(db, user_id).oldest_date()
    return {"date": oldest.isoformat() if oldest else None}


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).get(transaction_id)


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    data: TransactionUpdateIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).update(transaction_id, data)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    TransactionService(db, user_id).soft_delete(transaction_id)


# Categories


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(
    type: Optional[TransactionType] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).list_all(type)


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).create(data)


@app.post("/api/categories/seed", response_model=list[CategoryOut], status_code=201)
def seed_categories(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return CategoryService(db, user_id).seed_defaults()


@app.put("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).update(category_id, data)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    CategoryService(db, user_id).delete(category_id)


# Budgets


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(
    year: int,
    month: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user_id).list_for_month(year, month)


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def upsert_budget(
    data: BudgetIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user_id).upsert(data)


@app.delete("/api/budgets", status_code=204)
def delete_budget(
    year: int,
    month: int,
    category_id: Optional[int] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    BudgetService(db, user_id).delete(year, month, category_id)


# Savings goals


@app.get("/api/savings", response_model=list[SavingsGoalProgress])
def list_savings_goals(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return SavingsGoalService(db, user_id).list_with_progress()


@app.post("/api/savings", response_model=SavingsGoalOut, status_code=201)
def create_savings_goal(
    data: SavingsGoalIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return SavingsGoalService(db, user_id).create(data)


@app.get("/api/savings/summary", response_model=SavingsOverview)
def savings_overview(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return SavingsGoalService(db, user_id).overview()


@app.put("/api/savings/{goal_id}", response_model=SavingsGoalOut)
def update_savings_goal(
    goal_id: int,
    data: SavingsGoalUpdateIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return SavingsGoalService(db, user_id).update(goal_id, data)


@app.patch("/api/savings/{goal_id}", response_model=SavingsGoalOut)
def set_primary_goal(
    goal_id: int,
    data: PrimaryGoalIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return SavingsGoalService(db, user_id).set_primary(goal_id, data.is_primary)


@app.delete("/api/savings/{goal_id}", status_code=204)
def delete_savings_goal(
    goal_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    SavingsGoalService(db, user_id).delete(goal_id)


@app.post("/api/savings/{goal_id}/deposit", response_model=DepositOut)
def deposit_to_goal(
    goal_id: int,
    data: DepositIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    result = SavingsGoalService(db, user_id).deposit(
        goal_id, data.amount, description=data.description
    )
    return DepositOut(
        goal=SavingsGoalOut.model_validate(result.goal),
        transaction=TransactionOut.model_validate(result.transaction),
    )


# Aggregates


@app.get("/api/stats", response_model=MonthlySummary)
def monthly_stats(
    year: int,
    month: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return SummaryService(db, user_id).monthly_summary(year, month)


@app.get("/api/daily-balance", response_model=list[DailyBalanceOut])
def recent_daily_balances(
    days: int = Query(default=5, ge=1, le=366),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return DailyBalanceService(db, user_id).recent(days)


@app.get("/api/daily-balance/monthly", response_model=list[DailyBalanceOut])
def monthly_daily_balances(
    year: int,
    month: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return DailyBalanceService(db, user_id).monthly(year, month)


@app.post("/api/admin/rebuild-daily-balances")
def admin_rebuild_daily_balances(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    days = DailyBalanceService(db, user_id).rebuild()
    return {"rebuilt_days": days}
