import datetime as dt
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import TransactionType


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=16)
    default_budget: Optional[int] = Field(default=None, ge=0)


class TransactionIn(BaseModel):
    type: TransactionType
    amount: int = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=200)
    category_id: Optional[int] = None
    occurred_at: Optional[datetime] = None


class TransactionUpdateIn(BaseModel):
    """Partial update; only fields explicitly sent are applied."""

    type: Optional[TransactionType] = None
    amount: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, max_length=200)
    category_id: Optional[int] = None
    occurred_at: Optional[datetime] = None


class TransactionQuery(BaseModel):
    year: Optional[int] = Field(default=None, ge=1970, le=3000)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    type: Optional[TransactionType] = None
    category_ids: list[int] = Field(default_factory=list)
    search: Optional[str] = None
    min_amount: Optional[int] = Field(default=None, ge=0)
    max_amount: Optional[int] = Field(default=None, ge=0)
    sort: Literal["recent", "oldest", "expensive", "cheapest"] = "recent"
    cursor: Optional[int] = None
    limit: int = Field(default=20, ge=1, le=100)


class BudgetIn(BaseModel):
    year: int = Field(..., ge=1970, le=3000)
    month: int = Field(..., ge=1, le=12)
    category_id: Optional[int] = None
    amount: int = Field(..., ge=0)


class SavingsGoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=16)
    target_amount: int = Field(..., gt=0)
    current_amount: int = Field(default=0, ge=0)
    target_year: int = Field(..., ge=1970, le=3000)
    target_month: int = Field(..., ge=1, le=12)
    is_primary: bool = False


class SavingsGoalUpdateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=16)
    target_amount: int = Field(..., gt=0)
    current_amount: Optional[int] = Field(default=None, ge=0)
    target_year: int = Field(..., ge=1970, le=3000)
    target_month: int = Field(..., ge=1, le=12)
    is_primary: Optional[bool] = None


class DepositIn(BaseModel):
    amount: int
    description: Optional[str] = Field(default=None, max_length=200)


class PrimaryGoalIn(BaseModel):
    is_primary: bool


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: TransactionType
    color: Optional[str]
    icon: Optional[str]
    default_budget: Optional[int]


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: TransactionType
    amount: int
    description: Optional[str]
    category_id: Optional[int]
    savings_goal_id: Optional[int]
    date: dt.date
    occurred_at: datetime


class TransactionPage(BaseModel):
    data: list[TransactionOut]
    count: int
    next_cursor: Optional[int]
    has_more: bool


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    year: int
    month: int
    category_id: Optional[int]
    amount: int


class SavingsGoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    icon: Optional[str]
    target_amount: int
    current_amount: int
    target_year: int
    target_month: int
    is_primary: bool


class DepositOut(BaseModel):
    goal: SavingsGoalOut
    transaction: TransactionOut


class DailyBalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: dt.date
    income: int
    expense: int
    savings: int
    balance: int


class SavingsGoalProgress(BaseModel):
    id: int
    name: str
    icon: Optional[str]
    current_amount: int
    target_amount: int
    target_year: int
    target_month: int
    is_primary: bool
    progress_percent: int
    monthly_target: int
    this_month_savings: int
    monthly_required: int


class SavingsOverview(BaseModel):
    total_current_amount: int
    total_target_amount: int
    goals_count: int
    progress_percent: int


class TodaySummary(BaseModel):
    date: dt.date
    income: int
    expense: int
    count: int


class PeriodOut(BaseModel):
    year: int
    month: int


class SummaryTotals(BaseModel):
    total_income: int
    total_expense: int
    total_savings: int
    net_amount: int
    balance: int


class BudgetUsage(BaseModel):
    amount: int
    used: int
    remaining: int
    usage_percent: int


class CategorySummary(BaseModel):
    id: int
    name: str
    icon: Optional[str]
    color: Optional[str]
    count: int
    total: int
    budget: Optional[int] = None
    budget_usage_percent: Optional[int] = None


class TransactionCount(BaseModel):
    income: int
    expense: int
    total: int


class PrimaryGoalSummary(BaseModel):
    id: int
    name: str
    icon: Optional[str]
    current_amount: int
    target_amount: int
    progress_percent: int


class SavingsSummary(BaseModel):
    total_amount: int
    target_amount: int
    count: int
    primary_goal: Optional[PrimaryGoalSummary]


class MonthlySummary(BaseModel):
    period: PeriodOut
    summary: SummaryTotals
    budget: BudgetUsage
    categories: list[CategorySummary]
    transaction_count: TransactionCount
    savings: SavingsSummary
