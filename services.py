from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.orm import Session

from config import get_settings
from database import atomic, dialect_insert
from errors import ConflictError, NotFoundError, ValidationError
from models import (
    Budget,
    Category,
    DailyBalance,
    SavingsGoal,
    Transaction,
    TransactionType,
)
from periods import (
    Period,
    local_now,
    local_today,
    month_period,
    months_between,
    recent_period,
    to_local_naive,
)
from schemas import (
    BudgetIn,
    BudgetUsage,
    CategoryIn,
    CategorySummary,
    DailyBalanceOut,
    MonthlySummary,
    PeriodOut,
    PrimaryGoalSummary,
    SavingsGoalIn,
    SavingsGoalProgress,
    SavingsGoalUpdateIn,
    SavingsOverview,
    SavingsSummary,
    SummaryTotals,
    TodaySummary,
    TransactionCount,
    TransactionIn,
    TransactionPage,
    TransactionOut,
    TransactionQuery,
    TransactionUpdateIn,
)

logger = logging.getLogger(__name__)


DEFAULT_CATEGORIES: dict[TransactionType, list[tuple[str, str, str]]] = {
    TransactionType.expense: [
        ("Food", "🍽️", "#EF4444"),
        ("Transport", "🚗", "#F59E0B"),
        ("Shopping", "🛍️", "#EC4899"),
        ("Leisure", "🎬", "#8B5CF6"),
        ("Medical", "🏥", "#14B8A6"),
        ("Housing", "🏠", "#6366F1"),
        ("Phone", "📱", "#3B82F6"),
        ("Loan interest", "💳", "#DC2626"),
        ("Other expense", "💸", "#64748B"),
    ],
    TransactionType.income: [
        ("Salary", "💰", "#10B981"),
        ("Side income", "💵", "#059669"),
        ("Allowance", "🎁", "#34D399"),
        ("Other income", "💎", "#6EE7B7"),
    ],
}


def get_current_user_id() -> int:
    return get_settings().default_user_id


def percent_of(part: int, whole: int) -> int:
    """round(part / whole * 100) with halves rounded up; ``whole`` must be > 0."""
    return (part * 200 + whole) // (whole * 2)


def _live_transactions(user_id: int):
    return (Transaction.user_id == user_id, Transaction.deleted_at.is_(None))


def _day_sums():
    """income, expense and savings columns for a day-level aggregate."""
    is_savings = Transaction.savings_goal_id.isnot(None)
    income = func.coalesce(
        func.sum(
            case(
                (
                    ~is_savings & (Transaction.type == TransactionType.income),
                    Transaction.amount,
                ),
                else_=0,
            )
        ),
        0,
    )
    expense = func.coalesce(
        func.sum(
            case(
                (
                    ~is_savings & (Transaction.type == TransactionType.expense),
                    Transaction.amount,
                ),
                else_=0,
            )
        ),
        0,
    )
    savings = func.coalesce(
        func.sum(case((is_savings, Transaction.amount), else_=0)), 0
    )
    return income.label("income"), expense.label("expense"), savings.label("savings")


def balance_through(session: Session, user_id: int, target: date) -> int:
    signed = case(
        (Transaction.type == TransactionType.income, Transaction.amount),
        else_=-Transaction.amount,
    )
    stmt = select(func.coalesce(func.sum(signed), 0)).where(
        *_live_transactions(user_id), Transaction.date <= target
    )
    return int(session.execute(stmt).scalar_one() or 0)


def recompute_daily_balance(
    session: Session, user_id: int, target: date
) -> DailyBalance:
    """Recompute and upsert the snapshot row of ``user_id`` for ``target``.

    The balance is re-derived from a full scan of the ledger up to the end of
    the day, so calling this repeatedly for the same date is always safe.
    Does not commit.
    """
    session.flush()
    balance = balance_through(session, user_id, target)
    income, expense, savings = _day_sums()
    day = session.execute(
        select(income, expense, savings).where(
            *_live_transactions(user_id), Transaction.date == target
        )
    ).one()

    now = datetime.utcnow()
    stmt = dialect_insert(session, DailyBalance).values(
        user_id=user_id,
        date=target,
        income=int(day.income),
        expense=int(day.expense),
        savings=int(day.savings),
        balance=balance,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "date"],
        set_={
            "income": stmt.excluded.income,
            "expense": stmt.excluded.expense,
            "savings": stmt.excluded.savings,
            "balance": stmt.excluded.balance,
            "updated_at": now,
        },
    )
    session.execute(stmt)
    logger.debug(
        f"daily_balance_recomputed: user={user_id} date={target.isoformat()} "
        f"balance={balance}"
    )
    return session.scalars(
        select(DailyBalance)
        .where(DailyBalance.user_id == user_id, DailyBalance.date == target)
        .execution_options(populate_existing=True)
    ).one()


def refresh_daily_balances(session: Session, user_id: int, *dates: date) -> None:
    """Recompute the snapshots touched by a ledger mutation on ``dates``.

    With forward resync enabled, every existing snapshot after the earliest
    touched date is refreshed as well, since its cumulative balance moved.
    """
    targets = set(dates)
    if not targets:
        return
    if get_settings().resync_forward:
        earliest = min(targets)
        later = session.scalars(
            select(DailyBalance.date).where(
                DailyBalance.user_id == user_id, DailyBalance.date > earliest
            )
        ).all()
        targets.update(later)
    for target in sorted(targets):
        recompute_daily_balance(session, user_id, target)


def rebuild_daily_balances(session: Session, user_id: int) -> int:
    session.execute(delete(DailyBalance).where(DailyBalance.user_id == user_id))
    session.flush()

    dates = session.scalars(
        select(Transaction.date)
        .where(*_live_transactions(user_id))
        .group_by(Transaction.date)
        .order_by(Transaction.date)
    ).all()
    for target in dates:
        recompute_daily_balance(session, user_id, target)
    return len(dates)


def compute_daily_series(
    session: Session, user_id: int, period: Period
) -> list[DailyBalanceOut]:
    """Per-day balances for ``period`` derived from the ledger, not persisted."""
    running = balance_through(session, user_id, period.start - timedelta(days=1))
    income, expense, savings = _day_sums()
    rows = session.execute(
        select(Transaction.date, income, expense, savings)
        .where(
            *_live_transactions(user_id),
            Transaction.date.between(period.start, period.end),
        )
        .group_by(Transaction.date)
    ).all()
    by_day = {row.date: row for row in rows}

    series: list[DailyBalanceOut] = []
    for day in period.days():
        row = by_day.get(day)
        day_income = int(row.income) if row else 0
        day_expense = int(row.expense) if row else 0
        day_savings = int(row.savings) if row else 0
        running += day_income - day_expense - day_savings
        series.append(
            DailyBalanceOut(
                date=day,
                income=day_income,
                expense=day_expense,
                savings=day_savings,
                balance=running,
            )
        )
    return series


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def list_all(self, type: Optional[TransactionType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id, Category.deleted_at.is_(None))
            .order_by(Category.type, Category.name)
        )
        if type:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if (
            not category
            or category.user_id != self.user_id
            or category.deleted_at is not None
        ):
            raise NotFoundError("Category not found")
        return category

    def _ensure_unique(
        self, name: str, type: TransactionType, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.type == type,
            Category.deleted_at.is_(None),
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ConflictError("Category with this name already exists")

    def _in_use(self, category_id: int) -> bool:
        return (
            self.session.scalar(
                select(Transaction.id)
                .where(
                    *_live_transactions(self.user_id),
                    Transaction.category_id == category_id,
                )
                .limit(1)
            )
            is not None
        )

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty", field="name")
        self._ensure_unique(name, data.type)
        category = Category(
            user_id=self.user_id,
            name=name,
            type=data.type,
            color=data.color,
            icon=data.icon,
            default_budget=(
                data.default_budget if data.type == TransactionType.expense else None
            ),
        )
        with atomic(self.session, "category_create", user=self.user_id):
            self.session.add(category)
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty", field="name")
        self._ensure_unique(name, data.type, exclude_id=category.id)
        if data.type != category.type and self._in_use(category.id):
            raise ValidationError(
                "Category type cannot change while transactions use it", field="type"
            )
        with atomic(self.session, "category_update", user=self.user_id):
            category.name = name
            category.type = data.type
            category.color = data.color
            category.icon = data.icon
            category.default_budget = (
                data.default_budget if data.type == TransactionType.expense else None
            )
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        with atomic(self.session, "category_delete", user=self.user_id):
            category.deleted_at = datetime.utcnow()

    def seed_defaults(self) -> list[Category]:
        if self.list_all():
            raise ConflictError("Categories already exist")
        created: list[Category] = []
        with atomic(self.session, "category_seed", user=self.user_id):
            for type, entries in DEFAULT_CATEGORIES.items():
                for name, icon, color in entries:
                    category = Category(
                        user_id=self.user_id,
                        name=name,
                        type=type,
                        icon=icon,
                        color=color,
                    )
                    self.session.add(category)
                    created.append(category)
        logger.info(f"categories_seeded: user={self.user_id} count={len(created)}")
        return created


class TransactionService:
    _SORTS = {
        "recent": (Transaction.occurred_at, True),
        "oldest": (Transaction.occurred_at, False),
        "expensive": (Transaction.amount, True),
        "cheapest": (Transaction.amount, False),
    }

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def _resolve_category(
        self, category_id: Optional[int], type: TransactionType
    ) -> Optional[Category]:
        if category_id is None:
            return None
        category = CategoryService(self.session, self.user_id).get(category_id)
        if category.type != type:
            raise ValidationError("Category type mismatch", field="category_id")
        return category

    def create(self, data: TransactionIn) -> Transaction:
        self._resolve_category(data.category_id, data.type)
        if data.occurred_at is not None:
            occurred_at = to_local_naive(data.occurred_at)
        else:
            occurred_at = local_now()
        description = data.description.strip() if data.description else None
        txn = Transaction(
            user_id=self.user_id,
            date=occurred_at.date(),
            occurred_at=occurred_at,
            type=data.type,
            amount=data.amount,
            description=description or None,
            category_id=data.category_id,
        )
        with atomic(
            self.session,
            "transaction_create",
            user=self.user_id,
            date=txn.date.isoformat(),
        ):
            self.session.add(txn)
            self.session.flush()
            refresh_daily_balances(self.session, self.user_id, txn.date)
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                *_live_transactions(self.user_id), Transaction.id == transaction_id
            )
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionUpdateIn) -> Transaction:
        txn = self.get(transaction_id)
        fields = data.model_fields_set
        if txn.savings_goal_id is not None and fields & {"type", "amount", "category_id"}:
            raise ValidationError(
                "Savings transactions only allow description and date changes"
            )
        for required in ("type", "amount"):
            if required in fields and getattr(data, required) is None:
                raise ValidationError(f"{required} cannot be empty", field=required)

        new_type = data.type if "type" in fields else txn.type
        new_category_id = data.category_id if "category_id" in fields else txn.category_id
        self._resolve_category(new_category_id, new_type)

        old_date = txn.date
        with atomic(
            self.session,
            "transaction_update",
            user=self.user_id,
            transaction=txn.id,
        ):
            txn.type = new_type
            txn.category_id = new_category_id
            if "amount" in fields:
                txn.amount = data.amount
            if "description" in fields:
                txn.description = (data.description or "").strip() or None
            if "occurred_at" in fields and data.occurred_at is not None:
                txn.occurred_at = to_local_naive(data.occurred_at)
                txn.date = txn.occurred_at.date()
            self.session.flush()
            refresh_daily_balances(self.session, self.user_id, old_date, txn.date)
        self.session.refresh(txn)
        return txn

    def soft_delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        with atomic(
            self.session,
            "transaction_delete",
            user=self.user_id,
            date=txn.date.isoformat(),
        ):
            txn.deleted_at = datetime.utcnow()
            if txn.savings_goal_id is not None:
                # Reverse the contribution; the goal never drops below zero.
                self.session.execute(
                    update(SavingsGoal)
                    .where(SavingsGoal.id == txn.savings_goal_id)
                    .values(
                        current_amount=case(
                            (
                                SavingsGoal.current_amount > txn.amount,
                                SavingsGoal.current_amount - txn.amount,
                            ),
                            else_=0,
                        )
                    )
                )
            self.session.flush()
            refresh_daily_balances(self.session, self.user_id, txn.date)

    def list(self, query: TransactionQuery) -> TransactionPage:
        column, descending = self._SORTS[query.sort]
        stmt = select(Transaction).where(*_live_transactions(self.user_id))

        if query.year is not None and query.month is not None:
            period = month_period(query.year, query.month)
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        if query.type:
            stmt = stmt.where(Transaction.type == query.type)
        if query.category_ids:
            stmt = stmt.where(Transaction.category_id.in_(query.category_ids))
        if query.search:
            term = (
                query.search.replace("\\", "\\\\")
                .replace("%", "\\%")
                .replace("_", "\\_")
            )
            stmt = stmt.where(
                Transaction.description.ilike(f"%{term}%", escape="\\")
            )
        if query.min_amount is not None:
            stmt = stmt.where(Transaction.amount >= query.min_amount)
        if query.max_amount is not None:
            stmt = stmt.where(Transaction.amount <= query.max_amount)

        if query.cursor is not None:
            anchor = self.session.get(Transaction, query.cursor)
            if not anchor or anchor.user_id != self.user_id:
                raise ValidationError("Invalid cursor", field="cursor")
            value = getattr(anchor, column.key)
            if descending:
                stmt = stmt.where(
                    or_(
                        column < value,
                        and_(column == value, Transaction.id < anchor.id),
                    )
                )
            else:
                stmt = stmt.where(
                    or_(
                        column > value,
                        and_(column == value, Transaction.id > anchor.id),
                    )
                )

        if descending:
            stmt = stmt.order_by(column.desc(), Transaction.id.desc())
        else:
            stmt = stmt.order_by(column.asc(), Transaction.id.asc())

        items = self.session.scalars(stmt.limit(query.limit + 1)).all()
        has_more = len(items) > query.limit
        items = items[: query.limit]
        return TransactionPage(
            data=[TransactionOut.model_validate(txn) for txn in items],
            count=len(items),
            next_cursor=items[-1].id if has_more else None,
            has_more=has_more,
        )

    def recent(self, limit: int = 5) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(*_live_transactions(self.user_id))
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def oldest_date(self) -> Optional[date]:
        return self.session.scalar(
            select(func.min(Transaction.date)).where(*_live_transactions(self.user_id))
        )

    def today_summary(self, *, today: Optional[date] = None) -> TodaySummary:
        today = today or local_today()
        income, expense, _ = _day_sums()
        row = self.session.execute(
            select(income, expense, func.count(Transaction.id).label("count")).where(
                *_live_transactions(self.user_id), Transaction.date == today
            )
        ).one()
        return TodaySummary(
            date=today,
            income=int(row.income),
            expense=int(row.expense),
            count=int(row.count),
        )


class BudgetService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        auto_instantiate_budgets: Optional[bool] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()
        if auto_instantiate_budgets is None:
            auto_instantiate_budgets = get_settings().auto_instantiate_budgets
        self.auto_instantiate_budgets = auto_instantiate_budgets

    def list_for_month(self, year: int, month: int) -> list[Budget]:
        """The month's budget rows, overall first.

        Category defaults are instantiated for the month before listing
        unless auto-instantiation is disabled.
        """
        self.instantiate_month(year, month)
        return self.rows_for_month(year, month)

    def instantiate_month(self, year: int, month: int) -> int:
        period = month_period(year, month)
        if not self.auto_instantiate_budgets:
            return 0
        with atomic(
            self.session,
            "budget_auto_instantiation",
            user=self.user_id,
            month=period.slug,
        ):
            created = self.ensure_default_budgets(year, month)
        return created

    def rows_for_month(self, year: int, month: int) -> list[Budget]:
        month_period(year, month)
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.year == year,
                Budget.month == month,
            )
            .order_by(Budget.category_id.is_(None).desc(), Budget.created_at)
        )
        return self.session.scalars(stmt).all()

    def upsert(self, data: BudgetIn) -> Budget:
        if data.category_id is not None:
            category = CategoryService(self.session, self.user_id).get(
                data.category_id
            )
            if category.type != TransactionType.expense:
                raise ValidationError(
                    "Budgets can only be set for expense categories",
                    field="category_id",
                )

        now = datetime.utcnow()
        stmt = dialect_insert(self.session, Budget).values(
            user_id=self.user_id,
            year=data.year,
            month=data.month,
            category_id=data.category_id,
            amount=data.amount,
            created_at=now,
            updated_at=now,
        )
        update_set = {"amount": stmt.excluded.amount, "updated_at": now}
        if data.category_id is None:
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "year", "month"],
                index_where=Budget.category_id.is_(None),
                set_=update_set,
            )
        else:
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "category_id", "year", "month"],
                set_=update_set,
            )

        with atomic(
            self.session,
            "budget_upsert",
            user=self.user_id,
            month=f"{data.year}-{data.month:02d}",
        ):
            self.session.execute(stmt)
        return self.session.scalars(
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.year == data.year,
                Budget.month == data.month,
                Budget.category_id.is_(None)
                if data.category_id is None
                else Budget.category_id == data.category_id,
            )
            .execution_options(populate_existing=True)
        ).one()

    def delete(self, year: int, month: int, category_id: Optional[int]) -> None:
        stmt = delete(Budget).where(
            Budget.user_id == self.user_id,
            Budget.year == year,
            Budget.month == month,
            Budget.category_id.is_(None)
            if category_id is None
            else Budget.category_id == category_id,
        )
        with atomic(
            self.session, "budget_delete", user=self.user_id, month=f"{year}-{month:02d}"
        ):
            result = self.session.execute(stmt)
            if result.rowcount == 0:
                raise NotFoundError("Budget not found")

    def ensure_default_budgets(self, year: int, month: int) -> int:
        """Create the month's Budget rows for categories with a default budget.

        Only expense categories with a ``default_budget`` and no row for the
        month are considered. The insert is guarded by the unique constraint,
        so concurrent duplicate calls never produce two rows. Does not commit.
        """
        month_period(year, month)
        defaults = self.session.execute(
            select(Category.id, Category.default_budget).where(
                Category.user_id == self.user_id,
                Category.type == TransactionType.expense,
                Category.deleted_at.is_(None),
                Category.default_budget.isnot(None),
            )
        ).all()
        if not defaults:
            return 0

        existing = set(
            self.session.scalars(
                select(Budget.category_id).where(
                    Budget.user_id == self.user_id,
                    Budget.year == year,
                    Budget.month == month,
                    Budget.category_id.isnot(None),
                )
            ).all()
        )
        now = datetime.utcnow()
        rows = [
            {
                "user_id": self.user_id,
                "year": year,
                "month": month,
                "category_id": row.id,
                "amount": row.default_budget,
                "created_at": now,
                "updated_at": now,
            }
            for row in defaults
            if row.id not in existing
        ]
        if not rows:
            return 0

        stmt = (
            dialect_insert(self.session, Budget)
            .values(rows)
            .on_conflict_do_nothing(
                index_elements=["user_id", "category_id", "year", "month"]
            )
        )
        result = self.session.execute(stmt)
        created = max(result.rowcount or 0, 0)
        logger.info(
            f"budgets_instantiated: user={self.user_id} month={year}-{month:02d} "
            f"created={created}"
        )
        return created


@dataclass(frozen=True)
class DepositResult:
    goal: SavingsGoal
    transaction: Transaction


class SavingsGoalService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def get(self, goal_id: int) -> SavingsGoal:
        goal = self.session.get(SavingsGoal, goal_id)
        if not goal or goal.user_id != self.user_id or goal.deleted_at is not None:
            raise NotFoundError("Savings goal not found")
        return goal

    def _active_goals_stmt(self, today: date):
        return select(SavingsGoal).where(
            SavingsGoal.user_id == self.user_id,
            SavingsGoal.deleted_at.is_(None),
            or_(
                SavingsGoal.target_year > today.year,
                and_(
                    SavingsGoal.target_year == today.year,
                    SavingsGoal.target_month >= today.month,
                ),
            ),
        )

    def active_goals(self, *, today: Optional[date] = None) -> list[SavingsGoal]:
        today = today or local_today()
        stmt = self._active_goals_stmt(today).order_by(
            SavingsGoal.created_at.desc(), SavingsGoal.id.desc()
        )
        return self.session.scalars(stmt).all()

    def _clear_other_primaries(self, goal_id: int) -> None:
        self.session.execute(
            update(SavingsGoal)
            .where(
                SavingsGoal.user_id == self.user_id,
                SavingsGoal.deleted_at.is_(None),
                SavingsGoal.id != goal_id,
                SavingsGoal.is_primary.is_(True),
            )
            .values(is_primary=False)
        )

    def list_with_progress(
        self, *, today: Optional[date] = None
    ) -> list[SavingsGoalProgress]:
        today = today or local_today()
        goals = self.active_goals(today=today)
        period = month_period(today.year, today.month)
        contributions: dict[int, int] = {}
        if goals:
            rows = self.session.execute(
                select(
                    Transaction.savings_goal_id,
                    func.coalesce(func.sum(Transaction.amount), 0).label("total"),
                )
                .where(
                    *_live_transactions(self.user_id),
                    Transaction.savings_goal_id.in_([g.id for g in goals]),
                    Transaction.date.between(period.start, period.end),
                )
                .group_by(Transaction.savings_goal_id)
            ).all()
            contributions = {row.savings_goal_id: int(row.total) for row in rows}

        progress: list[SavingsGoalProgress] = []
        for goal in goals:
            months = max(
                1, months_between(goal.created_at.date(), goal.target_year, goal.target_month)
            )
            monthly_target = -(-goal.target_amount // months)
            this_month = contributions.get(goal.id, 0)
            progress.append(
                SavingsGoalProgress(
                    id=goal.id,
                    name=goal.name,
                    icon=goal.icon,
                    current_amount=goal.current_amount,
                    target_amount=goal.target_amount,
                    target_year=goal.target_year,
                    target_month=goal.target_month,
                    is_primary=goal.is_primary,
                    progress_percent=(
                        percent_of(goal.current_amount, goal.target_amount)
                        if goal.target_amount > 0
                        else 0
                    ),
                    monthly_target=monthly_target,
                    this_month_savings=this_month,
                    monthly_required=max(0, monthly_target - this_month),
                )
            )
        return progress

    def overview(self) -> SavingsOverview:
        row = self.session.execute(
            select(
                func.coalesce(func.sum(SavingsGoal.current_amount), 0).label("current"),
                func.coalesce(func.sum(SavingsGoal.target_amount), 0).label("target"),
                func.count(SavingsGoal.id).label("count"),
            ).where(
                SavingsGoal.user_id == self.user_id, SavingsGoal.deleted_at.is_(None)
            )
        ).one()
        current, target = int(row.current), int(row.target)
        return SavingsOverview(
            total_current_amount=current,
            total_target_amount=target,
            goals_count=int(row.count),
            progress_percent=percent_of(current, target) if target > 0 else 0,
        )

    def create(self, data: SavingsGoalIn) -> SavingsGoal:
        goal = SavingsGoal(
            user_id=self.user_id,
            name=data.name.strip(),
            icon=data.icon,
            target_amount=data.target_amount,
            current_amount=data.current_amount,
            target_year=data.target_year,
            target_month=data.target_month,
            is_primary=False,
        )
        with atomic(self.session, "savings_goal_create", user=self.user_id):
            self.session.add(goal)
            self.session.flush()
            if data.is_primary:
                self._clear_other_primaries(goal.id)
                goal.is_primary = True
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: SavingsGoalUpdateIn) -> SavingsGoal:
        goal = self.get(goal_id)
        with atomic(
            self.session, "savings_goal_update", user=self.user_id, goal=goal.id
        ):
            goal.name = data.name.strip()
            goal.icon = data.icon
            goal.target_amount = data.target_amount
            goal.target_year = data.target_year
            goal.target_month = data.target_month
            if data.current_amount is not None:
                goal.current_amount = data.current_amount
            if data.is_primary is True:
                self._clear_other_primaries(goal.id)
                goal.is_primary = True
            elif data.is_primary is False:
                goal.is_primary = False
        self.session.refresh(goal)
        return goal

    def set_primary(self, goal_id: int, is_primary: bool) -> SavingsGoal:
        goal = self.get(goal_id)
        with atomic(
            self.session, "savings_goal_set_primary", user=self.user_id, goal=goal.id
        ):
            if is_primary:
                self._clear_other_primaries(goal.id)
            goal.is_primary = is_primary
        self.session.refresh(goal)
        logger.info(
            f"primary_goal_set: user={self.user_id} goal={goal.id} "
            f"is_primary={is_primary}"
        )
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        with atomic(
            self.session, "savings_goal_delete", user=self.user_id, goal=goal.id
        ):
            goal.deleted_at = datetime.utcnow()
            goal.is_primary = False

    def deposit(
        self,
        goal_id: int,
        amount: int,
        *,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DepositResult:
        """Add ``amount`` to a goal and record it in the ledger.

        The goal increment, the linked expense transaction and the snapshot
        for today are written in one unit of work; on any failure none of
        them persist.
        """
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be greater than 0", field="amount")
        goal = self.get(goal_id)
        occurred_at = to_local_naive(now) if now else local_now()
        txn = Transaction(
            user_id=self.user_id,
            date=occurred_at.date(),
            occurred_at=occurred_at,
            type=TransactionType.expense,
            amount=amount,
            description=(description or "").strip() or f"{goal.name} savings",
            category_id=None,
            savings_goal_id=goal.id,
        )
        with atomic(
            self.session,
            "savings_deposit",
            user=self.user_id,
            goal=goal.id,
            date=txn.date.isoformat(),
        ):
            self.session.execute(
                update(SavingsGoal)
                .where(SavingsGoal.id == goal.id)
                .values(current_amount=SavingsGoal.current_amount + amount)
            )
            self.session.add(txn)
            self.session.flush()
            refresh_daily_balances(self.session, self.user_id, txn.date)
        self.session.refresh(goal)
        self.session.refresh(txn)
        logger.info(
            f"savings_deposit: user={self.user_id} goal={goal.id} amount={amount} "
            f"current={goal.current_amount}"
        )
        return DepositResult(goal=goal, transaction=txn)


class DailyBalanceService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def recompute(self, target: date) -> DailyBalance:
        with atomic(
            self.session,
            "daily_balance_recompute",
            user=self.user_id,
            date=target.isoformat(),
        ):
            row = recompute_daily_balance(self.session, self.user_id, target)
        return row

    def _snapshots(self, period: Period) -> list[DailyBalance]:
        stmt = (
            select(DailyBalance)
            .where(
                DailyBalance.user_id == self.user_id,
                DailyBalance.date.between(period.start, period.end),
            )
            .order_by(DailyBalance.date)
        )
        return self.session.scalars(stmt).all()

    def _snapshots_or_computed(self, period: Period) -> list[DailyBalanceOut]:
        rows = self._snapshots(period)
        if rows:
            return [DailyBalanceOut.model_validate(row) for row in rows]
        logger.debug(
            f"daily_balance_fallback: user={self.user_id} "
            f"start={period.start.isoformat()} end={period.end.isoformat()}"
        )
        return compute_daily_series(self.session, self.user_id, period)

    def recent(
        self, days: int, *, today: Optional[date] = None
    ) -> list[DailyBalanceOut]:
        return self._snapshots_or_computed(recent_period(days, today=today))

    def monthly(self, year: int, month: int) -> list[DailyBalanceOut]:
        return self._snapshots_or_computed(month_period(year, month))

    def rebuild(self) -> int:
        with atomic(self.session, "daily_balance_rebuild", user=self.user_id):
            count = rebuild_daily_balances(self.session, self.user_id)
        logger.info(f"daily_balance_rebuilt: user={self.user_id} days={count}")
        return count


class SummaryService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        auto_instantiate_budgets: Optional[bool] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()
        self.budgets = BudgetService(
            session,
            self.user_id,
            auto_instantiate_budgets=auto_instantiate_budgets,
        )

    def _ledger_totals(self, period: Period) -> dict[TransactionType, tuple[int, int]]:
        # Deposits are EXPENSE rows and count here as well as under savings.
        rows = self.session.execute(
            select(
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount), 0).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(
                *_live_transactions(self.user_id),
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.type)
        ).all()
        return {row.type: (int(row.total), int(row.count)) for row in rows}

    def _expense_by_category(self, period: Period) -> list[tuple[int, int, int]]:
        rows = self.session.execute(
            select(
                Transaction.category_id,
                func.coalesce(func.sum(Transaction.amount), 0).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(
                *_live_transactions(self.user_id),
                Transaction.type == TransactionType.expense,
                Transaction.category_id.isnot(None),
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.category_id)
        ).all()
        return [(row.category_id, int(row.total), int(row.count)) for row in rows]

    def _savings_contributions(self, period: Period) -> tuple[int, int]:
        row = self.session.execute(
            select(
                func.coalesce(func.sum(Transaction.amount), 0).label("total"),
                func.count(Transaction.id).label("count"),
            ).where(
                *_live_transactions(self.user_id),
                Transaction.savings_goal_id.isnot(None),
                Transaction.date.between(period.start, period.end),
            )
        ).one()
        return int(row.total), int(row.count)

    def _budgets(self, year: int, month: int) -> tuple[Optional[int], dict[int, int]]:
        overall: Optional[int] = None
        by_category: dict[int, int] = {}
        for budget in self.budgets.rows_for_month(year, month):
            if budget.category_id is None:
                overall = budget.amount
            else:
                by_category[budget.category_id] = budget.amount
        return overall, by_category

    def monthly_summary(
        self, year: int, month: int, *, today: Optional[date] = None
    ) -> MonthlySummary:
        period = month_period(year, month)
        today = today or local_today()

        self.budgets.instantiate_month(year, month)

        totals = self._ledger_totals(period)
        income, income_count = totals.get(TransactionType.income, (0, 0))
        expense, expense_count = totals.get(TransactionType.expense, (0, 0))
        category_stats = self._expense_by_category(period)
        savings_total, savings_count = self._savings_contributions(period)
        active_goals = SavingsGoalService(self.session, self.user_id).active_goals(
            today=today
        )
        overall_budget, category_budgets = self._budgets(year, month)

        categories: dict[int, Category] = {}
        category_ids = [category_id for category_id, _, _ in category_stats]
        if category_ids:
            for category in self.session.scalars(
                select(Category).where(
                    Category.user_id == self.user_id, Category.id.in_(category_ids)
                )
            ):
                categories[category.id] = category

        category_list: list[CategorySummary] = []
        for category_id, spent, count in category_stats:
            category = categories.get(category_id)
            if category is None:
                continue
            if category_id in category_budgets:
                effective_budget: Optional[int] = category_budgets[category_id]
            else:
                effective_budget = category.default_budget
            category_list.append(
                CategorySummary(
                    id=category.id,
                    name=category.name,
                    icon=category.icon,
                    color=category.color,
                    count=count,
                    total=spent,
                    budget=effective_budget,
                    budget_usage_percent=(
                        percent_of(spent, effective_budget)
                        if effective_budget
                        else None
                    ),
                )
            )
        category_list.sort(key=lambda c: c.total, reverse=True)

        budget_amount = overall_budget or 0
        usage_percent = (
            min(100, max(0, percent_of(expense, budget_amount)))
            if budget_amount > 0
            else 0
        )

        primary = next((goal for goal in active_goals if goal.is_primary), None)
        primary_summary = None
        if primary is not None:
            primary_summary = PrimaryGoalSummary(
                id=primary.id,
                name=primary.name,
                icon=primary.icon,
                current_amount=primary.current_amount,
                target_amount=primary.target_amount,
                progress_percent=(
                    percent_of(primary.current_amount, primary.target_amount)
                    if primary.target_amount > 0
                    else 0
                ),
            )

        return MonthlySummary(
            period=PeriodOut(year=year, month=month),
            summary=SummaryTotals(
                total_income=income,
                total_expense=expense,
                total_savings=savings_total,
                net_amount=income - expense,
                balance=income - expense - savings_total,
            ),
            budget=BudgetUsage(
                amount=budget_amount,
                used=expense,
                remaining=max(0, budget_amount - expense),
                usage_percent=usage_percent,
            ),
            categories=category_list,
            transaction_count=TransactionCount(
                income=income_count,
                expense=expense_count,
                total=income_count + expense_count,
            ),
            savings=SavingsSummary(
                total_amount=savings_total,
                target_amount=sum(goal.target_amount for goal in active_goals),
                count=savings_count,
                primary_goal=primary_summary,
            ),
        )
