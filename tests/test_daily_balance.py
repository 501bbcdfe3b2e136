from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.orm import Session

from config import get_settings
from database import Base
from errors import ValidationError
from models import DailyBalance, TransactionType
from schemas import CategoryIn, SavingsGoalIn, TransactionIn
from services import (
    CategoryService,
    DailyBalanceService,
    SavingsGoalService,
    TransactionService,
)


def _snapshot(session: Session, day: date) -> DailyBalance:
    return session.scalars(
        select(DailyBalance)
        .where(DailyBalance.user_id == 1, DailyBalance.date == day)
        .execution_options(populate_existing=True)
    ).one()


def _income(txns: TransactionService, amount: int, when: datetime):
    return txns.create(
        TransactionIn(type=TransactionType.income, amount=amount, occurred_at=when)
    )


def _expense(txns: TransactionService, amount: int, when: datetime, category_id=None):
    return txns.create(
        TransactionIn(
            type=TransactionType.expense,
            amount=amount,
            occurred_at=when,
            category_id=category_id,
        )
    )


def test_recompute_twice_keeps_one_row_with_the_same_values() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, 1)
        _income(txns, 100_000, datetime(2025, 3, 10, 9, 0))
        _expense(txns, 30_000, datetime(2025, 3, 10, 18, 30))

        balances = DailyBalanceService(session, 1)
        first = balances.recompute(date(2025, 3, 10))
        second = balances.recompute(date(2025, 3, 10))

        assert (first.income, first.expense, first.balance) == (100_000, 30_000, 70_000)
        assert (second.income, second.expense, second.balance) == (
            100_000,
            30_000,
            70_000,
        )
        count = session.scalar(
            select(func.count(DailyBalance.id)).where(
                DailyBalance.date == date(2025, 3, 10)
            )
        )
        assert count == 1


def test_same_day_transactions_accumulate_into_one_snapshot() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session, 1).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        txns = TransactionService(session, 1)
        _income(txns, 1_000_000, datetime(2025, 3, 9, 12, 0))
        _expense(txns, 12_000, datetime(2025, 3, 10, 8, 0), food.id)
        _expense(txns, 8_000, datetime(2025, 3, 10, 13, 0), food.id)

        row = _snapshot(session, date(2025, 3, 10))
        assert row.income == 0
        assert row.expense == 20_000
        assert row.balance == 980_000
        assert session.scalar(select(func.count(DailyBalance.id))) == 2


def test_backdated_delete_resyncs_later_snapshots() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, 1)
        salary = _income(txns, 100_000, datetime(2025, 3, 1, 10, 0))
        _expense(txns, 20_000, datetime(2025, 3, 5, 10, 0))
        assert _snapshot(session, date(2025, 3, 5)).balance == 80_000

        txns.soft_delete(salary.id)

        first = _snapshot(session, date(2025, 3, 1))
        assert (first.income, first.balance) == (0, 0)
        assert _snapshot(session, date(2025, 3, 5)).balance == -20_000


def test_rebuild_repairs_snapshots_left_stale_without_forward_resync(
    monkeypatch,
) -> None:
    monkeypatch.setattr(get_settings(), "resync_forward", False)
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, 1)
        salary = _income(txns, 100_000, datetime(2025, 3, 1, 10, 0))
        _expense(txns, 20_000, datetime(2025, 3, 5, 10, 0))
        txns.soft_delete(salary.id)

        assert _snapshot(session, date(2025, 3, 5)).balance == 80_000

        rebuilt = DailyBalanceService(session, 1).rebuild()

        assert rebuilt == 1
        assert _snapshot(session, date(2025, 3, 5)).balance == -20_000
        assert session.scalar(select(func.count(DailyBalance.id))) == 1


def test_savings_deposit_is_reported_separately_in_the_snapshot() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, 1)
        _income(txns, 500_000, datetime(2025, 3, 5, 9, 0))
        goals = SavingsGoalService(session, 1)
        goal = goals.create(
            SavingsGoalIn(
                name="Trip", target_amount=1_200_000, target_year=2025, target_month=12
            )
        )
        goals.deposit(goal.id, 50_000, now=datetime(2025, 3, 5, 20, 0))

        row = _snapshot(session, date(2025, 3, 5))
        assert row.income == 500_000
        assert row.expense == 0
        assert row.savings == 50_000
        assert row.balance == 450_000


def test_monthly_series_is_computed_when_no_snapshots_exist() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, 1)
        _income(txns, 10_000, datetime(2025, 1, 31, 12, 0))
        _expense(txns, 3_000, datetime(2025, 2, 3, 12, 0))
        _income(txns, 5_000, datetime(2025, 2, 10, 12, 0))
        session.execute(delete(DailyBalance))
        session.commit()

        series = DailyBalanceService(session, 1).monthly(2025, 2)

        assert len(series) == 28
        assert series[0].date == date(2025, 2, 1)
        assert series[0].balance == 10_000
        assert series[2].expense == 3_000
        assert series[2].balance == 7_000
        assert series[9].income == 5_000
        assert series[-1].balance == 12_000
        assert session.scalar(select(func.count(DailyBalance.id))) == 0


def test_recent_returns_stored_snapshots_in_the_window() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, 1)
        _income(txns, 10_000, datetime(2025, 2, 20, 12, 0))
        _expense(txns, 1_000, datetime(2025, 3, 2, 12, 0))
        _expense(txns, 2_000, datetime(2025, 3, 5, 12, 0))

        rows = DailyBalanceService(session, 1).recent(5, today=date(2025, 3, 5))

        assert [row.date for row in rows] == [date(2025, 3, 2), date(2025, 3, 5)]
        assert [row.balance for row in rows] == [9_000, 7_000]


def test_recent_rejects_an_empty_window() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(ValidationError):
            DailyBalanceService(session, 1).recent(0, today=date(2025, 3, 5))


def test_monthly_series_reports_same_day_income_and_expense() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, 1)
        _income(txns, 100_000, datetime(2024, 1, 15, 9, 0))
        _expense(txns, 30_000, datetime(2024, 1, 15, 19, 0))

        (row,) = DailyBalanceService(session, 1).monthly(2024, 1)

        assert row.date == date(2024, 1, 15)
        assert (row.income, row.expense, row.savings) == (100_000, 30_000, 0)
        assert row.balance == 70_000
