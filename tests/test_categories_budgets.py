from datetime import datetime

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import ConflictError, NotFoundError, ValidationError
from models import Budget, TransactionType
from schemas import BudgetIn, CategoryIn, TransactionIn
from services import (
    DEFAULT_CATEGORIES,
    BudgetService,
    CategoryService,
    TransactionService,
)


def test_category_names_are_unique_per_type_until_deleted() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session)
        food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))

        with pytest.raises(ConflictError):
            categories.create(CategoryIn(name="food ", type=TransactionType.expense))

        # Same name under the other type is fine
        categories.create(CategoryIn(name="Food", type=TransactionType.income))

        categories.delete(food.id)
        again = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
        assert again.id != food.id
        with pytest.raises(NotFoundError):
            categories.get(food.id)


def test_income_categories_never_carry_a_default_budget() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session)
        salary = categories.create(
            CategoryIn(name="Salary", type=TransactionType.income, default_budget=1_000)
        )
        assert salary.default_budget is None

        rent = categories.update(
            salary.id,
            CategoryIn(name="Rent", type=TransactionType.expense, default_budget=700_000),
        )
        assert rent.type == TransactionType.expense
        assert rent.default_budget == 700_000

        with pytest.raises(ValidationError):
            categories.create(CategoryIn(name="   ", type=TransactionType.expense))


def test_seed_defaults_only_on_an_empty_book() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session)
        created = categories.seed_defaults()

        expected = sum(len(entries) for entries in DEFAULT_CATEGORIES.values())
        assert len(created) == expected
        assert len(categories.list_all(TransactionType.income)) == len(
            DEFAULT_CATEGORIES[TransactionType.income]
        )
        with pytest.raises(ConflictError):
            categories.seed_defaults()


def test_budget_upsert_keeps_one_row_per_scope() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        budgets = BudgetService(session)

        budgets.upsert(BudgetIn(year=2025, month=3, amount=1_000_000))
        overall = budgets.upsert(BudgetIn(year=2025, month=3, amount=1_200_000))
        budgets.upsert(BudgetIn(year=2025, month=3, category_id=food.id, amount=300_000))
        scoped = budgets.upsert(
            BudgetIn(year=2025, month=3, category_id=food.id, amount=350_000)
        )

        assert overall.category_id is None
        assert overall.amount == 1_200_000
        assert scoped.amount == 350_000
        assert session.scalar(select(func.count(Budget.id))) == 2

        listed = budgets.list_for_month(2025, 3)
        assert [b.category_id for b in listed] == [None, food.id]


def test_budget_rules() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        salary = CategoryService(session).create(
            CategoryIn(name="Salary", type=TransactionType.income)
        )
        budgets = BudgetService(session)

        with pytest.raises(ValidationError):
            budgets.upsert(
                BudgetIn(year=2025, month=3, category_id=salary.id, amount=1_000)
            )
        with pytest.raises(NotFoundError):
            budgets.delete(2025, 3, None)
        with pytest.raises(ValidationError):
            budgets.list_for_month(2025, 13)

        budgets.upsert(BudgetIn(year=2025, month=3, amount=500_000))
        budgets.delete(2025, 3, None)
        assert budgets.list_for_month(2025, 3) == []


def test_default_budgets_are_instantiated_once() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session)
        food = categories.create(
            CategoryIn(name="Food", type=TransactionType.expense, default_budget=300_000)
        )
        transport = categories.create(
            CategoryIn(
                name="Transport", type=TransactionType.expense, default_budget=100_000
            )
        )
        categories.create(CategoryIn(name="Gifts", type=TransactionType.expense))
        budgets = BudgetService(session)
        budgets.upsert(
            BudgetIn(year=2025, month=4, category_id=transport.id, amount=80_000)
        )

        assert budgets.ensure_default_budgets(2025, 4) == 1
        session.commit()
        assert budgets.ensure_default_budgets(2025, 4) == 0
        session.commit()

        amounts = {b.category_id: b.amount for b in budgets.list_for_month(2025, 4)}
        assert amounts == {food.id: 300_000, transport.id: 80_000}


def test_listing_a_month_instantiates_default_budgets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session).create(
            CategoryIn(name="Food", type=TransactionType.expense, default_budget=600_000)
        )
        budgets = BudgetService(session, auto_instantiate_budgets=True)

        listed = budgets.list_for_month(2025, 4)
        assert [(b.category_id, b.amount) for b in listed] == [(food.id, 600_000)]

        budgets.list_for_month(2025, 4)
        count = session.scalar(
            select(func.count(Budget.id)).where(Budget.year == 2025, Budget.month == 4)
        )
        assert count == 1

        manual = BudgetService(session, auto_instantiate_budgets=False)
        assert manual.list_for_month(2025, 5) == []


def test_user_zero_is_not_replaced_by_the_default_user() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        zero = CategoryService(session, 0)
        zero.create(CategoryIn(name="Food", type=TransactionType.expense))

        assert zero.user_id == 0
        assert [c.name for c in zero.list_all()] == ["Food"]
        assert CategoryService(session, 1).list_all() == []


def test_category_type_is_locked_while_transactions_use_it() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session)
        food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
        txn = TransactionService(session).create(
            TransactionIn(
                type=TransactionType.expense,
                amount=8_000,
                category_id=food.id,
                occurred_at=datetime(2025, 3, 3, 12, 0),
            )
        )

        with pytest.raises(ValidationError) as excinfo:
            categories.update(
                food.id, CategoryIn(name="Food", type=TransactionType.income)
            )
        assert excinfo.value.field == "type"

        renamed = categories.update(
            food.id, CategoryIn(name="Groceries", type=TransactionType.expense)
        )
        assert renamed.name == "Groceries"

        TransactionService(session).soft_delete(txn.id)
        flipped = categories.update(
            food.id, CategoryIn(name="Groceries", type=TransactionType.income)
        )
        assert flipped.type == TransactionType.income
