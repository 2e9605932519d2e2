from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from budgets import BudgetReconciler, cents_to_units, usage_percentage
from database import Base
from models import (
    Budget,
    BudgetPeriod,
    Category,
    Notification,
    NotificationType,
    TransactionType,
    User,
)
from schemas import BudgetIn, TransactionIn
from services import BudgetService, TransactionService


def _setup():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)

    user = User(email="anna@example.com", name="Anna")
    session.add(user)
    session.flush()
    groceries = Category(user_id=user.id, name="Groceries", type=TransactionType.expense)
    transport = Category(user_id=user.id, name="Transport", type=TransactionType.expense)
    salary = Category(user_id=user.id, name="Salary", type=TransactionType.income)
    session.add_all([groceries, transport, salary])
    session.commit()
    return session, user, groceries, transport, salary


def _budget(session: Session, user: User, name: str, category_id=None) -> Budget:
    return BudgetService(session, user_id=user.id).create(
        BudgetIn(
            name=name,
            amount_cents=100_000,
            period=BudgetPeriod.monthly,
            start_date=date(2024, 1, 1),
            category_id=category_id,
        )
    )


def _txn(category: Category, cents: int, day: date, description: str = "") -> TransactionIn:
    return TransactionIn(
        amount_cents=cents, category_id=category.id, date=day, description=description
    )


def test_usage_percentage_handles_zero_amount():
    assert usage_percentage(Budget(amount_cents=0, spent_cents=500)) == 0.0
    assert usage_percentage(Budget(amount_cents=10_000, spent_cents=8_500)) == 85.0
    assert cents_to_units(123_456) == 1234.56


def test_budget_window_defaults_from_period():
    session, user, groceries, *_ = _setup()
    budget = _budget(session, user, "Food", groceries.id)
    assert budget.start_date == date(2024, 1, 1)
    assert budget.end_date == date(2024, 1, 31)


def test_budget_rejects_income_category():
    session, user, _, _, salary = _setup()
    with pytest.raises(ValueError):
        _budget(session, user, "Wages", salary.id)


def test_category_and_overall_budgets_track_expenses_only():
    session, user, groceries, transport, salary = _setup()
    food = _budget(session, user, "Food", groceries.id)
    overall = _budget(session, user, "Everything")

    service = TransactionService(session, user_id=user.id)
    service.create(_txn(groceries, 30_000, date(2024, 1, 10)))
    service.create(_txn(transport, 5_000, date(2024, 1, 12)))
    service.create(_txn(salary, 500_000, date(2024, 1, 5)))
    service.create(_txn(groceries, 20_000, date(2024, 2, 1)))

    session.refresh(food)
    session.refresh(overall)
    assert food.spent_cents == 30_000
    assert overall.spent_cents == 35_000


def test_budget_created_after_transactions_picks_them_up():
    session, user, groceries, *_ = _setup()
    TransactionService(session, user_id=user.id).create(
        _txn(groceries, 12_000, date(2024, 1, 3))
    )
    food = _budget(session, user, "Food", groceries.id)
    assert food.spent_cents == 12_000


def test_delete_reduces_spent_by_exactly_the_amount():
    session, user, groceries, *_ = _setup()
    food = _budget(session, user, "Food", groceries.id)
    service = TransactionService(session, user_id=user.id)
    service.create(_txn(groceries, 30_000, date(2024, 1, 10)))
    doomed = service.create(_txn(groceries, 20_000, date(2024, 1, 20)))
    session.refresh(food)
    assert food.spent_cents == 50_000

    service.soft_delete(doomed.id)
    session.refresh(food)
    assert food.spent_cents == 30_000

    service.restore(doomed.id)
    session.refresh(food)
    assert food.spent_cents == 50_000


def test_bulk_delete_reconciles_every_scope():
    session, user, groceries, transport, _ = _setup()
    food = _budget(session, user, "Food", groceries.id)
    travel = _budget(session, user, "Travel", transport.id)
    service = TransactionService(session, user_id=user.id)
    txns = service.bulk_create(
        [
            _txn(groceries, 10_000, date(2024, 1, 2)),
            _txn(transport, 4_000, date(2024, 1, 3)),
        ]
    )
    session.refresh(food)
    session.refresh(travel)
    assert (food.spent_cents, travel.spent_cents) == (10_000, 4_000)

    assert service.bulk_delete([t.id for t in txns]) == 2
    session.refresh(food)
    session.refresh(travel)
    assert (food.spent_cents, travel.spent_cents) == (0, 0)


def test_update_moving_category_reconciles_old_and_new_budgets():
    session, user, groceries, transport, _ = _setup()
    food = _budget(session, user, "Food", groceries.id)
    travel = _budget(session, user, "Travel", transport.id)
    overall = _budget(session, user, "Everything")
    service = TransactionService(session, user_id=user.id)
    txn = service.create(_txn(groceries, 15_000, date(2024, 1, 8)))

    service.update(txn.id, _txn(transport, 15_000, date(2024, 1, 8)))
    for budget in (food, travel, overall):
        session.refresh(budget)
    assert food.spent_cents == 0
    assert travel.spent_cents == 15_000
    assert overall.spent_cents == 15_000


def test_update_moving_date_out_of_window():
    session, user, groceries, *_ = _setup()
    food = _budget(session, user, "Food", groceries.id)
    service = TransactionService(session, user_id=user.id)
    txn = service.create(_txn(groceries, 15_000, date(2024, 1, 8)))

    service.update(txn.id, _txn(groceries, 15_000, date(2024, 2, 8)))
    session.refresh(food)
    assert food.spent_cents == 0


def test_reconcile_is_idempotent_and_repairs_drift():
    session, user, groceries, *_ = _setup()
    food = _budget(session, user, "Food", groceries.id)
    TransactionService(session, user_id=user.id).create(
        _txn(groceries, 7_500, date(2024, 1, 15))
    )
    food.spent_cents = 999_999
    session.commit()

    reconciler = BudgetReconciler(session)
    reconciler.reconcile(groceries.id, date(2024, 1, 15), user.id)
    first = food.spent_cents
    reconciler.reconcile(groceries.id, date(2024, 1, 15), user.id)
    assert first == food.spent_cents == 7_500


def test_uncategorized_scope_only_touches_overall_budgets():
    session, user, groceries, *_ = _setup()
    food = _budget(session, user, "Food", groceries.id)
    overall = _budget(session, user, "Everything")

    affected = BudgetReconciler(session).affected_budgets(None, date(2024, 1, 5), user.id)
    assert [b.id for b in affected] == [overall.id]
    assert food.id not in [b.id for b in affected]


def test_other_users_transactions_are_ignored():
    session, user, groceries, *_ = _setup()
    other = User(email="boris@example.com")
    session.add(other)
    session.flush()
    theirs = Category(user_id=other.id, name="Groceries", type=TransactionType.expense)
    session.add(theirs)
    session.commit()

    overall = _budget(session, user, "Everything")
    TransactionService(session, user_id=other.id).create(
        _txn(theirs, 40_000, date(2024, 1, 10))
    )
    BudgetReconciler(session).reconcile_all(user.id)
    assert overall.spent_cents == 0


def test_budget_delete_keeps_notification_history():
    session, user, groceries, *_ = _setup()
    food = _budget(session, user, "Food", groceries.id)
    session.add(
        Notification(
            user_id=user.id,
            type=NotificationType.budget,
            title="⚠️ Budget at 80%",
            message="Food is 85.0% used",
            budget_id=food.id,
            threshold=80,
        )
    )
    session.commit()

    BudgetService(session, user_id=user.id).delete(food.id)
    notification = session.query(Notification).one()
    session.refresh(notification)
    assert notification.budget_id is None
