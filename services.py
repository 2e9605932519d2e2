from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from budgets import BudgetReconciler
from models import (
    Budget,
    Category,
    Notification,
    RecurringRule,
    Transaction,
    TransactionType,
    User,
)
from periods import Period, budget_window
from recurrence import RecurringEngine
from schemas import (
    BudgetIn,
    CategoryIn,
    NotificationFilters,
    RecurringRuleIn,
    TransactionIn,
    UserIn,
)


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    query: Optional[str] = None
    recurring_only: bool = False


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: UserIn) -> User:
        existing = self.session.scalar(
            select(User).where(func.lower(User.email) == data.email.lower())
        )
        if existing:
            raise ValueError("User with this email already exists")
        user = User(
            email=data.email.strip(),
            name=data.name,
            telegram_chat_id=data.telegram_chat_id,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise ValueError("User not found")
        return user

    def list_ids(self) -> list[int]:
        return list(self.session.scalars(select(User.id).order_by(User.id)).all())

    def set_telegram_chat_id(self, user_id: int, chat_id: Optional[str]) -> User:
        user = self.get(user_id)
        user.telegram_chat_id = chat_id.strip() if chat_id else None
        self.session.commit()
        logger.info(
            f"telegram_link: user_id={user_id} linked={user.telegram_chat_id is not None}"
        )
        return user


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                func.lower(Category.name) == data.name.lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            color=data.color,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class TransactionService:
    """Ledger writes. Each mutation reconciles the budgets it touches before
    committing, so ``Budget.spent_cents`` is only stale inside the request."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.reconciler = BudgetReconciler(session)

    def _check_category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        return category

    def _reconcile(self, scopes: set[tuple[int, date]]) -> None:
        for category_id, txn_date in sorted(scopes):
            self.reconciler.reconcile(category_id, txn_date, self.user_id)

    def create(self, data: TransactionIn) -> Transaction:
        self._check_category(data.category_id)
        txn = Transaction(
            user_id=self.user_id,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            description=data.description,
            date=data.date,
            is_recurring=False,
        )
        self.session.add(txn)
        self.session.flush()
        self._reconcile({(txn.category_id, txn.date)})
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def bulk_create(self, items: list[TransactionIn]) -> list[Transaction]:
        if not items:
            raise ValueError("No transactions to create")
        for category_id in {item.category_id for item in items}:
            self._check_category(category_id)

        txns = [
            Transaction(
                user_id=self.user_id,
                category_id=item.category_id,
                amount_cents=item.amount_cents,
                description=item.description,
                date=item.date,
                is_recurring=False,
            )
            for item in items
        ]
        self.session.add_all(txns)
        self.session.flush()
        self._reconcile({(t.category_id, t.date) for t in txns})
        self.session.commit()
        for txn in txns:
            self.session.refresh(txn)
        return txns

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalar(stmt)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        self._check_category(data.category_id)

        old_scope = (txn.category_id, txn.date)
        txn.amount_cents = data.amount_cents
        txn.description = data.description
        txn.date = data.date
        txn.category_id = data.category_id
        self.session.flush()

        self._reconcile({old_scope, (txn.category_id, txn.date)})
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def soft_delete(self, transaction_id: int) -> None:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise ValueError("Transaction not found")
        if txn.deleted_at is not None:
            return
        txn.deleted_at = datetime.utcnow()
        self.session.flush()
        self._reconcile({(txn.category_id, txn.date)})
        self.session.commit()

    def bulk_delete(self, transaction_ids: list[int]) -> int:
        txns = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.id.in_(transaction_ids),
                Transaction.deleted_at.is_(None),
            )
        ).all()
        if not txns:
            raise ValueError("Transactions not found")
        now = datetime.utcnow()
        for txn in txns:
            txn.deleted_at = now
        self.session.flush()
        self._reconcile({(t.category_id, t.date) for t in txns})
        self.session.commit()
        return len(txns)

    def restore(self, transaction_id: int) -> None:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise ValueError("Transaction not found")
        if txn.deleted_at is None:
            return
        txn.deleted_at = None
        self.session.flush()
        self._reconcile({(txn.category_id, txn.date)})
        self.session.commit()

    def list(
        self,
        period: Period,
        filters: TransactionFilters,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if filters.type:
            stmt = stmt.join(Transaction.category).where(Category.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(
                func.lower(func.coalesce(Transaction.description, "")).like(like)
            )
        if filters.recurring_only:
            stmt = stmt.where(Transaction.is_recurring.is_(True))
        return self.session.scalars(stmt).unique().all()


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.reconciler = BudgetReconciler(session)

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        if category.type != TransactionType.expense:
            raise ValueError("Budgets can only be set for expense categories")

    @staticmethod
    def _window(data: BudgetIn) -> tuple[date, date]:
        end = data.end_date or budget_window(data.period, data.start_date).end
        if end < data.start_date:
            raise ValueError("Budget end date must not be before its start date")
        return data.start_date, end

    def list(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.start_date.desc(), Budget.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise ValueError("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        self._check_category(data.category_id)
        start, end = self._window(data)
        budget = Budget(
            user_id=self.user_id,
            name=data.name.strip(),
            amount_cents=data.amount_cents,
            period=data.period,
            start_date=start,
            end_date=end,
            category_id=data.category_id,
            spent_cents=0,
        )
        self.session.add(budget)
        self.session.flush()
        self.reconciler.recompute(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        budget = self.get(budget_id)
        self._check_category(data.category_id)
        start, end = self._window(data)
        budget.name = data.name.strip()
        budget.amount_cents = data.amount_cents
        budget.period = data.period
        budget.start_date = start
        budget.end_date = end
        budget.category_id = data.category_id
        self.session.flush()
        self.reconciler.recompute(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.execute(
            update(Notification)
            .where(Notification.budget_id == budget.id)
            .values(budget_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.delete(budget)
        self.session.commit()


class RecurringRuleService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _check_category(self, category_id: int) -> None:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")

    def get(self, rule_id: int) -> RecurringRule:
        rule = self.session.get(RecurringRule, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise ValueError("Rule not found")
        return rule

    def list(self) -> list[RecurringRule]:
        stmt = (
            select(RecurringRule)
            .options(joinedload(RecurringRule.category))
            .where(RecurringRule.user_id == self.user_id)
            .order_by(RecurringRule.created_at.desc(), RecurringRule.id.desc())
        )
        return self.session.scalars(stmt).all()

    def create(self, data: RecurringRuleIn) -> RecurringRule:
        self._check_category(data.category_id)
        if data.end_date and data.end_date < data.start_date:
            raise ValueError("End date must not be before start date")
        rule = RecurringRule(
            user_id=self.user_id,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            description=data.description,
            frequency=data.frequency,
            start_date=data.start_date,
            end_date=data.end_date,
            next_execute_date=data.start_date,
            is_active=True,
        )
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def _has_occurrences(self, rule_id: int) -> bool:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.recurring_rule_id == rule_id
        )
        return (self.session.execute(stmt).scalar_one() or 0) > 0

    def update(self, rule_id: int, data: RecurringRuleIn) -> RecurringRule:
        rule = self.get(rule_id)
        if data.category_id != rule.category_id:
            self._check_category(data.category_id)
        if data.end_date and data.end_date < data.start_date:
            raise ValueError("End date must not be before start date")

        rule.amount_cents = data.amount_cents
        rule.description = data.description
        rule.category_id = data.category_id
        rule.frequency = data.frequency
        rule.start_date = data.start_date
        rule.end_date = data.end_date
        # The schedule only moves forward once an occurrence has been posted.
        if not self._has_occurrences(rule.id):
            rule.next_execute_date = data.start_date
        elif data.start_date > rule.next_execute_date:
            rule.next_execute_date = data.start_date
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def toggle(self, rule_id: int) -> RecurringRule:
        rule = self.get(rule_id)
        rule.is_active = not rule.is_active
        self.session.commit()
        return rule

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        if self._has_occurrences(rule.id):
            raise ValueError(
                "Rule has generated transactions; deactivate it instead of deleting"
            )
        self.session.delete(rule)
        self.session.commit()
        logger.info(f"recurring_rule_deleted: rule_id={rule_id}")

    def occurrences(self, rule_id: int) -> list[Transaction]:
        rule = self.get(rule_id)
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.recurring_rule_id == rule.id,
                Transaction.deleted_at.is_(None),
            )
            .order_by(Transaction.date.desc())
        )
        return self.session.scalars(stmt).all()

    def process_due(self, now: Optional[datetime] = None) -> int:
        engine = RecurringEngine(self.session)
        return engine.process_due_rules(now)


class NotificationService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(self, filters: NotificationFilters) -> tuple[list[Notification], int]:
        stmt = select(Notification).where(Notification.user_id == self.user_id)
        if filters.type:
            stmt = stmt.where(Notification.type == filters.type)
        if filters.is_read is not None:
            stmt = stmt.where(Notification.is_read.is_(filters.is_read))
        if filters.importance:
            stmt = stmt.where(Notification.importance == filters.importance)

        total = int(
            self.session.execute(
                select(func.count()).select_from(stmt.subquery())
            ).scalar_one()
            or 0
        )
        items = self.session.scalars(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(filters.offset)
            .limit(filters.limit)
        ).all()
        return items, total

    def unread_count(self) -> int:
        stmt = select(func.count(Notification.id)).where(
            Notification.user_id == self.user_id,
            Notification.is_read.is_(False),
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def get(self, notification_id: int) -> Notification:
        notification = self.session.get(Notification, notification_id)
        if not notification or notification.user_id != self.user_id:
            raise ValueError("Notification not found")
        return notification

    def mark_as_read(self, notification_id: int) -> Notification:
        notification = self.get(notification_id)
        notification.mark_as_read()
        self.session.commit()
        return notification

    def mark_all_as_read(self) -> int:
        result = self.session.execute(
            update(Notification)
            .where(
                Notification.user_id == self.user_id,
                Notification.is_read.is_(False),
            )
            .values(is_read=True, read_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return int(result.rowcount or 0)

    def delete(self, notification_id: int) -> None:
        notification = self.get(notification_id)
        self.session.delete(notification)
        self.session.commit()

    def delete_all(self) -> int:
        notifications = self.session.scalars(
            select(Notification).where(Notification.user_id == self.user_id)
        ).all()
        for notification in notifications:
            self.session.delete(notification)
        self.session.commit()
        return len(notifications)
