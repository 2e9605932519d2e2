import logging
from datetime import date
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import Budget, Category, Transaction, TransactionType


logger = logging.getLogger(__name__)


def cents_to_units(cents: int) -> float:
    return round(cents / 100, 2)


def usage_percentage(budget: Budget) -> float:
    if not budget.amount_cents:
        return 0.0
    return budget.spent_cents / budget.amount_cents * 100


class BudgetReconciler:
    """Keeps ``Budget.spent_cents`` in sync with the ledger.

    Every pass is a full recompute over the budget's date window, never an
    incremental delta, so edits and deletes cannot leave the cache drifting.
    Nothing here commits; callers own the unit of work.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def spent_for_window(
        self,
        user_id: int,
        category_id: Optional[int],
        start: date,
        end: date,
    ) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == user_id,
            Transaction.deleted_at.is_(None),
            Transaction.date.between(start, end),
        )
        if category_id is not None:
            stmt = stmt.where(Transaction.category_id == category_id)
        else:
            stmt = stmt.join(Category, Transaction.category_id == Category.id).where(
                Category.type == TransactionType.expense
            )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def recompute(self, budget: Budget) -> int:
        spent = self.spent_for_window(
            budget.user_id, budget.category_id, budget.start_date, budget.end_date
        )
        if spent != budget.spent_cents:
            logger.debug(
                f"budget_reconcile: budget_id={budget.id} "
                f"spent_cents={budget.spent_cents}->{spent}"
            )
        budget.spent_cents = spent
        return spent

    def affected_budgets(
        self, category_id: Optional[int], affected_date: date, user_id: int
    ) -> list[Budget]:
        stmt = select(Budget).where(
            Budget.user_id == user_id,
            Budget.start_date <= affected_date,
            Budget.end_date >= affected_date,
        )
        if category_id is not None:
            stmt = stmt.where(
                (Budget.category_id == category_id) | Budget.category_id.is_(None)
            )
        else:
            stmt = stmt.where(Budget.category_id.is_(None))
        return self.session.scalars(stmt.order_by(Budget.id)).all()

    def reconcile(
        self, category_id: Optional[int], affected_date: date, user_id: int
    ) -> list[Budget]:
        # Pending ledger writes must be visible to the SUM below.
        self.session.flush()
        budgets = self.affected_budgets(category_id, affected_date, user_id)
        for budget in budgets:
            self.recompute(budget)
        self.session.flush()
        return budgets

    def reconcile_all(self, user_id: int) -> list[Budget]:
        self.session.flush()
        budgets = self.session.scalars(
            select(Budget).where(Budget.user_id == user_id).order_by(Budget.id)
        ).all()
        for budget in budgets:
            self.recompute(budget)
        self.session.flush()
        return budgets
