import json
import logging
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from budgets import cents_to_units, usage_percentage
from models import (
    Budget,
    Notification,
    NotificationImportance,
    NotificationType,
    User,
)


logger = logging.getLogger(__name__)

THRESHOLDS: tuple[int, ...] = (80, 100, 120)


class MessageSink(Protocol):
    def send_message(self, chat_id: Optional[str], text: str) -> None: ...


def importance_for(threshold: int) -> NotificationImportance:
    if threshold >= 100:
        return NotificationImportance.high
    return NotificationImportance.normal


def _scope_label(budget: Budget) -> str:
    return budget.category.name if budget.category else "Overall"


def notification_content(budget: Budget, threshold: int, usage: float) -> tuple[str, str]:
    label = _scope_label(budget)
    spent = cents_to_units(budget.spent_cents)
    amount = cents_to_units(budget.amount_cents)
    if threshold == 80:
        return (
            "⚠️ Budget at 80%",
            f'Budget "{budget.name}" ({label}) is {usage:.1f}% used. '
            f"Spent {spent:.2f} of {amount:.2f}",
        )
    if threshold == 100:
        return (
            "🚨 Budget exceeded!",
            f'Budget "{budget.name}" ({label}) is over by {usage - 100:.1f}%! '
            f"Spent {spent:.2f} of {amount:.2f}",
        )
    if threshold == 120:
        return (
            "🔥 Critical overspend!",
            f'Budget "{budget.name}" ({label}) is critically over by '
            f"{usage - 100:.1f}%! Spent {spent:.2f} of {amount:.2f}",
        )
    return (
        "📊 Budget update",
        f'Budget "{budget.name}" ({label}) is {usage:.1f}% used',
    )


def external_message(budget: Budget, threshold: int, usage: float) -> str:
    label = _scope_label(budget)
    spent = cents_to_units(budget.spent_cents)
    amount = cents_to_units(budget.amount_cents)
    if threshold == 80:
        return (
            f"⚠️ Budget warning\n\nBudget: {budget.name} ({label})\n"
            f"Used: {usage:.1f}%\nSpent: {spent:.2f} of {amount:.2f}\n\n"
            "Keep an eye on spending in this category."
        )
    if threshold == 100:
        return (
            f"🚨 BUDGET EXCEEDED!\n\nBudget: {budget.name} ({label})\n"
            f"Over by: {usage - 100:.1f}%\nSpent: {spent:.2f} of {amount:.2f}"
        )
    return (
        f"🔥 CRITICAL OVERSPEND!\n\nBudget: {budget.name} ({label})\n"
        f"Over by: {usage - 100:.1f}%\nSpent: {spent:.2f} of {amount:.2f}\n\n"
        "Spending needs attention now."
    )


def threshold_payload(budget: Budget, threshold: int, usage: float) -> str:
    return json.dumps(
        {
            "budgetId": budget.id,
            "threshold": threshold,
            "usage": round(usage, 2),
            "amount": cents_to_units(budget.amount_cents),
            "spent": cents_to_units(budget.spent_cents),
        }
    )


class BudgetThresholdNotifier:
    """Raises one alert per (budget, threshold) crossing.

    Alerts are committed before the external push, so a bot outage never
    loses the in-app record. There is no reset window: once a pair has been
    notified it stays quiet even if usage dips and climbs again.
    """

    def __init__(self, session: Session, sink: Optional[MessageSink] = None) -> None:
        self.session = session
        self.sink = sink

    def notification_exists(self, budget_id: int, threshold: int) -> bool:
        stmt = (
            select(Notification.id)
            .where(
                Notification.type == NotificationType.budget,
                Notification.budget_id == budget_id,
                Notification.threshold == threshold,
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def check_thresholds(self, user_id: int) -> int:
        budgets = self.session.scalars(
            select(Budget).where(Budget.user_id == user_id).order_by(Budget.id)
        ).all()
        created = 0
        for budget in budgets:
            budget_id = budget.id
            try:
                created += len(self.check_single_budget(budget))
            except Exception:
                self.session.rollback()
                logger.exception(f"budget_threshold_error: budget_id={budget_id}")
        return created

    def check_single_budget(self, budget: Budget) -> list[Notification]:
        usage = usage_percentage(budget)
        created: list[Notification] = []
        for threshold in THRESHOLDS:
            if usage < threshold:
                break
            if self.notification_exists(budget.id, threshold):
                continue

            title, message = notification_content(budget, threshold, usage)
            text = external_message(budget, threshold, usage)
            notification = Notification(
                user_id=budget.user_id,
                type=NotificationType.budget,
                title=title,
                message=message,
                importance=importance_for(threshold),
                is_read=False,
                data=threshold_payload(budget, threshold, usage),
                budget_id=budget.id,
                threshold=threshold,
            )
            self.session.add(notification)
            try:
                self.session.commit()
            except IntegrityError:
                # Another writer recorded this pair between our check and commit.
                self.session.rollback()
                logger.info(
                    f"budget_threshold_skip: budget_id={budget.id} "
                    f"threshold={threshold} reason=already_notified"
                )
                continue

            created.append(notification)
            logger.info(
                f"budget_threshold: budget_id={budget.id} threshold={threshold} "
                f"usage={usage:.1f}"
            )
            self._push(budget.user_id, text)
        return created

    def _push(self, user_id: int, text: str) -> None:
        if self.sink is None:
            return
        user = self.session.get(User, user_id)
        if user is None or not user.telegram_chat_id:
            return
        try:
            self.sink.send_message(user.telegram_chat_id, text)
        except Exception as exc:
            logger.warning(f"telegram_send_failed: user_id={user_id} error={exc}")
