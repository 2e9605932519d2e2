import logging
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from budgets import BudgetReconciler
from config import get_settings
from models import Category, RecurringFrequency, RecurringRule, Transaction
from periods import add_months


logger = logging.getLogger(__name__)


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def calculate_next_date(
    frequency: RecurringFrequency,
    from_date: date,
    *,
    anchor_day: Optional[int] = None,
) -> date:
    """Return the occurrence one period after ``from_date``.

    Monthly and yearly steps aim for ``anchor_day`` (the rule's start day) and
    snap to the month end when the target month is shorter, so a rule started
    on the 31st runs on Jan 31, Feb 29, Mar 31 rather than drifting to the 29th.
    """
    if frequency == RecurringFrequency.daily:
        return from_date + timedelta(days=1)
    if frequency == RecurringFrequency.weekly:
        return from_date + timedelta(days=7)
    if frequency == RecurringFrequency.monthly:
        return add_months(from_date, 1, desired_day=anchor_day)
    if frequency == RecurringFrequency.yearly:
        return add_months(from_date, 12, desired_day=anchor_day)
    raise ValueError(f"Unsupported frequency: {frequency}")


def next_date_for(rule: RecurringRule) -> date:
    return calculate_next_date(
        rule.frequency, rule.next_execute_date, anchor_day=rule.start_date.day
    )


def _end_of_day(day: date) -> datetime:
    return datetime.combine(day + timedelta(days=1), time.min)


def is_expired(rule: RecurringRule, now: datetime) -> bool:
    return rule.end_date is not None and _end_of_day(rule.end_date) <= now


def is_time_to_execute(rule: RecurringRule, now: datetime) -> bool:
    return (
        rule.is_active
        and datetime.combine(rule.next_execute_date, time.min) < now
        and not is_expired(rule, now)
    )


class RecurringEngine:
    def __init__(
        self, session: Session, reconciler: Optional[BudgetReconciler] = None
    ) -> None:
        self.session = session
        self.reconciler = reconciler or BudgetReconciler(session)

    def due_rule_ids(self, now: datetime) -> list[int]:
        stmt = (
            select(RecurringRule.id)
            .where(
                RecurringRule.is_active.is_(True),
                RecurringRule.next_execute_date <= now.date(),
            )
            .order_by(RecurringRule.next_execute_date, RecurringRule.id)
        )
        return list(self.session.scalars(stmt).all())

    def process_due_rules(self, now: Optional[datetime] = None) -> int:
        now = now or local_now()
        try:
            rule_ids = self.due_rule_ids(now)
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("recurring_run: failed to load due rules")
            return 0

        count = 0
        for rule_id in rule_ids:
            try:
                rule = self.session.get(RecurringRule, rule_id, populate_existing=True)
                if rule is None:
                    continue
                posted = self.process_rule(rule, now)
                self.session.commit()
            except Exception:
                self.session.rollback()
                logger.exception(f"recurring_error: rule_id={rule_id}")
                continue
            if posted:
                count += 1
        logger.info(f"recurring_run: due={len(rule_ids)} processed={count}")
        return count

    def process_rule(self, rule: RecurringRule, now: datetime) -> bool:
        """Materialize the rule's pending occurrence, if it is still ours to take.

        The occurrence is claimed by a conditional update on
        ``next_execute_date``; a concurrent tick that advanced the rule first
        makes the claim match zero rows and nothing is created. Does not commit.
        """
        if not is_time_to_execute(rule, now):
            if rule.is_active and is_expired(rule, now):
                rule.is_active = False
                self.session.flush()
                logger.warning(
                    f"recurring_expired: rule_id={rule.id} "
                    f"pending={rule.next_execute_date} end_date={rule.end_date}"
                )
            return False

        category = self.session.get(Category, rule.category_id)
        if category is None or category.user_id != rule.user_id:
            logger.warning(
                f"recurring_skip: rule_id={rule.id} reason=category_missing "
                f"category_id={rule.category_id}"
            )
            return False

        occurrence = rule.next_execute_date
        next_date = next_date_for(rule)
        still_active = rule.end_date is None or next_date <= rule.end_date

        result = self.session.execute(
            update(RecurringRule)
            .where(
                RecurringRule.id == rule.id,
                RecurringRule.is_active.is_(True),
                RecurringRule.next_execute_date == occurrence,
            )
            .values(next_execute_date=next_date, is_active=still_active)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.expire(rule)
            logger.info(
                f"recurring_skip: rule_id={rule.id} reason=already_advanced "
                f"occurrence={occurrence}"
            )
            return False

        existing = self.session.execute(
            select(Transaction.id)
            .where(
                Transaction.recurring_rule_id == rule.id,
                Transaction.date == occurrence,
            )
            .limit(1)
        ).scalar_one_or_none()
        if existing is None:
            txn = Transaction(
                user_id=rule.user_id,
                category_id=rule.category_id,
                amount_cents=rule.amount_cents,
                description=rule.description,
                date=occurrence,
                recurring_rule_id=rule.id,
                is_recurring=True,
            )
            self.session.add(txn)
            self.session.flush()
            self.reconciler.reconcile(rule.category_id, occurrence, rule.user_id)

        self.session.refresh(rule)
        if not still_active:
            logger.info(
                f"recurring_finished: rule_id={rule.id} last_occurrence={occurrence}"
            )
        return existing is None
