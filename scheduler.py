import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from budgets import BudgetReconciler
from config import get_settings
from database import get_session_factory, session_scope
from models import User
from notifications import BudgetThresholdNotifier, MessageSink
from recurrence import RecurringEngine, local_now
from telegram_bridge import TelegramClient


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    processed: int = 0
    users_checked: int = 0
    notifications_created: int = 0
    failed_users: list[int] = field(default_factory=list)


def check_user_budgets(
    factory: sessionmaker, sink: Optional[MessageSink], user_id: int
) -> int:
    with session_scope(factory) as session:
        BudgetReconciler(session).reconcile_all(user_id)
        session.commit()
        return BudgetThresholdNotifier(session, sink).check_thresholds(user_id)


def run_tick(
    factory: sessionmaker,
    sink: Optional[MessageSink] = None,
    now: Optional[datetime] = None,
) -> TickResult:
    """One full sweep: post due recurring rules, then check every user's budgets.

    Holds no state between calls; anything that failed is still due next time.
    """
    now = now or local_now()
    result = TickResult()

    try:
        with factory() as session:
            result.processed = RecurringEngine(session).process_due_rules(now)
    except Exception:
        logger.exception("scheduler_tick: recurring pass failed")

    try:
        with factory() as session:
            user_ids = list(session.scalars(select(User.id).order_by(User.id)).all())
    except SQLAlchemyError:
        logger.exception("scheduler_tick: failed to load users")
        return result

    for user_id in user_ids:
        try:
            created = check_user_budgets(factory, sink, user_id)
        except Exception:
            logger.exception(f"budget_check_error: user_id={user_id}")
            result.failed_users.append(user_id)
            continue
        result.users_checked += 1
        result.notifications_created += created
    return result


class SchedulerManager:
    def __init__(
        self,
        factory: Optional[sessionmaker] = None,
        sink: Optional[MessageSink] = None,
    ) -> None:
        self.settings = get_settings()
        self.factory = factory
        self.sink = sink
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _resolve(self) -> tuple[sessionmaker, MessageSink]:
        if self.factory is None:
            self.factory = get_session_factory()
        if self.sink is None:
            self.sink = TelegramClient.from_settings()
        return self.factory, self.sink

    def run_now(self, source: str = "manual") -> TickResult:
        factory, sink = self._resolve()
        logger.info(f"scheduler_run: source={source}")
        result = run_tick(factory, sink)
        logger.info(
            f"scheduler_run: source={source} processed={result.processed} "
            f"users={result.users_checked} "
            f"notifications={result.notifications_created} "
            f"failed_users={len(result.failed_users)}"
        )
        return result

    def _run_job(self, source: str) -> None:
        try:
            self.run_now(source)
        except Exception:
            # Keep the interval job alive; the next tick is a full sweep anyway.
            logger.exception(f"scheduler_run: source={source} failed")

    def start(self) -> None:
        self._run_job("startup")

        trigger = IntervalTrigger(hours=self.settings.scheduler_interval_hours)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="recurring_and_budgets",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with {self.settings.scheduler_interval_hours}h interval"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
