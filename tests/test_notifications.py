import http.client
import json
from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import (
    Budget,
    BudgetPeriod,
    Category,
    Notification,
    NotificationImportance,
    NotificationType,
    TransactionType,
    User,
)
from notifications import BudgetThresholdNotifier, importance_for
from schemas import NotificationFilters, TransactionIn
from services import NotificationService, TransactionService


class RecordingSink:
    def __init__(self):
        self.sent = []

    def send_message(self, chat_id, text):
        self.sent.append((chat_id, text))


class BrokenSink:
    def __init__(self):
        self.calls = 0

    def send_message(self, chat_id, text):
        self.calls += 1
        raise RuntimeError("Failed to deliver Telegram message")


def _setup(chat_id="12345", amount_cents=100_000, spent_cents=0):
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)

    user = User(email="anna@example.com", name="Anna", telegram_chat_id=chat_id)
    session.add(user)
    session.flush()
    groceries = Category(user_id=user.id, name="Groceries", type=TransactionType.expense)
    session.add(groceries)
    session.flush()
    budget = Budget(
        user_id=user.id,
        name="Food",
        amount_cents=amount_cents,
        period=BudgetPeriod.monthly,
        spent_cents=spent_cents,
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 31),
        category_id=groceries.id,
    )
    session.add(budget)
    session.commit()
    return session, user, groceries, budget


def _budget_notifications(session: Session) -> list[Notification]:
    return (
        session.query(Notification)
        .filter(Notification.type == NotificationType.budget)
        .order_by(Notification.id)
        .all()
    )


def test_importance_rises_at_exceeded():
    assert importance_for(80) == NotificationImportance.normal
    assert importance_for(100) == NotificationImportance.high
    assert importance_for(120) == NotificationImportance.high


def test_warning_threshold_creates_one_record_and_one_push():
    session, user, _, budget = _setup(spent_cents=85_000)
    sink = RecordingSink()

    created = BudgetThresholdNotifier(session, sink).check_single_budget(budget)

    assert [n.threshold for n in created] == [80]
    notification = created[0]
    assert notification.importance == NotificationImportance.normal
    assert notification.is_read is False
    assert notification.title == "⚠️ Budget at 80%"
    payload = json.loads(notification.data)
    assert payload == {
        "budgetId": budget.id,
        "threshold": 80,
        "usage": 85.0,
        "amount": 1000.0,
        "spent": 850.0,
    }
    assert len(sink.sent) == 1
    assert sink.sent[0][0] == "12345"
    assert "85.0%" in sink.sent[0][1]


def test_repeated_checks_do_not_duplicate():
    session, user, _, budget = _setup(spent_cents=85_000)
    sink = RecordingSink()
    notifier = BudgetThresholdNotifier(session, sink)

    for _ in range(3):
        notifier.check_thresholds(user.id)

    assert len(_budget_notifications(session)) == 1
    assert len(sink.sent) == 1


def test_thresholds_fire_in_order_as_spending_grows():
    session, user, groceries, budget = _setup()
    sink = RecordingSink()
    notifier = BudgetThresholdNotifier(session, sink)
    service = TransactionService(session, user_id=user.id)

    fired = []
    for cents in (70_000, 25_000, 15_000, 15_000):
        service.create(
            TransactionIn(amount_cents=cents, category_id=groceries.id, date=date(2024, 1, 9))
        )
        created = notifier.check_single_budget(session.get(Budget, budget.id))
        fired.append([n.threshold for n in created])

    # Usage goes 70% -> 95% -> 110% -> 125%.
    assert fired == [[], [80], [100], [120]]
    assert [n.threshold for n in _budget_notifications(session)] == [80, 100, 120]
    assert len(sink.sent) == 3


def test_jump_past_every_threshold_creates_all_in_ascending_order():
    session, user, _, budget = _setup(spent_cents=130_000)

    created = BudgetThresholdNotifier(session).check_single_budget(budget)

    assert [n.threshold for n in created] == [80, 100, 120]
    assert [n.importance for n in created] == [
        NotificationImportance.normal,
        NotificationImportance.high,
        NotificationImportance.high,
    ]
    assert created[1].title == "🚨 Budget exceeded!"
    assert created[2].title == "🔥 Critical overspend!"


def test_zero_amount_budget_never_notifies():
    session, user, _, budget = _setup(amount_cents=0, spent_cents=50_000)
    assert BudgetThresholdNotifier(session).check_single_budget(budget) == []
    assert _budget_notifications(session) == []


def test_failed_push_keeps_in_app_record():
    session, user, _, budget = _setup(spent_cents=101_000)
    sink = BrokenSink()

    created = BudgetThresholdNotifier(session, sink).check_single_budget(budget)

    assert [n.threshold for n in created] == [80, 100]
    assert sink.calls == 2
    assert len(_budget_notifications(session)) == 2


def test_user_without_chat_id_gets_in_app_record_only():
    session, user, _, budget = _setup(chat_id=None, spent_cents=90_000)
    sink = RecordingSink()

    created = BudgetThresholdNotifier(session, sink).check_single_budget(budget)

    assert len(created) == 1
    assert sink.sent == []


def test_existing_record_blocks_renotification_until_purged():
    session, user, _, budget = _setup(spent_cents=90_000)
    notifier = BudgetThresholdNotifier(session)
    notifier.check_thresholds(user.id)

    # Usage dips then climbs back; the pair stays quiet.
    budget.spent_cents = 10_000
    session.commit()
    assert notifier.check_thresholds(user.id) == 0
    budget.spent_cents = 90_000
    session.commit()
    assert notifier.check_thresholds(user.id) == 0

    NotificationService(session, user_id=user.id).delete_all()
    assert notifier.check_thresholds(user.id) == 1


def test_check_thresholds_only_touches_own_budgets():
    session, user, groceries, budget = _setup(spent_cents=90_000)
    other = User(email="boris@example.com")
    session.add(other)
    session.flush()
    session.add(
        Budget(
            user_id=other.id,
            name="Theirs",
            amount_cents=1_000,
            period=BudgetPeriod.monthly,
            spent_cents=5_000,
            start_date=date(2024, 1, 1),
            end_date=date(2024, 1, 31),
        )
    )
    session.commit()

    assert BudgetThresholdNotifier(session).check_thresholds(user.id) == 1
    assert {n.user_id for n in _budget_notifications(session)} == {user.id}


def test_notification_service_filters_and_read_state():
    session, user, _, budget = _setup(spent_cents=130_000)
    BudgetThresholdNotifier(session).check_single_budget(budget)
    service = NotificationService(session, user_id=user.id)

    items, total = service.list(NotificationFilters())
    assert total == 3
    assert service.unread_count() == 3

    high, high_total = service.list(
        NotificationFilters(importance=NotificationImportance.high)
    )
    assert high_total == 2
    assert {n.threshold for n in high} == {100, 120}

    page, paged_total = service.list(NotificationFilters(limit=1, offset=1))
    assert len(page) == 1
    assert paged_total == 3

    read = service.mark_as_read(items[0].id)
    assert read.is_read is True
    assert read.read_at is not None
    assert service.unread_count() == 2

    assert service.mark_all_as_read() == 2
    assert service.unread_count() == 0
    _, unread_total = service.list(NotificationFilters(is_read=False))
    assert unread_total == 0


class TruncatedSink:
    def send_message(self, chat_id, text):
        raise http.client.IncompleteRead(b"")


def test_unexpected_push_error_is_logged_not_raised():
    session, user, _, budget = _setup(spent_cents=85_000)

    created = BudgetThresholdNotifier(session, TruncatedSink()).check_single_budget(
        budget
    )

    assert [n.threshold for n in created] == [80]
    assert len(_budget_notifications(session)) == 1
