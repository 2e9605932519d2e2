import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from sqlalchemy.orm import Session

from budgets import cents_to_units, usage_percentage
from config import get_settings
from database import get_session_factory
from models import (
    Budget,
    Notification,
    NotificationImportance,
    NotificationType,
    RecurringRule,
    Transaction,
    TransactionType,
)
from periods import Period, resolve_period
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BulkDeleteIn,
    BulkTransactionIn,
    CategoryIn,
    NotificationFilters,
    RecurringRuleIn,
    TelegramLinkIn,
    TransactionIn,
    UserIn,
)
from services import (
    BudgetService,
    CategoryService,
    NotificationService,
    RecurringRuleService,
    TransactionFilters,
    TransactionService,
    UserService,
    get_current_user_id,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Hub")


def get_db():
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()
    else:
        logger.info("Scheduler disabled via FINANCEHUB_SCHEDULER_ENABLED")


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    type_param = request.query_params.get("type")
    category_param = request.query_params.get("category")
    txn_type = None
    if type_param:
        try:
            txn_type = TransactionType(type_param)
        except ValueError:
            txn_type = None
    category_id = None
    if category_param:
        try:
            category_id = int(category_param)
        except ValueError:
            category_id = None
    return TransactionFilters(
        type=txn_type,
        category_id=category_id,
        query=request.query_params.get("q"),
        recurring_only=request.query_params.get("recurring") == "true",
    )


def transaction_out(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "amount_cents": txn.amount_cents,
        "description": txn.description,
        "date": txn.date.isoformat(),
        "category_id": txn.category_id,
        "recurring_rule_id": txn.recurring_rule_id,
        "is_recurring": txn.is_recurring,
    }


def budget_out(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "name": budget.name,
        "amount_cents": budget.amount_cents,
        "spent_cents": budget.spent_cents,
        "usage": round(usage_percentage(budget), 2),
        "period": budget.period.value,
        "start_date": budget.start_date.isoformat(),
        "end_date": budget.end_date.isoformat(),
        "category_id": budget.category_id,
    }


def rule_out(rule: RecurringRule) -> dict[str, object]:
    return {
        "id": rule.id,
        "amount": cents_to_units(rule.amount_cents),
        "amount_cents": rule.amount_cents,
        "description": rule.description,
        "category_id": rule.category_id,
        "frequency": rule.frequency.value,
        "start_date": rule.start_date.isoformat(),
        "end_date": rule.end_date.isoformat() if rule.end_date else None,
        "next_execute_date": rule.next_execute_date.isoformat(),
        "is_active": rule.is_active,
    }


def notification_out(notification: Notification) -> dict[str, object]:
    return {
        "id": notification.id,
        "type": notification.type.value,
        "title": notification.title,
        "message": notification.message,
        "importance": notification.importance.value,
        "is_read": notification.is_read,
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
        "data": notification.data,
        "created_at": notification.created_at.isoformat(),
    }


@app.get("/")
def health():
    return {"status": "success", "message": "Finance Hub API is running"}


def user_out(user) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "telegram_linked": bool(user.telegram_chat_id),
    }


@app.post("/api/users", status_code=201)
def create_user(data: UserIn, db: Session = Depends(get_db)):
    try:
        user = UserService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return user_out(user)


@app.get("/api/users/me")
def current_user(db: Session = Depends(get_db)):
    try:
        user = UserService(db).get(get_current_user_id())
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return user_out(user)


@app.put("/api/users/me/telegram")
def link_telegram(data: TelegramLinkIn, db: Session = Depends(get_db)):
    try:
        user = UserService(db).set_telegram_chat_id(
            get_current_user_id(), data.chat_id
        )
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return user_out(user)


@app.get("/api/categories")
def list_categories(db: Session = Depends(get_db)):
    return [
        {"id": c.id, "name": c.name, "type": c.type.value, "color": c.color}
        for c in CategoryService(db).list_all()
    ]


@app.post("/api/categories", status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": category.id, "name": category.name, "type": category.type.value}


@app.get("/api/transactions")
def list_transactions(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    filters = filters_from_request(request)
    page = max(int(request.query_params.get("page", "1")), 1)
    limit = min(max(int(request.query_params.get("limit", "50")), 1), 100)
    offset = (page - 1) * limit
    items = TransactionService(db).list(period, filters, limit=limit + 1, offset=offset)
    has_more = len(items) > limit
    return {
        "items": [transaction_out(txn) for txn in items[:limit]],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions", status_code=201)
def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return transaction_out(txn)


@app.post("/api/transactions/bulk", status_code=201)
def create_transactions_bulk(data: BulkTransactionIn, db: Session = Depends(get_db)):
    try:
        txns = TransactionService(db).bulk_create(data.transactions)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"items": [transaction_out(txn) for txn in txns]}


@app.delete("/api/transactions/bulk")
def delete_transactions_bulk(data: BulkDeleteIn, db: Session = Depends(get_db)):
    try:
        deleted = TransactionService(db).bulk_delete(data.transaction_ids)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"deleted": deleted}


@app.get("/api/transactions/{transaction_id}")
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return transaction_out(txn)


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int, data: TransactionIn, db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db).update(transaction_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return transaction_out(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).soft_delete(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/api/transactions/{transaction_id}/restore", status_code=204)
def restore_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).restore(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/budgets")
def list_budgets(db: Session = Depends(get_db)):
    return [budget_out(b) for b in BudgetService(db).list()]


@app.post("/api/budgets", status_code=201)
def create_budget(data: BudgetIn, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return budget_out(budget)


@app.get("/api/budgets/{budget_id}")
def get_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).get(budget_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return budget_out(budget)


@app.put("/api/budgets/{budget_id}")
def update_budget(budget_id: int, data: BudgetIn, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).update(budget_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return budget_out(budget)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete(budget_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/recurring")
def list_recurring(db: Session = Depends(get_db)):
    return [rule_out(rule) for rule in RecurringRuleService(db).list()]


@app.post("/api/recurring", status_code=201)
def create_recurring(data: RecurringRuleIn, db: Session = Depends(get_db)):
    try:
        rule = RecurringRuleService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return rule_out(rule)


@app.get("/api/recurring/{rule_id}")
def get_recurring(rule_id: int, db: Session = Depends(get_db)):
    try:
        rule = RecurringRuleService(db).get(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return rule_out(rule)


@app.put("/api/recurring/{rule_id}")
def update_recurring(rule_id: int, data: RecurringRuleIn, db: Session = Depends(get_db)):
    try:
        rule = RecurringRuleService(db).update(rule_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return rule_out(rule)


@app.post("/api/recurring/{rule_id}/toggle")
def toggle_recurring(rule_id: int, db: Session = Depends(get_db)):
    try:
        rule = RecurringRuleService(db).toggle(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return rule_out(rule)


@app.delete("/api/recurring/{rule_id}", status_code=204)
def delete_recurring(rule_id: int, db: Session = Depends(get_db)):
    try:
        RecurringRuleService(db).delete(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/recurring/{rule_id}/occurrences")
def recurring_occurrences(rule_id: int, db: Session = Depends(get_db)):
    try:
        occurrences = RecurringRuleService(db).occurrences(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [transaction_out(txn) for txn in occurrences]


@app.get("/api/notifications")
def list_notifications(
    type: Optional[NotificationType] = None,
    is_read: Optional[bool] = None,
    importance: Optional[NotificationImportance] = None,
    limit: int = 20,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    try:
        filters = NotificationFilters(
            type=type, is_read=is_read, importance=importance, limit=limit, offset=offset
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    items, total = NotificationService(db).list(filters)
    return {
        "notifications": [notification_out(n) for n in items],
        "total": total,
        "limit": filters.limit,
        "offset": filters.offset,
    }


@app.get("/api/notifications/unread-count")
def unread_notifications(db: Session = Depends(get_db)):
    return {"count": NotificationService(db).unread_count()}


@app.put("/api/notifications/read-all")
def read_all_notifications(db: Session = Depends(get_db)):
    return {"updated": NotificationService(db).mark_all_as_read()}


@app.put("/api/notifications/{notification_id}/read")
def read_notification(notification_id: int, db: Session = Depends(get_db)):
    try:
        notification = NotificationService(db).mark_as_read(notification_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return notification_out(notification)


@app.delete("/api/notifications/{notification_id}", status_code=204)
def delete_notification(notification_id: int, db: Session = Depends(get_db)):
    try:
        NotificationService(db).delete(notification_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.delete("/api/notifications")
def delete_all_notifications(db: Session = Depends(get_db)):
    return {"deleted": NotificationService(db).delete_all()}


@app.post("/admin/recurring/process")
def process_recurring_now():
    result = scheduler_manager.run_now("admin")
    return {
        "processed_count": result.processed,
        "users_checked": result.users_checked,
        "notifications_created": result.notifications_created,
        "failed_users": result.failed_users,
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
