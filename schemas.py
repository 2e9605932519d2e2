from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    BudgetPeriod,
    NotificationImportance,
    NotificationType,
    RecurringFrequency,
    TransactionType,
)


class UserIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    name: Optional[str] = Field(default=None, max_length=120)
    telegram_chat_id: Optional[str] = Field(default=None, max_length=64)


class TelegramLinkIn(BaseModel):
    chat_id: Optional[str] = Field(default=None, max_length=64)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: Optional[str] = Field(default=None, max_length=7)


class TransactionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=500)
    date: date
    category_id: int


class BulkTransactionIn(BaseModel):
    transactions: list[TransactionIn] = Field(..., min_length=1)


class BulkDeleteIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1)


class RecurringRuleIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: int
    frequency: RecurringFrequency
    start_date: date
    end_date: Optional[date] = None


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., gt=0)
    period: BudgetPeriod
    start_date: date
    end_date: Optional[date] = None
    category_id: Optional[int] = None


class NotificationFilters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Optional[NotificationType] = None
    is_read: Optional[bool] = None
    importance: Optional[NotificationImportance] = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
