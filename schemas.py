import datetime as dt
from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import (
    BudgetStatus,
    Frequency,
    PaymentMethod,
    TransactionStatus,
    TransactionType,
)

HEX_COLOR_PATTERN = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"


def _clean_tags(tags: list[str]) -> list[str]:
    cleaned = []
    for tag in tags:
        name = tag.strip()
        if not name:
            continue
        if len(name) > 20:
            raise ValueError("Tags cannot exceed 20 characters")
        cleaned.append(name)
    return cleaned


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=30)
    type: TransactionType
    icon: str = Field(default="💰", min_length=1, max_length=16)
    color: str = Field(default="#667eea", pattern=HEX_COLOR_PATTERN)
    description: Optional[str] = Field(default=None, max_length=100)
    sort_order: int = 0
    parent_category_id: Optional[int] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=30)
    type: Optional[TransactionType] = None
    icon: Optional[str] = Field(default=None, min_length=1, max_length=16)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR_PATTERN)
    description: Optional[str] = Field(default=None, max_length=100)
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None


class TransactionIn(BaseModel):
    type: TransactionType
    # sign and range are checked by the ledger so it can report InvalidAmount
    amount_cents: int
    category_id: int
    description: str = Field(..., min_length=1, max_length=200)
    transaction_date: date
    occurred_at: Optional[datetime] = None
    payment_method: PaymentMethod = PaymentMethod.other
    merchant: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=500)
    tags: list[str] = Field(default_factory=list)
    is_recurring: bool = False
    recurring_frequency: Optional[Frequency] = None
    recurring_end_date: Optional[date] = None

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value: list[str]) -> list[str]:
        return _clean_tags(value)


class TransactionPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = None
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    transaction_date: Optional[dt.date] = None
    occurred_at: Optional[datetime] = None
    payment_method: Optional[PaymentMethod] = None
    merchant: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=500)
    tags: Optional[list[str]] = None

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        return None if value is None else _clean_tags(value)


SortField = Literal["transaction_date", "occurred_at", "amount_cents", "created_at"]


class PageRequest(BaseModel):
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=50, ge=1, le=200)
    sort_by: SortField = "transaction_date"
    sort_dir: Literal["asc", "desc"] = "desc"


class BudgetIn(BaseModel):
    category_id: int
    amount_cents: int = Field(..., ge=0)
    period: Frequency
    start_date: date
    end_date: date
    notifications_enabled: bool = True
    notification_threshold: float = Field(default=80.0, ge=0, le=100)
    rollover_enabled: bool = False
    rollover_max_cents: int = Field(default=0, ge=0)


class BudgetPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, ge=0)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[BudgetStatus] = None
    notifications_enabled: Optional[bool] = None
    notification_threshold: Optional[float] = Field(default=None, ge=0, le=100)
    rollover_enabled: Optional[bool] = None
    rollover_max_cents: Optional[int] = Field(default=None, ge=0)


class CSVRow(BaseModel):
    date: date
    type: TransactionType
    amount_cents: int
    category: str
    description: str
    payment_method: PaymentMethod = PaymentMethod.other
    tags: list[str] = Field(default_factory=list)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: TransactionType
    icon: str
    color: str
    description: Optional[str]
    sort_order: int
    is_default: bool
    is_active: bool
    parent_category_id: Optional[int]


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: TransactionType
    amount_cents: int
    category_id: int
    description: str
    merchant: Optional[str]
    notes: Optional[str]
    transaction_date: date
    occurred_at: datetime
    payment_method: PaymentMethod
    status: TransactionStatus
    deleted_at: Optional[datetime]
    is_recurring: bool
    recurring_frequency: Optional[Frequency]
    recurring_next_occurrence: Optional[date]
    tag_names: list[str]


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    amount_cents: int
    period: Frequency
    start_date: date
    end_date: date
    status: BudgetStatus
    notifications_enabled: bool
    notification_threshold: float
    notification_last_sent_at: Optional[datetime]
    rollover_enabled: bool
    rollover_max_cents: int
    actual_spent_cents: int
    remaining_cents: int
    utilization_rate: float
    is_over_budget: bool
