from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class TransactionStatus(str, Enum):
    active = "active"
    deleted = "deleted"
    archived = "archived"


class PaymentMethod(str, Enum):
    cash = "cash"
    card = "card"
    wechat = "wechat"
    alipay = "alipay"
    bank_transfer = "bank_transfer"
    other = "other"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class BudgetStatus(str, Enum):
    active = "active"
    paused = "paused"
    completed = "completed"
    cancelled = "cancelled"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # NULL for system defaults shared by every user
    user_id: Mapped[Optional[int]] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(30), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    icon: Mapped[str] = mapped_column(String(16), nullable=False, default="💰")
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#667eea")
    description: Mapped[Optional[str]] = mapped_column(String(100))
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    parent_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id")
    )

    parent: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side="Category.id", back_populates="subcategories"
    )
    subcategories: Mapped[list["Category"]] = relationship(
        "Category", back_populates="parent"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
        Index("ix_categories_user_type", "user_id", "type"),
        Index("ix_categories_default_type", "is_default", "type"),
    )


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_tag_user_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(20), nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", secondary="transaction_tags", back_populates="tags"
    )


transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column("transaction_id", Integer, ForeignKey("transactions.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    merchant: Mapped[Optional[str]] = mapped_column(String(100))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SAEnum(PaymentMethod), nullable=False, default=PaymentMethod.other
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), nullable=False, default=TransactionStatus.active
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_frequency: Mapped[Optional[Frequency]] = mapped_column(
        SAEnum(Frequency)
    )
    recurring_end_date: Mapped[Optional[date]] = mapped_column(Date)
    recurring_next_occurrence: Mapped[Optional[date]] = mapped_column(Date)
    origin_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )

    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="transaction_tags", back_populates="transactions"
    )

    @property
    def tag_names(self) -> list[str]:
        return sorted(tag.name for tag in self.tags)

    __table_args__ = (
        UniqueConstraint(
            "origin_transaction_id",
            "transaction_date",
            name="uq_txn_origin_occurrence",
        ),
        Index("ix_transactions_user_date", "user_id", "transaction_date"),
        Index(
            "ix_transactions_user_category_date",
            "user_id",
            "category_id",
            "transaction_date",
        ),
        Index("ix_transactions_user_type_date", "user_id", "type", "transaction_date"),
        Index("ix_transactions_user_status", "user_id", "status"),
        Index("ix_transactions_user_amount", "user_id", "amount_cents"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[BudgetStatus] = mapped_column(
        SAEnum(BudgetStatus), nullable=False, default=BudgetStatus.active
    )

    notifications_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    notification_threshold: Mapped[float] = mapped_column(
        Float, default=80.0, nullable=False
    )
    notification_last_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    rollover_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    rollover_max_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # portion of amount_cents carried over from the previous window
    carried_over_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Derived from the ledger; only the budget aggregator writes these.
    actual_spent_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    remaining_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    utilization_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_recomputed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    category: Mapped["Category"] = relationship("Category")

    @property
    def is_over_budget(self) -> bool:
        return self.actual_spent_cents > self.amount_cents

    def days_remaining(self, today: date) -> int:
        return max(0, (self.end_date - today).days)

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        CheckConstraint("end_date > start_date", name="ck_budget_window"),
        CheckConstraint(
            "notification_threshold >= 0 AND notification_threshold <= 100",
            name="ck_budget_threshold_range",
        ),
        CheckConstraint(
            "utilization_rate >= 0 AND utilization_rate <= 100",
            name="ck_budget_utilization_range",
        ),
        Index("ix_budget_user_category", "user_id", "category_id"),
        Index("ix_budget_user_status", "user_id", "status"),
        Index("ix_budget_user_window", "user_id", "start_date", "end_date"),
    )


class UserStatistics(Base):
    __tablename__ = "user_statistics"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    total_income_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_expense_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    transaction_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    @property
    def net_cents(self) -> int:
        return self.total_income_cents - self.total_expense_cents
