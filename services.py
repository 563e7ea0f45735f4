from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Iterable, Optional, Sequence

from sqlalchemy import extract, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from config import get_settings
from csv_utils import export_transactions, parse_csv
from database import commit_or_unavailable
from errors import (
    BudgetNotFound,
    CategoryNotFound,
    ConflictError,
    FutureDate,
    InvalidAmount,
    LedgerError,
    RecomputeFailure,
    TransactionNotFound,
    TypeMismatchError,
    ValidationError,
)
from models import (
    Budget,
    BudgetStatus,
    Category,
    Frequency,
    PaymentMethod,
    Tag,
    Transaction,
    TransactionStatus,
    TransactionType,
    UserStatistics,
    utcnow,
)
from notifications import ThresholdCrossed
from periods import (
    Period,
    add_months,
    as_local,
    local_now,
    local_today,
    month_period,
    months_back,
    next_window,
)
from recurrence import calculate_next_date
from schemas import (
    BudgetIn,
    BudgetPatch,
    CategoryIn,
    CategoryUpdate,
    PageRequest,
    TransactionIn,
    TransactionPatch,
)

if TYPE_CHECKING:  # pragma: no cover
    from coordinator import ConsistencyCoordinator


logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES: list[tuple[str, TransactionType, str, str]] = [
    ("Salary", TransactionType.income, "💼", "#4CAF50"),
    ("Investments", TransactionType.income, "📈", "#2196F3"),
    ("Side Jobs", TransactionType.income, "💻", "#FF9800"),
    ("Bonus", TransactionType.income, "🎁", "#E91E63"),
    ("Other Income", TransactionType.income, "💰", "#9C27B0"),
    ("Food & Dining", TransactionType.expense, "🍔", "#FF5722"),
    ("Transport", TransactionType.expense, "🚗", "#607D8B"),
    ("Shopping", TransactionType.expense, "🛍️", "#FFC107"),
    ("Housing", TransactionType.expense, "🏠", "#795548"),
    ("Entertainment", TransactionType.expense, "🎮", "#3F51B5"),
    ("Health", TransactionType.expense, "🏥", "#F44336"),
    ("Education", TransactionType.expense, "📚", "#009688"),
    ("Phone & Internet", TransactionType.expense, "📱", "#673AB7"),
    ("Utilities", TransactionType.expense, "💡", "#00BCD4"),
    ("Other Expenses", TransactionType.expense, "💸", "#757575"),
]

TIME_OF_DAY_BUCKETS = ("night", "morning", "afternoon", "evening")


def get_current_user_id() -> int:
    return 1


def clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, value))


def utilization(spent_cents: int, amount_cents: int) -> float:
    if amount_cents <= 0:
        return 0.0
    return clamp_percent(spent_cents / amount_cents * 100)


def change_percent(current: int, previous: int) -> float:
    if previous <= 0:
        return 0.0
    return (current - previous) / previous * 100


def time_of_day(moment: datetime) -> str:
    if moment.hour < 6:
        return "night"
    if moment.hour < 12:
        return "morning"
    if moment.hour < 18:
        return "afternoon"
    return "evening"


@dataclass(frozen=True)
class LedgerChange:
    """A (user, category, date) slot whose derived data must be recomputed."""

    user_id: int
    category_id: int
    on_date: date


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None
    payment_method: Optional[PaymentMethod] = None
    status: Optional[TransactionStatus] = TransactionStatus.active
    tag: Optional[str] = None
    query: Optional[str] = None


@dataclass
class TransactionPage:
    items: list[Transaction]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size


@dataclass(frozen=True)
class BudgetRecompute:
    budget_id: int
    actual_spent_cents: int
    remaining_cents: int
    utilization_rate: float
    event: Optional[ThresholdCrossed] = None


@dataclass
class BudgetSummary:
    total_budget_cents: int = 0
    total_spent_cents: int = 0
    total_remaining_cents: int = 0
    budget_count: int = 0
    over_budget_count: int = 0
    near_limit_count: int = 0
    utilization_rate: float = 0.0
    budget_ids: list[int] = field(default_factory=list)


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _visible(self):
        return or_(Category.user_id == self.user_id, Category.user_id.is_(None))

    def bootstrap_defaults(self) -> int:
        existing = {
            (row.type, row.name)
            for row in self.session.execute(
                select(Category.type, Category.name).where(Category.user_id.is_(None))
            )
        }
        created = 0
        for order, (name, txn_type, icon, color) in enumerate(DEFAULT_CATEGORIES):
            if (txn_type, name) in existing:
                continue
            self.session.add(
                Category(
                    user_id=None,
                    name=name,
                    type=txn_type,
                    icon=icon,
                    color=color,
                    sort_order=order,
                    is_default=True,
                )
            )
            created += 1
        if created:
            commit_or_unavailable(self.session)
        return created

    def list_all(
        self,
        type: Optional[TransactionType] = None,
        include_inactive: bool = False,
    ) -> list[Category]:
        stmt = (
            select(Category)
            .where(self._visible())
            .order_by(Category.type, Category.sort_order, Category.name)
        )
        if type:
            stmt = stmt.where(Category.type == type)
        if not include_inactive:
            stmt = stmt.where(Category.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id not in (None, self.user_id):
            raise CategoryNotFound("Category not found")
        return category

    def resolve(
        self, category_id: int, expected_type: Optional[TransactionType] = None
    ) -> Category:
        """Return an active, visible category, checking its type when asked."""
        category = self.get(category_id)
        if not category.is_active:
            raise CategoryNotFound("Category is no longer active")
        if expected_type is not None and category.type != expected_type:
            raise TypeMismatchError(
                f"Category '{category.name}' is an {category.type.value} category, "
                f"not {expected_type.value}"
            )
        return category

    def _owned(self, category_id: int) -> Category:
        category = self.get(category_id)
        if category.is_default:
            raise ConflictError("System categories cannot be modified")
        return category

    def _check_name_free(
        self, name: str, txn_type: TransactionType, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category.id).where(
            self._visible(),
            Category.type == txn_type,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ConflictError("Category with this name already exists")

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        self._check_name_free(name, data.type)
        if data.parent_category_id is not None:
            self.resolve(data.parent_category_id, expected_type=data.type)
        category = Category(
            user_id=self.user_id,
            name=name,
            type=data.type,
            icon=data.icon,
            color=data.color,
            description=data.description,
            sort_order=data.sort_order,
            parent_category_id=data.parent_category_id,
        )
        self.session.add(category)
        commit_or_unavailable(self.session)
        self.session.refresh(category)
        return category

    def is_referenced(self, category_id: int) -> bool:
        count = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.category_id == category_id
            )
        ).scalar_one()
        return (count or 0) > 0

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self._owned(category_id)
        values = data.model_dump(exclude_unset=True)
        new_type = values.get("type") or category.type
        if new_type != category.type:
            if self.is_referenced(category_id):
                raise ConflictError(
                    "Category type cannot change once transactions reference it"
                )
            if category.subcategories:
                raise ConflictError("Category with subcategories cannot change type")
            if category.parent is not None and category.parent.type != new_type:
                raise TypeMismatchError(
                    "Subcategory must have the same type as its parent"
                )
        if values.get("is_active") is False and category.is_active:
            if not self.can_delete(category_id):
                raise ConflictError(
                    "Category still has active transactions and cannot be deactivated"
                )
        if values.get("name"):
            values["name"] = values["name"].strip()
            self._check_name_free(values["name"], new_type, exclude_id=category.id)
        for key, value in values.items():
            if value is None and key not in ("description",):
                continue
            setattr(category, key, value)
        commit_or_unavailable(self.session)
        self.session.refresh(category)
        return category

    def can_delete(self, category_id: int) -> bool:
        category = self.get(category_id)
        if category.is_default:
            return False
        active_count = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.category_id == category_id,
                Transaction.status == TransactionStatus.active,
            )
        ).scalar_one()
        return (active_count or 0) == 0

    def delete(self, category_id: int) -> None:
        if not self.can_delete(category_id):
            raise ConflictError(
                "Category is a system default or still has active transactions"
            )
        category = self.get(category_id)
        # soft-deleted and archived rows keep pointing at it
        category.is_active = False
        commit_or_unavailable(self.session)


class TagService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name)
        return list(self.session.scalars(stmt).all())

    def get_or_create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == clean_name.lower()
        )
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(user_id=self.user_id, name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def resolve_many(self, names: Iterable[str]) -> list[Tag]:
        tags: list[Tag] = []
        tag_ids: set[int] = set()
        for name in names:
            tag = self.get_or_create(name)
            if tag.id not in tag_ids:
                tags.append(tag)
                tag_ids.add(tag.id)
        return tags


class TransactionService:
    """The ledger: the only writer of transaction rows and their status."""

    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        coordinator: Optional[ConsistencyCoordinator] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.categories = CategoryService(session, self.user_id)
        self._coordinator = coordinator

    @property
    def coordinator(self) -> ConsistencyCoordinator:
        if self._coordinator is None:
            from coordinator import ConsistencyCoordinator

            self._coordinator = ConsistencyCoordinator(self.session)
        return self._coordinator

    @staticmethod
    def _check_amount(amount_cents: int) -> None:
        if amount_cents is None or amount_cents <= 0:
            raise InvalidAmount("Amount must be greater than zero")

    @staticmethod
    def _default_occurred_at(on_date: date) -> datetime:
        now = local_now().replace(microsecond=0)
        noon = datetime.combine(on_date, time(12, 0))
        return min(noon, now) if on_date == now.date() else noon

    @staticmethod
    def _check_dates(on_date: date, occurred_at: datetime) -> None:
        if on_date > local_today():
            raise FutureDate("Transaction date cannot be in the future")
        if occurred_at > local_now():
            raise FutureDate("Transaction time cannot be in the future")

    def _build(
        self, data: TransactionIn, *, origin_transaction_id: Optional[int] = None
    ) -> Transaction:
        """Single validated path from input to a pending ledger row."""
        self._check_amount(data.amount_cents)
        category = self.categories.resolve(data.category_id, expected_type=data.type)
        if data.occurred_at is not None:
            occurred_at = as_local(data.occurred_at)
        else:
            occurred_at = self._default_occurred_at(data.transaction_date)
        self._check_dates(data.transaction_date, occurred_at)

        next_occurrence = None
        frequency = None
        if data.is_recurring:
            if data.recurring_frequency is None:
                raise ValidationError("Recurring transactions need a frequency")
            if (
                data.recurring_end_date
                and data.recurring_end_date < data.transaction_date
            ):
                raise ValidationError("Recurring end date is before the first date")
            frequency = data.recurring_frequency
            next_occurrence = calculate_next_date(frequency, data.transaction_date)

        txn = Transaction(
            user_id=self.user_id,
            type=data.type,
            amount_cents=data.amount_cents,
            category_id=category.id,
            description=data.description.strip(),
            merchant=data.merchant,
            notes=data.notes,
            transaction_date=data.transaction_date,
            occurred_at=occurred_at,
            payment_method=data.payment_method,
            status=TransactionStatus.active,
            is_recurring=data.is_recurring,
            recurring_frequency=frequency,
            recurring_end_date=data.recurring_end_date if data.is_recurring else None,
            recurring_next_occurrence=next_occurrence,
            origin_transaction_id=origin_transaction_id,
        )
        if data.tags:
            txn.tags = TagService(self.session, self.user_id).resolve_many(data.tags)
        return txn

    def _change(self, txn: Transaction) -> LedgerChange:
        return LedgerChange(txn.user_id, txn.category_id, txn.transaction_date)

    def create(self, data: TransactionIn) -> Transaction:
        try:
            txn = self._build(data)
            self.session.add(txn)
        except LedgerError:
            self.session.rollback()
            raise
        commit_or_unavailable(self.session)
        self.session.refresh(txn)
        self.coordinator.ledger_changed([self._change(txn)])
        return txn

    def create_many(
        self,
        entries: Sequence[TransactionIn],
        *,
        origin_transaction_id: Optional[int] = None,
    ) -> list[Transaction]:
        """Append a batch atomically; derived data is recomputed once per slot."""
        txns: list[Transaction] = []
        try:
            for data in entries:
                txn = self._build(data, origin_transaction_id=origin_transaction_id)
                self.session.add(txn)
                txns.append(txn)
        except LedgerError:
            self.session.rollback()
            raise
        commit_or_unavailable(self.session)
        if txns:
            self.coordinator.ledger_changed([self._change(txn) for txn in txns])
        return txns

    def get(self, transaction_id: int, *, include_inactive: bool = False) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), selectinload(Transaction.tags))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not include_inactive:
            stmt = stmt.where(Transaction.status == TransactionStatus.active)
        txn = self.session.scalar(stmt)
        if not txn:
            raise TransactionNotFound("Transaction not found")
        return txn

    def update(self, transaction_id: int, patch: TransactionPatch) -> Transaction:
        txn = self.get(transaction_id, include_inactive=True)
        if txn.status != TransactionStatus.active:
            raise ConflictError(
                f"Only active transactions can be edited (status={txn.status.value})"
            )
        values = patch.model_dump(exclude_unset=True)
        before = self._change(txn)

        effective_type = values.get("type") or txn.type
        effective_category_id = values.get("category_id") or txn.category_id
        if "amount_cents" in values:
            self._check_amount(values["amount_cents"])
        if effective_type != txn.type or effective_category_id != txn.category_id:
            self.categories.resolve(effective_category_id, expected_type=effective_type)

        new_date = values.get("transaction_date") or txn.transaction_date
        if values.get("occurred_at") is not None:
            occurred_at = as_local(values["occurred_at"])
        elif new_date != txn.transaction_date:
            occurred_at = datetime.combine(new_date, txn.occurred_at.time())
            if new_date == local_today():
                occurred_at = min(occurred_at, local_now().replace(microsecond=0))
        else:
            occurred_at = txn.occurred_at
        self._check_dates(new_date, occurred_at)

        txn.type = effective_type
        txn.category_id = effective_category_id
        if values.get("amount_cents") is not None:
            txn.amount_cents = values["amount_cents"]
        if values.get("description"):
            txn.description = values["description"].strip()
        if values.get("payment_method") is not None:
            txn.payment_method = values["payment_method"]
        for key in ("merchant", "notes"):
            if key in values:
                setattr(txn, key, values[key])
        if new_date != txn.transaction_date and txn.is_recurring:
            txn.recurring_next_occurrence = calculate_next_date(
                txn.recurring_frequency, new_date
            )
        txn.transaction_date = new_date
        txn.occurred_at = occurred_at
        if values.get("tags") is not None:
            try:
                txn.tags = TagService(self.session, self.user_id).resolve_many(
                    values["tags"]
                )
            except LedgerError:
                self.session.rollback()
                raise

        commit_or_unavailable(self.session)
        self.session.refresh(txn)
        # a moved row may leave one budget window and enter another
        self.coordinator.ledger_changed([before, self._change(txn)])
        return txn

    def soft_delete(self, transaction_id: int) -> Transaction:
        txn = self.get(transaction_id, include_inactive=True)
        if txn.status == TransactionStatus.deleted:
            return txn
        if txn.status == TransactionStatus.archived:
            raise ConflictError("Archived transactions are read-only")
        txn.status = TransactionStatus.deleted
        txn.deleted_at = utcnow()
        commit_or_unavailable(self.session)
        self.coordinator.ledger_changed([self._change(txn)])
        return txn

    def restore(self, transaction_id: int) -> Transaction:
        txn = self.get(transaction_id, include_inactive=True)
        if txn.status == TransactionStatus.active:
            return txn
        if txn.status == TransactionStatus.archived:
            raise ConflictError("Archived transactions are read-only")
        self.categories.resolve(txn.category_id, expected_type=txn.type)
        txn.status = TransactionStatus.active
        txn.deleted_at = None
        commit_or_unavailable(self.session)
        self.coordinator.ledger_changed([self._change(txn)])
        return txn

    def archive(self, transaction_id: int) -> Transaction:
        txn = self.get(transaction_id, include_inactive=True)
        if txn.status == TransactionStatus.archived:
            return txn
        if txn.status != TransactionStatus.active:
            raise ConflictError("Only active transactions can be archived")
        txn.status = TransactionStatus.archived
        commit_or_unavailable(self.session)
        self.coordinator.ledger_changed([self._change(txn)])
        return txn

    def _filter_conditions(self, filters: TransactionFilters) -> list:
        conditions = [Transaction.user_id == self.user_id]
        if filters.status:
            conditions.append(Transaction.status == filters.status)
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.category_id:
            conditions.append(Transaction.category_id == filters.category_id)
        if filters.start:
            conditions.append(Transaction.transaction_date >= filters.start)
        if filters.end:
            conditions.append(Transaction.transaction_date <= filters.end)
        if filters.payment_method:
            conditions.append(Transaction.payment_method == filters.payment_method)
        if filters.tag:
            conditions.append(
                Transaction.tags.any(func.lower(Tag.name) == filters.tag.strip().lower())
            )
        if filters.query:
            like = f"%{filters.query.lower()}%"
            conditions.append(
                or_(
                    func.lower(Transaction.description).like(like),
                    func.lower(func.coalesce(Transaction.merchant, "")).like(like),
                )
            )
        return conditions

    def query(
        self,
        filters: Optional[TransactionFilters] = None,
        page: Optional[PageRequest] = None,
    ) -> TransactionPage:
        filters = filters or TransactionFilters()
        page = page or PageRequest()
        conditions = self._filter_conditions(filters)

        total = self.session.execute(
            select(func.count(Transaction.id)).where(*conditions)
        ).scalar_one()

        sort_column = getattr(Transaction, page.sort_by)
        if page.sort_dir == "asc":
            ordering = (sort_column.asc(), Transaction.id.asc())
        else:
            ordering = (sort_column.desc(), Transaction.id.desc())
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), selectinload(Transaction.tags))
            .where(*conditions)
            .order_by(*ordering)
            .offset((page.page - 1) * page.page_size)
            .limit(page.page_size)
        )
        items = list(self.session.scalars(stmt).all())
        return TransactionPage(
            items=items, total=int(total or 0), page=page.page, page_size=page.page_size
        )


class BudgetService:
    """Budget aggregator: sole writer of the derived budget fields."""

    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        coordinator: Optional[ConsistencyCoordinator] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.settings = get_settings()
        self._coordinator = coordinator

    @property
    def coordinator(self) -> ConsistencyCoordinator:
        if self._coordinator is None:
            from coordinator import ConsistencyCoordinator

            self._coordinator = ConsistencyCoordinator(self.session)
        return self._coordinator

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise BudgetNotFound("Budget not found")
        return budget

    def list_all(
        self,
        *,
        status: Optional[BudgetStatus] = None,
        category_id: Optional[int] = None,
    ) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.start_date.desc(), Budget.id.desc())
        )
        if status:
            stmt = stmt.where(Budget.status == status)
        if category_id:
            stmt = stmt.where(Budget.category_id == category_id)
        return list(self.session.scalars(stmt).all())

    def _expense_category(self, category_id: int) -> Category:
        category = CategoryService(self.session, self.user_id).get(category_id)
        if category.type != TransactionType.expense:
            raise TypeMismatchError("Budgets can only be set for expense categories")
        if not category.is_active:
            raise CategoryNotFound("Category is no longer active")
        return category

    @staticmethod
    def _check_window(start: date, end: date) -> None:
        if end <= start:
            raise ValidationError("End date must be after start date")

    def create(self, data: BudgetIn) -> Budget:
        self._expense_category(data.category_id)
        self._check_window(data.start_date, data.end_date)
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
            status=BudgetStatus.active,
            notifications_enabled=data.notifications_enabled,
            notification_threshold=data.notification_threshold,
            rollover_enabled=data.rollover_enabled,
            rollover_max_cents=data.rollover_max_cents,
            actual_spent_cents=0,
            remaining_cents=data.amount_cents,
            utilization_rate=0.0,
        )
        self.session.add(budget)
        commit_or_unavailable(self.session)
        self.coordinator.recompute_budget_ids([budget.id])
        self.session.refresh(budget)
        return budget

    def create_monthly(
        self, category_id: int, amount_cents: int, year: int, month: int
    ) -> Budget:
        window = month_period(year, month)
        return self.create(
            BudgetIn(
                category_id=category_id,
                amount_cents=amount_cents,
                period=Frequency.monthly,
                start_date=window.start,
                end_date=window.end,
            )
        )

    def update(self, budget_id: int, patch: BudgetPatch) -> Budget:
        budget = self.get(budget_id)
        values = patch.model_dump(exclude_unset=True)
        start = values.get("start_date") or budget.start_date
        end = values.get("end_date") or budget.end_date
        self._check_window(start, end)
        for key, value in values.items():
            if value is None:
                continue
            setattr(budget, key, value)
        if "amount_cents" in values or "notification_threshold" in values:
            # a new allowance or threshold re-arms the notification
            budget.notification_last_sent_at = None
        commit_or_unavailable(self.session)
        self.coordinator.recompute_budget_ids([budget.id])
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        commit_or_unavailable(self.session)

    def spent_for(self, budget: Budget) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == budget.user_id,
            Transaction.category_id == budget.category_id,
            Transaction.type == TransactionType.expense,
            Transaction.status == TransactionStatus.active,
            Transaction.transaction_date.between(budget.start_date, budget.end_date),
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def recompute(self, budget_id: int, *, now: Optional[datetime] = None) -> BudgetRecompute:
        """Re-derive a budget from the ledger and persist it in one write.

        The scan completes before any field is assigned, so a failed scan
        leaves the previously stored values in place.
        """
        budget = self.get(budget_id)
        now = now or utcnow()
        try:
            spent = self.spent_for(budget)
        except SQLAlchemyError as exc:
            raise RecomputeFailure(f"budget:{budget_id}", exc) from exc

        budget.actual_spent_cents = spent
        budget.remaining_cents = max(0, budget.amount_cents - spent)
        budget.utilization_rate = utilization(spent, budget.amount_cents)
        budget.last_recomputed_at = now
        event = self.check_notification(budget, now=now)
        commit_or_unavailable(self.session)
        return BudgetRecompute(
            budget_id=budget.id,
            actual_spent_cents=budget.actual_spent_cents,
            remaining_cents=budget.remaining_cents,
            utilization_rate=budget.utilization_rate,
            event=event,
        )

    def check_notification(
        self, budget: Budget, *, now: Optional[datetime] = None
    ) -> Optional[ThresholdCrossed]:
        if budget.status != BudgetStatus.active or not budget.notifications_enabled:
            return None
        if budget.utilization_rate < budget.notification_threshold:
            return None
        now = now or utcnow()
        cooldown = timedelta(hours=self.settings.notification_cooldown_hours)
        last_sent = budget.notification_last_sent_at
        if last_sent is not None and now - last_sent <= cooldown:
            return None
        budget.notification_last_sent_at = now
        return ThresholdCrossed(
            user_id=budget.user_id,
            budget_id=budget.id,
            utilization_rate=budget.utilization_rate,
            threshold=budget.notification_threshold,
            occurred_at=now,
        )

    def find_affected(self, category_id: int, on_date: date) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.category_id == category_id,
                Budget.start_date <= on_date,
                Budget.end_date >= on_date,
            )
            .order_by(Budget.id)
        )
        return list(self.session.scalars(stmt).all())

    def active_on(self, as_of: date) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.status == BudgetStatus.active,
                Budget.start_date <= as_of,
                Budget.end_date >= as_of,
            )
            .order_by(Budget.id)
        )
        return list(self.session.scalars(stmt).all())

    def summary(self, as_of: Optional[date] = None) -> BudgetSummary:
        as_of = as_of or local_today()
        near_limit = self.settings.near_limit_percent
        summary = BudgetSummary()
        for budget in self.active_on(as_of):
            summary.budget_ids.append(budget.id)
            summary.budget_count += 1
            summary.total_budget_cents += budget.amount_cents
            summary.total_spent_cents += budget.actual_spent_cents
            summary.total_remaining_cents += budget.remaining_cents
            if budget.is_over_budget:
                summary.over_budget_count += 1
            elif budget.utilization_rate >= near_limit:
                summary.near_limit_count += 1
        summary.utilization_rate = utilization(
            summary.total_spent_cents, summary.total_budget_cents
        )
        return summary

    def renewal_due(self, budget: Budget, today: Optional[date] = None) -> bool:
        today = today or local_today()
        days_until_end = (budget.end_date - today).days
        return (
            budget.status == BudgetStatus.active
            and days_until_end <= self.settings.renewal_window_days
        )

    def renew(self, budget_id: int, today: Optional[date] = None) -> Budget:
        """Open the next window for a budget; never runs on its own."""
        budget = self.get(budget_id)
        if not self.renewal_due(budget, today):
            raise ConflictError("Budget is not due for renewal")
        self.coordinator.recompute_budget_ids([budget.id])
        self.session.refresh(budget)

        carry = 0
        if budget.rollover_enabled:
            carry = min(budget.remaining_cents, budget.rollover_max_cents)
        base_amount = budget.amount_cents - budget.carried_over_cents
        start, end = next_window(budget.period, budget.start_date, budget.end_date)
        renewed = Budget(
            user_id=budget.user_id,
            category_id=budget.category_id,
            amount_cents=base_amount + carry,
            carried_over_cents=carry,
            period=budget.period,
            start_date=start,
            end_date=end,
            status=BudgetStatus.active,
            notifications_enabled=budget.notifications_enabled,
            notification_threshold=budget.notification_threshold,
            rollover_enabled=budget.rollover_enabled,
            rollover_max_cents=budget.rollover_max_cents,
            actual_spent_cents=0,
            remaining_cents=base_amount + carry,
            utilization_rate=0.0,
        )
        budget.status = BudgetStatus.completed
        self.session.add(renewed)
        commit_or_unavailable(self.session)
        self.coordinator.recompute_budget_ids([renewed.id])
        self.session.refresh(renewed)
        return renewed


class StatisticsService:
    """Rollups over active ledger rows; computed on every read."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _active(self, *conditions) -> list:
        return [
            Transaction.user_id == self.user_id,
            Transaction.status == TransactionStatus.active,
            *conditions,
        ]

    def _totals(self, *conditions) -> dict[str, int]:
        stmt = (
            select(
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(*self._active(*conditions))
            .group_by(Transaction.type)
        )
        totals = {"income_cents": 0, "expense_cents": 0, "transaction_count": 0}
        for row in self.session.execute(stmt):
            if row.type == TransactionType.income:
                totals["income_cents"] = int(row.total or 0)
            else:
                totals["expense_cents"] = int(row.total or 0)
            totals["transaction_count"] += int(row.count or 0)
        totals["net_cents"] = totals["income_cents"] - totals["expense_cents"]
        return totals

    def user_lifetime_stats(self) -> UserStatistics:
        """Recompute the lifetime counters and replace the stored row."""
        try:
            totals = self._totals()
        except SQLAlchemyError as exc:
            raise RecomputeFailure(f"user:{self.user_id}", exc) from exc

        stats = self.session.get(UserStatistics, self.user_id)
        if stats is None:
            stats = UserStatistics(user_id=self.user_id)
            self.session.add(stats)
        stats.total_income_cents = totals["income_cents"]
        stats.total_expense_cents = totals["expense_cents"]
        stats.transaction_count = totals["transaction_count"]
        stats.updated_at = utcnow()
        commit_or_unavailable(self.session)
        return stats

    def get_user_stats(self) -> Optional[UserStatistics]:
        return self.session.get(UserStatistics, self.user_id)

    def period_stats(self, period: Period) -> dict[str, int]:
        return self._totals(
            Transaction.transaction_date.between(period.start, period.end)
        )

    def monthly_trend(
        self, year_start: date, end: Optional[date] = None
    ) -> list[dict[str, object]]:
        end = end or local_today()
        year = extract("year", Transaction.transaction_date)
        month = extract("month", Transaction.transaction_date)
        stmt = (
            select(
                year.label("year"),
                month.label("month"),
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(
                *self._active(
                    Transaction.transaction_date.between(year_start, end)
                )
            )
            .group_by(year, month, Transaction.type)
        )
        buckets: dict[tuple[int, int], dict[str, object]] = {}
        for row in self.session.execute(stmt):
            key = (int(row.year), int(row.month))
            bucket = buckets.setdefault(
                key,
                {
                    "year": key[0],
                    "month": key[1],
                    "label": f"{key[0]:04d}-{key[1]:02d}",
                    "income_cents": 0,
                    "expense_cents": 0,
                    "transaction_count": 0,
                },
            )
            if row.type == TransactionType.income:
                bucket["income_cents"] = int(row.total or 0)
            else:
                bucket["expense_cents"] = int(row.total or 0)
            bucket["transaction_count"] += int(row.count or 0)
        return [buckets[key] for key in sorted(buckets)]

    def category_ranking(
        self, period: Period, top: Optional[int] = 10
    ) -> list[dict[str, object]]:
        total_col = func.sum(Transaction.amount_cents)
        stmt = (
            select(
                Category.id.label("category_id"),
                Category.name,
                Category.icon,
                Category.color,
                total_col.label("total"),
                func.count(Transaction.id).label("count"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(
                *self._active(
                    Transaction.type == TransactionType.expense,
                    Transaction.transaction_date.between(period.start, period.end),
                )
            )
            .group_by(Category.id, Category.name, Category.icon, Category.color)
            .order_by(total_col.desc(), Category.id)
        )
        rows = self.session.execute(stmt).all()
        grand_total = sum(int(row.total or 0) for row in rows)
        if top is not None:
            rows = rows[:top]
        ranking = []
        for row in rows:
            amount = int(row.total or 0)
            count = int(row.count or 0)
            ranking.append(
                {
                    "category_id": row.category_id,
                    "name": row.name,
                    "icon": row.icon,
                    "color": row.color,
                    "total_cents": amount,
                    "count": count,
                    "average_cents": round(amount / count, 2) if count else 0.0,
                    "percentage": (amount / grand_total * 100) if grand_total else 0.0,
                }
            )
        return ranking

    def payment_method_breakdown(
        self, months: int = 6, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        window = months_back(months, today or local_today())
        total_col = func.sum(Transaction.amount_cents)
        stmt = (
            select(
                Transaction.payment_method,
                total_col.label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(
                *self._active(
                    Transaction.type == TransactionType.expense,
                    Transaction.transaction_date.between(window.start, window.end),
                )
            )
            .group_by(Transaction.payment_method)
            .order_by(total_col.desc())
        )
        breakdown = []
        for row in self.session.execute(stmt):
            amount = int(row.total or 0)
            count = int(row.count or 0)
            breakdown.append(
                {
                    "payment_method": row.payment_method.value,
                    "total_cents": amount,
                    "count": count,
                    "average_cents": round(amount / count, 2) if count else 0.0,
                }
            )
        return breakdown

    def time_of_day_pattern(
        self, months: int = 6, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        window = months_back(months, today or local_today())
        stmt = select(Transaction.amount_cents, Transaction.occurred_at).where(
            *self._active(
                Transaction.type == TransactionType.expense,
                Transaction.transaction_date.between(window.start, window.end),
            )
        )
        buckets: dict[tuple[bool, str], dict[str, object]] = {}
        for row in self.session.execute(stmt):
            key = (row.occurred_at.weekday() >= 5, time_of_day(row.occurred_at))
            bucket = buckets.setdefault(
                key,
                {
                    "is_weekend": key[0],
                    "time_of_day": key[1],
                    "total_cents": 0,
                    "count": 0,
                },
            )
            bucket["total_cents"] += row.amount_cents
            bucket["count"] += 1
        order = {name: idx for idx, name in enumerate(TIME_OF_DAY_BUCKETS)}
        return [
            buckets[key]
            for key in sorted(buckets, key=lambda k: (k[0], order[k[1]]))
        ]

    def monthly_report(self, year: int, month: int) -> dict[str, object]:
        current_period = month_period(year, month)
        previous_start = add_months(current_period.start, -1)
        previous_period = month_period(previous_start.year, previous_start.month)
        current = self.period_stats(current_period)
        previous = self.period_stats(previous_period)
        budgets = BudgetService(self.session, self.user_id).summary(current_period.end)
        return {
            "period": current_period,
            "current": current,
            "previous": previous,
            "changes": {
                "income_percent": change_percent(
                    current["income_cents"], previous["income_cents"]
                ),
                "expense_percent": change_percent(
                    current["expense_cents"], previous["expense_cents"]
                ),
                "net_cents": current["net_cents"] - previous["net_cents"],
            },
            "categories": self.category_ranking(current_period, top=None),
            "budgets": budgets,
        }

    def overview(
        self, period: Period, today: Optional[date] = None
    ) -> dict[str, object]:
        today = today or local_today()
        return {
            "period": period,
            "totals": self.period_stats(period),
            "budgets": BudgetService(self.session, self.user_id).summary(today),
            "monthly_trend": self.monthly_trend(date(today.year, 1, 1), today),
            "category_ranking": self.category_ranking(period, top=10),
        }


class CSVService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _category_lookup(self) -> dict[tuple[TransactionType, str], int]:
        lookup: dict[tuple[TransactionType, str], int] = {}
        for category in CategoryService(self.session, self.user_id).list_all():
            key = (category.type, category.name.lower())
            # user categories shadow system defaults with the same name
            if key not in lookup or category.user_id is not None:
                lookup[key] = category.id
        return lookup

    def preview(self, content: str) -> tuple[list[TransactionIn], list[str]]:
        rows, errors = parse_csv(content)
        lookup = self._category_lookup()
        entries: list[TransactionIn] = []
        for idx, row in enumerate(rows, start=1):
            category_id = lookup.get((row.type, row.category.lower()))
            if not category_id:
                errors.append(
                    f"Row {idx}: missing category '{row.category}' for {row.type.value}"
                )
                continue
            entries.append(
                TransactionIn(
                    type=row.type,
                    amount_cents=row.amount_cents,
                    category_id=category_id,
                    description=row.description,
                    transaction_date=row.date,
                    payment_method=row.payment_method,
                    tags=row.tags,
                )
            )
        return entries, errors

    def commit(self, content: str) -> int:
        entries, errors = self.preview(content)
        if errors:
            raise ValidationError("; ".join(errors))
        txns = TransactionService(self.session, self.user_id).create_many(entries)
        return len(txns)

    def export(self, transactions: list[Transaction]) -> str:
        return export_transactions(transactions)
