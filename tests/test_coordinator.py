from datetime import date

from sqlalchemy import create_engine, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from coordinator import ConsistencyCoordinator, KeyedLocks, PendingRecomputes
from database import Base
from models import Budget, Frequency, TransactionType, UserStatistics
from schemas import BudgetIn, CategoryIn, TransactionIn
from services import (
    BudgetService,
    CategoryService,
    LedgerChange,
    StatisticsService,
    TransactionService,
)


class ExplodingNotifier:
    def on_budget_threshold_crossed(self, user_id, budget_id, utilization_rate):
        raise RuntimeError("mail relay down")


def _store_down(*args, **kwargs):
    raise OperationalError("SELECT sum(amount_cents)", {}, Exception("database is locked"))


def _setup(session: Session, coordinator: ConsistencyCoordinator):
    categories = CategoryService(session)
    food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
    rent = categories.create(CategoryIn(name="Rent", type=TransactionType.expense))
    budgets = BudgetService(session, coordinator=coordinator)
    budget = budgets.create(
        BudgetIn(
            category_id=food.id,
            amount_cents=1_000,
            period=Frequency.monthly,
            start_date=date(2024, 12, 1),
            end_date=date(2024, 12, 31),
        )
    )
    ledger = TransactionService(session, coordinator=coordinator)
    return ledger, budget.id, food.id, rent.id


def _expense(category_id: int, amount_cents: int) -> TransactionIn:
    return TransactionIn(
        type=TransactionType.expense,
        amount_cents=amount_cents,
        category_id=category_id,
        description="Shop",
        transaction_date=date(2024, 12, 5),
    )


def test_failed_budget_recompute_does_not_fail_the_write(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        pending = PendingRecomputes()
        coordinator = ConsistencyCoordinator(session, pending=pending)
        ledger, budget_id, food_id, _ = _setup(session, coordinator)

        monkeypatch.setattr(BudgetService, "spent_for", _store_down)
        txn = ledger.create(_expense(food_id, 850))

        assert ledger.get(txn.id).amount_cents == 850
        assert len(pending) == 1
        # previous values stay in place
        assert session.get(Budget, budget_id).actual_spent_cents == 0
        assert StatisticsService(session).get_user_stats().total_expense_cents == 850

        monkeypatch.undo()
        report = coordinator.retry_pending()
        assert report.budgets_recomputed == [budget_id]
        assert pending.is_empty()
        assert session.get(Budget, budget_id).actual_spent_cents == 850


def test_pending_budget_is_picked_up_by_the_next_write(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        pending = PendingRecomputes()
        coordinator = ConsistencyCoordinator(session, pending=pending)
        ledger, budget_id, food_id, rent_id = _setup(session, coordinator)

        monkeypatch.setattr(BudgetService, "spent_for", _store_down)
        ledger.create(_expense(food_id, 400))
        monkeypatch.undo()

        ledger.create(_expense(rent_id, 50))
        assert pending.is_empty()
        assert session.get(Budget, budget_id).actual_spent_cents == 400


def test_failed_lookup_is_retried_from_the_change(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        pending = PendingRecomputes()
        coordinator = ConsistencyCoordinator(session, pending=pending)
        ledger, budget_id, food_id, _ = _setup(session, coordinator)

        monkeypatch.setattr(BudgetService, "find_affected", _store_down)
        ledger.create(_expense(food_id, 300))
        assert len(pending) == 1
        monkeypatch.undo()

        coordinator.retry_pending()
        assert pending.is_empty()
        assert session.get(Budget, budget_id).actual_spent_cents == 300


def test_failed_statistics_recompute_is_queued(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        pending = PendingRecomputes()
        coordinator = ConsistencyCoordinator(session, pending=pending)
        ledger, budget_id, food_id, _ = _setup(session, coordinator)

        monkeypatch.setattr(StatisticsService, "_totals", _store_down)
        ledger.create(_expense(food_id, 120))
        assert session.get(Budget, budget_id).actual_spent_cents == 120
        assert StatisticsService(session).get_user_stats() is None
        monkeypatch.undo()

        report = coordinator.retry_pending()
        assert report.users_recomputed == [1]
        assert StatisticsService(session).get_user_stats().total_expense_cents == 120


def test_notifier_errors_are_contained() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        coordinator = ConsistencyCoordinator(
            session, notifier=ExplodingNotifier(), pending=PendingRecomputes()
        )
        ledger, budget_id, food_id, _ = _setup(session, coordinator)

        ledger.create(_expense(food_id, 950))
        budget = session.get(Budget, budget_id)
        assert budget.actual_spent_cents == 950
        assert budget.notification_last_sent_at is not None


def test_ledger_changed_reports_events_once_per_budget() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        coordinator = ConsistencyCoordinator(session, pending=PendingRecomputes())
        ledger, budget_id, food_id, _ = _setup(session, coordinator)
        ledger.create(_expense(food_id, 990))
        session.execute(
            update(Budget)
            .where(Budget.id == budget_id)
            .values(notification_last_sent_at=None)
        )
        session.commit()

        change = LedgerChange(1, food_id, date(2024, 12, 5))
        report = coordinator.ledger_changed([change, change])
        assert report.budgets_recomputed == [budget_id]
        assert [event.budget_id for event in report.events] == [budget_id]
        assert report.ok
        assert coordinator.ledger_changed([]).budgets_recomputed == []


def test_reconcile_all_repairs_drift() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        coordinator = ConsistencyCoordinator(session, pending=PendingRecomputes())
        ledger, budget_id, food_id, _ = _setup(session, coordinator)
        ledger.create(_expense(food_id, 600))

        session.execute(
            update(Budget).where(Budget.id == budget_id).values(actual_spent_cents=999)
        )
        session.execute(
            update(UserStatistics)
            .where(UserStatistics.user_id == 1)
            .values(total_expense_cents=1)
        )
        session.commit()

        report = coordinator.reconcile_all()
        assert report.budgets_recomputed == [budget_id]
        assert report.users_recomputed == [1]
        assert session.get(Budget, budget_id).actual_spent_cents == 600
        assert StatisticsService(session).get_user_stats().total_expense_cents == 600


def test_keyed_locks_share_one_lock_per_key() -> None:
    locks = KeyedLocks()
    assert locks._lock_for("budget:1") is locks._lock_for("budget:1")
    assert locks._lock_for("budget:1") is not locks._lock_for("budget:2")
    with locks.hold("budget:1"):
        assert locks._lock_for("budget:1").locked()
        assert not locks._lock_for("budget:2").locked()
    assert not locks._lock_for("budget:1").locked()
