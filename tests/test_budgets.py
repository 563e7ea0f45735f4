from datetime import date, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from coordinator import ConsistencyCoordinator, PendingRecomputes
from database import Base
from errors import BudgetNotFound, ConflictError, TypeMismatchError, ValidationError
from models import Budget, BudgetStatus, Frequency, TransactionType, utcnow
from schemas import BudgetIn, BudgetPatch, CategoryIn, TransactionIn, TransactionPatch
from services import BudgetService, CategoryService, TransactionService


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[int, int, float]] = []

    def on_budget_threshold_crossed(
        self, user_id: int, budget_id: int, utilization_rate: float
    ) -> None:
        self.calls.append((user_id, budget_id, utilization_rate))


def _services(session: Session, notifier: RecordingNotifier):
    coordinator = ConsistencyCoordinator(
        session, notifier=notifier, pending=PendingRecomputes()
    )
    return (
        TransactionService(session, coordinator=coordinator),
        BudgetService(session, coordinator=coordinator),
    )


def _food(session: Session) -> int:
    category = CategoryService(session).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    return category.id


def _december_budget(category_id: int, amount_cents: int = 1_000, **extra) -> BudgetIn:
    return BudgetIn(
        category_id=category_id,
        amount_cents=amount_cents,
        period=Frequency.monthly,
        start_date=date(2024, 12, 1),
        end_date=date(2024, 12, 31),
        notification_threshold=80,
        **extra,
    )


def _expense(category_id: int, amount_cents: int, on: date) -> TransactionIn:
    return TransactionIn(
        type=TransactionType.expense,
        amount_cents=amount_cents,
        category_id=category_id,
        description="Groceries",
        transaction_date=on,
    )


def test_threshold_crossing_notifies_once_and_clamps_when_over() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        notifier = RecordingNotifier()
        txns, budgets = _services(session, notifier)
        food_id = _food(session)
        budget = budgets.create(_december_budget(food_id))

        first = txns.create(_expense(food_id, 850, date(2024, 12, 5)))
        budget = budgets.get(budget.id)
        assert budget.actual_spent_cents == 850
        assert budget.remaining_cents == 150
        assert budget.utilization_rate == pytest.approx(85.0)
        assert notifier.calls == [(1, budget.id, pytest.approx(85.0))]

        txns.create(_expense(food_id, 200, date(2024, 12, 20)))
        budget = budgets.get(budget.id)
        assert budget.actual_spent_cents == 1_050
        assert budget.remaining_cents == 0
        assert budget.utilization_rate == 100.0
        assert budget.is_over_budget is True
        # still inside the cooldown window
        assert len(notifier.calls) == 1

        txns.soft_delete(first.id)
        budget = budgets.get(budget.id)
        assert budget.actual_spent_cents == 200
        assert budget.utilization_rate == pytest.approx(20.0)
        assert budget.is_over_budget is False


def test_disjoint_windows_do_not_share_spending() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns, budgets = _services(session, RecordingNotifier())
        food_id = _food(session)
        december = budgets.create_monthly(food_id, 1_000, 2024, 12)
        january = budgets.create_monthly(food_id, 1_000, 2025, 1)

        txns.create(_expense(food_id, 400, date(2024, 12, 5)))

        assert budgets.get(december.id).actual_spent_cents == 400
        assert budgets.get(january.id).actual_spent_cents == 0
        assert january.start_date == date(2025, 1, 1)
        assert january.end_date == date(2025, 1, 31)


def test_overlapping_budgets_each_count_the_transaction() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns, budgets = _services(session, RecordingNotifier())
        food_id = _food(session)
        monthly = budgets.create(_december_budget(food_id))
        yearly = budgets.create(
            BudgetIn(
                category_id=food_id,
                amount_cents=12_000,
                period=Frequency.yearly,
                start_date=date(2024, 1, 1),
                end_date=date(2024, 12, 31),
            )
        )

        txns.create(_expense(food_id, 300, date(2024, 12, 5)))

        assert budgets.get(monthly.id).actual_spent_cents == 300
        assert budgets.get(yearly.id).actual_spent_cents == 300
        affected = budgets.find_affected(food_id, date(2024, 12, 5))
        assert {b.id for b in affected} == {monthly.id, yearly.id}


def test_recompute_is_idempotent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns, budgets = _services(session, RecordingNotifier())
        food_id = _food(session)
        budget = budgets.create(_december_budget(food_id, 5_000))
        txns.create(_expense(food_id, 1_200, date(2024, 12, 2)))
        txns.create(_expense(food_id, 300, date(2024, 12, 3)))

        first = budgets.recompute(budget.id)
        second = budgets.recompute(budget.id)
        assert first.actual_spent_cents == second.actual_spent_cents == 1_500
        assert first.utilization_rate == second.utilization_rate


def test_results_converge_regardless_of_write_order() -> None:
    amounts = [(120, 3), (480, 9), (75, 14), (990, 28), (35, 31)]

    def run(order) -> int:
        engine = create_engine("sqlite:///:memory:")
        Base.metadata.create_all(engine)
        with Session(engine) as session:
            txns, budgets = _services(session, RecordingNotifier())
            food_id = _food(session)
            budget = budgets.create(_december_budget(food_id, 10_000))
            created = [
                txns.create(_expense(food_id, amount, date(2024, 12, day)))
                for amount, day in order
            ]
            txns.soft_delete(created[0].id)
            return budgets.get(budget.id).actual_spent_cents

    forward = run(amounts)
    backward = run(list(reversed(amounts)))
    assert forward == sum(a for a, _ in amounts) - amounts[0][0]
    assert backward == sum(a for a, _ in amounts) - amounts[-1][0]


def test_edit_without_relevant_change_leaves_budget_untouched() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns, budgets = _services(session, RecordingNotifier())
        food_id = _food(session)
        budget = budgets.create(_december_budget(food_id, 5_000))
        txn = txns.create(_expense(food_id, 700, date(2024, 12, 2)))
        before = budgets.get(budget.id).actual_spent_cents

        txns.update(txn.id, TransactionPatch(description="Weekly shop", notes="aldi"))
        assert budgets.get(budget.id).actual_spent_cents == before == 700


def test_moving_a_transaction_recomputes_both_budgets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns, budgets = _services(session, RecordingNotifier())
        food_id = _food(session)
        transport = CategoryService(session).create(
            CategoryIn(name="Transport", type=TransactionType.expense)
        )
        food_budget = budgets.create(_december_budget(food_id, 5_000))
        transport_budget = budgets.create(_december_budget(transport.id, 5_000))
        january = budgets.create_monthly(food_id, 5_000, 2025, 1)
        txn = txns.create(_expense(food_id, 900, date(2024, 12, 2)))

        txns.update(txn.id, TransactionPatch(category_id=transport.id))
        assert budgets.get(food_budget.id).actual_spent_cents == 0
        assert budgets.get(transport_budget.id).actual_spent_cents == 900

        txns.update(
            txn.id,
            TransactionPatch(category_id=food_id, transaction_date=date(2025, 1, 4)),
        )
        assert budgets.get(transport_budget.id).actual_spent_cents == 0
        assert budgets.get(food_budget.id).actual_spent_cents == 0
        assert budgets.get(january.id).actual_spent_cents == 900


def test_cooldown_expires_and_paused_budgets_stay_quiet() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        notifier = RecordingNotifier()
        txns, budgets = _services(session, notifier)
        food_id = _food(session)
        budget = budgets.create(_december_budget(food_id))
        txns.create(_expense(food_id, 900, date(2024, 12, 5)))
        assert len(notifier.calls) == 1

        later = budgets.recompute(budget.id, now=utcnow() + timedelta(hours=25))
        assert later.event is not None
        assert later.event.threshold == 80

        budgets.update(budget.id, BudgetPatch(status=BudgetStatus.paused))
        paused = budgets.recompute(budget.id, now=utcnow() + timedelta(hours=60))
        assert paused.event is None


def test_raising_the_allowance_rearms_the_notification() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        notifier = RecordingNotifier()
        txns, budgets = _services(session, notifier)
        food_id = _food(session)
        budget = budgets.create(_december_budget(food_id))
        txns.create(_expense(food_id, 850, date(2024, 12, 5)))
        assert len(notifier.calls) == 1

        budgets.update(budget.id, BudgetPatch(amount_cents=2_000))
        refreshed = budgets.get(budget.id)
        assert refreshed.utilization_rate == pytest.approx(42.5)
        assert refreshed.notification_last_sent_at is None

        txns.create(_expense(food_id, 900, date(2024, 12, 6)))
        assert len(notifier.calls) == 2


def test_zero_amount_budget_reports_zero_utilization() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns, budgets = _services(session, RecordingNotifier())
        food_id = _food(session)
        budget = budgets.create(_december_budget(food_id, 0, notifications_enabled=False))
        txns.create(_expense(food_id, 100, date(2024, 12, 5)))

        budget = budgets.get(budget.id)
        assert budget.utilization_rate == 0.0
        assert budget.remaining_cents == 0
        assert budget.is_over_budget is True


def test_budget_validation() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, budgets = _services(session, RecordingNotifier())
        food_id = _food(session)
        salary = CategoryService(session).create(
            CategoryIn(name="Salary", type=TransactionType.income)
        )

        with pytest.raises(TypeMismatchError):
            budgets.create(_december_budget(salary.id))
        with pytest.raises(ValidationError):
            budgets.create(
                BudgetIn(
                    category_id=food_id,
                    amount_cents=100,
                    period=Frequency.monthly,
                    start_date=date(2024, 12, 31),
                    end_date=date(2024, 12, 31),
                )
            )
        with pytest.raises(BudgetNotFound):
            BudgetService(session, user_id=2).get(
                budgets.create(_december_budget(food_id)).id
            )


def test_summary_counts_over_and_near_limit() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns, budgets = _services(session, RecordingNotifier())
        food_id = _food(session)
        fun = CategoryService(session).create(
            CategoryIn(name="Fun", type=TransactionType.expense)
        )
        rent = CategoryService(session).create(
            CategoryIn(name="Rent", type=TransactionType.expense)
        )
        budgets.create(_december_budget(food_id, 1_000))
        budgets.create(_december_budget(fun.id, 1_000))
        budgets.create(_december_budget(rent.id, 1_000))
        txns.create(_expense(food_id, 1_200, date(2024, 12, 3)))
        txns.create(_expense(fun.id, 850, date(2024, 12, 3)))
        txns.create(_expense(rent.id, 100, date(2024, 12, 3)))

        summary = budgets.summary(date(2024, 12, 15))
        assert summary.budget_count == 3
        assert summary.total_budget_cents == 3_000
        assert summary.total_spent_cents == 2_150
        assert summary.total_remaining_cents == 0 + 150 + 900
        assert summary.over_budget_count == 1
        assert summary.near_limit_count == 1
        assert summary.utilization_rate == pytest.approx(2_150 / 3_000 * 100)

        assert budgets.summary(date(2025, 2, 1)).budget_count == 0


def test_renewal_carries_capped_rollover_without_compounding() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns, budgets = _services(session, RecordingNotifier())
        food_id = _food(session)
        budget = budgets.create(
            _december_budget(
                food_id, 1_000, rollover_enabled=True, rollover_max_cents=300
            )
        )
        txns.create(_expense(food_id, 200, date(2024, 12, 5)))

        with pytest.raises(ConflictError):
            budgets.renew(budget.id, today=date(2024, 12, 10))
        assert budgets.renewal_due(budgets.get(budget.id), date(2024, 12, 28))

        renewed = budgets.renew(budget.id, today=date(2024, 12, 29))
        assert renewed.start_date == date(2025, 1, 1)
        assert renewed.end_date == date(2025, 1, 31)
        assert renewed.amount_cents == 1_300
        assert renewed.carried_over_cents == 300
        assert budgets.get(budget.id).status == BudgetStatus.completed

        again = budgets.renew(renewed.id, today=date(2025, 1, 30))
        assert again.amount_cents == 1_300
        assert again.start_date == date(2025, 2, 1)
        assert again.end_date == date(2025, 2, 28)


def test_delete_removes_budget_row() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, budgets = _services(session, RecordingNotifier())
        food_id = _food(session)
        budget = budgets.create(_december_budget(food_id))
        budgets.delete(budget.id)
        assert session.get(Budget, budget.id) is None
        assert budgets.list_all() == []
