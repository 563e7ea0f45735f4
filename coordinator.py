"""Keeps budgets and user statistics consistent with the ledger.

Every ledger write ends with a call to :meth:`ConsistencyCoordinator.ledger_changed`.
Derived rows are always recomputed from scratch, never adjusted by deltas, so a
recompute can be repeated or retried any number of times.  Recomputes for the
same key are serialised in-process; a failed recompute is remembered and picked
up again by :meth:`ConsistencyCoordinator.retry_pending` or by the nightly
:meth:`ConsistencyCoordinator.reconcile_all`.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import LedgerError, NotFoundError
from models import Budget, Transaction, UserStatistics
from notifications import LoggingNotifier, NotificationPort, ThresholdCrossed, dispatch
from services import BudgetService, LedgerChange, StatisticsService


logger = logging.getLogger(__name__)


class KeyedLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield


class PendingRecomputes:
    """Recomputes that failed and still owe the store a fresh value."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._budgets: dict[int, int] = {}
        self._users: set[int] = set()
        self._changes: set[LedgerChange] = set()

    def mark_budget(self, budget_id: int, user_id: int) -> None:
        with self._guard:
            self._budgets[budget_id] = user_id

    def mark_user(self, user_id: int) -> None:
        with self._guard:
            self._users.add(user_id)

    def mark_changes(self, changes: Iterable[LedgerChange]) -> None:
        with self._guard:
            self._changes.update(changes)

    def take_budgets_for(self, user_ids: Iterable[int]) -> list[int]:
        wanted = set(user_ids)
        with self._guard:
            taken = [bid for bid, uid in self._budgets.items() if uid in wanted]
            for budget_id in taken:
                del self._budgets[budget_id]
        return taken

    def drain(self) -> tuple[list[int], set[int], set[LedgerChange]]:
        with self._guard:
            budgets = list(self._budgets)
            users = set(self._users)
            changes = set(self._changes)
            self._budgets.clear()
            self._users.clear()
            self._changes.clear()
        return budgets, users, changes

    def is_empty(self) -> bool:
        with self._guard:
            return not (self._budgets or self._users or self._changes)

    def __len__(self) -> int:
        with self._guard:
            return len(self._budgets) + len(self._users) + len(self._changes)


recompute_locks = KeyedLocks()
pending_recomputes = PendingRecomputes()


@dataclass
class CoordinatorReport:
    budgets_recomputed: list[int] = field(default_factory=list)
    users_recomputed: list[int] = field(default_factory=list)
    events: list[ThresholdCrossed] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class ConsistencyCoordinator:
    def __init__(
        self,
        session: Session,
        *,
        notifier: Optional[NotificationPort] = None,
        locks: Optional[KeyedLocks] = None,
        pending: Optional[PendingRecomputes] = None,
    ) -> None:
        self.session = session
        self.notifier = notifier or LoggingNotifier()
        self.locks = locks or recompute_locks
        self.pending = pending if pending is not None else pending_recomputes

    def _fail(self, key: str, exc: Exception, report: CoordinatorReport) -> None:
        self.session.rollback()
        report.failures.append(key)
        logger.exception(f"recompute_failed: key={key} error={exc}")

    def _recompute_budget(self, budget_id: int, report: CoordinatorReport) -> None:
        key = f"budget:{budget_id}"
        user_id: Optional[int] = None
        with self.locks.hold(key):
            try:
                budget = self.session.get(Budget, budget_id)
                if budget is None:
                    return
                user_id = budget.user_id
                result = BudgetService(self.session, user_id).recompute(budget_id)
            except NotFoundError:
                self.session.rollback()
                return
            except (SQLAlchemyError, LedgerError) as exc:
                self._fail(key, exc, report)
                if user_id is not None:
                    self.pending.mark_budget(budget_id, user_id)
                return
        report.budgets_recomputed.append(budget_id)
        if result.event is not None:
            report.events.append(result.event)
            dispatch(self.notifier, result.event)

    def _recompute_user(self, user_id: int, report: CoordinatorReport) -> None:
        key = f"user:{user_id}"
        with self.locks.hold(key):
            try:
                StatisticsService(self.session, user_id).user_lifetime_stats()
            except (SQLAlchemyError, LedgerError) as exc:
                self._fail(key, exc, report)
                self.pending.mark_user(user_id)
                return
        report.users_recomputed.append(user_id)

    def _affected_budget_ids(
        self, changes: list[LedgerChange], report: CoordinatorReport
    ) -> list[int]:
        budget_ids: list[int] = []
        for change in changes:
            try:
                budgets = BudgetService(self.session, change.user_id).find_affected(
                    change.category_id, change.on_date
                )
            except SQLAlchemyError as exc:
                self._fail(f"change:{change.user_id}:{change.category_id}", exc, report)
                self.pending.mark_changes([change])
                continue
            for budget in budgets:
                if budget.id not in budget_ids:
                    budget_ids.append(budget.id)
        return budget_ids

    def ledger_changed(self, changes: Iterable[LedgerChange]) -> CoordinatorReport:
        """Bring every derived row touched by ``changes`` up to date.

        Never raises: the ledger write has already committed, so failures are
        logged and queued for retry instead of being reported to the caller.
        """
        report = CoordinatorReport()
        unique = list(dict.fromkeys(changes))
        if not unique:
            return report
        user_ids = list(dict.fromkeys(change.user_id for change in unique))

        budget_ids = self._affected_budget_ids(unique, report)
        for budget_id in self.pending.take_budgets_for(user_ids):
            if budget_id not in budget_ids:
                budget_ids.append(budget_id)

        for budget_id in budget_ids:
            self._recompute_budget(budget_id, report)
        for user_id in user_ids:
            self._recompute_user(user_id, report)

        logger.info(
            f"ledger_changed: changes={len(unique)} budgets={len(report.budgets_recomputed)} "
            f"users={len(report.users_recomputed)} failures={len(report.failures)}"
        )
        return report

    def recompute_budget_ids(self, budget_ids: Iterable[int]) -> CoordinatorReport:
        report = CoordinatorReport()
        for budget_id in dict.fromkeys(budget_ids):
            self._recompute_budget(budget_id, report)
        return report

    def retry_pending(self) -> CoordinatorReport:
        budget_ids, user_ids, changes = self.pending.drain()
        report = CoordinatorReport()
        if changes:
            nested = self.ledger_changed(changes)
            report.budgets_recomputed.extend(nested.budgets_recomputed)
            report.users_recomputed.extend(nested.users_recomputed)
            report.events.extend(nested.events)
            report.failures.extend(nested.failures)
        for budget_id in budget_ids:
            if budget_id not in report.budgets_recomputed:
                self._recompute_budget(budget_id, report)
        for user_id in user_ids:
            if user_id not in report.users_recomputed:
                self._recompute_user(user_id, report)
        if budget_ids or user_ids or changes:
            logger.info(
                f"retry_pending: budgets={len(report.budgets_recomputed)} "
                f"users={len(report.users_recomputed)} failures={len(report.failures)}"
            )
        return report

    def reconcile_all(self) -> CoordinatorReport:
        """Recompute every budget and every user's statistics from the ledger."""
        report = CoordinatorReport()
        self.pending.drain()
        budget_ids = list(self.session.scalars(select(Budget.id).order_by(Budget.id)))
        user_ids = set(self.session.scalars(select(Transaction.user_id).distinct()))
        user_ids.update(self.session.scalars(select(UserStatistics.user_id)))
        for budget_id in budget_ids:
            self._recompute_budget(budget_id, report)
        for user_id in sorted(user_ids):
            self._recompute_user(user_id, report)
        logger.info(
            f"reconcile_all: budgets={len(report.budgets_recomputed)} "
            f"users={len(report.users_recomputed)} failures={len(report.failures)}"
        )
        return report
