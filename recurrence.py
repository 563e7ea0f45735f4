import logging
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from errors import LedgerError
from models import Frequency, Transaction, TransactionStatus
from periods import add_months, local_today, month_end


logger = logging.getLogger(__name__)

MAX_CATCH_UP = 366


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    first = add_months(base, months)
    dim = month_end(first.year, first.month).day
    return first.replace(day=min(desired_day, dim))


def calculate_next_date(
    frequency: Frequency, from_date: date, *, anchor_day: Optional[int] = None
) -> date:
    """Next occurrence after ``from_date``; month ends snap to the shorter month."""
    if frequency == Frequency.daily:
        return from_date + timedelta(days=1)
    if frequency == Frequency.weekly:
        return from_date + timedelta(weeks=1)
    desired_day = anchor_day or from_date.day
    if frequency == Frequency.monthly:
        return _add_months(from_date, 1, desired_day=desired_day)
    return _add_months(from_date, 12, desired_day=desired_day)


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def due_templates(self, today: date) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.status == TransactionStatus.active,
                Transaction.recurring_next_occurrence.isnot(None),
                Transaction.recurring_next_occurrence <= today,
            )
            .order_by(Transaction.recurring_next_occurrence, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def _existing_occurrences(self, template: Transaction) -> set[date]:
        rows = self.session.execute(
            select(Transaction.transaction_date).where(
                Transaction.origin_transaction_id == template.id
            )
        ).all()
        return {row[0] for row in rows}

    def catch_up(self, template: Transaction, today: Optional[date] = None) -> int:
        from schemas import TransactionIn
        from services import TransactionService

        today = today or local_today()
        anchor_day = template.transaction_date.day
        existing = self._existing_occurrences(template)
        entries: list[TransactionIn] = []
        next_date = template.recurring_next_occurrence
        iterations = 0
        while next_date is not None and next_date <= today and iterations < MAX_CATCH_UP:
            if template.recurring_end_date and next_date > template.recurring_end_date:
                next_date = None
                break
            if next_date not in existing:
                entries.append(
                    TransactionIn(
                        type=template.type,
                        amount_cents=template.amount_cents,
                        category_id=template.category_id,
                        description=template.description,
                        transaction_date=next_date,
                        payment_method=template.payment_method,
                        merchant=template.merchant,
                        notes=template.notes,
                        tags=template.tag_names,
                    )
                )
            next_date = calculate_next_date(
                template.recurring_frequency, next_date, anchor_day=anchor_day
            )
            iterations += 1

        # committed together with the posted occurrences
        template.recurring_next_occurrence = next_date
        service = TransactionService(self.session, template.user_id)
        service.create_many(entries, origin_transaction_id=template.id)
        return len(entries)

    def post_due(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        count = 0
        for template in self.due_templates(today):
            template_id = template.id
            try:
                count += self.catch_up(template, today)
            except (LedgerError, ValueError, SQLAlchemyError):
                self.session.rollback()
                logger.exception(
                    f"recurring_post_failed: transaction_id={template_id}"
                )
        return count
