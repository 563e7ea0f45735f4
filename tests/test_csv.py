from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from csv_utils import parse_amount, parse_csv, sanitize_csv_value
from database import Base
from errors import ValidationError
from models import PaymentMethod, TransactionType
from services import CategoryService, CSVService, TransactionService

CSV_TEXT = """Date,Type,Amount,Category,Description,PaymentMethod,Tags
2025-01-03,expense,"12,50",Food & Dining,Bakery,cash,breakfast;weekend
05.01.2025,income,2500.00,Salary,January pay,bank transfer,
2025-01-07,expense,8.99,Transport,,card,
"""


def test_parse_csv_reads_all_columns() -> None:
    rows, errors = parse_csv(CSV_TEXT)
    assert errors == []
    assert len(rows) == 3
    bakery, pay, bus = rows
    assert bakery.date == date(2025, 1, 3)
    assert bakery.amount_cents == 1_250
    assert bakery.tags == ["breakfast", "weekend"]
    assert bakery.payment_method == PaymentMethod.cash
    assert pay.type == TransactionType.income
    assert pay.payment_method == PaymentMethod.bank_transfer
    # description falls back to the category name
    assert bus.description == "Transport"


def test_parse_csv_collects_row_errors() -> None:
    content = "Date,Type,Amount,Category\nnot-a-date,expense,1,Food\n2025-01-01,gift,1,Food\n"
    rows, errors = parse_csv(content)
    assert rows == []
    assert [e.split(":")[0] for e in errors] == ["Row 1", "Row 2"]


def test_parse_amount_and_sanitize() -> None:
    assert parse_amount("€ 1.234,56") == 123_456
    with pytest.raises(ValueError):
        parse_amount("-3")
    assert sanitize_csv_value("=SUM(A1)") == "\t=SUM(A1)"
    assert sanitize_csv_value("Lunch") == "Lunch"


def test_import_commits_batch_and_export_round_trips_columns() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        CategoryService(session).bootstrap_defaults()
        service = CSVService(session)

        entries, errors = service.preview(CSV_TEXT)
        assert errors == []
        assert len(entries) == 3

        assert service.commit(CSV_TEXT) == 3
        items = TransactionService(session).query().items
        exported = service.export(items)
        header, *lines = exported.strip().splitlines()
        assert header == "Date,Type,Amount,Category,Description,PaymentMethod,Tags"
        assert "2025-01-03,expense,12.50,Food & Dining,Bakery,cash,breakfast;weekend" in lines


def test_import_with_unknown_category_writes_nothing() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        CategoryService(session).bootstrap_defaults()
        content = CSV_TEXT + "2025-01-08,expense,4.00,Gadgets,Cable,card,\n"
        with pytest.raises(ValidationError):
            CSVService(session).commit(content)
        assert TransactionService(session).query().total == 0
