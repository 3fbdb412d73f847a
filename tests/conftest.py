"""Shared fixtures for the lending core test suite."""

from decimal import Decimal
from datetime import datetime, timezone

import pytest

from lending_core.amortization import RepaymentMethod
from lending_core.loans import Loan, LoanStatus, LoanManager
from lending_core.storage import InMemoryStorage
from lending_core.schedule import ScheduleGenerator
from lending_core.aggregation import LoanAggregator


def make_loan(
    loan_id: str = "LOAN001",
    amount: str = "120000",
    interest_rate: str = "6",
    term: int = 12,
    method: RepaymentMethod = RepaymentMethod.EQUAL_PAYMENT,
    status: LoanStatus = LoanStatus.PENDING,
    application_date: datetime = datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc),
    **overrides
) -> Loan:
    """Build a Loan record without going through LoanManager"""
    now = datetime.now(timezone.utc)
    fields = dict(
        id=loan_id,
        created_at=now,
        updated_at=now,
        loan_name="Home renovation",
        applicant_id="USER001",
        applicant_name="Alice Zhang",
        bank="First Mutual",
        amount=Decimal(amount),
        interest_rate=Decimal(interest_rate),
        term=term,
        repayment_method=method,
        status=status,
        application_date=application_date,
    )
    fields.update(overrides)
    return Loan(**fields)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def generator(storage):
    return ScheduleGenerator(storage)


@pytest.fixture
def aggregator(storage):
    return LoanAggregator(storage)


@pytest.fixture
def manager(storage, generator, aggregator):
    return LoanManager(storage, generator, aggregator)
