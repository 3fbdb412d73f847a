"""
Test suite for loan lifecycle management

Tests application submission and editing, approval with derived amount
recomputation, rejection, completion, deletion, filtering and schedule
generation through the loan manager.
"""

import inspect

import pytest
from decimal import Decimal
from datetime import datetime, timezone

from lending_core.amortization import RepaymentMethod
from lending_core.loans import Loan, LoanStatus
from lending_core.storage import InMemoryStorage, SQLiteStorage
from lending_core.schedule import ScheduleGenerator
from lending_core.aggregation import LoanAggregator
from lending_core.loans import LoanManager
from lending_core.exceptions import (
    InvalidTermsError, InvalidLoanStateError, LoanNotFoundError, PersistenceError
)


def submit(manager, **overrides):
    fields = dict(
        loan_name="Home renovation",
        applicant_id="USER001",
        applicant_name="Alice Zhang",
        bank="First Mutual",
        amount="120000",
        interest_rate="6",
        term=12,
        repayment_method="equal_payment",
        application_date=datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)
    )
    fields.update(overrides)
    return manager.submit_application(**fields)


class TestLoanApplication:
    """Test submitting and editing applications"""

    def test_submit_application(self, manager):
        """Test a new application is pending with no derived amounts"""
        loan = submit(manager, purpose="Kitchen", collateral="House")

        assert loan.status == LoanStatus.PENDING
        assert loan.amount == Decimal('120000')
        assert loan.interest_rate == Decimal('6')
        assert loan.repayment_method == RepaymentMethod.EQUAL_PAYMENT
        assert loan.monthly_payment is None
        assert loan.approved_amount is None

        stored = manager.get_loan(loan.id)
        assert stored.purpose == "Kitchen"
        assert stored.application_date == loan.application_date

    def test_loan_number(self, manager):
        loan = submit(manager)
        assert loan.loan_number == f"LOAN20240115{loan.id[-6:].upper()}"

    def test_application_date_defaults_to_now(self, manager):
        loan = submit(manager, application_date=None)
        assert (datetime.now(timezone.utc) - loan.application_date).total_seconds() < 60

    def test_unknown_method_falls_back(self, manager):
        loan = submit(manager, repayment_method="interest_only")
        assert loan.repayment_method == RepaymentMethod.EQUAL_PAYMENT

    @pytest.mark.parametrize("overrides", [
        {"amount": "0"},
        {"amount": "999.99"},
        {"amount": "100000000.01"},
        {"amount": "not-a-number"},
        {"interest_rate": "-1"},
        {"interest_rate": "100.5"},
        {"term": 0},
        {"term": 361},
    ])
    def test_invalid_terms_rejected(self, manager, storage, overrides):
        with pytest.raises(InvalidTermsError):
            submit(manager, **overrides)
        assert storage.count(manager.loans_table) == 0

    def test_update_pending_application(self, manager):
        loan = submit(manager)
        updated = manager.update_application(
            loan.id, amount="50000", term=24, repayment_method="equal_principal"
        )
        assert updated.amount == Decimal('50000')
        assert updated.term == 24
        assert updated.repayment_method == RepaymentMethod.EQUAL_PRINCIPAL
        assert manager.get_loan(loan.id).amount == Decimal('50000')

    def test_update_rejects_unknown_fields(self, manager):
        loan = submit(manager)
        with pytest.raises(ValueError, match="status"):
            manager.update_application(loan.id, status="approved")

    def test_update_after_approval_fails(self, manager):
        loan = submit(manager)
        manager.approve_loan(loan.id)
        with pytest.raises(InvalidLoanStateError):
            manager.update_application(loan.id, amount="1000")

    def test_missing_loan(self, manager):
        assert manager.get_loan("nope") is None
        with pytest.raises(LoanNotFoundError):
            manager.approve_loan("nope")


class TestLoanApproval:
    """Test approval and rejection"""

    def test_approve_defaults_to_requested_terms(self, manager):
        loan = submit(manager)
        approved = manager.approve_loan(loan.id, approved_by="ADMIN1", remark="OK")

        assert approved.status == LoanStatus.APPROVED
        assert approved.approved_amount == Decimal('120000')
        assert approved.approved_rate == Decimal('6')
        assert approved.approved_by == "ADMIN1"
        assert approved.approval_date is not None
        assert approved.monthly_payment == Decimal('10327.97')
        assert approved.total_payment == Decimal('123935.64')
        assert approved.total_interest == Decimal('3935.64')

    def test_approved_amounts_persisted(self, manager):
        loan = submit(manager)
        manager.approve_loan(loan.id)
        stored = manager.get_loan(loan.id)
        assert stored.status == LoanStatus.APPROVED
        assert stored.monthly_payment == Decimal('10327.97')

    def test_approve_with_adjusted_terms(self, manager):
        loan = submit(manager, repayment_method="equal_principal")
        approved = manager.approve_loan(loan.id, approved_amount="60000", approved_rate="0")

        assert approved.amount == Decimal('120000')
        assert approved.approved_amount == Decimal('60000')
        assert approved.approved_rate == Decimal('0')
        assert approved.monthly_payment == Decimal('5000.00')
        assert approved.total_interest == Decimal('0.00')

    def test_no_reapproval(self, manager):
        loan = submit(manager)
        manager.approve_loan(loan.id)
        with pytest.raises(InvalidLoanStateError):
            manager.approve_loan(loan.id)
        with pytest.raises(InvalidLoanStateError):
            manager.reject_loan(loan.id)

    def test_invalid_approved_terms(self, manager):
        loan = submit(manager)
        with pytest.raises(InvalidTermsError):
            manager.approve_loan(loan.id, approved_rate="-2")
        assert manager.get_loan(loan.id).status == LoanStatus.PENDING

    def test_reject(self, manager):
        loan = submit(manager)
        rejected = manager.reject_loan(loan.id, approved_by="ADMIN1", remark="Income too low")
        assert rejected.status == LoanStatus.REJECTED
        assert rejected.remark == "Income too low"
        assert rejected.monthly_payment is None
        assert rejected.approved_amount is None

    def test_failed_write_keeps_loan_pending(self):
        """Test approval is all-or-nothing when the loan write fails"""
        class FailingStorage(InMemoryStorage):
            fail = False

            def save(self, table, record_id, data):
                if self.fail:
                    raise PersistenceError("write failed")
                super().save(table, record_id, data)

        storage = FailingStorage()
        manager = LoanManager(storage, ScheduleGenerator(storage), LoanAggregator(storage))
        loan = submit(manager)

        storage.fail = True
        with pytest.raises(PersistenceError):
            manager.approve_loan(loan.id)

        stored = manager.get_loan(loan.id)
        assert stored.status == LoanStatus.PENDING
        assert stored.monthly_payment is None


class TestApprovedLoans:
    """Test adjusting, completing and deleting loans after review"""

    def test_adjust_terms_recomputes(self, manager):
        loan = submit(manager)
        manager.approve_loan(loan.id)

        adjusted = manager.adjust_approved_terms(loan.id, approved_rate="0", term=24)
        assert adjusted.term == 24
        assert adjusted.monthly_payment == Decimal('5000.00')
        assert adjusted.total_payment == Decimal('120000.00')
        assert manager.get_loan(loan.id).total_interest == Decimal('0.00')

    def test_adjust_requires_approved(self, manager):
        loan = submit(manager)
        with pytest.raises(InvalidLoanStateError):
            manager.adjust_approved_terms(loan.id, term=24)

    def test_terms_frozen_after_schedule(self, manager):
        loan = submit(manager)
        manager.approve_loan(loan.id)
        manager.generate_schedule(loan.id)
        with pytest.raises(InvalidLoanStateError, match="schedule"):
            manager.adjust_approved_terms(loan.id, approved_amount="100000")

    def test_complete_clears_derived_amounts(self, manager):
        loan = submit(manager)
        manager.approve_loan(loan.id)
        completed = manager.complete_loan(loan.id)
        assert completed.status == LoanStatus.COMPLETED
        assert completed.monthly_payment is None
        assert completed.total_payment is None

    def test_complete_requires_approved(self, manager):
        loan = submit(manager)
        with pytest.raises(InvalidLoanStateError):
            manager.complete_loan(loan.id)

    def test_delete(self, manager):
        pending = submit(manager)
        rejected = submit(manager)
        manager.reject_loan(rejected.id)

        manager.delete_loan(pending.id)
        manager.delete_loan(rejected.id)
        assert manager.get_loan(pending.id) is None
        assert manager.get_loan(rejected.id) is None

    def test_approved_loans_cannot_be_deleted(self, manager):
        loan = submit(manager)
        manager.approve_loan(loan.id)
        with pytest.raises(InvalidLoanStateError):
            manager.delete_loan(loan.id)


class TestLoanSchedules:
    """Test schedule generation through the loan manager"""

    def test_generate_once(self, manager):
        loan = submit(manager, repayment_method="equal_principal")
        manager.approve_loan(loan.id)

        entries = manager.generate_schedule(loan.id)
        assert len(entries) == 12
        assert entries[0].total_amount == Decimal('10600.00')
        assert manager.generate_schedule(loan.id) == []
        assert len(manager.get_schedule(loan.id)) == 12

    def test_schedule_uses_approved_terms(self, manager):
        loan = submit(manager)
        manager.approve_loan(loan.id, approved_amount="12000", approved_rate="0")
        entries = manager.generate_schedule(loan.id)
        assert {entry.total_amount for entry in entries} == {Decimal('1000.00')}

    @pytest.mark.parametrize("review", ["pending", "rejected"])
    def test_requires_approval(self, manager, review):
        loan = submit(manager)
        if review == "rejected":
            manager.reject_loan(loan.id)
        with pytest.raises(InvalidLoanStateError):
            manager.generate_schedule(loan.id)

    def test_schedule_of_missing_loan(self, manager):
        with pytest.raises(LoanNotFoundError):
            manager.get_schedule("nope")


class TestLoanQueries:
    """Test listing, filtering and statistics"""

    @pytest.fixture
    def portfolio(self, manager):
        first = submit(manager, loan_name="Car", bank="City Bank", amount="5000",
                       application_date=datetime(2024, 1, 1, tzinfo=timezone.utc))
        second = submit(manager, loan_name="House", applicant_id="USER002",
                        applicant_name="Bob Li", amount="300000",
                        application_date=datetime(2024, 3, 1, tzinfo=timezone.utc))
        third = submit(manager, loan_name="Tuition", bank="city bank", amount="20000",
                       application_date=datetime(2024, 2, 1, tzinfo=timezone.utc))
        manager.approve_loan(second.id)
        return first, second, third

    def test_newest_first(self, manager, portfolio):
        first, second, third = portfolio
        assert [loan.id for loan in manager.list_loans()] == [second.id, third.id, first.id]

    def test_filters(self, manager, portfolio):
        first, second, third = portfolio
        assert [loan.id for loan in manager.list_loans(status=LoanStatus.APPROVED)] == [second.id]
        assert [loan.id for loan in manager.list_loans(applicant_id="USER002")] == [second.id]
        assert {loan.id for loan in manager.list_loans(bank="CITY")} == {first.id, third.id}
        assert [loan.id for loan in manager.list_loans(amount_min=10000, amount_max=100000)] == [third.id]
        assert [loan.id for loan in manager.list_loans(search="bob")] == [second.id]

    def test_date_range(self, manager, portfolio):
        first, second, third = portfolio
        loans = manager.list_loans(
            date_from=datetime(2024, 1, 15),
            date_to=datetime(2024, 2, 15, tzinfo=timezone.utc)
        )
        assert [loan.id for loan in loans] == [third.id]

    def test_statistics(self, manager, portfolio):
        stats = manager.get_statistics()
        assert stats.total_loans == 3
        assert stats.pending_loans == 2
        assert stats.approved_loans == 1
        assert stats.approved_amount == Decimal('300000')
        assert stats.total_amount == Decimal('325000')
        assert stats.average_amount == 108333


class TestLoanPersistence:
    """Test loans survive a round trip through SQLite"""

    def test_sqlite_lifecycle(self):
        storage = SQLiteStorage()
        manager = LoanManager(storage, ScheduleGenerator(storage), LoanAggregator(storage))

        loan = submit(manager)
        manager.approve_loan(loan.id, approved_amount="100000")
        manager.generate_schedule(loan.id)

        stored = manager.get_loan(loan.id)
        assert isinstance(stored, Loan)
        assert stored.approved_amount == Decimal('100000')
        assert stored.monthly_payment is not None
        assert sum(entry.principal_amount for entry in manager.get_schedule(loan.id)) == Decimal('100000.00')
        storage.close()


class TestLoanManagerWiring:
    """Test the manager's collaborators"""

    def test_aggregator_annotation(self):
        parameters = inspect.signature(LoanManager.__init__).parameters
        assert parameters['aggregator'].annotation == "LoanAggregator"
        assert parameters['schedule_generator'].annotation is ScheduleGenerator

    def test_fixture_wiring(self, manager, aggregator, generator):
        assert manager.aggregator is aggregator
        assert manager.schedule_generator is generator
