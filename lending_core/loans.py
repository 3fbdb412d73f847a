"""
Loan Module

Handles loan applications and their lifecycle: submission, editing while
pending, approval or rejection, completion, and the hand-off to the
amortization engine for derived amounts and repayment schedules.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TYPE_CHECKING
from enum import Enum
import uuid
import logging

from .amortization import LoanTerms, RepaymentMethod, resolve_method, to_decimal
from .storage import StorageInterface, StorageRecord
from .schedule import ScheduleGenerator, RepaymentScheduleEntry
from .exceptions import InvalidTermsError, LoanNotFoundError, InvalidLoanStateError
from .logging_config import log_action
from .config import get_config

if TYPE_CHECKING:
    from .aggregation import LoanAggregator


logger = logging.getLogger("lending.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Application submitted, awaiting review
    APPROVED = "approved"      # Approved, derived amounts computed
    REJECTED = "rejected"      # Rejected by an administrator
    COMPLETED = "completed"    # Fully repaid


# Application fields an applicant may edit while the loan is pending
EDITABLE_FIELDS = (
    'loan_name', 'applicant_name', 'amount', 'interest_rate', 'bank',
    'term', 'repayment_method', 'purpose', 'collateral'
)

DERIVED_FIELDS = ('monthly_payment', 'total_payment', 'total_interest')


def _parse_amount(value, name: str) -> Decimal:
    """Convert an incoming number, reporting garbage as invalid terms"""
    try:
        return to_decimal(value)
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise InvalidTermsError(f"{name} must be numeric, got {value!r}") from exc


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class Loan(StorageRecord):
    """Loan application with approval details and derived amounts"""
    loan_name: str
    applicant_id: str
    applicant_name: str
    bank: str
    amount: Decimal
    interest_rate: Decimal              # Annual percent, e.g. 6 for 6%
    term: int                           # Months
    repayment_method: RepaymentMethod
    status: LoanStatus = LoanStatus.PENDING
    purpose: Optional[str] = None
    collateral: Optional[str] = None
    remark: Optional[str] = None

    # Set on approval only
    approved_amount: Optional[Decimal] = None
    approved_rate: Optional[Decimal] = None
    approval_date: Optional[datetime] = None
    approved_by: Optional[str] = None

    # Derived from approved terms
    monthly_payment: Optional[Decimal] = None
    total_payment: Optional[Decimal] = None
    total_interest: Optional[Decimal] = None

    application_date: Optional[datetime] = None

    @property
    def effective_amount(self) -> Decimal:
        """Approved amount when set, otherwise the requested amount"""
        return self.approved_amount if self.approved_amount is not None else self.amount

    @property
    def effective_rate(self) -> Decimal:
        """Approved rate when set, otherwise the requested rate"""
        return self.approved_rate if self.approved_rate is not None else self.interest_rate

    @property
    def loan_number(self) -> str:
        """Human readable number: LOAN + application date + id suffix"""
        reference = self.application_date or self.created_at
        return f"LOAN{reference.strftime('%Y%m%d')}{self.id[-6:].upper()}"

    def financial_terms(self) -> LoanTerms:
        """Terms the amortization engine should use for this loan"""
        return LoanTerms(
            principal=self.effective_amount,
            annual_rate_percent=self.effective_rate,
            term_months=self.term,
            method=self.repayment_method,
        )

    def clear_financials(self) -> None:
        for name in DERIVED_FIELDS:
            setattr(self, name, None)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        result['repayment_method'] = self.repayment_method.value
        for name in ('approval_date', 'application_date'):
            value = getattr(self, name)
            result[name] = value.isoformat() if value else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        def get_decimal(name: str) -> Optional[Decimal]:
            value = data.get(name)
            return Decimal(value) if value is not None else None

        def get_datetime(name: str) -> Optional[datetime]:
            value = data.get(name)
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_name=data['loan_name'],
            applicant_id=data['applicant_id'],
            applicant_name=data['applicant_name'],
            bank=data['bank'],
            amount=Decimal(data['amount']),
            interest_rate=Decimal(data['interest_rate']),
            term=data['term'],
            repayment_method=resolve_method(data['repayment_method']),
            status=LoanStatus(data['status']),
            purpose=data.get('purpose'),
            collateral=data.get('collateral'),
            remark=data.get('remark'),
            approved_amount=get_decimal('approved_amount'),
            approved_rate=get_decimal('approved_rate'),
            approval_date=get_datetime('approval_date'),
            approved_by=data.get('approved_by'),
            monthly_payment=get_decimal('monthly_payment'),
            total_payment=get_decimal('total_payment'),
            total_interest=get_decimal('total_interest'),
            application_date=get_datetime('application_date'),
        )


class LoanManager:
    """
    Manages loan applications from submission through approval and completion
    """

    def __init__(
        self,
        storage: StorageInterface,
        schedule_generator: ScheduleGenerator,
        aggregator: "LoanAggregator"
    ):
        self.storage = storage
        self.schedule_generator = schedule_generator
        self.aggregator = aggregator

        self.loans_table = "loans"

    def submit_application(
        self,
        loan_name: str,
        applicant_id: str,
        applicant_name: str,
        bank: str,
        amount,
        interest_rate,
        term: int,
        repayment_method,
        purpose: Optional[str] = None,
        collateral: Optional[str] = None,
        application_date: Optional[datetime] = None
    ) -> Loan:
        """
        Submit a new loan application in pending status

        Args:
            loan_name: Display name of the loan
            applicant_id: Applicant user ID
            applicant_name: Applicant display name
            bank: Lending bank name
            amount: Requested principal
            interest_rate: Requested annual rate in percent
            term: Term in months
            repayment_method: equal_payment or equal_principal
            purpose: Optional purpose description
            collateral: Optional collateral description
            application_date: Defaults to now

        Returns:
            Created Loan object
        """
        now = datetime.now(timezone.utc)

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_name=loan_name,
            applicant_id=applicant_id,
            applicant_name=applicant_name,
            bank=bank,
            amount=_parse_amount(amount, "amount"),
            interest_rate=_parse_amount(interest_rate, "interest_rate"),
            term=term,
            repayment_method=resolve_method(repayment_method),
            purpose=purpose,
            collateral=collateral,
            application_date=_as_aware(application_date) or now
        )
        self._validate_terms(loan)
        self._save_loan(loan)

        log_action(
            logger, "info", f"Loan application submitted: {loan.loan_name}",
            user_id=applicant_id,
            action="create_loan",
            resource=f"loan:{loan.id}",
            extra={"amount": str(loan.amount), "term": loan.term}
        )
        return loan

    def update_application(self, loan_id: str, **changes) -> Loan:
        """
        Edit a pending application

        Raises:
            InvalidLoanStateError: If the loan is no longer pending
            ValueError: If a field cannot be edited
        """
        loan = self._require_loan(loan_id)
        if loan.status != LoanStatus.PENDING:
            raise InvalidLoanStateError(
                f"Only pending loans can be updated, loan is {loan.status.value}"
            )

        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        for name, value in changes.items():
            if value is None:
                continue
            if name in ('amount', 'interest_rate'):
                value = _parse_amount(value, name)
            elif name == 'repayment_method':
                value = resolve_method(value)
            setattr(loan, name, value)

        self._validate_terms(loan)
        loan.updated_at = datetime.now(timezone.utc)
        self._save_loan(loan)

        log_action(
            logger, "info", f"Loan application updated: {loan.loan_name}",
            action="update_loan",
            resource=f"loan:{loan.id}",
            extra={"updated_fields": sorted(changes)}
        )
        return loan

    def approve_loan(
        self,
        loan_id: str,
        approved_by: Optional[str] = None,
        approved_amount=None,
        approved_rate=None,
        remark: Optional[str] = None
    ) -> Loan:
        """
        Approve a pending loan and compute its derived amounts

        The status change and the recomputed amounts are written together,
        so an approved loan is never stored without them.

        Args:
            loan_id: Loan ID
            approved_by: Approving administrator ID
            approved_amount: Defaults to the requested amount
            approved_rate: Defaults to the requested rate
            remark: Optional review remark

        Returns:
            Updated Loan object
        """
        loan = self._require_loan(loan_id)
        if loan.status != LoanStatus.PENDING:
            raise InvalidLoanStateError(
                f"Only pending loans can be approved, loan is {loan.status.value}"
            )

        now = datetime.now(timezone.utc)
        loan.status = LoanStatus.APPROVED
        loan.remark = remark
        loan.approval_date = now
        loan.approved_by = approved_by
        loan.approved_amount = loan.amount
        loan.approved_rate = loan.interest_rate
        if approved_amount is not None:
            loan.approved_amount = _parse_amount(approved_amount, "approved_amount")
        if approved_rate is not None:
            loan.approved_rate = _parse_amount(approved_rate, "approved_rate")
        loan.updated_at = now
        self._validate_terms(loan)

        with self.storage.atomic():
            self.aggregator.recompute_financials(
                loan, {'status', 'approved_amount', 'approved_rate'}
            )
            self._save_loan(loan)

        log_action(
            logger, "warning", f"Loan approved: {loan.loan_name}",
            user_id=approved_by,
            action="approve_loan",
            resource=f"loan:{loan.id}",
            extra={
                "approved_amount": str(loan.approved_amount),
                "approved_rate": str(loan.approved_rate),
                "monthly_payment": str(loan.monthly_payment)
            }
        )
        return loan

    def reject_loan(
        self,
        loan_id: str,
        approved_by: Optional[str] = None,
        remark: Optional[str] = None
    ) -> Loan:
        """Reject a pending loan"""
        loan = self._require_loan(loan_id)
        if loan.status != LoanStatus.PENDING:
            raise InvalidLoanStateError(
                f"Only pending loans can be rejected, loan is {loan.status.value}"
            )

        now = datetime.now(timezone.utc)
        loan.status = LoanStatus.REJECTED
        loan.remark = remark
        loan.approval_date = now
        loan.approved_by = approved_by
        loan.clear_financials()
        loan.updated_at = now
        self._save_loan(loan)

        log_action(
            logger, "warning", f"Loan rejected: {loan.loan_name}",
            user_id=approved_by,
            action="reject_loan",
            resource=f"loan:{loan.id}"
        )
        return loan

    def adjust_approved_terms(
        self,
        loan_id: str,
        approved_amount=None,
        approved_rate=None,
        term: Optional[int] = None
    ) -> Loan:
        """
        Change the approved amount, rate or term of an approved loan

        Derived amounts are recomputed in the same write. Terms are frozen
        once a repayment schedule has been generated.
        """
        loan = self._require_loan(loan_id)
        if loan.status != LoanStatus.APPROVED:
            raise InvalidLoanStateError(
                f"Only approved loans can have terms adjusted, loan is {loan.status.value}"
            )
        if self.schedule_generator.has_schedule(loan_id):
            raise InvalidLoanStateError(
                f"Loan {loan_id} already has a repayment schedule"
            )

        changed = set()
        if approved_amount is not None:
            loan.approved_amount = _parse_amount(approved_amount, "approved_amount")
            changed.add('approved_amount')
        if approved_rate is not None:
            loan.approved_rate = _parse_amount(approved_rate, "approved_rate")
            changed.add('approved_rate')
        if term is not None:
            loan.term = term
            changed.add('term')
        self._validate_terms(loan)

        loan.updated_at = datetime.now(timezone.utc)
        with self.storage.atomic():
            self.aggregator.recompute_financials(loan, changed)
            self._save_loan(loan)
        return loan

    def complete_loan(self, loan_id: str) -> Loan:
        """Mark an approved loan as fully repaid"""
        loan = self._require_loan(loan_id)
        if loan.status != LoanStatus.APPROVED:
            raise InvalidLoanStateError(
                f"Only approved loans can be completed, loan is {loan.status.value}"
            )

        loan.status = LoanStatus.COMPLETED
        loan.clear_financials()
        loan.updated_at = datetime.now(timezone.utc)
        self._save_loan(loan)

        log_action(logger, "info", f"Loan completed: {loan.loan_name}",
                   action="complete_loan", resource=f"loan:{loan.id}")
        return loan

    def delete_loan(self, loan_id: str) -> None:
        """Delete a pending or rejected loan"""
        loan = self._require_loan(loan_id)
        if loan.status not in (LoanStatus.PENDING, LoanStatus.REJECTED):
            raise InvalidLoanStateError(
                f"Only pending or rejected loans can be deleted, loan is {loan.status.value}"
            )
        self.storage.delete(self.loans_table, loan_id)

        log_action(logger, "warning", f"Loan deleted: {loan.loan_name}",
                   action="delete_loan", resource=f"loan:{loan.id}")

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if loan_dict:
            return Loan.from_dict(loan_dict)
        return None

    def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        applicant_id: Optional[str] = None,
        bank: Optional[str] = None,
        amount_min=None,
        amount_max=None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        search: Optional[str] = None
    ) -> List[Loan]:
        """
        List loans matching the given filters, newest application first

        Bank and search matching are case-insensitive substring matches;
        search looks at loan name, bank and applicant name.
        """
        filters = {}
        if status:
            filters['status'] = status.value
        if applicant_id:
            filters['applicant_id'] = applicant_id

        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]

        if bank:
            loans = [loan for loan in loans if bank.lower() in loan.bank.lower()]
        if amount_min is not None:
            loans = [loan for loan in loans if loan.amount >= to_decimal(amount_min)]
        if amount_max is not None:
            loans = [loan for loan in loans if loan.amount <= to_decimal(amount_max)]
        date_from = _as_aware(date_from)
        date_to = _as_aware(date_to)
        if date_from:
            loans = [loan for loan in loans if loan.application_date >= date_from]
        if date_to:
            loans = [loan for loan in loans if loan.application_date <= date_to]
        if search:
            needle = search.lower()
            loans = [
                loan for loan in loans
                if needle in loan.loan_name.lower()
                or needle in loan.bank.lower()
                or needle in loan.applicant_name.lower()
            ]

        loans.sort(key=lambda loan: loan.application_date, reverse=True)
        return loans

    def generate_schedule(self, loan_id: str) -> List[RepaymentScheduleEntry]:
        """
        Generate the repayment schedule of an approved loan

        Returns an empty list when the schedule already exists.
        """
        loan = self._require_loan(loan_id)
        if loan.status != LoanStatus.APPROVED:
            raise InvalidLoanStateError(
                f"Schedules are generated for approved loans only, loan is {loan.status.value}"
            )
        return self.schedule_generator.generate(loan)

    def get_schedule(self, loan_id: str) -> List[RepaymentScheduleEntry]:
        """Get the stored repayment schedule of a loan"""
        self._require_loan(loan_id)
        return self.schedule_generator.get_schedule(loan_id)

    def get_statistics(self):
        """Portfolio statistics across all loans"""
        return self.aggregator.portfolio_statistics()

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    def _validate_terms(self, loan: Loan) -> None:
        """Check the engine can amortize the loan, then the business bounds"""
        terms = loan.financial_terms()
        if not loan.amount.is_finite():
            raise InvalidTermsError(f"Loan amount must be a finite number, got {loan.amount}")

        config = get_config()
        for amount in (loan.amount, terms.principal):
            if amount < config.min_loan_amount:
                raise InvalidTermsError(f"Loan amount cannot be less than {config.min_loan_amount}")
            if amount > config.max_loan_amount:
                raise InvalidTermsError(f"Loan amount cannot exceed {config.max_loan_amount}")
        for rate in (loan.interest_rate, terms.annual_rate_percent):
            if not rate.is_finite() or rate < 0 or rate > 100:
                raise InvalidTermsError("Interest rate must be between 0 and 100%")
        if terms.term_months > config.max_term_months:
            raise InvalidTermsError(f"Term cannot exceed {config.max_term_months} months")

    def _save_loan(self, loan: Loan) -> None:
        """Save loan to storage"""
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
