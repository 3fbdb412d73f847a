"""
Repayment Schedule Module

Builds and persists the month-by-month repayment schedule of a loan. A loan's
schedule is generated at most once: a second request for a loan that already
has entries is a no-op.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
from contextlib import contextmanager
import calendar
import logging
import threading

from .amortization import LoanTerms, iter_periods, round_money
from .storage import StorageInterface, StorageRecord
from .logging_config import log_action


logger = logging.getLogger("lending.schedule")


class ScheduleStatus(Enum):
    """Payment status of a schedule entry"""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


@dataclass
class RepaymentScheduleEntry(StorageRecord):
    """One scheduled installment of a loan"""
    loan_id: str
    period_number: int
    due_date: date
    total_amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    status: ScheduleStatus = ScheduleStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['due_date'] = self.due_date.isoformat()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RepaymentScheduleEntry':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            period_number=data['period_number'],
            due_date=date.fromisoformat(data['due_date']),
            total_amount=Decimal(data['total_amount']),
            principal_amount=Decimal(data['principal_amount']),
            interest_amount=Decimal(data['interest_amount']),
            status=ScheduleStatus(data.get('status', ScheduleStatus.PENDING.value)),
        )


def entry_id(loan_id: str, period_number: int) -> str:
    """Storage id of a schedule entry, unique per (loan, period)"""
    return f"{loan_id}_{period_number}"


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the end of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def build_schedule(loan_id: str, terms: LoanTerms,
                   reference_date: Union[date, datetime],
                   now: Optional[datetime] = None) -> List[RepaymentScheduleEntry]:
    """
    Build the full schedule for a set of terms without persisting it.

    Amounts are rounded to cents as each entry is emitted. The final period
    takes whatever principal is left after the rounded earlier periods, so
    the principal column always sums to the financed amount.
    """
    if isinstance(reference_date, datetime):
        reference_date = reference_date.date()
    now = now or datetime.now(timezone.utc)

    financed = round_money(terms.principal)
    emitted_principal = Decimal('0')
    entries = []

    for period in iter_periods(terms):
        interest = round_money(period.interest)
        if period.period_number == terms.term_months:
            principal = financed - emitted_principal
            total = principal + interest
        else:
            principal = round_money(period.principal)
            total = round_money(period.total)
        emitted_principal += principal

        entries.append(RepaymentScheduleEntry(
            id=entry_id(loan_id, period.period_number),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            period_number=period.period_number,
            due_date=add_months(reference_date, period.period_number),
            total_amount=total,
            principal_amount=principal,
            interest_amount=interest,
        ))

    return entries


class ScheduleGenerator:
    """
    Generates and stores repayment schedules.

    Generation is serialized per loan id inside the process. Across processes
    the batch insert refuses entry ids that already exist, so a lost race
    surfaces as PersistenceError instead of duplicate periods.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.schedule_table = "repayment_schedules"
        # loan id -> [lock, number of callers holding or waiting on it]
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _loan_lock(self, loan_id: str):
        with self._locks_guard:
            entry = self._locks.setdefault(loan_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[loan_id]

    def generate(self, loan) -> List[RepaymentScheduleEntry]:
        """
        Generate the schedule for a loan if it has none yet.

        Args:
            loan: Loan record providing id, dates and financial terms

        Returns:
            The generated entries, or an empty list when the loan already
            had a schedule

        Raises:
            InvalidTermsError: If the loan terms cannot be amortized
            PersistenceError: If the batch write fails; nothing is stored
        """
        with self._loan_lock(loan.id):
            existing = self.storage.count_where(self.schedule_table, {"loan_id": loan.id})
            if existing > 0:
                logger.info("Schedule for loan %s already exists (%d entries), skipping",
                            loan.id, existing)
                return []

            terms = loan.financial_terms()
            now = datetime.now(timezone.utc)
            reference_date = loan.application_date or loan.created_at or now

            entries = build_schedule(loan.id, terms, reference_date, now=now)
            self.storage.save_many(
                self.schedule_table,
                [(entry.id, entry.to_dict()) for entry in entries]
            )

        log_action(
            logger, "info", f"Generated {len(entries)}-period repayment schedule",
            action="generate_schedule",
            resource=f"loan:{loan.id}",
            extra={
                "method": terms.method.value,
                "principal": str(terms.principal),
                "annual_rate": str(terms.annual_rate_percent),
                "term": terms.term_months,
            }
        )
        return entries

    def get_schedule(self, loan_id: str) -> List[RepaymentScheduleEntry]:
        """Get stored schedule entries for a loan ordered by period"""
        records = self.storage.find(self.schedule_table, {"loan_id": loan_id})
        schedule = [RepaymentScheduleEntry.from_dict(data) for data in records]
        schedule.sort(key=lambda entry: entry.period_number)
        return schedule

    def has_schedule(self, loan_id: str) -> bool:
        return self.storage.count_where(self.schedule_table, {"loan_id": loan_id}) > 0
