"""
Loan Aggregation Module

Derives loan-level amounts from approved terms and folds the loan book into
portfolio statistics grouped by status.
"""

from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass
from typing import Any, Dict, Iterable
import logging

from .amortization import calculate_totals
from .loans import Loan, LoanStatus
from .storage import StorageInterface


logger = logging.getLogger("lending.aggregation")

# Changes to any of these on an approved loan invalidate its derived amounts
RECOMPUTE_TRIGGERS = frozenset({'approved_amount', 'approved_rate', 'term'})


@dataclass
class PortfolioStatistics:
    """Loan book totals by status"""
    total_loans: int = 0
    pending_loans: int = 0
    approved_loans: int = 0
    rejected_loans: int = 0
    completed_loans: int = 0
    total_amount: Decimal = Decimal('0')
    approved_amount: Decimal = Decimal('0')
    average_amount: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Response payload; amounts as Decimal strings"""
        return {
            "total_loans": self.total_loans,
            "pending_loans": self.pending_loans,
            "approved_loans": self.approved_loans,
            "rejected_loans": self.rejected_loans,
            "completed_loans": self.completed_loans,
            "total_amount": str(self.total_amount),
            "approved_amount": str(self.approved_amount),
            "average_amount": self.average_amount,
        }


class LoanAggregator:
    """Computes derived loan amounts and portfolio statistics"""

    def __init__(self, storage: StorageInterface, loans_table: str = "loans"):
        self.storage = storage
        self.loans_table = loans_table

    def recompute_financials(self, loan: Loan, changed_fields: Iterable[str]) -> bool:
        """
        Refresh monthly_payment, total_payment and total_interest.

        Only acts on approved loans whose approved amount, approved rate or
        term changed in the current update. Callers invoke this right before
        persisting that update.

        Returns:
            True if the derived amounts were recomputed
        """
        if loan.status != LoanStatus.APPROVED:
            return False
        if not RECOMPUTE_TRIGGERS.intersection(changed_fields):
            return False

        totals = calculate_totals(loan.financial_terms())
        loan.monthly_payment = totals.monthly_payment
        loan.total_payment = totals.total_payment
        loan.total_interest = totals.total_interest

        logger.debug("Recomputed financials for loan %s: monthly=%s total=%s interest=%s",
                     loan.id, totals.monthly_payment, totals.total_payment, totals.total_interest)
        return True

    def portfolio_statistics(self) -> PortfolioStatistics:
        """Aggregate all loans by status in a single pass"""
        stats = PortfolioStatistics()
        status_fields = {
            LoanStatus.PENDING.value: 'pending_loans',
            LoanStatus.APPROVED.value: 'approved_loans',
            LoanStatus.REJECTED.value: 'rejected_loans',
            LoanStatus.COMPLETED.value: 'completed_loans',
        }

        for group in self.storage.group_sum(self.loans_table, 'status', 'amount'):
            stats.total_loans += group['count']
            stats.total_amount += group['total']

            field_name = status_fields.get(group['key'])
            if field_name:
                setattr(stats, field_name, group['count'])
            if group['key'] == LoanStatus.APPROVED.value:
                stats.approved_amount += group['total']

        if stats.total_loans > 0:
            average = stats.total_amount / Decimal(stats.total_loans)
            stats.average_amount = int(average.quantize(Decimal('1'), rounding=ROUND_HALF_UP))

        return stats
