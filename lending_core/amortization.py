"""
Amortization Math Module

Pure loan math for the two supported repayment methods: equal payment
(level installment, French method) and equal principal (level principal with
declining interest). Everything is computed in Decimal and rounded to cents
only when a value is emitted, never while it is still being carried forward.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from dataclasses import dataclass
from typing import Iterator, Union
from enum import Enum
import logging

from .exceptions import InvalidTermsError


logger = logging.getLogger("lending.amortization")

CENT = Decimal('0.01')
MONTHS_PER_YEAR = Decimal('12')
HUNDRED = Decimal('100')

Number = Union[Decimal, int, float, str]


class RepaymentMethod(Enum):
    """Supported repayment methods"""
    EQUAL_PAYMENT = "equal_payment"      # Level payment, shifting principal/interest split
    EQUAL_PRINCIPAL = "equal_principal"  # Level principal, declining interest


# Alternate spellings accepted from older clients
METHOD_ALIASES = {
    "equal_installment": RepaymentMethod.EQUAL_PAYMENT,
}


def resolve_method(method) -> RepaymentMethod:
    """
    Map a method value onto a RepaymentMethod.

    Unrecognized values fall back to equal payment rather than failing.
    """
    if isinstance(method, RepaymentMethod):
        return method
    try:
        return RepaymentMethod(method)
    except ValueError:
        pass
    if method in METHOD_ALIASES:
        return METHOD_ALIASES[method]
    logger.warning("Unrecognized repayment method %r, using equal_payment", method)
    return RepaymentMethod.EQUAL_PAYMENT


def to_decimal(value: Number) -> Decimal:
    """Convert a numeric value to Decimal without going through binary float repr"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Number) -> Decimal:
    """Round to cents, half away from zero"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def monthly_rate(annual_rate_percent: Number) -> Decimal:
    """Annual percentage rate to monthly fraction (6 -> 0.005)"""
    return to_decimal(annual_rate_percent) / HUNDRED / MONTHS_PER_YEAR


def level_payment(principal: Decimal, rate: Decimal, term_months: int) -> Decimal:
    """
    Unrounded level payment: P * r * (1+r)^n / ((1+r)^n - 1).

    With a zero rate this degenerates to P / n.
    """
    if rate == 0:
        return principal / Decimal(term_months)
    factor = (Decimal('1') + rate) ** term_months
    return principal * rate * factor / (factor - Decimal('1'))


@dataclass(frozen=True)
class LoanTerms:
    """Financial terms a schedule is computed from"""
    principal: Decimal
    annual_rate_percent: Decimal
    term_months: int
    method: RepaymentMethod = RepaymentMethod.EQUAL_PAYMENT

    def __post_init__(self):
        try:
            principal = to_decimal(self.principal)
            rate = to_decimal(self.annual_rate_percent)
        except (InvalidOperation, ValueError, TypeError) as exc:
            raise InvalidTermsError(f"Loan terms must be numeric: {exc}") from exc

        if not principal.is_finite() or principal <= 0:
            raise InvalidTermsError(f"Principal must be positive, got {self.principal}")
        if not rate.is_finite() or rate < 0:
            raise InvalidTermsError(f"Interest rate cannot be negative, got {self.annual_rate_percent}")
        if isinstance(self.term_months, bool) or not isinstance(self.term_months, int):
            raise InvalidTermsError(f"Term must be a whole number of months, got {self.term_months!r}")
        if self.term_months < 1:
            raise InvalidTermsError(f"Term must be at least 1 month, got {self.term_months}")

        object.__setattr__(self, 'principal', principal)
        object.__setattr__(self, 'annual_rate_percent', rate)
        object.__setattr__(self, 'method', resolve_method(self.method))

    @property
    def monthly_rate(self) -> Decimal:
        return monthly_rate(self.annual_rate_percent)


@dataclass(frozen=True)
class PeriodBreakdown:
    """Unrounded split of one period's payment"""
    period_number: int
    interest: Decimal
    principal: Decimal
    total: Decimal
    remaining_principal: Decimal


@dataclass(frozen=True)
class LoanTotals:
    """Loan-level derived amounts, rounded to cents"""
    monthly_payment: Decimal
    total_payment: Decimal
    total_interest: Decimal


def iter_periods(terms: LoanTerms) -> Iterator[PeriodBreakdown]:
    """
    Yield the unrounded breakdown of every period in order.

    The remaining principal is carried at full precision so rounding
    differences never compound into later periods.
    """
    rate = terms.monthly_rate
    remaining = terms.principal

    if terms.method == RepaymentMethod.EQUAL_PRINCIPAL:
        principal_part = terms.principal / Decimal(terms.term_months)
        for period in range(1, terms.term_months + 1):
            interest = remaining * rate
            remaining -= principal_part
            yield PeriodBreakdown(period, interest, principal_part,
                                  principal_part + interest, remaining)
        return

    payment = level_payment(terms.principal, rate, terms.term_months)
    for period in range(1, terms.term_months + 1):
        interest = remaining * rate
        principal_part = payment - interest
        remaining -= principal_part
        yield PeriodBreakdown(period, interest, principal_part, payment, remaining)


def monthly_payment(terms: LoanTerms) -> Decimal:
    """
    Loan-level monthly payment.

    For equal payment this is the level payment. For equal principal it is
    the first, and largest, installment.
    """
    if terms.method == RepaymentMethod.EQUAL_PRINCIPAL:
        first = terms.principal / Decimal(terms.term_months) + terms.principal * terms.monthly_rate
        return round_money(first)
    return round_money(level_payment(terms.principal, terms.monthly_rate, terms.term_months))


def total_payment(terms: LoanTerms) -> Decimal:
    """Sum of all installments"""
    if terms.method == RepaymentMethod.EQUAL_PRINCIPAL:
        # Interest on a linearly amortizing balance: P * r * (n + 1) / 2
        interest = terms.principal * terms.monthly_rate * Decimal(terms.term_months + 1) / Decimal('2')
        return round_money(terms.principal + interest)
    if terms.monthly_rate == 0:
        # Unrounded P / n so the installments add back up to the principal
        payment = level_payment(terms.principal, terms.monthly_rate, terms.term_months)
        return round_money(payment * Decimal(terms.term_months))
    return round_money(monthly_payment(terms) * Decimal(terms.term_months))


def total_interest(terms: LoanTerms) -> Decimal:
    """Interest paid over the life of the loan"""
    return total_payment(terms) - round_money(terms.principal)


def calculate_totals(terms: LoanTerms) -> LoanTotals:
    """Compute all loan-level derived amounts at once"""
    payment_total = total_payment(terms)
    return LoanTotals(
        monthly_payment=monthly_payment(terms),
        total_payment=payment_total,
        total_interest=payment_total - round_money(terms.principal),
    )
