"""
Lending Core

A loan-management backend with an amortization engine, idempotent repayment
schedule generation, and portfolio statistics. All money math uses Decimal.
"""

__version__ = "1.0.0"
