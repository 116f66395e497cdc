"""
Loan Engine

Amortization schedules, repayment allocation and loan status reconciliation
for microfinance lending. All financial math uses Decimal precision.
"""

__version__ = "1.0.0"
