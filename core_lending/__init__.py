"""
Core Lending

Construction and development loan math: amortization schedules with
interest-only periods, draw funding against a commitment, payment tracking
and portfolio aggregates. All money handled as Decimal.
"""

__version__ = "1.0.0"
