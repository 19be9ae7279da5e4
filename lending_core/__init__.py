"""
Lending Core

Loan lifecycle core for secured micro-loans: role-gated request workflow,
reducing-balance amortization, exactly-once payment reconciliation and the
periodic overdue sweep. All monetary values use Decimal.
"""

__version__ = "1.0.0"
