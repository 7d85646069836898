"""
Loan Back Office

Loan lifecycle and installment engine: application status workflow,
amortization, installment schedules, payment reconciliation, and the
settlement/termination procedures run against a remote record store.
"""

__version__ = "1.0.0"
