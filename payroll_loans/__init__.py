"""
Payroll Loans Engine

Employee loan and salary advance lifecycle for payroll systems: amortization
schedules, installment ledgers, payment recording with transactional
consistency, and repayment progress reconciliation.
"""

__version__ = "1.0.0"
