"""
Personal Finance Core

Loan amortization and credit card installment engine: payment math using
Decimal, append-only payment ledgers, and hash-chained audit trails.
"""

__version__ = "1.0.0"
