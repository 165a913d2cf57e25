"""
Bank Ledger

A small banking API: users, checking accounts, deposits and withdrawals
with a concurrency-safe balance ledger. All money uses Decimal.
"""

__version__ = "1.0.0"
