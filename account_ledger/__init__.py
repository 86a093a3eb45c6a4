"""
Account Ledger

Customer account balances with atomic deposits and withdrawals. No account
ever observes a negative balance, and concurrent operations against the same
account serialize in the account store.
"""

__version__ = "1.0.0"
