"""
Credit Ledger Service

A minimal ledger of pre-provisioned accounts with credit limits. Balance
updates and transaction records are persisted as one atomic unit so the
credit-limit invariant holds under concurrent writers.
"""

__version__ = "1.0.0"
