"""
Ledger error taxonomy

Every failure the ledger reports is one of these types. The API layer maps
them to HTTP status codes; nothing here knows about transport.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger failures"""
    
    def __init__(self, message: str, account_id: Optional[int] = None):
        super().__init__(message)
        self.account_id = account_id


class InvalidRequestError(LedgerError):
    """Malformed transaction input; detected before any storage access"""


class AccountNotFoundError(LedgerError):
    """The referenced account is not provisioned"""


class InsufficientFundsError(LedgerError):
    """The transaction would push the balance below -credit_limit"""


class StorageUnavailableError(LedgerError):
    """The backing store failed or could not be reached"""


# Store-level outcomes. The ledger core translates these into the
# domain errors above.

class StoreError(Exception):
    """Base class for outcomes reported by an account store"""
    
    def __init__(self, account_id: int):
        super().__init__(f"account {account_id}")
        self.account_id = account_id


class AccountMissingError(StoreError):
    """No row exists for the account id"""


class ConstraintViolationError(StoreError):
    """balance + delta + credit_limit would be negative; nothing was written"""
