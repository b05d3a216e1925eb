"""
Ledger Core Module

Business rules for the credit ledger. Validates a proposed transaction,
turns it into a signed delta, and hands it to the account store's atomic
adjustment. Store outcomes are translated into the ledger's error types.
"""

from typing import Union

from .async_storage import AccountStoreInterface
from .errors import (
    AccountMissingError, AccountNotFoundError, ConstraintViolationError,
    InsufficientFundsError, InvalidRequestError
)
from .logging_config import get_logger, log_action
from .models import (
    AMOUNT_MAX, DESCRIPTION_MAX_LENGTH, DESCRIPTION_MIN_LENGTH, STATEMENT_SIZE,
    BalanceResult, StatementSnapshot, TransactionKind
)


def parse_kind(kind: Union[TransactionKind, str]) -> TransactionKind:
    """Accept a TransactionKind or its wire value ("c" / "d")"""
    if isinstance(kind, TransactionKind):
        return kind
    try:
        return TransactionKind(kind)
    except ValueError:
        raise InvalidRequestError(f"Invalid transaction kind: {kind!r}")


def validate_transaction(amount: int, kind: Union[TransactionKind, str],
                         description: str) -> TransactionKind:
    """
    Check a transaction before any storage access.

    Returns:
        The parsed TransactionKind

    Raises:
        InvalidRequestError: non-integer amount, amount outside 1..AMOUNT_MAX,
            unknown kind, or a description outside 1..10 characters
    """
    # bool is an int subclass but never a valid amount
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise InvalidRequestError(f"Amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise InvalidRequestError(f"Amount must be positive, got {amount}")
    if amount > AMOUNT_MAX:
        raise InvalidRequestError(f"Amount must not exceed {AMOUNT_MAX}, got {amount}")

    parsed_kind = parse_kind(kind)

    if not isinstance(description, str):
        raise InvalidRequestError("Description must be a string")
    if not DESCRIPTION_MIN_LENGTH <= len(description) <= DESCRIPTION_MAX_LENGTH:
        raise InvalidRequestError(
            f"Description must be {DESCRIPTION_MIN_LENGTH}-{DESCRIPTION_MAX_LENGTH} "
            f"characters, got {len(description)}"
        )

    return parsed_kind


class LedgerCore:
    """
    Applies credits and debits to accounts and reads statements.

    The store handle is injected and owned by the caller, who opens it at
    startup and closes it at shutdown.
    """

    def __init__(self, store: AccountStoreInterface):
        self.store = store
        self.logger = get_logger("ledger.core")

    async def apply(
        self,
        account_id: int,
        amount: int,
        kind: Union[TransactionKind, str],
        description: str
    ) -> BalanceResult:
        """
        Apply a transaction to an account.

        Args:
            account_id: Pre-provisioned account id
            amount: Positive magnitude
            kind: Credit or debit
            description: 1 to 10 characters

        Returns:
            Balance and credit limit as observed right after the update

        Raises:
            InvalidRequestError: Input failed validation; storage untouched
            AccountNotFoundError: No such account
            InsufficientFundsError: The post-transaction balance would fall
                below -credit_limit; nothing was written
            StorageUnavailableError: The store failed
        """
        parsed_kind = validate_transaction(amount, kind, description)
        delta = amount * parsed_kind.sign()

        try:
            result = await self.store.atomic_adjust(account_id, delta, description)
        except AccountMissingError:
            log_action(self.logger, "info", "Transaction rejected: unknown account",
                       account_id=account_id, action="apply")
            raise AccountNotFoundError(f"Account {account_id} not found", account_id=account_id)
        except ConstraintViolationError:
            log_action(self.logger, "info", "Transaction rejected: credit limit exceeded",
                       account_id=account_id, action="apply",
                       extra={"amount": amount, "kind": parsed_kind.value})
            raise InsufficientFundsError(
                f"Account {account_id} cannot cover {parsed_kind.name.lower()} of {amount}",
                account_id=account_id
            )

        log_action(self.logger, "debug", "Transaction applied",
                   account_id=account_id, action="apply",
                   extra={"amount": amount, "kind": parsed_kind.value, "balance": result.balance})
        return result

    async def statement(self, account_id: int) -> StatementSnapshot:
        """
        Current balance and the newest transactions for an account.

        Raises:
            AccountNotFoundError: No such account
            StorageUnavailableError: The store failed
        """
        try:
            return await self.store.get_statement(account_id, limit=STATEMENT_SIZE)
        except AccountMissingError:
            raise AccountNotFoundError(f"Account {account_id} not found", account_id=account_id)
