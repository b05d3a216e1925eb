"""
Ledger data model

Accounts are provisioned out-of-band. Transaction records are immutable and
only ever created by a successful balance update.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List


STATEMENT_SIZE = 10
DESCRIPTION_MIN_LENGTH = 1
DESCRIPTION_MAX_LENGTH = 10
# Amounts and balances live in 32-bit INTEGER columns
AMOUNT_MAX = 2**31 - 1


class TransactionKind(Enum):
    """Direction of a transaction"""
    CREDIT = "c"
    DEBIT = "d"
    
    def sign(self) -> int:
        return 1 if self is TransactionKind.CREDIT else -1
    
    @classmethod
    def from_delta(cls, delta: int) -> 'TransactionKind':
        return cls.CREDIT if delta > 0 else cls.DEBIT


@dataclass
class Account:
    id: int
    credit_limit: int
    balance: int = 0
    
    @property
    def available_credit(self) -> int:
        """How far the balance may still drop"""
        return self.balance + self.credit_limit
    
    def can_apply(self, delta: int) -> bool:
        return self.balance + delta + self.credit_limit >= 0


@dataclass(frozen=True)
class TransactionRecord:
    account_id: int
    amount: int  # magnitude, always > 0
    kind: TransactionKind
    description: str
    occurred_at: datetime
    
    @property
    def signed_amount(self) -> int:
        return self.amount * self.kind.sign()


@dataclass(frozen=True)
class BalanceResult:
    """Account state observed right after an accepted transaction"""
    balance: int
    credit_limit: int


@dataclass
class StatementSnapshot:
    current_balance: int
    credit_limit: int
    as_of: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    recent_transactions: List[TransactionRecord] = field(default_factory=list)
