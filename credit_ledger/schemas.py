"""
Pydantic schemas for API requests and responses

Field names follow the service's public JSON contract.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, StrictInt

from .models import BalanceResult, StatementSnapshot, TransactionRecord


class TransactionRequest(BaseModel):
    # Strict: "100" and 1.0 are rejected rather than coerced. Range and
    # length rules are enforced by the ledger core
    valor: StrictInt = Field(..., description="Amount as a positive integer")
    tipo: str = Field(..., description="Transaction kind: c (credit) or d (debit)")
    descricao: Optional[str] = Field(None, description="1 to 10 characters")


class BalanceResponse(BaseModel):
    limite: int
    saldo: int

    @classmethod
    def from_result(cls, result: BalanceResult) -> 'BalanceResponse':
        return cls(limite=result.credit_limit, saldo=result.balance)


class StatementBalance(BaseModel):
    total: int
    data_extrato: datetime
    limite: int


class StatementTransaction(BaseModel):
    valor: int
    tipo: str
    descricao: str
    realizada_em: datetime

    @classmethod
    def from_record(cls, record: TransactionRecord) -> 'StatementTransaction':
        return cls(
            valor=record.amount,
            tipo=record.kind.value,
            descricao=record.description,
            realizada_em=record.occurred_at
        )


class StatementResponse(BaseModel):
    saldo: StatementBalance
    ultimas_transacoes: List[StatementTransaction]

    @classmethod
    def from_snapshot(cls, snapshot: StatementSnapshot) -> 'StatementResponse':
        return cls(
            saldo=StatementBalance(
                total=snapshot.current_balance,
                data_extrato=snapshot.as_of,
                limite=snapshot.credit_limit
            ),
            ultimas_transacoes=[
                StatementTransaction.from_record(record)
                for record in snapshot.recent_transactions
            ]
        )
