from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(StrEnum):
    recharge = "recharge"
    consume = "consume"
    refund = "refund"
    transfer = "transfer"


class Direction(StrEnum):
    credit = "credit"
    debit = "debit"


class Account(BaseModel):
    account_id: str
    balance: Decimal = Field(default=Decimal("0.00"), ge=0)
    recharge_total: Decimal = Field(default=Decimal("0.00"), ge=0)
    consume_total: Decimal = Field(default=Decimal("0.00"), ge=0)
    transfer_out_total: Decimal = Field(default=Decimal("0.00"), ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class LedgerTransaction(BaseModel):
    id: int
    account_id: str
    type: TransactionType
    direction: Direction
    target: str | None = None
    amount: Decimal = Field(gt=0)
    balance_after: Decimal = Field(ge=0)
    description: str = ""
    transfer_group: str | None = None
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.direction == Direction.credit else -self.amount


class LedgerResult(BaseModel):
    transaction: LedgerTransaction
    account: Account
    replayed: bool = False


class TransferResult(BaseModel):
    debit: LedgerTransaction
    credit: LedgerTransaction
    from_account: Account
    to_account: Account
    replayed: bool = False


class AccountOpenRequest(BaseModel):
    account_id: str = Field(min_length=1, max_length=120)
    initial_balance: Decimal | None = Field(default=None, ge=0, le=Decimal("1000000"))


class RechargeRequest(BaseModel):
    amount: Decimal = Field(gt=0, le=Decimal("1000000"))
    description: str = Field(default="account recharge", max_length=500)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=200)


class ConsumeRequest(BaseModel):
    amount: Decimal = Field(gt=0, le=Decimal("1000000"))
    task_id: int | None = None
    description: str = Field(default="video processing fee", max_length=500)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=200)


class RefundRequest(BaseModel):
    amount: Decimal = Field(gt=0, le=Decimal("1000000"))
    task_id: int | None = None
    description: str = Field(default="service refund", max_length=500)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=200)


class TransferRequest(BaseModel):
    from_account_id: str = Field(min_length=1, max_length=120)
    to_account_id: str = Field(min_length=1, max_length=120)
    amount: Decimal = Field(gt=0, le=Decimal("1000000"))
    description: str = Field(default="account transfer", max_length=500)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=200)


class AccountResponse(BaseModel):
    account: Account
    audited_balance: Decimal
    recent_transactions: list[LedgerTransaction] = Field(default_factory=list)


class LedgerTransactionListResponse(BaseModel):
    items: list[LedgerTransaction] = Field(default_factory=list)
