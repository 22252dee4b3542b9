from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TypeVar
from uuid import uuid4

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from matteflow.core.errors import AccountNotFound, InsufficientBalance, TaskNotFound, ValidationError
from matteflow.core.logging import get_logger
from matteflow.db.models import AccountRecord, LedgerTransactionRecord, TaskRecord, as_utc, utc_now
from matteflow.db.session import Database
from matteflow.models.ledger import (
    Account,
    Direction,
    LedgerResult,
    LedgerTransaction,
    TransactionType,
    TransferResult,
)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

ResultT = TypeVar("ResultT", LedgerResult, TransferResult)


def to_amount(value: object) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationError(f"invalid_amount: {value!r}") from exc
    if amount <= 0:
        raise ValidationError(f"amount_must_be_positive: {value!r}")
    return amount


def task_consume_key(task_id: int) -> str:
    return f"consume:task:{task_id}"


class Ledger:
    """
    Per-account balances with an append-only transaction log.

    Every operation runs as one database transaction: validate, mutate the
    account row(s), append the log row(s). Account rows are locked with
    ``SELECT ... FOR UPDATE`` in id order, and debits are guarded UPDATEs
    (``WHERE balance >= :amount``) so two racing debits can never both pass
    on backends that ignore row locks.
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now) -> None:
        self._db = db
        self._clock = clock
        self.logger = get_logger("matteflow.ledger")

    def open_account(
        self,
        account_id: str,
        initial_balance: Decimal | float | str = ZERO,
        *,
        session: Session | None = None,
    ) -> Account:
        account_id = (account_id or "").strip()
        if not account_id:
            raise ValidationError("account_id_required")
        initial = Decimal(str(initial_balance)).quantize(CENT, rounding=ROUND_HALF_UP)
        if initial < 0:
            raise ValidationError("initial_balance_must_not_be_negative")

        try:
            with self._db.scope(session) as s:
                existing = s.scalar(select(AccountRecord).where(AccountRecord.account_id == account_id))
                if existing:
                    return self._map_account(existing)
                now = self._clock()
                row = AccountRecord(
                    account_id=account_id,
                    balance=ZERO,
                    recharge_total=ZERO,
                    consume_total=ZERO,
                    transfer_out_total=ZERO,
                    created_at=now,
                    updated_at=now,
                )
                s.add(row)
                s.flush()
                if initial > 0:
                    # Opening credit goes through the log so the balance stays auditable.
                    row = self._credit(s, account_id, initial, recharge=True)
                    self._append(s, row, TransactionType.recharge, Direction.credit, initial, None, "opening balance", None)
                account = self._map_account(row)
        except IntegrityError:
            if session is not None:
                raise
            return self.get_account(account_id)

        self.logger.info("account_opened", extra={"event": "ledger.account_opened", "account_id": account_id})
        return account

    def get_account(self, account_id: str, *, session: Session | None = None) -> Account:
        with self._db.scope(session) as s:
            row = s.scalar(select(AccountRecord).where(AccountRecord.account_id == account_id))
            if not row:
                raise AccountNotFound(f"Account '{account_id}' not found")
            return self._map_account(row)

    def recharge(
        self,
        account_id: str,
        amount: Decimal | float | str,
        description: str = "account recharge",
        *,
        idempotency_key: str | None = None,
        session: Session | None = None,
    ) -> LedgerResult:
        value = to_amount(amount)

        def operation(s: Session) -> LedgerResult:
            self._lock_accounts(s, [account_id])
            row = self._credit(s, account_id, value, recharge=True)
            txn = self._append(s, row, TransactionType.recharge, Direction.credit, value, None, description, idempotency_key)
            return LedgerResult(transaction=txn, account=self._map_account(row))

        result = self._execute(idempotency_key, session, operation, self._replay_single)
        self._log(result.transaction, result.replayed)
        return result

    def consume(
        self,
        account_id: str,
        amount: Decimal | float | str,
        task_id: int | None = None,
        description: str = "video processing fee",
        *,
        idempotency_key: str | None = None,
        session: Session | None = None,
    ) -> LedgerResult:
        """Debit ``amount``; with a task, charge it at most once and stamp the task's cost."""
        value = to_amount(amount)
        if task_id is not None and idempotency_key is None:
            idempotency_key = task_consume_key(task_id)

        def operation(s: Session) -> LedgerResult:
            locked = self._lock_accounts(s, [account_id])
            if task_id is not None and s.get(TaskRecord, task_id) is None:
                raise TaskNotFound(f"Task '{task_id}' not found")
            row = self._debit(s, locked[account_id], value, consume=True)
            txn = self._append(
                s,
                row,
                TransactionType.consume,
                Direction.debit,
                value,
                str(task_id) if task_id is not None else None,
                description,
                idempotency_key,
            )
            if task_id is not None:
                s.execute(
                    update(TaskRecord)
                    .where(TaskRecord.id == task_id, TaskRecord.cost.is_(None))
                    .values(cost=value, updated_at=self._clock())
                    .execution_options(synchronize_session=False)
                )
            return LedgerResult(transaction=txn, account=self._map_account(row))

        result = self._execute(idempotency_key, session, operation, self._replay_single)
        self._log(result.transaction, result.replayed)
        return result

    def refund(
        self,
        account_id: str,
        amount: Decimal | float | str,
        task_id: int | None = None,
        description: str = "service refund",
        *,
        idempotency_key: str | None = None,
        session: Session | None = None,
    ) -> LedgerResult:
        value = to_amount(amount)

        def operation(s: Session) -> LedgerResult:
            self._lock_accounts(s, [account_id])
            row = self._credit(s, account_id, value, refund=True)
            txn = self._append(
                s,
                row,
                TransactionType.refund,
                Direction.credit,
                value,
                str(task_id) if task_id is not None else None,
                description,
                idempotency_key,
            )
            return LedgerResult(transaction=txn, account=self._map_account(row))

        result = self._execute(idempotency_key, session, operation, self._replay_single)
        self._log(result.transaction, result.replayed)
        return result

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: Decimal | float | str,
        description: str = "account transfer",
        *,
        idempotency_key: str | None = None,
        session: Session | None = None,
    ) -> TransferResult:
        value = to_amount(amount)
        if from_account_id == to_account_id:
            raise ValidationError("cannot_transfer_to_same_account")

        def operation(s: Session) -> TransferResult:
            locked = self._lock_accounts(s, [from_account_id, to_account_id])
            group = uuid4().hex
            source = self._debit(s, locked[from_account_id], value, transfer=True)
            target = self._credit(s, to_account_id, value)
            debit = self._append(
                s,
                source,
                TransactionType.transfer,
                Direction.debit,
                value,
                to_account_id,
                f"{description} - to {to_account_id}",
                idempotency_key,
                transfer_group=group,
            )
            credit = self._append(
                s,
                target,
                TransactionType.transfer,
                Direction.credit,
                value,
                from_account_id,
                f"{description} - from {from_account_id}",
                f"{idempotency_key}:credit" if idempotency_key else None,
                transfer_group=group,
            )
            return TransferResult(
                debit=debit,
                credit=credit,
                from_account=self._map_account(source),
                to_account=self._map_account(target),
            )

        result = self._execute(idempotency_key, session, operation, self._replay_transfer)
        self._log(result.debit, result.replayed)
        return result

    def list_transactions(
        self,
        account_id: str,
        *,
        txn_type: TransactionType | None = None,
        limit: int = 100,
    ) -> list[LedgerTransaction]:
        size = max(1, min(500, limit))
        with self._db.session() as s:
            stmt = select(LedgerTransactionRecord).where(LedgerTransactionRecord.account_id == account_id)
            if txn_type:
                stmt = stmt.where(LedgerTransactionRecord.type == txn_type.value)
            stmt = stmt.order_by(LedgerTransactionRecord.created_at.desc(), LedgerTransactionRecord.id.desc()).limit(size)
            return [self._map_transaction(row) for row in s.scalars(stmt).all()]

    def audit_balance(self, account_id: str) -> Decimal:
        """Recompute the balance from the transaction log alone."""
        with self._db.session() as s:
            rows = s.execute(
                select(LedgerTransactionRecord.direction, LedgerTransactionRecord.amount).where(
                    LedgerTransactionRecord.account_id == account_id
                )
            ).all()
        total = ZERO
        for direction, amount in rows:
            total += amount if direction == Direction.credit.value else -amount
        return total

    def _execute(
        self,
        idempotency_key: str | None,
        session: Session | None,
        operation: Callable[[Session], ResultT],
        replay: Callable[[Session, str], ResultT | None],
    ) -> ResultT:
        try:
            with self._db.scope(session) as s:
                if idempotency_key:
                    previous = replay(s, idempotency_key)
                    if previous is not None:
                        return previous
                return operation(s)
        except IntegrityError:
            # A concurrent writer committed the same idempotency key first.
            if session is not None or not idempotency_key:
                raise
            with self._db.session() as s:
                previous = replay(s, idempotency_key)
            if previous is None:
                raise
            return previous

    def _lock_accounts(self, session: Session, account_ids: list[str]) -> dict[str, AccountRecord]:
        rows = session.scalars(
            select(AccountRecord)
            .where(AccountRecord.account_id.in_(account_ids))
            .order_by(AccountRecord.id)
            .with_for_update()
        ).all()
        locked = {row.account_id: row for row in rows}
        for account_id in account_ids:
            if account_id not in locked:
                raise AccountNotFound(f"Account '{account_id}' not found")
        return locked

    def _debit(
        self,
        session: Session,
        row: AccountRecord,
        amount: Decimal,
        *,
        consume: bool = False,
        transfer: bool = False,
    ) -> AccountRecord:
        values: dict[str, object] = {
            "balance": AccountRecord.balance - amount,
            "updated_at": self._clock(),
        }
        if consume:
            values["consume_total"] = AccountRecord.consume_total + amount
        if transfer:
            values["transfer_out_total"] = AccountRecord.transfer_out_total + amount
        result = session.execute(
            update(AccountRecord)
            .where(AccountRecord.account_id == row.account_id, AccountRecord.balance >= amount)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.refresh(row)
            raise InsufficientBalance(row.account_id, row.balance, amount)
        session.refresh(row)
        return row

    def _credit(
        self,
        session: Session,
        account_id: str,
        amount: Decimal,
        *,
        recharge: bool = False,
        refund: bool = False,
    ) -> AccountRecord:
        values: dict[str, object] = {
            "balance": AccountRecord.balance + amount,
            "updated_at": self._clock(),
        }
        if recharge:
            values["recharge_total"] = AccountRecord.recharge_total + amount
        if refund:
            values["consume_total"] = case(
                (AccountRecord.consume_total < amount, 0),
                else_=AccountRecord.consume_total - amount,
            )
        session.execute(
            update(AccountRecord)
            .where(AccountRecord.account_id == account_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        row = session.scalar(select(AccountRecord).where(AccountRecord.account_id == account_id))
        if row is None:
            raise AccountNotFound(f"Account '{account_id}' not found")
        session.refresh(row)
        return row

    def _append(
        self,
        session: Session,
        row: AccountRecord,
        txn_type: TransactionType,
        direction: Direction,
        amount: Decimal,
        target: str | None,
        description: str,
        idempotency_key: str | None,
        *,
        transfer_group: str | None = None,
    ) -> LedgerTransaction:
        record = LedgerTransactionRecord(
            account_id=row.account_id,
            type=txn_type.value,
            direction=direction.value,
            target=target,
            amount=amount,
            balance_after=row.balance,
            description=description or "",
            transfer_group=transfer_group,
            idempotency_key=idempotency_key,
            created_at=self._clock(),
        )
        session.add(record)
        session.flush()
        return self._map_transaction(record)

    def _find_by_key(self, session: Session, key: str) -> LedgerTransactionRecord | None:
        return session.scalar(select(LedgerTransactionRecord).where(LedgerTransactionRecord.idempotency_key == key))

    def _replay_single(self, session: Session, key: str) -> LedgerResult | None:
        record = self._find_by_key(session, key)
        if record is None:
            return None
        account = session.scalar(select(AccountRecord).where(AccountRecord.account_id == record.account_id))
        return LedgerResult(transaction=self._map_transaction(record), account=self._map_account(account), replayed=True)

    def _replay_transfer(self, session: Session, key: str) -> TransferResult | None:
        debit = self._find_by_key(session, key)
        credit = self._find_by_key(session, f"{key}:credit")
        if debit is None or credit is None:
            return None
        accounts = {
            row.account_id: row
            for row in session.scalars(
                select(AccountRecord).where(AccountRecord.account_id.in_([debit.account_id, credit.account_id]))
            ).all()
        }
        return TransferResult(
            debit=self._map_transaction(debit),
            credit=self._map_transaction(credit),
            from_account=self._map_account(accounts[debit.account_id]),
            to_account=self._map_account(accounts[credit.account_id]),
            replayed=True,
        )

    def _log(self, txn: LedgerTransaction, replayed: bool) -> None:
        self.logger.info(
            "ledger_replayed" if replayed else "ledger_committed",
            extra={
                "event": f"ledger.{txn.type.value}",
                "account_id": txn.account_id,
                "amount": str(txn.amount),
                "balance_after": str(txn.balance_after),
                "task_id": txn.target if txn.type in {TransactionType.consume, TransactionType.refund} else None,
            },
        )

    @staticmethod
    def _map_account(row: AccountRecord) -> Account:
        return Account(
            account_id=row.account_id,
            balance=row.balance,
            recharge_total=row.recharge_total,
            consume_total=row.consume_total,
            transfer_out_total=row.transfer_out_total,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    @staticmethod
    def _map_transaction(row: LedgerTransactionRecord) -> LedgerTransaction:
        return LedgerTransaction(
            id=row.id,
            account_id=row.account_id,
            type=TransactionType(row.type),
            direction=Direction(row.direction),
            target=row.target,
            amount=row.amount,
            balance_after=row.balance_after,
            description=row.description,
            transfer_group=row.transfer_group,
            idempotency_key=row.idempotency_key,
            created_at=as_utc(row.created_at),
        )
