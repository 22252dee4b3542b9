from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from matteflow.api.deps import get_ledger, get_settings
from matteflow.core.config import Settings
from matteflow.core.errors import InsufficientBalance, ValidationError
from matteflow.core.security import require_admin_api_key
from matteflow.models.ledger import (
    Account,
    AccountOpenRequest,
    AccountResponse,
    ConsumeRequest,
    LedgerResult,
    LedgerTransactionListResponse,
    RechargeRequest,
    RefundRequest,
    TransactionType,
    TransferRequest,
    TransferResult,
)
from matteflow.services.ledger import Ledger

router = APIRouter(prefix="/accounts", tags=["accounts"])


def _ledger_error(exc: Exception) -> HTTPException:
    if isinstance(exc, KeyError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InsufficientBalance):
        return HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@router.post("", response_model=Account, status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_admin_api_key)])
async def open_account(
    payload: AccountOpenRequest,
    ledger: Ledger = Depends(get_ledger),
    settings: Settings = Depends(get_settings),
) -> Account:
    initial = payload.initial_balance if payload.initial_balance is not None else settings.bootstrap_account_balance
    try:
        return ledger.open_account(payload.account_id, initial)
    except ValueError as exc:
        raise _ledger_error(exc) from exc


@router.post("/transfer", response_model=TransferResult)
async def transfer(payload: TransferRequest, ledger: Ledger = Depends(get_ledger)) -> TransferResult:
    try:
        return ledger.transfer(
            payload.from_account_id,
            payload.to_account_id,
            payload.amount,
            payload.description,
            idempotency_key=payload.idempotency_key,
        )
    except (KeyError, ValueError) as exc:
        raise _ledger_error(exc) from exc


@router.get("/{account_id}", response_model=AccountResponse)
async def account_balance(account_id: str, ledger: Ledger = Depends(get_ledger)) -> AccountResponse:
    try:
        account = ledger.get_account(account_id)
    except KeyError as exc:
        raise _ledger_error(exc) from exc
    return AccountResponse(
        account=account,
        audited_balance=ledger.audit_balance(account_id),
        recent_transactions=ledger.list_transactions(account_id, limit=20),
    )


@router.get("/{account_id}/transactions", response_model=LedgerTransactionListResponse)
async def list_transactions(
    account_id: str,
    txn_type: TransactionType | None = Query(default=None, alias="type"),
    limit: int = Query(default=100, ge=1, le=500),
    ledger: Ledger = Depends(get_ledger),
) -> LedgerTransactionListResponse:
    try:
        ledger.get_account(account_id)
    except KeyError as exc:
        raise _ledger_error(exc) from exc
    return LedgerTransactionListResponse(items=ledger.list_transactions(account_id, txn_type=txn_type, limit=limit))


@router.post("/{account_id}/recharge", response_model=LedgerResult, dependencies=[Depends(require_admin_api_key)])
async def recharge(account_id: str, payload: RechargeRequest, ledger: Ledger = Depends(get_ledger)) -> LedgerResult:
    try:
        return ledger.recharge(account_id, payload.amount, payload.description, idempotency_key=payload.idempotency_key)
    except (KeyError, ValueError) as exc:
        raise _ledger_error(exc) from exc


@router.post("/{account_id}/consume", response_model=LedgerResult)
async def consume(account_id: str, payload: ConsumeRequest, ledger: Ledger = Depends(get_ledger)) -> LedgerResult:
    try:
        return ledger.consume(
            account_id,
            payload.amount,
            payload.task_id,
            payload.description,
            idempotency_key=payload.idempotency_key,
        )
    except (KeyError, ValueError) as exc:
        raise _ledger_error(exc) from exc


@router.post("/{account_id}/refund", response_model=LedgerResult, dependencies=[Depends(require_admin_api_key)])
async def refund(account_id: str, payload: RefundRequest, ledger: Ledger = Depends(get_ledger)) -> LedgerResult:
    try:
        return ledger.refund(
            account_id,
            payload.amount,
            payload.task_id,
            payload.description,
            idempotency_key=payload.idempotency_key,
        )
    except (KeyError, ValueError) as exc:
        raise _ledger_error(exc) from exc
