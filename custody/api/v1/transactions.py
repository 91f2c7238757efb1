"""Transfer routes: history, initiate, execute, status and reconciliation."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from custody.models import TransactionType
from custody.transactions import StatusReconciler, TransactionService, TransactionView
from custody.transactions.service import HISTORY_PAGE_MAX, HISTORY_PAGE_SIZE

from .deps import current_user, get_reconciler, get_transaction_service
from .schemas import (
    ConfirmationHandleResponse,
    ExecutionResponse,
    PaginationResponse,
    ReconcileResponse,
    TransactionHistoryResponse,
    TransactionStatusResponse,
    TransferExecute,
    TransferInitiate,
)

router = APIRouter(prefix="/api/v1/transactions", tags=["transactions"])


def _status_response(view: TransactionView) -> TransactionStatusResponse:
    record = view.record
    return TransactionStatusResponse(
        id=record.id,
        status=record.status.value,
        type=record.type.value,
        amount=str(record.amount),
        currency=record.currency,
        from_address=record.from_address,
        to_address=record.to_address,
        tx_hash=record.tx_hash,
        explorer_url=view.explorer_url,
        confirmations=view.confirmations,
        created_at=record.created_at,
        executed_at=record.executed_at,
        confirmed_at=record.confirmed_at,
        failed_at=record.failed_at,
        expires_at=record.expires_at,
        error=record.metadata.get("error"),
        metadata=record.metadata,
    )


@router.get("", response_model=TransactionHistoryResponse)
async def transaction_history(
    limit: int = Query(HISTORY_PAGE_SIZE, ge=1, le=HISTORY_PAGE_MAX),
    offset: int = Query(0, ge=0),
    type: Optional[TransactionType] = Query(None),
    user_id: str = Depends(current_user),
    service: TransactionService = Depends(get_transaction_service),
) -> TransactionHistoryResponse:
    page = await service.history(user_id, type=type, limit=limit, offset=offset)
    return TransactionHistoryResponse(
        transactions=[_status_response(view) for view in page.items],
        pagination=PaginationResponse(
            total=page.total, limit=page.limit, offset=page.offset, has_more=page.has_more
        ),
    )


@router.post("/initiate", response_model=ConfirmationHandleResponse)
async def initiate_transfer(
    payload: TransferInitiate,
    user_id: str = Depends(current_user),
    service: TransactionService = Depends(get_transaction_service),
) -> ConfirmationHandleResponse:
    handle = await service.initiate(user_id, payload.recipient, payload.amount, payload.currency)
    return ConfirmationHandleResponse(
        transaction_id=handle.transaction_id,
        confirmation_token=handle.confirmation_token,
        expires_at=handle.expires_at,
        expires_in=handle.expires_in_seconds,
        from_address=handle.from_address,
        to_address=handle.to_address,
        amount=str(handle.amount),
        currency=handle.currency,
        estimated_fee_usd=str(handle.estimated_fee_usd),
        total_usd=str(handle.total_usd),
        requires_2fa=handle.requires_second_factor,
        recipient_email=handle.recipient_email,
    )


@router.post("/execute", response_model=ExecutionResponse)
async def execute_transfer(
    payload: TransferExecute,
    user_id: str = Depends(current_user),
    service: TransactionService = Depends(get_transaction_service),
) -> ExecutionResponse:
    result = await service.execute(user_id, payload.confirmation_token, payload.confirmed)
    return ExecutionResponse(
        transaction_id=result.transaction_id,
        status=result.status.value,
        tx_hash=result.tx_hash,
        explorer_url=result.explorer_url,
        nonce=result.nonce,
        gas_price=str(result.gas_price),
        gas_limit=result.gas_limit,
    )


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(
    user_id: str = Depends(current_user),
    reconciler: StatusReconciler = Depends(get_reconciler),
) -> ReconcileResponse:
    summary = await reconciler.reconcile_once()
    return ReconcileResponse(checked=summary.checked, updated=summary.updated, errors=summary.errors)


@router.get("/by-token/{token}", response_model=TransactionStatusResponse)
async def transaction_status_by_token(
    token: str,
    user_id: str = Depends(current_user),
    service: TransactionService = Depends(get_transaction_service),
) -> TransactionStatusResponse:
    return _status_response(await service.get_status_by_token(user_id, token))


@router.get("/{transaction_id}", response_model=TransactionStatusResponse)
async def transaction_status(
    transaction_id: str,
    user_id: str = Depends(current_user),
    service: TransactionService = Depends(get_transaction_service),
) -> TransactionStatusResponse:
    return _status_response(await service.get_status(user_id, transaction_id))
