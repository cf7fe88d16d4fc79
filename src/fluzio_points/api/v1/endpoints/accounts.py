"""API endpoints for points balances, ledger history and conversions."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fluzio_points.api.dependencies.security import require_internal_api_key
from fluzio_points.core.timeutils import ensure_utc
from fluzio_points.db.session import get_session
from fluzio_points.models.ledger import AccountOwnerKind, LedgerTransaction, LedgerTransactionType
from fluzio_points.services.errors import AccountNotFoundError
from fluzio_points.services.ledger import (
    LedgerReceipt,
    LedgerService,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)

router = APIRouter(prefix="/accounts", tags=["accounts"])


class AccountResponse(BaseModel):
    ownerId: str
    ownerKind: Optional[str]
    balance: int


class LedgerPostingRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Points to post")
    source: str = Field(..., min_length=1, description="Machine-readable origin of the posting")
    ownerKind: Optional[Literal["business", "customer"]] = None
    transactionType: Literal["earn", "refund"] = Field("earn", description="Credit flavour; ignored for debits")
    idempotencyKey: Optional[str] = Field(None, description="Replays with the same key return the original posting")
    metadata: Optional[dict[str, Any]] = None


class ConversionRequest(BaseModel):
    points: int = Field(..., gt=0)
    idempotencyKey: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class TransactionReceiptResponse(BaseModel):
    transactionId: UUID
    ownerId: str
    transactionType: str
    amount: int
    balanceBefore: int
    balanceAfter: int
    replayed: bool


class ConversionResponse(BaseModel):
    points: int
    pointsPerUnit: str
    creditedValue: str
    receipt: TransactionReceiptResponse


class LedgerEntryResponse(BaseModel):
    id: UUID
    occurredAt: datetime
    transactionType: str
    amount: int
    source: str
    balanceAfter: int
    metadata: dict[str, Any] = Field(default_factory=dict)


class LedgerWindowResponse(BaseModel):
    entries: List[LedgerEntryResponse]
    nextCursor: Optional[str]


@router.get("/{owner_id}", response_model=AccountResponse)
async def get_account(owner_id: str, db: AsyncSession = Depends(get_session)) -> AccountResponse:
    account = await LedgerService(db).get_account(owner_id)
    if account is None:
        raise AccountNotFoundError(owner_id)
    return AccountResponse(
        ownerId=account.owner_id,
        ownerKind=account.owner_kind.value if account.owner_kind else None,
        balance=account.balance,
    )


@router.get("/{owner_id}/transactions", response_model=LedgerWindowResponse)
async def list_account_transactions(
    owner_id: str,
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    types: list[str] | None = Query(None, description="Filter transaction types"),
    db: AsyncSession = Depends(get_session),
) -> LedgerWindowResponse:
    """Return an owner's ledger, newest first."""

    transaction_types: list[LedgerTransactionType] | None = None
    if types:
        transaction_types = []
        for value in types:
            try:
                transaction_types.append(LedgerTransactionType(value))
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f"Unsupported transaction type: {value}") from exc

    decoded_cursor = None
    if cursor:
        try:
            decoded_cursor = decode_time_uuid_cursor(cursor)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid ledger cursor") from exc

    entries, next_cursor = await LedgerService(db).list_transactions(
        owner_id,
        limit=limit,
        cursor=decoded_cursor,
        transaction_types=transaction_types,
    )
    return LedgerWindowResponse(
        entries=[_serialize_entry(entry) for entry in entries],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.post(
    "/{owner_id}/credit",
    response_model=TransactionReceiptResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def credit_account(
    owner_id: str,
    request: LedgerPostingRequest,
    db: AsyncSession = Depends(get_session),
) -> TransactionReceiptResponse:
    service = LedgerService(db)
    await service.ensure_account(owner_id, owner_kind=_owner_kind(request.ownerKind))
    receipt = await service.credit(
        owner_id,
        request.amount,
        source=request.source,
        transaction_type=LedgerTransactionType(request.transactionType),
        metadata=request.metadata,
        idempotency_key=request.idempotencyKey,
    )
    await db.commit()
    return _serialize_receipt(receipt)


@router.post(
    "/{owner_id}/debit",
    response_model=TransactionReceiptResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def debit_account(
    owner_id: str,
    request: LedgerPostingRequest,
    db: AsyncSession = Depends(get_session),
) -> TransactionReceiptResponse:
    receipt = await LedgerService(db).debit(
        owner_id,
        request.amount,
        source=request.source,
        metadata=request.metadata,
        idempotency_key=request.idempotencyKey,
    )
    await db.commit()
    return _serialize_receipt(receipt)


@router.post(
    "/{owner_id}/conversions",
    response_model=ConversionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_api_key)],
)
async def convert_points(
    owner_id: str,
    request: ConversionRequest,
    db: AsyncSession = Depends(get_session),
) -> ConversionResponse:
    """Convert points into monetary value at the configured rate."""

    result = await LedgerService(db).convert(
        owner_id,
        request.points,
        metadata=request.metadata,
        idempotency_key=request.idempotencyKey,
    )
    await db.commit()
    return ConversionResponse(
        points=result.points,
        pointsPerUnit=str(result.points_per_unit),
        creditedValue=str(result.credited_value),
        receipt=_serialize_receipt(result.receipt),
    )


def _owner_kind(value: str | None) -> AccountOwnerKind | None:
    return AccountOwnerKind(value) if value else None


def _serialize_receipt(receipt: LedgerReceipt) -> TransactionReceiptResponse:
    return TransactionReceiptResponse(
        transactionId=receipt.transaction_id,
        ownerId=receipt.owner_id,
        transactionType=receipt.transaction_type.value,
        amount=receipt.amount,
        balanceBefore=receipt.balance_before,
        balanceAfter=receipt.balance_after,
        replayed=receipt.replayed,
    )


def _serialize_entry(entry: LedgerTransaction) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        occurredAt=ensure_utc(entry.occurred_at),
        transactionType=entry.transaction_type.value,
        amount=entry.amount,
        source=entry.source,
        balanceAfter=entry.balance_after,
        metadata=entry.metadata_json or {},
    )
