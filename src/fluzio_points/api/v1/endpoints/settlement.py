"""Operator endpoints for releasing matured commitment rewards."""

from __future__ import annotations

from typing import Any, List
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from fluzio_points.api.dependencies.security import require_internal_api_key
from fluzio_points.api.dependencies.services import get_notification_service
from fluzio_points.db.session import SessionFactory, get_session_factory
from fluzio_points.observability.settlement import get_settlement_store
from fluzio_points.services.notifications import NotificationService
from fluzio_points.services.settlement import SettlementScheduler

router = APIRouter(
    prefix="/settlement",
    tags=["settlement"],
    dependencies=[Depends(require_internal_api_key)],
)


class SettlementCreditResponse(BaseModel):
    ownerId: str
    amount: int
    transactionId: UUID
    replayed: bool


class SettlementResponse(BaseModel):
    commitmentId: UUID
    settled: bool
    alreadySettled: bool
    credits: List[SettlementCreditResponse]


class SweepFailureResponse(BaseModel):
    commitmentId: UUID
    code: str
    message: str


class SweepResponse(BaseModel):
    scanned: int
    settled: int
    noop: int
    errors: List[SweepFailureResponse]


def _scheduler(
    session_factory: SessionFactory = Depends(get_session_factory),
    notifications: NotificationService = Depends(get_notification_service),
) -> SettlementScheduler:
    return SettlementScheduler(session_factory=session_factory, notifications=notifications)


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(scheduler: SettlementScheduler = Depends(_scheduler)) -> SweepResponse:
    """Settle everything due now, the same pass the scheduled job runs."""

    result = await scheduler.sweep()
    return SweepResponse(
        scanned=result.scanned,
        settled=result.settled_count,
        noop=result.noop_count,
        errors=[
            SweepFailureResponse(commitmentId=failure.commitment_id, code=failure.code, message=failure.message)
            for failure in result.errors
        ],
    )


@router.post("/commitments/{commitment_id}", response_model=SettlementResponse)
async def settle_commitment(
    commitment_id: UUID,
    scheduler: SettlementScheduler = Depends(_scheduler),
) -> SettlementResponse:
    outcome = await scheduler.settle(commitment_id)
    return SettlementResponse(
        commitmentId=outcome.commitment_id,
        settled=outcome.settled,
        alreadySettled=outcome.already_settled,
        credits=[
            SettlementCreditResponse(
                ownerId=receipt.owner_id,
                amount=receipt.amount,
                transactionId=receipt.transaction_id,
                replayed=receipt.replayed,
            )
            for receipt in outcome.credits
        ],
    )


@router.get("/metrics")
async def settlement_metrics() -> dict[str, Any]:
    return get_settlement_store().snapshot().as_dict()
