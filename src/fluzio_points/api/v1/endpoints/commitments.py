"""API endpoints for appointments and bring-a-friend referrals."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fluzio_points.api.dependencies.security import require_internal_api_key
from fluzio_points.api.dependencies.services import get_notification_service
from fluzio_points.core.timeutils import ensure_utc
from fluzio_points.db.session import get_session
from fluzio_points.models.commitment import CommitmentKind, TimedCommitment
from fluzio_points.services.commitments import CommitmentRateLimiter, CommitmentWorkflow
from fluzio_points.services.notifications import NotificationService

router = APIRouter(prefix="/commitments", tags=["commitments"])


class CommitmentCreateRequest(BaseModel):
    kind: Literal["appointment", "referral"]
    initiatorId: str = Field(..., min_length=1)
    rewardPoints: int = Field(..., gt=0)
    counterpartyId: Optional[str] = Field(None, description="Required for appointments")
    scopeKey: Optional[str] = Field(None, description="Business or campaign the commitment belongs to")
    scheduledFor: Optional[datetime] = None
    details: Optional[dict[str, Any]] = None


class CommitmentConfirmRequest(BaseModel):
    agreedDetails: Optional[dict[str, Any]] = None


class CommitmentJoinRequest(BaseModel):
    shareCode: str = Field(..., min_length=1)
    counterpartyId: str = Field(..., min_length=1)


class CommitmentActorRequest(BaseModel):
    actorId: Optional[str] = None
    reason: Optional[str] = None


class CommitmentResponse(BaseModel):
    id: UUID
    kind: str
    status: str
    initiatorId: str
    counterpartyId: Optional[str]
    scopeKey: Optional[str]
    rewardPoints: int
    shareCode: Optional[str]
    joinDeadline: Optional[datetime]
    scheduledFor: Optional[datetime]
    agreedDetails: Optional[dict[str, Any]]
    completedAt: Optional[datetime]
    rewardUnlockAt: Optional[datetime]
    settled: bool
    settledAt: Optional[datetime]
    cancelReason: Optional[str]
    createdAt: datetime


class RateWindowResponse(BaseModel):
    initiatorId: str
    kind: str
    count: int
    maxCount: int
    remaining: int
    windowStart: datetime
    retryAfter: Optional[datetime]


@router.post(
    "",
    response_model=CommitmentResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_api_key)],
)
async def create_commitment(
    request: CommitmentCreateRequest,
    db: AsyncSession = Depends(get_session),
    notifications: NotificationService = Depends(get_notification_service),
) -> CommitmentResponse:
    """Open a commitment after rate-limit and duplicate checks."""

    commitment = await CommitmentWorkflow(db, notifications=notifications).create(
        CommitmentKind(request.kind),
        request.initiatorId,
        request.rewardPoints,
        counterparty_id=request.counterpartyId,
        scope_key=request.scopeKey,
        scheduled_for=request.scheduledFor,
        details=request.details,
    )
    return _serialize_commitment(commitment)


@router.post(
    "/join",
    response_model=CommitmentResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def join_referral(
    request: CommitmentJoinRequest,
    db: AsyncSession = Depends(get_session),
    notifications: NotificationService = Depends(get_notification_service),
) -> CommitmentResponse:
    workflow = CommitmentWorkflow(db, notifications=notifications)
    commitment = await workflow.join(request.shareCode, request.counterpartyId)
    return _serialize_commitment(commitment)


@router.get("/rate-window", response_model=RateWindowResponse)
async def get_rate_window(
    initiator_id: str = Query(..., alias="initiatorId"),
    kind: CommitmentKind = Query(CommitmentKind.APPOINTMENT),
    db: AsyncSession = Depends(get_session),
) -> RateWindowResponse:
    usage = await CommitmentRateLimiter(db).check_window(initiator_id, kind)
    return RateWindowResponse(
        initiatorId=usage.initiator_id,
        kind=usage.kind.value,
        count=usage.count,
        maxCount=usage.max_count,
        remaining=usage.remaining,
        windowStart=usage.window_start,
        retryAfter=usage.retry_after,
    )


@router.get("/{commitment_id}", response_model=CommitmentResponse)
async def get_commitment(commitment_id: UUID, db: AsyncSession = Depends(get_session)) -> CommitmentResponse:
    return _serialize_commitment(await CommitmentWorkflow(db).get(commitment_id))


@router.post(
    "/{commitment_id}/confirm",
    response_model=CommitmentResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def confirm_commitment(
    commitment_id: UUID,
    request: CommitmentConfirmRequest,
    db: AsyncSession = Depends(get_session),
    notifications: NotificationService = Depends(get_notification_service),
) -> CommitmentResponse:
    workflow = CommitmentWorkflow(db, notifications=notifications)
    return _serialize_commitment(await workflow.confirm(commitment_id, request.agreedDetails))


@router.post(
    "/{commitment_id}/complete",
    response_model=CommitmentResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def complete_commitment(
    commitment_id: UUID,
    request: CommitmentActorRequest,
    db: AsyncSession = Depends(get_session),
    notifications: NotificationService = Depends(get_notification_service),
) -> CommitmentResponse:
    """Record completion; the reward unlocks after the trust delay."""

    workflow = CommitmentWorkflow(db, notifications=notifications)
    return _serialize_commitment(await workflow.complete(commitment_id, request.actorId))


@router.post(
    "/{commitment_id}/cancel",
    response_model=CommitmentResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def cancel_commitment(
    commitment_id: UUID,
    request: CommitmentActorRequest,
    db: AsyncSession = Depends(get_session),
    notifications: NotificationService = Depends(get_notification_service),
) -> CommitmentResponse:
    workflow = CommitmentWorkflow(db, notifications=notifications)
    return _serialize_commitment(await workflow.cancel(commitment_id, request.actorId, request.reason))


@router.post(
    "/{commitment_id}/no-show",
    response_model=CommitmentResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def mark_commitment_no_show(
    commitment_id: UUID,
    db: AsyncSession = Depends(get_session),
    notifications: NotificationService = Depends(get_notification_service),
) -> CommitmentResponse:
    workflow = CommitmentWorkflow(db, notifications=notifications)
    return _serialize_commitment(await workflow.mark_no_show(commitment_id))


def _serialize_commitment(commitment: TimedCommitment) -> CommitmentResponse:
    return CommitmentResponse(
        id=commitment.id,
        kind=commitment.kind.value,
        status=commitment.status.value,
        initiatorId=commitment.initiator_id,
        counterpartyId=commitment.counterparty_id,
        scopeKey=commitment.scope_key,
        rewardPoints=commitment.reward_points,
        shareCode=commitment.share_code,
        joinDeadline=ensure_utc(commitment.join_deadline),
        scheduledFor=ensure_utc(commitment.scheduled_for),
        agreedDetails=commitment.agreed_details,
        completedAt=ensure_utc(commitment.completed_at),
        rewardUnlockAt=ensure_utc(commitment.reward_unlock_at),
        settled=bool(commitment.settled),
        settledAt=ensure_utc(commitment.settled_at),
        cancelReason=commitment.cancel_reason,
        createdAt=ensure_utc(commitment.created_at),
    )
