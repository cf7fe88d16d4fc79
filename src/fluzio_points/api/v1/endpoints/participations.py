"""API endpoints for reviewing mission participations."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fluzio_points.api.dependencies.security import require_internal_api_key
from fluzio_points.api.dependencies.services import get_notification_service
from fluzio_points.core.timeutils import ensure_utc
from fluzio_points.db.session import get_session
from fluzio_points.models.mission import Participation
from fluzio_points.services.missions import ParticipationService
from fluzio_points.services.notifications import NotificationService

router = APIRouter(prefix="/participations", tags=["participations"])


class ParticipationResponse(BaseModel):
    id: UUID
    missionId: str
    userId: str
    status: str
    pointsAwarded: Optional[int]
    feedback: Optional[str]
    reversalStatus: Optional[str]
    reversalShortfall: Optional[int]
    appliedAt: datetime
    approvedAt: Optional[datetime]
    rejectedAt: Optional[datetime]
    completedAt: Optional[datetime]


class ApproveRequest(BaseModel):
    pointsAmount: Optional[int] = Field(None, gt=0, description="Defaults to the mission's points per slot")


class RejectRequest(BaseModel):
    feedback: Optional[str] = None


class ApprovalResponse(BaseModel):
    participation: ParticipationResponse
    transactionId: UUID
    newBalance: int
    slotsConsumed: int
    poolStatus: str


class RejectionResponse(BaseModel):
    participation: ParticipationResponse
    reversalStatus: str
    refunded: bool
    shortfall: int


@router.get("/{participation_id}", response_model=ParticipationResponse)
async def get_participation(participation_id: UUID, db: AsyncSession = Depends(get_session)) -> ParticipationResponse:
    return serialize_participation(await ParticipationService(db).get(participation_id))


@router.post(
    "/{participation_id}/approve",
    response_model=ApprovalResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def approve_participation(
    participation_id: UUID,
    request: ApproveRequest,
    db: AsyncSession = Depends(get_session),
    notifications: NotificationService = Depends(get_notification_service),
) -> ApprovalResponse:
    """Consume a slot and credit the participant."""

    result = await ParticipationService(db, notifications=notifications).approve(
        participation_id,
        request.pointsAmount,
    )
    return ApprovalResponse(
        participation=serialize_participation(result.participation),
        transactionId=result.receipt.transaction_id,
        newBalance=result.receipt.new_balance,
        slotsConsumed=result.slots_consumed,
        poolStatus=result.pool_status.value,
    )


@router.post(
    "/{participation_id}/reject",
    response_model=RejectionResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def reject_participation(
    participation_id: UUID,
    request: RejectRequest,
    db: AsyncSession = Depends(get_session),
    notifications: NotificationService = Depends(get_notification_service),
) -> RejectionResponse:
    """Reject and claw back any reward already paid."""

    outcome = await ParticipationService(db, notifications=notifications).reject(participation_id, request.feedback)
    return RejectionResponse(
        participation=serialize_participation(outcome.participation),
        reversalStatus=outcome.reversal_status.value,
        refunded=outcome.refunded,
        shortfall=outcome.shortfall,
    )


@router.post(
    "/{participation_id}/complete",
    response_model=ParticipationResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def complete_participation(
    participation_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> ParticipationResponse:
    return serialize_participation(await ParticipationService(db).complete(participation_id))


def serialize_participation(participation: Participation) -> ParticipationResponse:
    return ParticipationResponse(
        id=participation.id,
        missionId=participation.mission_id,
        userId=participation.user_id,
        status=participation.status.value,
        pointsAwarded=participation.points_awarded,
        feedback=participation.feedback,
        reversalStatus=participation.reversal_status.value if participation.reversal_status else None,
        reversalShortfall=participation.reversal_shortfall,
        appliedAt=ensure_utc(participation.applied_at),
        approvedAt=ensure_utc(participation.approved_at),
        rejectedAt=ensure_utc(participation.rejected_at),
        completedAt=ensure_utc(participation.completed_at),
    )
