"""API endpoints for mission funding pools and applications."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fluzio_points.api.dependencies.security import require_internal_api_key
from fluzio_points.api.dependencies.services import get_notification_service
from fluzio_points.core.timeutils import ensure_utc
from fluzio_points.db.session import get_session
from fluzio_points.models.mission import MissionFundingPool, ParticipationStatus
from fluzio_points.services.missions import MissionFundingManager, ParticipationService
from fluzio_points.services.notifications import NotificationService

from .participations import ParticipationResponse, serialize_participation

router = APIRouter(prefix="/missions", tags=["missions"])


class FundMissionRequest(BaseModel):
    businessId: str = Field(..., min_length=1)
    pointsPerSlot: int = Field(..., gt=0)
    maxSlots: int = Field(..., gt=0)
    metadata: Optional[dict[str, Any]] = None


class ExtendSlotsRequest(BaseModel):
    additionalSlots: int = Field(..., gt=0)


class CancelMissionRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Shown to participants in the cancellation notice")


class ApplyRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    metadata: Optional[dict[str, Any]] = None


class FundingPoolResponse(BaseModel):
    id: UUID
    missionId: str
    businessId: str
    status: str
    pointsPerSlot: int
    maxSlots: int
    slotsConsumed: int
    remainingSlots: int
    fundedPoints: int
    refundAmount: Optional[int]
    cancelReason: Optional[str]
    cancelledAt: Optional[datetime]


class CancellationResponse(BaseModel):
    pool: FundingPoolResponse
    refundAmount: int
    refundTransactionId: Optional[UUID]
    notifiedParticipants: int
    replayed: bool = False


@router.post(
    "/{mission_id}/funding",
    response_model=FundingPoolResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_api_key)],
)
async def fund_mission(
    mission_id: str,
    request: FundMissionRequest,
    db: AsyncSession = Depends(get_session),
    notifications: NotificationService = Depends(get_notification_service),
) -> FundingPoolResponse:
    """Reserve ``pointsPerSlot * maxSlots`` from the business balance."""

    manager = MissionFundingManager(db, notifications=notifications)
    pool = await manager.fund(
        request.businessId,
        mission_id,
        request.pointsPerSlot,
        request.maxSlots,
        metadata=request.metadata,
    )
    return _serialize_pool(pool)


@router.get("/{mission_id}/funding", response_model=FundingPoolResponse)
async def get_mission_funding(mission_id: str, db: AsyncSession = Depends(get_session)) -> FundingPoolResponse:
    pool = await MissionFundingManager(db).get_pool(mission_id)
    return _serialize_pool(pool)


@router.post(
    "/{mission_id}/funding/slots",
    response_model=FundingPoolResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def extend_mission_slots(
    mission_id: str,
    request: ExtendSlotsRequest,
    db: AsyncSession = Depends(get_session),
) -> FundingPoolResponse:
    pool = await MissionFundingManager(db).extend_slots(mission_id, request.additionalSlots)
    return _serialize_pool(pool)


@router.post(
    "/{mission_id}/cancel",
    response_model=CancellationResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def cancel_mission(
    mission_id: str,
    request: CancelMissionRequest,
    db: AsyncSession = Depends(get_session),
    notifications: NotificationService = Depends(get_notification_service),
) -> CancellationResponse:
    """Cancel the mission and refund its unconsumed slots."""

    result = await MissionFundingManager(db, notifications=notifications).cancel(mission_id, request.reason)
    return CancellationResponse(
        pool=_serialize_pool(result.pool),
        refundAmount=result.refund_amount,
        refundTransactionId=result.refund_transaction_id,
        notifiedParticipants=result.notified_participants,
        replayed=result.replayed,
    )


@router.post(
    "/{mission_id}/participations",
    response_model=ParticipationResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_api_key)],
)
async def apply_to_mission(
    mission_id: str,
    request: ApplyRequest,
    db: AsyncSession = Depends(get_session),
    notifications: NotificationService = Depends(get_notification_service),
) -> ParticipationResponse:
    service = ParticipationService(db, notifications=notifications)
    participation = await service.apply(mission_id, request.userId, metadata=request.metadata)
    return serialize_participation(participation)


@router.get("/{mission_id}/participations", response_model=List[ParticipationResponse])
async def list_mission_participations(
    mission_id: str,
    statuses: list[ParticipationStatus] | None = Query(None, description="Filter by participation status"),
    db: AsyncSession = Depends(get_session),
) -> List[ParticipationResponse]:
    participations = await ParticipationService(db).list_for_mission(mission_id, statuses=statuses)
    return [serialize_participation(participation) for participation in participations]


def _serialize_pool(pool: MissionFundingPool) -> FundingPoolResponse:
    return FundingPoolResponse(
        id=pool.id,
        missionId=pool.mission_id,
        businessId=pool.business_id,
        status=pool.status.value,
        pointsPerSlot=pool.points_per_slot,
        maxSlots=pool.max_slots,
        slotsConsumed=pool.slots_consumed,
        remainingSlots=pool.remaining_slots,
        fundedPoints=pool.funded_points,
        refundAmount=pool.refund_amount,
        cancelReason=pool.cancel_reason,
        cancelledAt=ensure_utc(pool.cancelled_at),
    )
