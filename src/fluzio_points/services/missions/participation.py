"""Participation state machine for customers working on a mission."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fluzio_points.core.timeutils import utcnow
from fluzio_points.db.session import commit_or_rollback, conditional_update
from fluzio_points.models.ledger import AccountOwnerKind, ReversalStatus
from fluzio_points.models.mission import FundingPoolStatus, Participation, ParticipationStatus
from fluzio_points.services.errors import (
    DuplicateParticipationError,
    InvalidAmountError,
    InvalidTransitionError,
    PoolNotActiveError,
    RecordNotFoundError,
    SlotUnavailableError,
)
from fluzio_points.services.ledger import LedgerReceipt, LedgerService, ReversalResult
from fluzio_points.services.notifications import (
    NotificationKind,
    NotificationService,
    build_notification_service,
)

from .funding import MissionFundingManager


def reward_source(mission_id: str) -> str:
    return f"mission_reward_{mission_id}"


def rejection_source(mission_id: str) -> str:
    return f"mission_rejection_{mission_id}"


@dataclass(slots=True)
class ApprovalResult:
    participation: Participation
    receipt: LedgerReceipt
    slots_consumed: int
    pool_status: FundingPoolStatus


@dataclass(slots=True)
class RejectionOutcome:
    """Rejection always succeeds; the reversal records how much was clawed back."""

    participation: Participation
    reversal: ReversalResult | None = None

    @property
    def reversal_status(self) -> ReversalStatus:
        return self.reversal.status if self.reversal else ReversalStatus.NOT_REQUIRED

    @property
    def refunded(self) -> bool:
        return bool(self.reversal and self.reversal.debited)

    @property
    def shortfall(self) -> int:
        return self.reversal.shortfall if self.reversal else 0


class ParticipationService:
    """Apply, approve, reject and complete mission participations."""

    _ALLOWED_TRANSITIONS: dict[ParticipationStatus, set[ParticipationStatus]] = {
        ParticipationStatus.PENDING: {ParticipationStatus.APPROVED, ParticipationStatus.REJECTED},
        ParticipationStatus.APPROVED: {ParticipationStatus.REJECTED, ParticipationStatus.COMPLETED},
        ParticipationStatus.REJECTED: set(),
        ParticipationStatus.COMPLETED: set(),
    }

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: LedgerService | None = None,
        funding: MissionFundingManager | None = None,
        notifications: NotificationService | None = None,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)
        self._notifications = notifications or build_notification_service()
        self._funding = funding or MissionFundingManager(
            db_session,
            ledger=self._ledger,
            notifications=self._notifications,
        )

    async def get(self, participation_id: UUID) -> Participation:
        stmt = select(Participation).where(Participation.id == participation_id)
        result = await self._db.execute(stmt.execution_options(populate_existing=True))
        participation = result.scalar_one_or_none()
        if participation is None:
            raise RecordNotFoundError("participation", participation_id)
        return participation

    async def list_for_mission(
        self,
        mission_id: str,
        *,
        statuses: Sequence[ParticipationStatus] | None = None,
    ) -> list[Participation]:
        stmt = select(Participation).where(Participation.mission_id == mission_id).order_by(Participation.applied_at)
        if statuses:
            stmt = stmt.where(Participation.status.in_(list(statuses)))
        return list((await self._db.execute(stmt)).scalars().all())

    async def apply(
        self,
        mission_id: str,
        user_id: str,
        *,
        metadata: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Participation:
        """Open a PENDING participation for ``user_id`` on an ACTIVE mission."""

        pool = await self._funding.get_pool(mission_id)
        if pool.status != FundingPoolStatus.ACTIVE:
            raise PoolNotActiveError(mission_id, pool.status)

        existing = await self._active_participation(mission_id, user_id)
        if existing is not None:
            raise DuplicateParticipationError(mission_id, user_id, existing_id=existing.id)

        participation = Participation(
            mission_id=mission_id,
            user_id=user_id,
            status=ParticipationStatus.PENDING,
            applied_at=now or utcnow(),
            metadata_json=dict(metadata or {}),
        )
        try:
            async with commit_or_rollback(self._db):
                self._db.add(participation)
                await self._db.flush()
        except IntegrityError as exc:
            raise DuplicateParticipationError(mission_id, user_id) from exc

        logger.info("Participation applied", participation_id=str(participation.id), mission_id=mission_id, user_id=user_id)
        return participation

    async def approve(
        self,
        participation_id: UUID,
        points_amount: int | None = None,
        *,
        now: datetime | None = None,
    ) -> ApprovalResult:
        """Consume a slot and credit the reward in one unit of work.

        The PENDING -> APPROVED compare-and-set decides concurrent approvals and
        replays; the loser sees ``InvalidTransitionError`` and nothing is credited.
        """

        reference = now or utcnow()
        participation = await self.get(participation_id)
        self._require_transition(participation, ParticipationStatus.APPROVED)

        pool = await self._funding.get_pool(participation.mission_id)
        amount = pool.points_per_slot if points_amount is None else points_amount
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0 or amount > pool.points_per_slot:
            raise InvalidAmountError(
                amount,
                field="points_amount",
                message=f"points_amount must be between 1 and {pool.points_per_slot}",
            )

        mission_id = participation.mission_id
        user_id = participation.user_id
        async with commit_or_rollback(self._db):
            await self._transition(
                participation,
                ParticipationStatus.APPROVED,
                values={"points_awarded": amount, "approved_at": reference},
            )
            try:
                pool = await self._funding.consume_slot(mission_id, now=reference)
            except PoolNotActiveError as exc:
                raise SlotUnavailableError(mission_id, reason=f"pool is {exc.status.value}") from exc

            await self._ledger.ensure_account(user_id, owner_kind=AccountOwnerKind.CUSTOMER)
            receipt = await self._ledger.credit(
                user_id,
                amount,
                source=reward_source(mission_id),
                metadata={"mission_id": mission_id, "participation_id": str(participation_id)},
                idempotency_key=f"participation_reward:{participation_id}",
                occurred_at=reference,
            )
            slots_consumed, pool_status = pool.slots_consumed, pool.status

        logger.info(
            "Participation approved",
            participation_id=str(participation_id),
            mission_id=mission_id,
            user_id=user_id,
            points_awarded=amount,
        )
        await self._notifications.notify(
            user_id,
            NotificationKind.PARTICIPATION_APPROVED,
            {"mission_id": mission_id, "participation_id": str(participation_id), "points_awarded": amount},
        )
        return ApprovalResult(
            participation=participation,
            receipt=receipt,
            slots_consumed=slots_consumed,
            pool_status=pool_status,
        )

    async def reject(
        self,
        participation_id: UUID,
        feedback: str | None = None,
        *,
        now: datetime | None = None,
    ) -> RejectionOutcome:
        """Reject a participation, reversing any reward it already paid."""

        reference = now or utcnow()
        participation = await self.get(participation_id)
        previous_status = participation.status
        self._require_transition(participation, ParticipationStatus.REJECTED)

        mission_id = participation.mission_id
        user_id = participation.user_id
        points_awarded = participation.points_awarded or 0
        reversal: ReversalResult | None = None
        async with commit_or_rollback(self._db):
            await self._transition(
                participation,
                ParticipationStatus.REJECTED,
                values={"feedback": feedback, "rejected_at": reference},
            )
            if previous_status == ParticipationStatus.APPROVED and points_awarded > 0:
                reversal = await self._ledger.reverse(
                    user_id,
                    points_awarded,
                    source=rejection_source(mission_id),
                    metadata={
                        "mission_id": mission_id,
                        "participation_id": str(participation_id),
                        "feedback": feedback,
                    },
                    idempotency_key=f"participation_reversal:{participation_id}",
                    occurred_at=reference,
                )

            outcome = RejectionOutcome(participation=participation, reversal=reversal)
            await conditional_update(
                self._db,
                Participation,
                Participation.id == participation_id,
                values={
                    "reversal_status": outcome.reversal_status,
                    "reversal_debited": reversal.debited if reversal else None,
                    "reversal_shortfall": reversal.shortfall if reversal else None,
                },
            )
            await self._db.refresh(participation)

        logger.info(
            "Participation rejected",
            participation_id=str(participation_id),
            mission_id=mission_id,
            previous_status=previous_status.value,
            reversal_status=outcome.reversal_status.value,
            shortfall=outcome.shortfall,
        )
        await self._notifications.notify(
            user_id,
            NotificationKind.PARTICIPATION_REJECTED,
            {
                "mission_id": mission_id,
                "participation_id": str(participation_id),
                "feedback": feedback,
                "refunded": outcome.refunded,
                "points_requested": reversal.requested if reversal else 0,
                "points_reversed": reversal.debited if reversal else 0,
                "shortfall": outcome.shortfall,
            },
        )
        return outcome

    async def complete(self, participation_id: UUID, *, now: datetime | None = None) -> Participation:
        """Finalize an approved participation; it can no longer be reversed."""

        participation = await self.get(participation_id)
        self._require_transition(participation, ParticipationStatus.COMPLETED)
        async with commit_or_rollback(self._db):
            await self._transition(
                participation,
                ParticipationStatus.COMPLETED,
                values={"completed_at": now or utcnow()},
            )
        logger.info("Participation completed", participation_id=str(participation_id))
        return participation

    async def _active_participation(self, mission_id: str, user_id: str) -> Participation | None:
        stmt = select(Participation).where(
            Participation.mission_id == mission_id,
            Participation.user_id == user_id,
            Participation.status != ParticipationStatus.REJECTED,
        )
        return (await self._db.execute(stmt)).scalars().first()

    def _require_transition(self, participation: Participation, target: ParticipationStatus) -> None:
        allowed = self._ALLOWED_TRANSITIONS.get(participation.status, set())
        if target not in allowed:
            raise InvalidTransitionError(
                "participation",
                participation.status,
                target,
                participation_id=participation.id,
            )

    async def _transition(
        self,
        participation: Participation,
        target: ParticipationStatus,
        *,
        values: Mapping[str, Any],
    ) -> None:
        current = participation.status
        matched = await conditional_update(
            self._db,
            Participation,
            Participation.id == participation.id,
            Participation.status == current,
            Participation.version == participation.version,
            values={**values, "status": target, "version": participation.version + 1},
        )
        if not matched:
            latest = await self._db.scalar(select(Participation.status).where(Participation.id == participation.id))
            raise InvalidTransitionError(
                "participation",
                latest or current,
                target,
                participation_id=participation.id,
            )
        await self._db.refresh(participation)


__all__ = [
    "ApprovalResult",
    "ParticipationService",
    "RejectionOutcome",
    "rejection_source",
    "reward_source",
]
