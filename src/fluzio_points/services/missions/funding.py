"""Mission funding pools: reservation, slot consumption and cancellation refunds."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fluzio_points.core.settings import settings
from fluzio_points.core.timeutils import utcnow
from fluzio_points.db.session import commit_or_rollback, conditional_update
from fluzio_points.models.ledger import AccountOwnerKind, LedgerTransactionType
from fluzio_points.models.mission import (
    FundingPoolStatus,
    MissionFundingPool,
    Participation,
    ParticipationStatus,
)
from fluzio_points.services.errors import (
    ConcurrentUpdateError,
    InvalidAmountError,
    InvalidTransitionError,
    PoolNotActiveError,
    RecordNotFoundError,
)
from fluzio_points.services.ledger import LedgerService
from fluzio_points.services.notifications import (
    NotificationKind,
    NotificationService,
    build_notification_service,
)

NOTIFIED_PARTICIPANT_STATUSES = (ParticipationStatus.PENDING, ParticipationStatus.APPROVED)


def funding_source(mission_id: str) -> str:
    return f"mission_funding_{mission_id}"


def cancellation_source(mission_id: str) -> str:
    return f"mission_cancellation_{mission_id}"


@dataclass(slots=True)
class CancellationResult:
    """Outcome of cancelling a mission's funding pool."""

    pool: MissionFundingPool
    refund_amount: int
    refund_transaction_id: UUID | None
    notified_participants: int = 0
    replayed: bool = False


class MissionFundingManager:
    """Reserve and release the points pool that backs a mission.

    ``fund``, ``extend_slots`` and ``cancel`` each commit their own unit of work.
    ``consume_slot`` runs inside the caller's transaction so that a slot and the
    reward it pays are persisted together.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: LedgerService | None = None,
        notifications: NotificationService | None = None,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)
        self._notifications = notifications or build_notification_service()

    async def find_pool(self, mission_id: str) -> MissionFundingPool | None:
        stmt = select(MissionFundingPool).where(MissionFundingPool.mission_id == mission_id)
        result = await self._db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_pool(self, mission_id: str) -> MissionFundingPool:
        pool = await self.find_pool(mission_id)
        if pool is None:
            raise RecordNotFoundError("mission_funding_pool", mission_id)
        return pool

    async def fund(
        self,
        business_id: str,
        mission_id: str,
        points_per_slot: int,
        max_slots: int,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> MissionFundingPool:
        """Debit ``points_per_slot * max_slots`` from the business and open an ACTIVE pool."""

        _require_positive(points_per_slot, "points_per_slot")
        _require_positive(max_slots, "max_slots")

        existing = await self.find_pool(mission_id)
        if existing is not None:
            return self._existing_funding(existing, business_id)

        total = points_per_slot * max_slots
        try:
            async with commit_or_rollback(self._db):
                await self._ledger.ensure_account(business_id, owner_kind=AccountOwnerKind.BUSINESS)
                receipt = await self._ledger.debit(
                    business_id,
                    total,
                    source=funding_source(mission_id),
                    metadata={"mission_id": mission_id, "points_per_slot": points_per_slot, "max_slots": max_slots},
                    idempotency_key=f"mission_funding:{mission_id}",
                )
                pool = MissionFundingPool(
                    mission_id=mission_id,
                    business_id=business_id,
                    points_per_slot=points_per_slot,
                    max_slots=max_slots,
                    slots_consumed=0,
                    status=FundingPoolStatus.ACTIVE,
                    funding_transaction_id=receipt.transaction_id,
                    metadata_json=dict(metadata or {}),
                )
                self._db.add(pool)
                await self._db.flush()
        except IntegrityError:
            # A concurrent fund for the same mission committed first.
            winner = await self.find_pool(mission_id)
            if winner is None:
                raise
            return self._existing_funding(winner, business_id)

        logger.info(
            "Funded mission pool",
            mission_id=mission_id,
            business_id=business_id,
            points_per_slot=points_per_slot,
            max_slots=max_slots,
            total=total,
        )
        return pool

    async def extend_slots(self, mission_id: str, additional_slots: int) -> MissionFundingPool:
        """Buy extra participant slots at the pool's per-slot price."""

        _require_positive(additional_slots, "additional_slots")
        async with commit_or_rollback(self._db):
            pool = await self.get_pool(mission_id)
            if pool.status != FundingPoolStatus.ACTIVE:
                raise PoolNotActiveError(mission_id, pool.status)

            cost = pool.points_per_slot * additional_slots
            await self._ledger.debit(
                pool.business_id,
                cost,
                source=f"mission_slot_purchase_{mission_id}",
                metadata={
                    "mission_id": mission_id,
                    "additional_slots": additional_slots,
                    "points_per_slot": pool.points_per_slot,
                },
            )
            matched = await conditional_update(
                self._db,
                MissionFundingPool,
                MissionFundingPool.id == pool.id,
                MissionFundingPool.version == pool.version,
                MissionFundingPool.status == FundingPoolStatus.ACTIVE,
                values={"max_slots": pool.max_slots + additional_slots, "version": pool.version + 1},
            )
            if not matched:
                raise ConcurrentUpdateError("mission_funding_pool", mission_id, attempts=1)
            await self._db.refresh(pool)

        logger.info("Extended mission pool", mission_id=mission_id, additional_slots=additional_slots, cost=cost)
        return pool

    async def consume_slot(self, mission_id: str, *, now: datetime | None = None) -> MissionFundingPool:
        """Claim one slot; the pool becomes EXHAUSTED when the last slot goes."""

        reference = now or utcnow()
        attempts = settings.ledger_max_cas_attempts
        for attempt in range(1, attempts + 1):
            pool = await self.get_pool(mission_id)
            if pool.status != FundingPoolStatus.ACTIVE:
                raise PoolNotActiveError(mission_id, pool.status)

            consumed = pool.slots_consumed + 1
            values: dict[str, Any] = {"slots_consumed": consumed, "version": pool.version + 1}
            if consumed >= pool.max_slots:
                values.update(status=FundingPoolStatus.EXHAUSTED, exhausted_at=reference)

            matched = await conditional_update(
                self._db,
                MissionFundingPool,
                MissionFundingPool.id == pool.id,
                MissionFundingPool.version == pool.version,
                MissionFundingPool.status == FundingPoolStatus.ACTIVE,
                values=values,
            )
            if matched:
                await self._db.refresh(pool)
                logger.info(
                    "Consumed mission slot",
                    mission_id=mission_id,
                    slots_consumed=pool.slots_consumed,
                    max_slots=pool.max_slots,
                    status=pool.status.value,
                )
                return pool
            logger.debug("Funding pool changed underneath slot claim; retrying", mission_id=mission_id, attempt=attempt)

        raise ConcurrentUpdateError("mission_funding_pool", mission_id, attempts=attempts)

    async def cancel(
        self,
        mission_id: str,
        reason: str | None = None,
        *,
        now: datetime | None = None,
    ) -> CancellationResult:
        """Cancel an ACTIVE pool and refund the unconsumed slots to the business.

        Cancelling an already CANCELLED pool replays the recorded refund. An
        EXHAUSTED pool has nothing left to refund and stays EXHAUSTED.
        """

        reference = now or utcnow()
        async with commit_or_rollback(self._db):
            pool = await self.get_pool(mission_id)
            if pool.status != FundingPoolStatus.ACTIVE:
                return self._settled_outcome(pool)

            refund_amount = pool.unconsumed_points
            matched = await conditional_update(
                self._db,
                MissionFundingPool,
                MissionFundingPool.id == pool.id,
                MissionFundingPool.version == pool.version,
                MissionFundingPool.status == FundingPoolStatus.ACTIVE,
                values={
                    "status": FundingPoolStatus.CANCELLED,
                    "refund_amount": refund_amount,
                    "cancel_reason": reason,
                    "cancelled_at": reference,
                    "version": pool.version + 1,
                },
            )
            if not matched:
                return self._settled_outcome(await self.get_pool(mission_id))

            refund_transaction_id: UUID | None = None
            if refund_amount > 0:
                receipt = await self._ledger.credit(
                    pool.business_id,
                    refund_amount,
                    source=cancellation_source(mission_id),
                    transaction_type=LedgerTransactionType.REFUND,
                    metadata={
                        "mission_id": mission_id,
                        "reason": reason,
                        "points_per_slot": pool.points_per_slot,
                        "slots_consumed": pool.slots_consumed,
                        "max_slots": pool.max_slots,
                        "slots_refunded": pool.remaining_slots,
                    },
                    idempotency_key=f"mission_cancellation:{mission_id}",
                )
                refund_transaction_id = receipt.transaction_id
                await conditional_update(
                    self._db,
                    MissionFundingPool,
                    MissionFundingPool.id == pool.id,
                    values={"refund_transaction_id": refund_transaction_id},
                )
            await self._db.refresh(pool)

        logger.info(
            "Cancelled mission pool",
            mission_id=mission_id,
            business_id=pool.business_id,
            refund_amount=refund_amount,
            reason=reason,
        )
        notified = await self._notify_participants(pool, reason)
        return CancellationResult(
            pool=pool,
            refund_amount=refund_amount,
            refund_transaction_id=refund_transaction_id,
            notified_participants=notified,
        )

    def _existing_funding(self, pool: MissionFundingPool, business_id: str) -> MissionFundingPool:
        if pool.business_id != business_id:
            raise InvalidTransitionError(
                "mission_funding_pool",
                pool.status,
                "funded",
                message=f"Mission {pool.mission_id} is already funded by another business",
                mission_id=pool.mission_id,
            )
        logger.info("Mission already funded", mission_id=pool.mission_id, pool_id=str(pool.id))
        return pool

    def _settled_outcome(self, pool: MissionFundingPool) -> CancellationResult:
        if pool.status == FundingPoolStatus.CANCELLED:
            logger.info("Mission pool already cancelled", mission_id=pool.mission_id, refund_amount=pool.refund_amount)
            return CancellationResult(
                pool=pool,
                refund_amount=pool.refund_amount or 0,
                refund_transaction_id=pool.refund_transaction_id,
                replayed=True,
            )
        logger.info("Mission pool exhausted; nothing to refund", mission_id=pool.mission_id)
        return CancellationResult(pool=pool, refund_amount=0, refund_transaction_id=None)

    async def _notify_participants(self, pool: MissionFundingPool, reason: str | None) -> int:
        stmt = select(Participation.user_id).where(
            Participation.mission_id == pool.mission_id,
            Participation.status.in_(NOTIFIED_PARTICIPANT_STATUSES),
        )
        try:
            recipients = list((await self._db.execute(stmt)).scalars().all())
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Could not load participants to notify of cancellation",
                mission_id=pool.mission_id,
                error=str(exc),
            )
            return 0
        if not recipients:
            return 0
        return await self._notifications.notify_many(
            recipients,
            NotificationKind.MISSION_CANCELLED,
            {"mission_id": pool.mission_id, "business_id": pool.business_id, "reason": reason},
        )


def _require_positive(value: Any, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidAmountError(value, field=field)


__all__ = ["CancellationResult", "MissionFundingManager", "cancellation_source", "funding_source"]
