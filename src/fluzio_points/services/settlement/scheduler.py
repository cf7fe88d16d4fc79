"""Settlement of completed commitments once their trust delay has elapsed."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fluzio_points.core.settings import settings
from fluzio_points.core.timeutils import ensure_utc, utcnow
from fluzio_points.db.session import SessionFactory, commit_or_rollback, conditional_update, open_session
from fluzio_points.models.commitment import CommitmentStatus, TimedCommitment
from fluzio_points.models.ledger import AccountOwnerKind
from fluzio_points.observability.settlement import get_settlement_store
from fluzio_points.services.errors import InvalidTransitionError, PointsError, RecordNotFoundError
from fluzio_points.services.identity import IdentityDirectory
from fluzio_points.services.ledger import LedgerReceipt, LedgerService
from fluzio_points.services.notifications import (
    NotificationKind,
    NotificationService,
    build_notification_service,
)


def reward_source(commitment: TimedCommitment) -> str:
    return f"{commitment.kind.value}_reward_{commitment.id}"


def reward_idempotency_key(commitment_id: UUID, recipient_id: str) -> str:
    return f"commitment_reward:{commitment_id}:{recipient_id}"


@dataclass(slots=True)
class SettlementOutcome:
    commitment_id: UUID
    settled: bool
    already_settled: bool = False
    credits: List[LedgerReceipt] = field(default_factory=list)

    @property
    def credited_points(self) -> int:
        return sum(receipt.amount for receipt in self.credits)


@dataclass(slots=True)
class SettlementFailure:
    commitment_id: UUID
    code: str
    message: str


@dataclass(slots=True)
class SweepResult:
    """Summary of one pass over the due commitments."""

    scanned: int = 0
    settled_count: int = 0
    noop_count: int = 0
    errors: List[SettlementFailure] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "settled": self.settled_count,
            "noop": self.noop_count,
            "errors": [
                {"commitmentId": str(failure.commitment_id), "code": failure.code, "message": failure.message}
                for failure in self.errors
            ],
        }


class SettlementScheduler:
    """Pays out commitment rewards exactly once.

    Each settlement runs in its own session and transaction. The
    ``settled = false`` compare-and-set is the single gate on payout, so a
    sweep and a manual settle racing on the same commitment credit it once.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        notifications: NotificationService | None = None,
        batch_size: int | None = None,
        identity: IdentityDirectory | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifications = notifications or build_notification_service()
        self._batch_size = batch_size or settings.settlement_batch_size
        self._identity = identity
        self._store = get_settlement_store()

    async def sweep(self, *, now: datetime | None = None) -> SweepResult:
        """Settle every COMPLETED commitment whose unlock time has passed."""

        reference = ensure_utc(now) or utcnow()
        result = SweepResult()
        for commitment_id in await self._due_commitment_ids(reference):
            result.scanned += 1
            try:
                outcome = await self.settle(commitment_id, now=reference)
            except PointsError as exc:
                self._store.record_error(exc.code)
                result.errors.append(SettlementFailure(commitment_id, exc.code, str(exc)))
                logger.warning("Settlement failed", commitment_id=str(commitment_id), code=exc.code, error=str(exc))
                continue
            except Exception as exc:  # noqa: BLE001
                self._store.record_error("unexpected")
                result.errors.append(SettlementFailure(commitment_id, "unexpected", repr(exc)))
                logger.exception("Unexpected settlement failure", commitment_id=str(commitment_id))
                continue

            if outcome.settled:
                result.settled_count += 1
            else:
                result.noop_count += 1

        self._store.record_sweep(
            scanned=result.scanned,
            settled=result.settled_count,
            noop=result.noop_count,
            errors=len(result.errors),
        )
        logger.bind(summary=result.as_dict()).info("Settlement sweep finished")
        return result

    async def settle(self, commitment_id: UUID, *, now: datetime | None = None) -> SettlementOutcome:
        """Credit the reward recipients of one commitment.

        Repeated calls return ``settled=False`` with ``already_settled=True``
        and move no points.
        """

        reference = ensure_utc(now) or utcnow()
        session = await open_session(self._session_factory)
        async with session:
            commitment = await self._load_commitment(session, commitment_id)
            if commitment is None:
                raise RecordNotFoundError("commitment", commitment_id)
            if commitment.settled:
                return self._already_settled(commitment_id)
            self._require_due(commitment, reference)

            recipients = commitment.reward_recipients()
            reward_points = commitment.reward_points
            source = reward_source(commitment)
            kind = commitment.kind
            ledger = LedgerService(session, identity=self._identity)
            credits: List[LedgerReceipt] = []
            async with commit_or_rollback(session):
                claimed = await conditional_update(
                    session,
                    TimedCommitment,
                    TimedCommitment.id == commitment_id,
                    TimedCommitment.status == CommitmentStatus.COMPLETED,
                    TimedCommitment.settled.is_(False),
                    values={
                        "settled": True,
                        "status": CommitmentStatus.SETTLED,
                        "settled_at": reference,
                        "version": TimedCommitment.version + 1,
                    },
                )
                if claimed:
                    for recipient_id in recipients:
                        await ledger.ensure_account(recipient_id, owner_kind=AccountOwnerKind.CUSTOMER)
                        credits.append(
                            await ledger.credit(
                                recipient_id,
                                reward_points,
                                source=source,
                                metadata={"commitment_id": str(commitment_id), "kind": kind.value},
                                idempotency_key=reward_idempotency_key(commitment_id, recipient_id),
                                occurred_at=reference,
                            )
                        )

        if not claimed:
            logger.info("Commitment settled concurrently", commitment_id=str(commitment_id))
            return self._already_settled(commitment_id)

        self._store.record_settlement(settled=True, credits=len(credits))
        logger.info(
            "Settled commitment",
            commitment_id=str(commitment_id),
            kind=kind.value,
            recipients=recipients,
            reward_points=reward_points,
        )
        await self._notifications.notify_many(
            recipients,
            NotificationKind.REWARD_UNLOCKED,
            {"commitment_id": str(commitment_id), "kind": kind.value, "reward_points": reward_points},
        )
        return SettlementOutcome(commitment_id=commitment_id, settled=True, credits=credits)

    async def _load_commitment(self, session: AsyncSession, commitment_id: UUID) -> TimedCommitment | None:
        stmt = select(TimedCommitment).where(TimedCommitment.id == commitment_id)
        return (await session.execute(stmt.execution_options(populate_existing=True))).scalar_one_or_none()

    async def _due_commitment_ids(self, reference: datetime) -> List[UUID]:
        session = await open_session(self._session_factory)
        async with session:
            stmt = (
                select(TimedCommitment.id)
                .where(
                    TimedCommitment.status == CommitmentStatus.COMPLETED,
                    TimedCommitment.settled.is_(False),
                    TimedCommitment.reward_unlock_at <= reference,
                )
                .order_by(TimedCommitment.reward_unlock_at, TimedCommitment.id)
                .limit(self._batch_size)
            )
            return list((await session.execute(stmt)).scalars().all())

    def _already_settled(self, commitment_id: UUID) -> SettlementOutcome:
        self._store.record_settlement(settled=False)
        return SettlementOutcome(commitment_id=commitment_id, settled=False, already_settled=True)

    @staticmethod
    def _require_due(commitment: TimedCommitment, reference: datetime) -> None:
        if commitment.status != CommitmentStatus.COMPLETED:
            raise InvalidTransitionError(
                "commitment",
                commitment.status,
                CommitmentStatus.SETTLED,
                commitment_id=commitment.id,
            )
        unlock_at = ensure_utc(commitment.reward_unlock_at)
        if unlock_at is None or unlock_at > reference:
            raise InvalidTransitionError(
                "commitment",
                commitment.status,
                CommitmentStatus.SETTLED,
                message="Trust delay has not elapsed yet",
                commitment_id=commitment.id,
                reward_unlock_at=unlock_at,
            )


__all__ = [
    "SettlementFailure",
    "SettlementOutcome",
    "SettlementScheduler",
    "SweepResult",
    "reward_idempotency_key",
    "reward_source",
]
