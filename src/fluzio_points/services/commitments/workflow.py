"""Timed commitment workflow shared by appointments and bring-a-friend referrals."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fluzio_points.core.settings import settings
from fluzio_points.core.timeutils import ensure_utc, utcnow
from fluzio_points.db.session import commit_or_rollback, conditional_update
from fluzio_points.models.commitment import (
    OPEN_COMMITMENT_STATUSES,
    CommitmentKind,
    CommitmentStatus,
    TimedCommitment,
)
from fluzio_points.models.ledger import AccountOwnerKind, PointsAccount
from fluzio_points.services.errors import (
    AlreadyCompletedError,
    ConcurrentUpdateError,
    InvalidAmountError,
    InvalidScheduleError,
    InvalidTransitionError,
    MissingCounterpartyError,
    RecordNotFoundError,
    SelfReferralError,
    WindowExpiredError,
)
from fluzio_points.services.ledger import LedgerService
from fluzio_points.services.notifications import (
    NotificationKind,
    NotificationService,
    build_notification_service,
)

from .rate_limiter import CommitmentRateLimiter, CommitmentRole

UNJOINED_REFERRAL_CANCEL_REASON = "join_window_expired"
_MAX_COMPLETION_ATTEMPTS = 3


@dataclass(slots=True, frozen=True)
class CommitmentPolicy:
    """Timing rules applied to every commitment."""

    trust_delay: timedelta
    join_window: timedelta

    @classmethod
    def from_settings(cls) -> "CommitmentPolicy":
        return cls(
            trust_delay=timedelta(hours=settings.commitment_trust_delay_hours),
            join_window=timedelta(minutes=settings.referral_join_window_minutes),
        )


class CommitmentWorkflow:
    """State machine for multi-party commitments with a delayed reward.

    PENDING -> CONFIRMED -> COMPLETED -> SETTLED, with CANCELLED reachable from
    the open states and NO_SHOW from CONFIRMED. Settlement itself belongs to the
    settlement scheduler; this workflow only stamps ``reward_unlock_at``.
    """

    _ALLOWED_TRANSITIONS: dict[CommitmentStatus, set[CommitmentStatus]] = {
        CommitmentStatus.PENDING: {CommitmentStatus.CONFIRMED, CommitmentStatus.CANCELLED},
        CommitmentStatus.CONFIRMED: {
            CommitmentStatus.COMPLETED,
            CommitmentStatus.CANCELLED,
            CommitmentStatus.NO_SHOW,
        },
        CommitmentStatus.COMPLETED: {CommitmentStatus.SETTLED},
        CommitmentStatus.CANCELLED: set(),
        CommitmentStatus.NO_SHOW: set(),
        CommitmentStatus.SETTLED: set(),
    }

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: LedgerService | None = None,
        rate_limiter: CommitmentRateLimiter | None = None,
        notifications: NotificationService | None = None,
        policy: CommitmentPolicy | None = None,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)
        self._rate_limiter = rate_limiter or CommitmentRateLimiter(db_session)
        self._notifications = notifications or build_notification_service()
        self._policy = policy or CommitmentPolicy.from_settings()

    async def get(self, commitment_id: UUID) -> TimedCommitment:
        stmt = select(TimedCommitment).where(TimedCommitment.id == commitment_id)
        commitment = (await self._db.execute(stmt.execution_options(populate_existing=True))).scalar_one_or_none()
        if commitment is None:
            raise RecordNotFoundError("commitment", commitment_id)
        return commitment

    async def get_by_share_code(self, share_code: str) -> TimedCommitment:
        stmt = select(TimedCommitment).where(TimedCommitment.share_code == share_code.strip().upper())
        commitment = (await self._db.execute(stmt.execution_options(populate_existing=True))).scalar_one_or_none()
        if commitment is None:
            raise RecordNotFoundError("commitment", share_code)
        return commitment

    async def create(
        self,
        kind: CommitmentKind,
        initiator_id: str,
        reward_points: int,
        *,
        counterparty_id: str | None = None,
        scope_key: str | None = None,
        scheduled_for: datetime | None = None,
        details: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> TimedCommitment:
        """Open a PENDING commitment after rate-limit, duplicate and schedule checks.

        A referral initiator with a still-joinable PENDING session in the same
        scope gets that session back instead of a new one.
        """

        reference = ensure_utc(now) or utcnow()
        if isinstance(reward_points, bool) or not isinstance(reward_points, int) or reward_points <= 0:
            raise InvalidAmountError(reward_points, field="reward_points")
        if kind == CommitmentKind.APPOINTMENT and not counterparty_id:
            raise MissingCounterpartyError(kind)
        if counterparty_id and counterparty_id == initiator_id:
            raise SelfReferralError(initiator_id)

        scope = scope_key or (counterparty_id if kind == CommitmentKind.APPOINTMENT else None)
        async with commit_or_rollback(self._db):
            await self._lock_party(initiator_id)
            if kind == CommitmentKind.REFERRAL:
                reusable = await self._open_referral(initiator_id, scope, reference)
                if reusable is not None:
                    logger.info(
                        "Reusing open referral session",
                        commitment_id=str(reusable.id),
                        initiator_id=initiator_id,
                    )
                    return reusable

            await self._rate_limiter.enforce_window(initiator_id, kind, now=reference)
            await self._guard_first_completion(kind, initiator_id, counterparty_id, scope)
            scheduled = ensure_utc(scheduled_for)
            if scheduled is not None and scheduled <= reference:
                raise InvalidScheduleError(scheduled, now=reference)

            commitment = TimedCommitment(
                kind=kind,
                initiator_id=initiator_id,
                counterparty_id=counterparty_id,
                scope_key=scope,
                status=CommitmentStatus.PENDING,
                reward_points=reward_points,
                scheduled_for=scheduled,
                details=dict(details or {}),
                settled=False,
                created_at=reference,
            )
            if kind == CommitmentKind.REFERRAL:
                commitment.share_code = await self._generate_unique_share_code()
                commitment.join_deadline = reference + self._policy.join_window
            self._db.add(commitment)
            await self._db.flush()

        logger.info(
            "Created timed commitment",
            commitment_id=str(commitment.id),
            kind=kind.value,
            initiator_id=initiator_id,
            counterparty_id=counterparty_id,
            scope_key=scope,
            reward_points=reward_points,
        )
        return commitment

    async def confirm(
        self,
        commitment_id: UUID,
        agreed_details: Mapping[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> TimedCommitment:
        reference = ensure_utc(now) or utcnow()
        commitment = await self.get(commitment_id)
        async with commit_or_rollback(self._db):
            values: dict[str, Any] = {"confirmed_at": reference}
            if agreed_details is not None:
                values["agreed_details"] = dict(agreed_details)
            await self._transition(commitment, CommitmentStatus.CONFIRMED, values=values)

        logger.info("Confirmed timed commitment", commitment_id=str(commitment_id))
        await self._notify_parties(
            [commitment.initiator_id],
            NotificationKind.COMMITMENT_CONFIRMED,
            commitment,
            agreed_details=commitment.agreed_details,
        )
        return commitment

    async def join(self, share_code: str, counterparty_id: str, *, now: datetime | None = None) -> TimedCommitment:
        """Bind a second party to an open referral through its share code."""

        reference = ensure_utc(now) or utcnow()
        commitment = await self.get_by_share_code(share_code)
        if commitment.kind != CommitmentKind.REFERRAL:
            raise InvalidTransitionError(
                "commitment",
                commitment.status,
                "joined",
                message="Only referral commitments can be joined",
                commitment_id=commitment.id,
            )
        if counterparty_id == commitment.initiator_id:
            raise SelfReferralError(counterparty_id)
        if commitment.counterparty_id == counterparty_id and commitment.status == CommitmentStatus.CONFIRMED:
            return commitment
        if commitment.status not in OPEN_COMMITMENT_STATUSES or commitment.counterparty_id is not None:
            raise InvalidTransitionError(
                "commitment",
                commitment.status,
                "joined",
                message="Referral is no longer open to join",
                commitment_id=commitment.id,
            )

        deadline = ensure_utc(commitment.join_deadline)
        if deadline is not None and reference > deadline:
            raise WindowExpiredError(deadline=deadline, now=reference)
        if await self._rate_limiter.has_prior_completion(
            counterparty_id,
            commitment.scope_key,
            CommitmentKind.REFERRAL,
            role=CommitmentRole.COUNTERPARTY,
        ):
            raise AlreadyCompletedError(counterparty_id, kind=CommitmentKind.REFERRAL, scope_key=commitment.scope_key)

        async with commit_or_rollback(self._db):
            await self._transition(
                commitment,
                CommitmentStatus.CONFIRMED,
                values={
                    "counterparty_id": counterparty_id,
                    "joined_at": reference,
                    "confirmed_at": ensure_utc(commitment.confirmed_at) or reference,
                },
                allow_same_status=True,
                extra_criteria=(TimedCommitment.counterparty_id.is_(None),),
            )

        logger.info(
            "Counterparty joined referral",
            commitment_id=str(commitment.id),
            initiator_id=commitment.initiator_id,
            counterparty_id=counterparty_id,
        )
        await self._notify_parties(
            [commitment.initiator_id],
            NotificationKind.COMMITMENT_JOINED,
            commitment,
            counterparty_id=counterparty_id,
        )
        return commitment

    async def complete(
        self,
        commitment_id: UUID,
        actor_id: str | None = None,
        *,
        now: datetime | None = None,
    ) -> TimedCommitment:
        """Mark real-world completion and start the trust delay.

        Referrals need both parties to mark completion; ``actor_id=None`` completes
        outright. No points move here.
        """

        reference = ensure_utc(now) or utcnow()
        for _attempt in range(_MAX_COMPLETION_ATTEMPTS):
            commitment = await self.get(commitment_id)
            self._require_transition(commitment, CommitmentStatus.COMPLETED)
            if commitment.kind == CommitmentKind.REFERRAL and not commitment.counterparty_id:
                raise InvalidTransitionError(
                    "commitment",
                    commitment.status,
                    CommitmentStatus.COMPLETED,
                    message="Referral has no counterparty yet",
                    commitment_id=commitment.id,
                )
            if actor_id is not None and actor_id not in (commitment.initiator_id, commitment.counterparty_id):
                raise InvalidTransitionError(
                    "commitment",
                    commitment.status,
                    CommitmentStatus.COMPLETED,
                    message=f"{actor_id} is not a party to this commitment",
                    commitment_id=commitment.id,
                )

            values, finished = self._completion_marks(commitment, actor_id, reference)
            if not values:
                return commitment

            matched = await conditional_update(
                self._db,
                TimedCommitment,
                TimedCommitment.id == commitment.id,
                TimedCommitment.status == CommitmentStatus.CONFIRMED,
                TimedCommitment.version == commitment.version,
                TimedCommitment.reward_unlock_at.is_(None),
                values={**values, "version": commitment.version + 1},
            )
            if not matched:
                await self._db.rollback()
                continue

            await self._db.commit()
            await self._db.refresh(commitment)
            if finished:
                logger.info(
                    "Completed timed commitment",
                    commitment_id=str(commitment.id),
                    reward_unlock_at=ensure_utc(commitment.reward_unlock_at).isoformat(),
                )
                await self._notify_parties(
                    commitment.reward_recipients(),
                    NotificationKind.COMMITMENT_COMPLETED,
                    commitment,
                    reward_unlock_at=commitment.reward_unlock_at,
                )
            else:
                logger.info("Recorded partial completion", commitment_id=str(commitment.id), actor_id=actor_id)
            return commitment

        raise ConcurrentUpdateError("commitment", commitment_id, attempts=_MAX_COMPLETION_ATTEMPTS)

    async def cancel(
        self,
        commitment_id: UUID,
        actor_id: str | None = None,
        reason: str | None = None,
        *,
        now: datetime | None = None,
    ) -> TimedCommitment:
        reference = ensure_utc(now) or utcnow()
        commitment = await self.get(commitment_id)
        async with commit_or_rollback(self._db):
            await self._transition(
                commitment,
                CommitmentStatus.CANCELLED,
                values={"cancelled_by": actor_id, "cancel_reason": reason, "cancelled_at": reference},
            )

        logger.info("Cancelled timed commitment", commitment_id=str(commitment_id), actor_id=actor_id, reason=reason)
        if actor_id in (commitment.initiator_id, commitment.counterparty_id):
            recipients = [commitment.other_party(actor_id)]
        else:
            recipients = [commitment.initiator_id, commitment.counterparty_id]
        await self._notify_parties(
            recipients,
            NotificationKind.COMMITMENT_CANCELLED,
            commitment,
            cancelled_by=actor_id,
            reason=reason,
        )
        return commitment

    async def mark_no_show(self, commitment_id: UUID, *, now: datetime | None = None) -> TimedCommitment:
        reference = ensure_utc(now) or utcnow()
        commitment = await self.get(commitment_id)
        async with commit_or_rollback(self._db):
            await self._transition(commitment, CommitmentStatus.NO_SHOW, values={"no_show_at": reference})

        logger.info("Marked commitment as no-show", commitment_id=str(commitment_id))
        await self._notify_parties([commitment.initiator_id], NotificationKind.COMMITMENT_NO_SHOW, commitment)
        return commitment

    async def expire_unjoined_referrals(self, *, now: datetime | None = None, limit: int = 200) -> list[UUID]:
        """Cancel PENDING referrals whose join window closed without a counterparty."""

        reference = ensure_utc(now) or utcnow()
        stmt = (
            select(TimedCommitment)
            .where(
                TimedCommitment.kind == CommitmentKind.REFERRAL,
                TimedCommitment.status == CommitmentStatus.PENDING,
                TimedCommitment.counterparty_id.is_(None),
                TimedCommitment.join_deadline < reference,
            )
            .order_by(TimedCommitment.join_deadline)
            .limit(limit)
        )
        candidates = list((await self._db.execute(stmt)).scalars().all())
        expired: list[UUID] = []
        async with commit_or_rollback(self._db):
            for commitment in candidates:
                matched = await conditional_update(
                    self._db,
                    TimedCommitment,
                    TimedCommitment.id == commitment.id,
                    TimedCommitment.status == CommitmentStatus.PENDING,
                    TimedCommitment.counterparty_id.is_(None),
                    values={
                        "status": CommitmentStatus.CANCELLED,
                        "cancel_reason": UNJOINED_REFERRAL_CANCEL_REASON,
                        "cancelled_at": reference,
                        "version": TimedCommitment.version + 1,
                    },
                )
                if matched:
                    expired.append(commitment.id)

        if expired:
            logger.info("Expired unjoined referrals", count=len(expired))
        return expired

    def _completion_marks(
        self,
        commitment: TimedCommitment,
        actor_id: str | None,
        reference: datetime,
    ) -> tuple[dict[str, Any], bool]:
        values: dict[str, Any] = {}
        initiator_done = commitment.initiator_completed_at is not None
        counterparty_done = commitment.counterparty_completed_at is not None

        if commitment.kind == CommitmentKind.APPOINTMENT or actor_id is None:
            if not initiator_done:
                values["initiator_completed_at"] = reference
            if commitment.counterparty_id and not counterparty_done:
                values["counterparty_completed_at"] = reference
            finished = True
        elif actor_id == commitment.initiator_id:
            if initiator_done:
                return {}, False
            values["initiator_completed_at"] = reference
            finished = counterparty_done
        else:
            if counterparty_done:
                return {}, False
            values["counterparty_completed_at"] = reference
            finished = initiator_done

        if finished:
            values.update(
                status=CommitmentStatus.COMPLETED,
                completed_at=reference,
                reward_unlock_at=reference + self._policy.trust_delay,
            )
        return values, finished

    def _require_transition(self, commitment: TimedCommitment, target: CommitmentStatus) -> None:
        if target not in self._ALLOWED_TRANSITIONS.get(commitment.status, set()):
            raise InvalidTransitionError("commitment", commitment.status, target, commitment_id=commitment.id)

    async def _transition(
        self,
        commitment: TimedCommitment,
        target: CommitmentStatus,
        *,
        values: Mapping[str, Any],
        allow_same_status: bool = False,
        extra_criteria: Iterable[Any] = (),
    ) -> None:
        current = commitment.status
        if not (allow_same_status and current == target):
            self._require_transition(commitment, target)

        matched = await conditional_update(
            self._db,
            TimedCommitment,
            TimedCommitment.id == commitment.id,
            TimedCommitment.status == current,
            TimedCommitment.version == commitment.version,
            *extra_criteria,
            values={**values, "status": target, "version": commitment.version + 1},
        )
        if not matched:
            latest = await self._db.scalar(select(TimedCommitment.status).where(TimedCommitment.id == commitment.id))
            raise InvalidTransitionError("commitment", latest or current, target, commitment_id=commitment.id)
        await self._db.refresh(commitment)

    async def _guard_first_completion(
        self,
        kind: CommitmentKind,
        initiator_id: str,
        counterparty_id: str | None,
        scope_key: str | None,
    ) -> None:
        """Appointments are one-time per customer and scope; referrals are one-time per friend."""

        if kind == CommitmentKind.APPOINTMENT:
            party_id, role = initiator_id, CommitmentRole.INITIATOR
        elif counterparty_id:
            party_id, role = counterparty_id, CommitmentRole.COUNTERPARTY
        else:
            return
        if await self._rate_limiter.has_prior_completion(party_id, scope_key, kind, role=role):
            raise AlreadyCompletedError(party_id, kind=kind, scope_key=scope_key)

    async def _lock_party(self, owner_id: str) -> None:
        """Serialize concurrent creates for one initiator behind their account row."""

        await self._ledger.ensure_account(owner_id, owner_kind=AccountOwnerKind.CUSTOMER)
        await self._db.execute(select(PointsAccount.id).where(PointsAccount.owner_id == owner_id).with_for_update())

    async def _open_referral(self, initiator_id: str, scope_key: str | None, reference: datetime) -> TimedCommitment | None:
        stmt = (
            select(TimedCommitment)
            .where(
                TimedCommitment.kind == CommitmentKind.REFERRAL,
                TimedCommitment.initiator_id == initiator_id,
                TimedCommitment.status == CommitmentStatus.PENDING,
                TimedCommitment.counterparty_id.is_(None),
                TimedCommitment.join_deadline > reference,
            )
            .order_by(TimedCommitment.created_at.desc())
        )
        if scope_key is None:
            stmt = stmt.where(TimedCommitment.scope_key.is_(None))
        else:
            stmt = stmt.where(TimedCommitment.scope_key == scope_key)
        return (await self._db.execute(stmt.limit(1))).scalars().first()

    async def _generate_unique_share_code(self) -> str:
        while True:
            code = uuid4().hex[:8].upper()
            exists = await self._db.scalar(select(TimedCommitment.id).where(TimedCommitment.share_code == code))
            if exists is None:
                return code

    async def _notify_parties(
        self,
        recipients: Iterable[str | None],
        kind: NotificationKind,
        commitment: TimedCommitment,
        **extra: Any,
    ) -> None:
        payload = {
            "commitment_id": str(commitment.id),
            "kind": commitment.kind.value,
            "status": commitment.status.value,
            **{key: ensure_utc(value).isoformat() if isinstance(value, datetime) else value for key, value in extra.items()},
        }
        await self._notifications.notify_many([recipient for recipient in recipients if recipient], kind, payload)


__all__ = ["CommitmentPolicy", "CommitmentWorkflow", "UNJOINED_REFERRAL_CANCEL_REASON"]
