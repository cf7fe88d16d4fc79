"""Sliding-window rate limiting and first-time completion checks for commitments."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fluzio_points.core.settings import settings
from fluzio_points.core.timeutils import ensure_utc, utcnow
from fluzio_points.models.commitment import (
    FULFILLED_COMMITMENT_STATUSES,
    CommitmentKind,
    CommitmentStatus,
    TimedCommitment,
)
from fluzio_points.services.errors import RateLimitedError


class CommitmentRole(str, Enum):
    INITIATOR = "initiator"
    COUNTERPARTY = "counterparty"


@dataclass(slots=True)
class RateWindow:
    """Usage of a rolling window at the time it was checked."""

    initiator_id: str
    kind: CommitmentKind
    scope_key: str | None
    window: timedelta
    max_count: int
    count: int
    window_start: datetime
    oldest_created_at: datetime | None

    @property
    def exceeded(self) -> bool:
        return self.count >= self.max_count

    @property
    def remaining(self) -> int:
        return max(self.max_count - self.count, 0)

    @property
    def retry_after(self) -> datetime | None:
        if not self.exceeded or self.oldest_created_at is None:
            return None
        return self.oldest_created_at + self.window


class CommitmentRateLimiter:
    """Count recent commitments per initiator and detect repeat completions.

    Cancelled commitments never count toward the window; every other status
    does, including no-shows.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        window: timedelta | None = None,
        max_count: int | None = None,
    ) -> None:
        self._db = db_session
        self._window = window or timedelta(days=settings.commitment_rate_limit_window_days)
        self._max_count = max_count or settings.commitment_rate_limit_max_count

    async def check_window(
        self,
        initiator_id: str,
        kind: CommitmentKind,
        *,
        scope_key: str | None = None,
        window: timedelta | None = None,
        max_count: int | None = None,
        now: datetime | None = None,
    ) -> RateWindow:
        reference = ensure_utc(now) or utcnow()
        effective_window = window or self._window
        effective_max = max_count or self._max_count
        window_start = reference - effective_window

        stmt = select(func.count(TimedCommitment.id), func.min(TimedCommitment.created_at)).where(
            TimedCommitment.initiator_id == initiator_id,
            TimedCommitment.kind == kind,
            TimedCommitment.status != CommitmentStatus.CANCELLED,
            TimedCommitment.created_at >= window_start,
            TimedCommitment.created_at <= reference,
        )
        if scope_key is not None:
            stmt = stmt.where(TimedCommitment.scope_key == scope_key)

        count, oldest = (await self._db.execute(stmt)).one()
        return RateWindow(
            initiator_id=initiator_id,
            kind=kind,
            scope_key=scope_key,
            window=effective_window,
            max_count=effective_max,
            count=int(count or 0),
            window_start=window_start,
            oldest_created_at=ensure_utc(oldest),
        )

    async def enforce_window(
        self,
        initiator_id: str,
        kind: CommitmentKind,
        *,
        scope_key: str | None = None,
        window: timedelta | None = None,
        max_count: int | None = None,
        now: datetime | None = None,
    ) -> RateWindow:
        """Raise ``RateLimitedError`` when one more commitment would exceed the window."""

        usage = await self.check_window(
            initiator_id,
            kind,
            scope_key=scope_key,
            window=window,
            max_count=max_count,
            now=now,
        )
        if usage.exceeded:
            raise RateLimitedError(
                count=usage.count,
                max_count=usage.max_count,
                window=usage.window,
                retry_after=usage.retry_after,
            )
        return usage

    async def has_prior_completion(
        self,
        party_id: str,
        scope_key: str | None,
        kind: CommitmentKind,
        *,
        role: CommitmentRole = CommitmentRole.INITIATOR,
        exclude_id: UUID | None = None,
    ) -> bool:
        """Whether ``party_id`` already completed a commitment of ``kind`` in this scope."""

        party_column = TimedCommitment.initiator_id if role == CommitmentRole.INITIATOR else TimedCommitment.counterparty_id
        stmt = select(TimedCommitment.id).where(
            party_column == party_id,
            TimedCommitment.kind == kind,
            TimedCommitment.status.in_(list(FULFILLED_COMMITMENT_STATUSES)),
        )
        if scope_key is None:
            stmt = stmt.where(TimedCommitment.scope_key.is_(None))
        else:
            stmt = stmt.where(TimedCommitment.scope_key == scope_key)
        if exclude_id is not None:
            stmt = stmt.where(TimedCommitment.id != exclude_id)

        return (await self._db.execute(stmt.limit(1))).first() is not None


__all__ = ["CommitmentRateLimiter", "CommitmentRole", "RateWindow"]
