"""Error taxonomy for ledger, mission and commitment operations."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID


def _normalize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return int(value.total_seconds())
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_normalize(item) for item in value]
    return value


class PointsError(RuntimeError):
    """Base exception for points settlement failures.

    Every subclass carries a stable ``code`` and structured ``context`` so the
    calling layer can render an actionable message.
    """

    code = "points_error"
    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = {key: _normalize(value) for key, value in context.items() if value is not None}

    def as_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self), "context": dict(self.context)}


class PointsValidationError(PointsError):
    """Rejected input; the caller must change the request."""


class PointsStateConflictError(PointsError):
    """Stale client state or a lost race against a concurrent writer."""

    status_code = 409


class InvalidAmountError(PointsValidationError):
    code = "invalid_amount"
    status_code = 422

    def __init__(self, amount: Any, *, field: str = "amount", message: str | None = None) -> None:
        super().__init__(message or f"{field} must be a positive integer, got {amount!r}", field=field, amount=amount)
        self.amount = amount


class InvalidScheduleError(PointsValidationError):
    code = "invalid_schedule"
    status_code = 422

    def __init__(self, scheduled_for: datetime, *, now: datetime) -> None:
        super().__init__("Proposed date must be in the future", scheduled_for=scheduled_for, now=now)
        self.scheduled_for = scheduled_for


class RateLimitedError(PointsValidationError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, *, count: int, max_count: int, window: timedelta, retry_after: datetime | None) -> None:
        super().__init__(
            f"Limit of {max_count} per {window.days} days reached",
            count=count,
            max_count=max_count,
            window_seconds=window,
            retry_after=retry_after,
        )
        self.count = count
        self.max_count = max_count
        self.retry_after = retry_after


class AlreadyCompletedError(PointsValidationError):
    code = "already_completed"
    status_code = 409

    def __init__(self, party_id: str, *, kind: Any, scope_key: str | None) -> None:
        super().__init__(
            f"{party_id} has already completed this {getattr(kind, 'value', kind)}",
            party_id=party_id,
            kind=kind,
            scope_key=scope_key,
        )


class SelfReferralError(PointsValidationError):
    code = "self_referral"

    def __init__(self, party_id: str) -> None:
        super().__init__("A referral cannot be joined by its initiator", party_id=party_id)


class MissingCounterpartyError(PointsValidationError):
    code = "missing_counterparty"
    status_code = 422

    def __init__(self, kind: Any) -> None:
        super().__init__(f"{getattr(kind, 'value', kind)} commitments require a counterparty", kind=kind)


class ConversionLimitExceededError(PointsValidationError):
    code = "conversion_limit_exceeded"
    status_code = 422

    def __init__(self, message: str, *, requested: int, limit: int, used: int | None = None) -> None:
        super().__init__(message, requested=requested, limit=limit, used=used)


class AccountNotFoundError(PointsError):
    code = "account_not_found"
    status_code = 404

    def __init__(self, owner_id: str) -> None:
        super().__init__(f"No points account for owner {owner_id}", owner_id=owner_id)
        self.owner_id = owner_id


class RecordNotFoundError(PointsError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, identifier: Any) -> None:
        super().__init__(f"{entity} {identifier} not found", entity=entity, identifier=identifier)


class InsufficientBalanceError(PointsError):
    code = "insufficient_balance"
    status_code = 409

    def __init__(self, owner_id: str, *, balance: int, requested: int) -> None:
        super().__init__(
            f"Balance {balance} does not cover {requested} points",
            owner_id=owner_id,
            balance=balance,
            requested=requested,
            shortfall=requested - balance,
        )
        self.owner_id = owner_id
        self.balance = balance
        self.requested = requested
        self.shortfall = requested - balance


class InvalidTransitionError(PointsStateConflictError):
    code = "invalid_transition"

    def __init__(self, entity: str, current: Any, requested: Any, *, message: str | None = None, **context: Any) -> None:
        current_value = getattr(current, "value", current)
        requested_value = getattr(requested, "value", requested)
        super().__init__(
            message or f"Cannot transition {entity} from {current_value} to {requested_value}",
            entity=entity,
            current=current,
            requested=requested,
            **context,
        )
        self.current = current
        self.requested = requested


class PoolNotActiveError(PointsStateConflictError):
    code = "pool_not_active"

    def __init__(self, mission_id: str, status: Any) -> None:
        super().__init__(
            f"Funding pool for mission {mission_id} is {getattr(status, 'value', status)}",
            mission_id=mission_id,
            status=status,
        )
        self.mission_id = mission_id
        self.status = status


class SlotUnavailableError(PointsStateConflictError):
    code = "slot_unavailable"

    def __init__(self, mission_id: str, *, reason: str) -> None:
        super().__init__(f"No slot available on mission {mission_id}: {reason}", mission_id=mission_id, reason=reason)


class DuplicateParticipationError(PointsStateConflictError):
    code = "duplicate_participation"

    def __init__(self, mission_id: str, user_id: str, *, existing_id: UUID | None = None) -> None:
        super().__init__(
            f"User {user_id} already participates in mission {mission_id}",
            mission_id=mission_id,
            user_id=user_id,
            existing_id=existing_id,
        )


class WindowExpiredError(PointsStateConflictError):
    code = "window_expired"

    def __init__(self, *, deadline: datetime, now: datetime) -> None:
        super().__init__(
            "Join window has expired",
            deadline=deadline,
            seconds_late=int((now - deadline).total_seconds()),
        )
        self.deadline = deadline


class ConcurrentUpdateError(PointsStateConflictError):
    code = "concurrent_update"

    def __init__(self, entity: str, identifier: Any, *, attempts: int) -> None:
        super().__init__(
            f"Gave up updating {entity} {identifier} after {attempts} conflicting attempts",
            entity=entity,
            identifier=identifier,
            attempts=attempts,
        )


__all__ = [
    "AccountNotFoundError",
    "AlreadyCompletedError",
    "ConcurrentUpdateError",
    "ConversionLimitExceededError",
    "DuplicateParticipationError",
    "InsufficientBalanceError",
    "InvalidAmountError",
    "InvalidScheduleError",
    "InvalidTransitionError",
    "MissingCounterpartyError",
    "PointsError",
    "PointsStateConflictError",
    "PointsValidationError",
    "PoolNotActiveError",
    "RateLimitedError",
    "RecordNotFoundError",
    "SelfReferralError",
    "SlotUnavailableError",
    "WindowExpiredError",
]
