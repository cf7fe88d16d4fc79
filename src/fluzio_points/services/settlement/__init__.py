"""Delayed reward settlement for completed commitments."""

from .scheduler import (
    SettlementFailure,
    SettlementOutcome,
    SettlementScheduler,
    SweepResult,
    reward_idempotency_key,
    reward_source,
)

__all__ = [
    "SettlementFailure",
    "SettlementOutcome",
    "SettlementScheduler",
    "SweepResult",
    "reward_idempotency_key",
    "reward_source",
]
