"""Mission funding pools and the participation state machine."""

from .funding import CancellationResult, MissionFundingManager, cancellation_source, funding_source
from .participation import (
    ApprovalResult,
    ParticipationService,
    RejectionOutcome,
    rejection_source,
    reward_source,
)

__all__ = [
    "ApprovalResult",
    "CancellationResult",
    "MissionFundingManager",
    "ParticipationService",
    "RejectionOutcome",
    "cancellation_source",
    "funding_source",
    "rejection_source",
    "reward_source",
]
