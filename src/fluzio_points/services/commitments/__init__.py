"""Timed commitments (appointments and referrals) and their abuse guards."""

from .rate_limiter import CommitmentRateLimiter, CommitmentRole, RateWindow
from .workflow import UNJOINED_REFERRAL_CANCEL_REASON, CommitmentPolicy, CommitmentWorkflow

__all__ = [
    "CommitmentPolicy",
    "CommitmentRateLimiter",
    "CommitmentRole",
    "CommitmentWorkflow",
    "RateWindow",
    "UNJOINED_REFERRAL_CANCEL_REASON",
]
