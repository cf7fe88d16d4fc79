"""Scheduled jobs dispatched by the job scheduler."""

from .settlement import run_referral_expiry, run_settlement_sweep  # noqa: F401
