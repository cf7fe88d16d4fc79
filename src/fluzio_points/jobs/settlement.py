"""Jobs that release matured commitment rewards and expire stale referrals."""

from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from fluzio_points.db.session import SessionFactory, open_session
from fluzio_points.services.commitments import CommitmentWorkflow
from fluzio_points.services.settlement import SettlementScheduler


async def run_settlement_sweep(*, session_factory: SessionFactory, batch_size: int | None = None) -> Dict[str, Any]:
    """Settle every commitment whose trust delay has elapsed."""

    scheduler = SettlementScheduler(session_factory=session_factory, batch_size=batch_size)
    result = await scheduler.sweep()
    return result.as_dict()


async def run_referral_expiry(*, session_factory: SessionFactory, limit: int = 200) -> Dict[str, Any]:
    session = await open_session(session_factory)
    async with session:
        expired = await CommitmentWorkflow(session).expire_unjoined_referrals(limit=limit)

    summary = {"expired": len(expired)}
    logger.bind(summary=summary).info("Referral expiry sweep completed")
    return summary
