from datetime import timedelta

import pytest

from fluzio_points.core.timeutils import utcnow
from fluzio_points.jobs import run_referral_expiry, run_settlement_sweep
from fluzio_points.models.commitment import CommitmentKind, CommitmentStatus
from fluzio_points.services.commitments import CommitmentWorkflow


@pytest.mark.asyncio
async def test_run_settlement_sweep_returns_summary(session_factory, balance_of) -> None:
    started = utcnow() - timedelta(days=5)
    async with session_factory() as session:
        workflow = CommitmentWorkflow(session)
        appointment = await workflow.create(
            CommitmentKind.APPOINTMENT, "cust-1", 40, counterparty_id="biz-1", now=started
        )
        await workflow.confirm(appointment.id, now=started)
        await workflow.complete(appointment.id, now=started + timedelta(hours=1))

    summary = await run_settlement_sweep(session_factory=session_factory, batch_size=10)

    assert summary == {"scanned": 1, "settled": 1, "noop": 0, "errors": []}
    assert await balance_of("cust-1") == 40

    assert (await run_settlement_sweep(session_factory=session_factory))["scanned"] == 0


@pytest.mark.asyncio
async def test_run_referral_expiry_cancels_stale_sessions(session_factory) -> None:
    async with session_factory() as session:
        workflow = CommitmentWorkflow(session)
        stale = await workflow.create(CommitmentKind.REFERRAL, "cust-a", 100, now=utcnow() - timedelta(hours=2))
        live = await workflow.create(CommitmentKind.REFERRAL, "cust-b", 100)

    summary = await run_referral_expiry(session_factory=session_factory, limit=50)

    assert summary == {"expired": 1}
    async with session_factory() as session:
        workflow = CommitmentWorkflow(session)
        assert (await workflow.get(stale.id)).status == CommitmentStatus.CANCELLED
        assert (await workflow.get(live.id)).status == CommitmentStatus.PENDING
