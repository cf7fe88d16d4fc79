from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from fluzio_points.models.commitment import CommitmentKind, CommitmentStatus
from fluzio_points.models.ledger import LedgerTransaction
from fluzio_points.observability.settlement import get_settlement_store
from fluzio_points.services.commitments import CommitmentWorkflow
from fluzio_points.services.errors import InvalidTransitionError, RecordNotFoundError
from fluzio_points.services.identity import StaticIdentityDirectory
from fluzio_points.services.notifications import NotificationKind
from fluzio_points.services.settlement import SettlementScheduler

BASE_TIME = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)
UNLOCKED = BASE_TIME + timedelta(hours=80)


async def _completed_referral(session_factory, initiator: str, counterparty: str, *, reward: int = 100):
    async with session_factory() as session:
        workflow = CommitmentWorkflow(session)
        referral = await workflow.create(CommitmentKind.REFERRAL, initiator, reward, now=BASE_TIME)
        await workflow.join(referral.share_code, counterparty, now=BASE_TIME + timedelta(minutes=5))
        await workflow.complete(referral.id, now=BASE_TIME + timedelta(hours=1))
        return referral.id


async def _completed_appointment(session_factory, initiator: str, business: str, *, reward: int = 60):
    async with session_factory() as session:
        workflow = CommitmentWorkflow(session)
        appointment = await workflow.create(
            CommitmentKind.APPOINTMENT, initiator, reward, counterparty_id=business, now=BASE_TIME
        )
        await workflow.confirm(appointment.id, now=BASE_TIME)
        await workflow.complete(appointment.id, now=BASE_TIME + timedelta(hours=2))
        return appointment.id


async def _reward_count(session_factory, commitment_id) -> int:
    async with session_factory() as session:
        return await session.scalar(
            select(func.count(LedgerTransaction.id)).where(
                LedgerTransaction.idempotency_key.like(f"commitment_reward:{commitment_id}:%")
            )
        )


@pytest.mark.asyncio
async def test_referral_settlement_credits_both_parties_once(session_factory, balance_of, notifications) -> None:
    referral_id = await _completed_referral(session_factory, "cust-a", "cust-b")
    scheduler = SettlementScheduler(session_factory=session_factory, notifications=notifications)

    outcome = await scheduler.settle(referral_id, now=UNLOCKED)

    assert outcome.settled is True
    assert outcome.credited_points == 200
    assert [receipt.owner_id for receipt in outcome.credits] == ["cust-a", "cust-b"]
    assert await balance_of("cust-a") == 100
    assert await balance_of("cust-b") == 100

    replay = await scheduler.settle(referral_id, now=UNLOCKED + timedelta(hours=1))
    assert replay.settled is False
    assert replay.already_settled is True
    assert await balance_of("cust-a") == 100
    assert await _reward_count(session_factory, referral_id) == 2

    async with session_factory() as session:
        commitment = await CommitmentWorkflow(session).get(referral_id)
        assert commitment.status == CommitmentStatus.SETTLED
        assert commitment.settled is True
        assert commitment.settled_at is not None

    unlocked = [item for item in notifications.backend.sent if item.kind == NotificationKind.REWARD_UNLOCKED.value]
    assert sorted(item.recipient_id for item in unlocked) == ["cust-a", "cust-b"]
    totals = get_settlement_store().snapshot().totals
    assert totals["settled"] == 1
    assert totals["credits"] == 2
    assert totals["noop"] == 1


@pytest.mark.asyncio
async def test_settle_before_unlock_is_rejected(session_factory, balance_of) -> None:
    appointment_id = await _completed_appointment(session_factory, "cust-1", "biz-1")
    scheduler = SettlementScheduler(session_factory=session_factory)

    with pytest.raises(InvalidTransitionError) as excinfo:
        await scheduler.settle(appointment_id, now=BASE_TIME + timedelta(hours=10))

    assert "reward_unlock_at" in excinfo.value.context
    assert await balance_of("cust-1") == 0

    with pytest.raises(RecordNotFoundError):
        await scheduler.settle(uuid4(), now=UNLOCKED)


@pytest.mark.asyncio
async def test_settle_requires_completed_commitment(session_factory) -> None:
    async with session_factory() as session:
        workflow = CommitmentWorkflow(session)
        appointment = await workflow.create(
            CommitmentKind.APPOINTMENT, "cust-1", 60, counterparty_id="biz-1", now=BASE_TIME
        )
        await workflow.confirm(appointment.id, now=BASE_TIME)

    with pytest.raises(InvalidTransitionError):
        await SettlementScheduler(session_factory=session_factory).settle(appointment.id, now=UNLOCKED)


@pytest.mark.asyncio
async def test_racing_settlements_credit_once(session_factory, balance_of, monkeypatch) -> None:
    referral_id = await _completed_referral(session_factory, "cust-a", "cust-b")
    sweeper = SettlementScheduler(session_factory=session_factory)
    manual = SettlementScheduler(session_factory=session_factory)

    original_load = SettlementScheduler._load_commitment
    raced = False

    async def load_then_race(self, session, commitment_id):
        nonlocal raced
        commitment = await original_load(self, session, commitment_id)
        if not raced:
            raced = True
            winner = await manual.settle(commitment_id, now=UNLOCKED)
            assert winner.settled is True
        return commitment

    monkeypatch.setattr(SettlementScheduler, "_load_commitment", load_then_race)

    outcome = await sweeper.settle(referral_id, now=UNLOCKED)

    assert outcome.settled is False
    assert outcome.already_settled is True
    assert await balance_of("cust-a") == 100
    assert await balance_of("cust-b") == 100
    assert await _reward_count(session_factory, referral_id) == 2


@pytest.mark.asyncio
async def test_sweep_isolates_failures(session_factory, balance_of, notifications) -> None:
    healthy_referral = await _completed_referral(session_factory, "cust-a", "cust-b")
    broken_referral = await _completed_referral(session_factory, "cust-c", "ghost")
    appointment = await _completed_appointment(session_factory, "cust-d", "biz-1")

    identity = StaticIdentityDirectory(["cust-a", "cust-b", "cust-c", "cust-d"])
    scheduler = SettlementScheduler(session_factory=session_factory, notifications=notifications, identity=identity)

    result = await scheduler.sweep(now=UNLOCKED)

    assert result.scanned == 3
    assert result.settled_count == 2
    assert [failure.commitment_id for failure in result.errors] == [broken_referral]
    assert result.errors[0].code == "account_not_found"
    assert result.as_dict()["errors"][0]["commitmentId"] == str(broken_referral)

    assert await balance_of("cust-a") == 100
    assert await balance_of("cust-b") == 100
    assert await balance_of("cust-d") == 60
    assert await balance_of("cust-c") == 0
    assert await _reward_count(session_factory, broken_referral) == 0

    async with session_factory() as session:
        workflow = CommitmentWorkflow(session)
        assert (await workflow.get(broken_referral)).status == CommitmentStatus.COMPLETED
        assert (await workflow.get(healthy_referral)).status == CommitmentStatus.SETTLED
        assert (await workflow.get(appointment)).status == CommitmentStatus.SETTLED

    snapshot = get_settlement_store().snapshot()
    assert snapshot.errors_by_code == {"account_not_found": 1}
    assert snapshot.last_sweep == {"scanned": 3, "settled": 2, "noop": 0, "errors": 1}

    second = await scheduler.sweep(now=UNLOCKED)
    assert second.scanned == 1
    assert second.settled_count == 0
    assert len(second.errors) == 1


@pytest.mark.asyncio
async def test_sweep_skips_commitments_still_in_trust_delay(session_factory) -> None:
    await _completed_appointment(session_factory, "cust-1", "biz-1")

    result = await SettlementScheduler(session_factory=session_factory).sweep(now=BASE_TIME + timedelta(hours=24))

    assert result.scanned == 0
    assert result.as_dict() == {"scanned": 0, "settled": 0, "noop": 0, "errors": []}


@pytest.mark.asyncio
async def test_sweep_respects_batch_size(session_factory) -> None:
    await _completed_appointment(session_factory, "cust-1", "biz-1")
    await _completed_appointment(session_factory, "cust-2", "biz-1")
    await _completed_appointment(session_factory, "cust-3", "biz-1")

    scheduler = SettlementScheduler(session_factory=session_factory, batch_size=2)
    first = await scheduler.sweep(now=UNLOCKED)
    second = await scheduler.sweep(now=UNLOCKED)

    assert first.settled_count == 2
    assert second.settled_count == 1
