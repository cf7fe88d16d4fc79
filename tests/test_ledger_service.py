import datetime as dt
from decimal import Decimal

import pytest
from sqlalchemy import select

from fluzio_points.models.ledger import AccountOwnerKind, LedgerTransaction, LedgerTransactionType
from fluzio_points.services.errors import (
    AccountNotFoundError,
    ConversionLimitExceededError,
    InsufficientBalanceError,
    InvalidAmountError,
)
from fluzio_points.services.identity import StaticIdentityDirectory
from fluzio_points.services.ledger import LedgerService, decode_time_uuid_cursor, encode_time_uuid_cursor


@pytest.mark.asyncio
async def test_credit_and_debit_record_balance_snapshots(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.ensure_account("biz-1", owner_kind=AccountOwnerKind.BUSINESS)

        credit = await ledger.credit("biz-1", 1000, source="top_up")
        debit = await ledger.debit("biz-1", 250, source="mission_funding_m1")
        await session.commit()

        assert credit.balance_before == 0
        assert credit.new_balance == 1000
        assert debit.balance_before == 1000
        assert debit.new_balance == 750
        assert debit.transaction_type == LedgerTransactionType.SPEND
        assert await ledger.get_balance("biz-1") == 750

        entries = (await session.execute(select(LedgerTransaction))).scalars().all()
        assert sorted(entry.amount for entry in entries) == [250, 1000]


@pytest.mark.asyncio
async def test_debit_beyond_balance_is_rejected_without_side_effects(session_factory, seed_balance) -> None:
    await seed_balance("biz-1", 100)

    async with session_factory() as session:
        ledger = LedgerService(session)
        with pytest.raises(InsufficientBalanceError) as excinfo:
            await ledger.debit("biz-1", 101, source="mission_funding_m1")
        await session.rollback()

        assert excinfo.value.shortfall == 1
        assert excinfo.value.as_dict()["error"] == "insufficient_balance"
        assert await ledger.get_balance("biz-1") == 100
        entries = (await session.execute(select(LedgerTransaction))).scalars().all()
        assert len(entries) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, True, 2.5])
async def test_non_positive_or_non_integer_amounts_are_invalid(session_factory, amount) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.ensure_account("cust-1")
        with pytest.raises(InvalidAmountError):
            await ledger.credit("cust-1", amount, source="bonus")


@pytest.mark.asyncio
async def test_idempotency_key_replays_original_transaction(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.ensure_account("cust-1")
        first = await ledger.credit("cust-1", 40, source="bonus", idempotency_key="bonus:cust-1:1")
        await session.commit()

        replay = await ledger.credit("cust-1", 40, source="bonus", idempotency_key="bonus:cust-1:1")
        await session.commit()

        assert replay.replayed is True
        assert replay.transaction_id == first.transaction_id
        assert await ledger.get_balance("cust-1") == 40


@pytest.mark.asyncio
async def test_unknown_owner_has_no_account(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session, identity=StaticIdentityDirectory(["known"]))

        with pytest.raises(AccountNotFoundError):
            await ledger.ensure_account("ghost")
        with pytest.raises(AccountNotFoundError):
            await ledger.credit("ghost", 10, source="bonus")

        account = await ledger.ensure_account("known")
        assert account.balance == 0


@pytest.mark.asyncio
async def test_ensure_account_is_idempotent(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        first = await ledger.ensure_account("cust-1", owner_kind=AccountOwnerKind.CUSTOMER)
        second = await ledger.ensure_account("cust-1")
        await session.commit()

        assert first.id == second.id
        assert second.owner_kind == AccountOwnerKind.CUSTOMER


@pytest.mark.asyncio
async def test_reverse_clamps_to_balance_and_reports_shortfall(session_factory, seed_balance) -> None:
    await seed_balance("cust-1", 30, owner_kind=AccountOwnerKind.CUSTOMER)

    async with session_factory() as session:
        ledger = LedgerService(session)
        result = await ledger.reverse("cust-1", 50, source="mission_rejection_m1", idempotency_key="rev:1")
        await session.commit()

        assert result.debited == 30
        assert result.shortfall == 20
        assert result.status.value == "partial"
        assert await ledger.get_balance("cust-1") == 0

        entry = await ledger.find_by_idempotency_key("rev:1")
        assert entry is not None
        assert entry.metadata_json["shortfall"] == 20

        replay = await ledger.reverse("cust-1", 50, source="mission_rejection_m1", idempotency_key="rev:1")
        assert replay.receipt is not None and replay.receipt.replayed
        assert replay.shortfall == 20


@pytest.mark.asyncio
async def test_reverse_against_empty_balance_writes_nothing(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.ensure_account("cust-1")
        result = await ledger.reverse("cust-1", 50, source="mission_rejection_m1")

        assert result.debited == 0
        assert result.receipt is None
        assert result.shortfall == 50
        entries = (await session.execute(select(LedgerTransaction))).scalars().all()
        assert entries == []


@pytest.mark.asyncio
async def test_convert_applies_rate_minimum_and_monthly_cap(session_factory, seed_balance) -> None:
    await seed_balance("cust-1", 20_000, owner_kind=AccountOwnerKind.CUSTOMER)
    now = dt.datetime(2026, 3, 15, tzinfo=dt.timezone.utc)

    async with session_factory() as session:
        ledger = LedgerService(session)

        with pytest.raises(ConversionLimitExceededError):
            await ledger.convert("cust-1", 499, now=now)

        result = await ledger.convert("cust-1", 1_250, now=now)
        await session.commit()
        assert result.credited_value == Decimal("12.50")
        assert result.receipt.transaction_type == LedgerTransactionType.CONVERT
        assert await ledger.get_balance("cust-1") == 18_750

        await ledger.convert("cust-1", 8_750, now=now)
        await session.commit()
        with pytest.raises(ConversionLimitExceededError) as excinfo:
            await ledger.convert("cust-1", 500, now=now)
        assert excinfo.value.context["used"] == 10_000
        await session.rollback()

        next_month = await ledger.convert("cust-1", 500, now=dt.datetime(2026, 4, 1, tzinfo=dt.timezone.utc))
        assert next_month.credited_value == Decimal("5.00")


@pytest.mark.asyncio
async def test_convert_rounds_value_down_to_cents(session_factory, seed_balance) -> None:
    await seed_balance("cust-1", 1_000, owner_kind=AccountOwnerKind.CUSTOMER)

    async with session_factory() as session:
        result = await LedgerService(session).convert("cust-1", 999, rate=7)

        assert result.credited_value == Decimal("142.71")


@pytest.mark.asyncio
async def test_list_transactions_paginates_newest_first(session_factory) -> None:
    base = dt.datetime(2026, 1, 1, tzinfo=dt.timezone.utc)
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.ensure_account("cust-1")
        for offset in range(5):
            await ledger.credit("cust-1", 10 + offset, source="bonus", occurred_at=base + dt.timedelta(hours=offset))
        await session.commit()

        page, cursor = await ledger.list_transactions("cust-1", limit=3)
        assert [entry.amount for entry in page] == [14, 13, 12]
        assert cursor is not None

        decoded = decode_time_uuid_cursor(encode_time_uuid_cursor(*cursor))
        rest, next_cursor = await ledger.list_transactions("cust-1", limit=3, cursor=decoded)
        assert [entry.amount for entry in rest] == [11, 10]
        assert next_cursor is None
