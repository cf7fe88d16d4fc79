"""Ledger service: the only writer of point balances."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Any, Mapping, NamedTuple, Sequence, Tuple, cast
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, insert, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from fluzio_points.core.settings import settings
from fluzio_points.core.timeutils import ensure_utc, start_of_month, utcnow
from fluzio_points.db.session import conditional_update
from fluzio_points.models.ledger import (
    AccountOwnerKind,
    LedgerTransaction,
    LedgerTransactionType,
    PointsAccount,
    ReversalStatus,
)
from fluzio_points.services.errors import (
    AccountNotFoundError,
    ConcurrentUpdateError,
    ConversionLimitExceededError,
    InsufficientBalanceError,
    InvalidAmountError,
)
from fluzio_points.services.identity import IdentityDirectory, OpenIdentityDirectory

CREDIT_TYPES = frozenset({LedgerTransactionType.EARN, LedgerTransactionType.REFUND})
CONVERSION_QUANTUM = Decimal("0.01")
CONVERSION_SOURCE = "points_conversion"


@dataclass(slots=True)
class LedgerReceipt:
    """Result of a posted (or replayed) ledger transaction."""

    owner_id: str
    transaction_id: UUID
    transaction_type: LedgerTransactionType
    amount: int
    balance_before: int
    balance_after: int
    replayed: bool = False

    @property
    def new_balance(self) -> int:
        return self.balance_after

    @classmethod
    def from_transaction(cls, entry: LedgerTransaction, *, replayed: bool = False) -> "LedgerReceipt":
        return cls(
            owner_id=entry.owner_id,
            transaction_id=entry.id,
            transaction_type=entry.transaction_type,
            amount=entry.amount,
            balance_before=entry.balance_before,
            balance_after=entry.balance_after,
            replayed=replayed,
        )


@dataclass(slots=True)
class ReversalResult:
    """Outcome of clawing back points that may already have been spent."""

    owner_id: str
    requested: int
    debited: int
    receipt: LedgerReceipt | None = None

    @property
    def shortfall(self) -> int:
        return self.requested - self.debited

    @property
    def status(self) -> ReversalStatus:
        if self.requested == 0:
            return ReversalStatus.NOT_REQUIRED
        return ReversalStatus.FULL if self.shortfall == 0 else ReversalStatus.PARTIAL


@dataclass(slots=True)
class ConversionResult:
    """Points converted into a value the caller applies elsewhere."""

    points: int
    points_per_unit: Decimal
    credited_value: Decimal
    receipt: LedgerReceipt


class _BalanceSnapshot(NamedTuple):
    account_id: UUID
    balance: int
    version: int


class LedgerService:
    """Atomic, auditable balance mutations.

    Every mutation is a compare-and-set on ``PointsAccount.version`` followed by
    an appended ``LedgerTransaction`` in the caller's database transaction. The
    service flushes but never commits; the caller owns the unit of work.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        identity: IdentityDirectory | None = None,
        max_cas_attempts: int | None = None,
    ) -> None:
        self._db = db_session
        self._identity = identity or OpenIdentityDirectory()
        self._max_cas_attempts = max(max_cas_attempts or settings.ledger_max_cas_attempts, 1)

    async def get_account(self, owner_id: str) -> PointsAccount | None:
        stmt = select(PointsAccount).where(PointsAccount.owner_id == owner_id)
        result = await self._db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def ensure_account(self, owner_id: str, *, owner_kind: AccountOwnerKind | None = None) -> PointsAccount:
        """Fetch or lazily create the account for ``owner_id``."""

        account = await self.get_account(owner_id)
        if account:
            if owner_kind and account.owner_kind is None:
                account.owner_kind = owner_kind
                await self._db.flush()
            return account

        if not await self._identity.exists(owner_id):
            raise AccountNotFoundError(owner_id)

        await self._db.execute(self._insert_account_stmt(owner_id, owner_kind))
        account = await self.get_account(owner_id)
        if account is None:  # pragma: no cover - insert just ran in this transaction
            raise AccountNotFoundError(owner_id)
        logger.info("Ensured points account", owner_id=owner_id, account_id=str(account.id))
        return account

    async def get_balance(self, owner_id: str) -> int:
        return (await self._read_balance(owner_id)).balance

    async def credit(
        self,
        owner_id: str,
        amount: int,
        *,
        source: str,
        metadata: Mapping[str, Any] | None = None,
        transaction_type: LedgerTransactionType = LedgerTransactionType.EARN,
        idempotency_key: str | None = None,
        occurred_at: datetime | None = None,
    ) -> LedgerReceipt:
        """Add ``amount`` points as an EARN or REFUND."""

        if transaction_type not in CREDIT_TYPES:
            raise ValueError(f"{transaction_type.value} is not a credit transaction type")
        receipt = await self._post(
            owner_id,
            amount,
            transaction_type=transaction_type,
            source=source,
            metadata=metadata,
            idempotency_key=idempotency_key,
            occurred_at=occurred_at,
        )
        return cast(LedgerReceipt, receipt)

    async def debit(
        self,
        owner_id: str,
        amount: int,
        *,
        source: str,
        metadata: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
        occurred_at: datetime | None = None,
    ) -> LedgerReceipt:
        """Remove ``amount`` points as a SPEND; never drives the balance negative."""

        receipt = await self._post(
            owner_id,
            amount,
            transaction_type=LedgerTransactionType.SPEND,
            source=source,
            metadata=metadata,
            idempotency_key=idempotency_key,
            occurred_at=occurred_at,
        )
        return cast(LedgerReceipt, receipt)

    async def reverse(
        self,
        owner_id: str,
        amount: int,
        *,
        source: str,
        metadata: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
        occurred_at: datetime | None = None,
    ) -> ReversalResult:
        """Debit up to ``amount``, stopping at zero and reporting the shortfall."""

        _require_positive(amount)
        if idempotency_key:
            existing = await self.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                requested = int((existing.metadata_json or {}).get("requested", existing.amount))
                return ReversalResult(
                    owner_id=owner_id,
                    requested=requested,
                    debited=existing.amount,
                    receipt=LedgerReceipt.from_transaction(existing, replayed=True),
                )

        receipt = await self._post(
            owner_id,
            amount,
            transaction_type=LedgerTransactionType.SPEND,
            source=source,
            metadata=metadata,
            idempotency_key=idempotency_key,
            occurred_at=occurred_at,
            clamp_to_balance=True,
        )
        debited = receipt.amount if receipt else 0
        result = ReversalResult(owner_id=owner_id, requested=amount, debited=debited, receipt=receipt)
        if result.shortfall:
            logger.warning(
                "Reversal could not be fully collected",
                owner_id=owner_id,
                requested=amount,
                debited=debited,
                shortfall=result.shortfall,
                source=source,
            )
        return result

    async def convert(
        self,
        owner_id: str,
        points_amount: int,
        rate: int | Decimal | None = None,
        *,
        now: datetime | None = None,
        metadata: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> ConversionResult:
        """Debit points as CONVERT and return their value at ``rate`` points per unit."""

        _require_positive(points_amount, field="points_amount")
        points_per_unit = Decimal(str(rate if rate is not None else settings.conversion_points_per_unit))
        if points_per_unit <= 0:
            raise InvalidAmountError(rate, field="rate")

        reference = ensure_utc(now) or utcnow()
        minimum = settings.conversion_minimum_points
        if points_amount < minimum:
            raise ConversionLimitExceededError(
                f"Minimum conversion is {minimum} points",
                requested=points_amount,
                limit=minimum,
            )

        cap = settings.conversion_monthly_cap_points
        converted = await self.sum_since(owner_id, LedgerTransactionType.CONVERT, start_of_month(reference))
        if converted + points_amount > cap:
            raise ConversionLimitExceededError(
                f"Monthly conversion cap of {cap} points exceeded",
                requested=points_amount,
                limit=cap,
                used=converted,
            )

        credited_value = (Decimal(points_amount) / points_per_unit).quantize(CONVERSION_QUANTUM, rounding=ROUND_DOWN)
        receipt = await self._post(
            owner_id,
            points_amount,
            transaction_type=LedgerTransactionType.CONVERT,
            source=CONVERSION_SOURCE,
            metadata={
                **(metadata or {}),
                "credited_value": str(credited_value),
                "points_per_unit": str(points_per_unit),
            },
            idempotency_key=idempotency_key,
            occurred_at=reference,
        )
        return ConversionResult(
            points=points_amount,
            points_per_unit=points_per_unit,
            credited_value=credited_value,
            receipt=cast(LedgerReceipt, receipt),
        )

    async def find_by_idempotency_key(self, idempotency_key: str) -> LedgerTransaction | None:
        stmt = select(LedgerTransaction).where(LedgerTransaction.idempotency_key == idempotency_key)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def sum_since(self, owner_id: str, transaction_type: LedgerTransactionType, since: datetime) -> int:
        stmt = select(func.coalesce(func.sum(LedgerTransaction.amount), 0)).where(
            LedgerTransaction.owner_id == owner_id,
            LedgerTransaction.transaction_type == transaction_type,
            LedgerTransaction.occurred_at >= since,
        )
        return int((await self._db.execute(stmt)).scalar_one())

    async def list_transactions(
        self,
        owner_id: str,
        *,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
        transaction_types: Sequence[LedgerTransactionType] | None = None,
    ) -> tuple[list[LedgerTransaction], Tuple[datetime, UUID] | None]:
        """Return a newest-first page of an owner's transactions."""

        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(LedgerTransaction)
            .where(LedgerTransaction.owner_id == owner_id)
            .order_by(LedgerTransaction.occurred_at.desc(), LedgerTransaction.id.desc())
        )
        if transaction_types:
            stmt = stmt.where(LedgerTransaction.transaction_type.in_(list(transaction_types)))
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    LedgerTransaction.occurred_at < cursor_time,
                    and_(LedgerTransaction.occurred_at == cursor_time, LedgerTransaction.id < cursor_id),
                )
            )

        rows = list((await self._db.execute(stmt.limit(bounded_limit + 1))).scalars().all())
        entries = rows[:bounded_limit]
        next_cursor: Tuple[datetime, UUID] | None = None
        if len(rows) > bounded_limit and entries:
            tail = entries[-1]
            next_cursor = (tail.occurred_at, tail.id)
        return entries, next_cursor

    async def _post(
        self,
        owner_id: str,
        amount: int,
        *,
        transaction_type: LedgerTransactionType,
        source: str,
        metadata: Mapping[str, Any] | None,
        idempotency_key: str | None,
        occurred_at: datetime | None,
        clamp_to_balance: bool = False,
    ) -> LedgerReceipt | None:
        _require_positive(amount)
        if idempotency_key:
            existing = await self.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info(
                    "Replayed ledger transaction",
                    owner_id=owner_id,
                    idempotency_key=idempotency_key,
                    transaction_id=str(existing.id),
                )
                return LedgerReceipt.from_transaction(existing, replayed=True)

        sign = transaction_type.sign
        for attempt in range(1, self._max_cas_attempts + 1):
            snapshot = await self._read_balance(owner_id)
            posted = min(amount, snapshot.balance) if clamp_to_balance and sign < 0 else amount
            if posted == 0:
                return None
            balance_after = snapshot.balance + sign * posted
            if balance_after < 0:
                raise InsufficientBalanceError(owner_id, balance=snapshot.balance, requested=amount)

            matched = await conditional_update(
                self._db,
                PointsAccount,
                PointsAccount.id == snapshot.account_id,
                PointsAccount.version == snapshot.version,
                values={"balance": balance_after, "version": snapshot.version + 1},
            )
            if matched:
                break
            logger.debug("Balance changed underneath ledger write; retrying", owner_id=owner_id, attempt=attempt)
        else:
            raise ConcurrentUpdateError("points_account", owner_id, attempts=self._max_cas_attempts)

        entry_metadata = dict(metadata or {})
        if clamp_to_balance:
            entry_metadata.update({"requested": amount, "debited": posted, "shortfall": amount - posted})
        entry = LedgerTransaction(
            account_id=snapshot.account_id,
            owner_id=owner_id,
            transaction_type=transaction_type,
            amount=posted,
            source=source,
            balance_before=snapshot.balance,
            balance_after=balance_after,
            idempotency_key=idempotency_key,
            metadata_json=entry_metadata,
            occurred_at=ensure_utc(occurred_at) or utcnow(),
        )
        self._db.add(entry)
        await self._db.flush()
        logger.info(
            "Recorded ledger transaction",
            owner_id=owner_id,
            transaction_id=str(entry.id),
            transaction_type=transaction_type.value,
            amount=posted,
            balance_after=balance_after,
            source=source,
        )
        return LedgerReceipt.from_transaction(entry)

    async def _read_balance(self, owner_id: str) -> _BalanceSnapshot:
        stmt = select(PointsAccount.id, PointsAccount.balance, PointsAccount.version).where(
            PointsAccount.owner_id == owner_id
        )
        row = (await self._db.execute(stmt)).one_or_none()
        if row is None:
            raise AccountNotFoundError(owner_id)
        return _BalanceSnapshot(account_id=row.id, balance=int(row.balance), version=int(row.version))

    def _insert_account_stmt(self, owner_id: str, owner_kind: AccountOwnerKind | None):
        values = {"owner_id": owner_id, "owner_kind": owner_kind, "balance": 0, "version": 0}
        dialect = self._db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(PointsAccount).values(**values).on_conflict_do_nothing(index_elements=["owner_id"])
        if dialect == "sqlite":
            return sqlite.insert(PointsAccount).values(**values).on_conflict_do_nothing(index_elements=["owner_id"])
        return insert(PointsAccount).values(**values)


def _require_positive(amount: Any, *, field: str = "amount") -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(amount, field=field)


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> Tuple[datetime, UUID]:
    """Decode pagination cursor into datetime and UUID parts."""

    raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
    timestamp_str, identifier_str = raw.split("|", 1)
    return datetime.fromisoformat(timestamp_str), UUID(identifier_str)


__all__ = [
    "ConversionResult",
    "LedgerReceipt",
    "LedgerService",
    "ReversalResult",
    "decode_time_uuid_cursor",
    "encode_time_uuid_cursor",
]
