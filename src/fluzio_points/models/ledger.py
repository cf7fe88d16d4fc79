"""Points accounts and the append-only ledger."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from fluzio_points.db.base import Base


class AccountOwnerKind(str, Enum):
    """Kinds of identities that hold a points balance."""

    BUSINESS = "business"
    CUSTOMER = "customer"


class LedgerTransactionType(str, Enum):
    """Ledger transaction types; EARN and REFUND add, SPEND and CONVERT subtract."""

    EARN = "earn"
    SPEND = "spend"
    REFUND = "refund"
    CONVERT = "convert"

    @property
    def sign(self) -> int:
        return 1 if self in (LedgerTransactionType.EARN, LedgerTransactionType.REFUND) else -1


class ReversalStatus(str, Enum):
    """How much of a clawback could be collected from the balance."""

    NOT_REQUIRED = "not_required"
    FULL = "full"
    PARTIAL = "partial"


class PointsAccount(Base):
    """Balance holder for a business or customer."""

    __tablename__ = "points_accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_points_accounts_balance_non_negative"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_id = Column(String, nullable=False, unique=True, index=True)
    owner_kind = Column(SqlEnum(AccountOwnerKind, name="points_account_owner_kind"), nullable=True)
    balance = Column(Integer, nullable=False, default=0, server_default="0")
    version = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    transactions = relationship("LedgerTransaction", back_populates="account")


class LedgerTransaction(Base):
    """Immutable record of a single balance mutation."""

    __tablename__ = "ledger_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_ledger_transactions_amount_positive"),
        Index("ix_ledger_transactions_owner_occurred", "owner_id", "occurred_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("points_accounts.id", ondelete="RESTRICT"), nullable=False)
    owner_id = Column(String, nullable=False)
    transaction_type = Column(SqlEnum(LedgerTransactionType, name="ledger_transaction_type"), nullable=False)
    amount = Column(Integer, nullable=False)
    source = Column(String, nullable=False)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    idempotency_key = Column(String, nullable=True, unique=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    account = relationship("PointsAccount", back_populates="transactions")
