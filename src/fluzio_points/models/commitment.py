"""Timed commitments: appointments and bring-a-friend referrals."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    Index,
    Integer,
    JSON,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from fluzio_points.db.base import Base


class CommitmentKind(str, Enum):
    """Flavours of multi-party delayed-reward interactions."""

    APPOINTMENT = "appointment"
    REFERRAL = "referral"


class CommitmentStatus(str, Enum):
    """Lifecycle statuses for a timed commitment."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    SETTLED = "settled"


OPEN_COMMITMENT_STATUSES = frozenset({CommitmentStatus.PENDING, CommitmentStatus.CONFIRMED})
FULFILLED_COMMITMENT_STATUSES = frozenset({CommitmentStatus.COMPLETED, CommitmentStatus.SETTLED})


class TimedCommitment(Base):
    """Commitment that reserves a reward and releases it after a trust delay."""

    __tablename__ = "timed_commitments"
    __table_args__ = (
        CheckConstraint("reward_points > 0", name="ck_timed_commitments_reward_positive"),
        Index("ix_timed_commitments_initiator_window", "initiator_id", "kind", "created_at"),
        Index("ix_timed_commitments_settlement", "status", "settled", "reward_unlock_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    kind = Column(SqlEnum(CommitmentKind, name="timed_commitment_kind"), nullable=False)
    initiator_id = Column(String, nullable=False)
    counterparty_id = Column(String, nullable=True, index=True)
    scope_key = Column(String, nullable=True, index=True)
    status = Column(
        SqlEnum(CommitmentStatus, name="timed_commitment_status"),
        nullable=False,
        default=CommitmentStatus.PENDING,
    )
    reward_points = Column(Integer, nullable=False)
    share_code = Column(String, nullable=True, unique=True)
    join_deadline = Column(DateTime(timezone=True), nullable=True)
    scheduled_for = Column(DateTime(timezone=True), nullable=True)
    details = Column(JSON, nullable=True)
    agreed_details = Column(JSON, nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    joined_at = Column(DateTime(timezone=True), nullable=True)
    initiator_completed_at = Column(DateTime(timezone=True), nullable=True)
    counterparty_completed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    reward_unlock_at = Column(DateTime(timezone=True), nullable=True)
    settled = Column(Boolean, nullable=False, default=False, server_default="false")
    settled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String, nullable=True)
    cancel_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    no_show_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def reward_recipients(self) -> list[str]:
        """Owners credited at settlement; referrals pay both parties."""

        recipients = [self.initiator_id]
        if self.kind == CommitmentKind.REFERRAL and self.counterparty_id:
            recipients.append(self.counterparty_id)
        return recipients

    def other_party(self, actor_id: str | None) -> str | None:
        if actor_id == self.initiator_id:
            return self.counterparty_id
        if actor_id == self.counterparty_id:
            return self.initiator_id
        return None
