"""Mission funding pools and customer participations."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
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
    text,
)
from sqlalchemy.dialects.postgresql import UUID

from fluzio_points.db.base import Base
from fluzio_points.models.ledger import ReversalStatus


class FundingPoolStatus(str, Enum):
    """Lifecycle statuses for a mission funding pool."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"


class ParticipationStatus(str, Enum):
    """Lifecycle statuses for a customer's attempt at a mission."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class MissionFundingPool(Base):
    """Points reserved by a business against a mission's slot count."""

    __tablename__ = "mission_funding_pools"
    __table_args__ = (
        CheckConstraint("slots_consumed <= max_slots", name="ck_mission_funding_pools_slots_bounded"),
        CheckConstraint("points_per_slot > 0", name="ck_mission_funding_pools_points_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    mission_id = Column(String, nullable=False, unique=True, index=True)
    business_id = Column(String, nullable=False, index=True)
    points_per_slot = Column(Integer, nullable=False)
    max_slots = Column(Integer, nullable=False)
    slots_consumed = Column(Integer, nullable=False, default=0, server_default="0")
    status = Column(
        SqlEnum(FundingPoolStatus, name="mission_funding_pool_status"),
        nullable=False,
        default=FundingPoolStatus.ACTIVE,
    )
    version = Column(Integer, nullable=False, default=0, server_default="0")
    funding_transaction_id = Column(UUID(as_uuid=True), nullable=True)
    refund_amount = Column(Integer, nullable=True)
    refund_transaction_id = Column(UUID(as_uuid=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    exhausted_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def funded_points(self) -> int:
        return self.points_per_slot * self.max_slots

    @property
    def remaining_slots(self) -> int:
        return self.max_slots - self.slots_consumed

    @property
    def unconsumed_points(self) -> int:
        return self.points_per_slot * self.remaining_slots


class Participation(Base):
    """A single customer's attempt at a mission."""

    __tablename__ = "mission_participations"
    __table_args__ = (
        Index(
            "uq_mission_participations_active_pair",
            "mission_id",
            "user_id",
            unique=True,
            sqlite_where=text("status != 'REJECTED'"),
            postgresql_where=text("status != 'REJECTED'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    mission_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    status = Column(
        SqlEnum(ParticipationStatus, name="mission_participation_status"),
        nullable=False,
        default=ParticipationStatus.PENDING,
    )
    points_awarded = Column(Integer, nullable=True)
    feedback = Column(Text, nullable=True)
    reversal_status = Column(SqlEnum(ReversalStatus, name="participation_reversal_status"), nullable=True)
    reversal_debited = Column(Integer, nullable=True)
    reversal_shortfall = Column(Integer, nullable=True)
    version = Column(Integer, nullable=False, default=0, server_default="0")
    metadata_json = Column("metadata", JSON, nullable=True)
    applied_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
