"""Points ledger, mission funding and timed commitment tables.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_UUID = sa.dialects.postgresql.UUID(as_uuid=True)

_ENUM_TYPES = {
    "points_account_owner_kind": ("BUSINESS", "CUSTOMER"),
    "ledger_transaction_type": ("EARN", "SPEND", "REFUND", "CONVERT"),
    "mission_funding_pool_status": ("ACTIVE", "CANCELLED", "EXHAUSTED"),
    "mission_participation_status": ("PENDING", "APPROVED", "REJECTED", "COMPLETED"),
    "participation_reversal_status": ("NOT_REQUIRED", "FULL", "PARTIAL"),
    "timed_commitment_kind": ("APPOINTMENT", "REFERRAL"),
    "timed_commitment_status": ("PENDING", "CONFIRMED", "COMPLETED", "CANCELLED", "NO_SHOW", "SETTLED"),
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(*_ENUM_TYPES[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    for name, labels in _ENUM_TYPES.items():
        values = ", ".join(f"'{label}'" for label in labels)
        op.execute(f"CREATE TYPE {name} AS ENUM ({values})")

    op.create_table(
        "points_accounts",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("owner_kind", _enum("points_account_owner_kind"), nullable=True),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("balance >= 0", name="ck_points_accounts_balance_non_negative"),
    )
    op.create_index("ix_points_accounts_owner_id", "points_accounts", ["owner_id"], unique=True)

    op.create_table(
        "ledger_transactions",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("account_id", _UUID, nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("transaction_type", _enum("ledger_transaction_type"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True, unique=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_ledger_transactions_amount_positive"),
        sa.ForeignKeyConstraint(["account_id"], ["points_accounts.id"], ondelete="RESTRICT"),
    )
    op.create_index(
        "ix_ledger_transactions_owner_occurred",
        "ledger_transactions",
        ["owner_id", "occurred_at"],
    )

    op.create_table(
        "mission_funding_pools",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("mission_id", sa.String(), nullable=False),
        sa.Column("business_id", sa.String(), nullable=False),
        sa.Column("points_per_slot", sa.Integer(), nullable=False),
        sa.Column("max_slots", sa.Integer(), nullable=False),
        sa.Column("slots_consumed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", _enum("mission_funding_pool_status"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("funding_transaction_id", _UUID, nullable=True),
        sa.Column("refund_amount", sa.Integer(), nullable=True),
        sa.Column("refund_transaction_id", _UUID, nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exhausted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("slots_consumed <= max_slots", name="ck_mission_funding_pools_slots_bounded"),
        sa.CheckConstraint("points_per_slot > 0", name="ck_mission_funding_pools_points_positive"),
    )
    op.create_index("ix_mission_funding_pools_mission_id", "mission_funding_pools", ["mission_id"], unique=True)
    op.create_index("ix_mission_funding_pools_business_id", "mission_funding_pools", ["business_id"])

    op.create_table(
        "mission_participations",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("mission_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("status", _enum("mission_participation_status"), nullable=False),
        sa.Column("points_awarded", sa.Integer(), nullable=True),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column("reversal_status", _enum("participation_reversal_status"), nullable=True),
        sa.Column("reversal_debited", sa.Integer(), nullable=True),
        sa.Column("reversal_shortfall", sa.Integer(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("applied_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_mission_participations_mission_id", "mission_participations", ["mission_id"])
    op.create_index("ix_mission_participations_user_id", "mission_participations", ["user_id"])
    op.create_index(
        "uq_mission_participations_active_pair",
        "mission_participations",
        ["mission_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("status != 'REJECTED'"),
    )

    op.create_table(
        "timed_commitments",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("kind", _enum("timed_commitment_kind"), nullable=False),
        sa.Column("initiator_id", sa.String(), nullable=False),
        sa.Column("counterparty_id", sa.String(), nullable=True),
        sa.Column("scope_key", sa.String(), nullable=True),
        sa.Column("status", _enum("timed_commitment_status"), nullable=False),
        sa.Column("reward_points", sa.Integer(), nullable=False),
        sa.Column("share_code", sa.String(), nullable=True, unique=True),
        sa.Column("join_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("agreed_details", sa.JSON(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("initiator_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("counterparty_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reward_unlock_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("no_show_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("reward_points > 0", name="ck_timed_commitments_reward_positive"),
    )
    op.create_index("ix_timed_commitments_counterparty_id", "timed_commitments", ["counterparty_id"])
    op.create_index("ix_timed_commitments_scope_key", "timed_commitments", ["scope_key"])
    op.create_index(
        "ix_timed_commitments_initiator_window",
        "timed_commitments",
        ["initiator_id", "kind", "created_at"],
    )
    op.create_index(
        "ix_timed_commitments_settlement",
        "timed_commitments",
        ["status", "settled", "reward_unlock_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_timed_commitments_settlement", table_name="timed_commitments")
    op.drop_index("ix_timed_commitments_initiator_window", table_name="timed_commitments")
    op.drop_index("ix_timed_commitments_scope_key", table_name="timed_commitments")
    op.drop_index("ix_timed_commitments_counterparty_id", table_name="timed_commitments")
    op.drop_table("timed_commitments")

    op.drop_index("uq_mission_participations_active_pair", table_name="mission_participations")
    op.drop_index("ix_mission_participations_user_id", table_name="mission_participations")
    op.drop_index("ix_mission_participations_mission_id", table_name="mission_participations")
    op.drop_table("mission_participations")

    op.drop_index("ix_mission_funding_pools_business_id", table_name="mission_funding_pools")
    op.drop_index("ix_mission_funding_pools_mission_id", table_name="mission_funding_pools")
    op.drop_table("mission_funding_pools")

    op.drop_index("ix_ledger_transactions_owner_occurred", table_name="ledger_transactions")
    op.drop_table("ledger_transactions")

    op.drop_index("ix_points_accounts_owner_id", table_name="points_accounts")
    op.drop_table("points_accounts")

    for name in reversed(list(_ENUM_TYPES)):
        op.execute(f"DROP TYPE {name}")
