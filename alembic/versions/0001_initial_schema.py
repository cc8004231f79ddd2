"""Initial schema: wallets, ledger, tournaments, matches, disputes.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18

Amounts are stored as integer cents (BIGINT).
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _enum(name: str, *values: str) -> postgresql.ENUM:
    enum = postgresql.ENUM(*values, name=name, create_type=False)
    enum.create(op.get_bind(), checkfirst=True)
    return enum


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # ===========================================================
    # Enum types
    # ===========================================================
    transaction_type = _enum(
        "transactiontype",
        "DEPOSIT", "WITHDRAWAL", "TOURNAMENT_FEE", "PRIZE_PAYOUT", "REFUND",
    )
    transaction_status = _enum(
        "transactionstatus",
        "PENDING", "COMPLETED", "FAILED", "CANCELED", "REQUIRES_APPROVAL",
    )
    tournament_status = _enum(
        "tournamentstatus",
        "UPCOMING", "AWAITING_DECISION", "ONGOING", "COMPLETED", "CANCELED",
    )
    bracket_type = _enum(
        "brackettype",
        "SINGLE_ELIMINATION", "DOUBLE_ELIMINATION", "ROUND_ROBIN", "SWISS",
    )
    participant_type = _enum("participanttype", "USER", "TEAM")
    participant_status = _enum(
        "participantstatus",
        "REGISTERED", "ACTIVE", "NO_SHOW", "ELIMINATED", "WINNER", "REFUNDED",
    )
    match_status = _enum(
        "matchstatus",
        "PENDING", "SCHEDULED", "IN_PROGRESS", "AWAITING_CONFIRMATION",
        "CONFIRMED", "DISPUTED", "RESOLVED",
    )
    bracket_side = _enum("bracketside", "WINNERS", "LOSERS", "GRAND_FINAL")
    slot_state = _enum("slotstate", "PENDING", "FILLED", "EMPTY")
    dispute_status = _enum(
        "disputestatus",
        "OPEN", "UNDER_REVIEW", "RESOLVED_PARTICIPANT1_WIN",
        "RESOLVED_PARTICIPANT2_WIN", "RESOLVED_REPLAY", "RESOLVED_VOID", "CLOSED",
    )
    dispute_verdict = _enum(
        "disputeverdict",
        "PARTICIPANT1_WIN", "PARTICIPANT2_WIN", "REPLAY", "VOID",
    )

    # ===========================================================
    # Ledger
    # ===========================================================
    op.create_table(
        "wallets",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
    )
    op.create_index("ix_wallets_owner_id", "wallets", ["owner_id"], unique=True)

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "wallet_id",
            sa.String(36),
            sa.ForeignKey("wallets.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
        sa.Column("tx_type", transaction_type, nullable=False, index=True),
        sa.Column("status", transaction_status, nullable=False, index=True),
        sa.Column(
            "amount",
            sa.BigInteger(),
            nullable=False,
            comment="Signed amount (+credit/-debit)",
        ),
        sa.Column("balance_before", sa.BigInteger(), nullable=True),
        sa.Column("balance_after", sa.BigInteger(), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True, unique=True),
        sa.Column("tournament_id", sa.String(36), nullable=True, index=True),
        sa.Column("participant_id", sa.String(64), nullable=True),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("reviewed_by", sa.String(64), nullable=True),
        sa.Column("admin_note", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("integrity_hash", sa.String(64), nullable=True),
        *_timestamps(),
    )

    # ===========================================================
    # Tournaments
    # ===========================================================
    op.create_table(
        "tournaments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("game_id", sa.String(64), nullable=False, index=True),
        sa.Column("entry_fee", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("prize_pool", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("max_participants", sa.Integer(), nullable=False),
        sa.Column("min_participants", sa.Integer(), nullable=True),
        sa.Column(
            "current_participants", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", tournament_status, nullable=False, index=True),
        sa.Column("bracket_type", bracket_type, nullable=False),
        sa.Column(
            "settings",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("winner_participant_id", sa.String(64), nullable=True),
        sa.Column("winner_participant_type", participant_type, nullable=True),
        sa.Column("cancel_reason", sa.String(500), nullable=True),
        sa.Column("prize_settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunds_settled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "current_participants <= max_participants",
            name="ck_tournaments_capacity",
        ),
    )

    op.create_table(
        "tournament_participants",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "tournament_id",
            sa.String(36),
            sa.ForeignKey("tournaments.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("participant_id", sa.String(64), nullable=False),
        sa.Column("participant_type", participant_type, nullable=False),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("checked_in", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("seed", sa.Integer(), nullable=True),
        sa.Column("status", participant_status, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "tournament_id",
            "participant_id",
            "participant_type",
            name="uq_tournament_participant",
        ),
    )

    # ===========================================================
    # Matches (forward-only edges, no FK between matches)
    # ===========================================================
    op.create_table(
        "matches",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "tournament_id",
            sa.String(36),
            sa.ForeignKey("tournaments.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("bracket_side", bracket_side, nullable=False),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("match_number", sa.Integer(), nullable=False),
        sa.Column("participant1_id", sa.String(64), nullable=True),
        sa.Column("participant1_type", participant_type, nullable=True),
        sa.Column("slot1_state", slot_state, nullable=False),
        sa.Column("participant2_id", sa.String(64), nullable=True),
        sa.Column("participant2_type", participant_type, nullable=True),
        sa.Column("slot2_state", slot_state, nullable=False),
        sa.Column("status", match_status, nullable=False, index=True),
        sa.Column("participant1_score", sa.Integer(), nullable=True),
        sa.Column("participant2_score", sa.Integer(), nullable=True),
        sa.Column("result_proof_p1", sa.String(500), nullable=True),
        sa.Column("result_proof_p2", sa.String(500), nullable=True),
        sa.Column(
            "submissions",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("winner_id", sa.String(64), nullable=True),
        sa.Column("winner_type", participant_type, nullable=True),
        sa.Column("is_bye", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("moderator_notes", sa.Text(), nullable=True),
        sa.Column("next_match_id", sa.String(36), nullable=True, index=True),
        sa.Column("next_match_slot", sa.Integer(), nullable=True),
        sa.Column("next_match_loser_id", sa.String(36), nullable=True, index=True),
        sa.Column("next_match_loser_slot", sa.Integer(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("advanced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "tournament_id",
            "bracket_side",
            "round_number",
            "match_number",
            name="uq_match_position",
        ),
    )

    # ===========================================================
    # Disputes
    # ===========================================================
    op.create_table(
        "dispute_tickets",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "match_id",
            sa.String(36),
            sa.ForeignKey("matches.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("tournament_id", sa.String(36), nullable=False, index=True),
        sa.Column("reporter_id", sa.String(64), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", dispute_status, nullable=False, index=True),
        sa.Column("match_status_before", match_status, nullable=False),
        sa.Column("verdict", dispute_verdict, nullable=True),
        sa.Column("resolution_details", sa.Text(), nullable=True),
        sa.Column("moderator_id", sa.String(64), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    # 매치당 활성 티켓은 하나
    op.create_index(
        "uq_dispute_tickets_active_match",
        "dispute_tickets",
        ["match_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('OPEN', 'UNDER_REVIEW')"),
    )


def downgrade() -> None:
    op.drop_index("uq_dispute_tickets_active_match", table_name="dispute_tickets")
    op.drop_table("dispute_tickets")
    op.drop_table("matches")
    op.drop_table("tournament_participants")
    op.drop_table("tournaments")
    op.drop_table("wallet_transactions")
    op.drop_index("ix_wallets_owner_id", table_name="wallets")
    op.drop_table("wallets")

    for name in (
        "disputeverdict",
        "disputestatus",
        "slotstate",
        "bracketside",
        "matchstatus",
        "participantstatus",
        "participanttype",
        "brackettype",
        "tournamentstatus",
        "transactionstatus",
        "transactiontype",
    ):
        op.execute(f"DROP TYPE IF EXISTS {name}")
