"""Match model.

The bracket is an arena of matches indexed by id. Edges are forward-only
(next_match_id / next_match_loser_id) and resolved by id lookup.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    Boolean,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from tourney.models.base import Base, JSONType, TimestampMixin, UTCDateTime, UUIDMixin
from tourney.models.tournament import ParticipantType


class MatchStatus(str, Enum):
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    CONFIRMED = "CONFIRMED"
    DISPUTED = "DISPUTED"
    RESOLVED = "RESOLVED"


TERMINAL_MATCH_STATUSES = frozenset({MatchStatus.CONFIRMED, MatchStatus.RESOLVED})


class BracketSide(str, Enum):
    WINNERS = "WINNERS"
    LOSERS = "LOSERS"
    GRAND_FINAL = "GRAND_FINAL"


class SlotState(str, Enum):
    PENDING = "PENDING"  # feeder match not decided yet
    FILLED = "FILLED"
    EMPTY = "EMPTY"  # feeder produced nobody (bye, dead match, void)


class Match(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "matches"
    __table_args__ = (
        UniqueConstraint(
            "tournament_id",
            "bracket_side",
            "round_number",
            "match_number",
            name="uq_match_position",
        ),
    )

    tournament_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    bracket_side: Mapped[BracketSide] = mapped_column(
        SQLEnum(BracketSide), default=BracketSide.WINNERS, nullable=False
    )
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    match_number: Mapped[int] = mapped_column(Integer, nullable=False)

    # Slots
    participant1_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    participant1_type: Mapped[ParticipantType | None] = mapped_column(
        SQLEnum(ParticipantType), nullable=True
    )
    slot1_state: Mapped[SlotState] = mapped_column(
        SQLEnum(SlotState), default=SlotState.PENDING, nullable=False
    )
    participant2_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    participant2_type: Mapped[ParticipantType | None] = mapped_column(
        SQLEnum(ParticipantType), nullable=True
    )
    slot2_state: Mapped[SlotState] = mapped_column(
        SQLEnum(SlotState), default=SlotState.PENDING, nullable=False
    )

    status: Mapped[MatchStatus] = mapped_column(
        SQLEnum(MatchStatus),
        default=MatchStatus.PENDING,
        nullable=False,
        index=True,
    )

    # Result
    participant1_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    participant2_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result_proof_p1: Mapped[str | None] = mapped_column(String(500), nullable=True)
    result_proof_p2: Mapped[str | None] = mapped_column(String(500), nullable=True)
    submissions: Mapped[dict[str, Any]] = mapped_column(
        JSONType, default=dict, nullable=False
    )
    winner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    winner_type: Mapped[ParticipantType | None] = mapped_column(
        SQLEnum(ParticipantType), nullable=True
    )
    is_bye: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    moderator_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Forward edges (no FK: rows of one bracket are inserted together)
    next_match_id: Mapped[str | None] = mapped_column(
        String(36), nullable=True, index=True
    )
    next_match_slot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_match_loser_id: Mapped[str | None] = mapped_column(
        String(36), nullable=True, index=True
    )
    next_match_loser_slot: Mapped[int | None] = mapped_column(Integer, nullable=True)

    scheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Set once the outputs (winner/loser) were delivered downstream
    advanced_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_MATCH_STATUSES

    @property
    def is_final(self) -> bool:
        return self.next_match_id is None

    def __repr__(self) -> str:
        return (
            f"<Match {self.bracket_side.value} R{self.round_number}"
            f"#{self.match_number} {self.status.value}>"
        )
