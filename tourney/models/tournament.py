"""Tournament and TournamentParticipant models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from tourney.models.base import (
    Base,
    JSONType,
    Money,
    TimestampMixin,
    UTCDateTime,
    UUIDMixin,
    utcnow,
)


class TournamentStatus(str, Enum):
    UPCOMING = "UPCOMING"
    AWAITING_DECISION = "AWAITING_DECISION"
    ONGOING = "ONGOING"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class BracketType(str, Enum):
    SINGLE_ELIMINATION = "SINGLE_ELIMINATION"
    DOUBLE_ELIMINATION = "DOUBLE_ELIMINATION"
    # schema compatibility only; rejected at creation
    ROUND_ROBIN = "ROUND_ROBIN"
    SWISS = "SWISS"


SUPPORTED_BRACKET_TYPES = frozenset(
    {BracketType.SINGLE_ELIMINATION, BracketType.DOUBLE_ELIMINATION}
)


class ParticipantType(str, Enum):
    USER = "USER"
    TEAM = "TEAM"


class ParticipantStatus(str, Enum):
    REGISTERED = "REGISTERED"
    ACTIVE = "ACTIVE"
    NO_SHOW = "NO_SHOW"
    ELIMINATED = "ELIMINATED"
    WINNER = "WINNER"
    REFUNDED = "REFUNDED"


class Tournament(Base, UUIDMixin, TimestampMixin):
    """Tournament aggregate root. Owns participants and matches."""

    __tablename__ = "tournaments"
    __table_args__ = (
        CheckConstraint(
            "current_participants <= max_participants",
            name="ck_tournaments_capacity",
        ),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    game_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    entry_fee: Mapped[Decimal] = mapped_column(
        Money, default=Decimal("0.00"), nullable=False
    )
    prize_pool: Mapped[Decimal] = mapped_column(
        Money, default=Decimal("0.00"), nullable=False
    )

    max_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    min_participants: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_participants: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )

    start_date: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, index=True
    )
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    status: Mapped[TournamentStatus] = mapped_column(
        SQLEnum(TournamentStatus),
        default=TournamentStatus.UPCOMING,
        nullable=False,
        index=True,
    )
    bracket_type: Mapped[BracketType] = mapped_column(
        SQLEnum(BracketType),
        default=BracketType.SINGLE_ELIMINATION,
        nullable=False,
    )
    settings: Mapped[dict[str, Any]] = mapped_column(
        JSONType, default=dict, nullable=False
    )

    # Outcome
    winner_participant_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True
    )
    winner_participant_type: Mapped[ParticipantType | None] = mapped_column(
        SQLEnum(ParticipantType), nullable=True
    )
    cancel_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Money settlement checkpoints (resumed by the lifecycle driver)
    prize_settled_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    refunds_settled_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    @property
    def require_check_in(self) -> bool:
        return bool((self.settings or {}).get("require_check_in", False))

    @property
    def manual_decision(self) -> bool:
        return bool((self.settings or {}).get("manual_decision", False))

    def __repr__(self) -> str:
        return f"<Tournament {self.id} {self.name!r} {self.status.value}>"


class TournamentParticipant(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "tournament_participants"
    __table_args__ = (
        UniqueConstraint(
            "tournament_id",
            "participant_id",
            "participant_type",
            name="uq_tournament_participant",
        ),
    )

    tournament_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    participant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    participant_type: Mapped[ParticipantType] = mapped_column(
        SQLEnum(ParticipantType),
        default=ParticipantType.USER,
        nullable=False,
    )
    registered_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, nullable=False
    )
    checked_in: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    seed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[ParticipantStatus] = mapped_column(
        SQLEnum(ParticipantStatus),
        default=ParticipantStatus.REGISTERED,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<TournamentParticipant {self.participant_type.value}:"
            f"{self.participant_id} {self.status.value}>"
        )
