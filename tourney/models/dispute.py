"""DisputeTicket model."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Enum as SQLEnum, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from tourney.models.base import Base, TimestampMixin, UTCDateTime, UUIDMixin
from tourney.models.match import MatchStatus


class DisputeStatus(str, Enum):
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED_PARTICIPANT1_WIN = "RESOLVED_PARTICIPANT1_WIN"
    RESOLVED_PARTICIPANT2_WIN = "RESOLVED_PARTICIPANT2_WIN"
    RESOLVED_REPLAY = "RESOLVED_REPLAY"
    RESOLVED_VOID = "RESOLVED_VOID"
    CLOSED = "CLOSED"


ACTIVE_DISPUTE_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW})


class DisputeVerdict(str, Enum):
    PARTICIPANT1_WIN = "PARTICIPANT1_WIN"
    PARTICIPANT2_WIN = "PARTICIPANT2_WIN"
    REPLAY = "REPLAY"
    VOID = "VOID"

    @property
    def resolved_status(self) -> DisputeStatus:
        return _VERDICT_STATUS[self]


_VERDICT_STATUS = {
    DisputeVerdict.PARTICIPANT1_WIN: DisputeStatus.RESOLVED_PARTICIPANT1_WIN,
    DisputeVerdict.PARTICIPANT2_WIN: DisputeStatus.RESOLVED_PARTICIPANT2_WIN,
    DisputeVerdict.REPLAY: DisputeStatus.RESOLVED_REPLAY,
    DisputeVerdict.VOID: DisputeStatus.RESOLVED_VOID,
}

_OPEN_TICKET_FILTER = text("status IN ('OPEN', 'UNDER_REVIEW')")


class DisputeTicket(Base, UUIDMixin, TimestampMixin):
    """Contested match result. At most one active ticket per match."""

    __tablename__ = "dispute_tickets"
    __table_args__ = (
        Index(
            "uq_dispute_tickets_active_match",
            "match_id",
            unique=True,
            postgresql_where=_OPEN_TICKET_FILTER,
            sqlite_where=_OPEN_TICKET_FILTER,
        ),
    )

    match_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("matches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tournament_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    reporter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[DisputeStatus] = mapped_column(
        SQLEnum(DisputeStatus),
        default=DisputeStatus.OPEN,
        nullable=False,
        index=True,
    )
    # Match status when the ticket was opened (restored on close)
    match_status_before: Mapped[MatchStatus] = mapped_column(
        SQLEnum(MatchStatus), nullable=False
    )

    verdict: Mapped[DisputeVerdict | None] = mapped_column(
        SQLEnum(DisputeVerdict), nullable=True
    )
    resolution_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    moderator_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_DISPUTE_STATUSES

    def __repr__(self) -> str:
        return f"<DisputeTicket {self.id} match={self.match_id} {self.status.value}>"
