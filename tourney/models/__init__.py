"""Database models."""

from tourney.models.base import Base
from tourney.models.dispute import (
    DisputeStatus,
    DisputeTicket,
    DisputeVerdict,
)
from tourney.models.match import BracketSide, Match, MatchStatus, SlotState
from tourney.models.tournament import (
    BracketType,
    ParticipantStatus,
    ParticipantType,
    Tournament,
    TournamentParticipant,
    TournamentStatus,
)
from tourney.models.wallet import (
    TransactionStatus,
    TransactionType,
    Wallet,
    WalletTransaction,
)

__all__ = [
    "Base",
    "BracketSide",
    "BracketType",
    "DisputeStatus",
    "DisputeTicket",
    "DisputeVerdict",
    "Match",
    "MatchStatus",
    "ParticipantStatus",
    "ParticipantType",
    "SlotState",
    "Tournament",
    "TournamentParticipant",
    "TournamentStatus",
    "TransactionStatus",
    "TransactionType",
    "Wallet",
    "WalletTransaction",
]
