"""
Match State Machine.

PENDING -> SCHEDULED -> IN_PROGRESS -> AWAITING_CONFIRMATION -> CONFIRMED
                                                `-> DISPUTED -> (moderator verdict)
A bye is created directly in CONFIRMED.

Both participants report the result. Agreement on the winner confirms the
match and delivers winner/loser downstream; disagreement flags it DISPUTED
and opens a dispute ticket. All mutations of a tournament's matches are
serialized by the tournament lock.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select

from tourney.logging_config import get_logger
from tourney.models.base import utcnow
from tourney.models.match import Match, MatchStatus, TERMINAL_MATCH_STATUSES
from tourney.models.tournament import Tournament, TournamentStatus
from tourney.tournament.advancement import (
    Arena,
    advance,
    set_winner,
    slot_entrant,
    slot_of,
)
from tourney.tournament.disputes import open_ticket
from tourney.tournament.lifecycle import TournamentStateMachine
from tourney.utils.db import SessionFactory, session_scope
from tourney.utils.errors import (
    InvalidMatchStateError,
    InvalidTournamentStateError,
    MatchNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from tourney.utils.locks import DistributedLockManager, LockScope

logger = get_logger(__name__)

_SUBMITTABLE = frozenset(
    {
        MatchStatus.SCHEDULED,
        MatchStatus.IN_PROGRESS,
        MatchStatus.AWAITING_CONFIRMATION,
    }
)


@dataclass(frozen=True)
class MatchScore:
    """Reported score, from participant 1's and participant 2's side."""

    participant1: int
    participant2: int

    def __post_init__(self) -> None:
        for value in (self.participant1, self.participant2):
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValidationError(
                    "Scores must be non-negative integers",
                    details={"participant1": self.participant1, "participant2": self.participant2},
                )
        if self.participant1 == self.participant2:
            raise ValidationError(
                "A match result needs a winner (tie score)",
                details={"participant1": self.participant1, "participant2": self.participant2},
            )

    @property
    def winner_slot(self) -> int:
        return 1 if self.participant1 > self.participant2 else 2


class MatchStateMachine:
    """Governs a single match's lifecycle."""

    def __init__(
        self,
        session_factory: SessionFactory,
        lock_manager: DistributedLockManager,
        tournaments: TournamentStateMachine,
    ) -> None:
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.tournaments = tournaments

    async def get_match(self, match_id: str) -> Match:
        async with self.session_factory() as session:
            match = await session.get(Match, match_id)
            if match is None:
                raise MatchNotFoundError(match_id)
            return match

    async def list_matches(self, tournament_id: str) -> list[Match]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Match)
                .where(Match.tournament_id == tournament_id)
                .order_by(Match.bracket_side, Match.round_number, Match.match_number)
            )
            return list(result.scalars().all())

    # =========================================================================
    # Transitions
    # =========================================================================

    async def start_match(self, match_id: str, participant_id: str) -> Match:
        """SCHEDULED -> IN_PROGRESS (either participant)."""
        tournament_id = (await self.get_match(match_id)).tournament_id

        async with self.lock_manager.lock(LockScope.TOURNAMENT, tournament_id):
            async with session_scope(self.session_factory) as session:
                await self._ongoing(session, tournament_id)
                arena = await self.tournaments.load_arena(session, tournament_id)
                match = arena[match_id]
                self._authorize(match, participant_id)

                if match.status == MatchStatus.IN_PROGRESS:
                    return match
                if match.status != MatchStatus.SCHEDULED:
                    raise InvalidMatchStateError(match_id, match.status.value, "start")

                match.status = MatchStatus.IN_PROGRESS
                match.started_at = utcnow()

        logger.info("match_started", match_id=match_id, participant_id=participant_id)
        return match

    async def submit_match_result(
        self,
        match_id: str,
        participant_id: str,
        score: MatchScore,
        proof_ref: Optional[str] = None,
    ) -> Match:
        """
        Record one participant's view of the result.

        - first report: AWAITING_CONFIRMATION
        - second report, same winner: CONFIRMED and advanced
        - second report, other winner: DISPUTED, ticket opened

        Raises:
            UnauthorizedError: Not a participant of the match
            InvalidMatchStateError: Match not accepting results, or the
                participant already reported
        """
        tournament_id = (await self.get_match(match_id)).tournament_id

        async with self.lock_manager.lock(LockScope.TOURNAMENT, tournament_id):
            async with session_scope(self.session_factory) as session:
                tournament = await self._ongoing(session, tournament_id)
                arena = await self.tournaments.load_arena(session, tournament_id)
                match = arena[match_id]
                slot = self._authorize(match, participant_id)

                if match.status not in _SUBMITTABLE:
                    raise InvalidMatchStateError(match_id, match.status.value, "submit a result for")

                submissions = dict(match.submissions or {})
                if str(slot) in submissions:
                    raise InvalidMatchStateError(
                        match_id, match.status.value, "resubmit a result for"
                    )

                now = utcnow()
                submissions[str(slot)] = {
                    "participantId": participant_id,
                    "participant1Score": score.participant1,
                    "participant2Score": score.participant2,
                    "winnerSlot": score.winner_slot,
                    "proofRef": proof_ref,
                    "submittedAt": now.isoformat(),
                }
                match.submissions = submissions
                if slot == 1:
                    match.result_proof_p1 = proof_ref
                else:
                    match.result_proof_p2 = proof_ref

                completed = False
                other = submissions.get("2" if slot == 1 else "1")
                if other is None:
                    match.status = MatchStatus.AWAITING_CONFIRMATION
                    if match.started_at is None:
                        match.started_at = now
                elif other["winnerSlot"] == score.winner_slot:
                    completed = await self._confirm(session, tournament, arena, match, other, now)
                else:
                    await open_ticket(
                        session,
                        match,
                        participant_id,
                        "Conflicting result submissions",
                    )

        logger.info(
            "match_result_submitted",
            match_id=match_id,
            participant_id=participant_id,
            status=match.status.value,
        )
        if completed:
            await self.tournaments.settle_prize(tournament_id)
        return match

    async def confirm_match(self, match_id: str) -> Match:
        """
        AWAITING_CONFIRMATION -> CONFIRMED using the result on record.

        Idempotent: a CONFIRMED/RESOLVED match is returned unchanged.
        """
        match = await self.get_match(match_id)
        if match.status in TERMINAL_MATCH_STATUSES and match.advanced_at is not None:
            return match
        tournament_id = match.tournament_id

        completed = False
        async with self.lock_manager.lock(LockScope.TOURNAMENT, tournament_id):
            async with session_scope(self.session_factory) as session:
                arena = await self.tournaments.load_arena(session, tournament_id)
                match = arena[match_id]
                if match.status in TERMINAL_MATCH_STATUSES and match.advanced_at is not None:
                    return match

                tournament = await self._ongoing(session, tournament_id)
                now = utcnow()
                if match.status in TERMINAL_MATCH_STATUSES:
                    advance(arena, match, now)
                    completed = await self.tournaments.sync_bracket(
                        session, tournament, arena, now
                    )
                elif match.status == MatchStatus.AWAITING_CONFIRMATION:
                    reports = list((match.submissions or {}).values())
                    completed = await self._confirm(
                        session, tournament, arena, match, reports[0], now
                    )
                else:
                    raise InvalidMatchStateError(match_id, match.status.value, "confirm")

        if completed:
            await self.tournaments.settle_prize(tournament_id)
        return match

    # -------------------------------------------------------------------------

    async def _confirm(
        self,
        session,
        tournament: Tournament,
        arena: Arena,
        match: Match,
        report: dict[str, Any],
        now: datetime,
    ) -> bool:
        match.participant1_score = report["participant1Score"]
        match.participant2_score = report["participant2Score"]
        set_winner(match, slot_entrant(match, report["winnerSlot"]))
        match.status = MatchStatus.CONFIRMED
        match.completed_at = now
        advance(arena, match, now)

        logger.info(
            "match_confirmed",
            match_id=match.id,
            winner_id=match.winner_id,
            round=match.round_number,
        )
        return await self.tournaments.sync_bracket(session, tournament, arena, now)

    async def _ongoing(self, session, tournament_id: str) -> Tournament:
        tournament = await self.tournaments.load(session, tournament_id, for_update=True)
        if tournament.status != TournamentStatus.ONGOING:
            raise InvalidTournamentStateError(
                tournament_id, tournament.status.value, "play a match of"
            )
        return tournament

    @staticmethod
    def _authorize(match: Match, participant_id: str) -> int:
        slot = slot_of(match, participant_id)
        if slot is None:
            raise UnauthorizedError(participant_id, match.id)
        return slot
