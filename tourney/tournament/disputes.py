"""
Dispute Resolver.

Moderator decisions that force a contested match into a final state,
bypassing the normal two-sided confirmation.

Verdicts:
- PARTICIPANT1_WIN / PARTICIPANT2_WIN: match CONFIRMED with that winner;
  already delivered outputs are re-routed downstream
- REPLAY: match back to SCHEDULED with result cleared; delivered outputs
  are withdrawn
- VOID: match CONFIRMED without winner, both participants eliminated,
  every downstream slot it feeds becomes EMPTY

Re-routing never rewrites a downstream match that is already decided; the
resolution is refused (InvalidStateError) and the ticket stays open.
"""

from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.logging_config import get_logger
from tourney.models.base import utcnow
from tourney.models.dispute import (
    ACTIVE_DISPUTE_STATUSES,
    DisputeStatus,
    DisputeTicket,
    DisputeVerdict,
)
from tourney.models.match import Match, MatchStatus
from tourney.models.tournament import TournamentStatus
from tourney.tournament.advancement import (
    clear_result,
    redeliver,
    retract,
    set_winner,
    slot_entrant,
    slot_of,
)
from tourney.tournament.lifecycle import TournamentStateMachine
from tourney.utils.db import SessionFactory, session_scope
from tourney.utils.errors import (
    AlreadyResolvedError,
    ConflictError,
    DisputeAlreadyOpenError,
    DisputeNotFoundError,
    InvalidMatchStateError,
    InvalidTournamentStateError,
    MatchNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from tourney.utils.locks import DistributedLockManager, LockScope

logger = get_logger(__name__)

_DISPUTABLE = frozenset(
    {
        MatchStatus.AWAITING_CONFIRMATION,
        MatchStatus.CONFIRMED,
        MatchStatus.RESOLVED,
    }
)


@dataclass(frozen=True)
class ScoreOverride:
    """Optional moderator-set score accompanying a win verdict."""

    participant1: int
    participant2: int


async def active_ticket(session: AsyncSession, match_id: str) -> Optional[DisputeTicket]:
    result = await session.execute(
        select(DisputeTicket).where(
            DisputeTicket.match_id == match_id,
            DisputeTicket.status.in_(ACTIVE_DISPUTE_STATUSES),
        )
    )
    return result.scalar_one_or_none()


async def open_ticket(
    session: AsyncSession,
    match: Match,
    reporter_id: str,
    reason: str,
) -> DisputeTicket:
    """Create the active ticket of a match and flag the match DISPUTED.

    The caller holds the tournament lock.
    """
    existing = await active_ticket(session, match.id)
    if existing is not None:
        raise DisputeAlreadyOpenError(match.id, existing.id)

    ticket = DisputeTicket(
        id=str(uuid4()),
        match_id=match.id,
        tournament_id=match.tournament_id,
        reporter_id=reporter_id,
        reason=reason,
        status=DisputeStatus.OPEN,
        match_status_before=match.status,
    )
    session.add(ticket)
    match.status = MatchStatus.DISPUTED

    logger.info(
        "dispute_opened",
        ticket_id=ticket.id,
        match_id=match.id,
        reporter_id=reporter_id,
    )
    return ticket


class DisputeResolver:
    """Opens, reviews and resolves dispute tickets."""

    def __init__(
        self,
        session_factory: SessionFactory,
        lock_manager: DistributedLockManager,
        tournaments: TournamentStateMachine,
    ) -> None:
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.tournaments = tournaments

    async def get_ticket(self, ticket_id: str) -> DisputeTicket:
        async with self.session_factory() as session:
            ticket = await session.get(DisputeTicket, ticket_id)
            if ticket is None:
                raise DisputeNotFoundError(ticket_id)
            return ticket

    async def open_dispute(
        self,
        match_id: str,
        reporter_id: str,
        reason: str,
    ) -> DisputeTicket:
        """
        Contest a submitted or confirmed result.

        Raises:
            ValidationError: Empty reason
            UnauthorizedError: Reporter is not in the match
            InvalidMatchStateError: Match not disputable (pending, bye, ...)
            DisputeAlreadyOpenError: Match already has an active ticket
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Dispute reason is required", details={"matchId": match_id})

        tournament_id = await self._tournament_of_match(match_id)

        try:
            async with self.lock_manager.lock(LockScope.TOURNAMENT, tournament_id):
                async with session_scope(self.session_factory) as session:
                    tournament = await self.tournaments.load(session, tournament_id)
                    if tournament.status != TournamentStatus.ONGOING:
                        raise InvalidTournamentStateError(
                            tournament_id, tournament.status.value, "dispute a match of"
                        )

                    match = await session.get(Match, match_id)
                    if slot_of(match, reporter_id) is None:
                        raise UnauthorizedError(reporter_id, match_id)
                    existing = await active_ticket(session, match_id)
                    if existing is not None:
                        raise DisputeAlreadyOpenError(match_id, existing.id)
                    if match.status not in _DISPUTABLE or match.is_bye:
                        raise InvalidMatchStateError(
                            match_id, match.status.value, "dispute"
                        )

                    ticket = await open_ticket(session, match, reporter_id, reason)
        except IntegrityError as exc:
            raise ConflictError(
                f"Match {match_id} already has an open dispute",
                details={"matchId": match_id},
            ) from exc

        return ticket

    async def claim_dispute(self, ticket_id: str, moderator_id: str) -> DisputeTicket:
        """OPEN -> UNDER_REVIEW by a moderator."""
        tournament_id = (await self.get_ticket(ticket_id)).tournament_id

        async with self.lock_manager.lock(LockScope.TOURNAMENT, tournament_id):
            async with session_scope(self.session_factory) as session:
                ticket = await self._load_active(session, ticket_id)
                if ticket.status == DisputeStatus.UNDER_REVIEW:
                    if ticket.moderator_id != moderator_id:
                        raise ConflictError(
                            f"Dispute {ticket_id} is under review by another moderator",
                            details={"ticketId": ticket_id, "moderatorId": ticket.moderator_id},
                        )
                    return ticket
                ticket.status = DisputeStatus.UNDER_REVIEW
                ticket.moderator_id = moderator_id

        logger.info("dispute_claimed", ticket_id=ticket_id, moderator_id=moderator_id)
        return ticket

    async def resolve_dispute(
        self,
        ticket_id: str,
        moderator_id: str,
        verdict: DisputeVerdict | str,
        details: Optional[str] = None,
        score: Optional[ScoreOverride] = None,
    ) -> Match:
        """
        Apply a moderator verdict. Only one verdict may apply per ticket.

        Raises:
            AlreadyResolvedError: Ticket already resolved or closed
            InvalidStateError: A downstream match is already decided
            ValidationError: Unknown verdict, or score contradicting it
        """
        try:
            verdict = DisputeVerdict(verdict)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown verdict: {verdict}", details={"verdict": str(verdict)}
            ) from exc
        if score is not None:
            self._check_score(verdict, score)

        tournament_id = (await self.get_ticket(ticket_id)).tournament_id

        async with self.lock_manager.lock(LockScope.TOURNAMENT, tournament_id):
            async with session_scope(self.session_factory) as session:
                ticket = await self._load_active(session, ticket_id)
                tournament = await self.tournaments.load(
                    session, tournament_id, for_update=True
                )
                if tournament.status != TournamentStatus.ONGOING:
                    raise InvalidTournamentStateError(
                        tournament_id, tournament.status.value, "resolve a dispute of"
                    )

                arena = await self.tournaments.load_arena(session, tournament_id)
                match = arena[ticket.match_id]
                now = utcnow()

                if verdict == DisputeVerdict.REPLAY:
                    retract(arena, match)
                    clear_result(match)
                    match.status = MatchStatus.SCHEDULED
                    match.scheduled_at = now
                else:
                    if verdict == DisputeVerdict.VOID:
                        winner = None
                    else:
                        slot = 1 if verdict == DisputeVerdict.PARTICIPANT1_WIN else 2
                        winner = slot_entrant(match, slot)
                    set_winner(match, winner)
                    match.participant1_score = score.participant1 if score else None
                    match.participant2_score = score.participant2 if score else None
                    match.status = MatchStatus.CONFIRMED
                    match.completed_at = now
                    redeliver(arena, match, now)

                match.moderator_notes = details
                ticket.status = verdict.resolved_status
                ticket.verdict = verdict
                ticket.resolution_details = details
                ticket.moderator_id = moderator_id
                ticket.resolved_at = now

                completed = await self.tournaments.sync_bracket(
                    session, tournament, arena, now
                )

        logger.info(
            "dispute_resolved",
            ticket_id=ticket_id,
            match_id=match.id,
            verdict=verdict.value,
            moderator_id=moderator_id,
        )
        if completed:
            await self.tournaments.settle_prize(tournament_id)
        return match

    async def close_dispute(
        self,
        ticket_id: str,
        moderator_id: str,
        details: Optional[str] = None,
    ) -> DisputeTicket:
        """Dismiss a ticket and keep the recorded result.

        Only possible when the match already had a confirmed result.
        """
        tournament_id = (await self.get_ticket(ticket_id)).tournament_id

        async with self.lock_manager.lock(LockScope.TOURNAMENT, tournament_id):
            async with session_scope(self.session_factory) as session:
                ticket = await self._load_active(session, ticket_id)
                match = await session.get(Match, ticket.match_id)
                if match.advanced_at is None or match.winner_id is None:
                    raise InvalidMatchStateError(
                        match.id, match.status.value, "close the dispute of"
                    )

                match.status = ticket.match_status_before
                ticket.status = DisputeStatus.CLOSED
                ticket.moderator_id = moderator_id
                ticket.resolution_details = details
                ticket.resolved_at = utcnow()

        logger.info("dispute_closed", ticket_id=ticket_id, moderator_id=moderator_id)
        return ticket

    # -------------------------------------------------------------------------

    async def _tournament_of_match(self, match_id: str) -> str:
        async with self.session_factory() as session:
            tournament_id = (
                await session.execute(
                    select(Match.tournament_id).where(Match.id == match_id)
                )
            ).scalar_one_or_none()
        if tournament_id is None:
            raise MatchNotFoundError(match_id)
        return tournament_id

    @staticmethod
    async def _load_active(session: AsyncSession, ticket_id: str) -> DisputeTicket:
        ticket = (
            await session.execute(
                select(DisputeTicket)
                .where(DisputeTicket.id == ticket_id)
                .with_for_update()
            )
        ).scalar_one_or_none()
        if ticket is None:
            raise DisputeNotFoundError(ticket_id)
        if not ticket.is_active:
            raise AlreadyResolvedError(ticket_id, ticket.status.value)
        return ticket

    @staticmethod
    def _check_score(verdict: DisputeVerdict, score: ScoreOverride) -> None:
        if score.participant1 < 0 or score.participant2 < 0:
            raise ValidationError("Scores must not be negative")
        expected = {
            DisputeVerdict.PARTICIPANT1_WIN: score.participant1 > score.participant2,
            DisputeVerdict.PARTICIPANT2_WIN: score.participant2 > score.participant1,
        }.get(verdict)
        if expected is not True:
            raise ValidationError(
                "Score does not match the verdict",
                details={
                    "verdict": verdict.value,
                    "participant1": score.participant1,
                    "participant2": score.participant2,
                },
            )
