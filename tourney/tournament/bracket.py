"""
Bracket Builder.

Given the ordered field of a tournament, produce the complete match graph
from round one through the final. Pure: builds Match rows in memory and
leaves persistence to the caller.

Seeding:
- Field ordered by explicit seed (unseeded last), registration time, id
- Padded to the next power of two; byes go to the top seeds
- Positions by recursive interleaving, so seed k meets seed (size+1-k):
    2 -> [1, 2]
    4 -> [1, 4, 2, 3]
    8 -> [1, 8, 4, 5, 2, 7, 3, 6]

Routing (fixed at build time, later advancement is lookup only):
- Winners round r match i  -> winners round r+1 match i//2 (slot 1 if i even)
- Double elimination, field 2^k (k >= 2):
    losers R1           <- winners R1 losers, pairwise
    losers R2m (m>=1)   <- losers R(2m-1) winners (slot 1)
                           + winners R(m+1) losers in reversed order (slot 2)
    losers R2m+1        <- losers R2m winners, pairwise
    grand final         <- winners final winner (slot 1) + losers final winner (slot 2)
  With k == 1 the winners-final loser goes straight to grand-final slot 2.
  No bracket reset: the grand final is a single match.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional
from uuid import uuid4

from tourney.models.base import utcnow
from tourney.models.match import BracketSide, Match, MatchStatus, SlotState
from tourney.models.tournament import BracketType, ParticipantType
from tourney.tournament.advancement import Arena, Entrant, set_slot, settle
from tourney.utils.errors import InsufficientParticipantsError, ValidationError


@dataclass(frozen=True)
class SeedEntry:
    """One confirmed participant of the field."""

    participant_id: str
    participant_type: ParticipantType
    registered_at: datetime
    seed: Optional[int] = None

    @property
    def entrant(self) -> Entrant:
        return Entrant(self.participant_id, self.participant_type)


@dataclass
class BracketPlan:
    """Built bracket: all matches plus lookup helpers."""

    tournament_id: str
    bracket_type: BracketType
    entries: list[SeedEntry]
    matches: list[Match] = field(default_factory=list)
    winners_rounds: int = 0
    losers_rounds: int = 0

    @property
    def arena(self) -> Arena:
        return {m.id: m for m in self.matches}

    @property
    def final(self) -> Match:
        return next(m for m in self.matches if m.next_match_id is None)

    def round(self, round_number: int, side: BracketSide = BracketSide.WINNERS) -> list[Match]:
        return sorted(
            (
                m
                for m in self.matches
                if m.bracket_side == side and m.round_number == round_number
            ),
            key=lambda m: m.match_number,
        )


def order_field(entries: Iterable[SeedEntry]) -> list[SeedEntry]:
    """Deterministic seed order."""
    return sorted(
        entries,
        key=lambda e: (
            e.seed is None,
            e.seed if e.seed is not None else 0,
            e.registered_at,
            e.participant_id,
        ),
    )


def seeding_positions(size: int) -> list[int]:
    """Seed number at each round-one position for a power-of-two field."""
    positions = [1]
    while len(positions) < size:
        total = len(positions) * 2
        positions = [p for seed in positions for p in (seed, total + 1 - seed)]
    return positions


class BracketBuilder:
    """Builds single or double elimination brackets."""

    def build(
        self,
        tournament_id: str,
        entries: Iterable[SeedEntry],
        bracket_type: BracketType = BracketType.SINGLE_ELIMINATION,
        now: Optional[datetime] = None,
    ) -> BracketPlan:
        """
        Build the full match graph.

        Raises:
            InsufficientParticipantsError: If fewer than 2 participants
            ValidationError: If the bracket type is not supported
        """
        ordered = order_field(entries)
        if len(ordered) < 2:
            raise InsufficientParticipantsError(
                count=len(ordered), required=2, tournament_id=tournament_id
            )
        if bracket_type not in (
            BracketType.SINGLE_ELIMINATION,
            BracketType.DOUBLE_ELIMINATION,
        ):
            raise ValidationError(
                f"Unsupported bracket type: {bracket_type.value}",
                details={"bracketType": bracket_type.value},
            )

        now = now or utcnow()
        rounds = math.ceil(math.log2(len(ordered)))
        size = 2 ** rounds

        plan = BracketPlan(
            tournament_id=tournament_id,
            bracket_type=bracket_type,
            entries=ordered,
            winners_rounds=rounds,
        )
        winners = self._winners_bracket(plan, rounds)
        if bracket_type == BracketType.DOUBLE_ELIMINATION:
            self._losers_bracket(plan, winners, rounds)

        self._seed_round_one(plan, winners[0], ordered, size, now)
        return plan

    # -------------------------------------------------------------------------

    def _new_match(
        self,
        plan: BracketPlan,
        side: BracketSide,
        round_number: int,
        match_number: int,
    ) -> Match:
        match = Match(
            id=str(uuid4()),
            tournament_id=plan.tournament_id,
            bracket_side=side,
            round_number=round_number,
            match_number=match_number,
            slot1_state=SlotState.PENDING,
            slot2_state=SlotState.PENDING,
            status=MatchStatus.PENDING,
            submissions={},
            is_bye=False,
        )
        plan.matches.append(match)
        return match

    @staticmethod
    def _link(source: Match, target: Match, slot: int, loser: bool = False) -> None:
        if loser:
            source.next_match_loser_id = target.id
            source.next_match_loser_slot = slot
        else:
            source.next_match_id = target.id
            source.next_match_slot = slot

    def _winners_bracket(self, plan: BracketPlan, rounds: int) -> list[list[Match]]:
        size = 2 ** rounds
        by_round: list[list[Match]] = []
        for r in range(1, rounds + 1):
            count = size >> r
            by_round.append(
                [self._new_match(plan, BracketSide.WINNERS, r, i + 1) for i in range(count)]
            )

        for r in range(rounds - 1):
            for i, match in enumerate(by_round[r]):
                self._link(match, by_round[r + 1][i // 2], 1 if i % 2 == 0 else 2)
        return by_round

    def _losers_bracket(
        self,
        plan: BracketPlan,
        winners: list[list[Match]],
        rounds: int,
    ) -> None:
        grand_final = self._new_match(plan, BracketSide.GRAND_FINAL, 1, 1)
        self._link(winners[-1][-1], grand_final, 1)

        if rounds == 1:
            self._link(winners[0][0], grand_final, 2, loser=True)
            return

        size = 2 ** rounds
        losers: list[list[Match]] = []

        # LB R1: winners R1 losers, pairwise
        first = [
            self._new_match(plan, BracketSide.LOSERS, 1, i + 1) for i in range(size // 4)
        ]
        for i, match in enumerate(winners[0]):
            self._link(match, first[i // 2], 1 if i % 2 == 0 else 2, loser=True)
        losers.append(first)

        for m in range(1, rounds):
            # even round: survivors vs. drop-downs from winners R(m+1)
            lb_round = 2 * m
            drop_round = winners[m]
            count = len(drop_round)
            current = [
                self._new_match(plan, BracketSide.LOSERS, lb_round, i + 1)
                for i in range(count)
            ]
            for j, match in enumerate(losers[-1]):
                self._link(match, current[j], 1)
            for i, match in enumerate(drop_round):
                self._link(match, current[count - 1 - i], 2, loser=True)
            losers.append(current)

            if m == rounds - 1:
                break

            # odd round: consolidate survivors
            consolidated = [
                self._new_match(plan, BracketSide.LOSERS, lb_round + 1, i + 1)
                for i in range(count // 2)
            ]
            for j, match in enumerate(current):
                self._link(match, consolidated[j // 2], 1 if j % 2 == 0 else 2)
            losers.append(consolidated)

        self._link(losers[-1][0], grand_final, 2)
        plan.losers_rounds = len(losers)

    def _seed_round_one(
        self,
        plan: BracketPlan,
        round_one: list[Match],
        ordered: list[SeedEntry],
        size: int,
        now: datetime,
    ) -> None:
        positions = seeding_positions(size)
        for i, match in enumerate(round_one):
            for slot, seed in ((1, positions[2 * i]), (2, positions[2 * i + 1])):
                if seed <= len(ordered):
                    set_slot(match, slot, ordered[seed - 1].entrant, SlotState.FILLED)
                else:
                    set_slot(match, slot, None, SlotState.EMPTY)

        arena = plan.arena
        for match in round_one:
            settle(arena, match, now)
