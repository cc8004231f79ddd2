"""Bracket advancement over an arena of matches.

The arena is a dict of Match rows indexed by id. Every edge is forward-only
(winner -> next_match_id, loser -> next_match_loser_id) and resolved by
lookup; there are no in-memory references between matches.

Slot delivery rules:
- Both slots FILLED            -> SCHEDULED
- One FILLED, one EMPTY        -> bye: CONFIRMED, winner advances at once
- Both EMPTY                   -> dead match: CONFIRMED without winner,
                                  advances EMPTY on both edges
- Any slot still PENDING       -> PENDING

Used both by the bracket builder (round-one byes) and at runtime
(confirmation, dispute overrides). All functions are synchronous and do no
I/O; the caller persists the mutated rows.
"""

from datetime import datetime
from typing import NamedTuple, Optional

from tourney.models.match import Match, MatchStatus, SlotState
from tourney.models.tournament import ParticipantType
from tourney.utils.errors import InvalidStateError

Arena = dict[str, Match]

# 진행 중인 매치 - 슬롯이 바뀌면 결과를 초기화한다
_RESETTABLE = frozenset(
    {
        MatchStatus.PENDING,
        MatchStatus.SCHEDULED,
        MatchStatus.IN_PROGRESS,
        MatchStatus.AWAITING_CONFIRMATION,
    }
)


class Entrant(NamedTuple):
    participant_id: str
    participant_type: ParticipantType


class Delivery(NamedTuple):
    target_id: str
    slot: int
    entrant: Optional[Entrant]


# =============================================================================
# Slot accessors
# =============================================================================


def slot_state(match: Match, slot: int) -> SlotState:
    return match.slot1_state if slot == 1 else match.slot2_state


def slot_entrant(match: Match, slot: int) -> Optional[Entrant]:
    if slot == 1:
        pid, ptype = match.participant1_id, match.participant1_type
    else:
        pid, ptype = match.participant2_id, match.participant2_type
    if pid is None:
        return None
    return Entrant(pid, ptype)


def set_slot(
    match: Match,
    slot: int,
    entrant: Optional[Entrant],
    state: SlotState,
) -> None:
    pid = entrant.participant_id if entrant else None
    ptype = entrant.participant_type if entrant else None
    if slot == 1:
        match.participant1_id, match.participant1_type = pid, ptype
        match.slot1_state = state
    else:
        match.participant2_id, match.participant2_type = pid, ptype
        match.slot2_state = state


def entrants(match: Match) -> list[Entrant]:
    return [e for e in (slot_entrant(match, 1), slot_entrant(match, 2)) if e]


def slot_of(match: Match, participant_id: str) -> Optional[int]:
    """Slot (1 or 2) held by participant_id, or None."""
    for slot in (1, 2):
        entrant = slot_entrant(match, slot)
        if entrant and entrant.participant_id == participant_id:
            return slot
    return None


def winner_of(match: Match) -> Optional[Entrant]:
    if match.winner_id is None:
        return None
    return Entrant(match.winner_id, match.winner_type)


def loser_of(match: Match) -> Optional[Entrant]:
    winner = winner_of(match)
    if winner is None:
        return None
    for entrant in entrants(match):
        if entrant != winner:
            return entrant
    return None


def set_winner(match: Match, winner: Optional[Entrant]) -> None:
    match.winner_id = winner.participant_id if winner else None
    match.winner_type = winner.participant_type if winner else None


def clear_result(match: Match) -> None:
    """Drop scores, proofs and submissions (rematch or replay)."""
    match.participant1_score = None
    match.participant2_score = None
    match.result_proof_p1 = None
    match.result_proof_p2 = None
    match.submissions = {}
    match.started_at = None
    match.completed_at = None
    set_winner(match, None)


# =============================================================================
# Delivery
# =============================================================================


def outputs(match: Match) -> list[Delivery]:
    """What a decided match sends downstream."""
    result = []
    if match.next_match_id:
        result.append(Delivery(match.next_match_id, match.next_match_slot, winner_of(match)))
    if match.next_match_loser_id:
        result.append(
            Delivery(match.next_match_loser_id, match.next_match_loser_slot, loser_of(match))
        )
    return result


def settle(arena: Arena, match: Match, now: datetime) -> None:
    """Recompute the status of a match whose slots changed."""
    if match.status not in (MatchStatus.PENDING, MatchStatus.SCHEDULED):
        return

    states = (match.slot1_state, match.slot2_state)
    if SlotState.PENDING in states:
        match.status = MatchStatus.PENDING
        return

    present = entrants(match)
    if len(present) == 2:
        if match.status != MatchStatus.SCHEDULED:
            match.status = MatchStatus.SCHEDULED
            match.scheduled_at = now
        return

    # bye (one entrant) or dead match (none)
    match.is_bye = True
    match.status = MatchStatus.CONFIRMED
    match.completed_at = now
    set_winner(match, present[0] if present else None)
    advance(arena, match, now)


def advance(arena: Arena, match: Match, now: datetime) -> None:
    """Deliver a decided match's outputs. Idempotent via advanced_at."""
    if match.advanced_at is not None:
        return
    match.advanced_at = now
    for delivery in outputs(match):
        _deliver(arena, delivery, now)


def _deliver(arena: Arena, delivery: Delivery, now: datetime) -> None:
    target = arena[delivery.target_id]
    state = SlotState.FILLED if delivery.entrant else SlotState.EMPTY
    set_slot(target, delivery.slot, delivery.entrant, state)
    settle(arena, target, now)


def _unchanged(target: Match, slot: int, entrant: Optional[Entrant], state: SlotState) -> bool:
    return slot_state(target, slot) == state and slot_entrant(target, slot) == entrant


def _ensure_targets_mutable(
    arena: Arena,
    match: Match,
    changes: list[tuple[Delivery, SlotState]],
) -> None:
    """Refuse before mutating anything if a changed target is already decided."""
    for delivery, state in changes:
        target = arena[delivery.target_id]
        if slot_state(target, delivery.slot) == SlotState.PENDING:
            continue
        if _unchanged(target, delivery.slot, delivery.entrant, state):
            continue
        if target.status not in _RESETTABLE:
            raise InvalidStateError(
                f"Downstream match {target.id} is already {target.status.value}",
                details={
                    "matchId": match.id,
                    "downstreamMatchId": target.id,
                    "downstreamStatus": target.status.value,
                },
            )


def redeliver(arena: Arena, match: Match, now: datetime) -> None:
    """Re-send outputs of a match whose result was overridden.

    Downstream matches that have not been decided are reset to a fresh state
    with the new occupant. A decided downstream match raises
    InvalidStateError and nothing is changed.
    """
    if match.advanced_at is None:
        advance(arena, match, now)
        return

    planned = [
        (d, SlotState.FILLED if d.entrant else SlotState.EMPTY) for d in outputs(match)
    ]
    _ensure_targets_mutable(arena, match, planned)

    for delivery, state in planned:
        target = arena[delivery.target_id]
        if _unchanged(target, delivery.slot, delivery.entrant, state):
            continue
        clear_result(target)
        target.status = MatchStatus.PENDING
        _deliver(arena, delivery, now)
    match.advanced_at = now


def retract(arena: Arena, match: Match) -> None:
    """Withdraw delivered outputs so the match can be replayed."""
    if match.advanced_at is None:
        return

    planned = [
        (Delivery(d.target_id, d.slot, None), SlotState.PENDING) for d in outputs(match)
    ]
    _ensure_targets_mutable(arena, match, planned)

    for delivery, _ in planned:
        target = arena[delivery.target_id]
        if slot_state(target, delivery.slot) == SlotState.PENDING:
            continue
        clear_result(target)
        set_slot(target, delivery.slot, None, SlotState.PENDING)
        target.status = MatchStatus.PENDING
    match.advanced_at = None


# =============================================================================
# Queries
# =============================================================================


def final_match(arena: Arena) -> Match:
    """The single match without a winner edge (final or grand final)."""
    finals = [m for m in arena.values() if m.next_match_id is None]
    if len(finals) != 1:
        raise InvalidStateError(
            f"Bracket must have exactly one final, found {len(finals)}",
            details={"finals": [m.id for m in finals]},
        )
    return finals[0]


def eliminated_entrants(arena: Arena) -> set[Entrant]:
    """Entrants knocked out by a decided match (lost without a loser route, or void)."""
    out: set[Entrant] = set()
    for match in arena.values():
        if not match.is_terminal:
            continue
        winner = winner_of(match)
        for entrant in entrants(match):
            if entrant == winner:
                continue
            if winner is not None and match.next_match_loser_id:
                continue
            out.add(entrant)
    return out
