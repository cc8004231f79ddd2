"""
Tournament State Machine.

UPCOMING -> AWAITING_DECISION -> ONGOING -> COMPLETED
                              `-> CANCELED
(explicit cancellation is accepted from UPCOMING, AWAITING_DECISION, ONGOING)

Responsibilities:
- Registration: capacity check, counter increment and entry-fee debit in one
  DB transaction under tournament + wallet locks
- Withdrawal before the start: row delete, counter decrement and keyed fee
  refund in one DB transaction
- Start decision: bracket build over the eligible field, or cancellation with
  resumable refunds
- Completion: winner recorded when the final is decided, prize paid once via
  a keyed credit after the completing transaction commits
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.config import Settings, get_settings
from tourney.logging_config import get_logger
from tourney.models.base import quantize_money, utcnow
from tourney.models.match import Match
from tourney.models.tournament import (
    SUPPORTED_BRACKET_TYPES,
    BracketType,
    ParticipantStatus,
    ParticipantType,
    Tournament,
    TournamentParticipant,
    TournamentStatus,
)
from tourney.models.wallet import TransactionType, WalletTransaction
from tourney.services.ledger import (
    Ledger,
    RefundSummary,
    fee_key,
    prize_key,
    refund_key,
)
from tourney.tournament.advancement import (
    Arena,
    Entrant,
    eliminated_entrants,
    final_match,
    winner_of,
)
from tourney.tournament.bracket import BracketBuilder, SeedEntry
from tourney.utils.db import SessionFactory, session_scope
from tourney.utils.errors import (
    AlreadyRegisteredError,
    ConflictError,
    EngineError,
    InsufficientParticipantsError,
    InvalidTournamentStateError,
    ParticipantNotFoundError,
    TournamentFullError,
    TournamentNotFoundError,
    ValidationError,
)
from tourney.utils.locks import DistributedLockManager, LockScope

logger = get_logger(__name__)

_CANCELABLE = frozenset(
    {
        TournamentStatus.UPCOMING,
        TournamentStatus.AWAITING_DECISION,
        TournamentStatus.ONGOING,
    }
)


class TournamentDecision(str, Enum):
    START = "START"
    CANCEL = "CANCEL"


@dataclass
class DecisionOutcome:
    """Result of a start/cancel decision."""

    tournament_id: str
    status: TournamentStatus
    match_count: int = 0
    refunds: Optional[RefundSummary] = None

    @property
    def started(self) -> bool:
        return self.status == TournamentStatus.ONGOING

    @property
    def canceled(self) -> bool:
        return self.status == TournamentStatus.CANCELED

    def to_dict(self) -> dict[str, Any]:
        return {
            "tournament_id": self.tournament_id,
            "status": self.status.value,
            "match_count": self.match_count,
            "refunds": self.refunds.to_dict() if self.refunds else None,
        }


class TournamentStateMachine:
    """Governs a tournament's lifecycle."""

    def __init__(
        self,
        session_factory: SessionFactory,
        lock_manager: DistributedLockManager,
        ledger: Ledger,
        bracket_builder: Optional[BracketBuilder] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.ledger = ledger
        self.bracket_builder = bracket_builder or BracketBuilder()
        self.settings = settings or get_settings()

    # =========================================================================
    # Creation & queries
    # =========================================================================

    async def create_tournament(
        self,
        name: str,
        game_id: str,
        max_participants: int,
        start_date: datetime,
        *,
        entry_fee: Decimal | int | str = Decimal("0.00"),
        prize_pool: Decimal | int | str = Decimal("0.00"),
        min_participants: Optional[int] = None,
        end_date: Optional[datetime] = None,
        bracket_type: BracketType | str = BracketType.SINGLE_ELIMINATION,
        settings: Optional[dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> Tournament:
        """Create an UPCOMING tournament."""
        bracket_type = BracketType(bracket_type)
        entry_fee = quantize_money(entry_fee)
        prize_pool = quantize_money(prize_pool)

        problems: dict[str, str] = {}
        if not name or not name.strip():
            problems["name"] = "required"
        if entry_fee < 0:
            problems["entryFee"] = "must not be negative"
        if prize_pool < 0:
            problems["prizePool"] = "must not be negative"
        if max_participants < 2:
            problems["maxParticipants"] = "must be at least 2"
        if min_participants is not None and not 2 <= min_participants <= max_participants:
            problems["minParticipants"] = "must be between 2 and maxParticipants"
        if end_date is not None and end_date < start_date:
            problems["endDate"] = "must not be before startDate"
        if bracket_type not in SUPPORTED_BRACKET_TYPES:
            problems["bracketType"] = f"{bracket_type.value} is not supported"
        if problems:
            raise ValidationError("Invalid tournament", details=problems)

        async with session_scope(self.session_factory) as session:
            tournament = Tournament(
                name=name.strip(),
                description=description,
                game_id=game_id,
                entry_fee=entry_fee,
                prize_pool=prize_pool,
                max_participants=max_participants,
                min_participants=min_participants,
                current_participants=0,
                start_date=start_date,
                end_date=end_date,
                status=TournamentStatus.UPCOMING,
                bracket_type=bracket_type,
                settings=dict(settings or {}),
            )
            session.add(tournament)

        logger.info(
            "tournament_created",
            tournament_id=tournament.id,
            capacity=max_participants,
            entry_fee=str(entry_fee),
        )
        return tournament

    async def get_tournament(self, tournament_id: str) -> Tournament:
        async with self.session_factory() as session:
            return await self.load(session, tournament_id)

    async def list_participants(self, tournament_id: str) -> list[TournamentParticipant]:
        async with self.session_factory() as session:
            return await self._participants(session, tournament_id)

    @staticmethod
    async def load(
        session: AsyncSession,
        tournament_id: str,
        for_update: bool = False,
    ) -> Tournament:
        query = select(Tournament).where(Tournament.id == tournament_id)
        if for_update:
            query = query.with_for_update()
        tournament = (await session.execute(query)).scalar_one_or_none()
        if tournament is None:
            raise TournamentNotFoundError(tournament_id)
        return tournament

    @staticmethod
    async def load_arena(session: AsyncSession, tournament_id: str) -> Arena:
        result = await session.execute(
            select(Match).where(Match.tournament_id == tournament_id).with_for_update()
        )
        return {m.id: m for m in result.scalars().all()}

    @staticmethod
    async def _participants(
        session: AsyncSession,
        tournament_id: str,
    ) -> list[TournamentParticipant]:
        result = await session.execute(
            select(TournamentParticipant)
            .where(TournamentParticipant.tournament_id == tournament_id)
            .order_by(
                TournamentParticipant.registered_at,
                TournamentParticipant.participant_id,
            )
        )
        return list(result.scalars().all())

    @staticmethod
    async def _find_participant(
        session: AsyncSession,
        tournament_id: str,
        participant_id: str,
        participant_type: ParticipantType,
    ) -> Optional[TournamentParticipant]:
        result = await session.execute(
            select(TournamentParticipant).where(
                TournamentParticipant.tournament_id == tournament_id,
                TournamentParticipant.participant_id == participant_id,
                TournamentParticipant.participant_type == participant_type,
            )
        )
        return result.scalar_one_or_none()

    # =========================================================================
    # Registration
    # =========================================================================

    async def register_participant(
        self,
        tournament_id: str,
        participant_id: str,
        participant_type: ParticipantType | str = ParticipantType.USER,
        seed: Optional[int] = None,
    ) -> TournamentParticipant:
        """
        Register a user or team. All-or-nothing.

        동시성 제어:
        - tournament 락 -> wallet 락 순서로 획득 (계층 순서)
        - 정원 확인, 카운터 증가, 참가비 차감을 하나의 DB 트랜잭션에서 처리

        Tournament rules are checked before the wallet is resolved, and again
        under the locks.

        Raises:
            InvalidTournamentStateError: Not UPCOMING
            AlreadyRegisteredError, TournamentFullError
            WalletNotFoundError, InsufficientFundsError
        """
        participant_type = ParticipantType(participant_type)

        async with self.session_factory() as session:
            tournament = await self.load(session, tournament_id)
            await self._check_registration(
                session, tournament, participant_id, participant_type
            )

        wallet_id = None
        locks = [(LockScope.TOURNAMENT, tournament_id)]
        if tournament.entry_fee > 0:
            wallet_id = (await self.ledger.get_wallet_by_owner(participant_id)).id
            locks.append((LockScope.WALLET, wallet_id))

        try:
            async with self.lock_manager.multi_lock(locks):
                async with session_scope(self.session_factory) as session:
                    tournament = await self.load(session, tournament_id, for_update=True)
                    await self._check_registration(
                        session, tournament, participant_id, participant_type
                    )

                    participant = TournamentParticipant(
                        tournament_id=tournament_id,
                        participant_id=participant_id,
                        participant_type=participant_type,
                        registered_at=utcnow(),
                        checked_in=False,
                        seed=seed,
                        status=ParticipantStatus.REGISTERED,
                    )
                    session.add(participant)
                    tournament.current_participants += 1

                    if wallet_id is not None:
                        registration = await self._count_fees(
                            session, tournament_id, participant_id, participant_type
                        )
                        wallet = await self.ledger.load_wallet(session, wallet_id)
                        self.ledger.post(
                            session,
                            wallet,
                            -tournament.entry_fee,
                            TransactionType.TOURNAMENT_FEE,
                            idempotency_key=fee_key(
                                tournament_id,
                                participant_type.value,
                                participant_id,
                                registration,
                            ),
                            metadata={
                                "participantType": participant_type.value,
                                "registration": registration,
                            },
                            tournament_id=tournament_id,
                            participant_id=participant_id,
                            description=f"Entry fee: {tournament.name}",
                        )
        except IntegrityError as exc:
            raise AlreadyRegisteredError(tournament_id, participant_id) from exc

        logger.info(
            "participant_registered",
            tournament_id=tournament_id,
            participant_id=participant_id,
            participant_type=participant_type.value,
            count=tournament.current_participants,
        )
        return participant

    async def _check_registration(
        self,
        session: AsyncSession,
        tournament: Tournament,
        participant_id: str,
        participant_type: ParticipantType,
    ) -> None:
        if tournament.status != TournamentStatus.UPCOMING:
            raise InvalidTournamentStateError(
                tournament.id, tournament.status.value, "register for"
            )
        if await self._find_participant(
            session, tournament.id, participant_id, participant_type
        ):
            raise AlreadyRegisteredError(tournament.id, participant_id)
        if tournament.current_participants >= tournament.max_participants:
            raise TournamentFullError(tournament.id, tournament.max_participants)

    async def remove_participant(
        self,
        tournament_id: str,
        participant_id: str,
        participant_type: ParticipantType | str = ParticipantType.USER,
        reason: str = "Registration withdrawn",
    ) -> Optional[WalletTransaction]:
        """
        Withdraw a registration before the tournament starts.

        Row delete, counter decrement and the keyed refund of the entry fee
        commit together under tournament + wallet locks. Returns the refund,
        or None when no fee was paid.

        Raises:
            InvalidTournamentStateError: Not UPCOMING / AWAITING_DECISION
            ParticipantNotFoundError: Not registered
        """
        participant_type = ParticipantType(participant_type)

        async with self.session_factory() as session:
            tournament = await self.load(session, tournament_id)
            self._check_withdrawable(tournament)
            fee = await self._open_fee(session, tournament_id, participant_id, participant_type)

        locks = [(LockScope.TOURNAMENT, tournament_id)]
        if fee is not None:
            locks.append((LockScope.WALLET, fee.wallet_id))

        refund = None
        async with self.lock_manager.multi_lock(locks):
            async with session_scope(self.session_factory) as session:
                tournament = await self.load(session, tournament_id, for_update=True)
                self._check_withdrawable(tournament)
                participant = await self._find_participant(
                    session, tournament_id, participant_id, participant_type
                )
                if participant is None:
                    raise ParticipantNotFoundError(participant_id)
                current = await self._open_fee(
                    session, tournament_id, participant_id, participant_type
                )
                current_id = current.id if current is not None else None
                if current_id != (fee.id if fee is not None else None):
                    raise ConflictError(
                        f"Registration of {participant_id} changed concurrently",
                        details={"tournamentId": tournament_id, "participantId": participant_id},
                    )

                await session.delete(participant)
                tournament.current_participants -= 1

                if fee is not None:
                    registration = fee.meta.get("registration", 0)
                    wallet = await self.ledger.load_wallet(session, fee.wallet_id)
                    refund = self.ledger.post(
                        session,
                        wallet,
                        -fee.amount,
                        TransactionType.REFUND,
                        idempotency_key=refund_key(
                            tournament_id, participant_type.value, participant_id, registration
                        ),
                        metadata={
                            "reason": reason,
                            "feeTransactionId": fee.id,
                            "participantType": participant_type.value,
                            "registration": registration,
                        },
                        tournament_id=tournament_id,
                        participant_id=participant_id,
                        description=f"Refund: {reason}",
                    )

        logger.info(
            "participant_removed",
            tournament_id=tournament_id,
            participant_id=participant_id,
            participant_type=participant_type.value,
            count=tournament.current_participants,
            refunded=str(refund.amount) if refund is not None else None,
        )
        return refund

    @staticmethod
    def _check_withdrawable(tournament: Tournament) -> None:
        if tournament.status not in (
            TournamentStatus.UPCOMING,
            TournamentStatus.AWAITING_DECISION,
        ):
            raise InvalidTournamentStateError(
                tournament.id, tournament.status.value, "withdraw from"
            )

    @staticmethod
    async def _count_fees(
        session: AsyncSession,
        tournament_id: str,
        participant_id: str,
        participant_type: ParticipantType,
    ) -> int:
        """Entry fees ever charged for this registration identity."""
        result = await session.execute(
            select(func.count(WalletTransaction.id)).where(
                WalletTransaction.tournament_id == tournament_id,
                WalletTransaction.participant_id == participant_id,
                WalletTransaction.tx_type == TransactionType.TOURNAMENT_FEE,
                WalletTransaction.idempotency_key.startswith(
                    fee_key(tournament_id, participant_type.value, participant_id),
                    autoescape=True,
                ),
            )
        )
        return result.scalar_one()

    @classmethod
    async def _open_fee(
        cls,
        session: AsyncSession,
        tournament_id: str,
        participant_id: str,
        participant_type: ParticipantType,
    ) -> Optional[WalletTransaction]:
        """The fee paid for the current registration, if any."""
        charged = await cls._count_fees(session, tournament_id, participant_id, participant_type)
        if charged == 0:
            return None
        key = fee_key(tournament_id, participant_type.value, participant_id, charged - 1)
        result = await session.execute(
            select(WalletTransaction).where(WalletTransaction.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def check_in(
        self,
        tournament_id: str,
        participant_id: str,
        participant_type: ParticipantType | str = ParticipantType.USER,
    ) -> TournamentParticipant:
        """Mark a registered participant as present. Idempotent."""
        participant_type = ParticipantType(participant_type)

        async with self.lock_manager.lock(LockScope.TOURNAMENT, tournament_id):
            async with session_scope(self.session_factory) as session:
                tournament = await self.load(session, tournament_id)
                if tournament.status not in (
                    TournamentStatus.UPCOMING,
                    TournamentStatus.AWAITING_DECISION,
                ):
                    raise InvalidTournamentStateError(
                        tournament_id, tournament.status.value, "check in to"
                    )
                participant = await self._find_participant(
                    session, tournament_id, participant_id, participant_type
                )
                if participant is None:
                    raise ParticipantNotFoundError(participant_id)
                participant.checked_in = True

        return participant

    # =========================================================================
    # Start / cancel decision
    # =========================================================================

    async def begin_decision(
        self,
        tournament_id: str,
        now: Optional[datetime] = None,
    ) -> DecisionOutcome:
        """
        Time-driven transition (called by the lifecycle driver).

        UPCOMING (start_date reached) -> AWAITING_DECISION, then decided at
        once unless the tournament asks for a manual decision.
        """
        now = now or utcnow()

        async with self.lock_manager.lock(LockScope.TOURNAMENT, tournament_id):
            async with session_scope(self.session_factory) as session:
                tournament = await self.load(session, tournament_id, for_update=True)

                if tournament.status == TournamentStatus.UPCOMING:
                    if tournament.start_date > now:
                        raise InvalidTournamentStateError(
                            tournament_id, tournament.status.value, "start (not due)"
                        )
                    tournament.status = TournamentStatus.AWAITING_DECISION
                    logger.info("tournament_awaiting_decision", tournament_id=tournament_id)
                elif tournament.status != TournamentStatus.AWAITING_DECISION:
                    raise InvalidTournamentStateError(
                        tournament_id, tournament.status.value, "decide"
                    )

                if tournament.manual_decision:
                    return DecisionOutcome(tournament_id, tournament.status)

                outcome = await self._decide(
                    session, tournament, TournamentDecision.START, now, auto=True
                )

        return await self._after_decision(outcome, self.settings.lifecycle_refund_batch_size)

    async def decide_tournament(
        self,
        tournament_id: str,
        decision: TournamentDecision | str,
        now: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> DecisionOutcome:
        """Explicit START/CANCEL of a tournament waiting in AWAITING_DECISION.

        START still requires enough eligible participants
        (InsufficientParticipantsError otherwise, status unchanged).
        """
        try:
            decision = TournamentDecision(decision)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown decision: {decision}", details={"decision": str(decision)}
            ) from exc
        now = now or utcnow()

        async with self.lock_manager.lock(LockScope.TOURNAMENT, tournament_id):
            async with session_scope(self.session_factory) as session:
                tournament = await self.load(session, tournament_id, for_update=True)
                if tournament.status != TournamentStatus.AWAITING_DECISION:
                    raise InvalidTournamentStateError(
                        tournament_id, tournament.status.value, "decide"
                    )
                outcome = await self._decide(
                    session, tournament, decision, now, auto=False, reason=reason
                )

        return await self._after_decision(outcome, None)

    async def cancel_tournament(
        self,
        tournament_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> DecisionOutcome:
        """Administrative cancellation with refunds.

        Calling it again on a CANCELED tournament resumes pending refunds.
        """
        now = now or utcnow()

        async with self.lock_manager.lock(LockScope.TOURNAMENT, tournament_id):
            async with session_scope(self.session_factory) as session:
                tournament = await self.load(session, tournament_id, for_update=True)
                if tournament.status in _CANCELABLE:
                    self._cancel(tournament, reason or "Canceled by administrator")
                elif tournament.status != TournamentStatus.CANCELED:
                    raise InvalidTournamentStateError(
                        tournament_id, tournament.status.value, "cancel"
                    )

        return await self._after_decision(
            DecisionOutcome(tournament_id, TournamentStatus.CANCELED), None
        )

    async def _decide(
        self,
        session: AsyncSession,
        tournament: Tournament,
        decision: TournamentDecision,
        now: datetime,
        auto: bool,
        reason: Optional[str] = None,
    ) -> DecisionOutcome:
        if decision == TournamentDecision.CANCEL:
            self._cancel(tournament, reason or "Canceled by organizer")
            return DecisionOutcome(tournament.id, tournament.status)

        participants = [
            p
            for p in await self._participants(session, tournament.id)
            if p.status == ParticipantStatus.REGISTERED
        ]
        eligible = [
            p for p in participants if p.checked_in or not tournament.require_check_in
        ]
        required = max(
            2,
            tournament.min_participants or self.settings.tournament_min_participants,
        )

        if len(eligible) < required:
            if not auto:
                raise InsufficientParticipantsError(
                    count=len(eligible), required=required, tournament_id=tournament.id
                )
            self._cancel(
                tournament,
                reason or f"Not enough participants ({len(eligible)}/{required})",
            )
            return DecisionOutcome(tournament.id, tournament.status)

        plan = self.bracket_builder.build(
            tournament.id,
            [
                SeedEntry(
                    participant_id=p.participant_id,
                    participant_type=p.participant_type,
                    registered_at=p.registered_at,
                    seed=p.seed,
                )
                for p in eligible
            ],
            tournament.bracket_type,
            now,
        )
        session.add_all(plan.matches)

        by_entrant = {Entrant(p.participant_id, p.participant_type): p for p in eligible}
        for position, entry in enumerate(plan.entries, start=1):
            participant = by_entrant[entry.entrant]
            participant.seed = position
            participant.status = ParticipantStatus.ACTIVE
        for participant in participants:
            if participant.status == ParticipantStatus.REGISTERED:
                participant.status = ParticipantStatus.NO_SHOW

        tournament.status = TournamentStatus.ONGOING
        logger.info(
            "tournament_started",
            tournament_id=tournament.id,
            participants=len(eligible),
            matches=len(plan.matches),
            bracket_type=tournament.bracket_type.value,
        )
        return DecisionOutcome(tournament.id, tournament.status, match_count=len(plan.matches))

    @staticmethod
    def _cancel(tournament: Tournament, reason: str) -> None:
        tournament.status = TournamentStatus.CANCELED
        tournament.cancel_reason = reason
        logger.info("tournament_canceled", tournament_id=tournament.id, reason=reason)

    async def _after_decision(
        self,
        outcome: DecisionOutcome,
        refund_limit: Optional[int],
    ) -> DecisionOutcome:
        # 커밋 이후 환불 (각 환불은 지갑 락 + 독립 트랜잭션)
        if outcome.canceled:
            outcome.refunds = await self.settle_refunds(outcome.tournament_id, refund_limit)
        return outcome

    # =========================================================================
    # Refunds
    # =========================================================================

    async def settle_refunds(
        self,
        tournament_id: str,
        limit: Optional[int] = None,
    ) -> RefundSummary:
        """Refund entry fees of a CANCELED tournament (resumable)."""
        tournament = await self.get_tournament(tournament_id)
        if tournament.status != TournamentStatus.CANCELED:
            raise InvalidTournamentStateError(
                tournament_id, tournament.status.value, "refund"
            )
        if tournament.refunds_settled_at is not None:
            return RefundSummary(tournament_id=tournament_id)

        summary = await self.ledger.refund_all(
            tournament_id,
            reason=tournament.cancel_reason or "Tournament canceled",
            limit=limit,
        )

        async with session_scope(self.session_factory) as session:
            refunds = (
                await session.execute(
                    select(WalletTransaction).where(
                        WalletTransaction.tournament_id == tournament_id,
                        WalletTransaction.tx_type == TransactionType.REFUND,
                    )
                )
            ).scalars().all()
            refunded = {
                (tx.participant_id, tx.meta.get("participantType", "USER"))
                for tx in refunds
            }
            for participant in await self._participants(session, tournament_id):
                if (participant.participant_id, participant.participant_type.value) in refunded:
                    participant.status = ParticipantStatus.REFUNDED

            if summary.settled:
                tournament = await self.load(session, tournament_id, for_update=True)
                tournament.refunds_settled_at = utcnow()

        logger.info("tournament_refunds", **summary.to_dict())
        return summary

    # =========================================================================
    # Bracket bookkeeping & completion
    # =========================================================================

    async def sync_bracket(
        self,
        session: AsyncSession,
        tournament: Tournament,
        arena: Arena,
        now: datetime,
    ) -> bool:
        """
        Refresh participant statuses after a bracket change and complete the
        tournament when its final is decided.

        Returns:
            True if the tournament became COMPLETED in this call
        """
        knocked_out = eliminated_entrants(arena)
        participants = await self._participants(session, tournament.id)
        for participant in participants:
            if participant.status not in (
                ParticipantStatus.ACTIVE,
                ParticipantStatus.ELIMINATED,
            ):
                continue
            entrant = Entrant(participant.participant_id, participant.participant_type)
            participant.status = (
                ParticipantStatus.ELIMINATED
                if entrant in knocked_out
                else ParticipantStatus.ACTIVE
            )

        final = final_match(arena)
        if tournament.status != TournamentStatus.ONGOING or not final.is_terminal:
            return False

        winner = winner_of(final)
        tournament.status = TournamentStatus.COMPLETED
        tournament.end_date = now
        tournament.winner_participant_id = winner.participant_id if winner else None
        tournament.winner_participant_type = winner.participant_type if winner else None
        if winner is not None:
            for participant in participants:
                if Entrant(participant.participant_id, participant.participant_type) == winner:
                    participant.status = ParticipantStatus.WINNER

        logger.info(
            "tournament_completed",
            tournament_id=tournament.id,
            winner_id=tournament.winner_participant_id,
        )
        return True

    async def pay_prize(self, tournament_id: str) -> Optional[WalletTransaction]:
        """
        Credit the prize pool to the winner once (keyed credit).

        A tournament without winner (void final) or with an empty pool is
        settled without a transaction. Returns the payout transaction, or
        None when nothing was paid in this call.
        """
        async with self.lock_manager.lock(LockScope.TOURNAMENT, tournament_id):
            tournament = await self.get_tournament(tournament_id)
            if tournament.status != TournamentStatus.COMPLETED:
                raise InvalidTournamentStateError(
                    tournament_id, tournament.status.value, "pay prize for"
                )
            if tournament.prize_settled_at is not None:
                return None

            tx = None
            if tournament.winner_participant_id and tournament.prize_pool > 0:
                wallet = await self.ledger.get_wallet_by_owner(
                    tournament.winner_participant_id
                )
                tx = await self.ledger.credit(
                    wallet.id,
                    tournament.prize_pool,
                    TransactionType.PRIZE_PAYOUT,
                    idempotency_key=prize_key(tournament_id),
                    metadata={
                        "participantType": tournament.winner_participant_type.value,
                    },
                    tournament_id=tournament_id,
                    participant_id=tournament.winner_participant_id,
                    description=f"Prize: {tournament.name}",
                )

            async with session_scope(self.session_factory) as session:
                tournament = await self.load(session, tournament_id, for_update=True)
                tournament.prize_settled_at = utcnow()

        logger.info(
            "tournament_prize_settled",
            tournament_id=tournament_id,
            paid=tx is not None,
            winner_id=tournament.winner_participant_id,
        )
        return tx

    async def settle_prize(self, tournament_id: str) -> Optional[WalletTransaction]:
        """pay_prize for callers whose own operation already committed.

        A failure is logged and left to the lifecycle driver, which retries
        every COMPLETED tournament whose prize is not settled.
        """
        try:
            return await self.pay_prize(tournament_id)
        except EngineError as exc:
            logger.error(
                "prize_payout_deferred",
                tournament_id=tournament_id,
                error_code=exc.code,
                error=exc.message,
            )
            return None
