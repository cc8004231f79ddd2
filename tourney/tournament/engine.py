"""
Tournament engine.

Wires the ledger, bracket builder and state machines together by explicit
constructor injection and exposes the entry points consumed by the
surrounding system (API handlers, admin tools, the periodic driver).

```python
engine = TournamentEngine.from_settings(get_settings())
try:
    await engine.register_participant(tournament_id, user_id)
    report = await engine.run_lifecycle_tick()
finally:
    await engine.close()
```
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from tourney.config import Settings, get_settings
from tourney.models.dispute import DisputeTicket, DisputeVerdict
from tourney.models.match import Match
from tourney.models.tournament import ParticipantType, TournamentParticipant
from tourney.models.wallet import TransactionType, WalletTransaction
from tourney.services.ledger import Ledger
from tourney.tournament.bracket import BracketBuilder
from tourney.tournament.disputes import DisputeResolver, ScoreOverride
from tourney.tournament.driver import LifecycleDriver, TickReport
from tourney.tournament.lifecycle import TournamentStateMachine
from tourney.tournament.matches import MatchScore, MatchStateMachine
from tourney.utils.db import (
    SessionFactory,
    close_db,
    create_engine_from_settings,
    create_session_factory,
)
from tourney.utils.locks import DistributedLockManager


class TournamentEngine:
    """Entry point of the tournament core."""

    def __init__(
        self,
        session_factory: SessionFactory,
        lock_manager: DistributedLockManager,
        settings: Optional[Settings] = None,
        db_engine: Optional[AsyncEngine] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self._db_engine = db_engine

        self.ledger = Ledger(session_factory, lock_manager, self.settings)
        self.bracket_builder = BracketBuilder()
        self.tournaments = TournamentStateMachine(
            session_factory,
            lock_manager,
            self.ledger,
            self.bracket_builder,
            self.settings,
        )
        self.matches = MatchStateMachine(session_factory, lock_manager, self.tournaments)
        self.disputes = DisputeResolver(session_factory, lock_manager, self.tournaments)
        self.driver = LifecycleDriver(session_factory, self.tournaments, self.settings)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "TournamentEngine":
        """Build DB engine, Redis client and lock manager from settings."""
        settings = settings or get_settings()
        db_engine = create_engine_from_settings(settings)
        return cls(
            create_session_factory(db_engine),
            DistributedLockManager.from_settings(settings),
            settings,
            db_engine=db_engine,
        )

    async def close(self) -> None:
        """Release held locks and dispose of owned connections."""
        await self.lock_manager.close()
        if self._db_engine is not None:
            await close_db(self._db_engine)

    # =========================================================================
    # Entry points
    # =========================================================================

    async def register_participant(
        self,
        tournament_id: str,
        participant_id: str,
        participant_type: ParticipantType | str = ParticipantType.USER,
    ) -> TournamentParticipant:
        return await self.tournaments.register_participant(
            tournament_id, participant_id, participant_type
        )

    async def remove_participant(
        self,
        tournament_id: str,
        participant_id: str,
        participant_type: ParticipantType | str = ParticipantType.USER,
    ) -> Optional[WalletTransaction]:
        return await self.tournaments.remove_participant(
            tournament_id, participant_id, participant_type
        )

    async def submit_match_result(
        self,
        match_id: str,
        participant_id: str,
        score: MatchScore,
        proof_ref: Optional[str] = None,
    ) -> Match:
        return await self.matches.submit_match_result(match_id, participant_id, score, proof_ref)

    async def confirm_match(self, match_id: str) -> Match:
        return await self.matches.confirm_match(match_id)

    async def open_dispute(self, match_id: str, reporter_id: str, reason: str) -> DisputeTicket:
        return await self.disputes.open_dispute(match_id, reporter_id, reason)

    async def resolve_dispute(
        self,
        ticket_id: str,
        moderator_id: str,
        verdict: DisputeVerdict | str,
        details: Optional[str] = None,
        score: Optional[ScoreOverride] = None,
    ) -> Match:
        return await self.disputes.resolve_dispute(
            ticket_id, moderator_id, verdict, details, score
        )

    async def run_lifecycle_tick(self, now: Optional[datetime] = None) -> TickReport:
        return await self.driver.run_lifecycle_tick(now)

    async def credit(
        self,
        wallet_id: str,
        amount: Decimal | int | str,
        tx_type: TransactionType,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> WalletTransaction:
        return await self.ledger.credit(wallet_id, amount, tx_type, idempotency_key, metadata)

    async def debit(
        self,
        wallet_id: str,
        amount: Decimal | int | str,
        tx_type: TransactionType,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> WalletTransaction:
        return await self.ledger.debit(wallet_id, amount, tx_type, idempotency_key, metadata)
