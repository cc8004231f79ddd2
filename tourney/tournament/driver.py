"""
Lifecycle Driver.

Single entry point of the periodic trigger (Celery beat, every minute).
Each tick scans tournaments past a time-based checkpoint and pushes them
one step further:

1. UPCOMING with start_date reached -> AWAITING_DECISION -> decision
2. AWAITING_DECISION left behind by an interrupted tick -> decision
3. CANCELED with refunds outstanding -> next refund batch (one batch per
   tournament per tick)
4. COMPLETED with prize not settled -> keyed payout

Every step is keyed or state-guarded, so a failed or repeated tick is
picked up by the next one. A failing tournament never stops the others.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Optional
from uuid import uuid4

from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from tourney.config import Settings, get_settings
from tourney.logging_config import get_logger, log_context
from tourney.models.base import utcnow
from tourney.models.tournament import Tournament, TournamentStatus
from tourney.tournament.lifecycle import DecisionOutcome, TournamentStateMachine
from tourney.utils.db import SessionFactory
from tourney.utils.errors import EngineError, ErrorCode

logger = get_logger(__name__)


@dataclass
class TickReport:
    """What one lifecycle tick did."""

    started: list[str] = field(default_factory=list)
    canceled: list[str] = field(default_factory=list)
    awaiting_decision: list[str] = field(default_factory=list)
    refunds_issued: int = 0
    prizes_paid: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    def record(self, outcome: DecisionOutcome) -> None:
        if outcome.started:
            self.started.append(outcome.tournament_id)
        elif outcome.canceled:
            self.canceled.append(outcome.tournament_id)
        else:
            self.awaiting_decision.append(outcome.tournament_id)
        if outcome.refunds is not None:
            self.refunds_issued += len(outcome.refunds.issued)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started": list(self.started),
            "canceled": list(self.canceled),
            "awaiting_decision": list(self.awaiting_decision),
            "refunds_issued": self.refunds_issued,
            "prizes_paid": list(self.prizes_paid),
            "errors": list(self.errors),
        }


class LifecycleDriver:
    """Advances tournaments past their time-based checkpoints."""

    def __init__(
        self,
        session_factory: SessionFactory,
        tournaments: TournamentStateMachine,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session_factory = session_factory
        self.tournaments = tournaments
        self.settings = settings or get_settings()

    async def run_lifecycle_tick(self, now: Optional[datetime] = None) -> TickReport:
        now = now or utcnow()
        report = TickReport()
        with log_context(tick_id=uuid4().hex[:12]):
            await self._run_phases(report, now)
        return report

    async def _run_phases(self, report: TickReport, now: datetime) -> None:
        due = await self._scan(
            Tournament.status == TournamentStatus.UPCOMING,
            Tournament.start_date <= now,
        )
        for tournament_id in due:
            await self._guarded(report, tournament_id, self._decide(report, tournament_id, now))

        waiting = await self._scan(Tournament.status == TournamentStatus.AWAITING_DECISION)
        for tournament_id in waiting:
            if tournament_id in due:
                continue
            await self._guarded(
                report, tournament_id, self._resume_decision(report, tournament_id, now)
            )

        unrefunded = await self._scan(
            Tournament.status == TournamentStatus.CANCELED,
            Tournament.refunds_settled_at.is_(None),
        )
        for tournament_id in unrefunded:
            if tournament_id in report.canceled:
                continue
            await self._guarded(report, tournament_id, self._refund(report, tournament_id))

        unpaid = await self._scan(
            Tournament.status == TournamentStatus.COMPLETED,
            Tournament.prize_settled_at.is_(None),
        )
        for tournament_id in unpaid:
            await self._guarded(report, tournament_id, self._pay(report, tournament_id))

        logger.info(
            "lifecycle_tick_finished",
            started=len(report.started),
            canceled=len(report.canceled),
            awaiting_decision=len(report.awaiting_decision),
            refunds_issued=report.refunds_issued,
            prizes_paid=len(report.prizes_paid),
            errors=len(report.errors),
        )

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def _decide(self, report: TickReport, tournament_id: str, now: datetime) -> None:
        report.record(await self.tournaments.begin_decision(tournament_id, now))

    async def _resume_decision(
        self, report: TickReport, tournament_id: str, now: datetime
    ) -> None:
        tournament = await self.tournaments.get_tournament(tournament_id)
        if tournament.manual_decision:
            return
        report.record(await self.tournaments.begin_decision(tournament_id, now))

    async def _refund(self, report: TickReport, tournament_id: str) -> None:
        summary = await self.tournaments.settle_refunds(
            tournament_id, self.settings.lifecycle_refund_batch_size
        )
        report.refunds_issued += len(summary.issued)

    async def _pay(self, report: TickReport, tournament_id: str) -> None:
        tx = await self.tournaments.pay_prize(tournament_id)
        if tx is not None:
            report.prizes_paid.append(tournament_id)

    # -------------------------------------------------------------------------

    async def _scan(self, *criteria) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Tournament.id)
                .where(*criteria)
                .order_by(Tournament.start_date, Tournament.id)
                .limit(self.settings.lifecycle_max_tournaments_per_tick)
            )
            return list(result.scalars().all())

    async def _guarded(
        self,
        report: TickReport,
        tournament_id: str,
        step: Awaitable[None],
    ) -> None:
        with log_context(tournament_id=tournament_id):
            try:
                await step
            except EngineError as e:
                logger.warning("lifecycle_step_failed", error_code=e.code, error=e.message)
                report.errors.append({"tournament_id": tournament_id, "error_code": e.code})
            except (SQLAlchemyError, RedisError) as e:
                code = ErrorCode.INTERNAL_ERROR.value
                logger.error("lifecycle_step_failed", error_code=code, error=str(e))
                report.errors.append({"tournament_id": tournament_id, "error_code": code})
