"""
공통 테스트 Fixture.

- SQLite (aiosqlite) file database per test
- FakeRedis: in-memory stand-in for the lock manager's Redis calls
"""

import time
from datetime import timedelta
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio

from tourney.config import Settings
from tourney.models.base import utcnow
from tourney.models.tournament import BracketType
from tourney.tournament.engine import TournamentEngine
from tourney.tournament.matches import MatchScore
from tourney.utils.db import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from tourney.utils.locks import DistributedLockManager


class FakeRedis:
    """Mock Redis client (SET NX PX, GET, DEL, EXISTS, Lua release script)."""

    def __init__(self):
        self._data = {}
        self._expiry = {}

    def _alive(self, key):
        expires = self._expiry.get(key)
        if expires is not None and expires <= time.monotonic():
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return key in self._data

    async def set(self, key, value, nx=False, px=None):
        if nx and self._alive(key):
            return None
        self._data[key] = value
        if px:
            self._expiry[key] = time.monotonic() + px / 1000
        return True

    async def get(self, key):
        return self._data.get(key) if self._alive(key) else None

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return removed

    async def exists(self, key):
        return 1 if self._alive(key) else 0

    def register_script(self, script):
        async def run_script(keys=None, args=None):
            key, owner = keys[0], args[0]
            if not self._alive(key) or self._data[key] != owner:
                return 0
            return await self.delete(key)

        return run_script

    async def aclose(self):
        pass


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'tourney.db'}",
        lock_timeout_ms=10000,
        lock_acquire_timeout_ms=10000,
        lock_retry_interval_ms=5,
        lifecycle_refund_batch_size=200,
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest_asyncio.fixture
async def db_engine(settings):
    engine = create_engine_from_settings(settings)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def lock_manager(fake_redis, settings):
    return DistributedLockManager.from_settings(settings, redis_client=fake_redis)


@pytest.fixture
def engine(session_factory, lock_manager, settings):
    return TournamentEngine(session_factory, lock_manager, settings)


@pytest.fixture
def ledger(engine):
    return engine.ledger


@pytest.fixture
def make_wallet(engine):
    """Create a wallet for an owner, optionally funded by a deposit."""

    async def _make(owner_id: str, balance: Decimal | str | int = "0"):
        wallet = await engine.ledger.create_wallet(owner_id)
        if Decimal(str(balance)) > 0:
            await engine.ledger.deposit(wallet.id, balance, idempotency_key=f"seed:{owner_id}")
        return wallet

    return _make


@pytest.fixture
def make_tournament(engine):
    """Create an UPCOMING tournament whose start date has already passed."""

    async def _make(
        max_participants: int = 8,
        entry_fee: Decimal | str | int = "0",
        prize_pool: Decimal | str | int = "0",
        min_participants: Optional[int] = None,
        bracket_type: BracketType = BracketType.SINGLE_ELIMINATION,
        settings: Optional[dict] = None,
        start_in: timedelta = timedelta(minutes=-1),
    ):
        return await engine.tournaments.create_tournament(
            name="Friday Cup",
            game_id="game-1",
            max_participants=max_participants,
            start_date=utcnow() + start_in,
            entry_fee=entry_fee,
            prize_pool=prize_pool,
            min_participants=min_participants,
            bracket_type=bracket_type,
            settings=settings,
        )

    return _make


@pytest.fixture
def started_tournament(engine, make_wallet, make_tournament):
    """Register funded players (in order, with optional seeds) and start the bracket.

    Returns the tournament id.
    """

    async def _start(
        players: list[str],
        seeds: Optional[dict[str, int]] = None,
        entry_fee: Decimal | str | int = "10",
        prize_pool: Decimal | str | int = "100",
        bracket_type: BracketType = BracketType.SINGLE_ELIMINATION,
    ) -> str:
        tournament = await make_tournament(
            max_participants=max(len(players), 2),
            entry_fee=entry_fee,
            prize_pool=prize_pool,
            bracket_type=bracket_type,
        )
        for player in players:
            await make_wallet(player, "100")
            await engine.tournaments.register_participant(
                tournament.id, player, seed=(seeds or {}).get(player)
            )
        outcome = await engine.tournaments.begin_decision(tournament.id)
        assert outcome.started
        return tournament.id

    return _start


@pytest.fixture
def play_match(engine):
    """Both participants report the same winner; returns the confirmed match."""

    async def _play(match_id: str, winner_id: str):
        match = await engine.matches.get_match(match_id)
        if match.participant1_id == winner_id:
            score = MatchScore(2, 1)
        else:
            score = MatchScore(1, 2)
        await engine.submit_match_result(match_id, match.participant1_id, score)
        return await engine.submit_match_result(match_id, match.participant2_id, score)

    return _play
