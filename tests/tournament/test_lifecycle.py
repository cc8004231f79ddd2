"""Tests for the tournament state machine: creation, registration, decision."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from tourney.models.match import MatchStatus
from tourney.models.tournament import (
    BracketType,
    ParticipantStatus,
    ParticipantType,
    TournamentStatus,
)
from tourney.models.wallet import TransactionType
from tourney.services.ledger import fee_key, refund_key
from tourney.tournament.lifecycle import TournamentDecision
from tourney.tournament.matches import MatchScore
from tourney.utils.errors import (
    AlreadyRegisteredError,
    ConflictError,
    InsufficientFundsError,
    InsufficientParticipantsError,
    InvalidTournamentStateError,
    ParticipantNotFoundError,
    TournamentFullError,
    ValidationError,
    WalletNotFoundError,
)


class TestCreateTournament:
    """Tests for tournament creation."""

    @pytest.mark.asyncio
    async def test_create(self, make_tournament):
        tournament = await make_tournament(max_participants=16, entry_fee="5", prize_pool="60")

        assert tournament.status == TournamentStatus.UPCOMING
        assert tournament.current_participants == 0
        assert tournament.entry_fee == Decimal("5.00")
        assert tournament.prize_pool == Decimal("60.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"max_participants": 1}, "maxParticipants"),
            ({"entry_fee": "-1"}, "entryFee"),
            ({"min_participants": 9}, "minParticipants"),
            ({"bracket_type": BracketType.SWISS}, "bracketType"),
        ],
    )
    async def test_invalid(self, make_tournament, kwargs, field):
        with pytest.raises(ValidationError) as exc:
            await make_tournament(**kwargs)

        assert field in exc.value.details


class TestRegistration:
    """Tests for register_participant."""

    @pytest.mark.asyncio
    async def test_register_debits_fee(self, engine, make_wallet, make_tournament):
        wallet = await make_wallet("alice", "50")
        tournament = await make_tournament(entry_fee="10")

        participant = await engine.tournaments.register_participant(tournament.id, "alice")

        assert participant.status == ParticipantStatus.REGISTERED
        assert await engine.ledger.get_balance(wallet.id) == Decimal("40.00")
        assert (await engine.tournaments.get_tournament(tournament.id)).current_participants == 1

        (fee,) = await engine.ledger.get_transactions(
            wallet.id, tx_type=TransactionType.TOURNAMENT_FEE
        )
        assert fee.idempotency_key == fee_key(tournament.id, "USER", "alice")
        assert fee.amount == Decimal("-10.00")
        assert fee.tournament_id == tournament.id

    @pytest.mark.asyncio
    async def test_free_tournament_needs_no_wallet(self, engine, make_tournament):
        tournament = await make_tournament()

        await engine.tournaments.register_participant(tournament.id, "team-1", ParticipantType.TEAM)

        (participant,) = await engine.tournaments.list_participants(tournament.id)
        assert participant.participant_type == ParticipantType.TEAM

    @pytest.mark.asyncio
    async def test_paid_tournament_needs_wallet(self, engine, make_tournament):
        tournament = await make_tournament(entry_fee="10")

        with pytest.raises(WalletNotFoundError):
            await engine.tournaments.register_participant(tournament.id, "ghost")

    @pytest.mark.asyncio
    async def test_duplicate_registration(self, engine, make_wallet, make_tournament):
        """Should reject the second registration without charging twice."""
        wallet = await make_wallet("alice", "50")
        tournament = await make_tournament(entry_fee="10")
        await engine.tournaments.register_participant(tournament.id, "alice")

        with pytest.raises(AlreadyRegisteredError):
            await engine.tournaments.register_participant(tournament.id, "alice")

        assert await engine.ledger.get_balance(wallet.id) == Decimal("40.00")
        assert (await engine.tournaments.get_tournament(tournament.id)).current_participants == 1

    @pytest.mark.asyncio
    async def test_insufficient_funds_leaves_no_partial_state(
        self, engine, make_wallet, make_tournament
    ):
        wallet = await make_wallet("alice", "5")
        tournament = await make_tournament(entry_fee="10")

        with pytest.raises(InsufficientFundsError):
            await engine.tournaments.register_participant(tournament.id, "alice")

        assert await engine.tournaments.list_participants(tournament.id) == []
        assert (await engine.tournaments.get_tournament(tournament.id)).current_participants == 0
        assert await engine.ledger.get_balance(wallet.id) == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_full(self, engine, make_tournament):
        tournament = await make_tournament(max_participants=2)
        await engine.tournaments.register_participant(tournament.id, "a")
        await engine.tournaments.register_participant(tournament.id, "b")

        with pytest.raises(TournamentFullError):
            await engine.tournaments.register_participant(tournament.id, "c")

    @pytest.mark.asyncio
    async def test_concurrent_registrations_respect_capacity(
        self, engine, make_wallet, make_tournament
    ):
        """N concurrent registrations on capacity C: exactly C succeed."""
        capacity, players = 3, [f"user-{i}" for i in range(8)]
        for player in players:
            await make_wallet(player, "10")
        tournament = await make_tournament(max_participants=capacity, entry_fee="10")

        results = await asyncio.gather(
            *[
                engine.tournaments.register_participant(tournament.id, player)
                for player in players
            ],
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) == capacity
        assert len(failed) == len(players) - capacity
        assert all(isinstance(e, ConflictError) for e in failed)

        refreshed = await engine.tournaments.get_tournament(tournament.id)
        assert refreshed.current_participants == capacity

        charged = 0
        for player in players:
            wallet = await engine.ledger.get_wallet_by_owner(player)
            if wallet.balance == Decimal("0.00"):
                charged += 1
        assert charged == capacity

    @pytest.mark.asyncio
    async def test_registration_closed_after_start(self, engine, started_tournament):
        tournament_id = await started_tournament(["a", "b"])

        with pytest.raises(InvalidTournamentStateError):
            await engine.tournaments.register_participant(tournament_id, "c")

    @pytest.mark.asyncio
    async def test_full_tournament_checked_before_wallet(
        self, engine, make_wallet, make_tournament
    ):
        """A caller without a wallet still gets TournamentFullError on a full paid event."""
        tournament = await make_tournament(max_participants=2, entry_fee="5")
        for player in ["a", "b"]:
            await make_wallet(player, "5")
            await engine.tournaments.register_participant(tournament.id, player)

        with pytest.raises(TournamentFullError):
            await engine.tournaments.register_participant(tournament.id, "nowallet")

    @pytest.mark.asyncio
    async def test_started_tournament_checked_before_wallet(self, engine, started_tournament):
        tournament_id = await started_tournament(["a", "b"], entry_fee="5")

        with pytest.raises(InvalidTournamentStateError):
            await engine.tournaments.register_participant(tournament_id, "nowallet")


class TestRemoveParticipant:
    """Tests for withdrawing a registration before the start."""

    @pytest.mark.asyncio
    async def test_withdraw_refunds_fee(self, engine, make_wallet, make_tournament):
        wallet = await make_wallet("alice", "50")
        tournament = await make_tournament(entry_fee="10")
        await engine.tournaments.register_participant(tournament.id, "alice")

        refund = await engine.tournaments.remove_participant(tournament.id, "alice")

        assert refund.amount == Decimal("10.00")
        assert refund.tx_type == TransactionType.REFUND
        assert refund.idempotency_key == refund_key(tournament.id, "USER", "alice")
        assert await engine.ledger.get_balance(wallet.id) == Decimal("50.00")
        assert await engine.tournaments.list_participants(tournament.id) == []
        assert (await engine.tournaments.get_tournament(tournament.id)).current_participants == 0
        assert (await engine.ledger.reconcile(wallet.id)).consistent

    @pytest.mark.asyncio
    async def test_reregistration_after_withdrawal(self, engine, make_wallet, make_tournament):
        """A second registration is charged and refunded under its own keys."""
        wallet = await make_wallet("alice", "50")
        tournament = await make_tournament(entry_fee="10")
        await engine.tournaments.register_participant(tournament.id, "alice")
        await engine.tournaments.remove_participant(tournament.id, "alice")

        await engine.tournaments.register_participant(tournament.id, "alice")

        fees = await engine.ledger.get_transactions(
            wallet.id, tx_type=TransactionType.TOURNAMENT_FEE
        )
        assert {tx.idempotency_key for tx in fees} == {
            fee_key(tournament.id, "USER", "alice"),
            fee_key(tournament.id, "USER", "alice", 1),
        }
        assert await engine.ledger.get_balance(wallet.id) == Decimal("40.00")

        await engine.tournaments.cancel_tournament(tournament.id, "rain")

        refunds = await engine.ledger.get_transactions(wallet.id, tx_type=TransactionType.REFUND)
        assert {tx.idempotency_key for tx in refunds} == {
            refund_key(tournament.id, "USER", "alice"),
            refund_key(tournament.id, "USER", "alice", 1),
        }
        assert await engine.ledger.get_balance(wallet.id) == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_free_withdrawal_frees_a_slot(self, engine, make_tournament):
        tournament = await make_tournament(max_participants=2)
        for player in ["a", "b"]:
            await engine.tournaments.register_participant(tournament.id, player)

        assert await engine.tournaments.remove_participant(tournament.id, "a") is None

        await engine.tournaments.register_participant(tournament.id, "c")
        participants = await engine.tournaments.list_participants(tournament.id)
        assert {p.participant_id for p in participants} == {"b", "c"}

    @pytest.mark.asyncio
    async def test_not_registered(self, engine, make_tournament):
        tournament = await make_tournament()
        await engine.tournaments.register_participant(tournament.id, "a", ParticipantType.TEAM)

        with pytest.raises(ParticipantNotFoundError):
            await engine.tournaments.remove_participant(tournament.id, "a")

    @pytest.mark.asyncio
    async def test_closed_after_start(self, engine, started_tournament):
        tournament_id = await started_tournament(["a", "b"])

        with pytest.raises(InvalidTournamentStateError):
            await engine.tournaments.remove_participant(tournament_id, "a")

        participants = await engine.tournaments.list_participants(tournament_id)
        assert len(participants) == 2


class TestDecision:
    """Tests for begin_decision / decide_tournament / cancel_tournament."""

    @pytest.mark.asyncio
    async def test_not_due(self, engine, make_tournament):
        tournament = await make_tournament(start_in=timedelta(hours=1))

        with pytest.raises(InvalidTournamentStateError):
            await engine.tournaments.begin_decision(tournament.id)

    @pytest.mark.asyncio
    async def test_start_builds_bracket(self, engine, make_wallet, make_tournament):
        tournament = await make_tournament(entry_fee="10")
        for player in ["a", "b", "c"]:
            await make_wallet(player, "10")
            await engine.tournaments.register_participant(tournament.id, player)

        outcome = await engine.tournaments.begin_decision(tournament.id)

        assert outcome.started
        assert outcome.match_count == 3
        refreshed = await engine.tournaments.get_tournament(tournament.id)
        assert refreshed.status == TournamentStatus.ONGOING

        participants = await engine.tournaments.list_participants(tournament.id)
        assert {p.participant_id: p.seed for p in participants} == {"a": 1, "b": 2, "c": 3}
        assert all(p.status == ParticipantStatus.ACTIVE for p in participants)

        matches = await engine.matches.list_matches(tournament.id)
        assert sum(m.is_bye for m in matches) == 1
        assert sum(m.status == MatchStatus.SCHEDULED for m in matches) == 1

    @pytest.mark.asyncio
    async def test_auto_cancel_when_too_few(self, engine, make_wallet, make_tournament):
        tournament = await make_tournament(entry_fee="10", min_participants=3)
        wallet = await make_wallet("a", "10")
        await engine.tournaments.register_participant(tournament.id, "a")

        outcome = await engine.tournaments.begin_decision(tournament.id)

        assert outcome.canceled
        assert len(outcome.refunds.issued) == 1
        assert await engine.ledger.get_balance(wallet.id) == Decimal("10.00")

        refreshed = await engine.tournaments.get_tournament(tournament.id)
        assert refreshed.refunds_settled_at is not None
        (participant,) = await engine.tournaments.list_participants(tournament.id)
        assert participant.status == ParticipantStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_manual_decision(self, engine, make_tournament):
        tournament = await make_tournament(settings={"manual_decision": True})
        await engine.tournaments.register_participant(tournament.id, "a")

        outcome = await engine.tournaments.begin_decision(tournament.id)
        assert outcome.status == TournamentStatus.AWAITING_DECISION

        with pytest.raises(InsufficientParticipantsError):
            await engine.tournaments.decide_tournament(tournament.id, TournamentDecision.START)
        assert (
            await engine.tournaments.get_tournament(tournament.id)
        ).status == TournamentStatus.AWAITING_DECISION

        outcome = await engine.tournaments.decide_tournament(tournament.id, "CANCEL", reason="rain")
        assert outcome.canceled
        assert (await engine.tournaments.get_tournament(tournament.id)).cancel_reason == "rain"

    @pytest.mark.asyncio
    async def test_unknown_decision(self, engine, make_tournament):
        tournament = await make_tournament()

        with pytest.raises(ValidationError):
            await engine.tournaments.decide_tournament(tournament.id, "POSTPONE")

    @pytest.mark.asyncio
    async def test_check_in_required(self, engine, make_tournament):
        """Participants who did not check in become NO_SHOW."""
        tournament = await make_tournament(settings={"require_check_in": True})
        for player in ["a", "b", "c"]:
            await engine.tournaments.register_participant(tournament.id, player)
        await engine.tournaments.check_in(tournament.id, "a")
        await engine.tournaments.check_in(tournament.id, "c")
        await engine.tournaments.check_in(tournament.id, "c")

        outcome = await engine.tournaments.begin_decision(tournament.id)

        assert outcome.started
        statuses = {
            p.participant_id: p.status
            for p in await engine.tournaments.list_participants(tournament.id)
        }
        assert statuses == {
            "a": ParticipantStatus.ACTIVE,
            "b": ParticipantStatus.NO_SHOW,
            "c": ParticipantStatus.ACTIVE,
        }

    @pytest.mark.asyncio
    async def test_cancel_ongoing_refunds_everyone(self, engine, started_tournament):
        tournament_id = await started_tournament(["a", "b", "c", "d"], entry_fee="10")

        outcome = await engine.tournaments.cancel_tournament(tournament_id, "server outage")
        again = await engine.tournaments.cancel_tournament(tournament_id, "server outage")

        assert outcome.canceled
        assert len(outcome.refunds.issued) == 4
        assert again.refunds.issued == []
        for player in ["a", "b", "c", "d"]:
            wallet = await engine.ledger.get_wallet_by_owner(player)
            assert wallet.balance == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_cancel_free_tournament_settles_at_once(self, engine, make_tournament):
        tournament = await make_tournament()
        await engine.tournaments.cancel_tournament(tournament.id, "typo")

        refreshed = await engine.tournaments.get_tournament(tournament.id)
        assert refreshed.status == TournamentStatus.CANCELED
        assert refreshed.refunds_settled_at is not None

    @pytest.mark.asyncio
    async def test_settle_refunds_requires_canceled(self, engine, make_tournament):
        tournament = await make_tournament()

        with pytest.raises(InvalidTournamentStateError):
            await engine.tournaments.settle_refunds(tournament.id)

    @pytest.mark.asyncio
    async def test_cannot_cancel_completed(self, engine, started_tournament):
        tournament_id = await started_tournament(["a", "b"])
        (final,) = await engine.matches.list_matches(tournament_id)
        await engine.submit_match_result(final.id, "a", MatchScore(2, 0))
        await engine.submit_match_result(final.id, "b", MatchScore(2, 0))

        with pytest.raises(InvalidTournamentStateError):
            await engine.tournaments.cancel_tournament(tournament_id, "too late")
