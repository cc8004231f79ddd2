"""Tests for engine error classes."""

from decimal import Decimal

from tourney.utils.errors import (
    AlreadyResolvedError,
    ConflictError,
    EngineError,
    ErrorCode,
    InsufficientFundsError,
    InsufficientParticipantsError,
    InvalidMatchStateError,
    InvalidStateError,
    LockAcquisitionError,
    MatchNotFoundError,
    NotFoundError,
    TournamentFullError,
    ValidationError,
)


class TestErrorCodes:
    """Each error carries a kind and the entity ids involved."""

    def test_not_found_details(self):
        error = MatchNotFoundError("m-1")

        assert isinstance(error, NotFoundError)
        assert error.code == ErrorCode.MATCH_NOT_FOUND.value
        assert error.details == {"entity": "match", "entityId": "m-1"}
        assert "m-1" in error.message

    def test_conflicts(self):
        full = TournamentFullError("t-1", 4)
        resolved = AlreadyResolvedError("d-1", "RESOLVED_VOID")

        assert isinstance(full, ConflictError)
        assert isinstance(resolved, ConflictError)
        assert full.details["capacity"] == 4
        assert resolved.code == ErrorCode.DISPUTE_ALREADY_RESOLVED.value

    def test_state_errors(self):
        error = InvalidMatchStateError("m-1", "PENDING", "confirm")
        too_few = InsufficientParticipantsError(count=1, required=3, tournament_id="t-1")

        assert isinstance(error, InvalidStateError)
        assert error.message == "Cannot confirm match m-1 in status PENDING"
        assert too_few.details == {"count": 1, "required": 3, "tournamentId": "t-1"}

    def test_recoverable_flags(self):
        assert InsufficientFundsError("w-1", Decimal("5.00"), Decimal("1.00")).recoverable
        assert LockAcquisitionError("lock:wallet:w-1", 5000).recoverable
        assert not ValidationError("bad").recoverable

    def test_to_dict(self):
        error = InsufficientFundsError("w-1", Decimal("5.00"), Decimal("1.00"))

        assert error.to_dict() == {
            "errorCode": "INSUFFICIENT_FUNDS",
            "errorMessage": "Insufficient funds: required 5.00, available 1.00",
            "details": {"walletId": "w-1", "required": "5.00", "available": "1.00"},
            "recoverable": True,
        }

    def test_plain_string_code(self):
        error = EngineError("CUSTOM", "custom failure")

        assert error.code == "CUSTOM"
        assert str(error) == "custom failure"
