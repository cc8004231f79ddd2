"""Custom exception classes for engine errors.

Every error carries an error code and the ids of the entities involved so the
presentation layer can render a specific message.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standard error codes for engine errors."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"

    # Not found
    NOT_FOUND = "NOT_FOUND"
    WALLET_NOT_FOUND = "WALLET_NOT_FOUND"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    TOURNAMENT_NOT_FOUND = "TOURNAMENT_NOT_FOUND"
    PARTICIPANT_NOT_FOUND = "PARTICIPANT_NOT_FOUND"
    MATCH_NOT_FOUND = "MATCH_NOT_FOUND"
    DISPUTE_NOT_FOUND = "DISPUTE_NOT_FOUND"

    # Conflicts
    CONFLICT = "CONFLICT"
    WALLET_EXISTS = "WALLET_EXISTS"
    DUPLICATE_IDEMPOTENCY_KEY = "DUPLICATE_IDEMPOTENCY_KEY"
    TOURNAMENT_FULL = "TOURNAMENT_FULL"
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    DISPUTE_ALREADY_OPEN = "DISPUTE_ALREADY_OPEN"
    DISPUTE_ALREADY_RESOLVED = "DISPUTE_ALREADY_RESOLVED"

    # Lifecycle state
    INVALID_STATE = "INVALID_STATE"
    INVALID_MATCH_STATE = "INVALID_MATCH_STATE"
    INVALID_TOURNAMENT_STATE = "INVALID_TOURNAMENT_STATE"
    INSUFFICIENT_PARTICIPANTS = "INSUFFICIENT_PARTICIPANTS"

    # Money
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"

    # Infrastructure
    LOCK_TIMEOUT = "LOCK_TIMEOUT"


class EngineError(Exception):
    """Base exception for engine errors.

    Attributes:
        code: Error code for programmatic handling
        message: Developer-facing description
        details: Entity ids and values involved
        recoverable: Whether retrying the same call may succeed
    """

    def __init__(
        self,
        code: ErrorCode | str,
        message: str,
        details: dict[str, Any] | None = None,
        recoverable: bool = False,
    ):
        self.code = code.value if isinstance(code, ErrorCode) else code
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "errorCode": self.code,
            "errorMessage": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


class ValidationError(EngineError):
    """Raised for malformed input (amounts, scores, verdicts)."""

    def __init__(
        self,
        message: str = "Invalid request",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            code=ErrorCode.INVALID_REQUEST,
            message=message,
            details=details,
        )


# =============================================================================
# Not found
# =============================================================================


class NotFoundError(EngineError):
    """Raised when a referenced entity does not exist."""

    entity = "Entity"
    code_value = ErrorCode.NOT_FOUND

    def __init__(self, entity_id: str):
        super().__init__(
            code=self.code_value,
            message=f"{self.entity} not found: {entity_id}",
            details={"entity": self.entity.lower(), "entityId": entity_id},
        )
        self.entity_id = entity_id


class WalletNotFoundError(NotFoundError):
    entity = "Wallet"
    code_value = ErrorCode.WALLET_NOT_FOUND


class TransactionNotFoundError(NotFoundError):
    entity = "Transaction"
    code_value = ErrorCode.TRANSACTION_NOT_FOUND


class TournamentNotFoundError(NotFoundError):
    entity = "Tournament"
    code_value = ErrorCode.TOURNAMENT_NOT_FOUND


class ParticipantNotFoundError(NotFoundError):
    entity = "Participant"
    code_value = ErrorCode.PARTICIPANT_NOT_FOUND


class MatchNotFoundError(NotFoundError):
    entity = "Match"
    code_value = ErrorCode.MATCH_NOT_FOUND


class DisputeNotFoundError(NotFoundError):
    entity = "Dispute"
    code_value = ErrorCode.DISPUTE_NOT_FOUND


# =============================================================================
# Conflicts
# =============================================================================


class ConflictError(EngineError):
    """Raised when the operation collides with existing state."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        code: ErrorCode | str = ErrorCode.CONFLICT,
    ):
        super().__init__(code=code, message=message, details=details)


class WalletAlreadyExistsError(ConflictError):
    def __init__(self, owner_id: str):
        super().__init__(
            f"Wallet already exists for owner {owner_id}",
            details={"ownerId": owner_id},
            code=ErrorCode.WALLET_EXISTS,
        )


class DuplicateIdempotencyKeyError(ConflictError):
    """Raised when an idempotency key is reused with different arguments.

    Signals a client replay bug; the request is rejected, never merged.
    """

    def __init__(self, idempotency_key: str, transaction_id: str):
        super().__init__(
            f"Idempotency key {idempotency_key} already used by transaction "
            f"{transaction_id} with different arguments",
            details={
                "idempotencyKey": idempotency_key,
                "transactionId": transaction_id,
            },
            code=ErrorCode.DUPLICATE_IDEMPOTENCY_KEY,
        )


class TournamentFullError(ConflictError):
    def __init__(self, tournament_id: str, capacity: int):
        super().__init__(
            f"Tournament {tournament_id} is full ({capacity} participants)",
            details={"tournamentId": tournament_id, "capacity": capacity},
            code=ErrorCode.TOURNAMENT_FULL,
        )


class AlreadyRegisteredError(ConflictError):
    def __init__(self, tournament_id: str, participant_id: str):
        super().__init__(
            f"Participant {participant_id} already registered for {tournament_id}",
            details={"tournamentId": tournament_id, "participantId": participant_id},
            code=ErrorCode.ALREADY_REGISTERED,
        )


class DisputeAlreadyOpenError(ConflictError):
    def __init__(self, match_id: str, ticket_id: str):
        super().__init__(
            f"Match {match_id} already has an open dispute {ticket_id}",
            details={"matchId": match_id, "ticketId": ticket_id},
            code=ErrorCode.DISPUTE_ALREADY_OPEN,
        )


class AlreadyResolvedError(ConflictError):
    def __init__(self, ticket_id: str, status: str):
        super().__init__(
            f"Dispute {ticket_id} is already {status}",
            details={"ticketId": ticket_id, "status": status},
            code=ErrorCode.DISPUTE_ALREADY_RESOLVED,
        )


# =============================================================================
# Lifecycle state
# =============================================================================


class InvalidStateError(EngineError):
    """Raised when an operation is illegal for the current lifecycle state."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        code: ErrorCode | str = ErrorCode.INVALID_STATE,
    ):
        super().__init__(code=code, message=message, details=details)


class InvalidMatchStateError(InvalidStateError):
    def __init__(self, match_id: str, status: str, action: str):
        super().__init__(
            f"Cannot {action} match {match_id} in status {status}",
            details={"matchId": match_id, "status": status, "action": action},
            code=ErrorCode.INVALID_MATCH_STATE,
        )


class InvalidTournamentStateError(InvalidStateError):
    def __init__(self, tournament_id: str, status: str, action: str):
        super().__init__(
            f"Cannot {action} tournament {tournament_id} in status {status}",
            details={"tournamentId": tournament_id, "status": status, "action": action},
            code=ErrorCode.INVALID_TOURNAMENT_STATE,
        )


class InsufficientParticipantsError(InvalidStateError):
    def __init__(
        self,
        count: int,
        required: int = 2,
        tournament_id: str | None = None,
    ):
        details: dict[str, Any] = {"count": count, "required": required}
        if tournament_id:
            details["tournamentId"] = tournament_id
        super().__init__(
            f"At least {required} participants are required, got {count}",
            details=details,
            code=ErrorCode.INSUFFICIENT_PARTICIPANTS,
        )


# =============================================================================
# Money / access / infrastructure
# =============================================================================


class InsufficientFundsError(EngineError):
    """Raised when a debit exceeds the available balance."""

    def __init__(
        self,
        wallet_id: str,
        required: Decimal,
        available: Decimal,
    ):
        super().__init__(
            code=ErrorCode.INSUFFICIENT_FUNDS,
            message=f"Insufficient funds: required {required}, available {available}",
            details={
                "walletId": wallet_id,
                "required": str(required),
                "available": str(available),
            },
            recoverable=True,
        )


class UnauthorizedError(EngineError):
    """Raised when the actor is not a participant of the match or tournament."""

    def __init__(self, actor_id: str, entity_id: str, message: str | None = None):
        super().__init__(
            code=ErrorCode.UNAUTHORIZED,
            message=message or f"{actor_id} is not a participant of {entity_id}",
            details={"actorId": actor_id, "entityId": entity_id},
        )


class LockAcquisitionError(EngineError):
    """Failed to acquire a lock within timeout.

    Transient; the caller retries with the same idempotency key.
    """

    def __init__(self, lock_key: str, timeout_ms: int):
        super().__init__(
            code=ErrorCode.LOCK_TIMEOUT,
            message=f"Failed to acquire lock {lock_key} within {timeout_ms}ms",
            details={"lockKey": lock_key, "timeoutMs": timeout_ms},
            recoverable=True,
        )
