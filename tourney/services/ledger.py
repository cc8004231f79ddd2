"""Ledger service: wallet balances and the append-only transaction log.

Features:
- Atomic credit/debit (balance update + log append in one DB transaction)
- Exactly-once postings through idempotency keys
- Wallet-scoped distributed locks for concurrent safety
- SHA-256 integrity hash on every applied transaction
- Resumable, per-participant tournament refunds
- Withdrawal requests with manual approval
"""

import hashlib
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.config import Settings, get_settings
from tourney.models.base import CENT, utcnow
from tourney.models.wallet import (
    FINAL_TRANSACTION_STATUSES,
    TransactionStatus,
    TransactionType,
    Wallet,
    WalletTransaction,
)
from tourney.utils.db import SessionFactory, session_scope
from tourney.utils.errors import (
    DuplicateIdempotencyKeyError,
    InsufficientFundsError,
    InvalidStateError,
    TransactionNotFoundError,
    ValidationError,
    WalletAlreadyExistsError,
    WalletNotFoundError,
)
from tourney.utils.locks import DistributedLockManager, LockScope

logger = logging.getLogger(__name__)


def _participant_key(
    tournament_id: str,
    participant_type: str,
    participant_id: str,
    suffix: str,
    registration: int,
) -> str:
    key = f"tournament:{tournament_id}:participant:{participant_type}:{participant_id}:{suffix}"
    # 탈퇴 후 재등록은 새 키를 쓴다 (첫 등록은 번호 없음)
    return f"{key}:{registration}" if registration else key


def fee_key(
    tournament_id: str,
    participant_type: str,
    participant_id: str,
    registration: int = 0,
) -> str:
    return _participant_key(tournament_id, participant_type, participant_id, "fee", registration)


def refund_key(
    tournament_id: str,
    participant_type: str,
    participant_id: str,
    registration: int = 0,
) -> str:
    return _participant_key(
        tournament_id, participant_type, participant_id, "refund", registration
    )


def prize_key(tournament_id: str) -> str:
    return f"tournament:{tournament_id}:prize"


@dataclass
class RefundSummary:
    """Result of one refund_all pass."""

    tournament_id: str
    issued: list[WalletTransaction] = field(default_factory=list)
    skipped: int = 0
    remaining: int = 0

    @property
    def total_refunded(self) -> Decimal:
        return sum((tx.amount for tx in self.issued), Decimal("0.00"))

    @property
    def settled(self) -> bool:
        return self.remaining == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tournament_id": self.tournament_id,
            "issued": len(self.issued),
            "skipped": self.skipped,
            "remaining": self.remaining,
            "total_refunded": str(self.total_refunded),
        }


@dataclass
class Reconciliation:
    wallet_id: str
    balance: Decimal
    completed_sum: Decimal

    @property
    def consistent(self) -> bool:
        return self.balance == self.completed_sum


class Ledger:
    """Subsystem of record for wallet balances.

    Every mutation runs under the wallet lock inside its own DB transaction.
    `post()` is the in-session primitive for callers that already hold the
    wallet lock and need the posting to commit with their own changes.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        lock_manager: DistributedLockManager,
        settings: Settings | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.settings = settings or get_settings()

    # =========================================================================
    # Wallets
    # =========================================================================

    async def create_wallet(
        self,
        owner_id: str,
        currency: str | None = None,
    ) -> Wallet:
        """Create the single wallet of an owner (user or team)."""
        currency = (currency or self.settings.default_currency).upper()
        if len(currency) != 3:
            raise ValidationError(
                "Currency must be a 3-letter code", details={"currency": currency}
            )

        try:
            async with session_scope(self.session_factory) as session:
                existing = await session.execute(
                    select(Wallet.id).where(Wallet.owner_id == owner_id)
                )
                if existing.scalar_one_or_none() is not None:
                    raise WalletAlreadyExistsError(owner_id)

                wallet = Wallet(
                    owner_id=owner_id,
                    balance=Decimal("0.00"),
                    currency=currency,
                )
                session.add(wallet)
        except IntegrityError as exc:
            raise WalletAlreadyExistsError(owner_id) from exc

        logger.info(f"Wallet created: owner={owner_id} wallet={wallet.id}")
        return wallet

    async def get_wallet(self, wallet_id: str) -> Wallet:
        async with self.session_factory() as session:
            wallet = await session.get(Wallet, wallet_id)
            if wallet is None:
                raise WalletNotFoundError(wallet_id)
            return wallet

    async def get_wallet_by_owner(self, owner_id: str) -> Wallet:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Wallet).where(Wallet.owner_id == owner_id)
            )
            wallet = result.scalar_one_or_none()
            if wallet is None:
                raise WalletNotFoundError(owner_id)
            return wallet

    async def get_balance(self, wallet_id: str) -> Decimal:
        wallet = await self.get_wallet(wallet_id)
        return wallet.balance

    @staticmethod
    async def load_wallet(
        session: AsyncSession,
        wallet_id: str,
        for_update: bool = True,
    ) -> Wallet:
        query = select(Wallet).where(Wallet.id == wallet_id)
        if for_update:
            query = query.with_for_update()
        wallet = (await session.execute(query)).scalar_one_or_none()
        if wallet is None:
            raise WalletNotFoundError(wallet_id)
        return wallet

    # =========================================================================
    # Postings
    # =========================================================================

    async def credit(
        self,
        wallet_id: str,
        amount: Decimal | int | str,
        tx_type: TransactionType,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        tournament_id: str | None = None,
        participant_id: str | None = None,
        description: str | None = None,
    ) -> WalletTransaction:
        """Increase balance and record a COMPLETED transaction.

        Replaying the same idempotency key with the same wallet, kind and
        amount returns the stored transaction without a second posting.

        Raises:
            WalletNotFoundError, DuplicateIdempotencyKeyError, ValidationError
        """
        return await self._apply(
            wallet_id,
            validate_amount(amount),
            tx_type,
            idempotency_key,
            metadata,
            tournament_id=tournament_id,
            participant_id=participant_id,
            description=description,
        )

    async def debit(
        self,
        wallet_id: str,
        amount: Decimal | int | str,
        tx_type: TransactionType,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        tournament_id: str | None = None,
        participant_id: str | None = None,
        description: str | None = None,
    ) -> WalletTransaction:
        """Decrease balance and record a COMPLETED transaction.

        Raises:
            InsufficientFundsError: If balance < amount
            WalletNotFoundError, DuplicateIdempotencyKeyError, ValidationError
        """
        return await self._apply(
            wallet_id,
            -validate_amount(amount),
            tx_type,
            idempotency_key,
            metadata,
            tournament_id=tournament_id,
            participant_id=participant_id,
            description=description,
        )

    async def deposit(
        self,
        wallet_id: str,
        amount: Decimal | int | str,
        idempotency_key: str | None = None,
        description: str | None = None,
    ) -> WalletTransaction:
        return await self.credit(
            wallet_id,
            amount,
            TransactionType.DEPOSIT,
            idempotency_key,
            description=description or "Deposit",
        )

    async def _apply(
        self,
        wallet_id: str,
        signed_amount: Decimal,
        tx_type: TransactionType,
        idempotency_key: str | None,
        metadata: dict[str, Any] | None,
        **fields: Any,
    ) -> WalletTransaction:
        if idempotency_key:
            existing = await self._find_by_key(idempotency_key)
            if existing is not None:
                return self._replay(existing, wallet_id, tx_type, signed_amount)

        async with self.lock_manager.lock(LockScope.WALLET, wallet_id):
            try:
                async with session_scope(self.session_factory) as session:
                    if idempotency_key:
                        # 락 대기 중 같은 키로 먼저 처리된 경우
                        existing = await self._find_by_key(idempotency_key, session)
                        if existing is not None:
                            return self._replay(
                                existing, wallet_id, tx_type, signed_amount
                            )

                    wallet = await self.load_wallet(session, wallet_id)
                    tx = self.post(
                        session,
                        wallet,
                        signed_amount,
                        tx_type,
                        idempotency_key=idempotency_key,
                        metadata=metadata,
                        **fields,
                    )
            except IntegrityError:
                # Same key posted concurrently to another wallet
                if not idempotency_key:
                    raise
                existing = await self._find_by_key(idempotency_key)
                if existing is None:
                    raise
                return self._replay(existing, wallet_id, tx_type, signed_amount)

        return tx

    def post(
        self,
        session: AsyncSession,
        wallet: Wallet,
        signed_amount: Decimal,
        tx_type: TransactionType,
        *,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
        tournament_id: str | None = None,
        participant_id: str | None = None,
        description: str | None = None,
    ) -> WalletTransaction:
        """Apply a posting inside the caller's transaction.

        The caller must hold the wallet lock and have loaded `wallet` in
        `session`. Balance change and log append commit together.
        """
        balance_before = wallet.balance
        balance_after = balance_before + signed_amount

        if balance_after < 0:
            raise InsufficientFundsError(
                wallet_id=wallet.id,
                required=-signed_amount,
                available=balance_before,
            )

        now = utcnow()
        tx = WalletTransaction(
            wallet_id=wallet.id,
            tx_type=tx_type,
            status=TransactionStatus.COMPLETED,
            amount=signed_amount,
            balance_before=balance_before,
            balance_after=balance_after,
            idempotency_key=idempotency_key,
            tournament_id=tournament_id,
            participant_id=participant_id,
            description=description,
            meta=dict(metadata or {}),
            completed_at=now,
            created_at=now,
            updated_at=now,
            integrity_hash=self._compute_integrity_hash(
                wallet_id=wallet.id,
                tx_type=tx_type,
                amount=signed_amount,
                balance_before=balance_before,
                balance_after=balance_after,
                idempotency_key=idempotency_key,
            ),
        )
        wallet.balance = balance_after
        session.add(tx)

        logger.info(
            f"Ledger posting: wallet={wallet.id} type={tx_type.value} "
            f"amount={signed_amount:+} balance={balance_before} -> {balance_after}"
        )
        return tx

    async def _find_by_key(
        self,
        idempotency_key: str,
        session: AsyncSession | None = None,
    ) -> WalletTransaction | None:
        query = select(WalletTransaction).where(
            WalletTransaction.idempotency_key == idempotency_key
        )
        if session is not None:
            return (await session.execute(query)).scalar_one_or_none()
        async with self.session_factory() as own_session:
            return (await own_session.execute(query)).scalar_one_or_none()

    @staticmethod
    def _replay(
        existing: WalletTransaction,
        wallet_id: str,
        tx_type: TransactionType,
        signed_amount: Decimal,
    ) -> WalletTransaction:
        if (
            existing.wallet_id != wallet_id
            or existing.tx_type != tx_type
            or existing.amount != signed_amount
        ):
            raise DuplicateIdempotencyKeyError(existing.idempotency_key, existing.id)

        logger.debug(f"Idempotent replay: key={existing.idempotency_key} tx={existing.id}")
        return existing

    # =========================================================================
    # Tournament refunds
    # =========================================================================

    async def refund_all(
        self,
        tournament_id: str,
        amount: Decimal | int | str | None = None,
        reason: str = "Tournament canceled",
        limit: int | None = None,
    ) -> RefundSummary:
        """Refund every COMPLETED entry-fee debit of a tournament.

        Each refund is an independent keyed credit committed on its own, so
        a crash mid-loop is resumed by calling this again. `amount` defaults
        to the fee actually paid; `limit` bounds the refunds issued per call.
        """
        refund_amount = validate_amount(amount) if amount is not None else None

        async with self.session_factory() as session:
            fees = (
                await session.execute(
                    select(WalletTransaction)
                    .where(
                        WalletTransaction.tournament_id == tournament_id,
                        WalletTransaction.tx_type == TransactionType.TOURNAMENT_FEE,
                        WalletTransaction.status == TransactionStatus.COMPLETED,
                    )
                    .order_by(WalletTransaction.created_at, WalletTransaction.id)
                )
            ).scalars().all()
            done_keys = set(
                (
                    await session.execute(
                        select(WalletTransaction.idempotency_key).where(
                            WalletTransaction.tournament_id == tournament_id,
                            WalletTransaction.tx_type == TransactionType.REFUND,
                        )
                    )
                ).scalars()
            )

        summary = RefundSummary(tournament_id=tournament_id)
        pending = []
        for fee in fees:
            key = refund_key(
                tournament_id,
                fee.meta.get("participantType", "USER"),
                fee.participant_id,
                fee.meta.get("registration", 0),
            )
            if key in done_keys:
                summary.skipped += 1
            else:
                pending.append((fee, key))

        batch = pending if limit is None else pending[:limit]
        summary.remaining = len(pending) - len(batch)

        for fee, key in batch:
            tx = await self.credit(
                fee.wallet_id,
                refund_amount if refund_amount is not None else -fee.amount,
                TransactionType.REFUND,
                idempotency_key=key,
                metadata={
                    "reason": reason,
                    "feeTransactionId": fee.id,
                    "participantType": fee.meta.get("participantType", "USER"),
                },
                tournament_id=tournament_id,
                participant_id=fee.participant_id,
                description=f"Refund: {reason}",
            )
            summary.issued.append(tx)

        logger.info(
            f"Refund pass: tournament={tournament_id} issued={len(summary.issued)} "
            f"skipped={summary.skipped} remaining={summary.remaining}"
        )
        return summary

    # =========================================================================
    # Withdrawals
    # =========================================================================

    async def request_withdrawal(
        self,
        wallet_id: str,
        amount: Decimal | int | str,
        idempotency_key: str | None = None,
        description: str | None = None,
    ) -> WalletTransaction:
        """Record a withdrawal awaiting approval. The balance is untouched.

        Raises:
            InsufficientFundsError: If amount exceeds balance minus other
                withdrawals awaiting approval
        """
        signed_amount = -validate_amount(amount)

        async with self.lock_manager.lock(LockScope.WALLET, wallet_id):
            async with session_scope(self.session_factory) as session:
                if idempotency_key:
                    existing = await self._find_by_key(idempotency_key, session)
                    if existing is not None:
                        return self._replay(
                            existing, wallet_id, TransactionType.WITHDRAWAL, signed_amount
                        )

                wallet = await self.load_wallet(session, wallet_id)
                reserved = await self._reserved_for_withdrawals(session, wallet_id)
                available = wallet.balance - reserved
                if -signed_amount > available:
                    raise InsufficientFundsError(
                        wallet_id=wallet_id,
                        required=-signed_amount,
                        available=available,
                    )

                tx = WalletTransaction(
                    wallet_id=wallet_id,
                    tx_type=TransactionType.WITHDRAWAL,
                    status=TransactionStatus.REQUIRES_APPROVAL,
                    amount=signed_amount,
                    idempotency_key=idempotency_key,
                    description=description or "Withdrawal request",
                    meta={},
                )
                session.add(tx)

        logger.info(f"Withdrawal requested: wallet={wallet_id} amount={-signed_amount}")
        return tx

    async def approve_withdrawal(
        self,
        transaction_id: str,
        approver_id: str,
        notes: str | None = None,
    ) -> WalletTransaction:
        """REQUIRES_APPROVAL -> COMPLETED, debiting the balance."""
        wallet_id = (await self.get_transaction(transaction_id)).wallet_id

        async with self.lock_manager.lock(LockScope.WALLET, wallet_id):
            async with session_scope(self.session_factory) as session:
                tx = await self._load_pending_withdrawal(session, transaction_id, "approve")
                wallet = await self.load_wallet(session, wallet_id)

                balance_before = wallet.balance
                balance_after = balance_before + tx.amount
                if balance_after < 0:
                    raise InsufficientFundsError(
                        wallet_id=wallet_id,
                        required=-tx.amount,
                        available=balance_before,
                    )

                now = utcnow()
                wallet.balance = balance_after
                tx.status = TransactionStatus.COMPLETED
                tx.balance_before = balance_before
                tx.balance_after = balance_after
                tx.completed_at = now
                tx.reviewed_by = approver_id
                tx.admin_note = notes
                tx.integrity_hash = self._compute_integrity_hash(
                    wallet_id=wallet_id,
                    tx_type=tx.tx_type,
                    amount=tx.amount,
                    balance_before=balance_before,
                    balance_after=balance_after,
                    idempotency_key=tx.idempotency_key,
                )

        logger.info(
            f"Withdrawal approved: tx={transaction_id} by={approver_id} "
            f"balance={balance_before} -> {balance_after}"
        )
        return tx

    async def reject_withdrawal(
        self,
        transaction_id: str,
        approver_id: str,
        reason: str,
    ) -> WalletTransaction:
        """REQUIRES_APPROVAL -> CANCELED."""
        wallet_id = (await self.get_transaction(transaction_id)).wallet_id

        async with self.lock_manager.lock(LockScope.WALLET, wallet_id):
            async with session_scope(self.session_factory) as session:
                tx = await self._load_pending_withdrawal(session, transaction_id, "reject")
                tx.status = TransactionStatus.CANCELED
                tx.reviewed_by = approver_id
                tx.admin_note = reason

        logger.info(f"Withdrawal rejected: tx={transaction_id} by={approver_id}")
        return tx

    async def _load_pending_withdrawal(
        self,
        session: AsyncSession,
        transaction_id: str,
        action: str,
    ) -> WalletTransaction:
        tx = (
            await session.execute(
                select(WalletTransaction)
                .where(WalletTransaction.id == transaction_id)
                .with_for_update()
            )
        ).scalar_one_or_none()
        if tx is None:
            raise TransactionNotFoundError(transaction_id)
        if tx.status in FINAL_TRANSACTION_STATUSES:
            raise InvalidStateError(
                f"Transaction {transaction_id} is already {tx.status.value}",
                details={"transactionId": transaction_id, "status": tx.status.value},
            )
        if (
            tx.tx_type != TransactionType.WITHDRAWAL
            or tx.status != TransactionStatus.REQUIRES_APPROVAL
        ):
            raise InvalidStateError(
                f"Cannot {action} transaction {transaction_id}",
                details={"transactionId": transaction_id, "status": tx.status.value},
            )
        return tx

    @staticmethod
    async def _reserved_for_withdrawals(session: AsyncSession, wallet_id: str) -> Decimal:
        reserved = (
            await session.execute(
                select(func.sum(WalletTransaction.amount)).where(
                    WalletTransaction.wallet_id == wallet_id,
                    WalletTransaction.tx_type == TransactionType.WITHDRAWAL,
                    WalletTransaction.status == TransactionStatus.REQUIRES_APPROVAL,
                )
            )
        ).scalar_one_or_none()
        return -(reserved or Decimal("0.00"))

    # =========================================================================
    # Queries & audit
    # =========================================================================

    async def get_transaction(self, transaction_id: str) -> WalletTransaction:
        async with self.session_factory() as session:
            tx = await session.get(WalletTransaction, transaction_id)
            if tx is None:
                raise TransactionNotFoundError(transaction_id)
            return tx

    async def get_transactions(
        self,
        wallet_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        tx_type: TransactionType | None = None,
        tournament_id: str | None = None,
    ) -> list[WalletTransaction]:
        """Get a wallet's transaction history, newest first."""
        query = select(WalletTransaction).where(WalletTransaction.wallet_id == wallet_id)
        if tx_type:
            query = query.where(WalletTransaction.tx_type == tx_type)
        if tournament_id:
            query = query.where(WalletTransaction.tournament_id == tournament_id)
        query = (
            query.order_by(
                WalletTransaction.created_at.desc(), WalletTransaction.id.desc()
            )
            .offset(offset)
            .limit(limit)
        )

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def reconcile(self, wallet_id: str) -> Reconciliation:
        """Compare the balance with the sum of COMPLETED amounts."""
        async with self.session_factory() as session:
            wallet = await session.get(Wallet, wallet_id)
            if wallet is None:
                raise WalletNotFoundError(wallet_id)
            completed_sum = (
                await session.execute(
                    select(func.sum(WalletTransaction.amount)).where(
                        WalletTransaction.wallet_id == wallet_id,
                        WalletTransaction.status == TransactionStatus.COMPLETED,
                    )
                )
            ).scalar_one_or_none()

        result = Reconciliation(
            wallet_id=wallet_id,
            balance=wallet.balance,
            completed_sum=completed_sum or Decimal("0.00"),
        )
        if not result.consistent:
            logger.error(
                f"Ledger mismatch: wallet={wallet_id} balance={result.balance} "
                f"completed_sum={result.completed_sum}"
            )
        return result

    @staticmethod
    def _compute_integrity_hash(
        wallet_id: str,
        tx_type: TransactionType,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        idempotency_key: str | None,
    ) -> str:
        """Compute SHA-256 integrity hash for transaction.

        This hash can be verified later to detect tampering.
        """
        data = (
            f"{wallet_id}:{tx_type.value}:{amount:.2f}:{balance_before:.2f}:"
            f"{balance_after:.2f}:{idempotency_key or ''}"
        )
        return hashlib.sha256(data.encode()).hexdigest()

    @staticmethod
    def verify_integrity(tx: WalletTransaction) -> bool:
        """Verify transaction integrity hash."""
        if tx.status != TransactionStatus.COMPLETED or tx.integrity_hash is None:
            return False
        expected = Ledger._compute_integrity_hash(
            wallet_id=tx.wallet_id,
            tx_type=tx.tx_type,
            amount=tx.amount,
            balance_before=tx.balance_before,
            balance_after=tx.balance_after,
            idempotency_key=tx.idempotency_key,
        )
        return tx.integrity_hash == expected


def validate_amount(amount: Decimal | int | str) -> Decimal:
    """Positive amount with at most 2 fractional digits."""
    if isinstance(amount, float):
        raise ValidationError(
            "Amounts must be Decimal, int or str", details={"amount": repr(amount)}
        )
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Invalid amount", details={"amount": str(amount)}) from exc

    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be positive", details={"amount": str(amount)})
    if value != value.quantize(CENT):
        raise ValidationError(
            "Amount must have at most 2 fractional digits",
            details={"amount": str(amount)},
        )
    return value.quantize(CENT)
