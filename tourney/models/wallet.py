"""Wallet and WalletTransaction models.

- Wallet: one per owner (user or team), balance never negative
- WalletTransaction: append-only ledger entries with integrity hash
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import CheckConstraint, Enum as SQLEnum, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tourney.models.base import (
    Base,
    JSONType,
    Money,
    TimestampMixin,
    UTCDateTime,
    UUIDMixin,
)


class TransactionType(str, Enum):
    """Transaction kinds."""

    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TOURNAMENT_FEE = "TOURNAMENT_FEE"
    PRIZE_PAYOUT = "PRIZE_PAYOUT"
    REFUND = "REFUND"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    REQUIRES_APPROVAL = "REQUIRES_APPROVAL"


# 최종 상태 - 변경 불가
FINAL_TRANSACTION_STATUSES = frozenset(
    {
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELED,
    }
)


class Wallet(Base, UUIDMixin, TimestampMixin):
    """Internal wallet. Mutated only through the ledger."""

    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
    )

    owner_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )
    balance: Mapped[Decimal] = mapped_column(
        Money,
        default=Decimal("0.00"),
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    def __repr__(self) -> str:
        return f"<Wallet {self.id} owner={self.owner_id} balance={self.balance}>"


class WalletTransaction(Base, UUIDMixin, TimestampMixin):
    """Ledger entry.

    The sum of COMPLETED amounts for a wallet equals its balance.
    """

    __tablename__ = "wallet_transactions"

    wallet_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("wallets.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    tx_type: Mapped[TransactionType] = mapped_column(
        SQLEnum(TransactionType),
        nullable=False,
        index=True,
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SQLEnum(TransactionStatus),
        default=TransactionStatus.COMPLETED,
        nullable=False,
        index=True,
    )

    amount: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        comment="Signed amount (+credit/-debit)",
    )
    # NULL until the transaction is applied (REQUIRES_APPROVAL withdrawals)
    balance_before: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    balance_after: Mapped[Decimal | None] = mapped_column(Money, nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )

    tournament_id: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
        index=True,
    )
    participant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        default=dict,
        nullable=False,
    )

    # Withdrawal approval
    reviewed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    admin_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    integrity_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<WalletTransaction {self.id} {self.tx_type.value} "
            f"{self.amount} {self.status.value}>"
        )
