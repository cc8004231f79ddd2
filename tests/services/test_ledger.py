"""Tests for the Ledger service.

Covers postings, idempotent replay, integrity verification, refunds and
withdrawal approval against a real (SQLite) database.
"""

import asyncio
from decimal import Decimal

import pytest

from tourney.models.wallet import TransactionStatus, TransactionType
from tourney.services.ledger import Ledger, fee_key, refund_key, validate_amount
from tourney.utils.errors import (
    DuplicateIdempotencyKeyError,
    InsufficientFundsError,
    InvalidStateError,
    ValidationError,
    WalletAlreadyExistsError,
    WalletNotFoundError,
)


class TestWallets:
    """Tests for wallet creation and lookup."""

    @pytest.mark.asyncio
    async def test_create_wallet(self, ledger):
        wallet = await ledger.create_wallet("user-1")

        assert wallet.id
        assert wallet.balance == Decimal("0.00")
        assert wallet.currency == "USD"
        assert (await ledger.get_wallet_by_owner("user-1")).id == wallet.id

    @pytest.mark.asyncio
    async def test_one_wallet_per_owner(self, ledger):
        await ledger.create_wallet("user-1")

        with pytest.raises(WalletAlreadyExistsError):
            await ledger.create_wallet("user-1", currency="EUR")

    @pytest.mark.asyncio
    async def test_unknown_wallet(self, ledger):
        with pytest.raises(WalletNotFoundError):
            await ledger.get_balance("missing")

        with pytest.raises(WalletNotFoundError):
            await ledger.credit("missing", "1.00", TransactionType.DEPOSIT)


class TestPostings:
    """Tests for credit/debit."""

    @pytest.mark.asyncio
    async def test_credit_and_debit(self, ledger, make_wallet):
        wallet = await make_wallet("user-1")

        credit = await ledger.credit(wallet.id, "50.00", TransactionType.DEPOSIT)
        debit = await ledger.debit(wallet.id, "12.34", TransactionType.TOURNAMENT_FEE)

        assert credit.amount == Decimal("50.00")
        assert credit.status == TransactionStatus.COMPLETED
        assert debit.amount == Decimal("-12.34")
        assert debit.balance_before == Decimal("50.00")
        assert debit.balance_after == Decimal("37.66")
        assert await ledger.get_balance(wallet.id) == Decimal("37.66")

    @pytest.mark.asyncio
    async def test_insufficient_funds_leaves_no_trace(self, ledger, make_wallet):
        """Should reject the debit without touching balance or log."""
        wallet = await make_wallet("user-1", "5")

        with pytest.raises(InsufficientFundsError) as exc:
            await ledger.debit(wallet.id, "5.01", TransactionType.TOURNAMENT_FEE)

        assert exc.value.details["available"] == "5.00"
        assert await ledger.get_balance(wallet.id) == Decimal("5.00")
        assert len(await ledger.get_transactions(wallet.id)) == 1

    @pytest.mark.asyncio
    async def test_debit_to_exactly_zero(self, ledger, make_wallet):
        wallet = await make_wallet("user-1", "5")

        await ledger.debit(wallet.id, "5", TransactionType.TOURNAMENT_FEE)

        assert await ledger.get_balance(wallet.id) == Decimal("0.00")

    @pytest.mark.parametrize("amount", ["0", "-1", "1.001", "abc", 1.5])
    def test_invalid_amounts(self, amount):
        with pytest.raises(ValidationError):
            validate_amount(amount)

    def test_amount_normalized(self):
        assert validate_amount(7) == Decimal("7.00")
        assert validate_amount("0.5") == Decimal("0.50")


class TestIdempotency:
    """Replays with the same key have effect at most once."""

    @pytest.mark.asyncio
    async def test_replay_returns_same_transaction(self, ledger, make_wallet):
        wallet = await make_wallet("user-1")

        first = await ledger.credit(wallet.id, "10", TransactionType.PRIZE_PAYOUT, "prize-1")
        second = await ledger.credit(wallet.id, "10", TransactionType.PRIZE_PAYOUT, "prize-1")

        assert first.id == second.id
        assert second.balance_after == first.balance_after
        assert await ledger.get_balance(wallet.id) == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_debit_replay(self, ledger, make_wallet):
        wallet = await make_wallet("user-1", "20")

        first = await ledger.debit(wallet.id, "7", TransactionType.TOURNAMENT_FEE, "fee-1")
        second = await ledger.debit(wallet.id, "7", TransactionType.TOURNAMENT_FEE, "fee-1")

        assert first.id == second.id
        assert await ledger.get_balance(wallet.id) == Decimal("13.00")

    @pytest.mark.asyncio
    async def test_concurrent_replays_post_once(self, ledger, make_wallet):
        """Concurrent calls with one key produce a single posting."""
        wallet = await make_wallet("user-1")

        results = await asyncio.gather(
            *[
                ledger.credit(wallet.id, "3", TransactionType.REFUND, "refund-1")
                for _ in range(5)
            ]
        )

        assert len({tx.id for tx in results}) == 1
        assert await ledger.get_balance(wallet.id) == Decimal("3.00")

    @pytest.mark.asyncio
    async def test_key_reused_with_other_arguments(self, ledger, make_wallet):
        """Should reject a key reused for a different amount, kind or wallet."""
        wallet = await make_wallet("user-1", "50")
        other = await make_wallet("user-2")
        await ledger.credit(wallet.id, "10", TransactionType.PRIZE_PAYOUT, "key-1")

        with pytest.raises(DuplicateIdempotencyKeyError):
            await ledger.credit(wallet.id, "11", TransactionType.PRIZE_PAYOUT, "key-1")
        with pytest.raises(DuplicateIdempotencyKeyError):
            await ledger.debit(wallet.id, "10", TransactionType.PRIZE_PAYOUT, "key-1")
        with pytest.raises(DuplicateIdempotencyKeyError):
            await ledger.credit(other.id, "10", TransactionType.PRIZE_PAYOUT, "key-1")

        assert await ledger.get_balance(wallet.id) == Decimal("60.00")


class TestAudit:
    """Tests for reconciliation and integrity hashes."""

    @pytest.mark.asyncio
    async def test_balance_equals_completed_sum(self, ledger, make_wallet):
        wallet = await make_wallet("user-1", "100")
        await ledger.debit(wallet.id, "30", TransactionType.TOURNAMENT_FEE)
        await ledger.credit(wallet.id, "12.50", TransactionType.REFUND)
        await ledger.request_withdrawal(wallet.id, "20")

        result = await ledger.reconcile(wallet.id)

        assert result.consistent
        assert result.balance == Decimal("82.50")

    @pytest.mark.asyncio
    async def test_integrity_hash(self, ledger, make_wallet):
        wallet = await make_wallet("user-1")
        tx = await ledger.credit(wallet.id, "10", TransactionType.DEPOSIT, "dep-1")

        assert Ledger.verify_integrity(tx)

        tx.amount = Decimal("1000.00")
        assert not Ledger.verify_integrity(tx)

    @pytest.mark.asyncio
    async def test_history_filters(self, ledger, make_wallet):
        wallet = await make_wallet("user-1", "100")
        await ledger.debit(
            wallet.id, "10", TransactionType.TOURNAMENT_FEE, tournament_id="t-1"
        )
        await ledger.debit(
            wallet.id, "10", TransactionType.TOURNAMENT_FEE, tournament_id="t-2"
        )

        fees = await ledger.get_transactions(wallet.id, tx_type=TransactionType.TOURNAMENT_FEE)
        t1 = await ledger.get_transactions(wallet.id, tournament_id="t-1")

        assert len(fees) == 2
        assert [tx.tournament_id for tx in t1] == ["t-1"]
        assert len(await ledger.get_transactions(wallet.id, limit=1)) == 1


class TestRefunds:
    """Tests for refund_all."""

    async def _pay_fees(self, ledger, make_wallet, owners, tournament_id="t-1"):
        wallets = []
        for owner in owners:
            wallet = await make_wallet(owner, "25")
            await ledger.debit(
                wallet.id,
                "10",
                TransactionType.TOURNAMENT_FEE,
                fee_key(tournament_id, "USER", owner),
                {"participantType": "USER"},
                tournament_id=tournament_id,
                participant_id=owner,
            )
            wallets.append(wallet)
        return wallets

    @pytest.mark.asyncio
    async def test_refunds_each_fee_once(self, ledger, make_wallet):
        wallets = await self._pay_fees(ledger, make_wallet, ["a", "b", "c"])

        summary = await ledger.refund_all("t-1")
        again = await ledger.refund_all("t-1")

        assert len(summary.issued) == 3
        assert summary.total_refunded == Decimal("30.00")
        assert summary.settled
        assert again.issued == [] and again.skipped == 3
        for wallet in wallets:
            assert await ledger.get_balance(wallet.id) == Decimal("25.00")
        assert {tx.idempotency_key for tx in summary.issued} == {
            refund_key("t-1", "USER", owner) for owner in ["a", "b", "c"]
        }

    @pytest.mark.asyncio
    async def test_refunds_resume_in_batches(self, ledger, make_wallet):
        """A bounded pass leaves the rest for the next call."""
        await self._pay_fees(ledger, make_wallet, ["a", "b", "c"])

        first = await ledger.refund_all("t-1", limit=2)
        second = await ledger.refund_all("t-1", limit=2)

        assert (len(first.issued), first.remaining, first.settled) == (2, 1, False)
        assert (len(second.issued), second.skipped, second.settled) == (1, 2, True)

    @pytest.mark.asyncio
    async def test_refund_with_explicit_amount(self, ledger, make_wallet):
        wallets = await self._pay_fees(ledger, make_wallet, ["a"])

        await ledger.refund_all("t-1", amount="4")

        assert await ledger.get_balance(wallets[0].id) == Decimal("19.00")


class TestWithdrawals:
    """Tests for withdrawal approval flow."""

    @pytest.mark.asyncio
    async def test_request_does_not_touch_balance(self, ledger, make_wallet):
        wallet = await make_wallet("user-1", "50")

        tx = await ledger.request_withdrawal(wallet.id, "20")

        assert tx.status == TransactionStatus.REQUIRES_APPROVAL
        assert tx.balance_before is None
        assert await ledger.get_balance(wallet.id) == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_pending_requests_reserve_funds(self, ledger, make_wallet):
        wallet = await make_wallet("user-1", "50")
        await ledger.request_withdrawal(wallet.id, "40")

        with pytest.raises(InsufficientFundsError):
            await ledger.request_withdrawal(wallet.id, "20")

    @pytest.mark.asyncio
    async def test_approve(self, ledger, make_wallet):
        wallet = await make_wallet("user-1", "50")
        tx = await ledger.request_withdrawal(wallet.id, "20", "wd-1")

        approved = await ledger.approve_withdrawal(tx.id, "admin-1", "ok")

        assert approved.status == TransactionStatus.COMPLETED
        assert approved.balance_after == Decimal("30.00")
        assert approved.reviewed_by == "admin-1"
        assert Ledger.verify_integrity(approved)
        assert (await ledger.reconcile(wallet.id)).consistent

        with pytest.raises(InvalidStateError):
            await ledger.approve_withdrawal(tx.id, "admin-1")

    @pytest.mark.asyncio
    async def test_approve_fails_when_balance_dropped(self, ledger, make_wallet):
        wallet = await make_wallet("user-1", "50")
        tx = await ledger.request_withdrawal(wallet.id, "40")
        await ledger.debit(wallet.id, "20", TransactionType.TOURNAMENT_FEE)

        with pytest.raises(InsufficientFundsError):
            await ledger.approve_withdrawal(tx.id, "admin-1")

        assert (await ledger.get_transaction(tx.id)).status == TransactionStatus.REQUIRES_APPROVAL

    @pytest.mark.asyncio
    async def test_reject(self, ledger, make_wallet):
        wallet = await make_wallet("user-1", "50")
        tx = await ledger.request_withdrawal(wallet.id, "20")

        rejected = await ledger.reject_withdrawal(tx.id, "admin-1", "kyc missing")

        assert rejected.status == TransactionStatus.CANCELED
        assert await ledger.get_balance(wallet.id) == Decimal("50.00")
        with pytest.raises(InvalidStateError):
            await ledger.reject_withdrawal(tx.id, "admin-1", "again")
