"""
Unit Tests for the Wallet Ledger

Tests cover:
1. Credit and debit flows
2. Lock / unlock partitioning
3. Transfers and rollback
4. Wallet status enforcement
5. Concurrent debits against one wallet
"""

import threading
from decimal import Decimal
from uuid import UUID

import pytest

from ledger.errors import InsufficientFunds, InvalidAmount, NotFound, OverUnlock, WalletInactive
from ledger.models import WalletStatus
from ledger.service import validate_amount


# Test constants
USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
OTHER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")


def assert_invariant(wallet):
    assert wallet.locked_balance >= 0
    assert wallet.balance >= wallet.locked_balance


class TestAmountValidation:
    """Tests for amount parsing."""

    def test_accepts_decimal_strings(self):
        assert validate_amount("12.5") == Decimal("12.5")

    @pytest.mark.parametrize("amount", [0, -1, "abc", "NaN", "0.000000001"])
    def test_rejects_bad_amounts(self, amount):
        """Zero, negative, malformed and over-precise amounts are rejected."""
        with pytest.raises(InvalidAmount):
            validate_amount(amount)

    def test_zero_allowed_when_requested(self):
        assert validate_amount(0, allow_zero=True) == Decimal("0")


class TestCreditDebit:
    """Tests for credit and debit."""

    def test_credit_creates_wallet(self, ledger):
        """First credit creates the wallet lazily."""
        wallet = ledger.credit(USER_ID, "TRX", Decimal("100"))

        assert wallet.balance == Decimal("100")
        assert wallet.locked_balance == Decimal("0")
        assert wallet.status == WalletStatus.ACTIVE
        assert wallet.last_deposit_at is not None

    def test_debit_scenario(self, ledger):
        """TRX 1000 with 200 locked: debit 700 succeeds, then 200 fails."""
        ledger.credit(USER_ID, "TRX", Decimal("1000"))
        ledger.lock(USER_ID, "TRX", Decimal("200"))

        wallet = ledger.debit(USER_ID, "TRX", Decimal("700"))
        assert wallet.balance == Decimal("300")
        assert wallet.available_balance == Decimal("100")

        with pytest.raises(InsufficientFunds):
            ledger.debit(USER_ID, "TRX", Decimal("200"))

        # Failed debit wrote nothing
        wallet = ledger.get_wallet(USER_ID, "TRX")
        assert wallet.balance == Decimal("300")
        assert wallet.locked_balance == Decimal("200")
        assert_invariant(wallet)

    def test_debit_missing_wallet(self, ledger):
        with pytest.raises(NotFound):
            ledger.debit(USER_ID, "TRX", Decimal("1"))

    def test_invalid_amount_rejected(self, ledger):
        with pytest.raises(InvalidAmount):
            ledger.credit(USER_ID, "TRX", Decimal("0"))
        with pytest.raises(InvalidAmount):
            ledger.credit(USER_ID, "TRX", Decimal("-5"))

    def test_repeated_cycles_do_not_drift(self, ledger):
        """Fixed-point storage keeps small amounts exact."""
        for _ in range(10):
            ledger.credit(USER_ID, "BTC", Decimal("0.1"))
        for _ in range(10):
            ledger.debit(USER_ID, "BTC", Decimal("0.1"))

        assert ledger.get_wallet(USER_ID, "BTC").balance == Decimal("0")

    def test_currencies_are_separate(self, ledger):
        ledger.credit(USER_ID, "TRX", Decimal("10"))
        ledger.credit(USER_ID, "BTC", Decimal("0.5"))

        wallets = ledger.list_wallets(USER_ID)
        assert [w.currency for w in wallets] == ["BTC", "TRX"]

        with pytest.raises(InsufficientFunds):
            ledger.debit(USER_ID, "BTC", Decimal("1"))


class TestLockUnlock:
    """Tests for the available / locked partition."""

    def test_lock_then_unlock(self, ledger):
        ledger.credit(USER_ID, "TRX", Decimal("100"))

        wallet = ledger.lock(USER_ID, "TRX", Decimal("40"))
        assert wallet.available_balance == Decimal("60")
        assert wallet.balance == Decimal("100")

        wallet = ledger.unlock(USER_ID, "TRX", Decimal("40"))
        assert wallet.available_balance == Decimal("100")
        assert wallet.locked_balance == Decimal("0")

    def test_lock_more_than_available(self, ledger):
        ledger.credit(USER_ID, "TRX", Decimal("100"))
        ledger.lock(USER_ID, "TRX", Decimal("80"))

        with pytest.raises(InsufficientFunds):
            ledger.lock(USER_ID, "TRX", Decimal("30"))

    def test_over_unlock(self, ledger):
        ledger.credit(USER_ID, "TRX", Decimal("100"))
        ledger.lock(USER_ID, "TRX", Decimal("10"))

        with pytest.raises(OverUnlock):
            ledger.unlock(USER_ID, "TRX", Decimal("11"))
        assert ledger.get_wallet(USER_ID, "TRX").locked_balance == Decimal("10")

    def test_balance_view(self, ledger):
        ledger.credit(USER_ID, "TRX", Decimal("100"))
        ledger.lock(USER_ID, "TRX", Decimal("25"))

        balance = ledger.get_balance(USER_ID, "TRX")
        assert balance.available_balance == Decimal("75")
        assert balance.locked_balance == Decimal("25")

        empty = ledger.get_balance(OTHER_ID, "TRX")
        assert empty.balance == Decimal("0")
        assert empty.status is None


class TestTransfer:
    """Tests for wallet-to-wallet transfers."""

    def test_transfer_moves_funds(self, ledger):
        ledger.credit(USER_ID, "TRX", Decimal("100"))

        source, target = ledger.transfer(USER_ID, OTHER_ID, "TRX", Decimal("30"))

        assert source.balance == Decimal("70")
        assert target.balance == Decimal("30")

    def test_failed_transfer_rolls_back(self, ledger):
        """Insufficient funds leave both wallets untouched."""
        ledger.credit(USER_ID, "TRX", Decimal("10"))

        with pytest.raises(InsufficientFunds):
            ledger.transfer(USER_ID, OTHER_ID, "TRX", Decimal("30"))

        assert ledger.get_wallet(USER_ID, "TRX").balance == Decimal("10")
        with pytest.raises(NotFound):
            ledger.get_wallet(OTHER_ID, "TRX")

    def test_transfer_to_self(self, ledger):
        ledger.credit(USER_ID, "TRX", Decimal("10"))
        with pytest.raises(InvalidAmount):
            ledger.transfer(USER_ID, USER_ID, "TRX", Decimal("1"))


class TestWalletStatus:
    """Tests for disabled and frozen wallets."""

    def test_frozen_wallet_refuses_debit_and_lock(self, ledger):
        ledger.credit(USER_ID, "TRX", Decimal("100"))
        ledger.set_status(USER_ID, "TRX", WalletStatus.FROZEN)

        with pytest.raises(WalletInactive):
            ledger.debit(USER_ID, "TRX", Decimal("1"))
        with pytest.raises(WalletInactive):
            ledger.lock(USER_ID, "TRX", Decimal("1"))

    def test_frozen_wallet_still_receives_credits(self, ledger):
        ledger.credit(USER_ID, "TRX", Decimal("100"))
        ledger.set_status(USER_ID, "TRX", WalletStatus.DISABLED)

        wallet = ledger.credit(USER_ID, "TRX", Decimal("5"))
        assert wallet.balance == Decimal("105")

    def test_reenable(self, ledger):
        ledger.credit(USER_ID, "TRX", Decimal("100"))
        ledger.set_status(USER_ID, "TRX", WalletStatus.FROZEN)
        ledger.set_status(USER_ID, "TRX", WalletStatus.ACTIVE)

        assert ledger.debit(USER_ID, "TRX", Decimal("1")).balance == Decimal("99")

    def test_stats(self, ledger):
        ledger.credit(USER_ID, "TRX", Decimal("100"))
        ledger.credit(OTHER_ID, "TRX", Decimal("50"))
        ledger.set_status(OTHER_ID, "TRX", WalletStatus.FROZEN)

        stats = ledger.stats()
        assert stats["total_wallets"] == 2
        assert stats["active_wallets"] == 1
        assert stats["total_balance"]["TRX"] == Decimal("150")


class TestConcurrency:
    """Tests for concurrent mutations of one wallet."""

    def test_concurrent_debits_never_overdraw(self, ledger):
        """Two debits of 60 against 100: exactly one succeeds."""
        ledger.credit(USER_ID, "TRX", Decimal("100"))
        outcomes = []
        barrier = threading.Barrier(2)

        def worker():
            barrier.wait()
            try:
                ledger.debit(USER_ID, "TRX", Decimal("60"))
                outcomes.append("ok")
            except InsufficientFunds:
                outcomes.append("refused")

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["ok", "refused"]
        wallet = ledger.get_wallet(USER_ID, "TRX")
        assert wallet.balance == Decimal("40")
        assert_invariant(wallet)

    def test_concurrent_first_credits_share_one_wallet(self, ledger):
        barrier = threading.Barrier(4)
        errors = []

        def worker():
            barrier.wait()
            try:
                ledger.credit(OTHER_ID, "TRX", Decimal("1"))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(ledger.list_wallets(OTHER_ID)) == 1
        assert ledger.get_wallet(OTHER_ID, "TRX").balance == Decimal("4")
