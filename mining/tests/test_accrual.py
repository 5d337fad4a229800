"""
Unit Tests for the Reward Accrual Job

Tests cover:
1. Reward amounts
2. No double reward on rerun or concurrent runs
3. Failure isolation between users
4. Cooperative interruption
5. Commissions on rewards, resumed on rerun
"""

import threading
from datetime import timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from ledger.collaborators import SettingKeys
from ledger.errors import DependencyUnavailable, LedgerError
from ledger.models import CommissionStatus, PackageSnapshot, TransactionStatus, TransactionType
from ledger.tables import utcnow
from mining.accrual import reward_key


USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
OTHER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
REFERRER_ID = UUID("770e8400-e29b-41d4-a716-446655440002")


def make_package(power="10000", rate="0.007", days=30, currency="TRX"):
    return PackageSnapshot(
        id=uuid4(), name="Test Package", price=Decimal("10"), mining_power=Decimal(power),
        daily_reward_rate=Decimal(rate), duration_days=days, currency=currency,
    )


def buy(platform, funded, user_id, **terms):
    package = make_package(**terms)
    funded(user_id, package.price, package.currency)
    return platform.holdings.purchase(user_id, package).holding


class TestRewardAmounts:
    """Tests for the reward computation."""

    def test_daily_reward(self, platform, funded):
        """10000 power at 0.007% pays 0.7."""
        buy(platform, funded, USER_ID)

        stats = platform.accrual.run()

        assert stats.processed == 1
        assert stats.holdings_rewarded == 1
        assert stats.total_amount == Decimal("0.7")
        assert platform.ledger.get_balance(USER_ID, "TRX").balance == Decimal("0.7")

        tx = platform.journal.get(stats.transaction_ids[0])
        assert tx.type == TransactionType.MINING_REWARD
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.reward_date == stats.reward_date
        assert tx.idempotency_key == reward_key(USER_ID, "TRX", stats.reward_date)

    def test_holdings_summed_per_currency(self, platform, funded):
        buy(platform, funded, USER_ID, power="10000")
        buy(platform, funded, USER_ID, power="5000")
        buy(platform, funded, USER_ID, power="1000", rate="1", currency="BTC")

        stats = platform.accrual.run()

        assert stats.processed == 2
        assert stats.holdings_rewarded == 3
        assert stats.totals_by_currency == {"TRX": Decimal("1.05"), "BTC": Decimal("10")}

    def test_rounds_down(self, platform, funded):
        buy(platform, funded, USER_ID, power="1", rate="0.0000015")

        stats = platform.accrual.run()

        # 1.5e-8 truncated to the 8th decimal
        assert stats.total_amount == Decimal("0.00000001")

    def test_zero_power_skipped(self, platform, funded):
        buy(platform, funded, USER_ID, power="0")

        stats = platform.accrual.run()

        assert stats.processed == 0
        assert stats.skipped == 1

    def test_zero_power_holding_counted_beside_paying_one(self, platform, funded):
        buy(platform, funded, USER_ID, power="0")
        buy(platform, funded, USER_ID, power="10000")

        stats = platform.accrual.run()

        assert stats.processed == 1
        assert stats.skipped == 1
        assert stats.holdings_rewarded == 1
        assert stats.total_amount == Decimal("0.7")

    def test_expired_and_future_dates(self, platform, funded):
        holding = buy(platform, funded, USER_ID, days=2)

        stats = platform.accrual.run(holding.end_date.date() + timedelta(days=1))

        assert stats.processed == 0


class TestIdempotency:
    """Tests for exactly-once rewards."""

    def test_rerun_same_day(self, platform, funded):
        buy(platform, funded, USER_ID)

        first = platform.accrual.run()
        second = platform.accrual.run(first.reward_date)

        assert first.processed == 1
        assert second.processed == 0
        assert second.skipped == 1
        assert platform.ledger.get_balance(USER_ID, "TRX").balance == Decimal("0.7")

    def test_next_day_pays_again(self, platform, funded):
        buy(platform, funded, USER_ID)
        day = utcnow().date()

        platform.accrual.run(day)
        platform.accrual.run(day + timedelta(days=1))

        assert platform.ledger.get_balance(USER_ID, "TRX").balance == Decimal("1.4")

    def test_concurrent_runs_pay_once(self, platform, funded):
        """Two runs for the same date at once: one pays, the other skips."""
        buy(platform, funded, USER_ID)
        day = utcnow().date()
        barrier = threading.Barrier(2)
        results = []
        errors = []

        def worker():
            barrier.wait()
            try:
                results.append(platform.accrual.run(day))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sum(r.processed for r in results) == 1
        assert sum(r.skipped for r in results) == 1
        assert all(r.failed == 0 for r in results)
        assert platform.ledger.get_balance(USER_ID, "TRX").balance == Decimal("0.7")
        rewards, total = platform.journal.list_for_user(USER_ID, tx_type=TransactionType.MINING_REWARD)
        assert total == 1
        assert rewards[0].status == TransactionStatus.COMPLETED


class TestFailureIsolation:
    """Tests for per-user failures during a run."""

    def test_one_failure_does_not_stop_the_run(self, platform, funded, monkeypatch):
        buy(platform, funded, USER_ID)
        buy(platform, funded, OTHER_ID)
        original_credit = platform.ledger.credit

        def flaky_credit(user_id, currency, amount, session=None):
            if user_id == USER_ID:
                raise RuntimeError("wallet store unavailable")
            return original_credit(user_id, currency, amount, session=session)

        monkeypatch.setattr(platform.ledger, "credit", flaky_credit)

        stats = platform.accrual.run()

        assert stats.processed == 1
        assert stats.failed == 1
        assert len(stats.errors) == 1
        assert platform.ledger.get_balance(OTHER_ID, "TRX").balance == Decimal("0.7")
        assert platform.ledger.get_balance(USER_ID, "TRX").balance == Decimal("0")

        # The failed unit leaves a failed reward in the user's history
        failed, total = platform.journal.list_for_user(USER_ID, tx_type=TransactionType.MINING_REWARD)
        assert total == 1
        assert failed[0].status == TransactionStatus.FAILED
        assert failed[0].amount == Decimal("0.7")
        assert failed[0].reward_date == stats.reward_date
        assert failed[0].idempotency_key is None

        # A retry still pays it
        monkeypatch.setattr(platform.ledger, "credit", original_credit)
        retry = platform.accrual.run(stats.reward_date)
        assert retry.processed == 1
        assert retry.skipped == 1
        assert platform.ledger.get_balance(USER_ID, "TRX").balance == Decimal("0.7")
        rewards, total = platform.journal.list_for_user(USER_ID, tx_type=TransactionType.MINING_REWARD)
        assert total == 2
        assert sorted(tx.status.value for tx in rewards) == ["completed", "failed"]

    def test_should_stop(self, platform, funded):
        buy(platform, funded, USER_ID)
        buy(platform, funded, OTHER_ID)

        stats = platform.accrual.run(should_stop=lambda: True)

        assert stats.interrupted
        assert stats.processed == 0


class TestRewardCommissions:
    """Tests for the mining commission cascade."""

    def test_referrer_paid_on_reward(self, platform, funded, users, settings, notifications):
        settings.set(SettingKeys.typed_level_rate("mining", 1), 10)
        users.add(REFERRER_ID)
        users.add(USER_ID, referred_by=REFERRER_ID)
        buy(platform, funded, USER_ID)

        stats = platform.accrual.run()

        assert platform.ledger.get_balance(REFERRER_ID, "TRX").balance == Decimal("0.07")
        commissions = platform.referrals.for_source(stats.transaction_ids[0])
        assert [c.level for c in commissions] == [1]
        assert "Mining Reward Received" in [n.title for n in notifications.for_user(USER_ID)]

    def test_rerun_posts_commissions_missed_by_first_run(self, platform, funded, users, settings, monkeypatch):
        """The reward paid but the cascade could not walk the upline; a rerun posts it once."""
        settings.set(SettingKeys.typed_level_rate("mining", 1), 10)
        users.add(REFERRER_ID)
        users.add(USER_ID, referred_by=REFERRER_ID)
        buy(platform, funded, USER_ID)

        def offline(user_id):
            raise DependencyUnavailable("user directory timed out")

        monkeypatch.setattr(users, "get_user", offline)
        first = platform.accrual.run()

        assert first.processed == 1
        assert any("user directory" in error for error in first.errors)
        assert platform.ledger.get_balance(REFERRER_ID, "TRX").balance == Decimal("0")

        monkeypatch.undo()
        second = platform.accrual.run(first.reward_date)

        assert second.processed == 0
        assert second.skipped == 1
        assert second.errors == []
        assert platform.ledger.get_balance(USER_ID, "TRX").balance == Decimal("0.7")
        assert platform.ledger.get_balance(REFERRER_ID, "TRX").balance == Decimal("0.07")
        commissions = platform.referrals.for_source(first.transaction_ids[0])
        assert [c.level for c in commissions] == [1]

        # A third run finds the commission already posted
        platform.accrual.run(first.reward_date)
        assert platform.ledger.get_balance(REFERRER_ID, "TRX").balance == Decimal("0.07")

    def test_commission_failures_reported_in_run(self, platform, funded, users, settings, monkeypatch):
        settings.set(SettingKeys.typed_level_rate("mining", 1), 10)
        users.add(REFERRER_ID)
        users.add(USER_ID, referred_by=REFERRER_ID)
        buy(platform, funded, USER_ID)
        original_credit = platform.ledger.credit

        def credit(user_id, currency, amount, session=None):
            if user_id == REFERRER_ID:
                raise LedgerError("wallet store rejected the credit")
            return original_credit(user_id, currency, amount, session=session)

        monkeypatch.setattr(platform.ledger, "credit", credit)
        stats = platform.accrual.run()

        assert stats.processed == 1
        assert stats.failed == 0
        assert stats.errors == [f"{USER_ID}/TRX commissions: level 1: credit failed"]
        assert platform.ledger.get_balance(USER_ID, "TRX").balance == Decimal("0.7")
        [commission] = platform.referrals.for_source(stats.transaction_ids[0])
        assert commission.status == CommissionStatus.FAILED
