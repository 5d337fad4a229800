"""
Daily mining reward accrual.

One run pays every user the reward of their active holdings for a single
date. Rewards are keyed per (user, currency, date) so a rerun, a retry after a
crash, or an overlapping run never pays the same day twice.
"""

import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from ledger.collaborators import NoticeKind, Notice, NotificationSink, dispatch_notifications
from ledger.db import Database
from ledger.errors import DuplicateEvent, LedgerError
from ledger.journal import TransactionJournal
from ledger.models import (
    CommissionType, MiningHolding, RewardRunStats, Transaction, TransactionStatus, TransactionType,
)
from ledger.service import LedgerService
from ledger.tables import quantize
from referrals.cascade import ReferralCascade

from .holdings import HoldingTracker, today

logger = logging.getLogger(__name__)


def reward_key(user_id: UUID, currency: str, reward_date: date) -> str:
    return f"mining_reward:{user_id}:{currency}:{reward_date.isoformat()}"


class RewardAccrualJob:
    def __init__(
        self,
        db: Database,
        ledger: LedgerService,
        journal: TransactionJournal,
        holdings: HoldingTracker,
        referrals: Optional[ReferralCascade] = None,
        notifications: Optional[NotificationSink] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.journal = journal
        self.holdings = holdings
        self.referrals = referrals
        self.notifications = notifications

    def run(
        self,
        reward_date: Optional[date] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> RewardRunStats:
        """
        Pay the rewards for ``reward_date`` (today by default).

        Each (user, currency) group is its own unit. Failures are counted and
        logged, then the run moves on. ``should_stop`` is polled between units.
        """
        day = reward_date or today()
        stats = RewardRunStats(reward_date=day)
        logger.info(f"Mining reward run for {day} started")

        for (user_id, currency), group in self._group(self.holdings.active_holdings(day)).items():
            if should_stop is not None and should_stop():
                logger.warning(f"Mining reward run for {day} interrupted")
                stats.interrupted = True
                break

            # Zero-power holdings never earn; each one counts as skipped.
            paying = [h for h in group if h.mining_power > 0]
            stats.skipped += len(group) - len(paying)
            if not paying:
                continue

            amount = quantize(sum((h.daily_reward() for h in paying), Decimal("0")))
            if amount <= 0:
                stats.skipped += 1
                continue

            try:
                tx = self._pay(user_id, currency, amount, day, paying)
            except DuplicateEvent:
                stats.skipped += 1
                self._resume_cascade(user_id, currency, day, stats)
                continue
            except LedgerError as e:
                logger.error(f"Mining reward for user {user_id} ({currency}) failed: {e}")
                self._record_failure(user_id, currency, amount, day, e, stats)
                continue
            except Exception as e:
                logger.exception(f"Mining reward for user {user_id} ({currency}) failed")
                self._record_failure(user_id, currency, amount, day, e, stats)
                continue

            stats.processed += 1
            stats.holdings_rewarded += len(paying)
            stats.total_amount += amount
            stats.totals_by_currency[currency] = stats.totals_by_currency.get(currency, Decimal("0")) + amount
            stats.transaction_ids.append(tx.id)
            self._notify(tx, paying)
            self._cascade(tx, stats)

        logger.info(
            f"Mining reward run for {day} finished: processed={stats.processed} "
            f"skipped={stats.skipped} failed={stats.failed} total={stats.total_amount}"
        )
        return stats

    def _group(self, holdings: list[MiningHolding]) -> dict[tuple[UUID, str], list[MiningHolding]]:
        groups: dict[tuple[UUID, str], list[MiningHolding]] = defaultdict(list)
        for holding in holdings:
            groups[(holding.user_id, holding.currency)].append(holding)
        return groups

    def _pay(
        self,
        user_id: UUID,
        currency: str,
        amount: Decimal,
        day: date,
        group: list[MiningHolding],
    ) -> Transaction:
        power = sum((h.mining_power for h in group), Decimal("0"))
        with self.db.atomic() as s:
            tx = self.journal.create(
                user_id, TransactionType.MINING_REWARD, amount, currency,
                description=f"Mining reward for {day.isoformat()} ({power} mining power)",
                idempotency_key=reward_key(user_id, currency, day),
                reward_date=day,
                holding_id=group[0].id if len(group) == 1 else None,
                session=s,
            )
            self.journal.start(tx.id, session=s)
            self.ledger.credit(user_id, currency, amount, session=s)
            return self.journal.complete(tx.id, session=s)

    def _notify(self, tx: Transaction, group: list[MiningHolding]) -> None:
        dispatch_notifications(self.notifications, [Notice(
            kind=NoticeKind.MINING,
            user_id=tx.user_id,
            title="Mining Reward Received",
            message=f"You received {tx.amount} {tx.currency} mining reward "
                    f"from {len(group)} active package(s).",
            data={"transaction_id": str(tx.id), "reward_date": tx.reward_date.isoformat()},
        )])

    def _cascade(self, tx: Transaction, stats: RewardRunStats) -> None:
        if self.referrals is None:
            return
        try:
            result = self.referrals.cascade(tx.user_id, tx.amount, CommissionType.MINING, tx.id, tx.currency)
        except Exception as e:
            logger.exception(f"Mining commission cascade failed for transaction {tx.id}")
            stats.errors.append(f"{tx.user_id}/{tx.currency} commissions: {e}")
            return
        stats.errors.extend(f"{tx.user_id}/{tx.currency} commissions: {error}" for error in result.errors)

    def _resume_cascade(self, user_id: UUID, currency: str, day: date, stats: RewardRunStats) -> None:
        """
        Re-run the commission cascade of an already paid reward.

        A crash or collaborator outage after the reward committed would
        otherwise lose its commissions; levels already posted come back as
        duplicates and are not paid again.
        """
        tx = self.journal.get_by_idempotency_key(reward_key(user_id, currency, day))
        if tx is None or tx.status != TransactionStatus.COMPLETED:
            return
        self._cascade(tx, stats)

    def _record_failure(
        self,
        user_id: UUID,
        currency: str,
        amount: Decimal,
        day: date,
        error: Exception,
        stats: RewardRunStats,
    ) -> None:
        """Leave a failed reward in the user's history. It carries no reward key, so a retry still pays."""
        stats.failed += 1
        stats.errors.append(f"{user_id}/{currency}: {error}")
        try:
            with self.db.atomic() as s:
                tx = self.journal.create(
                    user_id, TransactionType.MINING_REWARD, amount, currency,
                    description=f"Mining reward for {day.isoformat()}",
                    reward_date=day,
                    session=s,
                )
                self.journal.start(tx.id, session=s)
                self.journal.fail(tx.id, reason=str(error) or type(error).__name__, session=s)
        except Exception:
            logger.exception(f"Failed mining reward for user {user_id} ({currency}) could not be recorded")
