"""
Deposit and withdrawal flows.

A withdrawal request locks ``amount + fee`` until an admin completes or
rejects it; the user can cancel while it is still pending.
"""

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .collaborators import NoticeKind, Notice, NotificationSink, SettingKeys, SettingsStore, dispatch_notifications
from .db import Database
from .errors import InvalidAmount, InvalidTransition
from .journal import TransactionJournal
from .models import CommissionType, Transaction, TransactionStatus, TransactionType
from .service import Amount, LedgerService, validate_amount

logger = logging.getLogger(__name__)


class PaymentService:
    def __init__(
        self,
        db: Database,
        ledger: LedgerService,
        journal: TransactionJournal,
        settings: SettingsStore,
        referrals=None,
        notifications: Optional[NotificationSink] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.journal = journal
        self.settings = settings
        self.referrals = referrals
        self.notifications = notifications

    # ---------------- deposits ----------------

    def create_deposit(
        self,
        user_id: UUID,
        amount: Amount,
        currency: str,
        tx_hash: Optional[str] = None,
    ) -> Transaction:
        value = validate_amount(amount)
        minimum = self.settings.get_number(SettingKeys.MIN_DEPOSIT, 0)
        if value < minimum:
            raise InvalidAmount(f"Minimum deposit is {minimum} {currency}")

        tx = self.journal.create(
            user_id, TransactionType.DEPOSIT, value, currency,
            description=f"Deposit of {value} {currency}",
            tx_hash=tx_hash,
        )
        dispatch_notifications(self.notifications, [Notice(
            kind=NoticeKind.TRANSACTION,
            title="New Deposit",
            message=f"User {user_id} submitted a deposit of {value} {currency}.",
            data={"transaction_id": str(tx.id), "reference_id": tx.reference_id},
        )])
        return tx

    def confirm_deposit(self, tx_id: UUID, tx_hash: Optional[str] = None) -> Transaction:
        with self.db.atomic() as s:
            tx = self._load(tx_id, TransactionType.DEPOSIT, session=s)
            self.journal.start(tx.id, session=s)
            self.ledger.credit(tx.user_id, tx.currency, tx.amount, session=s)
            tx = self.journal.complete(tx.id, tx_hash=tx_hash, session=s)

        logger.info(f"Deposit {tx.reference_id} confirmed: {tx.amount} {tx.currency}")
        dispatch_notifications(self.notifications, [Notice(
            kind=NoticeKind.TRANSACTION,
            user_id=tx.user_id,
            title="Deposit Confirmed",
            message=f"Your deposit of {tx.amount} {tx.currency} has been credited.",
            data={"transaction_id": str(tx.id)},
        )])

        if self.referrals is not None:
            try:
                self.referrals.cascade(tx.user_id, tx.amount, CommissionType.DEPOSIT, tx.id, tx.currency)
            except Exception:
                logger.exception(f"Deposit commission cascade failed for transaction {tx.id}")
        return tx

    def fail_deposit(self, tx_id: UUID, reason: Optional[str] = None) -> Transaction:
        with self.db.atomic() as s:
            tx = self._load(tx_id, TransactionType.DEPOSIT, session=s)
            self.journal.start(tx.id, session=s)
            tx = self.journal.fail(tx.id, reason=reason, session=s)
        logger.warning(f"Deposit {tx.reference_id} failed: {reason}")
        return tx

    # ---------------- withdrawals ----------------

    def withdrawal_fee(self) -> Decimal:
        return self.settings.get_number(SettingKeys.WITHDRAWAL_FEE, 0)

    def request_withdrawal(self, user_id: UUID, amount: Amount, currency: str) -> Transaction:
        value = validate_amount(amount)
        minimum = self.settings.get_number(SettingKeys.MIN_WITHDRAWAL, 0)
        if value < minimum:
            raise InvalidAmount(f"Minimum withdrawal is {minimum} {currency}")
        fee = validate_amount(self.withdrawal_fee(), allow_zero=True)

        with self.db.atomic() as s:
            self.ledger.lock(user_id, currency, value + fee, session=s)
            tx = self.journal.create(
                user_id, TransactionType.WITHDRAWAL, value, currency,
                fee=fee,
                description=f"Withdrawal of {value} {currency}",
                session=s,
            )

        logger.info(f"Withdrawal {tx.reference_id} requested: {value} {currency} (fee {fee})")
        dispatch_notifications(self.notifications, [Notice(
            kind=NoticeKind.TRANSACTION,
            title="New Withdrawal Request",
            message=f"User {user_id} requested a withdrawal of {value} {currency}.",
            data={"transaction_id": str(tx.id), "reference_id": tx.reference_id},
        )])
        return tx

    def complete_withdrawal(self, tx_id: UUID, tx_hash: Optional[str] = None) -> Transaction:
        with self.db.atomic() as s:
            tx = self._load(tx_id, TransactionType.WITHDRAWAL, session=s)
            total = tx.amount + tx.fee
            self.journal.start(tx.id, session=s)
            self.ledger.unlock(tx.user_id, tx.currency, total, session=s)
            self.ledger.debit(tx.user_id, tx.currency, total, session=s)
            tx = self.journal.complete(tx.id, tx_hash=tx_hash, session=s)

        logger.info(f"Withdrawal {tx.reference_id} completed")
        dispatch_notifications(self.notifications, [Notice(
            kind=NoticeKind.TRANSACTION,
            user_id=tx.user_id,
            title="Withdrawal Completed",
            message=f"Your withdrawal of {tx.amount} {tx.currency} has been sent.",
            data={"transaction_id": str(tx.id), "tx_hash": tx_hash},
        )])
        return tx

    def reject_withdrawal(self, tx_id: UUID, reason: Optional[str] = None) -> Transaction:
        with self.db.atomic() as s:
            tx = self._load(tx_id, TransactionType.WITHDRAWAL, session=s)
            self.journal.start(tx.id, session=s)
            self.ledger.unlock(tx.user_id, tx.currency, tx.amount + tx.fee, session=s)
            tx = self.journal.fail(tx.id, reason=reason, session=s)

        logger.warning(f"Withdrawal {tx.reference_id} rejected: {reason}")
        dispatch_notifications(self.notifications, [Notice(
            kind=NoticeKind.TRANSACTION,
            user_id=tx.user_id,
            title="Withdrawal Rejected",
            message=f"Your withdrawal of {tx.amount} {tx.currency} was rejected. The funds are available again.",
            data={"transaction_id": str(tx.id)},
        )])
        return tx

    def cancel_withdrawal(self, tx_id: UUID, reason: Optional[str] = None) -> Transaction:
        with self.db.atomic() as s:
            tx = self._load(tx_id, TransactionType.WITHDRAWAL, session=s)
            if tx.status != TransactionStatus.PENDING:
                raise InvalidTransition(f"Withdrawal {tx.reference_id} is {tx.status.value} and cannot be cancelled")
            self.ledger.unlock(tx.user_id, tx.currency, tx.amount + tx.fee, session=s)
            tx = self.journal.cancel(tx.id, reason=reason, session=s)
        logger.info(f"Withdrawal {tx.reference_id} cancelled")
        return tx

    def _load(self, tx_id: UUID, tx_type: TransactionType, session) -> Transaction:
        tx = self.journal.get(tx_id, session=session)
        if tx.type != tx_type:
            raise InvalidTransition(f"Transaction {tx.reference_id} is a {tx.type.value}, not a {tx_type.value}")
        return tx
