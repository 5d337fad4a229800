"""
Multi-level referral commissions.

A triggering amount (deposit, purchase, mining reward) fans out up the
referral chain: level 1 is the originator's direct referrer, level 2 that
user's referrer, and so on up to the configured depth. Each level is posted
in its own unit and at most once per (source transaction, receiver, level).
"""

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from ledger.collaborators import (
    NoticeKind, Notice, NotificationSink, SettingKeys, SettingsStore, UserDirectory,
    dispatch_notifications,
)
from ledger.db import Database
from ledger.errors import DependencyUnavailable, DuplicateEvent, InvalidAmount, LedgerError
from ledger.journal import TransactionJournal
from ledger.models import (
    CascadeResult, CommissionStatus, CommissionType, ReferralCommission, TransactionType,
)
from ledger.service import Amount, LedgerService, validate_amount
from ledger.tables import ReferralCommissionRow, quantize, utcnow

logger = logging.getLogger(__name__)


def commission_key(source_transaction_id: UUID, receiver_id: UUID, level: int) -> str:
    return f"referral_commission:{source_transaction_id}:{receiver_id}:{level}"


class ReferralCascade:
    def __init__(
        self,
        db: Database,
        ledger: LedgerService,
        journal: TransactionJournal,
        users: UserDirectory,
        settings: SettingsStore,
        notifications: Optional[NotificationSink] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.journal = journal
        self.users = users
        self.settings = settings
        self.notifications = notifications

    def cascade(
        self,
        referral_id: UUID,
        amount: Amount,
        commission_type: CommissionType,
        source_transaction_id: UUID,
        currency: str,
    ) -> CascadeResult:
        commission_type = CommissionType(commission_type)
        result = CascadeResult(source_transaction_id=source_transaction_id)

        try:
            base = validate_amount(amount)
            if not self.settings.get_number(SettingKeys.REFERRAL_ENABLED, 1):
                return result
            max_levels = int(self.settings.get_number(SettingKeys.REFERRAL_LEVELS, 3))
        except (InvalidAmount, DependencyUnavailable) as e:
            logger.error(f"Commission cascade for {source_transaction_id} skipped: {e}")
            result.errors.append(str(e))
            return result

        # Resolve the whole chain before any unit opens.
        upline = self._resolve_upline(referral_id, max_levels, result)
        notices = []
        for level, receiver_id in upline:
            rate_error = None
            try:
                rate = self._rate(commission_type, level)
            except DependencyUnavailable as e:
                rate, rate_error = Decimal("0"), str(e)
            else:
                if rate <= 0:
                    continue

            commission_amount = quantize(base * rate / Decimal(100))
            if rate_error is None and commission_amount <= 0:
                continue

            description = (
                f"Commission for referral {commission_type.value} of {base} {currency} (Level {level})"
            )
            try:
                commission = self._post(
                    receiver_id, referral_id, commission_amount, currency, commission_type,
                    level, source_transaction_id, description, rate_error,
                )
            except DuplicateEvent:
                logger.warning(
                    f"Level {level} commission for {source_transaction_id} already posted to {receiver_id}"
                )
                result.duplicates += 1
                continue
            except Exception as e:
                logger.exception(f"Level {level} commission for {source_transaction_id} could not be recorded")
                result.errors.append(f"level {level}: {e}")
                continue

            result.commission_ids.append(commission.id)
            if commission.status == CommissionStatus.COMPLETED:
                result.completed += 1
                notices.append(Notice(
                    kind=NoticeKind.REFERRAL,
                    user_id=receiver_id,
                    title="Referral Commission Received",
                    message=f"You received {commission.amount} {currency} level {level} commission.",
                    data={"commission_id": str(commission.id), "level": level},
                ))
            else:
                result.failed += 1
                result.errors.append(f"level {level}: {rate_error or 'credit failed'}")

        dispatch_notifications(self.notifications, notices)
        return result

    def list_for_user(
        self,
        user_id: UUID,
        status: Optional[CommissionStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ReferralCommission]:
        with self.db.atomic() as s:
            stmt = select(ReferralCommissionRow).where(ReferralCommissionRow.user_id == user_id)
            if status is not None:
                stmt = stmt.where(ReferralCommissionRow.status == CommissionStatus(status).value)
            rows = s.scalars(
                stmt.order_by(ReferralCommissionRow.created_at.desc()).limit(limit).offset(offset)
            ).all()
            return [ReferralCommission.model_validate(r) for r in rows]

    def for_source(self, source_transaction_id: UUID) -> list[ReferralCommission]:
        with self.db.atomic() as s:
            rows = s.scalars(
                select(ReferralCommissionRow)
                .where(ReferralCommissionRow.source_transaction_id == source_transaction_id)
                .order_by(ReferralCommissionRow.level)
            ).all()
            return [ReferralCommission.model_validate(r) for r in rows]

    def total_for_user(
        self,
        user_id: UUID,
        status: CommissionStatus = CommissionStatus.COMPLETED,
    ) -> dict[str, Decimal]:
        with self.db.atomic() as s:
            rows = s.execute(
                select(ReferralCommissionRow.currency, func.sum(ReferralCommissionRow.amount))
                .where(
                    ReferralCommissionRow.user_id == user_id,
                    ReferralCommissionRow.status == CommissionStatus(status).value,
                )
                .group_by(ReferralCommissionRow.currency)
            ).all()
            return {currency: total or Decimal("0") for currency, total in rows}

    def stats(self) -> dict:
        with self.db.atomic() as s:
            by_status = s.execute(
                select(ReferralCommissionRow.status, func.count()).group_by(ReferralCommissionRow.status)
            ).all()
            by_type = s.execute(
                select(ReferralCommissionRow.type, func.count()).group_by(ReferralCommissionRow.type)
            ).all()
            by_level = s.execute(
                select(ReferralCommissionRow.level, func.count()).group_by(ReferralCommissionRow.level)
            ).all()
            return {
                "count_by_status": dict(by_status),
                "count_by_type": dict(by_type),
                "count_by_level": dict(by_level),
            }

    def _resolve_upline(self, referral_id: UUID, max_levels: int, result: CascadeResult) -> list[tuple[int, UUID]]:
        upline: list[tuple[int, UUID]] = []
        seen = {referral_id}
        current = referral_id
        for level in range(1, max_levels + 1):
            try:
                user = self.users.get_user(current)
            except Exception as e:
                logger.error(f"User directory unavailable at level {level} of {result.source_transaction_id}: {e}")
                result.errors.append(f"user directory unavailable at level {level}: {e}")
                break
            if user is None or user.referred_by is None:
                break
            if user.referred_by in seen:
                logger.warning(f"Referral cycle detected above user {current}")
                break
            upline.append((level, user.referred_by))
            seen.add(user.referred_by)
            current = user.referred_by
        result.levels_walked = len(upline)
        return upline

    def _rate(self, commission_type: CommissionType, level: int) -> Decimal:
        try:
            rate = self.settings.get_number(SettingKeys.typed_level_rate(commission_type.value, level), None)
            if rate is None:
                rate = self.settings.get_number(SettingKeys.level_rate(level), 0)
            return Decimal(rate)
        except DependencyUnavailable:
            raise
        except Exception as e:
            raise DependencyUnavailable(f"Settings lookup failed for level {level} rate: {e}") from e

    def _post(
        self,
        receiver_id: UUID,
        referral_id: UUID,
        amount: Decimal,
        currency: str,
        commission_type: CommissionType,
        level: int,
        source_transaction_id: UUID,
        description: str,
        failure: Optional[str],
    ) -> ReferralCommission:
        with self.db.atomic() as s:
            row = ReferralCommissionRow(
                user_id=receiver_id,
                referral_id=referral_id,
                amount=amount,
                currency=currency,
                type=commission_type.value,
                level=level,
                status=CommissionStatus.PENDING.value,
                source_transaction_id=source_transaction_id,
                description=description,
            )
            try:
                with s.begin_nested():
                    s.add(row)
            except IntegrityError as e:
                raise DuplicateEvent(
                    f"Commission for {source_transaction_id} level {level} already exists"
                ) from e

            tx = self.journal.create(
                receiver_id, TransactionType.REFERRAL_COMMISSION, amount, currency,
                description=description,
                idempotency_key=commission_key(source_transaction_id, receiver_id, level),
                session=s,
            )
            row.transaction_id = tx.id
            self.journal.start(tx.id, session=s)
            row.status = CommissionStatus.PROCESSING.value

            if failure is None:
                try:
                    with s.begin_nested():
                        self.ledger.credit(receiver_id, currency, amount, session=s)
                except LedgerError as e:
                    failure = str(e)

            if failure is None:
                self.journal.complete(tx.id, session=s)
                row.status = CommissionStatus.COMPLETED.value
                logger.info(f"Level {level} commission {amount} {currency} paid to {receiver_id}")
            else:
                self.journal.fail(tx.id, reason=failure, session=s)
                row.status = CommissionStatus.FAILED.value
                logger.warning(f"Level {level} commission to {receiver_id} failed: {failure}")
            row.updated_at = utcnow()
            s.flush()
            return ReferralCommission.model_validate(row)
