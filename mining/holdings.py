import logging
import math
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from ledger.collaborators import (
    NoticeKind, Notice, NotificationSink, PackageCatalog, dispatch_notifications,
)
from ledger.db import Database
from ledger.errors import InvalidAmount, InvalidTransition, NotFound
from ledger.journal import TransactionJournal
from ledger.models import (
    CommissionType, HoldingStatus, MiningHolding, PackageSnapshot, PurchaseResult,
    SweepResult, TransactionType,
)
from ledger.service import Amount, LedgerService, validate_amount
from ledger.tables import MiningHoldingRow, utcnow
from referrals.cascade import ReferralCascade

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (HoldingStatus.PENDING.value, HoldingStatus.ACTIVE.value)


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min)


def today() -> date:
    return utcnow().date()


class HoldingTracker:
    def __init__(
        self,
        db: Database,
        ledger: LedgerService,
        journal: TransactionJournal,
        referrals: Optional[ReferralCascade] = None,
        notifications: Optional[NotificationSink] = None,
        catalog: Optional[PackageCatalog] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.journal = journal
        self.referrals = referrals
        self.notifications = notifications
        self.catalog = catalog

    def purchase(
        self,
        user_id: UUID,
        package: PackageSnapshot,
        amount: Optional[Amount] = None,
        currency: Optional[str] = None,
    ) -> PurchaseResult:
        """
        Buy a mining package.

        The purchase transaction, wallet debit and holding insert commit together
        or not at all. Notifications and the purchase commission cascade run
        only after the commit.
        """
        price = validate_amount(package.price if amount is None else amount)
        currency = currency or package.currency
        if package.mining_power < 0 or package.daily_reward_rate < 0:
            raise InvalidAmount(f"Package {package.id} has negative mining terms")

        holding_id = uuid4()
        try:
            with self.db.atomic() as s:
                tx = self.journal.create(
                    user_id, TransactionType.PURCHASE, price, currency,
                    description=f"Purchase of {package.name or package.id} mining package",
                    holding_id=holding_id,
                    session=s,
                )
                self.journal.start(tx.id, session=s)
                self.ledger.debit(user_id, currency, price, session=s)
                row = self._insert_holding(s, holding_id, user_id, package, price, currency, tx.id)
                tx = self.journal.complete(tx.id, session=s)
                holding = MiningHolding.model_validate(row)
        except Exception as e:
            logger.warning(f"Purchase of package {package.id} by user {user_id} rejected: {e}")
            raise

        logger.info(f"User {user_id} bought {holding.mining_power} mining power for {price} {currency}")
        dispatch_notifications(self.notifications, [
            Notice(
                kind=NoticeKind.MINING,
                user_id=user_id,
                title="Mining Power Purchased",
                message=f"You have successfully purchased {package.name} mining package "
                        f"with {holding.mining_power} mining power.",
                data={"holding_id": str(holding.id), "amount": str(price), "currency": currency},
            ),
            Notice(
                kind=NoticeKind.TRANSACTION,
                title="New Mining Purchase",
                message=f"User {user_id} purchased {package.name} for {price} {currency}.",
                data={"transaction_id": str(tx.id), "reference_id": tx.reference_id},
            ),
        ])

        commission_ids = self._run_cascade(user_id, price, tx.id, currency)
        return PurchaseResult(
            holding=holding,
            transaction=tx,
            commission_ids=commission_ids,
            message="Mining package purchased successfully",
        )

    def purchase_package(self, user_id: UUID, package_id: UUID, currency: Optional[str] = None) -> PurchaseResult:
        if self.catalog is None:
            raise NotFound("No package catalog configured")
        package = self.catalog.get_package(package_id)
        if package is None:
            raise NotFound(f"Package {package_id} not found")
        return self.purchase(user_id, package, package.price, currency or package.currency)

    def renew(
        self,
        holding_id: UUID,
        duration_days: int,
        price: Amount,
        currency: Optional[str] = None,
    ) -> MiningHolding:
        """Paid extension of an active holding, counted from its current end date."""
        if duration_days < 1:
            raise InvalidAmount("Renewal must add at least one day")
        price = validate_amount(price)

        with self.db.atomic() as s:
            row = self._load(s, holding_id, for_update=True)
            if row.status != HoldingStatus.ACTIVE.value:
                raise InvalidTransition(f"Holding {holding_id} is {row.status} and cannot be renewed")
            if row.end_date is None:
                raise InvalidTransition(f"Holding {holding_id} has no end date to extend")
            currency = currency or row.currency

            tx = self.journal.create(
                row.user_id, TransactionType.PURCHASE, price, currency,
                description=f"Renewal of {row.package_name or row.id} for {duration_days} days",
                holding_id=row.id,
                session=s,
            )
            self.journal.start(tx.id, session=s)
            self.ledger.debit(row.user_id, currency, price, session=s)

            now = utcnow()
            row.end_date = max(row.end_date, now) + timedelta(days=duration_days)
            row.duration_days = (row.duration_days or 0) + duration_days
            row.amount = row.amount + price
            row.updated_at = now
            s.flush()
            self.journal.complete(tx.id, session=s)
            holding = MiningHolding.model_validate(row)

        logger.info(f"Holding {holding_id} renewed until {holding.end_date}")
        dispatch_notifications(self.notifications, [Notice(
            kind=NoticeKind.MINING,
            user_id=holding.user_id,
            title="Mining Power Renewed",
            message=f"Your {holding.package_name} mining package now runs until {holding.end_date:%Y-%m-%d}.",
            data={"holding_id": str(holding.id)},
        )])
        self._run_cascade(holding.user_id, price, tx.id, currency)
        return holding

    def increase_power(
        self,
        holding_id: UUID,
        additional_power: Amount,
        price: Amount,
        currency: Optional[str] = None,
    ) -> MiningHolding:
        """Paid mining-power top-up on an active holding. End date and rate are unchanged."""
        power = validate_amount(additional_power)
        price = validate_amount(price)

        with self.db.atomic() as s:
            row = self._load(s, holding_id, for_update=True)
            if row.status != HoldingStatus.ACTIVE.value:
                raise InvalidTransition(f"Holding {holding_id} is {row.status} and cannot be topped up")
            currency = currency or row.currency

            tx = self.journal.create(
                row.user_id, TransactionType.PURCHASE, price, currency,
                description=f"Additional {power} mining power for {row.package_name or row.id}",
                holding_id=row.id,
                session=s,
            )
            self.journal.start(tx.id, session=s)
            self.ledger.debit(row.user_id, currency, price, session=s)

            row.mining_power = row.mining_power + power
            row.amount = row.amount + price
            row.updated_at = utcnow()
            s.flush()
            self.journal.complete(tx.id, session=s)
            holding = MiningHolding.model_validate(row)

        logger.info(f"Holding {holding_id} increased by {power} mining power to {holding.mining_power}")
        dispatch_notifications(self.notifications, [Notice(
            kind=NoticeKind.MINING,
            user_id=holding.user_id,
            title="Mining Power Increased",
            message=f"Your {holding.package_name} mining package now has {holding.mining_power} mining power.",
            data={"holding_id": str(holding.id), "added_power": str(power)},
        )])
        self._run_cascade(holding.user_id, price, tx.id, currency)
        return holding

    def aggregate_power(self, user_id: UUID, as_of: Optional[date] = None) -> Decimal:
        day = as_of or today()
        with self.db.atomic() as s:
            total = s.scalar(
                select(func.sum(MiningHoldingRow.mining_power)).where(
                    MiningHoldingRow.user_id == user_id,
                    *self._active_on(day),
                )
            )
            return total if total is not None else Decimal("0")

    def active_holdings(self, day: date, session: Optional[Session] = None) -> list[MiningHolding]:
        with self.db.atomic(session) as s:
            rows = s.scalars(
                select(MiningHoldingRow)
                .where(*self._active_on(day))
                .order_by(MiningHoldingRow.user_id, MiningHoldingRow.created_at)
            ).all()
            return [MiningHolding.model_validate(r) for r in rows]

    def sweep_expired(self, as_of: Optional[date] = None) -> SweepResult:
        """
        Expire active holdings whose end date is before ``as_of``.

        Each row flips with a conditional update, so concurrent or repeated
        sweeps expire a holding exactly once.
        """
        day = as_of or today()
        cutoff = start_of_day(day)
        result = SweepResult(as_of=day)

        with self.db.atomic() as s:
            candidates = s.scalars(
                select(MiningHoldingRow.id).where(
                    MiningHoldingRow.status == HoldingStatus.ACTIVE.value,
                    MiningHoldingRow.end_date.is_not(None),
                    MiningHoldingRow.end_date < cutoff,
                )
            ).all()
            now = utcnow()
            for holding_id in candidates:
                flipped = s.execute(
                    update(MiningHoldingRow)
                    .where(
                        MiningHoldingRow.id == holding_id,
                        MiningHoldingRow.status == HoldingStatus.ACTIVE.value,
                    )
                    .values(status=HoldingStatus.EXPIRED.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if flipped.rowcount == 1:
                    row = s.get(MiningHoldingRow, holding_id, populate_existing=True)
                    result.expired.append(MiningHolding.model_validate(row))

        if result.expired:
            logger.info(f"Expired {result.count} holdings as of {day}")
        dispatch_notifications(self.notifications, [
            Notice(
                kind=NoticeKind.MINING,
                user_id=h.user_id,
                title="Mining Power Expired",
                message=f"Your {h.package_name} mining package with {h.mining_power} mining power has expired.",
                data={"holding_id": str(h.id), "mining_power": str(h.mining_power)},
            )
            for h in result.expired
        ])
        return result

    def cancel(self, holding_id: UUID, reason: Optional[str] = None) -> MiningHolding:
        """Cancel a pending or active holding. Refunds are the caller's decision."""
        with self.db.atomic() as s:
            row = self._load(s, holding_id, for_update=True)
            if row.status not in CANCELLABLE_STATUSES:
                raise InvalidTransition(f"Holding {holding_id} is {row.status} and cannot be cancelled")
            row.status = HoldingStatus.CANCELLED.value
            row.updated_at = utcnow()
            if reason:
                row.notes = reason
            s.flush()
            logger.info(f"Holding {holding_id} cancelled: {reason or 'no reason given'}")
            return MiningHolding.model_validate(row)

    def get(self, holding_id: UUID) -> MiningHolding:
        with self.db.atomic() as s:
            return MiningHolding.model_validate(self._load(s, holding_id))

    def list_for_user(self, user_id: UUID, status: Optional[HoldingStatus] = None) -> list[MiningHolding]:
        with self.db.atomic() as s:
            stmt = select(MiningHoldingRow).where(MiningHoldingRow.user_id == user_id)
            if status is not None:
                stmt = stmt.where(MiningHoldingRow.status == HoldingStatus(status).value)
            rows = s.scalars(stmt.order_by(MiningHoldingRow.created_at.desc())).all()
            return [MiningHolding.model_validate(r) for r in rows]

    def expiring_soon(self, days: int = 7) -> list[MiningHolding]:
        now = utcnow()
        with self.db.atomic() as s:
            rows = s.scalars(
                select(MiningHoldingRow)
                .where(
                    MiningHoldingRow.status == HoldingStatus.ACTIVE.value,
                    MiningHoldingRow.end_date.is_not(None),
                    MiningHoldingRow.end_date >= now,
                    MiningHoldingRow.end_date <= now + timedelta(days=days),
                )
                .order_by(MiningHoldingRow.end_date)
            ).all()
            return [MiningHolding.model_validate(r) for r in rows]

    def remaining_days(self, holding_id: UUID) -> Optional[int]:
        holding = self.get(holding_id)
        if holding.status != HoldingStatus.ACTIVE:
            return 0
        if holding.end_date is None:
            return None
        seconds = max(0.0, (holding.end_date - utcnow()).total_seconds())
        return math.ceil(seconds / 86400)

    def stats(self) -> dict:
        with self.db.atomic() as s:
            by_status = s.execute(
                select(MiningHoldingRow.status, func.count()).group_by(MiningHoldingRow.status)
            ).all()
            power = s.execute(
                select(MiningHoldingRow.currency, func.sum(MiningHoldingRow.mining_power))
                .where(MiningHoldingRow.status == HoldingStatus.ACTIVE.value)
                .group_by(MiningHoldingRow.currency)
            ).all()
            return {
                "count_by_status": {status: count for status, count in by_status},
                "active_power": {currency: total or Decimal("0") for currency, total in power},
            }

    def _active_on(self, day: date) -> tuple:
        return (
            MiningHoldingRow.status == HoldingStatus.ACTIVE.value,
            or_(MiningHoldingRow.end_date.is_(None), MiningHoldingRow.end_date >= start_of_day(day)),
        )

    def _insert_holding(
        self,
        session: Session,
        holding_id: UUID,
        user_id: UUID,
        package: PackageSnapshot,
        price: Decimal,
        currency: str,
        transaction_id: UUID,
    ) -> MiningHoldingRow:
        now = utcnow()
        end_date = None if package.is_indefinite() else now + timedelta(days=package.duration_days)
        row = MiningHoldingRow(
            id=holding_id,
            user_id=user_id,
            package_id=package.id,
            package_name=package.name,
            amount=price,
            currency=currency,
            mining_power=package.mining_power,
            daily_reward_rate=package.daily_reward_rate,
            duration_days=package.duration_days,
            start_date=now,
            end_date=end_date,
            status=HoldingStatus.ACTIVE.value,
            purchase_transaction_id=transaction_id,
        )
        session.add(row)
        session.flush()
        return row

    def _load(self, session: Session, holding_id: UUID, for_update: bool = False) -> MiningHoldingRow:
        stmt = select(MiningHoldingRow).where(MiningHoldingRow.id == holding_id)
        if for_update and self.db.supports_row_locks:
            stmt = stmt.with_for_update()
        row = session.scalars(stmt).first()
        if row is None:
            raise NotFound(f"Holding {holding_id} not found")
        return row

    def _run_cascade(self, user_id: UUID, amount: Decimal, transaction_id: UUID, currency: str) -> list[UUID]:
        if self.referrals is None:
            return []
        try:
            result = self.referrals.cascade(user_id, amount, CommissionType.PURCHASE, transaction_id, currency)
        except Exception:
            logger.exception(f"Purchase commission cascade failed for transaction {transaction_id}")
            return []
        return result.commission_ids
