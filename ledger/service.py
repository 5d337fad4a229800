import logging
from decimal import Decimal, InvalidOperation
from typing import Optional, Union
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import Database
from .errors import InsufficientFunds, InvalidAmount, NotFound, OverUnlock, WalletInactive
from .models import Balance, Wallet, WalletStatus
from .tables import WalletRow, quantize, utcnow

logger = logging.getLogger(__name__)

Amount = Union[Decimal, int, float, str]


def validate_amount(amount: Amount, allow_zero: bool = False) -> Decimal:
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        if not value.is_finite() or value < 0 or (value == 0 and not allow_zero):
            raise InvalidAmount(f"Amount must be positive, got {amount}")
        exact = quantize(value) == value
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"Malformed amount: {amount!r}")
    if not exact:
        raise InvalidAmount(f"Amount {amount} exceeds the supported precision")
    return value


class LedgerService:
    """Sole owner of wallet balances. Every mutation is a guarded row update."""

    def __init__(self, db: Database):
        self.db = db

    def get_or_create(self, user_id: UUID, currency: str, session: Optional[Session] = None) -> Wallet:
        with self.db.atomic(session) as s:
            return Wallet.model_validate(self._get_or_create_row(s, user_id, currency))

    def get_wallet(self, user_id: UUID, currency: str, session: Optional[Session] = None) -> Wallet:
        with self.db.atomic(session) as s:
            row = self._row(s, user_id, currency)
            if row is None:
                raise NotFound(f"No {currency} wallet for user {user_id}")
            return Wallet.model_validate(row)

    def list_wallets(self, user_id: UUID) -> list[Wallet]:
        with self.db.atomic() as s:
            rows = s.scalars(
                select(WalletRow).where(WalletRow.user_id == user_id).order_by(WalletRow.currency)
            ).all()
            return [Wallet.model_validate(r) for r in rows]

    def get_balance(self, user_id: UUID, currency: str) -> Balance:
        with self.db.atomic() as s:
            row = self._row(s, user_id, currency)
            if row is None:
                return Balance(user_id=user_id, currency=currency)
            return Balance(
                user_id=user_id,
                currency=currency,
                balance=row.balance,
                locked_balance=row.locked_balance,
                available_balance=row.balance - row.locked_balance,
                status=WalletStatus(row.status),
            )

    def credit(self, user_id: UUID, currency: str, amount: Amount, session: Optional[Session] = None) -> Wallet:
        value = validate_amount(amount)
        with self.db.atomic(session) as s:
            row = self._get_or_create_row(s, user_id, currency, for_update=True)
            now = utcnow()
            self._apply(s, row, balance=WalletRow.balance + value, last_deposit_at=now, updated_at=now)
            logger.info(f"Credited {value} {currency} to user {user_id}")
            return Wallet.model_validate(row)

    def debit(self, user_id: UUID, currency: str, amount: Amount, session: Optional[Session] = None) -> Wallet:
        value = validate_amount(amount)
        with self.db.atomic(session) as s:
            row = self._require_active(s, user_id, currency)
            now = utcnow()
            applied = self._apply(
                s, row,
                WalletRow.status == WalletStatus.ACTIVE.value,
                WalletRow.balance >= WalletRow.locked_balance + value,
                balance=WalletRow.balance - value, last_withdrawal_at=now, updated_at=now,
            )
            if not applied:
                raise self._refusal(row, value)
            logger.info(f"Debited {value} {currency} from user {user_id}")
            return Wallet.model_validate(row)

    def lock(self, user_id: UUID, currency: str, amount: Amount, session: Optional[Session] = None) -> Wallet:
        value = validate_amount(amount)
        with self.db.atomic(session) as s:
            row = self._require_active(s, user_id, currency)
            applied = self._apply(
                s, row,
                WalletRow.status == WalletStatus.ACTIVE.value,
                WalletRow.balance >= WalletRow.locked_balance + value,
                locked_balance=WalletRow.locked_balance + value, updated_at=utcnow(),
            )
            if not applied:
                raise self._refusal(row, value)
            logger.info(f"Locked {value} {currency} for user {user_id}")
            return Wallet.model_validate(row)

    def unlock(self, user_id: UUID, currency: str, amount: Amount, session: Optional[Session] = None) -> Wallet:
        value = validate_amount(amount)
        with self.db.atomic(session) as s:
            row = self._row(s, user_id, currency, for_update=True)
            if row is None:
                raise NotFound(f"No {currency} wallet for user {user_id}")
            applied = self._apply(
                s, row,
                WalletRow.locked_balance >= value,
                locked_balance=WalletRow.locked_balance - value, updated_at=utcnow(),
            )
            if not applied:
                raise OverUnlock(f"Cannot unlock {value} {currency}: only {row.locked_balance} locked")
            logger.info(f"Unlocked {value} {currency} for user {user_id}")
            return Wallet.model_validate(row)

    def transfer(
        self,
        from_user_id: UUID,
        to_user_id: UUID,
        currency: str,
        amount: Amount,
        session: Optional[Session] = None,
    ) -> tuple[Wallet, Wallet]:
        value = validate_amount(amount)
        if from_user_id == to_user_id:
            raise InvalidAmount("Cannot transfer to the same wallet")

        with self.db.atomic(session) as s:
            # Lock both rows in a fixed order so opposing transfers cannot deadlock.
            for user_id in sorted((from_user_id, to_user_id), key=str):
                self._row(s, user_id, currency, for_update=True)
            source = self.debit(from_user_id, currency, value, session=s)
            target = self.credit(to_user_id, currency, value, session=s)
            return source, target

    def set_status(self, user_id: UUID, currency: str, status: WalletStatus) -> Wallet:
        with self.db.atomic() as s:
            row = self._row(s, user_id, currency, for_update=True)
            if row is None:
                raise NotFound(f"No {currency} wallet for user {user_id}")
            row.status = WalletStatus(status).value
            row.updated_at = utcnow()
            s.flush()
            logger.info(f"Wallet {currency} of user {user_id} is now {row.status}")
            return Wallet.model_validate(row)

    def stats(self) -> dict:
        with self.db.atomic() as s:
            total = s.scalar(select(func.count()).select_from(WalletRow)) or 0
            active = s.scalar(
                select(func.count()).select_from(WalletRow).where(WalletRow.status == WalletStatus.ACTIVE.value)
            ) or 0
            rows = s.execute(
                select(WalletRow.currency, func.sum(WalletRow.balance), func.sum(WalletRow.locked_balance))
                .group_by(WalletRow.currency)
            ).all()
            return {
                "total_wallets": total,
                "active_wallets": active,
                "total_balance": {currency: balance or Decimal("0") for currency, balance, _ in rows},
                "locked_balance": {currency: locked or Decimal("0") for currency, _, locked in rows},
            }

    def _row(self, session: Session, user_id: UUID, currency: str, for_update: bool = False) -> Optional[WalletRow]:
        stmt = select(WalletRow).where(WalletRow.user_id == user_id, WalletRow.currency == currency)
        if for_update and self.db.supports_row_locks:
            stmt = stmt.with_for_update()
        return session.scalars(stmt).first()

    def _get_or_create_row(self, session: Session, user_id: UUID, currency: str, for_update: bool = False) -> WalletRow:
        row = self._row(session, user_id, currency, for_update=for_update)
        if row is not None:
            return row
        try:
            with session.begin_nested():
                row = WalletRow(user_id=user_id, currency=currency, balance=Decimal("0"), locked_balance=Decimal("0"))
                session.add(row)
            logger.info(f"Created {currency} wallet for user {user_id}")
            return row
        except IntegrityError:
            # Another unit created it first.
            row = self._row(session, user_id, currency, for_update=for_update)
            if row is None:
                raise
            return row

    def _require_active(self, session: Session, user_id: UUID, currency: str) -> WalletRow:
        row = self._row(session, user_id, currency, for_update=True)
        if row is None:
            raise NotFound(f"No {currency} wallet for user {user_id}")
        if row.status != WalletStatus.ACTIVE.value:
            raise WalletInactive(f"{currency} wallet of user {user_id} is {row.status}")
        return row

    def _apply(self, session: Session, row: WalletRow, *conditions, **values) -> bool:
        result = session.execute(
            update(WalletRow)
            .where(WalletRow.id == row.id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        session.refresh(row)
        return result.rowcount == 1

    def _refusal(self, row: WalletRow, amount: Decimal) -> Exception:
        if row.status != WalletStatus.ACTIVE.value:
            return WalletInactive(f"{row.currency} wallet of user {row.user_id} is {row.status}")
        available = row.balance - row.locked_balance
        return InsufficientFunds(
            f"Insufficient {row.currency} funds: available {available}, requested {amount}"
        )
