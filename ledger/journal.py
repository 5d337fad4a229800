"""
Transaction journal: the audit trail of every balance-affecting event.

Status lifecycle:

    pending -> processing -> completed | failed
    pending -> cancelled

Terminal rows are never modified again. The journal does not move money;
callers pair a LedgerService call with the status change inside one unit.
"""

import logging
import secrets
import time
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import Database
from .errors import DuplicateEvent, InvalidTransition, NotFound
from .models import Transaction, TransactionStatus, TransactionType, TERMINAL_STATUSES
from .service import Amount, validate_amount
from .tables import TransactionRow, utcnow

logger = logging.getLogger(__name__)

REFERENCE_PREFIXES = {
    TransactionType.DEPOSIT: "DEP",
    TransactionType.WITHDRAWAL: "WDR",
    TransactionType.PURCHASE: "PKG",
    TransactionType.MINING_REWARD: "MRW",
    TransactionType.REFERRAL_COMMISSION: "REF",
}

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.PROCESSING, TransactionStatus.CANCELLED}),
    TransactionStatus.PROCESSING: frozenset({TransactionStatus.COMPLETED, TransactionStatus.FAILED}),
}


REFERENCE_ATTEMPTS = 5


def can_transition(current: TransactionStatus, new: TransactionStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(TransactionStatus(current), frozenset())


def new_reference_id(tx_type: TransactionType) -> str:
    prefix = REFERENCE_PREFIXES[TransactionType(tx_type)]
    return f"{prefix}{int(time.time())}{secrets.token_hex(3).upper()}"


class TransactionJournal:
    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        user_id: UUID,
        tx_type: TransactionType,
        amount: Amount,
        currency: str,
        fee: Amount = Decimal("0"),
        description: str = "",
        tx_hash: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        reward_date: Optional[date] = None,
        holding_id: Optional[UUID] = None,
        session: Optional[Session] = None,
    ) -> Transaction:
        """
        Insert a pending transaction.

        A repeated ``idempotency_key`` is rejected by the unique index inside the
        unit and raised as DuplicateEvent.
        """
        value = validate_amount(amount, allow_zero=True)
        fee_value = validate_amount(fee, allow_zero=True)
        tx_type = TransactionType(tx_type)

        with self.db.atomic(session) as s:
            for attempt in range(1, REFERENCE_ATTEMPTS + 1):
                row = TransactionRow(
                    user_id=user_id,
                    type=tx_type.value,
                    amount=value,
                    fee=fee_value,
                    currency=currency,
                    status=TransactionStatus.PENDING.value,
                    reference_id=self._unique_reference_id(s, tx_type),
                    tx_hash=tx_hash,
                    idempotency_key=idempotency_key,
                    reward_date=reward_date,
                    holding_id=holding_id,
                    description=description,
                )
                try:
                    with s.begin_nested():
                        s.add(row)
                    break
                except IntegrityError as e:
                    if idempotency_key is not None and self._by_idempotency_key(s, idempotency_key) is not None:
                        logger.warning(f"Duplicate {tx_type.value} event rejected: {idempotency_key}")
                        raise DuplicateEvent(f"Event {idempotency_key} was already recorded") from e
                    if attempt == REFERENCE_ATTEMPTS or not self._reference_taken(s, row.reference_id):
                        raise
                    logger.warning(f"Reference id {row.reference_id} taken by a concurrent insert, regenerating")
            logger.info(f"Recorded {tx_type.value} {row.reference_id}: {value} {currency} for user {user_id}")
            return Transaction.model_validate(row)

    def get(self, tx_id: UUID, session: Optional[Session] = None) -> Transaction:
        with self.db.atomic(session) as s:
            return Transaction.model_validate(self._load(s, tx_id))

    def get_by_reference(self, reference_id: str) -> Optional[Transaction]:
        with self.db.atomic() as s:
            row = s.scalars(select(TransactionRow).where(TransactionRow.reference_id == reference_id)).first()
            return Transaction.model_validate(row) if row else None

    def get_by_tx_hash(self, tx_hash: str) -> Optional[Transaction]:
        with self.db.atomic() as s:
            row = s.scalars(select(TransactionRow).where(TransactionRow.tx_hash == tx_hash)).first()
            return Transaction.model_validate(row) if row else None

    def get_by_idempotency_key(self, key: str, session: Optional[Session] = None) -> Optional[Transaction]:
        with self.db.atomic(session) as s:
            row = self._by_idempotency_key(s, key)
            return Transaction.model_validate(row) if row else None

    def update_status(
        self,
        tx_id: UUID,
        status: TransactionStatus,
        tx_hash: Optional[str] = None,
        note: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> Transaction:
        new_status = TransactionStatus(status)
        with self.db.atomic(session) as s:
            row = self._load(s, tx_id, for_update=True)
            current = TransactionStatus(row.status)
            if not can_transition(current, new_status):
                raise InvalidTransition(
                    f"Transaction {row.reference_id} cannot move from {current.value} to {new_status.value}"
                )
            now = utcnow()
            row.status = new_status.value
            row.updated_at = now
            if new_status in TERMINAL_STATUSES:
                row.processed_at = now
            if tx_hash is not None:
                row.tx_hash = tx_hash
            if note:
                row.description = f"{row.description} | {note}" if row.description else note
            s.flush()
            logger.debug(f"Transaction {row.reference_id}: {current.value} -> {new_status.value}")
            return Transaction.model_validate(row)

    def start(self, tx_id: UUID, session: Optional[Session] = None) -> Transaction:
        return self.update_status(tx_id, TransactionStatus.PROCESSING, session=session)

    def complete(self, tx_id: UUID, tx_hash: Optional[str] = None, session: Optional[Session] = None) -> Transaction:
        return self.update_status(tx_id, TransactionStatus.COMPLETED, tx_hash=tx_hash, session=session)

    def fail(self, tx_id: UUID, reason: Optional[str] = None, session: Optional[Session] = None) -> Transaction:
        note = f"Failed: {reason}" if reason else None
        return self.update_status(tx_id, TransactionStatus.FAILED, note=note, session=session)

    def cancel(self, tx_id: UUID, reason: Optional[str] = None, session: Optional[Session] = None) -> Transaction:
        note = f"Cancelled: {reason}" if reason else None
        return self.update_status(tx_id, TransactionStatus.CANCELLED, note=note, session=session)

    def list_for_user(
        self,
        user_id: UUID,
        tx_type: Optional[TransactionType] = None,
        status: Optional[TransactionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        with self.db.atomic() as s:
            conditions = [TransactionRow.user_id == user_id]
            if tx_type is not None:
                conditions.append(TransactionRow.type == TransactionType(tx_type).value)
            if status is not None:
                conditions.append(TransactionRow.status == TransactionStatus(status).value)

            total = s.scalar(select(func.count()).select_from(TransactionRow).where(*conditions)) or 0
            rows = s.scalars(
                select(TransactionRow)
                .where(*conditions)
                .order_by(TransactionRow.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return [Transaction.model_validate(r) for r in rows], total

    def stats(
        self,
        tx_type: Optional[TransactionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> dict:
        with self.db.atomic() as s:
            conditions = []
            if tx_type is not None:
                conditions.append(TransactionRow.type == TransactionType(tx_type).value)
            if start is not None:
                conditions.append(TransactionRow.created_at >= start)
            if end is not None:
                conditions.append(TransactionRow.created_at <= end)

            by_status = s.execute(
                select(TransactionRow.status, func.count())
                .where(*conditions)
                .group_by(TransactionRow.status)
            ).all()
            completed = s.execute(
                select(TransactionRow.currency, func.sum(TransactionRow.amount))
                .where(TransactionRow.status == TransactionStatus.COMPLETED.value, *conditions)
                .group_by(TransactionRow.currency)
            ).all()
            return {
                "total_transactions": sum(count for _, count in by_status),
                "count_by_status": {status: count for status, count in by_status},
                "completed_amount": {currency: amount or Decimal("0") for currency, amount in completed},
            }

    def _load(self, session: Session, tx_id: UUID, for_update: bool = False) -> TransactionRow:
        stmt = select(TransactionRow).where(TransactionRow.id == tx_id)
        if for_update and self.db.supports_row_locks:
            stmt = stmt.with_for_update()
        row = session.scalars(stmt).first()
        if row is None:
            raise NotFound(f"Transaction {tx_id} not found")
        return row

    def _by_idempotency_key(self, session: Session, key: str) -> Optional[TransactionRow]:
        return session.scalars(select(TransactionRow).where(TransactionRow.idempotency_key == key)).first()

    def _unique_reference_id(self, session: Session, tx_type: TransactionType) -> str:
        reference_id = new_reference_id(tx_type)
        while session.scalar(select(TransactionRow.id).where(TransactionRow.reference_id == reference_id)):
            reference_id = new_reference_id(tx_type)
        return reference_id

    def _reference_taken(self, session: Session, reference_id: str) -> bool:
        return session.scalar(select(TransactionRow.id).where(TransactionRow.reference_id == reference_id)) is not None
