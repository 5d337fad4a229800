"""
SQLAlchemy tables for the four durable stores: wallets, transactions,
mining holdings and referral commissions.
"""

from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger, CheckConstraint, Date, DateTime, Index, Integer, String, Text,
    TypeDecorator, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .config import AMOUNT_DECIMALS
from .models import (
    CommissionStatus, CommissionType, HoldingStatus, TransactionStatus, WalletStatus,
)

QUANTUM = Decimal(1).scaleb(-AMOUNT_DECIMALS)
_SCALE = 10 ** AMOUNT_DECIMALS


def quantize(value: Decimal) -> Decimal:
    """Round down to the stored precision (never pays out a fraction more)."""
    return Decimal(value).quantize(QUANTUM, rounding=ROUND_DOWN)


class FixedPoint(TypeDecorator):
    """Decimal stored as an integer count of 10^-8 units."""

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return int(quantize(Decimal(value)).scaleb(AMOUNT_DECIMALS))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return (Decimal(int(value)) / _SCALE).quantize(QUANTUM)


def utcnow() -> datetime:
    # Stored naive, always UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class WalletRow(Base):
    __tablename__ = "wallets"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    balance: Mapped[Decimal] = mapped_column(FixedPoint, default=Decimal("0"), nullable=False)
    locked_balance: Mapped[Decimal] = mapped_column(FixedPoint, default=Decimal("0"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=WalletStatus.ACTIVE.value, nullable=False)
    last_deposit_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_withdrawal_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "currency", name="uq_wallet_user_currency"),
        CheckConstraint("locked_balance >= 0", name="ck_wallet_locked_positive"),
        CheckConstraint("balance >= locked_balance", name="ck_wallet_locked_within_balance"),
    )


class TransactionRow(Base):
    __tablename__ = "transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(FixedPoint, nullable=False)
    fee: Mapped[Decimal] = mapped_column(FixedPoint, default=Decimal("0"), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=TransactionStatus.PENDING.value, nullable=False)
    reference_id: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(200), unique=True, nullable=True)
    reward_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    holding_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_transaction_amount_positive"),
        CheckConstraint("fee >= 0", name="ck_transaction_fee_positive"),
        Index("ix_transactions_user_type_status", "user_id", "type", "status"),
    )


class MiningHoldingRow(Base):
    __tablename__ = "mining_holdings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    package_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    package_name: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    amount: Mapped[Decimal] = mapped_column(FixedPoint, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    mining_power: Mapped[Decimal] = mapped_column(FixedPoint, nullable=False)
    daily_reward_rate: Mapped[Decimal] = mapped_column(FixedPoint, nullable=False)
    duration_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=HoldingStatus.ACTIVE.value, nullable=False)
    purchase_transaction_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("mining_power >= 0", name="ck_holding_power_positive"),
        Index("ix_holdings_status_end_date", "status", "end_date"),
    )


class ReferralCommissionRow(Base):
    __tablename__ = "referral_commissions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    referral_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    amount: Mapped[Decimal] = mapped_column(FixedPoint, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    type: Mapped[str] = mapped_column(String(20), default=CommissionType.DEPOSIT.value, nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=CommissionStatus.PENDING.value, nullable=False)
    source_transaction_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    transaction_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "source_transaction_id", "user_id", "level",
            name="uq_commission_source_receiver_level",
        ),
        CheckConstraint("level >= 1", name="ck_commission_level_positive"),
    )

