from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class WalletStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"
    FROZEN = "frozen"


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    PURCHASE = "purchase"
    MINING_REWARD = "mining_reward"
    REFERRAL_COMMISSION = "referral_commission"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
})


class HoldingStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class CommissionType(str, Enum):
    DEPOSIT = "deposit"
    MINING = "mining"
    PURCHASE = "purchase"
    REGISTRATION = "registration"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Wallet(BaseModel):
    id: UUID
    user_id: UUID
    currency: str
    balance: Decimal
    locked_balance: Decimal
    status: WalletStatus
    last_deposit_at: Optional[datetime] = None
    last_withdrawal_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def available_balance(self) -> Decimal:
        return self.balance - self.locked_balance


class Balance(BaseModel):
    user_id: UUID
    currency: str
    balance: Decimal = Decimal("0")
    locked_balance: Decimal = Decimal("0")
    available_balance: Decimal = Decimal("0")
    status: Optional[WalletStatus] = None


class Transaction(BaseModel):
    id: UUID
    user_id: UUID
    type: TransactionType
    amount: Decimal
    fee: Decimal = Decimal("0")
    currency: str
    status: TransactionStatus
    reference_id: str
    tx_hash: Optional[str] = None
    idempotency_key: Optional[str] = None
    reward_date: Optional[date] = None
    holding_id: Optional[UUID] = None
    description: str = ""
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class MiningHolding(BaseModel):
    id: UUID
    user_id: UUID
    package_id: Optional[UUID] = None
    package_name: str = ""
    amount: Decimal
    currency: str
    mining_power: Decimal
    daily_reward_rate: Decimal
    duration_days: Optional[int] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    status: HoldingStatus
    purchase_transaction_id: Optional[UUID] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_active_on(self, day: date) -> bool:
        if self.status != HoldingStatus.ACTIVE:
            return False
        return self.end_date is None or self.end_date.date() >= day

    def daily_reward(self) -> Decimal:
        return self.mining_power * self.daily_reward_rate / Decimal(100)


class ReferralCommission(BaseModel):
    id: UUID
    user_id: UUID
    referral_id: UUID
    amount: Decimal
    currency: str
    type: CommissionType
    level: int
    status: CommissionStatus
    source_transaction_id: UUID
    transaction_id: Optional[UUID] = None
    description: str = ""
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PackageSnapshot(BaseModel):
    """Mining package terms as sold; copied onto the holding at purchase time."""

    id: UUID
    name: str = ""
    price: Decimal
    mining_power: Decimal
    daily_reward_rate: Decimal = Field(..., description="Percent of mining power paid per day")
    duration_days: Optional[int] = Field(default=None, description="None for an indefinite package")
    currency: str = "TRX"

    def is_indefinite(self) -> bool:
        return self.duration_days is None


class UserRecord(BaseModel):
    id: UUID
    referred_by: Optional[UUID] = None
    status: str = "active"


class PurchaseResult(BaseModel):
    holding: MiningHolding
    transaction: Transaction
    commission_ids: list[UUID] = Field(default_factory=list)
    message: str


class RewardRunStats(BaseModel):
    reward_date: date
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    holdings_rewarded: int = 0
    total_amount: Decimal = Decimal("0")
    totals_by_currency: dict[str, Decimal] = Field(default_factory=dict)
    transaction_ids: list[UUID] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    interrupted: bool = False


class SweepResult(BaseModel):
    as_of: date
    expired: list[MiningHolding] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.expired)


class CascadeResult(BaseModel):
    source_transaction_id: UUID
    commission_ids: list[UUID] = Field(default_factory=list)
    completed: int = 0
    failed: int = 0
    duplicates: int = 0
    levels_walked: int = 0
    errors: list[str] = Field(default_factory=list)


class PurchaseRequest(BaseModel):
    package_id: UUID
    currency: Optional[str] = None


class PowerIncreaseRequest(BaseModel):
    additional_power: Decimal = Field(..., gt=0)
    price: Decimal = Field(..., gt=0)
    currency: Optional[str] = None


class DepositRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(default="TRX")
    tx_hash: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 500.00,
            "currency": "TRX",
            "tx_hash": "9f3c1e0b7d",
        }
    })


class WithdrawalRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(default="TRX")


class TransactionHistoryResponse(BaseModel):
    user_id: UUID
    transactions: list[Transaction]
    total_count: int
