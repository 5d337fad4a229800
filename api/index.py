from contextlib import asynccontextmanager
from datetime import date
from typing import Optional
from uuid import UUID
import sys
import os

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ledger.config import DEFAULT_CURRENCY, configure_logging
from ledger.errors import (
    DependencyUnavailable, DuplicateEvent, InsufficientFunds, InvalidAmount, InvalidTransition,
    LedgerError, NotFound, OverUnlock, WalletInactive,
)
from ledger.models import (
    Balance, DepositRequest, MiningHolding, PowerIncreaseRequest, PurchaseRequest, PurchaseResult,
    RewardRunStats, SweepResult, Transaction, TransactionHistoryResponse, Wallet, WithdrawalRequest,
)
from mining.platform import MiningPlatform

ERROR_STATUS = {
    NotFound: status.HTTP_404_NOT_FOUND,
    DuplicateEvent: status.HTTP_409_CONFLICT,
    InvalidTransition: status.HTTP_409_CONFLICT,
    InsufficientFunds: status.HTTP_400_BAD_REQUEST,
    OverUnlock: status.HTTP_400_BAD_REQUEST,
    InvalidAmount: status.HTTP_400_BAD_REQUEST,
    WalletInactive: status.HTTP_400_BAD_REQUEST,
    DependencyUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(error: LedgerError) -> int:
    for error_type, code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


def create_app(platform: Optional[MiningPlatform] = None) -> FastAPI:
    platform = platform or MiningPlatform()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        platform.setup()
        yield
        platform.db.dispose()

    app = FastAPI(
        title="Mining Ledger API",
        description="Wallet ledger, mining rewards and referral commissions",
        version="1.0.0",
        root_path="/api",
        lifespan=lifespan,
    )
    app.state.platform = platform

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(status_code=status_for(exc), content={"detail": str(exc)})

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "service": "mining-ledger"}

    @app.get("/users/{user_id}/wallets", response_model=list[Wallet])
    def list_wallets(user_id: UUID):
        return platform.ledger.list_wallets(user_id)

    @app.get("/users/{user_id}/balance", response_model=Balance)
    def get_balance(user_id: UUID, currency: str = DEFAULT_CURRENCY):
        return platform.ledger.get_balance(user_id, currency)

    @app.get("/users/{user_id}/transactions", response_model=TransactionHistoryResponse)
    def get_transactions(user_id: UUID, limit: int = 50, offset: int = 0):
        transactions, total = platform.journal.list_for_user(user_id, limit=limit, offset=offset)
        return TransactionHistoryResponse(user_id=user_id, transactions=transactions, total_count=total)

    @app.get("/transactions/{tx_id}", response_model=Transaction)
    def get_transaction(tx_id: UUID):
        return platform.journal.get(tx_id)

    @app.get("/users/{user_id}/holdings", response_model=list[MiningHolding])
    def list_holdings(user_id: UUID):
        return platform.holdings.list_for_user(user_id)

    @app.get("/users/{user_id}/mining-power")
    def get_mining_power(user_id: UUID, as_of: Optional[date] = None):
        return {"user_id": user_id, "mining_power": platform.holdings.aggregate_power(user_id, as_of)}

    @app.post("/users/{user_id}/purchases", response_model=PurchaseResult, status_code=status.HTTP_201_CREATED)
    def purchase_package(user_id: UUID, request: PurchaseRequest):
        return platform.holdings.purchase_package(user_id, request.package_id, request.currency)

    @app.post("/holdings/{holding_id}/power", response_model=MiningHolding)
    def increase_power(holding_id: UUID, request: PowerIncreaseRequest):
        return platform.holdings.increase_power(
            holding_id, request.additional_power, request.price, request.currency,
        )

    @app.post("/users/{user_id}/deposits", response_model=Transaction, status_code=status.HTTP_201_CREATED)
    def create_deposit(user_id: UUID, request: DepositRequest):
        return platform.payments.create_deposit(user_id, request.amount, request.currency, request.tx_hash)

    @app.post("/deposits/{tx_id}/confirm", response_model=Transaction)
    def confirm_deposit(tx_id: UUID, tx_hash: Optional[str] = None):
        return platform.payments.confirm_deposit(tx_id, tx_hash)

    @app.post("/users/{user_id}/withdrawals", response_model=Transaction, status_code=status.HTTP_201_CREATED)
    def request_withdrawal(user_id: UUID, request: WithdrawalRequest):
        return platform.payments.request_withdrawal(user_id, request.amount, request.currency)

    @app.post("/jobs/rewards", response_model=RewardRunStats)
    def run_rewards(reward_date: Optional[date] = None):
        return platform.accrual.run(reward_date)

    @app.post("/jobs/expiry-sweep", response_model=SweepResult)
    def sweep_expired(as_of: Optional[date] = None):
        return platform.holdings.sweep_expired(as_of)

    @app.get("/stats")
    def get_stats():
        return platform.stats()

    return app


app = create_app()

handler = Mangum(app)
