"""Wires the ledger, journal, tracker, accrual job and cascade around one database."""

import logging
from typing import Optional

from ledger import config
from ledger.collaborators import (
    CachedSettings, InMemoryNotificationSink, InMemoryPackageCatalog, InMemorySettings,
    InMemoryUserDirectory, NotificationSink, PackageCatalog, SettingsStore, UserDirectory,
)
from ledger.db import Database
from ledger.journal import TransactionJournal
from ledger.payments import PaymentService
from ledger.service import LedgerService
from referrals.cascade import ReferralCascade

from .accrual import RewardAccrualJob
from .holdings import HoldingTracker

logger = logging.getLogger(__name__)


class MiningPlatform:
    def __init__(
        self,
        db: Optional[Database] = None,
        users: Optional[UserDirectory] = None,
        settings: Optional[SettingsStore] = None,
        notifications: Optional[NotificationSink] = None,
        catalog: Optional[PackageCatalog] = None,
        settings_ttl: float = config.SETTINGS_TTL_SECONDS,
    ):
        self.db = db or Database()
        self.users = users if users is not None else InMemoryUserDirectory()
        self.settings = CachedSettings(settings if settings is not None else InMemorySettings(), ttl=settings_ttl)
        self.notifications = notifications if notifications is not None else InMemoryNotificationSink()
        self.catalog = catalog if catalog is not None else InMemoryPackageCatalog(seed=True)

        self.ledger = LedgerService(self.db)
        self.journal = TransactionJournal(self.db)
        self.referrals = ReferralCascade(
            self.db, self.ledger, self.journal, self.users, self.settings, self.notifications,
        )
        self.holdings = HoldingTracker(
            self.db, self.ledger, self.journal, self.referrals, self.notifications, self.catalog,
        )
        self.accrual = RewardAccrualJob(
            self.db, self.ledger, self.journal, self.holdings, self.referrals, self.notifications,
        )
        self.payments = PaymentService(
            self.db, self.ledger, self.journal, self.settings, self.referrals, self.notifications,
        )

    def setup(self) -> "MiningPlatform":
        self.db.create_all()
        logger.info(f"Mining ledger ready on {self.db.engine.url.render_as_string(hide_password=True)}")
        return self

    def stats(self) -> dict:
        return {
            "wallets": self.ledger.stats(),
            "transactions": self.journal.stats(),
            "holdings": self.holdings.stats(),
            "commissions": self.referrals.stats(),
        }
