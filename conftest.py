import logging
from decimal import Decimal
from uuid import UUID

import pytest

from ledger.collaborators import (
    InMemoryNotificationSink, InMemoryPackageCatalog, InMemorySettings, InMemoryUserDirectory,
)
from ledger.config import LOG_FORMAT
from ledger.db import Database
from ledger.journal import TransactionJournal
from ledger.service import LedgerService
from mining.platform import MiningPlatform

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'ledger.db'}")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def ledger(db):
    return LedgerService(db)


@pytest.fixture
def journal(db):
    return TransactionJournal(db)


@pytest.fixture
def users():
    return InMemoryUserDirectory()


@pytest.fixture
def settings():
    return InMemorySettings()


@pytest.fixture
def notifications():
    return InMemoryNotificationSink()


@pytest.fixture
def catalog():
    return InMemoryPackageCatalog(seed=True)


@pytest.fixture
def platform(db, users, settings, notifications, catalog):
    return MiningPlatform(
        db=db, users=users, settings=settings, notifications=notifications, catalog=catalog,
        settings_ttl=0,
    )


@pytest.fixture
def funded(ledger):
    """Credit a wallet and return it."""
    def _fund(user_id: UUID, amount, currency: str = "TRX"):
        return ledger.credit(user_id, currency, Decimal(str(amount)))
    return _fund
