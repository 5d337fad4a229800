"""
Interfaces to the collaborators the engine consumes but does not own:
user directory, settings store, notification sink and package catalog.

In-memory implementations back local runs and the test suite.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Protocol, Union
from uuid import UUID

from .errors import DependencyUnavailable
from .models import PackageSnapshot, UserRecord

logger = logging.getLogger(__name__)

Number = Union[int, float, Decimal]


class SettingKeys:
    REFERRAL_ENABLED = "referral_enabled"
    REFERRAL_LEVELS = "referral_levels"
    MIN_DEPOSIT = "min_deposit_amount"
    MIN_WITHDRAWAL = "min_withdrawal_amount"
    WITHDRAWAL_FEE = "withdrawal_fee"

    @staticmethod
    def level_rate(level: int) -> str:
        return f"referral_level{level}_rate"

    @staticmethod
    def typed_level_rate(commission_type: str, level: int) -> str:
        return f"referral_{commission_type}_level{level}_rate"


class NoticeKind:
    MINING = "mining"
    TRANSACTION = "transaction"
    REFERRAL = "referral"


DEFAULT_SETTINGS: dict[str, Number] = {
    SettingKeys.REFERRAL_ENABLED: 1,
    SettingKeys.REFERRAL_LEVELS: 3,
    SettingKeys.MIN_DEPOSIT: 50,
    SettingKeys.MIN_WITHDRAWAL: 100,
    SettingKeys.WITHDRAWAL_FEE: 10,
}


class UserDirectory(Protocol):
    def get_user(self, user_id: UUID) -> Optional[UserRecord]: ...


class SettingsStore(Protocol):
    def get_number(self, key: str, default: Optional[Number] = None) -> Optional[Decimal]: ...


class NotificationSink(Protocol):
    def notify_user(self, user_id: UUID, kind: str, title: str, message: str, data: Optional[dict] = None) -> None: ...

    def notify_all_admins(self, kind: str, title: str, message: str, data: Optional[dict] = None) -> None: ...


class PackageCatalog(Protocol):
    def get_package(self, package_id: UUID) -> Optional[PackageSnapshot]: ...


class InMemoryUserDirectory:
    def __init__(self, users: Iterable[UserRecord] = ()):
        self.users: dict[UUID, UserRecord] = {u.id: u for u in users}

    def add(self, user_id: UUID, referred_by: Optional[UUID] = None, status: str = "active") -> UserRecord:
        user = UserRecord(id=user_id, referred_by=referred_by, status=status)
        self.users[user_id] = user
        return user

    def get_user(self, user_id: UUID) -> Optional[UserRecord]:
        return self.users.get(user_id)


class InMemorySettings:
    def __init__(self, values: Optional[dict[str, Number]] = None, with_defaults: bool = True):
        self.values: dict[str, Number] = dict(DEFAULT_SETTINGS) if with_defaults else {}
        self.values.update(values or {})

    def set(self, key: str, value: Number) -> None:
        self.values[key] = value

    def get_number(self, key: str, default: Optional[Number] = None) -> Optional[Decimal]:
        value = self.values.get(key, default)
        if value is None:
            return None
        return Decimal(str(value))


class CachedSettings:
    """
    Read-through cache in front of a settings store.

    Entries live for ``ttl`` seconds; ``invalidate`` drops one key or the whole
    cache. Backend failures surface as DependencyUnavailable.
    """

    _MISSING = object()

    def __init__(self, backend: SettingsStore, ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.backend = backend
        self.ttl = ttl
        self._clock = clock
        self._cache: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get_number(self, key: str, default: Optional[Number] = None) -> Optional[Decimal]:
        now = self._clock()
        with self._lock:
            cached = self._cache.get(key)
        if cached and cached[0] > now:
            value = cached[1]
        else:
            try:
                value = self.backend.get_number(key, None)
            except DependencyUnavailable:
                raise
            except Exception as e:
                raise DependencyUnavailable(f"Settings lookup failed for {key}: {e}") from e
            if value is None:
                value = self._MISSING
            with self._lock:
                self._cache[key] = (now + self.ttl, value)

        if value is self._MISSING:
            return None if default is None else Decimal(str(default))
        return value

    def invalidate(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._cache.clear()
            else:
                self._cache.pop(key, None)


@dataclass
class Notice:
    kind: str
    title: str
    message: str
    user_id: Optional[UUID] = None
    data: dict = field(default_factory=dict)

    @property
    def for_admins(self) -> bool:
        return self.user_id is None


class InMemoryNotificationSink:
    def __init__(self):
        self.sent: list[Notice] = []

    def notify_user(self, user_id: UUID, kind: str, title: str, message: str, data: Optional[dict] = None) -> None:
        self.sent.append(Notice(kind=kind, title=title, message=message, user_id=user_id, data=data or {}))

    def notify_all_admins(self, kind: str, title: str, message: str, data: Optional[dict] = None) -> None:
        self.sent.append(Notice(kind=kind, title=title, message=message, data=data or {}))

    def for_user(self, user_id: UUID) -> list[Notice]:
        return [n for n in self.sent if n.user_id == user_id]

    def for_admins(self) -> list[Notice]:
        return [n for n in self.sent if n.for_admins]


class LoggingNotificationSink:
    def notify_user(self, user_id: UUID, kind: str, title: str, message: str, data: Optional[dict] = None) -> None:
        logger.info(f"[{kind}] to {user_id}: {title} - {message}")

    def notify_all_admins(self, kind: str, title: str, message: str, data: Optional[dict] = None) -> None:
        logger.info(f"[{kind}] to admins: {title} - {message}")


def dispatch_notifications(sink: Optional[NotificationSink], notices: Iterable[Notice]) -> int:
    """Send notices after commit. Failures are logged, never raised."""
    if sink is None:
        return 0
    sent = 0
    for notice in notices:
        try:
            if notice.for_admins:
                sink.notify_all_admins(notice.kind, notice.title, notice.message, notice.data)
            else:
                sink.notify_user(notice.user_id, notice.kind, notice.title, notice.message, notice.data)
            sent += 1
        except Exception:
            logger.exception(f"Notification '{notice.title}' could not be delivered")
    return sent


class InMemoryPackageCatalog:
    def __init__(self, packages: Iterable[PackageSnapshot] = (), seed: bool = False):
        self.packages: dict[UUID, PackageSnapshot] = {p.id: p for p in packages}
        if seed:
            self._seed_data()

    def _seed_data(self):
        self.add(PackageSnapshot(
            id=UUID("11111111-1111-1111-1111-111111111111"), name="TRON Starter",
            price=Decimal("100"), mining_power=Decimal("15000"),
            daily_reward_rate=Decimal("0.007"), duration_days=30, currency="TRX",
        ))
        self.add(PackageSnapshot(
            id=UUID("22222222-2222-2222-2222-222222222222"), name="TRON Professional",
            price=Decimal("1000"), mining_power=Decimal("200000"),
            daily_reward_rate=Decimal("0.009"), duration_days=90, currency="TRX",
        ))
        self.add(PackageSnapshot(
            id=UUID("33333333-3333-3333-3333-333333333333"), name="Bitcoin Starter",
            price=Decimal("100"), mining_power=Decimal("10"),
            daily_reward_rate=Decimal("0.005"), duration_days=30, currency="BTC",
        ))

    def add(self, package: PackageSnapshot) -> PackageSnapshot:
        self.packages[package.id] = package
        return package

    def get_package(self, package_id: UUID) -> Optional[PackageSnapshot]:
        return self.packages.get(package_id)
