class LedgerError(Exception):
    pass


class InvalidAmount(LedgerError):
    pass


class InsufficientFunds(LedgerError):
    pass


class OverUnlock(LedgerError):
    pass


class InvalidTransition(LedgerError):
    pass


class DuplicateEvent(LedgerError):
    pass


class NotFound(LedgerError):
    pass


class DependencyUnavailable(LedgerError):
    pass


class WalletInactive(LedgerError):
    """Raised when funds would leave a disabled or frozen wallet."""
