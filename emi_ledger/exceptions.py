"""Exception hierarchy for the EMI ledger."""


class EmiLedgerError(Exception):
    """Base exception for all EMI ledger errors."""


class ValidationError(EmiLedgerError, ValueError):
    """Raised when input is rejected before any state is mutated."""


class NotFoundError(EmiLedgerError):
    """Raised when a referenced loan, payment or request does not exist."""


class ConflictError(EmiLedgerError):
    """Raised when a write races another writer or breaks a uniqueness rule."""


class PendingRequestExistsError(ConflictError):
    """Raised when a customer already has a pending loan request."""


class ConfigurationError(EmiLedgerError):
    """Raised when configuration is invalid or missing."""
