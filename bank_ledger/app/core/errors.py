"""Error taxonomy shared by the ledger service, the stores and the HTTP layer."""


class LedgerError(Exception):
    """Base class for every failure the ledger reports to its callers."""

    kind = "LedgerError"


class InvalidInputError(LedgerError):
    """Raised when an argument is malformed or out of range."""

    kind = "InvalidInput"


class InvalidAmountError(InvalidInputError):
    """Raised when a money amount is not a positive two-place decimal."""

    kind = "InvalidAmount"


class DuplicateUsernameError(LedgerError):
    """Raised when a username is already registered."""

    kind = "DuplicateUsername"


class AuthenticationFailedError(LedgerError):
    """Raised when no account matches the given credentials."""

    kind = "AuthenticationFailed"


class InvalidPinError(LedgerError):
    """Raised when the transaction PIN does not match the account."""

    kind = "InvalidPin"


class AccountNotFoundError(LedgerError):
    """Raised when an account number is missing from the store."""

    kind = "AccountNotFound"


class InsufficientFundsError(LedgerError):
    """Raised when a withdrawal/transfer would drop balance below zero."""

    kind = "InsufficientFunds"


class IdentifierCollisionError(LedgerError):
    """Raised when a freshly allocated identifier turns out to be in use."""

    kind = "IdentifierCollision"


class ResourceExhaustedError(LedgerError):
    """Raised when no free identifier was found within the attempt budget."""

    kind = "ResourceExhausted"


class BusyError(LedgerError):
    """Raised when account locks could not be acquired in time. Safe to retry."""

    kind = "Busy"


class StorageFailureError(LedgerError):
    """Raised when the underlying persistence layer fails."""

    kind = "StorageFailure"
