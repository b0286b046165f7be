class DomainError(Exception):
    """Base class for domain-layer errors."""


class InvalidStateError(DomainError):
    """Raised when a transaction state is not one of the canonical states."""


class InvalidTransitionError(DomainError):
    """Raised when a transaction state transition is not allowed."""


class ValidationError(DomainError):
    """Raised when input is rejected before any side effect happens."""


class InvalidAmount(ValidationError):
    """Raised when amount is not a positive decimal within ledger precision."""


class InvalidMemo(ValidationError):
    """Raised when memo is too long or not text."""


class InvalidFrequency(ValidationError):
    """Raised when schedule frequency is not daily, weekly or monthly."""


class InvalidIdempotencyKey(ValidationError):
    """Raised when idempotency key format/value is invalid."""


class InvalidScheduleState(ValidationError):
    """Raised when a schedule status change is not allowed."""


class ConflictError(DomainError):
    """Raised for non-retryable conflicts with existing state."""


class IdempotencyConflict(ConflictError):
    """Raised when idempotency key is reused with a different payload."""


class IdempotencyRequestInProgress(ConflictError):
    """Raised when the first request for a key has not finished yet."""


class ReconciliationInProgress(ConflictError):
    """Raised when a reconciliation run is already in progress."""


class NotFoundError(DomainError):
    """Base class for lookups of records that do not exist."""


class AccountNotFound(NotFoundError):
    """Raised when a ledger account does not exist locally."""


class ScheduleNotFound(NotFoundError):
    """Raised when a recurring schedule does not exist."""


class TransactionNotFound(NotFoundError):
    """Raised when a transaction does not exist."""
