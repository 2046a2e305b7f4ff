"""Payment session and transaction core."""
from .exceptions import (
    IdempotencyConflictError,
    IdempotencyError,
    InsufficientBalanceError,
    PaymentError,
    PaymentValidationError,
    SessionAlreadyScannedError,
    SessionNotActiveError,
    SessionNotFoundError,
    TransactionAlreadyProcessedError,
    TransactionNotFoundError,
    TransactionTimeoutError,
)
from .states import AuthMethod, SessionStatus, TransactionStatus, TransactionType

__all__ = [
    "PaymentError",
    "PaymentValidationError",
    "SessionNotFoundError",
    "SessionNotActiveError",
    "SessionAlreadyScannedError",
    "TransactionNotFoundError",
    "TransactionAlreadyProcessedError",
    "TransactionTimeoutError",
    "InsufficientBalanceError",
    "IdempotencyError",
    "IdempotencyConflictError",
    "SessionStatus",
    "TransactionStatus",
    "TransactionType",
    "AuthMethod",
]
