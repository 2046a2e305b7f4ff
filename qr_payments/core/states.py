"""
Closed status/type enumerations and the transition tables that govern them.

Every state change in the service goes through one of these tables, so an
illegal move (e.g. confirming a cancelled transaction) is rejected by lookup
rather than by ad-hoc string comparison.
"""
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping


class SessionStatus(str, Enum):
    """Lifecycle of a QR payment session."""

    PENDING = "pending"
    SCANNED = "scanned"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TransactionStatus(str, Enum):
    """Lifecycle of a payment, refund or settlement transaction."""

    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class TransactionType(str, Enum):
    """Kind of money movement a transaction represents."""

    PAYMENT = "payment"
    REFUND = "refund"
    SETTLEMENT = "settlement"


class AuthMethod(str, Enum):
    """Second factor the customer used to confirm a payment."""

    PIN = "pin"
    BIOMETRIC = "biometric"
    PASSWORD = "password"
    PATTERN = "pattern"


SESSION_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.PENDING: frozenset(
        {SessionStatus.SCANNED, SessionStatus.EXPIRED, SessionStatus.CANCELLED}
    ),
    SessionStatus.SCANNED: frozenset(
        {SessionStatus.CONFIRMED, SessionStatus.EXPIRED, SessionStatus.CANCELLED}
    ),
    SessionStatus.CONFIRMED: frozenset({SessionStatus.CANCELLED}),
    SessionStatus.EXPIRED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}

TRANSACTION_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {
            TransactionStatus.PROCESSING,
            TransactionStatus.CONFIRMED,
            TransactionStatus.CANCELLED,
            TransactionStatus.FAILED,
        }
    ),
    TransactionStatus.PROCESSING: frozenset(
        {TransactionStatus.CONFIRMED, TransactionStatus.CANCELLED, TransactionStatus.FAILED}
    ),
    TransactionStatus.CONFIRMED: frozenset({TransactionStatus.COMPLETED, TransactionStatus.FAILED}),
    TransactionStatus.COMPLETED: frozenset({TransactionStatus.REFUNDED}),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
}

# Statuses from which a transaction can never move again.
TERMINAL_TRANSACTION_STATUSES = frozenset(
    status for status, targets in TRANSACTION_TRANSITIONS.items() if not targets
) | {TransactionStatus.COMPLETED}

TERMINAL_SESSION_STATUSES = frozenset(
    status for status, targets in SESSION_TRANSITIONS.items() if not targets
)


class InvalidTransitionError(ValueError):
    """Raised when code asks for a move the transition table does not allow."""

    pass


def can_transition(table: Mapping[Enum, FrozenSet[Enum]], current: Enum, target: Enum) -> bool:
    """Return True if ``current -> target`` is an edge of ``table``."""
    return target in table.get(current, frozenset())


def check_transition(
    table: Mapping[Enum, FrozenSet[Enum]], from_states: Iterable[Enum], target: Enum
) -> FrozenSet[Enum]:
    """
    Validate that every expected pre-state may move to ``target``.

    Args:
        table: Transition table for the entity
        from_states: Statuses the caller expects the row to be in
        target: Status the caller wants to move to

    Returns:
        FrozenSet of the validated pre-states

    Raises:
        InvalidTransitionError: If any pre-state cannot reach ``target``
    """
    states = frozenset(from_states)
    if not states:
        raise InvalidTransitionError("At least one expected pre-state is required")
    illegal = sorted(s.value for s in states if not can_transition(table, s, target))
    if illegal:
        raise InvalidTransitionError(
            f"Transition to {target.value!r} not allowed from: {', '.join(illegal)}"
        )
    return states
