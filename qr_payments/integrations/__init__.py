"""Collaborators at the edge of the payment core."""
from .balance import BalanceOracle, MockBalanceOracle
from .notifications import (
    LogBroadcaster,
    NotificationBoundary,
    NotificationDispatcher,
    RedisBroadcaster,
    build_boundary,
)

__all__ = [
    "BalanceOracle",
    "MockBalanceOracle",
    "NotificationBoundary",
    "NotificationDispatcher",
    "RedisBroadcaster",
    "LogBroadcaster",
    "build_boundary",
]
