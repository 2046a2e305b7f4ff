"""Customer balance oracle."""
from decimal import Decimal
from typing import Optional, Protocol

import structlog

from qr_payments.config import get_settings

logger = structlog.get_logger(__name__)


class BalanceOracle(Protocol):
    """Answers whether a customer can cover an amount."""

    async def sufficient_funds(self, customer_id: str, amount: Decimal) -> bool:
        ...


class MockBalanceOracle:
    """
    Stub oracle with no ledger behind it.

    Every customer is assumed to hold ``limit``; larger amounts are refused.
    """

    def __init__(self, limit: Optional[Decimal] = None):
        self.limit = limit if limit is not None else get_settings().mock_balance_limit

    async def sufficient_funds(self, customer_id: str, amount: Decimal) -> bool:
        sufficient = amount <= self.limit
        logger.debug(
            "balance_checked",
            customer_id=customer_id,
            amount=str(amount),
            sufficient=sufficient,
        )
        return sufficient
