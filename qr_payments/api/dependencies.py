"""FastAPI dependencies: the shared service container and query filters."""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from fastapi import Query

from qr_payments.config import Settings, get_settings
from qr_payments.core.idempotency import IdempotencyGate
from qr_payments.core.qr_codes import QrCodeTracker
from qr_payments.core.sessions import SessionManager
from qr_payments.core.states import TransactionStatus, TransactionType
from qr_payments.core.transactions import TransactionManager
from qr_payments.integrations.balance import BalanceOracle, MockBalanceOracle
from qr_payments.integrations.notifications import NotificationDispatcher, build_boundary
from qr_payments.monitoring.health import HealthCheck


@dataclass
class ServiceContainer:
    """Collaborators shared by every request."""

    settings: Settings
    redis: aioredis.Redis
    qr_codes: QrCodeTracker
    sessions: SessionManager
    transactions: TransactionManager
    dispatcher: NotificationDispatcher
    idempotency: IdempotencyGate
    health: HealthCheck

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        redis_client: Optional[aioredis.Redis] = None,
        balance_oracle: Optional[BalanceOracle] = None,
    ) -> "ServiceContainer":
        """Wire every service against one Redis client."""
        settings = settings or get_settings()
        redis_client = redis_client or aioredis.from_url(
            settings.redis_url, encoding="utf-8", decode_responses=True
        )
        dispatcher = NotificationDispatcher(
            boundary=build_boundary(settings, redis_client), settings=settings
        )
        idempotency = IdempotencyGate(redis_client=redis_client, settings=settings)
        return cls(
            settings=settings,
            redis=redis_client,
            qr_codes=QrCodeTracker(redis_client=redis_client, settings=settings),
            sessions=SessionManager(settings=settings),
            transactions=TransactionManager(
                dispatcher=dispatcher,
                balance_oracle=balance_oracle or MockBalanceOracle(settings.mock_balance_limit),
                idempotency_gate=idempotency,
                settings=settings,
            ),
            dispatcher=dispatcher,
            idempotency=idempotency,
            health=HealthCheck(redis_client=redis_client),
        )

    async def close(self) -> None:
        """Close the shared Redis connection."""
        await self.redis.aclose()


_services: ServiceContainer | None = None


def get_services() -> ServiceContainer:
    """
    Dependency returning the process-wide service container.

    Example:
        @router.get("/x")
        async def handler(services: ServiceContainer = Depends(get_services)):
            ...
    """
    global _services
    if _services is None:
        _services = ServiceContainer.build()
    return _services


async def close_services() -> None:
    """Release the process-wide service container."""
    global _services
    if _services is not None:
        await _services.close()
        _services = None


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def transaction_filters(
    status: Optional[TransactionStatus] = Query(default=None, description="Filter by status"),
    type: Optional[TransactionType] = Query(default=None, description="Filter by type"),
    from_date: Optional[datetime] = Query(default=None, description="Created at or after"),
    to_date: Optional[datetime] = Query(default=None, description="Created at or before"),
    limit: int = Query(default=50, ge=1, le=100, description="Maximum rows returned"),
) -> Dict[str, Any]:
    """Shared history filters for the customer and merchant listings."""
    return {
        "status": status,
        "type": type,
        "from_date": _as_naive_utc(from_date),
        "to_date": _as_naive_utc(to_date),
        "limit": limit,
    }
