"""
Idempotency gate for retried operations.

A key is claimed with ``SET NX EX`` before the operation runs, so two
concurrent first calls cannot both execute it. The winner stores the
JSON-encoded result under the same key; duplicates return that result
instead of running the operation again.
"""
import asyncio
import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from qr_payments.config import Settings, get_settings
from qr_payments.core.exceptions import IdempotencyConflictError, IdempotencyError
from qr_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

IDEMPOTENCY_KEY_PREFIX = "transaction_idempotency"
PENDING_MARKER = "__pending__"
POLL_INTERVAL_SECONDS = 0.05


def _encode_value(value: Any) -> str:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class IdempotencyGate:
    """
    Deduplicates externally retried operations by key.

    Results must be JSON serializable; they are returned in their decoded
    form so the first call and every duplicate see identical values.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize idempotency gate.

        Args:
            redis_client: Optional Redis client (creates one if not provided)
            settings: Optional settings (uses cached settings if not provided)
        """
        self.settings = settings or get_settings()
        self.redis_client = redis_client

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def _key(idempotency_key: str) -> str:
        return f"{IDEMPOTENCY_KEY_PREFIX}:{idempotency_key}"

    @staticmethod
    def generate_key(merchant_id: str, session_id: str, amount: Decimal, currency: str) -> str:
        """
        Derive a deterministic key for a process-payment request.

        The same merchant, session, amount and currency always map to the
        same key, so a retried request is recognised without a client key.
        """
        raw = f"{merchant_id}:{session_id}:{Decimal(amount).normalize()}:{currency.upper()}"
        return hashlib.sha256(raw.encode()).hexdigest()

    async def execute(self, idempotency_key: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run ``operation`` at most once per key within the cache TTL.

        Args:
            idempotency_key: Caller-supplied or derived key
            operation: Zero-argument coroutine factory

        Returns:
            The operation's (JSON round-tripped) result

        Raises:
            IdempotencyConflictError: If a concurrent first call is still running
                after ``idempotency_wait_seconds``
            IdempotencyError: If the cache is unavailable
        """
        key = self._key(idempotency_key)
        try:
            redis = await self._ensure_redis()
            cached = await redis.get(key)
            if cached is not None and cached != PENDING_MARKER:
                metrics.record_idempotency_cache_hit("cache")
                logger.info("idempotency_cache_hit", idempotency_key=idempotency_key)
                return json.loads(cached)

            claimed = await redis.set(
                key, PENDING_MARKER, nx=True, ex=self.settings.idempotency_cache_ttl
            )
        except RedisError as e:
            logger.error("idempotency_cache_error", idempotency_key=idempotency_key, error=str(e))
            raise IdempotencyError(
                f"Failed to check idempotency: {str(e)}",
                context={"idempotency_key": idempotency_key},
            )

        if not claimed:
            return await self._wait_for_result(redis, key, idempotency_key)

        metrics.record_idempotency_cache_hit("miss")
        logger.info("idempotency_key_claimed", idempotency_key=idempotency_key)
        try:
            result = await operation()
            encoded = json.dumps(result, default=_encode_value)
        except BaseException:
            await redis.delete(key)
            logger.info("idempotency_claim_released", idempotency_key=idempotency_key)
            raise

        await redis.set(key, encoded, ex=self.settings.idempotency_cache_ttl)
        logger.info("idempotency_response_cached", idempotency_key=idempotency_key)
        return json.loads(encoded)

    async def _wait_for_result(
        self, redis: aioredis.Redis, key: str, idempotency_key: str
    ) -> Any:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.idempotency_wait_seconds
        while loop.time() < deadline:
            cached = await redis.get(key)
            if cached is not None and cached != PENDING_MARKER:
                metrics.record_idempotency_cache_hit("wait")
                logger.info("idempotency_result_awaited", idempotency_key=idempotency_key)
                return json.loads(cached)
            if cached is None:
                # First call failed and released its claim
                break
            await asyncio.sleep(POLL_INTERVAL_SECONDS)

        logger.warning("idempotency_conflict", idempotency_key=idempotency_key)
        raise IdempotencyConflictError(idempotency_key)

    async def invalidate(self, idempotency_key: str) -> None:
        """Drop the cached result for ``idempotency_key``."""
        redis = await self._ensure_redis()
        await redis.delete(self._key(idempotency_key))
        logger.info("idempotency_cache_invalidated", idempotency_key=idempotency_key)

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
