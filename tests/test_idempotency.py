"""
Unit tests for the idempotency gate.
"""
import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from qr_payments.config import Settings
from qr_payments.core.exceptions import IdempotencyConflictError, IdempotencyError
from qr_payments.core.idempotency import PENDING_MARKER, IdempotencyGate


class TestKeyGeneration:
    """Test suite for derived keys."""

    @pytest.mark.unit
    def test_generate_key_is_deterministic(self) -> None:
        key = IdempotencyGate.generate_key("merch-1", "qr_1", Decimal("10.00"), "usd")
        assert key == IdempotencyGate.generate_key("merch-1", "qr_1", Decimal("10"), "USD")
        assert len(key) == 64

    @pytest.mark.unit
    def test_generate_key_varies_with_inputs(self) -> None:
        base = IdempotencyGate.generate_key("merch-1", "qr_1", Decimal("10.00"), "USD")
        assert base != IdempotencyGate.generate_key("merch-2", "qr_1", Decimal("10.00"), "USD")
        assert base != IdempotencyGate.generate_key("merch-1", "qr_2", Decimal("10.00"), "USD")
        assert base != IdempotencyGate.generate_key("merch-1", "qr_1", Decimal("10.01"), "USD")
        assert base != IdempotencyGate.generate_key("merch-1", "qr_1", Decimal("10.00"), "EUR")


class TestIdempotencyGate:
    """Test suite for at-most-once execution."""

    @pytest.mark.asyncio
    async def test_duplicate_returns_cached_result(self, idempotency_gate: IdempotencyGate) -> None:
        calls = []

        async def operation() -> Dict[str, Any]:
            calls.append(1)
            return {"transaction_id": "txn_1", "amount": Decimal("10.00")}

        first = await idempotency_gate.execute("key-1", operation)
        second = await idempotency_gate.execute("key-1", operation)

        assert first == second == {"transaction_id": "txn_1", "amount": "10.00"}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_distinct_keys_run_separately(self, idempotency_gate: IdempotencyGate) -> None:
        counter = {"n": 0}

        async def operation() -> int:
            counter["n"] += 1
            return counter["n"]

        assert await idempotency_gate.execute("key-a", operation) == 1
        assert await idempotency_gate.execute("key-b", operation) == 2

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_first_calls_run_once(self, idempotency_gate: IdempotencyGate) -> None:
        calls = []

        async def operation() -> Dict[str, Any]:
            calls.append(1)
            await asyncio.sleep(0.1)
            return {"transaction_id": "txn_once"}

        results = await asyncio.gather(
            *(idempotency_gate.execute("key-race", operation) for _ in range(5))
        )

        assert len(calls) == 1
        assert all(r == {"transaction_id": "txn_once"} for r in results)

    @pytest.mark.asyncio
    async def test_failure_releases_claim(
        self, idempotency_gate: IdempotencyGate, redis_client: Any
    ) -> None:
        async def failing() -> None:
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await idempotency_gate.execute("key-fail", failing)

        assert await redis_client.get("transaction_idempotency:key-fail") is None

        async def succeeding() -> str:
            return "ok"

        assert await idempotency_gate.execute("key-fail", succeeding) == "ok"

    @pytest.mark.asyncio
    async def test_unserializable_result_fails_loudly(
        self, idempotency_gate: IdempotencyGate, redis_client: Any
    ) -> None:
        async def returns_object() -> Dict[str, Any]:
            return {"transaction": object()}

        with pytest.raises(TypeError, match="not JSON serializable"):
            await idempotency_gate.execute("key-object", returns_object)

        assert await redis_client.get("transaction_idempotency:key-object") is None

    @pytest.mark.asyncio
    async def test_datetime_result_is_iso_encoded(self, idempotency_gate: IdempotencyGate) -> None:
        async def operation() -> Dict[str, Any]:
            return {"processed_at": datetime(2024, 1, 1, 12, 0)}

        result = await idempotency_gate.execute("key-time", operation)

        assert result == {"processed_at": "2024-01-01T12:00:00"}

    @pytest.mark.asyncio
    async def test_in_flight_claim_times_out(
        self, redis_client: Any, test_settings: Settings
    ) -> None:
        settings = test_settings.model_copy(update={"idempotency_wait_seconds": 0.2})
        gate = IdempotencyGate(redis_client=redis_client, settings=settings)
        await redis_client.set("transaction_idempotency:key-stuck", PENDING_MARKER, ex=60)

        async def operation() -> str:
            return "should not run"

        with pytest.raises(IdempotencyConflictError):
            await gate.execute("key-stuck", operation)

    @pytest.mark.asyncio
    async def test_cache_unavailable(self, test_settings: Settings) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        gate = IdempotencyGate(redis_client=redis, settings=test_settings)
        operation = AsyncMock()

        with pytest.raises(IdempotencyError, match="connection refused"):
            await gate.execute("key-down", operation)
        operation.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalidate(self, idempotency_gate: IdempotencyGate) -> None:
        counter = {"n": 0}

        async def operation() -> int:
            counter["n"] += 1
            return counter["n"]

        await idempotency_gate.execute("key-inv", operation)
        await idempotency_gate.invalidate("key-inv")

        assert await idempotency_gate.execute("key-inv", operation) == 2
