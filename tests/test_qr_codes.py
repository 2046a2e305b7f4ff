"""
Tests for QR payload encoding, rendering and expiry tracking.
"""
import base64
from datetime import datetime, timedelta
from typing import Any

import pytest

from qr_payments.core.exceptions import PaymentValidationError
from qr_payments.core.qr_codes import (
    QrCodeTracker,
    build_payload,
    parse_payload,
    render_qr_image,
)
from qr_payments.database.models import utcnow


def _decode(data_uri: str) -> bytes:
    return base64.b64decode(data_uri.split(",", 1)[1])


class TestPayload:
    """Test suite for the scannable payload."""

    @pytest.mark.unit
    def test_payload_round_trip(self) -> None:
        issued_at = datetime(2024, 1, 1, 12, 0, 0)
        payload = parse_payload(build_payload("qr_abc", issued_at))

        assert payload["session_id"] == "qr_abc"
        assert payload["type"] == "payment_request"
        assert payload["version"] == "1.0"
        assert payload["timestamp"] == 1704110400

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "qr_data",
        [
            "not json",
            "[1, 2]",
            '{"type": "payment_request"}',
            '{"session_id": "qr_abc", "type": "login"}',
        ],
    )
    def test_parse_rejects_foreign_payloads(self, qr_data: str) -> None:
        with pytest.raises(PaymentValidationError, match="Invalid QR code format"):
            parse_payload(qr_data)


class TestRendering:
    """Test suite for QR image rendering."""

    @pytest.mark.unit
    def test_png(self) -> None:
        image = render_qr_image("hello", 300, "png")
        assert image.startswith("data:image/png;base64,")
        assert _decode(image).startswith(b"\x89PNG")

    @pytest.mark.unit
    def test_jpg(self) -> None:
        image = render_qr_image("hello", 200, "jpg", "H")
        assert image.startswith("data:image/jpeg;base64,")
        assert _decode(image).startswith(b"\xff\xd8")

    @pytest.mark.unit
    def test_svg(self) -> None:
        image = render_qr_image("hello", 300, "svg")
        assert image.startswith("data:image/svg+xml;base64,")
        assert b"<svg" in _decode(image)

    @pytest.mark.unit
    def test_unknown_format(self) -> None:
        with pytest.raises(PaymentValidationError):
            render_qr_image("hello", 300, "gif")

    @pytest.mark.unit
    def test_unknown_error_correction(self) -> None:
        with pytest.raises(PaymentValidationError):
            render_qr_image("hello", 300, "png", "Z")


class TestQrCodeTracker:
    """Test suite for expiry tracking in Redis."""

    @pytest.mark.asyncio
    async def test_issue_tracks_expiry(self, qr_tracker: QrCodeTracker, redis_client: Any) -> None:
        before = utcnow()
        image = await qr_tracker.issue("qr_1")

        assert image.startswith("data:image/png;base64,")
        expires_at = await qr_tracker.expiry("qr_1")
        assert before + timedelta(minutes=5) <= expires_at <= utcnow() + timedelta(minutes=5)
        assert 0 < await redis_client.ttl("qr_payment_session:qr_1") <= 300
        assert await qr_tracker.valid("qr_1")

    @pytest.mark.asyncio
    async def test_unknown_session_is_not_valid(self, qr_tracker: QrCodeTracker) -> None:
        assert await qr_tracker.expiry("qr_missing") is None
        assert not await qr_tracker.valid("qr_missing")

    @pytest.mark.asyncio
    async def test_past_expiry_is_not_valid(self, qr_tracker: QrCodeTracker, redis_client: Any) -> None:
        await redis_client.set(
            "qr_payment_session:qr_old", (utcnow() - timedelta(seconds=1)).isoformat(), ex=60
        )
        assert not await qr_tracker.valid("qr_old")

    @pytest.mark.asyncio
    async def test_reissue_moves_expiry_strictly_later(
        self, qr_tracker: QrCodeTracker, redis_client: Any
    ) -> None:
        previous = utcnow() + timedelta(minutes=30)
        await redis_client.set("qr_payment_session:qr_2", previous.isoformat(), ex=300)

        image = await qr_tracker.reissue("qr_2", image_format="svg")

        assert image.startswith("data:image/svg+xml;base64,")
        assert await qr_tracker.expiry("qr_2") > previous

    @pytest.mark.asyncio
    async def test_reissue_after_eviction(self, qr_tracker: QrCodeTracker) -> None:
        await qr_tracker.issue("qr_3")
        first = await qr_tracker.expiry("qr_3")

        await qr_tracker.reissue("qr_3")

        assert await qr_tracker.expiry("qr_3") > first
