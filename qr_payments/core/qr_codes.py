"""
QR code issuance and expiry tracking.

The tracked expiry lives in Redis under ``qr_payment_session:{session_id}``
with a native TTL, separate from the session row's own ``expires_at``. A
rendered code can therefore be refreshed without touching the session.
"""
import base64
import json
from datetime import datetime, timedelta, timezone
from io import BytesIO
from typing import Any, Dict, Optional

import qrcode
import qrcode.image.svg
import redis.asyncio as aioredis
import structlog
from qrcode.constants import (
    ERROR_CORRECT_H,
    ERROR_CORRECT_L,
    ERROR_CORRECT_M,
    ERROR_CORRECT_Q,
)

from qr_payments.config import Settings, get_settings
from qr_payments.core.exceptions import PaymentValidationError
from qr_payments.database.models import utcnow
from qr_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

QR_KEY_PREFIX = "qr_payment_session"
PAYLOAD_TYPE = "payment_request"
PAYLOAD_VERSION = "1.0"
QR_BORDER = 4

ERROR_CORRECTION_LEVELS = {
    "L": ERROR_CORRECT_L,
    "M": ERROR_CORRECT_M,
    "Q": ERROR_CORRECT_Q,
    "H": ERROR_CORRECT_H,
}

MIME_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "svg": "image/svg+xml",
}


def build_payload(session_id: str, issued_at: Optional[datetime] = None) -> str:
    """Serialize the scannable payload for ``session_id``."""
    issued_at = issued_at or utcnow()
    return json.dumps(
        {
            "session_id": session_id,
            "timestamp": int(issued_at.replace(tzinfo=timezone.utc).timestamp()),
            "type": PAYLOAD_TYPE,
            "version": PAYLOAD_VERSION,
        },
        separators=(",", ":"),
    )


def parse_payload(qr_data: str) -> Dict[str, Any]:
    """
    Decode a scanned payload.

    Raises:
        PaymentValidationError: If the data is not a payment request payload
    """
    try:
        payload = json.loads(qr_data)
    except (TypeError, ValueError):
        raise PaymentValidationError("Invalid QR code format", context={"field": "qr_data"})

    if (
        not isinstance(payload, dict)
        or not isinstance(payload.get("session_id"), str)
        or payload.get("type") != PAYLOAD_TYPE
    ):
        raise PaymentValidationError("Invalid QR code format", context={"field": "qr_data"})
    return payload


def render_qr_image(
    data: str, size: int, image_format: str = "png", error_correction: str = "M"
) -> str:
    """
    Render ``data`` as a QR image and return it as a data URI.

    Args:
        data: Text to encode
        size: Target edge length in pixels
        image_format: png, jpg or svg
        error_correction: L, M, Q or H

    Returns:
        str: ``data:<mime>;base64,<image>``
    """
    image_format = image_format.lower()
    if image_format not in MIME_TYPES:
        raise PaymentValidationError(
            f"Unsupported QR format: {image_format}", context={"field": "format"}
        )
    level = ERROR_CORRECTION_LEVELS.get(error_correction.upper())
    if level is None:
        raise PaymentValidationError(
            f"Unsupported error correction level: {error_correction}",
            context={"field": "error_correction"},
        )

    qr = qrcode.QRCode(version=None, error_correction=level, border=QR_BORDER)
    qr.add_data(data)
    qr.make(fit=True)
    qr.box_size = max(1, size // (qr.modules_count + 2 * QR_BORDER))

    buffer = BytesIO()
    if image_format == "svg":
        image = qr.make_image(image_factory=qrcode.image.svg.SvgPathImage)
        image.save(buffer)
    else:
        image = qr.make_image(fill_color="black", back_color="white").get_image()
        if image_format == "jpg":
            image.convert("RGB").save(buffer, format="JPEG")
        else:
            image.save(buffer, format="PNG")

    encoded = base64.b64encode(buffer.getvalue()).decode("utf-8")
    return f"data:{MIME_TYPES[image_format]};base64,{encoded}"


class QrCodeTracker:
    """
    Issues scannable QR codes and tracks their expiry in Redis.

    Rendering options default to the configured size, format and
    error-correction level and may be overridden per call.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize QR tracker.

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
    def _key(session_id: str) -> str:
        return f"{QR_KEY_PREFIX}:{session_id}"

    @property
    def ttl_seconds(self) -> int:
        return self.settings.qr_expiry_minutes * 60

    async def issue(
        self,
        session_id: str,
        size: Optional[int] = None,
        image_format: Optional[str] = None,
        error_correction: Optional[str] = None,
        not_before: Optional[datetime] = None,
        reason: str = "issue",
    ) -> str:
        """
        Render a QR code for ``session_id`` and start tracking its expiry.

        Args:
            session_id: Session the code points at
            size: Pixel size override
            image_format: png/jpg/svg override
            error_correction: L/M/Q/H override
            not_before: Tracked expiry is forced strictly after this instant
            reason: Metrics label, issue or reissue

        Returns:
            str: Image data URI
        """
        now = utcnow()
        image_format = (image_format or self.settings.qr_format).lower()
        image = render_qr_image(
            build_payload(session_id, now),
            size or self.settings.qr_size,
            image_format,
            error_correction or self.settings.qr_error_correction,
        )

        expires_at = now + timedelta(seconds=self.ttl_seconds)
        if not_before is not None and expires_at <= not_before:
            expires_at = not_before + timedelta(microseconds=1)

        redis = await self._ensure_redis()
        await redis.set(self._key(session_id), expires_at.isoformat(), ex=self.ttl_seconds)

        metrics.record_qr_issued(image_format, reason)
        logger.info(
            "qr_code_issued",
            session_id=session_id,
            format=image_format,
            expires_at=expires_at.isoformat(),
        )
        return image

    async def expiry(self, session_id: str) -> Optional[datetime]:
        """Return the tracked expiry, or None if never issued or already evicted."""
        redis = await self._ensure_redis()
        value = await redis.get(self._key(session_id))
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return datetime.fromisoformat(value)

    async def valid(self, session_id: str) -> bool:
        """True iff a tracked expiry exists and lies in the future."""
        expires_at = await self.expiry(session_id)
        return expires_at is not None and expires_at > utcnow()

    async def reissue(self, session_id: str, **options: Any) -> str:
        """
        Evict the tracked expiry and issue a fresh code.

        The new expiry is always strictly later than the one it replaces.
        Overlapping reissues are harmless; the last write wins.
        """
        previous = await self.expiry(session_id)
        redis = await self._ensure_redis()
        await redis.delete(self._key(session_id))
        logger.info("qr_code_evicted", session_id=session_id, had_expiry=previous is not None)
        return await self.issue(session_id, not_before=previous, reason="reissue", **options)

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
