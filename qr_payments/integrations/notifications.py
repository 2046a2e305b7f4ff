"""
Lifecycle notifications.

Each notification is an immutable event record. ``NotificationDispatcher``
validates it and hands it to a ``NotificationBoundary``, the only piece that
knows how messages actually leave the process. Delivery is observational:
a failed or disabled broadcast never affects payment state.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Protocol

import redis.asyncio as aioredis
import structlog

from qr_payments.config import Settings, get_settings
from qr_payments.core.exceptions import NotificationValidationError
from qr_payments.database.models import utcnow
from qr_payments.monitoring.logging import mask_email, mask_phone_number
from qr_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def _timestamp() -> str:
    return utcnow().isoformat()


# ============================================================================
# Events
# ============================================================================


@dataclass(frozen=True)
class PaymentConfirmationRequested:
    """Asks the customer to confirm a pending payment."""

    customer_id: str
    transaction_id: str
    merchant_id: str
    amount: str
    currency: str
    merchant_info: Dict[str, Any] = field(default_factory=dict)
    transaction_details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_timestamp)

    event_name = "payment.confirmation.requested"

    @property
    def channels(self) -> List[str]:
        return [f"customer.{self.customer_id}"]

    def payload(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "merchant_id": self.merchant_id,
            "amount": self.amount,
            "currency": self.currency,
            "merchant_info": self.merchant_info,
            "transaction_details": self.transaction_details,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class TransactionStatusUpdated:
    """A transaction moved from ``previous_status`` to ``status``."""

    transaction_id: str
    customer_id: str
    merchant_id: str
    status: str
    previous_status: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_timestamp)

    event_name = "transaction.status.updated"

    @property
    def channels(self) -> List[str]:
        return [
            f"customer.{self.customer_id}",
            f"merchant.{self.merchant_id}",
            f"transaction.{self.transaction_id}",
        ]

    def payload(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "status": self.status,
            "previous_status": self.previous_status,
            "payload": self.details,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class PaymentCompleted:
    """Funds moved; both parties get a receipt summary."""

    transaction_id: str
    customer_id: str
    merchant_id: str
    amount: str
    currency: str
    receipt_data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_timestamp)

    event_name = "payment.completed"

    @property
    def channels(self) -> List[str]:
        return [f"customer.{self.customer_id}", f"merchant.{self.merchant_id}"]

    def payload(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "amount": self.amount,
            "currency": self.currency,
            "receipt_data": self.receipt_data,
            "timestamp": self.timestamp,
        }


# ============================================================================
# Boundaries
# ============================================================================


class NotificationBoundary(Protocol):
    """Outbound delivery transport."""

    async def deliver(self, event_name: str, channels: List[str], payload: Dict[str, Any]) -> None:
        ...


class RedisBroadcaster:
    """Publishes each event as JSON on every one of its Redis channels."""

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
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

    async def deliver(self, event_name: str, channels: List[str], payload: Dict[str, Any]) -> None:
        redis = await self._ensure_redis()
        message = json.dumps({"event": event_name, "data": payload}, default=str)
        for channel in channels:
            await redis.publish(channel, message)


class LogBroadcaster:
    """Writes events to the structured log instead of a transport."""

    async def deliver(self, event_name: str, channels: List[str], payload: Dict[str, Any]) -> None:
        logger.info(
            "notification_broadcast",
            notification_event=event_name,
            channels=channels,
            transaction_id=payload.get("transaction_id"),
        )


def build_boundary(
    settings: Optional[Settings] = None, redis_client: Optional[aioredis.Redis] = None
) -> NotificationBoundary:
    """Select the boundary named by ``broadcast_connection``."""
    settings = settings or get_settings()
    if settings.broadcast_connection == "log":
        return LogBroadcaster()
    return RedisBroadcaster(redis_client=redis_client, settings=settings)


# ============================================================================
# Dispatcher
# ============================================================================


def _positive_amount(value: Any) -> bool:
    if isinstance(value, bool) or value is None:
        return False
    try:
        return Decimal(str(value)) > 0
    except (InvalidOperation, ValueError):
        return False


class NotificationDispatcher:
    """
    Translates lifecycle events into boundary deliveries.

    The ``send_*`` methods report True on delivery (or when broadcasting is
    disabled) and False if the boundary raised; they only raise for an
    invalid payload.
    """

    def __init__(
        self,
        boundary: Optional[NotificationBoundary] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.boundary = boundary or build_boundary(self.settings)

    async def _dispatch(self, event: Any) -> bool:
        if not self.settings.broadcasting_enabled:
            metrics.record_notification(event.event_name, "skipped")
            return True

        try:
            await self.boundary.deliver(event.event_name, event.channels, event.payload())
        except Exception as e:
            metrics.record_notification(event.event_name, "failed")
            logger.error(
                "notification_delivery_failed",
                notification_event=event.event_name,
                transaction_id=event.transaction_id,
                error=str(e),
            )
            return False

        metrics.record_notification(event.event_name, "delivered")
        return True

    async def send_payment_confirmation_request(
        self, customer_id: str, transaction_id: str, payload: Dict[str, Any]
    ) -> bool:
        """
        Ask the customer to confirm a payment.

        Args:
            customer_id: Customer to notify
            transaction_id: Pending transaction
            payload: Must carry ``merchant_id`` and a positive numeric ``amount``;
                may carry ``currency``, ``merchant_info``, ``transaction_details``

        Raises:
            NotificationValidationError: If a required field is missing or invalid
        """
        for required in ("merchant_id", "amount"):
            if payload.get(required) is None:
                metrics.record_notification(PaymentConfirmationRequested.event_name, "invalid")
                raise NotificationValidationError(
                    f"Missing required field: {required}",
                    context={"transaction_id": transaction_id, "field": required},
                )
        if not _positive_amount(payload["amount"]):
            metrics.record_notification(PaymentConfirmationRequested.event_name, "invalid")
            raise NotificationValidationError(
                "Amount must be a positive number",
                context={"transaction_id": transaction_id, "field": "amount"},
            )

        event = PaymentConfirmationRequested(
            customer_id=customer_id,
            transaction_id=transaction_id,
            merchant_id=str(payload["merchant_id"]),
            amount=str(payload["amount"]),
            currency=payload.get("currency") or self.settings.transaction_currency,
            merchant_info=dict(payload.get("merchant_info") or {}),
            transaction_details=dict(payload.get("transaction_details") or {}),
        )
        return await self._dispatch(event)

    async def send_transaction_status_update(
        self, transaction_id: str, status: str, payload: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Broadcast a status change; ``payload`` may carry ids and ``previous_status``."""
        payload = payload or {}
        event = TransactionStatusUpdated(
            transaction_id=transaction_id,
            customer_id=str(payload.get("customer_id") or ""),
            merchant_id=str(payload.get("merchant_id") or ""),
            status=status,
            previous_status=str(payload.get("previous_status") or ""),
            details=payload,
        )
        return await self._dispatch(event)

    async def send_payment_completion_notification(
        self, customer_id: str, merchant_id: str, transaction_id: str, payload: Dict[str, Any]
    ) -> bool:
        """Tell both parties a payment completed."""
        event = PaymentCompleted(
            transaction_id=transaction_id,
            customer_id=customer_id,
            merchant_id=merchant_id,
            amount=str(payload.get("amount")),
            currency=payload.get("currency") or self.settings.transaction_currency,
            receipt_data=dict(payload.get("receipt_data") or {}),
        )
        return await self._dispatch(event)

    async def send_merchant_webhook(
        self, merchant_id: str, event: str, payload: Dict[str, Any]
    ) -> bool:
        """Record a merchant webhook. There is no HTTP delivery behind this."""
        logger.info(
            "merchant_webhook_sent",
            merchant_id=merchant_id,
            webhook_event=event,
            transaction_id=payload.get("transaction_id"),
        )
        metrics.record_notification(event, "delivered")
        return True

    async def send_sms_fallback(self, phone_number: str, message: str) -> bool:
        """Record an SMS fallback with the number masked."""
        logger.info(
            "sms_fallback_sent",
            phone_number=mask_phone_number(phone_number),
            message_length=len(message),
        )
        metrics.record_notification("sms.fallback", "delivered")
        return True

    async def send_email_receipt(
        self, email: str, transaction_id: str, receipt_data: Dict[str, Any]
    ) -> bool:
        """Record an e-mailed receipt with the address masked."""
        logger.info(
            "email_receipt_sent",
            email=mask_email(email),
            transaction_id=transaction_id,
            receipt_amount=str(receipt_data.get("amount", "unknown")),
        )
        metrics.record_notification("email.receipt", "delivered")
        return True
