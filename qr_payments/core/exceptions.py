"""
Typed failures raised by the session and transaction managers.

Every exception carries:
- An error code (stable, for client handling)
- The offending entity ids and, where relevant, the current status
- The HTTP status the API layer should answer with

None of these are retried by the core; retry policy belongs to the caller.
"""
from decimal import Decimal
from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base exception for all QR payment business failures."""

    error_code = "payment_error"
    http_status = 400

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        if error_code is not None:
            self.error_code = error_code
        if http_status is not None:
            self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "code": self.error_code,
            "type": self.__class__.__name__,
            "context": {k: _jsonable(v) for k, v in self.context.items()},
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "value"):
        return value.value
    return value


# ============================================================================
# Input validation
# ============================================================================


class PaymentValidationError(PaymentError):
    """Raised when an operation receives missing or malformed input."""

    error_code = "invalid_input"
    http_status = 422


class NotificationValidationError(PaymentValidationError):
    """Raised when a notification payload lacks a required field."""

    error_code = "invalid_notification_payload"


class RefundLimitExceededError(PaymentValidationError):
    """Raised when a refund would push the refunded total past the parent's net amount."""

    error_code = "refund_limit_exceeded"

    def __init__(self, transaction_id: str, requested: Decimal, refundable: Decimal):
        super().__init__(
            f"Refund of {requested} exceeds refundable amount {refundable} "
            f"for transaction {transaction_id}",
            context={
                "transaction_id": transaction_id,
                "requested_amount": requested,
                "refundable_amount": refundable,
            },
        )


# ============================================================================
# Sessions
# ============================================================================


class SessionNotFoundError(PaymentError):
    """Raised when a payment session does not exist."""

    error_code = "session_not_found"
    http_status = 404

    def __init__(self, session_id: str):
        super().__init__(
            f"Payment session not found: {session_id}", context={"session_id": session_id}
        )


class SessionNotActiveError(PaymentError):
    """Raised when a session is past its window or no longer pending."""

    error_code = "session_not_active"
    http_status = 409

    def __init__(self, session_id: str, current_status: Any, message: Optional[str] = None):
        super().__init__(
            message or f"Payment session {session_id} is not active (status: {_jsonable(current_status)})",
            context={"session_id": session_id, "current_status": current_status},
        )


class SessionAlreadyScannedError(SessionNotActiveError):
    """Raised when a second merchant scan reaches an already bound session."""

    error_code = "session_already_scanned"

    def __init__(self, session_id: str, current_status: Any = "scanned"):
        super().__init__(
            session_id,
            current_status,
            message=f"Payment session {session_id} has already been scanned",
        )


class QrCodeExpiredError(PaymentError):
    """Raised when the rendered QR code for a session is no longer scannable."""

    error_code = "qr_code_expired"
    http_status = 410

    def __init__(self, session_id: str):
        super().__init__(
            f"QR code for session {session_id} has expired", context={"session_id": session_id}
        )


class InvalidSessionTokenError(PaymentError):
    """Raised when a caller fails to prove possession of the session secret."""

    error_code = "invalid_session_token"
    http_status = 403

    def __init__(self, session_id: str):
        super().__init__(
            f"Security token does not match session {session_id}",
            context={"session_id": session_id},
        )


# ============================================================================
# Transactions
# ============================================================================


class TransactionNotFoundError(PaymentError):
    """Raised when a transaction does not exist."""

    error_code = "transaction_not_found"
    http_status = 404

    def __init__(self, transaction_id: str):
        super().__init__(
            f"Transaction not found: {transaction_id}",
            context={"transaction_id": transaction_id},
        )


class TransactionAlreadyProcessedError(PaymentError):
    """Raised when a transition is attempted from a non-eligible status."""

    error_code = "transaction_already_processed"
    http_status = 409

    def __init__(self, transaction_id: str, current_status: Any, message: Optional[str] = None):
        super().__init__(
            message
            or f"Transaction {transaction_id} is already processed with status: {_jsonable(current_status)}",
            context={"transaction_id": transaction_id, "current_status": current_status},
        )
        self.current_status = current_status


class TransactionTimeoutError(PaymentError):
    """Raised when confirmation arrives after the transaction's timeout."""

    error_code = "transaction_timeout"
    http_status = 410

    def __init__(self, transaction_id: str, timeout_at: Any = None):
        super().__init__(
            f"Transaction {transaction_id} has timed out",
            context={
                "transaction_id": transaction_id,
                "timeout_at": timeout_at.isoformat() if timeout_at is not None else None,
            },
        )


class InsufficientBalanceError(PaymentError):
    """Raised when the balance oracle refuses the amount."""

    error_code = "insufficient_balance"
    http_status = 402

    def __init__(self, customer_id: str, required_amount: Decimal):
        super().__init__(
            f"Insufficient balance for customer {customer_id}. Required: {required_amount}",
            context={"customer_id": customer_id, "required_amount": required_amount},
        )


class ReceiptNotAvailableError(PaymentError):
    """Raised when a receipt is requested for a transaction that is not completed."""

    error_code = "receipt_not_available"
    http_status = 400

    def __init__(self, transaction_id: str, current_status: Any):
        super().__init__(
            "Receipt only available for completed transactions",
            context={"transaction_id": transaction_id, "current_status": current_status},
        )


class ManagerApprovalRequiredError(PaymentError):
    """Raised when a refund request carries no manager approval code."""

    error_code = "manager_approval_required"
    http_status = 403

    def __init__(self, transaction_id: str):
        super().__init__(
            "Manager approval required for refunds", context={"transaction_id": transaction_id}
        )


# ============================================================================
# Idempotency
# ============================================================================


class IdempotencyError(PaymentError):
    """Raised when the idempotency cache cannot be read or written."""

    error_code = "idempotency_unavailable"
    http_status = 503


class IdempotencyConflictError(IdempotencyError):
    """Raised when a concurrent first call for the same key is still running."""

    error_code = "idempotency_conflict"
    http_status = 409

    def __init__(self, idempotency_key: str):
        super().__init__(
            "A request with this idempotency key is still being processed",
            context={"idempotency_key": idempotency_key},
        )
