"""
API routes for QR payments.

Customer and merchant groups mirror the two actors; every response is
wrapped in the ``ApiResponse`` envelope. Business failures are raised as
``PaymentError`` subclasses and rendered by the application's exception
handlers.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from qr_payments.core.exceptions import (
    InvalidSessionTokenError,
    ManagerApprovalRequiredError,
    PaymentValidationError,
    QrCodeExpiredError,
    ReceiptNotAvailableError,
    SessionAlreadyScannedError,
    SessionNotActiveError,
    SessionNotFoundError,
    TransactionNotFoundError,
)
from qr_payments.core.idempotency import IdempotencyGate
from qr_payments.core.qr_codes import parse_payload
from qr_payments.core.states import SessionStatus, TransactionStatus, TransactionType
from qr_payments.database.connection import get_db
from qr_payments.database.models import PaymentSession, utcnow
from qr_payments.monitoring.metrics import metrics

from .dependencies import ServiceContainer, get_services, transaction_filters
from .schemas import (
    ApiResponse,
    CancelTransactionRequest,
    ConfirmTransactionRequest,
    GenerateQrCodeRequest,
    HealthCheckResponse,
    ProcessPaymentRequest,
    RefundRequest,
    RegenerateQrCodeRequest,
    ScanQrCodeRequest,
)

logger = structlog.get_logger(__name__)

customer_router = APIRouter(prefix="/qr-payment/customer", tags=["customer"])
merchant_router = APIRouter(prefix="/qr-payment/merchant", tags=["merchant"])
monitoring_router = APIRouter(tags=["monitoring"])


def _iso(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


# ============================================================================
# Customer
# ============================================================================


@customer_router.post(
    "/qr-code",
    response_model=ApiResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment session and its QR code",
)
async def generate_qr_code(
    request: GenerateQrCodeRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    """Create a pending session and render its scannable code."""
    metadata = dict(request.metadata or {})
    if request.phone_number:
        metadata["phone_number"] = request.phone_number
    session = await services.sessions.create_session(
        db, request.customer_id, currency=request.currency, metadata=metadata
    )
    qr_code = await services.qr_codes.issue(
        session.session_id, size=request.size, image_format=request.format
    )
    expires_at = await services.qr_codes.expiry(session.session_id)

    return ApiResponse(
        success=True,
        message="QR code generated successfully",
        data={
            "session_id": session.session_id,
            "security_token": session.security_token,
            "qr_code": qr_code,
            "expires_at": _iso(expires_at),
            "timeout_minutes": services.settings.qr_expiry_minutes,
        },
    )


@customer_router.put(
    "/qr-code/{session_id}/regenerate",
    response_model=ApiResponse,
    summary="Regenerate the QR code for an active session",
)
async def regenerate_qr_code(
    session_id: str,
    request: RegenerateQrCodeRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    """Issue a fresh code with a strictly later expiry. Requires the session secret."""
    session = await services.sessions.require_session(db, session_id)
    if session.customer_id != request.customer_id:
        raise SessionNotFoundError(session_id)
    if not await services.sessions.validate_session_token(db, session_id, request.security_token):
        logger.warning("invalid_session_token", session_id=session_id)
        raise InvalidSessionTokenError(session_id)
    if not session.is_active():
        raise SessionNotActiveError(session_id, session.status)

    qr_code = await services.qr_codes.reissue(
        session_id, size=request.size, image_format=request.format
    )
    expires_at = await services.qr_codes.expiry(session_id)

    return ApiResponse(
        success=True,
        message="QR code regenerated successfully",
        data={"session_id": session_id, "qr_code": qr_code, "expires_at": _iso(expires_at)},
    )


@customer_router.get(
    "/session/{session_id}/status",
    response_model=ApiResponse,
    summary="Get session status",
)
async def get_session_status(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    """Session status plus the liveness of its rendered code."""
    session = await services.sessions.require_session(db, session_id)
    qr_expires_at = await services.qr_codes.expiry(session_id)

    return ApiResponse(
        success=True,
        message="Session status retrieved",
        data={
            "session_id": session_id,
            "status": session.status.value,
            "is_active": session.is_active(),
            "expires_at": _iso(session.expires_at),
            "qr_expires_at": _iso(qr_expires_at),
            "qr_valid": qr_expires_at is not None and qr_expires_at > utcnow(),
            "merchant_id": session.merchant_id,
            "amount": _money(session.amount),
            "scanned_at": _iso(session.scanned_at),
        },
    )


@customer_router.post(
    "/transaction/{transaction_id}/confirm",
    response_model=ApiResponse,
    summary="Confirm a pending transaction",
)
async def confirm_transaction(
    transaction_id: str,
    request: ConfirmTransactionRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    """Confirm with a second factor; the originating session is confirmed too."""
    transaction = await services.transactions.confirm_transaction(
        db, transaction_id, request.auth_method, request.auth_data
    )

    if transaction.session_id:
        session = await services.sessions.get_session(db, transaction.session_id)
        if session is not None and session.status == SessionStatus.SCANNED:
            try:
                await services.sessions.confirm_session(db, transaction.session_id)
            except SessionNotActiveError as e:
                # Session moved concurrently; the transaction stays confirmed
                logger.info(
                    "session_confirm_skipped",
                    session_id=transaction.session_id,
                    current_status=str(e.context.get("current_status")),
                )

    return ApiResponse(
        success=True,
        message="Transaction confirmed successfully",
        data={
            "transaction_id": transaction.transaction_id,
            "status": transaction.status.value,
            "amount": _money(transaction.amount),
            "currency": transaction.currency,
            "merchant_id": transaction.merchant_id,
            "confirmed_at": _iso(transaction.confirmed_at),
            "auth_method": transaction.auth_method.value if transaction.auth_method else None,
        },
    )


@customer_router.post(
    "/transaction/{transaction_id}/cancel",
    response_model=ApiResponse,
    summary="Cancel a pending transaction",
)
async def cancel_transaction(
    transaction_id: str,
    request: Optional[CancelTransactionRequest] = Body(default=None),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    """Cancel a pending or processing transaction."""
    reason = request.reason if request is not None else "Customer cancelled"
    transaction = await services.transactions.cancel_transaction(db, transaction_id, reason)

    return ApiResponse(
        success=True,
        message="Transaction cancelled successfully",
        data={
            "transaction_id": transaction.transaction_id,
            "status": transaction.status.value,
            "cancelled_at": _iso(transaction.cancelled_at),
            "reason": transaction.failure_reason,
        },
    )


@customer_router.get(
    "/transactions",
    response_model=ApiResponse,
    summary="List the customer's transactions",
)
async def get_customer_transactions(
    customer_id: str = Query(..., min_length=1),
    filters: Dict[str, Any] = Depends(transaction_filters),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    """Newest first, narrowed by the shared history filters."""
    transactions = await services.transactions.get_customer_transactions(
        db, customer_id, **filters
    )
    return ApiResponse(
        success=True,
        message="Transaction history retrieved",
        data={
            "transactions": [t.to_dict() for t in transactions],
            "count": len(transactions),
        },
    )


@customer_router.get(
    "/transaction/{transaction_id}",
    response_model=ApiResponse,
    summary="Get one transaction",
)
async def get_transaction(
    transaction_id: str,
    customer_id: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    """Transaction details; hidden from any customer other than its owner."""
    transaction = await services.transactions.require_transaction(db, transaction_id)
    if customer_id is not None and transaction.customer_id != customer_id:
        raise TransactionNotFoundError(transaction_id)

    return ApiResponse(
        success=True, message="Transaction retrieved", data=transaction.to_dict()
    )


# ============================================================================
# Merchant
# ============================================================================


@merchant_router.post(
    "/qr-code/scan",
    response_model=ApiResponse,
    summary="Scan a customer's QR code",
)
async def scan_qr_code(
    request: ScanQrCodeRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    """
    Look up the session behind a scanned code.

    Read-only: the merchant is bound when it submits an amount.
    """
    payload = parse_payload(request.qr_data)
    session_id = payload["session_id"]

    session = await services.sessions.get_session(db, session_id)
    if session is None:
        metrics.record_scan("not_found")
        raise SessionNotFoundError(session_id)
    if session.status == SessionStatus.SCANNED:
        metrics.record_scan("already_scanned")
        raise SessionAlreadyScannedError(session_id)
    if not session.is_active():
        metrics.record_scan("not_active")
        raise SessionNotActiveError(session_id, session.status)
    if not await services.qr_codes.valid(session_id):
        metrics.record_scan("qr_expired")
        raise QrCodeExpiredError(session_id)

    logger.info("qr_code_scanned", session_id=session_id, merchant_id=request.merchant_id)
    return ApiResponse(
        success=True,
        message="QR code scanned successfully",
        data={
            "session_id": session_id,
            "customer_id": session.customer_id,
            "session_status": session.status.value,
            "expires_at": _iso(session.expires_at),
            "customer_info": {"id": session.customer_id, "member_status": "verified"},
        },
    )


async def _bind_session_for_payment(
    db: AsyncSession, services: ServiceContainer, request: ProcessPaymentRequest
) -> PaymentSession:
    session = await services.sessions.require_session(db, request.session_id)
    if session.customer_id != request.customer_id:
        raise PaymentValidationError(
            "Customer does not own this session",
            context={"session_id": request.session_id, "field": "customer_id"},
        )

    if session.status == SessionStatus.PENDING:
        return await services.sessions.update_with_merchant_scan(
            db,
            request.session_id,
            request.merchant_id,
            amount=request.amount,
            metadata={
                k: v
                for k, v in {
                    "merchant_name": request.merchant_name,
                    "location": request.location,
                }.items()
                if v is not None
            },
        )

    if session.status == SessionStatus.SCANNED and session.merchant_id == request.merchant_id:
        existing = await services.transactions.get_session_payment(db, request.session_id)
        if existing is None:
            return session

    if session.status == SessionStatus.SCANNED:
        raise SessionAlreadyScannedError(request.session_id)
    raise SessionNotActiveError(request.session_id, session.status)


@merchant_router.post(
    "/payment/process",
    response_model=ApiResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enter an amount against a scanned session",
)
async def process_payment(
    request: ProcessPaymentRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    """
    Create a pending payment awaiting customer confirmation.

    Retries with the same ``Idempotency-Key`` (or, without one, the same
    merchant/session/amount/currency) return the original transaction.
    """
    currency = request.currency or services.settings.transaction_currency
    key = idempotency_key or IdempotencyGate.generate_key(
        request.merchant_id, request.session_id, request.amount, currency
    )

    async def operation() -> Dict[str, Any]:
        session = await _bind_session_for_payment(db, services, request)
        transaction = await services.transactions.process_payment(
            db,
            session_id=session.session_id,
            customer_id=session.customer_id,
            merchant_id=request.merchant_id,
            amount=request.amount,
            currency=request.currency or session.currency,
            calculate_fees=True,
            reference_id=request.reference_id,
            metadata={"description": request.description, "items": request.items},
            merchant_info={
                "id": request.merchant_id,
                "name": request.merchant_name,
                "location": request.location,
                "verification_status": "verified",
            },
            sms_fallback_number=(session.metadata_ or {}).get("phone_number"),
        )
        return {
            "transaction_id": transaction.transaction_id,
            "session_id": session.session_id,
            "amount": _money(transaction.amount),
            "currency": transaction.currency,
            "fees": _money(transaction.fees),
            "net_amount": _money(transaction.net_amount),
            "status": transaction.status.value,
            "timeout_at": _iso(transaction.timeout_at),
            "customer_id": transaction.customer_id,
        }

    data = await services.transactions.execute_idempotent_operation(key, operation)
    return ApiResponse(success=True, message="Payment request sent to customer", data=data)


@merchant_router.get(
    "/payment/{transaction_id}/status",
    response_model=ApiResponse,
    summary="Get payment status",
)
async def get_payment_status(
    transaction_id: str,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    """Status with computed timeout information."""
    transaction = await services.transactions.require_transaction(db, transaction_id)
    now = utcnow()

    return ApiResponse(
        success=True,
        message="Payment status retrieved",
        data={
            "transaction_id": transaction.transaction_id,
            "status": transaction.status.value,
            "amount": _money(transaction.amount),
            "currency": transaction.currency,
            "customer_id": transaction.customer_id,
            "is_timed_out": transaction.is_timed_out(now),
            "time_remaining_seconds": transaction.time_remaining_seconds(now),
            "processed_at": _iso(transaction.processed_at),
            "confirmed_at": _iso(transaction.confirmed_at),
            "auth_method": transaction.auth_method.value if transaction.auth_method else None,
        },
    )


@merchant_router.get(
    "/transactions",
    response_model=ApiResponse,
    summary="List the merchant's transactions",
)
async def get_merchant_transactions(
    merchant_id: str = Query(..., min_length=1),
    filters: Dict[str, Any] = Depends(transaction_filters),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    """Newest first, with a completed-amount summary."""
    transactions = await services.transactions.get_merchant_transactions(
        db, merchant_id, **filters
    )
    total_completed = sum(
        (
            t.amount
            for t in transactions
            if t.type == TransactionType.PAYMENT and t.status == TransactionStatus.COMPLETED
        ),
        Decimal("0"),
    ).quantize(services.settings.money_quantum)

    return ApiResponse(
        success=True,
        message="Transaction history retrieved",
        data={
            "transactions": [t.to_dict() for t in transactions],
            "summary": {
                "total_count": len(transactions),
                "total_completed_amount": str(total_completed),
                "currency": (
                    transactions[0].currency
                    if transactions
                    else services.settings.transaction_currency
                ),
            },
        },
    )


@merchant_router.post(
    "/transaction/{transaction_id}/refund",
    response_model=ApiResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Refund a completed transaction",
)
async def process_refund(
    transaction_id: str,
    request: RefundRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    """Refund part or all of a completed payment. Needs a manager approval code."""
    if not (request.manager_approval_code or "").strip():
        raise ManagerApprovalRequiredError(transaction_id)

    refund = await services.transactions.refund_transaction(
        db, transaction_id, request.amount, request.reason
    )

    return ApiResponse(
        success=True,
        message="Refund processed successfully",
        data={
            "refund_transaction_id": refund.transaction_id,
            "original_transaction_id": transaction_id,
            "refund_amount": _money(refund.amount),
            "currency": refund.currency,
            "status": refund.status.value,
            "reason": refund.failure_reason,
            "processed_at": _iso(refund.processed_at),
        },
    )


@merchant_router.get(
    "/transaction/{transaction_id}/receipt",
    response_model=ApiResponse,
    summary="Get a receipt for a completed transaction",
)
async def get_receipt(
    transaction_id: str,
    email: Optional[str] = Query(default=None, description="Also e-mail the receipt here"),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    """Receipt for a completed transaction, optionally e-mailed."""
    transaction = await services.transactions.require_transaction(db, transaction_id)
    if transaction.status != TransactionStatus.COMPLETED:
        raise ReceiptNotAvailableError(transaction_id, transaction.status)

    receipt = services.transactions.build_receipt(transaction)
    receipt["payment_method"] = "QR Payment"
    receipt["metadata"] = transaction.metadata_ or {}

    email_sent = False
    if email:
        email_sent = await services.dispatcher.send_email_receipt(email, transaction_id, receipt)

    return ApiResponse(
        success=True,
        message="Receipt generated successfully",
        data={"receipt": receipt, "email_sent": email_sent},
    )


# ============================================================================
# Monitoring
# ============================================================================


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check database and Redis health",
)
async def health(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
