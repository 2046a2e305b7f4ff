"""
Transaction lifecycle.

State machine (initial ``pending``):

    pending             --confirm(auth)-->   confirmed   (rejected once timed out)
    pending/processing  --cancel(reason)-->  cancelled
    confirmed           --settle-->          completed
    completed           --refund(amount)-->  new refund transaction (completed)

Transitions are compare-and-swap updates on the stored status. Refunds
increment the parent's ``refunded_amount`` in one guarded UPDATE, so the
total refunded never exceeds the parent's ``net_amount`` even when refund
requests race.
"""
import hashlib
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from qr_payments.config import Settings, get_settings
from qr_payments.core.exceptions import (
    InsufficientBalanceError,
    PaymentValidationError,
    RefundLimitExceededError,
    SessionAlreadyScannedError,
    TransactionAlreadyProcessedError,
    TransactionNotFoundError,
    TransactionTimeoutError,
)
from qr_payments.core.idempotency import IdempotencyGate
from qr_payments.core.states import AuthMethod, TransactionStatus, TransactionType
from qr_payments.core.tokens import new_transaction_id
from qr_payments.database import store
from qr_payments.database.models import Transaction, utcnow
from qr_payments.integrations.balance import BalanceOracle, MockBalanceOracle
from qr_payments.integrations.notifications import NotificationDispatcher
from qr_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

FEE_PERCENTAGE = Decimal("0.029")
FEE_FIXED = Decimal("0.30")

# Secret carried in auth_data for each method, with its length bounds.
AUTH_REQUIREMENTS = {
    AuthMethod.PIN: ("pin", 4, 6),
    AuthMethod.BIOMETRIC: ("fingerprint_hash", 1, None),
    AuthMethod.PASSWORD: ("password", 6, None),
    AuthMethod.PATTERN: ("pattern", 1, None),
}

# Stored as digests, never as entered.
HASHED_AUTH_FIELDS = frozenset({"pin", "password", "pattern"})


def compute_fees(amount: Decimal, quantum: Decimal = Decimal("0.01")) -> Decimal:
    """Flat-plus-percentage fee: ``amount * 2.9% + 0.30``, rounded half-up."""
    return (amount * FEE_PERCENTAGE + FEE_FIXED).quantize(quantum, rounding=ROUND_HALF_UP)


def validate_auth_payload(auth_method: Any, auth_data: Optional[Dict[str, Any]]) -> AuthMethod:
    """
    Check a confirmation's second factor is well formed.

    Returns:
        AuthMethod: The parsed method

    Raises:
        PaymentValidationError: If the method is unknown or its secret is missing/malformed
    """
    try:
        method = AuthMethod(auth_method)
    except ValueError:
        raise PaymentValidationError(
            "Invalid authentication method", context={"field": "auth_method"}
        )

    field, min_length, max_length = AUTH_REQUIREMENTS[method]
    value = (auth_data or {}).get(field)
    if not isinstance(value, str) or not value:
        raise PaymentValidationError(
            f"{field} is required for {method.value} authentication",
            context={"field": f"auth_data.{field}"},
        )
    if len(value) < min_length or (max_length is not None and len(value) > max_length):
        raise PaymentValidationError(
            f"{field} has an invalid length", context={"field": f"auth_data.{field}"}
        )
    return method


def _redact_auth_data(auth_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    redacted = {}
    for key, value in (auth_data or {}).items():
        if key in HASHED_AUTH_FIELDS and isinstance(value, str):
            value = "sha256:" + hashlib.sha256(value.encode("utf-8")).hexdigest()
        redacted[key] = value
    return redacted


class TransactionManager:
    """Owns Transaction rows, fee computation and the payment/refund flows."""

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        balance_oracle: Optional[BalanceOracle] = None,
        idempotency_gate: Optional[IdempotencyGate] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize transaction manager.

        Args:
            dispatcher: Notification dispatcher (built from settings if omitted)
            balance_oracle: Balance oracle (stub oracle if omitted)
            idempotency_gate: Idempotency gate (Redis-backed if omitted)
            settings: Optional settings (uses cached settings if not provided)
        """
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher or NotificationDispatcher(settings=self.settings)
        self.balance_oracle = balance_oracle or MockBalanceOracle(self.settings.mock_balance_limit)
        self.idempotency_gate = idempotency_gate or IdempotencyGate(settings=self.settings)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_transaction(self, db: AsyncSession, transaction_id: str) -> Optional[Transaction]:
        """Return the transaction, or None if absent."""
        return await store.find_by_key(db, Transaction, transaction_id, refresh=True)

    async def require_transaction(self, db: AsyncSession, transaction_id: str) -> Transaction:
        """Return the transaction or raise TransactionNotFoundError."""
        transaction = await self.get_transaction(db, transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        return transaction

    async def get_session_payment(self, db: AsyncSession, session_id: str) -> Optional[Transaction]:
        """The payment transaction created against ``session_id``, if any."""
        stmt = (
            select(Transaction)
            .where(
                Transaction.session_id == session_id,
                Transaction.type == TransactionType.PAYMENT,
            )
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_customer_transactions(
        self,
        db: AsyncSession,
        customer_id: str,
        status: Optional[TransactionStatus] = None,
        type: Optional[TransactionType] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = store.DEFAULT_LIST_LIMIT,
    ) -> List[Transaction]:
        """Customer's transactions, newest first."""
        return await store.list_filtered(
            db,
            Transaction,
            Transaction.customer_id == customer_id,
            status=status,
            type=type,
            from_date=from_date,
            to_date=to_date,
            limit=limit,
        )

    async def get_merchant_transactions(
        self,
        db: AsyncSession,
        merchant_id: str,
        status: Optional[TransactionStatus] = None,
        type: Optional[TransactionType] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = store.DEFAULT_LIST_LIMIT,
    ) -> List[Transaction]:
        """Merchant's transactions, newest first."""
        return await store.list_filtered(
            db,
            Transaction,
            Transaction.merchant_id == merchant_id,
            status=status,
            type=type,
            from_date=from_date,
            to_date=to_date,
            limit=limit,
        )

    async def validate_customer_balance(self, customer_id: str, amount: Decimal) -> bool:
        """Ask the balance oracle whether ``customer_id`` can cover ``amount``."""
        return await self.balance_oracle.sufficient_funds(customer_id, amount)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _normalize_amount(self, amount: Any) -> Decimal:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise PaymentValidationError("Amount must be a number", context={"field": "amount"})
        if not value.is_finite() or value <= 0:
            raise PaymentValidationError("Amount must be positive", context={"field": "amount"})
        value = value.quantize(self.settings.money_quantum, rounding=ROUND_HALF_UP)
        if value <= 0:
            raise PaymentValidationError("Amount must be positive", context={"field": "amount"})
        if value > self.settings.max_transaction_amount:
            raise PaymentValidationError(
                f"Amount exceeds maximum of {self.settings.max_transaction_amount}",
                context={"field": "amount", "max_amount": self.settings.max_transaction_amount},
            )
        return value

    @staticmethod
    def _normalize_currency(currency: str) -> str:
        if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
            raise PaymentValidationError(
                "Currency must be a 3-letter ISO code", context={"field": "currency"}
            )
        return currency.upper()

    async def _lost_transition(
        self, db: AsyncSession, transaction_id: str, target: TransactionStatus
    ) -> TransactionAlreadyProcessedError:
        metrics.record_transition_conflict("transaction", target.value)
        current = await self.require_transaction(db, transaction_id)
        return TransactionAlreadyProcessedError(transaction_id, current.status)

    # ------------------------------------------------------------------
    # Payment flow
    # ------------------------------------------------------------------

    async def process_payment(
        self,
        db: AsyncSession,
        session_id: str,
        customer_id: str,
        merchant_id: str,
        amount: Any,
        currency: Optional[str] = None,
        calculate_fees: bool = False,
        reference_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        merchant_info: Optional[Dict[str, Any]] = None,
        sms_fallback_number: Optional[str] = None,
    ) -> Transaction:
        """
        Create a pending payment and ask the customer to confirm it.

        The payment session itself is left untouched. A session holds at most
        one payment; the unique index on payment rows settles concurrent
        attempts. When the confirmation request cannot be delivered and
        ``sms_fallback_number`` is given, the customer is texted instead.

        Raises:
            PaymentValidationError: If amount or currency is invalid
            InsufficientBalanceError: If the balance oracle refuses the amount
            SessionAlreadyScannedError: If the session already has a payment
        """
        amount = self._normalize_amount(amount)
        currency = self._normalize_currency(currency or self.settings.transaction_currency)

        if not await self.validate_customer_balance(customer_id, amount):
            logger.warning(
                "insufficient_balance", customer_id=customer_id, amount=str(amount)
            )
            raise InsufficientBalanceError(customer_id, amount)

        fees = (
            compute_fees(amount, self.settings.money_quantum)
            if calculate_fees
            else Decimal("0").quantize(self.settings.money_quantum)
        )
        now = utcnow()
        transaction = Transaction(
            transaction_id=new_transaction_id(),
            session_id=session_id,
            customer_id=customer_id,
            merchant_id=merchant_id,
            amount=amount,
            currency=currency,
            fees=fees,
            net_amount=amount - fees,
            refunded_amount=Decimal("0").quantize(self.settings.money_quantum),
            type=TransactionType.PAYMENT,
            status=TransactionStatus.PENDING,
            reference_id=reference_id,
            metadata_=dict(metadata or {}),
            timeout_at=now + timedelta(minutes=self.settings.session_timeout_minutes),
            created_at=now,
            updated_at=now,
        )
        db.add(transaction)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            if await self.get_session_payment(db, session_id) is None:
                raise
            metrics.record_transition_conflict("session", "payment")
            logger.warning(
                "session_payment_exists", session_id=session_id, merchant_id=merchant_id
            )
            raise SessionAlreadyScannedError(session_id)

        metrics.record_transaction(TransactionType.PAYMENT.value, "pending", float(amount))
        logger.info(
            "payment_transaction_created",
            transaction_id=transaction.transaction_id,
            session_id=session_id,
            customer_id=customer_id,
            merchant_id=merchant_id,
            amount=str(amount),
            fees=str(fees),
        )

        delivered = await self.dispatcher.send_payment_confirmation_request(
            customer_id,
            transaction.transaction_id,
            {
                "merchant_id": merchant_id,
                "amount": str(amount),
                "currency": currency,
                "merchant_info": merchant_info or {"id": merchant_id},
                "transaction_details": {
                    "transaction_id": transaction.transaction_id,
                    "fees": str(fees),
                    "net_amount": str(transaction.net_amount),
                    "timeout_at": transaction.timeout_at.isoformat(),
                },
            },
        )
        if not delivered and sms_fallback_number:
            await self.dispatcher.send_sms_fallback(
                sms_fallback_number,
                f"Confirm your payment of {amount} {currency} to {merchant_id} "
                f"(ref {transaction.transaction_id})",
            )
        return transaction

    async def confirm_transaction(
        self,
        db: AsyncSession,
        transaction_id: str,
        auth_method: Any,
        auth_data: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """
        Confirm a pending transaction with the customer's second factor.

        Raises:
            TransactionNotFoundError: If the transaction does not exist
            TransactionTimeoutError: If ``now > timeout_at``
            TransactionAlreadyProcessedError: If it is not pending
            PaymentValidationError: If the auth payload is malformed
        """
        transaction = await self.require_transaction(db, transaction_id)
        now = utcnow()
        if transaction.is_timed_out(now):
            logger.info("transaction_confirmation_timed_out", transaction_id=transaction_id)
            raise TransactionTimeoutError(transaction_id, transaction.timeout_at)
        if transaction.status != TransactionStatus.PENDING:
            raise TransactionAlreadyProcessedError(transaction_id, transaction.status)

        method = validate_auth_payload(auth_method, auth_data)
        previous_status = transaction.status
        moved = await store.transition(
            db,
            Transaction,
            transaction_id,
            [TransactionStatus.PENDING],
            TransactionStatus.CONFIRMED,
            conditions=[Transaction.timeout_at >= now],
            auth_method=method,
            auth_data=_redact_auth_data(auth_data),
            confirmed_at=now,
        )
        await db.commit()
        if not moved:
            current = await self.require_transaction(db, transaction_id)
            if current.status == TransactionStatus.PENDING and current.is_timed_out():
                raise TransactionTimeoutError(transaction_id, current.timeout_at)
            raise await self._lost_transition(db, transaction_id, TransactionStatus.CONFIRMED)

        transaction = await self.require_transaction(db, transaction_id)
        metrics.record_transaction(transaction.type.value, TransactionStatus.CONFIRMED.value)
        logger.info(
            "transaction_confirmed", transaction_id=transaction_id, auth_method=method.value
        )

        await self.dispatcher.send_transaction_status_update(
            transaction_id,
            TransactionStatus.CONFIRMED.value,
            {
                "customer_id": transaction.customer_id,
                "merchant_id": transaction.merchant_id,
                "previous_status": previous_status.value,
                "auth_method": method.value,
            },
        )
        return transaction

    async def mark_processing(self, db: AsyncSession, transaction_id: str) -> Transaction:
        """
        Move a pending transaction to ``processing``.

        Raises:
            TransactionNotFoundError: If the transaction does not exist
            TransactionAlreadyProcessedError: If it is not pending
        """
        await self.require_transaction(db, transaction_id)
        moved = await store.transition(
            db,
            Transaction,
            transaction_id,
            [TransactionStatus.PENDING],
            TransactionStatus.PROCESSING,
            processed_at=utcnow(),
        )
        await db.commit()
        if not moved:
            raise await self._lost_transition(db, transaction_id, TransactionStatus.PROCESSING)

        transaction = await self.require_transaction(db, transaction_id)
        metrics.record_transaction(transaction.type.value, TransactionStatus.PROCESSING.value)
        logger.info("transaction_processing", transaction_id=transaction_id)
        return transaction

    async def cancel_transaction(
        self, db: AsyncSession, transaction_id: str, reason: str = ""
    ) -> Transaction:
        """
        Cancel a pending or processing transaction.

        Raises:
            TransactionNotFoundError: If the transaction does not exist
            TransactionAlreadyProcessedError: If it is in any other status
        """
        transaction = await self.require_transaction(db, transaction_id)
        previous_status = transaction.status
        moved = await store.transition(
            db,
            Transaction,
            transaction_id,
            [TransactionStatus.PENDING, TransactionStatus.PROCESSING],
            TransactionStatus.CANCELLED,
            cancelled_at=utcnow(),
            failure_reason=reason,
        )
        await db.commit()
        if not moved:
            raise await self._lost_transition(db, transaction_id, TransactionStatus.CANCELLED)

        transaction = await self.require_transaction(db, transaction_id)
        metrics.record_transaction(transaction.type.value, TransactionStatus.CANCELLED.value)
        logger.info("transaction_cancelled", transaction_id=transaction_id, reason=reason)

        await self.dispatcher.send_transaction_status_update(
            transaction_id,
            TransactionStatus.CANCELLED.value,
            {
                "customer_id": transaction.customer_id,
                "merchant_id": transaction.merchant_id,
                "previous_status": previous_status.value,
                "reason": reason,
            },
        )
        return transaction

    async def complete_transaction(
        self, db: AsyncSession, transaction_id: str, receipt_data: Optional[Dict[str, Any]] = None
    ) -> Transaction:
        """
        Record settlement of a confirmed transaction.

        Raises:
            TransactionNotFoundError: If the transaction does not exist
            TransactionAlreadyProcessedError: If it is not confirmed
        """
        await self.require_transaction(db, transaction_id)
        moved = await store.transition(
            db,
            Transaction,
            transaction_id,
            [TransactionStatus.CONFIRMED],
            TransactionStatus.COMPLETED,
        )
        await db.commit()
        if not moved:
            raise await self._lost_transition(db, transaction_id, TransactionStatus.COMPLETED)

        transaction = await self.require_transaction(db, transaction_id)
        metrics.record_transaction(transaction.type.value, TransactionStatus.COMPLETED.value)
        logger.info("transaction_completed", transaction_id=transaction_id)

        payload = {
            "transaction_id": transaction_id,
            "amount": str(transaction.amount),
            "currency": transaction.currency,
            "receipt_data": receipt_data or self.build_receipt(transaction),
        }
        await self.dispatcher.send_transaction_status_update(
            transaction_id,
            TransactionStatus.COMPLETED.value,
            {
                "customer_id": transaction.customer_id,
                "merchant_id": transaction.merchant_id,
                "previous_status": TransactionStatus.CONFIRMED.value,
            },
        )
        await self.dispatcher.send_payment_completion_notification(
            transaction.customer_id, transaction.merchant_id, transaction_id, payload
        )
        await self.dispatcher.send_merchant_webhook(
            transaction.merchant_id, "payment.completed", payload
        )
        return transaction

    async def fail_transaction(
        self, db: AsyncSession, transaction_id: str, reason: str
    ) -> Transaction:
        """
        Mark a pending, processing or confirmed transaction as failed.

        Raises:
            TransactionNotFoundError: If the transaction does not exist
            TransactionAlreadyProcessedError: If it is already final
        """
        transaction = await self.require_transaction(db, transaction_id)
        previous_status = transaction.status
        moved = await store.transition(
            db,
            Transaction,
            transaction_id,
            [TransactionStatus.PENDING, TransactionStatus.PROCESSING, TransactionStatus.CONFIRMED],
            TransactionStatus.FAILED,
            failure_reason=reason,
        )
        await db.commit()
        if not moved:
            raise await self._lost_transition(db, transaction_id, TransactionStatus.FAILED)

        transaction = await self.require_transaction(db, transaction_id)
        metrics.record_transaction(transaction.type.value, TransactionStatus.FAILED.value)
        logger.warning("transaction_failed", transaction_id=transaction_id, reason=reason)

        await self.dispatcher.send_transaction_status_update(
            transaction_id,
            TransactionStatus.FAILED.value,
            {
                "customer_id": transaction.customer_id,
                "merchant_id": transaction.merchant_id,
                "previous_status": previous_status.value,
                "reason": reason,
            },
        )
        return transaction

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def refund_transaction(
        self, db: AsyncSession, transaction_id: str, amount: Any, reason: str = ""
    ) -> Transaction:
        """
        Refund part or all of a completed payment.

        Creates a new ``refund`` transaction, completed immediately. The
        parent moves to ``refunded`` once its refunds reach ``net_amount``.

        Raises:
            TransactionNotFoundError: If the parent does not exist
            PaymentValidationError: If the parent is not a payment
            TransactionAlreadyProcessedError: If the parent is not completed
            RefundLimitExceededError: If the refund would exceed what is left to refund
        """
        parent = await self.require_transaction(db, transaction_id)
        if parent.type != TransactionType.PAYMENT:
            raise PaymentValidationError(
                f"Only payments can be refunded (type: {parent.type.value})",
                context={"transaction_id": transaction_id, "field": "transaction_id"},
            )
        if parent.status != TransactionStatus.COMPLETED:
            raise TransactionAlreadyProcessedError(
                transaction_id,
                parent.status,
                message=f"Only completed transactions can be refunded (status: {parent.status.value})",
            )
        amount = self._normalize_amount(amount)

        reserved = await store.conditional_update(
            db,
            Transaction,
            transaction_id,
            Transaction.status == TransactionStatus.COMPLETED,
            Transaction.type == TransactionType.PAYMENT,
            Transaction.refunded_amount + amount <= Transaction.net_amount,
            refunded_amount=Transaction.refunded_amount + amount,
        )
        if not reserved:
            await db.rollback()
            current = await self.require_transaction(db, transaction_id)
            if current.status != TransactionStatus.COMPLETED:
                raise TransactionAlreadyProcessedError(transaction_id, current.status)
            refundable = current.net_amount - current.refunded_amount
            logger.warning(
                "refund_limit_exceeded",
                transaction_id=transaction_id,
                requested=str(amount),
                refundable=str(refundable),
            )
            raise RefundLimitExceededError(transaction_id, amount, refundable)

        now = utcnow()
        refund = Transaction(
            transaction_id=new_transaction_id(),
            parent_transaction_id=transaction_id,
            customer_id=parent.customer_id,
            merchant_id=parent.merchant_id,
            amount=amount,
            currency=parent.currency,
            fees=Decimal("0").quantize(self.settings.money_quantum),
            net_amount=amount,
            refunded_amount=Decimal("0").quantize(self.settings.money_quantum),
            type=TransactionType.REFUND,
            status=TransactionStatus.COMPLETED,
            failure_reason=reason,
            processed_at=now,
            confirmed_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(refund)
        await db.commit()

        parent = await self.require_transaction(db, transaction_id)
        if parent.refunded_amount >= parent.net_amount:
            await store.transition(
                db,
                Transaction,
                transaction_id,
                [TransactionStatus.COMPLETED],
                TransactionStatus.REFUNDED,
            )
            await db.commit()
            metrics.record_transaction(TransactionType.PAYMENT.value, TransactionStatus.REFUNDED.value)

        metrics.record_transaction(TransactionType.REFUND.value, "completed", float(amount))
        logger.info(
            "refund_processed",
            transaction_id=refund.transaction_id,
            parent_transaction_id=transaction_id,
            amount=str(amount),
            reason=reason,
        )

        await self.dispatcher.send_merchant_webhook(
            parent.merchant_id,
            "refund.processed",
            {
                "transaction_id": refund.transaction_id,
                "parent_transaction_id": transaction_id,
                "amount": str(amount),
                "currency": refund.currency,
                "reason": reason,
            },
        )
        return refund

    # ------------------------------------------------------------------
    # Idempotency & receipts
    # ------------------------------------------------------------------

    async def execute_idempotent_operation(
        self, idempotency_key: str, operation: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Run ``operation`` through the idempotency gate."""
        return await self.idempotency_gate.execute(idempotency_key, operation)

    @staticmethod
    def build_receipt(transaction: Transaction) -> Dict[str, Any]:
        """Receipt summary for a completed transaction."""
        completed_at = transaction.processed_at or transaction.updated_at
        return {
            "receipt_number": f"RCP-{transaction.transaction_id}",
            "transaction_id": transaction.transaction_id,
            "merchant_id": transaction.merchant_id,
            "customer_id": transaction.customer_id,
            "amount": str(transaction.amount),
            "fees": str(transaction.fees),
            "net_amount": str(transaction.net_amount),
            "currency": transaction.currency,
            "auth_method": transaction.auth_method.value if transaction.auth_method else None,
            "reference_id": transaction.reference_id,
            "completed_at": completed_at.isoformat() if completed_at else None,
            "issued_at": utcnow().isoformat(),
        }
