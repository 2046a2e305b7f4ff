"""
Tests for the transaction lifecycle: payment, confirmation, settlement and refunds.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import FailingBoundary, RecordingBoundary, expire_transaction_window
from qr_payments.config import Settings
from qr_payments.core.exceptions import (
    InsufficientBalanceError,
    PaymentValidationError,
    RefundLimitExceededError,
    SessionAlreadyScannedError,
    TransactionAlreadyProcessedError,
    TransactionNotFoundError,
    TransactionTimeoutError,
)
from qr_payments.core.sessions import SessionManager
from qr_payments.core.states import AuthMethod, SessionStatus, TransactionStatus, TransactionType
from qr_payments.core.transactions import (
    TransactionManager,
    compute_fees,
    validate_auth_payload,
)
from qr_payments.database.models import utcnow
from qr_payments.integrations.balance import MockBalanceOracle
from qr_payments.integrations.notifications import NotificationDispatcher


class TestFeesAndAuth:
    """Test suite for fee computation and second-factor validation."""

    @pytest.mark.unit
    def test_fees_on_one_hundred(self) -> None:
        fees = compute_fees(Decimal("100.00"))
        assert fees == Decimal("3.20")
        assert Decimal("100.00") - fees == Decimal("96.80")

    @pytest.mark.unit
    def test_fees_round_half_up(self) -> None:
        # 10.00 * 0.029 + 0.30 = 0.59
        assert compute_fees(Decimal("10.00")) == Decimal("0.59")
        # 0.50 * 0.029 + 0.30 = 0.3145
        assert compute_fees(Decimal("0.50")) == Decimal("0.31")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "method, data",
        [
            ("pin", {"pin": "1234"}),
            ("pin", {"pin": "123456"}),
            ("biometric", {"fingerprint_hash": "abc123"}),
            ("password", {"password": "hunter22"}),
            ("pattern", {"pattern": "L-shape"}),
        ],
    )
    def test_valid_auth_payloads(self, method: str, data: dict) -> None:
        assert validate_auth_payload(method, data) == AuthMethod(method)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "method, data",
        [
            ("pin", {}),
            ("pin", {"pin": "12"}),
            ("pin", {"pin": "1234567"}),
            ("password", {"password": "short"}),
            ("biometric", {"pin": "1234"}),
            ("retina", {"scan": "x"}),
        ],
    )
    def test_invalid_auth_payloads(self, method: str, data: dict) -> None:
        with pytest.raises(PaymentValidationError):
            validate_auth_payload(method, data)


class TestProcessPayment:
    """Test suite for payment creation."""

    @pytest.mark.asyncio
    async def test_process_payment_with_fees(
        self, make_payment: Any, boundary: RecordingBoundary
    ) -> None:
        before = utcnow()
        session, transaction = await make_payment(amount="100.00")

        assert transaction.transaction_id.startswith("txn_")
        assert transaction.status == TransactionStatus.PENDING
        assert transaction.type == TransactionType.PAYMENT
        assert transaction.amount == Decimal("100.00")
        assert transaction.fees == Decimal("3.20")
        assert transaction.net_amount == Decimal("96.80")
        assert transaction.refunded_amount == Decimal("0.00")
        assert transaction.session_id == session.session_id
        assert before + timedelta(minutes=2) <= transaction.timeout_at <= utcnow() + timedelta(minutes=2)

        # The session is left as the scan left it
        assert session.status == SessionStatus.SCANNED

        [(event, channels, payload)] = boundary.events("payment.confirmation.requested")
        assert channels == ["customer.cust-1"]
        assert payload["transaction_id"] == transaction.transaction_id
        assert payload["amount"] == "100.00"
        assert payload["transaction_details"]["fees"] == "3.20"

    @pytest.mark.asyncio
    async def test_process_payment_without_fees(self, make_payment: Any) -> None:
        _, transaction = await make_payment(amount="25.00", calculate_fees=False)
        assert transaction.fees == Decimal("0.00")
        assert transaction.net_amount == Decimal("25.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5.00", "abc", "0.001", "10000.01"])
    async def test_invalid_amount(
        self, test_db: AsyncSession, transaction_manager: TransactionManager, amount: str
    ) -> None:
        with pytest.raises(PaymentValidationError):
            await transaction_manager.process_payment(
                test_db, "qr_1", "cust-1", "merch-1", amount
            )

    @pytest.mark.asyncio
    async def test_invalid_currency(
        self, test_db: AsyncSession, transaction_manager: TransactionManager
    ) -> None:
        with pytest.raises(PaymentValidationError, match="Currency"):
            await transaction_manager.process_payment(
                test_db, "qr_1", "cust-1", "merch-1", "10.00", currency="US"
            )

    @pytest.mark.asyncio
    async def test_insufficient_balance(
        self,
        test_db: AsyncSession,
        dispatcher: NotificationDispatcher,
        boundary: RecordingBoundary,
        test_settings: Settings,
    ) -> None:
        manager = TransactionManager(
            dispatcher=dispatcher,
            balance_oracle=MockBalanceOracle(Decimal("50.00")),
            settings=test_settings,
        )

        with pytest.raises(InsufficientBalanceError):
            await manager.process_payment(test_db, "qr_1", "cust-1", "merch-1", "100.00")

        assert await manager.get_customer_transactions(test_db, "cust-1") == []
        assert boundary.deliveries == []

    @pytest.mark.asyncio
    async def test_broadcast_failure_does_not_block_payment(
        self,
        test_db: AsyncSession,
        idempotency_gate: Any,
        test_settings: Settings,
    ) -> None:
        manager = TransactionManager(
            dispatcher=NotificationDispatcher(boundary=FailingBoundary(), settings=test_settings),
            idempotency_gate=idempotency_gate,
            settings=test_settings,
        )

        transaction = await manager.process_payment(test_db, "qr_1", "cust-1", "merch-1", "10.00")

        stored = await manager.require_transaction(test_db, transaction.transaction_id)
        assert stored.status == TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_undelivered_confirmation_falls_back_to_sms(
        self,
        test_db: AsyncSession,
        monkeypatch: pytest.MonkeyPatch,
        test_settings: Settings,
    ) -> None:
        dispatcher = NotificationDispatcher(boundary=FailingBoundary(), settings=test_settings)
        sms = AsyncMock(return_value=True)
        monkeypatch.setattr(dispatcher, "send_sms_fallback", sms)
        manager = TransactionManager(dispatcher=dispatcher, settings=test_settings)

        transaction = await manager.process_payment(
            test_db, "qr_1", "cust-1", "merch-1", "10.00", sms_fallback_number="+15551234567"
        )

        sms.assert_awaited_once()
        number, message = sms.await_args.args
        assert number == "+15551234567"
        assert transaction.transaction_id in message

    @pytest.mark.asyncio
    async def test_delivered_confirmation_skips_sms(
        self,
        test_db: AsyncSession,
        monkeypatch: pytest.MonkeyPatch,
        dispatcher: NotificationDispatcher,
        test_settings: Settings,
    ) -> None:
        sms = AsyncMock(return_value=True)
        monkeypatch.setattr(dispatcher, "send_sms_fallback", sms)
        manager = TransactionManager(dispatcher=dispatcher, settings=test_settings)

        await manager.process_payment(
            test_db, "qr_1", "cust-1", "merch-1", "10.00", sms_fallback_number="+15551234567"
        )

        sms.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_payment_for_session_is_rejected(
        self, test_db: AsyncSession, make_payment: Any, transaction_manager: TransactionManager
    ) -> None:
        session, first = await make_payment(amount="10.00")

        with pytest.raises(SessionAlreadyScannedError):
            await transaction_manager.process_payment(
                test_db, session.session_id, "cust-1", "merch-1", "20.00"
            )

        payment = await transaction_manager.get_session_payment(test_db, session.session_id)
        assert payment.transaction_id == first.transaction_id
        payments = await transaction_manager.get_merchant_transactions(
            test_db, "merch-1", type=TransactionType.PAYMENT
        )
        assert len(payments) == 1

    @pytest.mark.unit
    def test_decimal_places_bounded_by_column_scale(self) -> None:
        assert Settings(transaction_decimal_places=0).money_quantum == Decimal("1")
        with pytest.raises(ValidationError):
            Settings(transaction_decimal_places=3)


class TestConfirmTransaction:
    """Test suite for customer confirmation."""

    @pytest.mark.asyncio
    async def test_confirm(
        self,
        test_db: AsyncSession,
        make_payment: Any,
        transaction_manager: TransactionManager,
        boundary: RecordingBoundary,
    ) -> None:
        _, transaction = await make_payment()

        confirmed = await transaction_manager.confirm_transaction(
            test_db, transaction.transaction_id, "pin", {"pin": "1234"}
        )

        assert confirmed.status == TransactionStatus.CONFIRMED
        assert confirmed.auth_method == AuthMethod.PIN
        assert confirmed.confirmed_at is not None
        assert confirmed.auth_data["pin"].startswith("sha256:")
        assert "1234" not in confirmed.auth_data["pin"]

        [(_, channels, payload)] = boundary.events("transaction.status.updated")
        assert payload["status"] == "confirmed"
        assert payload["previous_status"] == "pending"
        assert f"transaction.{transaction.transaction_id}" in channels

    @pytest.mark.asyncio
    async def test_confirm_twice(
        self, test_db: AsyncSession, make_payment: Any, transaction_manager: TransactionManager
    ) -> None:
        _, transaction = await make_payment(stage="confirmed")

        with pytest.raises(TransactionAlreadyProcessedError) as exc_info:
            await transaction_manager.confirm_transaction(
                test_db, transaction.transaction_id, "pin", {"pin": "1"}
            )
        assert exc_info.value.current_status == TransactionStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_confirm_after_timeout(
        self, test_db: AsyncSession, make_payment: Any, transaction_manager: TransactionManager
    ) -> None:
        _, transaction = await make_payment()
        await expire_transaction_window(test_db, transaction.transaction_id)

        with pytest.raises(TransactionTimeoutError):
            await transaction_manager.confirm_transaction(
                test_db, transaction.transaction_id, "pin", {"pin": "1234"}
            )

        current = await transaction_manager.require_transaction(test_db, transaction.transaction_id)
        assert current.status == TransactionStatus.PENDING
        assert current.is_timed_out()
        assert current.time_remaining_seconds() == 0

    @pytest.mark.asyncio
    async def test_confirm_with_bad_pin_leaves_transaction_pending(
        self, test_db: AsyncSession, make_payment: Any, transaction_manager: TransactionManager
    ) -> None:
        _, transaction = await make_payment()

        with pytest.raises(PaymentValidationError):
            await transaction_manager.confirm_transaction(
                test_db, transaction.transaction_id, "pin", {"pin": "12"}
            )

        current = await transaction_manager.require_transaction(test_db, transaction.transaction_id)
        assert current.status == TransactionStatus.PENDING
        assert current.auth_method is None

    @pytest.mark.asyncio
    async def test_confirm_missing(
        self, test_db: AsyncSession, transaction_manager: TransactionManager
    ) -> None:
        with pytest.raises(TransactionNotFoundError):
            await transaction_manager.confirm_transaction(test_db, "txn_missing", "pin", {"pin": "1234"})


class TestCancelCompleteFail:
    """Test suite for the remaining transitions."""

    @pytest.mark.asyncio
    async def test_cancel_pending(
        self,
        test_db: AsyncSession,
        make_payment: Any,
        transaction_manager: TransactionManager,
        boundary: RecordingBoundary,
    ) -> None:
        _, transaction = await make_payment()

        cancelled = await transaction_manager.cancel_transaction(
            test_db, transaction.transaction_id, "Changed my mind"
        )

        assert cancelled.status == TransactionStatus.CANCELLED
        assert cancelled.failure_reason == "Changed my mind"
        assert cancelled.cancelled_at is not None
        [(_, _, payload)] = boundary.events("transaction.status.updated")
        assert payload["status"] == "cancelled"

        with pytest.raises(TransactionAlreadyProcessedError):
            await transaction_manager.confirm_transaction(
                test_db, transaction.transaction_id, "pin", {"pin": "1234"}
            )

    @pytest.mark.asyncio
    async def test_cancel_processing(
        self, test_db: AsyncSession, make_payment: Any, transaction_manager: TransactionManager
    ) -> None:
        _, transaction = await make_payment()

        processing = await transaction_manager.mark_processing(test_db, transaction.transaction_id)
        assert processing.status == TransactionStatus.PROCESSING
        assert processing.processed_at is not None

        cancelled = await transaction_manager.cancel_transaction(test_db, transaction.transaction_id)
        assert cancelled.status == TransactionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_confirmed_is_rejected(
        self, test_db: AsyncSession, make_payment: Any, transaction_manager: TransactionManager
    ) -> None:
        _, transaction = await make_payment(stage="confirmed")

        with pytest.raises(TransactionAlreadyProcessedError) as exc_info:
            await transaction_manager.cancel_transaction(test_db, transaction.transaction_id)
        assert exc_info.value.current_status == TransactionStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_complete(
        self, make_payment: Any, boundary: RecordingBoundary
    ) -> None:
        _, transaction = await make_payment(stage="completed")

        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.is_final
        [(_, channels, payload)] = boundary.events("payment.completed")
        assert channels == ["customer.cust-1", "merchant.merch-1"]
        assert payload["receipt_data"]["receipt_number"] == f"RCP-{transaction.transaction_id}"

    @pytest.mark.asyncio
    async def test_complete_requires_confirmation(
        self, test_db: AsyncSession, make_payment: Any, transaction_manager: TransactionManager
    ) -> None:
        _, transaction = await make_payment()

        with pytest.raises(TransactionAlreadyProcessedError):
            await transaction_manager.complete_transaction(test_db, transaction.transaction_id)

    @pytest.mark.asyncio
    async def test_fail_confirmed(
        self, test_db: AsyncSession, make_payment: Any, transaction_manager: TransactionManager
    ) -> None:
        _, transaction = await make_payment(stage="confirmed")

        failed = await transaction_manager.fail_transaction(
            test_db, transaction.transaction_id, "Settlement declined"
        )
        assert failed.status == TransactionStatus.FAILED
        assert failed.failure_reason == "Settlement declined"

        with pytest.raises(TransactionAlreadyProcessedError):
            await transaction_manager.fail_transaction(test_db, transaction.transaction_id, "again")


class TestRefunds:
    """Test suite for refunds."""

    @pytest.mark.asyncio
    async def test_partial_then_full_refund(
        self, test_db: AsyncSession, make_payment: Any, transaction_manager: TransactionManager
    ) -> None:
        _, parent = await make_payment(amount="100.00", calculate_fees=False, stage="completed")

        refund = await transaction_manager.refund_transaction(
            test_db, parent.transaction_id, "40.00", "Damaged item"
        )

        assert refund.type == TransactionType.REFUND
        assert refund.status == TransactionStatus.COMPLETED
        assert refund.parent_transaction_id == parent.transaction_id
        assert refund.amount == Decimal("40.00")
        assert refund.failure_reason == "Damaged item"
        current = await transaction_manager.require_transaction(test_db, parent.transaction_id)
        assert current.refunded_amount == Decimal("40.00")
        assert current.status == TransactionStatus.COMPLETED

        await transaction_manager.refund_transaction(test_db, parent.transaction_id, "60.00")

        current = await transaction_manager.require_transaction(test_db, parent.transaction_id)
        assert current.refunded_amount == Decimal("100.00")
        assert current.status == TransactionStatus.REFUNDED

        with pytest.raises(TransactionAlreadyProcessedError):
            await transaction_manager.refund_transaction(test_db, parent.transaction_id, "1.00")

    @pytest.mark.asyncio
    async def test_refund_capped_at_net_amount(
        self, test_db: AsyncSession, make_payment: Any, transaction_manager: TransactionManager
    ) -> None:
        _, parent = await make_payment(amount="100.00", stage="completed")

        with pytest.raises(RefundLimitExceededError):
            await transaction_manager.refund_transaction(test_db, parent.transaction_id, "97.00")

        current = await transaction_manager.require_transaction(test_db, parent.transaction_id)
        assert current.refunded_amount == Decimal("0.00")
        refunds = await transaction_manager.get_merchant_transactions(
            test_db, "merch-1", type=TransactionType.REFUND
        )
        assert refunds == []

    @pytest.mark.asyncio
    async def test_refund_of_pending_payment(
        self, test_db: AsyncSession, make_payment: Any, transaction_manager: TransactionManager
    ) -> None:
        _, transaction = await make_payment()

        with pytest.raises(TransactionAlreadyProcessedError):
            await transaction_manager.refund_transaction(test_db, transaction.transaction_id, "1.00")

    @pytest.mark.asyncio
    async def test_refund_of_missing_transaction(
        self, test_db: AsyncSession, transaction_manager: TransactionManager
    ) -> None:
        with pytest.raises(TransactionNotFoundError):
            await transaction_manager.refund_transaction(test_db, "txn_missing", "1.00")

    @pytest.mark.asyncio
    async def test_refund_of_refund_is_rejected(
        self, test_db: AsyncSession, make_payment: Any, transaction_manager: TransactionManager
    ) -> None:
        _, parent = await make_payment(amount="50.00", calculate_fees=False, stage="completed")
        refund = await transaction_manager.refund_transaction(test_db, parent.transaction_id, "25.00")

        with pytest.raises(PaymentValidationError):
            await transaction_manager.refund_transaction(test_db, refund.transaction_id, "25.00")

        stored_refund = await transaction_manager.require_transaction(test_db, refund.transaction_id)
        assert stored_refund.refunded_amount == Decimal("0.00")
        refunds = await transaction_manager.get_merchant_transactions(
            test_db, "merch-1", type=TransactionType.REFUND
        )
        assert len(refunds) == 1
        assert refunds[0].parent_transaction_id == parent.transaction_id


class TestHistoryAndReceipts:
    """Test suite for listings and receipts."""

    @pytest.mark.asyncio
    async def test_customer_history_filters(
        self,
        test_db: AsyncSession,
        make_payment: Any,
        transaction_manager: TransactionManager,
    ) -> None:
        _, first = await make_payment(amount="10.00")
        _, second = await make_payment(amount="20.00", stage="confirmed")
        await make_payment(amount="30.00", customer_id="cust-2")

        history = await transaction_manager.get_customer_transactions(test_db, "cust-1")
        assert [t.transaction_id for t in history] == [second.transaction_id, first.transaction_id]

        confirmed = await transaction_manager.get_customer_transactions(
            test_db, "cust-1", status=TransactionStatus.CONFIRMED
        )
        assert [t.transaction_id for t in confirmed] == [second.transaction_id]

        limited = await transaction_manager.get_customer_transactions(test_db, "cust-1", limit=1)
        assert len(limited) == 1

        future = await transaction_manager.get_customer_transactions(
            test_db, "cust-1", from_date=utcnow() + timedelta(days=1)
        )
        assert future == []

    @pytest.mark.asyncio
    async def test_merchant_history(
        self, test_db: AsyncSession, make_payment: Any, transaction_manager: TransactionManager
    ) -> None:
        await make_payment(merchant_id="merch-1")
        await make_payment(merchant_id="merch-2")

        history = await transaction_manager.get_merchant_transactions(test_db, "merch-1")
        assert {t.merchant_id for t in history} == {"merch-1"}

    @pytest.mark.asyncio
    async def test_get_session_payment(
        self,
        test_db: AsyncSession,
        make_payment: Any,
        session_manager: SessionManager,
        transaction_manager: TransactionManager,
    ) -> None:
        session, transaction = await make_payment()
        other = await session_manager.create_session(test_db, "cust-1")

        found = await transaction_manager.get_session_payment(test_db, session.session_id)
        assert found.transaction_id == transaction.transaction_id
        assert await transaction_manager.get_session_payment(test_db, other.session_id) is None

    @pytest.mark.asyncio
    async def test_build_receipt(self, make_payment: Any) -> None:
        _, transaction = await make_payment(stage="completed")

        receipt = TransactionManager.build_receipt(transaction)

        assert receipt["receipt_number"] == f"RCP-{transaction.transaction_id}"
        assert receipt["amount"] == "100.00"
        assert receipt["fees"] == "3.20"
        assert receipt["net_amount"] == "96.80"
        assert receipt["auth_method"] == "pin"
        assert "auth_data" not in transaction.to_dict()
