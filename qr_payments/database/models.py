"""SQLAlchemy database models for QR payment sessions and transactions."""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from qr_payments.core.states import (
    SESSION_TRANSITIONS,
    TERMINAL_TRANSACTION_STATUSES,
    TRANSACTION_TRANSITIONS,
    AuthMethod,
    SessionStatus,
    TransactionStatus,
    TransactionType,
)

# BIGSERIAL on PostgreSQL, INTEGER PRIMARY KEY (rowid alias) on SQLite.
PrimaryKey = BigInteger().with_variant(Integer, "sqlite")
JsonDocument = JSON().with_variant(JSONB, "postgresql")
MONEY_SCALE = 2
Money = Numeric(12, MONEY_SCALE, asdecimal=True)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the representation stored in every column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_column(enum_cls: type) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _money(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentSession(Base):
    """
    Customer-initiated QR payment session.

    A session is exclusive to its customer until a merchant scans it. The
    merchant scan binds ``merchant_id``/``amount`` and stamps ``scanned_at``
    exactly once. Rows are garbage once past expiry and are swept by the
    cleanup worker.
    """

    __tablename__ = "qr_payment_sessions"

    natural_key = "session_id"
    TRANSITIONS = SESSION_TRANSITIONS

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    merchant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[SessionStatus] = mapped_column(
        _enum_column(SessionStatus), nullable=False, default=SessionStatus.PENDING
    )
    security_token: Mapped[str] = mapped_column(String(128), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    metadata_: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JsonDocument, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("length(currency) = 3", name="valid_session_currency"),
        CheckConstraint(
            "(status = 'scanned' AND merchant_id IS NOT NULL AND scanned_at IS NOT NULL) "
            "OR (status = 'pending' AND merchant_id IS NULL AND scanned_at IS NULL) "
            "OR status NOT IN ('pending', 'scanned')",
            name="scan_binding",
        ),
        Index("idx_sessions_customer_status", "customer_id", "status"),
        Index("idx_sessions_merchant_status", "merchant_id", "status"),
        Index("idx_sessions_status_expires", "status", "expires_at"),
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        """True once ``expires_at`` has been reached."""
        return (now or utcnow()) >= self.expires_at

    def is_active(self, now: datetime | None = None) -> bool:
        """True iff the session is pending and still inside its window."""
        return self.status == SessionStatus.PENDING and not self.is_expired(now)

    def to_dict(self) -> Dict[str, Any]:
        """Public representation. The security token is never included."""
        return {
            "session_id": self.session_id,
            "customer_id": self.customer_id,
            "merchant_id": self.merchant_id,
            "amount": _money(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "expires_at": _iso(self.expires_at),
            "scanned_at": _iso(self.scanned_at),
            "metadata": self.metadata_ or {},
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        """String representation of PaymentSession."""
        return (
            f"<PaymentSession(session_id={self.session_id}, customer_id={self.customer_id}, "
            f"status={self.status})>"
        )


class Transaction(Base):
    """
    Payment, refund or settlement attempt.

    Payments reference their originating ``session_id``, at most one payment
    per session; refunds reference ``parent_transaction_id``. ``refunded_amount``
    is the running total of refunds issued against a completed payment and never
    exceeds ``net_amount``.
    """

    __tablename__ = "qr_payment_transactions"

    natural_key = "transaction_id"
    TRANSITIONS = TRANSACTION_TRANSITIONS

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    parent_transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    fees: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    net_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    refunded_amount: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0.00")
    )
    type: Mapped[TransactionType] = mapped_column(
        _enum_column(TransactionType), nullable=False, default=TransactionType.PAYMENT
    )
    status: Mapped[TransactionStatus] = mapped_column(
        _enum_column(TransactionStatus), nullable=False, default=TransactionStatus.PENDING
    )
    auth_method: Mapped[AuthMethod | None] = mapped_column(
        _enum_column(AuthMethod), nullable=True
    )
    auth_data: Mapped[Dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    metadata_: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JsonDocument, nullable=True
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timeout_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint("refunded_amount >= 0", name="non_negative_refunded"),
        CheckConstraint("length(currency) = 3", name="valid_transaction_currency"),
        Index("idx_transactions_customer_status", "customer_id", "status"),
        Index("idx_transactions_merchant_status", "merchant_id", "status"),
        Index("idx_transactions_session", "session_id"),
        Index(
            "uq_transactions_session_payment",
            "session_id",
            unique=True,
            postgresql_where=text("type = 'payment'"),
            sqlite_where=text("type = 'payment'"),
        ),
        Index("idx_transactions_status_created", "status", "created_at"),
        Index("idx_transactions_parent", "parent_transaction_id"),
    )

    @property
    def is_final(self) -> bool:
        """True once the transaction has reached a terminal status."""
        return self.status in TERMINAL_TRANSACTION_STATUSES

    def is_timed_out(self, now: datetime | None = None) -> bool:
        """True once confirmation is no longer accepted."""
        return self.timeout_at is not None and (now or utcnow()) > self.timeout_at

    def time_remaining_seconds(self, now: datetime | None = None) -> int:
        """Whole seconds left before ``timeout_at``, floored at zero."""
        if self.timeout_at is None:
            return 0
        remaining = (self.timeout_at - (now or utcnow())).total_seconds()
        return max(0, int(remaining))

    def to_dict(self) -> Dict[str, Any]:
        """Public representation. Raw ``auth_data`` is never included."""
        return {
            "transaction_id": self.transaction_id,
            "session_id": self.session_id,
            "parent_transaction_id": self.parent_transaction_id,
            "customer_id": self.customer_id,
            "merchant_id": self.merchant_id,
            "amount": _money(self.amount),
            "currency": self.currency,
            "fees": _money(self.fees),
            "net_amount": _money(self.net_amount),
            "refunded_amount": _money(self.refunded_amount),
            "type": self.type.value,
            "status": self.status.value,
            "auth_method": self.auth_method.value if self.auth_method else None,
            "reference_id": self.reference_id,
            "metadata": self.metadata_ or {},
            "failure_reason": self.failure_reason,
            "timeout_at": _iso(self.timeout_at),
            "processed_at": _iso(self.processed_at),
            "confirmed_at": _iso(self.confirmed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(transaction_id={self.transaction_id}, type={self.type}, "
            f"amount={self.amount}, status={self.status})>"
        )
