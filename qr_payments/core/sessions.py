"""
Payment session lifecycle.

State machine (initial ``pending``; ``expired``/``cancelled`` are final):

    pending  --merchant scan-->  scanned
    pending  --expiry-->         expired
    scanned  --confirm-->        confirmed
    *        --cancel-->         cancelled

Every move is a compare-and-swap against the stored status, so of two
merchants scanning the same code at once exactly one binds the session.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from qr_payments.config import Settings, get_settings
from qr_payments.core.exceptions import (
    SessionAlreadyScannedError,
    SessionNotActiveError,
    SessionNotFoundError,
)
from qr_payments.core.states import SessionStatus
from qr_payments.core.tokens import new_security_token, new_session_id, tokens_match
from qr_payments.database import store
from qr_payments.database.models import PaymentSession, utcnow
from qr_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class SessionManager:
    """Owns PaymentSession rows and their transitions."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def create_session(
        self,
        db: AsyncSession,
        customer_id: str,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentSession:
        """
        Create a pending session for ``customer_id``.

        Args:
            db: Database session
            customer_id: Owning customer
            currency: ISO 4217 code (defaults to the configured currency)
            metadata: Initial free-form metadata

        Returns:
            PaymentSession: The committed session
        """
        now = utcnow()
        session = PaymentSession(
            session_id=new_session_id(),
            customer_id=customer_id,
            currency=(currency or self.settings.transaction_currency).upper(),
            status=SessionStatus.PENDING,
            security_token=new_security_token(),
            expires_at=now + timedelta(minutes=self.settings.qr_expiry_minutes),
            metadata_=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        db.add(session)
        await db.commit()

        metrics.record_session_created()
        logger.info(
            "payment_session_created",
            session_id=session.session_id,
            customer_id=customer_id,
            expires_at=session.expires_at.isoformat(),
        )
        return session

    async def get_session(self, db: AsyncSession, session_id: str) -> Optional[PaymentSession]:
        """Return the session, or None if absent."""
        return await store.find_by_key(db, PaymentSession, session_id, refresh=True)

    async def require_session(self, db: AsyncSession, session_id: str) -> PaymentSession:
        """Return the session or raise SessionNotFoundError."""
        session = await self.get_session(db, session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def is_session_active(self, db: AsyncSession, session_id: str) -> bool:
        """True iff the session is pending and ``now < expires_at``."""
        session = await self.get_session(db, session_id)
        return session is not None and session.is_active()

    async def update_with_merchant_scan(
        self,
        db: AsyncSession,
        session_id: str,
        merchant_id: str,
        amount: Optional[Decimal] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentSession:
        """
        Bind a merchant to a pending session.

        Only the first caller observing ``pending`` succeeds; the expiry
        check is part of the same conditional update.

        Raises:
            SessionNotFoundError: If the session does not exist
            SessionAlreadyScannedError: If another merchant already bound it
            SessionNotActiveError: If it is expired or in any other status
        """
        session = await self.require_session(db, session_id)
        now = utcnow()
        if not session.is_active(now):
            metrics.record_scan("not_active")
            self._raise_not_active(session)

        merged = {**(session.metadata_ or {}), **(metadata or {})}
        moved = await store.transition(
            db,
            PaymentSession,
            session_id,
            [SessionStatus.PENDING],
            SessionStatus.SCANNED,
            conditions=[PaymentSession.expires_at > now],
            merchant_id=merchant_id,
            amount=amount,
            scanned_at=now,
            metadata_=merged,
        )
        await db.commit()

        session = await self.require_session(db, session_id)
        if not moved:
            metrics.record_transition_conflict("session", SessionStatus.SCANNED.value)
            metrics.record_scan(
                "already_scanned" if session.status == SessionStatus.SCANNED else "not_active"
            )
            self._raise_not_active(session)

        metrics.record_scan("scanned")
        logger.info(
            "payment_session_scanned",
            session_id=session_id,
            merchant_id=merchant_id,
            amount=str(amount) if amount is not None else None,
        )
        return session

    @staticmethod
    def _raise_not_active(session: PaymentSession) -> None:
        if session.status == SessionStatus.SCANNED:
            raise SessionAlreadyScannedError(session.session_id)
        raise SessionNotActiveError(session.session_id, session.status)

    async def expire_session(self, db: AsyncSession, session_id: str) -> bool:
        """
        Move a pending or scanned session to ``expired``.

        Returns:
            True if the session is now expired (including when it already was),
            False if it is absent, cancelled or confirmed
        """
        moved = await store.transition(
            db,
            PaymentSession,
            session_id,
            [SessionStatus.PENDING, SessionStatus.SCANNED],
            SessionStatus.EXPIRED,
        )
        await db.commit()
        if moved:
            logger.info("payment_session_expired", session_id=session_id)
            return True

        session = await self.get_session(db, session_id)
        return session is not None and session.status == SessionStatus.EXPIRED

    async def confirm_session(self, db: AsyncSession, session_id: str) -> PaymentSession:
        """
        Move a scanned session to ``confirmed``.

        Raises:
            SessionNotFoundError: If the session does not exist
            SessionNotActiveError: If it is not scanned
        """
        moved = await store.transition(
            db, PaymentSession, session_id, [SessionStatus.SCANNED], SessionStatus.CONFIRMED
        )
        await db.commit()
        session = await self.require_session(db, session_id)
        if not moved:
            metrics.record_transition_conflict("session", SessionStatus.CONFIRMED.value)
            raise SessionNotActiveError(session_id, session.status)

        logger.info("payment_session_confirmed", session_id=session_id)
        return session

    async def cancel_session(self, db: AsyncSession, session_id: str) -> PaymentSession:
        """
        Cancel a session that has not yet reached a final status.

        Raises:
            SessionNotFoundError: If the session does not exist
            SessionNotActiveError: If it is already expired or cancelled
        """
        moved = await store.transition(
            db,
            PaymentSession,
            session_id,
            [SessionStatus.PENDING, SessionStatus.SCANNED, SessionStatus.CONFIRMED],
            SessionStatus.CANCELLED,
        )
        await db.commit()
        session = await self.require_session(db, session_id)
        if not moved:
            metrics.record_transition_conflict("session", SessionStatus.CANCELLED.value)
            raise SessionNotActiveError(session_id, session.status)

        logger.info("payment_session_cancelled", session_id=session_id)
        return session

    async def cleanup_expired_sessions(self, db: AsyncSession) -> int:
        """
        Delete pending/scanned sessions whose ``expires_at`` has passed.

        Returns:
            int: Number of sessions removed
        """
        removed = await store.delete_matching(
            db,
            PaymentSession,
            PaymentSession.expires_at <= utcnow(),
            PaymentSession.status.in_([SessionStatus.PENDING, SessionStatus.SCANNED]),
        )
        await db.commit()
        logger.info("expired_sessions_cleaned", removed=removed)
        return removed

    async def get_customer_active_sessions(
        self, db: AsyncSession, customer_id: str
    ) -> List[PaymentSession]:
        """Pending, unexpired sessions owned by ``customer_id``."""
        return await store.list_filtered(
            db,
            PaymentSession,
            PaymentSession.customer_id == customer_id,
            PaymentSession.expires_at > utcnow(),
            status=SessionStatus.PENDING,
        )

    async def validate_session_token(
        self, db: AsyncSession, session_id: str, token: Optional[str]
    ) -> bool:
        """Constant-time check of ``token`` against the session's security token."""
        session = await self.get_session(db, session_id)
        if session is None:
            return False
        return tokens_match(session.security_token, token)
