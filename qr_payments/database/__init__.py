"""Database package for QR payments."""
from .connection import close_db, get_db, get_session_factory, init_db
from .models import Base, PaymentSession, Transaction, utcnow

__all__ = [
    "Base",
    "PaymentSession",
    "Transaction",
    "utcnow",
    "get_db",
    "get_session_factory",
    "init_db",
    "close_db",
]
