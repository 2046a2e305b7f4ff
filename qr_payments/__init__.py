"""QR code payment backend: sessions, transactions, idempotency and notifications."""

__version__ = "1.0.0"
