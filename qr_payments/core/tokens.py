"""Identifier and security-token generation."""
import hmac
import secrets
import uuid

SESSION_ID_PREFIX = "qr_"
TRANSACTION_ID_PREFIX = "txn_"
SECURITY_TOKEN_BYTES = 32


def new_session_id() -> str:
    """Return a fresh, never-reused payment session id."""
    return f"{SESSION_ID_PREFIX}{uuid.uuid4()}"


def new_transaction_id() -> str:
    """Return a fresh transaction id."""
    return f"{TRANSACTION_ID_PREFIX}{uuid.uuid4()}"


def new_security_token() -> str:
    """Return a hex-encoded secret of SECURITY_TOKEN_BYTES random bytes."""
    return secrets.token_hex(SECURITY_TOKEN_BYTES)


def tokens_match(expected: str | None, presented: str | None) -> bool:
    """
    Compare two security tokens in constant time.

    Missing values never match, including two missing values.
    """
    if not expected or not presented:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))
