"""
Prometheus metrics for QR payment monitoring.

Tracks:
- QR codes issued and sessions created/scanned/cleaned
- Transactions by type and status
- Lost compare-and-swap transitions
- Idempotency cache hits
- Notification outcomes
- HTTP request durations
"""
from prometheus_client import Counter, Histogram

# QR & session metrics
qr_codes_issued_total = Counter(
    "qr_codes_issued_total",
    "Total number of QR codes rendered",
    ["format", "reason"],  # reason: issue, reissue
)

sessions_created_total = Counter(
    "qr_sessions_created_total",
    "Total number of payment sessions created",
)

session_scans_total = Counter(
    "qr_session_scans_total",
    "Total merchant scan attempts",
    ["outcome"],  # scanned, not_found, not_active, already_scanned
)

sessions_cleaned_total = Counter(
    "qr_sessions_cleaned_total",
    "Total expired sessions removed by the cleanup sweep",
)

session_cleanup_duration_seconds = Histogram(
    "qr_session_cleanup_duration_seconds",
    "Cleanup sweep duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0),
)

# Transaction metrics
transactions_total = Counter(
    "qr_transactions_total",
    "Transactions entering a status",
    ["type", "status"],
)

transaction_amount = Histogram(
    "qr_transaction_amount",
    "Transaction amounts in major currency units",
    ["type"],
    buckets=(1, 5, 10, 25, 50, 100, 500, 1000, 5000, 10000),
)

transition_conflicts_total = Counter(
    "qr_transition_conflicts_total",
    "Compare-and-swap transitions lost to a concurrent writer or stale status",
    ["entity", "target"],
)

# Idempotency metrics
idempotency_cache_hits_total = Counter(
    "idempotency_cache_hits_total",
    "Total idempotency cache hits",
    ["source"],  # cache, wait, miss
)

# Notification metrics
notifications_total = Counter(
    "qr_notifications_total",
    "Lifecycle notifications by event and outcome",
    ["event", "outcome"],  # outcome: delivered, skipped, failed, invalid
)

# HTTP metrics
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "status_code"],
    buckets=(0.01, 0.05, 0.1, 0.2, 0.5, 1.0, 2.5, 5.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_qr_issued(image_format: str, reason: str = "issue") -> None:
        """Record a rendered QR code."""
        qr_codes_issued_total.labels(format=image_format, reason=reason).inc()

    @staticmethod
    def record_session_created() -> None:
        """Record a new payment session."""
        sessions_created_total.inc()

    @staticmethod
    def record_scan(outcome: str) -> None:
        """Record a merchant scan attempt."""
        session_scans_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_cleanup(removed: int, duration_seconds: float) -> None:
        """Record one cleanup sweep."""
        sessions_cleaned_total.inc(removed)
        session_cleanup_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_transaction(transaction_type: str, status: str, amount: float | None = None) -> None:
        """Record a transaction entering ``status``."""
        transactions_total.labels(type=transaction_type, status=status).inc()
        if amount is not None:
            transaction_amount.labels(type=transaction_type).observe(amount)

    @staticmethod
    def record_transition_conflict(entity: str, target: str) -> None:
        """Record a compare-and-swap that did not apply."""
        transition_conflicts_total.labels(entity=entity, target=target).inc()

    @staticmethod
    def record_idempotency_cache_hit(source: str) -> None:
        """Record idempotency cache hit."""
        idempotency_cache_hits_total.labels(source=source).inc()

    @staticmethod
    def record_notification(event: str, outcome: str) -> None:
        """Record a notification dispatch."""
        notifications_total.labels(event=event, outcome=outcome).inc()

    @staticmethod
    def record_http_request(method: str, status_code: int, duration_seconds: float) -> None:
        """Record an HTTP request."""
        http_request_duration_seconds.labels(
            method=method, status_code=str(status_code)
        ).observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
