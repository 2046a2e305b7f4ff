"""
Expired session cleanup worker.

Periodically deletes pending and scanned sessions whose expiry has passed.
Confirmed, cancelled and already-expired sessions are left for history.
"""
import asyncio
import signal
import time
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qr_payments.config import get_settings
from qr_payments.core.sessions import SessionManager
from qr_payments.database.connection import close_db, get_session_factory
from qr_payments.monitoring.logging import setup_logging
from qr_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


async def run_session_cleanup(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    manager: Optional[SessionManager] = None,
) -> int:
    """
    Run one cleanup sweep.

    Returns:
        int: Number of sessions removed
    """
    session_factory = session_factory or get_session_factory()
    manager = manager or SessionManager()
    start_time = time.time()

    logger.info("session_cleanup_started")
    try:
        async with session_factory() as db:
            removed = await manager.cleanup_expired_sessions(db)
    except Exception as e:
        logger.error("session_cleanup_failed", error=str(e))
        raise

    duration = time.time() - start_time
    metrics.record_cleanup(removed, duration)
    logger.info("session_cleanup_completed", removed=removed, duration_seconds=duration)
    return removed


async def start_session_cleanup_worker(interval_minutes: Optional[int] = None) -> None:
    """
    Start the cleanup worker.

    Sweeps every ``interval_minutes`` (default from settings) until a
    shutdown signal arrives.
    """
    setup_logging()
    interval_minutes = interval_minutes or get_settings().cleanup_interval_minutes

    logger.info("session_cleanup_worker_starting", interval_minutes=interval_minutes)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("session_cleanup_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_session_cleanup()
            except Exception as e:
                # Keep sweeping; the next run retries
                logger.error("session_cleanup_execution_error", error=str(e))

            # Wait for the next sweep, checking for shutdown every second
            seconds_until = interval_minutes * 60
            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 1)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time
    finally:
        await close_db()
        logger.info("session_cleanup_worker_stopped")


async def _run_once() -> int:
    setup_logging()
    try:
        return await run_session_cleanup()
    finally:
        await close_db()


def main() -> None:
    """Console entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Expired QR payment session cleanup worker")
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Minutes between sweeps (defaults to CLEANUP_INTERVAL_MINUTES)",
    )
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    if args.once:
        asyncio.run(_run_once())
    else:
        asyncio.run(start_session_cleanup_worker(interval_minutes=args.interval))


if __name__ == "__main__":
    main()
