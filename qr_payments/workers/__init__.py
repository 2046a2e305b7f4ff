"""Background workers."""
from .session_cleanup_worker import run_session_cleanup, start_session_cleanup_worker

__all__ = ["run_session_cleanup", "start_session_cleanup_worker"]
