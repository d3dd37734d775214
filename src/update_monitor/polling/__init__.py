"""
Polling system for the update ingestion monitor.

This package contains the long-polling session, the restart backoff and the
conflict classification used when another consumer holds the update stream.
"""

from .backoff import compute_backoff, format_duration_ms, sleep_with_abort
from .conflict import is_recoverable_conflict, is_transient_network_error
from .runner import PollRunner, PollState, RunnerStatus, SessionResult

__all__ = [
    "PollRunner",
    "PollState",
    "RunnerStatus",
    "SessionResult",
    "compute_backoff",
    "format_duration_ms",
    "is_recoverable_conflict",
    "is_transient_network_error",
    "sleep_with_abort",
]
