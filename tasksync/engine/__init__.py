"""
Sync Engine

Canonical state updates, delivery scheduling and retry bookkeeping.
"""

from tasksync.engine.engine import SyncEngine, plain_value
from tasksync.engine.scheduler import DeadlineQueue
from tasksync.engine.state import (
    ALLOWED_TRANSITIONS,
    DeliveryState,
    compute_backoff,
    transition,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "DeadlineQueue",
    "DeliveryState",
    "SyncEngine",
    "compute_backoff",
    "plain_value",
    "transition",
]
