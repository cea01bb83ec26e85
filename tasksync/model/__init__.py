"""
Canonical State Model

Platform-neutral representation of tracked work items and the events
and deliveries that keep them in sync.
"""

from tasksync.model.types import (
    SYNCED_FIELDS,
    ChangeEvent,
    DeadLetter,
    DeliveryAttempt,
    DeliveryResult,
    HealthStatus,
    ItemStatus,
    PlatformHealth,
    TrackedItem,
    apply_field_change,
    apply_field_changes,
    validate_field_value,
)

__all__ = [
    "SYNCED_FIELDS",
    "ChangeEvent",
    "DeadLetter",
    "DeliveryAttempt",
    "DeliveryResult",
    "HealthStatus",
    "ItemStatus",
    "PlatformHealth",
    "TrackedItem",
    "apply_field_change",
    "apply_field_changes",
    "validate_field_value",
]
