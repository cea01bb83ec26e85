"""
Canonical state model.

This module defines the platform-neutral data classes used by every
other part of TaskSync. Adapters translate native payloads into these
types; only the sync engine creates new TrackedItem versions.
"""

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from tasksync.errors import ValidationError

_STATUS_ALIASES = {"cancelled": "canceled", "wip": "inprogress", "closed": "done"}


class ItemStatus(Enum):
    """
    Canonical workflow status of a tracked item.

    Platforms map their native columns, labels and select values to
    these six states via StatusMapping.
    """
    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"
    CANCELED = "canceled"

    @classmethod
    def parse(cls, value: Any) -> "ItemStatus":
        """
        Parse a status from an enum, value or display name.

        Accepts "in_review", "InReview", "In Review" and "in-review" alike.

        Raises:
            ValidationError: If value is not a known status
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValidationError(f"Illegal status: {value!r}", field="status", value=value)

        key = re.sub(r"[\s\-_]+", "", value).lower()
        key = _STATUS_ALIASES.get(key, key)
        for member in cls:
            if member.value.replace("_", "") == key:
                return member
        raise ValidationError(f"Illegal status: {value!r}", field="status", value=value)


class HealthStatus(Enum):
    """Connectivity state of an external platform."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


# Fields kept consistent across platforms
SYNCED_FIELDS = ("title", "status", "assignee")


@dataclass(frozen=True)
class TrackedItem:
    """
    Canonical representation of one work item.

    Frozen: every mutation produces a new instance with version + 1.

    Attributes:
        id: Correlation key shared by all platforms
        title: Item title
        status: Canonical workflow status
        assignee: Canonical assignee identity, None when unassigned
        links: Platform name -> native identifier
        updated_at: Greatest source timestamp applied so far
        version: Monotonic per-item counter
        field_timestamps: Field -> source timestamp of the last accepted write
    """
    id: str
    title: str = ""
    status: ItemStatus = ItemStatus.BACKLOG
    assignee: str | None = None
    links: dict[str, str] = field(default_factory=dict)
    updated_at: float = 0.0
    version: int = 0
    field_timestamps: dict[str, float] = field(default_factory=dict)

    def field_value(self, name: str) -> Any:
        """Value of a synced field (status as its canonical string)."""
        if name == "status":
            return self.status.value
        return getattr(self, name)

    def snapshot(self) -> dict[str, Any]:
        """Synced fields as plain values."""
        return {name: self.field_value(name) for name in SYNCED_FIELDS}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "assignee": self.assignee,
            "links": dict(self.links),
            "updated_at": self.updated_at,
            "version": self.version,
            "field_timestamps": dict(self.field_timestamps),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrackedItem":
        """Create TrackedItem from dictionary."""
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            status=ItemStatus.parse(data.get("status", "backlog")),
            assignee=data.get("assignee"),
            links=dict(data.get("links", {})),
            updated_at=float(data.get("updated_at", 0.0)),
            version=int(data.get("version", 0)),
            field_timestamps={k: float(v) for k, v in data.get("field_timestamps", {}).items()},
        )


def validate_field_value(name: str, value: Any) -> Any:
    """
    Check a value against a synced field's type and normalize it.

    Returns:
        Normalized value (ItemStatus for status, stripped str or None otherwise)

    Raises:
        ValidationError: For unknown fields or illegal values
    """
    if name == "status":
        return ItemStatus.parse(value)

    if name == "title":
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("Title must be a non-empty string", field=name, value=value)
        return value.strip()

    if name == "assignee":
        if value is None or value == "":
            return None
        if not isinstance(value, str):
            raise ValidationError("Assignee must be a string or None", field=name, value=value)
        return value.strip()

    raise ValidationError(f"Unknown field: {name!r}", field=name, value=value)


def apply_field_change(
    item: TrackedItem,
    field_name: str,
    value: Any,
    timestamp: float | None = None,
) -> TrackedItem:
    """
    Return a new TrackedItem with one field changed and version + 1.

    Args:
        item: Current canonical item
        field_name: One of SYNCED_FIELDS
        value: New value (validated)
        timestamp: Source timestamp recorded for last-write-wins

    Raises:
        ValidationError: If value is not legal for the field
    """
    return apply_field_changes(item, {field_name: value}, timestamp)


def apply_field_changes(
    item: TrackedItem,
    changes: dict[str, Any],
    timestamp: float | None = None,
) -> TrackedItem:
    """
    Apply several field changes atomically, bumping version once.

    All values are validated before anything is applied.
    """
    validated = {name: validate_field_value(name, value) for name, value in changes.items()}

    field_timestamps = dict(item.field_timestamps)
    updated_at = item.updated_at
    if timestamp is not None:
        for name in validated:
            field_timestamps[name] = timestamp
        updated_at = max(updated_at, timestamp)

    return replace(
        item,
        version=item.version + 1,
        updated_at=updated_at,
        field_timestamps=field_timestamps,
        **validated,
    )


@dataclass(frozen=True)
class ChangeEvent:
    """
    Normalized change reported by one platform. Immutable.

    Attributes:
        item_id: Correlation key ("" until resolved by the normalizer)
        source_platform: Platform that emitted the webhook
        field_changes: Canonical field -> new value
        source_timestamp: Platform modification time (epoch seconds)
        source_event_id: Platform-native event id, used for deduplication
        native_id: Native identifier of the item on the source platform
        received_at: Local receive time (epoch seconds)
    """
    item_id: str
    source_platform: str
    field_changes: dict[str, Any]
    source_timestamp: float
    source_event_id: str
    native_id: str = ""
    received_at: float = 0.0

    def with_item_id(self, item_id: str) -> "ChangeEvent":
        """Copy of this event bound to a correlation key."""
        return replace(self, item_id=item_id)


@dataclass
class DeliveryAttempt:
    """
    One pending update of one platform for one item.

    Mutated in place on each retry; removed from the active set on
    commit, cancel or dead-letter.
    """
    target_platform: str
    item_id: str
    payload: dict[str, Any]
    version: int
    idempotency_key: str
    source_event_id: str = ""
    attempt_count: int = 0
    next_retry_at: float = 0.0
    last_error: str | None = None
    state: str = "idle"
    created_at: float = 0.0

    @property
    def pair(self) -> tuple[str, str]:
        return (self.item_id, self.target_platform)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "target_platform": self.target_platform,
            "item_id": self.item_id,
            "payload": dict(self.payload),
            "version": self.version,
            "idempotency_key": self.idempotency_key,
            "source_event_id": self.source_event_id,
            "attempt_count": self.attempt_count,
            "next_retry_at": self.next_retry_at,
            "last_error": self.last_error,
            "state": self.state,
            "created_at": self.created_at,
        }


@dataclass
class DeliveryResult:
    """
    Outcome of one adapter apply_change call.

    Attributes:
        success: True if the platform accepted (or already had) the change
        applied_fields: Canonical fields the platform now holds
        error: Classified error on failure
        skipped: True when no network call was needed
    """
    success: bool
    applied_fields: dict[str, Any] = field(default_factory=dict)
    error: Any = None
    skipped: bool = False

    @classmethod
    def ok(cls, applied_fields: dict[str, Any], skipped: bool = False) -> "DeliveryResult":
        return cls(success=True, applied_fields=dict(applied_fields), skipped=skipped)

    @classmethod
    def failed(cls, error) -> "DeliveryResult":
        return cls(success=False, error=error)


@dataclass
class PlatformHealth:
    """Health record of one platform. Mutated only by the health monitor."""
    platform: str
    status: HealthStatus = HealthStatus.HEALTHY
    last_checked_at: float | None = None
    consecutive_failures: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "status": self.status.value,
            "last_checked_at": self.last_checked_at,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class DeadLetter:
    """A delivery abandoned for operator inspection."""
    attempt: dict[str, Any]
    reason: str
    error: str
    recorded_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": dict(self.attempt),
            "reason": self.reason,
            "error": self.error,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeadLetter":
        return cls(
            attempt=dict(data.get("attempt", {})),
            reason=data.get("reason", ""),
            error=data.get("error", ""),
            recorded_at=float(data.get("recorded_at", 0.0)),
        )
