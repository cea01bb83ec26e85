"""
Mapping tables shared by the platform adapters.

Translates native field names, status labels and user handles to the
canonical model and back. Tables come from configuration; each adapter
supplies defaults.
"""

import re
import threading
from dataclasses import dataclass, field
from typing import Any

from tasksync.model import ItemStatus, SYNCED_FIELDS

CORRELATION_MARKER = re.compile(r"tasksync:([A-Za-z0-9][A-Za-z0-9_.\-]*)")


def find_correlation_key(text: str | None) -> str | None:
    """Extract a `tasksync:<key>` marker from free text."""
    if not text:
        return None
    match = CORRELATION_MARKER.search(text)
    return match.group(1) if match else None


def normalize_label(label: str) -> str:
    """Strip numeric prefixes and case so column renumbering does not break mapping."""
    cleaned = re.sub(r"^\s*\d+\.\s*", "", label or "")
    return re.sub(r"\s+", " ", cleaned).strip().lower()


@dataclass(frozen=True)
class StateMapping:
    """Mapping between a provider-native status label and a canonical status."""

    native_state: str
    status: ItemStatus


class StatusMapping:
    """
    Bidirectional native label <-> ItemStatus table.

    Lookup from native is tolerant of numbering prefixes and case. The
    first native label listed for a status is the one written back.
    """

    def __init__(self, defaults: dict[str, str], overrides: dict[str, str] | None = None):
        self._entries: list[StateMapping] = []
        # Overrides first so they win the reverse lookup
        for native, canonical in {**(overrides or {})}.items():
            self._entries.append(StateMapping(native, ItemStatus.parse(canonical)))
        for native, canonical in defaults.items():
            self._entries.append(StateMapping(native, ItemStatus.parse(canonical)))

        self._by_native: dict[str, ItemStatus] = {}
        for entry in self._entries:
            self._by_native.setdefault(normalize_label(entry.native_state), entry.status)

    def to_canonical(self, native_label: str) -> ItemStatus | None:
        """Canonical status for a native label, None if unmapped."""
        return self._by_native.get(normalize_label(native_label))

    def to_native(self, status: ItemStatus | str) -> str | None:
        """Preferred native label for a canonical status, None if unmapped."""
        status = ItemStatus.parse(status)
        for entry in self._entries:
            if entry.status == status:
                return entry.native_state
        return None

    def entries(self) -> list[StateMapping]:
        """Explicit mapping table for introspection and docs."""
        return list(self._entries)


class FieldMapping:
    """Native field name <-> canonical field table."""

    def __init__(self, defaults: dict[str, str], overrides: dict[str, str] | None = None):
        merged = {**defaults}
        if overrides:
            # An override replaces the default native name for that canonical field
            overridden = set(overrides.values())
            merged = {k: v for k, v in merged.items() if v not in overridden}
            merged.update(overrides)

        for canonical in merged.values():
            if canonical not in SYNCED_FIELDS:
                raise ValueError(f"Unknown canonical field in mapping: {canonical!r}")
        self._to_canonical = merged
        self._to_native = {v: k for k, v in merged.items()}

    def canonical(self, native_name: str) -> str | None:
        return self._to_canonical.get(native_name)

    def native(self, canonical_name: str) -> str:
        return self._to_native.get(canonical_name, canonical_name)


class IdentityMapping:
    """Canonical assignee identity <-> native user handle. Unmapped values pass through."""

    def __init__(self, identities: dict[str, str] | None = None):
        self._to_native = dict(identities or {})
        self._to_canonical = {v: k for k, v in self._to_native.items()}

    def to_native(self, identity: str | None) -> str | None:
        if identity is None:
            return None
        return self._to_native.get(identity, identity)

    def to_canonical(self, handle: str | None) -> str | None:
        if not handle:
            return None
        return self._to_canonical.get(handle, handle)


@dataclass
class NativeSnapshot:
    """Last known state of one native item as seen by an adapter."""

    fields: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    last_key: str | None = None


class SnapshotCache:
    """
    Per-native-id cache backing adapter-side idempotency.

    Filled from parsed webhooks and successful writes. A change whose
    idempotency key was already applied, or whose fields already match
    the cached state, needs no network call.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshots: dict[str, NativeSnapshot] = {}

    def get(self, native_id: str) -> NativeSnapshot:
        with self._lock:
            return self._snapshots.setdefault(native_id, NativeSnapshot())

    def observe(self, native_id: str, fields: dict[str, Any], **extra: Any) -> None:
        """Record native state reported by the platform."""
        with self._lock:
            snapshot = self._snapshots.setdefault(native_id, NativeSnapshot())
            snapshot.fields.update(fields)
            snapshot.extra.update({k: v for k, v in extra.items() if v is not None})

    def record_applied(self, native_id: str, fields: dict[str, Any], idempotency_key: str) -> None:
        """Record a successful write."""
        with self._lock:
            snapshot = self._snapshots.setdefault(native_id, NativeSnapshot())
            snapshot.fields.update(fields)
            snapshot.last_key = idempotency_key

    def pending_changes(
        self,
        native_id: str,
        field_changes: dict[str, Any],
        idempotency_key: str,
    ) -> dict[str, Any] | None:
        """
        Fields that still need writing.

        Returns:
            None if the key was already applied, otherwise the subset of
            field_changes that differs from the cached state (may be empty)
        """
        with self._lock:
            snapshot = self._snapshots.get(native_id)
            if snapshot is None:
                return dict(field_changes)
            if snapshot.last_key == idempotency_key:
                return None
            return {
                name: value for name, value in field_changes.items()
                if name not in snapshot.fields or snapshot.fields[name] != value
            }
