"""
Event Normalizer.

Validates, deduplicates and converts inbound webhook payloads into
canonical ChangeEvents. Webhook delivery is at-least-once, so every
accepted (platform, source_event_id) is remembered for a bounded,
time-limited window.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum

from tasksync.adapters.protocol import RawPayload
from tasksync.adapters.registry import AdapterRegistry
from tasksync.errors import MalformedPayloadError, ValidationError
from tasksync.logger import get_logger
from tasksync.model import SYNCED_FIELDS, ChangeEvent
from tasksync.store import ItemStore

logger = get_logger("normalizer")


class Outcome(Enum):
    """Result kinds of normalize(). All are acknowledged with HTTP 200."""
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    IGNORED = "ignored"


@dataclass(frozen=True)
class NormalizeResult:
    outcome: Outcome
    event: ChangeEvent | None = None
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.outcome == Outcome.ACCEPTED


class RecencySet:
    """
    Bounded LRU set of keys with a time-to-live.

    Oldest keys are evicted once capacity is reached; expired keys are
    treated as absent.
    """

    def __init__(self, capacity: int = 10000, ttl_s: float = 86400.0, clock=time.monotonic):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._ttl_s = ttl_s
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict = OrderedDict()

    def _expire(self, now: float) -> None:
        while self._entries:
            key, seen_at = next(iter(self._entries.items()))
            if now - seen_at < self._ttl_s:
                break
            self._entries.popitem(last=False)

    def add_if_absent(self, key) -> bool:
        """Insert key; return False if it was already present."""
        with self._lock:
            now = self._clock()
            self._expire(now)
            if key in self._entries:
                return False
            self._entries[key] = now
            while len(self._entries) > self._capacity:
                self._entries.popitem(last=False)
            return True

    def __contains__(self, key) -> bool:
        with self._lock:
            self._expire(self._clock())
            return key in self._entries

    def discard(self, key) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._expire(self._clock())
            return len(self._entries)


class EventNormalizer:
    """
    Per-event filter/transform from raw webhooks to ChangeEvents.

    Does not reorder events. Rejections are logged and never raised, so
    a bad payload cannot turn into an inbound retry storm.
    """

    def __init__(self, adapters: AdapterRegistry, store: ItemStore, recency: RecencySet | None = None):
        self._adapters = adapters
        self._store = store
        self._recent = recency or RecencySet()

    def normalize(self, platform: str, raw: RawPayload) -> NormalizeResult:
        """
        Normalize one webhook.

        Args:
            platform: Platform the webhook was posted for
            raw: Body, headers and raw bytes of the request

        Returns:
            NormalizeResult with outcome accepted, duplicate, rejected or ignored
        """
        if platform not in self._adapters:
            return self._reject(platform, f"Unknown platform '{platform}'")

        try:
            event = self._adapters.get(platform).parse_event(raw)
        except MalformedPayloadError as e:
            return self._reject(platform, str(e))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            return self._reject(platform, f"Unparseable payload: {type(e).__name__}: {e}")

        if event is None:
            logger.debug("Ignored webhook", platform=platform)
            return NormalizeResult(Outcome.IGNORED, reason="not relevant to sync")

        unknown = [f for f in event.field_changes if f not in SYNCED_FIELDS]
        if unknown:
            return self._reject(platform, f"Unknown fields: {', '.join(unknown)}")
        if not event.source_event_id:
            return self._reject(platform, "Missing source event id")

        key = (platform, event.source_event_id)
        if key in self._recent:
            logger.info("Duplicate webhook dropped", platform=platform, source_event_id=event.source_event_id)
            return NormalizeResult(Outcome.DUPLICATE, reason="already processed")

        try:
            event = self._resolve(event)
        except ValidationError as e:
            return self._reject(platform, str(e))

        if not self._recent.add_if_absent(key):
            # Lost a race with a concurrent delivery of the same webhook
            return NormalizeResult(Outcome.DUPLICATE, reason="already processed")

        logger.info(
            "Accepted webhook",
            item_id=event.item_id,
            platform=platform,
            source_event_id=event.source_event_id,
            fields=sorted(event.field_changes),
        )
        return NormalizeResult(Outcome.ACCEPTED, event=event)

    def forget(self, event: ChangeEvent) -> None:
        """Drop an accepted event from the recency set so a redelivery is accepted."""
        self._recent.discard((event.source_platform, event.source_event_id))

    def _resolve(self, event: ChangeEvent) -> ChangeEvent:
        """Bind the event to a correlation key, registering new items on first sight."""
        linked = self._store.resolve(event.source_platform, event.native_id) if event.native_id else None

        if event.item_id:
            if linked is not None and linked != event.item_id:
                raise ValidationError(
                    f"{event.source_platform}:{event.native_id} is linked to {linked}, "
                    f"payload claims {event.item_id}"
                )
            if linked is None:
                links = {event.source_platform: event.native_id} if event.native_id else {}
                self._store.register(event.item_id, links=links)
            return event

        if linked is None:
            raise ValidationError(
                f"No tracked item linked to {event.source_platform}:{event.native_id}"
            )
        return event.with_item_id(linked)

    def _reject(self, platform: str, reason: str) -> NormalizeResult:
        logger.warning("Rejected webhook", platform=platform, reason=reason)
        return NormalizeResult(Outcome.REJECTED, reason=reason)
