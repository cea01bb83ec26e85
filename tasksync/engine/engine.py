"""
Sync Engine.

Applies accepted ChangeEvents to the canonical store with per-field
last-write-wins, then drives one DeliveryAttempt per out-of-date
(item, platform) pair through the delivery state machine.

Locking: one lock per item guards canonical state and every pair of
that item. Adapter calls run outside the lock.
"""

import itertools
import random
import threading
import time
from typing import Any

from tasksync.adapters.registry import AdapterRegistry
from tasksync.config import RetryPolicy
from tasksync.engine.scheduler import DeadlineQueue
from tasksync.engine.state import DeliveryState, compute_backoff, transition
from tasksync.errors import AdapterError, TransientAdapterError
from tasksync.logger import get_logger
from tasksync.model import (
    ChangeEvent,
    DeliveryAttempt,
    DeliveryResult,
    HealthStatus,
    ItemStatus,
    TrackedItem,
    apply_field_changes,
    validate_field_value,
)
from tasksync.store import DeadLetterLog, ItemStore

logger = get_logger("engine")

Pair = tuple[str, str]


def plain_value(name: str, value: Any) -> Any:
    """Validated field value in the plain form used in payloads and snapshots."""
    value = validate_field_value(name, value)
    return value.value if isinstance(value, ItemStatus) else value


class SyncEngine:
    """
    Canonical state owner and delivery scheduler.

    Args:
        store: Canonical item store
        adapters: Registered platform adapters
        health: Health monitor consulted before each dispatch (None: all healthy)
        policy: Retry schedule
        dead_letters: Where abandoned deliveries are recorded
        clock: Wall clock (epoch seconds) for deadlines
        rng: Jitter source returning floats in [0, 1)
    """

    def __init__(
        self,
        store: ItemStore,
        adapters: AdapterRegistry,
        health=None,
        policy: RetryPolicy | None = None,
        dead_letters: DeadLetterLog | None = None,
        clock=time.time,
        rng=random.random,
    ):
        self._store = store
        self._adapters = adapters
        self._health = health
        self._policy = policy or RetryPolicy()
        self._dead_letters = dead_letters if dead_letters is not None else DeadLetterLog(clock=clock)
        self._clock = clock
        self._rng = rng

        self._queue = DeadlineQueue(clock)
        self._keys = itertools.count(1)

        self._locks_guard = threading.Lock()
        self._item_locks: dict[str, threading.Lock] = {}

        self._active: dict[Pair, DeliveryAttempt] = {}
        self._states: dict[Pair, DeliveryState] = {}
        self._known: dict[Pair, dict[str, Any]] = {}
        self._parked_lock = threading.Lock()
        self._parked: dict[str, list[DeliveryAttempt]] = {}

    @property
    def store(self) -> ItemStore:
        return self._store

    @property
    def dead_letters(self) -> DeadLetterLog:
        return self._dead_letters

    def _lock_for(self, item_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._item_locks.get(item_id)
            if lock is None:
                lock = self._item_locks[item_id] = threading.Lock()
            return lock

    # --- Items ---

    def register_item(
        self,
        item_id: str,
        title: str = "",
        links: dict[str, str] | None = None,
        status: ItemStatus | str = ItemStatus.BACKLOG,
        assignee: str | None = None,
    ) -> TrackedItem:
        """
        Track an item. Linked platforms are assumed to hold the given state.

        Raises:
            ValidationError: On an empty key or a conflicting link
        """
        with self._lock_for(item_id):
            item = self._store.register(item_id, title=title, links=links, status=status, assignee=assignee)
            self._init_known(item)
            return item

    def _init_known(self, item: TrackedItem) -> None:
        for platform in item.links:
            self._known.setdefault((item.id, platform), item.snapshot())

    # --- Inbound ---

    def handle_event(self, event: ChangeEvent) -> list[DeliveryAttempt]:
        """
        Apply an accepted event and schedule deliveries for out-of-date platforms.

        Returns:
            DeliveryAttempts created or rescheduled by this event

        Raises:
            KeyError: If the event's item is not tracked
            ValidationError: If a field value is illegal (nothing is applied)
        """
        reported = {name: plain_value(name, value) for name, value in event.field_changes.items()}

        with self._lock_for(event.item_id):
            item = self._store.get(event.item_id)
            if item is None:
                raise KeyError(f"Unknown item: {event.item_id}")
            self._init_known(item)

            # A report of what the source is already known to hold is an echo, not a change
            known_source = self._known.get((item.id, event.source_platform))
            if known_source is not None:
                reported = {name: value for name, value in reported.items() if known_source.get(name) != value}
                known_source.update(reported)

            accepted = {}
            overridden = []
            for name, value in reported.items():
                if event.source_timestamp >= item.field_timestamps.get(name, float("-inf")):
                    accepted[name] = value
                else:
                    overridden.append(name)

            changes = {name: value for name, value in accepted.items() if item.field_value(name) != value}
            if changes:
                item = apply_field_changes(item, changes, event.source_timestamp)
                self._store.put(item)
                logger.info(
                    "Applied change",
                    item_id=item.id,
                    source=event.source_platform,
                    fields=sorted(changes),
                    version=item.version,
                )
            if overridden:
                logger.info(
                    "Older write lost to newer canonical value",
                    item_id=item.id,
                    source=event.source_platform,
                    fields=sorted(overridden),
                )

            scheduled = []
            for platform in item.links:
                if platform == event.source_platform and not overridden:
                    continue
                attempt = self._schedule(item, platform, event.source_event_id)
                if attempt is not None:
                    scheduled.append(attempt)
            return scheduled

    def _delta(self, item: TrackedItem, platform: str) -> dict[str, Any]:
        known = self._known.get((item.id, platform), {})
        return {
            name: value for name, value in item.snapshot().items()
            if name not in known or known[name] != value
        }

    def _schedule(self, item: TrackedItem, platform: str, source_event_id: str) -> DeliveryAttempt | None:
        """Create, supersede or cancel the attempt for one pair. Caller holds the item lock."""
        pair = (item.id, platform)
        current = self._active.get(pair)

        if current is not None and current.state == DeliveryState.IN_FLIGHT.value:
            # Recomputed when the in-flight call completes
            return None

        delta = self._delta(item, platform)
        if not delta:
            if current is not None:
                self._finish(current, DeliveryState.CANCELED)
                logger.debug("Canceled delivery with nothing left to send", item_id=item.id, platform=platform)
            return None

        was_backoff = current is not None and current.state == DeliveryState.BACKOFF.value
        if current is not None:
            if current.payload == delta and current.version == item.version:
                return None
            self._finish(current, DeliveryState.CANCELED)
            logger.debug("Superseded delivery", item_id=item.id, platform=platform, version=current.version)

        now = self._clock()
        attempt = DeliveryAttempt(
            target_platform=platform,
            item_id=item.id,
            payload=delta,
            version=item.version,
            idempotency_key=f"{item.id}:{platform}:v{item.version}:{next(self._keys)}",
            source_event_id=source_event_id,
            created_at=now,
        )

        if was_backoff:
            # Keep the retry budget and timer of the superseded attempt
            attempt.attempt_count = current.attempt_count
            attempt.next_retry_at = current.next_retry_at
            attempt.last_error = current.last_error
            transition(attempt, DeliveryState.BACKOFF)
        else:
            attempt.next_retry_at = now
            transition(attempt, DeliveryState.PENDING)

        self._active[pair] = attempt
        self._states[pair] = DeliveryState(attempt.state)
        self._queue.push(attempt.next_retry_at, attempt)
        logger.info(
            "Scheduled delivery",
            item_id=item.id,
            platform=platform,
            fields=sorted(delta),
            version=item.version,
        )
        return attempt

    def _finish(self, attempt: DeliveryAttempt, state: DeliveryState) -> None:
        """Move an attempt to a terminal state and drop it from the active set."""
        transition(attempt, state)
        pair = attempt.pair
        if self._active.get(pair) is attempt:
            del self._active[pair]
        self._states[pair] = state

    # --- Outbound ---

    def dispatch_due(self, now: float | None = None) -> int:
        """
        Deliver every attempt whose deadline has passed, on the calling thread.

        Attempts that become due while draining (follow-ups, health
        recovery) are delivered too.

        Returns:
            Number of adapter calls made
        """
        calls = 0
        while True:
            due = self._queue.pop_due(self._clock() if now is None else now)
            if not due:
                return calls
            if self._health is not None:
                self._health.ensure_fresh()
            for attempt in due:
                if self._dispatch(attempt):
                    calls += 1

    def run_delivery_worker(self, stop: threading.Event, poll_s: float = 0.5) -> None:
        """Deliver attempts as they fall due until `stop` is set or the queue closes."""
        while not stop.is_set():
            attempt = self._queue.wait_next(timeout=poll_s)
            if attempt is None:
                continue
            if self._health is not None:
                self._health.ensure_fresh()
            try:
                self._dispatch(attempt)
            except Exception as e:
                logger.error(
                    f"Delivery worker error: {e}",
                    item_id=attempt.item_id,
                    platform=attempt.target_platform,
                    exc_info=True,
                )

    def open(self) -> None:
        """Let delivery workers run again after close()."""
        self._queue.reopen()

    def close(self) -> None:
        """Wake delivery workers so they can exit."""
        self._queue.close()

    def _platform_status(self, platform: str) -> HealthStatus:
        if self._health is None:
            return HealthStatus.HEALTHY
        return self._health.status_of(platform)

    def _park_if_down(self, attempt: DeliveryAttempt) -> bool:
        # on_health_change pops under the same lock, after the monitor has recorded the recovery
        with self._parked_lock:
            if self._platform_status(attempt.target_platform) != HealthStatus.DOWN:
                return False
            self._parked.setdefault(attempt.target_platform, []).append(attempt)
            return True

    def _dispatch(self, attempt: DeliveryAttempt) -> bool:
        pair = attempt.pair
        platform = attempt.target_platform

        with self._lock_for(attempt.item_id):
            if self._active.get(pair) is not attempt:
                return False
            if attempt.state == DeliveryState.BACKOFF.value:
                transition(attempt, DeliveryState.PENDING)
                self._states[pair] = DeliveryState.PENDING
            if attempt.state != DeliveryState.PENDING.value:
                return False

            if self._park_if_down(attempt):
                logger.info("Platform down, delivery parked", item_id=attempt.item_id, platform=platform)
                return False

            item = self._store.get(attempt.item_id)
            native_id = item.links.get(platform) if item is not None else None
            if native_id is None:
                self._finish(attempt, DeliveryState.CANCELED)
                logger.warning("Item no longer linked, delivery canceled", item_id=attempt.item_id, platform=platform)
                return False

            transition(attempt, DeliveryState.IN_FLIGHT)
            self._states[pair] = DeliveryState.IN_FLIGHT
            payload = dict(attempt.payload)

        try:
            result = self._adapters.get(platform).apply_change(
                attempt.item_id, native_id, payload, attempt.idempotency_key
            )
        except Exception as e:
            logger.error(
                f"Adapter raised during apply_change: {e}",
                item_id=attempt.item_id,
                platform=platform,
                exc_info=True,
            )
            result = DeliveryResult.failed(TransientAdapterError(str(e), platform=platform))

        self._complete(attempt, result)
        return True

    def _complete(self, attempt: DeliveryAttempt, result: DeliveryResult) -> None:
        pair = attempt.pair
        platform = attempt.target_platform

        with self._lock_for(attempt.item_id):
            item = self._store.get(attempt.item_id)
            stale = item is None or item.version > attempt.version

            if result.success:
                if stale:
                    logger.info(
                        "Ignored result of superseded delivery",
                        item_id=attempt.item_id,
                        platform=platform,
                        version=attempt.version,
                    )
                else:
                    self._known.setdefault(pair, {}).update(result.applied_fields)
                    logger.info(
                        "Delivery committed",
                        item_id=attempt.item_id,
                        platform=platform,
                        fields=sorted(result.applied_fields),
                        skipped=result.skipped,
                    )
                self._finish(attempt, DeliveryState.COMMITTED)
                if item is not None:
                    self._schedule(item, platform, attempt.source_event_id)
                return

            error = result.error
            if not isinstance(error, AdapterError):
                error = TransientAdapterError(str(error or "Unknown delivery failure"), platform=platform)
            attempt.last_error = str(error)

            if stale:
                logger.info(
                    "Ignored failure of superseded delivery",
                    item_id=attempt.item_id,
                    platform=platform,
                    error=str(error),
                )
                self._finish(attempt, DeliveryState.CANCELED)
                if item is not None:
                    self._schedule(item, platform, attempt.source_event_id)
                return

            attempt.attempt_count += 1

            if not error.retryable:
                self._finish(attempt, DeliveryState.DEAD_LETTERED)
                self._dead_letters.record(attempt, "permanent", str(error))
                logger.error(
                    "Permanent delivery failure, dead-lettered",
                    item_id=attempt.item_id,
                    platform=platform,
                    error=str(error),
                    status_code=error.status_code,
                )
                return

            transition(attempt, DeliveryState.BACKOFF)
            self._states[pair] = DeliveryState.BACKOFF

            if attempt.attempt_count >= self._policy.max_attempts:
                self._finish(attempt, DeliveryState.DEAD_LETTERED)
                self._dead_letters.record(attempt, "retries_exhausted", str(error))
                logger.error(
                    "Delivery retries exhausted, dead-lettered",
                    item_id=attempt.item_id,
                    platform=platform,
                    attempts=attempt.attempt_count,
                    error=str(error),
                )
                return

            delta = self._delta(item, platform)
            if not delta:
                self._finish(attempt, DeliveryState.CANCELED)
                return
            attempt.payload = delta

            delay = compute_backoff(attempt.attempt_count, self._policy, self._rng)
            attempt.next_retry_at = self._clock() + delay
            self._queue.push(attempt.next_retry_at, attempt)
            logger.warning(
                "Transient delivery failure, retrying",
                item_id=attempt.item_id,
                platform=platform,
                attempt=attempt.attempt_count,
                retry_in_s=round(delay, 3),
                error=str(error),
            )

    # --- Health ---

    def on_health_change(self, platform: str, status: HealthStatus) -> None:
        """Release attempts parked while the platform was down."""
        if status == HealthStatus.DOWN:
            return
        with self._parked_lock:
            parked = self._parked.pop(platform, [])
        if not parked:
            return
        now = self._clock()
        for attempt in parked:
            self._queue.push(now, attempt)
        logger.info("Platform recovered, releasing parked deliveries", platform=platform, count=len(parked))

    # --- Introspection ---

    def attempts(self) -> list[DeliveryAttempt]:
        """Active (pending, in-flight or backing off) attempts."""
        return list(self._active.values())

    def delivery_state(self, item_id: str, platform: str) -> DeliveryState:
        return self._states.get((item_id, platform), DeliveryState.IDLE)

    def known_state(self, item_id: str, platform: str) -> dict[str, Any]:
        """Last representation this engine knows the platform holds."""
        return dict(self._known.get((item_id, platform), {}))

    def parked_count(self) -> int:
        with self._parked_lock:
            return sum(len(attempts) for attempts in self._parked.values())

    def state_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for state in list(self._states.values()):
            counts[state.value] = counts.get(state.value, 0) + 1
        return counts

    def pending_deliveries(self) -> int:
        """Queued entries, including stale ones not yet discarded."""
        return len(self._queue)
