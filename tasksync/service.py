"""
TaskSync service wiring.

Builds the store, adapters, normalizer, engine and health monitor from
configuration and runs the worker threads between them:

    webhook -> submit() -> normalizer -> inbound queue -> event workers
        -> engine -> deadline queue -> delivery workers -> adapters
"""

import queue
import random
import threading
import time
from pathlib import Path
from typing import Any

from tasksync.adapters.protocol import RawPayload
from tasksync.adapters.registry import AdapterRegistry
from tasksync.config import SyncConfig, load_config
from tasksync.engine import SyncEngine
from tasksync.errors import ServiceUnavailableError, ValidationError
from tasksync.health import HealthMonitor
from tasksync.logger import get_logger, set_level
from tasksync.model import ChangeEvent, ItemStatus, TrackedItem
from tasksync.normalizer import EventNormalizer, NormalizeResult, RecencySet
from tasksync.store import DeadLetterLog, ItemStore

logger = get_logger("service")


class SyncService:
    """
    Running TaskSync instance.

    Args:
        config: Parsed configuration
        adapters: Adapter registry (built from config when None)
        store: Canonical item store (built from config.state_dir when None)
        dead_letters: Dead letter log (built from config.state_dir when None)
        clock: Wall clock shared by engine, monitor and dead letter log
        rng: Backoff jitter source
    """

    def __init__(
        self,
        config: SyncConfig,
        adapters: AdapterRegistry | None = None,
        store: ItemStore | None = None,
        dead_letters: DeadLetterLog | None = None,
        clock=time.time,
        rng=random.random,
    ):
        self.config = config
        self.adapters = adapters if adapters is not None else AdapterRegistry.from_config(config)
        self.store = store if store is not None else ItemStore(config.state_dir)
        self.dead_letters = (
            dead_letters if dead_letters is not None else DeadLetterLog(config.state_dir, clock=clock)
        )

        self.health = HealthMonitor(self.adapters, config.health, clock=clock)
        self.engine = SyncEngine(
            self.store,
            self.adapters,
            health=self.health,
            policy=config.retry,
            dead_letters=self.dead_letters,
            clock=clock,
            rng=rng,
        )
        self.health.subscribe(self.engine.on_health_change)
        self.normalizer = EventNormalizer(
            self.adapters,
            self.store,
            RecencySet(config.dedup.capacity, config.dedup.ttl_s),
        )

        self._events: queue.Queue = queue.Queue(maxsize=config.queue_size)
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @classmethod
    def from_config(cls, config_path: str | Path | None = None) -> "SyncService":
        """Load configuration and build a service from it."""
        config = load_config(config_path)
        set_level(config.log_level)
        service = cls(config)
        logger.info(
            "Service configured",
            platforms=service.adapters.names(),
            items=len(service.store),
        )
        return service

    # --- Inbound ---

    def submit(self, platform: str, raw: RawPayload) -> NormalizeResult:
        """
        Normalize a webhook and queue it for the engine.

        Raises:
            ServiceUnavailableError: If the inbound queue is full
        """
        result = self.normalizer.normalize(platform, raw)
        if not result.accepted:
            return result

        try:
            self._events.put_nowait(result.event)
        except queue.Full:
            # Let the sender's redelivery through instead of dropping it as a duplicate
            self.normalizer.forget(result.event)
            logger.warning(
                "Inbound queue full, webhook refused",
                item_id=result.event.item_id,
                platform=platform,
                queue_size=self.config.queue_size,
            )
            raise ServiceUnavailableError("Inbound queue is full")
        return result

    def register_item(
        self,
        item_id: str,
        title: str = "",
        links: dict[str, str] | None = None,
        status: ItemStatus | str = ItemStatus.BACKLOG,
        assignee: str | None = None,
    ) -> TrackedItem:
        return self.engine.register_item(item_id, title=title, links=links, status=status, assignee=assignee)

    def process_pending(self) -> int:
        """Apply every queued event on the calling thread. Returns the number handled."""
        handled = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return handled
            try:
                self._handle(event)
            finally:
                self._events.task_done()
            handled += 1

    def _handle(self, event: ChangeEvent) -> None:
        try:
            self.engine.handle_event(event)
        except (ValidationError, KeyError) as e:
            logger.warning(
                "Event rejected by engine",
                item_id=event.item_id,
                platform=event.source_platform,
                source_event_id=event.source_event_id,
                error=str(e),
            )

    # --- Lifecycle ---

    def start(self) -> None:
        """Start event workers, delivery workers and the health monitor."""
        if self._threads:
            return
        self._stop.clear()
        self.engine.open()
        for n in range(self.config.event_workers):
            self._spawn(f"tasksync-events-{n}", self._event_worker)
        for n in range(self.config.delivery_workers):
            self._spawn(f"tasksync-delivery-{n}", self.engine.run_delivery_worker, self._stop)
        self.health.start()
        logger.info(
            "Service started",
            event_workers=self.config.event_workers,
            delivery_workers=self.config.delivery_workers,
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self.engine.close()
        self.health.stop(timeout)
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        self.store.compact()
        logger.info("Service stopped")

    def _spawn(self, name: str, target, *args) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _event_worker(self) -> None:
        while not self._stop.is_set():
            try:
                event = self._events.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._handle(event)
            except Exception as e:
                logger.error(f"Event worker error: {e}", item_id=event.item_id, exc_info=True)
            finally:
                self._events.task_done()

    # --- Status surface ---

    def health_report(self) -> dict[str, Any]:
        return {name: health.to_dict() for name, health in self.health.snapshot().items()}

    def status_report(self) -> dict[str, Any]:
        """Operator view: items, platform health, deliveries and dead letters."""
        return {
            "items": len(self.store),
            "inbound_queue": self._events.qsize(),
            "platforms": self.health_report(),
            "deliveries": {
                "active": [attempt.to_dict() for attempt in self.engine.attempts()],
                "states": self.engine.state_counts(),
                "parked": self.engine.parked_count(),
            },
            "dead_letters": self.dead_letters.to_list(),
        }
