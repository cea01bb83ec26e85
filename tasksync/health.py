"""
Platform Health Monitor - circuit breaker state for every adapter.

Usage:
    python -m tasksync.health --config config/tasksync.yaml
    python -m tasksync.health --platform github
    python -m tasksync.health --json
"""

import argparse
import json
import sys
import threading
import time
from dataclasses import replace
from typing import Callable

from tasksync.adapters.registry import AdapterRegistry
from tasksync.config import HealthConfig, load_config
from tasksync.logger import get_logger
from tasksync.model import HealthStatus, PlatformHealth

logger = get_logger("health")

HealthListener = Callable[[str, HealthStatus], None]


class HealthMonitor:
    """
    Owns the PlatformHealth record of every registered adapter.

    Probes run on a fixed interval in a background thread, and on demand
    through ensure_fresh(). Everything else reads copies.
    """

    def __init__(self, adapters: AdapterRegistry, config: HealthConfig | None = None, clock=time.time):
        self._adapters = adapters
        self._config = config or HealthConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._records = {name: PlatformHealth(platform=name) for name in adapters.names()}
        self._listeners: list[HealthListener] = []
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def subscribe(self, listener: HealthListener) -> None:
        """Call listener(platform, status) whenever a platform changes status."""
        self._listeners.append(listener)

    def status_of(self, platform: str) -> HealthStatus:
        """Current status; platforms never probed count as healthy."""
        with self._lock:
            record = self._records.get(platform)
            return record.status if record else HealthStatus.HEALTHY

    def snapshot(self) -> dict[str, PlatformHealth]:
        with self._lock:
            return {name: replace(record) for name, record in self._records.items()}

    def probe_all(self) -> dict[str, HealthStatus]:
        """Probe every platform once and return the resulting statuses."""
        return {name: self.probe(name) for name in self._adapters.names()}

    def ensure_fresh(self, max_age_s: float | None = None) -> None:
        """Probe platforms whose last check is older than max_age_s (default: probe interval)."""
        max_age_s = self._config.probe_interval_s if max_age_s is None else max_age_s
        now = self._clock()
        for name in self._adapters.names():
            with self._lock:
                record = self._records.setdefault(name, PlatformHealth(platform=name))
                last = record.last_checked_at
            if last is None or now - last >= max_age_s:
                self.probe(name)

    def probe(self, platform: str) -> HealthStatus:
        """Probe one platform and update its record."""
        adapter = self._adapters.get(platform)
        error = None
        try:
            result = adapter.probe()
        except Exception as e:
            result = HealthStatus.DOWN
            error = str(e)
            logger.warning("Probe raised", platform=platform, error=error)

        with self._lock:
            record = self._records.setdefault(platform, PlatformHealth(platform=platform))
            previous = record.status
            record.last_checked_at = self._clock()

            if result == HealthStatus.DOWN:
                record.consecutive_failures += 1
                record.last_error = error or "probe failed"
                if record.consecutive_failures >= self._config.down_after_failures:
                    record.status = HealthStatus.DOWN
            else:
                record.consecutive_failures = 0
                record.last_error = None
                record.status = result

            current = record.status
            failures = record.consecutive_failures

        if current != previous:
            if current == HealthStatus.DOWN:
                logger.error("Platform down", platform=platform, consecutive_failures=failures)
            else:
                logger.info("Platform status changed", platform=platform, previous=previous.value, status=current.value)
            for listener in list(self._listeners):
                listener(platform, current)
        return current

    # --- Background probing ---

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="tasksync-health", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.probe_all()
            except Exception as e:
                logger.error(f"Health probe cycle failed: {e}", exc_info=True)
            self._stop.wait(self._config.probe_interval_s)


def format_health_status(status: HealthStatus) -> str:
    """Format health status with a marker."""
    return {HealthStatus.HEALTHY: "✓", HealthStatus.DEGRADED: "~", HealthStatus.DOWN: "✗"}[status]


def format_health_report(snapshot: dict[str, PlatformHealth]) -> str:
    """Render a platform health snapshot as text."""
    lines = ["TaskSync Platform Health", "=" * 60, ""]
    if not snapshot:
        lines.append("No platforms configured.")
        return "\n".join(lines)

    for name in sorted(snapshot):
        health = snapshot[name]
        line = f"  {format_health_status(health.status)} {name} - {health.status.value}"
        if health.consecutive_failures:
            line += f" ({health.consecutive_failures} consecutive failures)"
        if health.last_error:
            line += f": {health.last_error}"
        lines.append(line)

    down = [name for name, h in snapshot.items() if h.status == HealthStatus.DOWN]
    lines.append("")
    lines.append(f"Summary: {len(snapshot) - len(down)}/{len(snapshot)} platforms reachable")
    return "\n".join(lines)


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Probe connectivity of configured platforms")
    parser.add_argument("--config", help="Path to TaskSync configuration file")
    parser.add_argument("--platform", help="Probe only this platform")
    parser.add_argument("--json", action="store_true", help="Output results as JSON")
    args = parser.parse_args()

    config = load_config(args.config)
    adapters = AdapterRegistry.from_config(config)
    monitor = HealthMonitor(adapters, config.health)

    if args.platform:
        if args.platform not in adapters:
            print(f"Unknown platform: {args.platform}", file=sys.stderr)
            sys.exit(2)
        monitor.probe(args.platform)
        snapshot = {args.platform: monitor.snapshot()[args.platform]}
    else:
        monitor.probe_all()
        snapshot = monitor.snapshot()

    if args.json:
        print(json.dumps({name: h.to_dict() for name, h in snapshot.items()}, indent=2))
    else:
        print(format_health_report(snapshot))

    sys.exit(0 if all(h.status != HealthStatus.DOWN for h in snapshot.values()) else 1)


if __name__ == "__main__":
    main()
