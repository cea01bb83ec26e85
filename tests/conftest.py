"""Pytest configuration for TaskSync tests."""
import sys
from pathlib import Path

import pytest

# Add project root to path so 'tasksync' and 'webhook_server' can be imported
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from tasksync.adapters.protocol import RawPayload
from tasksync.adapters.registry import AdapterRegistry
from tasksync.errors import MalformedPayloadError
from tasksync.model import ChangeEvent, DeliveryResult, HealthStatus


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeAdapter:
    """
    In-memory PlatformAdapter.

    Webhook bodies look like:
        {"id": "evt-1", "native_id": "A-1", "item_id": "ITEM-1",
         "ts": 100.0, "fields": {"status": "in_review"}}
    """

    def __init__(self, name: str):
        self._name = name
        self.calls: list[dict] = []
        self.results: list = []
        self.probe_results: list = []
        self.probe_default = HealthStatus.HEALTHY
        self.probe_count = 0

    @property
    def name(self) -> str:
        return self._name

    def parse_event(self, raw: RawPayload) -> ChangeEvent | None:
        body = raw.body
        if not isinstance(body, dict) or body.get("malformed"):
            raise MalformedPayloadError("bad payload", platform=self._name)
        if body.get("ignore"):
            return None
        return ChangeEvent(
            item_id=body.get("item_id", ""),
            source_platform=self._name,
            field_changes=dict(body["fields"]),
            source_timestamp=float(body["ts"]),
            source_event_id=body.get("id", ""),
            native_id=body.get("native_id", ""),
        )

    def apply_change(self, item_id, native_id, field_changes, idempotency_key) -> DeliveryResult:
        self.calls.append({
            "item_id": item_id,
            "native_id": native_id,
            "fields": dict(field_changes),
            "key": idempotency_key,
        })
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            if callable(result):
                # Runs while the delivery is in flight
                return result(field_changes)
            return result
        return DeliveryResult.ok(field_changes)

    def probe(self) -> HealthStatus:
        self.probe_count += 1
        if self.probe_results:
            result = self.probe_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return self.probe_default


def webhook(event_id: str, native_id: str, ts: float, item_id: str = "", **fields) -> RawPayload:
    """Build a FakeAdapter webhook payload."""
    body = {"id": event_id, "native_id": native_id, "ts": ts, "fields": fields}
    if item_id:
        body["item_id"] = item_id
    return RawPayload(body=body)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fakes():
    """Three fake platforms keyed by name."""
    return {name: FakeAdapter(name) for name in ("tracker_a", "tracker_b", "docs")}


@pytest.fixture
def registry(fakes):
    registry = AdapterRegistry()
    for adapter in fakes.values():
        registry.register(adapter)
    return registry
