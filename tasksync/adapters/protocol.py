"""
Platform Adapter Protocol.

Defines the capability set every platform adapter implements. Uses
Python's Protocol for structural typing - adapters don't need to
explicitly inherit from this class.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from tasksync.model import ChangeEvent, DeliveryResult, HealthStatus


@dataclass(frozen=True)
class RawPayload:
    """
    Inbound webhook as received over HTTP.

    Attributes:
        body: Parsed JSON body
        headers: Request headers (lower-cased names)
        raw_body: Undecoded request body, needed for signature checks
    """
    body: Any
    headers: dict[str, str] = field(default_factory=dict)
    raw_body: bytes = b""

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)

    @classmethod
    def from_http(cls, headers: dict[str, str], raw_body: bytes, body: Any) -> "RawPayload":
        return cls(
            body=body,
            headers={k.lower(): v for k, v in headers.items()},
            raw_body=raw_body,
        )


@runtime_checkable
class PlatformAdapter(Protocol):
    """
    Translation layer between one external platform and the canonical model.

    Implementations:
    - GitHubAdapter (source-control issue tracker)
    - KanboardAdapter (project-management tracker)
    - NotionAdapter (documentation hub)

    Adapters never mutate TrackedItem; they report native state and
    apply canonical deltas.
    """

    @property
    def name(self) -> str:
        """Platform name as used in TrackedItem.links."""
        ...

    def parse_event(self, raw: RawPayload) -> ChangeEvent | None:
        """
        Translate a native webhook into a ChangeEvent.

        Returns:
            ChangeEvent, or None for payloads irrelevant to sync
            (comment-only events and the like)

        Raises:
            MalformedPayloadError: If the payload does not match the schema
        """
        ...

    def apply_change(
        self,
        item_id: str,
        native_id: str,
        field_changes: dict[str, Any],
        idempotency_key: str,
    ) -> DeliveryResult:
        """
        Push a canonical delta to the platform.

        Performs at most one outbound call and never raises transport
        errors: failures come back classified in DeliveryResult.error.
        """
        ...

    def probe(self) -> HealthStatus:
        """One lightweight read-only call reporting connectivity."""
        ...


# Method names every adapter must provide
REQUIRED_METHODS = ("parse_event", "apply_change", "probe")


def missing_capabilities(adapter: Any) -> list[str]:
    """
    List the required methods an adapter lacks.

    Args:
        adapter: Candidate adapter instance

    Returns:
        Names of missing or non-callable methods (empty if complete)
    """
    return [
        method for method in REQUIRED_METHODS
        if not callable(getattr(adapter, method, None))
    ]


def check_adapter(adapter: Any) -> None:
    """
    Verify an adapter implements the full capability set.

    Raises:
        TypeError: If name or any required method is missing
    """
    missing = missing_capabilities(adapter)
    if not getattr(adapter, "name", None):
        missing.insert(0, "name")
    if missing:
        raise TypeError(
            f"{type(adapter).__name__} is not a PlatformAdapter; missing: {', '.join(missing)}"
        )
