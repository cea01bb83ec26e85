"""
Kanboard adapter.

Implements PlatformAdapter for the Kanboard project-management tracker.
Status maps to board columns; the column id cache is refreshed by
probe() so apply_change stays a single JSON-RPC call.
"""

import hashlib
import time
import urllib.error
from typing import Any

from kanboard import Client, ClientError

from tasksync.adapters.mapping import (
    IdentityMapping,
    SnapshotCache,
    StatusMapping,
    find_correlation_key,
    normalize_label,
)
from tasksync.adapters.protocol import RawPayload
from tasksync.errors import (
    AdapterError,
    MalformedPayloadError,
    PermanentAdapterError,
    TransientAdapterError,
    classify_http_status,
)
from tasksync.logger import get_logger
from tasksync.model import ChangeEvent, DeliveryResult, HealthStatus, ItemStatus

logger = get_logger("kanboard")

# Default column-to-status mapping (Kanboard's stock board plus a review lane)
DEFAULT_COLUMN_MAP = {
    "Backlog": "backlog",
    "Ready": "todo",
    "Work in progress": "in_progress",
    "Review": "in_review",
    "Done": "done",
    "Canceled": "canceled",
}

# Events we care about
TRIGGER_EVENTS = (
    "task.create",
    "task.move.column",
    "task.update",
    "task.assignee_change",
    "task.close",
    "task.open",
)


class KanboardAdapter:
    """
    PlatformAdapter implementation for Kanboard.

    Wraps the kanboard Python client and translates between Kanboard's
    task/column model and the canonical TrackedItem fields. Native ids
    are Kanboard task ids.
    """

    def __init__(self, name: str = "kanboard", settings: dict | None = None,
                 status_mapping: dict | None = None, identities: dict | None = None):
        """
        Initialize adapter with configuration.

        Args:
            name: Platform name used in links
            settings: Expected keys: url, user, token, project_id, swimlane_id
            status_mapping: Column title -> canonical status overrides
            identities: Canonical assignee -> Kanboard user id
        """
        settings = settings or {}
        self._name = name
        self._url = settings.get("url", "http://localhost:188/jsonrpc.php")
        self._user = settings.get("user", "jsonrpc")
        self._token = settings.get("token", "")
        self._default_project_id = int(settings.get("project_id", 1))
        self._default_swimlane_id = int(settings.get("swimlane_id", 1))

        self._column_map = StatusMapping(DEFAULT_COLUMN_MAP, status_mapping)
        self._identities = IdentityMapping(identities)
        self._cache = SnapshotCache()

        # Lazy client initialization
        self._client: Client | None = None

        # Normalized column title -> column id, filled by probe()
        self._column_ids: dict[str, int] = {}

    @property
    def client(self) -> Client:
        """Get or create Kanboard client (lazy initialization)."""
        if self._client is None:
            self._client = Client(self._url, self._user, self._token)
        return self._client

    @property
    def name(self) -> str:
        return self._name

    # --- Inbound ---

    def parse_event(self, raw: RawPayload) -> ChangeEvent | None:
        """
        Translate a Kanboard webhook into a ChangeEvent.

        Raises:
            MalformedPayloadError: If event_name or the task data is missing
        """
        body = raw.body
        if not isinstance(body, dict) or not body.get("event_name"):
            raise MalformedPayloadError("Payload requires event_name", platform=self.name)

        event_name = body["event_name"]
        if event_name not in TRIGGER_EVENTS:
            return None

        event_data = body.get("event_data")
        task = event_data.get("task") if isinstance(event_data, dict) else None
        if not isinstance(task, dict):
            raise MalformedPayloadError("event_data.task is required", platform=self.name)

        task_id = event_data.get("task_id") or task.get("id")
        if not task_id:
            raise MalformedPayloadError("Missing task_id in webhook payload", platform=self.name)

        try:
            timestamp = float(task.get("date_modification") or 0)
        except (TypeError, ValueError) as e:
            raise MalformedPayloadError("Bad date_modification", platform=self.name) from e
        if timestamp <= 0:
            raise MalformedPayloadError("Missing date_modification", platform=self.name)

        native_id = str(task_id)
        observed = self._task_fields(task, event_name)
        self._cache.observe(
            native_id,
            observed,
            project_id=task.get("project_id"),
            swimlane_id=task.get("swimlane_id"),
        )

        field_changes = self._changed_fields(event_name, event_data, observed)
        if not field_changes:
            return None

        return ChangeEvent(
            item_id=find_correlation_key(task.get("reference")) or find_correlation_key(task.get("description")) or "",
            source_platform=self.name,
            field_changes=field_changes,
            source_timestamp=timestamp,
            source_event_id=self._event_id(event_name, native_id, task),
            native_id=native_id,
            received_at=time.time(),
        )

    def _task_fields(self, task: dict, event_name: str) -> dict[str, Any]:
        fields: dict[str, Any] = {"title": task.get("title") or ""}

        if event_name == "task.close" or str(task.get("is_active", "1")) == "0":
            fields["status"] = ItemStatus.DONE.value
        else:
            status = self._column_map.to_canonical(task.get("column_title") or "")
            if status is not None:
                fields["status"] = status.value
            else:
                logger.warning("Unmapped Kanboard column", column=task.get("column_title"))

        owner_id = str(task.get("owner_id") or "0")
        fields["assignee"] = None if owner_id == "0" else self._identities.to_canonical(owner_id)
        return fields

    def _changed_fields(self, event_name: str, event_data: dict, observed: dict) -> dict[str, Any]:
        if event_name == "task.create":
            return {k: v for k, v in observed.items() if k != "title" or v}
        if event_name in ("task.move.column", "task.close", "task.open"):
            return {"status": observed["status"]} if "status" in observed else {}
        if event_name == "task.assignee_change":
            return {"assignee": observed["assignee"]}

        # task.update carries the changed columns
        changes = event_data.get("changes") or {}
        result = {}
        if "title" in changes:
            result["title"] = observed["title"]
        if "owner_id" in changes:
            result["assignee"] = observed["assignee"]
        return result

    def _event_id(self, event_name: str, native_id: str, task: dict) -> str:
        # Kanboard webhooks carry no delivery id
        material = ":".join(str(part) for part in (
            event_name,
            native_id,
            task.get("date_modification"),
            task.get("date_moved"),
            task.get("column_id"),
            task.get("owner_id"),
            task.get("title"),
        ))
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]

    # --- Outbound ---

    def _column_id(self, status: ItemStatus) -> int:
        title = self._column_map.to_native(status)
        if title is None:
            raise PermanentAdapterError(f"No Kanboard column mapped for {status.value}", platform=self.name)
        if not self._column_ids:
            raise TransientAdapterError("Kanboard column map not loaded yet", platform=self.name)
        column_id = self._column_ids.get(normalize_label(title))
        if column_id is None:
            raise PermanentAdapterError(f"Column '{title}' not found on board", platform=self.name)
        return column_id

    def _owner_id(self, assignee: str | None) -> int:
        handle = self._identities.to_native(assignee)
        if handle is None:
            return 0
        if not str(handle).isdigit():
            raise PermanentAdapterError(
                f"No Kanboard user id mapped for assignee {assignee!r}", platform=self.name
            )
        return int(handle)

    def _call(self, native_id: str, pending: dict[str, Any]) -> dict[str, Any]:
        """Issue the single JSON-RPC call for a delta. Returns the fields it applied."""
        task_id = int(native_id)
        snapshot = self._cache.get(native_id)

        if "status" in pending:
            column_id = self._column_id(ItemStatus.parse(pending["status"]))
            ok = self.client.move_task_position(
                project_id=int(snapshot.extra.get("project_id") or self._default_project_id),
                task_id=task_id,
                column_id=column_id,
                position=1,
                swimlane_id=int(snapshot.extra.get("swimlane_id") or self._default_swimlane_id),
            )
            applied = {"status": pending["status"]}
        else:
            params: dict[str, Any] = {"id": task_id}
            if "title" in pending:
                params["title"] = pending["title"]
            if "assignee" in pending:
                params["owner_id"] = self._owner_id(pending["assignee"])
            ok = self.client.update_task(**params)
            applied = {k: pending[k] for k in ("title", "assignee") if k in pending}

        if not ok:
            raise PermanentAdapterError(f"Kanboard rejected update of task {task_id}", platform=self.name)
        return applied

    def apply_change(
        self,
        item_id: str,
        native_id: str,
        field_changes: dict[str, Any],
        idempotency_key: str,
    ) -> DeliveryResult:
        """
        Apply a canonical delta with exactly one JSON-RPC call.

        Status moves the task (moveTaskPosition); title and assignee go
        through updateTask. When a delta holds both, only the status is
        applied now and the rest is left out of applied_fields.
        """
        pending = self._cache.pending_changes(native_id, field_changes, idempotency_key)
        if not pending:
            return DeliveryResult.ok(field_changes, skipped=True)

        if not native_id.isdigit():
            return DeliveryResult.failed(
                PermanentAdapterError(f"Bad Kanboard task id: {native_id!r}", platform=self.name)
            )

        try:
            applied = self._call(native_id, pending)
        except AdapterError as e:
            return DeliveryResult.failed(e)
        except urllib.error.HTTPError as e:
            return DeliveryResult.failed(classify_http_status(self.name, e.code, str(e.reason)))
        except (urllib.error.URLError, TimeoutError, ConnectionError) as e:
            return DeliveryResult.failed(TransientAdapterError(f"{type(e).__name__}: {e}", platform=self.name))
        except ClientError as e:
            return DeliveryResult.failed(PermanentAdapterError(f"Kanboard error: {e}", platform=self.name))

        self._cache.record_applied(native_id, applied, idempotency_key)
        # Fields the cache already held count as applied too
        already = {k: v for k, v in field_changes.items() if k not in pending}
        return DeliveryResult.ok({**already, **applied})

    def probe(self) -> HealthStatus:
        """Fetch the board columns; refreshes the column id cache."""
        try:
            columns = self.client.get_columns(project_id=self._default_project_id)
        except (ClientError, OSError) as e:
            logger.warning("Kanboard probe failed", error=str(e))
            return HealthStatus.DOWN

        if not columns:
            return HealthStatus.DEGRADED

        self._column_ids = {normalize_label(c["title"]): int(c["id"]) for c in columns}
        return HealthStatus.HEALTHY
