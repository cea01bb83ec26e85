"""
Notion adapter.

Documentation-hub side of the sync: tracked items are pages in a Notion
database. Inbound events come from database automations ("Send
webhook"), which post the full page object; changed fields are found by
comparing against the last page state seen.
"""

import hashlib
import json
import time
from typing import Any

import requests

from tasksync.adapters.github import parse_iso_timestamp
from tasksync.adapters.mapping import (
    FieldMapping,
    IdentityMapping,
    SnapshotCache,
    StatusMapping,
    find_correlation_key,
)
from tasksync.adapters.protocol import RawPayload
from tasksync.errors import (
    MalformedPayloadError,
    classify_http_status,
    classify_request_exception,
)
from tasksync.logger import get_logger
from tasksync.model import ChangeEvent, DeliveryResult, HealthStatus, ItemStatus

logger = get_logger("notion")

DEFAULT_API_URL = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"

DEFAULT_PROPERTIES = {
    "Name": "title",
    "Status": "status",
    "Assignee": "assignee",
}

DEFAULT_STATUS_OPTIONS = {
    "Backlog": "backlog",
    "Not started": "todo",
    "In progress": "in_progress",
    "In review": "in_review",
    "Done": "done",
    "Canceled": "canceled",
}


def _plain_text(fragments: Any) -> str:
    if not isinstance(fragments, list):
        return ""
    return "".join(f.get("plain_text") or (f.get("text") or {}).get("content", "")
                   for f in fragments if isinstance(f, dict)).strip()


def _strip_dashes(page_id: str) -> str:
    return (page_id or "").replace("-", "").lower()


class NotionAdapter:
    """PlatformAdapter implementation for a Notion database. Native ids are page ids."""

    def __init__(self, name: str = "notion", settings: dict | None = None,
                 field_mapping: dict | None = None, status_mapping: dict | None = None,
                 identities: dict | None = None):
        settings = settings or {}
        self._name = name
        self._token = settings.get("token", "")
        self._database_id = settings.get("database_id", "")
        self._api_url = settings.get("api_url", DEFAULT_API_URL).rstrip("/")
        self._timeout_s = float(settings.get("timeout_s", 10))
        self._probe_timeout_s = float(settings.get("probe_timeout_s", self._timeout_s))
        self._status_type = settings.get("status_property_type", "status")
        self._sync_id_property = settings.get("sync_id_property", "Sync ID")
        if self._status_type not in ("status", "select"):
            raise ValueError("status_property_type must be 'status' or 'select'")

        self._properties = FieldMapping(DEFAULT_PROPERTIES, field_mapping)
        self._status_map = StatusMapping(DEFAULT_STATUS_OPTIONS, status_mapping)
        self._identities = IdentityMapping(identities)
        self._cache = SnapshotCache()

    @property
    def name(self) -> str:
        return self._name

    # --- Inbound ---

    def parse_event(self, raw: RawPayload) -> ChangeEvent | None:
        """
        Translate an automation webhook carrying a page into a ChangeEvent.

        Returns None for pages outside the configured database and for
        payloads whose synced properties did not change.

        Raises:
            MalformedPayloadError: If the page object or its properties are missing
        """
        body = raw.body
        page = body.get("data") if isinstance(body, dict) else None
        if not isinstance(page, dict) or page.get("object") != "page" or not page.get("id"):
            raise MalformedPayloadError("Payload requires data.object == 'page'", platform=self.name)

        properties = page.get("properties")
        if not isinstance(properties, dict):
            raise MalformedPayloadError("Page has no properties", platform=self.name)

        parent_db = (page.get("parent") or {}).get("database_id")
        if self._database_id and parent_db and _strip_dashes(parent_db) != _strip_dashes(self._database_id):
            return None

        try:
            timestamp = parse_iso_timestamp(page.get("last_edited_time"))
        except ValueError as e:
            raise MalformedPayloadError(f"Bad last_edited_time: {e}", platform=self.name) from e

        native_id = page["id"]
        observed = self._page_fields(properties)
        previous = dict(self._cache.get(native_id).fields)
        self._cache.observe(native_id, observed)

        field_changes = {
            k: v for k, v in observed.items()
            if k not in previous or previous[k] != v
        }
        if not field_changes:
            return None

        sync_id = _plain_text((properties.get(self._sync_id_property) or {}).get("rich_text"))
        return ChangeEvent(
            item_id=find_correlation_key(sync_id) or sync_id or "",
            source_platform=self.name,
            field_changes=field_changes,
            source_timestamp=timestamp,
            source_event_id=self._event_id(native_id, page.get("last_edited_time"), observed),
            native_id=native_id,
            received_at=time.time(),
        )

    def _page_fields(self, properties: dict) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for native_name, prop in properties.items():
            canonical = self._properties.canonical(native_name)
            if canonical is None or not isinstance(prop, dict):
                continue

            if canonical == "title":
                title = _plain_text(prop.get("title"))
                if title:
                    fields["title"] = title
            elif canonical == "status":
                option = prop.get("status") or prop.get("select") or {}
                status = self._status_map.to_canonical(option.get("name", ""))
                if status is not None:
                    fields["status"] = status.value
                elif option:
                    logger.warning("Unmapped Notion status", option=option.get("name"))
            elif canonical == "assignee":
                if "people" in prop:
                    people = prop.get("people") or []
                    handle = (people[0].get("name") or people[0].get("id")) if people else None
                else:
                    handle = _plain_text(prop.get("rich_text")) or None
                fields["assignee"] = self._identities.to_canonical(handle)
        return fields

    def _event_id(self, page_id: str, edited: str | None, observed: dict) -> str:
        # last_edited_time has minute precision, so the content is hashed too
        material = json.dumps([page_id, edited, observed], sort_keys=True)
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]

    # --- Outbound ---

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }

    def build_properties(self, field_changes: dict[str, Any]) -> dict[str, Any]:
        """Build the page properties body for a canonical delta."""
        properties: dict[str, Any] = {}

        if "title" in field_changes:
            properties[self._properties.native("title")] = {
                "title": [{"text": {"content": field_changes["title"]}}]
            }

        if "status" in field_changes:
            option = self._status_map.to_native(ItemStatus.parse(field_changes["status"]))
            properties[self._properties.native("status")] = {self._status_type: {"name": option}}

        if "assignee" in field_changes:
            handle = self._identities.to_native(field_changes["assignee"])
            properties[self._properties.native("assignee")] = {
                "rich_text": [{"text": {"content": handle}}] if handle else []
            }

        return properties

    def apply_change(
        self,
        item_id: str,
        native_id: str,
        field_changes: dict[str, Any],
        idempotency_key: str,
    ) -> DeliveryResult:
        """Apply a canonical delta with one PATCH /pages/{id} call."""
        pending = self._cache.pending_changes(native_id, field_changes, idempotency_key)
        if not pending:
            return DeliveryResult.ok(field_changes, skipped=True)

        try:
            response = requests.patch(
                f"{self._api_url}/pages/{native_id}",
                headers=self._headers(),
                json={"properties": self.build_properties(pending)},
                timeout=self._timeout_s,
            )
        except requests.RequestException as e:
            return DeliveryResult.failed(classify_request_exception(self.name, e))

        if response.status_code >= 400:
            return DeliveryResult.failed(
                classify_http_status(self.name, response.status_code, response.text or "")
            )

        self._cache.record_applied(native_id, pending, idempotency_key)
        return DeliveryResult.ok(field_changes)

    def probe(self) -> HealthStatus:
        """GET /users/me with the integration token."""
        try:
            response = requests.get(
                f"{self._api_url}/users/me", headers=self._headers(), timeout=self._probe_timeout_s
            )
        except requests.RequestException as e:
            logger.warning("Notion probe failed", error=str(e))
            return HealthStatus.DOWN

        if response.status_code == 429:
            return HealthStatus.DEGRADED
        if response.status_code != 200:
            logger.warning("Notion probe failed", status_code=response.status_code)
            return HealthStatus.DOWN
        return HealthStatus.HEALTHY
