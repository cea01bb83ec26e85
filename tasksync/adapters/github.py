"""
GitHub Issues adapter.

Consumes `issues` webhooks and writes canonical deltas back with a
single API call per delivery. Status lives in the open/closed state plus a
`status: ...` label for the open states.
"""

import hashlib
import hmac
import time
from datetime import datetime
from typing import Any

import requests

from tasksync.adapters.mapping import (
    IdentityMapping,
    SnapshotCache,
    StatusMapping,
    find_correlation_key,
)
from tasksync.adapters.protocol import RawPayload
from tasksync.errors import (
    MalformedPayloadError,
    PermanentAdapterError,
    TransientAdapterError,
    classify_http_status,
    classify_request_exception,
)
from tasksync.logger import get_logger
from tasksync.model import ChangeEvent, DeliveryResult, HealthStatus, ItemStatus

logger = get_logger("github")

DEFAULT_API_URL = "https://api.github.com"

# Labels carrying the open workflow states
DEFAULT_STATUS_LABELS = {
    "status: backlog": "backlog",
    "status: todo": "todo",
    "status: in progress": "in_progress",
    "status: in review": "in_review",
}

RELEVANT_ACTIONS = {
    "opened", "edited", "closed", "reopened",
    "assigned", "unassigned", "labeled", "unlabeled",
}


def parse_iso_timestamp(value: str | None) -> float:
    """Parse an ISO-8601 timestamp (with trailing Z) to epoch seconds."""
    if not value:
        raise ValueError("missing timestamp")
    return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()


class GitHubAdapter:
    """
    PlatformAdapter implementation for GitHub Issues.

    Native ids have the form "owner/repo#123"; a bare number uses the
    configured default repo.
    """

    def __init__(self, name: str = "github", settings: dict | None = None,
                 status_mapping: dict | None = None, identities: dict | None = None):
        settings = settings or {}
        self._name = name
        self._token = settings.get("token", "")
        self._repo = settings.get("repo", "")
        self._api_url = settings.get("api_url", DEFAULT_API_URL).rstrip("/")
        self._webhook_secret = settings.get("webhook_secret") or ""
        self._timeout_s = float(settings.get("timeout_s", 10))
        self._probe_timeout_s = float(settings.get("probe_timeout_s", self._timeout_s))
        self._degraded_below = int(settings.get("degraded_below", 100))

        self._status_map = StatusMapping(DEFAULT_STATUS_LABELS, status_mapping)
        self._identities = IdentityMapping(identities)
        self._cache = SnapshotCache()

    @property
    def name(self) -> str:
        return self._name

    # --- Inbound ---

    def verify_signature(self, raw: RawPayload) -> bool:
        """Check X-Hub-Signature-256 against the configured secret."""
        if not self._webhook_secret:
            return True
        signature = raw.header("x-hub-signature-256")
        if not signature.startswith("sha256="):
            return False
        expected = hmac.new(
            self._webhook_secret.encode("utf-8"), raw.raw_body, hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature[len("sha256="):])

    def parse_event(self, raw: RawPayload) -> ChangeEvent | None:
        """
        Translate an `issues` webhook into a ChangeEvent.

        Returns None for other event types (comments, pushes, pings) and
        for issue actions that do not touch synced fields.

        Raises:
            MalformedPayloadError: On bad signature or missing required keys
        """
        if not self.verify_signature(raw):
            raise MalformedPayloadError("Invalid webhook signature", platform=self.name)

        event_type = raw.header("x-github-event")
        if event_type != "issues":
            return None

        body = raw.body
        if not isinstance(body, dict):
            raise MalformedPayloadError("Payload must be a JSON object", platform=self.name)

        delivery_id = raw.header("x-github-delivery")
        action = body.get("action")
        issue = body.get("issue")
        repository = body.get("repository") or {}
        if not delivery_id or not action or not isinstance(issue, dict):
            raise MalformedPayloadError(
                "issues event requires X-GitHub-Delivery, action and issue", platform=self.name
            )
        if "number" not in issue or "state" not in issue:
            raise MalformedPayloadError("issue requires number and state", platform=self.name)

        try:
            timestamp = parse_iso_timestamp(issue.get("updated_at"))
        except ValueError as e:
            raise MalformedPayloadError(f"Bad issue.updated_at: {e}", platform=self.name) from e

        repo = repository.get("full_name") or self._repo
        native_id = f"{repo}#{issue['number']}"
        observed = self._observe_issue(native_id, issue)

        if action not in RELEVANT_ACTIONS:
            return None

        field_changes = self._changed_fields(action, body, observed)
        if not field_changes:
            return None

        return ChangeEvent(
            item_id=find_correlation_key(issue.get("body")) or "",
            source_platform=self.name,
            field_changes=field_changes,
            source_timestamp=timestamp,
            source_event_id=delivery_id,
            native_id=native_id,
            received_at=time.time(),
        )

    def _observe_issue(self, native_id: str, issue: dict) -> dict[str, Any]:
        """Cache the issue's canonical fields and full label set."""
        labels = [l.get("name", "") for l in issue.get("labels") or [] if isinstance(l, dict)]
        observed = {
            "title": issue.get("title") or "",
            "status": self._issue_status(issue, labels).value,
            "assignee": self._identities.to_canonical((issue.get("assignee") or {}).get("login")),
        }
        self._cache.observe(native_id, observed, labels=labels)
        return observed

    def _changed_fields(self, action: str, body: dict, observed: dict) -> dict[str, Any]:
        if action == "opened":
            return dict(observed)
        if action == "edited":
            changes = body.get("changes") or {}
            return {"title": observed["title"]} if "title" in changes else {}
        if action in ("closed", "reopened"):
            return {"status": observed["status"]}
        if action in ("labeled", "unlabeled"):
            label = (body.get("label") or {}).get("name", "")
            if self._status_map.to_canonical(label) is None:
                return {}
            return {"status": observed["status"]}
        if action in ("assigned", "unassigned"):
            return {"assignee": observed["assignee"]}
        return {}

    def _issue_status(self, issue: dict, labels: list[str]) -> ItemStatus:
        if issue.get("state") == "closed":
            if issue.get("state_reason") == "not_planned":
                return ItemStatus.CANCELED
            return ItemStatus.DONE
        for label in labels:
            status = self._status_map.to_canonical(label)
            if status is not None:
                return status
        return ItemStatus.TODO

    # --- Outbound ---

    def _issue_url(self, native_id: str) -> str:
        repo, sep, number = native_id.rpartition("#")
        if not sep:
            repo, number = self._repo, native_id
        if not repo or not number.isdigit():
            raise PermanentAdapterError(f"Bad GitHub issue id: {native_id!r}", platform=self.name)
        return f"{self._api_url}/repos/{repo}/issues/{number}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def build_patch(self, native_id: str, field_changes: dict[str, Any]) -> dict[str, Any]:
        """Build the PATCH body for a canonical delta."""
        patch: dict[str, Any] = {}

        if "title" in field_changes:
            patch["title"] = field_changes["title"]

        if "assignee" in field_changes:
            handle = self._identities.to_native(field_changes["assignee"])
            patch["assignees"] = [handle] if handle else []

        if "status" in field_changes:
            status = ItemStatus.parse(field_changes["status"])
            if status == ItemStatus.DONE:
                patch.update(state="closed", state_reason="completed")
            elif status == ItemStatus.CANCELED:
                patch.update(state="closed", state_reason="not_planned")
            else:
                patch["state"] = "open"
                # PATCH replaces the whole label set, so labels are only sent when known
                current = self._cache.get(native_id).extra.get("labels")
                if current is not None:
                    labels = [l for l in current if self._status_map.to_canonical(l) is None]
                    label = self._status_map.to_native(status)
                    if label:
                        labels.append(label)
                    patch["labels"] = labels

        return patch

    def apply_change(
        self,
        item_id: str,
        native_id: str,
        field_changes: dict[str, Any],
        idempotency_key: str,
    ) -> DeliveryResult:
        """
        Apply a canonical delta with one call.

        Usually one PATCH. An open-state status change on an issue whose
        labels are unknown spends the call on reading the issue instead;
        fields it already holds are reported applied and the rest is left
        for the follow-up delivery. Skips the call when the idempotency
        key was already applied or the cached issue already matches.
        """
        pending = self._cache.pending_changes(native_id, field_changes, idempotency_key)
        if not pending:
            logger.debug("GitHub change already applied", item_id=item_id, native_id=native_id)
            return DeliveryResult.ok(field_changes, skipped=True)

        try:
            url = self._issue_url(native_id)
            if self._needs_labels(native_id, pending):
                return self._fetch_issue(item_id, native_id, url, field_changes)
            patch = self.build_patch(native_id, pending)
        except PermanentAdapterError as e:
            return DeliveryResult.failed(e)

        try:
            response = requests.patch(url, headers=self._headers(), json=patch, timeout=self._timeout_s)
        except requests.RequestException as e:
            return DeliveryResult.failed(classify_request_exception(self.name, e))

        if response.status_code >= 400:
            return DeliveryResult.failed(
                classify_http_status(self.name, response.status_code, response.text or "")
            )

        self._cache.record_applied(native_id, pending, idempotency_key)
        if "labels" in patch:
            self._cache.observe(native_id, {}, labels=patch["labels"])
        return DeliveryResult.ok(field_changes)

    def _needs_labels(self, native_id: str, pending: dict[str, Any]) -> bool:
        if "status" not in pending:
            return False
        if ItemStatus.parse(pending["status"]) in (ItemStatus.DONE, ItemStatus.CANCELED):
            return False
        return self._cache.get(native_id).extra.get("labels") is None

    def _fetch_issue(self, item_id: str, native_id: str, url: str, field_changes: dict[str, Any]) -> DeliveryResult:
        try:
            response = requests.get(url, headers=self._headers(), timeout=self._timeout_s)
        except requests.RequestException as e:
            return DeliveryResult.failed(classify_request_exception(self.name, e))

        if response.status_code >= 400:
            return DeliveryResult.failed(
                classify_http_status(self.name, response.status_code, response.text or "")
            )

        try:
            issue = response.json()
        except ValueError as e:
            return DeliveryResult.failed(
                TransientAdapterError(f"Unreadable issue response: {e}", platform=self.name)
            )
        if not isinstance(issue, dict):
            return DeliveryResult.failed(
                TransientAdapterError("Issue response is not an object", platform=self.name)
            )

        observed = self._observe_issue(native_id, issue)
        already = {k: v for k, v in field_changes.items() if k in observed and observed[k] == v}
        logger.info(
            "Fetched GitHub labels before status change",
            item_id=item_id,
            native_id=native_id,
            already=sorted(already),
        )
        return DeliveryResult.ok(already)

    def probe(self) -> HealthStatus:
        """GET /rate_limit; low remaining quota reports DEGRADED."""
        try:
            response = requests.get(
                f"{self._api_url}/rate_limit", headers=self._headers(), timeout=self._probe_timeout_s
            )
        except requests.RequestException as e:
            logger.warning("GitHub probe failed", error=str(e))
            return HealthStatus.DOWN

        if response.status_code != 200:
            logger.warning("GitHub probe failed", status_code=response.status_code)
            return HealthStatus.DOWN

        try:
            remaining = response.json()["resources"]["core"]["remaining"]
        except (ValueError, KeyError, TypeError):
            return HealthStatus.HEALTHY

        if int(remaining) < self._degraded_below:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

