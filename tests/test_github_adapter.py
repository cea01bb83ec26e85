"""Tests for the GitHub Issues adapter (requests is mocked)."""

import hashlib
import hmac
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from tasksync.adapters.github import GitHubAdapter, parse_iso_timestamp
from tasksync.adapters.protocol import RawPayload
from tasksync.errors import MalformedPayloadError
from tasksync.model import HealthStatus


def issue_payload(action="opened", state="open", labels=(), state_reason=None, assignee=None,
                  body="Fix it\n\ntasksync:ITEM-1", **extra):
    payload = {
        "action": action,
        "issue": {
            "number": 7,
            "title": "Login fails",
            "state": state,
            "state_reason": state_reason,
            "body": body,
            "labels": [{"name": name} for name in labels],
            "assignee": {"login": assignee} if assignee else None,
            "updated_at": "2024-05-01T12:00:00Z",
        },
        "repository": {"full_name": "acme/app"},
    }
    payload.update(extra)
    return payload


def raw_event(payload, event="issues", delivery="d-1", headers=None):
    all_headers = {"X-GitHub-Event": event, "X-GitHub-Delivery": delivery, **(headers or {})}
    return RawPayload.from_http(all_headers, json.dumps(payload).encode(), payload)


@pytest.fixture
def adapter():
    return GitHubAdapter(
        name="github",
        settings={"token": "t", "repo": "acme/app", "api_url": "https://gh.test"},
        identities={"alice": "alice-gh"},
    )


def response(status_code=200, data=None, text=""):
    mock = MagicMock()
    mock.status_code = status_code
    mock.text = text
    mock.json.return_value = data if data is not None else {}
    return mock


class TestParseEvent:
    """Inbound webhook translation."""

    def test_opened_issue(self, adapter):
        event = adapter.parse_event(raw_event(issue_payload(assignee="alice-gh")))

        assert event.item_id == "ITEM-1"
        assert event.native_id == "acme/app#7"
        assert event.source_platform == "github"
        assert event.source_event_id == "d-1"
        assert event.source_timestamp == parse_iso_timestamp("2024-05-01T12:00:00Z")
        assert event.field_changes == {"title": "Login fails", "status": "todo", "assignee": "alice"}

    def test_non_issue_event_ignored(self, adapter):
        assert adapter.parse_event(raw_event({"zen": "hi"}, event="ping")) is None

    def test_comment_action_ignored(self, adapter):
        assert adapter.parse_event(raw_event(issue_payload(action="pinned"))) is None

    def test_missing_delivery_id(self, adapter):
        with pytest.raises(MalformedPayloadError):
            adapter.parse_event(raw_event(issue_payload(), delivery=""))

    def test_missing_issue_number(self, adapter):
        payload = issue_payload()
        del payload["issue"]["number"]
        with pytest.raises(MalformedPayloadError):
            adapter.parse_event(raw_event(payload))

    def test_bad_timestamp(self, adapter):
        payload = issue_payload()
        payload["issue"]["updated_at"] = "yesterday"
        with pytest.raises(MalformedPayloadError):
            adapter.parse_event(raw_event(payload))

    def test_closed_as_not_planned(self, adapter):
        payload = issue_payload(action="closed", state="closed", state_reason="not_planned")
        event = adapter.parse_event(raw_event(payload))
        assert event.field_changes == {"status": "canceled"}

    def test_closed_completed(self, adapter):
        payload = issue_payload(action="closed", state="closed", state_reason="completed")
        assert adapter.parse_event(raw_event(payload)).field_changes == {"status": "done"}

    def test_status_label(self, adapter):
        payload = issue_payload(action="labeled", labels=["bug", "status: in review"],
                                label={"name": "status: in review"})
        assert adapter.parse_event(raw_event(payload)).field_changes == {"status": "in_review"}

    def test_other_label_ignored(self, adapter):
        payload = issue_payload(action="labeled", labels=["bug"], label={"name": "bug"})
        assert adapter.parse_event(raw_event(payload)) is None

    def test_title_edit(self, adapter):
        payload = issue_payload(action="edited", changes={"title": {"from": "Old"}})
        assert adapter.parse_event(raw_event(payload)).field_changes == {"title": "Login fails"}

    def test_body_edit_ignored(self, adapter):
        payload = issue_payload(action="edited", changes={"body": {"from": "Old"}})
        assert adapter.parse_event(raw_event(payload)) is None

    def test_unassigned(self, adapter):
        payload = issue_payload(action="unassigned")
        assert adapter.parse_event(raw_event(payload)).field_changes == {"assignee": None}

    def test_no_marker_leaves_item_unresolved(self, adapter):
        event = adapter.parse_event(raw_event(issue_payload(body="plain")))
        assert event.item_id == ""


class TestSignature:
    def test_valid_and_invalid(self):
        adapter = GitHubAdapter(settings={"webhook_secret": "s3cret"})
        payload = issue_payload()
        body = json.dumps(payload).encode()
        digest = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

        good = RawPayload.from_http(
            {"X-GitHub-Event": "issues", "X-GitHub-Delivery": "d", "X-Hub-Signature-256": f"sha256={digest}"},
            body,
            payload,
        )
        assert adapter.parse_event(good) is not None

        bad = RawPayload.from_http(
            {"X-GitHub-Event": "issues", "X-GitHub-Delivery": "d", "X-Hub-Signature-256": "sha256=00"},
            body,
            payload,
        )
        with pytest.raises(MalformedPayloadError, match="signature"):
            adapter.parse_event(bad)


class TestBuildPatch:
    def test_done_closes(self, adapter):
        assert adapter.build_patch("acme/app#7", {"status": "done"}) == {
            "state": "closed", "state_reason": "completed",
        }

    def test_canceled_closes_not_planned(self, adapter):
        patch_body = adapter.build_patch("acme/app#7", {"status": "canceled"})
        assert patch_body["state_reason"] == "not_planned"

    def test_open_status_keeps_other_labels(self, adapter):
        adapter.parse_event(raw_event(issue_payload(labels=["bug", "status: todo"])))
        patch_body = adapter.build_patch("acme/app#7", {"status": "in_review"})
        assert patch_body == {"state": "open", "labels": ["bug", "status: in review"]}

    def test_open_status_without_known_labels_leaves_labels_alone(self, adapter):
        assert adapter.build_patch("acme/app#7", {"status": "in_review"}) == {"state": "open"}

    def test_assignee_mapped(self, adapter):
        assert adapter.build_patch("acme/app#7", {"assignee": "alice"}) == {"assignees": ["alice-gh"]}
        assert adapter.build_patch("acme/app#7", {"assignee": None}) == {"assignees": []}


class TestApplyChange:
    """Outbound delivery: one PATCH per call, errors classified."""

    @patch("tasksync.adapters.github.requests.patch")
    def test_success(self, mock_patch, adapter):
        mock_patch.return_value = response(200)

        result = adapter.apply_change("ITEM-1", "acme/app#7", {"title": "New"}, "k1")

        assert result.success
        assert result.applied_fields == {"title": "New"}
        mock_patch.assert_called_once()
        assert mock_patch.call_args.args[0] == "https://gh.test/repos/acme/app/issues/7"
        assert mock_patch.call_args.kwargs["json"] == {"title": "New"}

    @patch("tasksync.adapters.github.requests.patch")
    def test_repeat_is_skipped(self, mock_patch, adapter):
        mock_patch.return_value = response(200)
        adapter.apply_change("ITEM-1", "acme/app#7", {"title": "New"}, "k1")
        result = adapter.apply_change("ITEM-1", "acme/app#7", {"title": "New"}, "k2")

        assert result.success and result.skipped
        assert mock_patch.call_count == 1

    @patch("tasksync.adapters.github.requests.patch")
    def test_server_error_transient(self, mock_patch, adapter):
        mock_patch.return_value = response(502, text="bad gateway")
        result = adapter.apply_change("ITEM-1", "acme/app#7", {"title": "New"}, "k1")
        assert not result.success
        assert result.error.retryable
        assert result.error.status_code == 502

    @patch("tasksync.adapters.github.requests.patch")
    def test_rate_limit_transient(self, mock_patch, adapter):
        mock_patch.return_value = response(429)
        result = adapter.apply_change("ITEM-1", "acme/app#7", {"title": "New"}, "k1")
        assert result.error.retryable

    @patch("tasksync.adapters.github.requests.patch")
    def test_auth_failure_permanent(self, mock_patch, adapter):
        mock_patch.return_value = response(401)
        result = adapter.apply_change("ITEM-1", "acme/app#7", {"title": "New"}, "k1")
        assert not result.error.retryable
        assert "Authentication" in str(result.error)

    @patch("tasksync.adapters.github.requests.patch")
    def test_timeout_transient(self, mock_patch, adapter):
        mock_patch.side_effect = requests.Timeout("slow")
        result = adapter.apply_change("ITEM-1", "acme/app#7", {"title": "New"}, "k1")
        assert result.error.retryable

    @patch("tasksync.adapters.github.requests.patch")
    @patch("tasksync.adapters.github.requests.get")
    def test_status_change_reads_labels_first(self, mock_get, mock_patch, adapter):
        issue = issue_payload(labels=["bug", "status: todo"])["issue"]
        mock_get.return_value = response(200, issue)
        mock_patch.return_value = response(200)

        first = adapter.apply_change("ITEM-1", "acme/app#7", {"status": "in_review", "title": "Login fails"}, "k1")

        assert first.success
        assert first.applied_fields == {"title": "Login fails"}
        assert mock_get.call_args.args[0] == "https://gh.test/repos/acme/app/issues/7"
        mock_patch.assert_not_called()

        second = adapter.apply_change("ITEM-1", "acme/app#7", {"status": "in_review"}, "k2")

        assert second.applied_fields == {"status": "in_review"}
        assert mock_patch.call_args.kwargs["json"] == {"state": "open", "labels": ["bug", "status: in review"]}

    @patch("tasksync.adapters.github.requests.patch")
    @patch("tasksync.adapters.github.requests.get")
    def test_label_read_failure_is_classified(self, mock_get, mock_patch, adapter):
        mock_get.return_value = response(503)
        result = adapter.apply_change("ITEM-1", "acme/app#7", {"status": "in_review"}, "k1")
        assert result.error.retryable
        mock_patch.assert_not_called()

    @patch("tasksync.adapters.github.requests.get")
    @patch("tasksync.adapters.github.requests.patch")
    def test_closing_needs_no_labels(self, mock_patch, mock_get, adapter):
        mock_patch.return_value = response(200)
        result = adapter.apply_change("ITEM-1", "acme/app#7", {"status": "done"}, "k1")
        assert result.applied_fields == {"status": "done"}
        mock_get.assert_not_called()

    @patch("tasksync.adapters.github.requests.patch")
    def test_bad_native_id_permanent(self, mock_patch, adapter):
        result = adapter.apply_change("ITEM-1", "acme/app#seven", {"title": "New"}, "k1")
        assert not result.error.retryable
        mock_patch.assert_not_called()


class TestProbe:
    @patch("tasksync.adapters.github.requests.get")
    def test_healthy(self, mock_get, adapter):
        mock_get.return_value = response(200, {"resources": {"core": {"remaining": 4000}}})
        assert adapter.probe() == HealthStatus.HEALTHY
        assert mock_get.call_args.args[0] == "https://gh.test/rate_limit"

    @patch("tasksync.adapters.github.requests.get")
    def test_probe_timeout(self, mock_get):
        adapter = GitHubAdapter(settings={"repo": "acme/app", "timeout_s": 10, "probe_timeout_s": 3})
        mock_get.return_value = response(200, {"resources": {"core": {"remaining": 4000}}})
        adapter.probe()
        assert mock_get.call_args.kwargs["timeout"] == 3.0

    @patch("tasksync.adapters.github.requests.get")
    def test_low_quota_degraded(self, mock_get, adapter):
        mock_get.return_value = response(200, {"resources": {"core": {"remaining": 3}}})
        assert adapter.probe() == HealthStatus.DEGRADED

    @patch("tasksync.adapters.github.requests.get")
    def test_error_status_down(self, mock_get, adapter):
        mock_get.return_value = response(503)
        assert adapter.probe() == HealthStatus.DOWN

    @patch("tasksync.adapters.github.requests.get")
    def test_connection_error_down(self, mock_get, adapter):
        mock_get.side_effect = requests.ConnectionError("refused")
        assert adapter.probe() == HealthStatus.DOWN
