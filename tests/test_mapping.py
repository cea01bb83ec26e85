"""Tests for adapter mapping tables and the snapshot cache."""

import pytest

from tasksync.adapters.mapping import (
    FieldMapping,
    IdentityMapping,
    SnapshotCache,
    StatusMapping,
    find_correlation_key,
    normalize_label,
)
from tasksync.model import ItemStatus


class TestCorrelationMarker:
    def test_found_in_text(self):
        assert find_correlation_key("Details...\n\ntasksync:ITEM-42\n") == "ITEM-42"

    def test_absent(self):
        assert find_correlation_key("no marker here") is None
        assert find_correlation_key(None) is None


class TestNormalizeLabel:
    def test_strips_numbering_and_case(self):
        assert normalize_label("3. Work  in Progress ") == "work in progress"


class TestStatusMapping:
    """Tests for StatusMapping."""

    def test_to_canonical_tolerant(self):
        mapping = StatusMapping({"In Review": "in_review"})
        assert mapping.to_canonical("4. in review") == ItemStatus.IN_REVIEW
        assert mapping.to_canonical("Reviewing") is None

    def test_override_wins_reverse_lookup(self):
        mapping = StatusMapping({"In Review": "in_review"}, {"Reviewing": "in_review"})
        assert mapping.to_native(ItemStatus.IN_REVIEW) == "Reviewing"
        # The default label still maps inbound
        assert mapping.to_canonical("In Review") == ItemStatus.IN_REVIEW

    def test_unmapped_status(self):
        mapping = StatusMapping({"Done": "done"})
        assert mapping.to_native("todo") is None

    def test_invalid_canonical_rejected(self):
        with pytest.raises(ValueError):
            StatusMapping({"Weird": "not_a_status"})

    def test_entries(self):
        mapping = StatusMapping({"Done": "done"})
        assert [(e.native_state, e.status) for e in mapping.entries()] == [("Done", ItemStatus.DONE)]


class TestFieldMapping:
    def test_override_replaces_default_name(self):
        mapping = FieldMapping({"Name": "title", "Status": "status"}, {"Task": "title"})
        assert mapping.canonical("Task") == "title"
        assert mapping.canonical("Name") is None
        assert mapping.native("title") == "Task"
        assert mapping.native("status") == "Status"

    def test_unknown_canonical_field(self):
        with pytest.raises(ValueError):
            FieldMapping({"Priority": "priority"})


class TestIdentityMapping:
    def test_mapped_and_passthrough(self):
        identities = IdentityMapping({"alice": "alice-gh"})
        assert identities.to_native("alice") == "alice-gh"
        assert identities.to_canonical("alice-gh") == "alice"
        assert identities.to_native("bob") == "bob"
        assert identities.to_canonical("") is None
        assert identities.to_native(None) is None


class TestSnapshotCache:
    """Tests for adapter-side idempotency bookkeeping."""

    def test_unknown_native_id_needs_everything(self):
        cache = SnapshotCache()
        assert cache.pending_changes("1", {"title": "A"}, "k1") == {"title": "A"}

    def test_matching_fields_skipped(self):
        cache = SnapshotCache()
        cache.observe("1", {"title": "A", "status": "todo"})
        assert cache.pending_changes("1", {"title": "A", "status": "done"}, "k1") == {"status": "done"}

    def test_repeated_key_skipped(self):
        cache = SnapshotCache()
        cache.record_applied("1", {"status": "done"}, "k1")
        assert cache.pending_changes("1", {"status": "todo"}, "k1") is None

    def test_extra_ignores_none(self):
        cache = SnapshotCache()
        cache.observe("1", {}, labels=["bug"], project_id=None)
        assert cache.get("1").extra == {"labels": ["bug"]}
