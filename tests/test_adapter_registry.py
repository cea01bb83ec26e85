"""Tests for the adapter protocol checks and registry."""

import pytest

from tasksync.adapters import AdapterRegistry, PlatformAdapter, check_adapter, create_adapter
from tasksync.adapters.github import GitHubAdapter
from tasksync.adapters.kanboard import KanboardAdapter
from tasksync.adapters.notion import NotionAdapter
from tasksync.adapters.protocol import RawPayload, missing_capabilities
from tasksync.config import PlatformConfig, parse_config

from conftest import FakeAdapter


class IncompleteAdapter:
    name = "broken"

    def parse_event(self, raw):
        return None


class TestProtocol:
    def test_fake_satisfies_protocol(self):
        adapter = FakeAdapter("x")
        assert isinstance(adapter, PlatformAdapter)
        check_adapter(adapter)

    def test_missing_capabilities(self):
        assert missing_capabilities(IncompleteAdapter()) == ["apply_change", "probe"]
        with pytest.raises(TypeError):
            check_adapter(IncompleteAdapter())

    def test_raw_payload_headers_case_insensitive(self):
        raw = RawPayload.from_http({"X-GitHub-Event": "issues"}, b"{}", {})
        assert raw.header("x-github-event") == "issues"
        assert raw.header("X-GITHUB-EVENT") == "issues"
        assert raw.header("missing", "none") == "none"


class TestCreateAdapter:
    """Adapters are selected by the platform type in configuration."""

    def test_each_type(self):
        assert isinstance(create_adapter(PlatformConfig(name="gh", type="github")), GitHubAdapter)
        assert isinstance(create_adapter(PlatformConfig(name="kb", type="kanboard")), KanboardAdapter)
        assert isinstance(create_adapter(PlatformConfig(name="docs", type="notion")), NotionAdapter)

    def test_name_comes_from_config(self):
        adapter = create_adapter(PlatformConfig(name="work-github", type="github"))
        assert adapter.name == "work-github"

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            create_adapter(PlatformConfig(name="jira", type="jira"))


class TestAdapterRegistry:
    def test_from_config_skips_disabled(self):
        config = parse_config({
            "platforms": {
                "github": {"type": "github"},
                "notion": {"type": "notion", "enabled": False},
            }
        })
        registry = AdapterRegistry.from_config(config)
        assert registry.names() == ["github"]
        assert "notion" not in registry

    def test_health_probe_timeout_passed_down(self):
        config = parse_config({
            "health": {"probe_timeout_s": 4},
            "platforms": {
                "github": {"type": "github"},
                "notion": {"type": "notion", "probe_timeout_s": 2},
            },
        })
        registry = AdapterRegistry.from_config(config)
        assert registry.get("github")._probe_timeout_s == 4.0
        assert registry.get("notion")._probe_timeout_s == 2.0
        assert config.platforms["github"].settings == {}

    def test_duplicate_rejected(self):
        registry = AdapterRegistry()
        registry.register(FakeAdapter("a"))
        with pytest.raises(ValueError):
            registry.register(FakeAdapter("a"))

    def test_get_unknown(self):
        registry = AdapterRegistry()
        registry.register(FakeAdapter("a"))
        with pytest.raises(KeyError, match="Available platforms: a"):
            registry.get("b")

    def test_register_checks_capabilities(self):
        with pytest.raises(TypeError):
            AdapterRegistry().register(IncompleteAdapter())
