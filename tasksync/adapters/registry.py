"""Adapter registration and lookup, selected by platform type in configuration."""

from dataclasses import replace
from typing import TYPE_CHECKING

from tasksync.adapters.protocol import check_adapter
from tasksync.config import PlatformConfig, SyncConfig

if TYPE_CHECKING:
    from tasksync.adapters.protocol import PlatformAdapter


def create_adapter(platform: PlatformConfig) -> "PlatformAdapter":
    """
    Create adapter instance for one configured platform.

    Raises:
        ValueError: If the platform type is not supported
    """
    if platform.type == "github":
        from tasksync.adapters.github import GitHubAdapter
        adapter = GitHubAdapter(
            name=platform.name,
            settings=platform.settings,
            status_mapping=platform.status_mapping,
            identities=platform.identities,
        )
    elif platform.type == "kanboard":
        from tasksync.adapters.kanboard import KanboardAdapter
        adapter = KanboardAdapter(
            name=platform.name,
            settings=platform.settings,
            status_mapping=platform.status_mapping,
            identities=platform.identities,
        )
    elif platform.type == "notion":
        from tasksync.adapters.notion import NotionAdapter
        adapter = NotionAdapter(
            name=platform.name,
            settings=platform.settings,
            field_mapping=platform.field_mapping,
            status_mapping=platform.status_mapping,
            identities=platform.identities,
        )
    else:
        raise ValueError(f"Unknown platform type: {platform.type}")

    check_adapter(adapter)
    return adapter


class AdapterRegistry:
    """Registry of platform adapters keyed by platform name."""

    def __init__(self):
        self._adapters: dict[str, "PlatformAdapter"] = {}

    @classmethod
    def from_config(cls, config: SyncConfig) -> "AdapterRegistry":
        """Instantiate every enabled platform."""
        registry = cls()
        for platform in config.platforms.values():
            if not platform.enabled:
                continue
            # Probes share the health timeout unless the platform sets its own
            settings = {"probe_timeout_s": config.health.probe_timeout_s, **platform.settings}
            registry.register(create_adapter(replace(platform, settings=settings)))
        return registry

    def register(self, adapter: "PlatformAdapter") -> None:
        """
        Register an adapter.

        Raises:
            TypeError: If the adapter lacks a required capability
            ValueError: If the platform name is already registered
        """
        check_adapter(adapter)
        if adapter.name in self._adapters:
            raise ValueError(f"Platform '{adapter.name}' already registered")
        self._adapters[adapter.name] = adapter

    def get(self, platform: str) -> "PlatformAdapter":
        """
        Get an adapter by platform name.

        Raises:
            KeyError: If platform not registered
        """
        if platform not in self._adapters:
            available = ", ".join(self._adapters.keys())
            raise KeyError(
                f"Platform '{platform}' not registered. "
                f"Available platforms: {available or 'none'}"
            )
        return self._adapters[platform]

    def __contains__(self, platform: str) -> bool:
        return platform in self._adapters

    def names(self) -> list[str]:
        return list(self._adapters.keys())

    def items(self):
        return list(self._adapters.items())
