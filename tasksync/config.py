"""
TaskSync configuration loading.

Loads sync configuration from YAML with environment variable expansion
and resolves it into typed dataclasses.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG_PATH = Path("config") / "tasksync.yaml"
SUPPORTED_PLATFORM_TYPES = ("github", "kanboard", "notion")


@dataclass
class RetryPolicy:
    """Delivery retry schedule (exponential backoff with jitter)."""

    max_attempts: int = 5
    base_delay_s: float = 2.0
    max_delay_s: float = 300.0
    jitter_ratio: float = 0.1


@dataclass
class DedupConfig:
    """Recency window for webhook deduplication."""

    capacity: int = 10000
    ttl_s: float = 86400.0


@dataclass
class HealthConfig:
    """Health monitor settings."""

    probe_interval_s: float = 300.0
    down_after_failures: int = 3
    probe_timeout_s: float = 10.0


@dataclass
class PlatformConfig:
    """
    Configuration for one external platform.

    Attributes:
        name: Platform name used in links and webhook routes (e.g. "github")
        type: Adapter type, one of SUPPORTED_PLATFORM_TYPES
        enabled: Disabled platforms are not instantiated
        field_mapping: Native field name -> canonical field
        status_mapping: Native status label -> canonical status value
        identities: Canonical assignee identity -> native user handle
        settings: Adapter-specific keys (tokens, urls, repo, database id...)
    """

    name: str
    type: str
    enabled: bool = True
    field_mapping: dict[str, str] = field(default_factory=dict)
    status_mapping: dict[str, str] = field(default_factory=dict)
    identities: dict[str, str] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncConfig:
    """Complete TaskSync configuration."""

    platforms: dict[str, PlatformConfig] = field(default_factory=dict)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    state_dir: str | None = None
    queue_size: int = 1000
    event_workers: int = 2
    delivery_workers: int = 4
    log_level: str = "INFO"


def expand_env_vars(value: Any) -> Any:
    """
    Recursively expand ${VAR} environment variables in config values.

    Args:
        value: Config value (string, dict, list, or other)

    Returns:
        Value with env vars expanded
    """
    if isinstance(value, str):
        # Match ${VAR} or $VAR patterns
        pattern = r'\$\{([^}]+)\}|\$([A-Z_][A-Z0-9_]*)'

        def replace(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, "")

        return re.sub(pattern, replace, value)

    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]

    return value


def default_config_data() -> dict:
    """Minimal configuration built from environment variables."""
    return {
        "platforms": {
            "github": {
                "type": "github",
                "token": os.environ.get("GITHUB_TOKEN", ""),
                "repo": os.environ.get("GITHUB_REPO", ""),
                "webhook_secret": os.environ.get("GITHUB_WEBHOOK_SECRET", ""),
            },
            "kanboard": {
                "type": "kanboard",
                "url": os.environ.get("KANBOARD_URL", "http://localhost:188/jsonrpc.php"),
                "user": os.environ.get("KANBOARD_USER", "jsonrpc"),
                "token": os.environ.get("KANBOARD_TOKEN", ""),
                "project_id": int(os.environ.get("KANBOARD_PROJECT_ID", "1")),
            },
            "notion": {
                "type": "notion",
                "token": os.environ.get("NOTION_TOKEN", ""),
                "database_id": os.environ.get("NOTION_DATABASE_ID", ""),
            },
        },
    }


def _positive(section: str, key: str, value: Any, cast=float):
    try:
        result = cast(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{section}.{key} must be a number, got {value!r}") from e
    if result <= 0:
        raise ValueError(f"{section}.{key} must be positive, got {value!r}")
    return result


def _parse_platform(name: str, data: Any) -> PlatformConfig:
    if not isinstance(data, dict):
        raise ValueError(f"Platform '{name}' must be a mapping")

    platform_type = data.get("type", name)
    if platform_type not in SUPPORTED_PLATFORM_TYPES:
        raise ValueError(
            f"Platform '{name}' has unsupported type '{platform_type}'. "
            f"Supported: {', '.join(SUPPORTED_PLATFORM_TYPES)}"
        )

    reserved = {"type", "enabled", "field_mapping", "status_mapping", "identities"}
    for key in ("field_mapping", "status_mapping", "identities"):
        if not isinstance(data.get(key, {}) or {}, dict):
            raise ValueError(f"Platform '{name}' {key} must be a mapping")

    return PlatformConfig(
        name=name,
        type=platform_type,
        enabled=bool(data.get("enabled", True)),
        field_mapping=dict(data.get("field_mapping") or {}),
        status_mapping=dict(data.get("status_mapping") or {}),
        identities={str(k): str(v) for k, v in (data.get("identities") or {}).items()},
        settings={k: v for k, v in data.items() if k not in reserved},
    )


def parse_config(data: dict | None) -> SyncConfig:
    """
    Build a SyncConfig from a raw (already env-expanded) mapping.

    Raises:
        ValueError: If a section is malformed
    """
    data = data or {}
    if "tasksync" in data:
        data = data["tasksync"] or {}

    platforms = {}
    for name, platform_data in (data.get("platforms") or {}).items():
        platforms[name] = _parse_platform(name, platform_data)

    retry_data = data.get("retry") or {}
    retry = RetryPolicy(
        max_attempts=_positive("retry", "max_attempts", retry_data.get("max_attempts", 5), int),
        base_delay_s=_positive("retry", "base_delay_s", retry_data.get("base_delay_s", 2.0)),
        max_delay_s=_positive("retry", "max_delay_s", retry_data.get("max_delay_s", 300.0)),
        jitter_ratio=float(retry_data.get("jitter_ratio", 0.1)),
    )
    if not 0 <= retry.jitter_ratio < 0.5:
        raise ValueError("retry.jitter_ratio must be in [0, 0.5)")
    if retry.max_delay_s < retry.base_delay_s:
        raise ValueError("retry.max_delay_s must be >= retry.base_delay_s")

    dedup_data = data.get("dedup") or {}
    dedup = DedupConfig(
        capacity=_positive("dedup", "capacity", dedup_data.get("capacity", 10000), int),
        ttl_s=_positive("dedup", "ttl_s", dedup_data.get("ttl_s", 86400.0)),
    )

    health_data = data.get("health") or {}
    health = HealthConfig(
        probe_interval_s=_positive("health", "probe_interval_s", health_data.get("probe_interval_s", 300.0)),
        down_after_failures=_positive("health", "down_after_failures", health_data.get("down_after_failures", 3), int),
        probe_timeout_s=_positive("health", "probe_timeout_s", health_data.get("probe_timeout_s", 10.0)),
    )

    return SyncConfig(
        platforms=platforms,
        retry=retry,
        dedup=dedup,
        health=health,
        state_dir=data.get("state_dir") or None,
        queue_size=_positive("tasksync", "queue_size", data.get("queue_size", 1000), int),
        event_workers=_positive("tasksync", "event_workers", data.get("event_workers", 2), int),
        delivery_workers=_positive("tasksync", "delivery_workers", data.get("delivery_workers", 4), int),
        log_level=str(data.get("log_level", "INFO")),
    )


def load_config(config_path: str | Path | None = None) -> SyncConfig:
    """
    Load TaskSync configuration from YAML file.

    Looks for config in this order:
    1. Explicitly provided path
    2. $TASKSYNC_CONFIG
    3. config/tasksync.yaml relative to the working directory
    4. Minimal default config from environment variables

    Environment variables in the format ${VAR} are expanded.

    Args:
        config_path: Optional path to config file

    Returns:
        Parsed SyncConfig

    Raises:
        FileNotFoundError: If an explicit path does not exist
        ValueError: If configuration is invalid
    """
    explicit = config_path is not None
    if config_path is None:
        config_path = os.environ.get("TASKSYNC_CONFIG") or DEFAULT_CONFIG_PATH
        explicit = "TASKSYNC_CONFIG" in os.environ

    config_path = Path(config_path)

    if not config_path.exists():
        if explicit:
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        return parse_config(default_config_data())

    with open(config_path) as f:
        data = yaml.safe_load(f)

    return parse_config(expand_env_vars(data))


def get_platform_config(platform_name: str, config: SyncConfig | None = None) -> PlatformConfig:
    """
    Get configuration for a specific platform.

    Raises:
        ValueError: If platform not found in config
    """
    if config is None:
        config = load_config()

    if platform_name not in config.platforms:
        raise ValueError(f"Platform '{platform_name}' not found in config")

    return config.platforms[platform_name]
