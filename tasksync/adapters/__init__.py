"""
Platform Adapters

One adapter per external platform, each translating native webhooks to
ChangeEvents and canonical deltas back to native update calls.
"""

from tasksync.adapters.protocol import PlatformAdapter, RawPayload, check_adapter
from tasksync.adapters.registry import AdapterRegistry, create_adapter

__all__ = [
    "AdapterRegistry",
    "PlatformAdapter",
    "RawPayload",
    "check_adapter",
    "create_adapter",
]
