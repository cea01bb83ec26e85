"""
TaskSync

Keeps work items consistent across GitHub issues, Kanboard tasks and
Notion pages. Webhooks are normalized into canonical change events,
merged with per-field last-write-wins and delivered to every other
linked platform with retry, backoff and circuit breaking.
"""

__version__ = "0.1.0"
