"""
Persistent state: tracked items and the dead-letter log.

Items are kept in memory with a unique (platform, native id) link index.
Every write is appended to <state_dir>/items.jsonl; the journal is folded
into <state_dir>/items.json once it outgrows the item count. Dead letters are written as one
JSON file each under <state_dir>/dead_letters/ for operator inspection.
"""

from __future__ import annotations

import json
import os
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tasksync.errors import ValidationError
from tasksync.logger import get_logger
from tasksync.model import DeadLetter, DeliveryAttempt, ItemStatus, TrackedItem, validate_field_value

logger = get_logger("store")

# Journal entries tolerated before items.json is rewritten
COMPACT_MIN_LINES = 64


class ItemStore:
    """
    Thread-safe collection of canonical TrackedItems.

    Invariants: one item per correlation key; a native id on a platform
    is linked to at most one item.
    """

    def __init__(self, state_dir: str | Path | None = None):
        self._lock = threading.RLock()
        self._items: dict[str, TrackedItem] = {}
        self._links: dict[tuple[str, str], str] = {}
        self._path = Path(state_dir) / "items.json" if state_dir else None
        self._journal_path = Path(state_dir) / "items.jsonl" if state_dir else None
        self._journal_lines = 0
        if self._path is not None:
            self._load()

    # --- Queries ---

    def get(self, item_id: str) -> TrackedItem | None:
        with self._lock:
            return self._items.get(item_id)

    def resolve(self, platform: str, native_id: str) -> str | None:
        """Correlation key linked to a native id, None if unlinked."""
        with self._lock:
            return self._links.get((platform, native_id))

    def items(self) -> list[TrackedItem]:
        with self._lock:
            return list(self._items.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    # --- Mutations ---

    def register(
        self,
        item_id: str,
        title: str = "",
        links: dict[str, str] | None = None,
        status: ItemStatus | str = ItemStatus.BACKLOG,
        assignee: str | None = None,
    ) -> TrackedItem:
        """
        Create an item, or add links to an existing one.

        Raises:
            ValidationError: If the key is empty, a field value is illegal
                or a link is claimed by another item
        """
        if not isinstance(item_id, str) or not item_id.strip():
            raise ValidationError("Correlation key must be a non-empty string", field="id", value=item_id)
        if not isinstance(title, str):
            raise ValidationError("Title must be a string", field="title", value=title)
        if links is None:
            links = {}
        if not isinstance(links, dict):
            raise ValidationError("Links must map platform names to native ids", field="links", value=links)
        links = dict(links)
        for platform, native_id in links.items():
            if not isinstance(platform, str) or not isinstance(native_id, str) or not native_id:
                raise ValidationError(f"Bad link {platform!r}: {native_id!r}", field="links", value=native_id)
        title = validate_field_value("title", title) if title.strip() else ""
        status = ItemStatus.parse(status)
        assignee = validate_field_value("assignee", assignee)

        with self._lock:
            self._check_links(item_id, links)

            item = self._items.get(item_id)
            if item is None:
                item = TrackedItem(
                    id=item_id,
                    title=title,
                    status=status,
                    assignee=assignee,
                    links=links,
                )
                logger.info("Registered item", item_id=item_id, links=links)
            else:
                item = replace(item, links={**item.links, **links})

            self._store(item)
            return item

    def link(self, item_id: str, platform: str, native_id: str) -> TrackedItem:
        """
        Link an existing item to a native id.

        Raises:
            KeyError: If the item does not exist
            ValidationError: On a conflicting link
        """
        with self._lock:
            if item_id not in self._items:
                raise KeyError(f"Unknown item: {item_id}")
            return self.register(item_id, links={platform: native_id})

    def put(self, item: TrackedItem) -> None:
        """
        Replace the stored version of an existing item.

        Raises:
            KeyError: If the item was never registered
            ValidationError: If its links conflict with another item
        """
        with self._lock:
            if item.id not in self._items:
                raise KeyError(f"Unknown item: {item.id}")
            self._check_links(item.id, item.links)
            self._store(item)

    def _check_links(self, item_id: str, links: dict[str, str]) -> None:
        current = self._items.get(item_id)
        for platform, native_id in links.items():
            owner = self._links.get((platform, native_id))
            if owner is not None and owner != item_id:
                raise ValidationError(
                    f"{platform}:{native_id} is already linked to {owner}",
                    field="links",
                    value=native_id,
                )
            if current is not None and current.links.get(platform) not in (None, native_id):
                raise ValidationError(
                    f"{item_id} is already linked to {platform}:{current.links[platform]}",
                    field="links",
                    value=native_id,
                )

    def _store(self, item: TrackedItem) -> None:
        self._index(item)
        self._append(item)

    # --- Persistence ---

    def _append(self, item: TrackedItem) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._journal_path, "a") as f:
            f.write(json.dumps(item.to_dict()) + "\n")
        self._journal_lines += 1
        if self._journal_lines > max(len(self._items), COMPACT_MIN_LINES):
            self.compact()

    def compact(self) -> None:
        """Rewrite items.json from memory and empty the journal."""
        if self._path is None:
            return
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            data = {
                "saved_at": datetime.now(timezone.utc).isoformat(),
                "items": [item.to_dict() for item in self._items.values()],
            }
            tmp_path = self._path.with_suffix(".json.tmp")
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self._path)
            self._journal_path.unlink(missing_ok=True)
            self._journal_lines = 0

    def _load(self) -> None:
        if self._path.exists():
            with open(self._path) as f:
                data = json.load(f)
            for item_data in data.get("items", []):
                self._index(TrackedItem.from_dict(item_data))

        if self._journal_path.exists():
            with open(self._journal_path) as f:
                lines = [line for line in f if line.strip()]
            truncated = False
            for n, line in enumerate(lines):
                try:
                    item_data = json.loads(line)
                except json.JSONDecodeError:
                    if n < len(lines) - 1:
                        raise
                    logger.warning("Dropped truncated journal entry", path=str(self._journal_path))
                    truncated = True
                    break
                self._index(TrackedItem.from_dict(item_data))
            self._journal_lines = len(lines)
            if truncated:
                self.compact()

        logger.info("Loaded items", count=len(self._items), path=str(self._path))

    def _index(self, item: TrackedItem) -> None:
        self._items[item.id] = item
        for platform, native_id in item.links.items():
            self._links[(platform, native_id)] = item.id


class DeadLetterLog:
    """Deliveries abandoned after a permanent error or an exhausted retry budget."""

    def __init__(self, state_dir: str | Path | None = None, clock=time.time):
        self._lock = threading.Lock()
        self._clock = clock
        self._records: list[DeadLetter] = []
        self._dir = Path(state_dir) / "dead_letters" if state_dir else None
        if self._dir is not None and self._dir.exists():
            for record_file in sorted(self._dir.glob("*.json")):
                with open(record_file) as f:
                    self._records.append(DeadLetter.from_dict(json.load(f)))

    def record(self, attempt: DeliveryAttempt, reason: str, error: str) -> DeadLetter:
        """Append a dead letter and persist it."""
        letter = DeadLetter(
            attempt=attempt.to_dict(),
            reason=reason,
            error=error,
            recorded_at=self._clock(),
        )
        with self._lock:
            self._records.append(letter)
            if self._dir is not None:
                self._dir.mkdir(parents=True, exist_ok=True)
                ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
                suffix = uuid.uuid4().hex[:8]
                record_file = self._dir / f"{ts}-{attempt.target_platform}-{suffix}.json"
                with open(record_file, "w") as f:
                    json.dump(letter.to_dict(), f, indent=2)
        return letter

    def records(self, item_id: str | None = None) -> list[DeadLetter]:
        with self._lock:
            if item_id is None:
                return list(self._records)
            return [r for r in self._records if r.attempt.get("item_id") == item_id]

    def to_list(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self.records()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
