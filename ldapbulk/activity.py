"""
The activity log: an append-only record of what bulk runs did.

This is separate from :py:mod:`logging`.  Log records go wherever the
project's logging configuration sends them; activity entries are kept in
memory (bounded by ``LDAPBULK_ACTIVITY_LOG_MAX_ENTRIES``), handed to
listeners, and optionally saved as JSON to ``LDAPBULK_ACTIVITY_LOG_FILE``.
"""

import datetime
import enum
import json
import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytz

from .conf import get_setting

logger = logging.getLogger(__name__)


class Level(str, enum.Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class Category(str, enum.Enum):
    BULK_GENERATE = "BULK_GENERATE"
    BULK_SEARCH = "BULK_SEARCH"
    IMPORT = "IMPORT"
    BULK_GROUP_MEMBERSHIPS = "BULK_GROUP_MEMBERSHIPS"
    MODIFY = "MODIFY"


@dataclass(frozen=True)
class LogEntry:
    """One activity log entry.  ``timestamp`` is timezone aware, in UTC."""

    timestamp: datetime.datetime
    level: Level
    category: Category
    message: str
    details: str | None = None
    server_name: str | None = None
    ldif_data: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "server_name": self.server_name,
            "ldif_data": self.ldif_data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogEntry":
        timestamp = datetime.datetime.fromisoformat(data["timestamp"])
        if timestamp.tzinfo is None:
            timestamp = pytz.utc.localize(timestamp)
        return cls(
            timestamp=timestamp.astimezone(pytz.utc),
            level=Level(data["level"]),
            category=Category(data["category"]),
            message=data["message"],
            details=data.get("details"),
            server_name=data.get("server_name"),
            ldif_data=data.get("ldif_data"),
        )


Listener = Callable[[LogEntry], None]


class ActivityLog:
    """
    A bounded, thread-safe activity log.

    Entries are added one at a time under a lock, so several bulk runs may
    write to the same log at once.  Listeners are called after the lock is
    released, in the writing thread.

    Keyword Args:
        max_entries: how many entries to keep; the oldest are dropped first.
            Defaults to ``LDAPBULK_ACTIVITY_LOG_MAX_ENTRIES``.
        path: JSON file to save to after every entry, and to load the most
            recent entries from now.  Defaults to ``LDAPBULK_ACTIVITY_LOG_FILE``.

    """

    def __init__(self, max_entries: int | None = None, path: str | Path | None = None) -> None:
        self.max_entries = max_entries or get_setting("ACTIVITY_LOG_MAX_ENTRIES")
        path = path or get_setting("ACTIVITY_LOG_FILE")
        self.path = Path(path) if path else None
        self._entries: deque[LogEntry] = deque(maxlen=self.max_entries)
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        if self.path:
            self._load()

    def _load(self) -> None:
        assert self.path is not None  # noqa: S101
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            entries = [LogEntry.from_dict(item) for item in data]
        except (OSError, ValueError, KeyError) as e:
            logger.warning("ldapbulk.activity.load.failed path=%s error=%s", self.path, e)
            return
        self._entries.extend(entries[-self.max_entries :])

    def _save(self) -> None:
        assert self.path is not None  # noqa: S101
        data = [entry.to_dict() for entry in self._entries]
        try:
            self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning("ldapbulk.activity.save.failed path=%s error=%s", self.path, e)

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def log(
        self,
        level: Level,
        category: Category,
        message: str,
        details: str | None = None,
        server_name: str | None = None,
        ldif_data: str | None = None,
    ) -> LogEntry:
        """
        Append an entry.

        Returns:
            The new entry.

        """
        entry = LogEntry(
            timestamp=datetime.datetime.now(pytz.utc),
            level=level,
            category=category,
            message=message,
            details=details,
            server_name=server_name,
            ldif_data=ldif_data,
        )
        with self._lock:
            self._entries.append(entry)
            if self.path:
                self._save()
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(entry)
            except Exception:
                logger.exception("ldapbulk.activity.listener.failed")
        return entry

    def debug(self, category: Category, message: str, **kwargs: Any) -> LogEntry:
        return self.log(Level.DEBUG, category, message, **kwargs)

    def info(self, category: Category, message: str, **kwargs: Any) -> LogEntry:
        return self.log(Level.INFO, category, message, **kwargs)

    def warning(self, category: Category, message: str, **kwargs: Any) -> LogEntry:
        return self.log(Level.WARNING, category, message, **kwargs)

    def error(self, category: Category, message: str, **kwargs: Any) -> LogEntry:
        return self.log(Level.ERROR, category, message, **kwargs)

    def log_import(self, server_name: str, source: str, count: int) -> LogEntry:
        """Record that ``count`` entries were imported from ``source``."""
        return self.info(
            Category.IMPORT,
            f"Imported {count} entries from {source}",
            server_name=server_name,
        )

    def log_modification(
        self, server_name: str, message: str, dn: str, ldif_data: str | None = None
    ) -> LogEntry:
        """Record one change applied to the directory."""
        return self.info(
            Category.MODIFY,
            message,
            details=f"DN: {dn}",
            server_name=server_name,
            ldif_data=ldif_data,
        )

    def recent(self, limit: int | None = None) -> list[LogEntry]:
        """Return the newest ``limit`` entries (all if ``None``), oldest first."""
        with self._lock:
            entries = list(self._entries)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def by_category(self, category: Category) -> list[LogEntry]:
        return [entry for entry in self.recent() if entry.category == category]

    def by_level(self, level: Level) -> list[LogEntry]:
        return [entry for entry in self.recent() if entry.level == level]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            if self.path:
                self._save()

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._entries)
