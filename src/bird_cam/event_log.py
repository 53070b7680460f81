"""Persistent record of recording and storage events."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EventLogEntry:
    """One recorded event."""

    timestamp: float
    category: str
    event: str
    message: str
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "EventLogEntry | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        category = payload.get("category")
        try:
            timestamp = float(payload.get("timestamp", time.time()))
        except (TypeError, ValueError):
            timestamp = time.time()
        metadata = payload.get("metadata")
        return cls(
            timestamp=timestamp,
            category=category.strip() if isinstance(category, str) and category.strip() else "general",
            event=event,
            message=message,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class EventLog:
    """Append-only JSON lines log with a bounded in-memory tail.

    The backing file is rewritten with only the retained entries once it holds
    twice ``max_entries`` lines.
    """

    def __init__(
        self,
        path: Path | str | None = Path("data/event_log.jsonl"),
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[EventLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._lines_on_disk = 0
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        metadata: dict[str, object | None] | None = None,
    ) -> EventLogEntry:
        """Append an event and return the stored entry."""

        cleaned_metadata = {k: v for k, v in (metadata or {}).items() if v is not None}
        entry = EventLogEntry(
            timestamp=time.time(),
            category=category.strip() or "general",
            event=event,
            message=message,
            metadata=cleaned_metadata or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._persist(entry)
        return entry

    def tail(self, limit: int | None = None, *, category: str | None = None) -> list[EventLogEntry]:
        with self._lock:
            entries = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category.strip()]
        if limit is not None and limit > 0:
            entries = entries[-int(limit):]
        return entries

    # ------------------------------------------------------------------
    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load event log: %s", exc)
            return
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                entry = EventLogEntry.from_dict(json.loads(line))
            except ValueError:
                continue
            if entry is not None:
                self._entries.append(entry)
        self._lines_on_disk = len(lines)

    def _persist(self, entry: EventLogEntry) -> None:
        if self._path is None:
            return
        try:
            if self._lines_on_disk >= 2 * (self._entries.maxlen or 1):
                text = "".join(
                    json.dumps(item.to_dict(), separators=(",", ":")) + "\n"
                    for item in self._entries
                )
                self._path.write_text(text, encoding="utf-8")
                self._lines_on_disk = len(self._entries)
                return
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
            self._lines_on_disk += 1
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist event log: %s", exc)


__all__ = ["EventLog", "EventLogEntry"]
