"""Persistent event log for recording, thumbnail and publishing milestones."""

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


@dataclass(slots=True)
class SystemLogEntry:
    """A single lifecycle event."""

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
    def from_dict(cls, payload: object) -> "SystemLogEntry | None":
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


class SystemLog:
    """Bounded append-only log mirrored to a JSON-lines file."""

    def __init__(
        self,
        path: Path | str | None = Path("data/system_log.jsonl"),
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[SystemLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare system log directory: %s", exc)
                self._path = None
        self._load_entries()

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
    ) -> SystemLogEntry:
        """Append an event and return the stored entry."""

        cleaned_category = category.strip() if isinstance(category, str) else ""
        entry = SystemLogEntry(
            timestamp=time.time(),
            category=cleaned_category or "general",
            event=event,
            message=message,
            metadata={k: v for k, v in (metadata or {}).items() if v is not None} or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._append_persistent(entry)
        return entry

    def tail(self, limit: int | None = None, *, category: str | None = None) -> list[SystemLogEntry]:
        """Return the most recent entries, optionally for one category."""

        with self._lock:
            entries = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category.strip()]
        if limit is not None:
            entries = entries[-max(1, int(limit)):]
        return entries

    def _load_entries(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load system log: %s", exc)
            return
        for line in lines:
            if not line.strip():
                continue
            try:
                entry = SystemLogEntry.from_dict(json.loads(line))
            except ValueError:
                continue
            if entry is not None:
                self._entries.append(entry)

    def _append_persistent(self, entry: SystemLogEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":"), default=str) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist system log: %s", exc)


__all__ = ["SystemLog", "SystemLogEntry"]
