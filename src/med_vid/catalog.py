"""Published video catalogue stored as one JSON document per video."""
from __future__ import annotations

import json
import logging
import math
import re
import threading
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping

from .errors import CatalogError, VideoNotFound
from .timing import format_duration

logger = logging.getLogger(__name__)

_VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_IMMUTABLE_FIELDS = frozenset({"id", "created_at"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_created_at(value: object) -> datetime:
    """Coerce stored timestamps into aware UTC datetimes.

    ISO strings, epoch seconds, ``{"seconds", "nanoseconds"}`` mappings and
    datetimes are accepted. Anything else falls back to the current time.
    """

    if value is None or value == "":
        return _utcnow()
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if math.isfinite(value):
            try:
                return datetime.fromtimestamp(float(value), tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                pass
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return parse_created_at(datetime.fromisoformat(text))
        except ValueError:
            pass
    elif isinstance(value, Mapping) and "seconds" in value:
        try:
            seconds = float(value["seconds"]) + float(value.get("nanoseconds", 0)) / 1e9
        except (TypeError, ValueError):
            pass
        else:
            return parse_created_at(seconds)
    logger.warning("Unrecognised created_at value %r; using current time", value)
    return _utcnow()


def parse_tags(value: object) -> list[str]:
    """Split comma-separated keywords into trimmed, non-empty tags."""

    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        raise ValueError("Tags must be a comma-separated string or a list")
    tags: list[str] = []
    for item in items:
        tag = item.strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


@dataclass
class VideoRecord:
    """Metadata for one published video."""

    title: str
    owner_id: str
    media_url: str
    media_storage_path: str
    thumbnail_url: str
    thumbnail_storage_path: str
    id: str = ""
    description: str = ""
    owner_name: str = ""
    duration_seconds: float = 0.0
    formatted_duration: str = ""
    tags: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    view_count: int = 0
    featured: bool = False
    comments: list[dict[str, Any]] = field(default_factory=list)
    permalink: str = ""
    media_size: int | None = None
    media_type: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.title, str) or not self.title.strip():
            raise ValueError("Video title is required")
        self.title = self.title.strip()
        self.created_at = parse_created_at(self.created_at)
        self.tags = parse_tags(self.tags)
        try:
            duration = float(self.duration_seconds or 0)
        except (TypeError, ValueError) as exc:
            raise ValueError("Duration must be numeric") from exc
        self.duration_seconds = duration if math.isfinite(duration) and duration > 0 else 0.0
        if not self.formatted_duration:
            self.formatted_duration = format_duration(self.duration_seconds)
        self.view_count = max(0, int(self.view_count or 0))
        self.featured = bool(self.featured)
        if not isinstance(self.comments, list):
            self.comments = []

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "VideoRecord":
        known = {item.name for item in fields(cls)}
        data = {key: value for key, value in payload.items() if key in known}
        try:
            return cls(**data)
        except TypeError as exc:
            raise CatalogError(f"Incomplete video record: {exc}") from exc


def _validate_video_id(video_id: str) -> str:
    if not isinstance(video_id, str) or not _VIDEO_ID_PATTERN.match(video_id):
        raise VideoNotFound(f"Video {video_id!r} not found")
    return video_id


def new_video_id() -> str:
    return uuid.uuid4().hex


class VideoCatalog:
    """JSON document store keyed by video id."""

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    def _path_for(self, video_id: str) -> Path:
        return self._directory / f"{_validate_video_id(video_id)}.json"

    def _read(self, path: Path) -> VideoRecord | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Skipping unreadable catalogue entry %s: %s", path.name, exc)
            return None
        if not isinstance(payload, dict):
            return None
        payload.setdefault("id", path.stem)
        try:
            return VideoRecord.from_dict(payload)
        except (CatalogError, ValueError) as exc:
            logger.warning("Skipping invalid catalogue entry %s: %s", path.name, exc)
            return None

    def _write(self, record: VideoRecord) -> None:
        path = self._path_for(record.id)
        temp = path.with_suffix(".json.tmp")
        data = json.dumps(record.to_dict(), separators=(",", ":"), ensure_ascii=False)
        try:
            temp.write_text(data, encoding="utf-8")
            temp.replace(path)
        except OSError as exc:
            raise CatalogError(f"Failed to write video {record.id}: {exc}") from exc

    def add(self, record: VideoRecord) -> VideoRecord:
        """Store a new record, assigning its id and permalink when missing."""

        video_id = record.id or new_video_id()
        stored = replace(record, id=video_id, permalink=record.permalink or f"/videos/{video_id}")
        with self._lock:
            if self._path_for(video_id).exists():
                raise CatalogError(f"Video {video_id} already exists")
            self._write(stored)
        logger.info("Catalogued video %s (%s)", video_id, stored.title)
        return stored

    def get(self, video_id: str) -> VideoRecord:
        path = self._path_for(video_id)
        with self._lock:
            record = self._read(path) if path.exists() else None
        if record is None:
            raise VideoNotFound(f"Video {video_id!r} not found")
        return record

    def update(self, video_id: str, changes: Mapping[str, Any]) -> VideoRecord:
        """Apply ``changes``; ``id`` and ``created_at`` are never modified."""

        known = {item.name for item in fields(VideoRecord)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown video fields: {', '.join(sorted(unknown))}")
        updates = {key: value for key, value in changes.items() if key not in _IMMUTABLE_FIELDS}
        if len(updates) != len(changes):
            logger.debug("Ignoring immutable fields in update for %s", video_id)
        path = self._path_for(video_id)
        with self._lock:
            current = self._read(path) if path.exists() else None
            if current is None:
                raise VideoNotFound(f"Video {video_id!r} not found")
            if "duration_seconds" in updates and "formatted_duration" not in updates:
                updates["formatted_duration"] = ""
            updated = replace(current, **updates)
            self._write(updated)
        return updated

    def delete(self, video_id: str) -> VideoRecord:
        path = self._path_for(video_id)
        with self._lock:
            record = self._read(path) if path.exists() else None
            if record is None:
                raise VideoNotFound(f"Video {video_id!r} not found")
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        logger.info("Removed video %s from catalogue", video_id)
        return record

    def list_all(self) -> list[VideoRecord]:
        """Return every record, newest first."""

        with self._lock:
            records = [
                record
                for record in (self._read(path) for path in self._directory.glob("*.json"))
                if record is not None
            ]
        records.sort(key=lambda record: record.created_at, reverse=True)
        return records

    def recent(
        self, days: int = 7, limit: int = 5, *, featured_only: bool = False
    ) -> list[VideoRecord]:
        """Return recent uploads, or the newest featured videos of any age."""

        if limit <= 0:
            return []
        records = self.list_all()
        if featured_only:
            selected = [record for record in records if record.featured]
        else:
            cutoff = _utcnow() - timedelta(days=days)
            selected = [record for record in records if record.created_at >= cutoff]
        return selected[:limit]

    def count(self) -> int:
        with self._lock:
            return sum(1 for _ in self._directory.glob("*.json"))

    def increment_views(self, video_id: str) -> VideoRecord:
        path = self._path_for(video_id)
        with self._lock:
            current = self._read(path) if path.exists() else None
            if current is None:
                raise VideoNotFound(f"Video {video_id!r} not found")
            updated = replace(current, view_count=current.view_count + 1)
            self._write(updated)
        return updated


__all__ = [
    "VideoCatalog",
    "VideoRecord",
    "new_video_id",
    "parse_created_at",
    "parse_tags",
]
