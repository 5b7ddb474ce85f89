"""Publishing flow: upload the media and its thumbnail, then catalogue them."""
from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable

from .catalog import VideoCatalog, VideoRecord, new_video_id, parse_tags
from .errors import PublishError, StorageError
from .identity import Identity
from .media import MediaBlob
from .storage import LocalObjectStorage
from .system_log import SystemLog
from .thumbnails import ThumbnailSet

logger = logging.getLogger(__name__)

ProgressListener = Callable[[int], None]

MEDIA_PROGRESS_SHARE = 80
"""Percentage of overall progress covered by the media upload."""


def safe_title(title: str, fallback: str) -> str:
    cleaned = re.sub(r"[^a-z0-9_]+", "_", title, flags=re.IGNORECASE).lower().strip("_")
    return cleaned or fallback


def _owner_segment(user_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "_", user_id) or "unknown_owner"


@dataclass(frozen=True, slots=True)
class VideoDraft:
    """User supplied details for a video about to be published."""

    title: str
    description: str = ""
    keywords: str = ""
    featured: bool = False
    duration_seconds: float = 0.0


class VideoPublisher:
    """Uploads a finished source and its selected thumbnail."""

    def __init__(
        self,
        storage: LocalObjectStorage,
        catalog: VideoCatalog,
        *,
        system_log: SystemLog | None = None,
    ) -> None:
        self._storage = storage
        self._catalog = catalog
        self._system_log = system_log

    async def publish(
        self,
        draft: VideoDraft,
        media: MediaBlob | None,
        thumbnails: ThumbnailSet | None,
        identity: Identity | None,
        *,
        on_progress: ProgressListener | None = None,
    ) -> VideoRecord:
        title = draft.title.strip() if isinstance(draft.title, str) else ""
        if not title:
            raise PublishError("Please provide a title for the video")
        if identity is None:
            raise PublishError("You must be signed in to publish videos")
        if media is None or media.size == 0:
            raise PublishError("No video is available to publish")
        if thumbnails is None:
            raise PublishError("Generate thumbnails before publishing")
        thumbnail_blob = thumbnails.selected_image()

        video_id = new_video_id()
        owner = identity.user_id
        folder = _owner_segment(owner)
        media_path = f"videos/{folder}/{video_id}_{safe_title(title, video_id)}.{_extension(media)}"
        thumbnail_path = f"thumbnails/{folder}/{video_id}_thumbnail.jpg"

        def report(value: float) -> None:
            if on_progress is not None:
                on_progress(int(round(value)))

        def media_progress(done: int, total: int) -> None:
            if total:
                report(done / total * MEDIA_PROGRESS_SHARE)

        def thumbnail_progress(done: int, total: int) -> None:
            if total:
                report(MEDIA_PROGRESS_SHARE + done / total * (100 - MEDIA_PROGRESS_SHARE))

        report(0)
        uploaded: list[str] = []
        try:
            uploaded.append(
                await asyncio.to_thread(self._storage.upload, media, media_path, media_progress)
            )
            report(MEDIA_PROGRESS_SHARE)
            uploaded.append(
                await asyncio.to_thread(
                    self._storage.upload, thumbnail_blob, thumbnail_path, thumbnail_progress
                )
            )
            record = VideoRecord(
                id=video_id,
                title=title,
                description=draft.description.strip(),
                owner_id=owner,
                owner_name=identity.label,
                media_url=self._storage.get_download_url(media_path),
                media_storage_path=media_path,
                thumbnail_url=self._storage.get_download_url(thumbnail_path),
                thumbnail_storage_path=thumbnail_path,
                duration_seconds=draft.duration_seconds,
                tags=parse_tags(draft.keywords),
                featured=draft.featured,
                media_size=media.size,
                media_type=media.media_type,
            )
            stored = await asyncio.to_thread(self._catalog.add, record)
        except Exception as exc:
            await asyncio.to_thread(self._discard, uploaded)
            logger.error("Publishing %r failed: %s", title, exc)
            if isinstance(exc, PublishError):
                raise
            raise PublishError(f"Failed to publish video: {exc}") from exc
        report(100)
        logger.info("Published video %s for %s", stored.id, owner)
        self._log(
            "published",
            f"Published {stored.title!r}.",
            {"video_id": stored.id, "owner_id": owner, "size_bytes": media.size},
        )
        return stored

    async def replace_thumbnail(self, video_id: str, thumbnails: ThumbnailSet) -> VideoRecord:
        """Swap the thumbnail of an existing video for the current selection."""

        thumbnail_blob = thumbnails.selected_image()
        record = await asyncio.to_thread(self._catalog.get, video_id)
        folder = _owner_segment(record.owner_id)
        new_path = f"thumbnails/{folder}/{video_id}_thumbnail_{int(time.time() * 1000)}.jpg"
        try:
            await asyncio.to_thread(self._storage.upload, thumbnail_blob, new_path)
        except StorageError as exc:
            raise PublishError(f"Failed to upload thumbnail: {exc}") from exc
        old_path = record.thumbnail_storage_path
        updated = await asyncio.to_thread(
            self._catalog.update,
            video_id,
            {
                "thumbnail_url": self._storage.get_download_url(new_path),
                "thumbnail_storage_path": new_path,
            },
        )
        if old_path and old_path != new_path:
            await asyncio.to_thread(self._discard, [old_path])
        self._log("thumbnail_replaced", "Thumbnail replaced.", {"video_id": video_id})
        return updated

    async def delete_video(self, video_id: str) -> VideoRecord:
        """Remove the catalogue record and both stored objects."""

        record = await asyncio.to_thread(self._catalog.delete, video_id)
        await asyncio.to_thread(
            self._discard, [record.media_storage_path, record.thumbnail_storage_path]
        )
        self._log("deleted", f"Deleted {record.title!r}.", {"video_id": video_id})
        return record

    def _discard(self, paths: list[str]) -> None:
        for path in paths:
            if not path:
                continue
            try:
                self._storage.delete(path)
            except StorageError as exc:
                logger.warning("Could not delete %s: %s", path, exc)

    def _log(self, event: str, message: str, metadata: dict[str, object]) -> None:
        if self._system_log is not None:
            self._system_log.record("publishing", event, message, metadata=metadata)


def _extension(media: MediaBlob) -> str:
    extension = media.extension
    if extension == "quicktime":
        return "mov"
    if extension == "x-matroska":
        return "mkv"
    return extension


__all__ = ["MEDIA_PROGRESS_SHARE", "VideoDraft", "VideoPublisher", "safe_title"]
