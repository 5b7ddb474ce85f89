"""Tests for the publish flow over local storage and the catalogue."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from med_vid.catalog import VideoCatalog
from med_vid.errors import CatalogError, PublishError, SelectionMissing
from med_vid.identity import Identity
from med_vid.media import MediaBlob
from med_vid.publishing import VideoDraft, VideoPublisher, safe_title
from med_vid.storage import LocalObjectStorage
from med_vid.system_log import SystemLog
from med_vid.thumbnails import (
    CandidateStatus,
    CaptureFailure,
    ThumbnailCandidate,
    ThumbnailSet,
)

DOCTOR = Identity("doc-7", display_name="Dr Quinn")
VIDEO = MediaBlob(b"v" * 1000, "video/webm;codecs=vp9")


def _thumbnails(*, selected: int | None = 0, payload: bytes = b"\xff\xd8jpeg") -> ThumbnailSet:
    candidates = [
        ThumbnailCandidate(
            0, 1.0, CandidateStatus.CAPTURED, image_blob=MediaBlob(payload, "image/jpeg")
        ),
        ThumbnailCandidate.failed(1, 2.0, CaptureFailure.SEEK_TIMEOUT),
    ]
    return ThumbnailSet(candidates, (1.0, 2.0), 3.0, selected_index=selected)


class _Env:
    def __init__(self, root: Path) -> None:
        self.storage = LocalObjectStorage(root / "media")
        self.catalog = VideoCatalog(root / "videos")
        self.log = SystemLog(root / "log.jsonl")
        self.publisher = VideoPublisher(self.storage, self.catalog, system_log=self.log)

    def stored_files(self) -> list[str]:
        return sorted(
            str(path.relative_to(self.storage.root))
            for path in self.storage.root.rglob("*")
            if path.is_file()
        )


def test_publish_uploads_media_and_thumbnail(tmp_path: Path) -> None:
    env = _Env(tmp_path)
    progress: list[int] = []
    draft = VideoDraft(
        title="Knee Exam: Day 2",
        description="  Follow-up  ",
        keywords="knee, ortho",
        featured=True,
        duration_seconds=75,
    )

    record = asyncio.run(
        env.publisher.publish(draft, VIDEO, _thumbnails(), DOCTOR, on_progress=progress.append)
    )

    assert record.media_storage_path == f"videos/doc-7/{record.id}_knee_exam_day_2.webm"
    assert record.thumbnail_storage_path == f"thumbnails/doc-7/{record.id}_thumbnail.jpg"
    assert record.media_url == f"/media/{record.media_storage_path}"
    assert record.owner_name == "Dr Quinn"
    assert record.description == "Follow-up"
    assert record.tags == ["knee", "ortho"]
    assert record.formatted_duration == "01:15"
    assert record.featured is True
    assert record.media_size == 1000
    assert env.catalog.get(record.id) == record
    assert env.storage.local_path(record.media_storage_path).read_bytes() == VIDEO.data
    assert progress[0] == 0 and progress[-1] == 100
    assert progress == sorted(progress)
    assert 80 in progress
    assert [entry.event for entry in env.log.tail(category="publishing")] == ["published"]


@pytest.mark.parametrize(
    ("draft", "media", "identity"),
    [
        (VideoDraft(title="   "), VIDEO, DOCTOR),
        (VideoDraft(title="Title"), VIDEO, None),
        (VideoDraft(title="Title"), None, DOCTOR),
        (VideoDraft(title="Title"), MediaBlob(b"", "video/webm"), DOCTOR),
    ],
)
def test_publish_validates_inputs(tmp_path: Path, draft, media, identity) -> None:
    env = _Env(tmp_path)

    with pytest.raises(PublishError):
        asyncio.run(env.publisher.publish(draft, media, _thumbnails(), identity))

    assert env.stored_files() == []
    assert env.catalog.count() == 0


def test_publish_requires_thumbnail_selection(tmp_path: Path) -> None:
    env = _Env(tmp_path)

    with pytest.raises(PublishError):
        asyncio.run(env.publisher.publish(VideoDraft("Title"), VIDEO, None, DOCTOR))
    with pytest.raises(SelectionMissing):
        asyncio.run(
            env.publisher.publish(VideoDraft("Title"), VIDEO, _thumbnails(selected=None), DOCTOR)
        )
    with pytest.raises(SelectionMissing):
        asyncio.run(
            env.publisher.publish(VideoDraft("Title"), VIDEO, _thumbnails(selected=1), DOCTOR)
        )
    assert env.stored_files() == []


def test_failed_catalogue_write_removes_uploads(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env = _Env(tmp_path)

    def refuse(record):
        raise CatalogError("disk full")

    monkeypatch.setattr(env.catalog, "add", refuse)

    with pytest.raises(PublishError, match="disk full"):
        asyncio.run(env.publisher.publish(VideoDraft("Title"), VIDEO, _thumbnails(), DOCTOR))

    assert env.stored_files() == []


def test_replace_thumbnail_swaps_objects(tmp_path: Path) -> None:
    env = _Env(tmp_path)

    async def runner():
        record = await env.publisher.publish(VideoDraft("Title"), VIDEO, _thumbnails(), DOCTOR)
        replacement = _thumbnails(payload=b"\xff\xd8new")
        updated = await env.publisher.replace_thumbnail(record.id, replacement)
        return record, updated

    record, updated = asyncio.run(runner())

    assert updated.thumbnail_storage_path != record.thumbnail_storage_path
    assert updated.thumbnail_storage_path.startswith(f"thumbnails/doc-7/{record.id}_thumbnail_")
    assert not env.storage.exists(record.thumbnail_storage_path)
    assert env.storage.local_path(updated.thumbnail_storage_path).read_bytes() == b"\xff\xd8new"
    assert env.catalog.get(record.id).thumbnail_url == updated.thumbnail_url


def test_delete_video_removes_record_and_objects(tmp_path: Path) -> None:
    env = _Env(tmp_path)

    async def runner():
        record = await env.publisher.publish(VideoDraft("Title"), VIDEO, _thumbnails(), DOCTOR)
        env.storage.delete(record.thumbnail_storage_path)
        return await env.publisher.delete_video(record.id)

    removed = asyncio.run(runner())

    assert removed.title == "Title"
    assert env.catalog.count() == 0
    assert env.stored_files() == []


def test_safe_title() -> None:
    assert safe_title("Hip / Knee -- Left!", "fallback") == "hip_knee_left"
    assert safe_title("!!!", "fallback") == "fallback"


def test_replace_thumbnail_requires_captured_selection(tmp_path: Path) -> None:
    env = _Env(tmp_path)

    async def runner():
        record = await env.publisher.publish(VideoDraft("Title"), VIDEO, _thumbnails(), DOCTOR)
        with pytest.raises(SelectionMissing):
            await env.publisher.replace_thumbnail(record.id, _thumbnails(selected=1))
        return record

    record = asyncio.run(runner())

    assert env.catalog.get(record.id).thumbnail_storage_path == record.thumbnail_storage_path
    assert len(env.stored_files()) == 2
