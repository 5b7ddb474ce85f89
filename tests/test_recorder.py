"""Integration tests for the PyAV recorder and decoder."""

from __future__ import annotations

import asyncio
import time

import av
import numpy as np
import pytest

from med_vid.camera import BaseCamera, SyntheticCamera
from med_vid.media import MediaBlob, ObjectUrlRegistry
from med_vid.recorder import AvMediaRecorder, _crop_to_even
from med_vid.thumbnails import (
    AvMediaElement,
    CandidateStatus,
    CaptureFailure,
    MediaDecodeError,
    ThumbnailCandidateGenerator,
    probe_duration,
)
from med_vid.video_encoding import PLATFORM_DEFAULT_FORMAT


class _SilentCamera(BaseCamera):
    async def get_frame(self) -> np.ndarray:
        raise RuntimeError("no signal")


def _record(seconds: float) -> MediaBlob:
    camera = SyntheticCamera(resolution=(96, 64), fps=20)
    recorder = AvMediaRecorder(camera, PLATFORM_DEFAULT_FORMAT)

    async def runner() -> list[bytes]:
        await recorder.start()
        await asyncio.sleep(seconds)
        return await recorder.stop()

    chunks = asyncio.run(runner())
    assert recorder.frame_count > 0
    return MediaBlob(b"".join(chunks), recorder.mime_type)


def test_recorder_produces_playable_media() -> None:
    blob = _record(1.5)

    assert blob.size > 0
    assert blob.media_type == "video/mp4"
    duration = probe_duration(blob)
    assert duration is not None and 0.5 < duration < 3.0


def test_recorder_without_frames_returns_no_chunks() -> None:
    recorder = AvMediaRecorder(_SilentCamera(), PLATFORM_DEFAULT_FORMAT, fps=50)

    async def runner() -> list[bytes]:
        await recorder.start()
        await asyncio.sleep(0.05)
        return await recorder.stop()

    assert asyncio.run(runner()) == []


def test_abort_discards_output() -> None:
    recorder = AvMediaRecorder(SyntheticCamera(resolution=(32, 32)), PLATFORM_DEFAULT_FORMAT)

    async def runner() -> None:
        await recorder.start()
        await asyncio.sleep(0.1)
        await recorder.abort()

    asyncio.run(runner())

    assert asyncio.run(recorder.stop()) == []


def test_probe_duration_of_garbage_is_none() -> None:
    assert probe_duration(MediaBlob(b"not a video", "video/mp4")) is None


def test_crop_to_even() -> None:
    assert _crop_to_even(np.zeros((5, 7, 3), dtype=np.uint8)).shape == (4, 6, 3)


def test_thumbnails_from_recorded_media() -> None:
    blob = _record(2.0)
    duration = probe_duration(blob)
    assert duration is not None
    generator = ThumbnailCandidateGenerator(
        ObjectUrlRegistry(), element_factory=AvMediaElement, target_count=3
    )

    result = asyncio.run(generator.generate(blob, duration))

    assert len(result.candidates) == 3
    assert result.captured_count >= 1
    captured = [c for c in result.candidates if c.status is CandidateStatus.CAPTURED]
    assert captured[0].image_blob.data[:2] == b"\xff\xd8"
    assert result.selected_index == captured[0].index


def test_element_rejects_seek_before_metadata() -> None:
    element = AvMediaElement(MediaBlob(b"", "video/mp4"))

    async def runner() -> None:
        element.request_seek(1.0)

    with pytest.raises(MediaDecodeError):
        asyncio.run(runner())


class _SlowEncodeRecorder(AvMediaRecorder):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.encoding = False
        self.closed_while_encoding: list[bool] = []

    def _encode_frame(self, frame: np.ndarray, timestamp: float) -> None:
        self.encoding = True
        try:
            time.sleep(0.3)
            super()._encode_frame(frame, timestamp)
        finally:
            self.encoding = False

    def _close_container(self) -> None:
        self.closed_while_encoding.append(self.encoding)
        super()._close_container()


def test_abort_waits_for_frame_being_encoded() -> None:
    recorder = _SlowEncodeRecorder(SyntheticCamera(resolution=(32, 32)), PLATFORM_DEFAULT_FORMAT)

    async def runner() -> None:
        await recorder.start()
        await asyncio.sleep(0.1)
        await recorder.abort()

    asyncio.run(runner())

    assert recorder.closed_while_encoding == [False]
    assert recorder.frame_count == 1


class _TrackedContainer:
    def __init__(self, container) -> None:
        self._container = container
        self.closed = False

    def __getattr__(self, name: str):
        return getattr(self._container, name)

    def close(self) -> None:
        self.closed = True
        self._container.close()


class _SlowOpenElement(AvMediaElement):
    def _open(self):
        time.sleep(0.3)
        return super()._open()


def test_metadata_timeout_closes_decoder_opened_late(monkeypatch: pytest.MonkeyPatch) -> None:
    blob = _record(1.0)
    opened: list[_TrackedContainer] = []
    real_open = av.open

    def tracking_open(*args, **kwargs):
        container = _TrackedContainer(real_open(*args, **kwargs))
        opened.append(container)
        return container

    monkeypatch.setattr(av, "open", tracking_open)
    generator = ThumbnailCandidateGenerator(
        ObjectUrlRegistry(),
        element_factory=_SlowOpenElement,
        target_count=3,
        metadata_timeout=0.1,
    )

    async def runner():
        result = await generator.generate(blob, 1.0)
        await asyncio.sleep(0.6)
        return result

    result = asyncio.run(runner())

    assert [c.failure for c in result.candidates] == [CaptureFailure.METADATA_TIMEOUT] * 3
    assert len(opened) == 3
    assert all(container.closed for container in opened)
