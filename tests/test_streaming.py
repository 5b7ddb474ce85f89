"""Tests for the MJPEG preview stream."""

from __future__ import annotations

import asyncio

import numpy as np
import pytest
import simplejpeg

from med_vid.camera import BaseCamera
from med_vid.streaming import PreviewStreamer, _downscale


class _StubCamera(BaseCamera):
    def __init__(self, width: int = 64, height: int = 48) -> None:
        self.calls = 0
        self._frame = np.full((height, width, 3), 200, dtype=np.uint8)

    async def get_frame(self) -> np.ndarray:
        self.calls += 1
        return self._frame


def _split_chunk(chunk: bytes) -> tuple[list[bytes], bytes]:
    header, _, body = chunk.partition(b"\r\n\r\n")
    return header.split(b"\r\n"), body


def test_stream_yields_multipart_jpeg_chunks() -> None:
    camera = _StubCamera(width=1280, height=720)
    streamer = PreviewStreamer(lambda: camera, fps=50, max_width=320)

    async def runner() -> list[bytes]:
        chunks: list[bytes] = []
        agen = streamer.stream()
        async for chunk in agen:
            chunks.append(chunk)
            if len(chunks) == 2:
                break
        await agen.aclose()
        await streamer.aclose()
        return chunks

    chunks = asyncio.run(runner())

    assert streamer.media_type == "multipart/x-mixed-replace; boundary=frame"
    lines, body = _split_chunk(chunks[0])
    assert lines[0] == b"--frame"
    assert lines[1] == b"Content-Type: image/jpeg"
    assert body.endswith(b"\r\n")
    payload = body[:-2]
    assert lines[2] == f"Content-Length: {len(payload)}".encode()
    height, width, _, _ = simplejpeg.decode_jpeg_header(payload)
    assert (width, height) == (320, 180)
    assert streamer.subscriber_count == 0


def test_stream_ends_when_camera_is_released() -> None:
    camera = _StubCamera()
    holder: dict[str, BaseCamera | None] = {"camera": camera}
    streamer = PreviewStreamer(lambda: holder["camera"], fps=50)

    async def runner() -> int:
        count = 0
        async for _ in streamer.stream():
            count += 1
            if count == 2:
                holder["camera"] = None
        return count

    count = asyncio.run(asyncio.wait_for(runner(), timeout=5))

    assert count >= 2
    assert streamer.subscriber_count == 0


def test_stream_without_camera_finishes_immediately() -> None:
    streamer = PreviewStreamer(lambda: None)

    async def runner() -> list[bytes]:
        return [chunk async for chunk in streamer.stream()]

    assert asyncio.run(asyncio.wait_for(runner(), timeout=5)) == []


def test_downscale_keeps_small_frames() -> None:
    frame = np.zeros((10, 20, 3), dtype=np.uint8)

    assert _downscale(frame, 40) is frame
    assert _downscale(np.zeros((100, 400, 3), dtype=np.uint8), 200).shape == (50, 200, 3)


@pytest.mark.parametrize("kwargs", [{"fps": 0}, {"jpeg_quality": 0}, {"max_width": 0}])
def test_invalid_streamer_settings(kwargs) -> None:
    with pytest.raises(ValueError):
        PreviewStreamer(lambda: None, **kwargs)
