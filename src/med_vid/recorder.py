"""In-memory media recorder encoding camera frames with PyAV."""
from __future__ import annotations

import asyncio
import io
import logging
import time
from fractions import Fraction
from typing import Callable, Protocol

import av
import numpy as np

from .camera import BaseCamera
from .imaging import prepare_rgb_frame
from .video_encoding import RecordingFormat

logger = logging.getLogger(__name__)

_PTS_TIME_BASE = Fraction(1, 1000)


class MediaRecorder(Protocol):
    """Buffers encoded output from a live source until stopped."""

    @property
    def mime_type(self) -> str:  # pragma: no cover - interface only
        ...

    async def start(self) -> None:  # pragma: no cover - interface only
        ...

    async def stop(self) -> list[bytes]:  # pragma: no cover - interface only
        ...

    async def abort(self) -> None:  # pragma: no cover - interface only
        ...


RecorderFactory = Callable[[BaseCamera, RecordingFormat], MediaRecorder]


def _crop_to_even(array: np.ndarray) -> np.ndarray:
    height, width = array.shape[:2]
    even_height = height - (height % 2)
    even_width = width - (width % 2)
    if even_height == height and even_width == width:
        return array
    return np.ascontiguousarray(array[:even_height, :even_width])


class AvMediaRecorder:
    """Pull frames from ``camera`` and encode them into an in-memory container.

    The container is only written once the first frame arrives, so a recorder
    that never saw a frame yields no chunks when stopped.
    """

    def __init__(
        self,
        camera: BaseCamera,
        fmt: RecordingFormat,
        *,
        fps: int | None = None,
    ) -> None:
        self._camera = camera
        self._format = fmt
        self._fps = int(fps or getattr(camera, "fps", 30) or 30)
        if self._fps <= 0:
            raise ValueError("fps must be positive")
        self._buffer = io.BytesIO()
        self._container = None
        self._stream = None
        self._size: tuple[int, int] | None = None
        self._frame_count = 0
        self._last_pts = -1
        self._started_at: float | None = None
        self._stopping: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def mime_type(self) -> str:
        # Only video is muxed, so audio codecs drop out of the reported type.
        return self._format.without_audio().mime_type

    @property
    def frame_count(self) -> int:
        return self._frame_count

    async def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("Recorder already started")
        self._stopping = asyncio.Event()
        self._started_at = time.perf_counter()
        self._task = asyncio.create_task(self._run(), name="medvid-recorder")

    async def stop(self) -> list[bytes]:
        """Stop capturing and return the buffered chunks."""

        if self._stopping is not None:
            self._stopping.set()
        task = self._task
        self._task = None
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:  # pragma: no cover - cancelled externally
                pass
        payload = await asyncio.to_thread(self._finalise)
        if not payload:
            return []
        return [payload]

    async def abort(self) -> None:
        """Stop capturing and discard whatever was encoded."""

        if self._stopping is not None:
            self._stopping.set()
        task = self._task
        self._task = None
        if task is not None:
            # Not cancelled: a frame may still be encoding into the container.
            try:
                await task
            except asyncio.CancelledError:  # pragma: no cover - cancelled externally
                pass
        await asyncio.to_thread(self._close_container)

    async def _run(self) -> None:
        assert self._stopping is not None
        interval = 1.0 / float(self._fps)
        while not self._stopping.is_set():
            iteration_start = time.perf_counter()
            try:
                frame = await self._camera.get_frame()
            except asyncio.CancelledError:  # pragma: no cover - cooperative exit
                raise
            except Exception:
                logger.exception("Failed to retrieve frame for recording")
                await self._wait_interval(interval)
                continue
            timestamp = iteration_start - (self._started_at or iteration_start)
            try:
                await asyncio.to_thread(self._encode_frame, frame, timestamp)
            except asyncio.CancelledError:  # pragma: no cover - cooperative exit
                raise
            except Exception:
                logger.exception("Failed to encode recording frame")
            elapsed = time.perf_counter() - iteration_start
            await self._wait_interval(interval - elapsed)

    async def _wait_interval(self, delay: float) -> None:
        if delay <= 0 or self._stopping is None:
            return
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _open_container(self, width: int, height: int) -> None:
        container = av.open(self._buffer, mode="w", format=self._format.container)
        stream = container.add_stream(self._format.video_codec, rate=self._fps)
        stream.width = width
        stream.height = height
        stream.pix_fmt = "yuv420p"
        stream.codec_context.time_base = _PTS_TIME_BASE
        self._container = container
        self._stream = stream
        self._size = (width, height)
        logger.debug(
            "Opened %s recorder with %s at %dx%d",
            self._format.container,
            self._format.video_codec,
            width,
            height,
        )

    def _encode_frame(self, frame: np.ndarray, timestamp: float) -> None:
        array = prepare_rgb_frame(frame)
        if self._format.requires_even_dimensions:
            array = _crop_to_even(array)
        height, width = array.shape[:2]
        if width == 0 or height == 0:
            return
        if self._container is None:
            self._open_container(width, height)
        video_frame = av.VideoFrame.from_ndarray(array, format="rgb24")
        if self._size != (width, height):
            target_width, target_height = self._size
            video_frame = video_frame.reformat(width=target_width, height=target_height)
        pts = max(int(round(timestamp / _PTS_TIME_BASE)), self._last_pts + 1)
        self._last_pts = pts
        video_frame.pts = pts
        video_frame.time_base = _PTS_TIME_BASE
        for packet in self._stream.encode(video_frame):
            self._container.mux(packet)
        self._frame_count += 1

    def _finalise(self) -> bytes:
        if self._container is None:
            return b""
        try:
            for packet in self._stream.encode(None):
                self._container.mux(packet)
        finally:
            self._close_container()
        if self._frame_count == 0:
            return b""
        return self._buffer.getvalue()

    def _close_container(self) -> None:
        container = self._container
        self._container = None
        self._stream = None
        if container is None:
            return
        try:
            container.close()
        except Exception:  # pragma: no cover - best effort cleanup
            logger.warning("Failed to close recorder container", exc_info=True)


def create_av_recorder(camera: BaseCamera, fmt: RecordingFormat) -> MediaRecorder:
    return AvMediaRecorder(camera, fmt)


__all__ = ["AvMediaRecorder", "MediaRecorder", "RecorderFactory", "create_av_recorder"]
