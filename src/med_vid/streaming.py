"""Live MJPEG preview of the camera held by the recording session."""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncGenerator, Callable

import numpy as np

from .camera import BaseCamera
from .imaging import encode_frame_to_jpeg, scaled_dimensions

logger = logging.getLogger(__name__)

CameraProvider = Callable[[], "BaseCamera | None"]


def _downscale(frame: np.ndarray, max_width: int) -> np.ndarray:
    height, width = frame.shape[:2]
    if width <= max_width:
        return frame
    target_width, target_height = scaled_dimensions(width, height, max_width)
    rows = np.linspace(0, height - 1, target_height).astype(np.intp)
    cols = np.linspace(0, width - 1, target_width).astype(np.intp)
    return np.ascontiguousarray(frame[rows][:, cols])


@dataclass
class PreviewStreamer:
    """Encode frames from the live camera into an MJPEG stream.

    The camera is looked up on every frame, so the stream ends on its own
    once the session releases the device.
    """

    camera_provider: CameraProvider
    fps: int = 15
    jpeg_quality: int = 80
    max_width: int = 640
    boundary: str = "frame"
    _frame_interval: float = field(init=False)
    _subscribers: set[asyncio.Queue[bytes | None]] = field(init=False, default_factory=set)
    _producer_task: asyncio.Task[None] | None = field(init=False, default=None)
    _lock: asyncio.Lock = field(init=False, default_factory=asyncio.Lock)

    def __post_init__(self) -> None:
        if self.fps <= 0:
            raise ValueError("fps must be positive")
        if not (1 <= self.jpeg_quality <= 100):
            raise ValueError("jpeg_quality must be between 1 and 100")
        if self.max_width <= 0:
            raise ValueError("max_width must be positive")
        self._frame_interval = 1.0 / float(self.fps)

    @property
    def media_type(self) -> str:
        return f"multipart/x-mixed-replace; boundary={self.boundary}"

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def stream(self) -> AsyncGenerator[bytes, None]:
        """Yield MJPEG chunks until the camera goes away."""

        queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=1)
        async with self._subscriber(queue):
            while True:
                payload = await queue.get()
                if payload is None:
                    return
                yield self._render_chunk(payload)

    async def aclose(self) -> None:
        async with self._lock:
            subscribers = list(self._subscribers)
            self._subscribers.clear()
            task = self._producer_task
            self._producer_task = None
        for queue in subscribers:
            self._offer(queue, None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    @asynccontextmanager
    async def _subscriber(self, queue: asyncio.Queue[bytes | None]):
        await self._register(queue)
        try:
            yield
        finally:
            await self._unregister(queue)

    async def _register(self, queue: asyncio.Queue[bytes | None]) -> None:
        async with self._lock:
            self._subscribers.add(queue)
            if self._producer_task is None or self._producer_task.done():
                self._producer_task = asyncio.create_task(self._produce_frames())

    async def _unregister(self, queue: asyncio.Queue[bytes | None]) -> None:
        async with self._lock:
            self._subscribers.discard(queue)
            task = self._producer_task if not self._subscribers else None
            if task is not None:
                self._producer_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _produce_frames(self) -> None:
        try:
            while True:
                iteration_start = time.perf_counter()
                camera = self.camera_provider()
                if camera is None:
                    logger.debug("Preview camera released; ending stream")
                    break
                try:
                    frame = await camera.get_frame()
                    jpeg = await asyncio.to_thread(self._encode_frame, frame)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Failed to produce preview frame")
                    await asyncio.sleep(self._frame_interval)
                    continue
                self._broadcast(jpeg)
                sleep_for = self._frame_interval - (time.perf_counter() - iteration_start)
                if sleep_for > 0:
                    await asyncio.sleep(sleep_for)
        except asyncio.CancelledError:
            return
        for queue in list(self._subscribers):
            self._offer(queue, None)

    def _broadcast(self, payload: bytes) -> None:
        for queue in list(self._subscribers):
            self._offer(queue, payload)

    def _offer(self, queue: asyncio.Queue[bytes | None], payload: bytes | None) -> None:
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:  # pragma: no cover - consumer caught up
                pass
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:  # pragma: no cover - queue drained concurrently
                logger.debug("Dropping preview frame after queue remained full")

    def _encode_frame(self, frame: np.ndarray) -> bytes:
        array = _downscale(np.asarray(frame), self.max_width)
        return encode_frame_to_jpeg(array, quality=self.jpeg_quality)

    def _render_chunk(self, payload: bytes) -> bytes:
        header = (
            f"--{self.boundary}\r\n"
            "Content-Type: image/jpeg\r\n"
            f"Content-Length: {len(payload)}\r\n"
            "\r\n"
        ).encode("ascii")
        return header + payload + b"\r\n"


__all__ = ["CameraProvider", "PreviewStreamer"]
