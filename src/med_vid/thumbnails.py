"""Thumbnail candidate generation from recorded or uploaded videos.

A generation pass picks up to ``target_count`` time points from the clip
duration and captures one still frame per point. Every capture runs in its
own pipeline with its own decoder, and all pipelines run concurrently. A
pipeline never raises: a timeout or a decode problem turns into a failed
candidate, so one bad seek cannot hold up or abort its siblings.

Results go back into a list of exactly ``target_count`` slots in time
order. Slots that failed, or had no time point, stay empty so that grid
positions do not move. The lowest captured slot becomes the default
selection.
"""
from __future__ import annotations

import asyncio
import io
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Protocol

import av
import numpy as np

from .errors import SelectionMissing
from .imaging import encode_frame_to_jpeg, scaled_dimensions
from .media import MediaBlob, ObjectUrlRegistry
from .system_log import SystemLog

logger = logging.getLogger(__name__)

DEFAULT_TARGET_COUNT = 5
DEFAULT_MAX_WIDTH = 320
DEFAULT_JPEG_QUALITY = 85
DEFAULT_METADATA_TIMEOUT = 5.0
DEFAULT_SEEK_TIMEOUT = 5.0
DEFAULT_SETTLE_DELAY = 0.05

EDGE_MARGIN = 0.01
SHORT_CLIP_SECONDS = 1.0
# Short-clip points closer than this count as one collapsed point.
SHORT_CLIP_MIN_SEPARATION = 0.15
FALLBACK_DURATION = 0.1
"""Duration assumed when a source cannot be probed."""

THUMBNAIL_MEDIA_TYPE = "image/jpeg"


class MediaDecodeError(RuntimeError):
    """Raised by media elements when the source cannot be decoded."""


class CandidateStatus(str, Enum):
    PENDING = "pending"
    CAPTURED = "captured"
    FAILED = "failed"


class CaptureFailure(str, Enum):
    METADATA_TIMEOUT = "metadata_timeout"
    SEEK_TIMEOUT = "seek_timeout"
    ZERO_DIMENSIONS = "zero_dimensions"
    ENCODE_EMPTY = "encode_empty"
    DECODE_ERROR = "decode_error"
    NO_TIME_POINT = "no_time_point"


@dataclass(frozen=True, slots=True)
class MediaMetadata:
    width: int
    height: int
    duration: float | None


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def compute_time_points(
    total_duration: float, target_count: int = DEFAULT_TARGET_COUNT
) -> tuple[float, ...]:
    """Return distinct, increasing capture offsets inside ``(0, total_duration)``."""

    try:
        duration = float(total_duration)
    except (TypeError, ValueError) as exc:
        raise ValueError("Duration must be numeric") from exc
    if not math.isfinite(duration) or duration <= 0:
        raise ValueError("Duration must be a finite positive number of seconds")
    if int(target_count) < 1:
        raise ValueError("target_count must be at least 1")
    count = int(target_count)

    low = EDGE_MARGIN
    high = duration - EDGE_MARGIN
    midpoint = duration / 2.0

    if duration < SHORT_CLIP_SECONDS:
        points: list[float] = []
        if low < high:
            first = _clamp(midpoint, low, high)
            second = _clamp(duration * 0.9, low, high)
            if second - first >= SHORT_CLIP_MIN_SEPARATION:
                points = [first, second]
            else:
                points = [first]
        if not points:
            points = [midpoint]
    else:
        points = [
            _clamp(duration * k / (count + 1), low, high)
            for k in range(1, count + 1)
        ]

    unique: list[float] = []
    for point in points:
        if point not in unique:
            unique.append(point)
    return tuple(unique[:count])


def _seek_target(time_point: float, duration: float | None) -> float:
    if duration is None or not math.isfinite(duration) or duration <= 2 * EDGE_MARGIN:
        return max(0.0, time_point)
    return _clamp(time_point, EDGE_MARGIN, duration - EDGE_MARGIN)


class MediaElement(Protocol):
    """A hidden, muted decoder bound to one source."""

    async def load_metadata(self) -> MediaMetadata:  # pragma: no cover - interface only
        ...

    def request_seek(self, time_point: float) -> None:  # pragma: no cover - interface only
        ...

    async def wait_seeked(self) -> None:  # pragma: no cover - interface only
        ...

    def is_frame_ready(self) -> bool:  # pragma: no cover - interface only
        ...

    def frame_size(self) -> tuple[int, int]:  # pragma: no cover - interface only
        ...

    def render(self, width: int, height: int) -> np.ndarray:  # pragma: no cover - interface only
        ...

    async def close(self) -> None:  # pragma: no cover - interface only
        ...


ElementFactory = Callable[[MediaBlob], MediaElement]


class AvMediaElement:
    """PyAV-backed media element decoding a blob held in memory.

    Only video streams are opened, which keeps the element silent.
    """

    def __init__(self, source: MediaBlob) -> None:
        self._data = source.data
        self._container = None
        self._stream = None
        self._frame: av.VideoFrame | None = None
        self._seek_task: asyncio.Task[None] | None = None
        self._seek_error: Exception | None = None
        self._seeked = asyncio.Event()
        self._state_lock = threading.Lock()
        self._closed = False

    async def load_metadata(self) -> MediaMetadata:
        return await asyncio.to_thread(self._open)

    def _open(self) -> MediaMetadata:
        try:
            container = av.open(io.BytesIO(self._data), mode="r")
        except av.FFmpegError as exc:
            raise MediaDecodeError(f"Unable to open media: {exc}") from exc
        if not container.streams.video:
            container.close()
            raise MediaDecodeError("Media has no video stream")
        stream = container.streams.video[0]
        with self._state_lock:
            if self._closed:
                # The element was closed while this thread was still opening.
                container.close()
                raise MediaDecodeError("Media element closed before metadata loaded")
            self._container = container
            self._stream = stream
        duration: float | None = None
        if stream.duration is not None and stream.time_base is not None:
            duration = float(stream.duration * stream.time_base)
        elif container.duration is not None:
            duration = container.duration / float(av.time_base)
        return MediaMetadata(
            width=int(stream.codec_context.width or 0),
            height=int(stream.codec_context.height or 0),
            duration=duration,
        )

    def request_seek(self, time_point: float) -> None:
        if self._container is None:
            raise MediaDecodeError("Metadata must be loaded before seeking")
        self._frame = None
        self._seek_error = None
        self._seeked.clear()
        self._seek_task = asyncio.get_running_loop().create_task(self._seek(time_point))

    async def _seek(self, time_point: float) -> None:
        try:
            self._frame = await asyncio.to_thread(self._decode_at, time_point)
        except Exception as exc:
            self._seek_error = exc
            logger.debug("Seek to %.3fs failed: %s", time_point, exc)
        finally:
            self._seeked.set()

    def _decode_at(self, time_point: float) -> av.VideoFrame | None:
        container = self._container
        stream = self._stream
        if stream.time_base:
            offset = int(time_point / stream.time_base)
            seek_kwargs: dict[str, object] = {"stream": stream}
        else:
            offset = int(time_point * av.time_base)
            seek_kwargs = {}
        try:
            container.seek(offset, backward=True, any_frame=False, **seek_kwargs)
        except av.FFmpegError:
            # Containers without a seek index are decoded from the start.
            container.seek(0)
        selected = None
        for frame in container.decode(stream):
            selected = frame
            if frame.time is not None and frame.time >= time_point:
                break
        return selected

    async def wait_seeked(self) -> None:
        await self._seeked.wait()
        if self._seek_error is not None:
            raise MediaDecodeError(str(self._seek_error)) from self._seek_error

    def is_frame_ready(self) -> bool:
        return self._frame is not None

    def frame_size(self) -> tuple[int, int]:
        if self._frame is None:
            return (0, 0)
        return (int(self._frame.width), int(self._frame.height))

    def render(self, width: int, height: int) -> np.ndarray:
        if self._frame is None:
            raise MediaDecodeError("No decoded frame available")
        return self._frame.reformat(width=width, height=height, format="rgb24").to_ndarray()

    async def close(self) -> None:
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        task = self._seek_task
        if task is not None and not task.done():
            # The decoder thread still owns the container; close once it finishes.
            task.add_done_callback(lambda _task: self._close_container())
            return
        self._close_container()

    def _close_container(self) -> None:
        container = self._container
        self._container = None
        self._stream = None
        self._frame = None
        if container is None:
            return
        try:
            container.close()
        except Exception:  # pragma: no cover - best effort cleanup
            logger.debug("Failed to close media element", exc_info=True)


@dataclass(frozen=True, slots=True)
class ThumbnailCandidate:
    """One attempted capture, stable at its ``index`` whatever the outcome."""

    index: int
    time_point: float | None
    status: CandidateStatus = CandidateStatus.PENDING
    image_blob: MediaBlob | None = None
    preview_handle: str | None = None
    failure: CaptureFailure | None = None

    @property
    def is_empty(self) -> bool:
        return self.image_blob is None

    @classmethod
    def failed(
        cls, index: int, time_point: float | None, reason: CaptureFailure
    ) -> "ThumbnailCandidate":
        return cls(index, time_point, CandidateStatus.FAILED, failure=reason)

    def to_dict(self) -> dict[str, object]:
        return {
            "index": self.index,
            "time_point": self.time_point,
            "status": self.status.value,
            "preview_url": self.preview_handle,
            "size_bytes": self.image_blob.size if self.image_blob is not None else None,
            "failure": self.failure.value if self.failure is not None else None,
        }


@dataclass(frozen=True, slots=True)
class ThumbnailRequest:
    """One generation pass over a source; the source is borrowed, never owned."""

    source: MediaBlob
    total_duration: float
    target_count: int
    time_points: tuple[float, ...]

    @classmethod
    def build(
        cls, source: MediaBlob, total_duration: float, target_count: int
    ) -> "ThumbnailRequest":
        points = compute_time_points(total_duration, target_count)
        return cls(source, float(total_duration), int(target_count), points)


@dataclass
class ThumbnailSet:
    """Fixed-length candidate slots plus the caller's current selection."""

    candidates: list[ThumbnailCandidate]
    time_points: tuple[float, ...]
    total_duration: float
    source_url: str | None = None
    selected_index: int | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def captured_count(self) -> int:
        return sum(1 for candidate in self.candidates if not candidate.is_empty)

    def select_default(self) -> int | None:
        self.selected_index = next(
            (c.index for c in self.candidates if c.status is CandidateStatus.CAPTURED),
            None,
        )
        return self.selected_index

    def select(self, index: int) -> ThumbnailCandidate:
        if not (0 <= index < len(self.candidates)):
            raise ValueError(f"Thumbnail index {index} is out of range")
        candidate = self.candidates[index]
        if candidate.is_empty:
            raise SelectionMissing(f"Thumbnail slot {index} has no captured image")
        self.selected_index = index
        return candidate

    def selected_candidate(self) -> ThumbnailCandidate:
        if self.selected_index is None:
            raise SelectionMissing("Select a thumbnail before continuing")
        candidate = self.candidates[self.selected_index]
        if candidate.is_empty:
            raise SelectionMissing("The selected thumbnail is not available")
        return candidate

    def selected_image(self) -> MediaBlob:
        blob = self.selected_candidate().image_blob
        if blob is None:
            raise SelectionMissing("The selected thumbnail is not available")
        return blob

    def preview_handles(self) -> list[str]:
        return [c.preview_handle for c in self.candidates if c.preview_handle]

    def to_dict(self) -> dict[str, object]:
        return {
            "source_url": self.source_url,
            "total_duration": self.total_duration,
            "time_points": list(self.time_points),
            "selected_index": self.selected_index,
            "captured_count": self.captured_count,
            "candidates": [candidate.to_dict() for candidate in self.candidates],
        }


class ThumbnailCandidateGenerator:
    """Captures still-frame candidates concurrently and owns their previews."""

    def __init__(
        self,
        previews: ObjectUrlRegistry,
        *,
        element_factory: ElementFactory = AvMediaElement,
        target_count: int = DEFAULT_TARGET_COUNT,
        max_width: int = DEFAULT_MAX_WIDTH,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
        metadata_timeout: float = DEFAULT_METADATA_TIMEOUT,
        seek_timeout: float = DEFAULT_SEEK_TIMEOUT,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        system_log: SystemLog | None = None,
    ) -> None:
        if target_count < 1:
            raise ValueError("target_count must be at least 1")
        if max_width <= 0:
            raise ValueError("max_width must be positive")
        if not (1 <= jpeg_quality <= 100):
            raise ValueError("jpeg_quality must be between 1 and 100")
        if metadata_timeout <= 0 or seek_timeout <= 0:
            raise ValueError("Timeouts must be positive")
        if settle_delay <= 0:
            raise ValueError("settle_delay must be positive")
        self._previews = previews
        self._element_factory = element_factory
        self.target_count = int(target_count)
        self.max_width = int(max_width)
        self.jpeg_quality = int(jpeg_quality)
        self.metadata_timeout = float(metadata_timeout)
        self.seek_timeout = float(seek_timeout)
        self.settle_delay = float(settle_delay)
        self._system_log = system_log
        self._current: ThumbnailSet | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> ThumbnailSet | None:
        return self._current

    def release(self) -> int:
        """Revoke every preview from the current set and forget it."""

        current = self._current
        self._current = None
        if current is None:
            return 0
        revoked = 0
        for handle in current.preview_handles():
            if self._previews.revoke(handle):
                revoked += 1
        return revoked

    async def generate(
        self,
        source: MediaBlob,
        total_duration: float,
        *,
        source_url: str | None = None,
    ) -> ThumbnailSet:
        """Run one generation pass and return the new candidate set."""

        request = ThumbnailRequest.build(source, total_duration, self.target_count)
        async with self._lock:
            released = self.release()
            if released:
                logger.debug("Revoked %d previews from the previous thumbnail set", released)
            started = time.perf_counter()
            results = await asyncio.gather(
                *(
                    self._capture(request.source, index, point)
                    for index, point in enumerate(request.time_points)
                )
            )
            slots = [
                ThumbnailCandidate.failed(index, None, CaptureFailure.NO_TIME_POINT)
                for index in range(request.target_count)
            ]
            for candidate in results:
                slots[candidate.index] = candidate
            thumbnail_set = ThumbnailSet(
                candidates=slots,
                time_points=request.time_points,
                total_duration=request.total_duration,
                source_url=source_url,
            )
            thumbnail_set.select_default()
            self._current = thumbnail_set
        elapsed = time.perf_counter() - started
        logger.info(
            "Generated %d/%d thumbnails in %.2fs",
            thumbnail_set.captured_count,
            len(request.time_points),
            elapsed,
        )
        if thumbnail_set.selected_index is None:
            logger.warning("No thumbnail candidates could be captured")
        if self._system_log is not None:
            self._system_log.record(
                "thumbnails",
                "generated",
                f"Captured {thumbnail_set.captured_count} of {len(request.time_points)} thumbnails.",
                metadata={
                    "duration": request.total_duration,
                    "failures": [
                        c.failure.value for c in results if c.failure is not None
                    ] or None,
                },
            )
        return thumbnail_set

    async def _capture(
        self, source: MediaBlob, index: int, time_point: float
    ) -> ThumbnailCandidate:
        try:
            element = self._element_factory(source)
        except Exception:
            logger.exception("Thumbnail[%d]: unable to create media element", index)
            return ThumbnailCandidate.failed(index, time_point, CaptureFailure.DECODE_ERROR)
        try:
            return await self._capture_with(element, index, time_point)
        except Exception as exc:
            logger.warning("Thumbnail[%d] at %.2fs failed: %s", index, time_point, exc)
            return ThumbnailCandidate.failed(index, time_point, CaptureFailure.DECODE_ERROR)
        finally:
            try:
                await element.close()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Thumbnail[%d]: element cleanup failed", index, exc_info=True)

    async def _capture_with(
        self, element: MediaElement, index: int, time_point: float
    ) -> ThumbnailCandidate:
        try:
            metadata = await asyncio.wait_for(
                element.load_metadata(), timeout=self.metadata_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Thumbnail[%d]: metadata not ready after %.1fs", index, self.metadata_timeout
            )
            return ThumbnailCandidate.failed(index, time_point, CaptureFailure.METADATA_TIMEOUT)

        element.request_seek(_seek_target(time_point, metadata.duration))
        if not await self._wait_until_seeked(element):
            logger.warning("Thumbnail[%d]: seek to %.2fs timed out", index, time_point)
            return ThumbnailCandidate.failed(index, time_point, CaptureFailure.SEEK_TIMEOUT)

        width, height = element.frame_size()
        if width <= 0 or height <= 0:
            logger.warning("Thumbnail[%d]: frame dimensions are %dx%d", index, width, height)
            return ThumbnailCandidate.failed(index, time_point, CaptureFailure.ZERO_DIMENSIONS)

        target_width, target_height = scaled_dimensions(width, height, self.max_width)
        payload = await asyncio.to_thread(
            self._encode, element, target_width, target_height
        )
        if not payload:
            logger.warning("Thumbnail[%d]: encoder produced no data", index)
            return ThumbnailCandidate.failed(index, time_point, CaptureFailure.ENCODE_EMPTY)

        blob = MediaBlob(payload, THUMBNAIL_MEDIA_TYPE)
        logger.debug("Thumbnail[%d] captured at %.2fs (%d bytes)", index, time_point, blob.size)
        return ThumbnailCandidate(
            index=index,
            time_point=time_point,
            status=CandidateStatus.CAPTURED,
            image_blob=blob,
            preview_handle=self._previews.create(blob),
        )

    async def _wait_until_seeked(self, element: MediaElement) -> bool:
        """Race the seek-completed signal against readiness polled every settle delay."""

        seeked = asyncio.ensure_future(element.wait_seeked())
        deadline = time.perf_counter() + self.seek_timeout
        try:
            while True:
                remaining = deadline - time.perf_counter()
                if remaining <= 0:
                    return element.is_frame_ready()
                done, _ = await asyncio.wait({seeked}, timeout=min(self.settle_delay, remaining))
                if seeked in done:
                    seeked.result()
                    return True
                if element.is_frame_ready():
                    return True
        finally:
            if not seeked.done():
                seeked.cancel()

    def _encode(self, element: MediaElement, width: int, height: int) -> bytes:
        frame = element.render(width, height)
        return encode_frame_to_jpeg(frame, quality=self.jpeg_quality)


def probe_duration(source: MediaBlob) -> float | None:
    """Return the container duration in seconds, or ``None`` if unknown."""

    try:
        with av.open(io.BytesIO(source.data), mode="r") as container:
            if container.duration is not None:
                return container.duration / float(av.time_base)
            for stream in container.streams.video:
                if stream.duration is not None and stream.time_base is not None:
                    return float(stream.duration * stream.time_base)
    except av.FFmpegError as exc:
        logger.warning("Unable to probe media duration: %s", exc)
    return None


__all__ = [
    "AvMediaElement",
    "CandidateStatus",
    "CaptureFailure",
    "DEFAULT_TARGET_COUNT",
    "ElementFactory",
    "FALLBACK_DURATION",
    "MediaDecodeError",
    "MediaElement",
    "MediaMetadata",
    "ThumbnailCandidate",
    "ThumbnailCandidateGenerator",
    "ThumbnailRequest",
    "ThumbnailSet",
    "compute_time_points",
    "probe_duration",
]
