"""Recording session lifecycle: acquire, record, stop, reset."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Iterable, Sequence

from .camera import BaseCamera, MediaConstraints, create_camera, identify_camera
from .errors import (
    CameraError,
    DeviceUnavailable,
    EmptyRecording,
    InvalidSessionState,
    SessionError,
)
from .media import MediaBlob, ObjectUrlRegistry
from .recorder import MediaRecorder, RecorderFactory, create_av_recorder
from .system_log import SystemLog
from .timing import ElapsedCounter, format_duration
from .video_encoding import (
    DEFAULT_FORMAT_PREFERENCES,
    PLATFORM_DEFAULT_FORMAT,
    RecordingFormat,
    is_format_supported,
    negotiate_format,
)

logger = logging.getLogger(__name__)

CameraFactory = Callable[[MediaConstraints], Awaitable[BaseCamera]]


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_PERMISSION = "awaiting_permission"
    LIVE = "live"
    RECORDING = "recording"
    STOPPED = "stopped"
    FAILED = "failed"


def default_camera_factory(
    choice: str | None = None,
    device_map: dict[str, int] | None = None,
) -> CameraFactory:
    """Return a factory opening cameras off the event loop."""

    async def _factory(constraints: MediaConstraints) -> BaseCamera:
        return await asyncio.to_thread(
            create_camera, constraints, choice, device_map=device_map
        )

    return _factory


class RecordingSession:
    """Owns one capture from device acquisition to a finished blob.

    ``output_blob`` is only ever set in :attr:`SessionState.STOPPED` and the
    camera handle is only held in ``LIVE`` or ``RECORDING``.
    """

    def __init__(
        self,
        *,
        camera_factory: CameraFactory | None = None,
        recorder_factory: RecorderFactory | None = None,
        object_urls: ObjectUrlRegistry | None = None,
        format_preferences: Sequence[str] = DEFAULT_FORMAT_PREFERENCES,
        format_probe: Callable[[RecordingFormat], bool] = is_format_supported,
        tick_interval: float = 1.0,
        system_log: SystemLog | None = None,
    ) -> None:
        self._camera_factory = camera_factory or default_camera_factory()
        self._recorder_factory = recorder_factory or create_av_recorder
        self.object_urls = object_urls if object_urls is not None else ObjectUrlRegistry()
        self._format_preferences = tuple(format_preferences)
        self._format_probe = format_probe
        self._system_log = system_log
        self._counter = ElapsedCounter(tick_interval)
        self._lock = asyncio.Lock()
        self._state = SessionState.IDLE
        self._camera: BaseCamera | None = None
        self._constraints: MediaConstraints | None = None
        self._recorder: MediaRecorder | None = None
        self._negotiated_format: RecordingFormat | None = None
        self._format_locked = False
        self._output_blob: MediaBlob | None = None
        self._output_url: str | None = None
        self._elapsed_seconds = 0
        self._error: SessionError | None = None

    # ------------------------------ properties -----------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def media_handle(self) -> BaseCamera | None:
        return self._camera

    @property
    def elapsed_seconds(self) -> int:
        if self._state is SessionState.RECORDING:
            return self._counter.value
        return self._elapsed_seconds

    @property
    def negotiated_format(self) -> RecordingFormat | None:
        return self._negotiated_format

    @property
    def output_blob(self) -> MediaBlob | None:
        return self._output_blob

    @property
    def output_url(self) -> str | None:
        return self._output_url

    @property
    def error(self) -> SessionError | None:
        return self._error

    def status(self) -> dict[str, object]:
        blob = self._output_blob
        return {
            "state": self._state.value,
            "elapsed_seconds": self.elapsed_seconds,
            "formatted_elapsed": format_duration(self.elapsed_seconds),
            "negotiated_format": (
                self._negotiated_format.mime_type if self._negotiated_format else None
            ),
            "camera": identify_camera(self._camera) if self._camera is not None else None,
            "constraints": self._constraints.to_dict() if self._constraints else None,
            "output_url": self._output_url,
            "output_size": blob.size if blob is not None else None,
            "output_type": blob.media_type if blob is not None else None,
            "error": str(self._error) if self._error is not None else None,
        }

    # ------------------------------ operations -----------------------------
    async def acquire(self, constraints: MediaConstraints | None = None) -> BaseCamera:
        """Open a live source matching ``constraints`` and move to ``LIVE``."""

        constraints = constraints or MediaConstraints()
        async with self._lock:
            self._require(SessionState.IDLE, operation="acquire")
            self._state = SessionState.AWAITING_PERMISSION
            self._constraints = constraints
            try:
                camera = await self._camera_factory(constraints)
            except SessionError as exc:
                self._fail(exc)
                raise
            except (CameraError, OSError) as exc:
                error = DeviceUnavailable(str(exc))
                self._fail(error)
                raise error from exc
            self._camera = camera
            self._state = SessionState.LIVE
        logger.info("Acquired %s camera for %s-facing capture", identify_camera(camera), constraints.facing_mode)
        self._log("acquire", "Capture device acquired.", constraints.to_dict())
        return camera

    def negotiate_format(self, candidates: Iterable[str] | None = None) -> RecordingFormat | None:
        """Pick the first supported format; ``None`` means platform default."""

        if self._format_locked:
            raise InvalidSessionState("Recording format is fixed once recording starts")
        preferences = tuple(candidates) if candidates is not None else self._format_preferences
        self._negotiated_format = negotiate_format(preferences, is_supported=self._format_probe)
        return self._negotiated_format

    async def start(self) -> RecordingFormat:
        """Begin recording from the live source."""

        async with self._lock:
            self._require(SessionState.LIVE, operation="start")
            assert self._camera is not None
            self._discard_output()
            if self._negotiated_format is None:
                self.negotiate_format()
            fmt = self._negotiated_format or PLATFORM_DEFAULT_FORMAT
            recorder = self._recorder_factory(self._camera, fmt)
            await recorder.start()
            self._recorder = recorder
            self._format_locked = True
            self._elapsed_seconds = 0
            self._counter.start()
            self._state = SessionState.RECORDING
        logger.info("Recording started using %s", fmt.mime_type)
        self._log("start", "Recording started.", {"format": fmt.mime_type})
        return fmt

    async def stop(self) -> MediaBlob:
        """Stop recording and assemble the finished blob."""

        async with self._lock:
            self._require(SessionState.RECORDING, operation="stop")
            recorder = self._recorder
            assert recorder is not None
            self._recorder = None
            try:
                chunks = await recorder.stop()
            except Exception as exc:
                error = SessionError(f"Recorder failed to finalise: {exc}")
                self._fail(error)
                raise error from exc
            finally:
                self._elapsed_seconds = self._counter.freeze()
                await self._release_camera()
            chunks = [chunk for chunk in chunks if chunk]
            if not chunks:
                error = EmptyRecording(
                    "No video data was recorded. The recording might have been too short."
                )
                self._fail(error)
                raise error
            media_type = recorder.mime_type or (
                self._negotiated_format or PLATFORM_DEFAULT_FORMAT
            ).mime_type
            blob = MediaBlob(b"".join(chunks), media_type)
            self._output_blob = blob
            self._output_url = self.object_urls.create(blob)
            self._state = SessionState.STOPPED
        logger.info(
            "Recording stopped after %s (%d bytes, %s)",
            format_duration(self._elapsed_seconds),
            blob.size,
            blob.media_type,
        )
        self._log(
            "stop",
            "Recording stopped.",
            {
                "elapsed_seconds": self._elapsed_seconds,
                "size_bytes": blob.size,
                "media_type": blob.media_type,
            },
        )
        return blob

    async def reset(self) -> None:
        """Release every held resource and return to ``IDLE``."""

        async with self._lock:
            self._counter.reset()
            recorder = self._recorder
            self._recorder = None
            if recorder is not None:
                try:
                    await recorder.abort()
                except Exception:  # pragma: no cover - best effort cleanup
                    logger.warning("Failed to abort recorder during reset", exc_info=True)
            await self._release_camera()
            self._discard_output()
            self._state = SessionState.IDLE
            self._constraints = None
            self._negotiated_format = None
            self._format_locked = False
            self._elapsed_seconds = 0
            self._error = None

    # ------------------------------ helpers --------------------------------
    def _require(self, expected: SessionState, *, operation: str) -> None:
        if self._state is not expected:
            raise InvalidSessionState(
                f"Cannot {operation} while session is {self._state.value}; expected {expected.value}"
            )

    def _fail(self, error: SessionError) -> None:
        self._state = SessionState.FAILED
        self._error = error
        logger.warning("Recording session failed: %s", error)
        self._log("failed", str(error), {"error": type(error).__name__})

    def _discard_output(self) -> None:
        if self._output_url is not None:
            self.object_urls.revoke(self._output_url)
        self._output_url = None
        self._output_blob = None

    async def _release_camera(self) -> None:
        camera = self._camera
        self._camera = None
        if camera is None:
            return
        try:
            await camera.close()
        except Exception as exc:  # pragma: no cover - best effort cleanup
            logger.warning("Failed to release camera: %s", exc)

    def _log(self, event: str, message: str, metadata: dict[str, object] | None = None) -> None:
        if self._system_log is None:
            return
        self._system_log.record("recording", event, message, metadata=metadata)


__all__ = [
    "CameraFactory",
    "RecordingSession",
    "SessionState",
    "default_camera_factory",
]
