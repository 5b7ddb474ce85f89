"""Tests for the recording session lifecycle."""

from __future__ import annotations

import asyncio

import numpy as np
import pytest

from med_vid.camera import BaseCamera, MediaConstraints
from med_vid.errors import (
    DeviceUnavailable,
    EmptyRecording,
    InvalidSessionState,
    PermissionDenied,
    SessionError,
)
from med_vid.media import ObjectUrlRegistry
from med_vid.recording import RecordingSession, SessionState
from med_vid.system_log import SystemLog
from med_vid.video_encoding import PLATFORM_DEFAULT_FORMAT, RecordingFormat


class _StubCamera(BaseCamera):
    def __init__(self) -> None:
        self.closed = False

    async def get_frame(self) -> np.ndarray:
        return np.zeros((4, 4, 3), dtype=np.uint8)

    async def close(self) -> None:
        self.closed = True


class _FakeRecorder:
    def __init__(self, fmt: RecordingFormat, chunks: list[bytes]) -> None:
        self.fmt = fmt
        self._chunks = chunks
        self.started = False
        self.aborted = False

    @property
    def mime_type(self) -> str:
        return self.fmt.without_audio().mime_type

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> list[bytes]:
        return list(self._chunks)

    async def abort(self) -> None:
        self.aborted = True


class _Harness:
    def __init__(self, chunks: list[bytes] | None = None, *, error: Exception | None = None):
        self.cameras: list[_StubCamera] = []
        self.recorders: list[_FakeRecorder] = []
        self.chunks = [b"chunk-1", b"chunk-2"] if chunks is None else chunks
        self.error = error

    async def camera_factory(self, constraints: MediaConstraints) -> BaseCamera:
        if self.error is not None:
            raise self.error
        camera = _StubCamera()
        self.cameras.append(camera)
        return camera

    def recorder_factory(self, camera: BaseCamera, fmt: RecordingFormat) -> _FakeRecorder:
        recorder = _FakeRecorder(fmt, self.chunks)
        self.recorders.append(recorder)
        return recorder


def _session(harness: _Harness, **kwargs) -> RecordingSession:
    kwargs.setdefault("format_probe", lambda fmt: True)
    return RecordingSession(
        camera_factory=harness.camera_factory,
        recorder_factory=harness.recorder_factory,
        **kwargs,
    )


def test_full_lifecycle_produces_blob() -> None:
    harness = _Harness()
    registry = ObjectUrlRegistry()
    session = _session(harness, object_urls=registry)

    async def runner():
        await session.acquire(MediaConstraints(facing_mode="environment"))
        assert session.state is SessionState.LIVE
        assert session.media_handle is harness.cameras[0]
        fmt = await session.start()
        assert session.state is SessionState.RECORDING
        blob = await session.stop()
        return fmt, blob

    fmt, blob = asyncio.run(runner())

    assert fmt.mime_type == "video/webm;codecs=vp9,opus"
    assert session.state is SessionState.STOPPED
    assert blob.data == b"chunk-1chunk-2"
    assert blob.media_type == "video/webm;codecs=vp9"
    assert session.output_blob is blob
    assert registry.resolve(session.output_url) is blob
    assert session.media_handle is None
    assert harness.cameras[0].closed


def test_stop_without_chunks_fails_without_blob() -> None:
    harness = _Harness(chunks=[])
    session = _session(harness)

    async def runner():
        await session.acquire()
        await session.start()
        with pytest.raises(EmptyRecording):
            await session.stop()

    asyncio.run(runner())

    assert session.state is SessionState.FAILED
    assert isinstance(session.error, EmptyRecording)
    assert session.output_blob is None
    assert session.output_url is None
    assert session.media_handle is None


def test_elapsed_seconds_tracks_ticks_between_start_and_stop() -> None:
    harness = _Harness()
    session = _session(harness, tick_interval=0.05)

    async def runner():
        await session.acquire()
        await session.start()
        await asyncio.sleep(0.22)
        await session.stop()

    asyncio.run(runner())

    assert 3 <= session.elapsed_seconds <= 5


def test_permission_denied_moves_to_failed() -> None:
    harness = _Harness(error=PermissionDenied("blocked"))
    session = _session(harness)

    with pytest.raises(PermissionDenied):
        asyncio.run(session.acquire())

    assert session.state is SessionState.FAILED
    assert session.media_handle is None


def test_camera_errors_become_device_unavailable() -> None:
    harness = _Harness(error=OSError("no such device"))
    session = _session(harness)

    with pytest.raises(DeviceUnavailable):
        asyncio.run(session.acquire())

    assert session.state is SessionState.FAILED


def test_operations_in_wrong_state_are_rejected() -> None:
    harness = _Harness()
    session = _session(harness)

    async def runner():
        with pytest.raises(InvalidSessionState):
            await session.start()
        with pytest.raises(InvalidSessionState):
            await session.stop()
        await session.acquire()
        with pytest.raises(InvalidSessionState):
            await session.acquire()
        with pytest.raises(InvalidSessionState):
            await session.stop()

    asyncio.run(runner())

    assert issubclass(InvalidSessionState, SessionError)
    assert session.state is SessionState.LIVE


def test_unsupported_preferences_fall_back_to_platform_default() -> None:
    harness = _Harness()
    session = _session(harness, format_probe=lambda fmt: False)

    async def runner():
        await session.acquire()
        assert session.negotiate_format() is None
        return await session.start()

    fmt = asyncio.run(runner())

    assert fmt == PLATFORM_DEFAULT_FORMAT
    assert harness.recorders[0].fmt == PLATFORM_DEFAULT_FORMAT


def test_format_is_locked_once_recording_starts() -> None:
    harness = _Harness()
    session = _session(harness)

    async def runner():
        await session.acquire()
        chosen = session.negotiate_format(["video/mp4"])
        assert chosen is not None and chosen.mime_type == "video/mp4"
        fmt = await session.start()
        with pytest.raises(InvalidSessionState):
            session.negotiate_format()
        return fmt

    assert asyncio.run(runner()).mime_type == "video/mp4"


def test_reset_releases_everything_and_revokes_output_url() -> None:
    harness = _Harness()
    registry = ObjectUrlRegistry()
    session = _session(harness, object_urls=registry)

    async def runner():
        await session.acquire()
        await session.start()
        await session.stop()
        url = session.output_url
        await session.reset()
        return url

    url = asyncio.run(runner())

    assert url is not None and url not in registry
    assert session.state is SessionState.IDLE
    assert session.output_blob is None
    assert session.negotiated_format is None
    assert session.elapsed_seconds == 0


def test_reset_while_recording_aborts_recorder() -> None:
    harness = _Harness()
    session = _session(harness)

    async def runner():
        await session.acquire()
        await session.start()
        await session.reset()

    asyncio.run(runner())

    assert harness.recorders[0].aborted
    assert harness.cameras[0].closed
    assert session.state is SessionState.IDLE


def test_lifecycle_events_are_logged(tmp_path) -> None:
    harness = _Harness()
    log = SystemLog(tmp_path / "log.jsonl")
    session = _session(harness, system_log=log)

    async def runner():
        await session.acquire()
        await session.start()
        await session.stop()

    asyncio.run(runner())

    events = [entry.event for entry in log.tail(category="recording")]
    assert events == ["acquire", "start", "stop"]


def test_status_reports_formatted_elapsed() -> None:
    session = _session(_Harness())

    status = session.status()

    assert status["state"] == "idle"
    assert status["formatted_elapsed"] == "00:00"
    assert status["output_url"] is None
