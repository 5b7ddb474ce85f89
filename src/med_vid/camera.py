"""Camera source abstractions used as the live capture handle."""
from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

import numpy as np

from .errors import CameraError, DeviceUnavailable, PermissionDenied

logger = logging.getLogger(__name__)

# User visible identifiers for camera backends.
CAMERA_SOURCES: dict[str, str] = {
    "auto": "Automatic (OpenCV device with synthetic fallback)",
    "opencv": "OpenCV (USB webcam)",
    "synthetic": "Synthetic test pattern",
}

DEFAULT_CAMERA_CHOICE = "auto"

FACING_MODES = ("user", "environment")

DEFAULT_FACING_DEVICES: dict[str, int] = {"user": 0, "environment": 1}

_CAMERA_ALIASES = {
    "webcam": "opencv",
    "usb": "opencv",
    "test": "synthetic",
}


@dataclass(frozen=True, slots=True)
class MediaConstraints:
    """Hints describing the live source a recording session should acquire."""

    facing_mode: str = "user"
    width: int = 1280
    height: int = 720
    fps: int = 30
    audio: bool = True

    def __post_init__(self) -> None:
        facing = str(self.facing_mode).strip().lower()
        if facing not in FACING_MODES:
            raise ValueError(f"Unsupported facing mode: {self.facing_mode!r}")
        if int(self.width) <= 0 or int(self.height) <= 0:
            raise ValueError("Resolution hints must be positive integers")
        if not (1 <= int(self.fps) <= 120):
            raise ValueError("Frame rate hint must be between 1 and 120")
        object.__setattr__(self, "facing_mode", facing)
        object.__setattr__(self, "width", int(self.width))
        object.__setattr__(self, "height", int(self.height))
        object.__setattr__(self, "fps", int(self.fps))
        object.__setattr__(self, "audio", bool(self.audio))

    @property
    def resolution(self) -> tuple[int, int]:
        return (self.width, self.height)

    def to_dict(self) -> dict[str, object]:
        return {
            "facing_mode": self.facing_mode,
            "width": self.width,
            "height": self.height,
            "fps": self.fps,
            "audio": self.audio,
        }


class BaseCamera(ABC):
    """Abstract camera capable of producing RGB frames."""

    fps: int = 30

    @abstractmethod
    async def get_frame(self) -> np.ndarray:  # pragma: no cover - interface only
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - optional override
        return None


def summarise_exception(exc: BaseException) -> str:
    """Collect the unique error messages from an exception chain."""

    details: list[str] = []
    seen: set[str] = set()
    to_consider: Iterable[BaseException | None] = (
        exc,
        getattr(exc, "__cause__", None),
        getattr(exc, "__context__", None),
    )
    for candidate in to_consider:
        if candidate is None:
            continue
        text = str(candidate).strip()
        if text and text not in seen:
            details.append(text)
            seen.add(text)
    return " | ".join(details)


def _check_device_access(index: int) -> None:
    """Raise when the V4L2 node for ``index`` is missing or unreadable."""

    node = Path(f"/dev/video{index}")
    if not node.exists():
        raise DeviceUnavailable(f"No capture device found at {node}")
    if not os.access(node, os.R_OK | os.W_OK):
        raise PermissionDenied(
            f"Permission denied opening {node}. Add the service user to the 'video' group."
        )


class OpenCVCamera(BaseCamera):
    """Camera implementation using OpenCV VideoCapture."""

    def __init__(
        self,
        index: int = 0,
        resolution: tuple[int, int] | None = None,
        *,
        fps: int | None = None,
    ) -> None:
        try:
            import cv2
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise DeviceUnavailable("OpenCV is not installed") from exc

        if os.name == "posix":
            _check_device_access(index)

        self._cv2 = cv2
        self._read_lock = threading.Lock()
        self._capture = cv2.VideoCapture(index)
        if not self._capture.isOpened():
            raise DeviceUnavailable(f"Failed to open camera index {index}")
        if resolution is not None:
            width, height = resolution
            self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, float(width))
            self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, float(height))
        if fps is not None and fps > 0:
            self._capture.set(cv2.CAP_PROP_FPS, float(fps))
            self.fps = int(fps)

    async def get_frame(self) -> np.ndarray:
        ret, frame = await asyncio.to_thread(self._read)
        if not ret:
            raise CameraError("Failed to read frame from OpenCV camera")
        return self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB)

    def _read(self) -> tuple[bool, np.ndarray | None]:
        # The preview stream and the recorder share one capture handle.
        with self._read_lock:
            return self._capture.read()

    async def close(self) -> None:
        await asyncio.to_thread(self._release)

    def _release(self) -> None:
        with self._read_lock:
            self._capture.release()


class SyntheticCamera(BaseCamera):
    """Generates synthetic frames for development and testing."""

    def __init__(
        self,
        width: int = 640,
        height: int = 480,
        *,
        resolution: tuple[int, int] | None = None,
        fps: int | None = None,
    ) -> None:
        if resolution is not None:
            width, height = resolution
        self._width = int(width)
        self._height = int(height)
        if fps is not None and fps > 0:
            self.fps = int(fps)
        self._start = time.perf_counter()
        self.closed = False

    async def get_frame(self) -> np.ndarray:
        if self.closed:
            raise CameraError("Synthetic camera has been closed")
        elapsed = time.perf_counter() - self._start
        horizontal = np.linspace(0, 255, self._width, dtype=np.uint8)
        vertical = np.linspace(0, 255, self._height, dtype=np.uint8).reshape(-1, 1)
        red = np.tile(horizontal, (self._height, 1))
        green = np.roll(red, int(elapsed * 10), axis=1)
        blue = np.tile(vertical, (1, self._width))
        frame = np.stack([red, green, blue], axis=2)
        return frame.astype(np.uint8)

    async def close(self) -> None:
        self.closed = True


def _normalise_choice(choice: str | None) -> str:
    if choice is None:
        choice = os.getenv("MEDVID_CAMERA", DEFAULT_CAMERA_CHOICE)
    normalised = choice.strip().lower()
    return _CAMERA_ALIASES.get(normalised, normalised)


def resolve_device_index(
    facing_mode: str, device_map: Mapping[str, int] | None = None
) -> int:
    """Map a facing mode onto a capture device index."""

    mapping = dict(DEFAULT_FACING_DEVICES)
    if device_map:
        mapping.update(device_map)
    try:
        return int(mapping[facing_mode])
    except KeyError as exc:
        raise DeviceUnavailable(f"No device configured for facing mode {facing_mode!r}") from exc


def create_camera(
    constraints: MediaConstraints,
    choice: str | None = None,
    *,
    device_map: Mapping[str, int] | None = None,
) -> BaseCamera:
    """Create the camera specified by *choice* satisfying *constraints*.

    ``"auto"`` tries the OpenCV device for the requested facing mode and falls
    back to :class:`SyntheticCamera` only when no device exists. A permission
    failure is never masked by the fallback so the caller can re-prompt.
    """

    resolved_choice = _normalise_choice(choice)
    if resolved_choice == "synthetic":
        return SyntheticCamera(resolution=constraints.resolution, fps=constraints.fps)
    if resolved_choice not in {"opencv", "auto"}:
        raise DeviceUnavailable(f"Unknown camera choice: {choice}")
    index = resolve_device_index(constraints.facing_mode, device_map)
    if resolved_choice == "opencv":
        return OpenCVCamera(index, resolution=constraints.resolution, fps=constraints.fps)
    try:
        return OpenCVCamera(index, resolution=constraints.resolution, fps=constraints.fps)
    except PermissionDenied:
        raise
    except CameraError as exc:
        logger.error("OpenCV camera unavailable during auto selection: %s", summarise_exception(exc))
        return SyntheticCamera(resolution=constraints.resolution, fps=constraints.fps)


def identify_camera(camera: BaseCamera | None) -> str:
    """Return the canonical identifier for a camera instance."""

    if isinstance(camera, OpenCVCamera):
        return "opencv"
    if isinstance(camera, SyntheticCamera):
        return "synthetic"
    return "unknown"


__all__ = [
    "CAMERA_SOURCES",
    "DEFAULT_CAMERA_CHOICE",
    "DEFAULT_FACING_DEVICES",
    "FACING_MODES",
    "BaseCamera",
    "CameraError",
    "MediaConstraints",
    "OpenCVCamera",
    "SyntheticCamera",
    "create_camera",
    "identify_camera",
    "resolve_device_index",
    "summarise_exception",
]
