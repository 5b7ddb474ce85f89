"""Configuration management for MedVid."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Mapping, Sequence

from .camera import CAMERA_SOURCES, DEFAULT_CAMERA_CHOICE, DEFAULT_FACING_DEVICES, FACING_MODES
from .video_encoding import DEFAULT_FORMAT_PREFERENCES, lookup_format

DATA_DIR_ENV = "MEDVID_DATA_DIR"
DEFAULT_DATA_DIR = "data"


@dataclass(frozen=True, slots=True)
class Resolution:
    """Represents the requested capture resolution."""

    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Resolution dimensions must be positive integers")


RESOLUTION_PRESETS: dict[str, Resolution] = {
    "640x480": Resolution(640, 480),
    "1280x720": Resolution(1280, 720),
    "1920x1080": Resolution(1920, 1080),
}

DEFAULT_RESOLUTION = RESOLUTION_PRESETS["1280x720"]


@dataclass(frozen=True, slots=True)
class CameraSettings:
    """Which capture backend to use and how facing modes map onto devices."""

    choice: str = DEFAULT_CAMERA_CHOICE
    resolution: Resolution = DEFAULT_RESOLUTION
    fps: int = 30
    facing_devices: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_FACING_DEVICES))

    def __post_init__(self) -> None:
        if self.choice not in CAMERA_SOURCES:
            raise ValueError(f"Unknown camera selection: {self.choice}")
        if self.fps < 1 or self.fps > 120:
            raise ValueError("Camera fps must be between 1 and 120")
        for mode, index in self.facing_devices.items():
            if mode not in FACING_MODES:
                raise ValueError(f"Unknown facing mode: {mode}")
            if index < 0:
                raise ValueError("Device indices must be non-negative")

    def to_dict(self) -> dict[str, object]:
        return {
            "choice": self.choice,
            "resolution": {"width": self.resolution.width, "height": self.resolution.height},
            "fps": int(self.fps),
            "facing_devices": dict(self.facing_devices),
        }


@dataclass(frozen=True, slots=True)
class RecorderSettings:
    """Recording format preferences and the elapsed counter period."""

    format_preferences: tuple[str, ...] = DEFAULT_FORMAT_PREFERENCES
    tick_interval: float = 1.0

    def __post_init__(self) -> None:
        if not self.format_preferences:
            raise ValueError("At least one recording format preference is required")
        if not math.isfinite(self.tick_interval) or self.tick_interval <= 0:
            raise ValueError("Tick interval must be a positive number of seconds")

    def to_dict(self) -> dict[str, object]:
        return {
            "format_preferences": list(self.format_preferences),
            "tick_interval": float(self.tick_interval),
        }


@dataclass(frozen=True, slots=True)
class ThumbnailSettings:
    """Tuning for thumbnail candidate capture."""

    target_count: int = 5
    max_width: int = 320
    jpeg_quality: int = 85
    metadata_timeout: float = 5.0
    seek_timeout: float = 5.0
    settle_delay: float = 0.05

    def __post_init__(self) -> None:
        if self.target_count < 1 or self.target_count > 20:
            raise ValueError("Thumbnail count must be between 1 and 20")
        if self.max_width < 16:
            raise ValueError("Thumbnail width must be at least 16 pixels")
        if self.jpeg_quality < 1 or self.jpeg_quality > 100:
            raise ValueError("Thumbnail JPEG quality must be between 1 and 100")
        for name in ("metadata_timeout", "seek_timeout", "settle_delay"):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                raise ValueError(f"{name.replace('_', ' ').capitalize()} must be positive")
        if self.settle_delay >= self.seek_timeout:
            raise ValueError("Settle delay must be shorter than the seek timeout")

    def to_dict(self) -> dict[str, object]:
        return {
            "target_count": int(self.target_count),
            "max_width": int(self.max_width),
            "jpeg_quality": int(self.jpeg_quality),
            "metadata_timeout": float(self.metadata_timeout),
            "seek_timeout": float(self.seek_timeout),
            "settle_delay": float(self.settle_delay),
        }


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Where published media, thumbnails and catalogue records live."""

    data_dir: str = DEFAULT_DATA_DIR

    def __post_init__(self) -> None:
        if not isinstance(self.data_dir, str) or not self.data_dir.strip():
            raise ValueError("Data directory must be a non-empty path")

    @property
    def root(self) -> Path:
        return Path(self.data_dir)

    @property
    def media_dir(self) -> Path:
        return self.root / "media"

    @property
    def catalog_dir(self) -> Path:
        return self.root / "videos"

    @property
    def system_log_path(self) -> Path:
        return self.root / "system_log.jsonl"

    def to_dict(self) -> dict[str, object]:
        return {"data_dir": self.data_dir}


DEFAULT_CAMERA_SETTINGS = CameraSettings()
DEFAULT_RECORDER_SETTINGS = RecorderSettings()
DEFAULT_THUMBNAIL_SETTINGS = ThumbnailSettings()
DEFAULT_STORAGE_SETTINGS = StorageSettings()


def _parse_int(value: Any, *, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if not math.isfinite(number) or not number.is_integer():
        raise ValueError(f"{name} must be an integer")
    return int(number)


def _parse_float(value: Any, *, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be numeric")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(number):
        raise ValueError(f"{name} must be finite")
    return number


def _parse_resolution(value: Any, *, default: Resolution) -> Resolution:
    if value is None:
        return default
    if isinstance(value, Resolution):
        return Resolution(value.width, value.height)
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return default
        normalised = text.replace("×", "x")
        preset = RESOLUTION_PRESETS.get(normalised)
        if preset:
            return preset
        width_text, sep, height_text = normalised.partition("x")
        if not sep:
            raise ValueError(f"Unknown resolution preset: {value}")
        return Resolution(
            _parse_int(width_text.strip(), name="Resolution width"),
            _parse_int(height_text.strip(), name="Resolution height"),
        )
    if isinstance(value, Mapping):
        if value.get("width") is None or value.get("height") is None:
            raise ValueError("Resolution mapping must include 'width' and 'height'")
        return Resolution(
            _parse_int(value["width"], name="Resolution width"),
            _parse_int(value["height"], name="Resolution height"),
        )
    if isinstance(value, (Sequence, Iterable)):
        items = list(value)
        if len(items) != 2:
            raise ValueError("Resolution sequence must contain width and height")
        return Resolution(
            _parse_int(items[0], name="Resolution width"),
            _parse_int(items[1], name="Resolution height"),
        )
    raise ValueError("Unsupported resolution value")


def _parse_camera_choice(value: Any, *, default: str) -> str:
    if value is None:
        return default
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Camera selection must be a non-empty string")
    normalised = value.strip().lower()
    if normalised not in CAMERA_SOURCES:
        raise ValueError(f"Unknown camera selection: {value}")
    return normalised


def _parse_facing_devices(value: Any, *, default: Mapping[str, int]) -> Dict[str, int]:
    if value is None:
        return dict(default)
    if not isinstance(value, Mapping):
        raise ValueError("Facing devices must be provided as a mapping")
    devices = dict(default)
    for mode, index in value.items():
        key = str(mode).strip().lower()
        if key not in FACING_MODES:
            raise ValueError(f"Unknown facing mode: {mode}")
        devices[key] = _parse_int(index, name="Device index")
    return devices


def _parse_camera_settings(value: Any, *, default: CameraSettings) -> CameraSettings:
    if value is None:
        return default
    if isinstance(value, CameraSettings):
        return value
    if isinstance(value, str):
        # Legacy files stored only the backend identifier.
        return CameraSettings(
            choice=_parse_camera_choice(value, default=default.choice),
            resolution=default.resolution,
            fps=default.fps,
            facing_devices=dict(default.facing_devices),
        )
    if not isinstance(value, Mapping):
        raise ValueError("Camera settings must be provided as a mapping")
    fps_raw = value.get("fps")
    return CameraSettings(
        choice=_parse_camera_choice(value.get("choice"), default=default.choice),
        resolution=_parse_resolution(value.get("resolution"), default=default.resolution),
        fps=default.fps if fps_raw is None else _parse_int(fps_raw, name="Camera fps"),
        facing_devices=_parse_facing_devices(
            value.get("facing_devices"), default=default.facing_devices
        ),
    )


def _parse_format_preferences(value: Any, *, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    if isinstance(value, str):
        items: list[Any] = [value]
    elif isinstance(value, (Sequence, Iterable)):
        items = list(value)
    else:
        raise ValueError("Format preferences must be a list of MIME types")
    preferences: list[str] = []
    for item in items:
        if not isinstance(item, str) or not item.strip():
            raise ValueError("Format preferences must be non-empty strings")
        text = item.strip()
        if lookup_format(text) is None:
            raise ValueError(f"Unknown recording format: {item}")
        if text not in preferences:
            preferences.append(text)
    if not preferences:
        raise ValueError("At least one recording format preference is required")
    return tuple(preferences)


def _parse_recorder_settings(value: Any, *, default: RecorderSettings) -> RecorderSettings:
    if value is None:
        return default
    if isinstance(value, RecorderSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Recorder settings must be provided as a mapping")
    tick_raw = value.get("tick_interval")
    return RecorderSettings(
        format_preferences=_parse_format_preferences(
            value.get("format_preferences"), default=default.format_preferences
        ),
        tick_interval=(
            default.tick_interval
            if tick_raw is None
            else _parse_float(tick_raw, name="Tick interval")
        ),
    )


def _parse_thumbnail_settings(value: Any, *, default: ThumbnailSettings) -> ThumbnailSettings:
    if value is None:
        return default
    if isinstance(value, ThumbnailSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Thumbnail settings must be provided as a mapping")

    def pick_int(key: str, label: str) -> int:
        raw = value.get(key)
        return getattr(default, key) if raw is None else _parse_int(raw, name=label)

    def pick_float(key: str, label: str) -> float:
        raw = value.get(key)
        return getattr(default, key) if raw is None else _parse_float(raw, name=label)

    quality_raw = value.get("jpeg_quality", value.get("quality"))
    return ThumbnailSettings(
        target_count=pick_int("target_count", "Thumbnail count"),
        max_width=pick_int("max_width", "Thumbnail width"),
        jpeg_quality=(
            default.jpeg_quality
            if quality_raw is None
            else _parse_int(quality_raw, name="Thumbnail JPEG quality")
        ),
        metadata_timeout=pick_float("metadata_timeout", "Metadata timeout"),
        seek_timeout=pick_float("seek_timeout", "Seek timeout"),
        settle_delay=pick_float("settle_delay", "Settle delay"),
    )


def _parse_storage_settings(value: Any, *, default: StorageSettings) -> StorageSettings:
    if value is None:
        return default
    if isinstance(value, StorageSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Storage settings must be provided as a mapping")
    data_dir = value.get("data_dir", default.data_dir)
    if not isinstance(data_dir, str):
        raise ValueError("Data directory must be a string")
    return StorageSettings(data_dir=data_dir.strip())


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        (
            self._camera,
            self._recorder,
            self._thumbnails,
            self._storage,
        ) = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(
        self,
    ) -> tuple[CameraSettings, RecorderSettings, ThumbnailSettings, StorageSettings]:
        storage_default = DEFAULT_STORAGE_SETTINGS
        if not self._path.exists():
            return (
                DEFAULT_CAMERA_SETTINGS,
                DEFAULT_RECORDER_SETTINGS,
                DEFAULT_THUMBNAIL_SETTINGS,
                storage_default,
            )
        try:
            payload = json.loads(self._path.read_text())
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            camera = _parse_camera_settings(payload.get("camera"), default=DEFAULT_CAMERA_SETTINGS)
            recorder = _parse_recorder_settings(
                payload.get("recorder"), default=DEFAULT_RECORDER_SETTINGS
            )
            thumbnails = _parse_thumbnail_settings(
                payload.get("thumbnails"), default=DEFAULT_THUMBNAIL_SETTINGS
            )
            storage = _parse_storage_settings(payload.get("storage"), default=storage_default)
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc
        return camera, recorder, thumbnails, storage

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "camera": self._camera.to_dict(),
            "recorder": self._recorder.to_dict(),
            "thumbnails": self._thumbnails.to_dict(),
            "storage": self._storage.to_dict(),
        }
        self._path.write_text(json.dumps(payload, indent=2))

    def to_dict(self) -> dict[str, object]:
        with self._lock:
            return {
                "camera": self._camera.to_dict(),
                "recorder": self._recorder.to_dict(),
                "thumbnails": self._thumbnails.to_dict(),
                "storage": self._effective_storage().to_dict(),
            }

    def get_camera_settings(self) -> CameraSettings:
        with self._lock:
            return self._camera

    def set_camera_settings(self, data: Mapping[str, Any] | CameraSettings) -> CameraSettings:
        with self._lock:
            settings = _parse_camera_settings(data, default=self._camera)
            self._camera = settings
            self._save()
        return settings

    def get_camera(self) -> str:
        """Return the configured backend, honouring ``MEDVID_CAMERA``."""

        override = os.getenv("MEDVID_CAMERA")
        if override and override.strip().lower() in CAMERA_SOURCES:
            return override.strip().lower()
        with self._lock:
            return self._camera.choice

    def set_camera(self, camera: str) -> str:
        choice = _parse_camera_choice(camera, default=DEFAULT_CAMERA_CHOICE)
        with self._lock:
            self._camera = CameraSettings(
                choice=choice,
                resolution=self._camera.resolution,
                fps=self._camera.fps,
                facing_devices=dict(self._camera.facing_devices),
            )
            self._save()
        return choice

    def get_recorder_settings(self) -> RecorderSettings:
        with self._lock:
            return self._recorder

    def set_recorder_settings(
        self, data: Mapping[str, Any] | RecorderSettings
    ) -> RecorderSettings:
        with self._lock:
            settings = _parse_recorder_settings(data, default=self._recorder)
            self._recorder = settings
            self._save()
        return settings

    def get_thumbnail_settings(self) -> ThumbnailSettings:
        with self._lock:
            return self._thumbnails

    def set_thumbnail_settings(
        self, data: Mapping[str, Any] | ThumbnailSettings
    ) -> ThumbnailSettings:
        with self._lock:
            settings = _parse_thumbnail_settings(data, default=self._thumbnails)
            self._thumbnails = settings
            self._save()
        return settings

    def get_storage_settings(self) -> StorageSettings:
        """Return storage settings, honouring ``MEDVID_DATA_DIR``."""

        with self._lock:
            return self._effective_storage()

    def _effective_storage(self) -> StorageSettings:
        override = os.getenv(DATA_DIR_ENV)
        if override and override.strip():
            return StorageSettings(data_dir=override.strip())
        return self._storage


__all__ = [
    "CameraSettings",
    "ConfigManager",
    "DEFAULT_CAMERA_SETTINGS",
    "DEFAULT_RECORDER_SETTINGS",
    "DEFAULT_RESOLUTION",
    "DEFAULT_STORAGE_SETTINGS",
    "DEFAULT_THUMBNAIL_SETTINGS",
    "RESOLUTION_PRESETS",
    "RecorderSettings",
    "Resolution",
    "StorageSettings",
    "ThumbnailSettings",
]
