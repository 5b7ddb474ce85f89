"""Exception hierarchy shared by the MedVid services."""
from __future__ import annotations


class CameraError(RuntimeError):
    """Raised when a camera source cannot be opened or read."""


class SessionError(RuntimeError):
    """Base class for recording-session failures surfaced to the caller."""


class PermissionDenied(SessionError, CameraError):
    """Raised when the platform refuses access to the capture device."""


class DeviceUnavailable(SessionError, CameraError):
    """Raised when no capture device satisfies the requested constraints."""


class EmptyRecording(SessionError):
    """Raised when a recording stopped without producing any media data."""


class InvalidSessionState(SessionError):
    """Raised when a session operation is called from the wrong state."""


class SelectionMissing(ValueError):
    """Raised when a caller proceeds without a valid thumbnail selection."""


class PublishError(RuntimeError):
    """Raised when a video cannot be published."""


class StorageError(RuntimeError):
    """Raised by the object storage layer."""


class CatalogError(RuntimeError):
    """Raised by the video catalogue."""


class VideoNotFound(CatalogError):
    """Raised when a catalogue lookup misses."""


__all__ = [
    "CameraError",
    "CatalogError",
    "DeviceUnavailable",
    "EmptyRecording",
    "InvalidSessionState",
    "PermissionDenied",
    "PublishError",
    "SelectionMissing",
    "SessionError",
    "StorageError",
    "VideoNotFound",
]
