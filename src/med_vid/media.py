"""In-memory media blobs and revocable object URLs."""
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass

logger = logging.getLogger(__name__)

OBJECT_URL_SCHEME = "blob:"


@dataclass(frozen=True, slots=True)
class MediaBlob:
    """Immutable binary payload tagged with its media type."""

    data: bytes
    media_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def base_media_type(self) -> str:
        """Return the media type without codec parameters."""

        return self.media_type.split(";", 1)[0].strip().lower()

    @property
    def extension(self) -> str:
        """Return a file extension derived from the media type."""

        _, _, subtype = self.base_media_type.partition("/")
        if subtype == "jpeg":
            return "jpg"
        return subtype or "bin"


class ObjectUrlRegistry:
    """Hands out opaque handles for blobs until they are revoked."""

    def __init__(self) -> None:
        self._objects: dict[str, MediaBlob] = {}
        self._lock = threading.Lock()

    def create(self, blob: MediaBlob) -> str:
        handle = f"{OBJECT_URL_SCHEME}{uuid.uuid4().hex}"
        with self._lock:
            self._objects[handle] = blob
        return handle

    def resolve(self, handle: str) -> MediaBlob:
        with self._lock:
            try:
                return self._objects[handle]
            except KeyError:
                raise KeyError(f"Unknown or revoked object URL: {handle}") from None

    def get(self, handle: str) -> MediaBlob | None:
        with self._lock:
            return self._objects.get(handle)

    def revoke(self, handle: str | None) -> bool:
        """Release ``handle``; revoking an unknown handle is a no-op."""

        if not handle:
            return False
        with self._lock:
            removed = self._objects.pop(handle, None)
        if removed is None:
            logger.debug("Ignoring revoke for unknown object URL %s", handle)
            return False
        return True

    def revoke_all(self) -> int:
        with self._lock:
            count = len(self._objects)
            self._objects.clear()
        return count

    def __contains__(self, handle: object) -> bool:
        with self._lock:
            return handle in self._objects

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)


__all__ = ["MediaBlob", "OBJECT_URL_SCHEME", "ObjectUrlRegistry"]
