"""Filesystem-backed object storage for published media."""
from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Callable
from urllib.parse import quote

from .errors import StorageError
from .media import MediaBlob

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

DEFAULT_CHUNK_SIZE = 256 * 1024


def normalise_object_path(path: str) -> str:
    """Return ``path`` as a clean relative POSIX path or raise ``StorageError``."""

    if not isinstance(path, str) or not path.strip():
        raise StorageError("Object path must be a non-empty string")
    text = path.strip().replace("\\", "/")
    candidate = PurePosixPath(text)
    if candidate.is_absolute():
        raise StorageError(f"Object path must be relative: {path}")
    parts = [part for part in candidate.parts if part not in ("", ".")]
    if not parts or any(part == ".." for part in parts):
        raise StorageError(f"Invalid object path: {path}")
    return "/".join(parts)


class LocalObjectStorage:
    """Stores objects below ``root`` and serves them under ``url_prefix``."""

    def __init__(
        self,
        root: Path | str,
        *,
        url_prefix: str = "/media",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._root = Path(root)
        self._url_prefix = url_prefix.rstrip("/")
        self._chunk_size = int(chunk_size)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        return self._root.joinpath(*normalise_object_path(path).split("/"))

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def upload(
        self,
        blob: MediaBlob,
        path: str,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Write ``blob`` to ``path`` and return the normalised object path.

        ``on_progress`` receives ``(bytes_transferred, total_bytes)`` after
        every chunk. Data lands in a temporary file first so a failed upload
        never leaves a partial object behind.
        """

        object_path = normalise_object_path(path)
        target = self._resolve(object_path)
        total = blob.size
        temp = target.with_name(f".{target.name}.part")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with temp.open("wb") as handle:
                view = memoryview(blob.data)
                written = 0
                if on_progress is not None:
                    on_progress(0, total)
                while written < total:
                    chunk = view[written : written + self._chunk_size]
                    handle.write(chunk)
                    written += len(chunk)
                    if on_progress is not None:
                        on_progress(written, total)
            os.replace(temp, target)
        except OSError as exc:
            try:
                temp.unlink()
            except FileNotFoundError:
                pass
            logger.error("Upload to %s failed: %s", object_path, exc)
            raise StorageError(f"Failed to store {object_path}: {exc}") from exc
        logger.info("Stored %s (%d bytes)", object_path, total)
        return object_path

    def get_download_url(self, path: str) -> str:
        object_path = normalise_object_path(path)
        if not self._resolve(object_path).is_file():
            raise StorageError(f"Object not found: {object_path}")
        return f"{self._url_prefix}/{quote(object_path)}"

    def open(self, path: str) -> BinaryIO:
        target = self._resolve(path)
        try:
            return target.open("rb")
        except FileNotFoundError as exc:
            raise StorageError(f"Object not found: {normalise_object_path(path)}") from exc

    def local_path(self, path: str) -> Path:
        """Return the on-disk location of an existing object."""

        target = self._resolve(path)
        if not target.is_file():
            raise StorageError(f"Object not found: {normalise_object_path(path)}")
        return target

    def delete(self, path: str) -> bool:
        """Remove an object; missing objects are logged and tolerated."""

        object_path = normalise_object_path(path)
        try:
            self._resolve(object_path).unlink()
        except FileNotFoundError:
            logger.warning("Object %s was already missing", object_path)
            return False
        except (IsADirectoryError, PermissionError) as exc:
            raise StorageError(f"Failed to delete {object_path}: {exc}") from exc
        logger.info("Deleted %s", object_path)
        return True


__all__ = ["LocalObjectStorage", "ProgressCallback", "normalise_object_path"]
