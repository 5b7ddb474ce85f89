"""Still-image helpers for thumbnail and preview encoding."""
from __future__ import annotations

import inspect
import math

import numpy as np
import simplejpeg

try:  # pragma: no cover - C-extension signature support varies
    _SIMPLEJPEG_ENCODE_KWARGS: set[str] = set(
        inspect.signature(simplejpeg.encode_jpeg).parameters
    )
except (TypeError, ValueError):  # pragma: no cover - C-extension signature unsupported
    _SIMPLEJPEG_ENCODE_KWARGS = set()


def prepare_rgb_frame(frame: np.ndarray | list) -> np.ndarray:
    """Return a contiguous uint8 RGB frame."""

    array = np.asarray(frame)
    if array.ndim == 2:
        array = np.repeat(array[:, :, np.newaxis], 3, axis=2)
    elif array.ndim == 3:
        if array.shape[2] == 1:
            array = np.repeat(array, 3, axis=2)
        elif array.shape[2] > 3:
            array = array[:, :, :3]
    else:
        raise ValueError("Expected a 2D or 3D frame")

    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)

    if not array.flags.c_contiguous:
        array = np.ascontiguousarray(array)
    return array


def scaled_dimensions(width: int, height: int, max_width: int) -> tuple[int, int]:
    """Cap ``width`` at ``max_width`` and scale ``height`` to keep the aspect ratio."""

    if width <= 0 or height <= 0:
        raise ValueError("Frame dimensions must be positive")
    if max_width <= 0:
        raise ValueError("max_width must be positive")
    target_width = min(int(width), int(max_width))
    scale = target_width / float(width)
    target_height = max(1, int(math.floor(height * scale + 0.5)))
    return target_width, target_height


def encode_frame_to_jpeg(frame: np.ndarray | list, *, quality: int) -> bytes:
    """Encode an RGB frame into JPEG bytes using ``quality`` (1-100)."""

    if not (1 <= int(quality) <= 100):
        raise ValueError("JPEG quality must be between 1 and 100")
    array = prepare_rgb_frame(frame)
    encode_kwargs: dict[str, object] = {
        "quality": int(quality),
        "colorspace": "RGB",
    }
    if "fastdct" in _SIMPLEJPEG_ENCODE_KWARGS:
        encode_kwargs["fastdct"] = True
    if "fastupsample" in _SIMPLEJPEG_ENCODE_KWARGS:
        encode_kwargs["fastupsample"] = True
    return simplejpeg.encode_jpeg(array, **encode_kwargs)


__all__ = [
    "encode_frame_to_jpeg",
    "prepare_rgb_frame",
    "scaled_dimensions",
]
