"""Recording format discovery and negotiation helpers."""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, Iterable

import av


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordingFormat:
    """Maps a negotiable MIME identifier onto a concrete container and codec."""

    mime_type: str
    container: str
    video_codec: str
    extension: str
    audio_codec: str | None = None
    requires_even_dimensions: bool = True

    @property
    def base_mime_type(self) -> str:
        return self.mime_type.split(";", 1)[0]

    def without_audio(self) -> "RecordingFormat":
        """Return the format actually produced when no audio track is muxed."""

        if self.audio_codec is None:
            return self
        params = _split_codecs(self.mime_type)
        video_only = [codec for codec in params if codec not in _AUDIO_CODEC_TOKENS]
        mime = self.base_mime_type
        if video_only:
            mime = f"{mime};codecs={','.join(video_only)}"
        return RecordingFormat(
            mime_type=mime,
            container=self.container,
            video_codec=self.video_codec,
            extension=self.extension,
            audio_codec=None,
            requires_even_dimensions=self.requires_even_dimensions,
        )


_AUDIO_CODEC_TOKENS = frozenset({"opus", "vorbis", "aac", "mp4a"})

_RECORDING_FORMATS: tuple[RecordingFormat, ...] = (
    RecordingFormat(
        mime_type="video/webm;codecs=vp9,opus",
        container="webm",
        video_codec="libvpx-vp9",
        extension="webm",
        audio_codec="libopus",
    ),
    RecordingFormat(
        mime_type="video/webm;codecs=vp8,opus",
        container="webm",
        video_codec="libvpx",
        extension="webm",
        audio_codec="libopus",
    ),
    RecordingFormat(
        mime_type="video/webm",
        container="webm",
        video_codec="libvpx",
        extension="webm",
    ),
    RecordingFormat(
        mime_type="video/mp4",
        container="mp4",
        video_codec="libx264",
        extension="mp4",
    ),
)

_FORMAT_BY_MIME = {fmt.mime_type: fmt for fmt in _RECORDING_FORMATS}

DEFAULT_FORMAT_PREFERENCES: tuple[str, ...] = tuple(fmt.mime_type for fmt in _RECORDING_FORMATS)
"""Preference order used when the configuration does not override it."""

PLATFORM_DEFAULT_FORMAT = RecordingFormat(
    mime_type="video/mp4",
    container="mp4",
    video_codec="mpeg4",
    extension="mp4",
)
"""Encoder used when negotiation finds no supported preference."""


def _split_codecs(mime_type: str) -> list[str]:
    _, _, params = mime_type.partition(";")
    for param in params.split(";"):
        key, _, value = param.partition("=")
        if key.strip() == "codecs":
            return [token.strip() for token in value.strip().strip('"').split(",") if token.strip()]
    return []


def normalise_mime_type(value: str | None) -> str:
    """Normalise whitespace and case in a MIME identifier."""

    if not value:
        return ""
    base, _, _ = value.partition(";")
    base = base.strip().lower()
    codecs = [token.lower() for token in _split_codecs(value)]
    if codecs:
        return f"{base};codecs={','.join(codecs)}"
    return base


def lookup_format(mime_type: str | None) -> RecordingFormat | None:
    return _FORMAT_BY_MIME.get(normalise_mime_type(mime_type))


def probe_codec(codec: str) -> bool:
    """Return ``True`` when PyAV can open ``codec`` as an encoder."""

    try:
        context = av.CodecContext.create(codec, "w")
    except av.FFmpegError as exc:  # pragma: no cover - codec probing failure
        logger.debug("Codec %s unavailable: %s", codec, exc)
        return False
    except Exception as exc:  # pragma: no cover - unexpected codec error
        logger.debug("Failed to initialise codec %s: %s", codec, exc)
        return False
    if not getattr(context, "is_encoder", True):
        logger.debug("Codec %s is not an encoder", codec)
        return False
    return True


def is_format_supported(fmt: RecordingFormat) -> bool:
    """Return whether the recorder can produce ``fmt`` on this platform."""

    return probe_codec(fmt.video_codec)


def negotiate_format(
    candidates: Iterable[str],
    *,
    is_supported: Callable[[RecordingFormat], bool] = is_format_supported,
) -> RecordingFormat | None:
    """Return the first supported format from ``candidates``.

    Unknown identifiers are skipped. ``None`` is returned when nothing
    matches; callers then fall back to :data:`PLATFORM_DEFAULT_FORMAT`.
    """

    attempted: list[str] = []
    for candidate in candidates:
        fmt = lookup_format(candidate)
        if fmt is None:
            logger.debug("Ignoring unknown recording format %r", candidate)
            continue
        attempted.append(fmt.mime_type)
        if is_supported(fmt):
            logger.debug("Negotiated recording format %s", fmt.mime_type)
            return fmt
    logger.info(
        "No preferred recording format supported (tried %s); using platform default",
        ", ".join(attempted) or "nothing",
    )
    return None


__all__ = [
    "DEFAULT_FORMAT_PREFERENCES",
    "PLATFORM_DEFAULT_FORMAT",
    "RecordingFormat",
    "is_format_supported",
    "lookup_format",
    "negotiate_format",
    "normalise_mime_type",
    "probe_codec",
]
