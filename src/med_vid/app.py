"""FastAPI application wiring together the MedVid services."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import BaseModel

from .camera import CAMERA_SOURCES, MediaConstraints
from .catalog import VideoCatalog, parse_tags
from .config import ConfigManager
from .errors import (
    DeviceUnavailable,
    EmptyRecording,
    InvalidSessionState,
    PermissionDenied,
    PublishError,
    SelectionMissing,
    SessionError,
    StorageError,
    VideoNotFound,
)
from .identity import Identity, IdentityContext, identity_from_headers
from .media import MediaBlob, ObjectUrlRegistry
from .publishing import VideoDraft, VideoPublisher
from .recorder import RecorderFactory
from .recording import CameraFactory, RecordingSession, default_camera_factory
from .storage import LocalObjectStorage
from .streaming import PreviewStreamer
from .system_log import SystemLog
from .thumbnails import (
    FALLBACK_DURATION,
    ElementFactory,
    AvMediaElement,
    ThumbnailCandidateGenerator,
    probe_duration,
)
from .timing import format_duration
from .version import APP_VERSION
from .video_encoding import RecordingFormat, is_format_supported


class AcquirePayload(BaseModel):
    facing_mode: str = "user"
    width: int | None = None
    height: int | None = None
    fps: int | None = None
    audio: bool = True


class ThumbnailRequestPayload(BaseModel):
    source_url: str | None = None
    duration: float | None = None


class ThumbnailSelectPayload(BaseModel):
    index: int


class PublishPayload(BaseModel):
    title: str
    description: str = ""
    keywords: str = ""
    featured: bool = False


class VideoUpdatePayload(BaseModel):
    title: str | None = None
    description: str | None = None
    keywords: str | None = None
    featured: bool | None = None


def _session_http_error(exc: SessionError) -> HTTPException:
    if isinstance(exc, PermissionDenied):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, DeviceUnavailable):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, (EmptyRecording, InvalidSessionState)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def create_app(
    config_path: Path | str = Path("data/config.json"),
    *,
    identity: IdentityContext | None = None,
    camera_factory: CameraFactory | None = None,
    recorder_factory: RecorderFactory | None = None,
    element_factory: ElementFactory | None = None,
    format_probe: Callable[[RecordingFormat], bool] | None = None,
) -> FastAPI:
    app = FastAPI(title="MedVid", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_manager = ConfigManager(Path(config_path))
    storage_settings = config_manager.get_storage_settings()
    camera_settings = config_manager.get_camera_settings()
    recorder_settings = config_manager.get_recorder_settings()
    thumbnail_settings = config_manager.get_thumbnail_settings()

    system_log = SystemLog(storage_settings.system_log_path)
    identity_context = identity if identity is not None else IdentityContext()
    object_urls = ObjectUrlRegistry()

    session = RecordingSession(
        camera_factory=camera_factory
        or default_camera_factory(config_manager.get_camera(), camera_settings.facing_devices),
        recorder_factory=recorder_factory,
        object_urls=object_urls,
        format_preferences=recorder_settings.format_preferences,
        format_probe=format_probe or is_format_supported,
        tick_interval=recorder_settings.tick_interval,
        system_log=system_log,
    )
    generator = ThumbnailCandidateGenerator(
        object_urls,
        element_factory=element_factory or AvMediaElement,
        target_count=thumbnail_settings.target_count,
        max_width=thumbnail_settings.max_width,
        jpeg_quality=thumbnail_settings.jpeg_quality,
        metadata_timeout=thumbnail_settings.metadata_timeout,
        seek_timeout=thumbnail_settings.seek_timeout,
        settle_delay=thumbnail_settings.settle_delay,
        system_log=system_log,
    )
    storage = LocalObjectStorage(storage_settings.media_dir)
    catalog = VideoCatalog(storage_settings.catalog_dir)
    publisher = VideoPublisher(storage, catalog, system_log=system_log)
    preview = PreviewStreamer(lambda: session.media_handle)

    source_durations: dict[str, float] = {}
    current_source_url: str | None = None
    uploaded_source_url: str | None = None

    def _set_source(url: str | None, duration: float | None) -> None:
        nonlocal current_source_url
        current_source_url = url
        if url is not None and duration is not None:
            source_durations[url] = duration

    def _resolve_source(url: str) -> MediaBlob:
        blob = object_urls.get(url)
        if blob is None:
            raise HTTPException(status_code=404, detail="Unknown or revoked object URL")
        return blob

    async def _measure(blob: MediaBlob, fallback: float | None = None) -> float:
        duration = await run_in_threadpool(probe_duration, blob)
        if duration is not None and duration > 0:
            return duration
        if fallback is not None and fallback > 0:
            return float(fallback)
        logger.warning("Unable to determine video duration; using %.1fs", FALLBACK_DURATION)
        return FALLBACK_DURATION

    async def _acting_identity(
        x_user_id: str | None = Header(default=None),
        x_user_name: str | None = Header(default=None),
        x_user_admin: str | None = Header(default=None),
    ) -> Identity | None:
        try:
            from_headers = identity_from_headers(x_user_id, x_user_name, x_user_admin)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return from_headers or identity_context.current

    async def _require_identity(
        acting: Identity | None = Depends(_acting_identity),
    ) -> Identity:
        if acting is None:
            raise HTTPException(status_code=401, detail="Sign in to continue")
        return acting

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        system_log.record(
            "system",
            "startup",
            "MedVid application starting up.",
            metadata={"camera": config_manager.get_camera(), "version": APP_VERSION},
        )

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        await preview.aclose()
        await session.reset()
        generator.release()
        released = object_urls.revoke_all()
        system_log.record(
            "system",
            "shutdown",
            "MedVid application shutting down.",
            metadata={"revoked_urls": released},
        )

    @app.get("/api/config")
    async def get_config() -> dict[str, object]:
        options = [{"value": value, "label": label} for value, label in CAMERA_SOURCES.items()]
        return {
            "version": APP_VERSION,
            "camera_options": options,
            "active_camera": config_manager.get_camera(),
            **config_manager.to_dict(),
        }

    # ------------------------------ recorder ------------------------------
    @app.get("/api/recorder")
    async def get_recorder_status() -> dict[str, object]:
        return session.status()

    @app.post("/api/recorder/acquire")
    async def acquire_camera(payload: AcquirePayload) -> dict[str, object]:
        settings = config_manager.get_camera_settings()
        try:
            constraints = MediaConstraints(
                facing_mode=payload.facing_mode,
                width=payload.width or settings.resolution.width,
                height=payload.height or settings.resolution.height,
                fps=payload.fps or settings.fps,
                audio=payload.audio,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            await session.acquire(constraints)
        except SessionError as exc:
            raise _session_http_error(exc) from exc
        return session.status()

    @app.post("/api/recorder/start")
    async def start_recording() -> dict[str, object]:
        try:
            fmt = await session.start()
        except SessionError as exc:
            raise _session_http_error(exc) from exc
        return {**session.status(), "format": fmt.mime_type}

    @app.post("/api/recorder/stop")
    async def stop_recording() -> dict[str, object]:
        try:
            blob = await session.stop()
        except SessionError as exc:
            raise _session_http_error(exc) from exc
        duration = await _measure(blob, fallback=session.elapsed_seconds)
        _set_source(session.output_url, duration)
        return {
            **session.status(),
            "duration": duration,
            "formatted_duration": format_duration(duration),
        }

    @app.post("/api/recorder/reset")
    async def reset_recording() -> dict[str, object]:
        previous_output = session.output_url
        await session.reset()
        if previous_output is not None:
            source_durations.pop(previous_output, None)
            if current_source_url == previous_output:
                _set_source(None, None)
            current = generator.current
            if current is not None and current.source_url == previous_output:
                generator.release()
        return session.status()

    @app.get("/api/recorder/preview")
    async def recorder_preview() -> StreamingResponse:
        if session.media_handle is None:
            raise HTTPException(status_code=409, detail="No live camera to preview")
        return StreamingResponse(preview.stream(), media_type=preview.media_type)

    # ------------------------------ sources -------------------------------
    @app.post("/api/uploads")
    async def upload_source(request: Request) -> dict[str, object]:
        nonlocal uploaded_source_url
        media_type = request.headers.get("content-type", "").strip() or "application/octet-stream"
        if not media_type.lower().startswith("video/"):
            raise HTTPException(status_code=400, detail="Only video files can be uploaded")
        data = await request.body()
        if not data:
            raise HTTPException(status_code=400, detail="Uploaded file is empty")
        blob = MediaBlob(data, media_type)
        if uploaded_source_url is not None:
            object_urls.revoke(uploaded_source_url)
            source_durations.pop(uploaded_source_url, None)
        url = object_urls.create(blob)
        uploaded_source_url = url
        duration = await _measure(blob)
        _set_source(url, duration)
        logger.info("Received upload of %d bytes (%s)", blob.size, blob.media_type)
        return {
            "url": url,
            "size": blob.size,
            "media_type": blob.media_type,
            "duration": duration,
            "formatted_duration": format_duration(duration),
        }

    @app.get("/api/objects/{handle}")
    async def get_object(handle: str) -> Response:
        blob = _resolve_source(handle)
        return Response(content=blob.data, media_type=blob.media_type)

    # ------------------------------ thumbnails ----------------------------
    @app.post("/api/thumbnails")
    async def generate_thumbnails(payload: ThumbnailRequestPayload) -> dict[str, object]:
        url = payload.source_url or current_source_url
        if url is None:
            raise HTTPException(status_code=409, detail="Record or upload a video first")
        blob = _resolve_source(url)
        duration = payload.duration
        if duration is None:
            duration = source_durations.get(url)
        if duration is None:
            duration = await _measure(blob)
        try:
            thumbnail_set = await generator.generate(blob, duration, source_url=url)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        _set_source(url, duration)
        return thumbnail_set.to_dict()

    @app.get("/api/thumbnails")
    async def get_thumbnails() -> dict[str, object]:
        current = generator.current
        if current is None:
            raise HTTPException(status_code=404, detail="No thumbnails have been generated")
        return current.to_dict()

    @app.post("/api/thumbnails/select")
    async def select_thumbnail(payload: ThumbnailSelectPayload) -> dict[str, object]:
        current = generator.current
        if current is None:
            raise HTTPException(status_code=404, detail="No thumbnails have been generated")
        try:
            current.select(payload.index)
        except SelectionMissing as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return current.to_dict()

    # ------------------------------ videos --------------------------------
    @app.post("/api/videos", status_code=201)
    async def publish_video(
        payload: PublishPayload,
        acting: Identity = Depends(_require_identity),
    ) -> dict[str, object]:
        if current_source_url is None:
            raise HTTPException(status_code=409, detail="Record or upload a video first")
        blob = _resolve_source(current_source_url)
        current = generator.current
        if current is None or current.source_url != current_source_url:
            raise HTTPException(status_code=422, detail="Generate thumbnails for this video first")
        draft = VideoDraft(
            title=payload.title,
            description=payload.description,
            keywords=payload.keywords,
            featured=payload.featured,
            duration_seconds=source_durations.get(current_source_url, 0.0),
        )
        progress: list[int] = []
        try:
            record = await publisher.publish(
                draft, blob, current, acting, on_progress=progress.append
            )
        except SelectionMissing as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except PublishError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {**record.to_dict(), "progress": progress[-1] if progress else 0}

    @app.get("/api/videos")
    async def list_videos() -> dict[str, object]:
        records = await run_in_threadpool(catalog.list_all)
        return {"count": len(records), "videos": [record.to_dict() for record in records]}

    @app.get("/api/videos/recent")
    async def recent_videos(
        days: int = 7, limit: int = 5, featured_only: bool = False
    ) -> dict[str, object]:
        if days < 0 or limit < 0:
            raise HTTPException(status_code=400, detail="days and limit must not be negative")
        records = await run_in_threadpool(
            lambda: catalog.recent(days, limit, featured_only=featured_only)
        )
        return {"videos": [record.to_dict() for record in records]}

    @app.get("/api/videos/{video_id}")
    async def get_video(video_id: str) -> dict[str, object]:
        try:
            record = await run_in_threadpool(catalog.increment_views, video_id)
        except VideoNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return record.to_dict()

    @app.patch("/api/videos/{video_id}")
    async def update_video(
        video_id: str,
        payload: VideoUpdatePayload,
        acting: Identity = Depends(_require_identity),
    ) -> dict[str, object]:
        changes: dict[str, object] = payload.model_dump(exclude_none=True)
        if not changes:
            raise HTTPException(status_code=400, detail="No changes provided")
        if "keywords" in changes:
            changes["tags"] = parse_tags(changes.pop("keywords"))
        try:
            record = await run_in_threadpool(catalog.update, video_id, changes)
        except VideoNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        logger.info("Video %s updated by %s", video_id, acting.user_id)
        return record.to_dict()

    @app.delete("/api/videos/{video_id}")
    async def delete_video(
        video_id: str,
        acting: Identity = Depends(_require_identity),
    ) -> dict[str, object]:
        try:
            record = await publisher.delete_video(video_id)
        except VideoNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        logger.info("Video %s deleted by %s", video_id, acting.user_id)
        return {"deleted": record.id}

    @app.post("/api/videos/{video_id}/thumbnail")
    async def replace_video_thumbnail(
        video_id: str,
        acting: Identity = Depends(_require_identity),
    ) -> dict[str, object]:
        current = generator.current
        if current is None:
            raise HTTPException(status_code=422, detail="Generate thumbnails first")
        try:
            record = await publisher.replace_thumbnail(video_id, current)
        except VideoNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except SelectionMissing as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except PublishError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return record.to_dict()

    @app.get("/media/{object_path:path}")
    async def get_media(object_path: str) -> FileResponse:
        try:
            path = storage.local_path(object_path)
        except StorageError as exc:
            raise HTTPException(status_code=404, detail="Media not found") from exc
        return FileResponse(path)

    # ------------------------------ system log ----------------------------
    @app.get("/api/system-log")
    async def get_system_log_entries(
        limit: int = 100, category: str | None = None
    ) -> dict[str, object]:
        entries = await run_in_threadpool(system_log.tail, limit, category=category)
        ordered = list(reversed(entries))
        return {"entries": [entry.to_dict() for entry in ordered]}

    app.state.session = session
    app.state.generator = generator
    app.state.object_urls = object_urls
    app.state.identity = identity_context
    app.state.catalog = catalog
    app.state.storage = storage
    app.state.preview = preview
    return app


__all__ = ["create_app"]
