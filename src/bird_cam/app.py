"""FastAPI application wiring together the BirdCam services."""
from __future__ import annotations

import html
import logging
import math
import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import quote

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import (
    FileResponse,
    HTMLResponse,
    PlainTextResponse,
    RedirectResponse,
    StreamingResponse,
)
from pydantic import BaseModel, Field

from .camera import BaseCamera, CameraError, SyntheticCamera, create_camera, identify_camera
from .config import ConfigManager
from .controller import RecordingController
from .encoder import EncoderSink, StorageFullError
from .event_log import EventLog
from .motion import create_motion_detector
from .pipeline import MonitoringPipeline
from .state import SharedState
from .storage import (
    ArchiveEntry,
    ArchiveInUseError,
    LocalDirectoryBackend,
    ProtectedArchiveError,
    StorageQuotaManager,
    StorageStatus,
)
from .streaming import MJPEGStreamer
from .version import APP_VERSION

STATIC_DIR = Path(__file__).resolve().parent / "static"
RECORDINGS_DIR = Path(os.environ.get("BIRDCAM_RECORDINGS_DIR", "data/recordings"))

# Used by the form-style settings route when a value cannot be parsed.
DEFAULT_MAX_TOTAL_GB = 5.0
DEFAULT_MIN_FREE_GB = 1.0

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
}

logger = logging.getLogger(__name__)


def _load_static(name: str) -> str:
    path = STATIC_DIR / name
    if not path.exists():  # pragma: no cover - sanity check
        raise FileNotFoundError(f"Static asset {name!r} missing")
    return path.read_text(encoding="utf-8")


def _parse_gb(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    if not math.isfinite(parsed) or parsed < 0:
        return default
    return parsed


def _render_video_list(entries: list[ArchiveEntry], status: StorageStatus) -> str:
    items: list[str] = []
    for entry in entries:
        label = html.escape(entry.name)
        query = quote(entry.name)
        if entry.protected:
            toggle = (
                "<button class='imp-btn active' "
                f"onclick=\"location.href='/mark-important?name={query}&important=false'\">&#9733;</button>"
            )
        else:
            toggle = (
                "<button class='imp-btn' "
                f"onclick=\"location.href='/mark-important?name={query}&important=true'\">&#9734;</button>"
            )
        delete = (
            "<button class='delete-btn' "
            f"onclick=\"if(confirm('Delete {label}?')) location.href='/delete-video?name={query}'\">&#128465;</button>"
        )
        items.append(
            f"<li><div class='video-info'><a href='/video?name={query}'>{label}</a>"
            f"<span class='file-size'>({entry.size // 1024} KB)</span></div>"
            f"<div class='actions'>{toggle} {delete}</div></li>"
        )
    warning = status.low_disk or status.approaching_quota
    summary = (
        f"<p class='storage{' warning' if warning else ''}'>"
        f"Used {status.used_bytes / 1024 ** 3:.2f} GB of {status.max_total_bytes / 1024 ** 3:.2f} GB, "
        f"{status.free_bytes / 1024 ** 3:.2f} GB free ({html.escape(status.backend)} storage)</p>"
    )
    empty = "" if entries else "<p style='text-align:center; color:#999;'>No videos recorded yet.</p>"
    return (
        _load_static("videos.html")
        .replace("{{ROUTE_ROOT}}", "/")
        .replace("{{storageSummary}}", summary)
        .replace("{{listHtml}}", "".join(items))
        .replace("{{emptyMessage}}", empty)
    )


class StorageSettingsPayload(BaseModel):
    max_total_gb: float | None = Field(default=None, ge=0)
    min_free_gb: float | None = Field(default=None, ge=0)
    backend: Literal["local", "external"] | None = None
    external_path: str | None = Field(default=None, max_length=4096)


class SettingsPayload(BaseModel):
    camera: str | None = Field(default=None, max_length=32)
    resolution: str | None = Field(default=None, max_length=16)
    stream: dict[str, Any] | None = None
    motion: dict[str, Any] | None = None
    recording: dict[str, Any] | None = None


def create_app(
    config_path: Path | str = Path("data/config.json"),
    *,
    camera: BaseCamera | None = None,
    recordings_dir: Path | str | None = None,
    event_log: EventLog | None = None,
    start_pipeline: bool = True,
) -> FastAPI:
    app = FastAPI(title="BirdCam", version=APP_VERSION)
    config_path = Path(config_path)
    config_manager = ConfigManager(config_path)
    if event_log is None:
        event_log = EventLog(config_path.parent / "event_log.jsonl")
    shared_state = SharedState()

    stream_settings = config_manager.get_stream_settings()
    recording_settings = config_manager.get_recording_settings()
    storage_root = Path(recordings_dir) if recordings_dir is not None else RECORDINGS_DIR
    storage = StorageQuotaManager(
        config_manager.get_storage_settings,
        LocalDirectoryBackend(storage_root),
        event_log=event_log,
    )
    sink = EncoderSink(
        storage,
        fps=recording_settings.fps,
        bitrate=recording_settings.bitrate,
        encoder=recording_settings.encoder,
        prefix=recording_settings.prefix,
        event_log=event_log,
    )
    def _on_refused(exc: Exception) -> None:
        if isinstance(exc, StorageFullError):
            storage.cleanup_in_background()

    detector = create_motion_detector(config_manager.get_motion_settings(), shared_state)
    controller = RecordingController(
        sink,
        shared_state,
        hold_frames=recording_settings.hold_frames,
        max_session_frames=recording_settings.max_session_frames,
        retry_backoff_frames=recording_settings.fps,
        on_session_start=lambda _session: storage.cleanup_in_background(),
        on_refused=_on_refused,
        event_log=event_log,
    )
    streamer = MJPEGStreamer(shared_state)
    active_camera: BaseCamera | None = camera
    pipeline: MonitoringPipeline | None = None

    app.state.config_manager = config_manager
    app.state.shared_state = shared_state
    app.state.storage = storage
    app.state.sink = sink
    app.state.detector = detector
    app.state.controller = controller
    app.state.streamer = streamer
    app.state.event_log = event_log
    app.state.pipeline = None

    def _build_camera() -> BaseCamera:
        selection = os.environ.get("BIRDCAM_CAMERA") or config_manager.get_camera()
        resolution = config_manager.get_resolution().as_tuple()
        try:
            return create_camera(selection, resolution=resolution, fps=stream_settings.fps)
        except CameraError as exc:
            logger.warning("Failed to initialise camera '%s': %s; falling back to synthetic", selection, exc)
            event_log.record(
                "camera",
                "fallback",
                "Camera unavailable; using the synthetic test pattern.",
                metadata={"selection": selection, "error": str(exc)},
            )
            return SyntheticCamera(resolution=resolution, fps=stream_settings.fps)

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        nonlocal active_camera, pipeline
        event_log.record("system", "startup", "BirdCam application starting up.")
        if active_camera is None:
            active_camera = await run_in_threadpool(_build_camera)
        pipeline = MonitoringPipeline(
            active_camera,
            shared_state,
            detector,
            controller,
            jpeg_quality=stream_settings.jpeg_quality,
        )
        app.state.pipeline = pipeline
        if start_pipeline:
            pipeline.start()
        event_log.record(
            "system",
            "startup_complete",
            "BirdCam startup sequence completed.",
            metadata={
                "camera": identify_camera(active_camera),
                "recordings": str(storage.default_backend.root),
                "motion": detector.model.describe().get("variant"),
            },
        )

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        nonlocal pipeline
        event_log.record("system", "shutdown", "BirdCam application shutting down.")
        streamer.close()
        if pipeline is not None:
            await run_in_threadpool(pipeline.stop)
            pipeline = None
        else:
            controller.shutdown()
        await run_in_threadpool(sink.shutdown, 10.0)
        if active_camera is not None:
            try:
                active_camera.close()
            except Exception:
                logger.exception("Failed to close camera")
        event_log.record("system", "shutdown_complete", "BirdCam shutdown sequence completed.")

    # ------------------------------------------------------------------
    # Live view and status
    # ------------------------------------------------------------------
    @app.get("/")
    async def index() -> dict[str, object]:
        status = await run_in_threadpool(storage.get_status)
        return {
            "name": "BirdCam",
            "version": APP_VERSION,
            "recording": shared_state.recording_active(),
            "manual_recording": shared_state.manual_recording(),
            "last_motion_ms": shared_state.last_motion_ms(),
            "zoom": shared_state.zoom_level(),
            "storage": status.to_dict(),
        }

    @app.get("/stream")
    async def stream() -> StreamingResponse:
        if streamer.closed:
            raise HTTPException(status_code=503, detail="Streaming service is shutting down")
        response = StreamingResponse(streamer.stream(), media_type=streamer.media_type)
        response.headers.update(NO_CACHE_HEADERS)
        return response

    @app.get("/motion-status", response_class=PlainTextResponse)
    async def motion_status() -> str:
        return str(shared_state.last_motion_ms())

    @app.get("/rec-status", response_class=PlainTextResponse)
    async def rec_status() -> str:
        return "true" if shared_state.manual_recording() else "false"

    @app.get("/start-rec")
    async def start_recording() -> RedirectResponse:
        has_space = await run_in_threadpool(storage.has_enough_space)
        if not has_space:
            raise HTTPException(status_code=507, detail="Not enough free space to record")
        shared_state.set_manual_recording(True)
        logger.info("Manual recording requested")
        event_log.record("recording", "manual_start", "Manual recording requested.")
        return RedirectResponse("/", status_code=303)

    @app.get("/stop-rec")
    async def stop_recording() -> RedirectResponse:
        shared_state.set_manual_recording(False)
        logger.info("Manual recording released")
        event_log.record("recording", "manual_stop", "Manual recording released.")
        return RedirectResponse("/", status_code=303)

    @app.get("/zoom")
    async def zoom(level: str | None = None) -> dict[str, float]:
        if level is None:
            raise HTTPException(status_code=400, detail="Missing zoom level")
        try:
            applied = shared_state.request_zoom(level)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"zoom": applied, "max_zoom": shared_state.max_zoom}

    @app.get("/api/status")
    async def status() -> dict[str, object]:
        return {
            "version": APP_VERSION,
            "state": shared_state.snapshot(),
            "recording": controller.snapshot(),
            "motion": detector.snapshot(),
            "pipeline": pipeline.snapshot() if pipeline is not None else None,
            "encoder": {"codec": sink.codec, "fps": sink.fps},
            "stream": {"clients": streamer.client_count, "closed": streamer.closed},
        }

    @app.get("/api/log")
    async def get_log(limit: int | None = None, category: str | None = None) -> dict[str, object]:
        entries = event_log.tail(limit, category=category)
        return {"entries": [entry.to_dict() for entry in entries]}

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------
    @app.get("/videos", response_class=HTMLResponse)
    async def videos_page() -> str:
        entries = await run_in_threadpool(storage.list_archives)
        status = await run_in_threadpool(storage.get_status)
        return _render_video_list(entries, status)

    @app.get("/api/videos")
    async def list_videos() -> dict[str, object]:
        entries = await run_in_threadpool(storage.list_archives)
        return {"videos": [entry.to_dict() for entry in entries]}

    @app.get("/video")
    async def serve_video(name: str | None = None) -> FileResponse:
        try:
            path = await run_in_threadpool(storage.open_path, name)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Recording not found") from exc
        return FileResponse(path, media_type="video/mp4", filename=path.name)

    @app.get("/delete-video")
    async def delete_video(name: str | None = None) -> RedirectResponse:
        try:
            await run_in_threadpool(storage.delete, name)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ProtectedArchiveError as exc:
            raise HTTPException(status_code=403, detail="Recording is marked important") from exc
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Recording not found") from exc
        except ArchiveInUseError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except OSError as exc:
            logger.exception("Failed to delete recording %s", name)
            raise HTTPException(status_code=500, detail="Could not delete file") from exc
        event_log.record("storage", "deleted", f"Recording {name} deleted.", metadata={"name": name})
        return RedirectResponse("/videos", status_code=303)

    @app.get("/mark-important")
    async def mark_important(name: str | None = None, important: str = "false") -> RedirectResponse:
        flag = important.strip().lower() == "true"
        try:
            new_name = await run_in_threadpool(storage.mark_important, name, flag)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Recording not found") from exc
        except (ArchiveInUseError, FileExistsError) as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except OSError as exc:
            logger.exception("Failed to rename recording %s", name)
            raise HTTPException(status_code=500, detail="Could not update recording") from exc
        if new_name != name:
            event_log.record(
                "storage",
                "protected" if flag else "unprotected",
                f"Recording {new_name} {'marked' if flag else 'unmarked'} important.",
                metadata={"name": new_name},
            )
        return RedirectResponse("/videos", status_code=303)

    # ------------------------------------------------------------------
    # Storage settings
    # ------------------------------------------------------------------
    def _apply_storage_settings(data: dict[str, object]) -> None:
        try:
            settings = config_manager.set_storage_settings(data)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        logger.info(
            "Storage limits set to %.2f GB total, %.2f GB free (%s)",
            settings.max_total_gb,
            settings.min_free_gb,
            settings.backend,
        )
        event_log.record(
            "storage",
            "settings_updated",
            "Storage settings updated.",
            metadata=settings.to_dict(),
        )
        storage.cleanup_in_background()

    @app.get("/update-storage-settings")
    async def update_storage_settings(
        max_total: str | None = None, min_free: str | None = None
    ) -> RedirectResponse:
        _apply_storage_settings(
            {
                "max_total_gb": _parse_gb(max_total, DEFAULT_MAX_TOTAL_GB),
                "min_free_gb": _parse_gb(min_free, DEFAULT_MIN_FREE_GB),
            }
        )
        return RedirectResponse("/", status_code=303)

    @app.get("/reset-folder")
    async def reset_folder() -> RedirectResponse:
        await run_in_threadpool(config_manager.reset_storage_backend)
        logger.info("Recording folder reset to %s", storage.default_backend.root)
        event_log.record("storage", "folder_reset", "Recording folder reset to the default directory.")
        return RedirectResponse("/", status_code=303)

    @app.get("/api/storage")
    async def get_storage() -> dict[str, object]:
        status = await run_in_threadpool(storage.get_status)
        return {
            "status": status.to_dict(),
            "settings": config_manager.get_storage_settings().to_dict(),
            "backends": [backend.describe() for backend in storage.backends()],
        }

    @app.post("/api/storage/settings")
    async def update_storage(payload: StorageSettingsPayload) -> dict[str, object]:
        data = payload.model_dump(exclude_none=True)
        if not data:
            raise HTTPException(status_code=400, detail="No storage settings provided")
        if data.get("backend") == "local":
            data["external_path"] = None
        _apply_storage_settings(data)
        status = await run_in_threadpool(storage.get_status)
        return {
            "status": status.to_dict(),
            "settings": config_manager.get_storage_settings().to_dict(),
        }

    # ------------------------------------------------------------------
    # Capture, motion and recording settings (applied on restart)
    # ------------------------------------------------------------------
    @app.get("/api/settings")
    async def get_settings() -> dict[str, object]:
        return {"settings": config_manager.settings_dict(), "restart_required": False}

    @app.post("/api/settings")
    async def update_settings(payload: SettingsPayload) -> dict[str, object]:
        data = payload.model_dump(exclude_none=True)
        if not data:
            raise HTTPException(status_code=400, detail="No settings provided")
        try:
            settings = await run_in_threadpool(config_manager.update_settings, data)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        logger.info("Settings updated (%s); restart to apply", ", ".join(sorted(data)))
        event_log.record(
            "system",
            "settings_updated",
            "Capture settings saved; they take effect after a restart.",
            metadata={"sections": sorted(data)},
        )
        return {"settings": settings, "restart_required": True}

    return app


__all__ = ["create_app", "SettingsPayload", "StorageSettingsPayload"]
