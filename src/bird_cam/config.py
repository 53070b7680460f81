"""Configuration management for BirdCam."""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping

from .camera import CAMERA_SOURCES, DEFAULT_CAMERA_CHOICE

GIB = 1024 * 1024 * 1024

MOTION_VARIANTS = ("difference", "background")
STORAGE_BACKENDS = ("local", "external")


@dataclass(frozen=True, slots=True)
class Resolution:
    """Represents the desired capture resolution for the camera."""

    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Resolution dimensions must be positive integers")

    def as_tuple(self) -> tuple[int, int]:
        return (int(self.width), int(self.height))

    def key(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True, slots=True)
class StreamSettings:
    """Configuration values for the live MJPEG stream."""

    fps: int = 30
    jpeg_quality: int = 80

    def __post_init__(self) -> None:
        if self.fps < 1 or self.fps > 60:
            raise ValueError("Stream fps must be between 1 and 60")
        if self.jpeg_quality < 1 or self.jpeg_quality > 100:
            raise ValueError("Stream JPEG quality must be between 1 and 100")

    def to_dict(self) -> Dict[str, int]:
        return {"fps": int(self.fps), "jpeg_quality": int(self.jpeg_quality)}


@dataclass(frozen=True, slots=True)
class MotionSettings:
    """Motion detector tuning.

    ``threshold`` applies to the frame difference variant and is expressed on
    the 0-255 luminance scale. ``min_area`` applies to the background
    subtraction variant and is measured in pixels of the downscaled frame.
    """

    variant: str = "difference"
    threshold: float = 10.0
    debounce_frames: int = 3
    min_area: int = 500
    downscale_width: int = 320

    def __post_init__(self) -> None:
        if self.variant not in MOTION_VARIANTS:
            raise ValueError(f"Unknown motion detector variant: {self.variant}")
        if not math.isfinite(self.threshold) or self.threshold < 0:
            raise ValueError("Motion threshold must be a non-negative number")
        if self.debounce_frames < 1:
            raise ValueError("Debounce frame count must be at least 1")
        if self.min_area < 0:
            raise ValueError("Minimum motion area must not be negative")
        if self.downscale_width < 16:
            raise ValueError("Downscale width must be at least 16 pixels")

    def to_dict(self) -> dict[str, object]:
        return {
            "variant": self.variant,
            "threshold": float(self.threshold),
            "debounce_frames": int(self.debounce_frames),
            "min_area": int(self.min_area),
            "downscale_width": int(self.downscale_width),
        }


@dataclass(frozen=True, slots=True)
class RecordingSettings:
    """Encoder and recording state machine parameters."""

    fps: int = 30
    bitrate: int = 2_000_000
    encoder: str = "auto"
    hold_frames: int = 300
    max_session_frames: int | None = 30 * 60 * 30
    prefix: str = "bird"

    def __post_init__(self) -> None:
        if self.fps < 1 or self.fps > 60:
            raise ValueError("Recording fps must be between 1 and 60")
        if self.bitrate < 100_000:
            raise ValueError("Recording bitrate must be at least 100 kbps")
        if self.hold_frames < 0:
            raise ValueError("Hold frame count must not be negative")
        if self.max_session_frames is not None and self.max_session_frames < 1:
            raise ValueError("Maximum session length must be positive")
        if not self.prefix or not self.prefix.replace("-", "").isalnum():
            raise ValueError("Recording prefix must be alphanumeric")

    def to_dict(self) -> dict[str, object]:
        return {
            "fps": int(self.fps),
            "bitrate": int(self.bitrate),
            "encoder": self.encoder,
            "hold_frames": int(self.hold_frames),
            "max_session_frames": self.max_session_frames,
            "prefix": self.prefix,
        }


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Archive quota and storage location."""

    max_total_gb: float = 5.0
    min_free_gb: float = 1.0
    backend: str = "local"
    external_path: str | None = None

    def __post_init__(self) -> None:
        for name in ("max_total_gb", "min_free_gb"):
            value = getattr(self, name)
            try:
                value_f = float(value)
            except (TypeError, ValueError) as exc:
                raise ValueError("Storage limits must be numeric") from exc
            if not math.isfinite(value_f) or value_f < 0:
                raise ValueError("Storage limits must be non-negative")
            object.__setattr__(self, name, value_f)
        if self.backend not in STORAGE_BACKENDS:
            raise ValueError(f"Unknown storage backend: {self.backend}")
        if self.backend == "external" and not self.external_path:
            raise ValueError("External storage requires a folder path")

    @property
    def max_total_bytes(self) -> int:
        return int(self.max_total_gb * GIB)

    @property
    def min_free_bytes(self) -> int:
        return int(self.min_free_gb * GIB)

    def to_dict(self) -> dict[str, object]:
        return {
            "max_total_gb": float(self.max_total_gb),
            "min_free_gb": float(self.min_free_gb),
            "backend": self.backend,
            "external_path": self.external_path,
        }


DEFAULT_RESOLUTION = Resolution(1280, 720)
DEFAULT_STREAM_SETTINGS = StreamSettings()
DEFAULT_MOTION_SETTINGS = MotionSettings()
DEFAULT_RECORDING_SETTINGS = RecordingSettings()
DEFAULT_STORAGE_SETTINGS = StorageSettings()


def _parse_resolution(value: Any, *, default: Resolution) -> Resolution:
    if value is None:
        return default
    if isinstance(value, Resolution):
        return Resolution(value.width, value.height)
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return default
        parts = text.split("x", 1)
        if len(parts) != 2:
            raise ValueError(f"Unknown resolution: {value}")
        try:
            return Resolution(int(parts[0].strip()), int(parts[1].strip()))
        except ValueError as exc:
            raise ValueError("Resolution values must be integers") from exc
    if isinstance(value, Mapping):
        width_raw = value.get("width")
        height_raw = value.get("height")
        if width_raw is None or height_raw is None:
            raise ValueError("Resolution mapping must include 'width' and 'height'")
        try:
            return Resolution(int(width_raw), int(height_raw))
        except (TypeError, ValueError) as exc:
            raise ValueError("Resolution width and height must be integers") from exc
    raise ValueError("Unsupported resolution value")


def _parse_camera(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        camera = value.strip().lower()
        if camera in CAMERA_SOURCES:
            return camera
    return DEFAULT_CAMERA_CHOICE


def _parse_stream_settings(value: Any, *, default: StreamSettings) -> StreamSettings:
    if value is None:
        return default
    if isinstance(value, StreamSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Stream settings must be provided as a mapping")
    try:
        fps = int(float(value.get("fps", default.fps)))
        quality = int(float(value.get("jpeg_quality", default.jpeg_quality)))
    except (TypeError, ValueError) as exc:
        raise ValueError("Stream settings must be integers") from exc
    return StreamSettings(fps=fps, jpeg_quality=quality)


def _parse_motion_settings(value: Any, *, default: MotionSettings) -> MotionSettings:
    if value is None:
        return default
    if isinstance(value, MotionSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Motion settings must be provided as a mapping")
    variant_raw = value.get("variant", default.variant)
    variant = str(variant_raw).strip().lower() if variant_raw is not None else default.variant
    try:
        return MotionSettings(
            variant=variant,
            threshold=float(value.get("threshold", default.threshold)),
            debounce_frames=int(value.get("debounce_frames", default.debounce_frames)),
            min_area=int(value.get("min_area", default.min_area)),
            downscale_width=int(value.get("downscale_width", default.downscale_width)),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid motion settings: {exc}") from exc


def _parse_recording_settings(
    value: Any, *, default: RecordingSettings
) -> RecordingSettings:
    if value is None:
        return default
    if isinstance(value, RecordingSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Recording settings must be provided as a mapping")
    max_session_raw = value.get("max_session_frames", default.max_session_frames)
    try:
        max_session = int(max_session_raw) if max_session_raw not in (None, 0, "") else None
        return RecordingSettings(
            fps=int(value.get("fps", default.fps)),
            bitrate=int(value.get("bitrate", default.bitrate)),
            encoder=str(value.get("encoder", default.encoder) or "auto"),
            hold_frames=int(value.get("hold_frames", default.hold_frames)),
            max_session_frames=max_session,
            prefix=str(value.get("prefix", default.prefix)),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid recording settings: {exc}") from exc


def _parse_storage_settings(value: Any, *, default: StorageSettings) -> StorageSettings:
    if value is None:
        return default
    if isinstance(value, StorageSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Storage settings must be provided as a mapping")
    backend_raw = value.get("backend", default.backend)
    backend = str(backend_raw).strip().lower() if backend_raw else "local"
    external_raw = value.get("external_path", default.external_path)
    external = str(external_raw).strip() if external_raw else None
    return StorageSettings(
        max_total_gb=value.get("max_total_gb", default.max_total_gb),
        min_free_gb=value.get("min_free_gb", default.min_free_gb),
        backend=backend,
        external_path=external,
    )


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        (
            self._camera,
            self._resolution,
            self._stream_settings,
            self._motion_settings,
            self._recording_settings,
            self._storage_settings,
        ) = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(
        self,
    ) -> tuple[
        str,
        Resolution,
        StreamSettings,
        MotionSettings,
        RecordingSettings,
        StorageSettings,
    ]:
        if not self._path.exists():
            return (
                DEFAULT_CAMERA_CHOICE,
                DEFAULT_RESOLUTION,
                DEFAULT_STREAM_SETTINGS,
                DEFAULT_MOTION_SETTINGS,
                DEFAULT_RECORDING_SETTINGS,
                DEFAULT_STORAGE_SETTINGS,
            )
        try:
            payload = json.loads(self._path.read_text())
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            return (
                _parse_camera(payload.get("camera")),
                _parse_resolution(payload.get("resolution"), default=DEFAULT_RESOLUTION),
                _parse_stream_settings(payload.get("stream"), default=DEFAULT_STREAM_SETTINGS),
                _parse_motion_settings(payload.get("motion"), default=DEFAULT_MOTION_SETTINGS),
                _parse_recording_settings(
                    payload.get("recording"), default=DEFAULT_RECORDING_SETTINGS
                ),
                _parse_storage_settings(payload.get("storage"), default=DEFAULT_STORAGE_SETTINGS),
            )
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "camera": self._camera,
            "resolution": {"width": self._resolution.width, "height": self._resolution.height},
            "stream": self._stream_settings.to_dict(),
            "motion": self._motion_settings.to_dict(),
            "recording": self._recording_settings.to_dict(),
            "storage": self._storage_settings.to_dict(),
        }
        self._path.write_text(json.dumps(payload, indent=2))

    def get_camera(self) -> str:
        with self._lock:
            return self._camera

    def get_resolution(self) -> Resolution:
        with self._lock:
            return self._resolution

    def get_stream_settings(self) -> StreamSettings:
        with self._lock:
            return self._stream_settings

    def get_motion_settings(self) -> MotionSettings:
        with self._lock:
            return self._motion_settings

    def get_recording_settings(self) -> RecordingSettings:
        with self._lock:
            return self._recording_settings

    def update_settings(self, data: Mapping[str, Any]) -> dict[str, object]:
        """Validate and persist the capture, motion and recording sections.

        Every supplied section is parsed before anything is written, so an
        invalid value leaves the stored configuration untouched. Sections
        absent from *data* keep their current values.
        """

        if not isinstance(data, Mapping):
            raise ValueError("Settings must be provided as a mapping")
        with self._lock:
            camera = self._camera
            if data.get("camera") is not None:
                requested = str(data["camera"]).strip().lower()
                if requested not in CAMERA_SOURCES:
                    raise ValueError(f"Unknown camera selection: {data['camera']}")
                camera = requested
            resolution = _parse_resolution(data.get("resolution"), default=self._resolution)
            stream = _parse_stream_settings(data.get("stream"), default=self._stream_settings)
            motion = _parse_motion_settings(data.get("motion"), default=self._motion_settings)
            recording = _parse_recording_settings(
                data.get("recording"), default=self._recording_settings
            )
            self._camera = camera
            self._resolution = resolution
            self._stream_settings = stream
            self._motion_settings = motion
            self._recording_settings = recording
            self._save()
        return self.settings_dict()

    def settings_dict(self) -> dict[str, object]:
        with self._lock:
            return {
                "camera": self._camera,
                "resolution": self._resolution.key(),
                "stream": self._stream_settings.to_dict(),
                "motion": self._motion_settings.to_dict(),
                "recording": self._recording_settings.to_dict(),
                "storage": self._storage_settings.to_dict(),
            }

    def get_storage_settings(self) -> StorageSettings:
        with self._lock:
            return self._storage_settings

    def set_storage_settings(
        self, data: Mapping[str, Any] | StorageSettings
    ) -> StorageSettings:
        settings = _parse_storage_settings(data, default=self._storage_settings)
        with self._lock:
            self._storage_settings = settings
            self._save()
        return settings

    def reset_storage_backend(self) -> StorageSettings:
        """Forget the external folder and return to the default directory."""

        with self._lock:
            current = self._storage_settings
            settings = StorageSettings(
                max_total_gb=current.max_total_gb,
                min_free_gb=current.min_free_gb,
                backend="local",
                external_path=None,
            )
            self._storage_settings = settings
            self._save()
        return settings


__all__ = [
    "ConfigManager",
    "DEFAULT_MOTION_SETTINGS",
    "DEFAULT_RECORDING_SETTINGS",
    "DEFAULT_RESOLUTION",
    "DEFAULT_STORAGE_SETTINGS",
    "DEFAULT_STREAM_SETTINGS",
    "GIB",
    "MotionSettings",
    "RecordingSettings",
    "Resolution",
    "StorageSettings",
    "StreamSettings",
]
