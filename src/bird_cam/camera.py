"""Frame sources for the monitoring station: USB webcams and a test pattern."""
from __future__ import annotations

import logging
import os
import time
from abc import ABC, abstractmethod

import numpy as np

logger = logging.getLogger(__name__)

# Selectable frame sources, in the order status output lists them.
CAMERA_SOURCES: dict[str, str] = {
    "auto": "Automatic (OpenCV with synthetic fallback)",
    "opencv": "OpenCV (USB webcam)",
    "synthetic": "Synthetic test pattern",
}

# Used when neither the config file nor BIRDCAM_CAMERA names a source.
DEFAULT_CAMERA_CHOICE = "auto"

_CAMERA_ALIASES = {
    "usb": "opencv",
    "webcam": "opencv",
    "cv2": "opencv",
    "test": "synthetic",
}


class CameraError(RuntimeError):
    """Raised when the camera cannot be initialised or read."""


class BaseCamera(ABC):
    """A source of ``(height, width, 3)`` uint8 RGB frames."""

    @abstractmethod
    def read_frame(self) -> np.ndarray:  # pragma: no cover - interface only
        raise NotImplementedError

    def set_zoom(self, level: float) -> bool:
        """Apply an optical zoom ratio, returning ``False`` when unsupported."""

        return False

    def close(self) -> None:  # pragma: no cover - optional override
        return None


class OpenCVCamera(BaseCamera):
    """USB webcam implementation using OpenCV VideoCapture."""

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
            raise CameraError("OpenCV is not installed") from exc

        self._cv2 = cv2
        self._capture = cv2.VideoCapture(index)
        if not self._capture.isOpened():
            raise CameraError(f"Failed to open camera index {index}")
        if resolution is not None:
            width, height = resolution
            self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, float(width))
            self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, float(height))
        if fps is not None and fps > 0:
            self._capture.set(cv2.CAP_PROP_FPS, float(fps))

    def read_frame(self) -> np.ndarray:
        ret, frame = self._capture.read()
        if not ret:
            raise CameraError("Failed to read frame from OpenCV camera")
        return self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB)

    def set_zoom(self, level: float) -> bool:
        # False means the pipeline applies a digital crop instead.
        try:
            return bool(self._capture.set(self._cv2.CAP_PROP_ZOOM, float(level)))
        except Exception:  # pragma: no cover - driver specific
            logger.debug("OpenCV camera rejected zoom %.2f", level, exc_info=True)
            return False

    def close(self) -> None:
        self._capture.release()


class SyntheticCamera(BaseCamera):
    """Generates synthetic frames for development and testing.

    A bright square sweeps across the gradient every few seconds so the
    motion detector has something to react to.
    """

    def __init__(
        self,
        width: int = 640,
        height: int = 480,
        *,
        resolution: tuple[int, int] | None = None,
        fps: int | None = None,
        sweep_period: float = 20.0,
    ) -> None:
        if resolution is not None:
            width, height = resolution
        self._width = int(width)
        self._height = int(height)
        self._interval = 1.0 / float(fps) if fps else 0.0
        self._sweep_period = float(sweep_period)
        self._started = time.perf_counter()
        self._last_read: float | None = None
        columns = np.linspace(0, 255, self._width).astype(np.uint8)
        rows = np.linspace(0, 255, self._height).astype(np.uint8)
        self._backdrop = np.empty((self._height, self._width, 3), dtype=np.uint8)
        self._backdrop[:, :, 0] = columns[np.newaxis, :]
        self._backdrop[:, :, 1] = 64
        self._backdrop[:, :, 2] = rows[:, np.newaxis]

    def read_frame(self) -> np.ndarray:
        if self._interval and self._last_read is not None:
            remaining = self._interval - (time.perf_counter() - self._last_read)
            if remaining > 0:
                time.sleep(remaining)
        self._last_read = time.perf_counter()
        elapsed = self._last_read - self._started
        frame = self._backdrop.copy()
        if self._sweep_period > 0:
            phase = (elapsed % self._sweep_period) / self._sweep_period
            if phase < 0.25:
                size = max(8, min(self._width, self._height) // 4)
                x = int(phase * 4 * max(1, self._width - size))
                y = (self._height - size) // 2
                frame[y : y + size, x : x + size, :] = 255
        return frame


def _normalise_choice(choice: str | None) -> str:
    if choice is None:
        choice = os.getenv("BIRDCAM_CAMERA", DEFAULT_CAMERA_CHOICE)
    normalised = choice.strip().lower()
    return _CAMERA_ALIASES.get(normalised, normalised)


def create_camera(
    choice: str | None = None,
    *,
    resolution: tuple[int, int] | None = None,
    fps: int | None = None,
) -> BaseCamera:
    """Open the frame source named by *choice* (or ``BIRDCAM_CAMERA``).

    When ``choice`` is ``"auto"`` the function attempts to open a USB webcam
    through OpenCV and falls back to :class:`SyntheticCamera` if that fails.
    Explicit selections raise :class:`CameraError` on failure.
    """

    resolved_choice = _normalise_choice(choice)
    if resolved_choice == "synthetic":
        return SyntheticCamera(resolution=resolution, fps=fps)
    if resolved_choice == "opencv":
        return OpenCVCamera(resolution=resolution, fps=fps)
    if resolved_choice == "auto":
        try:
            return OpenCVCamera(resolution=resolution, fps=fps)
        except CameraError as exc:
            logger.error("OpenCV camera unavailable during auto selection: %s", exc)
            return SyntheticCamera(resolution=resolution, fps=fps)
    raise CameraError(f"Unknown camera choice: {choice}")


def identify_camera(camera: BaseCamera) -> str:
    """Short source name used in status payloads and the event log."""

    if isinstance(camera, OpenCVCamera):
        return "opencv"
    if isinstance(camera, SyntheticCamera):
        return "synthetic"
    return "unknown"


__all__ = [
    "CAMERA_SOURCES",
    "DEFAULT_CAMERA_CHOICE",
    "BaseCamera",
    "CameraError",
    "OpenCVCamera",
    "SyntheticCamera",
    "create_camera",
    "identify_camera",
]
