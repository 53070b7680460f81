"""Motion detection with temporal debouncing."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .config import MotionSettings
from .state import SharedState

logger = logging.getLogger(__name__)

# ITU-R BT.601 luma weights.
_LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)


class MotionModelUnavailable(RuntimeError):
    """Raised when a motion model cannot be constructed."""


def luminance_sample(frame: Any, stride: int = 4) -> np.ndarray:
    """Return a strided luminance plane as ``float32``."""

    array = np.asarray(frame)
    if array.size == 0:
        return np.zeros((0, 0), dtype=np.float32)
    if stride > 1:
        array = array[::stride, ::stride]
    if array.ndim == 3:
        channels = array.shape[2]
        if channels >= 3:
            return array[:, :, :3].astype(np.float32) @ _LUMA_WEIGHTS
        return array[:, :, 0].astype(np.float32)
    if array.ndim == 2:
        return array.astype(np.float32)
    raise ValueError("Expected a 2D or 3D frame for motion detection")


class MotionModel(ABC):
    """Raw, per-frame motion decision without any temporal smoothing."""

    name = "model"

    @abstractmethod
    def detect(self, frame: Any) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    def reset(self) -> None:
        return None

    def describe(self) -> dict[str, object]:
        return {"variant": self.name}


@dataclass
class FrameDifferenceModel(MotionModel):
    """Average absolute luminance difference against the previous frame."""

    threshold: float = 10.0
    stride: int = 4
    _previous: np.ndarray | None = field(init=False, default=None)
    _last_activity: float = field(init=False, default=0.0)

    name = "difference"

    def detect(self, frame: Any) -> bool:
        sample = luminance_sample(frame, self.stride)
        if sample.size == 0:
            return False
        previous = self._previous
        self._previous = sample
        if previous is None or previous.shape != sample.shape:
            # Nothing to compare against yet.
            return True
        activity = float(np.abs(sample - previous).mean())
        self._last_activity = activity
        return activity > self.threshold

    def reset(self) -> None:
        self._previous = None
        self._last_activity = 0.0

    def describe(self) -> dict[str, object]:
        return {
            "variant": self.name,
            "threshold": float(self.threshold),
            "last_activity": round(self._last_activity, 3),
        }


class BackgroundSubtractionModel(MotionModel):
    """Gaussian mixture background model over a downscaled greyscale frame."""

    name = "background"

    def __init__(
        self,
        *,
        min_area: int = 500,
        downscale_width: int = 320,
        history: int = 500,
        var_threshold: float = 25.0,
    ) -> None:
        try:
            import cv2
        except ImportError as exc:
            raise MotionModelUnavailable("OpenCV is required for background subtraction") from exc
        self._cv2 = cv2
        self.min_area = int(min_area)
        self.downscale_width = int(downscale_width)
        self._history = int(history)
        self._var_threshold = float(var_threshold)
        self._largest_area = 0.0
        try:
            self._subtractor = self._create_subtractor()
        except Exception as exc:
            raise MotionModelUnavailable(f"Failed to create background model: {exc}") from exc

    def _create_subtractor(self):
        return self._cv2.createBackgroundSubtractorMOG2(
            history=self._history,
            varThreshold=self._var_threshold,
            detectShadows=False,
        )

    def _prepare(self, frame: Any) -> np.ndarray:
        cv2 = self._cv2
        array = np.asarray(frame)
        if array.ndim == 3:
            if array.shape[2] >= 3:
                gray = cv2.cvtColor(np.ascontiguousarray(array[:, :, :3]), cv2.COLOR_RGB2GRAY)
            else:
                gray = np.ascontiguousarray(array[:, :, 0])
        elif array.ndim == 2:
            gray = np.ascontiguousarray(array)
        else:
            raise ValueError("Expected a 2D or 3D frame for motion detection")
        if gray.dtype != np.uint8:
            gray = np.clip(gray, 0, 255).astype(np.uint8)
        height, width = gray.shape[:2]
        if width > self.downscale_width:
            scaled_height = max(1, int(round(height * self.downscale_width / width)))
            gray = cv2.resize(
                gray, (self.downscale_width, scaled_height), interpolation=cv2.INTER_AREA
            )
        return cv2.GaussianBlur(gray, (5, 5), 0)

    def detect(self, frame: Any) -> bool:
        cv2 = self._cv2
        gray = self._prepare(frame)
        if gray.size == 0:
            return False
        mask = self._subtractor.apply(gray)
        _, thresh = cv2.threshold(mask, 127, 255, cv2.THRESH_BINARY)
        thresh = cv2.dilate(thresh, None, iterations=2)
        contours, _ = cv2.findContours(thresh, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        largest = max((cv2.contourArea(contour) for contour in contours), default=0.0)
        self._largest_area = float(largest)
        return largest >= self.min_area

    def reset(self) -> None:
        self._subtractor = self._create_subtractor()
        self._largest_area = 0.0

    def describe(self) -> dict[str, object]:
        return {
            "variant": self.name,
            "min_area": self.min_area,
            "downscale_width": self.downscale_width,
            "largest_area": self._largest_area,
        }


class AlwaysMotionModel(MotionModel):
    """Reports motion on every frame. Used when the real model is unavailable."""

    name = "always"

    def detect(self, frame: Any) -> bool:
        return True


@dataclass
class MotionDetector:
    """Debounce raw motion decisions into a confirmed motion signal.

    Confirmation requires ``debounce_frames`` consecutive positive raw
    decisions; a single negative frame starts the count again. The shared
    last-motion timestamp is updated on the transition into confirmed motion.
    """

    shared_state: SharedState
    model: MotionModel
    debounce_frames: int = 3
    fail_open: bool = False
    _consecutive: int = field(init=False, default=0)
    _confirmed: bool = field(init=False, default=False)
    _last_raw: bool = field(init=False, default=False)
    _evaluations: int = field(init=False, default=0)
    _errors: int = field(init=False, default=0)
    _failing: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self.debounce_frames = max(1, int(self.debounce_frames))

    @property
    def confirmed(self) -> bool:
        return self._confirmed

    def evaluate(self, frame: Any, *, timestamp: float | None = None) -> bool:
        """Feed one frame and return the debounced motion flag."""

        self._evaluations += 1
        try:
            raw = bool(self.model.detect(frame))
        except Exception:
            # Treat an evaluation failure as motion so recording is never
            # silently disabled.
            self._errors += 1
            if not self._failing:
                logger.exception("Motion evaluation failed; assuming motion")
            self._failing = True
            raw = True
        else:
            self._failing = False

        self._last_raw = raw
        if raw:
            self._consecutive += 1
        else:
            self._consecutive = 0

        confirmed = self._consecutive >= self.debounce_frames
        if confirmed and not self._confirmed:
            if timestamp is None:
                self.shared_state.mark_motion()
            else:
                self.shared_state.mark_motion(int(timestamp * 1000))
            logger.debug("Motion confirmed after %d frames", self._consecutive)
        self._confirmed = confirmed
        return confirmed

    def reset(self) -> None:
        self.model.reset()
        self._consecutive = 0
        self._confirmed = False
        self._last_raw = False
        self._failing = False

    def snapshot(self) -> dict[str, object]:
        payload: dict[str, object] = dict(self.model.describe())
        payload.update(
            {
                "debounce_frames": self.debounce_frames,
                "consecutive": self._consecutive,
                "raw": self._last_raw,
                "confirmed": self._confirmed,
                "fail_open": self.fail_open,
                "evaluations": self._evaluations,
                "errors": self._errors,
            }
        )
        return payload


def build_motion_model(settings: MotionSettings) -> MotionModel:
    if settings.variant == "background":
        return BackgroundSubtractionModel(
            min_area=settings.min_area,
            downscale_width=settings.downscale_width,
        )
    return FrameDifferenceModel(threshold=settings.threshold)


def create_motion_detector(settings: MotionSettings, shared_state: SharedState) -> MotionDetector:
    """Build the configured detector, degrading to always-on motion on failure."""

    try:
        model = build_motion_model(settings)
    except MotionModelUnavailable as exc:
        logger.error("Motion model %r unavailable, recording on every frame: %s", settings.variant, exc)
        return MotionDetector(
            shared_state,
            AlwaysMotionModel(),
            debounce_frames=settings.debounce_frames,
            fail_open=True,
        )
    return MotionDetector(shared_state, model, debounce_frames=settings.debounce_frames)


__all__ = [
    "AlwaysMotionModel",
    "BackgroundSubtractionModel",
    "FrameDifferenceModel",
    "MotionDetector",
    "MotionModel",
    "MotionModelUnavailable",
    "build_motion_model",
    "create_motion_detector",
    "luminance_sample",
]
