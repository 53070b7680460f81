"""Frame ingestion loop feeding the hub, the motion detector and the recorder."""
from __future__ import annotations

import logging
import time
from threading import Event, Lock, Thread
from typing import Any, Callable

import numpy as np

from .camera import BaseCamera, CameraError
from .controller import RecordingController
from .motion import MotionDetector
from .state import Frame, SharedState
from .streaming import encode_frame_to_jpeg, prepare_rgb_frame

logger = logging.getLogger(__name__)

ZoomFn = Callable[[np.ndarray, float], np.ndarray]


def apply_digital_zoom(frame: np.ndarray, level: float) -> np.ndarray:
    """Crop the centre of *frame* by *level* and scale it back to full size.

    Nearest-neighbour sampling keeps this cheap enough to run per frame.
    """

    if level <= 1.0:
        return frame
    array = np.asarray(frame)
    height, width = array.shape[:2]
    crop_width = max(1, int(round(width / level)))
    crop_height = max(1, int(round(height / level)))
    x0 = (width - crop_width) // 2
    y0 = (height - crop_height) // 2
    cropped = array[y0 : y0 + crop_height, x0 : x0 + crop_width]
    rows = np.arange(height) * crop_height // height
    cols = np.arange(width) * crop_width // width
    return cropped[rows][:, cols]


class MonitoringPipeline:
    """Own the camera and run capture, encode, publish, detect and record."""

    def __init__(
        self,
        camera: BaseCamera,
        shared_state: SharedState,
        detector: MotionDetector,
        controller: RecordingController,
        *,
        jpeg_quality: int = 80,
        zoom_applier: ZoomFn = apply_digital_zoom,
        error_backoff: float = 0.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._camera = camera
        self._shared_state = shared_state
        self._detector = detector
        self._controller = controller
        self._jpeg_quality = int(jpeg_quality)
        self._zoom_applier = zoom_applier
        self._error_backoff = max(0.0, float(error_backoff))
        self._clock = clock
        self._digital_zoom = 1.0
        self._frames = 0
        self._errors = 0
        self._lock = Lock()
        self._stop_event = Event()
        self._thread: Thread | None = None

    @property
    def camera(self) -> BaseCamera:
        return self._camera

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def digital_zoom(self) -> float:
        return self._digital_zoom

    def apply_pending_zoom(self) -> float | None:
        """Hand a pending zoom request to the camera or the digital crop."""

        level = self._shared_state.take_zoom_request()
        if level is None:
            return None
        try:
            optical = bool(self._camera.set_zoom(level))
        except Exception as exc:
            logger.warning("Camera rejected zoom %.2f: %s", level, exc)
            optical = False
        self._digital_zoom = 1.0 if optical else level
        logger.info("Zoom set to %.2fx (%s)", level, "optical" if optical else "digital")
        return level

    def process_frame(self, raw: Any, timestamp: float | None = None) -> Frame:
        """Run one captured frame through encode, publish, detect and record."""

        if self._digital_zoom > 1.0:
            raw = self._zoom_applier(raw, self._digital_zoom)
        rgb = prepare_rgb_frame(raw)
        payload = encode_frame_to_jpeg(rgb, quality=self._jpeg_quality)
        height, width = rgb.shape[:2]
        frame = Frame(
            data=payload,
            timestamp=self._clock() if timestamp is None else float(timestamp),
            width=int(width),
            height=int(height),
        )
        self._shared_state.publish_frame(frame)
        motion = self._detector.evaluate(rgb, timestamp=frame.timestamp)
        self._controller.tick(frame, motion)
        self._frames += 1
        return frame

    def step(self) -> Frame:
        self.apply_pending_zoom()
        raw = self._camera.read_frame()
        return self.process_frame(raw)

    # ------------------------------------------------------------------
    def start(self) -> None:
        with self._lock:
            thread = self._thread
            if thread is not None and thread.is_alive():
                return
            self._stop_event.clear()
            thread = Thread(target=self._run, name="FrameIngestion", daemon=True)
            self._thread = thread
        thread.start()
        logger.info("Frame ingestion started")

    def stop(self, timeout: float = 5.0) -> Any:
        """Stop ingestion and finalise any open recording session."""

        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop_event.set()
        if thread is not None and thread.is_alive():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Frame ingestion did not stop within %.1fs", timeout)
        return self._controller.shutdown()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.step()
            except CameraError as exc:
                self._errors += 1
                logger.warning("Camera read failed: %s", exc)
                self._stop_event.wait(self._error_backoff)
            except Exception:
                self._errors += 1
                logger.exception("Frame processing failed")

    def snapshot(self) -> dict[str, object]:
        return {
            "running": self.running,
            "frames_processed": self._frames,
            "errors": self._errors,
            "digital_zoom": self._digital_zoom,
        }


__all__ = ["MonitoringPipeline", "apply_digital_zoom"]
