"""Shared state published by the ingestion worker and read by everyone else."""
from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass

DEFAULT_MAX_ZOOM = 8.0


@dataclass(frozen=True, slots=True)
class Frame:
    """A compressed camera frame and the wall-clock time it was captured."""

    data: bytes
    timestamp: float
    width: int
    height: int

    @property
    def timestamp_ms(self) -> int:
        return int(self.timestamp * 1000)

    def __len__(self) -> int:
        return len(self.data)


class SharedState:
    """Cells shared between the ingestion worker, HTTP handlers and stream readers.

    Each attribute holds an immutable value and is only ever replaced as a
    whole, so readers never observe a partial update and never block the
    producer. The zoom request is the one compound update (level plus dirty
    flag) and is the only place a lock is taken.
    """

    def __init__(self, *, max_zoom: float = DEFAULT_MAX_ZOOM) -> None:
        if max_zoom < 1.0:
            raise ValueError("max_zoom must be at least 1.0")
        self._max_zoom = float(max_zoom)
        self._latest_frame: Frame | None = None
        self._last_motion_ms = 0
        self._manual_recording = False
        self._recording_active = False
        self._zoom_level = 1.0
        self._zoom_dirty = False
        self._zoom_lock = threading.Lock()

    # ------------------------------ frames ---------------------------------
    def publish_frame(self, frame: Frame) -> None:
        self._latest_frame = frame

    def latest_frame(self) -> Frame | None:
        return self._latest_frame

    # ------------------------------ motion ---------------------------------
    def mark_motion(self, timestamp_ms: int | None = None) -> int:
        """Record the time of the most recent confirmed motion."""

        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)
        self._last_motion_ms = int(timestamp_ms)
        return self._last_motion_ms

    def last_motion_ms(self) -> int:
        return self._last_motion_ms

    # ----------------------------- recording -------------------------------
    def set_manual_recording(self, enabled: bool) -> None:
        self._manual_recording = bool(enabled)

    def manual_recording(self) -> bool:
        return self._manual_recording

    def set_recording_active(self, active: bool) -> None:
        self._recording_active = bool(active)

    def recording_active(self) -> bool:
        return self._recording_active

    # ------------------------------- zoom ----------------------------------
    @property
    def max_zoom(self) -> float:
        return self._max_zoom

    def request_zoom(self, level: float) -> float:
        """Set a new zoom target, clamped to the supported range."""

        try:
            value = float(level)
        except (TypeError, ValueError) as exc:
            raise ValueError("Zoom level must be numeric") from exc
        if not math.isfinite(value):
            raise ValueError("Zoom level must be finite")
        value = min(max(value, 1.0), self._max_zoom)
        with self._zoom_lock:
            self._zoom_level = value
            self._zoom_dirty = True
        return value

    def zoom_level(self) -> float:
        return self._zoom_level

    def take_zoom_request(self) -> float | None:
        """Return the pending zoom target once, clearing the dirty flag."""

        if not self._zoom_dirty:
            return None
        with self._zoom_lock:
            if not self._zoom_dirty:
                return None
            self._zoom_dirty = False
            return self._zoom_level

    def snapshot(self) -> dict[str, object]:
        frame = self._latest_frame
        return {
            "last_motion_ms": self._last_motion_ms,
            "manual_recording": self._manual_recording,
            "recording": self._recording_active,
            "zoom": self._zoom_level,
            "frame_timestamp_ms": frame.timestamp_ms if frame is not None else None,
            "frame_size": [frame.width, frame.height] if frame is not None else None,
        }


__all__ = ["DEFAULT_MAX_ZOOM", "Frame", "SharedState"]
