"""Recording state machine driven once per ingested frame."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Protocol

from .encoder import EncoderError, StorageFullError
from .event_log import EventLog
from .state import Frame, SharedState

logger = logging.getLogger(__name__)


class RecordingState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


class SessionSink(Protocol):
    """The subset of :class:`~bird_cam.encoder.EncoderSink` the controller uses."""

    def open(self, width: int, height: int) -> Any:  # pragma: no cover - protocol
        ...

    def append(self, session: Any, frame: Frame) -> None:  # pragma: no cover - protocol
        ...

    def close(self, session: Any) -> Any:  # pragma: no cover - protocol
        ...


class RecordingController:
    """Decide, frame by frame, whether a recording session should be open.

    The controller is owned by the ingestion worker and is not thread-safe.
    It records while motion is confirmed, while the manual flag is set, and
    for ``hold_frames`` ticks after the last confirmed motion. The hold
    counter does not run down while the manual flag is set.
    """

    def __init__(
        self,
        sink: SessionSink,
        shared_state: SharedState,
        *,
        hold_frames: int = 300,
        max_session_frames: int | None = None,
        retry_backoff_frames: int = 30,
        on_session_start: Callable[[Any], None] | None = None,
        on_refused: Callable[[Exception], None] | None = None,
        event_log: EventLog | None = None,
    ) -> None:
        if hold_frames < 0:
            raise ValueError("hold_frames must not be negative")
        if max_session_frames is not None and max_session_frames < 1:
            raise ValueError("max_session_frames must be positive")
        self._sink = sink
        self._shared_state = shared_state
        self._hold_frames = int(hold_frames)
        self._max_session_frames = max_session_frames
        self._retry_backoff_frames = max(0, int(retry_backoff_frames))
        self._on_session_start = on_session_start
        self._on_refused = on_refused
        self._event_log = event_log

        self._state = RecordingState.IDLE
        self._session: Any = None
        self._hold_remaining = 0
        self._session_frames = 0
        self._sessions_opened = 0
        self._backoff_remaining = 0
        self._refusing = False
        self._was_manual = False

    # ------------------------------ properties -----------------------------
    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def session(self) -> Any:
        return self._session

    @property
    def hold_frames_remaining(self) -> int:
        return self._hold_remaining

    @property
    def hold_frames(self) -> int:
        return self._hold_frames

    # ------------------------------ operations -----------------------------
    def tick(self, frame: Frame, motion_confirmed: bool) -> RecordingState:
        """Advance the state machine by one frame."""

        manual = self._shared_state.manual_recording()
        manual_released = self._was_manual and not manual
        self._was_manual = manual

        if self._state is RecordingState.ACTIVE and getattr(self._session, "failed", False):
            logger.warning("Recording session failed; returning to idle")
            self._finish()
            self._backoff_remaining = self._retry_backoff_frames

        if self._state is RecordingState.IDLE:
            if not (motion_confirmed or manual):
                self._refusing = False
                return self._state
            if self._backoff_remaining > 0:
                self._backoff_remaining -= 1
                return self._state
            if not self._start(frame):
                return self._state
        elif not motion_confirmed and not manual and self._hold_remaining == 0:
            if manual_released:
                logger.info("Manual recording released without motion; finalising session")
            self._finish()
            return self._state

        if (
            self._max_session_frames is not None
            and self._session_frames >= self._max_session_frames
        ):
            logger.info("Recording reached %d frames; starting a new file", self._session_frames)
            hold = self._hold_remaining
            self._finish()
            if not self._start(frame):
                return self._state
            self._hold_remaining = hold

        self._sink.append(self._session, frame)
        self._session_frames += 1

        if motion_confirmed:
            self._hold_remaining = self._hold_frames
            self._shared_state.mark_motion(frame.timestamp_ms)
        elif self._hold_remaining > 0 and not manual:
            self._hold_remaining -= 1
        return self._state

    def shutdown(self) -> Any:
        """Finalise the open session, if any, and return the sink's close result."""

        if self._state is RecordingState.IDLE:
            return None
        return self._finish()

    def snapshot(self) -> dict[str, object]:
        session = self._session
        describe = getattr(session, "to_dict", None)
        return {
            "state": self._state.value,
            "hold_frames": self._hold_frames,
            "hold_frames_remaining": self._hold_remaining,
            "session_frames": self._session_frames,
            "sessions_opened": self._sessions_opened,
            "max_session_frames": self._max_session_frames,
            "session": describe() if callable(describe) else None,
        }

    # ----------------------------- implementation --------------------------
    def _start(self, frame: Frame) -> bool:
        try:
            session = self._sink.open(frame.width, frame.height)
        except (StorageFullError, EncoderError) as exc:
            self._refuse(exc)
            return False
        except Exception as exc:
            logger.exception("Unexpected failure opening a recording session")
            self._refuse(exc)
            return False

        self._session = session
        self._state = RecordingState.ACTIVE
        self._session_frames = 0
        self._sessions_opened += 1
        self._refusing = False
        self._shared_state.set_recording_active(True)
        if self._on_session_start is not None:
            try:
                self._on_session_start(session)
            except Exception:
                logger.exception("Session start callback failed")
        return True

    def _refuse(self, exc: Exception) -> None:
        self._backoff_remaining = self._retry_backoff_frames
        if self._on_refused is not None:
            try:
                self._on_refused(exc)
            except Exception:
                logger.exception("Refusal callback failed")
        reason = str(exc)
        if self._refusing:
            return
        self._refusing = True
        logger.warning("Cannot record right now: %s", reason)
        if self._event_log is not None:
            self._event_log.record("recording", "refused", "Recording could not start.", metadata={"reason": reason})

    def _finish(self) -> Any:
        session = self._session
        self._session = None
        result = None
        try:
            result = self._sink.close(session)
        except Exception:
            logger.exception("Failed to finalise recording session")
        self._state = RecordingState.IDLE
        self._hold_remaining = 0
        self._session_frames = 0
        self._shared_state.set_recording_active(False)
        return result


__all__ = ["RecordingController", "RecordingState", "SessionSink"]
