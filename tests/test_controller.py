"""Tests for the recording state machine."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from bird_cam.controller import RecordingController, RecordingState
from bird_cam.encoder import StorageFullError
from bird_cam.state import Frame, SharedState


class _RecordingSink:
    """Collects every sink call in order."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, object]] = []
        self.sessions: list[SimpleNamespace] = []
        self.refuse = False
        self.open_sessions = 0

    def open(self, width: int, height: int):
        if self.refuse:
            raise StorageFullError("disk full")
        assert self.open_sessions == 0, "a second session was opened before the first closed"
        session = SimpleNamespace(index=len(self.sessions), size=(width, height), frames=[], failed=False)
        self.sessions.append(session)
        self.open_sessions += 1
        self.calls.append(("open", session.index))
        return session

    def append(self, session, frame: Frame) -> None:
        session.frames.append(frame)
        self.calls.append(("append", session.index))

    def close(self, session):
        self.open_sessions -= 1
        self.calls.append(("close", session.index))
        return session.index


def _frame(index: int = 0) -> Frame:
    return Frame(data=b"jpeg", timestamp=float(index), width=64, height=48)


def _controller(sink: _RecordingSink, state: SharedState, **kwargs) -> RecordingController:
    kwargs.setdefault("hold_frames", 2)
    kwargs.setdefault("retry_backoff_frames", 0)
    return RecordingController(sink, state, **kwargs)


def test_idle_without_motion_never_touches_the_sink() -> None:
    sink = _RecordingSink()
    controller = _controller(sink, SharedState())

    for index in range(5):
        assert controller.tick(_frame(index), False) is RecordingState.IDLE

    assert sink.calls == []


def test_motion_opens_session_and_appends_opening_frame() -> None:
    sink = _RecordingSink()
    state = SharedState()
    controller = _controller(sink, state)

    assert controller.tick(_frame(1), True) is RecordingState.ACTIVE

    assert sink.calls == [("open", 0), ("append", 0)]
    assert sink.sessions[0].size == (64, 48)
    assert state.recording_active() is True
    assert state.last_motion_ms() == 1000
    assert controller.hold_frames_remaining == 2


def test_hold_period_keeps_recording_then_finalises() -> None:
    sink = _RecordingSink()
    state = SharedState()
    controller = _controller(sink, state, hold_frames=2)

    controller.tick(_frame(0), True)
    assert controller.tick(_frame(1), False) is RecordingState.ACTIVE
    assert controller.hold_frames_remaining == 1
    assert controller.tick(_frame(2), False) is RecordingState.ACTIVE
    assert controller.hold_frames_remaining == 0
    assert controller.tick(_frame(3), False) is RecordingState.IDLE

    assert sink.calls == [("open", 0), ("append", 0), ("append", 0), ("append", 0), ("close", 0)]
    assert state.recording_active() is False
    assert controller.session is None


def test_motion_during_hold_resets_the_counter() -> None:
    sink = _RecordingSink()
    controller = _controller(sink, SharedState(), hold_frames=3)

    controller.tick(_frame(0), True)
    controller.tick(_frame(1), False)
    controller.tick(_frame(2), False)
    assert controller.hold_frames_remaining == 1
    controller.tick(_frame(3), True)
    assert controller.hold_frames_remaining == 3


def test_at_most_one_session_and_close_precedes_next_open() -> None:
    sink = _RecordingSink()
    controller = _controller(sink, SharedState(), hold_frames=0)

    pattern = [True, True, False, True, False, False, True]
    for index, motion in enumerate(pattern):
        controller.tick(_frame(index), motion)
    controller.shutdown()

    opens = [index for index, (name, _) in enumerate(sink.calls) if name == "open"]
    closes = [index for index, (name, _) in enumerate(sink.calls) if name == "close"]
    assert len(opens) == len(closes) == 3
    for open_index, close_index in zip(opens[1:], closes):
        assert close_index < open_index
    assert sink.open_sessions == 0


def test_manual_flag_prevents_idle_and_freezes_hold() -> None:
    sink = _RecordingSink()
    state = SharedState()
    controller = _controller(sink, state, hold_frames=2)

    controller.tick(_frame(0), True)
    state.set_manual_recording(True)
    for index in range(1, 10):
        assert controller.tick(_frame(index), False) is RecordingState.ACTIVE
    assert controller.hold_frames_remaining == 2
    assert ("close", 0) not in sink.calls


def test_manual_flag_alone_starts_recording() -> None:
    sink = _RecordingSink()
    state = SharedState()
    controller = _controller(sink, state)
    state.set_manual_recording(True)

    assert controller.tick(_frame(0), False) is RecordingState.ACTIVE
    assert sink.calls == [("open", 0), ("append", 0)]


def test_clearing_manual_flag_finalises_on_the_next_tick() -> None:
    sink = _RecordingSink()
    state = SharedState()
    controller = _controller(sink, state, hold_frames=2)

    controller.tick(_frame(0), True)
    controller.tick(_frame(1), False)
    controller.tick(_frame(2), False)
    assert controller.hold_frames_remaining == 0
    state.set_manual_recording(True)
    controller.tick(_frame(3), False)
    controller.tick(_frame(4), False)
    assert controller.state is RecordingState.ACTIVE

    state.set_manual_recording(False)

    assert controller.tick(_frame(5), False) is RecordingState.IDLE
    assert sink.calls[-1] == ("close", 0)
    assert len(sink.sessions[0].frames) == 5


def test_refusal_keeps_controller_idle_and_retries_later() -> None:
    sink = _RecordingSink()
    sink.refuse = True
    state = SharedState()
    controller = _controller(sink, state, retry_backoff_frames=2)

    assert controller.tick(_frame(0), True) is RecordingState.IDLE
    # Backing off: the sink is not asked again for two ticks.
    sink.refuse = False
    assert controller.tick(_frame(1), True) is RecordingState.IDLE
    assert controller.tick(_frame(2), True) is RecordingState.IDLE
    assert sink.calls == []
    assert state.recording_active() is False

    assert controller.tick(_frame(3), True) is RecordingState.ACTIVE
    assert sink.calls == [("open", 0), ("append", 0)]


def test_failed_session_returns_to_idle() -> None:
    sink = _RecordingSink()
    controller = _controller(sink, SharedState())

    controller.tick(_frame(0), True)
    sink.sessions[0].failed = True
    controller.tick(_frame(1), True)

    assert sink.calls[:3] == [("open", 0), ("append", 0), ("close", 0)]
    assert sink.calls[3:] == [("open", 1), ("append", 1)]


def test_max_session_frames_rolls_over_to_a_new_file() -> None:
    sink = _RecordingSink()
    controller = _controller(sink, SharedState(), max_session_frames=3)

    for index in range(7):
        controller.tick(_frame(index), True)

    assert [len(session.frames) for session in sink.sessions] == [3, 3, 1]
    assert sink.calls.count(("close", 0)) == 1
    assert sink.calls.count(("close", 1)) == 1


def test_rollover_during_hold_keeps_the_remaining_hold() -> None:
    sink = _RecordingSink()
    controller = _controller(sink, SharedState(), hold_frames=10, max_session_frames=3)

    states = [controller.tick(_frame(0), True)]
    states += [controller.tick(_frame(index), False) for index in range(1, 11)]

    assert states == [RecordingState.ACTIVE] * 11
    assert [len(session.frames) for session in sink.sessions] == [3, 3, 3, 2]
    assert controller.hold_frames_remaining == 0

    assert controller.tick(_frame(11), False) is RecordingState.IDLE
    assert sink.calls[-1] == ("close", 3)


def test_rollover_while_only_the_manual_flag_is_set() -> None:
    sink = _RecordingSink()
    state = SharedState()
    state.set_manual_recording(True)
    controller = _controller(sink, state, max_session_frames=2)

    for index in range(5):
        assert controller.tick(_frame(index), False) is RecordingState.ACTIVE

    assert [len(session.frames) for session in sink.sessions] == [2, 2, 1]
    assert state.recording_active() is True

    state.set_manual_recording(False)
    assert controller.tick(_frame(5), False) is RecordingState.IDLE
    assert sink.open_sessions == 0


def test_refusal_callback_receives_the_error() -> None:
    sink = _RecordingSink()
    sink.refuse = True
    refused: list[Exception] = []
    controller = _controller(sink, SharedState(), on_refused=refused.append)

    controller.tick(_frame(0), True)
    controller.tick(_frame(1), True)

    assert len(refused) == 2
    assert all(isinstance(exc, StorageFullError) for exc in refused)
    assert controller.state is RecordingState.IDLE


def test_session_start_callback_runs_for_each_session() -> None:
    sink = _RecordingSink()
    started: list[object] = []
    controller = _controller(sink, SharedState(), hold_frames=0, on_session_start=started.append)

    controller.tick(_frame(0), True)
    controller.tick(_frame(1), False)
    controller.tick(_frame(2), True)

    assert started == sink.sessions


def test_shutdown_finalises_open_session() -> None:
    sink = _RecordingSink()
    state = SharedState()
    state.set_manual_recording(True)
    controller = _controller(sink, state)
    controller.tick(_frame(0), False)

    assert controller.shutdown() == 0
    assert controller.state is RecordingState.IDLE
    assert state.recording_active() is False
    assert controller.shutdown() is None


def test_snapshot_reports_state() -> None:
    controller = _controller(_RecordingSink(), SharedState())
    snapshot = controller.snapshot()
    assert snapshot["state"] == "idle"
    assert snapshot["session"] is None


def test_negative_hold_is_rejected() -> None:
    with pytest.raises(ValueError):
        RecordingController(_RecordingSink(), SharedState(), hold_frames=-1)
