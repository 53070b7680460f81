"""Tests for the shared state hub."""

from __future__ import annotations

import math

import pytest

from bird_cam.state import Frame, SharedState


def _frame(payload: bytes = b"jpeg", timestamp: float = 1.5) -> Frame:
    return Frame(data=payload, timestamp=timestamp, width=4, height=2)


def test_latest_frame_is_replaced_as_a_whole() -> None:
    state = SharedState()
    assert state.latest_frame() is None

    first = _frame(b"a")
    second = _frame(b"b")
    state.publish_frame(first)
    assert state.latest_frame() is first
    state.publish_frame(second)
    assert state.latest_frame() is second
    assert len(second) == 1
    assert second.timestamp_ms == 1500


def test_last_motion_defaults_to_zero_and_tracks_updates() -> None:
    state = SharedState()
    assert state.last_motion_ms() == 0
    state.mark_motion(1234)
    assert state.last_motion_ms() == 1234
    assert state.mark_motion() > 1234


def test_manual_and_recording_flags() -> None:
    state = SharedState()
    assert state.manual_recording() is False
    state.set_manual_recording(True)
    assert state.manual_recording() is True
    state.set_recording_active(True)
    snapshot = state.snapshot()
    assert snapshot["manual_recording"] is True
    assert snapshot["recording"] is True
    assert snapshot["frame_size"] is None


def test_zoom_request_is_clamped_and_consumed_once() -> None:
    state = SharedState(max_zoom=4.0)
    assert state.take_zoom_request() is None

    assert state.request_zoom(10) == 4.0
    assert state.request_zoom("0.5") == 1.0
    assert state.take_zoom_request() == 1.0
    assert state.take_zoom_request() is None

    state.request_zoom(2.5)
    assert state.zoom_level() == 2.5
    assert state.take_zoom_request() == 2.5


@pytest.mark.parametrize("value", ["abc", None, math.inf, math.nan])
def test_zoom_request_rejects_invalid_values(value) -> None:
    state = SharedState()
    with pytest.raises(ValueError):
        state.request_zoom(value)
    assert state.take_zoom_request() is None


def test_max_zoom_must_allow_unzoomed_view() -> None:
    with pytest.raises(ValueError):
        SharedState(max_zoom=0.5)
