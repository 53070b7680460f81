"""Tests for the encoder sink and its session lifecycle."""

from __future__ import annotations

import threading
import time
from datetime import datetime
from pathlib import Path

import pytest

pytest.importorskip("av")
import numpy as np

from bird_cam.config import StorageSettings
from bird_cam.encoder import (
    EncoderError,
    EncoderSink,
    StorageFullError,
    codec_candidates,
    even_dimensions,
)
from bird_cam.event_log import EventLog
from bird_cam.state import Frame
from bird_cam.storage import LocalDirectoryBackend, StorageQuotaManager

_START = datetime(2024, 5, 1, 12, 0, 0).timestamp()


class _DummyPacket:
    pass


class _DummyStream:
    def __init__(self) -> None:
        self.encoded_pts: list[int | None] = []
        self.flushed = False

    def encode(self, frame=None):
        if frame is None:
            self.flushed = True
            return [_DummyPacket()]
        self.encoded_pts.append(frame.pts)
        return [_DummyPacket()]


class _DummyContainer:
    def __init__(self, *, fail_close: bool = False) -> None:
        self.muxed: list[object] = []
        self.closed = False
        self.fail_close = fail_close

    def mux(self, packet) -> None:
        self.muxed.append(packet)

    def close(self) -> None:
        self.closed = True
        if self.fail_close:
            raise RuntimeError("close failed")


class _Opener:
    def __init__(self, *, fail_close: bool = False, error: Exception | None = None) -> None:
        self.fail_close = fail_close
        self.error = error
        self.handles: list[object] = []
        self.containers: list[_DummyContainer] = []
        self.streams: list[_DummyStream] = []

    def __call__(self, handle, width: int, height: int):
        self.handles.append(handle)
        if self.error is not None:
            raise self.error
        container = _DummyContainer(fail_close=self.fail_close)
        stream = _DummyStream()
        self.containers.append(container)
        self.streams.append(stream)
        return container, stream


def _decode(payload: bytes) -> np.ndarray:
    return np.zeros((48, 64, 3), dtype=np.uint8)


def _frame(index: int = 0) -> Frame:
    return Frame(data=b"jpeg", timestamp=float(index), width=64, height=48)


def _storage(tmp_path: Path, **settings) -> StorageQuotaManager:
    settings.setdefault("min_free_gb", 0.0)
    current = StorageSettings(**settings)
    return StorageQuotaManager(lambda: current, LocalDirectoryBackend(tmp_path / "recordings"))


def _sink(storage: StorageQuotaManager, opener, **kwargs) -> EncoderSink:
    kwargs.setdefault("pace", False)
    return EncoderSink(
        storage,
        container_opener=opener,
        frame_decoder=_decode,
        clock=lambda: _START,
        **kwargs,
    )


def test_session_writes_frames_and_finalises(tmp_path: Path) -> None:
    storage = _storage(tmp_path)
    opener = _Opener()
    log = EventLog(tmp_path / "events.jsonl")
    sink = _sink(storage, opener, event_log=log)

    session = sink.open(64, 48)
    assert session.name == "bird_20240501_120000.mp4"
    assert session.name in storage.in_use()
    for index in range(3):
        sink.append(session, _frame(index))
    entry = sink.close(session).result(timeout=5)
    sink.shutdown()

    assert entry is not None
    assert entry.name == session.name
    assert session.frames_written == 3
    assert opener.streams[0].encoded_pts == [0, 1, 2]
    assert opener.streams[0].flushed is True
    assert len(opener.containers[0].muxed) == 4
    assert opener.containers[0].closed is True
    assert opener.handles[0].closed is True
    assert session.path.exists()
    assert storage.in_use() == frozenset()
    assert [item.event for item in log.tail(category="recording")] == [
        "session_started",
        "session_finished",
    ]


def test_open_refuses_when_disk_is_low(tmp_path: Path) -> None:
    storage = _storage(tmp_path, min_free_gb=1e9)
    opener = _Opener()
    sink = _sink(storage, opener)

    with pytest.raises(StorageFullError):
        sink.open(64, 48)
    sink.shutdown()

    assert opener.handles == []
    assert list((tmp_path / "recordings").glob("*.mp4")) == []
    assert storage.in_use() == frozenset()


def test_empty_session_removes_its_file(tmp_path: Path) -> None:
    storage = _storage(tmp_path)
    sink = _sink(storage, _Opener())

    session = sink.open(64, 48)
    assert sink.close(session).result(timeout=5) is None
    sink.shutdown()

    assert not session.path.exists()


def test_teardown_closes_handle_even_if_container_close_fails(tmp_path: Path) -> None:
    storage = _storage(tmp_path)
    opener = _Opener(fail_close=True)
    sink = _sink(storage, opener)

    session = sink.open(64, 48)
    sink.append(session, _frame())
    entry = sink.close(session).result(timeout=5)
    sink.shutdown()

    assert entry is not None
    assert opener.containers[0].closed is True
    assert opener.handles[0].closed is True
    assert storage.in_use() == frozenset()


def test_encoder_start_failure_marks_session_failed(tmp_path: Path) -> None:
    storage = _storage(tmp_path)
    opener = _Opener(error=EncoderError("no encoder"))
    sink = _sink(storage, opener)

    session = sink.open(64, 48)
    sink.append(session, _frame())
    assert sink.close(session).result(timeout=5) is None
    sink.shutdown()

    assert session.failed is True
    assert "no encoder" in (session.error or "")
    assert not session.path.exists()
    assert storage.in_use() == frozenset()


def test_concurrent_names_do_not_collide(tmp_path: Path) -> None:
    storage = _storage(tmp_path)
    sink = _sink(storage, _Opener())

    first = sink.open(64, 48)
    second = sink.open(64, 48)
    sink.close(first)
    sink.close(second)
    sink.shutdown()

    assert first.name != second.name
    assert second.name == "bird_20240501_120000-1.mp4"


def test_undecodable_frame_is_skipped(tmp_path: Path) -> None:
    storage = _storage(tmp_path)
    opener = _Opener()

    def _decode_or_fail(payload: bytes) -> np.ndarray:
        if payload == b"bad":
            raise ValueError("corrupt")
        return _decode(payload)

    sink = EncoderSink(
        storage,
        container_opener=opener,
        frame_decoder=_decode_or_fail,
        pace=False,
        clock=lambda: _START,
    )
    session = sink.open(64, 48)
    sink.append(session, Frame(data=b"bad", timestamp=0.0, width=64, height=48))
    sink.append(session, _frame(1))
    sink.close(session).result(timeout=5)
    sink.shutdown()

    assert session.frames_written == 1
    assert opener.streams[0].encoded_pts == [0]


def test_odd_dimensions_are_rounded_down() -> None:
    assert even_dimensions(641, 481) == (640, 480)
    assert even_dimensions(1, 1) == (2, 2)


def test_codec_candidates_honour_preference() -> None:
    assert codec_candidates("auto")[:2] == ["h264_v4l2m2m", "libx264"]
    assert codec_candidates("software")[0] == "libx264"
    assert codec_candidates("unknown")[0] == "h264_v4l2m2m"
    assert codec_candidates(None)[-1] == "mpeg4"


def test_shutdown_rejects_new_sessions(tmp_path: Path) -> None:
    sink = _sink(_storage(tmp_path), _Opener())
    sink.shutdown()
    with pytest.raises(EncoderError):
        sink.open(64, 48)


def test_shutdown_timeout_bounds_the_wait(tmp_path: Path) -> None:
    sink = _sink(_storage(tmp_path), _Opener())
    release = threading.Event()
    sink._submit(release.wait, 5.0)

    started = time.monotonic()
    sink.shutdown(timeout=0.05)
    elapsed = time.monotonic() - started
    release.set()

    assert elapsed < 2.0
    with pytest.raises(EncoderError):
        sink.open(64, 48)


def test_real_container_produces_playable_file(tmp_path: Path) -> None:
    import av

    storage = _storage(tmp_path)
    sink = EncoderSink(storage, fps=10, frame_decoder=_decode, pace=False, clock=lambda: _START)

    session = sink.open(64, 48)
    for index in range(10):
        sink.append(session, _frame(index))
    entry = sink.close(session).result(timeout=30)
    sink.shutdown()

    if session.failed:
        pytest.skip(f"No usable video encoder: {session.error}")
    assert entry is not None and entry.size > 0
    with av.open(str(session.path)) as container:
        assert container.streams.video[0].width == 64
