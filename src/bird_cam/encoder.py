"""H.264 encoder sink that turns recorded frames into MP4 archive clips."""
from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from fractions import Fraction
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterator

import av
import numpy as np

from .event_log import EventLog
from .state import Frame
from .storage import ArchiveEntry, StorageQuotaManager, is_protected, parse_archive_timestamp
from .streaming import decode_jpeg_to_rgb

logger = logging.getLogger(__name__)


class EncoderError(RuntimeError):
    """Raised when a recording session cannot be started."""


class StorageFullError(EncoderError):
    """Raised when free disk space is below the configured minimum."""


# ---------------------------------------------------------------------------
# Codec discovery
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class H264EncoderBackend:
    """A concrete H.264 encoder implementation."""

    key: str
    codec: str
    label: str
    hardware: bool = False


_H264_BACKENDS: tuple[H264EncoderBackend, ...] = (
    H264EncoderBackend(
        key="v4l2m2m",
        codec="h264_v4l2m2m",
        label="V4L2 M2M (hardware)",
        hardware=True,
    ),
    H264EncoderBackend(key="libx264", codec="libx264", label="libx264 (software)"),
)

# Tried after the H.264 backends when none of them can be opened.
_GENERIC_CODECS = ("h264", "mpeg4")

_ENCODER_ALIASES = {
    "": "auto",
    "default": "auto",
    "hardware": "v4l2m2m",
    "h264_v4l2m2m": "v4l2m2m",
    "software": "libx264",
    "x264": "libx264",
}


def codec_candidates(preference: str | None) -> list[str]:
    """Return codec names to try, preferred backend first."""

    key = (preference or "auto").strip().lower()
    key = _ENCODER_ALIASES.get(key, key)
    ordered: list[H264EncoderBackend] = list(_H264_BACKENDS)
    if key != "auto":
        preferred = [b for b in _H264_BACKENDS if key in (b.key, b.codec)]
        if preferred:
            ordered = preferred + [b for b in _H264_BACKENDS if b not in preferred]
        else:
            logger.debug("Unknown encoder preference %r; using automatic selection", preference)
    names = [backend.codec for backend in ordered]
    names.extend(codec for codec in _GENERIC_CODECS if codec not in names)
    return names


def probe_codec(codec: str, *, width: int | None = None, height: int | None = None, fps: int = 30) -> bool:
    """Return ``True`` when FFmpeg can create an encoder for *codec*.

    With dimensions given the encoder is also opened once, which catches
    hardware encoders that are compiled in but have no device behind them.
    """

    try:
        context = av.CodecContext.create(codec, "w")
    except Exception as exc:
        logger.debug("Codec %s unavailable: %s", codec, exc)
        return False
    if not getattr(context, "is_encoder", True):
        logger.debug("Codec %s is not an encoder", codec)
        return False
    if width is None or height is None:
        return True
    try:
        context.width = int(width)
        context.height = int(height)
        context.pix_fmt = "yuv420p"
        context.time_base = Fraction(1, int(fps))
        context.open()
    except Exception as exc:
        logger.debug("Codec %s cannot be opened at %sx%s: %s", codec, width, height, exc)
        return False
    return True


def even_dimensions(width: int, height: int) -> tuple[int, int]:
    return (max(2, int(width) - int(width) % 2), max(2, int(height) - int(height) % 2))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------
@dataclass(slots=True, eq=False)
class RecordingSession:
    """One open encoder and container pair writing a single archive clip."""

    name: str
    path: Path
    backend: str
    width: int
    height: int
    started_at: float
    result: Future = field(default_factory=Future, repr=False)
    frames_written: int = 0
    track_started: bool = False
    failed: bool = False
    error: str | None = None
    closed: bool = False
    _handle: BinaryIO | None = field(default=None, repr=False)
    _container: Any = field(default=None, repr=False)
    _stream: Any = field(default=None, repr=False)
    _last_encode: float | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "backend": self.backend,
            "width": self.width,
            "height": self.height,
            "started_at": self.started_at,
            "frames_written": self.frames_written,
            "failed": self.failed,
            "closed": self.closed,
        }


ContainerOpener = Callable[[BinaryIO, int, int], "tuple[Any, Any]"]


class EncoderSink:
    """Serialises session open, append and close onto one encoder thread.

    ``open`` checks free space on the caller's thread and raises
    :class:`StorageFullError` without touching the disk when it is too low;
    the container itself is created on the worker. ``append`` and ``close``
    only enqueue work, so the pacing sleeps never reach the caller.
    """

    def __init__(
        self,
        storage: StorageQuotaManager,
        *,
        fps: int = 30,
        bitrate: int = 2_000_000,
        encoder: str = "auto",
        prefix: str = "bird",
        drain_timeout: float = 5.0,
        pace: bool = True,
        container_opener: ContainerOpener | None = None,
        frame_decoder: Callable[[bytes], np.ndarray] = decode_jpeg_to_rgb,
        event_log: EventLog | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        if drain_timeout <= 0:
            raise ValueError("drain_timeout must be positive")
        self._storage = storage
        self._fps = int(fps)
        self._frame_interval = 1.0 / float(self._fps)
        self._bitrate = int(bitrate)
        self._encoder_preference = encoder
        self._prefix = prefix
        self._drain_timeout = float(drain_timeout)
        self._pace = bool(pace)
        self._container_opener = container_opener or self._open_av_container
        self._decode = frame_decoder
        self._event_log = event_log
        self._clock = clock
        self._codec: str | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="encoder")
        self._shutdown = False

    @property
    def fps(self) -> int:
        return self._fps

    @property
    def codec(self) -> str | None:
        """The codec chosen by the most recent successful open."""

        return self._codec

    # ------------------------------------------------------------------
    def open(self, width: int, height: int) -> RecordingSession:
        if self._shutdown:
            raise EncoderError("Encoder sink has been shut down")
        backend = self._storage.active_backend()
        min_free = self._storage.settings().min_free_bytes
        free = backend.free_space()
        if free < min_free:
            raise StorageFullError(
                f"Only {free} bytes free on {backend.identifier} storage; "
                f"{min_free} required to record"
            )
        started_at = self._clock()
        name = self._storage.unique_name(self._prefix, datetime.fromtimestamp(started_at))
        even_width, even_height = even_dimensions(width, height)
        session = RecordingSession(
            name=name,
            path=backend.path_for(name),
            backend=backend.identifier,
            width=even_width,
            height=even_height,
            started_at=started_at,
        )
        self._storage.mark_in_use(name)
        self._submit(self._open_session, session, backend)
        return session

    def append(self, session: RecordingSession, frame: Frame) -> None:
        self._submit(self._append_frame, session, frame)

    def close(self, session: RecordingSession) -> Future:
        """Queue finalisation; the returned future resolves to the archive entry."""

        self._submit(self._close_session, session)
        return session.result

    def flush(self, timeout: float | None = None) -> None:
        """Block until every queued operation has run."""

        self._executor.submit(lambda: None).result(timeout=timeout)

    def shutdown(self, timeout: float | None = None) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        try:
            self.flush(timeout)
        except Exception:
            # The worker keeps running queued closes; only the caller stops waiting.
            logger.warning("Encoder queue did not drain within %s s; not waiting further", timeout)
            self._executor.shutdown(wait=False)
            return
        self._executor.shutdown(wait=True)

    def _submit(self, fn: Callable[..., None], *args: object) -> None:
        try:
            self._executor.submit(self._guard, fn, *args)
        except RuntimeError as exc:
            raise EncoderError("Encoder sink has been shut down") from exc

    @staticmethod
    def _guard(fn: Callable[..., None], *args: object) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("Encoder task %s failed", getattr(fn, "__name__", fn))

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    def _open_av_container(self, handle: BinaryIO, width: int, height: int) -> tuple[Any, Any]:
        container = av.open(handle, mode="w", format="mp4")
        candidates = codec_candidates(self._encoder_preference)
        if self._codec in candidates:
            candidates.remove(self._codec)
            candidates.insert(0, self._codec)
        stream = None
        for codec in candidates:
            if codec != self._codec and not probe_codec(codec, width=width, height=height, fps=self._fps):
                continue
            try:
                stream = container.add_stream(codec, rate=self._fps)
            except Exception as exc:
                logger.debug("Unable to add %s stream: %s", codec, exc)
                continue
            self._codec = codec
            break
        if stream is None:
            container.close()
            raise EncoderError("No compatible H.264 encoder available")
        stream.width = int(width)
        stream.height = int(height)
        stream.pix_fmt = "yuv420p"
        stream.time_base = Fraction(1, self._fps)
        stream.codec_context.bit_rate = self._bitrate
        stream.codec_context.gop_size = self._fps
        if self._codec == "libx264":
            stream.codec_context.options = {"preset": "veryfast", "tune": "zerolatency"}
        return container, stream

    def _open_session(self, session: RecordingSession, backend) -> None:
        try:
            handle = backend.open_for_write(session.name)
        except OSError as exc:
            self._fail(session, f"Unable to create {session.name}: {exc}")
            return
        session._handle = handle
        try:
            container, stream = self._container_opener(handle, session.width, session.height)
        except Exception as exc:
            self._fail(session, f"Failed to start encoder: {exc}")
            return
        session._container = container
        session._stream = stream
        logger.info(
            "Recording %s started (%dx%d, %s)", session.name, session.width, session.height, self._codec
        )
        if self._event_log is not None:
            self._event_log.record(
                "recording",
                "session_started",
                f"Recording {session.name} started.",
                metadata={"name": session.name, "backend": session.backend, "codec": self._codec},
            )

    def _fail(self, session: RecordingSession, message: str) -> None:
        logger.error("%s", message)
        session.failed = True
        session.error = message
        self._teardown(session)
        self._remove_file(session)
        session.closed = True
        self._storage.release(session.name)
        if not session.result.done():
            session.result.set_result(None)

    def _append_frame(self, session: RecordingSession, frame: Frame) -> None:
        if session.failed or session.closed or session._stream is None:
            return
        try:
            rgb = self._decode(frame.data)
        except Exception as exc:
            logger.warning("Skipping undecodable frame in %s: %s", session.name, exc)
            return

        if self._pace and session._last_encode is not None:
            remaining = self._frame_interval - (time.perf_counter() - session._last_encode)
            if remaining > 0:
                time.sleep(remaining)
        session._last_encode = time.perf_counter()

        try:
            video_frame = av.VideoFrame.from_ndarray(np.ascontiguousarray(rgb), format="rgb24")
            if video_frame.width != session.width or video_frame.height != session.height:
                video_frame = video_frame.reformat(width=session.width, height=session.height)
            video_frame.pts = session.frames_written
            packets = session._stream.encode(video_frame)
            self._mux(session, packets)
        except Exception as exc:
            logger.warning("Failed to encode frame for %s: %s", session.name, exc)
            return
        session.frames_written += 1

    def _mux(self, session: RecordingSession, packets) -> None:
        for packet in packets:
            if not session.track_started:
                session.track_started = True
                logger.debug("Video track for %s started", session.name)
            session._container.mux(packet)

    def _drain(self, session: RecordingSession) -> Iterator[object]:
        # The container header is written with the first packet; encode()
        # without a frame signals end of stream.
        yield from session._stream.encode()

    def _close_session(self, session: RecordingSession) -> None:
        if session.closed:
            return
        session.closed = True
        if not session.failed and session._stream is not None:
            # PyAV flushes synchronously; the deadline bounds muxing the flushed packets.
            deadline = time.monotonic() + self._drain_timeout
            try:
                for packet in self._drain(session):
                    if time.monotonic() > deadline:
                        logger.warning("Encoder drain for %s timed out", session.name)
                        break
                    self._mux(session, (packet,))
            except Exception:
                logger.exception("Failed to drain encoder for %s", session.name)
        self._teardown(session)
        self._storage.release(session.name)

        entry: ArchiveEntry | None = None
        if session.frames_written == 0:
            self._remove_file(session)
            logger.info("Discarded empty recording %s", session.name)
        else:
            size = 0
            try:
                size = session.path.stat().st_size
            except OSError:
                logger.warning("Finished recording %s is missing", session.name)
            entry = ArchiveEntry(
                name=session.name,
                size=size,
                backend=session.backend,
                protected=is_protected(session.name),
                timestamp=parse_archive_timestamp(session.name),
            )
            logger.info(
                "Recording %s finished (%d frames, %d bytes)",
                session.name,
                session.frames_written,
                size,
            )
            if self._event_log is not None:
                self._event_log.record(
                    "recording",
                    "session_finished",
                    f"Recording {session.name} saved.",
                    metadata={"name": session.name, "frames": session.frames_written, "bytes": size},
                )
        if not session.result.done():
            session.result.set_result(entry)

    def _teardown(self, session: RecordingSession) -> None:
        # Each step runs even if an earlier one raised.
        container = session._container
        handle = session._handle
        session._stream = None
        session._container = None
        session._handle = None
        if container is not None:
            try:
                container.close()
            except Exception:
                logger.exception("Failed to close container for %s", session.name)
        if handle is not None:
            try:
                handle.close()
            except Exception:
                logger.exception("Failed to close file handle for %s", session.name)

    @staticmethod
    def _remove_file(session: RecordingSession) -> None:
        try:
            session.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Unable to remove %s: %s", session.path, exc)


__all__ = [
    "EncoderError",
    "EncoderSink",
    "H264EncoderBackend",
    "RecordingSession",
    "StorageFullError",
    "codec_candidates",
    "even_dimensions",
    "probe_codec",
]
