"""Live MJPEG distribution and JPEG helpers."""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import AsyncGenerator

import numpy as np

from .state import SharedState

logger = logging.getLogger(__name__)

try:  # pragma: no cover - dependency availability varies by platform
    import simplejpeg
except ImportError as exc:  # pragma: no cover - dependency availability varies
    simplejpeg = None
    _SIMPLEJPEG_IMPORT_ERROR = exc
    _SIMPLEJPEG_ENCODE_KWARGS: set[str] = set()
else:  # pragma: no cover - dependency availability varies
    _SIMPLEJPEG_IMPORT_ERROR = None
    try:  # pragma: no cover - dependency availability varies
        _SIMPLEJPEG_ENCODE_KWARGS = set(
            inspect.signature(simplejpeg.encode_jpeg).parameters
        )
    except (TypeError, ValueError):  # pragma: no cover - C-extension signature unsupported
        _SIMPLEJPEG_ENCODE_KWARGS = set()


def _require_simplejpeg() -> None:
    if simplejpeg is None:  # pragma: no cover - dependency availability varies
        raise RuntimeError("simplejpeg is required for JPEG handling") from _SIMPLEJPEG_IMPORT_ERROR


def prepare_rgb_frame(frame: np.ndarray | list) -> np.ndarray:
    """Return a contiguous uint8 RGB frame."""

    array = np.asarray(frame)
    if array.ndim == 2:
        array = np.repeat(array[:, :, np.newaxis], 3, axis=2)
    elif array.ndim == 3:
        if array.shape[2] == 1:
            array = np.repeat(array, 3, axis=2)
        elif array.shape[2] > 3:
            array = array[:, :, :3]
    else:
        raise ValueError("Expected a 2D or 3D frame")

    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)

    if not array.flags["C_CONTIGUOUS"]:
        array = np.ascontiguousarray(array)

    return array


def encode_frame_to_jpeg(frame: np.ndarray | list, *, quality: int) -> bytes:
    """Encode an RGB frame into JPEG bytes using the configured quality."""

    _require_simplejpeg()
    array = prepare_rgb_frame(frame)
    encode_kwargs: dict[str, object] = {
        "quality": int(quality),
        "colorspace": "RGB",
    }
    if "fastdct" in _SIMPLEJPEG_ENCODE_KWARGS:
        encode_kwargs["fastdct"] = True
    return simplejpeg.encode_jpeg(array, **encode_kwargs)


def decode_jpeg_to_rgb(payload: bytes) -> np.ndarray:
    """Decode JPEG bytes into an RGB array."""

    _require_simplejpeg()
    return simplejpeg.decode_jpeg(payload, colorspace="RGB")


@dataclass
class MJPEGStreamer:
    """Serve the hub's latest frame to any number of independent viewers.

    Each call to :meth:`stream` polls the shared state on its own and only
    emits a frame whose reference differs from the one it sent last. Nothing
    is queued, so a slow viewer simply skips frames.
    """

    shared_state: SharedState
    boundary: str = "frame"
    poll_interval: float = 0.01
    _closed: bool = field(init=False, default=False)
    _clients: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if not self.boundary or any(ch in self.boundary for ch in "\r\n"):
            raise ValueError("boundary must be a single-line token")

    @property
    def media_type(self) -> str:
        """Return the MIME type advertised for MJPEG responses."""

        return f"multipart/x-mixed-replace; boundary={self.boundary}"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def client_count(self) -> int:
        return self._clients

    def render_chunk(self, payload: bytes) -> bytes:
        header = (
            f"--{self.boundary}\r\n"
            "Content-Type: image/jpeg\r\n"
            f"Content-Length: {len(payload)}\r\n\r\n"
        ).encode("ascii")
        return header + payload + b"\r\n"

    async def stream(self) -> AsyncGenerator[bytes, None]:
        """Yield multipart chunks until the streamer is closed."""

        if self._closed:
            raise RuntimeError("Streaming service is shutting down")
        self._clients += 1
        last_sent = None
        try:
            while not self._closed:
                frame = self.shared_state.latest_frame()
                if frame is None or frame is last_sent or not frame.data:
                    await asyncio.sleep(self.poll_interval)
                    continue
                last_sent = frame
                yield self.render_chunk(frame.data)
        finally:
            self._clients -= 1

    def close(self) -> None:
        """Stop every running stream and refuse new ones."""

        self._closed = True


__all__ = [
    "MJPEGStreamer",
    "decode_jpeg_to_rgb",
    "encode_frame_to_jpeg",
    "prepare_rgb_frame",
]
