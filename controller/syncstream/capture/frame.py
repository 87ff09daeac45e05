"""Still-image extraction from live streams."""
from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import cv2
import numpy as np

logger = logging.getLogger(__name__)

PNG_DATA_URL_PREFIX = "data:image/png;base64,"


class VideoSurface(Protocol):
    def current_frame(self) -> Optional[np.ndarray]:
        ...


@dataclass(frozen=True)
class Snapshot:
    """A still frame captured at a point in time."""

    payload: str
    width: int
    height: int
    captured_at: float


def capture_frame(surface: VideoSurface) -> Optional[Snapshot]:
    """Snapshot whatever the surface currently shows.

    Returns None while the surface has nothing decoded yet.
    """

    frame = surface.current_frame()
    if frame is None or frame.ndim < 2:
        return None
    height, width = int(frame.shape[0]), int(frame.shape[1])
    if width == 0 or height == 0:
        return None

    encoded = encode_image(frame, ".png")
    if not encoded:
        return None
    payload = PNG_DATA_URL_PREFIX + base64.b64encode(encoded).decode("ascii")
    return Snapshot(payload=payload, width=width, height=height, captured_at=time.time())


def encode_image(frame: np.ndarray, extension: str = ".jpg", *, quality: int = 80) -> Optional[bytes]:
    params = [int(cv2.IMWRITE_JPEG_QUALITY), quality] if extension == ".jpg" else []
    try:
        success, encoded = cv2.imencode(extension, frame, params)
    except cv2.error:
        logger.exception("Failed to encode %s frame", extension)
        return None
    if not success:
        return None
    return encoded.tobytes()


def decode_image(data: bytes) -> Optional[np.ndarray]:
    buffer = np.frombuffer(data, dtype=np.uint8)
    if buffer.size == 0:
        return None
    return cv2.imdecode(buffer, cv2.IMREAD_COLOR)


__all__ = ["Snapshot", "VideoSurface", "capture_frame", "encode_image", "decode_image", "PNG_DATA_URL_PREFIX"]
