"""Display-capture collaborators used by the sender role."""
from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Union

import cv2

from ..errors import CaptureUnsupportedError
from ..media import MediaStream

logger = logging.getLogger(__name__)

UNSUPPORTED_MESSAGE = "Screen sharing is not supported on this device."


@dataclass(frozen=True)
class CaptureOptions:
    cursor: str = "always"
    audio: bool = False


class DisplayCapture(abc.ABC):
    """Source of the stream a sender broadcasts.

    Implementations raise CapturePermissionError when the user declines and
    CaptureUnsupportedError when no capture mechanism is available. The call
    may wait indefinitely on a permission prompt.
    """

    @abc.abstractmethod
    async def request_display_capture(self, options: CaptureOptions) -> MediaStream:
        ...


class UnsupportedDisplayCapture(DisplayCapture):
    """Used on hosts without any configured display source."""

    async def request_display_capture(self, options: CaptureOptions) -> MediaStream:
        raise CaptureUnsupportedError(UNSUPPORTED_MESSAGE, log_message="no capture source configured")


class OpenCVDisplayCapture(DisplayCapture):
    """Pumps frames from an OpenCV video source (capture card, virtual display, URL)."""

    def __init__(self, source: Union[int, str], *, fps: float = 10.0) -> None:
        self.source = int(source) if isinstance(source, str) and source.isdigit() else source
        self.fps = fps
        self._tasks: set[asyncio.Task[None]] = set()

    async def request_display_capture(self, options: CaptureOptions) -> MediaStream:
        if options.audio:
            logger.info("Audio capture requested but not supported; continuing with video only")
        loop = asyncio.get_running_loop()
        cap = await loop.run_in_executor(None, cv2.VideoCapture, self.source)
        if not cap.isOpened():
            cap.release()
            raise CaptureUnsupportedError(UNSUPPORTED_MESSAGE, log_message=f"cannot open capture source {self.source!r}")

        stream = MediaStream(label=f"display:{self.source}")
        task = asyncio.create_task(self._pump(cap, stream), name="display-capture-pump")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Display capture started source=%s fps=%s", self.source, self.fps)
        return stream

    async def _pump(self, cap: "cv2.VideoCapture", stream: MediaStream) -> None:
        loop = asyncio.get_running_loop()
        interval = 1 / self.fps if self.fps > 0 else 0.1
        try:
            while stream.active:
                ok, frame = await loop.run_in_executor(None, cap.read)
                if not ok or frame is None:
                    stream.end()
                    break
                stream.push_frame(frame)
                await asyncio.sleep(interval)
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancel
            raise
        except Exception:  # pragma: no cover - defensive guard
            logger.exception("Display capture pump crashed")
            stream.end()
        finally:
            cap.release()
            logger.info("Display capture released source=%s", self.source)


def build_display_capture(source: Optional[str], *, fps: float = 10.0) -> DisplayCapture:
    if not source:
        return UnsupportedDisplayCapture()
    return OpenCVDisplayCapture(source, fps=fps)


__all__ = [
    "CaptureOptions",
    "DisplayCapture",
    "UnsupportedDisplayCapture",
    "OpenCVDisplayCapture",
    "build_display_capture",
    "UNSUPPORTED_MESSAGE",
]
