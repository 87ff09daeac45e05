"""Frame-carrying media streams shared by capture, transport and preview."""
from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import logging
from collections.abc import Callable
from typing import AsyncIterator, Optional

import numpy as np

logger = logging.getLogger(__name__)

EndedCallback = Callable[[], None]


class MediaStream:
    """Latest-frame holder with fan-out to async subscribers.

    A stream is also the video surface snapshots are taken from: the most
    recently pushed frame is what is "currently displayed".
    """

    def __init__(self, *, label: str = "stream", queue_size: int = 2) -> None:
        self.label = label
        self._queue_size = queue_size
        self._latest: Optional[np.ndarray] = None
        self._subscribers: list[asyncio.Queue[Optional[np.ndarray]]] = []
        self._ended_callbacks: list[EndedCallback] = []
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def width(self) -> int:
        return 0 if self._latest is None else int(self._latest.shape[1])

    @property
    def height(self) -> int:
        return 0 if self._latest is None else int(self._latest.shape[0])

    def current_frame(self) -> Optional[np.ndarray]:
        return self._latest

    def push_frame(self, frame: np.ndarray) -> None:
        if not self._active:
            return
        self._latest = frame
        self._broadcast(frame)

    async def frames(self) -> AsyncIterator[np.ndarray]:
        """Yield frames as they arrive until the stream stops or ends."""

        queue: asyncio.Queue[Optional[np.ndarray]] = asyncio.Queue(maxsize=self._queue_size)
        if not self._active:
            return
        if self._latest is not None:
            queue.put_nowait(self._latest)
        self._subscribers.append(queue)
        try:
            while True:
                frame = await queue.get()
                if frame is None:
                    break
                yield frame
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def on_ended(self, callback: EndedCallback) -> None:
        self._ended_callbacks.append(callback)

    def end(self) -> None:
        """Signal that the source went away on its own (e.g. "stop sharing")."""

        if not self._active:
            return
        logger.info("Media stream %s ended by source", self.label)
        self._close()
        for callback in list(self._ended_callbacks):
            try:
                callback()
            except Exception:  # pragma: no cover - defensive guard
                logger.exception("Stream ended callback failed")

    def stop(self) -> None:
        """Release the stream locally; ended callbacks are not invoked."""

        if not self._active:
            return
        logger.debug("Stopping media stream %s", self.label)
        self._ended_callbacks.clear()
        self._close()

    def _close(self) -> None:
        self._active = False
        for queue in list(self._subscribers):
            self._put_latest(queue, None)

    def _broadcast(self, frame: np.ndarray) -> None:
        for queue in list(self._subscribers):
            self._put_latest(queue, frame)

    @staticmethod
    def _put_latest(queue: asyncio.Queue[Optional[np.ndarray]], item: Optional[np.ndarray]) -> None:
        if queue.full():
            try:
                queue.get_nowait()
            except QueueEmpty:
                pass
        queue.put_nowait(item)


__all__ = ["MediaStream", "EndedCallback"]
