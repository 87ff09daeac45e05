"""
Test Configuration
==================

Fakes for the capture, transport and analysis collaborators, plus helpers
for driving the state machine inside ``asyncio.run``.
"""

import asyncio
from typing import Any, Dict, List, Optional

import numpy as np
import pytest

from syncstream.analysis.gemini import ScreenAnalyzer
from syncstream.capture.display import CaptureOptions, DisplayCapture
from syncstream.config import Settings
from syncstream.errors import CapturePermissionError, CaptureUnsupportedError, PeerError
from syncstream.media import MediaStream
from syncstream.state_machine import ConnectionStateMachine
from syncstream.transport.base import (
    InboundRequest,
    NotificationKind,
    PeerTransport,
    TransportNotification,
)


def make_frame(width: int = 64, height: int = 48) -> np.ndarray:
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:, : width // 2] = (255, 128, 0)
    return frame


class FakeRelay:
    """In-memory rendezvous namespace shared by FakeTransport handles."""

    def __init__(self) -> None:
        self.peers: Dict[str, "FakeTransport"] = {}
        self.created: List["FakeTransport"] = []
        self._counter = 0
        self.fail_open: Optional[PeerError] = None

    def factory(self) -> "FakeTransport":
        transport = FakeTransport(self)
        self.created.append(transport)
        return transport

    def next_identity(self) -> str:
        self._counter += 1
        return f"ephemeral-{self._counter}"

    @property
    def last(self) -> "FakeTransport":
        return self.created[-1]


class FakeInboundRequest(InboundRequest):
    def __init__(self, caller: "FakeTransport", callee: "FakeTransport") -> None:
        self.caller = caller
        self.callee = callee
        self.peer_identity = caller.identity or ""
        self.answered_with: Optional[MediaStream] = None

    async def answer(self, stream: MediaStream) -> None:
        self.answered_with = stream
        self.callee.connected.append(self.caller)
        self.caller.connected.append(self.callee)
        remote = MediaStream(label="remote")
        frame = stream.current_frame()
        if frame is not None:
            remote.push_frame(frame)
        self.caller.notify(TransportNotification(NotificationKind.STREAM, stream=remote))


class FakeTransport(PeerTransport):
    def __init__(self, relay: FakeRelay) -> None:
        super().__init__()
        self.relay = relay
        self.listening = False
        self.destroyed = False
        self.dialed: List[tuple] = []
        self.connected: List["FakeTransport"] = []

    async def open(self, identity: Optional[str] = None) -> str:
        if self.relay.fail_open is not None:
            raise self.relay.fail_open
        self.identity = identity or self.relay.next_identity()
        self.relay.peers[self.identity] = self
        return self.identity

    async def listen(self) -> None:
        self.listening = True

    async def dial(self, target: str, placeholder: Any = None) -> None:
        self.dialed.append((target, placeholder))
        peer = self.relay.peers.get(target)
        if peer is not None and peer.listening:
            peer.notify(TransportNotification(NotificationKind.INBOUND, request=FakeInboundRequest(self, peer)))

    async def destroy(self) -> None:
        self.destroyed = True
        self.unsubscribe()
        for peer in self.connected:
            peer.emit(NotificationKind.CLOSED)
        self.connected.clear()
        if self.identity and self.relay.peers.get(self.identity) is self:
            del self.relay.peers[self.identity]

    def emit(self, kind: NotificationKind, **fields: Any) -> None:
        self.notify(TransportNotification(kind, **fields))


class FakeCapture(DisplayCapture):
    """Capture collaborator whose outcome is chosen by the test."""

    def __init__(self, outcome: str = "ok") -> None:
        self.outcome = outcome
        self.requests: List[CaptureOptions] = []
        self.streams: List[MediaStream] = []
        self.release = asyncio.Event() if outcome == "pending" else None

    async def request_display_capture(self, options: CaptureOptions) -> MediaStream:
        self.requests.append(options)
        if self.outcome == "denied":
            raise CapturePermissionError("Permission denied")
        if self.outcome == "unsupported":
            raise CaptureUnsupportedError("Screen sharing is not supported on this device.")
        if self.outcome == "crash":
            raise RuntimeError("driver exploded")
        if self.release is not None:
            await self.release.wait()
        stream = MediaStream(label="display")
        stream.push_frame(make_frame())
        self.streams.append(stream)
        return stream


class FakeAnalyzer(ScreenAnalyzer):
    def __init__(self, answer: str = "A login screen.", *, error: Optional[Exception] = None, gated: bool = False) -> None:
        self.answer = answer
        self.error = error
        self.calls: List[tuple] = []
        self.gate = asyncio.Event() if gated else None

    async def analyze(self, image_payload: str, question: str) -> str:
        self.calls.append((image_payload, question))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.answer


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {"connect_timeout_seconds": 0.05}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def build_machine(
    *,
    relay: Optional[FakeRelay] = None,
    capture: Optional[DisplayCapture] = None,
    analyzer: Optional[ScreenAnalyzer] = None,
    **settings: Any,
) -> ConnectionStateMachine:
    relay = relay or FakeRelay()
    return ConnectionStateMachine(
        settings=make_settings(**settings),
        capture=capture or FakeCapture(),
        transport_factory=relay.factory,
        analyzer=analyzer or FakeAnalyzer(),
    )


async def settle(machine: ConnectionStateMachine, rounds: int = 10) -> None:
    """Let spawned collaborator tasks run and drain the event queue."""

    for _ in range(rounds):
        await asyncio.sleep(0)
        await machine.join()


@pytest.fixture
def relay():
    return FakeRelay()
