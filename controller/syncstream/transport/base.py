"""Peer transport interface consumed by the sender and receiver sessions."""
from __future__ import annotations

import abc
import enum
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

from ..errors import TransportError
from ..media import MediaStream


class NotificationKind(str, enum.Enum):
    INBOUND = "inbound"
    STREAM = "stream"
    CLOSED = "closed"
    ERROR = "error"


class InboundRequest(abc.ABC):
    """Connection request from a remote peer, answered with a local stream."""

    peer_identity: str

    @abc.abstractmethod
    async def answer(self, stream: MediaStream) -> None:
        ...


@dataclass
class TransportNotification:
    kind: NotificationKind
    request: Optional[InboundRequest] = None
    stream: Optional[MediaStream] = None
    error: Optional[TransportError] = None


TransportListener = Callable[[TransportNotification], None]


class PeerTransport(abc.ABC):
    """One peer handle on the rendezvous transport.

    A handle carries at most one listener; subscribing again replaces it and
    `destroy` drops it. All failures surface as TransportError.
    """

    def __init__(self) -> None:
        self._listener: Optional[TransportListener] = None
        self.identity: Optional[str] = None

    def subscribe(self, listener: TransportListener) -> None:
        self._listener = listener

    def unsubscribe(self) -> None:
        self._listener = None

    def notify(self, notification: TransportNotification) -> None:
        if self._listener is not None:
            self._listener(notification)

    @abc.abstractmethod
    async def open(self, identity: Optional[str] = None) -> str:
        """Register on the rendezvous namespace; None requests an ephemeral identity."""

    @abc.abstractmethod
    async def listen(self) -> None:
        """Start accepting inbound requests (reported as INBOUND notifications)."""

    @abc.abstractmethod
    async def dial(self, target: str, placeholder: Any = None) -> None:
        """Request a stream from `target`; outcomes arrive as notifications."""

    @abc.abstractmethod
    async def destroy(self) -> None:
        ...


TransportFactory = Callable[[], PeerTransport]


__all__ = [
    "NotificationKind",
    "InboundRequest",
    "TransportNotification",
    "TransportListener",
    "PeerTransport",
    "TransportFactory",
]
