"""Shared controller state definitions for syncstream."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .media import MediaStream
from .transport.base import PeerTransport


class AppState(str, enum.Enum):
    IDLE = "idle"
    SENDER_WAITING = "sender_waiting"
    SENDER_SHARING = "sender_sharing"
    RECEIVER_ENTERING_CODE = "receiver_entering_code"
    RECEIVER_CONNECTING = "receiver_connecting"
    RECEIVER_VIEWING = "receiver_viewing"


class Role(str, enum.Enum):
    SENDER = "sender"
    RECEIVER = "receiver"


class Trigger(str, enum.Enum):
    """Named inputs accepted by the connection state machine."""

    # user actions
    START_SENDER = "start_sender"
    START_RECEIVER = "start_receiver"
    SUBMIT_CODE = "submit_code"
    CANCEL = "cancel"
    DISCONNECT = "disconnect"
    STOP = "stop"
    OPEN_AI = "open_ai"
    ASK = "ask"
    CLOSE_AI = "close_ai"
    RESET_QUESTION = "reset_question"

    # collaborator notifications
    CAPTURE_READY = "capture_ready"
    CAPTURE_FAILED = "capture_failed"
    CAPTURE_ENDED = "capture_ended"
    INBOUND_REQUEST = "inbound_request"
    STREAM_RECEIVED = "stream_received"
    REMOTE_CLOSED = "remote_closed"
    TRANSPORT_ERROR = "transport_error"
    CONNECT_TIMEOUT = "connect_timeout"


@dataclass
class ControllerEvent:
    """Event payload distributed to UI clients over the local WebSocket."""

    type: str
    data: Dict[str, Any]
    state: AppState
    error: Optional[str] = None


@dataclass
class Session:
    """Resources held by one sender or receiver pairing attempt."""

    role: Role
    code: str = ""
    local_stream: Optional[MediaStream] = None
    remote_stream: Optional[MediaStream] = None
    transport: Optional[PeerTransport] = None

    @property
    def stream(self) -> Optional[MediaStream]:
        return self.local_stream if self.role is Role.SENDER else self.remote_stream


__all__ = ["AppState", "Role", "Trigger", "ControllerEvent", "Session"]
