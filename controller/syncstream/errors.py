"""Normalised failures raised by syncstream collaborators."""
from __future__ import annotations

import enum
from typing import Optional


class ErrorKind(str, enum.Enum):
    PERMISSION = "permission"
    UNSUPPORTED = "unsupported"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    ANALYSIS = "analysis"


class PeerError(RuntimeError):
    """Failure of an external collaborator, reduced to a kind and a message."""

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or message)
        self.message = message

    def as_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}


class CapturePermissionError(PeerError):
    kind = ErrorKind.PERMISSION


class CaptureUnsupportedError(PeerError):
    kind = ErrorKind.UNSUPPORTED


class TransportError(PeerError):
    kind = ErrorKind.TRANSPORT


class ConnectTimeoutError(PeerError):
    kind = ErrorKind.TIMEOUT


class AnalysisError(PeerError):
    kind = ErrorKind.ANALYSIS


__all__ = [
    "ErrorKind",
    "PeerError",
    "CapturePermissionError",
    "CaptureUnsupportedError",
    "TransportError",
    "ConnectTimeoutError",
    "AnalysisError",
]
