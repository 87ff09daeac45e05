"""Sender role: acquire the display, publish a code, answer one viewer."""
from __future__ import annotations

import asyncio
import functools
import logging
from typing import TYPE_CHECKING

from ..capture.display import UNSUPPORTED_MESSAGE, CaptureOptions
from ..codes import generate_code, namespace
from ..errors import (
    CapturePermissionError,
    CaptureUnsupportedError,
    ErrorKind,
    PeerError,
    TransportError,
)
from ..media import MediaStream
from ..state import AppState, Role, Trigger
from ..transport.base import PeerTransport

if TYPE_CHECKING:
    from ..state_machine import ConnectionStateMachine, TransitionEvent

logger = logging.getLogger(__name__)

SENDER_ERROR_MESSAGE = "Connection error. Please restart."
SENDER_STATES = {AppState.SENDER_WAITING, AppState.SENDER_SHARING}


class SenderSession:
    def __init__(self, machine: "ConnectionStateMachine") -> None:
        self._machine = machine

    async def start(self, event: "TransitionEvent") -> None:
        machine = self._machine
        if machine.state is not AppState.IDLE:
            return
        if machine.is_pending("capture"):
            logger.info("Display capture request already pending")
            return
        machine.clear_notice()
        if machine.last_error is not None:
            machine.clear_error()
            await machine.set_state(AppState.IDLE)
        machine.spawn("capture", self._acquire(machine.attempt))

    async def _acquire(self, origin: int) -> None:
        try:
            stream = await self._machine.capture.request_display_capture(CaptureOptions())
        except asyncio.CancelledError:
            raise
        except (CapturePermissionError, CaptureUnsupportedError) as exc:
            self._machine.post(Trigger.CAPTURE_FAILED, error=exc, origin=origin)
        except Exception as exc:
            logger.exception("Display capture failed unexpectedly")
            error = CaptureUnsupportedError(UNSUPPORTED_MESSAGE, log_message=repr(exc))
            self._machine.post(Trigger.CAPTURE_FAILED, error=error, origin=origin)
        else:
            self._machine.post(Trigger.CAPTURE_READY, stream=stream, origin=origin)

    async def on_capture_ready(self, event: "TransitionEvent") -> None:
        machine = self._machine
        stream: MediaStream = event.data["stream"]
        if machine.state is not AppState.IDLE or event.data.get("origin") != machine.attempt:
            logger.info("Discarding display stream acquired after the session moved on")
            stream.stop()
            return

        attempt = machine.attempt
        stream.on_ended(functools.partial(machine.post, Trigger.CAPTURE_ENDED, attempt=attempt))
        code = generate_code()
        identity = namespace(code, machine.settings.rendezvous_prefix)
        transport = machine.transport_factory()
        machine.begin_session(Role.SENDER, code=code, local_stream=stream, transport=transport)
        transport.subscribe(machine.listener_for(attempt))
        machine.clear_error()
        await machine.set_state(AppState.SENDER_WAITING)
        logger.info("Sharing under code %s", code)
        machine.spawn("connect", self._register(transport, identity, attempt))

    async def _register(self, transport: PeerTransport, identity: str, attempt: int) -> None:
        try:
            await transport.open(identity)
            await transport.listen()
        except asyncio.CancelledError:
            raise
        except TransportError as exc:
            self._machine.post(Trigger.TRANSPORT_ERROR, attempt=attempt, error=exc)
        except Exception as exc:
            logger.exception("Transport registration failed unexpectedly")
            error = TransportError(SENDER_ERROR_MESSAGE, log_message=repr(exc))
            self._machine.post(Trigger.TRANSPORT_ERROR, attempt=attempt, error=error)

    async def on_capture_failed(self, event: "TransitionEvent") -> None:
        machine = self._machine
        error: PeerError = event.data["error"]
        if machine.state is not AppState.IDLE or event.data.get("origin") != machine.attempt:
            return
        if error.kind is ErrorKind.PERMISSION:
            logger.info("Display capture declined by user")
            return
        await machine.fail(AppState.IDLE, error)

    async def on_capture_ended(self, event: "TransitionEvent") -> None:
        if self._machine.state in SENDER_STATES:
            logger.info("Display capture ended externally; resetting")
            await self._machine.reset()

    async def on_inbound(self, event: "TransitionEvent") -> None:
        machine = self._machine
        if machine.state is AppState.SENDER_SHARING:
            logger.info("Already sharing with a viewer; ignoring another inbound request")
            return
        if machine.state is not AppState.SENDER_WAITING or machine.session is None:
            return
        request = event.data["request"]
        try:
            await request.answer(machine.session.local_stream)
        except TransportError as exc:
            await machine.fail(AppState.IDLE, TransportError(SENDER_ERROR_MESSAGE, log_message=str(exc)))
            return
        logger.info("Answered viewer %s", getattr(request, "peer_identity", "?"))
        await machine.set_state(AppState.SENDER_SHARING)

    async def on_transport_error(self, event: "TransitionEvent") -> None:
        if self._machine.state not in SENDER_STATES:
            return
        cause = event.data.get("error")
        await self._machine.fail(AppState.IDLE, TransportError(SENDER_ERROR_MESSAGE, log_message=str(cause)))

    async def on_remote_closed(self, event: "TransitionEvent") -> None:
        machine = self._machine
        if machine.state is not AppState.SENDER_SHARING:
            return
        # capture and code stay up so the viewer can dial the same code again
        logger.info("Viewer disconnected; waiting for another")
        await machine.set_state(AppState.SENDER_WAITING)


__all__ = ["SenderSession", "SENDER_ERROR_MESSAGE"]
