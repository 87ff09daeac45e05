"""Receiver role: dial a code and race the stream against a deadline."""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from ..codes import is_valid_code, namespace
from ..errors import ConnectTimeoutError, TransportError
from ..state import AppState, Role, Trigger
from ..transport.base import PeerTransport

if TYPE_CHECKING:
    from ..state_machine import ConnectionStateMachine, TransitionEvent

logger = logging.getLogger(__name__)

CONNECT_ERROR_MESSAGE = "Could not connect; check the code."
TIMEOUT_MESSAGE = "Connection timed out."
HOST_ENDED_MESSAGE = "Host ended the session."

# Opaque payload sent with the dial before any local stream exists.
PLACEHOLDER_OFFER = {"video": False, "audio": False}


class ReceiverSession:
    def __init__(self, machine: "ConnectionStateMachine") -> None:
        self._machine = machine

    async def start(self, event: "TransitionEvent") -> None:
        machine = self._machine
        if machine.state is not AppState.IDLE:
            return
        machine.clear_notice()
        machine.begin_session(Role.RECEIVER)
        machine.clear_error()
        await machine.set_state(AppState.RECEIVER_ENTERING_CODE)

    async def submit(self, event: "TransitionEvent") -> None:
        machine = self._machine
        code = event.data.get("code")
        if machine.state is not AppState.RECEIVER_ENTERING_CODE or machine.session is None:
            return
        if not is_valid_code(code):
            logger.debug("Ignoring malformed code submission %r", code)
            return

        target = namespace(code, machine.settings.rendezvous_prefix)
        transport = machine.transport_factory()
        session = machine.session
        session.code = code
        session.transport = transport
        attempt = machine.attempt
        transport.subscribe(machine.listener_for(attempt))
        machine.clear_error()
        await machine.set_state(AppState.RECEIVER_CONNECTING)
        machine.arm_deadline(machine.settings.connect_timeout_seconds, Trigger.CONNECT_TIMEOUT)
        machine.spawn("connect", self._dial(transport, target, attempt))

    async def _dial(self, transport: PeerTransport, target: str, attempt: int) -> None:
        try:
            identity = await transport.open(None)
            logger.info("Dialling %s as %s", target, identity)
            await transport.dial(target, PLACEHOLDER_OFFER)
        except asyncio.CancelledError:
            raise
        except TransportError as exc:
            self._machine.post(Trigger.TRANSPORT_ERROR, attempt=attempt, error=exc)
        except Exception as exc:
            logger.exception("Dial failed unexpectedly")
            error = TransportError(CONNECT_ERROR_MESSAGE, log_message=repr(exc))
            self._machine.post(Trigger.TRANSPORT_ERROR, attempt=attempt, error=error)

    async def on_stream(self, event: "TransitionEvent") -> None:
        machine = self._machine
        if machine.state is not AppState.RECEIVER_CONNECTING or machine.session is None:
            return
        machine.cancel_deadline()
        machine.session.remote_stream = event.data["stream"]
        await machine.set_state(AppState.RECEIVER_VIEWING)

    async def on_timeout(self, event: "TransitionEvent") -> None:
        # the deadline may fire after another outcome already won
        if self._machine.state is not AppState.RECEIVER_CONNECTING:
            return
        await self._machine.fail(AppState.RECEIVER_ENTERING_CODE, ConnectTimeoutError(TIMEOUT_MESSAGE), keep_code=True)

    async def on_transport_error(self, event: "TransitionEvent") -> None:
        if self._machine.state not in {AppState.RECEIVER_CONNECTING, AppState.RECEIVER_VIEWING}:
            return
        cause = event.data.get("error")
        error = TransportError(CONNECT_ERROR_MESSAGE, log_message=str(cause))
        await self._machine.fail(AppState.RECEIVER_ENTERING_CODE, error, keep_code=True)

    async def on_remote_closed(self, event: "TransitionEvent") -> None:
        machine = self._machine
        if machine.state is AppState.RECEIVER_CONNECTING:
            # a close before any stream counts as a failed dial
            await self.on_transport_error(event)
        elif machine.state is AppState.RECEIVER_VIEWING:
            logger.info("Host ended the session")
            await machine.reset()
            machine.notify(HOST_ENDED_MESSAGE)


__all__ = [
    "ReceiverSession",
    "CONNECT_ERROR_MESSAGE",
    "TIMEOUT_MESSAGE",
    "HOST_ENDED_MESSAGE",
    "PLACEHOLDER_OFFER",
]
