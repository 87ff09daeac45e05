"""WebSocket rendezvous relay transport.

Each peer holds one socket to the relay. The relay routes `dial` requests to
the socket registered under the target identity and forwards everything
tagged with the call id between the two peers. Frames travel as base64 JPEG.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import uuid
from typing import Any, Optional

import websockets
from websockets.asyncio.client import ClientConnection, connect

from ..capture.frame import decode_image, encode_image
from ..config import Settings
from ..errors import TransportError
from ..media import MediaStream
from .base import InboundRequest, NotificationKind, PeerTransport, TransportNotification

logger = logging.getLogger(__name__)

REGISTER_TIMEOUT_SECONDS = 10.0


class RelayInboundRequest(InboundRequest):
    def __init__(self, transport: "RelayTransport", call_id: str, peer_identity: str) -> None:
        self._transport = transport
        self.call_id = call_id
        self.peer_identity = peer_identity

    async def answer(self, stream: MediaStream) -> None:
        await self._transport.answer_call(self.call_id, stream)


class RelayTransport(PeerTransport):
    """Peer handle backed by a relay WebSocket connection."""

    def __init__(self, settings: Settings) -> None:
        super().__init__()
        self.settings = settings
        self._uri = settings.relay_ws_url
        self._conn: Optional[ClientConnection] = None
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._pump_task: Optional[asyncio.Task[None]] = None
        self._accepting = False
        self._call_id: Optional[str] = None
        self._remote: Optional[MediaStream] = None
        self._destroyed = False

    async def open(self, identity: Optional[str] = None) -> str:
        logger.info("Connecting to relay %s as %s", self._uri, identity or "<ephemeral>")
        try:
            self._conn = await connect(self._uri, ping_interval=self.settings.relay_ping_interval)
            await self._conn.send(json.dumps({"type": "register", "id": identity}))
            reply = json.loads(await asyncio.wait_for(self._conn.recv(), timeout=REGISTER_TIMEOUT_SECONDS))
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException, json.JSONDecodeError) as exc:
            await self._close_connection()
            raise TransportError("Could not reach the relay.", log_message=f"relay registration failed: {exc!r}") from exc

        if reply.get("type") != "registered" or not reply.get("id"):
            await self._close_connection()
            reason = reply.get("reason", "unexpected_reply")
            raise TransportError("Could not register with the relay.", log_message=f"relay refused registration: {reason}")

        self.identity = reply["id"]
        self._listener_task = asyncio.create_task(self._listen(), name="relay-listener")
        logger.info("Registered on relay as %s", self.identity)
        return self.identity

    async def listen(self) -> None:
        self._accepting = True

    async def dial(self, target: str, placeholder: Any = None) -> None:
        self._call_id = uuid.uuid4().hex
        self._remote = MediaStream(label=f"remote:{target}")
        await self._send(
            {"type": "dial", "target": target, "call_id": self._call_id, "offer": placeholder},
        )

    async def answer_call(self, call_id: str, stream: MediaStream) -> None:
        self._call_id = call_id
        await self._send({"type": "answer", "call_id": call_id})
        self._pump_task = asyncio.create_task(self._pump_frames(call_id, stream), name="relay-frame-pump")

    async def destroy(self) -> None:
        self._destroyed = True
        self.unsubscribe()
        self._accepting = False
        if self._call_id and self._conn:
            try:
                await self._conn.send(json.dumps({"type": "hangup", "call_id": self._call_id}))
            except websockets.ConnectionClosed:
                pass
        for task in (self._pump_task, self._listener_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._pump_task = None
        self._listener_task = None
        if self._remote:
            self._remote.stop()
            self._remote = None
        self._call_id = None
        await self._close_connection()

    async def _send(self, message: dict[str, Any]) -> None:
        if not self._conn:
            raise TransportError("Not connected to the relay.", log_message="relay send without connection")
        try:
            await self._conn.send(json.dumps(message))
        except websockets.ConnectionClosed as exc:
            raise TransportError("Connection to the relay was lost.", log_message=f"relay send failed: {exc!r}") from exc

    async def _pong(self) -> None:
        try:
            await self._send({"type": "pong"})
        except TransportError as exc:
            logger.debug("Pong not sent: %s", exc)

    async def _close_connection(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def _listen(self) -> None:
        assert self._conn is not None
        established = False
        try:
            async for message in self._conn:
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from relay: %s", message)
                    continue
                established = self.handle_message(payload) or established
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancel
            raise
        except websockets.ConnectionClosedOK:
            logger.info("Relay websocket closed cleanly")
        except websockets.ConnectionClosedError as exc:
            logger.warning("Relay websocket closed: %s", exc)
        except Exception:  # pragma: no cover - defensive guard
            logger.exception("Relay websocket listener crashed")
        if self._destroyed:
            return
        if established:
            self.notify(TransportNotification(NotificationKind.CLOSED))
        else:
            self.notify(
                TransportNotification(
                    NotificationKind.ERROR,
                    error=TransportError("Connection to the relay was lost.", log_message="relay closed mid-dial"),
                )
            )

    def handle_message(self, payload: dict[str, Any]) -> bool:
        """Apply one relay message; returns True once a remote stream is flowing."""

        if not isinstance(payload, dict):
            logger.warning("Ignoring non-object relay message: %r", payload)
            return False
        message_type = payload.get("type")
        if message_type == "ping":
            asyncio.create_task(self._pong(), name="relay-pong")
        elif message_type == "call":
            self._handle_call(payload)
        elif message_type == "frame":
            return self._handle_frame(payload)
        elif message_type == "hangup":
            if payload.get("call_id") == self._call_id:
                logger.info("Remote peer hung up call %s", self._call_id)
                if self._remote:
                    self._remote.end()
                self._end_call()
                self.notify(TransportNotification(NotificationKind.CLOSED))
        elif message_type == "error":
            reason = payload.get("reason", "unknown")
            logger.warning("Relay reported error: %s", reason)
            self.notify(
                TransportNotification(
                    NotificationKind.ERROR,
                    error=TransportError("The relay reported an error.", log_message=f"relay error: {reason}"),
                )
            )
        else:
            logger.debug("Unhandled relay message: %s", message_type)
        return False

    def _end_call(self) -> None:
        if self._pump_task and not self._pump_task.done():
            self._pump_task.cancel()
        self._pump_task = None
        self._call_id = None

    def _handle_call(self, payload: dict[str, Any]) -> None:
        call_id = payload.get("call_id")
        caller = payload.get("from", "")
        if not self._accepting or not call_id:
            logger.info("Ignoring inbound call from %s", caller)
            return
        logger.info("Inbound call %s from %s", call_id, caller)
        self.notify(
            TransportNotification(NotificationKind.INBOUND, request=RelayInboundRequest(self, call_id, caller))
        )

    def _handle_frame(self, payload: dict[str, Any]) -> bool:
        if payload.get("call_id") != self._call_id or self._remote is None:
            return False
        try:
            frame = decode_image(base64.b64decode(payload.get("data", ""), validate=True))
        except (binascii.Error, ValueError, TypeError):
            logger.warning("Dropping undecodable frame on call %s", self._call_id)
            return False
        if frame is None:
            return False
        first = self._remote.current_frame() is None
        self._remote.push_frame(frame)
        if first:
            self.notify(TransportNotification(NotificationKind.STREAM, stream=self._remote))
        return True

    async def _pump_frames(self, call_id: str, stream: MediaStream) -> None:
        try:
            async for frame in stream.frames():
                data = encode_image(frame, ".jpg", quality=self.settings.jpeg_quality)
                if data is None:
                    continue
                await self._send({"type": "frame", "call_id": call_id, "data": base64.b64encode(data).decode("ascii")})
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancel
            raise
        except TransportError as exc:
            logger.warning("Frame pump stopped: %s", exc)
        finally:
            logger.info("Frame pump for call %s finished", call_id)


__all__ = ["RelayTransport", "RelayInboundRequest"]
