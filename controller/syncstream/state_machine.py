"""Connection lifecycle orchestration for syncstream."""
from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import functools
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from .analysis.coordinator import AIQueryCoordinator
from .analysis.gemini import GeminiScreenAnalyzer, ScreenAnalyzer
from .capture.display import DisplayCapture, build_display_capture
from .capture.frame import capture_frame, encode_image
from .config import Settings, get_settings
from .errors import PeerError
from .media import MediaStream
from .sessions.receiver import ReceiverSession
from .sessions.sender import SenderSession
from .state import AppState, ControllerEvent, Role, Session, Trigger
from .transport.base import NotificationKind, TransportFactory, TransportListener, TransportNotification
from .transport.relay import RelayTransport

logger = logging.getLogger(__name__)

Handler = Callable[["TransitionEvent"], Awaitable[None]]


@dataclass
class TransitionEvent:
    trigger: Trigger
    data: Dict[str, Any] = field(default_factory=dict)
    attempt: Optional[int] = None
    done: Optional[asyncio.Future[None]] = None


class ConnectionStateMachine:
    """Owns the application state and applies every trigger through one queue.

    User actions, transport notifications, capture results and timers are all
    enqueued and handled one at a time by a single consumer task, so a
    transition's side effects complete before the next event is looked at.
    Events tagged with an attempt number are dropped once the session they
    belong to has been torn down.
    """

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        capture: Optional[DisplayCapture] = None,
        transport_factory: Optional[TransportFactory] = None,
        analyzer: Optional[ScreenAnalyzer] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.capture = capture or build_display_capture(self.settings.capture_source, fps=self.settings.capture_fps)
        self.transport_factory: TransportFactory = transport_factory or functools.partial(
            RelayTransport, self.settings
        )
        self.coordinator = AIQueryCoordinator(
            analyzer or GeminiScreenAnalyzer(self.settings), on_change=self._handle_ai_change
        )

        self._state: AppState = AppState.IDLE
        self._session: Optional[Session] = None
        self._last_error: Optional[PeerError] = None
        self._notice: Optional[str] = None
        self._attempt = 0
        self._queue: asyncio.Queue[TransitionEvent] = asyncio.Queue()
        self._ui_subscribers: List[asyncio.Queue[ControllerEvent]] = []
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._deadline: Optional[asyncio.TimerHandle] = None
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._background_tasks: list[asyncio.Task[Any]] = []

        self._sender = SenderSession(self)
        self._receiver = ReceiverSession(self)
        self._handlers: Dict[Trigger, Handler] = {
            Trigger.START_SENDER: self._sender.start,
            Trigger.START_RECEIVER: self._receiver.start,
            Trigger.SUBMIT_CODE: self._receiver.submit,
            Trigger.CANCEL: self._handle_reset,
            Trigger.DISCONNECT: self._handle_reset,
            Trigger.STOP: self._handle_reset,
            Trigger.CAPTURE_READY: self._sender.on_capture_ready,
            Trigger.CAPTURE_FAILED: self._sender.on_capture_failed,
            Trigger.CAPTURE_ENDED: self._sender.on_capture_ended,
            Trigger.INBOUND_REQUEST: self._sender.on_inbound,
            Trigger.STREAM_RECEIVED: self._receiver.on_stream,
            Trigger.CONNECT_TIMEOUT: self._receiver.on_timeout,
            Trigger.REMOTE_CLOSED: self._route_by_role("on_remote_closed"),
            Trigger.TRANSPORT_ERROR: self._route_by_role("on_transport_error"),
            Trigger.OPEN_AI: self._handle_open_ai,
            Trigger.ASK: self._handle_ask,
            Trigger.CLOSE_AI: self._handle_close_ai,
            Trigger.RESET_QUESTION: self._handle_reset_question,
        }

    # ------------------------------------------------------------------
    # read-only view

    @property
    def state(self) -> AppState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def last_error(self) -> Optional[PeerError]:
        return self._last_error

    @property
    def code(self) -> str:
        return self._session.code if self._session else ""

    @property
    def stream(self) -> Optional[MediaStream]:
        return self._session.stream if self._session else None

    def describe(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "role": self._session.role.value if self._session else None,
            "code": self.code,
            "error": self._last_error.as_dict() if self._last_error else None,
            "notice": self._notice,
            "streaming": self.stream is not None,
            "ai": self.coordinator.view(),
        }

    # ------------------------------------------------------------------
    # lifecycle

    async def start(self) -> None:
        if self._loop_task:
            return
        logger.info("Starting connection state machine")
        self._loop_task = asyncio.create_task(self._run(), name="state-machine")
        self._background_tasks.append(asyncio.create_task(self._heartbeat_loop(), name="controller-heartbeat"))

    async def stop(self) -> None:
        logger.info("Stopping connection state machine")
        if self._loop_task:
            await self.dispatch(Trigger.STOP)
            await self.coordinator.wait()
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        for task in self._background_tasks:
            task.cancel()
        for task in self._background_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._background_tasks.clear()

    # ------------------------------------------------------------------
    # input path

    async def dispatch(self, trigger: Trigger, **data: Any) -> None:
        """Enqueue a trigger and wait until it has been handled."""

        if not self._loop_task:
            raise RuntimeError("state machine not started")
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(TransitionEvent(trigger=trigger, data=data, done=done))
        await done

    def post(self, trigger: Trigger, *, attempt: Optional[int] = None, **data: Any) -> None:
        """Enqueue a trigger without waiting; safe to call from callbacks and timers."""

        self._queue.put_nowait(TransitionEvent(trigger=trigger, data=data, attempt=attempt))

    async def join(self) -> None:
        await self._queue.join()

    def listener_for(self, attempt: int) -> TransportListener:
        """Translate transport notifications into triggers for one session attempt."""

        def _listener(notification: TransportNotification) -> None:
            if notification.kind is NotificationKind.INBOUND:
                self.post(Trigger.INBOUND_REQUEST, attempt=attempt, request=notification.request)
            elif notification.kind is NotificationKind.STREAM:
                self.post(Trigger.STREAM_RECEIVED, attempt=attempt, stream=notification.stream)
            elif notification.kind is NotificationKind.CLOSED:
                self.post(Trigger.REMOTE_CLOSED, attempt=attempt)
            elif notification.kind is NotificationKind.ERROR:
                self.post(Trigger.TRANSPORT_ERROR, attempt=attempt, error=notification.error)

        return _listener

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._process(event)
            except asyncio.CancelledError:  # pragma: no cover - cooperative cancel
                raise
            except Exception:
                logger.exception("Transition for %s failed; resetting", event.trigger.value)
                await self._teardown(AppState.IDLE)
            finally:
                if event.done and not event.done.done():
                    event.done.set_result(None)
                self._queue.task_done()

    async def _process(self, event: TransitionEvent) -> None:
        if event.attempt is not None and event.attempt != self._attempt:
            logger.debug("Dropping stale %s from attempt %s", event.trigger.value, event.attempt)
            return
        logger.debug("Handling %s in %s", event.trigger.value, self._state.value)
        await self._handlers[event.trigger](event)

    # ------------------------------------------------------------------
    # primitives used by the role sessions

    def begin_session(self, role: Role, **resources: Any) -> Session:
        self._session = Session(role=role, **resources)
        return self._session

    async def set_state(self, state: AppState) -> None:
        previous = self._state
        self._state = state
        if previous is not state:
            logger.info("State %s -> %s", previous.value, state.value)
        self._publish_state()

    def clear_error(self) -> None:
        self._last_error = None

    def spawn(self, name: str, coro: Coroutine[Any, Any, None]) -> None:
        """Run a collaborator call off the input path; cancelled on teardown."""

        self._tasks[name] = asyncio.create_task(coro, name=f"session-{name}")

    def is_pending(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def arm_deadline(self, delay: float, trigger: Trigger) -> None:
        self.cancel_deadline()
        loop = asyncio.get_running_loop()
        self._deadline = loop.call_later(delay, functools.partial(self.post, trigger, attempt=self._attempt))

    def cancel_deadline(self) -> None:
        if self._deadline:
            self._deadline.cancel()
            self._deadline = None

    async def reset(self) -> None:
        await self._teardown(AppState.IDLE)

    async def fail(self, to: AppState, error: PeerError, *, keep_code: bool = False) -> None:
        logger.warning("Session failed (%s): %s", error.kind.value, error)
        await self._teardown(to, error=error, keep_code=keep_code)

    def clear_notice(self) -> None:
        self._notice = None

    def notify(self, message: str) -> None:
        """Broadcast a one-off message; it stays in describe() until the next role is picked."""

        self._notice = message
        self._broadcast(ControllerEvent(type="notice", data={"message": message}, state=self._state))

    async def _teardown(self, to: AppState, *, error: Optional[PeerError] = None, keep_code: bool = False) -> None:
        """Single teardown routine behind reset and every failure exit."""

        session = self._session
        changed = session is not None or self._state is not to or self._last_error is not error
        self._attempt += 1
        self.cancel_deadline()

        tasks = [task for task in self._tasks.values() if not task.done()]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        code = ""
        if session is not None:
            code = session.code
            if session.local_stream:
                session.local_stream.stop()
            if session.transport:
                session.transport.unsubscribe()
                try:
                    await session.transport.destroy()
                except Exception:
                    logger.warning("Transport teardown failed", exc_info=True)
            if session.remote_stream:
                session.remote_stream.stop()

        self._session = None
        if to is AppState.RECEIVER_ENTERING_CODE:
            self._session = Session(role=Role.RECEIVER, code=code if keep_code else "")
        self.coordinator.close()
        self._last_error = error

        if changed:
            await self.set_state(to)
        else:
            self._state = to

    # ------------------------------------------------------------------
    # handlers

    async def _handle_reset(self, event: TransitionEvent) -> None:
        await self.reset()

    def _route_by_role(self, method: str) -> Handler:
        async def _route(event: TransitionEvent) -> None:
            if self._session is None:
                logger.debug("Ignoring %s without a session", event.trigger.value)
                return
            target = self._sender if self._session.role is Role.SENDER else self._receiver
            await getattr(target, method)(event)

        return _route

    async def _handle_open_ai(self, event: TransitionEvent) -> None:
        stream = self.stream
        if self._state is not AppState.RECEIVER_VIEWING or stream is None:
            return
        snapshot = capture_frame(stream)
        if snapshot is None:
            logger.info("No decoded frame to snapshot yet")
            return
        self.coordinator.open(snapshot)

    async def _handle_ask(self, event: TransitionEvent) -> None:
        if self._state is AppState.RECEIVER_VIEWING:
            self.coordinator.ask(event.data.get("question", ""))

    async def _handle_close_ai(self, event: TransitionEvent) -> None:
        self.coordinator.close()

    async def _handle_reset_question(self, event: TransitionEvent) -> None:
        self.coordinator.reset()

    # ------------------------------------------------------------------
    # UI fan-out

    def register_ui(self) -> asyncio.Queue[ControllerEvent]:
        queue: asyncio.Queue[ControllerEvent] = asyncio.Queue(maxsize=4)
        self._ui_subscribers.append(queue)
        return queue

    def unregister_ui(self, queue: asyncio.Queue[ControllerEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    async def preview_frames(self) -> AsyncIterator[bytes]:
        """JPEG frames of whichever stream is active, for the MJPEG endpoint."""

        interval = 1 / max(self.settings.preview_fps, 1)
        while True:
            stream = self.stream
            if stream is None or not stream.active:
                await asyncio.sleep(interval)
                continue
            async for frame in stream.frames():
                encoded = encode_image(frame, ".jpg", quality=self.settings.jpeg_quality)
                if encoded:
                    yield encoded
                await asyncio.sleep(interval)

    def _publish_state(self) -> None:
        self._broadcast(
            ControllerEvent(
                type="state",
                data={"code": self.code, "role": self._session.role.value if self._session else None},
                state=self._state,
                error=self._last_error.message if self._last_error else None,
            )
        )

    def _handle_ai_change(self, coordinator: AIQueryCoordinator) -> None:
        self._broadcast(ControllerEvent(type="ai", data=coordinator.view(), state=self._state))

    def _broadcast(self, event: ControllerEvent) -> None:
        logger.debug("Broadcasting event: %s", event.type)
        for queue in list(self._ui_subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except QueueEmpty:
                    pass
            queue.put_nowait(event)

    async def _heartbeat_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(30)
                self._broadcast(ControllerEvent(type="heartbeat", data={}, state=self._state))
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancel
            raise


__all__ = ["ConnectionStateMachine", "TransitionEvent"]
