"""FastAPI entry-point for the syncstream controller."""
from __future__ import annotations

from typing import AsyncIterator

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .config import Settings, get_settings
from .logging_config import configure_logging
from .state import Trigger
from .state_machine import ConnectionStateMachine

settings: Settings = get_settings()
configure_logging(settings.log_level)
app = FastAPI(title="syncstream-controller", version="0.1.0")
machine = ConnectionStateMachine(settings=settings)


class CodeSubmission(BaseModel):
    code: str


class Question(BaseModel):
    question: str


@app.on_event("startup")
async def on_startup() -> None:
    await machine.start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await machine.stop()


async def _apply(trigger: Trigger, **data: object) -> JSONResponse:
    await machine.dispatch(trigger, **data)
    return JSONResponse(machine.describe())


@app.get("/healthz")
async def healthcheck() -> JSONResponse:
    return JSONResponse({"status": "ok", "state": machine.state.value})


@app.get("/session")
async def session_view() -> JSONResponse:
    return JSONResponse(machine.describe())


@app.post("/sender/start")
async def start_sender() -> JSONResponse:
    return await _apply(Trigger.START_SENDER)


@app.post("/receiver/start")
async def start_receiver() -> JSONResponse:
    return await _apply(Trigger.START_RECEIVER)


@app.post("/receiver/code")
async def submit_code(body: CodeSubmission) -> JSONResponse:
    return await _apply(Trigger.SUBMIT_CODE, code=body.code)


@app.post("/cancel")
async def cancel() -> JSONResponse:
    return await _apply(Trigger.CANCEL)


@app.post("/disconnect")
async def disconnect() -> JSONResponse:
    return await _apply(Trigger.DISCONNECT)


@app.post("/stop")
async def stop_sharing() -> JSONResponse:
    return await _apply(Trigger.STOP)


@app.get("/ai")
async def ai_view() -> JSONResponse:
    return JSONResponse(machine.coordinator.view(include_snapshot=True))


@app.post("/ai/open")
async def open_ai() -> JSONResponse:
    return await _apply(Trigger.OPEN_AI)


@app.post("/ai/ask")
async def ask_ai(body: Question) -> JSONResponse:
    return await _apply(Trigger.ASK, question=body.question)


@app.post("/ai/close")
async def close_ai() -> JSONResponse:
    return await _apply(Trigger.CLOSE_AI)


@app.post("/ai/reset")
async def reset_question() -> JSONResponse:
    return await _apply(Trigger.RESET_QUESTION)


@app.get("/preview")
async def preview_stream() -> StreamingResponse:
    boundary = "frame"

    async def frame_iterator() -> AsyncIterator[bytes]:
        async for frame in machine.preview_frames():
            header = (
                f"--{boundary}\r\n"
                f"Content-Type: image/jpeg\r\n"
                f"Content-Length: {len(frame)}\r\n\r\n"
            ).encode("ascii")
            yield header + frame + b"\r\n"

    media_type = f"multipart/x-mixed-replace; boundary={boundary}"
    return StreamingResponse(frame_iterator(), media_type=media_type)


@app.websocket("/ws/ui")
async def ui_socket(ws: WebSocket) -> None:
    # subscribe before the handshake completes so no event after connect is missed
    queue = machine.register_ui()
    try:
        await ws.accept()
        while True:
            event = await queue.get()
            payload = {
                "type": event.type,
                "state": event.state.value,
                "data": event.data,
            }
            if event.error:
                payload["error"] = event.error
            await ws.send_json(payload)
    except WebSocketDisconnect:
        pass
    finally:
        machine.unregister_ui(queue)
        await ws.close()


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.controller_host, port=settings.controller_port, log_config=None)
