"""FastAPI control surface: control socket, media monitors, status, logs."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING, Annotated, Any, Awaitable, Callable, Literal, Union

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from livebridge.core.channels import Channel, offer_latest

if TYPE_CHECKING:
    from livebridge.core.commands import Command, CommandDispatcher
    from livebridge.core.session import SessionController
    from livebridge.inputs.audio import MicCapture
    from livebridge.inputs.video import VideoCapture
    from livebridge.logging.handler import WebSocketLogBroadcaster
    from livebridge.speech.lanes import LaneManager

log = logging.getLogger(__name__)

MONITOR_QUEUE_SIZE = 8
CONTROL_QUEUE_SIZE = 100


# -- Control messages --------------------------------------------------------


class SessionControl(BaseModel):
    type: Literal["session_control"] = "session_control"
    enabled: bool


class SendText(BaseModel):
    type: Literal["send_text"] = "send_text"
    text: str = Field(min_length=1, max_length=4000)


class AudioControl(BaseModel):
    type: Literal["audio_control"] = "audio_control"
    enabled: bool


class VoiceChangerControl(BaseModel):
    type: Literal["voice_changer"] = "voice_changer"
    enabled: bool


ControlMessage = Annotated[
    Union[SessionControl, SendText, AudioControl, VoiceChangerControl],
    Field(discriminator="type"),
]

_control_adapter: TypeAdapter[ControlMessage] = TypeAdapter(ControlMessage)


def parse_control(raw: str) -> ControlMessage | None:
    try:
        return _control_adapter.validate_json(raw)
    except ValidationError as e:
        log.warning("control: rejected message: %s", e.errors()[0].get("msg", "invalid"))
        return None


# -- Helpers -----------------------------------------------------------------


async def _drain_until_disconnect(ws: WebSocket) -> None:
    while True:
        msg = await ws.receive()
        if msg["type"] == "websocket.disconnect":
            return


async def _forward(queue: asyncio.Queue[Any], send: Callable[[Any], Awaitable[None]]) -> None:
    while True:
        item = await queue.get()
        await send(item)


async def _run_until_first_done(*coros: Awaitable[None]) -> None:
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await task


async def _stream_binary(ws: WebSocket, channel: Channel[bytes], label: str) -> None:
    """Send every value published on ``channel`` until the client leaves."""
    queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=MONITOR_QUEUE_SIZE)
    unsubscribe = channel.subscribe(lambda data: offer_latest(queue, data))
    try:
        await ws.accept()
        log.info("%s monitor: client connected", label)
        await _run_until_first_done(
            _forward(queue, ws.send_bytes),
            _drain_until_disconnect(ws),
        )
    finally:
        unsubscribe()
        log.info("%s monitor: client disconnected", label)


# -- App ---------------------------------------------------------------------


def create_app(
    session: SessionController,
    lanes: LaneManager,
    dispatcher: CommandDispatcher,
    *,
    video: VideoCapture | None = None,
    mic: MicCapture | None = None,
    log_broadcaster: WebSocketLogBroadcaster | None = None,
) -> FastAPI:
    app = FastAPI(title="Live Bridge", version="0.1.0")

    # -- HTTP endpoints ------------------------------------------------------

    @app.get("/status")
    async def get_status():
        return JSONResponse(
            {
                "session": session.snapshot(),
                "speech": lanes.snapshot(),
                "video": video.snapshot() if video else None,
                "mic": mic.snapshot() if mic else None,
            }
        )

    # -- Monitors ------------------------------------------------------------

    @app.websocket("/monitor/video")
    async def monitor_video(ws: WebSocket):
        if video is None:
            await ws.close(code=1011)
            return
        await _stream_binary(ws, video.frames, "video")

    @app.websocket("/monitor/audio")
    async def monitor_audio(ws: WebSocket):
        if mic is None:
            await ws.close(code=1011)
            return
        await _stream_binary(ws, mic.chunks, "audio")

    @app.websocket("/monitor/tts")
    async def monitor_tts(ws: WebSocket):
        await _stream_binary(ws, lanes.audio, "tts")

    # -- WebSocket logs ------------------------------------------------------

    @app.websocket("/ws/logs")
    async def websocket_logs(ws: WebSocket):
        if log_broadcaster is None:
            await ws.close(code=1011)
            return
        queue = log_broadcaster.subscribe()
        try:
            await ws.accept()
            await _run_until_first_done(
                _forward(queue, ws.send_text),
                _drain_until_disconnect(ws),
            )
        finally:
            log_broadcaster.unsubscribe(queue)

    # -- Control -------------------------------------------------------------

    @app.websocket("/control")
    async def control(ws: WebSocket):
        outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=CONTROL_QUEUE_SIZE)

        def push(payload: dict[str, Any]) -> None:
            offer_latest(outbox, json.dumps(payload, ensure_ascii=False))

        def on_command(cmd: Command) -> None:
            push({"type": "command", "command": cmd.to_dict()})

        unsubscribers = [
            dispatcher.commands.subscribe(on_command),
            session.responses.subscribe(lambda text: push({"type": "response", "text": text})),
            session.notices.subscribe(lambda text: push({"type": "log", "text": text})),
        ]

        async def receive_loop() -> None:
            while True:
                raw = await ws.receive_text()
                msg = parse_control(raw)
                if msg is None:
                    push({"type": "error", "text": "invalid control message"})
                    continue
                await _handle_control(msg, session, lanes, push)

        try:
            await ws.accept()
            log.info("control: client connected")
            await _run_until_first_done(_forward(outbox, ws.send_text), receive_loop())
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
            log.info("control: client disconnected")

    return app


async def _handle_control(
    msg: ControlMessage,
    session: SessionController,
    lanes: LaneManager,
    push: Callable[[dict[str, Any]], None],
) -> None:
    """Process one validated control message."""
    if isinstance(msg, SessionControl):
        if msg.enabled:
            log.info("control: session enabled")
            await session.enable()
        else:
            log.info("control: session disabled")
            await session.disable()
    elif isinstance(msg, SendText):
        if not await session.send_text(msg.text):
            push({"type": "log", "text": "session is not active"})
    elif isinstance(msg, AudioControl):
        session.set_audio_forwarding(msg.enabled)
        push({"type": "log", "text": f"audio forwarding {'on' if msg.enabled else 'off'}"})
    elif isinstance(msg, VoiceChangerControl):
        await lanes.set_voice_changer(msg.enabled)
        push({"type": "log", "text": f"voice changer {'on' if msg.enabled else 'off'}"})
