"""Live bridge entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Awaitable, Callable

from livebridge.core.channels import Channel, offer_latest

log = logging.getLogger(__name__)

MEDIA_QUEUE_SIZE = 4


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Live Bridge: camera + mic to a multimodal model")
    p.add_argument("--config", default=None, help="YAML config file path")
    p.add_argument("--log-level", default="INFO", help="Log level")
    p.add_argument("--host", default=None, help="HTTP bind address")
    p.add_argument("--port", type=int, default=None, help="HTTP server port")
    p.add_argument(
        "--output-mode", choices=("local", "web"), default=None, help="Speech output mode"
    )
    p.add_argument("--no-video", action="store_true", help="Disable camera capture")
    p.add_argument("--no-mic", action="store_true", help="Disable microphone capture")
    p.add_argument(
        "--autostart", action="store_true", help="Open the upstream session on startup"
    )
    p.add_argument(
        "--reset-context", action="store_true", help="Truncate the context log on startup"
    )
    return p.parse_args(argv)


async def forward_media(
    channel: Channel[bytes],
    send: Callable[[bytes], Awaitable[bool]],
    label: str,
) -> None:
    """Bridge a producer channel to an async sender; stale media is dropped."""
    queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=MEDIA_QUEUE_SIZE)
    unsubscribe = channel.subscribe(lambda data: offer_latest(queue, data))
    log.debug("%s forwarding started", label)
    try:
        while True:
            data = await queue.get()
            try:
                await send(data)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("%s forwarding failed", label)
    finally:
        unsubscribe()


async def async_main(args: argparse.Namespace) -> None:
    import uvicorn

    from livebridge.api.http_server import create_app
    from livebridge.config import load_config
    from livebridge.core.commands import CommandDispatcher, build_default_table
    from livebridge.core.session import SessionController
    from livebridge.inputs.audio import MicCapture
    from livebridge.inputs.video import VideoCapture
    from livebridge.logging.handler import WebSocketLogBroadcaster
    from livebridge.speech.lanes import LaneManager
    from livebridge.storage.prompt_store import PromptStore

    cfg = load_config(args.config)

    # Apply CLI overrides
    if args.host:
        cfg.network.host = args.host
    if args.port:
        cfg.network.port = args.port
    if args.output_mode:
        cfg.speech.output_mode = args.output_mode

    broadcaster = WebSocketLogBroadcaster()
    broadcaster.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-5s %(name)s: %(message)s", "%H:%M:%S")
    )
    logging.getLogger().addHandler(broadcaster)

    store = PromptStore(
        cfg.storage.instruction_path,
        cfg.storage.behavior_path,
        cfg.storage.context_path,
        cfg.storage.delimiter,
    )
    if args.reset_context:
        store.reset_context()
        log.info("context log reset")

    lanes = LaneManager(cfg.speech)
    session = SessionController(cfg.upstream, cfg.session, store)

    def on_context(text: str) -> None:
        store.append_context(text)
        session.mark_context_saved()

    dispatcher = CommandDispatcher(
        build_default_table(cfg.speech, on_context=on_context),
        cfg.speech,
        lanes.speak,
    )
    session.set_on_turn(dispatcher.handle_turn)

    video = None if args.no_video else VideoCapture(cfg.capture)
    mic = None if args.no_mic else MicCapture(cfg.capture)

    app = create_app(
        session, lanes, dispatcher, video=video, mic=mic, log_broadcaster=broadcaster
    )
    http_server = uvicorn.Server(
        uvicorn.Config(app, host=cfg.network.host, port=cfg.network.port, log_level="warning")
    )

    background: list[asyncio.Task] = []
    try:
        if video is not None:
            await video.start()
            background.append(
                asyncio.create_task(forward_media(video.frames, session.send_video_frame, "video"))
            )
        if mic is not None:
            await mic.start()
            background.append(
                asyncio.create_task(forward_media(mic.chunks, session.send_audio_chunk, "mic"))
            )
        if args.autostart:
            await session.enable()

        log.info(
            "live bridge running (output=%s, video=%s, mic=%s, http=%s:%d)",
            cfg.speech.output_mode,
            video is not None,
            mic is not None,
            cfg.network.host,
            cfg.network.port,
        )
        await http_server.serve()
    finally:
        log.info("shutting down...")
        http_server.should_exit = True
        for task in background:
            task.cancel()
        await session.disable()
        if video is not None:
            await video.stop()
        if mic is not None:
            await mic.stop()
        await lanes.close()
        logging.getLogger().removeHandler(broadcaster)


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-5s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        asyncio.run(async_main(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
