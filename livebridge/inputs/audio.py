"""Microphone producer: raw 16-bit mono PCM chunks."""

from __future__ import annotations

import logging
import sys
from typing import Any

from livebridge.config import CaptureConfig
from livebridge.core.channels import Channel
from livebridge.core.process import ManagedProcess, RestartPolicy, SpawnFn

log = logging.getLogger(__name__)

CHANNELS = 1


def mic_args(capture: CaptureConfig) -> list[str]:
    if sys.platform == "win32":
        return [
            capture.ffmpeg_path,
            "-hide_banner", "-loglevel", "error",
            "-f", "dshow",
            "-audio_buffer_size", "10",
            "-i", f"audio={capture.audio_device}",
            "-ar", str(capture.audio_rate),
            "-ac", str(CHANNELS),
            "-f", "s16le",
            "pipe:1",
        ]
    return [
        "arecord",
        "-q",
        "-D", capture.audio_device,
        "-c", str(CHANNELS),
        "-r", str(capture.audio_rate),
        "-f", "S16_LE",
        "-t", "raw",
    ]


class MicCapture:
    """Owns the capture process and publishes sample-aligned PCM on ``chunks``."""

    def __init__(self, capture: CaptureConfig, *, spawn: SpawnFn | None = None) -> None:
        self.chunks: Channel[bytes] = Channel("mic-chunks")
        self._carry = b""
        self._proc = ManagedProcess(
            "mic",
            mic_args(capture),
            on_stdout=self._on_bytes,
            on_exit=self._on_exit,
            policy=RestartPolicy(delay_s=2.0, max_restarts=5),
            spawn=spawn,
            read_size=capture.audio_chunk_bytes,
        )
        self.chunks_sent = 0

    @property
    def running(self) -> bool:
        return self._proc.running

    async def start(self) -> bool:
        log.info("starting mic capture: %s", " ".join(self._proc.argv))
        return await self._proc.start()

    async def stop(self) -> None:
        await self._proc.stop()
        self._carry = b""

    def snapshot(self) -> dict[str, Any]:
        return {"running": self._proc.running, "chunks_sent": self.chunks_sent}

    def _on_bytes(self, chunk: bytes) -> None:
        data = self._carry + chunk
        # s16le: never split a sample
        if len(data) % 2:
            self._carry = data[-1:]
            data = data[:-1]
        else:
            self._carry = b""
        if not data:
            return
        self._proc.reset_restarts()
        self.chunks_sent += 1
        self.chunks.publish(data)

    def _on_exit(self, code: int | None) -> None:
        self._carry = b""
