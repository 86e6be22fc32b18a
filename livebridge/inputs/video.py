"""Camera producer: MJPEG byte stream → throttled JPEG frames.

The capture process (``rpicam-vid`` or ``ffmpeg``) writes concatenated JPEGs
to stdout. Frames are cut out between SOI/EOI markers and then throttled to
``capture.fps``; frames arriving early are dropped, never queued.
"""

from __future__ import annotations

import logging
import sys
import time
from typing import Any, Callable

from livebridge.config import CaptureConfig
from livebridge.core.channels import Channel
from livebridge.core.process import ManagedProcess, RestartPolicy, SpawnFn

log = logging.getLogger(__name__)

SOI = b"\xff\xd8"
EOI = b"\xff\xd9"


class JpegFrameDemuxer:
    """Incremental splitter for a stream of back-to-back JPEG images."""

    def __init__(self, max_buffer_bytes: int = 10 * 1024 * 1024) -> None:
        self._buf = bytearray()
        self._max = max_buffer_bytes
        self.overflows = 0

    @property
    def buffered(self) -> int:
        return len(self._buf)

    def feed(self, chunk: bytes) -> list[bytes]:
        self._buf += chunk
        frames: list[bytes] = []
        offset = 0

        while True:
            soi = self._buf.find(SOI, offset)
            if soi == -1:
                # keep a trailing 0xFF, it may be half of the next SOI
                keep = 1 if self._buf.endswith(b"\xff") else 0
                offset = max(offset, len(self._buf) - keep)
                break
            eoi = self._buf.find(EOI, soi + 2)
            if eoi == -1:
                offset = soi
                break
            frames.append(bytes(self._buf[soi : eoi + 2]))
            offset = eoi + 2

        if offset:
            del self._buf[:offset]
        if len(self._buf) > self._max:
            log.warning(
                "frame buffer exceeded %d bytes without an end marker, discarding",
                self._max,
            )
            self._buf.clear()
            self.overflows += 1
        return frames

    def reset(self) -> None:
        self._buf.clear()


class FrameThrottle:
    def __init__(self, fps: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval = 1.0 / fps
        self._clock = clock
        self._last: float | None = None

    def allow(self) -> bool:
        now = self._clock()
        if self._last is not None and now - self._last < self._interval:
            return False
        self._last = now
        return True


def video_args(capture: CaptureConfig) -> list[str]:
    if capture.video_backend == "rpicam":
        return [
            "rpicam-vid",
            "-t", "0",
            "--width", str(capture.width),
            "--height", str(capture.height),
            "--framerate", str(capture.camera_fps),
            "--codec", "mjpeg",
            "-n",
            "-o", "-",
        ]
    if sys.platform == "win32":
        source = ["-f", "dshow", "-rtbufsize", "100M", "-i", f"video={capture.video_device}"]
    else:
        source = ["-f", "v4l2", "-i", capture.video_device]
    return [
        capture.ffmpeg_path,
        "-hide_banner", "-loglevel", "error",
        "-video_size", f"{capture.width}x{capture.height}",
        *source,
        "-r", str(capture.camera_fps),
        "-c:v", "mjpeg",
        "-q:v", "10",
        "-f", "image2pipe",
        "pipe:1",
    ]


class VideoCapture:
    """Owns the camera process and publishes throttled frames on ``frames``."""

    def __init__(
        self,
        capture: CaptureConfig,
        *,
        spawn: SpawnFn | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.frames: Channel[bytes] = Channel("video-frames")
        self._demux = JpegFrameDemuxer(capture.max_buffer_mb * 1024 * 1024)
        self._throttle = FrameThrottle(capture.fps, clock)
        self._proc = ManagedProcess(
            "video",
            video_args(capture),
            on_stdout=self._on_bytes,
            on_exit=self._on_exit,
            policy=RestartPolicy(delay_s=2.0, max_restarts=5),
            spawn=spawn,
            read_size=65536,
        )
        self.frames_seen = 0
        self.frames_sent = 0

    @property
    def running(self) -> bool:
        return self._proc.running

    async def start(self) -> bool:
        log.info("starting video capture: %s", " ".join(self._proc.argv))
        return await self._proc.start()

    async def stop(self) -> None:
        await self._proc.stop()
        self._demux.reset()

    def snapshot(self) -> dict[str, Any]:
        return {
            "running": self._proc.running,
            "frames_seen": self.frames_seen,
            "frames_sent": self.frames_sent,
            "buffer_overflows": self._demux.overflows,
        }

    def _on_bytes(self, chunk: bytes) -> None:
        frames = self._demux.feed(chunk)
        if frames:
            self._proc.reset_restarts()
        for frame in frames:
            self.frames_seen += 1
            if self._throttle.allow():
                self.frames_sent += 1
                self.frames.publish(frame)

    def _on_exit(self, code: int | None) -> None:
        self._demux.reset()
