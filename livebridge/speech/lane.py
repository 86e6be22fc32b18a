"""Output lane: one voice persona, one FIFO, one persistent synthesis engine.

Pipeline per lane::

    queue ──► engine (piper, JSON lines in, raw s16le out)
                 │
                 ├─ local:  [effect stage (sox)] ──► sink (sox → audio device)
                 └─ web:    accumulate ──► WAV ──► emit

The ``busy`` flag is the only thing that keeps two utterances from reaching
the engine at once. A job completes when the engine logs its end-of-utterance
marker; the next job is taken from the head of the queue. In web mode the
clip is wrapped only once the audio pipe has gone quiet after the marker.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import sys
from collections import deque
from pathlib import Path
from typing import Any, Callable

from livebridge.config import LaneConfig, SpeechConfig, VoiceConfig
from livebridge.core.process import ManagedProcess, RestartPolicy, SpawnFn
from livebridge.speech.text import preprocess_text
from livebridge.speech.wav import wrap_pcm

log = logging.getLogger(__name__)

# piper prints one of these to stderr after each utterance
DONE_MARKERS = ("Real-time factor", "audio=")

SOX = "sox"

# stdout and stderr are read by separate tasks; audio may trail the end marker
DRAIN_QUIET_S = 0.005


def engine_args(engine_dir: str | Path, voice: VoiceConfig) -> list[str]:
    engine_dir = Path(engine_dir)
    exe = engine_dir / ("piper.exe" if sys.platform == "win32" else "piper")
    return [
        str(exe),
        "--model", str(engine_dir / f"{voice.model}.onnx"),
        "--json-input",
        "--output-raw",
        "--speaker", str(voice.speaker),
        "--length_scale", str(voice.length_scale),
        "--noise_scale", str(voice.noise_scale),
        "--noise_w", str(voice.noise_w),
        "--sentence_silence", str(voice.sentence_silence),
    ]


def effect_speed(length_scale: float) -> str:
    """Tempo factor that keeps effect timing in step with synthesis speed."""
    return f"{1.0 / length_scale:.4f}"


def _raw_format(sample_rate: int) -> list[str]:
    return ["-t", "raw", "-r", str(sample_rate), "-b", "16", "-c", "1", "-e", "signed-integer"]


def effect_args(params: str, length_scale: float, sample_rate: int) -> list[str]:
    params = params.replace("[s]", effect_speed(length_scale))
    return [
        SOX, "-q",
        *_raw_format(sample_rate), "-",
        *_raw_format(sample_rate), "-",
        *params.split(),
    ]


def sink_args(device: str, volume: float, sample_rate: int, sink_rate: int) -> list[str]:
    driver = "waveaudio" if sys.platform == "win32" else "alsa"
    argv = [
        SOX, "-q", "--buffer", "2048",
        *_raw_format(sample_rate), "-",
        "-r", str(sink_rate), "-t", driver, device,
    ]
    if volume != 1.0:
        argv += ["vol", f"{volume:.2f}"]
    return argv


class OutputLane:
    """FIFO of utterances driving one engine and its output stages."""

    def __init__(
        self,
        cfg: LaneConfig,
        speech: SpeechConfig,
        *,
        emit: Callable[[bytes], None] | None = None,
        spawn: SpawnFn | None = None,
    ) -> None:
        self.id = cfg.id
        self._cfg = cfg
        self._speech = speech
        self._emit = emit
        self._local = speech.output_mode == "local" and bool(cfg.device)

        self._queue: deque[str] = deque()
        self._busy = False
        self._current: str | None = None
        self._pcm: list[bytes] = []
        self._pcm_chunks = 0
        self._drain_task: asyncio.Task | None = None
        self._closed = False
        self._logged_unavailable = False
        self._effects_enabled = cfg.apply_effects and speech.use_voice_changer
        self._logged_missing_sox = False
        self._pump_task: asyncio.Task | None = None
        self.completed = 0

        policy = RestartPolicy(
            delay_s=speech.engine_restart_delay_s,
            max_restarts=speech.engine_max_restarts,
        )
        self._engine = ManagedProcess(
            f"{self.id}/engine",
            engine_args(speech.engine_dir, speech.voice),
            on_stdout=self._on_engine_audio,
            on_stderr_line=self._on_engine_log,
            on_exit=self._on_engine_exit,
            on_started=self._kick,
            policy=policy,
            spawn=spawn,
        )
        self._sink: ManagedProcess | None = None
        self._effect: ManagedProcess | None = None
        if self._local:
            self._sink = ManagedProcess(
                f"{self.id}/sink",
                sink_args(cfg.device or "default", cfg.volume, speech.sample_rate, speech.sink_rate),
                on_stderr_line=self._on_sox_log,
                policy=policy,
                spawn=spawn,
            )
            if cfg.apply_effects:
                self._effect = ManagedProcess(
                    f"{self.id}/effect",
                    effect_args(speech.effect_params, speech.voice.length_scale, speech.sample_rate),
                    on_stdout=self._on_effect_audio,
                    on_stderr_line=self._on_sox_log,
                    policy=policy,
                    spawn=spawn,
                )
        # injected spawners don't need sox on PATH
        self._sox_checked = spawn is not None

    # ── State ────────────────────────────────────────────────────

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def local(self) -> bool:
        return self._local

    @property
    def effects_enabled(self) -> bool:
        return self._effects_enabled

    @property
    def engine(self) -> ManagedProcess:
        return self._engine

    @property
    def effect(self) -> ManagedProcess | None:
        return self._effect

    @property
    def sink(self) -> ManagedProcess | None:
        return self._sink

    def snapshot(self) -> dict[str, Any]:
        return {
            "busy": self._busy,
            "queue_depth": len(self._queue),
            "mode": "local" if self._local else "web",
            "effects": self._effects_enabled,
            "engine_running": self._engine.running,
            "engine_restarts": self._engine.restart_count,
            "completed": self.completed,
        }

    # ── Public API ───────────────────────────────────────────────

    def speak(self, text: str) -> bool:
        """Queue one utterance; starts processing if the lane is idle."""
        if self._closed or not text or not text.strip():
            return False
        if self._engine_unavailable():
            return False
        if self._speech.normalize_numbers:
            text = preprocess_text(text)
        log.info("[%s] queueing: %r", self.id, text[:30])
        self._queue.append(text)
        self._kick()
        return True

    async def set_effects_enabled(self, enabled: bool) -> None:
        """Start/stop the effect stage; audio in flight follows the live route."""
        enabled = bool(enabled) and self._cfg.apply_effects
        if enabled == self._effects_enabled:
            return
        self._effects_enabled = enabled
        log.info("[%s] voice effects %s", self.id, "on" if enabled else "off")
        if self._effect is None:
            return
        if enabled:
            if self._engine.running and self._sox_available():
                await self._effect.start()
        else:
            await self._effect.stop()

    async def close(self) -> None:
        self._closed = True
        self._queue.clear()
        for task in (self._pump_task, self._drain_task):
            if task is not None and not task.done():
                task.cancel()
        self._drain_task = None
        for proc in (self._engine, self._effect, self._sink):
            if proc is not None:
                await proc.stop()
        self._busy = False
        self._current = None

    # ── Scheduler ────────────────────────────────────────────────

    def _kick(self) -> None:
        if self._busy or self._closed or not self._queue:
            return
        self._busy = True
        self._pump_task = asyncio.create_task(self._process_next(), name=f"lane-{self.id}")

    async def _process_next(self) -> None:
        try:
            if not await self._engine.start():
                # Restart policy relaunches it and kicks us via on_started.
                self._busy = False
                self._engine_unavailable()
                return
            if self._local:
                await self._ensure_output()
            if self._closed or not self._queue:
                self._busy = False
                return

            text = self._queue.popleft()
            self._current = text
            self._pcm = []
            line = json.dumps({"text": text}, ensure_ascii=False) + "\n"
            if not self._engine.write(line.encode("utf-8")):
                self._queue.appendleft(text)
                self._current = None
                self._busy = False
        except asyncio.CancelledError:
            self._busy = False
            raise
        except Exception:
            log.exception("[%s] queue processing failed", self.id)
            self._busy = False

    async def _ensure_output(self) -> None:
        if not self._sox_available():
            return
        if self._sink is not None and not self._sink.running:
            await self._sink.start()
        if self._effects_enabled and self._effect is not None and not self._effect.running:
            await self._effect.start()

    def _sox_available(self) -> bool:
        if self._sox_checked:
            return True
        if shutil.which(SOX) is None:
            if not self._logged_missing_sox:
                self._logged_missing_sox = True
                log.warning("[%s] sox not found; local playback disabled", self.id)
            return False
        self._sox_checked = True
        return True

    def _engine_unavailable(self) -> bool:
        """True once the engine gave up; waiting jobs are dropped."""
        if not self._engine.gave_up:
            return False
        if not self._logged_unavailable:
            self._logged_unavailable = True
            log.error(
                "[%s] synthesis engine unavailable, dropping %d queued job(s)",
                self.id,
                len(self._queue),
            )
        self._queue.clear()
        return True

    async def _finish_after_drain(self) -> None:
        seen = -1
        while seen != self._pcm_chunks:
            seen = self._pcm_chunks
            await asyncio.sleep(DRAIN_QUIET_S)
        self._drain_task = None
        self._finish_utterance()

    def _emit_clip(self) -> None:
        pcm = b"".join(self._pcm)
        self._pcm = []
        if pcm and self._emit is not None:
            self._emit(wrap_pcm(pcm, self._speech.sample_rate))

    def _finish_utterance(self) -> None:
        if self._current is None:
            return
        self._current = None
        if not self._local:
            self._emit_clip()
        self._engine.reset_restarts()
        self.completed += 1
        self._busy = False
        self._kick()

    # ── Process callbacks ────────────────────────────────────────

    def _on_engine_audio(self, chunk: bytes) -> None:
        if not self._local:
            self._pcm.append(chunk)
            self._pcm_chunks += 1
        elif self._effects_enabled and self._effect is not None and self._effect.running:
            self._effect.write(chunk)
        elif self._sink is not None:
            self._sink.write(chunk)

    def _on_effect_audio(self, chunk: bytes) -> None:
        if self._sink is not None:
            self._sink.write(chunk)

    def _on_engine_log(self, line: str) -> None:
        if any(marker in line for marker in DONE_MARKERS):
            if self._local:
                self._finish_utterance()
            elif self._current is not None and self._drain_task is None:
                self._drain_task = asyncio.create_task(
                    self._finish_after_drain(), name=f"lane-{self.id}-drain"
                )
        else:
            log.debug("[%s/engine] %s", self.id, line)

    def _on_engine_exit(self, code: int | None) -> None:
        if self._drain_task is not None:
            # end marker already seen; the pipe is at EOF, so the clip is complete
            self._drain_task.cancel()
            self._drain_task = None
            self._current = None
            self._emit_clip()
            self.completed += 1
        if self._current is not None:
            log.warning("[%s] engine died mid-utterance, requeueing %r", self.id, self._current[:30])
            self._queue.appendleft(self._current)
            self._current = None
        self._pcm = []
        self._busy = False

    def _on_sox_log(self, line: str) -> None:
        if "underrun" in line:
            log.debug("[%s/sox] %s", self.id, line)
        else:
            log.warning("[%s/sox] %s", self.id, line)
