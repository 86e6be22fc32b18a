"""Supervised child process with byte-stream I/O and a restart policy.

Used for every external stage of an output lane (synthesis engine, effect
stage, sink) and for the capture producers. Output is delivered through
callbacks on the event loop; an unexpected exit is reported and followed by
a delayed relaunch until the policy is exhausted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

log = logging.getLogger(__name__)

SpawnFn = Callable[..., Awaitable[Any]]


class ResourceError(RuntimeError):
    """A child process could not be started."""


@dataclass(slots=True)
class RestartPolicy:
    delay_s: float = 1.0
    max_restarts: int = 5  # consecutive failed launches/exits before giving up


class ManagedProcess:
    """One owned child process: start, write, stop, restart on crash."""

    def __init__(
        self,
        label: str,
        argv: Sequence[str],
        *,
        on_stdout: Callable[[bytes], None] | None = None,
        on_stderr_line: Callable[[str], None] | None = None,
        on_exit: Callable[[int | None], None] | None = None,
        on_started: Callable[[], None] | None = None,
        policy: RestartPolicy | None = None,
        spawn: SpawnFn | None = None,
        read_size: int = 4096,
    ) -> None:
        self._label = label
        self._argv = list(argv)
        self._on_stdout = on_stdout
        self._on_stderr_line = on_stderr_line
        self._on_exit = on_exit
        self._on_started = on_started
        self._policy = policy or RestartPolicy()
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._read_size = read_size

        self._proc: Any = None
        self._starting = False
        self._stopping = False
        self._gave_up = False
        self._restart_count = 0
        self._watch_task: asyncio.Task | None = None
        self._restart_task: asyncio.Task | None = None

    @property
    def label(self) -> str:
        return self._label

    @property
    def argv(self) -> list[str]:
        return list(self._argv)

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def restart_count(self) -> int:
        return self._restart_count

    @property
    def gave_up(self) -> bool:
        return self._gave_up

    async def start(self) -> bool:
        """Launch if not already running. Returns True when running."""
        if self.running:
            return True
        if self._starting or self._gave_up:
            return False
        self._starting = True
        self._stopping = False
        try:
            self._proc = await self._launch()
        except ResourceError as e:
            log.error("%s: %s", self._label, e)
            self._proc = None
            self._schedule_restart()
            return False
        finally:
            self._starting = False

        self._watch_task = asyncio.create_task(
            self._watch(self._proc), name=f"proc-{self._label}"
        )
        log.info("%s started (pid=%s)", self._label, getattr(self._proc, "pid", "?"))
        if self._on_started is not None:
            self._on_started()
        return True

    def write(self, data: bytes) -> bool:
        """Fire-and-forget write to stdin."""
        proc = self._proc
        if proc is None or proc.returncode is not None or proc.stdin is None:
            return False
        try:
            proc.stdin.write(data)
            return True
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            log.warning("%s stdin write failed: %s", self._label, e)
            return False

    async def stop(self, timeout_s: float = 0.6) -> None:
        """Stop without restarting."""
        self._stopping = True
        if self._restart_task is not None and not self._restart_task.done():
            self._restart_task.cancel()
        self._restart_task = None

        proc = self._proc
        self._proc = None
        if proc is None:
            return
        if proc.stdin is not None:
            try:
                proc.stdin.close()
            except Exception as e:
                log.debug("%s stdin close: %s", self._label, e)
        if proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=timeout_s)
            except asyncio.TimeoutError:
                log.warning("%s did not exit in %.1fs, killing", self._label, timeout_s)
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        if self._watch_task is not None and not self._watch_task.done():
            self._watch_task.cancel()
        self._watch_task = None
        log.info("%s stopped", self._label)

    async def _launch(self) -> Any:
        try:
            return await self._spawn(
                *self._argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE if self._on_stdout else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            raise ResourceError(f"cannot launch {self._argv[0]}: {e}") from e

    async def _watch(self, proc: Any) -> None:
        readers = []
        if proc.stdout is not None and self._on_stdout is not None:
            readers.append(self._read_stdout(proc.stdout))
        if proc.stderr is not None:
            readers.append(self._read_stderr(proc.stderr))
        await asyncio.gather(*readers)
        code = await proc.wait()

        if self._stopping or proc is not self._proc:
            return
        self._proc = None
        log.warning("%s exited (code %s)", self._label, code)
        if self._on_exit is not None:
            try:
                self._on_exit(code)
            except Exception:
                log.exception("%s exit handler failed", self._label)
        self._schedule_restart()

    async def _read_stdout(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(self._read_size)
            if not chunk:
                return
            try:
                self._on_stdout(chunk)  # type: ignore[misc]
            except Exception:
                log.exception("%s stdout handler failed", self._label)

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            decoded = line.decode(errors="replace").rstrip()
            if not decoded:
                continue
            if self._on_stderr_line is not None:
                try:
                    self._on_stderr_line(decoded)
                except Exception:
                    log.exception("%s stderr handler failed", self._label)
            else:
                log.debug("[%s] %s", self._label, decoded)

    def _schedule_restart(self) -> None:
        if self._stopping:
            return
        if self._restart_task is not None and not self._restart_task.done():
            return
        if self._restart_count >= self._policy.max_restarts:
            log.error(
                "%s exceeded max restarts (%d), giving up",
                self._label,
                self._policy.max_restarts,
            )
            self._gave_up = True
            return
        self._restart_count += 1
        log.info(
            "restarting %s in %.1fs (attempt %d/%d)",
            self._label,
            self._policy.delay_s,
            self._restart_count,
            self._policy.max_restarts,
        )
        self._restart_task = asyncio.create_task(
            self._restart_after_delay(), name=f"restart-{self._label}"
        )

    async def _restart_after_delay(self) -> None:
        await asyncio.sleep(self._policy.delay_s)
        self._restart_task = None
        if not self._stopping:
            await self.start()

    def reset_restarts(self) -> None:
        """Clear the failure budget after a healthy stretch of work."""
        self._restart_count = 0
        self._gave_up = False
