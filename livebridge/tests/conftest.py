"""Shared fakes: in-memory child processes built on asyncio.StreamReader."""

from __future__ import annotations

import asyncio
import itertools

import pytest

_pids = itertools.count(1000)


class FakeStdin:
    def __init__(self) -> None:
        self.data = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("stdin closed")
        self.data += data

    def close(self) -> None:
        self.closed = True

    def lines(self) -> list[str]:
        return [line for line in self.data.decode("utf-8").splitlines() if line]


class FakeProcess:
    def __init__(self, argv: list[str], *, with_stdout: bool) -> None:
        self.argv = argv
        self.pid = next(_pids)
        self.returncode: int | None = None
        self.stdin = FakeStdin()
        self.stdout = asyncio.StreamReader() if with_stdout else None
        self.stderr = asyncio.StreamReader()
        self._exited = asyncio.Event()

    def emit_stdout(self, data: bytes) -> None:
        assert self.stdout is not None
        self.stdout.feed_data(data)

    def emit_stderr(self, line: str) -> None:
        self.stderr.feed_data(line.encode("utf-8") + b"\n")

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        if self.stdout is not None:
            self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode  # type: ignore[return-value]

    def terminate(self) -> None:
        self.exit(-15)

    def kill(self) -> None:
        self.exit(-9)


class FakeSpawner:
    """Drop-in for asyncio.create_subprocess_exec."""

    def __init__(self) -> None:
        self.procs: list[FakeProcess] = []
        self.failures = 0

    async def __call__(self, *argv: str, stdin=None, stdout=None, stderr=None) -> FakeProcess:
        if self.failures > 0:
            self.failures -= 1
            raise FileNotFoundError(f"no such file: {argv[0]}")
        proc = FakeProcess(list(argv), with_stdout=stdout == asyncio.subprocess.PIPE)
        self.procs.append(proc)
        return proc

    def matching(self, predicate) -> list[FakeProcess]:
        return [p for p in self.procs if predicate(p.argv)]

    def engines(self) -> list[FakeProcess]:
        return self.matching(lambda argv: argv[0].endswith("piper"))

    def sinks(self) -> list[FakeProcess]:
        return self.matching(lambda argv: argv[0] == "sox" and "--buffer" in argv)

    def effects(self) -> list[FakeProcess]:
        return self.matching(lambda argv: argv[0] == "sox" and "--buffer" not in argv)


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()
