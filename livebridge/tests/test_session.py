"""Tests for the upstream session controller (connect, budget restart, retry)."""

from __future__ import annotations

import asyncio
import json
import sys

import pytest

from livebridge.config import SessionConfig, UpstreamConfig
from livebridge.core.session import (
    TASK_CONTEXT_FAST,
    TASK_CONTEXT_UPDATER,
    TASK_TIME_SYNC,
    RestartStage,
    SessionController,
    SessionStatus,
)
from livebridge.storage.prompt_store import PromptStore


class FakeWebSocket:
    def __init__(self, uri: str, gate: asyncio.Event | None = None) -> None:
        self.uri = uri
        self.gate = gate
        self.sent: list[str] = []
        self.inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self.close_code: int | None = None
        self.close_reason = ""
        self.closed = False

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        if self.gate is not None:
            await self.gate.wait()
        self.sent.append(data)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self.inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        self.closed = True
        if self.close_code is None:
            self.close_code = 1000
        self.inbox.put_nowait(None)

    # -- test helpers --

    def push(self, msg: dict | str) -> None:
        self.inbox.put_nowait(msg if isinstance(msg, str) else json.dumps(msg))

    def server_close(self, code: int | None) -> None:
        self.close_code = code
        self.inbox.put_nowait(None)

    def messages(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]

    def user_texts(self) -> list[str]:
        return [
            m["client_content"]["turns"][0]["parts"][0]["text"]
            for m in self.messages()
            if "client_content" in m
        ]


class FakeWebsockets:
    def __init__(self) -> None:
        self.sockets: list[FakeWebSocket] = []
        self.attempts = 0
        self.failures = 0
        self.gate: asyncio.Event | None = None

    async def connect(self, uri: str, **_kwargs) -> FakeWebSocket:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        ws = FakeWebSocket(uri, self.gate)
        self.sockets.append(ws)
        return ws


@pytest.fixture
def fake_ws(monkeypatch) -> FakeWebsockets:
    fake = FakeWebsockets()
    monkeypatch.setitem(sys.modules, "websockets", fake)
    return fake


@pytest.fixture
def store(tmp_path) -> PromptStore:
    (tmp_path / "instruction.txt").write_text("You are a robot.", encoding="utf-8")
    (tmp_path / "behavior.txt").write_text(" Be brief.", encoding="utf-8")
    return PromptStore(
        tmp_path / "instruction.txt",
        tmp_path / "behavior.txt",
        tmp_path / "context.txt",
        "\n--\n",
    )


def _session_cfg(**overrides) -> SessionConfig:
    values = dict(
        reconnect_delay_s=0.01,
        reconnect_gap_s=0.01,
        restart_commit_delay_s=0.01,
        restart_safety_timeout_s=0.1,
        services_start_delay_s=0.01,
        context_push_interval_s=10.0,
        time_sync_interval_s=10.0,
        max_reconnect_attempts=3,
    )
    values.update(overrides)
    return SessionConfig(**values)


def _controller(store: PromptStore, *, api_key: str = "secret", **session_overrides):
    upstream = UpstreamConfig(url="wss://example.test/ws", api_key=api_key, token_budget=100)
    ctrl = SessionController(upstream, _session_cfg(**session_overrides), store)
    notices: list[str] = []
    ctrl.notices.subscribe(notices.append)
    return ctrl, notices


@pytest.mark.asyncio
async def test_enable_connects_and_sends_setup_first(fake_ws, store):
    store.append_context("met a cat")
    ctrl, notices = _controller(store)

    assert await ctrl.enable() is True
    assert ctrl.status is SessionStatus.ACTIVE
    assert ctrl.connected
    ws = fake_ws.sockets[0]
    assert ws.uri == "wss://example.test/ws?key=secret"

    setup = ws.messages()[0]["setup"]
    instruction = setup["system_instruction"]["parts"][0]["text"]
    assert instruction.startswith("You are a robot. Be brief.\n--\n[")
    assert instruction.endswith("met a cat\n")
    assert notices == ["session started"]
    await ctrl.disable()


@pytest.mark.asyncio
async def test_enable_is_noop_while_connected(fake_ws, store):
    ctrl, _ = _controller(store)
    await ctrl.enable()
    await ctrl.enable()
    assert fake_ws.attempts == 1
    await ctrl.disable()


@pytest.mark.asyncio
async def test_enable_cancelled_during_setup_releases_socket(fake_ws, store):
    ctrl, _ = _controller(store)
    fake_ws.gate = asyncio.Event()
    pending = asyncio.create_task(ctrl.enable())
    await asyncio.sleep(0.01)
    stuck = fake_ws.sockets[0]
    assert ctrl.status is SessionStatus.CONNECTING

    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending
    assert stuck.closed
    assert ctrl.status is SessionStatus.IDLE
    assert ctrl.snapshot()["tasks"] == []

    fake_ws.gate = None
    assert await ctrl.enable() is True
    assert ctrl.status is SessionStatus.ACTIVE
    assert len(fake_ws.sockets) == 2
    await ctrl.disable()


@pytest.mark.asyncio
async def test_missing_api_key_does_not_connect(fake_ws, store):
    ctrl, notices = _controller(store, api_key="")
    assert await ctrl.enable() is False
    assert fake_ws.attempts == 0
    assert ctrl.status is SessionStatus.IDLE
    assert notices and notices[0].startswith("session failed to start")


@pytest.mark.asyncio
async def test_empty_instruction_aborts_setup(fake_ws, tmp_path):
    empty = PromptStore(tmp_path / "i", tmp_path / "b", tmp_path / "c")
    ctrl, notices = _controller(empty)
    assert await ctrl.enable() is False
    assert fake_ws.attempts == 0
    assert "system instruction is empty" in notices[0]


@pytest.mark.asyncio
async def test_media_only_forwarded_while_active(fake_ws, store):
    ctrl, _ = _controller(store)
    assert await ctrl.send_video_frame(b"\xff\xd8\xff\xd9") is False

    await ctrl.enable()
    ws = fake_ws.sockets[0]
    assert await ctrl.send_video_frame(b"\xff\xd8\xff\xd9") is True
    assert await ctrl.send_audio_chunk(b"\x00\x00") is True

    ctrl.set_audio_forwarding(False)
    assert await ctrl.send_audio_chunk(b"\x00\x00") is False
    assert await ctrl.send_video_frame(b"\xff\xd8\xff\xd9") is True

    mimes = [
        m["realtime_input"]["media_chunks"][0]["mime_type"]
        for m in ws.messages()
        if "realtime_input" in m
    ]
    assert mimes == ["image/jpeg", "audio/pcm", "image/jpeg"]
    await ctrl.disable()


@pytest.mark.asyncio
async def test_turn_text_accumulates_until_turn_complete(fake_ws, store):
    ctrl, _ = _controller(store)
    turns: list[str] = []
    responses: list[str] = []
    ctrl.set_on_turn(turns.append)
    ctrl.responses.subscribe(responses.append)
    await ctrl.enable()
    ws = fake_ws.sockets[0]

    ws.push({"serverContent": {"modelTurn": {"parts": [{"text": "  [SAY: При"}]}}})
    ws.push({"serverContent": {"modelTurn": {"parts": [{"text": "віт]  "}]}}})
    await asyncio.sleep(0.01)
    assert turns == []

    ws.push({"serverContent": {"turnComplete": True}})
    await asyncio.sleep(0.01)
    assert turns == ["[SAY: Привіт]"]
    assert responses == ["[SAY: Привіт]"]
    await ctrl.disable()


@pytest.mark.asyncio
async def test_malformed_frame_is_dropped(fake_ws, store):
    ctrl, _ = _controller(store)
    turns: list[str] = []
    ctrl.set_on_turn(turns.append)
    await ctrl.enable()
    ws = fake_ws.sockets[0]

    ws.push("not json")
    ws.push({"serverContent": {"modelTurn": {"parts": [{"text": "ok"}]}, "turnComplete": True}})
    await asyncio.sleep(0.01)
    assert turns == ["ok"]
    assert ctrl.connected
    await ctrl.disable()


@pytest.mark.asyncio
async def test_token_usage_is_monotonic(fake_ws, store):
    ctrl, _ = _controller(store)
    await ctrl.enable()
    ws = fake_ws.sockets[0]
    ws.push({"usageMetadata": {"totalTokenCount": 50}})
    ws.push({"usageMetadata": {"totalTokenCount": 30}})
    await asyncio.sleep(0.01)
    assert ctrl.token_usage == 50
    assert ctrl.restart_stage == 0
    await ctrl.disable()


@pytest.mark.asyncio
async def test_budget_restart_waits_for_context_save(fake_ws, store):
    ctrl, _ = _controller(store, restart_safety_timeout_s=1.0)
    await ctrl.enable()
    first = fake_ws.sockets[0]

    first.push({"usageMetadata": {"totalTokenCount": 150}})
    await asyncio.sleep(0.02)
    assert ctrl.restart_stage == RestartStage.ARMING
    assert ctrl.can_stream is False
    assert await ctrl.send_video_frame(b"\xff\xd8\xff\xd9") is False
    assert "[CONTEXT]" in first.user_texts()
    assert not ctrl.tasks.is_running(TASK_CONTEXT_UPDATER)

    # a second report above budget doesn't re-arm
    first.push({"usageMetadata": {"totalTokenCount": 180}})
    await asyncio.sleep(0.01)
    assert first.user_texts().count("[CONTEXT]") == 1

    ctrl.mark_context_saved()
    await asyncio.sleep(0.1)

    assert first.closed
    assert len(fake_ws.sockets) == 2
    assert ctrl.connected
    assert ctrl.token_usage == 0
    assert ctrl.restart_stage == RestartStage.NONE
    assert "setup" in fake_ws.sockets[1].messages()[0]
    await ctrl.disable()


@pytest.mark.asyncio
async def test_budget_restart_safety_timeout_forces_reconnect(fake_ws, store):
    ctrl, _ = _controller(store, restart_safety_timeout_s=0.05)
    await ctrl.enable()
    fake_ws.sockets[0].push({"usageMetadata": {"totalTokenCount": 101}})
    await asyncio.sleep(0.15)

    assert len(fake_ws.sockets) == 2
    assert ctrl.connected
    assert ctrl.restart_stage == RestartStage.NONE
    await ctrl.disable()


@pytest.mark.asyncio
async def test_mark_context_saved_outside_restart_is_ignored(fake_ws, store):
    ctrl, _ = _controller(store)
    await ctrl.enable()
    ctrl.mark_context_saved()
    assert ctrl.restart_stage == RestartStage.NONE
    await asyncio.sleep(0.03)
    assert len(fake_ws.sockets) == 1
    await ctrl.disable()


@pytest.mark.parametrize("code", [1001, 1006, 1011, None])
@pytest.mark.asyncio
async def test_transient_close_schedules_reconnect(fake_ws, store, code):
    ctrl, notices = _controller(store)
    await ctrl.enable()
    fake_ws.sockets[0].server_close(code)
    await asyncio.sleep(0.08)

    assert "session ended" in notices
    assert len(fake_ws.sockets) == 2
    assert ctrl.connected
    await ctrl.disable()


@pytest.mark.parametrize("code", [1000, 1008])
@pytest.mark.asyncio
async def test_other_close_codes_stay_idle(fake_ws, store, code):
    ctrl, notices = _controller(store)
    await ctrl.enable()
    fake_ws.sockets[0].server_close(code)
    await asyncio.sleep(0.05)

    assert notices[-1] == "session ended"
    assert len(fake_ws.sockets) == 1
    assert ctrl.status is SessionStatus.IDLE
    assert ctrl.tasks.running_names() == []


@pytest.mark.asyncio
async def test_connect_failure_is_retried(fake_ws, store):
    fake_ws.failures = 1
    ctrl, notices = _controller(store)
    assert await ctrl.enable() is False
    assert notices == ["session failed to start"]

    await asyncio.sleep(0.05)
    assert fake_ws.attempts == 2
    assert ctrl.connected
    await ctrl.disable()


@pytest.mark.asyncio
async def test_reconnect_attempts_are_bounded(fake_ws, store):
    fake_ws.failures = 100
    ctrl, notices = _controller(store, max_reconnect_attempts=3)
    await ctrl.enable()
    await asyncio.sleep(0.15)

    assert fake_ws.attempts == 4
    assert notices[-1] == "session ended: reconnect attempts exhausted"
    assert ctrl.status is SessionStatus.IDLE


@pytest.mark.asyncio
async def test_disable_closes_and_cancels_pending_retry(fake_ws, store):
    ctrl, _ = _controller(store, reconnect_delay_s=0.05)
    await ctrl.enable()
    ws = fake_ws.sockets[0]
    ws.server_close(1011)
    await asyncio.sleep(0.01)

    await ctrl.disable()
    await asyncio.sleep(0.1)
    assert len(fake_ws.sockets) == 1
    assert ctrl.status is SessionStatus.IDLE


@pytest.mark.asyncio
async def test_disable_stops_background_tasks(fake_ws, store):
    ctrl, notices = _controller(store)
    await ctrl.enable()
    await asyncio.sleep(0.03)
    assert set(ctrl.tasks.running_names()) == {TASK_CONTEXT_UPDATER, TASK_TIME_SYNC}

    await ctrl.disable()
    assert fake_ws.sockets[0].closed
    assert ctrl.tasks.running_names() == []
    assert notices[-1] == "session ended"
    assert await ctrl.send_text("hello") is False


@pytest.mark.asyncio
async def test_periodic_context_push(fake_ws, store):
    ctrl, _ = _controller(store, context_push_interval_s=0.02)
    await ctrl.enable()
    await asyncio.sleep(0.1)
    assert fake_ws.sockets[0].user_texts().count("[CONTEXT]") >= 2
    assert not ctrl.tasks.is_running(TASK_CONTEXT_FAST)
    await ctrl.disable()


@pytest.mark.asyncio
async def test_send_text_and_snapshot(fake_ws, store):
    ctrl, _ = _controller(store)
    await ctrl.enable()
    assert await ctrl.send_text("як справи?") is True
    assert fake_ws.sockets[0].user_texts()[-1] == "як справи?"

    snap = ctrl.snapshot()
    assert snap["status"] == "active"
    assert snap["token_budget"] == 100
    assert snap["audio_enabled"] is True
    await ctrl.disable()
