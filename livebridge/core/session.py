"""Upstream session controller.

States::

    IDLE → CONNECTING → ACTIVE
    ACTIVE (token budget exceeded)
        → stage 1  stop slow context push, fire one fast context push
        → stage 2  context save reported by the CONTEXT side effect
        → stage 3  reconnect scheduled
        → CONNECTING

Close codes in ``RETRYABLE_CLOSE_CODES`` schedule exactly one reconnect
attempt; anything else leaves the session IDLE until the next ``enable()``.
Every connection gets an id; callbacks that belong to a torn-down
connection are ignored.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable

from livebridge.config import ConfigurationError, SessionConfig, UpstreamConfig
from livebridge.core.channels import Channel
from livebridge.core.tasks import TaskRegistry
from livebridge.messages.upstream import (
    CLOSE_ABNORMAL,
    CLOSE_NORMAL,
    MIME_JPEG,
    MIME_PCM,
    ProtocolError,
    build_client_text,
    build_media_chunk,
    build_setup,
    decode_server_message,
    describe_close,
    is_retryable,
)
from livebridge.storage.prompt_store import PromptStore

log = logging.getLogger(__name__)

TASK_CONTEXT_UPDATER = "context_updater"
TASK_TIME_SYNC = "time_sync"
TASK_CONTEXT_FAST = "context_fast"

CONTEXT_REQUEST = "[CONTEXT]"


class SessionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"


class RestartStage(int, Enum):
    NONE = 0
    ARMING = 1  # budget exceeded, waiting for context save
    READY = 2  # context saved
    COMMITTED = 3  # reconnect scheduled


class SessionController:
    """Owns the upstream connection, token budget and restart sequence."""

    def __init__(
        self,
        upstream: UpstreamConfig,
        session: SessionConfig,
        store: PromptStore,
        *,
        on_turn: Callable[[str], Any] | None = None,
    ) -> None:
        self._upstream = upstream
        self._cfg = session
        self._store = store
        self._on_turn = on_turn

        self._ws: Any = None
        self._status = SessionStatus.IDLE
        self._token_usage = 0
        self._restart_stage = RestartStage.NONE
        self._response_buffer = ""
        self._conn_id = 0
        self._enabled = False
        self._audio_enabled = True
        self._reconnect_attempts = 0
        self._context_saved = asyncio.Event()

        self._receive_task: asyncio.Task | None = None
        self._services_task: asyncio.Task | None = None
        self._restart_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

        self.responses: Channel[str] = Channel("responses")
        self.notices: Channel[str] = Channel("notices")

        self.tasks = TaskRegistry()
        self.tasks.register(
            TASK_CONTEXT_UPDATER, self._push_context, session.context_push_interval_s
        )
        self.tasks.register(TASK_TIME_SYNC, self._sync_time, session.time_sync_interval_s)
        self.tasks.register(TASK_CONTEXT_FAST, self._push_context)

    # ── State ────────────────────────────────────────────────────

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._status is SessionStatus.ACTIVE

    @property
    def token_usage(self) -> int:
        return self._token_usage

    @property
    def restart_stage(self) -> int:
        return int(self._restart_stage)

    @property
    def audio_enabled(self) -> bool:
        return self._audio_enabled

    @property
    def can_stream(self) -> bool:
        """Media goes upstream only while active and not restarting."""
        return self.connected and self._restart_stage is RestartStage.NONE

    def set_on_turn(self, on_turn: Callable[[str], Any] | None) -> None:
        self._on_turn = on_turn

    def set_audio_forwarding(self, enabled: bool) -> None:
        enabled = bool(enabled)
        if enabled != self._audio_enabled:
            log.info("audio forwarding %s", "enabled" if enabled else "disabled")
        self._audio_enabled = enabled

    def snapshot(self) -> dict[str, Any]:
        return {
            "status": self._status.value,
            "token_usage": self._token_usage,
            "token_budget": self._upstream.token_budget,
            "restart_stage": int(self._restart_stage),
            "audio_enabled": self._audio_enabled,
            "tasks": self.tasks.running_names(),
        }

    # ── Lifecycle ────────────────────────────────────────────────

    async def enable(self) -> bool:
        """Open the session. No-op while connected or connecting."""
        self._enabled = True
        if self._ws is not None or self._status is not SessionStatus.IDLE:
            return self.connected
        self._reconnect_attempts = 0
        return await self._connect(explicit=True)

    async def disable(self) -> None:
        """Close the session and stop every background task. Always safe."""
        self._enabled = False
        self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        was_open = self._ws is not None
        await self._close_connection()
        if was_open:
            log.info("session disabled")
        self.notices.publish("session ended")

    async def reconnect(self) -> bool:
        """Disconnect (if connected), then connect after a short gap."""
        log.info("reconnecting to upstream")
        if self._ws is not None:
            await self._close_connection()
            await asyncio.sleep(self._cfg.reconnect_gap_s)
        if not self._enabled:
            return False
        return await self._connect(explicit=False)

    def mark_context_saved(self) -> None:
        """Called by the CONTEXT side effect once the context line is stored."""
        if self._restart_stage is RestartStage.ARMING:
            self._restart_stage = RestartStage.READY
            self._context_saved.set()

    # ── Outbound ─────────────────────────────────────────────────

    async def send_video_frame(self, jpeg: bytes) -> bool:
        if not self.can_stream:
            return False
        return await self._send(build_media_chunk(jpeg, MIME_JPEG))

    async def send_audio_chunk(self, pcm: bytes, mime_type: str = MIME_PCM) -> bool:
        if not self._audio_enabled or not self.can_stream:
            return False
        return await self._send(build_media_chunk(pcm, mime_type))

    async def send_text(self, text: str) -> bool:
        if not self.connected:
            return False
        log.info("user: %s", text)
        return await self._send(build_client_text(text))

    # ── Connection ───────────────────────────────────────────────

    def _build_uri(self) -> str:
        if not self._upstream.api_key:
            raise ConfigurationError("GEMINI_API_KEY is missing")
        sep = "&" if "?" in self._upstream.url else "?"
        return f"{self._upstream.url}{sep}key={self._upstream.api_key}"

    def _build_instruction(self) -> str:
        instruction = self._store.build_instruction()
        if not instruction.strip():
            raise ConfigurationError("system instruction is empty")
        return instruction

    async def _connect(self, *, explicit: bool) -> bool:
        if self._ws is not None:
            return True
        self._status = SessionStatus.CONNECTING

        try:
            uri = self._build_uri()
            instruction = self._build_instruction()
        except ConfigurationError as e:
            log.error("session not started: %s", e)
            self._status = SessionStatus.IDLE
            self.notices.publish(f"session failed to start: {e}")
            return False

        self._conn_id += 1
        conn_id = self._conn_id
        try:
            import websockets

            ws = await websockets.connect(uri, ping_interval=20, ping_timeout=10)
        except asyncio.CancelledError:
            self._status = SessionStatus.IDLE
            raise
        except Exception as e:
            if conn_id != self._conn_id:
                return False
            log.warning("upstream connect failed: %s", e)
            self._status = SessionStatus.IDLE
            if explicit:
                self.notices.publish("session failed to start")
            self._schedule_reconnect(CLOSE_ABNORMAL)
            return False

        if conn_id != self._conn_id or not self._enabled:
            # Disabled while the socket was opening.
            await self._close_quietly(ws)
            return False

        self._ws = ws
        self._token_usage = 0
        self._restart_stage = RestartStage.NONE
        self._response_buffer = ""
        self._context_saved.clear()
        self._reconnect_attempts = 0

        setup = build_setup(
            model=self._upstream.model,
            instruction=instruction,
            temperature=self._upstream.temperature,
            response_modalities=self._upstream.response_modalities,
        )
        try:
            if not await self._send(setup):
                log.warning("setup message not sent")
        except asyncio.CancelledError:
            # cancelled mid-setup: drop the half-open socket
            if conn_id == self._conn_id:
                self._teardown()
            await self._close_quietly(ws)
            raise
        if conn_id != self._conn_id:
            return False

        self._status = SessionStatus.ACTIVE
        log.info("connected to upstream (model=%s)", self._upstream.model)
        self._receive_task = asyncio.create_task(
            self._receive_loop(ws, conn_id), name="upstream-receive"
        )
        self._services_task = asyncio.create_task(
            self._start_services(conn_id), name="upstream-services"
        )
        if explicit:
            self.notices.publish("session started")
        return True

    async def _start_services(self, conn_id: int) -> None:
        await asyncio.sleep(self._cfg.services_start_delay_s)
        if conn_id != self._conn_id or self._restart_stage is not RestartStage.NONE:
            return
        self.tasks.start(TASK_CONTEXT_UPDATER)
        self.tasks.start(TASK_TIME_SYNC)

    async def _receive_loop(self, ws: Any, conn_id: int) -> None:
        try:
            async for raw in ws:
                if conn_id != self._conn_id:
                    return
                self._handle_frame(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("upstream receive error: %s", e)

        if conn_id != self._conn_id:
            return
        self._on_closed(getattr(ws, "close_code", None), getattr(ws, "close_reason", ""))

    def _on_closed(self, code: int | None, reason: str | None) -> None:
        code = CLOSE_ABNORMAL if code is None else code
        if code == CLOSE_NORMAL:
            log.info("upstream closed normally")
        else:
            log.warning("upstream closed: %s %s", describe_close(code), reason or "")
        self._teardown()
        self.notices.publish("session ended")
        if is_retryable(code):
            self._schedule_reconnect(code)

    def _schedule_reconnect(self, code: int) -> bool:
        if not self._enabled:
            return False
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return False
        if self._reconnect_attempts >= self._cfg.max_reconnect_attempts:
            log.error(
                "giving up after %d reconnect attempts", self._reconnect_attempts
            )
            self.notices.publish("session ended: reconnect attempts exhausted")
            return False
        self._reconnect_attempts += 1
        log.info(
            "reconnect in %.1fs after %s (attempt %d/%d)",
            self._cfg.reconnect_delay_s,
            describe_close(code),
            self._reconnect_attempts,
            self._cfg.max_reconnect_attempts,
        )
        self._reconnect_task = asyncio.create_task(
            self._delayed_reconnect(self._cfg.reconnect_delay_s), name="upstream-reconnect"
        )
        return True

    async def _delayed_reconnect(self, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        self._reconnect_task = None
        await self.reconnect()

    async def _close_connection(self) -> None:
        ws = self._ws
        self._teardown()
        if ws is not None:
            await self._close_quietly(ws)

    def _teardown(self) -> None:
        """Invalidate the current connection and stop its background work."""
        self._conn_id += 1
        self._ws = None
        self._status = SessionStatus.IDLE
        self._response_buffer = ""
        self.tasks.stop_all()
        for task in (self._receive_task, self._services_task, self._restart_task):
            self._cancel_task(task)
        self._receive_task = None
        self._services_task = None
        self._restart_task = None

    @staticmethod
    def _cancel_task(task: asyncio.Task | None) -> None:
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()

    @staticmethod
    async def _close_quietly(ws: Any) -> None:
        try:
            await ws.close()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.debug("upstream close error: %s", e)

    async def _send(self, payload: str) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(payload)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("upstream send failed: %s", e)
            return False

    # ── Inbound ──────────────────────────────────────────────────

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            msg = decode_server_message(raw)
        except ProtocolError as e:
            log.warning("dropping upstream frame: %s", e)
            return

        if msg.total_tokens is not None:
            self._on_usage(msg.total_tokens)

        for part in msg.text_parts:
            self._response_buffer += part

        if msg.turn_complete:
            final = self._response_buffer.strip()
            self._response_buffer = ""
            if final:
                self.responses.publish(final)
                if self._on_turn is not None:
                    try:
                        self._on_turn(final)
                    except Exception:
                        log.exception("turn handler failed")

    def _on_usage(self, total: int) -> None:
        budget = self._upstream.token_budget
        self._token_usage = max(self._token_usage, total)
        left = budget - self._token_usage
        log.debug(
            "tokens: %.1f%% used, %d left", self._token_usage * 100.0 / budget, left
        )
        if self._token_usage > budget and self._restart_stage is RestartStage.NONE:
            self._begin_restart()

    def _begin_restart(self) -> None:
        log.warning(
            "token budget reached (%d > %d), preparing reconnect",
            self._token_usage,
            self._upstream.token_budget,
        )
        self._restart_stage = RestartStage.ARMING
        self._context_saved.clear()
        self.tasks.stop(TASK_CONTEXT_UPDATER)
        self.tasks.stop(TASK_TIME_SYNC)
        self.tasks.start(TASK_CONTEXT_FAST)
        self._restart_task = asyncio.create_task(
            self._await_context_save(self._conn_id), name="upstream-restart"
        )

    async def _await_context_save(self, conn_id: int) -> None:
        try:
            await asyncio.wait_for(
                self._context_saved.wait(), timeout=self._cfg.restart_safety_timeout_s
            )
        except asyncio.TimeoutError:
            if conn_id != self._conn_id or self._restart_stage is not RestartStage.ARMING:
                return
            log.warning("context save timeout, forcing reconnect")
            await self.reconnect()
            return

        if conn_id != self._conn_id:
            return
        self._restart_stage = RestartStage.COMMITTED
        log.info("context saved, reconnecting in %.1fs", self._cfg.restart_commit_delay_s)
        await asyncio.sleep(self._cfg.restart_commit_delay_s)
        if conn_id != self._conn_id:
            return
        await self.reconnect()

    # ── Background work ──────────────────────────────────────────

    async def _push_context(self) -> None:
        await self.send_text(CONTEXT_REQUEST)

    async def _sync_time(self) -> None:
        await self.send_text(f"[TIME: {time.strftime('%H:%M')}]")
