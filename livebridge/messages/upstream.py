"""Upstream wire format: JSON text frames over the duplex stream.

Outbound::

    {"setup": {"model": ..., "generation_config": {...}, "system_instruction": {...}}}
    {"realtime_input": {"media_chunks": [{"mime_type": "image/jpeg", "data": "<b64>"}]}}
    {"client_content": {"turns": [{"role": "user", "parts": [{"text": ...}]}], "turn_complete": true}}

Inbound fields we care about: ``usageMetadata.totalTokenCount``,
``serverContent.modelTurn.parts[].text``, ``serverContent.turnComplete``.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any

MIME_JPEG = "image/jpeg"
MIME_PCM = "audio/pcm"

# Close codes (RFC 6455 + registry).
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_PROTOCOL_ERROR = 1002
CLOSE_UNSUPPORTED_DATA = 1003
CLOSE_NO_STATUS = 1005
CLOSE_ABNORMAL = 1006
CLOSE_INVALID_PAYLOAD = 1007
CLOSE_POLICY_VIOLATION = 1008
CLOSE_MESSAGE_TOO_BIG = 1009
CLOSE_INTERNAL_ERROR = 1011
CLOSE_TLS_HANDSHAKE = 1015

CLOSE_CODE_NAMES = {
    CLOSE_NORMAL: "normal closure",
    CLOSE_GOING_AWAY: "going away",
    CLOSE_PROTOCOL_ERROR: "protocol error",
    CLOSE_UNSUPPORTED_DATA: "unsupported data",
    CLOSE_NO_STATUS: "no status received",
    CLOSE_ABNORMAL: "abnormal closure",
    CLOSE_INVALID_PAYLOAD: "invalid frame payload",
    CLOSE_POLICY_VIOLATION: "policy violation",
    CLOSE_MESSAGE_TOO_BIG: "message too big",
    CLOSE_INTERNAL_ERROR: "internal error",
    CLOSE_TLS_HANDSHAKE: "tls handshake failure",
}

# Server restart, network drop, oversize context, overload, TLS glitch.
RETRYABLE_CLOSE_CODES = frozenset(
    {
        CLOSE_GOING_AWAY,
        CLOSE_ABNORMAL,
        CLOSE_MESSAGE_TOO_BIG,
        CLOSE_INTERNAL_ERROR,
        CLOSE_TLS_HANDSHAKE,
    }
)


class ProtocolError(ValueError):
    """Inbound frame is not valid JSON or has an unexpected shape."""


def is_retryable(code: int | None) -> bool:
    return code in RETRYABLE_CLOSE_CODES


def describe_close(code: int | None) -> str:
    if code is None:
        return "no code"
    return f"{code} ({CLOSE_CODE_NAMES.get(code, 'unknown')})"


# ── Outbound ─────────────────────────────────────────────────────


def _dumps(msg: dict[str, Any]) -> str:
    return json.dumps(msg, ensure_ascii=False, separators=(",", ":"))


def build_setup(
    *,
    model: str,
    instruction: str,
    temperature: float,
    response_modalities: list[str],
) -> str:
    return _dumps(
        {
            "setup": {
                "model": model,
                "generation_config": {
                    "response_modalities": list(response_modalities),
                    "temperature": temperature,
                },
                "system_instruction": {"parts": [{"text": instruction}]},
            }
        }
    )


def build_media_chunk(data: bytes, mime_type: str) -> str:
    return _dumps(
        {
            "realtime_input": {
                "media_chunks": [
                    {
                        "mime_type": mime_type,
                        "data": base64.b64encode(data).decode("ascii"),
                    }
                ]
            }
        }
    )


def build_client_text(text: str) -> str:
    return _dumps(
        {
            "client_content": {
                "turns": [{"role": "user", "parts": [{"text": text}]}],
                "turn_complete": True,
            }
        }
    )


# ── Inbound ──────────────────────────────────────────────────────


@dataclass(slots=True)
class ServerMessage:
    """The parts of one inbound frame the session acts on."""

    total_tokens: int | None = None
    text_parts: list[str] = field(default_factory=list)
    turn_complete: bool = False


def decode_server_message(raw: str | bytes) -> ServerMessage:
    """Parse one inbound frame. Raises ``ProtocolError`` on malformed input."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"frame is not utf-8: {e}") from e
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"frame is not JSON: {e}") from e
    if not isinstance(msg, dict):
        raise ProtocolError("expected JSON object")

    out = ServerMessage()

    usage = msg.get("usageMetadata")
    if isinstance(usage, dict):
        total = usage.get("totalTokenCount")
        if isinstance(total, int) and not isinstance(total, bool) and total >= 0:
            out.total_tokens = total

    content = msg.get("serverContent")
    if isinstance(content, dict):
        turn = content.get("modelTurn")
        if isinstance(turn, dict):
            parts = turn.get("parts")
            if isinstance(parts, list):
                for part in parts:
                    if isinstance(part, dict) and isinstance(part.get("text"), str):
                        out.text_parts.append(part["text"])
        out.turn_complete = content.get("turnComplete") is True

    return out
