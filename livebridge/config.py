"""Bridge configuration with defaults, loadable from YAML + environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

try:
    from dotenv import load_dotenv

    load_dotenv(override=False)
except Exception:
    # Optional at import time; plain env vars still work without .env loading.
    pass

log = logging.getLogger(__name__)

DEFAULT_UPSTREAM_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1alpha.GenerativeService.BidiGenerateContent"
)

DEFAULT_CONTEXT_DELIM = (
    "\n\nНижче буде твоя історія попередніх взаємодій з оточуючим світом. "
    "Використовуй цю інформацію, щоб надати більш контекстуальні відповіді.\n\n"
)


class ConfigurationError(ValueError):
    """Invalid or missing configuration (credential, instruction, values)."""


@dataclass
class UpstreamConfig:
    url: str = os.environ.get("GEMINI_WEBSOCKET_URL", DEFAULT_UPSTREAM_URL)
    api_key: str = os.environ.get("GEMINI_API_KEY", "")
    model: str = "models/gemini-2.0-flash-exp-image-generation"
    temperature: float = 0.6
    response_modalities: list[str] = field(default_factory=lambda: ["TEXT"])
    token_budget: int = 900_000

    def __post_init__(self) -> None:
        if self.token_budget <= 0:
            raise ConfigurationError("upstream.token_budget must be > 0")
        if not (0.0 <= self.temperature <= 2.0):
            raise ConfigurationError("upstream.temperature must be in [0.0, 2.0]")


@dataclass
class SessionConfig:
    reconnect_delay_s: float = 1.0
    reconnect_gap_s: float = 0.5
    restart_commit_delay_s: float = 1.0
    restart_safety_timeout_s: float = 5.0
    services_start_delay_s: float = 0.5
    context_push_interval_s: float = 10.0
    time_sync_interval_s: float = 60.0
    max_reconnect_attempts: int = 10


@dataclass
class VoiceConfig:
    """Synthesis engine (piper) voice parameters."""

    model: str = "uk_UA-ukrainian_tts-medium"
    length_scale: float = 0.8
    noise_scale: float = 0.01
    noise_w: float = 0.1
    sentence_silence: float = 0.2
    speaker: int = 1

    def __post_init__(self) -> None:
        if self.length_scale <= 0:
            raise ConfigurationError("speech.voice.length_scale must be > 0")


@dataclass
class LaneConfig:
    id: str
    device: str | None = None  # None -> emit to network subscribers
    volume: float = 1.0
    apply_effects: bool = False


def _default_lanes() -> list[LaneConfig]:
    return [
        LaneConfig(
            id="primary",
            device=os.environ.get("PI_SPEAKER_NAME") or "default",
            volume=float(os.environ.get("PI_VOLUME", "1.0")),
            apply_effects=True,
        ),
        LaneConfig(
            id="whisper",
            device=os.environ.get("EXT_SPEAKER_NAME") or "default",
            volume=float(os.environ.get("EXT_VOLUME", "1.0")),
            apply_effects=False,
        ),
    ]


@dataclass
class SpeechConfig:
    output_mode: str = os.environ.get("AUDIO_OUTPUT_MODE", "local").strip().lower()
    speak_tags: list[str] = field(default_factory=lambda: ["SAY"])
    whisper_prefix: str = "Бажання. "
    engine_dir: str = "./tools/piper"
    engine_restart_delay_s: float = 1.0
    engine_max_restarts: int = 5
    sample_rate: int = 22050
    sink_rate: int = 16000
    use_voice_changer: bool = True
    effect_params: str = "pitch -50 echo 0.8 0.8 60 0.4 reverb 10 100 speed [s]"
    normalize_numbers: bool = True
    voice: VoiceConfig = field(default_factory=VoiceConfig)
    lanes: list[LaneConfig] = field(default_factory=_default_lanes)

    def __post_init__(self) -> None:
        if self.output_mode not in {"local", "web"}:
            raise ConfigurationError("speech.output_mode must be one of: local, web")


@dataclass
class CaptureConfig:
    video_backend: str = "rpicam"  # "rpicam" | "ffmpeg"
    video_device: str = os.environ.get("CAMERA_NAME", "/dev/video0")
    audio_device: str = os.environ.get("MIC_NAME", "default")
    fps: float = 1.0
    camera_fps: int = 30
    width: int = 640
    height: int = 480
    max_buffer_mb: int = 10
    audio_rate: int = 16000
    audio_chunk_bytes: int = 3200  # 100ms of 16 kHz mono s16le
    ffmpeg_path: str = os.environ.get("FFMPEG_PATH", "ffmpeg")

    def __post_init__(self) -> None:
        if self.fps <= 0:
            raise ConfigurationError("capture.fps must be > 0")


@dataclass
class StorageConfig:
    instruction_path: str = "./instruction.txt"
    behavior_path: str = "./behavior.txt"
    context_path: str = "./context.txt"
    delimiter: str = DEFAULT_CONTEXT_DELIM


@dataclass
class NetworkConfig:
    host: str = "0.0.0.0"
    port: int = int(os.environ.get("LIVEBRIDGE_PORT", "5000"))


@dataclass
class BridgeConfig:
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    speech: SpeechConfig = field(default_factory=SpeechConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)


_SECTIONS = ("upstream", "session", "speech", "capture", "storage", "network")


def load_config(path: str | Path | None = None) -> BridgeConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        return BridgeConfig()

    path = Path(path)
    if not path.exists():
        log.warning("config file not found: %s, using defaults", path)
        return BridgeConfig()

    try:
        import yaml  # type: ignore[import-untyped]

        with open(path) as f:
            raw = yaml.safe_load(f) or {}

        cfg = BridgeConfig()
        for section_name in _SECTIONS:
            if section_name in raw:
                section = getattr(cfg, section_name)
                for k, v in (raw[section_name] or {}).items():
                    if section_name == "speech" and k == "voice":
                        cfg.speech.voice = VoiceConfig(**v)
                    elif section_name == "speech" and k == "lanes":
                        cfg.speech.lanes = [LaneConfig(**lane) for lane in v]
                    else:
                        setattr(section, k, v)
                validate = getattr(section, "__post_init__", None)
                if validate is not None:
                    validate()

        log.info("config loaded from %s", path)
        return cfg
    except ConfigurationError as e:
        log.warning("config invalid: %s, using defaults", e)
        return BridgeConfig()
    except Exception as e:
        log.warning("config load error: %s, using defaults", e)
        return BridgeConfig()
