from __future__ import annotations

import pytest

from livebridge.config import (
    BridgeConfig,
    CaptureConfig,
    ConfigurationError,
    SpeechConfig,
    UpstreamConfig,
    VoiceConfig,
    load_config,
)


def test_defaults():
    cfg = BridgeConfig()
    assert cfg.upstream.token_budget == 900_000
    assert cfg.upstream.temperature == 0.6
    assert cfg.upstream.response_modalities == ["TEXT"]
    assert cfg.session.restart_safety_timeout_s == 5.0
    assert cfg.speech.voice.length_scale == 0.8
    assert [lane.id for lane in cfg.speech.lanes] == ["primary", "whisper"]
    assert cfg.speech.lanes[0].apply_effects is True
    assert cfg.speech.lanes[1].apply_effects is False
    assert cfg.capture.fps == 1.0
    assert cfg.capture.max_buffer_mb == 10


def test_load_config_none_returns_defaults():
    assert load_config(None) == BridgeConfig()


def test_load_config_missing_file_returns_defaults(tmp_path):
    assert load_config(tmp_path / "nope.yaml") == BridgeConfig()


def test_load_config_overrides_sections(tmp_path):
    path = tmp_path / "bridge.yaml"
    path.write_text(
        "\n".join(
            [
                "upstream:",
                "  token_budget: 1000",
                "session:",
                "  reconnect_delay_s: 0.1",
                "speech:",
                "  output_mode: web",
                "  speak_tags: [SAY, WHISPER]",
                "  voice:",
                "    length_scale: 1.25",
                "  lanes:",
                "    - id: primary",
                "      apply_effects: true",
                "capture:",
                "  fps: 2",
                "network:",
                "  port: 6000",
            ]
        ),
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert cfg.upstream.token_budget == 1000
    assert cfg.session.reconnect_delay_s == 0.1
    assert cfg.speech.output_mode == "web"
    assert cfg.speech.speak_tags == ["SAY", "WHISPER"]
    assert cfg.speech.voice.length_scale == 1.25
    assert len(cfg.speech.lanes) == 1
    assert cfg.speech.lanes[0].device is None
    assert cfg.capture.fps == 2
    assert cfg.network.port == 6000


def test_load_config_invalid_value_falls_back(tmp_path, caplog):
    path = tmp_path / "bad.yaml"
    path.write_text("speech:\n  output_mode: radio\n", encoding="utf-8")
    cfg = load_config(path)
    assert cfg == BridgeConfig()
    assert "config invalid" in caplog.text


def test_load_config_malformed_yaml_falls_back(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("upstream: [unclosed\n", encoding="utf-8")
    assert load_config(path) == BridgeConfig()


@pytest.mark.parametrize(
    "factory",
    [
        lambda: UpstreamConfig(token_budget=0),
        lambda: UpstreamConfig(temperature=3.0),
        lambda: SpeechConfig(output_mode="speaker"),
        lambda: VoiceConfig(length_scale=0),
        lambda: CaptureConfig(fps=0),
    ],
)
def test_invalid_values_raise(factory):
    with pytest.raises(ConfigurationError):
        factory()


def test_configuration_error_is_value_error():
    assert issubclass(ConfigurationError, ValueError)
