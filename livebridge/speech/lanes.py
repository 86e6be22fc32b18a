"""Lane manager: routes utterances to named output lanes."""

from __future__ import annotations

import logging
from typing import Any

from livebridge.config import SpeechConfig
from livebridge.core.channels import Channel
from livebridge.core.process import SpawnFn
from livebridge.speech.lane import OutputLane

log = logging.getLogger(__name__)


class LaneManager:
    def __init__(self, speech: SpeechConfig, *, spawn: SpawnFn | None = None) -> None:
        self._speech = speech
        # WAV clips from web-mode lanes
        self.audio: Channel[bytes] = Channel("tts-audio")
        self._lanes: dict[str, OutputLane] = {}
        for lane_cfg in speech.lanes:
            if lane_cfg.id in self._lanes:
                log.warning("duplicate lane id %r ignored", lane_cfg.id)
                continue
            self._lanes[lane_cfg.id] = OutputLane(
                lane_cfg, speech, emit=self.audio.publish, spawn=spawn
            )
        log.info(
            "lanes ready: %s (mode=%s)", ", ".join(self._lanes) or "none", speech.output_mode
        )

    @property
    def ids(self) -> list[str]:
        return list(self._lanes)

    @property
    def voice_changer_enabled(self) -> bool:
        return self._speech.use_voice_changer

    def lane(self, lane_id: str) -> OutputLane | None:
        return self._lanes.get(lane_id)

    def speak(self, lane_id: str, text: str) -> bool:
        lane = self._lanes.get(lane_id)
        if lane is None:
            log.warning("no output lane %r, dropping %r", lane_id, text[:30])
            return False
        return lane.speak(text)

    async def set_voice_changer(self, enabled: bool) -> None:
        self._speech.use_voice_changer = bool(enabled)
        for lane in self._lanes.values():
            await lane.set_effects_enabled(enabled)

    async def close(self) -> None:
        for lane in self._lanes.values():
            await lane.close()

    def snapshot(self) -> dict[str, Any]:
        return {
            "voice_changer": self._speech.use_voice_changer,
            "lanes": {lane_id: lane.snapshot() for lane_id, lane in self._lanes.items()},
        }
