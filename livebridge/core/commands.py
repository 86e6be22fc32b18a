"""Command rule table and dispatch.

Every tag the model may emit maps to a ``CommandRule``: where (if anywhere)
to speak it, how to rewrite the text first, and an optional side effect.
Unknown tags resolve to an inert rule so a growing vocabulary never breaks
the bridge.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from livebridge.config import SpeechConfig
from livebridge.core.channels import Channel
from livebridge.core.parser import Command, parse

log = logging.getLogger(__name__)

SpeakPolicy = Callable[[SpeechConfig], "str | None"]
SpeakFn = Callable[[str, str], None]  # (lane_id, text)

LANE_PRIMARY = "primary"
LANE_WHISPER = "whisper"


def _never(_speech: SpeechConfig) -> str | None:
    return None


def speaks_when_enabled(tag: str, lane: str) -> SpeakPolicy:
    """Speak on ``lane`` while ``tag`` is listed in ``speech.speak_tags``."""

    def _policy(speech: SpeechConfig) -> str | None:
        tags = {t.upper() for t in speech.speak_tags}
        return lane if tag.upper() in tags else None

    return _policy


@dataclass(frozen=True, slots=True)
class CommandRule:
    tag: str
    speak_lane: SpeakPolicy = _never
    transform: Callable[[str], str] | None = None
    side_effect: Callable[[str], None] | None = None
    color: str = "gray"
    unknown: bool = False


UNKNOWN_RULE = CommandRule(tag="?", unknown=True)


class CommandTable:
    """Case-insensitive lookup of rules by tag."""

    def __init__(self, rules: list[CommandRule] | None = None) -> None:
        self._rules: dict[str, CommandRule] = {}
        for rule in rules or []:
            self.add(rule)

    def add(self, rule: CommandRule) -> None:
        self._rules[rule.tag.upper()] = rule

    def resolve(self, tag: str) -> CommandRule:
        return self._rules.get(tag.upper(), UNKNOWN_RULE)

    def tags(self) -> list[str]:
        return sorted(self._rules)


def build_default_table(
    speech: SpeechConfig,
    *,
    on_context: Callable[[str], None] | None = None,
) -> CommandTable:
    """The command vocabulary the instruction text teaches the model."""
    return CommandTable(
        [
            CommandRule(
                tag="SAY",
                speak_lane=speaks_when_enabled("SAY", LANE_PRIMARY),
                color="green",
            ),
            CommandRule(
                tag="WHISPER",
                speak_lane=speaks_when_enabled("WHISPER", LANE_WHISPER),
                transform=lambda text: speech.whisper_prefix + text,
                color="green",
            ),
            CommandRule(
                tag="THINK",
                speak_lane=speaks_when_enabled("THINK", LANE_PRIMARY),
                color="blue",
            ),
            CommandRule(tag="EMOTION", color="magenta"),
            CommandRule(tag="PONG", color="magenta"),
            CommandRule(tag="CONTEXT", side_effect=on_context, color="white"),
        ]
    )


class CommandDispatcher:
    """Routes parsed commands to side effects, lanes and subscribers."""

    def __init__(self, table: CommandTable, speech: SpeechConfig, speak: SpeakFn) -> None:
        self._table = table
        self._speech = speech
        self._speak = speak
        self.commands: Channel[Command] = Channel("commands")

    @property
    def table(self) -> CommandTable:
        return self._table

    def handle_turn(self, text: str) -> list[Command]:
        """Parse one finished turn and dispatch every command in order."""
        commands = parse(text)
        if not commands:
            log.info("raw turn (no markers): %s", text)
            return commands

        for cmd in commands:
            try:
                self.dispatch(cmd)
            except Exception:
                log.exception("dispatch failed for %s", cmd.type)
        return commands

    def dispatch(self, cmd: Command) -> bool:
        """Dispatch a single command. Returns False for unknown tags."""
        rule = self._table.resolve(cmd.type)
        if rule.unknown:
            log.warning("unknown command type: %r", cmd.type)
            return False

        log.info("[%s] %s", cmd.type, cmd.content)

        if rule.side_effect is not None:
            try:
                rule.side_effect(cmd.content)
            except Exception:
                log.exception("side effect failed for %s", cmd.type)

        lane = rule.speak_lane(self._speech)
        if lane:
            text = rule.transform(cmd.content) if rule.transform else cmd.content
            self._speak(lane, text)

        self.commands.publish(cmd)
        return True
