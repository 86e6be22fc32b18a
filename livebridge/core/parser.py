"""In-band command parser.

The model answers in free text sprinkled with bracketed markers::

    [SAY: Hello there] [THINK: pondering] [PONG]

``parse`` turns one finished turn into an ordered list of ``Command`` values.
Each call owns its cursor; there is no scan state shared between calls.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# [TAG] or [TAG: content]; content stops at the first closing bracket.
_MARKER_RE = re.compile(r"\[([A-Z_]+)(?::\s*(.*?))?\]")


@dataclass(frozen=True, slots=True)
class Command:
    type: str
    content: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "content": self.content}


def parse(text: str) -> list[Command]:
    """Extract every well-formed marker from ``text``, left to right."""
    commands: list[Command] = []
    if not text:
        return commands

    pos = 0
    end = len(text)
    while pos < end:
        start = text.find("[", pos)
        if start == -1:
            break
        match = _MARKER_RE.match(text, start)
        if match is None:
            # Not a marker; resume right after this bracket.
            pos = start + 1
            continue
        tag, content = match.group(1), match.group(2)
        commands.append(Command(type=tag.upper(), content=(content or "").strip()))
        pos = match.end()
    return commands
