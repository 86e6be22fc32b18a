"""File-backed instruction, behavior and context blobs."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

log = logging.getLogger(__name__)


class PromptStore:
    """Reads the setup blobs and appends to the context log."""

    def __init__(
        self,
        instruction_path: str | Path,
        behavior_path: str | Path,
        context_path: str | Path,
        delimiter: str = "\n\n",
        *,
        clock: Callable[[], time.struct_time] = time.localtime,
    ) -> None:
        self._instruction_path = Path(instruction_path)
        self._behavior_path = Path(behavior_path)
        self._context_path = Path(context_path)
        self._delimiter = delimiter
        self._clock = clock

    @property
    def context_path(self) -> Path:
        return self._context_path

    def read_instruction(self) -> str:
        return self._read(self._instruction_path)

    def read_behavior(self) -> str:
        return self._read(self._behavior_path)

    def read_context(self) -> str:
        return self._read(self._context_path)

    def build_instruction(self) -> str:
        """Instruction + behavior, then the context log behind the delimiter."""
        text = self.read_instruction() + self.read_behavior()
        context = self.read_context()
        if context.strip():
            text += self._delimiter + context
        return text

    def append_context(self, text: str) -> str:
        """Append one timestamped line; returns the line written."""
        stamp = time.strftime("%H:%M:%S", self._clock())
        line = f"[{stamp}] {text.strip()}\n"
        self._context_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._context_path, "a", encoding="utf-8") as f:
            f.write(line)
        return line

    def reset_context(self) -> None:
        self._context_path.parent.mkdir(parents=True, exist_ok=True)
        self._context_path.write_text("", encoding="utf-8")
        log.info("context log reset: %s", self._context_path)

    @staticmethod
    def _read(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as e:
            log.warning("cannot read %s: %s", path, e)
            return ""
