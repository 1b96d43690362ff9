"""Release-notes grammar: a title and a numbered list of linked tasks.

Expected shape::

    # v1.2.0 Streaming

    1. [Parser](releases/1.2.0/001-parser/task.md)
       Rewrite the scanner as a state machine.
    2. [CLI](releases/1.2.0/002-cli/task.md)
       Add the unpack --dry flag.
"""

import re
from dataclasses import dataclass

from .protocol import FileProtocol, LineScanner, strip_eol

_TASK_RE = re.compile(r"^\s*\d+\.\s+\[(?P<label>[^\]]+)\]\((?P<link>[^)]+)\)\s*$")


@dataclass(frozen=True)
class Task:
    label: str
    link: str
    text: str = ""


@dataclass(frozen=True)
class Release:
    title: str = ""
    tasks: tuple[Task, ...] = ()


class TaskScanner(LineScanner):
    """Collects tasks; a description runs until the next item, heading or EOF."""

    def __init__(self, protocol):
        super().__init__(protocol)
        self.title = ""
        self.tasks: list[Task] = []
        self._current: tuple[str, str] | None = None
        self._text: list[str] = []

    def _close(self) -> None:
        if self._current is None:
            return
        label, link = self._current
        self.tasks.append(Task(label=label, link=link, text="\n".join(self._text).strip()))
        self._current = None
        self._text = []

    def feed(self, raw: str) -> None:
        self.line_no += 1
        line = strip_eol(raw)
        m = _TASK_RE.match(line)
        if m is not None:
            self._close()
            self._current = (m.group("label"), m.group("link"))
            return
        if line.startswith("#"):
            self._close()
            if not self.title and line.startswith("# "):
                self.title = line[2:].strip()
            return
        if self._current is not None:
            self._text.append(line.strip())

    def finish(self) -> Release:
        self._close()
        return Release(title=self.title, tasks=tuple(self.tasks))


class ReleaseProtocol(FileProtocol):
    """Parses release notes with the shared streaming driver."""

    scanner = TaskScanner
