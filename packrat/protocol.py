"""Block scanner for the markdown file-transfer format.

A response is a sequence of blocks, each a reference heading followed by a
fenced body::

    #### [label](path/to/file.py)
    ```py
    print("hello")
    ```

The scanner walks the text one line at a time. A malformed block is recorded
as a ``FileError`` and scanning carries on with the next line, so a single bad
block never hides the good ones around it.
"""

import re
from collections.abc import AsyncIterable, Iterable
from dataclasses import dataclass, field
from enum import Enum

VALIDATE_NAME = "@validate"

_FENCE_RE = re.compile(r"^ {0,3}(?P<marker>`{3,}|~{3,})(?P<info>.*)$")


@dataclass(frozen=True)
class FileEntry:
    """One parsed block: a file to write or an ``@command`` to run."""

    label: str = ""
    filename: str = ""
    type: str = ""
    content: str = ""
    encoding: str = "utf-8"

    @property
    def is_command(self) -> bool:
        return self.filename.startswith("@")


@dataclass(frozen=True)
class FileError:
    """A line the scanner could not place in a block."""

    error: str | Exception = ""
    content: str = ""
    line: int = 0


@dataclass(frozen=True)
class ValidateResult:
    is_valid: bool = True
    validate: FileEntry | None = None
    files: dict[str, str] = field(default_factory=dict)
    requested: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ParsedFile:
    """Immutable result of one parse pass."""

    correct: tuple[FileEntry, ...] = ()
    failed: tuple[FileError, ...] = ()
    is_valid: bool = True
    validate: FileEntry | None = None
    files: dict[str, str] = field(default_factory=dict)
    requested: dict[str, str] = field(default_factory=dict)


class ScanState(Enum):
    SEEKING = "seeking"
    IN_HEADER = "in_header"
    IN_BODY = "in_body"
    SKIPPING = "skipping"


def parse_fence(line: str) -> tuple[str, str] | None:
    """Return (marker, info) if line is a code fence, else None."""
    m = _FENCE_RE.match(line)
    if m is None:
        return None
    marker, info = m.group("marker"), m.group("info").strip()
    # Backtick fences may not carry backticks in their info string.
    if marker[0] == "`" and "`" in info:
        return None
    return marker, info


def strip_eol(raw: str) -> str:
    if raw.endswith("\n"):
        raw = raw[:-1]
    if raw.endswith("\r"):
        raw = raw[:-1]
    return raw


def split_lines(text: str) -> list[str]:
    """Split on newlines only; a trailing newline does not add an empty line."""
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


class LineScanner:
    """One-shot line consumer. Subclasses implement feed() and finish()."""

    def __init__(self, protocol: "type[FileProtocol]"):
        self.protocol = protocol
        self.line_no = 0

    def feed(self, raw: str) -> None:
        raise NotImplementedError

    def finish(self):
        raise NotImplementedError


class BlockScanner(LineScanner):
    """State machine turning lines into FileEntry / FileError records."""

    def __init__(self, protocol):
        super().__init__(protocol)
        self.state = ScanState.SEEKING
        self.correct: list[FileEntry] = []
        self.failed: list[FileError] = []
        self._label = ""
        self._filename = ""
        self._type = ""
        self._header_line = 0
        self._header_text = ""
        self._fence = ""
        self._depth = 0
        self._body: list[str] = []

    def feed(self, raw: str) -> None:
        self.line_no += 1
        line = strip_eol(raw)
        if self.state is ScanState.SEEKING:
            self._seek(line)
        elif self.state is ScanState.IN_HEADER:
            self._expect_fence(line)
        elif self.state is ScanState.IN_BODY:
            self._body_line(line)
        else:
            self._skip(line)

    def _fail(self, error: str, content: str, line: int | None = None) -> None:
        self.failed.append(
            FileError(error=error, content=content, line=line or self.line_no)
        )

    def _seek(self, line: str) -> None:
        header = self.protocol.match_header(line)
        if header is not None:
            label, filename = header
            if not filename.strip():
                self._fail("Missing filename", line)
                return
            self._label = label
            self._filename = filename.strip()
            self._header_line = self.line_no
            self._header_text = line
            self.state = ScanState.IN_HEADER
            return
        if self.protocol.looks_like_header(line):
            self._fail("Incorrect file header", line)
            return
        fence = parse_fence(line)
        if fence is not None:
            # Orphan fenced block: skip its body, but remember where it began.
            self._fence = fence[0]
            self._depth = 0
            self._header_line = self.line_no
            self._header_text = line
            self.state = ScanState.SKIPPING

    def _expect_fence(self, line: str) -> None:
        fence = parse_fence(line)
        if fence is None:
            self._fail("Missing code fence after file reference", line)
            self.state = ScanState.SEEKING
            self._seek(line)
            return
        self._fence, self._type = fence
        self._depth = 0
        self._body = []
        self.state = ScanState.IN_BODY

    def _fence_event(self, line: str) -> str | None:
        """Classify a body line as "open", "close" or None (plain content)."""
        fence = parse_fence(line)
        if fence is None:
            return None
        marker, info = fence
        if marker[0] != self._fence[0] or len(marker) < len(self._fence):
            return None
        return "open" if info else "close"

    def _body_line(self, line: str) -> None:
        event = self._fence_event(line)
        if event == "close" and self._depth == 0:
            self.correct.append(
                FileEntry(
                    label=self._label,
                    filename=self._filename,
                    type=self._type,
                    content="".join(self._body),
                )
            )
            self._body = []
            self.state = ScanState.SEEKING
            return
        if event == "open":
            self._depth += 1
        elif event == "close":
            self._depth -= 1
        self._body.append(line + "\n")

    def _skip(self, line: str) -> None:
        if self.protocol.match_header(line) is not None:
            # A reference heading ends an orphan fence that never closed.
            self._fail("Unterminated block", self._header_text, self._header_line)
            self.state = ScanState.SEEKING
            self._seek(line)
            return
        event = self._fence_event(line)
        if event == "open":
            self._depth += 1
        elif event == "close":
            if self._depth == 0:
                self.state = ScanState.SEEKING
            else:
                self._depth -= 1

    def finish(self) -> ParsedFile:
        if self.state is not ScanState.SEEKING:
            self._fail("Unterminated block", self._header_text, self._header_line)
            self.state = ScanState.SEEKING
        failed = tuple(sorted(self.failed, key=lambda e: e.line))
        correct = tuple(self.correct)
        result = self.protocol.validate(correct)
        is_valid = result.is_valid if result.validate is not None else not failed
        return ParsedFile(
            correct=correct,
            failed=failed,
            is_valid=is_valid,
            validate=result.validate,
            files=result.files,
            requested=result.requested,
        )


class FileProtocol:
    """Generic scanner driver: headings of the form ``#### [label](filename)``
    followed by fenced bodies.

    Grammars customise ``match_header``, ``requested_from`` or the whole
    ``scanner`` class. Every parse call builds a fresh scanner, so the
    protocol classes hold no state between calls.
    """

    scanner = BlockScanner

    HEADER_RE = re.compile(
        r"^#{2,6}[ \t]+\[(?P<label>[^\]]*)\]\((?P<filename>[^()]*)\)[ \t]*$"
    )
    HEADER_START_RE = re.compile(r"^#{2,6}[ \t]+\[.*\]\(")

    @classmethod
    def match_header(cls, line: str) -> tuple[str, str] | None:
        m = cls.HEADER_RE.match(line)
        if m is None:
            return None
        return m.group("label"), m.group("filename")

    @classmethod
    def looks_like_header(cls, line: str) -> bool:
        return cls.HEADER_START_RE.match(line) is not None

    @classmethod
    def requested_from(cls, entry: FileEntry) -> dict[str, str]:
        """Filenames a validation entry expects, one bare path per line."""
        return {
            line.strip(): "" for line in entry.content.splitlines() if line.strip()
        }

    @classmethod
    def validate(cls, correct: Iterable[FileEntry]) -> ValidateResult:
        """Locate the ``@validate`` entry and compare its list to the delivery.

        With no validation entry there is nothing to check and the result is
        valid. With one, the filenames it requests must equal the filenames
        delivered (every entry except ``@validate`` itself).
        """
        correct = list(correct)
        validate = next((e for e in correct if e.filename == VALIDATE_NAME), None)
        files: dict[str, str] = {}
        for entry in correct:
            if entry.filename != VALIDATE_NAME:
                files.setdefault(entry.filename, entry.label)
        if validate is None:
            return ValidateResult(is_valid=True, files=files)
        requested = cls.requested_from(validate)
        return ValidateResult(
            is_valid=sorted(requested) == sorted(files),
            validate=validate,
            files=files,
            requested=requested,
        )

    @classmethod
    def parse_lines(cls, lines: Iterable[str]):
        scanner = cls.scanner(cls)
        for line in lines:
            scanner.feed(line)
        return scanner.finish()

    @classmethod
    def parse(cls, source: str):
        if not isinstance(source, str):
            raise TypeError(f"parse() expects str, got {type(source).__name__}")
        return cls.parse_lines(split_lines(source))

    @classmethod
    async def parse_stream(cls, stream: AsyncIterable[str] | Iterable[str]):
        """Parse lines from an async or plain iterable without buffering them."""
        scanner = cls.scanner(cls)
        if isinstance(stream, AsyncIterable):
            async for line in stream:
                scanner.feed(line)
        elif isinstance(stream, Iterable) and not isinstance(stream, (str, bytes)):
            for line in stream:
                scanner.feed(line)
        else:
            raise TypeError(
                f"parse_stream() expects an iterable of lines, got {type(stream).__name__}"
            )
        return scanner.finish()
