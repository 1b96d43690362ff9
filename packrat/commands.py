"""``@command`` handlers run by the unpack driver.

Each handler receives the block that named it, the whole parsed response and
the workspace, and yields progress lines from an async generator. Handlers
never raise for per-path problems: they report an error line and set
``failed``.
"""

import asyncio
import logging
import re
from collections.abc import AsyncIterator
from enum import Enum

from .markdown import MarkdownProtocol
from .protocol import FileEntry, ParsedFile
from .workspace import DEFAULT_IGNORE, Workspace, check_pattern

logger = logging.getLogger(__name__)

_GLOB_CHARS = ("*", "?", "[")
_COUNT_RE = re.compile(r"^\s*(\d+)\s+(file|command)\(s\)\s*$")


class CommandKind(Enum):
    SUMMARY = "@summary"
    REMOVE = "@rm"
    VALIDATE = "@validate"
    GET = "@get"
    LS = "@ls"


class Command:
    """Base handler. Subclasses set ``kind``, ``help``, ``example`` and implement run()."""

    kind: CommandKind
    help = ""
    label = ""
    example = ""

    def __init__(
        self,
        entry: FileEntry,
        parsed: ParsedFile,
        workspace: Workspace,
        *,
        dry: bool = False,
    ):
        self.entry = entry
        self.parsed = parsed
        self.workspace = workspace
        self.dry = dry
        self.failed = False
        # Only validation handlers produce a verdict.
        self.verdict: bool | None = None

    @property
    def name(self) -> str:
        return self.kind.value

    def _lines(self) -> list[str]:
        return [ln.strip() for ln in self.entry.content.splitlines() if ln.strip()]

    async def run(self) -> AsyncIterator[str]:
        raise NotImplementedError
        yield


def _split_negatives(spec: str) -> tuple[str, list[str]]:
    """Split ``src/**;-**/*.test.py`` into the base glob and its negatives."""
    parts = [p.strip() for p in spec.split(";") if p.strip()]
    base = [p for p in parts if not p.startswith("-")]
    negatives = [p[1:].strip() for p in parts if p.startswith("-")]
    return (base[0] if base else ""), negatives


def _match(workspace: Workspace, pattern: str, ignore) -> list[str]:
    """Files matching a glob, a directory (recursively) or a single path."""
    pattern = pattern.strip().rstrip("/") or "."
    if pattern == ".":
        return workspace.list_directory(".", ignore)
    if not any(c in pattern for c in _GLOB_CHARS):
        # Plain path: a file or a whole directory.
        return workspace.list_directory(pattern, ignore)
    return workspace.list_directory(".", ignore, pattern=pattern)


class SummaryCommand(Command):
    kind = CommandKind.SUMMARY
    help = "Show a short message in the output to keep important context"
    example = "```txt\nKey changes made to the project:\n- Refactored utils\n- Added tests\n```"

    async def run(self):
        message = self.entry.content.strip()
        if not message:
            yield "ℹ Empty summary"
            return
        yield "ℹ Summary:"
        for line in message.splitlines():
            yield f"   {line}"


class RemoveCommand(Command):
    kind = CommandKind.REMOVE
    help = "Remove files from the project, one path per line"
    example = "```txt\ndist/build.js\ntemp/cache.tmp\n```"

    async def run(self):
        paths = self._lines()
        if not paths:
            yield "• No files specified for removal"
            return
        yield "• Removing files:"
        for path in paths:
            try:
                resolved = self.workspace.resolve(path)
            except ValueError as exc:
                self.failed = True
                yield f"  ! Error: {exc}"
                continue
            if not resolved.exists():
                yield f"  - Skipped (not found): {path}"
                continue
            if resolved.is_dir():
                self.failed = True
                yield f"  ! Error: {path} is a directory, only files can be removed"
                continue
            if self.dry:
                yield f"  • Would remove: {path}"
                continue
            try:
                await asyncio.to_thread(self.workspace.delete, path)
            except (OSError, ValueError) as exc:
                self.failed = True
                yield f"  ! Error: failed to remove {path}: {exc}"
                continue
            yield f"  + Removed: {path}"


class ValidateCommand(Command):
    kind = CommandKind.VALIDATE
    label = "2 file(s), 1 command(s)"
    help = (
        "Validate the response by listing every file and command it delivers. "
        "The label counts the files and the commands besides @validate."
    )
    example = "```markdown\n- [](system.md)\n- [Updated](play/main.py)\n- [Cleanup](@rm)\n```"

    def _expected_counts(self) -> dict[str, int] | None:
        counts = {"file": 0, "command": 0}
        parts = [p for p in self.entry.label.split(",") if p.strip()]
        if not parts:
            return None
        for part in parts:
            m = _COUNT_RE.match(part)
            if m is None:
                return None
            counts[m.group(2)] = int(m.group(1))
        return counts

    async def run(self):
        files = self.parsed.files
        requested = MarkdownProtocol.requested_from(self.entry)
        self.verdict = sorted(requested) == sorted(files)

        delivered = {
            "file": sum(1 for f in files if not f.startswith("@")),
            "command": sum(1 for f in files if f.startswith("@")),
        }
        expected = self._expected_counts()
        if expected is not None and expected != delivered:
            yield f"! Unexpected response {self.entry.label!r}"
            yield (
                f"  but delivered: {delivered['file']} file(s), "
                f"{delivered['command']} command(s)"
            )
            yield '  label format is "#### [N file(s), M command(s)](@validate)"'

        if self.verdict:
            yield f"+ Validation passed: {len(files)} entries delivered as listed"
            return
        yield "! Validation failed"
        if requested:
            yield "  Requested:"
            for filename in requested:
                yield f"    {'+' if filename in files else '-'} {filename}"
        if files:
            yield "  Delivered:"
            for filename in files:
                yield f"    {'+' if filename in requested else '-'} {filename}"


class GetFilesCommand(Command):
    kind = CommandKind.GET
    label = "-**/*.test.py"
    help = (
        "Request project files, one path or glob per line; "
        "exclude with ;-pattern or with -patterns in the label"
    )
    example = "```\nsrc/app.py\ntests/**;-**/fixtures/**\npyproject.toml\n```"

    async def run(self):
        label_negatives = [
            p.strip()[1:].strip()
            for p in self.entry.label.split(";")
            if p.strip().startswith("-")
        ]
        specs = self._lines() or ["."]
        seen: set[str] = set()
        for spec in specs:
            pattern, negatives = _split_negatives(spec)
            pattern = pattern or "."
            err = check_pattern(pattern)
            if err:
                self.failed = True
                yield f"! Error: {err}"
                continue
            ignore = (*DEFAULT_IGNORE, *label_negatives, *negatives)
            try:
                matches = await asyncio.to_thread(_match, self.workspace, pattern, ignore)
            except ValueError as exc:
                self.failed = True
                yield f"! Error: {exc}"
                continue
            if not matches:
                yield f"! No files matched: {pattern}"
                continue
            for rel in matches:
                if rel not in seen:
                    seen.add(rel)
                    yield f"- []({rel})"
        logger.debug("@get matched %d file(s)", len(seen))


class ListFilesCommand(Command):
    kind = CommandKind.LS
    help = "List files inside the project, one directory or glob per line"
    example = "```\nsrc\ntests/**/*.py\n```"

    async def run(self):
        patterns = self._lines() or ["."]
        found: set[str] = set()
        for pattern in patterns:
            err = check_pattern(pattern)
            if err:
                self.failed = True
                yield f"! Error: {err}"
                continue
            try:
                found.update(
                    await asyncio.to_thread(_match, self.workspace, pattern, DEFAULT_IGNORE)
                )
            except ValueError as exc:
                self.failed = True
                yield f"! Error: {exc}"
        for rel in sorted(found):
            yield rel


COMMANDS: dict[str, type[Command]] = {
    cls.kind.value: cls
    for cls in (
        ValidateCommand,
        ListFilesCommand,
        GetFilesCommand,
        RemoveCommand,
        SummaryCommand,
    )
}


def resolve_command(name: str) -> type[Command] | None:
    return COMMANDS.get(name)


def command_help() -> list[str]:
    return [f" - {name} - {cls.help}" for name, cls in COMMANDS.items()]
