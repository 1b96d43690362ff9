"""Apply a parsed response to the working directory.

Entries are processed strictly in document order: a file written by one block
is visible to every command that follows it, and a command that deletes a
file runs before any later block writes it again.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from .commands import command_help, resolve_command
from .markdown import MarkdownProtocol
from .protocol import FileEntry, ParsedFile
from .report import ReportCollector
from .workspace import Workspace

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Diagnostic:
    """A report item meant for the error channel rather than the main report."""

    text: str

    def __str__(self) -> str:
        return self.text


def _size_label(size: int) -> str:
    return f"{size:,} bytes"


def _label_suffix(entry: FileEntry) -> str:
    label = entry.label.strip()
    if not label or label == entry.filename:
        return ""
    return f": {label}"


async def _run_command(entry, parsed, workspace, index, dry, collector):
    handler_cls = resolve_command(entry.filename)
    if handler_cls is None:
        collector.record_unknown_command(index, entry.filename)
        yield Diagnostic(f"! Unknown command: {entry.filename}")
        yield Diagnostic("  Available commands:")
        for line in command_help():
            yield Diagnostic(f"  {line}")
        return

    yield f"▶ {entry.filename}"
    handler = handler_cls(entry, parsed, workspace, dry=dry)
    try:
        async for line in handler.run():
            yield line
    except (OSError, ValueError) as exc:
        handler.failed = True
        yield f"  ! Error: {entry.filename} failed: {exc}"
    collector.record_command(index, entry.filename, not handler.failed)
    if handler.verdict is not None:
        collector.record_validation(handler.verdict)
    logger.debug("%s finished, failed=%s", entry.filename, handler.failed)


def _write_entry(entry, workspace, index, dry, collector) -> str:
    try:
        target = workspace.resolve(entry.filename)
        data = entry.content.encode(entry.encoding)
    except (ValueError, LookupError) as exc:
        collector.record_write_error(index, entry.filename, str(exc))
        return f"! Error: {exc}"
    if target.is_dir():
        msg = f"{entry.filename} is a directory"
        collector.record_write_error(index, entry.filename, msg)
        return f"! Error: {msg}"

    suffix = _label_suffix(entry)
    if dry:
        collector.record_write(index, entry.filename, len(data), dry=True)
        return f"• would write {entry.filename} ({_size_label(len(data))}){suffix}"
    try:
        size = workspace.write_file(entry.filename, entry.content, entry.encoding)
    except OSError as exc:
        collector.record_write_error(index, entry.filename, str(exc))
        return f"! Error: failed to write {entry.filename}: {exc}"
    collector.record_write(index, entry.filename, size, dry=False)
    return f"+ saved {entry.filename} ({_size_label(size)}){suffix}"


def format_scan_errors(parsed: ParsedFile) -> list[str]:
    """Group scan errors by message, each followed by its offending lines."""
    grouped: dict[str, list] = {}
    for err in parsed.failed:
        grouped.setdefault(str(err.error), []).append(err)
    lines = []
    for message, errors in grouped.items():
        lines.append(f"! Error: {message}")
        width = max(len(str(e.line)) for e in errors)
        for e in errors:
            lines.append(f"  # {str(e.line).rjust(width)} > {e.content}")
    return lines


async def unpack_answer(
    parsed: ParsedFile,
    workspace: Workspace,
    *,
    dry: bool = False,
    collector: ReportCollector | None = None,
) -> AsyncIterator[str | Diagnostic]:
    """Write files and run commands from ``parsed``, yielding report items.

    Plain strings belong to the report; ``Diagnostic`` items belong to the
    error channel. The last two items are the tally and the verdict.
    """
    if collector is None:
        collector = ReportCollector()

    yield "Extracting files" + (" (dry mode, no real saving)" if dry else "")
    for index, entry in enumerate(parsed.correct, 1):
        if entry.is_command:
            async for item in _run_command(
                entry, parsed, workspace, index, dry, collector
            ):
                yield item
            continue
        yield _write_entry(entry, workspace, index, dry, collector)

    collector.record_scan_errors(len(parsed.failed))
    for line in format_scan_errors(parsed):
        yield line

    yield collector.tally()
    yield "✓ Unpack succeeded" if collector.ok else "✗ Unpack failed"


async def unpack_text(
    text: str, workspace: Workspace, **kwargs
) -> AsyncIterator[str | Diagnostic]:
    """Parse ``text`` with the markdown grammar and unpack it."""
    parsed = MarkdownProtocol.parse(text)
    async for item in unpack_answer(parsed, workspace, **kwargs):
        yield item


def run_unpack(
    parsed: ParsedFile,
    workspace: Workspace,
    *,
    dry: bool = False,
    collector: ReportCollector | None = None,
    on_line=print,
    on_diagnostic=None,
) -> ReportCollector:
    """Drive ``unpack_answer`` to completion from synchronous code.

    Report lines go to ``on_line``, diagnostics to ``on_diagnostic`` (or
    ``on_line`` when unset). Returns the collector holding the verdict.
    """
    if collector is None:
        collector = ReportCollector()
    on_diagnostic = on_diagnostic or on_line

    async def drain():
        async for item in unpack_answer(parsed, workspace, dry=dry, collector=collector):
            if isinstance(item, Diagnostic):
                on_diagnostic(item.text)
            else:
                on_line(item)

    asyncio.run(drain())
    return collector
