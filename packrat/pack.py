"""Expand checklist references in a prompt into embedded file blocks."""

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from .markdown import extract_path, format_block
from .protocol import split_lines
from .workspace import DEFAULT_IGNORE, Workspace, check_pattern

logger = logging.getLogger(__name__)

LIST_ONLY = "@ls"
_GLOB_CHARS = ("*", "?", "[")


@dataclass
class PackResult:
    text: str = ""
    injected: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def _file_type(path: str) -> str:
    return PurePosixPath(path).suffix[1:] or "txt"


def _embed(workspace: Workspace, rel: str, label: str, out: list, result) -> None:
    try:
        content = workspace.read_file(rel)
    except (OSError, UnicodeDecodeError, ValueError) as exc:
        logger.debug("cannot pack %s: %s", rel, exc)
        result.errors.append(rel)
        out.append(f"ERROR: Could not read file {rel}")
        return
    block = format_block(label or PurePosixPath(rel).name, rel, content, _file_type(rel))
    # Lines are joined with "\n" again below.
    out.append(block[:-1])
    result.injected.append(rel)


def pack_markdown(
    text: str, workspace: Workspace, ignore=DEFAULT_IGNORE
) -> PackResult:
    """Replace every ``- [label](path)`` line of ``text`` with file blocks.

    A glob reference expands to all matching files in sorted order. A
    reference labelled ``@ls`` lists the matches instead of embedding them.
    Command references (``@name`` paths) and all other lines are copied
    through unchanged. Unreadable files leave an ``ERROR:`` line in place.
    """
    result = PackResult()
    out: list[str] = []
    for line in split_lines(text):
        ref = extract_path(line)
        if ref is None or ref.is_command:
            out.append(line)
            continue

        list_only = ref.label == LIST_ONLY
        err = check_pattern(ref.path)
        if err:
            result.errors.append(line)
            out.append(f"ERROR: {err}")
            continue

        if any(c in ref.path for c in _GLOB_CHARS):
            matches = workspace.list_directory(".", ignore, pattern=ref.path)
            if not matches:
                result.errors.append(line)
                out.append(f"ERROR: No files matched {ref.path}")
                continue
            for rel in matches:
                if list_only:
                    out.append(rel)
                else:
                    _embed(workspace, rel, "", out, result)
            continue

        if list_only:
            matches = workspace.list_directory(ref.path, ignore)
            if not matches:
                result.errors.append(line)
                out.append(f"ERROR: No files matched {ref.path}")
            out.extend(matches)
            continue
        _embed(workspace, ref.path, ref.label, out, result)

    result.text = "\n".join(out)
    if text.endswith("\n"):
        result.text += "\n"
    logger.debug(
        "packed %d file(s), %d error(s)", len(result.injected), len(result.errors)
    )
    return result
