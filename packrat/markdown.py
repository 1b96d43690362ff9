"""Markdown grammar: file blocks, ``@command`` blocks and checklist references."""

import re
from dataclasses import dataclass

from .protocol import FileEntry, FileProtocol, parse_fence

_CHECKLIST_RE = re.compile(r"^\s*[-*][ \t]+\[(?P<label>[^\]]*)\]\((?P<path>[^()]*)\)\s*$")


@dataclass(frozen=True)
class ChecklistRef:
    """A ``- [label](path)`` line from a pack request or a validation list."""

    label: str
    path: str

    @property
    def is_command(self) -> bool:
        return self.path.startswith("@")


def extract_path(line: str) -> ChecklistRef | None:
    """Read a checklist reference, tolerating surrounding whitespace and an empty label."""
    m = _CHECKLIST_RE.match(line)
    if m is None:
        return None
    path = m.group("path").strip()
    if not path:
        return None
    return ChecklistRef(label=m.group("label").strip(), path=path)


class MarkdownProtocol(FileProtocol):
    """The pack/unpack grammar.

    Filenames starting with ``@`` name commands instead of files. A
    ``@validate`` body is a checklist of the entries the response claims to
    deliver::

        #### [2 file(s), 1 command(s)](@validate)
        ```markdown
        - [](src/app.py)
        - [Tests](tests/test_app.py)
        - [Cleanup](@rm)
        ```
    """

    @classmethod
    def requested_from(cls, entry: FileEntry) -> dict[str, str]:
        requested: dict[str, str] = {}
        for line in entry.content.splitlines():
            ref = extract_path(line)
            if ref is not None:
                requested.setdefault(ref.path, ref.label)
        return requested

    @classmethod
    def references(cls, text: str) -> list[ChecklistRef]:
        """All checklist references in a document, in order."""
        refs = []
        for line in text.splitlines():
            ref = extract_path(line)
            if ref is not None:
                refs.append(ref)
        return refs


def fence_for(content: str) -> str:
    """A backtick fence longer than any fence already inside content."""
    longest = 0
    for line in content.splitlines():
        fence = parse_fence(line)
        if fence is not None and fence[0][0] == "`":
            longest = max(longest, len(fence[0]))
    return "`" * max(3, longest + 1)


def format_block(label: str, filename: str, content: str, type: str = "") -> str:
    """Serialize one block; content gains a trailing newline if it lacks one."""
    if content and not content.endswith("\n"):
        content += "\n"
    fence = fence_for(content)
    return f"#### [{label}]({filename})\n{fence}{type}\n{content}{fence}\n"
