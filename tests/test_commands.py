"""Tests for the @command handlers and the command table."""

import asyncio

import pytest

from packrat.commands import (
    COMMANDS,
    CommandKind,
    GetFilesCommand,
    ListFilesCommand,
    RemoveCommand,
    SummaryCommand,
    ValidateCommand,
    command_help,
    resolve_command,
)
from packrat.markdown import MarkdownProtocol
from packrat.protocol import FileEntry, ParsedFile
from packrat.workspace import Workspace


# =========================================================================
# Helpers
# =========================================================================


def _run(handler) -> list[str]:
    async def collect():
        return [line async for line in handler.run()]

    return asyncio.run(collect())


def _entry(filename: str, content: str = "", label: str = "") -> FileEntry:
    return FileEntry(label=label, filename=filename, content=content)


@pytest.fixture
def ws(tmp_path):
    root = tmp_path / "ws"
    root.mkdir()
    return Workspace(root)


@pytest.fixture
def project(ws):
    for rel, text in {
        "README.md": "# readme\n",
        "src/app.py": "print('app')\n",
        "src/app.test.py": "assert True\n",
        ".git/config": "[core]\n",
        "node_modules/x/index.js": "module.exports = 1\n",
    }.items():
        ws.write_file(rel, text)
    return ws


# =========================================================================
# Command table
# =========================================================================


class TestCommandTable:
    def test_all_kinds_registered(self):
        assert set(COMMANDS) == {kind.value for kind in CommandKind}
        assert set(COMMANDS) == {"@summary", "@rm", "@validate", "@get", "@ls"}

    def test_resolve(self):
        assert resolve_command("@rm") is RemoveCommand
        assert resolve_command("@nope") is None

    def test_help_lists_every_command(self):
        lines = command_help()
        assert len(lines) == len(COMMANDS)
        assert all(line.startswith(" - @") for line in lines)
        assert any("@rm" in line for line in lines)


# =========================================================================
# @summary
# =========================================================================


class TestSummary:
    def test_message(self, ws):
        handler = SummaryCommand(_entry("@summary", "Line one\nLine two\n"), ParsedFile(), ws)
        assert _run(handler) == ["ℹ Summary:", "   Line one", "   Line two"]
        assert handler.failed is False

    def test_empty(self, ws):
        handler = SummaryCommand(_entry("@summary", "  \n"), ParsedFile(), ws)
        assert _run(handler) == ["ℹ Empty summary"]


# =========================================================================
# @rm
# =========================================================================


class TestRemove:
    def test_removes_and_skips(self, ws):
        ws.write_file("a.txt", "A")
        handler = RemoveCommand(_entry("@rm", "a.txt\nmissing.txt\n"), ParsedFile(), ws)
        lines = _run(handler)
        assert lines == [
            "• Removing files:",
            "  + Removed: a.txt",
            "  - Skipped (not found): missing.txt",
        ]
        assert not (ws.root / "a.txt").exists()
        assert handler.failed is False

    def test_refuses_escape(self, ws, tmp_path):
        outside = tmp_path / "outside.txt"
        outside.write_text("keep")
        handler = RemoveCommand(_entry("@rm", "../outside.txt\n"), ParsedFile(), ws)
        lines = _run(handler)
        assert lines[1].startswith("  ! Error:")
        assert outside.exists()
        assert handler.failed is True

    def test_refuses_directory(self, ws):
        ws.write_file("sub/file.txt", "x")
        handler = RemoveCommand(_entry("@rm", "sub\n"), ParsedFile(), ws)
        lines = _run(handler)
        assert "is a directory" in lines[1]
        assert (ws.root / "sub" / "file.txt").exists()
        assert handler.failed is True

    def test_dry_keeps_files(self, ws):
        ws.write_file("a.txt", "A")
        handler = RemoveCommand(_entry("@rm", "a.txt\n"), ParsedFile(), ws, dry=True)
        assert _run(handler) == ["• Removing files:", "  • Would remove: a.txt"]
        assert (ws.root / "a.txt").exists()

    def test_nothing_to_remove(self, ws):
        handler = RemoveCommand(_entry("@rm", "\n"), ParsedFile(), ws)
        assert _run(handler) == ["• No files specified for removal"]


# =========================================================================
# @validate
# =========================================================================


VALIDATED = """\
#### [](a.txt)
```
A
```
#### [Cleanup](@rm)
```
old.txt
```
#### [1 file(s), 1 command(s)](@validate)
```markdown
- [](a.txt)
- [Cleanup](@rm)
```
"""


def _validate(ws, text):
    parsed = MarkdownProtocol.parse(text)
    handler = ValidateCommand(parsed.validate, parsed, ws)
    return handler, _run(handler)


class TestValidate:
    def test_passes(self, ws):
        handler, lines = _validate(ws, VALIDATED)
        assert handler.verdict is True
        assert lines == ["+ Validation passed: 2 entries delivered as listed"]

    def test_label_mismatch_only_warns(self, ws):
        text = VALIDATED.replace("[1 file(s), 1 command(s)]", "[3 file(s), 1 command(s)]")
        handler, lines = _validate(ws, text)
        assert handler.verdict is True
        assert lines[0] == "! Unexpected response '3 file(s), 1 command(s)'"
        assert "  but delivered: 1 file(s), 1 command(s)" in lines

    def test_free_text_label_is_not_checked(self, ws):
        text = VALIDATED.replace("[1 file(s), 1 command(s)]", "[Everything]")
        handler, lines = _validate(ws, text)
        assert handler.verdict is True
        assert len(lines) == 1

    def test_fails_on_missing_delivery(self, ws):
        text = VALIDATED.replace("- [](a.txt)", "- [](b.txt)")
        handler, lines = _validate(ws, text)
        assert handler.verdict is False
        assert "! Validation failed" in lines
        assert "    - b.txt" in lines
        assert "    - a.txt" in lines
        assert "    + @rm" in lines


# =========================================================================
# @get
# =========================================================================


class TestGetFiles:
    def test_everything_by_default(self, project):
        handler = GetFilesCommand(_entry("@get", ""), ParsedFile(), project)
        assert _run(handler) == [
            "- [](README.md)",
            "- [](src/app.py)",
            "- [](src/app.test.py)",
        ]

    def test_label_negatives(self, project):
        entry = _entry("@get", "src/**\n", label="-**/*.test.py")
        assert _run(GetFilesCommand(entry, ParsedFile(), project)) == ["- [](src/app.py)"]

    def test_inline_negatives(self, project):
        entry = _entry("@get", "src/**;-**/*.test.py\n")
        assert _run(GetFilesCommand(entry, ParsedFile(), project)) == ["- [](src/app.py)"]

    def test_negative_for_direct_children_keeps_subdirectories(self, project):
        project.write_file("src/sub/deep.py", "deep\n")
        entry = _entry("@get", "src/**;-src/*\n")
        assert _run(GetFilesCommand(entry, ParsedFile(), project)) == ["- [](src/sub/deep.py)"]

    def test_directory_and_duplicates(self, project):
        entry = _entry("@get", "src\nsrc/app.py\n")
        assert _run(GetFilesCommand(entry, ParsedFile(), project)) == [
            "- [](src/app.py)",
            "- [](src/app.test.py)",
        ]

    def test_no_match(self, project):
        handler = GetFilesCommand(_entry("@get", "docs/**\n"), ParsedFile(), project)
        assert _run(handler) == ["! No files matched: docs/**"]
        assert handler.failed is False

    def test_absolute_pattern_rejected(self, project):
        handler = GetFilesCommand(_entry("@get", "/etc/passwd\n"), ParsedFile(), project)
        lines = _run(handler)
        assert lines[0].startswith("! Error: pattern '/etc/passwd'")
        assert handler.failed is True

    def test_parent_pattern_rejected(self, project):
        handler = GetFilesCommand(_entry("@get", "../**\n"), ParsedFile(), project)
        _run(handler)
        assert handler.failed is True


# =========================================================================
# @ls
# =========================================================================


class TestListFiles:
    def test_everything_by_default(self, project):
        handler = ListFilesCommand(_entry("@ls", ""), ParsedFile(), project)
        assert _run(handler) == ["README.md", "src/app.py", "src/app.test.py"]

    def test_directory(self, project):
        handler = ListFilesCommand(_entry("@ls", "src\n"), ParsedFile(), project)
        assert _run(handler) == ["src/app.py", "src/app.test.py"]

    def test_glob(self, project):
        handler = ListFilesCommand(_entry("@ls", "**/*.md\n"), ParsedFile(), project)
        assert _run(handler) == ["README.md"]

    def test_ignored_dirs_never_listed(self, project):
        handler = ListFilesCommand(_entry("@ls", ".git\nnode_modules\n"), ParsedFile(), project)
        assert _run(handler) == []
