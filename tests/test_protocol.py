"""Tests for the block scanner: states, nested fences, error recovery, streaming."""

import asyncio

import pytest

from packrat.markdown import MarkdownProtocol
from packrat.protocol import (
    FileEntry,
    FileProtocol,
    ParsedFile,
    parse_fence,
    split_lines,
    strip_eol,
)


HELLO = """\
#### [hello.txt](hello.txt)
```txt
Hello world!
```
"""

TWO_FILES = """\
Some intro prose that the scanner ignores.

#### [Main](src/main.py)
```py
print("main")
```

#### [](README.md)
~~~markdown
# Title
~~~
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestParseFence:
    def test_backticks_with_tag(self):
        assert parse_fence("```py") == ("```", "py")

    def test_tildes(self):
        assert parse_fence("~~~~") == ("~~~~", "")

    def test_indent_up_to_three_spaces(self):
        assert parse_fence("   ```") == ("```", "")
        assert parse_fence("    ```") is None

    def test_two_backticks_is_not_a_fence(self):
        assert parse_fence("``") is None

    def test_backtick_info_cannot_hold_backticks(self):
        assert parse_fence("``` a`b") is None


class TestLineHelpers:
    def test_strip_eol(self):
        assert strip_eol("abc\r\n") == "abc"
        assert strip_eol("abc\n") == "abc"
        assert strip_eol("abc") == "abc"

    def test_split_lines_drops_trailing_empty(self):
        assert split_lines("a\nb\n") == ["a", "b"]
        assert split_lines("a\n\n") == ["a", ""]
        assert split_lines("") == []


# ---------------------------------------------------------------------------
# Well-formed input
# ---------------------------------------------------------------------------


class TestParse:
    def test_hello(self):
        parsed = MarkdownProtocol.parse(HELLO)
        assert parsed.correct == (
            FileEntry(
                label="hello.txt", filename="hello.txt", type="txt", content="Hello world!\n"
            ),
        )
        assert parsed.failed == ()
        assert parsed.is_valid is True
        assert parsed.validate is None

    def test_document_order_and_prose(self):
        parsed = MarkdownProtocol.parse(TWO_FILES)
        assert [e.filename for e in parsed.correct] == ["src/main.py", "README.md"]
        assert parsed.correct[0].label == "Main"
        assert parsed.correct[1].type == "markdown"
        assert parsed.correct[1].content == "# Title\n"
        assert parsed.failed == ()

    def test_empty_content(self):
        parsed = MarkdownProtocol.parse("#### [](empty.txt)\n```\n```\n")
        assert parsed.correct[0].content == ""

    def test_content_is_verbatim(self):
        text = "#### [](a.txt)\n```\n  indented\n\n#### not a header here\n```\n"
        parsed = MarkdownProtocol.parse(text)
        assert parsed.correct[0].content == "  indented\n\n#### not a header here\n"

    def test_crlf_input(self):
        parsed = MarkdownProtocol.parse("#### [](a.txt)\r\n```\r\nA\r\n```\r\n")
        assert parsed.correct[0].content == "A\n"

    def test_heading_levels(self):
        for hashes in ("##", "###", "######"):
            parsed = MarkdownProtocol.parse(f"{hashes} [](a.txt)\n```\nA\n```\n")
            assert parsed.correct[0].filename == "a.txt"

    def test_commands_are_entries(self):
        parsed = MarkdownProtocol.parse("#### [Cleanup](@rm)\n```\nold.txt\n```\n")
        entry = parsed.correct[0]
        assert entry.is_command
        assert entry.filename == "@rm"
        assert entry.content == "old.txt\n"

    def test_idempotent(self):
        first = MarkdownProtocol.parse(TWO_FILES)
        second = MarkdownProtocol.parse(TWO_FILES)
        assert first == second
        assert isinstance(first, ParsedFile)


class TestNestedFences:
    def test_tagged_inner_fence_nests(self):
        text = (
            "#### [Readme](README.md)\n"
            "```markdown\n"
            "# Title\n"
            "```py\n"
            "print(1)\n"
            "```\n"
            "done\n"
            "```\n"
        )
        parsed = MarkdownProtocol.parse(text)
        assert parsed.failed == ()
        assert parsed.correct[0].type == "markdown"
        assert parsed.correct[0].content == "# Title\n```py\nprint(1)\n```\ndone\n"

    def test_shorter_inner_fence_is_content(self):
        text = "#### [](doc.md)\n````\n```\nraw\n```\n````\n"
        parsed = MarkdownProtocol.parse(text)
        assert parsed.correct[0].content == "```\nraw\n```\n"

    def test_other_marker_is_content(self):
        text = "#### [](doc.md)\n```\n~~~\ninside\n~~~\n```\n"
        parsed = MarkdownProtocol.parse(text)
        assert parsed.correct[0].content == "~~~\ninside\n~~~\n"

    def test_orphan_fence_is_skipped_whole(self):
        text = (
            "```\n"
            "# not a reference\n"
            "```\n"
            "#### [](real.txt)\n"
            "```\n"
            "R\n"
            "```\n"
        )
        parsed = MarkdownProtocol.parse(text)
        assert [e.filename for e in parsed.correct] == ["real.txt"]
        assert parsed.failed == ()


# ---------------------------------------------------------------------------
# Error recovery
# ---------------------------------------------------------------------------


class TestResilience:
    def test_malformed_header_keeps_good_blocks(self):
        text = (
            "#### [](one.txt)\n"
            "```\n1\n```\n"
            "#### [bad](a](b)\n"
            "#### [](two.txt)\n"
            "```\n2\n```\n"
        )
        parsed = MarkdownProtocol.parse(text)
        assert [e.filename for e in parsed.correct] == ["one.txt", "two.txt"]
        assert len(parsed.failed) == 1
        assert parsed.failed[0].error == "Incorrect file header"
        assert parsed.failed[0].line == 5
        assert parsed.failed[0].content == "#### [bad](a](b)"
        assert parsed.is_valid is False

    def test_missing_filename(self):
        parsed = MarkdownProtocol.parse("#### [label]()\n```\nx\n```\n")
        assert parsed.correct == ()
        assert parsed.failed[0].error == "Missing filename"
        assert parsed.failed[0].line == 1

    def test_missing_fence(self):
        text = "#### [](a.txt)\nplain text\n#### [](b.txt)\n```\nB\n```\n"
        parsed = MarkdownProtocol.parse(text)
        assert [e.filename for e in parsed.correct] == ["b.txt"]
        assert parsed.failed[0].error == "Missing code fence after file reference"
        assert parsed.failed[0].line == 2

    def test_missing_fence_before_next_header(self):
        text = "#### [](a.txt)\n#### [](b.txt)\n```\nB\n```\n"
        parsed = MarkdownProtocol.parse(text)
        assert [e.filename for e in parsed.correct] == ["b.txt"]
        assert parsed.failed[0].line == 2

    def test_unterminated_block(self):
        parsed = MarkdownProtocol.parse("#### [](a.txt)\n```\nA\n")
        assert parsed.correct == ()
        assert len(parsed.failed) == 1
        err = parsed.failed[0]
        assert err.error == "Unterminated block"
        assert err.line == 1
        assert err.content == "#### [](a.txt)"

    def test_unterminated_after_header(self):
        parsed = MarkdownProtocol.parse("#### [](a.txt)")
        assert parsed.failed[0].error == "Unterminated block"

    def test_stray_fence_before_block(self):
        text = "Here is the fix:\n```\n#### [a.txt](a.txt)\n```txt\nA\n```\n"
        parsed = MarkdownProtocol.parse(text)
        assert [e.filename for e in parsed.correct] == ["a.txt"]
        assert parsed.correct[0].content == "A\n"
        assert len(parsed.failed) == 1
        err = parsed.failed[0]
        assert err.error == "Unterminated block"
        assert err.line == 2
        assert err.content == "```"
        assert parsed.is_valid is False

    def test_stray_fence_keeps_every_later_block(self):
        text = (
            "```\n"
            "#### [](one.txt)\n```\n1\n```\n"
            "#### [](two.txt)\n```\n2\n```\n"
        )
        parsed = MarkdownProtocol.parse(text)
        assert [e.filename for e in parsed.correct] == ["one.txt", "two.txt"]
        assert [e.line for e in parsed.failed] == [1]

    def test_unclosed_orphan_fence_at_end(self):
        parsed = MarkdownProtocol.parse("#### [](a.txt)\n```\nA\n```\nprose\n```py\ncode\n")
        assert [e.filename for e in parsed.correct] == ["a.txt"]
        assert parsed.failed[0].error == "Unterminated block"
        assert parsed.failed[0].line == 6

    def test_errors_sorted_by_line(self):
        text = "#### [x]()\n#### [](a.txt)\n```\nA\n```\n#### [y](a](b)\n"
        parsed = MarkdownProtocol.parse(text)
        assert [e.line for e in parsed.failed] == [1, 6]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


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


class TestValidate:
    def test_matching_checklist(self):
        parsed = MarkdownProtocol.parse(VALIDATED)
        assert parsed.validate is not None
        assert parsed.files == {"a.txt": "", "@rm": "Cleanup"}
        assert parsed.requested == {"a.txt": "", "@rm": "Cleanup"}
        assert parsed.is_valid is True

    def test_mismatching_checklist(self):
        parsed = MarkdownProtocol.parse(VALIDATED.replace("- [](a.txt)", "- [](b.txt)"))
        assert parsed.is_valid is False
        assert "b.txt" in parsed.requested

    def test_validate_result_without_entry(self):
        result = MarkdownProtocol.validate(MarkdownProtocol.parse(HELLO).correct)
        assert result.is_valid is True
        assert result.validate is None
        assert result.files == {"hello.txt": "hello.txt"}

    def test_base_protocol_reads_bare_lines(self):
        text = "#### [](a.txt)\n```\nA\n```\n#### [](@validate)\n```\na.txt\n```\n"
        parsed = FileProtocol.parse(text)
        assert parsed.requested == {"a.txt": ""}
        assert parsed.is_valid is True


# ---------------------------------------------------------------------------
# Streaming and input types
# ---------------------------------------------------------------------------


class TestParseStream:
    def test_async_iterable(self):
        async def lines():
            for line in TWO_FILES.splitlines(keepends=True):
                yield line

        parsed = asyncio.run(MarkdownProtocol.parse_stream(lines()))
        assert parsed == MarkdownProtocol.parse(TWO_FILES)

    def test_plain_iterable(self):
        lines = HELLO.splitlines(keepends=True)
        parsed = asyncio.run(MarkdownProtocol.parse_stream(lines))
        assert parsed == MarkdownProtocol.parse(HELLO)

    def test_parse_lines(self):
        parsed = MarkdownProtocol.parse_lines(iter(HELLO.splitlines()))
        assert parsed.correct[0].content == "Hello world!\n"

    def test_rejects_non_iterable(self):
        with pytest.raises(TypeError):
            asyncio.run(MarkdownProtocol.parse_stream(42))

    def test_rejects_plain_string(self):
        with pytest.raises(TypeError):
            asyncio.run(MarkdownProtocol.parse_stream(HELLO))

    def test_parse_rejects_bytes(self):
        with pytest.raises(TypeError):
            MarkdownProtocol.parse(HELLO.encode())
