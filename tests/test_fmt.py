"""Tests for the fmt module (ANSI-formatted output helpers)."""

from io import StringIO

from rich.console import Console

from packrat import fmt


def _capture(func, *args, **kwargs):
    """Call a fmt function with a captured console and return plain-text output."""
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=80)
    try:
        func(*args, **kwargs)
    finally:
        fmt._console = old
    return buf.getvalue()


class TestStepHeader:
    def test_contains_step_info(self):
        out = _capture(fmt.step_header, 2, "abc", 4200)
        assert "Step 2" in out
        assert "chat abc" in out
        assert "4200 tokens" in out


class TestLlmTiming:
    def test_elapsed_and_size(self):
        out = _capture(fmt.llm_timing, 1.4, 12345)
        assert "LLM responded in 1.4s" in out
        assert "12,345 chars" in out


class TestCheck:
    def test_header(self):
        assert _capture(fmt.check_header, "make test") == "  $ make test\n"

    def test_passed(self):
        assert "✓ tests passed in 1.5s" in _capture(fmt.check_result, True, 0, 1.5)

    def test_failed(self):
        out = _capture(fmt.check_result, False, 2, 0.31)
        assert "✗ tests failed (exit 2) after 0.3s" in out


class TestCompletion:
    def test_ok(self):
        out = _capture(fmt.completion, True, "Files: 1 written")
        assert "✓ Files: 1 written" in out

    def test_failed(self):
        out = _capture(fmt.completion, False, "Files: 0 written")
        assert "✗ Files: 0 written" in out


class TestReportLine:
    def test_plain_text_kept(self):
        assert _capture(fmt.report_line, "+ saved a.txt (3 bytes)").strip() == (
            "+ saved a.txt (3 bytes)"
        )

    def test_markup_is_not_interpreted(self):
        assert "[bold]" in _capture(fmt.report_line, "  [bold] not markup")

    def test_diagnostic(self):
        assert "Unknown command" in _capture(fmt.diagnostic, "! Unknown command: @x")


class TestPacked:
    def test_injected_and_errors(self):
        out = _capture(fmt.packed, ["src/a.py"], ["nope.txt"])
        assert "injected 1 file(s)" in out
        assert "src/a.py" in out
        assert "Unable to read: nope.txt" in out

    def test_nothing(self):
        assert _capture(fmt.packed, [], []) == ""


class TestDiagnostics:
    def test_warning(self):
        assert "Warning: careful" in _capture(fmt.warning, "careful")

    def test_error(self):
        assert "Error: bad" in _capture(fmt.error, "bad")

    def test_info(self):
        assert "hello" in _capture(fmt.info, "hello")

    def test_context_stats(self):
        assert "context: ~42 tokens" in _capture(fmt.context_stats, "context", 42)


class TestInit:
    def test_no_color(self):
        old = fmt._console
        try:
            fmt.init(no_color=True)
            assert fmt._console.no_color is True
        finally:
            fmt._console = old

    def test_force_color(self):
        old = fmt._console
        try:
            fmt.init(color=True)
            assert fmt._console.is_terminal is True
        finally:
            fmt._console = old
