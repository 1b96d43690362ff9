"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Chat steps --------------------------------------------------------------


def step_header(step: int, chat_id: str, token_est: int) -> None:
    title = f"Step {step} · chat {chat_id} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, chars: int) -> None:
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style="green")
    text.append(f"  {chars:,} chars", style="green")
    _console.print(text)


def check_header(command: str) -> None:
    _console.print(Text(f"  $ {command}", style="bold"))


def check_result(passed: bool, exit_code: int, elapsed: float) -> None:
    if passed:
        _console.print(Text(f"  ✓ tests passed in {elapsed:.1f}s", style="green"))
    else:
        _console.print(
            Text(f"  ✗ tests failed (exit {exit_code}) after {elapsed:.1f}s", style="red")
        )


def completion(ok: bool, summary: str) -> None:
    if ok:
        _console.print(Text(f"  ✓ {summary}", style="bold green"))
    else:
        _console.print(Text(f"  ✗ {summary}", style="bold red"))


# -- Unpack report -----------------------------------------------------------

_REPORT_STYLES = {
    "+": "green",
    "•": "cyan",
    "-": "dim",
    "!": "red",
    "ℹ": "blue",
    "▶": "bold magenta",
    "✓": "bold green",
    "✗": "bold red",
}


def report_line(line: str) -> None:
    """Print one unpack report line, styled by its leading marker."""
    marker = line.lstrip()[:1]
    _console.print(Text(line, style=_REPORT_STYLES.get(marker, "")))


def diagnostic(line: str) -> None:
    _console.print(Text(line, style="yellow"))


# -- Pack --------------------------------------------------------------------


def packed(injected: list[str], errors: list[str]) -> None:
    if injected:
        _console.print(Text(f"  • injected {len(injected)} file(s):", style="cyan"))
        for path in injected:
            _console.print(Text(f"    {path}", style="dim"))
    if errors:
        line = Text()
        line.append("  ⚠ Unable to read: ", style="yellow")
        line.append(", ".join(errors), style="yellow")
        _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(Text("Interactive mode. Type /exit or Ctrl-D to quit.", style="dim"))
