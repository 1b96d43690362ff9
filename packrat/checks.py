"""Run the project's own test command after an answer has been applied."""

import logging
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from .markdown import fence_for
from .report import PackratError

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 20_000


@dataclass(frozen=True)
class CheckResult:
    passed: bool
    exit_code: int
    output: str


def _shell(command: str) -> list[str]:
    if sys.platform == "win32":
        return ["cmd.exe", "/c", command]
    return ["/bin/sh", "-c", command]


def _tail(output: str) -> str:
    if len(output) <= MAX_OUTPUT_CHARS:
        return output
    dropped = len(output) - MAX_OUTPUT_CHARS
    return f"[... {dropped} chars truncated ...]\n{output[-MAX_OUTPUT_CHARS:]}"


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


def run_check(command: str, base_dir: str | Path, timeout: int = 300) -> CheckResult:
    """Run ``command`` through the shell inside ``base_dir``.

    stdout and stderr are merged. A timeout counts as a failed run; a shell
    that cannot be started raises PackratError.
    """
    try:
        proc = subprocess.run(
            _shell(command),
            cwd=base_dir,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        output = _decode(e.stdout) + f"\n(timed out after {timeout}s)\n"
        return CheckResult(passed=False, exit_code=-1, output=_tail(output))
    except OSError as e:
        raise PackratError(f"cannot run test command {command!r}: {e}")
    logger.debug("%r exited with %d", command, proc.returncode)
    return CheckResult(
        passed=proc.returncode == 0,
        exit_code=proc.returncode,
        output=_tail(_decode(proc.stdout)),
    )


def feedback_prompt(command: str, result: CheckResult) -> str:
    """The follow-up prompt that hands a failing run back to the model."""
    output = result.output if result.output.endswith("\n") else result.output + "\n"
    fence = fence_for(output)
    return (
        f"The tests failed (exit code {result.exit_code}). "
        "Fix the project so they pass and answer with the changed files.\n\n"
        f"#### $ {command}\n"
        f"{fence}\n{output}{fence}\n"
    )
