"""Chat transcripts on disk and the prompt -> answer -> unpack step."""

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from pathlib import Path

from . import fmt
from .checks import feedback_prompt, run_check
from .llm import estimate_tokens, iter_lines, replay_answer, stream_completion
from .markdown import MarkdownProtocol
from .pack import pack_markdown
from .report import ConfigError, PackratError, ReportCollector
from .system import generate_system_prompt
from .unpack import run_unpack
from .workspace import Workspace, safe_resolve

logger = logging.getLogger(__name__)

MESSAGES_FILE = "messages.jsonl"


class Chat:
    """Message history for one conversation, stored under ``root/<chat_id>``.

    ``messages.jsonl`` holds one JSON message per line. Each step also keeps
    the packed prompt and the raw answer as ``stepN-prompt.md`` and
    ``stepN-answer.md``, plus ``stepN-tests.txt`` when a test command ran.
    """

    def __init__(
        self,
        chat_id: str | None = None,
        root: str | Path = ".packrat/chats",
        base_dir: str | Path = ".",
    ):
        self.id = chat_id or uuid.uuid4().hex
        self.base_dir = Path(base_dir).resolve()
        self.dir = safe_resolve(str(Path(root) / self.id), self.base_dir)
        self.messages: list[dict] = []

    def init(self) -> None:
        self.dir.mkdir(parents=True, exist_ok=True)

    def add(self, role: str, content: str) -> None:
        self.messages.append({"role": role, "content": content})

    @property
    def step(self) -> int:
        return max(1, sum(1 for m in self.messages if m["role"] == "user"))

    def token_count(self) -> int:
        return estimate_tokens(self.messages)

    def load(self) -> bool:
        """Load saved messages. Returns False when the chat has no history yet."""
        path = self.dir / MESSAGES_FILE
        if not path.is_file():
            return False
        messages = []
        with path.open(encoding="utf-8") as f:
            for n, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    messages.append(json.loads(line))
                except json.JSONDecodeError as e:
                    raise PackratError(f"{path}:{n}: invalid JSON: {e}") from e
        self.messages = messages
        return True

    def save(self) -> None:
        self.init()
        path = self.dir / MESSAGES_FILE
        with path.open("w", encoding="utf-8") as f:
            for message in self.messages:
                f.write(json.dumps(message, ensure_ascii=False) + "\n")

    def clear(self) -> None:
        self.messages = []
        self.save()

    def save_prompt(self, prompt: str) -> Path:
        self.init()
        path = self.dir / f"step{self.step}-prompt.md"
        path.write_text(prompt, encoding="utf-8")
        return path

    def save_answer(self, answer: str) -> Path:
        self.init()
        path = self.dir / f"step{self.step}-answer.md"
        path.write_text(answer, encoding="utf-8")
        return path

    def save_check(self, output: str) -> Path:
        self.init()
        path = self.dir / f"step{self.step}-tests.txt"
        path.write_text(output, encoding="utf-8")
        return path


def load_system_prompt(settings) -> str:
    try:
        return generate_system_prompt(settings.system_prompt)
    except OSError as e:
        raise ConfigError(f"cannot read system prompt {settings.system_prompt}: {e}")


def _llm_kwargs(settings) -> dict:
    return dict(
        model=settings.model,
        provider=settings.provider,
        base_url=settings.base_url,
        api_key=settings.api_key,
        max_output_tokens=settings.max_output_tokens,
        temperature=settings.temperature,
        top_p=settings.top_p,
        seed=settings.seed,
        rate_limit_retries=settings.rate_limit_retries,
        verbose=settings.verbose,
    )


def _answer_source(chat: Chat, settings):
    if settings.provider == "replay":
        return replay_answer(settings.replay_dir, chat.step)
    return stream_completion(chat.messages, **_llm_kwargs(settings))


def _echo(line: str) -> None:
    sys.stdout.write(line)
    sys.stdout.flush()


def run_step(
    chat: Chat,
    prompt: str,
    settings,
    *,
    workspace: Workspace | None = None,
    collector: ReportCollector | None = None,
    pack: bool = True,
) -> ReportCollector:
    """Pack the prompt, stream the answer, persist both and unpack the answer.

    The answer is parsed while it streams in; the full text is saved only
    after the stream ends. LLMError propagates with the prompt already saved.
    With ``pack=False`` the prompt is sent as is.
    """
    workspace = workspace or Workspace(settings.base_dir)
    if pack:
        packed = pack_markdown(prompt, workspace, settings.ignore)
        fmt.packed(packed.injected, packed.errors)
        prompt = packed.text

    if not chat.messages:
        chat.add("system", load_system_prompt(settings))
    chat.add("user", prompt)
    chat.save_prompt(prompt)
    chat.save()
    fmt.step_header(chat.step, chat.id, chat.token_count())

    answer_lines: list[str] = []

    def tee():
        for line in iter_lines(_answer_source(chat, settings)):
            answer_lines.append(line)
            _echo(line)
            yield line

    started = time.monotonic()
    parsed = asyncio.run(MarkdownProtocol.parse_stream(tee()))
    answer = "".join(answer_lines)
    if answer and not answer.endswith("\n"):
        _echo("\n")
    fmt.llm_timing(time.monotonic() - started, len(answer))

    chat.add("assistant", answer)
    chat.save_answer(answer)
    chat.save()
    logger.debug(
        "step %d: %d block(s), %d scan error(s)",
        chat.step,
        len(parsed.correct),
        len(parsed.failed),
    )

    return run_unpack(
        parsed,
        workspace,
        dry=settings.dry,
        collector=collector,
        on_line=fmt.report_line,
        on_diagnostic=fmt.diagnostic,
    )


def run_task(
    chat: Chat,
    prompt: str,
    settings,
    *,
    workspace: Workspace | None = None,
) -> tuple[ReportCollector, bool | None]:
    """Run a step, then the test command, feeding failures back until it passes.

    Each failing run becomes the next prompt, up to ``max_test_rounds``
    failed runs in a row. Returns the collector of the last step and whether
    the tests passed (None when no test command is set or the run is dry).
    """
    workspace = workspace or Workspace(settings.base_dir)
    collector = run_step(chat, prompt, settings, workspace=workspace)
    if not settings.test_command or settings.dry:
        return collector, None

    failures = 0
    while True:
        fmt.check_header(settings.test_command)
        started = time.monotonic()
        result = run_check(settings.test_command, workspace.root, settings.test_timeout)
        chat.save_check(result.output)
        fmt.check_result(result.passed, result.exit_code, time.monotonic() - started)
        if result.passed:
            return collector, True
        failures += 1
        if failures >= settings.max_test_rounds:
            fmt.warning(f"tests still failing after {failures} round(s), giving up")
            return collector, False
        collector = run_step(
            chat,
            feedback_prompt(settings.test_command, result),
            settings,
            workspace=workspace,
            pack=False,
        )


def _repl_help() -> None:
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Forget the conversation (keeps the chat id)\n"
        "  /tokens            Show the estimated context size\n"
        "  /exit, /quit       Exit the REPL"
    )


def repl_loop(chat: Chat, settings, *, workspace: Workspace | None = None) -> None:
    """Interactive read-eval-print loop: each line is one chat step."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    chat.init()
    session = PromptSession(
        history=FileHistory(os.path.join(chat.dir, "repl_history")),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "packrat> ")])

    if settings.verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break
        if line == "/help":
            _repl_help()
            continue
        if line == "/clear":
            dropped = len(chat.messages)
            chat.clear()
            fmt.info(f"context cleared ({dropped} messages removed)")
            continue
        if line == "/tokens":
            fmt.context_stats("context", chat.token_count())
            continue

        try:
            collector, _ = run_task(chat, line, settings, workspace=workspace)
        except KeyboardInterrupt:
            fmt.warning("interrupted, question aborted.")
            continue
        except PackratError as e:
            fmt.error(str(e))
            continue
        fmt.completion(collector.ok, collector.tally())
