import argparse
import logging
import sys
from importlib import metadata
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from . import fmt
from .chat import Chat, load_system_prompt, repl_loop, run_task
from .config import (
    PROVIDERS,
    _UNSET,
    apply_config_to_args,
    build_settings,
    generate_config,
    load_config,
)
from .markdown import MarkdownProtocol
from .pack import pack_markdown
from .release import ReleaseProtocol
from .report import ConfigError, PackratError, ReportCollector
from .unpack import run_unpack
from .workspace import Workspace


def _common_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--base-dir",
        default=".",
        help="Project root; every path is resolved inside it (default: current directory).",
    )
    common.add_argument(
        "--ignore",
        action="append",
        default=None,
        metavar="GLOB",
        help=(
            "Exclude root-relative paths matching GLOB when expanding globs "
            "(repeatable). dist/** skips the top-level dist only; use "
            "**/dist/** for every depth."
        ),
    )
    common.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=_UNSET,
        help="Print debug logging to stderr.",
    )
    color_group = common.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    return common


def _add_llm_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--provider",
        choices=PROVIDERS,
        default=_UNSET,
        help=(
            "LLM provider: lmstudio (local), openrouter, huggingface, "
            "generic (OpenAI-compatible) or replay (recorded answers)."
        ),
    )
    parser.add_argument("--model", default=_UNSET, help="Model identifier.")
    parser.add_argument(
        "--api-key", default=_UNSET, help="API key for the provider (overrides env var)."
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--max-output-tokens", type=int, default=_UNSET, help="Maximum answer length."
    )
    parser.add_argument("--temperature", type=float, default=_UNSET)
    parser.add_argument("--top-p", type=float, default=_UNSET)
    parser.add_argument("--seed", type=int, default=_UNSET)
    parser.add_argument(
        "--rate-limit-retries",
        type=int,
        default=_UNSET,
        help="Retries after a provider rate limit, waiting 6s more each time (default: 3).",
    )
    parser.add_argument(
        "--system-prompt",
        default=_UNSET,
        metavar="FILE",
        help="Template used instead of the bundled system prompt.",
    )


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="packrat",
        description="Exchange project files with a language model through markdown blocks.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    common = _common_parser()
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser(
        "pack", parents=[common], help="Embed the files a markdown checklist references."
    )
    p.add_argument("input", nargs="?", default="-", help="Markdown input (default: stdin).")
    p.add_argument("-o", "--output", default=None, help="Write the packed text to a file.")

    p = sub.add_parser(
        "unpack", parents=[common], help="Apply a markdown answer to the project."
    )
    p.add_argument("input", nargs="?", default="-", help="Markdown answer (default: stdin).")
    p.add_argument(
        "--dry",
        action="store_true",
        default=_UNSET,
        help="Report what would change without touching the filesystem.",
    )
    p.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON report of the run to FILE.",
    )

    p = sub.add_parser(
        "chat", parents=[common], help="Send a prompt to the model and unpack its answer."
    )
    p.add_argument("prompt", nargs="?", default=None, help="Prompt text or markdown file.")
    p.add_argument("--repl", action="store_true", help="Start an interactive session.")
    p.add_argument("--chat-id", default=None, help="Continue an existing chat.")
    p.add_argument("--chats-dir", default=_UNSET, help="Where chats are stored.")
    p.add_argument(
        "--dry",
        action="store_true",
        default=_UNSET,
        help="Report the answer's changes without applying them.",
    )
    p.add_argument(
        "--test-command",
        default=_UNSET,
        metavar="CMD",
        help="Shell command run after each answer; failures are sent back to the model.",
    )
    p.add_argument(
        "--max-test-rounds",
        type=int,
        default=_UNSET,
        help="Give up after this many failed test runs in a row (default: 9).",
    )
    p.add_argument(
        "--test-timeout", type=int, default=_UNSET, help="Seconds per test run (default: 300)."
    )
    p.add_argument(
        "--replay-dir",
        default=_UNSET,
        metavar="DIR",
        help="With --provider replay, read stepN-answer.md files from DIR instead of a model.",
    )
    _add_llm_options(p)

    p = sub.add_parser(
        "release", parents=[common], help="List the tasks of a release notes file."
    )
    p.add_argument("input", help="Release notes markdown file.")

    p = sub.add_parser("system", parents=[common], help="Print the system prompt.")
    p.add_argument("--system-prompt", default=_UNSET, metavar="FILE")
    p.add_argument("-o", "--output", default=None, help="Write it to a file.")

    p = sub.add_parser("config", help="Print a commented config file template.")
    p.add_argument(
        "--project", action="store_true", help="Template for <project>/packrat.toml."
    )

    return parser


def setup_logging(verbose: bool) -> None:
    """Route library debug logging through Rich when --verbose is set."""
    handler = RichHandler(console=Console(stderr=True), show_path=False)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[handler],
        force=True,
    )


def _read_input(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    try:
        return Path(source).read_text(encoding="utf-8")
    except OSError as e:
        raise PackratError(f"cannot read {source}: {e}")


def _write_output(path: str, text: str) -> None:
    try:
        Path(path).write_text(text, encoding="utf-8")
    except OSError as e:
        raise PackratError(f"cannot write {path}: {e}")
    fmt.info(f"+ {path}")


def _cmd_pack(args, settings) -> int:
    workspace = Workspace(settings.base_dir)
    result = pack_markdown(_read_input(args.input), workspace, settings.ignore)
    if args.output:
        _write_output(args.output, result.text)
    else:
        sys.stdout.write(result.text)
    fmt.packed(result.injected, result.errors)
    return 0


def _cmd_unpack(args, settings) -> int:
    workspace = Workspace(settings.base_dir)
    source = args.input
    parsed = MarkdownProtocol.parse(_read_input(source))
    collector = run_unpack(
        parsed,
        workspace,
        dry=settings.dry,
        collector=ReportCollector(),
        on_diagnostic=fmt.diagnostic,
    )
    if args.report:
        try:
            collector.write(
                args.report,
                source=source,
                base_dir=str(settings.base_dir),
                dry=settings.dry,
            )
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
        else:
            fmt.info(f"Report written to {args.report}")
    return 0 if collector.ok else 1


def _cmd_chat(args, settings) -> int:
    try:
        chat = Chat(args.chat_id, settings.chats_dir, settings.base_dir)
    except ValueError as e:
        raise ConfigError(f"chat directory escapes the base directory: {e}")
    if chat.load():
        fmt.info(f"continuing chat {chat.id} ({len(chat.messages)} messages)")
    workspace = Workspace(settings.base_dir)

    if args.repl:
        repl_loop(chat, settings, workspace=workspace)
        return 0

    prompt = args.prompt
    if prompt is None or prompt == "-":
        prompt = sys.stdin.read()
    elif Path(prompt).is_file():
        prompt = Path(prompt).read_text(encoding="utf-8")
    collector, passed = run_task(chat, prompt, settings, workspace=workspace)
    fmt.completion(collector.ok, collector.tally())
    return 0 if collector.ok and passed is not False else 1


def _cmd_release(args, settings) -> int:
    release = ReleaseProtocol.parse(_read_input(args.input))
    print(f"# {release.title}" if release.title else "# (untitled release)")
    for n, task in enumerate(release.tasks, 1):
        print(f"{n}. [{task.label}]({task.link})")
        for line in task.text.splitlines():
            print(f"   {line}")
    return 0


def _cmd_system(args, settings) -> int:
    text = load_system_prompt(settings)
    if args.output:
        _write_output(args.output, text)
    else:
        sys.stdout.write(text)
    return 0


_HANDLERS = {
    "pack": _cmd_pack,
    "unpack": _cmd_unpack,
    "chat": _cmd_chat,
    "release": _cmd_release,
    "system": _cmd_system,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("packrat")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.command is None:
        parser.error("a command is required")
    if args.command == "config":
        print(generate_config(project=args.project))
        sys.exit(0)
    if args.command == "chat" and args.prompt is not None and args.repl:
        parser.error("--repl takes no prompt")

    try:
        apply_config_to_args(args, load_config(Path(args.base_dir)))
        fmt.init(color=args.color, no_color=args.no_color)
        setup_logging(args.verbose)
        settings = build_settings(args, require_model=args.command == "chat")
        code = _HANDLERS[args.command](args, settings)
    except PackratError as e:
        fmt.error(str(e))
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
