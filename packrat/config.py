"""Configuration file loading and merging for packrat.

Reads TOML config from ~/.config/packrat/config.toml (global) and
<base_dir>/packrat.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .report import ConfigError
from .workspace import DEFAULT_IGNORE

_UNSET = object()  # Sentinel for "not set by CLI"

PROVIDERS = ("lmstudio", "openrouter", "huggingface", "generic", "replay")


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "top_p": (int, float),
    "seed": int,
    "rate_limit_retries": int,
    "system_prompt": str,
    "chats_dir": str,
    "replay_dir": str,
    "test_command": str,
    "max_test_rounds": int,
    "test_timeout": int,
    "ignore": list,
    "dry": bool,
    "color": bool,
    "verbose": bool,
}

_LIST_OF_STR_KEYS = {"ignore"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "lmstudio",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 16384,
    "temperature": None,
    "top_p": None,
    "seed": None,
    "rate_limit_retries": 3,
    "system_prompt": None,
    "chats_dir": ".packrat/chats",
    "replay_dir": None,
    "test_command": None,
    "max_test_rounds": 9,
    "test_timeout": 300,
    "ignore": [],
    "dry": False,
    "color": False,
    "no_color": False,
    "verbose": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "packrat"
    return Path.home() / ".config" / "packrat"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # isinstance(True, int) is True; reject bools for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

    if "provider" in config and config["provider"] not in PROVIDERS:
        raise ConfigError(
            f"{source}: 'provider' must be one of {', '.join(PROVIDERS)}, "
            f"got {config['provider']!r}"
        )


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative system_prompt and replay_dir against the config file's directory.

    ``chats_dir`` stays relative: it is always taken from the base directory.
    """
    for key in ("system_prompt", "replay_dir"):
        if key in config:
            p = Path(config[key]).expanduser()
            config[key] = str(p if p.is_absolute() else config_dir / p)


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict holding only keys that were actually set in config
    files; defaults are applied later by ``apply_config_to_args``.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "packrat.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _resolve_paths(project_config, project_path.parent)

    # Project overrides global (shallow)
    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Remaining ``_UNSET`` sentinels are then replaced with the hardcoded
    defaults from ``_ARGPARSE_DEFAULTS``.
    """

    # Append actions cannot start from _UNSET, they use None instead.
    _NONE_SENTINEL_DESTS = {"ignore"}

    def _is_unset(dest: str) -> bool:
        val = getattr(args, dest, _UNSET)
        if dest in _NONE_SENTINEL_DESTS:
            return val is None
        return val is _UNSET

    # A single config key controls the color/no_color pair.
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


@dataclass(frozen=True)
class Settings:
    """Resolved run settings, built once per invocation by ``build_settings``."""

    base_dir: Path
    provider: str = "lmstudio"
    model: str | None = None
    api_key: str | None = None
    base_url: str | None = None
    max_output_tokens: int = 16384
    temperature: float | None = None
    top_p: float | None = None
    seed: int | None = None
    rate_limit_retries: int = 3
    system_prompt: str | None = None
    chats_dir: str = ".packrat/chats"
    replay_dir: str | None = None
    test_command: str | None = None
    max_test_rounds: int = 9
    test_timeout: int = 300
    ignore: tuple[str, ...] = DEFAULT_IGNORE
    dry: bool = False
    verbose: bool = False


def build_settings(args: argparse.Namespace, *, require_model: bool = False) -> Settings:
    """Validate a merged namespace and freeze it into ``Settings``."""
    base_dir = Path(getattr(args, "base_dir", ".")).expanduser().resolve()
    if not base_dir.is_dir():
        raise ConfigError(f"base directory does not exist: {base_dir}")

    provider = args.provider
    if provider not in PROVIDERS:
        raise ConfigError(
            f"provider must be one of {', '.join(PROVIDERS)}, got {provider!r}"
        )
    if provider == "replay":
        if require_model and not args.replay_dir:
            raise ConfigError("--replay-dir is required for the replay provider")
    elif require_model and not args.model:
        raise ConfigError(f"--model is required for provider {provider!r}")
    if provider == "generic" and require_model and not args.base_url:
        raise ConfigError("--base-url is required for the generic provider")
    if args.max_output_tokens <= 0:
        raise ConfigError("max_output_tokens must be positive")
    if args.temperature is not None and not 0 <= args.temperature <= 2:
        raise ConfigError("temperature must be between 0 and 2")
    if args.top_p is not None and not 0 < args.top_p <= 1:
        raise ConfigError("top_p must be in (0, 1]")
    if args.rate_limit_retries < 0:
        raise ConfigError("rate_limit_retries must not be negative")
    if args.max_test_rounds <= 0:
        raise ConfigError("max_test_rounds must be positive")
    if args.test_timeout <= 0:
        raise ConfigError("test_timeout must be positive")

    api_key = args.api_key
    if api_key is None and provider == "openrouter":
        api_key = os.environ.get("OPENROUTER_API_KEY")
    elif api_key is None and provider == "huggingface":
        api_key = os.environ.get("HF_TOKEN")

    return Settings(
        base_dir=base_dir,
        provider=provider,
        model=args.model,
        api_key=api_key,
        base_url=args.base_url,
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
        top_p=args.top_p,
        seed=args.seed,
        rate_limit_retries=args.rate_limit_retries,
        system_prompt=args.system_prompt,
        chats_dir=args.chats_dir,
        replay_dir=args.replay_dir,
        test_command=args.test_command or None,
        max_test_rounds=args.max_test_rounds,
        test_timeout=args.test_timeout,
        ignore=tuple(dict.fromkeys((*DEFAULT_IGNORE, *args.ignore))),
        dry=args.dry,
        verbose=args.verbose,
    )


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# packrat configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/packrat.toml' if project else '~/.config/packrat/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "lmstudio"   # lmstudio, openrouter, huggingface, generic or replay',
        '# model = "qwen/qwen3-coder-30b"',
        '# api_key = "sk-or-..."            # prefer env vars; this is a fallback',
        '# base_url = "http://127.0.0.1:1234"',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 16384",
        "# temperature = 0.2",
        "# top_p = 1.0",
        "# seed = 42",
        "# rate_limit_retries = 3",
        "",
        "# --- Chat ---",
        '# system_prompt = "prompts/system.md"',
        '# chats_dir = ".packrat/chats"',
        '# replay_dir = ".packrat/chats/<id>"   # provider = "replay" reads stepN-answer.md here',
        "",
        "# --- Tests ---",
        '# test_command = "pytest -q"   # run after each answer; failures are sent back',
        "# max_test_rounds = 9",
        "# test_timeout = 300",
        "",
        "# --- Unpack ---",
        '# ignore = ["dist/**", "**/*.min.js"]   # added to **/.git/** and **/node_modules/**',
        "# dry = false",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# verbose = false",
        "",
    ]
    return "\n".join(lines)
