"""Provider calls through LiteLLM and token estimates through tiktoken."""

import logging
import re
import time
from collections.abc import Iterable, Iterator
from pathlib import Path

import tiktoken

from . import fmt
from .report import LLMError

logger = logging.getLogger(__name__)

_encoder = tiktoken.get_encoding("cl100k_base")

RATE_LIMIT_WAIT = 6.0  # seconds, multiplied by the attempt number

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)


class ContextOverflowError(LLMError):
    """Raised when the LLM call fails due to context window overflow."""


def estimate_tokens(messages: list) -> int:
    """Count tokens across all messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.get("content", "") or ""
        total += len(_encoder.encode(content))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def count_tokens(text: str) -> int:
    return len(_encoder.encode(text))


def _model_kwargs(provider, model_id, base_url, api_key) -> tuple[str, dict]:
    if provider == "lmstudio":
        base = base_url or "http://127.0.0.1:1234"
        return f"openai/{model_id}", {"api_base": f"{base}/v1", "api_key": "lm-studio"}
    if provider == "huggingface":
        bare_id = model_id.removeprefix("huggingface/")
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
        return f"huggingface/{bare_id}", kwargs
    if provider == "openrouter":
        # Strip only a doubled LiteLLM prefix, not an org named "openrouter".
        bare_id = (
            model_id[len("openrouter/") :]
            if model_id.startswith("openrouter/openrouter/")
            else model_id
        )
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
        return f"openrouter/{bare_id}", kwargs
    if provider == "generic":
        return f"openai/{model_id}", {"api_base": base_url, "api_key": api_key or "none"}
    raise LLMError(f"unknown provider {provider!r}")


def stream_completion(
    messages: list,
    *,
    model: str,
    provider: str = "lmstudio",
    base_url: str | None = None,
    api_key: str | None = None,
    max_output_tokens: int = 16384,
    temperature: float | None = None,
    top_p: float | None = None,
    seed: int | None = None,
    rate_limit_retries: int = 3,
    verbose: bool = False,
) -> Iterator[str]:
    """Stream the assistant reply as text deltas.

    Provider failures raise LLMError; a context window overflow raises
    ContextOverflowError so callers can tell the two apart. A rate limit hit
    before the first delta is retried up to ``rate_limit_retries`` times.
    """
    import litellm

    litellm.suppress_debug_info = True

    model_str, kwargs = _model_kwargs(provider, model, base_url, api_key)
    if verbose:
        fmt.model_info(f"Calling model {model_str} with max_tokens={max_output_tokens}")

    completion_kwargs = dict(
        model=model_str,
        messages=messages,
        max_tokens=max_output_tokens,
        stream=True,
        **kwargs,
    )
    for key, val in [("temperature", temperature), ("top_p", top_p), ("seed", seed)]:
        if val is not None:
            completion_kwargs[key] = val

    attempt = 0
    while True:
        started = False
        try:
            for chunk in litellm.completion(**completion_kwargs):
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    started = True
                    yield delta
        except litellm.RateLimitError as e:
            # Deltas already yielded cannot be taken back.
            if started or attempt >= rate_limit_retries:
                raise LLMError(f"rate limit reached: {e}")
            attempt += 1
            wait = RATE_LIMIT_WAIT * attempt
            fmt.warning(
                f"rate limit reached, retry {attempt}/{rate_limit_retries} in {wait:.0f}s"
            )
            time.sleep(wait)
            continue
        except litellm.ContextWindowExceededError:
            raise ContextOverflowError("context window exceeded (typed)")
        except litellm.BadRequestError as e:
            if _CONTEXT_OVERFLOW_RE.search(str(e)):
                raise ContextOverflowError(f"context window exceeded (inferred): {e}")
            raise LLMError(f"LLM call failed: {e}")
        except Exception as e:
            raise LLMError(f"LLM call failed: {e}")
        break
    logger.debug("stream from %s finished", model_str)


def replay_answer(source_dir: str | Path, step: int) -> Iterator[str]:
    """Yield a recorded ``stepN-answer.md`` line by line instead of calling a model."""
    path = Path(source_dir) / f"step{step}-answer.md"
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise LLMError(f"no recorded answer for step {step}: {e}")
    logger.debug("replaying %s", path)
    yield from text.splitlines(keepends=True)


def iter_lines(deltas: Iterable[str]) -> Iterator[str]:
    """Regroup text deltas into lines, each ending in "\\n" except maybe the last."""
    pending = ""
    for delta in deltas:
        pending += delta
        *complete, pending = pending.split("\n")
        for line in complete:
            yield line + "\n"
    if pending:
        yield pending
