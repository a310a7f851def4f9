"""Completion service — routes a conversation to a LangChain chat model and retries failures."""

import os
import sys
import time
from dataclasses import dataclass
from typing import Callable, Literal

import httpx
from langchain_anthropic import ChatAnthropic
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_fixed

from dadeumi.config import get_config
from dadeumi.context import lookup_by_prefix, prune_for_context_error
from dadeumi.errors import ContextLengthExceeded, ProviderUnavailableError
from dadeumi.state import Message

_CONTEXT_ERROR_MARKERS = (
    "context_length_exceeded",
    "maximum context length",
    "context window",
    "prompt is too long",
    "input is too long",
    "too many tokens",
    "reduce the length of the input",
)
_TRANSIENT_STATUS = {408, 429, 500, 502, 503, 504, 529}
_PERMANENT_STATUS = {400, 401, 403, 404, 422}
_REASONING_PREFIXES = ("o1", "o3", "o4")


@dataclass
class RequestOptions:
    model: str
    temperature: float = 0.7
    max_output_tokens: int | None = None
    reasoning_effort: Literal["low", "medium", "high"] | None = None
    json_mode: bool = False  # Ask OpenAI models for a JSON object response.


@dataclass
class Completion:
    text: str
    input_tokens: int
    output_tokens: int
    model: str
    duration: float  # seconds


def is_context_length_error(exc: BaseException) -> bool:
    """Return True if the provider rejected the prompt as too long."""
    if isinstance(exc, ContextLengthExceeded):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _CONTEXT_ERROR_MARKERS)


def _status_code(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    return status if isinstance(status, int) else None


def _is_transient(exc: BaseException) -> bool:
    """Return True if the exception is a transient HTTP/network error worth retrying."""
    if isinstance(exc, httpx.TimeoutException):
        return True
    if isinstance(exc, httpx.ConnectError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _TRANSIENT_STATUS
    return _status_code(exc) in _TRANSIENT_STATUS


def is_retryable(exc: BaseException) -> bool:
    """Decide whether a failed completion call gets another attempt.

    Context-length errors are retried (after pruning). Missing credentials,
    auth failures and malformed requests are raised immediately. Anything
    else is assumed transient.
    """
    if not isinstance(exc, Exception):
        return False
    if isinstance(exc, ContextLengthExceeded) or _is_transient(exc):
        return True
    if isinstance(exc, ProviderUnavailableError):
        return False
    return _status_code(exc) not in _PERMANENT_STATUS


def _content_text(content) -> str:
    """Flatten AIMessage content, which may be a list of typed blocks."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _require_key(env_var: str, provider: str) -> None:
    if not os.environ.get(env_var):
        raise ProviderUnavailableError(
            f"{provider} provider not available. Please set the {env_var} environment variable."
        )


def build_chat_model(options: RequestOptions):
    """Instantiate the LangChain chat model for ``options.model``.

    claude* → Anthropic, gemini* → Google, everything else → OpenAI.
    """
    model = options.model
    if model.startswith("claude") or "anthropic" in model:
        _require_key("ANTHROPIC_API_KEY", "Anthropic")
        return ChatAnthropic(
            model=model,
            temperature=options.temperature,
            max_tokens=options.max_output_tokens or 8192,
        )
    if model.startswith("gemini"):
        _require_key("GOOGLE_API_KEY", "Google")
        return ChatGoogleGenerativeAI(
            model=model,
            temperature=options.temperature,
            max_output_tokens=options.max_output_tokens,
        )

    _require_key("OPENAI_API_KEY", "OpenAI")
    extra = {"model_kwargs": {"response_format": {"type": "json_object"}}} if options.json_mode else {}
    if model.startswith(_REASONING_PREFIXES):
        # Reasoning models reject temperature.
        return ChatOpenAI(
            model=model,
            max_tokens=options.max_output_tokens,
            reasoning_effort=options.reasoning_effort or "medium",
            **extra,
        )
    return ChatOpenAI(
        model=model,
        temperature=options.temperature,
        max_tokens=options.max_output_tokens,
        **extra,
    )


class CompletionService:
    """Sends role-tagged conversations to the provider and reports token usage."""

    def complete(self, messages: list[Message], options: RequestOptions) -> Completion:
        llm = build_chat_model(options)
        start = time.perf_counter()
        try:
            response = llm.invoke([{"role": m["role"], "content": m["content"]} for m in messages])
        except Exception as exc:
            if is_context_length_error(exc):
                raise ContextLengthExceeded(str(exc)) from exc
            raise
        duration = time.perf_counter() - start

        usage = getattr(response, "usage_metadata", None) or {}
        return Completion(
            text=_content_text(response.content),
            input_tokens=int(usage.get("input_tokens", 0) or 0),
            output_tokens=int(usage.get("output_tokens", 0) or 0),
            model=options.model,
            duration=duration,
        )


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """USD cost of one call from the configured per-million pricing table."""
    pricing = lookup_by_prefix(get_config().get("pricing") or {}, model)
    if not pricing:
        print(f"[dadeumi] Warning: no pricing data for model {model}; cost counted as 0.", file=sys.stderr)
        return 0.0
    input_rate, output_rate = pricing
    return input_tokens / 1_000_000 * input_rate + output_tokens / 1_000_000 * output_rate


def complete_with_retry(
    service: CompletionService,
    messages: list[Message],
    options: RequestOptions,
    *,
    max_retries: int,
    retry_delay: float,
    on_retry: Callable[[BaseException, int], None] | None = None,
) -> Completion:
    """Call ``service.complete`` with a fixed delay between attempts.

    A context-length error prunes ``messages`` in place before the next
    attempt, and is retried once even when ``max_retries`` is exhausted.
    ``on_retry(exc, attempt)`` runs before every sleep so callers can
    persist their state with an error label.
    """

    def _before_sleep(retry_state) -> None:
        exc = retry_state.outcome.exception()
        print(
            f"[dadeumi] Completion failed: {exc!r}. Retrying in {retry_delay:.0f}s "
            f"(attempt {retry_state.attempt_number}/{max_retries + 1})...",
            file=sys.stderr,
        )
        if isinstance(exc, ContextLengthExceeded):
            prune_for_context_error(messages)
        if on_retry:
            on_retry(exc, retry_state.attempt_number)

    budget = stop_after_attempt(max_retries + 1)  # +1 because first attempt counts

    def _stop(retry_state) -> bool:
        # A context-length failure always gets one more try on the pruned conversation.
        if isinstance(retry_state.outcome.exception(), ContextLengthExceeded):
            return retry_state.attempt_number > max_retries + 1
        return budget(retry_state)

    @retry(
        stop=_stop,
        wait=wait_fixed(retry_delay),
        retry=retry_if_exception(is_retryable),
        reraise=True,
        before_sleep=_before_sleep,
    )
    def _complete() -> Completion:
        return service.complete(messages, options)

    return _complete()
