"""Context window management — keep the live conversation inside the model's budget.

Token counts are estimated from character length. The estimator is a plain
object with a ``count(text) -> int`` method, so a real tokenizer can be
dropped in without touching the budget logic below.
"""

import math
import sys
from typing import Protocol

from dadeumi.config import get_config
from dadeumi.state import Message

# Total context window (input + output tokens), not the output limit.
MODEL_CONTEXT_LIMITS: dict[str, int] = {
    # OpenAI
    "gpt-4.5-preview": 128_000,
    "gpt-4.1": 1_047_576,
    "gpt-4o": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4-32k": 32_000,
    "gpt-4": 8_192,
    "gpt-3.5-turbo-16k": 16_384,
    "gpt-3.5-turbo": 4_096,
    "o1": 200_000,
    "o3-mini": 200_000,
    # Anthropic
    "claude-3-opus-20240229": 200_000,
    "claude-3-sonnet-20240229": 200_000,
    "claude-3-haiku-20240307": 200_000,
    "claude-3-5-sonnet-20240620": 200_000,
    "claude-3-7-sonnet-latest": 200_000,
    "claude-3": 200_000,
    "claude-sonnet-4": 200_000,
    "claude-opus-4": 200_000,
    # Google
    "gemini": 1_048_576,
}
DEFAULT_CONTEXT_LIMIT = 16_384

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4

WARNING_THRESHOLD = 0.7
CRITICAL_THRESHOLD = 0.9
RESET_THRESHOLD = 0.5
EXCHANGES_TO_KEEP = 5


class TokenEstimator(Protocol):
    def count(self, text: str) -> int: ...


class CharLengthEstimator:
    """Approximate tokens as ``ceil(len(text) / chars_per_token)``."""

    def __init__(self, chars_per_token: int = CHARS_PER_TOKEN):
        self.chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)


DEFAULT_ESTIMATOR = CharLengthEstimator()


def estimate_tokens(conversation: list[Message], estimator: TokenEstimator | None = None) -> int:
    """Estimated prompt size of the whole conversation."""
    estimator = estimator or DEFAULT_ESTIMATOR
    return sum(estimator.count(m["content"]) + MESSAGE_OVERHEAD_TOKENS for m in conversation)


def lookup_by_prefix(table: dict, model: str):
    """Exact key first, then the longest key that prefixes ``model``. None if neither."""
    if model in table:
        return table[model]
    matches = [key for key in table if model.startswith(key)]
    if not matches:
        return None
    return table[max(matches, key=len)]


def budget_for(model: str) -> int:
    """Context window ceiling for a model, falling back to a conservative default."""
    table = {**MODEL_CONTEXT_LIMITS, **(get_config().get("context_limits") or {})}
    limit = lookup_by_prefix(table, model)
    return int(limit) if limit else DEFAULT_CONTEXT_LIMIT


def classify(conversation: list[Message], model: str, estimator: TokenEstimator | None = None) -> str:
    """Return "ok", "warning" (70-90% of budget) or "critical" (over 90%)."""
    usage = estimate_tokens(conversation, estimator) / budget_for(model)
    if usage > CRITICAL_THRESHOLD:
        return "critical"
    if usage > WARNING_THRESHOLD:
        return "warning"
    return "ok"


def _split_system(conversation: list[Message]) -> tuple[list[Message], list[Message]]:
    if conversation and conversation[0]["role"] == "system":
        return conversation[:1], conversation[1:]
    return [], list(conversation)


def precheck(conversation: list[Message], model: str, estimator: TokenEstimator | None = None) -> str:
    """Trim the conversation in place when it is about to overflow.

    Over 90% of the budget keeps the system message plus the last
    EXCHANGES_TO_KEEP user/assistant pairs. Between 70% and 90% only warns.
    Returns the classification that was acted on.
    """
    status = classify(conversation, model, estimator)
    budget = budget_for(model)
    before = estimate_tokens(conversation, estimator)

    if status == "warning":
        print(
            f"[dadeumi] Warning: conversation at ~{before:,} tokens "
            f"({before / budget:.0%} of {budget:,} for {model}).",
            file=sys.stderr,
        )
    elif status == "critical":
        system, rest = _split_system(conversation)
        keep = EXCHANGES_TO_KEEP * 2
        if rest and rest[-1]["role"] == "user":
            keep += 1  # the pending prompt
        tail = rest[-keep:]
        while tail and tail[0]["role"] == "assistant":
            tail = tail[1:]
        conversation[:] = system + tail
        after = estimate_tokens(conversation, estimator)
        print(
            f"[dadeumi] Conversation at ~{before:,} tokens exceeds {CRITICAL_THRESHOLD:.0%} "
            f"of {budget:,}; trimmed to last {EXCHANGES_TO_KEEP} exchanges (~{after:,} tokens).",
            file=sys.stderr,
        )
    return status


def maybe_reset(
    conversation: list[Message],
    incoming_tokens: int,
    model: str,
    system_prompt: str,
    threshold: float = RESET_THRESHOLD,
    estimator: TokenEstimator | None = None,
) -> bool:
    """Start over from a fresh system message before injecting very large content.

    Used by steps that send the full source or a full prior draft. When the
    current history plus the incoming prompt would pass ``threshold`` of the
    budget, the history is discarded in place. Returns True if it reset.
    """
    current = estimate_tokens(conversation, estimator)
    budget = budget_for(model)
    if current + incoming_tokens <= threshold * budget:
        return False

    conversation[:] = [{"role": "system", "content": system_prompt}]
    print(
        f"[dadeumi] Context reset: ~{current:,} + ~{incoming_tokens:,} tokens would pass "
        f"{threshold:.0%} of {budget:,}. Continuing with a fresh conversation.",
        file=sys.stderr,
    )
    return True


def prune_for_context_error(conversation: list[Message]) -> None:
    """Shrink the conversation in place after the provider rejected it as too long.

    Keeps the system message, the first user message (original framing) and
    the most recent user message (the one that triggered the error).
    """
    system, rest = _split_system(conversation)
    users = [i for i, m in enumerate(rest) if m["role"] == "user"]
    if not users:
        conversation[:] = system
        return
    keep = sorted({users[0], users[-1]})
    conversation[:] = system + [rest[i] for i in keep]
    print(
        f"[dadeumi] Context length exceeded; pruned conversation to {len(conversation)} messages.",
        file=sys.stderr,
    )
