"""Continuation & stitching — recover the full translation when a generation is cut off.

A step's output is suspect either because its closing tag never arrived
(proven truncation) or because an independent verifier call says the
translation stops short of the source. In both cases we ask the model, on the
conversation that produced the text, to continue from an anchor line and
splice the reply onto what we already have.

The continuation loop is bounded. It gives up and keeps the best text so far
when the candidate stops growing, grows only trivially, or the verifier keeps
pointing at the same source line.
"""

import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from dadeumi import prompts
from dadeumi.state import Message
from dadeumi.utils.parsing import (
    clean_continuation,
    remove_continuation_markers,
    remove_unpaired_tags,
    strip_fences,
)
from dadeumi.utils.storage import backup_file, write_text

OVERLAP_WINDOW = 200
MIN_OVERLAP = 5
MIN_GROWTH = 100  # characters; less than this counts as "minimal growth"

MAX_UNCHANGED = 3
MAX_MINIMAL_GROWTH = 2
MAX_REPEATED_ANCHOR = 2
DEFAULT_MAX_ATTEMPTS = 6


@dataclass
class Verdict:
    """What the verifier reported about a candidate translation."""

    should_continue: bool
    target_anchor: str = ""  # Last translated line to resume from.
    source_anchor: str = ""  # Matching line in the source.


@dataclass
class MatchPoint:
    text: str
    index: int  # Position of ``text`` in the candidate.
    strategy: str  # "anchor" | "overlap" | "paragraph"


@dataclass
class ContinuationContext:
    """Accumulator for one continuation run. Discarded when the run ends."""

    attempts: int = 0
    previous_length: int = 0
    previous_source_anchor: str = ""
    unchanged_streak: int = 0
    minimal_growth_streak: int = 0
    repeated_anchor_streak: int = 0


@dataclass
class ContinuationOutcome:
    text: str
    attempts: int
    stop_reason: str  # complete | no_growth | minimal_growth | repeated_anchor | max_attempts


def last_line(text: str) -> str:
    """Last non-blank line of ``text``, stripped."""
    for line in reversed(text.splitlines()):
        if line.strip():
            return line.strip()
    return ""


def parse_verdict(raw: str, candidate: str) -> Verdict:
    """Parse the verifier's JSON reply.

    The reported target line is only a hint: if it does not occur in the
    candidate it is dropped and the caller falls back to the candidate's own
    last line.
    """
    data = json.loads(strip_fences(raw))
    if not isinstance(data, dict):
        raise ValueError("Verifier response is not a JSON object.")

    verdict = Verdict(
        should_continue=bool(data.get("continue", False)),
        target_anchor=str(data.get("targetLastLine") or "").strip(),
        source_anchor=str(data.get("sourceLine") or "").strip(),
    )
    if verdict.target_anchor and verdict.target_anchor not in candidate:
        print(
            f"[dadeumi] Warning: verifier anchor not found in translation, ignoring it: "
            f"{verdict.target_anchor[:80]!r}",
            file=sys.stderr,
        )
        verdict.target_anchor = ""
    return verdict


def verify_completion(
    source_text: str,
    candidate: str,
    ask: Callable[[list[Message]], str],
) -> Verdict | None:
    """Ask an independent model whether ``candidate`` covers all of ``source_text``.

    ``ask`` sends a fresh two-message conversation and returns the raw reply.
    Returns None when the check itself fails; callers treat that as complete.
    """
    messages: list[Message] = [
        {"role": "system", "content": prompts.VERIFIER_SYSTEM},
        {"role": "user", "content": prompts.verifier_user(source_text, candidate)},
    ]
    try:
        verdict = parse_verdict(ask(messages), candidate)
    except Exception as exc:
        print(f"[dadeumi] Error checking translation completion: {exc!r}", file=sys.stderr)
        return None

    if verdict.should_continue:
        print(f"[dadeumi] Translation looks incomplete; last source line: {verdict.source_anchor[:80]!r}")
    return verdict


def _overlap_length(head: str, continuation: str) -> int:
    """Length of the longest tail of ``head`` that ``continuation`` starts with (0 if under MIN_OVERLAP)."""
    for length in range(min(OVERLAP_WINDOW, len(head), len(continuation)), MIN_OVERLAP - 1, -1):
        if head.endswith(continuation[:length]):
            return length
    return 0


def find_match_point(candidate: str, continuation: str, anchor: str = "") -> MatchPoint | None:
    """Locate where ``continuation`` picks up inside ``candidate``.

    Tried in order: the anchor line itself, the longest candidate tail that
    the continuation starts with, then the candidate's last paragraph if the
    continuation repeats it.
    """
    if not candidate or not continuation:
        return None

    anchor = anchor.strip()
    if anchor:
        index = candidate.rfind(anchor)
        if index != -1:
            return MatchPoint(anchor, index, "anchor")

    tail = candidate[-OVERLAP_WINDOW:]
    for length in range(len(tail), MIN_OVERLAP - 1, -1):
        suffix = tail[-length:]
        if continuation.startswith(suffix):
            return MatchPoint(suffix, len(candidate) - length, "overlap")

    paragraphs = [p.strip() for p in candidate.split("\n\n") if p.strip()]
    if paragraphs:
        paragraph = paragraphs[-1]
        if len(paragraph) >= MIN_OVERLAP and paragraph in continuation:
            return MatchPoint(paragraph, candidate.rfind(paragraph), "paragraph")

    return None


def stitch(candidate: str, continuation: str, anchor: str = "", tag: str | None = None) -> tuple[str, str]:
    """Merge a continuation reply into the candidate without repeating the overlap.

    Returns ``(text, strategy)``. When no match point exists the reply is
    appended after a blank line and strategy is "append".
    """
    base = remove_continuation_markers(remove_unpaired_tags(candidate))
    addition = clean_continuation(continuation, tag)
    if not addition:
        print("[dadeumi] Warning: no usable continuation content after cleanup.", file=sys.stderr)
        return base, "empty"

    match = find_match_point(base, addition, anchor)
    if match is None:
        print(
            "[dadeumi] Warning: no match point between translation and continuation; appending.",
            file=sys.stderr,
        )
        return f"{base}\n\n{addition}", "append"

    head = base[: match.index + len(match.text)]
    position = addition.find(match.text)
    if position != -1:
        rest = addition[position + len(match.text):]
    elif match.strategy == "anchor" and _overlap_length(head, addition) == 0:
        # The reply does not restart at the anchor; keep everything we had.
        head = base
        rest = addition[_overlap_length(head, addition):]
    else:
        rest = addition[_overlap_length(head, addition):]

    if head and rest and not head[-1].isspace() and not rest[0].isspace():
        rest = "\n" + rest
    return head + rest, match.strategy


def continue_and_stitch(
    source_text: str,
    candidate: str,
    artifact_path: Path,
    *,
    send: Callable[[str], str],
    verify: Callable[[str, str], Verdict | None] | None = None,
    truncated: bool = False,
    tag: str | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> ContinuationOutcome:
    """Keep requesting continuations until the candidate is complete or stops improving.

    ``send(prompt)`` appends the continuation request to the step's existing
    conversation and returns the raw reply. ``verify(source, candidate)``
    reports whether more is needed; it is skipped for the first round when
    ``truncated`` already proves the output was cut off. The artifact at
    ``artifact_path`` is backed up before every attempt and overwritten with
    the stitched text after it.
    """
    ctx = ContinuationContext(previous_length=len(candidate))
    best = candidate
    forced = truncated
    stop_reason = "complete"

    while True:
        if ctx.attempts >= max_attempts:
            stop_reason = "max_attempts"
            break

        if forced:
            forced = False
            anchor = last_line(candidate)
        else:
            verdict = verify(source_text, candidate) if verify else None
            if verdict is None or not verdict.should_continue:
                stop_reason = "complete"
                break
            if verdict.source_anchor and verdict.source_anchor == ctx.previous_source_anchor:
                ctx.repeated_anchor_streak += 1
            else:
                ctx.repeated_anchor_streak = 1
            ctx.previous_source_anchor = verdict.source_anchor
            if ctx.repeated_anchor_streak >= MAX_REPEATED_ANCHOR:
                stop_reason = "repeated_anchor"
                break
            anchor = verdict.target_anchor or last_line(candidate)

        backup_file(artifact_path)
        ctx.attempts += 1
        print(f"[dadeumi] Requesting continuation (attempt {ctx.attempts}/{max_attempts})...")
        reply = send(prompts.continuation(anchor))
        candidate, strategy = stitch(candidate, reply, anchor, tag)
        write_text(artifact_path, candidate)

        growth = len(candidate) - ctx.previous_length
        ctx.previous_length = len(candidate)
        if len(candidate) > len(best):
            best = candidate
        print(f"[dadeumi] Stitched continuation via {strategy} ({growth:+,} chars).")

        if growth <= 0:
            ctx.unchanged_streak += 1
            ctx.minimal_growth_streak = 0
        elif growth < MIN_GROWTH:
            ctx.minimal_growth_streak += 1
            ctx.unchanged_streak = 0
        else:
            ctx.unchanged_streak = 0
            ctx.minimal_growth_streak = 0

        if ctx.unchanged_streak >= MAX_UNCHANGED:
            stop_reason = "no_growth"
            break
        if ctx.minimal_growth_streak >= MAX_MINIMAL_GROWTH:
            stop_reason = "minimal_growth"
            break

    text = candidate if stop_reason == "complete" else best
    text = remove_continuation_markers(remove_unpaired_tags(text))
    if ctx.attempts:
        write_text(artifact_path, text)
    if stop_reason != "complete":
        print(
            f"[dadeumi] Warning: stopped continuing after {ctx.attempts} attempt(s) ({stop_reason}).",
            file=sys.stderr,
        )
    return ContinuationOutcome(text=text, attempts=ctx.attempts, stop_reason=stop_reason)
