"""Shared parsing helpers for tagged model output."""

import re
from dataclasses import dataclass

_FENCE_RE = re.compile(r"```(?:json|text|markdown)?\s*\n?(.*?)\n?\s*```", re.DOTALL)
_TAG_RE = re.compile(r"<(/?)([A-Za-z_][\w\-]*)[^<>]*>")

# Trailing "to be continued" markers, in the languages we translate into most.
_CONTINUATION_MARKERS = [
    re.compile(r"\(to be continued\.{0,3}\)$", re.IGNORECASE),
    re.compile(r"\(continued\.{0,3}\)$", re.IGNORECASE),
    re.compile(r"\[to be continued\.{0,3}\]$", re.IGNORECASE),
    re.compile(r"\.\.\.$"),
    re.compile(r"\(계속\.{0,3}\)$"),
    re.compile(r"\(다음 편에 계속\.{0,3}\)$"),
    re.compile(r"\(fortsetzung folgt\.{0,3}\)$", re.IGNORECASE),
    re.compile(r"\(continuará\.{0,3}\)$", re.IGNORECASE),
    re.compile(r"\(à suivre\.{0,3}\)$", re.IGNORECASE),
    re.compile(r"\(続く\.{0,3}\)$"),
    re.compile(r"\(未完成\.{0,3}\)$"),
    re.compile(r"\(未完待续\.{0,3}\)$"),
]


@dataclass
class Extraction:
    """Result of pulling one tagged section out of a raw response."""

    text: str
    truncated: bool = False  # Opening tag without a closing tag.
    fallback: bool = False  # No usable tags; text came from a fence or the raw output.


def strip_fences(text: str) -> str:
    """Strip markdown code fences from LLM output if present."""
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def detect_truncation(raw: str, tag: str) -> bool:
    """True when ``<tag>`` opens but never closes — the call was cut off mid-section."""
    return f"<{tag}>" in raw and f"</{tag}>" not in raw


def extract(raw: str, tag: str) -> Extraction:
    """Pull the ``<tag>`` section out of a raw response.

    Falls back to the text before a stray closing tag, then to a fenced block,
    then to the whole response. Fallback results are flagged so the caller can
    keep the raw output for inspection.
    """
    opening, closing = f"<{tag}>", f"</{tag}>"
    match = re.search(f"{re.escape(opening)}(.*?){re.escape(closing)}", raw, re.DOTALL)
    if match:
        return Extraction(match.group(1).strip())

    start = raw.find(opening)
    if start != -1:
        return Extraction(raw[start + len(opening):].strip(), truncated=True)

    end = raw.find(closing)
    if end != -1:
        return Extraction(raw[:end].strip(), fallback=True)

    return Extraction(strip_fences(raw), fallback=True)


def remove_unpaired_tags(text: str) -> str:
    """Remove opening tags that never close and closing tags that never opened.

    Properly nested pairs and self-closing tags are left alone.
    """
    if not text:
        return ""

    stack: list[tuple[str, tuple[int, int]]] = []
    unpaired: list[tuple[int, int]] = []
    for match in _TAG_RE.finditer(text):
        if match.group(0).endswith("/>"):
            continue
        is_closing, name = match.group(1), match.group(2)
        if not is_closing:
            stack.append((name, match.span()))
        elif stack and stack[-1][0] == name:
            stack.pop()
        else:
            unpaired.append(match.span())
    unpaired.extend(span for _, span in stack)

    for start, end in sorted(unpaired, reverse=True):
        text = text[:start] + text[end:]
    return text


def remove_continuation_markers(text: str) -> str:
    """Strip trailing "(to be continued)"-style markers and surrounding whitespace."""
    if not text:
        return ""

    cleaned = text.strip()
    changed = True
    while changed:
        changed = False
        for marker in _CONTINUATION_MARKERS:
            stripped = marker.sub("", cleaned).rstrip()
            if stripped != cleaned:
                cleaned = stripped
                changed = True
    return cleaned


def clean_continuation(text: str, tag: str | None = None) -> str:
    """Reduce a continuation reply to the translated text it carries.

    Prefers an explicit ``<continued_translation>`` (or ``<tag>``) section,
    otherwise drops stray tags and trailing markers from the raw reply.
    """
    if not text:
        return ""

    for name in filter(None, ("continued_translation", tag)):
        match = re.search(f"<{name}>(.*?)</{name}>", text, re.DOTALL)
        if match and match.group(1).strip():
            text = match.group(1)
            break

    return remove_continuation_markers(remove_unpaired_tags(text))
