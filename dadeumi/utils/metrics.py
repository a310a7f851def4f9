"""Word/character metrics for the source text and each translation step."""

import re

WORDS_PER_MINUTE = 200
# Languages written without spaces: words are estimated from characters.
_CHARACTER_LANGUAGES = {"korean", "japanese", "chinese"}


def calculate_metrics(text: str, language: str | None = None, source: dict | None = None) -> dict:
    """Counts for ``text``; ``source`` metrics, when given, add a word ratio against the source."""
    if not text:
        return {"word_count": 0, "char_count": 0, "ratio": 0.0, "reading_time_minutes": 0.0}

    char_count = len(re.sub(r"\s", "", text))
    if (language or "").lower() in _CHARACTER_LANGUAGES:
        word_count = round(char_count / 2)
    else:
        word_count = len(text.split())

    source_words = (source or {}).get("word_count", 0)
    return {
        "word_count": word_count,
        "char_count": char_count,
        "ratio": word_count / source_words if source_words else 0.0,
        "reading_time_minutes": word_count / WORDS_PER_MINUTE,
    }


def format_reading_time(minutes: float) -> str:
    if minutes < 1:
        return f"{round(minutes * 60)} seconds"
    whole = int(minutes)
    return f"{whole} min {round((minutes - whole) * 60)} sec"


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{round(seconds)} seconds"
    if seconds < 3600:
        return f"{int(seconds // 60)} min {round(seconds % 60)} sec"
    return f"{int(seconds // 3600)} hr {int(seconds % 3600 // 60)} min {round(seconds % 60)} sec"
