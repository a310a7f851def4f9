"""Shared fixtures for the dadeumi test suite."""

from unittest.mock import MagicMock, patch

import pytest

from dadeumi.llm import Completion
from dadeumi.state import TranslationJob

# Checked in order: some tag names contain others.
_STEP_TAGS = [
    "refined_final_translation",
    "further_improved_translation",
    "improved_translation",
    "final_translation",
    "first_translation",
    "external_review",
    "title_options",
    "cultural_discussion",
    "expression_exploration",
    "analysis",
]
_NOTE_TAGS = {
    "improved_translation": "critique",
    "further_improved_translation": "second_critique",
    "final_translation": "review",
}


def make_completion(text: str, input_tokens: int = 100, output_tokens: int = 50, model: str = "test-model"):
    return Completion(text=text, input_tokens=input_tokens, output_tokens=output_tokens, model=model, duration=0.5)


def prompt_tag(messages: list[dict]) -> str | None:
    """Which step tag the last user prompt asks for."""
    prompt = messages[-1]["content"]
    for tag in _STEP_TAGS:
        if f"<{tag}>" in prompt:
            return tag
    return None


class ScriptedService:
    """Completion service double that answers each step prompt with a well-formed tagged reply.

    ``overrides`` maps a tag (or "continuation", "verifier") to a list of raw replies or
    exceptions, consumed in order before falling back to the default reply.
    Every call records a snapshot of the messages it was sent.
    """

    def __init__(self, overrides: dict | None = None):
        self.overrides = {k: list(v) for k, v in (overrides or {}).items()}
        self.calls: list[list[dict]] = []
        self.keys: list[str | None] = []
        self.complete = MagicMock(side_effect=self._reply)

    def _reply(self, messages, options):
        self.calls.append([dict(m) for m in messages])
        prompt = messages[-1]["content"]
        if options.json_mode:
            key = "verifier"
        elif prompt.startswith("Your response appeared to be cut off"):
            key = "continuation"
        else:
            key = prompt_tag(messages)
        self.keys.append(key)

        queued = self.overrides.get(key)
        if queued:
            reply = queued.pop(0)
            if isinstance(reply, BaseException):
                raise reply
            return make_completion(reply)
        if key == "verifier":
            return make_completion('{"continue": false}', model="test-verifier")

        body = f"Output of call {len(self.calls)}."
        note = _NOTE_TAGS.get(key)
        text = f"<{key}>{body}</{key}>"
        if note:
            text = f"<{note}>Notes for call {len(self.calls)}.</{note}>\n{text}"
        return make_completion(text)

    def tags_called(self) -> list[str | None]:
        return list(self.keys)


@pytest.fixture
def mock_config():
    """Patch the config singleton with test-friendly values."""
    test_config = {
        "model": "test-model",
        "verifier_model": "test-verifier",
        "temperature": 0.7,
        "max_output_tokens": 4000,
        "reasoning_effort": "medium",
        "max_retries": 2,
        "retry_delay": 0,
        "skip_external_review": False,
        "verify_completion": False,
        "max_continuation_attempts": 6,
        "output_dir": "./output",
        "pricing": {"test-model": [1.0, 2.0]},
    }
    with patch("dadeumi.config._config", test_config):
        yield test_config


@pytest.fixture
def job(tmp_path, mock_config):
    """A job writing under tmp_path, with no retry delay and no verifier calls."""
    return TranslationJob(
        source_text="The sun rose over the hills.\n\nBirds sang in the old oak tree.",
        target_language="Korean",
        source_language="English",
        input_path=tmp_path / "story.txt",
        output_dir=tmp_path / "out",
        model="test-model",
        verifier_model="test-verifier",
        max_retries=2,
        retry_delay=0,
        verify_completion=False,
    )


@pytest.fixture
def service():
    return ScriptedService()
