"""Session state — single source of truth passed through the workflow graph."""

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, TypedDict


class Message(TypedDict):
    role: Literal["system", "user", "assistant"]
    content: str


class Totals(TypedDict):
    input_tokens: int
    output_tokens: int
    estimated_cost: float


class SessionState(TypedDict):
    conversation: list[Message]  # Prompt history sent to the provider. System message only at index 0.
    step: int  # Last completed step. 0 = not started.
    totals: Totals  # Running token/cost counters. Never decrease.
    label: str  # Last completed or attempted action, for debugging only.
    artifacts: dict[str, str]  # Step key ("05 First Translation") -> artifact path.


def new_session(system_prompt: str) -> SessionState:
    """Return a fresh session holding only the rendered system message."""
    return {
        "conversation": [{"role": "system", "content": system_prompt}],
        "step": 0,
        "totals": {"input_tokens": 0, "output_tokens": 0, "estimated_cost": 0.0},
        "label": "Initial system prompt",
        "artifacts": {},
    }


@dataclass
class TranslationJob:
    """Everything a run needs besides the session: source text, languages, options."""

    source_text: str
    target_language: str
    input_path: Path
    output_dir: Path
    model: str
    verifier_model: str
    source_language: str | None = None
    custom_instructions: str | None = None
    temperature: float = 0.7
    max_output_tokens: int = 16000
    reasoning_effort: Literal["low", "medium", "high"] = "medium"
    max_retries: int = 3
    retry_delay: float = 5.0
    skip_external_review: bool = False
    verify_completion: bool = True
    max_continuation_attempts: int = 6
    verbose: bool = False

    @property
    def intermediates_dir(self) -> Path:
        return self.output_dir / ".translation-intermediates"

    @property
    def session_path(self) -> Path:
        return self.intermediates_dir / "conversation_history.json"

    @property
    def transcript_path(self) -> Path:
        return self.intermediates_dir / "conversation_history.txt"

    @property
    def metrics_path(self) -> Path:
        return self.intermediates_dir / "translation_metrics.json"

    @property
    def final_output_path(self) -> Path:
        return self.output_dir / f"{self.input_path.stem}-{self.target_language}{self.input_path.suffix}"

    @property
    def terminal_step(self) -> int:
        """Step value that marks the whole run complete."""
        return 9 if self.skip_external_review else 10
