"""Workflow controller — ten ordered steps over one resumable session.

Each step sends one prompt, stores the tagged section of the reply as a step
artifact and only then advances ``state["step"]``. The session file is flushed
after every exchange, so a crash at any point resumes at the first step whose
artifact is missing.

Steps 1-8 share the translator conversation. Steps 9 and 10 each run on a
fresh conversation seeded with the reviewer system prompt.
"""

import json
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from dadeumi import prompts
from dadeumi.context import DEFAULT_ESTIMATOR, MESSAGE_OVERHEAD_TOKENS, maybe_reset, precheck
from dadeumi.continuation import continue_and_stitch, verify_completion
from dadeumi.errors import SessionError
from dadeumi.llm import CompletionService, RequestOptions, complete_with_retry, estimate_cost
from dadeumi.prompts import StepKind
from dadeumi.state import Message, SessionState, TranslationJob, new_session
from dadeumi.utils.metrics import calculate_metrics
from dadeumi.utils.parsing import detect_truncation, extract
from dadeumi.utils.storage import find_latest, list_files, read_json, read_text, write_json, write_text


@dataclass(frozen=True)
class Step:
    number: int
    title: str
    filename: str
    tag: str
    note_tag: str | None = None  # Secondary section (critique/review) saved under notes/.
    note_filename: str | None = None
    continues: bool = False  # Output goes through the continuation engine.
    resets: bool = False  # Prompt carries the full source or a full draft.

    @property
    def key(self) -> str:
        return f"{self.number:02d} {self.title}"


STEPS = (
    Step(1, "Initial Analysis", "01_initial_analysis.txt", "analysis", resets=True),
    Step(2, "Expression Exploration", "02_expression_exploration.txt", "expression_exploration"),
    Step(3, "Cultural Adaptation Discussion", "03_cultural_adaptation_discussion.txt", "cultural_discussion"),
    Step(4, "Title Inspiration Exploration", "04_title_inspiration_exploration.txt", "title_options"),
    Step(5, "First Translation", "05_first_translation.txt", "first_translation",
         continues=True, resets=True),
    Step(6, "Improved Translation", "06_improved_translation.txt", "improved_translation",
         "critique", "06_self_critique.txt", continues=True, resets=True),
    Step(7, "Further Improved Translation", "07_further_improved_translation.txt", "further_improved_translation",
         "second_critique", "07_second_critique.txt", continues=True, resets=True),
    Step(8, "Final Translation", "08_final_translation.txt", "final_translation",
         "review", "08_final_review.txt", continues=True, resets=True),
    Step(9, "External Review", "09_external_review.txt", "external_review"),
    Step(10, "Refined Final Translation", "10_refined_final_translation.txt", "refined_final_translation",
         continues=True),
)
STEP_BY_NUMBER = {step.number: step for step in STEPS}

# Most advanced translation first.
BEST_EFFORT_ORDER = (10, 8, 7, 6, 5)
ARTIFACT_PATTERN = r"^\d{2}_.*\.txt$"


# --- Session persistence ---

def translator_prompt(job: TranslationJob) -> str:
    return prompts.system_prompt(StepKind.TRANSLATOR, job.target_language, job.source_language, job.custom_instructions)


def reviewer_prompt(job: TranslationJob) -> str:
    return prompts.system_prompt(StepKind.REVIEWER, job.target_language, job.source_language, job.custom_instructions)


def render_transcript(conversation: list[Message]) -> str:
    """Human-readable mirror of the session conversation."""
    blocks = [f"=== {m['role'].upper()} ===\n{m['content']}" for m in conversation]
    return "\n\n".join(blocks) + "\n"


def save_session(state: SessionState, job: TranslationJob, label: str | None = None) -> bool:
    """Persist the session JSON and transcript. Failures are logged, not raised.

    Returns False when the write failed; the in-memory state is still valid.
    """
    if label:
        state["label"] = label
    totals = state["totals"]
    payload = {
        "metadata": {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "label": state["label"],
            "step": state["step"],
            "totalTokens": totals["input_tokens"] + totals["output_tokens"],
            "totalInputTokens": totals["input_tokens"],
            "totalOutputTokens": totals["output_tokens"],
            "estimatedCost": totals["estimated_cost"],
        },
        "conversation": state["conversation"],
    }
    try:
        write_json(job.session_path, payload)
        write_text(job.transcript_path, render_transcript(state["conversation"]))
    except OSError as exc:
        print(f"[dadeumi] Error saving session to {job.session_path}: {exc!r}", file=sys.stderr)
        return False
    return True


def _restore(data, system_prompt: str) -> SessionState:
    """Build a SessionState from parsed session JSON. Raises SessionError if unusable."""
    if not isinstance(data, dict):
        raise SessionError("Session file is not a JSON object.")
    metadata = data.get("metadata") or {}
    conversation = data.get("conversation")
    if not isinstance(conversation, list) or not all(
        isinstance(m, dict) and m.get("role") in ("system", "user", "assistant") and isinstance(m.get("content"), str)
        for m in conversation
    ):
        raise SessionError("Session conversation is missing or malformed.")
    try:
        step = int(metadata.get("step", 0))
        totals = {
            "input_tokens": int(metadata.get("totalInputTokens", 0)),
            "output_tokens": int(metadata.get("totalOutputTokens", 0)),
            "estimated_cost": float(metadata.get("estimatedCost", 0.0)),
        }
    except (TypeError, ValueError) as exc:
        raise SessionError(f"Session metadata is malformed: {exc}") from exc

    messages = [{"role": m["role"], "content": m["content"]} for m in conversation]
    # One system message, always first.
    messages = [m for i, m in enumerate(messages) if m["role"] != "system" or i == 0]
    if not messages or messages[0]["role"] != "system":
        messages.insert(0, {"role": "system", "content": system_prompt})
    # A trailing prompt never got its reply; the step that sent it runs again.
    while len(messages) > 1 and messages[-1]["role"] == "user":
        messages.pop()

    return {
        "conversation": messages,
        "step": max(step, 0),
        "totals": totals,
        "label": str(metadata.get("label", "")),
        "artifacts": {},
    }


def scan_artifacts(directory: Path) -> dict[str, str]:
    """Map step key -> artifact path for every ``NN_name.txt`` in ``directory``."""
    artifacts = {}
    for path in list_files(directory, ARTIFACT_PATTERN):
        number = int(path.name[:2])
        step = STEP_BY_NUMBER.get(number)
        key = step.key if step and step.filename == path.name else path.stem
        artifacts[key] = str(path)
    return artifacts


def _highest_ordinal(artifacts: dict[str, str]) -> int:
    return max((int(Path(p).name[:2]) for p in artifacts.values()), default=0)


def resume_or_init(session_path: Path, job: TranslationJob) -> SessionState:
    """Restore the session at ``session_path`` or start a fresh one.

    The effective step is the lower of the saved step and the highest artifact
    on disk, so a step whose artifact never landed is run again.
    """
    system_prompt = translator_prompt(job)
    state = None
    try:
        data = read_json(session_path)
        if data is not None:
            state = _restore(data, system_prompt)
    except (json.JSONDecodeError, OSError, SessionError) as exc:
        print(f"[dadeumi] Warning: cannot resume from {session_path}: {exc}. Starting fresh.", file=sys.stderr)

    if state is None:
        state = new_session(system_prompt)
        state["artifacts"] = scan_artifacts(job.intermediates_dir)
        save_session(state, job)
        return state

    state["artifacts"] = scan_artifacts(job.intermediates_dir)
    on_disk = min(_highest_ordinal(state["artifacts"]), job.terminal_step)
    # A session finished without review has a pass-through step 10 but no review.
    if not job.skip_external_review and on_disk >= 9 and not artifact_path(job, 9).exists():
        on_disk = 8
    if on_disk < state["step"]:
        print(
            f"[dadeumi] Warning: session says step {state['step']} but artifacts stop at step {on_disk}; "
            f"resuming after step {on_disk}.",
            file=sys.stderr,
        )
        state["step"] = on_disk
        save_session(state, job, f"Resumed at step {on_disk}")
    else:
        print(f"[dadeumi] Resuming session after step {state['step']} ({state['label']}).")
    return state


# --- Step execution ---

def completion_index(number: int, job: TranslationJob) -> int:
    """Value ``state["step"]`` takes once step ``number`` is done."""
    if job.skip_external_review and number == 10:
        return 9
    return number


def should_run(state: SessionState, number: int, job: TranslationJob) -> bool:
    if job.skip_external_review and number == 9:
        return False
    return completion_index(number, job) > state["step"]


def _options(job: TranslationJob) -> RequestOptions:
    return RequestOptions(
        model=job.model,
        temperature=job.temperature,
        max_output_tokens=job.max_output_tokens,
        reasoning_effort=job.reasoning_effort,
    )


def _record_usage(state: SessionState, completion, job: TranslationJob) -> None:
    cost = estimate_cost(completion.model, completion.input_tokens, completion.output_tokens)
    totals = state["totals"]
    totals["input_tokens"] += completion.input_tokens
    totals["output_tokens"] += completion.output_tokens
    totals["estimated_cost"] += cost
    if job.verbose:
        rate = completion.output_tokens / completion.duration if completion.duration else 0.0
        print(
            f"[dadeumi] {completion.model}: {completion.input_tokens:,} in / {completion.output_tokens:,} out "
            f"in {completion.duration:.1f}s ({rate:.0f} tok/s), ${cost:.4f}"
        )


def _exchange(
    state: SessionState,
    conversation: list[Message],
    prompt: str,
    label: str,
    job: TranslationJob,
    service: CompletionService,
) -> str:
    """Append ``prompt``, call the model with retries and append its reply."""
    conversation.append({"role": "user", "content": prompt})
    precheck(conversation, job.model)

    def _on_retry(exc: BaseException, attempt: int) -> None:
        save_session(state, job, f"API Call Error - {label} - Attempt {attempt}")

    completion = complete_with_retry(
        service,
        conversation,
        _options(job),
        max_retries=job.max_retries,
        retry_delay=job.retry_delay,
        on_retry=_on_retry,
    )
    _record_usage(state, completion, job)
    conversation.append({"role": "assistant", "content": completion.text})
    save_session(state, job, label)
    return completion.text


def _verifier(state: SessionState, job: TranslationJob, service: CompletionService):
    options = RequestOptions(model=job.verifier_model, temperature=0.0, max_output_tokens=1024, json_mode=True)

    def _ask(messages: list[Message]) -> str:
        completion = complete_with_retry(
            service, messages, options, max_retries=job.max_retries, retry_delay=job.retry_delay
        )
        _record_usage(state, completion, job)
        return completion.text

    def _verify(source_text: str, candidate: str):
        return verify_completion(source_text, candidate, _ask)

    return _verify


def artifact_path(job: TranslationJob, number: int) -> Path:
    return job.intermediates_dir / STEP_BY_NUMBER[number].filename


def artifact_text(job: TranslationJob, number: int) -> str:
    """Text of an earlier step's artifact. Raises SessionError if it is missing."""
    path = artifact_path(job, number)
    if not path.exists():
        raise SessionError(f"Missing artifact for step {number}: {path}")
    return read_text(path)


def update_metrics(job: TranslationJob, name: str, text: str) -> dict:
    """Record word/char metrics for ``text`` under ``name`` in the metrics file."""
    try:
        metrics = read_json(job.metrics_path) or {}
    except json.JSONDecodeError as exc:
        print(f"[dadeumi] Warning: metrics file unreadable ({exc}); starting a new one.", file=sys.stderr)
        metrics = {}
    if "source" not in metrics:
        metrics["source"] = calculate_metrics(job.source_text, job.source_language)
    metrics[name] = calculate_metrics(text, job.target_language, metrics["source"])
    try:
        write_json(job.metrics_path, metrics)
    except OSError as exc:
        print(f"[dadeumi] Error saving metrics: {exc!r}", file=sys.stderr)
    return metrics[name]


def _run_prompt_step(
    state: SessionState,
    step: Step,
    prompt: str,
    job: TranslationJob,
    service: CompletionService,
    conversation: list[Message] | None = None,
) -> str:
    """Send one step prompt and store its tagged output as the step artifact."""
    if conversation is None:
        conversation = state["conversation"]
        if step.resets:
            incoming = DEFAULT_ESTIMATOR.count(prompt) + MESSAGE_OVERHEAD_TOKENS
            maybe_reset(conversation, incoming, job.model, translator_prompt(job))

    raw = _exchange(state, conversation, prompt, step.key, job, service)
    truncated = detect_truncation(raw, step.tag)
    result = extract(raw, step.tag)
    if result.fallback:
        debug_path = job.intermediates_dir / "debug" / f"{Path(step.filename).stem}_raw.txt"
        write_text(debug_path, raw)
        print(
            f"[dadeumi] Warning: no <{step.tag}> section in response; using raw output "
            f"(saved to {debug_path} for inspection).",
            file=sys.stderr,
        )

    path = artifact_path(job, step.number)
    write_text(path, result.text)

    if step.note_tag:
        note = extract(raw, step.note_tag)
        if not note.fallback:
            write_text(job.intermediates_dir / "notes" / step.note_filename, note.text)

    text = result.text
    if step.continues:
        outcome = continue_and_stitch(
            job.source_text,
            text,
            path,
            send=lambda p: _exchange(state, conversation, p, f"{step.key} - Continuation", job, service),
            verify=_verifier(state, job, service) if job.verify_completion else None,
            truncated=truncated,
            tag=step.tag,
            max_attempts=job.max_continuation_attempts,
        )
        text = outcome.text
        update_metrics(job, step.key, text)

    state["artifacts"][step.key] = str(path)
    return text


def _initial_analysis(state, step, job, service):
    return _run_prompt_step(
        state, step, prompts.initial_analysis(job.target_language, job.source_language, job.source_text), job, service
    )


def _expression_exploration(state, step, job, service):
    return _run_prompt_step(
        state, step, prompts.expression_exploration(job.target_language, job.source_language), job, service
    )


def _cultural_discussion(state, step, job, service):
    return _run_prompt_step(
        state, step, prompts.cultural_discussion(job.target_language, job.source_language), job, service
    )


def _title_exploration(state, step, job, service):
    return _run_prompt_step(
        state, step, prompts.title_exploration(job.target_language, job.source_language), job, service
    )


def _first_translation(state, step, job, service):
    return _run_prompt_step(
        state, step, prompts.first_translation(job.target_language, job.source_language, job.source_text), job, service
    )


def _self_critique(state, step, job, service):
    previous = artifact_text(job, 5)
    return _run_prompt_step(state, step, prompts.self_critique(job.target_language, previous), job, service)


def _further_refinement(state, step, job, service):
    previous = artifact_text(job, 6)
    return _run_prompt_step(state, step, prompts.further_refinement(job.target_language, previous), job, service)


def _final_translation(state, step, job, service):
    previous = artifact_text(job, 7)
    return _run_prompt_step(
        state, step, prompts.final_translation(job.target_language, job.source_language, previous), job, service
    )


def _external_review(state, step, job, service):
    translation = artifact_text(job, 8)
    conversation: list[Message] = [{"role": "system", "content": reviewer_prompt(job)}]
    prompt = prompts.external_review(job.target_language, job.source_language, job.source_text, translation)
    return _run_prompt_step(state, step, prompt, job, service, conversation=conversation)


def _final_refinement(state, step, job, service):
    translation = artifact_text(job, 8)
    if job.skip_external_review:
        print("[dadeumi] External review skipped; using the final translation as is.")
        path = write_text(artifact_path(job, step.number), translation)
        state["artifacts"][step.key] = str(path)
        update_metrics(job, step.key, translation)
        return translation

    review = artifact_text(job, 9)
    conversation: list[Message] = [{"role": "system", "content": reviewer_prompt(job)}]
    prompt = prompts.apply_external_feedback(translation, review)
    return _run_prompt_step(state, step, prompt, job, service, conversation=conversation)


_STEP_FNS = {
    1: _initial_analysis,
    2: _expression_exploration,
    3: _cultural_discussion,
    4: _title_exploration,
    5: _first_translation,
    6: _self_critique,
    7: _further_refinement,
    8: _final_translation,
    9: _external_review,
    10: _final_refinement,
}


def run_step(state: SessionState, number: int, job: TranslationJob, service: CompletionService) -> SessionState:
    """Run step ``number`` unless the session has already completed it.

    The artifact is written before ``state["step"]`` advances, and the session
    is persisted again once it has.
    """
    step = STEP_BY_NUMBER[number]
    if not should_run(state, number, job):
        if job.verbose:
            print(f"[dadeumi] Skipping step {step.key} (already done or disabled).")
        return state

    print(f"[dadeumi] Step {number}/{len(STEPS)}: {step.title}...")
    _STEP_FNS[number](state, step, job, service)
    state["step"] = completion_index(number, job)
    save_session(state, job, f"{step.key} complete")
    return state


# --- Final output ---

def write_final_output(job: TranslationJob, partial: bool = False) -> Path | None:
    """Copy the most advanced translation artifact to the final output path.

    Returns the written path, or None when no translation artifact exists yet.
    """
    names = [STEP_BY_NUMBER[n].filename for n in BEST_EFFORT_ORDER]
    latest = find_latest(job.intermediates_dir, names)
    if latest is None:
        if partial:
            print("[dadeumi] No translation produced yet; nothing to save.", file=sys.stderr)
        return None

    path = write_text(job.final_output_path, read_text(latest))
    if partial:
        print(f"[dadeumi] Saved best available translation ({latest.name}) to {path}", file=sys.stderr)
    else:
        print(f"[dadeumi] Final translation written to: {path}")
    return path


def save_best_effort(job: TranslationJob) -> Path | None:
    """Write whatever translation exists after a fatal error. Never raises OSError."""
    try:
        return write_final_output(job, partial=True)
    except OSError as exc:
        print(f"[dadeumi] Error saving partial translation: {exc!r}", file=sys.stderr)
        return None
