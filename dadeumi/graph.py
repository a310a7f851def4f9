"""LangGraph StateGraph definition for the ten-step translation workflow."""

import sys
import time

from langgraph.graph import END, START, StateGraph

from dadeumi.llm import CompletionService
from dadeumi.state import SessionState, TranslationJob
from dadeumi.utils.metrics import format_duration, format_reading_time
from dadeumi.utils.storage import ensure_dir, read_json
from dadeumi.workflow import (
    STEPS,
    resume_or_init,
    run_step,
    save_best_effort,
    should_run,
    write_final_output,
)

NODE_STEPS = {
    "initial_analysis": 1,
    "expression_exploration": 2,
    "cultural_discussion": 3,
    "title_exploration": 4,
    "first_translation": 5,
    "self_critique": 6,
    "further_refinement": 7,
    "final_translation": 8,
    "external_review": 9,
    "final_refinement": 10,
}
STEP_NODES = {number: name for name, number in NODE_STEPS.items()}


def first_pending_node(state: SessionState, job: TranslationJob) -> str:
    """Conditional entry: the first step the session has not completed, or "end"."""
    for step in STEPS:
        if should_run(state, step.number, job):
            return STEP_NODES[step.number]
    return "end"


def route_after_final_translation(state: SessionState, job: TranslationJob) -> str:
    """Go around external review when it is disabled."""
    return "final_refinement" if job.skip_external_review else "external_review"


def _node(number: int, job: TranslationJob, service: CompletionService):
    def _run(state: SessionState) -> dict:
        return run_step(dict(state), number, job, service)

    _run.__name__ = STEP_NODES[number]
    return _run


def build_graph(job: TranslationJob, service: CompletionService):
    """Compile the step graph for one job."""
    workflow = StateGraph(SessionState)

    for name, number in NODE_STEPS.items():
        workflow.add_node(name, _node(number, job, service))

    workflow.add_conditional_edges(
        START,
        lambda state: first_pending_node(state, job),
        {**{name: name for name in NODE_STEPS}, "end": END},
    )

    linear = list(NODE_STEPS)[:8]
    for current, following in zip(linear, linear[1:]):
        workflow.add_edge(current, following)

    workflow.add_conditional_edges(
        "final_translation",
        lambda state: route_after_final_translation(state, job),
        {"external_review": "external_review", "final_refinement": "final_refinement"},
    )
    workflow.add_edge("external_review", "final_refinement")
    workflow.add_edge("final_refinement", END)

    return workflow.compile()


# --- Step-execution helper for manual runs ---

def run_single_step(
    state: SessionState, node_name: str, job: TranslationJob, service: CompletionService
) -> SessionState:
    """Run a single node and return the updated state."""
    return run_step(state, NODE_STEPS[node_name], job, service)


def _print_summary(state: SessionState, job: TranslationJob, elapsed: float) -> None:
    totals = state["totals"]
    print(f"[dadeumi] Steps completed: {state['step']}/{job.terminal_step}")
    print(
        f"[dadeumi] Tokens: {totals['input_tokens']:,} in / {totals['output_tokens']:,} out, "
        f"estimated cost ${totals['estimated_cost']:.4f}"
    )
    print(f"[dadeumi] Elapsed: {format_duration(elapsed)}")

    metrics = read_json(job.metrics_path) or {}
    source = metrics.get("source")
    final = metrics.get(STEPS[-1].key)
    if source and final:
        print(
            f"[dadeumi] Source: {source['word_count']:,} words ({format_reading_time(source['reading_time_minutes'])}); "
            f"translation: {final['word_count']:,} words, ratio {final['ratio']:.2f}"
        )


def run_translation(job: TranslationJob, service: CompletionService | None = None) -> SessionState:
    """Resume or start the session for ``job`` and run every pending step.

    Any failure, including an interrupt, saves the most advanced translation
    to the final output path before re-raising.
    """
    service = service or CompletionService()
    started = time.perf_counter()
    ensure_dir(job.intermediates_dir)

    state = resume_or_init(job.session_path, job)
    if state["step"] >= job.terminal_step:
        print("[dadeumi] All steps already complete.")
    else:
        graph = build_graph(job, service)
        try:
            state = graph.invoke(state)
        except (Exception, KeyboardInterrupt) as exc:
            print(f"[dadeumi] Translation failed: {exc!r}", file=sys.stderr)
            save_best_effort(job)
            raise

    write_final_output(job)
    _print_summary(state, job, time.perf_counter() - started)
    return state
