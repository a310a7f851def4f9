"""Entry point: reads the source file, builds the job from config + flags, runs the graph."""

import argparse
import sys
from pathlib import Path

from dadeumi.config import get_config
from dadeumi.graph import run_translation
from dadeumi.state import TranslationJob


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dadeumi",
        description="Translate a document through a resumable multi-step conversation with an LLM.",
    )
    parser.add_argument("input", type=Path, help="Source text file to translate.")
    parser.add_argument("-t", "--target", required=True, help="Target language, e.g. Korean.")
    parser.add_argument("-s", "--source", default=None, help="Source language (inferred when omitted).")
    parser.add_argument("-o", "--output-dir", type=Path, default=None)
    parser.add_argument("-m", "--model", default=None)
    parser.add_argument("-i", "--instructions", default=None, help="Extra instructions for the translator.")
    parser.add_argument("--instructions-file", type=Path, default=None, help="Read extra instructions from a file.")
    parser.add_argument("--skip-review", action="store_true", help="Skip the external review steps.")
    parser.add_argument("--max-retries", type=int, default=None)
    parser.add_argument("--retry-delay", type=float, default=None)
    parser.add_argument("--max-output-tokens", type=int, default=None)
    parser.add_argument("--reasoning-effort", choices=["low", "medium", "high"], default=None)
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def _pick(flag, config: dict, key: str):
    return flag if flag is not None else config[key]


def build_job(args: argparse.Namespace, source_text: str) -> TranslationJob:
    """Merge CLI flags over config values."""
    config = get_config()
    return TranslationJob(
        source_text=source_text,
        target_language=args.target,
        source_language=args.source,
        input_path=args.input,
        output_dir=Path(_pick(args.output_dir, config, "output_dir")),
        model=_pick(args.model, config, "model"),
        verifier_model=config["verifier_model"],
        custom_instructions=args.instructions,
        temperature=config.get("temperature", 0.7),
        max_output_tokens=_pick(args.max_output_tokens, config, "max_output_tokens"),
        reasoning_effort=_pick(args.reasoning_effort, config, "reasoning_effort"),
        max_retries=_pick(args.max_retries, config, "max_retries"),
        retry_delay=_pick(args.retry_delay, config, "retry_delay"),
        skip_external_review=args.skip_review or config.get("skip_external_review", False),
        verify_completion=config.get("verify_completion", True),
        max_continuation_attempts=config.get("max_continuation_attempts", 6),
        verbose=args.verbose,
    )


def main(argv: list[str] | None = None) -> int:
    """CLI entry point. Returns the process exit code."""
    args = _parser().parse_args(argv)

    if not args.input.is_file():
        print(f"[dadeumi] Input file not found: {args.input}", file=sys.stderr)
        return 1
    source_text = args.input.read_text(encoding="utf-8")
    if not source_text.strip():
        print(f"[dadeumi] Input file is empty: {args.input}", file=sys.stderr)
        return 1

    if args.instructions_file:
        if not args.instructions_file.is_file():
            print(f"[dadeumi] Instructions file not found: {args.instructions_file}", file=sys.stderr)
            return 1
        from_file = args.instructions_file.read_text(encoding="utf-8").strip()
        # Inline instructions come first when both are given.
        args.instructions = "\n\n".join(filter(None, [args.instructions, from_file])) or None

    job = build_job(args, source_text)
    print(f"[dadeumi] Translating {args.input} into {job.target_language} with {job.model}")
    print(f"[dadeumi] Intermediate files: {job.intermediates_dir}")

    try:
        run_translation(job)
    except KeyboardInterrupt:
        print("[dadeumi] Interrupted.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"[dadeumi] Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
