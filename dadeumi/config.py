"""Configuration — config.yaml read once at import, API keys from .env.

Point DADEUMI_CONFIG at another YAML file to override the bundled one. Keys the
file leaves out fall back to DEFAULTS.
"""

import os
from pathlib import Path

import yaml
from dotenv import load_dotenv

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")  # ANTHROPIC_API_KEY, OPENAI_API_KEY, GOOGLE_API_KEY

CONFIG_PATH = Path(os.environ.get("DADEUMI_CONFIG") or Path(__file__).resolve().parent / "config.yaml")

DEFAULTS = {
    "model": "claude-3-7-sonnet-latest",
    "verifier_model": "gpt-4o-mini",
    "temperature": 0.7,
    "max_output_tokens": 16000,
    "reasoning_effort": "medium",
    "max_retries": 3,
    "retry_delay": 5,
    "skip_external_review": False,
    "verify_completion": True,
    "max_continuation_attempts": 6,
    "output_dir": "./output",
    "context_limits": {},
    "pricing": {},
}


def load_config(path: Path = CONFIG_PATH) -> dict:
    """DEFAULTS overlaid with the YAML mapping at ``path``."""
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a YAML mapping, got {type(data).__name__}")
    return {**DEFAULTS, **data}


_config = load_config()


def get_config() -> dict:
    """Return the loaded config dictionary."""
    return _config
