"""File-system helpers for session files, step artifacts and backups.

Writes go to a sibling temp file first and are renamed into place, so a crash
mid-write never leaves a half-written session or artifact behind.
"""

import json
import os
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def write_text(path: Path, text: str) -> Path:
    """Atomically write ``text`` to ``path``, creating parent directories."""
    ensure_dir(path.parent)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)
    return path


def read_text(path: Path, default: str = "") -> str:
    return path.read_text(encoding="utf-8") if path.exists() else default


def write_json(path: Path, data) -> Path:
    return write_text(path, json.dumps(data, indent=2, ensure_ascii=False))


def read_json(path: Path):
    """Parsed JSON content, or None when the file does not exist.

    Raises json.JSONDecodeError on a corrupt file.
    """
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


def list_files(directory: Path, pattern: str) -> list[Path]:
    """Files directly in ``directory`` whose name matches the regex ``pattern``, sorted by name."""
    if not directory.is_dir():
        return []
    regex = re.compile(pattern)
    return sorted(p for p in directory.iterdir() if p.is_file() and regex.match(p.name))


def find_latest(directory: Path, names: list[str]) -> Path | None:
    """First file of ``names`` (most advanced first) that exists in ``directory``."""
    for name in names:
        candidate = directory / name
        if candidate.exists():
            return candidate
    return None


def backup_file(path: Path, backup_dir: Path | None = None) -> Path | None:
    """Copy ``path`` to ``<backup_dir>/<name>.<timestamp>.bak``. None if there is nothing to back up."""
    if not path.exists():
        return None
    backup_dir = ensure_dir(backup_dir or path.parent / ".backups")
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")
    target = backup_dir / f"{path.name}.{stamp}.bak"
    shutil.copyfile(path, target)
    return target
