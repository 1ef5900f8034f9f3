"""Minimal `.env` loader for the engine and its jobs.

Only the process runner's environment is authoritative; `.env` files fill in
what is missing (DATABASE_URL, REPUTATION_* overrides) for local runs.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Optional


# backend/app/core/env.py -> parents[2] = backend, parents[3] = repo root
_BACKEND_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILES = (
    _BACKEND_DIR.parent / ".env",
    _BACKEND_DIR / ".env",
)


def parse_env_line(line: str) -> Optional[tuple[str, str]]:
    """Parse `KEY=value` (optionally `export KEY="value"`); None for noise."""
    line = line.strip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    if line.startswith("export "):
        line = line[len("export "):].lstrip()
    key, _, value = line.partition("=")
    key, value = key.strip(), value.strip()
    if not key:
        return None
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return key, value


def load_env_if_present(
    *, override: bool = False, paths: Optional[Iterable[Path]] = None
) -> list[Path]:
    """Load `.env` files into os.environ; return the files actually read.

    Existing variables win unless override=True.
    """
    loaded: list[Path] = []
    for p in paths if paths is not None else DEFAULT_ENV_FILES:
        if not p.is_file():
            continue
        try:
            content = p.read_text(encoding="utf-8")
        except OSError:
            continue
        for raw in content.splitlines():
            parsed = parse_env_line(raw)
            if parsed is None:
                continue
            key, value = parsed
            if override or key not in os.environ:
                os.environ[key] = value
        loaded.append(p)
    return loaded
