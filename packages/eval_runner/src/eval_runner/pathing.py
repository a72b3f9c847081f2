from __future__ import annotations

import os
import re
from datetime import date
from pathlib import Path

RUNS_DIR_ENV = "TERCA_RUNS_DIR"

_SLUG_RE = re.compile(r"[^a-zA-Z0-9._-]+")


def slugify(value: str) -> str:
    s = value.strip()
    s = _SLUG_RE.sub("-", s)
    s = s.strip("-._")
    return s or "default"


def date_stamp(today: date | None = None) -> str:
    return (today or date.today()).strftime("%Y-%m-%d")


def default_runs_dir(root: Path) -> Path:
    raw = os.environ.get(RUNS_DIR_ENV)
    if raw is not None and raw.strip():
        return Path(raw.strip()).expanduser()
    return root / ".terca" / "runs"


def allocate_run_group_dir(runs_dir: Path, *, today: date | None = None) -> Path:
    """Create ``<runs_dir>/<YYYY-MM-DD>-<NNN>`` using the first unused sequence number."""

    runs_dir.mkdir(parents=True, exist_ok=True)
    stamp = date_stamp(today)
    seq = 1
    while True:
        candidate = runs_dir / f"{stamp}-{seq:03d}"
        try:
            candidate.mkdir()
        except FileExistsError:
            seq += 1
            continue
        return candidate


def run_dir_for(
    group_dir: Path,
    *,
    eval_name: str,
    environment: str,
    experiment: str,
    repetition: int,
) -> Path:
    return (
        group_dir
        / slugify(eval_name)
        / f"{slugify(environment)}.{slugify(experiment)}.{repetition:02d}"
    )
