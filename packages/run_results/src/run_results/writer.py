from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

from run_results.records import RunRecord

RESULTS_FILENAME = "results.json"


class ResultsFileError(ValueError):
    def __init__(self, message: str, *, path: Path, hint: str | None = None) -> None:
        super().__init__(message)
        self.path = path
        self.hint = hint or "Re-run the suite or restore results.json from a completed run group."


def _write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(payload, indent=2, ensure_ascii=False) + "\n",
        encoding="utf-8",
        newline="\n",
    )


class ResultsWriter:
    """Accumulates run records in memory and rewrites the results artifact on every append.

    Workers call :meth:`append` concurrently; appends and file writes are serialized, so the
    artifact on disk always holds every record appended so far.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._records: list[RunRecord] = []
        self._lock = threading.Lock()

    @property
    def records(self) -> list[RunRecord]:
        with self._lock:
            return list(self._records)

    def append(self, record: RunRecord) -> None:
        with self._lock:
            self._records.append(record)
            _write_json(self.path, {"runs": [r.to_dict() for r in self._records]})

    def flush(self) -> None:
        with self._lock:
            _write_json(self.path, {"runs": [r.to_dict() for r in self._records]})


def load_results(path: Path) -> list[RunRecord]:
    """Read a results artifact, possibly written by a run that was interrupted."""

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return []
    except OSError as e:
        raise ResultsFileError(f"Failed to read {path}: {e}", path=path) from e
    except json.JSONDecodeError as e:
        raise ResultsFileError(
            f"Failed to parse results JSON in {path}: {e}",
            path=path,
            hint="The file was likely truncated while being rewritten; re-run the suite.",
        ) from e

    if not isinstance(raw, dict):
        raise ResultsFileError(
            f"Expected JSON object in {path}, got {type(raw).__name__}.",
            path=path,
        )
    runs = raw.get("runs")
    if not isinstance(runs, list):
        return []
    return [RunRecord.from_dict(item) for item in runs if isinstance(item, dict)]
