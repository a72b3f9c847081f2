from __future__ import annotations

import threading
from pathlib import Path
from typing import TextIO


class RunLog:
    """Per-run plain-text log, appended live and safe to write from helper threads."""

    def __init__(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self._lock = threading.Lock()
        self._f: TextIO | None = path.open("a", encoding="utf-8", newline="\n", buffering=1)

    @property
    def closed(self) -> bool:
        return self._f is None

    def write(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            if self._f is None:
                return
            self._f.write(text)
            self._f.flush()

    def section_start(self, kind: str, label: str) -> None:
        self.write(f"\n--- Running {kind}: {label} ---\n")

    def section_end(self, kind: str, label: str, *, exit_code: int | None = None) -> None:
        suffix = f" (Exit code: {exit_code})" if exit_code is not None else ""
        self.write(f"\n--- End of {kind}: {label}{suffix} ---\n")

    def notice(self, message: str) -> None:
        self.write(f"\n--- {message} ---\n")

    def subprocess_sink(self) -> TextIO:
        """Return the underlying file for use as a subprocess ``stdout``/``stderr``.

        Pending buffered text is flushed first so child output lands after it.
        """

        with self._lock:
            if self._f is None:
                raise ValueError(f"Run log is closed: {self.path}")
            self._f.flush()
            return self._f

    def close(self) -> None:
        with self._lock:
            if self._f is None:
                return
            try:
                self._f.close()
            finally:
                self._f = None

    def __enter__(self) -> RunLog:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
